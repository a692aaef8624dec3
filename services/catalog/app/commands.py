"""
Catalog Service — コマンドハンドラ (書き込み側)

書き込みの順序は常に
  1. トランザクション内で一意性・参照先を確認して更新
  2. コミット後にキャッシュを無効化 (単一キー + エイリアス + 一覧プレフィックス)
  3. 必要ならイベントを発行
とする。キャッシュの無効化に失敗しても書き込み自体は失敗させない
(CacheStore がエラーを握りつぶす)。古いキャッシュは TTL で消える。
"""

import logging
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import BadRequestError, ConflictError, NotFoundError
from services.common.events import (
    EventType,
    ProductDeleted,
    ProductPriceChanged,
    ProductStatusChanged,
)
from services.common.publisher import EventPublisher

from .cache import CatalogCache
from .queries import load_category, load_product, load_variant
from .schema import categories, product_variants, products

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


async def _ensure_unique(
    session: AsyncSession, column, value: str, label: str, exclude_id: str | None = None
) -> None:
    stmt = select(column.table.c.id).where(column == value)
    if exclude_id is not None:
        stmt = stmt.where(column.table.c.id != exclude_id)
    if await session.scalar(stmt.limit(1)) is not None:
        raise ConflictError(f"{label} with this {column.name} already exists")


async def _ensure_category(session: AsyncSession, category_id: str | None) -> None:
    if not category_id:
        return
    found = await session.scalar(select(categories.c.id).where(categories.c.id == category_id))
    if found is None:
        raise BadRequestError("Category not found")


async def _lock(session: AsyncSession, table, entity_id: str, label: str):
    row = (
        await session.execute(
            select(table).where(table.c.id == entity_id).with_for_update()
        )
    ).first()
    if row is None:
        raise NotFoundError(f"{label} not found")
    return row


# ── Products ─────────────────────────────────────


async def create_product(
    session: AsyncSession, cache: CatalogCache, fields: dict[str, Any]
) -> dict:
    product_id = str(uuid4())
    now = _now()
    try:
        async with session.begin():
            await _ensure_unique(session, products.c.slug, fields["slug"], "Product")
            await _ensure_category(session, fields.get("category_id"))
            await session.execute(
                insert(products).values(
                    id=product_id, created_at=now, updated_at=now, **fields
                )
            )
    except IntegrityError as exc:
        raise ConflictError("Product with this slug already exists") from exc

    logger.info("Product created: %s", product_id)
    await cache.invalidate_product(product_id, fields["slug"])
    return await load_product(session, products.c.id == product_id)


async def update_product(
    session: AsyncSession,
    cache: CatalogCache,
    publisher: EventPublisher,
    product_id: str,
    changes: dict[str, Any],
) -> dict:
    """
    商品更新コマンド

    価格が変わったら PRODUCT_PRICE_CHANGED、
    is_active が変わったら PRODUCT_STATUS_CHANGED を発行する。
    """
    try:
        async with session.begin():
            existing = await _lock(session, products, product_id, "Product")
            if changes.get("slug") and changes["slug"] != existing.slug:
                await _ensure_unique(
                    session, products.c.slug, changes["slug"], "Product", product_id
                )
            if "category_id" in changes:
                await _ensure_category(session, changes["category_id"])
            await session.execute(
                update(products)
                .where(products.c.id == product_id)
                .values(updated_at=_now(), **changes)
            )
    except IntegrityError as exc:
        raise ConflictError("Product with this slug already exists") from exc

    logger.info("Product updated: %s", product_id)
    await cache.invalidate_product(product_id, existing.slug, changes.get("slug"))
    product = await load_product(session, products.c.id == product_id)

    if "price" in changes and changes["price"] != existing.price:
        await publisher.publish(
            EventType.PRODUCT_PRICE_CHANGED,
            ProductPriceChanged(
                product_id=product_id,
                name=product["name"],
                previous_price=existing.price,
                price=changes["price"],
            ),
        )
    if "is_active" in changes and bool(changes["is_active"]) != bool(existing.is_active):
        await publisher.publish(
            EventType.PRODUCT_STATUS_CHANGED,
            ProductStatusChanged(
                product_id=product_id,
                name=product["name"],
                is_active=product["is_active"],
            ),
        )
    return product


async def _set_product_active(
    session: AsyncSession,
    cache: CatalogCache,
    publisher: EventPublisher,
    product_id: str,
    active: bool,
) -> dict:
    async with session.begin():
        existing = await _lock(session, products, product_id, "Product")
        await session.execute(
            update(products)
            .where(products.c.id == product_id)
            .values(is_active=active, updated_at=_now())
        )

    await cache.invalidate_product(product_id, existing.slug)
    product = await load_product(session, products.c.id == product_id)
    if bool(existing.is_active) != active:
        await publisher.publish(
            EventType.PRODUCT_STATUS_CHANGED,
            ProductStatusChanged(product_id=product_id, name=existing.name, is_active=active),
        )
    return product


async def delete_product(
    session: AsyncSession,
    cache: CatalogCache,
    publisher: EventPublisher,
    product_id: str,
    hard: bool = False,
) -> dict:
    """
    既定は論理削除 (is_active = False)。
    物理削除はバリアントが残っている場合 ConflictError。
    """
    if not hard:
        product = await _set_product_active(session, cache, publisher, product_id, False)
        logger.info("Product soft deleted: %s", product_id)
        return product

    async with session.begin():
        existing = await _lock(session, products, product_id, "Product")
        variants = await session.scalar(
            select(func.count())
            .select_from(product_variants)
            .where(product_variants.c.product_id == product_id)
        )
        if variants:
            raise ConflictError(
                "Cannot delete product with associated variants. "
                "Please delete the variants first."
            )
        await session.execute(delete(products).where(products.c.id == product_id))

    logger.info("Product hard deleted: %s", product_id)
    await cache.invalidate_product(product_id, existing.slug)
    await cache.variants.invalidate_lists()
    await publisher.publish(
        EventType.PRODUCT_DELETED, ProductDeleted(product_id=product_id)
    )
    return {"id": product_id, "slug": existing.slug}


async def restore_product(
    session: AsyncSession,
    cache: CatalogCache,
    publisher: EventPublisher,
    product_id: str,
) -> dict:
    product = await _set_product_active(session, cache, publisher, product_id, True)
    logger.info("Product restored: %s", product_id)
    return product


async def bulk_set_active(
    session: AsyncSession,
    cache: CatalogCache,
    publisher: EventPublisher,
    product_ids: list[str],
    active: bool,
) -> dict:
    """存在しない id は無視する。状態が実際に変わった商品だけイベントを出す。"""
    async with session.begin():
        result = await session.execute(
            select(products.c.id, products.c.slug, products.c.name, products.c.is_active)
            .where(products.c.id.in_(product_ids))
            .with_for_update()
        )
        rows = result.fetchall()
        if rows:
            await session.execute(
                update(products)
                .where(products.c.id.in_([row.id for row in rows]))
                .values(is_active=active, updated_at=_now())
            )

    for row in rows:
        await cache.products.forget(row.id, row.slug)
    await cache.products.invalidate_lists()

    changed = [row for row in rows if bool(row.is_active) != active]
    for row in changed:
        await publisher.publish(
            EventType.PRODUCT_STATUS_CHANGED,
            ProductStatusChanged(product_id=row.id, name=row.name, is_active=active),
        )
    logger.info("Bulk %s %d products", "activated" if active else "deactivated", len(rows))
    return {"updated": len(rows), "changed": len(changed)}


# ── Categories ───────────────────────────────────


async def create_category(
    session: AsyncSession, cache: CatalogCache, fields: dict[str, Any]
) -> dict:
    category_id = str(uuid4())
    now = _now()
    try:
        async with session.begin():
            await _ensure_unique(session, categories.c.slug, fields["slug"], "Category")
            await session.execute(
                insert(categories).values(
                    id=category_id, created_at=now, updated_at=now, **fields
                )
            )
    except IntegrityError as exc:
        raise ConflictError("Category with this slug already exists") from exc

    logger.info("Category created: %s", category_id)
    await cache.categories.invalidate(category_id, fields["slug"])
    return await load_category(session, categories.c.id == category_id)


async def update_category(
    session: AsyncSession, cache: CatalogCache, category_id: str, changes: dict[str, Any]
) -> dict:
    try:
        async with session.begin():
            existing = await _lock(session, categories, category_id, "Category")
            if changes.get("slug") and changes["slug"] != existing.slug:
                await _ensure_unique(
                    session, categories.c.slug, changes["slug"], "Category", category_id
                )
            await session.execute(
                update(categories)
                .where(categories.c.id == category_id)
                .values(updated_at=_now(), **changes)
            )
    except IntegrityError as exc:
        raise ConflictError("Category with this slug already exists") from exc

    logger.info("Category updated: %s", category_id)
    await cache.invalidate_category(category_id, existing.slug, changes.get("slug"))
    return await load_category(session, categories.c.id == category_id)


async def delete_category(
    session: AsyncSession, cache: CatalogCache, category_id: str, hard: bool = False
) -> dict:
    """物理削除は商品が1件でも紐付いていれば ConflictError。"""
    async with session.begin():
        existing = await _lock(session, categories, category_id, "Category")
        if hard:
            linked = await session.scalar(
                select(func.count())
                .select_from(products)
                .where(products.c.category_id == category_id)
            )
            if linked:
                raise ConflictError("Cannot delete category that still has products")
            await session.execute(delete(categories).where(categories.c.id == category_id))
        else:
            await session.execute(
                update(categories)
                .where(categories.c.id == category_id)
                .values(is_active=False, updated_at=_now())
            )

    logger.info("Category %s deleted: %s", "hard" if hard else "soft", category_id)
    await cache.invalidate_category(category_id, existing.slug)
    return {"id": category_id, "slug": existing.slug, "hard_deleted": hard}


# ── Variants ─────────────────────────────────────


async def create_variant(
    session: AsyncSession, cache: CatalogCache, product_id: str, fields: dict[str, Any]
) -> dict:
    variant_id = str(uuid4())
    now = _now()
    try:
        async with session.begin():
            found = await session.scalar(
                select(products.c.id).where(products.c.id == product_id)
            )
            if found is None:
                raise NotFoundError("Product not found")
            await _ensure_unique(session, product_variants.c.sku, fields["sku"], "Variant")
            await session.execute(
                insert(product_variants).values(
                    id=variant_id,
                    product_id=product_id,
                    created_at=now,
                    updated_at=now,
                    **fields,
                )
            )
    except IntegrityError as exc:
        raise ConflictError("Variant with this sku already exists") from exc

    logger.info("Variant created: %s (product %s)", variant_id, product_id)
    await cache.invalidate_variant(variant_id, fields["sku"])
    return await load_variant(session, product_variants.c.id == variant_id)


async def update_variant(
    session: AsyncSession, cache: CatalogCache, variant_id: str, changes: dict[str, Any]
) -> dict:
    try:
        async with session.begin():
            existing = await _lock(session, product_variants, variant_id, "Variant")
            if changes.get("sku") and changes["sku"] != existing.sku:
                await _ensure_unique(
                    session, product_variants.c.sku, changes["sku"], "Variant", variant_id
                )
            await session.execute(
                update(product_variants)
                .where(product_variants.c.id == variant_id)
                .values(updated_at=_now(), **changes)
            )
    except IntegrityError as exc:
        raise ConflictError("Variant with this sku already exists") from exc

    logger.info("Variant updated: %s", variant_id)
    await cache.invalidate_variant(variant_id, existing.sku, changes.get("sku"))
    return await load_variant(session, product_variants.c.id == variant_id)


async def delete_variant(
    session: AsyncSession, cache: CatalogCache, variant_id: str
) -> dict:
    async with session.begin():
        existing = await _lock(session, product_variants, variant_id, "Variant")
        await session.execute(
            delete(product_variants).where(product_variants.c.id == variant_id)
        )

    logger.info("Variant deleted: %s", variant_id)
    await cache.invalidate_variant(variant_id, existing.sku)
    return {"id": variant_id, "sku": existing.sku, "product_id": existing.product_id}
