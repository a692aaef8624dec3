"""
Catalog Service — クエリハンドラ (読み取り側)

すべてキャッシュアサイドで読む。ヒットすればそのまま返し、
ミスなら DB を読んでキャッシュに格納する。戻り値は (結果, キャッシュ由来か)。
存在しないエンティティ(None)はキャッシュしない。
"""

import math
from dataclasses import asdict, dataclass
from decimal import Decimal

from sqlalchemy import and_, func, or_, select, true
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.cache import CacheTTL, EntityCache, list_cache_key

from .cache import (
    CATEGORY_LIST_PREFIX,
    FEATURED_PRODUCTS_PREFIX,
    PRODUCT_LIST_PREFIX,
    CatalogCache,
    category_products_key,
    product_variants_key,
)
from .schema import categories, product_variants, products

SORT_COLUMNS = {
    "created_at": products.c.created_at,
    "price": products.c.price,
    "name": products.c.name,
}


def _iso(value) -> str | None:
    return value.isoformat() if value else None


def _money(value) -> str | None:
    return str(value) if value is not None else None


# ── シリアライズ ─────────────────────────────────


def product_to_dict(row) -> dict:
    category = None
    if row.category_id and row.category_slug is not None:
        category = {
            "id": row.category_id,
            "name": row.category_name,
            "slug": row.category_slug,
        }
    return {
        "id": row.id,
        "name": row.name,
        "slug": row.slug,
        "description": row.description,
        "price": _money(row.price),
        "compare_price": _money(row.compare_price),
        "stock": row.stock,
        "is_active": bool(row.is_active),
        "is_featured": bool(row.is_featured),
        "category_id": row.category_id,
        "category": category,
        "images": row.images or [],
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def category_to_dict(row) -> dict:
    return {
        "id": row.id,
        "name": row.name,
        "slug": row.slug,
        "description": row.description,
        "is_active": bool(row.is_active),
        "sort_order": row.sort_order,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def variant_to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_id": row.product_id,
        "size": row.size,
        "color": row.color,
        "is_active": bool(row.is_active),
        "price": _money(row.price),
        "stock": row.stock,
        "sku": row.sku,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def _product_select():
    """商品 + 埋め込み用のカテゴリ情報 (LEFT JOIN)"""
    return select(
        products,
        categories.c.name.label("category_name"),
        categories.c.slug.label("category_slug"),
    ).select_from(
        products.outerjoin(categories, products.c.category_id == categories.c.id)
    )


# ── DB ローダー (キャッシュを通さない) ───────────


async def load_product(session: AsyncSession, *criteria) -> dict | None:
    row = (await session.execute(_product_select().where(*criteria))).first()
    return product_to_dict(row) if row else None


async def load_category(session: AsyncSession, *criteria) -> dict | None:
    row = (await session.execute(select(categories).where(*criteria))).first()
    return category_to_dict(row) if row else None


async def load_variant(session: AsyncSession, *criteria) -> dict | None:
    row = (await session.execute(select(product_variants).where(*criteria))).first()
    return variant_to_dict(row) if row else None


async def _read_entity(
    cache: EntityCache, cached: dict | None, loader
) -> tuple[dict | None, bool]:
    if cached is not None:
        return cached, True
    entity = await loader()
    if entity is not None:
        await cache.put_entity(entity)
    return entity, False


async def _paginate(session: AsyncSession, stmt, count_stmt, page: int, limit: int):
    rows = (
        await session.execute(stmt.limit(limit).offset((page - 1) * limit))
    ).fetchall()
    total = (await session.scalar(count_stmt)) or 0
    pages = math.ceil(total / limit)
    return rows, {
        "page": page,
        "limit": limit,
        "total": total,
        "total_pages": pages,
        "has_next": page < pages,
        "has_prev": page > 1,
    }


# ── Products ─────────────────────────────────────


@dataclass(frozen=True)
class ProductFilter:
    """一覧クエリの形状。全フィールドがキャッシュキーになる。"""

    page: int = 1
    limit: int = 20
    category_id: str | None = None
    featured: bool | None = None
    active: bool | None = True
    min_price: Decimal | None = None
    max_price: Decimal | None = None
    search: str | None = None
    sort_by: str = "created_at"
    sort_order: str = "desc"

    def conditions(self) -> list:
        conditions = []
        if self.active is not None:
            conditions.append(products.c.is_active == self.active)
        if self.featured is not None:
            conditions.append(products.c.is_featured == self.featured)
        if self.category_id:
            conditions.append(products.c.category_id == self.category_id)
        if self.min_price is not None:
            conditions.append(products.c.price >= self.min_price)
        if self.max_price is not None:
            conditions.append(products.c.price <= self.max_price)
        if self.search:
            pattern = f"%{self.search}%"
            conditions.append(
                or_(products.c.name.ilike(pattern), products.c.description.ilike(pattern))
            )
        return conditions

    def order_by(self):
        column = SORT_COLUMNS.get(self.sort_by, products.c.created_at)
        return column.asc() if self.sort_order == "asc" else column.desc()


async def get_product(
    session: AsyncSession, cache: CatalogCache, product_id: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.products,
        await cache.products.get_entity(product_id),
        lambda: load_product(session, products.c.id == product_id),
    )


async def get_product_by_slug(
    session: AsyncSession, cache: CatalogCache, slug: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.products,
        await cache.products.get_by_alias(slug),
        lambda: load_product(session, products.c.slug == slug),
    )


async def list_products(
    session: AsyncSession, cache: CatalogCache, flt: ProductFilter
) -> tuple[dict, bool]:
    async def load() -> dict:
        where = and_(true(), *flt.conditions())
        rows, pagination = await _paginate(
            session,
            _product_select().where(where).order_by(flt.order_by(), products.c.id),
            select(func.count()).select_from(products).where(where),
            flt.page,
            flt.limit,
        )
        return {
            "products": [product_to_dict(row) for row in rows],
            "pagination": pagination,
        }

    return await cache.products.read_through(
        list_cache_key(PRODUCT_LIST_PREFIX, asdict(flt)), load, CacheTTL.MEDIUM
    )


async def featured_products(
    session: AsyncSession, cache: CatalogCache, limit: int = 10
) -> tuple[dict, bool]:
    async def load() -> dict:
        result = await session.execute(
            _product_select()
            .where(products.c.is_featured.is_(True), products.c.is_active.is_(True))
            .order_by(products.c.created_at.desc())
            .limit(limit)
        )
        return {"products": [product_to_dict(row) for row in result.fetchall()]}

    return await cache.products.read_through(
        list_cache_key(FEATURED_PRODUCTS_PREFIX, {"limit": limit}), load, CacheTTL.SHORT
    )


# ── Categories ───────────────────────────────────


async def get_category(
    session: AsyncSession, cache: CatalogCache, category_id: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.categories,
        await cache.categories.get_entity(category_id),
        lambda: load_category(session, categories.c.id == category_id),
    )


async def get_category_by_slug(
    session: AsyncSession, cache: CatalogCache, slug: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.categories,
        await cache.categories.get_by_alias(slug),
        lambda: load_category(session, categories.c.slug == slug),
    )


async def list_categories(
    session: AsyncSession, cache: CatalogCache, include_inactive: bool = False
) -> tuple[dict, bool]:
    async def load() -> dict:
        stmt = select(categories).order_by(categories.c.sort_order, categories.c.name)
        if not include_inactive:
            stmt = stmt.where(categories.c.is_active.is_(True))
        result = await session.execute(stmt)
        return {"categories": [category_to_dict(row) for row in result.fetchall()]}

    return await cache.categories.read_through(
        list_cache_key(CATEGORY_LIST_PREFIX, {"include_inactive": include_inactive}),
        load,
        CacheTTL.MEDIUM,
    )


async def category_products(
    session: AsyncSession,
    cache: CatalogCache,
    category_id: str,
    page: int = 1,
    limit: int = 20,
) -> tuple[dict | None, bool]:
    """カテゴリが存在しなければ (None, False)。"""

    async def load() -> dict | None:
        category = await load_category(session, categories.c.id == category_id)
        if category is None:
            return None
        where = and_(
            products.c.category_id == category_id, products.c.is_active.is_(True)
        )
        rows, pagination = await _paginate(
            session,
            _product_select().where(where).order_by(products.c.created_at.desc(), products.c.id),
            select(func.count()).select_from(products).where(where),
            page,
            limit,
        )
        return {
            "category": category,
            "products": [product_to_dict(row) for row in rows],
            "pagination": pagination,
        }

    return await cache.categories.read_through(
        category_products_key(category_id, {"page": page, "limit": limit}),
        load,
        CacheTTL.SHORT,
    )


# ── Variants ─────────────────────────────────────


async def get_variant(
    session: AsyncSession, cache: CatalogCache, variant_id: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.variants,
        await cache.variants.get_entity(variant_id),
        lambda: load_variant(session, product_variants.c.id == variant_id),
    )


async def get_variant_by_sku(
    session: AsyncSession, cache: CatalogCache, sku: str
) -> tuple[dict | None, bool]:
    return await _read_entity(
        cache.variants,
        await cache.variants.get_by_alias(sku),
        lambda: load_variant(session, product_variants.c.sku == sku),
    )


async def list_variants(
    session: AsyncSession,
    cache: CatalogCache,
    product_id: str,
    include_inactive: bool = False,
) -> tuple[dict | None, bool]:
    """商品が存在しなければ (None, False)。"""

    async def load() -> dict | None:
        exists = await session.scalar(
            select(products.c.id).where(products.c.id == product_id)
        )
        if exists is None:
            return None
        stmt = (
            select(product_variants)
            .where(product_variants.c.product_id == product_id)
            .order_by(product_variants.c.created_at, product_variants.c.sku)
        )
        if not include_inactive:
            stmt = stmt.where(product_variants.c.is_active.is_(True))
        result = await session.execute(stmt)
        return {
            "product_id": product_id,
            "variants": [variant_to_dict(row) for row in result.fetchall()],
        }

    return await cache.variants.read_through(
        product_variants_key(product_id, {"include_inactive": include_inactive}),
        load,
        CacheTTL.MEDIUM,
    )
