import logging

import pytest

from services.common.events import (
    EventType,
    OrderCancelled,
    OrderItemSnapshot,
    OrderPlaced,
)
from services.catalog.app.main import create_app


@pytest.fixture
async def catalog(settings_for, redis, broker, recorder, serve):
    await recorder.listen(
        EventType.PRODUCT_PRICE_CHANGED,
        EventType.PRODUCT_STATUS_CHANGED,
        EventType.PRODUCT_DELETED,
    )
    app = create_app(settings_for("catalog-service"), redis=redis, broker=broker)
    async with serve(app) as client:
        yield client


async def create_product(client, slug, **fields) -> dict:
    body = {"name": slug.replace("-", " ").title(), "slug": slug, "price": "10.00", "stock": 10}
    body.update(fields)
    resp = await client.post("/products", json=body)
    assert resp.status_code == 201, resp.text
    return resp.json()["product"]


async def keys(redis, pattern) -> list[str]:
    return sorted([k async for k in redis.scan_iter(match=pattern)])


def item(product_id, quantity) -> OrderItemSnapshot:
    return OrderItemSnapshot(
        product_id=product_id, product_name="x", quantity=quantity, unit_price="1.00"
    )


async def place(publisher, order_id, items):
    await publisher.publish(
        EventType.ORDER_PLACED,
        OrderPlaced(
            order_id=order_id, status="PENDING", user_id="user-1", payment_type="PAY_NOW",
            items=items, subtotal="1.00", shipping_cost="5.99", tax_amount="0.08",
            total_amount="7.07",
        ),
    )


async def cancel(publisher, order_id, items, previous_status="PENDING"):
    await publisher.publish(
        EventType.ORDER_CANCELLED,
        OrderCancelled(
            order_id=order_id, status="CANCELLED", requires_refund=False,
            previous_status=previous_status, items=items, user_id="user-1",
        ),
    )


async def stock_of(client, product_id) -> int:
    resp = await client.get(f"/products/{product_id}")
    return resp.json()["product"]["stock"]


# ── 価格更新とキャッシュ無効化 ───────────────────


async def test_price_update_invalidates_entity_alias_and_list_keys(catalog, redis, recorder):
    product = await create_product(catalog, "blue-mug", is_featured=True)
    pid = product["id"]

    assert (await catalog.get(f"/products/{pid}")).json()["cached"] is False
    assert (await catalog.get(f"/products/{pid}")).json()["cached"] is True
    await catalog.get("/products/slug/blue-mug")
    await catalog.get("/products", params={"page": 1})
    await catalog.get("/products", params={"search": "mug", "sort_by": "price"})
    await catalog.get("/products/featured")

    assert await redis.exists(f"product:{pid}", "product:slug:blue-mug") == 2
    assert len(await keys(redis, "products:list:*")) == 2
    assert len(await keys(redis, "products:featured:*")) == 1

    resp = await catalog.patch(f"/products/{pid}", json={"price": "12.50"})
    assert resp.status_code == 200
    assert resp.json()["product"]["price"] == "12.50"

    assert await redis.exists(f"product:{pid}", "product:slug:blue-mug") == 0
    assert await keys(redis, "products:list:*") == []
    assert await keys(redis, "products:featured:*") == []

    fresh = (await catalog.get(f"/products/{pid}")).json()
    assert fresh["cached"] is False
    assert fresh["product"]["price"] == "12.50"
    again = (await catalog.get(f"/products/{pid}")).json()
    assert again["cached"] is True
    assert again["product"]["price"] == "12.50"
    by_slug = (await catalog.get("/products/slug/blue-mug")).json()
    assert by_slug["product"]["price"] == "12.50"
    listing = (await catalog.get("/products", params={"page": 1})).json()
    assert listing["cached"] is False
    assert listing["products"][0]["price"] == "12.50"

    [changed] = recorder.of_type(EventType.PRODUCT_PRICE_CHANGED)
    assert changed.data == {
        "productId": pid,
        "name": "Blue Mug",
        "previousPrice": "10.00",
        "price": "12.50",
    }


async def test_slug_change_drops_old_alias(catalog, redis):
    product = await create_product(catalog, "old-name")
    await catalog.get("/products/slug/old-name")

    await catalog.patch(f"/products/{product['id']}", json={"slug": "new-name"})

    assert await redis.exists("product:slug:old-name") == 0
    assert (await catalog.get("/products/slug/old-name")).status_code == 404
    assert (await catalog.get("/products/slug/new-name")).json()["product"]["id"] == product["id"]


async def test_update_without_price_change_publishes_nothing(catalog, recorder):
    product = await create_product(catalog, "plain-tee")

    await catalog.patch(f"/products/{product['id']}", json={"price": "10.00", "name": "Tee"})

    assert recorder.events == []


async def test_duplicate_slug_is_a_conflict(catalog):
    await create_product(catalog, "dup-slug")

    resp = await catalog.post(
        "/products", json={"name": "Other", "slug": "dup-slug", "price": "5.00"}
    )

    assert resp.status_code == 409


async def test_null_for_required_field_is_rejected(catalog):
    product = await create_product(catalog, "nullable")

    resp = await catalog.patch(f"/products/{product['id']}", json={"price": None})

    assert resp.status_code == 422


async def test_list_filters_and_pagination(catalog):
    await create_product(catalog, "cheap-pen", price="1.50")
    await create_product(catalog, "fancy-pen", price="45.00")
    await create_product(catalog, "hidden-pen", price="3.00", is_active=False)

    body = (await catalog.get("/products", params={"sort_by": "price", "sort_order": "asc"})).json()
    assert [p["slug"] for p in body["products"]] == ["cheap-pen", "fancy-pen"]
    assert body["pagination"]["total"] == 2

    body = (await catalog.get("/products", params={"min_price": "10"})).json()
    assert [p["slug"] for p in body["products"]] == ["fancy-pen"]

    body = (await catalog.get("/products", params={"limit": 1, "page": 2, "sort_by": "name"})).json()
    assert body["pagination"]["has_prev"] is True
    assert body["pagination"]["total_pages"] == 2


# ── 論理削除・物理削除・一括更新 ─────────────────


async def test_soft_delete_and_restore_publish_status_changes(catalog, recorder):
    product = await create_product(catalog, "seasonal")
    pid = product["id"]

    resp = await catalog.delete(f"/products/{pid}")
    assert resp.json()["product"]["is_active"] is False
    resp = await catalog.patch(f"/products/{pid}/restore")
    assert resp.json()["product"]["is_active"] is True

    flags = [e.data["isActive"] for e in recorder.of_type(EventType.PRODUCT_STATUS_CHANGED)]
    assert flags == [False, True]


async def test_hard_delete_requires_variants_removed_first(catalog, recorder, redis):
    product = await create_product(catalog, "hoodie")
    pid = product["id"]
    resp = await catalog.post(f"/products/{pid}/variants", json={"sku": "HOOD-M", "size": "M"})
    variant = resp.json()["variant"]
    await catalog.get(f"/products/{pid}/variants")

    resp = await catalog.delete(f"/products/{pid}", params={"hard_delete": True})
    assert resp.status_code == 409

    await catalog.delete(f"/variants/{variant['id']}")
    resp = await catalog.delete(f"/products/{pid}", params={"hard_delete": True})
    assert resp.status_code == 200

    assert (await catalog.get(f"/products/{pid}")).status_code == 404
    assert await keys(redis, "product:variants:*") == []
    [deleted] = recorder.of_type(EventType.PRODUCT_DELETED)
    assert deleted.data == {"productId": pid}


async def test_bulk_status_reports_only_real_changes(catalog, recorder):
    a = await create_product(catalog, "item-a")
    b = await create_product(catalog, "item-b", is_active=False)

    resp = await catalog.post(
        "/products/bulk-status",
        json={"product_ids": [a["id"], b["id"], "missing"], "is_active": False},
    )

    assert resp.json()["updated"] == 2
    assert resp.json()["changed"] == 1
    [event] = recorder.of_type(EventType.PRODUCT_STATUS_CHANGED)
    assert event.data["productId"] == a["id"]


# ── カテゴリとバリアント ─────────────────────────


async def test_category_rename_drops_cached_products(catalog, redis):
    resp = await catalog.post("/categories", json={"name": "Kitchen", "slug": "kitchen"})
    category = resp.json()["category"]
    product = await create_product(catalog, "chef-knife", category_id=category["id"])
    assert product["category"]["name"] == "Kitchen"
    await catalog.get(f"/products/{product['id']}")
    await catalog.get(f"/categories/{category['id']}/products")

    await catalog.patch(f"/categories/{category['id']}", json={"name": "Cookware"})

    assert await redis.exists(f"product:{product['id']}") == 0
    assert await keys(redis, "category:products:*") == []
    fresh = (await catalog.get(f"/products/{product['id']}")).json()
    assert fresh["product"]["category"]["name"] == "Cookware"


async def test_product_with_unknown_category_is_rejected(catalog):
    resp = await catalog.post(
        "/products",
        json={"name": "Orphan", "slug": "orphan", "price": "5.00", "category_id": "nope"},
    )

    assert resp.status_code == 400


async def test_category_hard_delete_blocked_by_products(catalog):
    category = (await catalog.post("/categories", json={"name": "Toys", "slug": "toys"})).json()[
        "category"
    ]
    await create_product(catalog, "yo-yo", category_id=category["id"])

    resp = await catalog.delete(f"/categories/{category['id']}", params={"hard_delete": True})
    assert resp.status_code == 409

    resp = await catalog.delete(f"/categories/{category['id']}")
    assert resp.json()["hard_deleted"] is False
    listing = (await catalog.get("/categories")).json()
    assert listing["categories"] == []


async def test_category_products_for_missing_category(catalog):
    assert (await catalog.get("/categories/missing/products")).status_code == 404


async def test_variant_read_through_by_sku(catalog, redis):
    product = await create_product(catalog, "sneaker")
    resp = await catalog.post(
        f"/products/{product['id']}/variants", json={"sku": "SNK-42", "size": "42"}
    )
    assert resp.status_code == 201

    first = (await catalog.get("/variants/sku/SNK-42")).json()
    second = (await catalog.get("/variants/sku/SNK-42")).json()
    assert (first["cached"], second["cached"]) == (False, True)

    await catalog.patch(f"/variants/{first['variant']['id']}", json={"stock": 7})
    assert await redis.exists("variant:sku:SNK-42") == 0
    assert (await catalog.get("/variants/sku/SNK-42")).json()["variant"]["stock"] == 7

    dup = await catalog.post(f"/products/{product['id']}/variants", json={"sku": "SNK-42"})
    assert dup.status_code == 409


async def test_variant_for_missing_product(catalog):
    resp = await catalog.post("/products/missing/variants", json={"sku": "X-1"})
    assert resp.status_code == 404


# ── 在庫調整 (注文イベント) ──────────────────────


async def test_order_placed_decrements_each_item_and_skips_missing(catalog, publisher, caplog):
    mug = await create_product(catalog, "stock-mug", stock=10)
    tee = await create_product(catalog, "stock-tee", stock=5)
    await catalog.get(f"/products/{mug['id']}")

    with caplog.at_level(logging.WARNING):
        await place(
            publisher, "order-1",
            [item(mug["id"], 2), item("no-such-product", 1), item(tee["id"], 3)],
        )

    assert "Product not found: no-such-product" in caplog.text
    assert await stock_of(catalog, mug["id"]) == 8
    assert await stock_of(catalog, tee["id"]) == 2


async def test_duplicate_order_placed_does_not_decrement_twice(catalog, publisher):
    mug = await create_product(catalog, "dup-mug", stock=10)

    await place(publisher, "order-1", [item(mug["id"], 4)])
    await place(publisher, "order-1", [item(mug["id"], 4)])

    assert await stock_of(catalog, mug["id"]) == 6


async def test_same_product_on_two_lines_is_summed(catalog, publisher):
    mug = await create_product(catalog, "split-mug", stock=10)

    await place(publisher, "order-1", [item(mug["id"], 1), item(mug["id"], 2)])

    assert await stock_of(catalog, mug["id"]) == 7


async def test_cancellation_restocks_once(catalog, publisher):
    mug = await create_product(catalog, "restock-mug", stock=10)
    await place(publisher, "order-1", [item(mug["id"], 3)])

    await cancel(publisher, "order-1", [item(mug["id"], 3)])
    await cancel(publisher, "order-1", [item(mug["id"], 3)])

    assert await stock_of(catalog, mug["id"]) == 10


async def test_cancellation_from_terminal_status_does_not_restock(catalog, publisher):
    mug = await create_product(catalog, "terminal-mug", stock=10)
    await place(publisher, "order-1", [item(mug["id"], 3)])

    await cancel(publisher, "order-1", [item(mug["id"], 3)], previous_status="REFUNDED")

    assert await stock_of(catalog, mug["id"]) == 7


async def test_cancellation_before_placement_blocks_decrement(catalog, publisher):
    mug = await create_product(catalog, "race-mug", stock=10)

    await cancel(publisher, "order-9", [item(mug["id"], 3)])
    await place(publisher, "order-9", [item(mug["id"], 3)])

    assert await stock_of(catalog, mug["id"]) == 10
