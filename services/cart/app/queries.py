"""
Cart Service — クエリハンドラ
"""

from decimal import Decimal

from services.common.cache import CacheTTL

from .store import CartStore, summary_key


def summarize(items: dict[str, dict]) -> dict:
    total_items = sum(item["quantity"] for item in items.values())
    total_price = sum(
        (Decimal(item["price"]) * item["quantity"] for item in items.values()),
        Decimal("0"),
    ).quantize(Decimal("0.01"))
    return {
        "items": sorted(items.values(), key=lambda item: item["added_at"]),
        "total_items": total_items,
        "total_price": str(total_price),
    }


async def get_cart(store: CartStore, user_id: str) -> tuple[dict, bool]:
    """集計済みのカートを返す。戻り値は (カート, キャッシュ由来か)。"""
    key = summary_key(user_id)
    cached = await store.cache.get(key)
    if cached is not None:
        return cached, True
    summary = summarize(await store.items(user_id))
    await store.cache.set(key, summary, CacheTTL.SHORT)
    return summary, False
