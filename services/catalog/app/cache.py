"""
Catalog Service — キャッシュキー定義

  product:{id}            product:slug:{slug}          LONG
  category:{id}           category:slug:{slug}         LONG
  variant:{id}            variant:sku:{sku}            LONG
  products:list:{params}                               MEDIUM
  products:featured:{params}                           SHORT
  categories:list:{params}                             MEDIUM
  category:products:{categoryId}:{params}              SHORT
  product:variants:{productId}:{params}                MEDIUM

商品はカテゴリ情報を埋め込んでキャッシュするため、カテゴリの更新・削除時は
商品のキャッシュもすべて破棄する。
"""

from services.common.cache import CacheNamespace, CacheStore, EntityCache, list_cache_key

PRODUCT_LIST_PREFIX = "products:list:"
FEATURED_PRODUCTS_PREFIX = "products:featured:"
CATEGORY_LIST_PREFIX = "categories:list:"
CATEGORY_PRODUCTS_PREFIX = "category:products:"
PRODUCT_VARIANTS_PREFIX = "product:variants:"

PRODUCTS = CacheNamespace(
    "product",
    "slug",
    (PRODUCT_LIST_PREFIX, FEATURED_PRODUCTS_PREFIX, CATEGORY_PRODUCTS_PREFIX),
)
CATEGORIES = CacheNamespace(
    "category", "slug", (CATEGORY_LIST_PREFIX, CATEGORY_PRODUCTS_PREFIX)
)
VARIANTS = CacheNamespace("variant", "sku", (PRODUCT_VARIANTS_PREFIX,))


def category_products_key(category_id: str, params: dict) -> str:
    return list_cache_key(f"{CATEGORY_PRODUCTS_PREFIX}{category_id}:", params)


def product_variants_key(product_id: str, params: dict) -> str:
    return list_cache_key(f"{PRODUCT_VARIANTS_PREFIX}{product_id}:", params)


class CatalogCache:
    def __init__(self, store: CacheStore) -> None:
        self.store = store
        self.products = EntityCache(store, PRODUCTS)
        self.categories = EntityCache(store, CATEGORIES)
        self.variants = EntityCache(store, VARIANTS)

    async def invalidate_product(self, product_id: str, *slugs: str | None) -> None:
        await self.products.invalidate(product_id, *slugs)

    async def invalidate_category(self, category_id: str, *slugs: str | None) -> None:
        await self.categories.invalidate(category_id, *slugs)
        await self.products.invalidate_all()

    async def invalidate_variant(self, variant_id: str, *skus: str | None) -> None:
        await self.variants.invalidate(variant_id, *skus)
