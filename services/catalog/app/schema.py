"""
Catalog Service — テーブル定義

stock はイベントハンドラ(在庫調整)だけが変更する。読み取り処理は変更しない。
stock_adjustments は (order_id, product_id, kind) で一意。同じイベントが
重複して届いても在庫が二重に増減しないようにするための台帳。
"""

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

MONEY = Numeric(10, 2)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", Text, nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("description", Text),
    Column("is_active", Boolean, nullable=False, default=True, index=True),
    Column("sort_order", Integer, nullable=False, default=0),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

products = Table(
    "products",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("name", Text, nullable=False),
    Column("slug", String(255), nullable=False, unique=True),
    Column("description", Text),
    Column("price", MONEY, nullable=False, index=True),
    Column("compare_price", MONEY),
    Column("stock", Integer, nullable=False, default=0),
    Column("is_active", Boolean, nullable=False, default=True, index=True),
    Column("is_featured", Boolean, nullable=False, default=False, index=True),
    Column("category_id", String(36), ForeignKey("categories.id"), index=True),
    Column("images", JSON, nullable=False, default=list),
    Column("created_at", DateTime(timezone=True), nullable=False, index=True),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

product_variants = Table(
    "product_variants",
    metadata,
    Column("id", String(36), primary_key=True),
    Column(
        "product_id",
        String(36),
        ForeignKey("products.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    ),
    Column("size", String(32)),
    Column("color", String(32)),
    Column("is_active", Boolean, nullable=False, default=True),
    Column("price", MONEY),
    Column("stock", Integer, nullable=False, default=0),
    Column("sku", String(64), nullable=False, unique=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)

stock_adjustments = Table(
    "stock_adjustments",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_id", String(64), nullable=False),
    Column("product_id", String(64), nullable=False),
    Column("kind", String(32), nullable=False),
    Column("quantity", Integer, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "product_id", "kind", name="uq_stock_adjustment"),
)
