"""
Shipping Service — テーブル定義

1注文につき配送は1件 (order_id で一意)。
"""

from sqlalchemy import JSON, Column, DateTime, MetaData, String, Table, Text

metadata = MetaData()

shipments = Table(
    "shipments",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(64), nullable=False, unique=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("tracking_number", String(32), nullable=False, unique=True),
    Column("status", String(16), nullable=False, index=True),
    Column("shipping_address", JSON, nullable=False, default=dict),
    Column("email", Text, nullable=False, default=""),
    Column("estimated_delivery", DateTime(timezone=True), nullable=False, index=True),
    Column("shipped_at", DateTime(timezone=True)),
    Column("delivered_at", DateTime(timezone=True)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
