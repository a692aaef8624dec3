"""
Payment Service — テーブル定義

1注文につき CHARGE と REFUND はそれぞれ最大1件 (order_id, type で一意)。
"""

from sqlalchemy import (
    Column,
    DateTime,
    MetaData,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)

metadata = MetaData()

payment_transactions = Table(
    "payment_transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("order_id", String(64), nullable=False, index=True),
    Column("user_id", String(64), nullable=False, index=True),
    Column("amount", Numeric(10, 2), nullable=False),
    Column("currency", String(3), nullable=False, default="USD"),
    Column("type", String(16), nullable=False),
    Column("status", String(16), nullable=False),
    Column("gateway", String(32), nullable=False, default="SIMULATED"),
    Column("gateway_transaction_id", String(64), nullable=False, unique=True),
    Column("original_transaction_id", String(36)),
    Column("failure_reason", Text),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_id", "type", name="uq_payment_order_type"),
)
