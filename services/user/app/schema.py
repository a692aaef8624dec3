"""
User Service — テーブル定義

プロフィールは auth-service のアカウントと user_id で 1:1 に対応する。
行は EMAIL_VERIFIED を受けて作られる。
"""

from sqlalchemy import Column, DateTime, MetaData, String, Table

metadata = MetaData()

user_profiles = Table(
    "user_profiles",
    metadata,
    Column("user_id", String(64), primary_key=True),
    Column("email", String(320), nullable=False, unique=True),
    Column("first_name", String(100)),
    Column("last_name", String(100)),
    Column("phone", String(32)),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
)
