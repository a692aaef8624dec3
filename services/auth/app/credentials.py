"""
Auth Service — パスワードとトークンの生成・検証

パスワードは passlib の pbkdf2_sha256 でハッシュ化する。
トークンは secrets で生成し、セッショントークンは SHA-256 ダイジェストだけを保存する。
"""

import hashlib
import secrets
from datetime import datetime, timedelta, timezone

from passlib.context import CryptContext

VERIFICATION_TOKEN_TTL = timedelta(minutes=10)
PASSWORD_RESET_TOKEN_TTL = timedelta(hours=1)
SESSION_TTL = timedelta(days=7)

pwd_context = CryptContext(schemes=["pbkdf2_sha256"], deprecated="auto")


def hash_password(password: str) -> str:
    return pwd_context.hash(password)


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return pwd_context.verify(password, password_hash)
    except ValueError:
        # 識別できないハッシュ形式
        return False


def new_token(nbytes: int = 16) -> str:
    return secrets.token_hex(nbytes)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode()).hexdigest()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def is_expired(expires_at: datetime, now: datetime | None = None) -> bool:
    # SQLite はタイムゾーンを保持しないので naive は UTC とみなす
    if expires_at.tzinfo is None:
        expires_at = expires_at.replace(tzinfo=timezone.utc)
    return expires_at <= (now or utcnow())
