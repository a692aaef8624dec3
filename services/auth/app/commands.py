"""
Auth Service — コマンドハンドラ

単一使用のトークン(メール確認・パスワードリセット)は
「トークン行の削除」と「アカウントの更新」を1トランザクションで行う。
削除できた行数が1でなければ、別のリクエストが先に消費したものとして扱う。
2回目の使用は常に NotFoundError になる。

期限切れのトークンは削除をコミットしてから拒否する。
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from uuid import uuid4

from sqlalchemy import Table, delete, insert, select, update
from sqlalchemy.engine import Row
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from services.common.errors import BadRequestError, ConflictError, NotFoundError
from services.common.events import (
    EmailVerified,
    EventType,
    PasswordResetRequested,
    UserRegistered,
)
from services.common.publisher import EventPublisher

from .credentials import (
    PASSWORD_RESET_TOKEN_TTL,
    SESSION_TTL,
    VERIFICATION_TOKEN_TTL,
    hash_password,
    is_expired,
    new_token,
    token_digest,
    utcnow,
    verify_password,
)
from .schema import accounts, password_reset_tokens, sessions, verification_tokens

logger = logging.getLogger(__name__)


def account_to_dict(row) -> dict:
    return {
        "id": row.id,
        "email": row.email,
        "name": row.name,
        "role": row.role,
        "email_verified": bool(row.email_verified),
    }


async def _account_by_email(session: AsyncSession, email: str) -> Row | None:
    return (
        await session.execute(select(accounts).where(accounts.c.email == email.lower()))
    ).first()


async def _issue_token(
    session: AsyncSession, table: Table, account_id: str, ttl
) -> tuple[str, datetime]:
    """既存のトークンを破棄して新しいものを1つだけ発行する。"""
    token = new_token()
    now = utcnow()
    expires_at = now + ttl
    await session.execute(delete(table).where(table.c.account_id == account_id))
    await session.execute(
        insert(table).values(
            id=str(uuid4()),
            account_id=account_id,
            token=token,
            expires_at=expires_at,
            created_at=now,
        )
    )
    return token, expires_at


async def _consume_token(session: AsyncSession, table: Table, token: str) -> Row:
    """トランザクション内で呼ぶ。トークン行を削除して返す。"""
    row = (
        await session.execute(select(table).where(table.c.token == token).with_for_update())
    ).first()
    if row is None:
        raise NotFoundError("Invalid or expired token")
    result = await session.execute(delete(table).where(table.c.id == row.id))
    if result.rowcount != 1:
        raise NotFoundError("Invalid or expired token")
    return row


# ── 登録とメール確認 ─────────────────────────────


async def register_account(
    session: AsyncSession, publisher: EventPublisher, email: str, password: str, name: str
) -> dict:
    account_id = str(uuid4())
    now = utcnow()
    try:
        async with session.begin():
            if await _account_by_email(session, email) is not None:
                raise ConflictError("User already exists")
            await session.execute(
                insert(accounts).values(
                    id=account_id,
                    email=email.lower(),
                    password_hash=hash_password(password),
                    name=name,
                    email_verified=False,
                    created_at=now,
                    updated_at=now,
                )
            )
            token, _ = await _issue_token(
                session, verification_tokens, account_id, VERIFICATION_TOKEN_TTL
            )
    except IntegrityError as exc:
        raise ConflictError("User already exists") from exc

    logger.info("Account registered: %s", account_id)
    await publisher.publish(
        EventType.USER_REGISTERED,
        UserRegistered(
            user_id=account_id, email=email.lower(), name=name, verification_token=token
        ),
    )
    return {"id": account_id, "email": email.lower(), "name": name}


async def resend_verification(
    session: AsyncSession, publisher: EventPublisher, email: str
) -> bool:
    """新しい確認トークンを発行したら True。アカウントの有無は呼び出し元に漏らさない。"""
    async with session.begin():
        account = await _account_by_email(session, email)
        if account is None or account.email_verified:
            return False
        token, _ = await _issue_token(
            session, verification_tokens, account.id, VERIFICATION_TOKEN_TTL
        )

    await publisher.publish(
        EventType.USER_REGISTERED,
        UserRegistered(
            user_id=account.id, email=account.email, name=account.name or "",
            verification_token=token,
        ),
    )
    return True


async def verify_email(session: AsyncSession, publisher: EventPublisher, token: str) -> dict:
    rejection = None
    async with session.begin():
        consumed = await _consume_token(session, verification_tokens, token)
        account = (
            await session.execute(select(accounts).where(accounts.c.id == consumed.account_id))
        ).first()
        if is_expired(consumed.expires_at):
            rejection = "Verification token has expired"
        elif account.email_verified:
            rejection = "Email already verified"
        else:
            await session.execute(
                update(accounts)
                .where(accounts.c.id == account.id)
                .values(email_verified=True, updated_at=utcnow())
            )
    if rejection:
        raise BadRequestError(rejection)

    logger.info("Email verified for account %s", account.id)
    await publisher.publish(
        EventType.EMAIL_VERIFIED, EmailVerified(user_id=account.id, email=account.email)
    )
    return {"id": account.id, "email": account.email}


# ── パスワードリセット ───────────────────────────


async def request_password_reset(
    session: AsyncSession, publisher: EventPublisher, email: str
) -> bool:
    async with session.begin():
        account = await _account_by_email(session, email)
        if account is None:
            logger.info("Password reset requested for unknown email")
            return False
        token, expires_at = await _issue_token(
            session, password_reset_tokens, account.id, PASSWORD_RESET_TOKEN_TTL
        )

    await publisher.publish(
        EventType.PASSWORD_RESET_REQUESTED,
        PasswordResetRequested(email=account.email, reset_token=token, expires_at=expires_at),
    )
    return True


async def complete_password_reset(
    session: AsyncSession, token: str, new_password: str
) -> int:
    """パスワードを更新し、全セッションを失効させる。失効させたセッション数を返す。"""
    expired = False
    async with session.begin():
        consumed = await _consume_token(session, password_reset_tokens, token)
        if is_expired(consumed.expires_at):
            expired = True
        else:
            await session.execute(
                update(accounts)
                .where(accounts.c.id == consumed.account_id)
                .values(password_hash=hash_password(new_password), updated_at=utcnow())
            )
            revoked = await session.execute(
                delete(sessions).where(sessions.c.account_id == consumed.account_id)
            )
    if expired:
        raise BadRequestError("Password reset token has expired")

    logger.info("Password reset for account %s; %d sessions revoked",
                consumed.account_id, revoked.rowcount)
    return revoked.rowcount


# ── セッション ───────────────────────────────────


@dataclass(frozen=True)
class OpenedSession:
    session_id: str
    token: str
    expires_at: datetime
    account: dict


async def open_session(
    session: AsyncSession, email: str, password: str, user_agent: str | None = None
) -> OpenedSession:
    async with session.begin():
        account = await _account_by_email(session, email)
        if account is None or not verify_password(password, account.password_hash):
            logger.warning("Failed login attempt for %s", email)
            raise BadRequestError("Invalid credentials")
        if not account.email_verified:
            raise BadRequestError("Please verify your email before logging in")
        if not account.is_active:
            raise BadRequestError("Account is disabled")

        token = new_token(32)
        now = utcnow()
        session_id = str(uuid4())
        await session.execute(
            insert(sessions).values(
                id=session_id,
                account_id=account.id,
                token_hash=token_digest(token),
                expires_at=now + SESSION_TTL,
                user_agent=user_agent,
                created_at=now,
            )
        )
        await session.execute(
            update(accounts).where(accounts.c.id == account.id).values(last_login_at=now)
        )

    logger.info("Account %s logged in", account.id)
    return OpenedSession(session_id, token, now + SESSION_TTL, account_to_dict(account))


async def resolve_session(session: AsyncSession, token: str) -> dict:
    """有効なセッションのアカウントを返す。期限切れのセッションは削除する。"""
    expired = False
    async with session.begin():
        row = (
            await session.execute(
                select(
                    sessions.c.id.label("session_id"),
                    sessions.c.expires_at.label("session_expires_at"),
                    accounts,
                )
                .join(accounts, accounts.c.id == sessions.c.account_id)
                .where(sessions.c.token_hash == token_digest(token))
            )
        ).first()
        if row is None:
            raise NotFoundError("Session not found")
        if is_expired(row.session_expires_at):
            await session.execute(delete(sessions).where(sessions.c.id == row.session_id))
            expired = True
    if expired:
        raise NotFoundError("Session has expired")
    return account_to_dict(row)


async def close_session(session: AsyncSession, token: str) -> bool:
    async with session.begin():
        result = await session.execute(
            delete(sessions).where(sessions.c.token_hash == token_digest(token))
        )
    return result.rowcount == 1
