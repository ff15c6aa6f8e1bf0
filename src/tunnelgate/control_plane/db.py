"""Async database helpers for the tunnelgate control plane."""

from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Optional

import structlog
from sqlalchemy import (
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    delete,
    func,
    insert,
    literal,
    select,
    update,
)
from sqlalchemy.engine.url import make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from ..common.errors import StoreError

LOGGER = structlog.get_logger("tunnelgate.db")

metadata = MetaData()


users_table = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(length=50), nullable=False, unique=True),
    Column("password_hash", String(length=128), nullable=False),
    Column("session_token", String(length=128), nullable=True),
    Column("active_session_id", String(length=64), nullable=True),
    Column("login_count", Integer, nullable=False, default=0),
    Column("last_login", DateTime(timezone=True), nullable=True),
    Column("last_logout", DateTime(timezone=True), nullable=True),
    Column("deploy_timestamp", DateTime(timezone=True), nullable=True),
    Column("active_form_number", Integer, nullable=True),
    Column("active_run_id", BigInteger, nullable=True),
    Column("token", String(length=64), nullable=True),
    Column("token_removed", Boolean, nullable=False, default=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
)


admins_table = Table(
    "admins",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("username", String(length=50), nullable=False, unique=True),
    Column("password_hash", String(length=128), nullable=False),
    Column("session_token", String(length=128), nullable=True),
    Column("session_id", String(length=64), nullable=True),
    Column("session_expires_at", DateTime(timezone=True), nullable=True),
    Column("last_login", DateTime(timezone=True), nullable=True),
    Column("last_logout", DateTime(timezone=True), nullable=True),
)


onboarding_tokens_table = Table(
    "onboarding_tokens",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("token", String(length=64), nullable=False, unique=True),
    Column("status", String(length=16), nullable=False),
    Column("duration", String(length=16), nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=False),
    Column("user_id", Integer, nullable=True),
)


_DATETIME_COLUMNS = (
    "last_login",
    "last_logout",
    "deploy_timestamp",
    "created_at",
    "expires_at",
    "session_expires_at",
)


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored here is UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _row(row) -> Optional[dict]:
    if row is None:
        return None
    payload = dict(row)
    for key in _DATETIME_COLUMNS:
        if key in payload:
            payload[key] = as_utc(payload[key])
    return payload


def create_engine(database_url: str) -> AsyncEngine:
    url = make_url(database_url)
    engine_kwargs: dict[str, object] = {
        "future": True,
        "echo": False,
        "pool_pre_ping": True,
    }
    if url.get_backend_name() != "sqlite":
        engine_kwargs.update({"pool_size": 10, "max_overflow": 20, "pool_recycle": 1800})
    return create_async_engine(database_url, **engine_kwargs)


async def ensure_schema(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return async_sessionmaker(engine, expire_on_commit=False)


@asynccontextmanager
async def store_operation(session: AsyncSession, operation: str, **context: Any) -> AsyncIterator[None]:
    """Translate driver failures into ``StoreError`` without leaking driver text.

    The session is rolled back so later steps of a multi-step flow can keep using it.
    """
    try:
        yield
    except SQLAlchemyError as exc:
        try:
            await session.rollback()
        except SQLAlchemyError:
            LOGGER.warning("Rollback after store failure failed", operation=operation)
        LOGGER.error("Store operation failed", operation=operation, error_type=type(exc).__name__, **context)
        raise StoreError(operation) from exc


# Principals -----------------------------------------------------------------


async def get_principal(session: AsyncSession, table: Table, principal_id: int) -> Optional[dict]:
    result = await session.execute(select(table).where(table.c.id == principal_id))
    return _row(result.mappings().first())


async def get_principal_by_username(session: AsyncSession, table: Table, username: str) -> Optional[dict]:
    result = await session.execute(select(table).where(table.c.username == username))
    return _row(result.mappings().first())


async def update_principal(session: AsyncSession, table: Table, principal_id: int, **values: Any) -> bool:
    """Apply ``values`` to one principal row in a single statement."""
    result = await session.execute(update(table).where(table.c.id == principal_id).values(**values))
    return result.rowcount > 0


async def create_user(session: AsyncSession, username: str, password_hash: str, token: Optional[str]) -> int:
    stmt = insert(users_table).values(
        username=username,
        password_hash=password_hash,
        token=token,
        token_removed=False,
        login_count=0,
        created_at=utc_now(),
    )
    result = await session.execute(stmt)
    return int(result.inserted_primary_key[0])


async def create_admin(session: AsyncSession, username: str, password_hash: str) -> int:
    result = await session.execute(insert(admins_table).values(username=username, password_hash=password_hash))
    return int(result.inserted_primary_key[0])


async def list_users(session: AsyncSession) -> list[dict]:
    result = await session.execute(select(users_table).order_by(users_table.c.id))
    return [_row(row) for row in result.mappings().all()]


async def delete_user(session: AsyncSession, user_id: int) -> bool:
    result = await session.execute(delete(users_table).where(users_table.c.id == user_id))
    return result.rowcount > 0


# Deployment status ----------------------------------------------------------


async def record_deploy_start(session: AsyncSession, user_id: int, form_number: int, now: datetime) -> bool:
    return await update_principal(
        session,
        users_table,
        user_id,
        deploy_timestamp=now,
        active_form_number=form_number,
    )


async def record_deploy_stop(session: AsyncSession, user_id: int, form_number: int) -> bool:
    """Clear the deployment only while ``form_number`` is still the active slot."""
    stmt = (
        update(users_table)
        .where(users_table.c.id == user_id, users_table.c.active_form_number == form_number)
        .values(deploy_timestamp=None, active_form_number=None, active_run_id=None)
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


async def record_run_id(session: AsyncSession, user_id: int, run_id: int, now: datetime) -> bool:
    stmt = (
        update(users_table)
        .where(users_table.c.id == user_id)
        .values(
            active_run_id=run_id,
            deploy_timestamp=func.coalesce(
                users_table.c.deploy_timestamp,
                literal(now, type_=users_table.c.deploy_timestamp.type),
            ),
        )
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


async def clear_deployment(session: AsyncSession, user_id: int) -> bool:
    return await update_principal(
        session,
        users_table,
        user_id,
        deploy_timestamp=None,
        active_form_number=None,
        active_run_id=None,
    )


# Onboarding tokens ----------------------------------------------------------


async def insert_token(
    session: AsyncSession,
    *,
    token: str,
    status: str,
    duration: str,
    created_at: datetime,
    expires_at: datetime,
    user_id: Optional[int] = None,
) -> dict:
    values = {
        "token": token,
        "status": status,
        "duration": duration,
        "created_at": created_at,
        "expires_at": expires_at,
        "user_id": user_id,
    }
    result = await session.execute(insert(onboarding_tokens_table).values(**values))
    return {"id": int(result.inserted_primary_key[0]), **values}


async def get_token_by_value(session: AsyncSession, token: str) -> Optional[dict]:
    stmt = select(onboarding_tokens_table).where(onboarding_tokens_table.c.token == token)
    result = await session.execute(stmt)
    return _row(result.mappings().first())


async def get_in_use_token(session: AsyncSession, user_id: int) -> Optional[dict]:
    stmt = (
        select(onboarding_tokens_table)
        .where(
            onboarding_tokens_table.c.user_id == user_id,
            onboarding_tokens_table.c.status == "InUse",
        )
        .order_by(onboarding_tokens_table.c.created_at.desc(), onboarding_tokens_table.c.id.desc())
        .limit(1)
    )
    result = await session.execute(stmt)
    return _row(result.mappings().first())


async def mark_token_in_use(session: AsyncSession, token_id: int, user_id: int) -> bool:
    stmt = (
        update(onboarding_tokens_table)
        .where(onboarding_tokens_table.c.id == token_id)
        .values(status="InUse", user_id=user_id)
    )
    result = await session.execute(stmt)
    return result.rowcount > 0


async def delete_token(session: AsyncSession, token_id: int) -> int:
    result = await session.execute(delete(onboarding_tokens_table).where(onboarding_tokens_table.c.id == token_id))
    return result.rowcount


async def delete_token_by_value(session: AsyncSession, token: str) -> int:
    stmt = delete(onboarding_tokens_table).where(onboarding_tokens_table.c.token == token)
    result = await session.execute(stmt)
    return result.rowcount


async def list_tokens(session: AsyncSession) -> list[dict]:
    stmt = select(onboarding_tokens_table).order_by(
        onboarding_tokens_table.c.created_at.desc(),
        onboarding_tokens_table.c.id.desc(),
    )
    result = await session.execute(stmt)
    return [_row(row) for row in result.mappings().all()]


async def set_user_token(session: AsyncSession, user_id: int, token: Optional[str], removed: bool) -> bool:
    return await update_principal(session, users_table, user_id, token=token, token_removed=removed)


async def unlink_user_token(session: AsyncSession, user_id: int, token: str) -> bool:
    """Detach ``token`` from the user only if it is still the linked one."""
    stmt = (
        update(users_table)
        .where(users_table.c.id == user_id, users_table.c.token == token)
        .values(token=None, token_removed=True)
    )
    result = await session.execute(stmt)
    return result.rowcount > 0
