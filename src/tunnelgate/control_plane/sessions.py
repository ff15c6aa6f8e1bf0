"""Cookie-backed session validation and lifecycle for users and admins.

A session is valid only while the token and session id presented in cookies
both equal the pair stored on the principal's row. The pair is always written
in one statement, so readers never observe a token without its id.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional

import structlog
from fastapi import Response
from sqlalchemy import Table
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.errors import StoreError
from ..common.http_security import clear_cookies, set_cookies
from ..common.schemas import MAX_ROW_ID, DeploymentStatus
from ..common.security import new_session_id, new_session_token, verify_password
from ..common.settings import ControlPlaneSettings
from . import db

LOGGER = structlog.get_logger("tunnelgate.sessions")


@dataclass(frozen=True)
class PrincipalKind:
    """Where a principal's session pair lives and which cookies carry it."""

    name: str
    table: Table
    session_id_column: str
    token_cookie: str
    session_id_cookie: str
    id_cookie: str
    name_cookie: str
    expires_column: Optional[str] = None
    counts_logins: bool = False
    match_username: bool = False

    @property
    def cookie_names(self) -> tuple[str, str, str, str]:
        return (self.token_cookie, self.session_id_cookie, self.id_cookie, self.name_cookie)


USER = PrincipalKind(
    name="user",
    table=db.users_table,
    session_id_column="active_session_id",
    token_cookie="sessionToken",
    session_id_cookie="sessionId",
    id_cookie="userId",
    name_cookie="username",
    counts_logins=True,
)

ADMIN = PrincipalKind(
    name="admin",
    table=db.admins_table,
    session_id_column="session_id",
    token_cookie="adminSessionToken",
    session_id_cookie="adminSessionId",
    id_cookie="adminId",
    name_cookie="adminUsername",
    expires_column="session_expires_at",
    match_username=True,
)


@dataclass(frozen=True)
class SessionToken:
    """Credentials parsed once from the request cookies."""

    principal_id: int
    token: str
    session_id: str
    username: Optional[str] = None

    @classmethod
    def from_cookies(cls, cookies: Mapping[str, str], kind: PrincipalKind) -> Optional["SessionToken"]:
        token = cookies.get(kind.token_cookie)
        session_id = cookies.get(kind.session_id_cookie)
        raw_id = cookies.get(kind.id_cookie)
        if not token or not session_id or not raw_id:
            return None
        try:
            principal_id = int(raw_id)
        except ValueError:
            return None
        if not 1 <= principal_id <= MAX_ROW_ID:
            return None
        return cls(
            principal_id=principal_id,
            token=token,
            session_id=session_id,
            username=cookies.get(kind.name_cookie) or None,
        )


@dataclass
class Session:
    """A validated session together with the principal's stored row."""

    kind: PrincipalKind
    principal_id: int
    username: str
    session_id: str
    record: dict = field(repr=False)

    @property
    def deployment(self) -> DeploymentStatus:
        return DeploymentStatus(
            deploy_timestamp=self.record.get("deploy_timestamp"),
            active_form_number=self.record.get("active_form_number"),
            active_run_id=self.record.get("active_run_id"),
        )


@dataclass(frozen=True)
class IssuedSession:
    principal_id: int
    username: str
    token: str = field(repr=False)
    session_id: str

    def cookie_values(self, kind: PrincipalKind) -> dict[str, str]:
        return {
            kind.token_cookie: self.token,
            kind.session_id_cookie: self.session_id,
            kind.id_cookie: str(self.principal_id),
            kind.name_cookie: self.username,
        }


class SessionManager:
    """Validate, create, rotate and invalidate sessions for one principal kind."""

    def __init__(
        self,
        db_session: AsyncSession,
        settings: ControlPlaneSettings,
        kind: PrincipalKind = USER,
        clock: Callable[[], datetime] = db.utc_now,
    ) -> None:
        self._db = db_session
        self._settings = settings
        self.kind = kind
        self._clock = clock

    @property
    def max_age(self) -> int:
        if self.kind.expires_column:
            return self._settings.admin_session_ttl_seconds
        return self._settings.session_max_age_seconds

    async def authenticate(self, username: str, password: str) -> Optional[dict]:
        """Return the principal row when ``password`` matches, otherwise ``None``."""
        async with db.store_operation(self._db, f"{self.kind.name}.lookup"):
            record = await db.get_principal_by_username(self._db, self.kind.table, username)
        if not verify_password(password, record["password_hash"] if record else None):
            return None
        return record

    async def validate(self, credentials: Optional[SessionToken]) -> Optional[Session]:
        if credentials is None or not 1 <= credentials.principal_id <= MAX_ROW_ID:
            return None
        try:
            async with db.store_operation(self._db, f"{self.kind.name}.validate"):
                record = await db.get_principal(self._db, self.kind.table, credentials.principal_id)
        except StoreError:
            return None
        if record is None:
            return None
        stored_token = record.get("session_token")
        stored_session_id = record.get(self.kind.session_id_column)
        if stored_token is None or stored_session_id is None:
            return None
        if stored_token != credentials.token or stored_session_id != credentials.session_id:
            return None
        if self.kind.match_username and credentials.username != record["username"]:
            return None
        if self.kind.expires_column:
            expires_at = record.get(self.kind.expires_column)
            if expires_at is None or expires_at <= self._clock():
                LOGGER.info("Session expired", kind=self.kind.name, principal_id=credentials.principal_id)
                return None
        return Session(
            kind=self.kind,
            principal_id=credentials.principal_id,
            username=record["username"],
            session_id=stored_session_id,
            record=record,
        )

    async def create(self, principal: dict) -> IssuedSession:
        """Issue a fresh pair for ``principal``, replacing any session it held."""
        now = self._clock()
        token = new_session_token()
        session_id = new_session_id()
        values = {"session_token": token, self.kind.session_id_column: session_id, "last_login": now}
        if self.kind.counts_logins:
            values["login_count"] = self.kind.table.c.login_count + 1
        if self.kind.expires_column:
            values[self.kind.expires_column] = now + timedelta(seconds=self.max_age)
        async with db.store_operation(self._db, f"{self.kind.name}.create_session", principal_id=principal["id"]):
            await db.update_principal(self._db, self.kind.table, principal["id"], **values)
            await self._db.commit()
        LOGGER.info("Session created", kind=self.kind.name, principal_id=principal["id"])
        return IssuedSession(
            principal_id=principal["id"],
            username=principal["username"],
            token=token,
            session_id=session_id,
        )

    async def rotate(self, current: Session) -> IssuedSession:
        token = new_session_token()
        session_id = new_session_id()
        values = {"session_token": token, self.kind.session_id_column: session_id}
        if self.kind.expires_column:
            values[self.kind.expires_column] = self._clock() + timedelta(seconds=self.max_age)
        async with db.store_operation(self._db, f"{self.kind.name}.rotate_session", principal_id=current.principal_id):
            await db.update_principal(self._db, self.kind.table, current.principal_id, **values)
            await self._db.commit()
        LOGGER.info("Session rotated", kind=self.kind.name, principal_id=current.principal_id)
        return IssuedSession(
            principal_id=current.principal_id,
            username=current.username,
            token=token,
            session_id=session_id,
        )

    async def invalidate(self, principal_id: int) -> None:
        """Forget the stored pair. Raises ``StoreError`` when the write fails."""
        values = {
            "session_token": None,
            self.kind.session_id_column: None,
            "last_logout": self._clock(),
        }
        if self.kind.expires_column:
            values[self.kind.expires_column] = None
        async with db.store_operation(self._db, f"{self.kind.name}.invalidate_session", principal_id=principal_id):
            await db.update_principal(self._db, self.kind.table, principal_id, **values)
            await self._db.commit()
        LOGGER.info("Session invalidated", kind=self.kind.name, principal_id=principal_id)

    def set_cookies(self, response: Response, issued: IssuedSession) -> None:
        set_cookies(response, issued.cookie_values(self.kind), self._settings, max_age=self.max_age)

    def clear_cookies(self, response: Response) -> None:
        clear_cookies(response, self.kind.cookie_names, self._settings)
