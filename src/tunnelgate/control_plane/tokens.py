"""Onboarding token issuance, renewal and administration."""

from __future__ import annotations

import calendar
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.errors import ConflictError, NotFoundError, PartialFailureError, StoreError, ValidationError
from ..common.security import new_onboarding_token
from . import db

LOGGER = structlog.get_logger("tunnelgate.tokens")

STATUS_ACTIVE = "Active"
STATUS_IN_USE = "InUse"

DURATION_MONTHS = {"3month": 3, "6month": 6, "1year": 12}


class InvalidDurationError(ValidationError):
    def __init__(self, duration: object) -> None:
        super().__init__("Invalid duration. Must be 3month, 6month, or 1year.", error={"duration": duration})


def add_months(moment: datetime, months: int) -> datetime:
    """Calendar month arithmetic, clamping the day to the target month's length."""
    month_index = moment.month - 1 + months
    year = moment.year + month_index // 12
    month = month_index % 12 + 1
    day = min(moment.day, calendar.monthrange(year, month)[1])
    return moment.replace(year=year, month=month, day=day)


def expiry_for(duration: str, created_at: datetime) -> datetime:
    months = DURATION_MONTHS.get(duration)
    if months is None:
        raise InvalidDurationError(duration)
    return add_months(created_at, months)


def is_expired(token: dict, now: datetime) -> bool:
    return token["expires_at"] <= now


@dataclass
class UserTokenDetails:
    user_id: int
    username: str
    token: Optional[str]
    token_removed: bool
    status: Optional[str]
    duration: Optional[str]
    created_at: Optional[datetime]
    expires_at: Optional[datetime]

    def to_payload(self) -> dict:
        return {
            "userId": self.user_id,
            "username": self.username,
            "token": self.token or "N/A",
            "tokenRemoved": self.token_removed,
            "status": self.status or "N/A",
            "duration": self.duration or "N/A",
            "createdAt": self.created_at.isoformat() if self.created_at else "N/A",
            "expiresAt": self.expires_at.isoformat() if self.expires_at else "N/A",
        }


class TokenService:
    """Rules for onboarding tokens: one ``InUse`` token per user, calendar-based expiry."""

    def __init__(
        self,
        db_session: AsyncSession,
        clock: Callable[[], datetime] = db.utc_now,
        generator: Callable[[], str] = new_onboarding_token,
    ) -> None:
        self._db = db_session
        self._clock = clock
        self._generate = generator

    async def issue(self, duration: str) -> dict:
        now = self._clock()
        expires_at = expiry_for(duration, now)
        async with db.store_operation(self._db, "tokens.issue"):
            record = await db.insert_token(
                self._db,
                token=self._generate(),
                status=STATUS_ACTIVE,
                duration=duration,
                created_at=now,
                expires_at=expires_at,
            )
            await self._db.commit()
        LOGGER.info("Onboarding token issued", token_id=record["id"], duration=duration)
        return record

    async def renew(self, user_id: int, duration: str) -> dict:
        """Replace a user's expired ``InUse`` token with a fresh one.

        An unexpired ``InUse`` token is a conflict and nothing is written.
        """
        now = self._clock()
        expires_at = expiry_for(duration, now)
        async with db.store_operation(self._db, "tokens.lookup_in_use", user_id=user_id):
            user = await db.get_principal(self._db, db.users_table, user_id)
            current = await db.get_in_use_token(self._db, user_id)
        if user is None:
            raise NotFoundError("User not found")
        if current is not None:
            if not is_expired(current, now):
                raise ConflictError("User already has an active token.", error={"tokenId": current["id"]})
            try:
                async with db.store_operation(self._db, "tokens.delete_expired", user_id=user_id):
                    await db.delete_token(self._db, current["id"])
                    await self._db.commit()
            except StoreError:
                LOGGER.warning("Expired token cleanup failed", user_id=user_id, token_id=current["id"])

        token_value = self._generate()
        async with db.store_operation(self._db, "tokens.insert_renewal", user_id=user_id):
            record = await db.insert_token(
                self._db,
                token=token_value,
                status=STATUS_IN_USE,
                duration=duration,
                created_at=now,
                expires_at=expires_at,
                user_id=user_id,
            )
            await self._db.commit()

        try:
            async with db.store_operation(self._db, "tokens.link_user", user_id=user_id):
                await db.set_user_token(self._db, user_id, token_value, removed=False)
                await self._db.commit()
        except StoreError as exc:
            raise PartialFailureError(
                "Token generated and stored, but failed to update user record.",
                error={"token": public_token(record)},
            ) from exc
        LOGGER.info("Onboarding token renewed", user_id=user_id, token_id=record["id"], duration=duration)
        return record

    async def revoke(self, token_id: int) -> int:
        """Delete a token by id; deleting an unknown id is not an error."""
        async with db.store_operation(self._db, "tokens.revoke", token_id=token_id):
            deleted = await db.delete_token(self._db, token_id)
            await self._db.commit()
        LOGGER.info("Onboarding token revoked", token_id=token_id, deleted=deleted)
        return deleted

    async def history(self) -> list[dict]:
        now = self._clock()
        async with db.store_operation(self._db, "tokens.history"):
            tokens = await db.list_tokens(self._db)
        return [{**public_token(token), "expired": is_expired(token, now)} for token in tokens]

    async def user_details(self) -> list[UserTokenDetails]:
        async with db.store_operation(self._db, "tokens.user_details"):
            users = await db.list_users(self._db)
            tokens = await db.list_tokens(self._db)
        by_value = {token["token"]: token for token in tokens}
        details = []
        for user in users:
            linked = by_value.get(user["token"]) if user.get("token") else None
            details.append(
                UserTokenDetails(
                    user_id=user["id"],
                    username=user["username"],
                    token=user.get("token"),
                    token_removed=bool(user.get("token_removed")),
                    status=linked["status"] if linked else None,
                    duration=linked["duration"] if linked else None,
                    created_at=linked["created_at"] if linked else None,
                    expires_at=linked["expires_at"] if linked else None,
                )
            )
        return details

    async def unlink(self, user_id: int, token: str) -> None:
        """Delete ``token`` and detach it from the user.

        Both steps are attempted; one failing while the other succeeded is a
        partial failure.
        """
        deleted = True
        try:
            async with db.store_operation(self._db, "tokens.unlink_delete", user_id=user_id):
                await db.delete_token_by_value(self._db, token)
                await self._db.commit()
        except StoreError:
            deleted = False
        try:
            async with db.store_operation(self._db, "tokens.unlink_user", user_id=user_id):
                await db.unlink_user_token(self._db, user_id, token)
                await self._db.commit()
        except StoreError:
            if deleted:
                raise PartialFailureError("Token deleted, but failed to update user record.")
            raise
        if not deleted:
            raise PartialFailureError("User record updated, but failed to delete token.")
        LOGGER.info("Onboarding token unlinked", user_id=user_id)

    async def consume(self, token: str, user_id: int) -> None:
        """Mark a signup token ``InUse`` by ``user_id``."""
        async with db.store_operation(self._db, "tokens.consume", user_id=user_id):
            record = await db.get_token_by_value(self._db, token)
            if record is None:
                raise NotFoundError("Token not found")
            await db.mark_token_in_use(self._db, record["id"], user_id)
            await self._db.commit()

    async def check_available(self, token: str) -> dict:
        """Return the token row if it can still be used to sign up."""
        async with db.store_operation(self._db, "tokens.check"):
            record = await db.get_token_by_value(self._db, token)
        if record is None:
            raise ValidationError("Invalid token")
        if record["status"] == STATUS_IN_USE:
            raise ValidationError("Token already in use")
        if is_expired(record, self._clock()):
            raise ValidationError("Token expired")
        return record

    async def exists(self, token: Optional[str]) -> bool:
        if not token:
            return False
        async with db.store_operation(self._db, "tokens.exists"):
            record = await db.get_token_by_value(self._db, token)
        return record is not None


def public_token(token: dict) -> dict:
    return {
        "id": token["id"],
        "token": token["token"],
        "status": token["status"],
        "duration": token.get("duration"),
        "userId": token.get("user_id"),
        "createdAt": token["created_at"].isoformat(),
        "expiresAt": token["expires_at"].isoformat(),
    }
