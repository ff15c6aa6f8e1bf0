"""Bookkeeping for a user's single active deployment."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Optional

import structlog
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.errors import NotFoundError
from ..common.schemas import DeploymentStatus
from . import db

LOGGER = structlog.get_logger("tunnelgate.deployments")


def status_from_record(record: dict) -> DeploymentStatus:
    return DeploymentStatus(
        deploy_timestamp=record.get("deploy_timestamp"),
        active_form_number=record.get("active_form_number"),
        active_run_id=record.get("active_run_id"),
    )


class DeploymentTracker:
    """Records start, stop and run attachment for the deployment of a user.

    Staleness is evaluated lazily: callers ask ``is_stale`` when they read a
    status and decide what to do about it.
    """

    def __init__(
        self,
        db_session: AsyncSession,
        ttl_seconds: int = 3600,
        clock: Callable[[], datetime] = db.utc_now,
    ) -> None:
        self._db = db_session
        self.ttl = timedelta(seconds=ttl_seconds)
        self._clock = clock

    async def status(self, user_id: int) -> DeploymentStatus:
        async with db.store_operation(self._db, "deployments.status", user_id=user_id):
            record = await db.get_principal(self._db, db.users_table, user_id)
        if record is None:
            raise NotFoundError("User not found")
        return status_from_record(record)

    def is_stale(self, status: DeploymentStatus) -> bool:
        if status.deploy_timestamp is None:
            return False
        return self._clock() - db.as_utc(status.deploy_timestamp) > self.ttl

    async def record_start(self, user_id: int, form_number: int) -> None:
        current = await self.status(user_id)
        if current.active_form_number is not None and current.active_form_number != form_number:
            # TODO: confirm with product whether switching slots should require an explicit stop first.
            LOGGER.warning(
                "Start overwrites active slot",
                user_id=user_id,
                previous_form_number=current.active_form_number,
                form_number=form_number,
            )
        async with db.store_operation(self._db, "deployments.record_start", user_id=user_id):
            await db.record_deploy_start(self._db, user_id, form_number, self._clock())
            await self._db.commit()
        LOGGER.info("Deployment started", user_id=user_id, form_number=form_number)

    async def record_stop(self, user_id: int, form_number: int) -> bool:
        """Clear the deployment if ``form_number`` is the active slot; report whether it was."""
        async with db.store_operation(self._db, "deployments.record_stop", user_id=user_id):
            cleared = await db.record_deploy_stop(self._db, user_id, form_number)
            await self._db.commit()
        if cleared:
            LOGGER.info("Deployment stopped", user_id=user_id, form_number=form_number)
        else:
            LOGGER.info("Ignoring stop for inactive slot", user_id=user_id, form_number=form_number)
        return cleared

    async def record_run_id(self, user_id: int, run_id: int) -> None:
        async with db.store_operation(self._db, "deployments.record_run_id", user_id=user_id):
            updated = await db.record_run_id(self._db, user_id, run_id, self._clock())
            await self._db.commit()
        if not updated:
            raise NotFoundError("User not found")
        LOGGER.info("Deployment run attached", user_id=user_id, run_id=run_id)

    async def clear(self, user_id: int) -> None:
        async with db.store_operation(self._db, "deployments.clear", user_id=user_id):
            await db.clear_deployment(self._db, user_id)
            await self._db.commit()


def remaining_seconds(status: DeploymentStatus, ttl_seconds: int, now: datetime) -> Optional[int]:
    if status.deploy_timestamp is None:
        return None
    elapsed = (now - db.as_utc(status.deploy_timestamp)).total_seconds()
    return max(0, int(ttl_seconds - elapsed))
