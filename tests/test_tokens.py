from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import select
from sqlalchemy.exc import OperationalError

from tunnelgate.common.errors import ConflictError, NotFoundError, PartialFailureError, ValidationError
from tunnelgate.control_plane import db
from tunnelgate.control_plane.tokens import TokenService, add_months, expiry_for

from conftest import seed_user

UTC = timezone.utc


def _fixed(moment: datetime):
    return lambda: moment


async def _tokens_for(session, user_id: int) -> list[dict]:
    result = await session.execute(
        select(db.onboarding_tokens_table).where(db.onboarding_tokens_table.c.user_id == user_id)
    )
    return [dict(row) for row in result.mappings().all()]


@pytest.mark.parametrize(
    ("start", "months", "expected"),
    [
        (datetime(2024, 1, 31, tzinfo=UTC), 3, datetime(2024, 4, 30, tzinfo=UTC)),
        (datetime(2024, 1, 31, tzinfo=UTC), 1, datetime(2024, 2, 29, tzinfo=UTC)),
        (datetime(2023, 11, 30, 12, 5, tzinfo=UTC), 3, datetime(2024, 2, 29, 12, 5, tzinfo=UTC)),
        (datetime(2024, 2, 29, tzinfo=UTC), 12, datetime(2025, 2, 28, tzinfo=UTC)),
        (datetime(2024, 8, 15, tzinfo=UTC), 6, datetime(2025, 2, 15, tzinfo=UTC)),
    ],
)
def test_add_months_uses_calendar_months(start, months, expected):
    assert add_months(start, months) == expected


def test_three_months_is_not_ninety_days():
    assert expiry_for("3month", datetime(2024, 1, 31, tzinfo=UTC)) == datetime(2024, 4, 30, tzinfo=UTC)

    created = datetime(2023, 11, 30, tzinfo=UTC)
    assert expiry_for("3month", created) == datetime(2024, 2, 29, tzinfo=UTC)
    assert created + timedelta(days=90) == datetime(2024, 2, 28, tzinfo=UTC)


@pytest.mark.asyncio
async def test_issue_sets_active_status_and_calendar_expiry(session):
    created = datetime(2024, 1, 31, tzinfo=UTC)
    record = await TokenService(session, clock=_fixed(created)).issue("3month")

    stored = await db.get_token_by_value(session, record["token"])
    assert stored["status"] == "Active"
    assert stored["user_id"] is None
    assert stored["created_at"] == created
    assert stored["expires_at"] == datetime(2024, 4, 30, tzinfo=UTC)
    assert len(record["token"]) == 16


@pytest.mark.asyncio
async def test_issue_rejects_unknown_duration(session):
    with pytest.raises(ValidationError):
        await TokenService(session).issue("2weeks")
    assert await db.list_tokens(session) == []


@pytest.mark.asyncio
async def test_renew_conflicts_when_unexpired_token_in_use(session):
    user_id = await seed_user(session)
    before = await _tokens_for(session, user_id)

    with pytest.raises(ConflictError):
        await TokenService(session).renew(user_id, "6month")

    assert await _tokens_for(session, user_id) == before


@pytest.mark.asyncio
async def test_renew_replaces_expired_token(session):
    user_id = await seed_user(session, token="tok-old", token_expires_in=timedelta(days=-1))
    generated = iter(["tok-new-0000000"])
    service = TokenService(session, generator=lambda: next(generated))

    record = await service.renew(user_id, "1year")

    tokens = await _tokens_for(session, user_id)
    assert [token["token"] for token in tokens] == ["tok-new-0000000"]
    assert tokens[0]["status"] == "InUse"
    assert record["duration"] == "1year"
    user = await db.get_principal(session, db.users_table, user_id)
    assert user["token"] == "tok-new-0000000"
    assert user["token_removed"] is False


@pytest.mark.asyncio
async def test_renew_clears_token_removed_flag(session):
    user_id = await seed_user(session, token=None)
    await db.update_principal(session, db.users_table, user_id, token_removed=True)
    await session.commit()

    await TokenService(session).renew(user_id, "3month")

    user = await db.get_principal(session, db.users_table, user_id)
    assert user["token_removed"] is False
    assert user["token"] is not None


@pytest.mark.asyncio
async def test_renew_reports_partial_failure_when_user_update_fails(session, monkeypatch):
    user_id = await seed_user(session, token=None)

    async def failing_set_user_token(*_args, **_kwargs):
        raise OperationalError("UPDATE users", {}, Exception("connection reset"))

    monkeypatch.setattr(db, "set_user_token", failing_set_user_token)

    with pytest.raises(PartialFailureError) as excinfo:
        await TokenService(session).renew(user_id, "3month")

    assert excinfo.value.status_code == 207
    tokens = await _tokens_for(session, user_id)
    assert len(tokens) == 1
    assert tokens[0]["status"] == "InUse"


@pytest.mark.asyncio
async def test_renew_unknown_user_is_not_found(session):
    with pytest.raises(NotFoundError):
        await TokenService(session).renew(999, "3month")


@pytest.mark.asyncio
async def test_revoke_is_idempotent(session):
    service = TokenService(session)
    record = await service.issue("6month")

    assert await service.revoke(record["id"]) == 1
    assert await service.revoke(record["id"]) == 0
    assert await db.get_token_by_value(session, record["token"]) is None


@pytest.mark.asyncio
async def test_history_is_newest_first_and_flags_expiry(session):
    now = datetime(2024, 6, 1, tzinfo=UTC)
    older = await TokenService(session, clock=_fixed(datetime(2023, 1, 1, tzinfo=UTC))).issue("3month")
    newer = await TokenService(session, clock=_fixed(datetime(2024, 5, 1, tzinfo=UTC))).issue("3month")

    history = await TokenService(session, clock=_fixed(now)).history()

    assert [entry["id"] for entry in history] == [newer["id"], older["id"]]
    assert [entry["expired"] for entry in history] == [False, True]


@pytest.mark.asyncio
async def test_user_details_merges_linked_token(session):
    linked_id = await seed_user(session, username="alice", token="tok-alice")
    await seed_user(session, username="bob", token=None)

    details = {item.username: item.to_payload() for item in await TokenService(session).user_details()}

    assert details["alice"]["userId"] == linked_id
    assert details["alice"]["status"] == "InUse"
    assert details["alice"]["duration"] == "3month"
    assert details["bob"]["token"] == "N/A"
    assert details["bob"]["expiresAt"] == "N/A"


@pytest.mark.asyncio
async def test_unlink_deletes_token_and_marks_user(session):
    user_id = await seed_user(session, token="tok-alice")

    await TokenService(session).unlink(user_id, "tok-alice")

    assert await db.get_token_by_value(session, "tok-alice") is None
    user = await db.get_principal(session, db.users_table, user_id)
    assert user["token"] is None
    assert user["token_removed"] is True


@pytest.mark.asyncio
async def test_check_available_rejects_consumed_token(session):
    await seed_user(session, token="tok-alice")

    with pytest.raises(ValidationError):
        await TokenService(session).check_available("tok-alice")
