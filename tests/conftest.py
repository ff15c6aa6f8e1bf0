from __future__ import annotations

import re
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Optional

import httpx
import pytest
import pytest_asyncio

from tunnelgate.common.security import hash_password
from tunnelgate.common.settings import ControlPlaneSettings
from tunnelgate.control_plane import db

_RUN_PATH = re.compile(r"/actions/runs/(\d+)$")
_JOBS_PATH = re.compile(r"/actions/runs/(\d+)/jobs$")


class FakeUpstream:
    """Stands in for GitHub and the tunnel hosts behind an ``httpx.MockTransport``."""

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tunnel_status = 200
        self.tunnel_body: Any = {"message": "ok"}
        self.tunnel_error: Optional[type[httpx.HTTPError]] = None
        self.cancel_status = 202
        self.dispatch_status = 204
        self.runs: list[dict] = []
        self.jobs: dict[int, list[dict]] = {}
        self.failing_job_runs: set[int] = set()

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.host.endswith(".loca.lt"):
            if self.tunnel_error is not None:
                raise self.tunnel_error("tunnel failure", request=request)
            return httpx.Response(self.tunnel_status, json=self.tunnel_body)

        path = request.url.path
        if path.endswith("/cancel"):
            return httpx.Response(self.cancel_status, json={})
        if path.endswith("/dispatches"):
            return httpx.Response(self.dispatch_status)
        if path.endswith("/actions/runs"):
            return httpx.Response(200, json={"total_count": len(self.runs), "workflow_runs": self.runs})
        match = _JOBS_PATH.search(path)
        if match:
            run_id = int(match.group(1))
            if run_id in self.failing_job_runs:
                return httpx.Response(500, json={"message": "internal details"})
            return httpx.Response(200, json={"jobs": self.jobs.get(run_id, [])})
        match = _RUN_PATH.search(path)
        if match:
            run_id = int(match.group(1))
            for run in self.runs:
                if run["id"] == run_id:
                    return httpx.Response(200, json=run)
        return httpx.Response(404, json={"message": "Not Found"})

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self.handler))

    def paths(self, method: Optional[str] = None) -> list[str]:
        return [
            f"{request.url.host}{request.url.path}"
            for request in self.requests
            if method is None or request.method == method
        ]


@pytest.fixture
def upstream() -> FakeUpstream:
    return FakeUpstream()


@pytest.fixture
def settings(tmp_path: Path) -> ControlPlaneSettings:
    return ControlPlaneSettings(
        TUNNELGATE_DATABASE_URL=f"sqlite+aiosqlite:///{tmp_path / 'tunnelgate.db'}",
        TUNNELGATE_GITHUB_TOKEN="ghp_test",
        TUNNELGATE_GITHUB_ORG="acme",
        TUNNELGATE_GITHUB_REPO="forms",
        TUNNELGATE_BCRYPT_ROUNDS=4,
    )


@pytest_asyncio.fixture
async def session(settings: ControlPlaneSettings):
    engine = db.create_engine(settings.database_url)
    await db.ensure_schema(engine)
    Session = db.session_factory(engine)
    session = Session()
    try:
        yield session
    finally:
        await session.close()
        await engine.dispose()


async def seed_user(
    session,
    username: str = "alice",
    password: str = "correct-horse",
    token: Optional[str] = "tok-alice",
    token_expires_in: timedelta = timedelta(days=90),
) -> int:
    user_id = await db.create_user(session, username, hash_password(password, rounds=4), token)
    if token is not None:
        now = datetime.now(timezone.utc)
        await db.insert_token(
            session,
            token=token,
            status="InUse",
            duration="3month",
            created_at=now - timedelta(days=1),
            expires_at=now + token_expires_in,
            user_id=user_id,
        )
    await session.commit()
    return user_id


async def seed_admin(session, username: str = "root", password: str = "admin-password") -> int:
    admin_id = await db.create_admin(session, username, hash_password(password, rounds=4))
    await session.commit()
    return admin_id
