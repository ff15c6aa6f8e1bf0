"""FastAPI application serving the tunnelgate session, admin and deployment APIs."""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import Optional

import httpx
import structlog
from fastapi import Depends, FastAPI, Query, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from sqlalchemy.ext.asyncio import AsyncSession

from ..common.errors import (
    AuthError,
    ConflictError,
    ForbiddenError,
    NotFoundError,
    PartialFailureError,
    ServiceError,
    StoreError,
    ValidationError,
)
from ..common.http_security import apply_security_headers, enforce_body_limit, require_metrics_access
from ..common.metrics import GLOBAL_REGISTRY, Counter, Histogram
from ..common.observability import configure_logging, configure_tracing, instrument_fastapi_app
from ..common.schemas import (
    MAX_ROW_ID,
    AdminUndeployRequest,
    DeployActionRequest,
    IssueTokenRequest,
    RenewTokenRequest,
    SetActiveRunRequest,
    SignInRequest,
    SignUpRequest,
    WorkflowDispatchRequest,
    WorkflowJob,
    WorkflowRun,
)
from ..common.security import hash_password
from ..common.settings import ControlPlaneSettings
from . import db
from .deployments import DeploymentTracker, remaining_seconds, status_from_record
from .github import GitHubActionsClient, job_name_for
from .sessions import ADMIN, USER, Session, SessionManager, SessionToken
from .tokens import TokenService, public_token
from .tunnel import TunnelClient
from .undeploy import UndeployOrchestrator, enforce_deployment_ttl

LOGGER = structlog.get_logger("tunnelgate.control_plane")

REQUEST_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tunnelgate_http_requests_total", "HTTP requests by method and status", labels=("method", "status"))
)
REQUEST_LATENCY_HISTOGRAM = GLOBAL_REGISTRY.register(
    Histogram(
        "tunnelgate_http_request_seconds",
        buckets=[0.01, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0],
        description="HTTP request latency",
    )
)
SIGNIN_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tunnelgate_signin_total", "Sign-in attempts by principal kind and outcome", labels=("kind", "outcome"))
)


class AppState:
    """Container for application-level shared resources."""

    def __init__(
        self,
        settings: ControlPlaneSettings,
        http_client: httpx.AsyncClient,
        github_client: GitHubActionsClient,
        tunnel_client: TunnelClient,
        session_factory,
    ) -> None:
        self.settings = settings
        self.http_client = http_client
        self.github_client = github_client
        self.tunnel_client = tunnel_client
        self.session_factory = session_factory


def _get_state(request: Request) -> AppState:
    state: AppState = request.app.state.container  # type: ignore[attr-defined]
    return state


def get_settings(state: AppState = Depends(_get_state)) -> ControlPlaneSettings:
    return state.settings


async def get_session(state: AppState = Depends(_get_state)) -> AsyncSession:
    async with state.session_factory() as session:  # type: ignore[call-arg]
        yield session


def _tracker(state: AppState, db_session: AsyncSession) -> DeploymentTracker:
    return DeploymentTracker(db_session, ttl_seconds=state.settings.deployment_ttl_seconds)


def _orchestrator(state: AppState, db_session: AsyncSession) -> UndeployOrchestrator:
    return UndeployOrchestrator(_tracker(state, db_session), state.tunnel_client, state.github_client)


async def require_user_session(
    request: Request,
    state: AppState = Depends(_get_state),
    db_session: AsyncSession = Depends(get_session),
) -> Session:
    manager = SessionManager(db_session, state.settings, USER)
    session = await manager.validate(SessionToken.from_cookies(request.cookies, USER))
    if session is None:
        raise AuthError("Unauthorized: invalid or expired session")
    return session


async def require_live_user_session(
    session: Session = Depends(require_user_session),
    state: AppState = Depends(_get_state),
    db_session: AsyncSession = Depends(get_session),
) -> Session:
    """A valid user session whose deployment, if any, is still within its TTL."""
    tracker = _tracker(state, db_session)
    await enforce_deployment_ttl(
        _orchestrator(state, db_session),
        tracker,
        session.principal_id,
        session.username,
        session.deployment,
    )
    return session


async def require_admin_session(
    request: Request,
    state: AppState = Depends(_get_state),
    db_session: AsyncSession = Depends(get_session),
) -> Session:
    manager = SessionManager(db_session, state.settings, ADMIN)
    session = await manager.validate(SessionToken.from_cookies(request.cookies, ADMIN))
    if session is None:
        raise AuthError("Unauthorized: admin session required")
    return session


async def _invalidate_with_cookies(
    manager: SessionManager,
    principal_id: int,
    payload: dict,
) -> JSONResponse:
    """Forget the session and clear cookies; a store failure still clears cookies."""
    try:
        await manager.invalidate(principal_id)
        response = JSONResponse(payload)
    except StoreError as exc:
        response = JSONResponse(exc.to_payload(), status_code=exc.status_code)
    manager.clear_cookies(response)
    return response


def _deployment_payload(session: Session, settings: ControlPlaneSettings) -> dict:
    status = session.deployment
    payload = status.model_dump(by_alias=True, mode="json")
    payload["remainingSeconds"] = remaining_seconds(status, settings.deployment_ttl_seconds, db.utc_now())
    return payload


def _isoformat(value) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _validation_details(exc: RequestValidationError) -> list[dict]:
    details = []
    for error in exc.errors():
        location = [str(part) for part in error.get("loc", ()) if part not in ("body", "query")]
        details.append({"field": ".".join(location), "message": error.get("msg", "invalid value")})
    return details


def create_http_client(settings: ControlPlaneSettings) -> httpx.AsyncClient:
    return httpx.AsyncClient(timeout=settings.http_timeout_seconds)


@asynccontextmanager
async def lifespan(app: FastAPI):
    settings = ControlPlaneSettings()
    configure_logging("tunnelgate.control_plane", settings.log_level)
    configure_tracing(
        service_name="tunnelgate.control_plane",
        endpoint=settings.otel_exporter_endpoint,
        headers=settings.otel_exporter_headers,
        sampler_ratio=settings.otel_sampler_ratio,
    )
    if not settings.github_token_value:
        LOGGER.warning("GitHub token not configured; workflow endpoints will fail")
    http_client = create_http_client(settings)
    engine = db.create_engine(settings.database_url)
    await db.ensure_schema(engine)
    app.state.container = AppState(
        settings=settings,
        http_client=http_client,
        github_client=GitHubActionsClient(settings=settings, http_client=http_client),
        tunnel_client=TunnelClient(
            http_client,
            host=settings.tunnel_host,
            suffix=settings.tunnel_name_suffix,
        ),
        session_factory=db.session_factory(engine),
    )
    try:
        yield
    finally:
        await http_client.aclose()
        await engine.dispose()


def create_app() -> FastAPI:
    app = FastAPI(lifespan=lifespan)
    instrument_fastapi_app(app)

    @app.exception_handler(ServiceError)
    async def handle_service_error(request: Request, exc: ServiceError) -> JSONResponse:
        log = LOGGER.error if exc.status_code >= 500 else LOGGER.info
        log("request_failed", path=request.url.path, status=exc.status_code, error_type=type(exc).__name__)
        return JSONResponse(exc.to_payload(), status_code=exc.status_code)

    @app.exception_handler(RequestValidationError)
    async def handle_request_validation(request: Request, exc: RequestValidationError) -> JSONResponse:
        return JSONResponse(
            {"message": "Invalid request", "error": _validation_details(exc)},
            status_code=400,
        )

    @app.middleware("http")
    async def limit_request_size(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        container = getattr(request.app.state, "container", None)
        if container is not None:
            try:
                enforce_body_limit(request, container.settings)
            except ServiceError as exc:
                LOGGER.warning("request_rejected", path=request.url.path, status=exc.status_code)
                return JSONResponse(exc.to_payload(), status_code=exc.status_code)
        return await call_next(request)

    @app.middleware("http")
    async def record_request_latency(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration = time.perf_counter() - start
            REQUEST_LATENCY_HISTOGRAM.observe(duration)
            REQUEST_COUNTER.inc(method=request.method, status="500")
            LOGGER.exception(
                "http_request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration * 1000, 2),
            )
            raise

        duration = time.perf_counter() - start
        REQUEST_LATENCY_HISTOGRAM.observe(duration)
        REQUEST_COUNTER.inc(method=request.method, status=str(response.status_code))
        log_kwargs = {
            "method": request.method,
            "path": request.url.path,
            "status": response.status_code,
            "duration_ms": round(duration * 1000, 2),
        }
        if response.status_code >= 500:
            LOGGER.error("http_request", **log_kwargs)
        elif duration >= 1.0:
            LOGGER.warning("http_request", **log_kwargs)
        else:
            LOGGER.info("http_request", **log_kwargs)
        return response

    @app.middleware("http")
    async def add_security_headers(request: Request, call_next):  # noqa: ANN001 - FastAPI middleware signature
        response = await call_next(request)
        return apply_security_headers(response)

    # User authentication -------------------------------------------------

    @app.post("/auth/signup", status_code=201)
    async def signup(
        payload: SignUpRequest,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        username = payload.username.lower()
        tokens = TokenService(db_session)
        await tokens.check_available(payload.token)
        async with db.store_operation(db_session, "users.lookup"):
            existing = await db.get_principal_by_username(db_session, db.users_table, username)
        if existing is not None:
            raise ConflictError("Username already exists")
        password_hash = hash_password(payload.password, rounds=state.settings.password_hash_rounds)
        async with db.store_operation(db_session, "users.create"):
            user_id = await db.create_user(db_session, username, password_hash, payload.token)
            await db_session.commit()
        try:
            await tokens.consume(payload.token, user_id)
        except (StoreError, NotFoundError) as exc:
            raise PartialFailureError(
                "User created, but failed to mark token as used.",
                error={"userId": user_id},
            ) from exc
        LOGGER.info("User registered", user_id=user_id)
        return JSONResponse({"message": "User created successfully", "userId": user_id}, status_code=201)

    @app.post("/auth/signin")
    async def signin(
        payload: SignInRequest,
        request: Request,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        if request.headers.get("x-requested-with") != "XMLHttpRequest":
            raise ForbiddenError("Invalid request")
        manager = SessionManager(db_session, state.settings, USER)
        record = await manager.authenticate(payload.username.lower(), payload.password)
        if record is None:
            SIGNIN_COUNTER.inc(kind="user", outcome="rejected")
            raise AuthError("Invalid username or password")

        deployment = status_from_record(record)
        if record.get("active_session_id") and deployment.is_active:
            result = await _orchestrator(state, db_session).undeploy(
                record["id"], record["username"], deployment, trigger="signin"
            )
            if not result.success:
                SIGNIN_COUNTER.inc(kind="user", outcome="blocked")
                raise ConflictError(
                    "Sign-in blocked: the previous deployment could not be fully undeployed. Please try again.",
                    error=result.message,
                )

        issued = await manager.create(record)
        SIGNIN_COUNTER.inc(kind="user", outcome="success")
        response = JSONResponse(
            {"message": "Signed in successfully", "userId": issued.principal_id, "username": issued.username}
        )
        manager.set_cookies(response, issued)
        return response

    @app.post("/auth/signout")
    async def signout(
        request: Request,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, USER)
        session = await manager.validate(SessionToken.from_cookies(request.cookies, USER))
        if session is None:
            response = JSONResponse({"message": "No active session"}, status_code=401)
            manager.clear_cookies(response)
            return response
        payload: dict = {"message": "Signed out successfully"}
        if session.deployment.is_active:
            result = await _orchestrator(state, db_session).undeploy(
                session.principal_id, session.username, session.deployment, trigger="signout"
            )
            if not result.success:
                payload["warning"] = result.message
        return await _invalidate_with_cookies(manager, session.principal_id, payload)

    @app.post("/auth/beacon-signout-undeploy")
    async def beacon_signout(
        request: Request,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, USER)
        response = JSONResponse({"message": "Beacon processed"})
        session = await manager.validate(SessionToken.from_cookies(request.cookies, USER))
        if session is not None:
            if session.deployment.is_active:
                await _orchestrator(state, db_session).undeploy(
                    session.principal_id, session.username, session.deployment, trigger="beacon"
                )
            try:
                await manager.invalidate(session.principal_id)
            except StoreError:
                LOGGER.warning("Beacon signout could not invalidate session", user_id=session.principal_id)
        manager.clear_cookies(response)
        return response

    @app.post("/auth/validate-session")
    async def validate_session(
        request: Request,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, USER)
        session = await manager.validate(SessionToken.from_cookies(request.cookies, USER))
        if session is None:
            return JSONResponse({"isValid": False, "message": "Invalid session"}, status_code=401)
        if not await TokenService(db_session).exists(session.record.get("token")):
            return JSONResponse({"isValid": False, "message": "Access token revoked"}, status_code=401)
        await enforce_deployment_ttl(
            _orchestrator(state, db_session),
            _tracker(state, db_session),
            session.principal_id,
            session.username,
            session.deployment,
        )
        return JSONResponse(
            {
                "isValid": True,
                "userId": session.principal_id,
                "username": session.username,
                **session.deployment.model_dump(by_alias=True, mode="json"),
            }
        )

    @app.get("/auth/session-details")
    async def session_details(
        session: Session = Depends(require_live_user_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        token_expires_at = None
        linked = session.record.get("token")
        if linked:
            async with db.store_operation(db_session, "tokens.lookup"):
                token = await db.get_token_by_value(db_session, linked)
            token_expires_at = _isoformat(token["expires_at"]) if token else None
        return {
            "userId": session.principal_id,
            "username": session.username,
            "sessionId": session.session_id,
            "loginCount": session.record.get("login_count"),
            "lastLogin": _isoformat(session.record.get("last_login")),
            "tokenExpiresAt": token_expires_at,
            **_deployment_payload(session, state.settings),
        }

    @app.get("/auth/sessions")
    async def session_info(
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
    ) -> dict:
        return {
            "sessionId": session.session_id,
            "userId": session.principal_id,
            "username": session.username,
            "loginCount": session.record.get("login_count"),
            "lastLogin": _isoformat(session.record.get("last_login")),
            "lastLogout": _isoformat(session.record.get("last_logout")),
            "deployment": _deployment_payload(session, state.settings),
        }

    @app.delete("/auth/sessions")
    async def force_logout(
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, USER)
        return await _invalidate_with_cookies(manager, session.principal_id, {"message": "All sessions logged out"})

    @app.post("/auth/sessions")
    async def rotate_session(
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, USER)
        issued = await manager.rotate(session)
        response = JSONResponse({"message": "Session rotated", "sessionId": issued.session_id})
        manager.set_cookies(response, issued)
        return response

    @app.post("/auth/set-active-run")
    async def set_active_run(
        payload: SetActiveRunRequest,
        session: Session = Depends(require_live_user_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        await _tracker(state, db_session).record_run_id(session.principal_id, payload.run_id)
        return {"message": "Active run recorded", "runId": payload.run_id}

    @app.post("/auth/admin-undeploy")
    async def admin_undeploy(
        payload: AdminUndeployRequest,
        admin: Session = Depends(require_admin_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        async with db.store_operation(db_session, "users.lookup", user_id=payload.user_id):
            record = await db.get_principal(db_session, db.users_table, payload.user_id)
        if record is None:
            raise NotFoundError("User not found")
        result = await _orchestrator(state, db_session).undeploy(
            record["id"], record["username"], status_from_record(record), trigger="admin"
        )
        LOGGER.info("Admin undeploy", admin_id=admin.principal_id, user_id=record["id"], success=result.success)
        return result.to_payload()

    # Admin authentication ------------------------------------------------

    @app.post("/admin/auth/signin")
    async def admin_signin(
        payload: SignInRequest,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, ADMIN)
        record = await manager.authenticate(payload.username, payload.password)
        if record is None:
            SIGNIN_COUNTER.inc(kind="admin", outcome="rejected")
            raise AuthError("Invalid username or password")
        issued = await manager.create(record)
        SIGNIN_COUNTER.inc(kind="admin", outcome="success")
        response = JSONResponse({"message": "Admin signed in successfully", "adminId": issued.principal_id})
        manager.set_cookies(response, issued)
        return response

    @app.post("/admin/auth/signout")
    async def admin_signout(
        request: Request,
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        manager = SessionManager(db_session, state.settings, ADMIN)
        session = await manager.validate(SessionToken.from_cookies(request.cookies, ADMIN))
        if session is None:
            response = JSONResponse({"message": "Signed out"})
            manager.clear_cookies(response)
            return response
        return await _invalidate_with_cookies(manager, session.principal_id, {"message": "Signed out"})

    # Admin token management ------------------------------------------------

    @app.post("/admin/tokens", status_code=201)
    async def issue_token(
        payload: IssueTokenRequest,
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        record = await TokenService(db_session).issue(payload.duration)
        return JSONResponse({"message": "Token created", "token": public_token(record)}, status_code=201)

    @app.delete("/admin/tokens")
    async def revoke_token(
        token_id: Optional[int] = Query(None, alias="tokenId", ge=1, le=MAX_ROW_ID),
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        if token_id is None:
            raise ValidationError("tokenId is required")
        await TokenService(db_session).revoke(token_id)
        return {"message": "Token deleted", "tokenId": token_id}

    @app.post("/admin/renew-token", status_code=201)
    async def renew_token(
        payload: RenewTokenRequest,
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        record = await TokenService(db_session).renew(payload.user_id, payload.duration)
        return JSONResponse({"message": "Token renewed", "token": public_token(record)}, status_code=201)

    @app.get("/admin/token-history")
    async def token_history(
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        return {"tokens": await TokenService(db_session).history()}

    @app.get("/admin/token-user-details")
    async def token_user_details(
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        details = await TokenService(db_session).user_details()
        return {"users": [item.to_payload() for item in details]}

    @app.delete("/admin/user-token-link")
    async def delete_user_token_link(
        user_id: Optional[int] = Query(None, alias="userId", ge=1, le=MAX_ROW_ID),
        token: Optional[str] = Query(None),
        admin: Session = Depends(require_admin_session),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        if user_id is None or not token:
            raise ValidationError("userId and token are required")
        await TokenService(db_session).unlink(user_id, token)
        return {"message": "Token unlinked from user"}

    @app.delete("/admin/users")
    async def delete_user(
        user_id: Optional[int] = Query(None, alias="userId", ge=1, le=MAX_ROW_ID),
        token: Optional[str] = Query(None),
        admin: Session = Depends(require_admin_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> dict:
        if user_id is None:
            raise ValidationError("userId is required")
        async with db.store_operation(db_session, "users.lookup", user_id=user_id):
            record = await db.get_principal(db_session, db.users_table, user_id)
        if record is None:
            raise NotFoundError("User not found")

        payload: dict = {"message": "User deleted"}
        deployment = status_from_record(record)
        if deployment.is_active:
            result = await _orchestrator(state, db_session).undeploy(
                user_id, record["username"], deployment, trigger="admin"
            )
            if not result.success:
                payload["warning"] = result.message
        try:
            await SessionManager(db_session, state.settings, USER).invalidate(user_id)
        except StoreError:
            LOGGER.warning("Could not invalidate session of deleted user", user_id=user_id)
        linked = token or record.get("token")
        if linked:
            try:
                async with db.store_operation(db_session, "tokens.delete_for_user", user_id=user_id):
                    await db.delete_token_by_value(db_session, linked)
                    await db_session.commit()
            except StoreError:
                LOGGER.warning("Could not delete token of deleted user", user_id=user_id)
        async with db.store_operation(db_session, "users.delete", user_id=user_id):
            deleted = await db.delete_user(db_session, user_id)
            await db_session.commit()
        if not deleted:
            raise NotFoundError("User not found")
        LOGGER.info("User deleted", admin_id=admin.principal_id, user_id=user_id)
        return payload

    # Deployments ---------------------------------------------------------

    @app.post("/deploy/action")
    async def deploy_action(
        payload: DeployActionRequest,
        session: Session = Depends(require_live_user_session),
        state: AppState = Depends(_get_state),
        db_session: AsyncSession = Depends(get_session),
    ) -> JSONResponse:
        upstream = await state.tunnel_client.perform(
            session.username, payload.action, payload.form_number, payload.form_data
        )
        if not upstream.ok:
            return JSONResponse(
                {
                    "message": f"Failed to perform action via {state.settings.tunnel_host}. Status: {upstream.status_code}",
                    "error": upstream.body,
                },
                status_code=upstream.status_code,
            )
        tracker = _tracker(state, db_session)
        if payload.action == "start":
            await tracker.record_start(session.principal_id, payload.form_number)
        elif payload.action == "stop":
            await tracker.record_stop(session.principal_id, payload.form_number)
        return JSONResponse(upstream.body, status_code=upstream.status_code)

    # CI workflows --------------------------------------------------------

    @app.get("/git/latest-user-run")
    async def latest_user_run(
        logical_username: Optional[str] = Query(None, alias="logicalUsername"),
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
    ) -> dict:
        if not logical_username:
            raise ValidationError("logicalUsername is required")
        job_name = job_name_for(logical_username)
        match = await state.github_client.find_latest_run_for_job(job_name)
        if match is None:
            raise NotFoundError(f"No run found for {logical_username}")
        run, job = match
        return {
            "runId": run["id"],
            "status": run.get("status"),
            "conclusion": run.get("conclusion"),
            "jobId": job.get("id"),
            "jobName": job_name,
        }

    @app.post("/git/workflow-dispatch", status_code=204)
    async def workflow_dispatch(
        payload: WorkflowDispatchRequest,
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
    ) -> Response:
        await state.github_client.dispatch({"username": payload.username})
        return Response(status_code=204)

    @app.get("/git/runs")
    async def list_runs(
        run_id: Optional[int] = Query(None, alias="runId"),
        jobs_for_run_id: Optional[int] = Query(None, alias="jobsForRunId"),
        run_status: Optional[str] = Query(None, alias="status"),
        per_page: int = Query(30, ge=1, le=100),
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
    ) -> dict:
        github = state.github_client
        if run_id is not None:
            run = await github.get_run(run_id)
            return {"run": WorkflowRun.model_validate(run).model_dump()}
        if jobs_for_run_id is not None:
            jobs = await github.list_jobs(jobs_for_run_id)
            return {"jobs": [WorkflowJob.model_validate(job).model_dump() for job in jobs]}
        runs = await github.list_runs(per_page=per_page, status=run_status)
        return {"runs": [WorkflowRun.model_validate(run).model_dump() for run in runs]}

    @app.post("/git/runs", status_code=202)
    async def cancel_run(
        cancel_run_id: Optional[int] = Query(None, alias="cancelRunId"),
        session: Session = Depends(require_user_session),
        state: AppState = Depends(_get_state),
    ) -> JSONResponse:
        if cancel_run_id is None:
            raise ValidationError("cancelRunId is required")
        await state.github_client.cancel(cancel_run_id)
        return JSONResponse({"message": "Cancellation requested", "runId": cancel_run_id}, status_code=202)

    @app.get("/metrics", response_class=PlainTextResponse)
    async def metrics_endpoint(request: Request, settings: ControlPlaneSettings = Depends(get_settings)) -> str:
        token = settings.metrics_token.get_secret_value() if settings.metrics_token else None
        require_metrics_access(request, token)
        return GLOBAL_REGISTRY.render()

    return app
