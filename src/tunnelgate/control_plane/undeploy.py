"""Best-effort teardown of a user's deployment.

The tunnel stop and the CI cancel run concurrently and fail independently.
Local deployment bookkeeping is cleared afterwards whatever they returned.
"""

from __future__ import annotations

import asyncio
import enum
from dataclasses import dataclass
from typing import Optional

import structlog

from ..common.errors import AutoUndeployedError, ServiceError, StoreError
from ..common.metrics import GLOBAL_REGISTRY, Counter
from ..common.schemas import DeploymentStatus
from .deployments import DeploymentTracker
from .github import GitHubActionsClient
from .tunnel import TunnelClient

LOGGER = structlog.get_logger("tunnelgate.undeploy")

UNDEPLOY_COUNTER = GLOBAL_REGISTRY.register(
    Counter("tunnelgate_undeploy_total", "Undeploy runs by trigger and outcome", labels=("trigger", "outcome"))
)


class StepOutcome(enum.Enum):
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


@dataclass(frozen=True)
class StepResult:
    outcome: StepOutcome
    reason: str

    @property
    def ok(self) -> bool:
        return self.outcome is not StepOutcome.FAILED


@dataclass
class UndeployResult:
    tunnel: StepResult
    ci: StepResult
    cleared: bool

    @property
    def success(self) -> bool:
        return self.tunnel.ok and self.ci.ok

    @property
    def message(self) -> str:
        parts = [self.tunnel.reason, self.ci.reason]
        if not self.cleared:
            parts.append("Local deployment state could not be cleared.")
        return " ".join(parts)

    def to_payload(self) -> dict:
        return {
            "success": self.success,
            "message": self.message,
            "tunnel": self.tunnel.outcome.value,
            "ci": self.ci.outcome.value,
            "cleared": self.cleared,
        }


def _as_step_result(outcome) -> StepResult:
    if isinstance(outcome, StepResult):
        return outcome
    if isinstance(outcome, asyncio.CancelledError):
        raise outcome
    LOGGER.error("Undeploy step raised unexpectedly", error_type=type(outcome).__name__)
    return StepResult(StepOutcome.FAILED, f"Unexpected error: {type(outcome).__name__}.")


class UndeployOrchestrator:
    def __init__(
        self,
        tracker: DeploymentTracker,
        tunnel: TunnelClient,
        github: GitHubActionsClient,
    ) -> None:
        self._tracker = tracker
        self._tunnel = tunnel
        self._github = github

    async def _stop_tunnel(self, username: str, form_number: Optional[int]) -> StepResult:
        if form_number is None:
            return StepResult(StepOutcome.SKIPPED, "No active form to stop.")
        try:
            response = await self._tunnel.stop(username, form_number)
        except ServiceError as exc:
            return StepResult(StepOutcome.FAILED, f"Tunnel stop for form {form_number} failed: {exc.message}.")
        if not response.ok:
            return StepResult(
                StepOutcome.FAILED,
                f"Tunnel stop for form {form_number} returned status {response.status_code}.",
            )
        return StepResult(StepOutcome.SUCCESS, f"Form {form_number} stopped.")

    async def _cancel_run(self, run_id: Optional[int]) -> StepResult:
        if run_id is None:
            return StepResult(StepOutcome.SKIPPED, "No active run to cancel.")
        try:
            await self._github.cancel(run_id)
        except ServiceError as exc:
            return StepResult(StepOutcome.FAILED, f"Cancelling run {run_id} failed: {exc.message}.")
        return StepResult(StepOutcome.SUCCESS, f"Run {run_id} cancelled.")

    async def undeploy(
        self,
        user_id: int,
        username: str,
        status: DeploymentStatus,
        trigger: str = "manual",
    ) -> UndeployResult:
        tunnel_result, ci_result = [
            _as_step_result(outcome)
            for outcome in await asyncio.gather(
                self._stop_tunnel(username, status.active_form_number),
                self._cancel_run(status.active_run_id),
                return_exceptions=True,
            )
        ]
        cleared = True
        try:
            await self._tracker.clear(user_id)
        except StoreError:
            cleared = False
        result = UndeployResult(tunnel=tunnel_result, ci=ci_result, cleared=cleared)
        UNDEPLOY_COUNTER.inc(trigger=trigger, outcome="success" if result.success else "partial")
        log = LOGGER.info if result.success and cleared else LOGGER.warning
        log(
            "Undeploy finished",
            user_id=user_id,
            trigger=trigger,
            tunnel=tunnel_result.outcome.value,
            ci=ci_result.outcome.value,
            cleared=cleared,
        )
        return result


async def enforce_deployment_ttl(
    orchestrator: UndeployOrchestrator,
    tracker: DeploymentTracker,
    user_id: int,
    username: str,
    status: DeploymentStatus,
) -> None:
    """Tear down a deployment past its TTL and refuse the request that noticed it."""
    if not tracker.is_stale(status):
        return
    result = await orchestrator.undeploy(user_id, username, status, trigger="ttl")
    raise AutoUndeployedError(
        "Your deployment exceeded its time limit and was automatically undeployed.",
        error=None if result.success else result.message,
    )
