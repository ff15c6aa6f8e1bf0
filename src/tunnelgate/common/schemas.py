"""Request and response models for the tunnelgate HTTP surface."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

DeployAction = Literal["start", "stop", "update"]

# Largest value a 64-bit signed INTEGER column accepts.
MAX_ROW_ID = 2**63 - 1


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class SignInRequest(BaseModel):
    """Credentials posted by the sign-in forms."""

    username: str = Field(min_length=1, max_length=50)
    password: str = Field(min_length=1, max_length=128)

    @field_validator("username")
    @classmethod
    def _strip_username(cls, value: str) -> str:
        stripped = value.strip()
        if not stripped:
            raise ValueError("username must not be blank")
        return stripped


class SignUpRequest(SignInRequest):
    """Self-service registration gated by an onboarding token."""

    password: str = Field(min_length=8, max_length=128)
    token: str = Field(min_length=1, max_length=64)


class IssueTokenRequest(BaseModel):
    duration: str


class RenewTokenRequest(_CamelModel):
    user_id: int = Field(alias="userId", ge=1, le=MAX_ROW_ID)
    duration: str


class AdminUndeployRequest(_CamelModel):
    user_id: int = Field(alias="userId", ge=1, le=MAX_ROW_ID)


class SetActiveRunRequest(_CamelModel):
    run_id: int = Field(alias="runId", gt=0, le=MAX_ROW_ID)


class DeployActionRequest(_CamelModel):
    """Body of ``POST /deploy/action``."""

    action: DeployAction
    form_number: int = Field(alias="formNumber", strict=True, ge=1, le=5)
    form_data: dict[str, Any] = Field(alias="formData")


class WorkflowDispatchRequest(BaseModel):
    username: str = Field(min_length=1, max_length=50)


class DeploymentStatus(_CamelModel):
    """The single tracked deployment of a user; all fields null when idle."""

    deploy_timestamp: Optional[datetime] = Field(default=None, alias="deployTimestamp")
    active_form_number: Optional[int] = Field(default=None, alias="activeFormNumber")
    active_run_id: Optional[int] = Field(default=None, alias="activeRunId")

    @property
    def is_active(self) -> bool:
        return (
            self.deploy_timestamp is not None
            or self.active_form_number is not None
            or self.active_run_id is not None
        )


class WorkflowRun(BaseModel):
    """Client-safe projection of a CI workflow run."""

    id: int
    status: Optional[str] = None
    conclusion: Optional[str] = None
    run_number: Optional[int] = None
    created_at: Optional[str] = None


class WorkflowJob(BaseModel):
    """Client-safe projection of a job within a workflow run."""

    id: int
    name: Optional[str] = None
    status: Optional[str] = None
    conclusion: Optional[str] = None
