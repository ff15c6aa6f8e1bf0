"""Application configuration for the tunnelgate services."""

from __future__ import annotations

from typing import Optional

from pydantic import Field, SecretStr, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def env_field(default, env_name: str):
    return Field(default, validation_alias=env_name)


class ControlPlaneSettings(BaseSettings):
    """Runtime settings for the session and deployment API."""

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")

    database_url: str = env_field(..., "TUNNELGATE_DATABASE_URL")
    environment: str = env_field("development", "TUNNELGATE_ENVIRONMENT")

    github_token: Optional[SecretStr] = env_field(None, "TUNNELGATE_GITHUB_TOKEN")
    github_org: Optional[str] = env_field(None, "TUNNELGATE_GITHUB_ORG")
    github_repo: Optional[str] = env_field(None, "TUNNELGATE_GITHUB_REPO")
    github_workflow_file: str = env_field("blank.yml", "TUNNELGATE_GITHUB_WORKFLOW_FILE")
    github_ref: str = env_field("main", "TUNNELGATE_GITHUB_REF")
    github_api_base: str = env_field("https://api.github.com", "TUNNELGATE_GITHUB_API_BASE")
    github_cache_ttl_seconds: float = env_field(120.0, "TUNNELGATE_GITHUB_CACHE_TTL")
    run_search_chunk_size: int = env_field(5, "TUNNELGATE_RUN_SEARCH_CHUNK")
    run_search_per_page: int = env_field(30, "TUNNELGATE_RUN_SEARCH_PER_PAGE")

    tunnel_host: str = env_field("loca.lt", "TUNNELGATE_TUNNEL_HOST")
    tunnel_name_suffix: str = env_field("7890", "TUNNELGATE_TUNNEL_SUFFIX")
    http_timeout_seconds: float = env_field(20.0, "TUNNELGATE_HTTP_TIMEOUT")

    session_max_age_seconds: int = env_field(86400, "TUNNELGATE_SESSION_MAX_AGE")
    admin_session_ttl_seconds: int = env_field(86400, "TUNNELGATE_ADMIN_SESSION_TTL")
    deployment_ttl_seconds: int = env_field(3600, "TUNNELGATE_DEPLOYMENT_TTL")
    password_hash_rounds: int = env_field(12, "TUNNELGATE_BCRYPT_ROUNDS")

    auth_body_limit_bytes: int = env_field(1024, "TUNNELGATE_AUTH_BODY_LIMIT")
    api_body_limit_bytes: int = env_field(100 * 1024, "TUNNELGATE_API_BODY_LIMIT")
    auth_path_prefixes: list[str] = Field(
        default_factory=lambda: ["/auth", "/admin"],
        validation_alias="TUNNELGATE_AUTH_PATH_PREFIXES",
    )

    metrics_token: Optional[SecretStr] = env_field(None, "TUNNELGATE_METRICS_TOKEN")
    log_level: str = env_field("INFO", "TUNNELGATE_LOG_LEVEL")
    otel_exporter_endpoint: Optional[str] = env_field(None, "TUNNELGATE_OTEL_EXPORTER_ENDPOINT")
    otel_exporter_headers: Optional[str] = env_field(None, "TUNNELGATE_OTEL_EXPORTER_HEADERS")
    otel_sampler_ratio: float = env_field(0.1, "TUNNELGATE_OTEL_SAMPLER_RATIO")

    @field_validator("auth_path_prefixes", mode="before")
    @classmethod
    def _split_auth_prefixes(cls, value):
        if isinstance(value, str):
            return [item.strip() for item in value.split(",") if item.strip()]
        return value

    @field_validator("environment", mode="before")
    @classmethod
    def _normalize_environment(cls, value):
        if isinstance(value, str):
            return value.strip().lower()
        return value

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def github_token_value(self) -> Optional[str]:
        if self.github_token is None:
            return None
        token = self.github_token.get_secret_value().strip()
        return token or None
