"""Configuration for the REST server.

Engine behaviour (state path, fan-out cap, outbound calls) lives in
:class:`workflow_orchestrator.orchestrator.config.EngineSettings`; this class only
covers the HTTP process itself.
"""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API process."""

    host: str = Field(default="127.0.0.1", validation_alias="WORKFLOW_SERVER_HOST")
    port: int = Field(default=8000, validation_alias="WORKFLOW_SERVER_PORT", ge=1, le=65535)

    deadline_check_enabled: bool = Field(
        default=False,
        validation_alias="WORKFLOW_DEADLINE_CHECK_ENABLED",
        description=(
            "If true, the server periodically re-evaluates waiting steps and batch jobs so "
            "maxWaitMs deadlines fire without an incoming callback."
        ),
    )
    deadline_check_interval_seconds: float = Field(
        default=15.0,
        validation_alias="WORKFLOW_DEADLINE_CHECK_INTERVAL_SECONDS",
        description="Polling interval (seconds) for the deadline monitor when enabled.",
        gt=0,
    )

    # Dev-friendly CORS. Override via WORKFLOW_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="WORKFLOW_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(env_prefix="", env_file=".env", extra="ignore")

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]
