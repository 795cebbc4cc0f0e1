"""Configuration for the workflow engine.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Nothing here is required: with no environment at all the engine runs against
an in-memory store.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class EngineSettings(BaseSettings):
    """Settings for the workflow engine.

    Environment variables:
    - LOG_LEVEL                          (optional)
    - WORKFLOW_STATE_PATH                (optional; empty keeps state in memory)
    - WORKFLOW_FOREACH_MAX_ITEMS         (optional)
    - WORKFLOW_OUTBOUND_TIMEOUT_MS       (optional)
    - WORKFLOW_OUTBOUND_MAX_RETRIES      (optional)
    - WORKFLOW_OUTBOUND_RETRY_DELAY_MS   (optional)
    - WORKFLOW_PUBLIC_BASE_URL           (optional)

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `EngineSettings(_env_file=path_to_env)`.
    """

    log_level: str = Field(
        default="INFO",
        validation_alias="LOG_LEVEL",
        description="Root logging level",
    )

    state_path: Path | None = Field(
        default=None,
        validation_alias="WORKFLOW_STATE_PATH",
        description="JSON file where workflows, runs and counters are persisted",
    )

    foreach_max_items: int = Field(
        default=100,
        validation_alias="WORKFLOW_FOREACH_MAX_ITEMS",
        description="Largest collection a foreach step may fan out over",
        ge=1,
    )

    outbound_timeout_ms: int = Field(
        default=30_000,
        validation_alias="WORKFLOW_OUTBOUND_TIMEOUT_MS",
        description="Timeout for external/webhook calls that do not set their own",
        gt=0,
    )
    outbound_max_retries: int = Field(
        default=3,
        validation_alias="WORKFLOW_OUTBOUND_MAX_RETRIES",
        description="Retries after the first failed attempt of an outbound call",
        ge=0,
        le=10,
    )
    outbound_retry_delay_ms: int = Field(
        default=1_000,
        validation_alias="WORKFLOW_OUTBOUND_RETRY_DELAY_MS",
        description="Base delay for exponential backoff between outbound retries",
        ge=0,
    )

    public_base_url: str = Field(
        default="",
        validation_alias="WORKFLOW_PUBLIC_BASE_URL",
        description=(
            "Externally reachable base URL of this server, used to build the callback "
            "URLs handed to external systems. Empty yields relative URLs."
        ),
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
    )

    @field_validator("state_path", mode="before")
    @classmethod
    def _blank_path_is_memory(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @field_validator("log_level")
    @classmethod
    def _known_level(cls, value: str) -> str:
        level = value.strip().upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ValueError(f"Unknown LOG_LEVEL {value!r}")
        return level
