"""Configuration for the REST server.

Combinator behaviour (intervals, timeouts, stage directory, action file) comes
from :class:`flux_orchestrator.orchestrator.config.FluxSettings`; this class
only holds server concerns.
"""

from __future__ import annotations

from pathlib import Path

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class ServerSettings(BaseSettings):
    """Settings for the REST API."""

    runs_state_path: Path = Field(
        default=Path("flux_state"),
        validation_alias="FLUX_SERVER_STATE_PATH",
        description="Directory where run records are persisted",
    )

    max_output_bytes: int = Field(
        default=64 * 1024,
        validation_alias="FLUX_SERVER_MAX_OUTPUT_BYTES",
        description="Captured stdout kept per run (0 keeps everything); older bytes are dropped.",
        ge=0,
    )

    # Dev-friendly CORS. Override via FLUX_CORS_ORIGINS=...
    cors_origins: str = Field(
        default="http://localhost:5173,http://127.0.0.1:5173",
        validation_alias="FLUX_CORS_ORIGINS",
        description="Comma-separated list of allowed CORS origins.",
    )

    model_config = SettingsConfigDict(
        env_prefix="", env_file=".env", extra="ignore", populate_by_name=True
    )

    def parsed_cors_origins(self) -> list[str]:
        return [o.strip() for o in self.cors_origins.split(",") if o.strip()]

    @property
    def runs_state_file(self) -> Path:
        return self.runs_state_path / "runs.json"
