"""Configuration for the flux workflow runner.

Configuration is loaded from:
- environment variables
- and a local `.env` file (if present)

Each setting accepts a prefixed variable (`FLUX_INTERVAL`) and, where the
task-runner convention already used one, the bare historical name
(`interval`, `timeout`, `jobs`, `quiet`, `verbose`, `trace`, `force`).
"""

from __future__ import annotations

import signal
from pathlib import Path

from pydantic import AliasChoices, Field, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from .workflow.expression import split_top


def _alias(*names: str) -> AliasChoices:
    return AliasChoices(*names)


class FluxSettings(BaseSettings):
    """Settings for evaluating combinator expressions.

    Notes:
        Pydantic-settings supports overriding the env file in tests via:
        `FluxSettings(_env_file=path_to_env)`.
    """

    interval: float = Field(
        default=5.0,
        ge=0,
        validation_alias=_alias("FLUX_INTERVAL", "interval"),
        description="Seconds between retry attempts",
    )
    loop_interval: float = Field(
        default=1.0,
        ge=0,
        validation_alias=_alias("FLUX_LOOP_INTERVAL"),
        description="Seconds between loop-until attempts",
    )
    backoff: float = Field(
        default=1.0,
        ge=1.0,
        validation_alias=_alias("FLUX_BACKOFF"),
        description="Retry delay multiplier; 1.0 keeps the interval constant",
    )
    max_interval: float = Field(
        default=60.0,
        ge=0,
        validation_alias=_alias("FLUX_MAX_INTERVAL"),
        description="Upper bound on the retry delay",
    )
    timeout: float = Field(
        default=5.0,
        gt=0,
        validation_alias=_alias("FLUX_TIMEOUT", "timeout"),
        description="Default timeout in seconds when an expression gives none",
    )
    timeout_signal: str = Field(
        default="SIGTERM",
        validation_alias=_alias("FLUX_TIMEOUT_SIGNAL"),
        description="Signal sent to a timed-out process group",
    )
    kill_grace: float = Field(
        default=2.0,
        ge=0,
        validation_alias=_alias("FLUX_KILL_GRACE"),
        description="Seconds between the termination signal and SIGKILL",
    )
    jobs: int = Field(
        default=2,
        ge=1,
        validation_alias=_alias("FLUX_JOBS", "jobs"),
        description="Concurrency bound for parallel",
    )
    cancel_on_failure: bool = Field(
        default=False,
        validation_alias=_alias("FLUX_CANCEL_ON_FAILURE"),
        description="join/parallel: cancel running siblings once a child fails",
    )
    propagate_failure: bool = Field(
        default=False,
        validation_alias=_alias("FLUX_PROPAGATE_FAILURE"),
        description="join/parallel: report the first child failure instead of 0",
    )

    quiet: bool = Field(default=False, validation_alias=_alias("FLUX_QUIET", "quiet"))
    verbose: bool = Field(default=False, validation_alias=_alias("FLUX_VERBOSE", "verbose"))
    trace: bool = Field(default=False, validation_alias=_alias("FLUX_TRACE", "trace"))
    force: bool = Field(
        default=False,
        validation_alias=_alias("FLUX_FORCE", "force"),
        description="stage enter discards a stack file left behind by an earlier run",
    )

    delimiter: str = Field(
        default=",",
        min_length=1,
        max_length=1,
        validation_alias=_alias("FLUX_DELIMITER"),
        description="Argument separator in expressions",
    )
    stage_dir: Path = Field(
        default=Path("."),
        validation_alias=_alias("FLUX_STAGE_DIR"),
        description="Directory holding stage stack files and supervisor status files",
    )
    stage_lock: bool = Field(
        default=False,
        validation_alias=_alias("FLUX_STAGE_LOCK"),
        description="Hold a per-stage advisory lock around each stack rewrite",
    )
    actions_file: Path = Field(
        default=Path("flux.actions.json"),
        validation_alias=_alias("FLUX_ACTIONS_FILE"),
        description="JSON file with action definitions (optional)",
    )

    at_exit: str = Field(
        default="",
        validation_alias=_alias("FLUX_AT_EXIT"),
        description="Comma-separated expressions always run when the supervisor exits",
    )
    interrupt_action: str | None = Field(
        default=None,
        validation_alias=_alias("FLUX_INTERRUPT_ACTION"),
        description="Expression run when the supervisor traps SIGINT",
    )
    supervisor_enabled: bool = Field(
        default=True,
        validation_alias=_alias("FLUX_SUPERVISOR"),
        description="Install the supervisor's SIGINT trap",
    )
    disable_hooks: bool = Field(
        default=False,
        validation_alias=_alias("FLUX_DISABLE_HOOKS"),
        description="Skip <action>.pre and <action>.post hooks",
    )

    log_level: str = Field(
        default="INFO",
        validation_alias=_alias("LOG_LEVEL"),
        description="Root logging level",
    )

    model_config = SettingsConfigDict(
        env_prefix="",
        env_file=".env",
        extra="ignore",
        populate_by_name=True,
    )

    @field_validator("timeout_signal")
    @classmethod
    def _known_signal(cls, value: str) -> str:
        name = value.strip().upper()
        if not name.startswith("SIG"):
            name = f"SIG{name}"
        if name not in signal.Signals.__members__:
            raise ValueError(f"Unknown signal: {value!r}")
        return name

    @field_validator("delimiter")
    @classmethod
    def _usable_delimiter(cls, value: str) -> str:
        if value in "()/\"'" or value.isspace() or value.isalnum():
            raise ValueError(f"Delimiter cannot be {value!r}")
        return value

    @model_validator(mode="after")
    def _interval_cap(self) -> FluxSettings:
        if self.max_interval < self.interval:
            raise ValueError("FLUX_MAX_INTERVAL must be >= FLUX_INTERVAL")
        return self

    @property
    def effective_log_level(self) -> str:
        if self.trace:
            return "DEBUG"
        if self.quiet:
            return "WARNING"
        return self.log_level

    @property
    def at_exit_hooks(self) -> list[str]:
        if not self.at_exit.strip():
            return []
        return [part.strip() for part in split_top(self.at_exit, ",") if part.strip()]
