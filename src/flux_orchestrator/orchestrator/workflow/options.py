"""Typed options for each combinator.

Options are frozen pydantic models built once from `FluxSettings` and
validated before evaluation begins, so a bad interval or signal name fails
at startup rather than halfway through a workflow.
"""

from __future__ import annotations

import signal
from typing import TYPE_CHECKING

from pydantic import BaseModel, ConfigDict, Field, field_validator

if TYPE_CHECKING:
    from ..config import FluxSettings


class _Options(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class RetryOptions(_Options):
    interval: float = Field(default=5.0, ge=0)
    backoff: float = Field(default=1.0, ge=1.0)
    max_interval: float = Field(default=60.0, ge=0)

    def delay_for_attempt(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-indexed)."""

        if attempt < 1:
            return 0.0
        delay = self.interval * (self.backoff ** (attempt - 1))
        return min(delay, self.max_interval)


class LoopOptions(_Options):
    interval: float = Field(default=1.0, ge=0)


class TimeoutOptions(_Options):
    seconds: float = Field(default=5.0, gt=0)
    signal_name: str = "SIGTERM"
    kill_grace: float = Field(default=2.0, ge=0)

    @field_validator("signal_name")
    @classmethod
    def _known(cls, value: str) -> str:
        if value not in signal.Signals.__members__:
            raise ValueError(f"Unknown signal: {value!r}")
        return value

    @property
    def signum(self) -> signal.Signals:
        return signal.Signals[self.signal_name]


class JoinOptions(_Options):
    jobs: int = Field(default=2, ge=1)
    cancel_on_failure: bool = False
    propagate_failure: bool = False


class PipelineOptions(_Options):
    preview: bool = False
    preview_bytes: int = Field(default=2048, ge=0)


class StageOptions(_Options):
    force: bool = False


class CombinatorOptions(_Options):
    retry: RetryOptions = RetryOptions()
    loop: LoopOptions = LoopOptions()
    timeout: TimeoutOptions = TimeoutOptions()
    join: JoinOptions = JoinOptions()
    pipeline: PipelineOptions = PipelineOptions()
    stage: StageOptions = StageOptions()
    delimiter: str = ","
    quiet: bool = False

    @classmethod
    def from_settings(cls, settings: FluxSettings) -> CombinatorOptions:
        return cls(
            retry=RetryOptions(
                interval=settings.interval,
                backoff=settings.backoff,
                max_interval=settings.max_interval,
            ),
            loop=LoopOptions(interval=settings.loop_interval),
            timeout=TimeoutOptions(
                seconds=settings.timeout,
                signal_name=settings.timeout_signal,
                kill_grace=settings.kill_grace,
            ),
            join=JoinOptions(
                jobs=settings.jobs,
                cancel_on_failure=settings.cancel_on_failure,
                propagate_failure=settings.propagate_failure,
            ),
            pipeline=PipelineOptions(preview=settings.verbose or settings.trace),
            stage=StageOptions(force=settings.force),
            delimiter=settings.delimiter,
            quiet=settings.quiet,
        )
