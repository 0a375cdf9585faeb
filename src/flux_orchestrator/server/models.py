"""Pydantic models for the REST server."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Literal

from pydantic import BaseModel, Field


class RunRequest(BaseModel):
    expressions: list[str] = Field(min_length=1)
    stdin: str | None = None


RunStatus = Literal["queued", "running", "succeeded", "failed", "cancelled"]


class ApiRun(BaseModel):
    run_id: str
    expression: str
    status: RunStatus

    created_at: datetime
    updated_at: datetime

    exit_status: int | None = None
    timed_out: bool = False
    output: str = ""
    outcome: dict[str, Any] | None = None
    error: str | None = None


class ApiAction(BaseModel):
    name: str
    kind: str
    description: str = ""


class ApiStage(BaseModel):
    name: str
    file: str
    exists: bool
    stack: list[Any] = Field(default_factory=list)
