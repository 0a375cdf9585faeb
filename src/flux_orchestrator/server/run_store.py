"""Simple persisted run tracking for server background runs.

Run records are written to a JSON file so the API can report on finished runs
after a restart (best-effort). Runs that were still active when the server
stopped stay in their last recorded state.
"""

from __future__ import annotations

import json
import threading
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel


class RunRecord(BaseModel):
    run_id: str
    expression: str
    status: str
    created_at: str
    updated_at: str

    exit_status: int | None = None
    timed_out: bool = False
    output: str = ""
    outcome: dict[str, Any] | None = None
    error: str | None = None

    @property
    def finished(self) -> bool:
        return self.status in {"succeeded", "failed", "cancelled"}


def _utc_iso_now() -> str:
    return datetime.now(tz=UTC).isoformat()


@dataclass
class RunStore:
    path: Path

    def __post_init__(self) -> None:
        self._lock = threading.Lock()

    def _load_unlocked(self) -> list[RunRecord]:
        if not self.path.exists():
            return []
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return []
        if not isinstance(raw, list):
            return []
        return [RunRecord.model_validate(item) for item in raw]

    def _save_unlocked(self, runs: list[RunRecord]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = [r.model_dump(mode="json") for r in runs]
        self.path.write_text(
            json.dumps(payload, indent=2, ensure_ascii=False) + "\n", encoding="utf-8"
        )

    def list(self) -> list[RunRecord]:
        with self._lock:
            return self._load_unlocked()

    def get(self, run_id: str) -> RunRecord | None:
        with self._lock:
            for run in self._load_unlocked():
                if run.run_id == run_id:
                    return run
            return None

    def create(self, *, run_id: str, expression: str) -> RunRecord:
        with self._lock:
            runs = self._load_unlocked()
            now = _utc_iso_now()
            record = RunRecord(
                run_id=run_id,
                expression=expression,
                status="queued",
                created_at=now,
                updated_at=now,
            )
            runs.append(record)
            self._save_unlocked(runs)
            return record

    def update(self, run_id: str, **updates: object) -> RunRecord:
        with self._lock:
            runs = self._load_unlocked()
            for idx, run in enumerate(runs):
                if run.run_id != run_id:
                    continue
                merged = run.model_copy(update={"updated_at": _utc_iso_now(), **updates})
                runs[idx] = merged
                self._save_unlocked(runs)
                return merged
            raise KeyError(run_id)
