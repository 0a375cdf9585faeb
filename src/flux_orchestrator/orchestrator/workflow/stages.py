"""Stage stacks: named checkpoints holding a LIFO stack of JSON records.

A stage owns exactly one JSON array. The file-backed store keeps one file per
stage name (``.flux.stage.<name>``) and rewrites the whole array on every
mutation. Files are not namespaced by session: two workflows on the same host
using the same stage name share one stack.

Without ``lock=True`` concurrent pushers from parallel actions race and can
lose updates; callers must serialize pushes to a stage themselves. With
``lock=True`` every read-modify-write holds an advisory ``fcntl`` lock on a
sibling ``.lock`` file.
"""

from __future__ import annotations

import contextlib
import fcntl
import json
import logging
import re
import threading
from collections.abc import Iterator, Mapping
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Protocol

logger = logging.getLogger(__name__)

STAGE_FILE_PREFIX = ".flux.stage."
ENTERED_KEY = "stage.entered"
STAGE_ENV = "FLUX_STAGE"

_VALID_NAME = re.compile(r"^[A-Za-z0-9_.\-]+$")


def validate_stage_name(name: str) -> str:
    if not name or not _VALID_NAME.match(name) or name in {".", ".."}:
        raise ValueError(f"Invalid stage name: {name!r}")
    return name


def entered_marker() -> dict[str, Any]:
    return {ENTERED_KEY: datetime.now(tz=UTC).isoformat()}


def current_stage(env: Mapping[str, str]) -> str | None:
    """Stage entered by the process that launched this one, if any."""

    name = env.get(STAGE_ENV, "").strip()
    if not name:
        return None
    try:
        return validate_stage_name(name)
    except ValueError:
        logger.warning("Ignoring invalid inherited stage", extra={"value": name})
        return None


class StageStore(Protocol):
    def push(self, name: str, record: Any) -> None: ...

    def pop(self, name: str) -> Any | None: ...

    def peek(self, name: str) -> Any | None: ...

    def stack(self, name: str) -> list[Any]: ...

    def exists(self, name: str) -> bool: ...

    def clean(self, name: str) -> bool: ...


class FileStageStore:
    """Stage stacks persisted as JSON arrays under `stage_dir`."""

    def __init__(self, stage_dir: Path, *, lock: bool = False) -> None:
        self._dir = stage_dir
        self._lock = lock

    def file(self, name: str) -> Path:
        return self._dir / f"{STAGE_FILE_PREFIX}{validate_stage_name(name)}"

    @contextlib.contextmanager
    def _locked(self, name: str) -> Iterator[None]:
        if not self._lock:
            yield
            return
        lock_path = self.file(name).with_name(self.file(name).name + ".lock")
        lock_path.parent.mkdir(parents=True, exist_ok=True)
        with lock_path.open("a", encoding="utf-8") as handle:
            fcntl.flock(handle.fileno(), fcntl.LOCK_EX)
            try:
                yield
            finally:
                fcntl.flock(handle.fileno(), fcntl.LOCK_UN)

    def _read(self, name: str) -> list[Any]:
        path = self.file(name)
        if not path.exists():
            return []
        text = path.read_text(encoding="utf-8").strip()
        if not text:
            return []
        raw = json.loads(text)
        if not isinstance(raw, list):
            raise ValueError(f"Stage file is not a JSON array: {path}")
        return raw

    def _write(self, name: str, items: list[Any]) -> None:
        path = self.file(name)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(json.dumps(items, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")

    def push(self, name: str, record: Any) -> None:
        with self._locked(name):
            items = self._read(name)
            items.append(record)
            self._write(name, items)
        logger.debug("Stage push", extra={"stage": name, "depth": len(items)})

    def pop(self, name: str) -> Any | None:
        with self._locked(name):
            items = self._read(name)
            if not items:
                return None
            record = items.pop()
            self._write(name, items)
        logger.debug("Stage pop", extra={"stage": name, "depth": len(items)})
        return record

    def peek(self, name: str) -> Any | None:
        items = self._read(name)
        return items[-1] if items else None

    def stack(self, name: str) -> list[Any]:
        return self._read(name)

    def exists(self, name: str) -> bool:
        return self.file(name).exists()

    def clean(self, name: str) -> bool:
        path = self.file(name)
        with self._locked(name):
            if not path.exists():
                return False
            path.unlink()
        if self._lock:
            with contextlib.suppress(FileNotFoundError):
                path.with_name(path.name + ".lock").unlink()
        return True


class MemoryStageStore:
    """In-process stage stacks, used by tests and embedded evaluators."""

    def __init__(self) -> None:
        self._stacks: dict[str, list[Any]] = {}
        self._guard = threading.Lock()

    def push(self, name: str, record: Any) -> None:
        with self._guard:
            self._stacks.setdefault(validate_stage_name(name), []).append(record)

    def pop(self, name: str) -> Any | None:
        with self._guard:
            items = self._stacks.get(name)
            return items.pop() if items else None

    def peek(self, name: str) -> Any | None:
        with self._guard:
            items = self._stacks.get(name)
            return items[-1] if items else None

    def stack(self, name: str) -> list[Any]:
        with self._guard:
            return list(self._stacks.get(name, []))

    def exists(self, name: str) -> bool:
        with self._guard:
            return name in self._stacks

    def clean(self, name: str) -> bool:
        with self._guard:
            return self._stacks.pop(name, None) is not None
