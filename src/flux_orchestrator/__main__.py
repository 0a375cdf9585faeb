"""Allow `python -m flux_orchestrator`, used when actions re-enter the runner."""

from __future__ import annotations

from flux_orchestrator.orchestrator.main import main

raise SystemExit(main())
