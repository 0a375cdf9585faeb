"""FastAPI server adapter for flux-orchestrator.

This module exposes a REST API for submitting workflow expressions and
inspecting runs and stage stacks.

Design intent:
- Keep evaluation logic in `flux_orchestrator.orchestrator.*`
- Keep server-specific concerns (routing, CORS, run tracking) here
"""

from __future__ import annotations

__all__ = ["create_app"]

from flux_orchestrator.server.app import create_app
