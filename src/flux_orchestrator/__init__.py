"""Flux Orchestrator.

Compose shell commands and other actions into workflows with control-flow
combinators (and, or, retry, timeout, join, pipeline, stages, ...), run them
under a supervisor that owns cancellation, and inspect runs over a small REST
API.
"""

__version__ = "0.1.0"

from flux_orchestrator.orchestrator.config import FluxSettings

__all__ = ["__version__", "FluxSettings"]
