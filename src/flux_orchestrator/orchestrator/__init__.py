"""Workflow runner components.

- Settings loaded from the environment and .env
- Structured logging
- The supervisor and CLI surface
- The combinator algebra under `workflow`
"""
