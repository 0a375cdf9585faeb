"""Combinator algebra over actions.

This package introduces first-class types for:
- Actions and the registry that resolves them by name
- Combinator expressions (parsing and rendering)
- Evaluation with an explicit context and cancellation token
- Pipelines, joins and stage stacks

Failures are values (`Outcome`), collapsed to an exit status only at the
outer boundary.
"""

__all__: list[str] = []
