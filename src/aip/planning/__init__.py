"""
Dry-run planning utilities for implementation requests.
"""

from importlib import import_module
from typing import Any

__all__ = ["ImplementationPlan", "PlanItem", "generate_plan"]


def __getattr__(name: str) -> Any:
    """Lazily import planning helpers."""
    if name in __all__:
        module = import_module("aip.planning.estimates")
        return getattr(module, name)
    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")
