"""Agentic tool-execution runtime: registry, approval gating and ordered lifecycle events."""

__version__ = "0.1.0"

__all__ = ["__version__"]
