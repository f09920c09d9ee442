"""Forge MCP: coordinate a fleet of autonomous coding workers on one shared repository."""

__version__ = "0.1.0"

__all__ = ["__version__"]
