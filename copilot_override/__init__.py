"""Copilot-compatible completion proxy that rewrites requests for other model providers."""

__version__ = "0.1.0"
