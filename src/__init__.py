# src/__init__.py — v1
"""bookweb: PDF book to structured web pipeline."""

from bookweb.version import __version__

__all__ = ["__version__"]
