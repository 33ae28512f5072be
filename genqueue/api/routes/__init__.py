"""API routes package."""

from . import jobs, backends, stats

__all__ = ["jobs", "backends", "stats"]
