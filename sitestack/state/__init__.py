"""State snapshot persistence."""

from sitestack.state.store import StateStore

__all__ = ["StateStore"]
