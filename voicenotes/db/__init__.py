"""Database module for the note processing pipeline."""

from .connection import get_session, engine, async_session_factory
from .models import (
    Base,
    Note,
    ProjectKnowledge,
    RateLimitWindow,
)

__all__ = [
    "get_session",
    "engine",
    "async_session_factory",
    "Base",
    "Note",
    "ProjectKnowledge",
    "RateLimitWindow",
]
