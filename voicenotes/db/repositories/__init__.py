"""Repository module for database operations."""

from .base import BaseRepository
from .knowledge import ProjectKnowledgeRepository
from .notes import NoteRepository
from .rate_limits import RateLimitRepository

__all__ = [
    "BaseRepository",
    "NoteRepository",
    "ProjectKnowledgeRepository",
    "RateLimitRepository",
]
