"""
Repository layer for database operations.

Provides a clean API for CRUD operations on database models.
"""

from lorekeep.db.repositories.base import BaseRepository
from lorekeep.db.repositories.conversation import ConversationRepository, MessageRepository
from lorekeep.db.repositories.learning import LearningRepository, WorkflowSignatureRepository
from lorekeep.db.repositories.sync_cursor import SyncCursorRepository

__all__ = [
    "BaseRepository",
    "ConversationRepository",
    "LearningRepository",
    "MessageRepository",
    "SyncCursorRepository",
    "WorkflowSignatureRepository",
]
