"""
Conversation and message repositories.
"""

import uuid
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from lorekeep.db.repositories.base import BaseRepository
from lorekeep.models.db import Conversation, Message


class ConversationRepository(BaseRepository[Conversation]):
    """Repository for Conversation model."""

    def __init__(self, session: Session):
        super().__init__(Conversation, session)

    def get_by_external_key(self, provider: str, external_key: str) -> Optional[Conversation]:
        """
        Get a conversation by its dedup key.

        Args:
            provider: Provider value (e.g. "cli_source_a")
            external_key: Provider-scoped conversation key

        Returns:
            Conversation or None
        """
        return (
            self.session.query(Conversation)
            .filter(
                Conversation.provider == provider,
                Conversation.external_key == external_key,
            )
            .first()
        )

    def get_by_ids(self, ids: Iterable[uuid.UUID]) -> list[Conversation]:
        id_list = list(ids)
        if not id_list:
            return []
        return self.session.query(Conversation).filter(Conversation.id.in_(id_list)).all()

    def get_all_ids(self) -> list[uuid.UUID]:
        """All conversation ids, oldest first."""
        rows = (
            self.session.query(Conversation.id)
            .order_by(Conversation.created_at, Conversation.id)
            .all()
        )
        return [row[0] for row in rows]

    def get_by_provider(self, provider: str) -> list[Conversation]:
        return (
            self.session.query(Conversation)
            .filter(Conversation.provider == provider)
            .order_by(Conversation.updated_at.desc())
            .all()
        )

    def get_recent(self, limit: int = 20) -> list[Conversation]:
        return (
            self.session.query(Conversation)
            .order_by(Conversation.updated_at.desc())
            .limit(limit)
            .all()
        )

    def count_by_provider(self) -> dict[str, int]:
        rows = (
            self.session.query(Conversation.provider, func.count(Conversation.id))
            .group_by(Conversation.provider)
            .all()
        )
        return {provider: count for provider, count in rows}


class MessageRepository(BaseRepository[Message]):
    """Repository for Message model."""

    def __init__(self, session: Session):
        super().__init__(Message, session)

    def get_for_conversation(self, conversation_id: uuid.UUID) -> list[Message]:
        """Messages of a conversation in ordering-key order."""
        return (
            self.session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.ordering_key)
            .all()
        )

    def get_by_ordering_keys(self, conversation_id: uuid.UUID) -> dict[str, Message]:
        return {m.ordering_key: m for m in self.get_for_conversation(conversation_id)}

    def count_for_conversation(self, conversation_id: uuid.UUID) -> int:
        return (
            self.session.query(func.count(Message.id))
            .filter(Message.conversation_id == conversation_id)
            .scalar()
            or 0
        )

    def get_first(self, conversation_id: uuid.UUID) -> Optional[Message]:
        return (
            self.session.query(Message)
            .filter(Message.conversation_id == conversation_id)
            .order_by(Message.ordering_key)
            .first()
        )
