"""
Deduplication and upsert engine.

Reconciles a normalized conversation from any source against the canonical
store. Conversations are keyed by (provider, external_key); messages are
keyed by ordering key within their conversation. One call is one
transaction covering the conversation row, the message diff and the search
index postings.

After a commit that changed something, a ChangeEvent is sent to the
registered listeners. That event is the only trigger for analysis work.
"""

import logging
import uuid
from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError, SQLAlchemyError
from sqlalchemy.orm import Session

from lorekeep.db.connection import db_session
from lorekeep.db.repositories import ConversationRepository, MessageRepository
from lorekeep.exceptions import StoreUnavailableError, TransientError
from lorekeep.models.db import Conversation, Message
from lorekeep.models.normalized import NormalizedConversation
from lorekeep.search.index import SearchIndexer
from lorekeep.utils.locks import KeyedLocks
from lorekeep.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

PREVIEW_LENGTH = 200

SessionFactory = Callable[[], AbstractContextManager[Session]]


@dataclass(frozen=True)
class ChangeEvent:
    """What actually changed in one conversation during an upsert."""

    conversation_id: uuid.UUID
    provider: str
    external_key: str
    created: bool
    messages_added: int
    messages_replaced: int
    metadata_changed: bool

    @property
    def affects_content(self) -> bool:
        """True when message content is new or different; metadata-only changes are not."""
        return self.created or self.messages_added > 0 or self.messages_replaced > 0


@dataclass
class UpsertOutcome:
    conversation_id: uuid.UUID
    created: bool = False
    messages_added: int = 0
    messages_replaced: int = 0
    metadata_changed: bool = False
    message_count: int = 0

    @property
    def changed(self) -> bool:
        return (
            self.created
            or self.messages_added > 0
            or self.messages_replaced > 0
            or self.metadata_changed
        )


ChangeListener = Callable[[ChangeEvent], None]


def _is_lock_contention(error: OperationalError) -> bool:
    message = str(error).lower()
    return "database is locked" in message or "deadlock" in message


class UpsertEngine:
    """
    At-most-one-writer-per-conversation upsert into the canonical store.

    The engine serializes writers for the same (provider, external_key)
    in-process; the unique constraint covers writers in other processes.
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        indexer: Optional[SearchIndexer] = None,
    ):
        self.session_factory = session_factory
        self.indexer = indexer or SearchIndexer()
        self._locks = KeyedLocks()
        self._listeners: list[ChangeListener] = []

    def add_listener(self, listener: ChangeListener) -> None:
        self._listeners.append(listener)

    def upsert(self, incoming: NormalizedConversation) -> UpsertOutcome:
        """
        Insert or merge one conversation.

        Raises:
            TransientError: Lock contention or a concurrent insert of the same key
            StoreUnavailableError: Any other database failure
        """
        key = (incoming.provider.value, incoming.external_key)
        with self._locks.hold(key):
            try:
                with self.session_factory() as session:
                    outcome = self._reconcile(session, incoming)
            except IntegrityError as e:
                raise TransientError(
                    f"Concurrent write to {incoming.external_key}: {e.orig}"
                ) from e
            except OperationalError as e:
                if _is_lock_contention(e):
                    raise TransientError(f"Store busy: {e.orig}") from e
                raise StoreUnavailableError(f"Store unavailable: {e.orig}") from e
            except SQLAlchemyError as e:
                raise StoreUnavailableError(f"Upsert failed: {e}") from e

        if outcome.changed:
            self._emit(
                ChangeEvent(
                    conversation_id=outcome.conversation_id,
                    provider=incoming.provider.value,
                    external_key=incoming.external_key,
                    created=outcome.created,
                    messages_added=outcome.messages_added,
                    messages_replaced=outcome.messages_replaced,
                    metadata_changed=outcome.metadata_changed,
                )
            )
        return outcome

    def _reconcile(self, session: Session, incoming: NormalizedConversation) -> UpsertOutcome:
        conv_repo = ConversationRepository(session)
        msg_repo = MessageRepository(session)

        conversation = conv_repo.get_by_external_key(
            incoming.provider.value, incoming.external_key
        )

        if conversation is None:
            created_at = incoming.effective_created_at or utcnow()
            conversation = conv_repo.create(
                provider=incoming.provider.value,
                source_kind=incoming.source_kind.value,
                external_key=incoming.external_key,
                title=incoming.title or "",
                project_path=incoming.project_path,
                summary=incoming.summary,
                preview_text=incoming.preview_text,
                created_at=created_at,
                updated_at=incoming.effective_updated_at or created_at,
                message_count=0,
            )
            outcome = UpsertOutcome(conversation_id=conversation.id, created=True)
            stored: dict[str, Message] = {}
        else:
            outcome = UpsertOutcome(conversation_id=conversation.id)
            outcome.metadata_changed = self._merge_metadata(conversation, incoming)
            stored = msg_repo.get_by_ordering_keys(conversation.id)

        seen: set[str] = set()
        for message in incoming.messages:
            ordering_key = message.ordering_key
            if ordering_key in seen:
                continue
            seen.add(ordering_key)

            existing = stored.get(ordering_key)
            if existing is None:
                session.add(
                    Message(
                        conversation_id=conversation.id,
                        role=message.role,
                        content=message.content,
                        timestamp=message.timestamp,
                        ordering_key=ordering_key,
                    )
                )
                outcome.messages_added += 1
            elif existing.content != message.content or existing.role != message.role:
                existing.content = message.content
                existing.role = message.role
                outcome.messages_replaced += 1
        session.flush()

        content_changed = outcome.messages_added > 0 or outcome.messages_replaced > 0
        conversation.message_count = msg_repo.count_for_conversation(conversation.id)
        outcome.message_count = conversation.message_count

        if incoming.preview_text is None and (content_changed or outcome.created):
            first = msg_repo.get_first(conversation.id)
            conversation.preview_text = first.content[:PREVIEW_LENGTH] if first else None

        if content_changed and not outcome.created:
            # Stored vector no longer describes the conversation
            conversation.embedding = None
            conversation.embedding_provider = None

        if outcome.changed:
            session.flush()
            self.indexer.index_conversation(session, conversation)

        logger.debug(
            f"Upserted {incoming.provider.value}:{incoming.external_key} "
            f"created={outcome.created} added={outcome.messages_added} "
            f"replaced={outcome.messages_replaced} metadata={outcome.metadata_changed}"
        )
        return outcome

    @staticmethod
    def _merge_metadata(conversation: Conversation, incoming: NormalizedConversation) -> bool:
        """Overwrite header fields from the source. id and created_at are never touched."""
        changed = False
        fields: dict[str, object] = {
            "source_kind": incoming.source_kind.value,
            "title": incoming.title or "",
            "project_path": incoming.project_path,
            "summary": incoming.summary,
        }
        if incoming.preview_text is not None:
            fields["preview_text"] = incoming.preview_text

        for name, value in fields.items():
            if getattr(conversation, name) != value:
                setattr(conversation, name, value)
                changed = True

        incoming_updated: Optional[datetime] = incoming.effective_updated_at
        if incoming_updated is not None and incoming_updated > conversation.updated_at:
            conversation.updated_at = incoming_updated
            changed = True
        return changed

    def _emit(self, event: ChangeEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception as e:
                logger.error(
                    f"Change listener failed for conversation {event.conversation_id}: {e}",
                    exc_info=True,
                )
