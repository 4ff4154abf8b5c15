"""
Lexical search index.

A term-postings projection of conversation titles and message content.
The index is never authoritative: index_conversation() recomputes a
conversation's postings from the store, and rebuild() recreates the
whole index.
"""

import logging
import re
import uuid
from collections import Counter, defaultdict
from typing import Iterable, Optional, Sequence

from sqlalchemy.orm import Session

from lorekeep.models.db import Conversation, Message, SearchIndexEntry

logger = logging.getLogger(__name__)

FIELD_TITLE = "title"
FIELD_MESSAGE = "message"

# Per-token score by where the token was found
MESSAGE_MATCH_SCORE = 1.0
TITLE_MATCH_SCORE = 0.8

MAX_TERM_LENGTH = 128


def tokenize_text(text: Optional[str]) -> list[str]:
    """Lower-case word tokens."""
    if not text:
        return []
    return [t for t in re.findall(r"\w+", text.lower()) if len(t) <= MAX_TERM_LENGTH]


class SearchIndexer:
    """Maintains SearchIndexEntry rows and answers lexical lookups."""

    def index_conversation(
        self,
        session: Session,
        conversation: Conversation,
        messages: Optional[Iterable[Message]] = None,
    ) -> int:
        """
        Replace a conversation's postings in the current transaction.

        Args:
            session: Session holding the caller's transaction
            conversation: Conversation to index (must be flushed)
            messages: Messages to index; loaded from the store when omitted

        Returns:
            Number of postings written
        """
        session.query(SearchIndexEntry).filter(
            SearchIndexEntry.conversation_id == conversation.id
        ).delete(synchronize_session=False)

        if messages is None:
            messages = (
                session.query(Message)
                .filter(Message.conversation_id == conversation.id)
                .all()
            )

        title_terms = Counter(tokenize_text(conversation.title))
        message_terms: Counter[str] = Counter()
        for message in messages:
            message_terms.update(tokenize_text(message.content))

        entries = [
            SearchIndexEntry(
                conversation_id=conversation.id,
                term=term,
                field=FIELD_TITLE,
                frequency=count,
            )
            for term, count in title_terms.items()
        ]
        entries.extend(
            SearchIndexEntry(
                conversation_id=conversation.id,
                term=term,
                field=FIELD_MESSAGE,
                frequency=count,
            )
            for term, count in message_terms.items()
        )
        session.add_all(entries)
        session.flush()
        return len(entries)

    def rebuild(self, session: Session) -> int:
        """
        Recreate the whole index from the canonical store.

        Returns:
            Number of conversations indexed
        """
        session.query(SearchIndexEntry).delete(synchronize_session=False)
        count = 0
        for conversation in session.query(Conversation).yield_per(200):
            self.index_conversation(session, conversation)
            count += 1
        logger.info(f"Rebuilt search index for {count} conversations")
        return count

    def lexical_scores(
        self, session: Session, query_tokens: Sequence[str]
    ) -> dict[uuid.UUID, float]:
        """
        Score conversations against query tokens.

        Each distinct query token contributes 1.0 when it occurs in message
        content, 0.8 when it occurs only in the title, and 0 otherwise; the
        conversation score is the mean over query tokens.

        Returns:
            Mapping of conversation id to lexical score in (0, 1]
        """
        tokens = sorted(set(query_tokens))
        if not tokens:
            return {}

        rows = (
            session.query(
                SearchIndexEntry.conversation_id,
                SearchIndexEntry.term,
                SearchIndexEntry.field,
            )
            .filter(SearchIndexEntry.term.in_(tokens))
            .all()
        )

        hits: dict[uuid.UUID, dict[str, float]] = defaultdict(dict)
        for conversation_id, term, field in rows:
            score = MESSAGE_MATCH_SCORE if field == FIELD_MESSAGE else TITLE_MATCH_SCORE
            if score > hits[conversation_id].get(term, 0.0):
                hits[conversation_id][term] = score

        return {
            conversation_id: sum(term_scores.values()) / len(tokens)
            for conversation_id, term_scores in hits.items()
        }
