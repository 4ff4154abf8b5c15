"""
Hybrid search over conversations.

Each conversation gets a lexical score from the term index and, when an
embedding provider is configured, a semantic score from the cosine
similarity between the query embedding and the stored conversation
embedding. The final score is the weighted sum of the two.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Optional

from lorekeep.db.connection import db_session
from lorekeep.db.repositories import ConversationRepository, MessageRepository
from lorekeep.models.db import Conversation
from lorekeep.pipeline.upsert import SessionFactory
from lorekeep.search.embeddings import EmbeddingProvider
from lorekeep.search.index import SearchIndexer, tokenize_text
from lorekeep.search.similarity import cosine_similarity

logger = logging.getLogger(__name__)

MATCH_HYBRID = "hybrid"
MATCH_FULL_TEXT = "full_text"
MATCH_SEMANTIC = "semantic"

EMBEDDING_MESSAGE_CHARS = 500


@dataclass
class SearchResult:
    conversation_id: uuid.UUID
    title: str
    provider: str
    score: float
    lexical_score: float
    semantic_score: float
    match_type: str
    updated_at: datetime
    preview: Optional[str] = None


def embedding_text(conversation: Conversation, first_message: Optional[str]) -> str:
    """Title plus the start of the first message."""
    parts = [conversation.title or ""]
    if first_message:
        parts.append(first_message[:EMBEDDING_MESSAGE_CHARS])
    return "\n".join(p for p in parts if p).strip()


class HybridSearchEngine:
    """
    Ranks conversations by weighted lexical and semantic relevance.

    Args:
        session_factory: Transaction context
        indexer: Term index used for lexical scores
        embedding_provider: Source of query and conversation embeddings
        semantic_enabled: Use semantic scores when a provider is available
        fts_weight: Weight of the lexical score
        semantic_weight: Weight of the semantic score
        min_semantic_score: Similarities below this contribute nothing
        max_results: Cap on returned results
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        indexer: Optional[SearchIndexer] = None,
        embedding_provider: Optional[EmbeddingProvider] = None,
        semantic_enabled: bool = True,
        fts_weight: float = 0.5,
        semantic_weight: float = 0.5,
        min_semantic_score: float = 0.7,
        max_results: int = 50,
    ):
        self.session_factory = session_factory
        self.indexer = indexer or SearchIndexer()
        self.embedding_provider = embedding_provider
        self.semantic_enabled = semantic_enabled
        self.fts_weight = fts_weight
        self.semantic_weight = semantic_weight
        self.min_semantic_score = min_semantic_score
        self.max_results = max_results

    def _query_embedding(self, query: str, semantic: bool) -> Optional[list[float]]:
        if not (semantic and self.semantic_enabled and self.embedding_provider):
            return None
        try:
            return self.embedding_provider.embed_one(query)
        except Exception as e:
            logger.warning(f"Query embedding failed, using lexical search only: {e}")
            return None

    def search(
        self, query: str, limit: Optional[int] = None, semantic: bool = True
    ) -> list[SearchResult]:
        """
        Search conversations.

        Args:
            query: Free text
            limit: Result cap; defaults to max_results
            semantic: Set False to force lexical-only ranking

        Returns:
            Results by score descending, ties broken by most recently updated
        """
        query = query.strip()
        if not query:
            return []
        cap = min(limit or self.max_results, self.max_results)
        query_vector = self._query_embedding(query, semantic)

        with self.session_factory() as session:
            lexical = self.indexer.lexical_scores(session, tokenize_text(query))

            semantic_scores: dict[uuid.UUID, float] = {}
            if query_vector is not None and self.embedding_provider is not None:
                tag = self.embedding_provider.tag
                rows = (
                    session.query(Conversation.id, Conversation.embedding)
                    .filter(
                        Conversation.embedding.is_not(None),
                        Conversation.embedding_provider == tag,
                    )
                    .all()
                )
                for conversation_id, vector in rows:
                    similarity = cosine_similarity(query_vector, vector)
                    if similarity > 0 and similarity >= self.min_semantic_score:
                        semantic_scores[conversation_id] = similarity

            ids = set(lexical) | set(semantic_scores)
            conversations = {
                c.id: c for c in ConversationRepository(session).get_by_ids(ids)
            }

        results = []
        for conversation_id in ids:
            conversation = conversations.get(conversation_id)
            if conversation is None:
                continue
            lexical_score = lexical.get(conversation_id, 0.0)
            semantic_score = semantic_scores.get(conversation_id, 0.0)
            if lexical_score > 0 and semantic_score > 0:
                match_type = MATCH_HYBRID
            elif lexical_score > 0:
                match_type = MATCH_FULL_TEXT
            else:
                match_type = MATCH_SEMANTIC
            results.append(
                SearchResult(
                    conversation_id=conversation_id,
                    title=conversation.title,
                    provider=conversation.provider,
                    score=self.fts_weight * lexical_score + self.semantic_weight * semantic_score,
                    lexical_score=lexical_score,
                    semantic_score=semantic_score,
                    match_type=match_type,
                    updated_at=conversation.updated_at,
                    preview=conversation.preview_text,
                )
            )

        results.sort(key=lambda r: (r.score, r.updated_at), reverse=True)
        return results[:cap]

    def embed_conversations(
        self, ids: Optional[Iterable[uuid.UUID]] = None, force: bool = False
    ) -> int:
        """
        Compute and store embeddings.

        Without ids, every conversation whose embedding is missing or was
        made by another provider is embedded (all of them with force).
        A provider failure is logged and that conversation skipped.

        Returns:
            Number of conversations embedded
        """
        provider = self.embedding_provider
        if provider is None:
            logger.info("No embedding provider configured; nothing to embed")
            return 0

        with self.session_factory() as session:
            repo = ConversationRepository(session)
            if ids is not None:
                conversations = repo.get_by_ids(ids)
            else:
                conversations = session.query(Conversation).all()
                if not force:
                    conversations = [
                        c
                        for c in conversations
                        if c.embedding is None or c.embedding_provider != provider.tag
                    ]
            messages = MessageRepository(session)
            texts = {}
            for conversation in conversations:
                first = messages.get_first(conversation.id)
                text = embedding_text(conversation, first.content if first else None)
                if text:
                    texts[conversation.id] = text

        vectors: dict[uuid.UUID, list[float]] = {}
        for conversation_id, text in texts.items():
            try:
                vectors[conversation_id] = provider.embed_one(text)
            except Exception as e:
                logger.warning(f"Embedding failed for conversation {conversation_id}: {e}")

        if vectors:
            with self.session_factory() as session:
                for conversation in ConversationRepository(session).get_by_ids(vectors):
                    conversation.embedding = vectors[conversation.id]
                    conversation.embedding_provider = provider.tag
        logger.info(f"Embedded {len(vectors)} of {len(texts)} conversation(s) with {provider.tag}")
        return len(vectors)
