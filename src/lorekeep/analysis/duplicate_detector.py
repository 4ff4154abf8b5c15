"""Near-duplicate learning detection."""

import logging
import re
from typing import Sequence

from lorekeep.analysis.base import AnalysisResult, Analyzer, DuplicateMatch
from lorekeep.db.connection import db_session
from lorekeep.db.repositories import LearningRepository
from lorekeep.models.db import (
    AnalysisType,
    Conversation,
    Learning,
    Message,
    ReviewStatus,
    Scope,
)
from lorekeep.pipeline.upsert import SessionFactory

logger = logging.getLogger(__name__)

# Words that carry no meaning for rule comparison
RULE_STOPWORDS = frozenset({"a", "an", "the", "to", "of", "for", "in", "on", "and", "or", "it", "be"})


def rule_tokens(normalized_rule: str) -> frozenset[str]:
    return frozenset(t for t in re.findall(r"\w+", normalized_rule) if t not in RULE_STOPWORDS)


def jaccard(a: frozenset[str], b: frozenset[str]) -> float:
    """
    >>> jaccard(frozenset({"use", "tabs"}), frozenset({"use", "tabs"}))
    1.0
    """
    if not a or not b:
        return 0.0
    return len(a & b) / len(a | b)


class DuplicateLearningDetector(Analyzer):
    """
    Flags a conversation's learnings that restate an older learning.

    Exact restatements never reach the store (the lifecycle dedups on the
    normalized rule); this catches rewordings such as "always use
    snake_case" vs "always use snake_case for names". A learning is
    compared with older non-rejected learnings in its own scope and in
    global scope.
    """

    name = "duplicate_learning_detector"
    analysis_type = AnalysisType.DEDUPE
    requires_cloud = False

    def __init__(self, threshold: float = 0.85, session_factory: SessionFactory = db_session):
        self.threshold = threshold
        self.session_factory = session_factory

    def analyze(
        self, conversation: Conversation, messages: Sequence[Message]
    ) -> AnalysisResult:
        with self.session_factory() as session:
            repo = LearningRepository(session)
            own = [
                learning
                for learning in repo.list_for_conversation(conversation.id)
                if learning.duplicate_of_id is None
            ]
            if not own:
                return AnalysisResult()
            others = repo.list_active()
            pool = [(learning, rule_tokens(learning.normalized_rule)) for learning in others]

        duplicates = []
        for learning in own:
            if learning.status == ReviewStatus.REJECTED.value:
                continue
            tokens = rule_tokens(learning.normalized_rule)
            match = self._best_match(learning, tokens, pool)
            if match is not None:
                duplicates.append(match)
        if duplicates:
            logger.info(f"Found {len(duplicates)} near-duplicate learning(s) in {conversation.id}")
        return AnalysisResult(duplicates=duplicates)

    def _best_match(
        self,
        learning: Learning,
        tokens: frozenset[str],
        pool: list[tuple[Learning, frozenset[str]]],
    ) -> DuplicateMatch | None:
        best: DuplicateMatch | None = None
        for other, other_tokens in pool:
            if other.id == learning.id or not self._is_older(other, learning):
                continue
            if other.scope != Scope.GLOBAL.value and (
                other.scope != learning.scope or other.project_key != learning.project_key
            ):
                continue
            similarity = jaccard(tokens, other_tokens)
            if similarity >= self.threshold and (best is None or similarity > best.similarity):
                best = DuplicateMatch(
                    learning_id=learning.id,
                    duplicate_of_id=other.id,
                    similarity=round(similarity, 4),
                )
        return best

    @staticmethod
    def _is_older(other: Learning, learning: Learning) -> bool:
        return (other.created_at, str(other.id)) < (learning.created_at, str(learning.id))
