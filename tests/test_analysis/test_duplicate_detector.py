"""Tests for near-duplicate learning detection."""

from datetime import datetime, timedelta

import pytest

from lorekeep.analysis.dispatcher import AnalysisDispatcher
from lorekeep.analysis.duplicate_detector import DuplicateLearningDetector, jaccard, rule_tokens
from lorekeep.analysis.registry import AnalyzerRegistry
from lorekeep.db.repositories import ConversationRepository
from lorekeep.learning.lifecycle import LearningLifecycleManager
from lorekeep.learning.normalizer import normalize_rule
from lorekeep.models.db import Learning, ReviewStatus

START = datetime(2025, 3, 1, 12, 0, 0)

OLDER_RULE = "Always use type hints in Python code"
NEWER_RULE = "Always use type hints in all Python code"


def add_learning(
    session_factory,
    conversation_id,
    rule,
    minutes,
    scope="global",
    project_key="",
    status=ReviewStatus.PENDING.value,
):
    with session_factory() as session:
        learning = Learning(
            conversation_id=conversation_id,
            type="correction",
            rule_text=rule,
            normalized_rule=normalize_rule(rule),
            confidence=0.9,
            status=status,
            scope=scope,
            project_key=project_key,
            created_at=START + timedelta(minutes=minutes),
        )
        session.add(learning)
        session.flush()
        return learning.id


def conversation(session_factory, conversation_id):
    with session_factory() as session:
        return ConversationRepository(session).get(conversation_id)


@pytest.fixture
def two_conversations(stored_conversation_factory):
    return stored_conversation_factory(), stored_conversation_factory()


class TestRuleSimilarity:
    """Tests for token sets and Jaccard similarity."""

    def test_stopwords_ignored(self):
        """Test that filler words do not count."""
        assert rule_tokens("use a linter in the editor") == frozenset({"use", "linter", "editor"})

    def test_jaccard(self):
        """Test overlap ratios including empty sets."""
        assert jaccard(frozenset({"a", "b"}), frozenset({"b", "c"})) == pytest.approx(1 / 3)
        assert jaccard(frozenset(), frozenset({"a"})) == 0.0


class TestDuplicateLearningDetector:
    """Tests for DuplicateLearningDetector.analyze."""

    def test_flags_reworded_rule(self, session_factory, two_conversations):
        """Test that a newer rewording points at the older learning."""
        first, second = two_conversations
        older = add_learning(session_factory, first, OLDER_RULE, 0)
        newer = add_learning(session_factory, second, NEWER_RULE, 5)
        detector = DuplicateLearningDetector(session_factory=session_factory)

        result = detector.analyze(conversation(session_factory, second), [])

        assert len(result.duplicates) == 1
        match = result.duplicates[0]
        assert (match.learning_id, match.duplicate_of_id) == (newer, older)
        assert match.similarity == pytest.approx(6 / 7, abs=1e-4)

    def test_older_learning_is_not_flagged(self, session_factory, two_conversations):
        """Test that the original is never marked as the duplicate."""
        first, second = two_conversations
        add_learning(session_factory, first, OLDER_RULE, 0)
        add_learning(session_factory, second, NEWER_RULE, 5)
        detector = DuplicateLearningDetector(session_factory=session_factory)

        assert detector.analyze(conversation(session_factory, first), []).empty

    def test_below_threshold(self, session_factory, two_conversations):
        """Test that loosely related rules are left alone."""
        first, second = two_conversations
        add_learning(session_factory, first, OLDER_RULE, 0)
        add_learning(session_factory, second, "Always use tabs in Python code", 5)
        detector = DuplicateLearningDetector(session_factory=session_factory)

        assert detector.analyze(conversation(session_factory, second), []).empty

    def test_other_project_is_not_compared(self, session_factory, two_conversations):
        """Test that project learnings only match their own project or global ones."""
        first, second = two_conversations
        add_learning(session_factory, first, OLDER_RULE, 0, scope="project", project_key="/a")
        add_learning(session_factory, second, NEWER_RULE, 5, scope="project", project_key="/b")
        detector = DuplicateLearningDetector(session_factory=session_factory)

        assert detector.analyze(conversation(session_factory, second), []).empty

    def test_global_learning_matches_project(self, session_factory, two_conversations):
        """Test that a project rule restating a global one is flagged."""
        first, second = two_conversations
        older = add_learning(session_factory, first, OLDER_RULE, 0)
        add_learning(session_factory, second, NEWER_RULE, 5, scope="project", project_key="/b")
        detector = DuplicateLearningDetector(session_factory=session_factory)

        result = detector.analyze(conversation(session_factory, second), [])

        assert [m.duplicate_of_id for m in result.duplicates] == [older]

    def test_rejected_learnings_ignored(self, session_factory, two_conversations):
        """Test that a rejected original is not a duplicate target."""
        first, second = two_conversations
        add_learning(
            session_factory, first, OLDER_RULE, 0, status=ReviewStatus.REJECTED.value
        )
        add_learning(session_factory, second, NEWER_RULE, 5)
        detector = DuplicateLearningDetector(session_factory=session_factory)

        assert detector.analyze(conversation(session_factory, second), []).empty

    def test_dedupe_queue_marks_duplicates(self, session_factory, two_conversations):
        """Test that a dedupe item links the learning to its original."""
        first, second = two_conversations
        older = add_learning(session_factory, first, OLDER_RULE, 0)
        newer = add_learning(session_factory, second, NEWER_RULE, 5)
        lifecycle = LearningLifecycleManager(session_factory)
        dispatcher = AnalysisDispatcher(
            AnalyzerRegistry([DuplicateLearningDetector(session_factory=session_factory)]),
            lifecycle,
            session_factory=session_factory,
            analysis_types=["dedupe"],
            concurrency=1,
        )

        stats = dispatcher.full_rescan()

        assert stats.duplicates_marked == 1
        with session_factory() as session:
            assert session.get(Learning, newer).duplicate_of_id == older
            assert session.get(Learning, older).duplicate_of_id is None
