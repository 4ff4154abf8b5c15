"""Tests for the learning and workflow signature lifecycle."""

import uuid

import pytest

from lorekeep.analysis.base import DuplicateMatch, LearningCandidate, WorkflowCandidate
from lorekeep.db.repositories import ConversationRepository
from lorekeep.exceptions import InvalidTransitionError, NotFoundError
from lorekeep.learning.lifecycle import LearningLifecycleManager, derive_scope
from lorekeep.models.db import Conversation, LearningType, ReviewStatus


def correction(rule="Use pytest instead of unittest", confidence=0.9, **kwargs):
    return LearningCandidate(
        rule_text=rule, type=LearningType.CORRECTION, confidence=confidence, **kwargs
    )


@pytest.fixture
def manager(session_factory):
    return LearningLifecycleManager(session_factory)


@pytest.fixture
def load_conversation(session_factory, stored_conversation_factory):
    def _load(**kwargs) -> Conversation:
        conversation_id = stored_conversation_factory(**kwargs)
        with session_factory() as session:
            return ConversationRepository(session).get(conversation_id)

    return _load


class TestDeriveScope:
    """Tests for derive_scope()."""

    def test_project_and_global(self):
        """Test that a project path gives project scope and its absence global."""
        assert derive_scope(Conversation(project_path="/work/shop")) == ("project", "/work/shop")
        assert derive_scope(Conversation(project_path=None)) == ("global", "")


class TestSubmit:
    """Tests for LearningLifecycleManager.submit."""

    def test_new_candidate_is_pending(self, manager, load_conversation):
        """Test that a candidate is stored as a pending learning."""
        conversation = load_conversation(project_path="/work/shop")

        learning = manager.submit(correction(evidence="No, use pytest"), conversation)

        assert learning.status == ReviewStatus.PENDING.value
        assert learning.normalized_rule == "use pytest instead of unittest"
        assert learning.scope == "project"
        assert learning.project_key == "/work/shop"
        assert learning.evidence == "No, use pytest"
        assert learning.reviewed_at is None

    def test_low_confidence_discarded(self, manager, load_conversation):
        """Test that weak candidates are not stored."""
        assert manager.submit(correction(confidence=0.5), load_conversation()) is None
        assert manager.list_learnings() == []

    def test_not_storable_discarded(self, manager, load_conversation):
        """Test that rules about internals are not stored."""
        candidate = correction(rule="Always rebuild the search index first")
        assert manager.submit(candidate, load_conversation()) is None

    def test_same_rule_same_scope_is_duplicate(self, manager, load_conversation):
        """Test that a restated rule in the same scope is discarded."""
        manager.submit(correction(), load_conversation())

        again = manager.submit(
            correction(rule="  use PYTEST instead of unittest. "), load_conversation()
        )

        assert again is None
        assert len(manager.list_learnings()) == 1

    def test_same_rule_other_scope_is_kept(self, manager, load_conversation):
        """Test that scopes dedup independently."""
        manager.submit(correction(), load_conversation())
        project = manager.submit(correction(), load_conversation(project_path="/work/shop"))

        assert project is not None
        assert len(manager.list_learnings()) == 2
        assert len(manager.list_learnings(scope="project")) == 1

    def test_rejected_rule_can_return(self, manager, load_conversation):
        """Test that a rejected learning does not block the same rule later."""
        first = manager.submit(correction(), load_conversation())
        manager.reject(first.id)

        second = manager.submit(correction(), load_conversation())

        assert second is not None
        assert second.id != first.id

    def test_joins_callers_session(self, manager, load_conversation, session_factory):
        """Test that a passed session is used instead of a new transaction."""
        conversation = load_conversation()
        with session_factory() as session:
            learning = manager.submit(correction(), conversation, session=session)
            session.rollback()

        assert learning is not None
        assert manager.list_learnings() == []


class TestSubmitWorkflow:
    """Tests for LearningLifecycleManager.submit_workflow."""

    def candidate(self, **kwargs):
        defaults = dict(
            action="summarize",
            artifact="notes",
            domains=["meeting"],
            confidence=0.75,
            snippet="Summarize the meeting notes",
        )
        defaults.update(kwargs)
        return WorkflowCandidate(**defaults)

    def test_new_signature(self, manager, load_conversation):
        """Test that a new workflow creates a pending signature with one member."""
        signature = manager.submit_workflow(self.candidate(), load_conversation())

        assert signature.signature == "summarize|notes|meeting"
        assert signature.status == ReviewStatus.PENDING.value
        assert signature.occurrence_count == 1

    def test_second_conversation_joins(self, manager, load_conversation):
        """Test that a matching conversation increments occurrences."""
        manager.submit_workflow(self.candidate(), load_conversation())
        joined = manager.submit_workflow(self.candidate(), load_conversation())

        assert joined.occurrence_count == 2
        assert len(manager.list_workflows()) == 1

    def test_same_conversation_counts_once(self, manager, load_conversation):
        """Test that resubmitting a member conversation changes nothing."""
        conversation = load_conversation()
        manager.submit_workflow(self.candidate(), conversation)

        assert manager.submit_workflow(self.candidate(), conversation) is None
        assert manager.list_workflows()[0].occurrence_count == 1

    def test_outside_taxonomy_discarded(self, manager, load_conversation):
        """Test that unknown actions and weak candidates are dropped."""
        assert manager.submit_workflow(self.candidate(action="juggle"), load_conversation()) is None
        assert (
            manager.submit_workflow(self.candidate(confidence=0.3), load_conversation()) is None
        )

    def test_one_off_excluded(self, manager, load_conversation):
        """Test that one-off requests are not workflows."""
        candidate = self.candidate(snippet="A one-off summary of the offsite")
        assert manager.submit_workflow(candidate, load_conversation()) is None

    def test_generic_artifact_refined(self, manager, load_conversation):
        """Test that a generic artifact picks up the conversation topic."""
        candidate = self.candidate(
            action="prepare",
            artifact="workflow",
            domains=["product"],
            snippet="Prepare the onboarding workflow for product",
        )
        signature = manager.submit_workflow(candidate, load_conversation(title="Onboarding"))

        assert signature.artifact == "workflow_onboarding"


class TestTransitions:
    """Tests for reviewer transitions."""

    def test_approve(self, manager, load_conversation):
        """Test that a pending learning can be approved once."""
        learning = manager.submit(correction(), load_conversation())

        approved = manager.approve(learning.id)

        assert approved.status == ReviewStatus.APPROVED.value
        assert approved.reviewed_at is not None
        with pytest.raises(InvalidTransitionError) as exc_info:
            manager.reject(learning.id)
        assert exc_info.value.current == "approved"
        assert exc_info.value.target == "rejected"

    def test_rejected_is_terminal(self, manager, load_conversation):
        """Test that a rejected learning cannot be approved."""
        learning = manager.submit(correction(), load_conversation())
        manager.reject(learning.id)

        with pytest.raises(InvalidTransitionError):
            manager.approve(learning.id)

    def test_unknown_id(self, manager):
        """Test that reviewing a missing learning raises NotFoundError."""
        with pytest.raises(NotFoundError):
            manager.approve(uuid.uuid4())

    def test_workflow_transitions(self, manager, load_conversation):
        """Test approving and rejecting workflow signatures."""
        first = manager.submit_workflow(
            WorkflowCandidate("summarize", "notes", ["meeting"], 0.75), load_conversation()
        )
        second = manager.submit_workflow(
            WorkflowCandidate("translate", "post", ["content"], 0.8), load_conversation()
        )

        assert manager.approve_workflow(first.id).status == "approved"
        assert manager.reject_workflow(second.id).status == "rejected"
        with pytest.raises(InvalidTransitionError):
            manager.approve_workflow(second.id)


class TestListingAndMaintenance:
    """Tests for listing, counts, duplicates and clearing."""

    def test_counts(self, manager, load_conversation):
        """Test per-status counts with zeros filled in."""
        learning = manager.submit(correction(), load_conversation())
        manager.submit(correction(rule="Never commit secrets to config files"), load_conversation())
        manager.approve(learning.id)

        counts = manager.counts()

        assert counts["learnings"] == {"pending": 1, "approved": 1, "rejected": 0}
        assert counts["workflows"] == {"pending": 0, "approved": 0, "rejected": 0}

    def test_list_filters(self, manager, load_conversation):
        """Test status filtering and limits."""
        learning = manager.submit(correction(), load_conversation())
        manager.submit(correction(rule="Never commit secrets to config files"), load_conversation())
        manager.approve(learning.id)

        assert [l.id for l in manager.list_learnings(status="approved")] == [learning.id]
        assert len(manager.list_learnings(limit=1)) == 1
        with pytest.raises(ValueError):
            manager.list_learnings(status="archived")

    def test_mark_duplicate(self, manager, load_conversation):
        """Test linking a learning to the one it restates, only once."""
        original = manager.submit(correction(), load_conversation())
        restated = manager.submit(
            correction(rule="Use pytest instead of unittest everywhere"), load_conversation()
        )
        match = DuplicateMatch(restated.id, original.id, 0.9)

        assert manager.mark_duplicate(match)
        assert not manager.mark_duplicate(match)
        assert not manager.mark_duplicate(DuplicateMatch(uuid.uuid4(), original.id, 0.9))

    def test_clear_all(self, manager, load_conversation):
        """Test that clear_all removes learnings, signatures and duplicate links."""
        original = manager.submit(correction(), load_conversation())
        restated = manager.submit(
            correction(rule="Use pytest instead of unittest everywhere"), load_conversation()
        )
        manager.mark_duplicate(DuplicateMatch(restated.id, original.id, 0.9))
        manager.submit_workflow(
            WorkflowCandidate("summarize", "notes", ["meeting"], 0.75), load_conversation()
        )

        assert manager.clear_all() == (2, 1)
        assert manager.list_learnings() == []
        assert manager.list_workflows() == []
