"""
Learning and workflow signature lifecycle.

Candidates from analyzers become pending rows here, and only a reviewer
moves them on:

    pending -> approved
    pending -> rejected

Approved and rejected are terminal. Nothing is promoted automatically.
"""

import logging
import uuid
from contextlib import contextmanager
from typing import Iterator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lorekeep.analysis import workflow_taxonomy
from lorekeep.analysis.base import DuplicateMatch, LearningCandidate, WorkflowCandidate
from lorekeep.db.connection import db_session
from lorekeep.db.repositories import LearningRepository, WorkflowSignatureRepository
from lorekeep.exceptions import InvalidTransitionError, NotFoundError
from lorekeep.learning.normalizer import normalize_rule, should_store
from lorekeep.models.db import (
    Conversation,
    Learning,
    ReviewStatus,
    Scope,
    WorkflowSignature,
)
from lorekeep.pipeline.upsert import SessionFactory
from lorekeep.utils.hashing import calculate_content_hash
from lorekeep.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

MAX_ARTIFACT_LENGTH = 32

TRANSITIONS = {
    ReviewStatus.PENDING: frozenset({ReviewStatus.APPROVED, ReviewStatus.REJECTED}),
    ReviewStatus.APPROVED: frozenset(),
    ReviewStatus.REJECTED: frozenset(),
}


def derive_scope(conversation: Conversation) -> tuple[str, str]:
    """(scope, project_key): project scope when the conversation has a project path."""
    if conversation.project_path:
        return Scope.PROJECT.value, conversation.project_path
    return Scope.GLOBAL.value, ""


class LearningLifecycleManager:
    """
    Stores candidates as pending rows and applies reviewer transitions.

    Every method takes an optional session. With one, the work joins the
    caller's transaction; without one, the method runs its own.

    Args:
        session_factory: Transaction context used when no session is passed
        min_confidence: Learning candidates below this are discarded
        workflow_min_confidence: Workflow candidates below this are discarded
    """

    def __init__(
        self,
        session_factory: SessionFactory = db_session,
        min_confidence: float = 0.7,
        workflow_min_confidence: float = workflow_taxonomy.MIN_CONFIDENCE,
    ):
        self.session_factory = session_factory
        self.min_confidence = min_confidence
        self.workflow_min_confidence = workflow_min_confidence

    @contextmanager
    def _session(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self.session_factory() as own:
            yield own

    # Submission

    def submit(
        self,
        candidate: LearningCandidate,
        conversation: Conversation,
        session: Optional[Session] = None,
    ) -> Optional[Learning]:
        """
        Store a learning candidate as pending, unless it is weak or a duplicate.

        Returns:
            The new Learning, or None if the candidate was discarded
        """
        if candidate.confidence < self.min_confidence:
            logger.debug(
                f"Discarding low-confidence learning ({candidate.confidence:.2f}): "
                f"{candidate.rule_text!r}"
            )
            return None
        if not should_store(candidate.rule_text, candidate.type, candidate.confidence):
            logger.debug(f"Discarding non-storable learning: {candidate.rule_text!r}")
            return None

        normalized = normalize_rule(candidate.rule_text)
        scope, project_key = derive_scope(conversation)

        with self._session(session) as db:
            repo = LearningRepository(db)
            if repo.find_active(scope, project_key, normalized):
                logger.debug(f"Learning already known in {scope} scope: {normalized!r}")
                return None

            learning = Learning(
                conversation_id=conversation.id,
                type=candidate.type.value,
                rule_text=candidate.rule_text.strip(),
                normalized_rule=normalized,
                confidence=candidate.confidence,
                status=ReviewStatus.PENDING.value,
                scope=scope,
                project_key=project_key,
                evidence=candidate.evidence,
                source=candidate.source,
            )
            try:
                with db.begin_nested():
                    db.add(learning)
            except IntegrityError:
                # A concurrent submit stored the same rule first
                logger.debug(f"Concurrent insert of learning {normalized!r} resolved as duplicate")
                return None

        logger.info(f"New pending learning ({scope}): {learning.rule_text!r}")
        return learning

    def submit_workflow(
        self,
        candidate: WorkflowCandidate,
        conversation: Conversation,
        session: Optional[Session] = None,
    ) -> Optional[WorkflowSignature]:
        """
        Store a workflow candidate, or add the conversation to a matching signature.

        The candidate is mapped onto the workflow taxonomy first; one-off
        tasks and fixes without an artifact are dropped, and generic
        artifacts are specialized with the conversation's topic.

        Returns:
            The new or matched signature, or None if the candidate was
            discarded or the conversation was already a member
        """
        sanitized = workflow_taxonomy.sanitize(
            candidate.action,
            candidate.artifact,
            candidate.domains,
            candidate.confidence,
            min_confidence=self.workflow_min_confidence,
        )
        if sanitized is None:
            logger.debug(f"Discarding workflow candidate outside taxonomy: {candidate.signature}")
            return None

        context = " ".join(
            part.strip()
            for part in (
                conversation.title,
                conversation.summary,
                conversation.preview_text,
                candidate.snippet,
            )
            if part and part.strip()
        )
        if workflow_taxonomy.should_exclude(
            sanitized.action, sanitized.artifact, candidate.snippet, context
        ):
            logger.debug(f"Excluding one-off workflow for {conversation.id}")
            return None

        artifact = workflow_taxonomy.refine_artifact(
            sanitized.action, sanitized.artifact, sanitized.domains, context
        )
        if artifact is not None:
            artifact = artifact[:MAX_ARTIFACT_LENGTH]
        signature_value = workflow_taxonomy.build_signature(
            sanitized.action, artifact, sanitized.domains
        )
        signature_hash = calculate_content_hash(signature_value)
        scope, project_key = derive_scope(conversation)

        with self._session(session) as db:
            repo = WorkflowSignatureRepository(db)
            existing = repo.find_active(scope, project_key, signature_hash)
            if existing is not None:
                return self._add_member(repo, existing, conversation.id, candidate.snippet)

            signature = WorkflowSignature(
                signature=signature_value,
                signature_hash=signature_hash,
                action=sanitized.action,
                artifact=artifact,
                domains=",".join(sanitized.domains),
                scope=scope,
                project_key=project_key,
                confidence=candidate.confidence,
                status=ReviewStatus.PENDING.value,
                source=candidate.source,
                occurrence_count=1,
            )
            try:
                with db.begin_nested():
                    db.add(signature)
                    db.flush()
                    repo.add_member(signature.id, conversation.id, candidate.snippet)
            except IntegrityError:
                existing = repo.find_active(scope, project_key, signature_hash)
                if existing is None:
                    raise
                return self._add_member(repo, existing, conversation.id, candidate.snippet)

        logger.info(f"New pending workflow signature ({scope}): {signature_value}")
        return signature

    @staticmethod
    def _add_member(
        repo: WorkflowSignatureRepository,
        signature: WorkflowSignature,
        conversation_id: uuid.UUID,
        snippet: Optional[str],
    ) -> Optional[WorkflowSignature]:
        if repo.has_member(signature.id, conversation_id):
            return None
        repo.add_member(signature.id, conversation_id, snippet)
        signature.occurrence_count += 1
        repo.session.flush()
        logger.debug(
            f"Conversation {conversation_id} joins {signature.signature} "
            f"({signature.occurrence_count} occurrences)"
        )
        return signature

    def mark_duplicate(self, match: DuplicateMatch, session: Optional[Session] = None) -> bool:
        """Point a learning at the older learning it restates. Returns True if updated."""
        with self._session(session) as db:
            learning = db.get(Learning, match.learning_id)
            original = db.get(Learning, match.duplicate_of_id)
            if learning is None or original is None or learning.duplicate_of_id is not None:
                return False
            learning.duplicate_of_id = original.id
            db.flush()
        logger.info(
            f"Learning {match.learning_id} duplicates {match.duplicate_of_id} "
            f"(similarity {match.similarity:.2f})"
        )
        return True

    # Reviewer actions

    def _transition(
        self,
        model: type,
        entity: str,
        id: uuid.UUID,
        target: ReviewStatus,
        session: Optional[Session],
    ):
        with self._session(session) as db:
            row = db.get(model, id)
            if row is None:
                raise NotFoundError(entity, id)
            current = ReviewStatus(row.status)
            if target not in TRANSITIONS[current]:
                raise InvalidTransitionError(entity, current.value, target.value)
            row.status = target.value
            row.reviewed_at = utcnow()
            db.flush()
        logger.info(f"{entity.capitalize()} {id}: {current.value} -> {target.value}")
        return row

    def approve(self, id: uuid.UUID, session: Optional[Session] = None) -> Learning:
        return self._transition(Learning, "learning", id, ReviewStatus.APPROVED, session)

    def reject(self, id: uuid.UUID, session: Optional[Session] = None) -> Learning:
        return self._transition(Learning, "learning", id, ReviewStatus.REJECTED, session)

    def approve_workflow(
        self, id: uuid.UUID, session: Optional[Session] = None
    ) -> WorkflowSignature:
        return self._transition(
            WorkflowSignature, "workflow", id, ReviewStatus.APPROVED, session
        )

    def reject_workflow(
        self, id: uuid.UUID, session: Optional[Session] = None
    ) -> WorkflowSignature:
        return self._transition(
            WorkflowSignature, "workflow", id, ReviewStatus.REJECTED, session
        )

    # Listing

    def list_learnings(
        self,
        status: Optional[str] = None,
        scope: Optional[str] = None,
        project_key: Optional[str] = None,
        limit: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> list[Learning]:
        with self._session(session) as db:
            return LearningRepository(db).find_all(
                status=ReviewStatus(status).value if status else None,
                scope=Scope(scope).value if scope else None,
                project_key=project_key,
                limit=limit,
            )

    def list_workflows(
        self,
        status: Optional[str] = None,
        limit: Optional[int] = None,
        session: Optional[Session] = None,
    ) -> list[WorkflowSignature]:
        with self._session(session) as db:
            return WorkflowSignatureRepository(db).find_all(
                status=ReviewStatus(status).value if status else None, limit=limit
            )

    def counts(self, session: Optional[Session] = None) -> dict[str, dict[str, int]]:
        """Per-status counts for learnings and workflow signatures."""
        with self._session(session) as db:
            learnings = LearningRepository(db).count_by_status()
            workflows = WorkflowSignatureRepository(db).count_by_status()
        empty = {s.value: 0 for s in ReviewStatus}
        return {
            "learnings": {**empty, **learnings},
            "workflows": {**empty, **workflows},
        }

    def clear_all(self, session: Optional[Session] = None) -> tuple[int, int]:
        """Delete every learning and workflow signature. Returns (learnings, workflows)."""
        with self._session(session) as db:
            # Break self-references before the bulk delete
            db.query(Learning).update(
                {Learning.duplicate_of_id: None}, synchronize_session=False
            )
            learnings = LearningRepository(db).delete_all()
            workflows = WorkflowSignatureRepository(db).delete_all()
        logger.warning(f"Cleared {learnings} learning(s) and {workflows} workflow signature(s)")
        return learnings, workflows
