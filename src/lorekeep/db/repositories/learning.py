"""
Learning and workflow signature repositories.
"""

import uuid
from typing import Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from lorekeep.db.repositories.base import BaseRepository
from lorekeep.models.db import (
    Learning,
    ReviewStatus,
    WorkflowSignature,
    WorkflowSignatureMember,
)


class LearningRepository(BaseRepository[Learning]):
    """Repository for Learning model."""

    def __init__(self, session: Session):
        super().__init__(Learning, session)

    def find_active(
        self, scope: str, project_key: str, normalized_rule: str
    ) -> Optional[Learning]:
        """Find a non-rejected learning with the same rule in the same scope."""
        return (
            self.session.query(Learning)
            .filter(
                Learning.scope == scope,
                Learning.project_key == project_key,
                Learning.normalized_rule == normalized_rule,
                Learning.status != ReviewStatus.REJECTED.value,
            )
            .first()
        )

    def find_all(
        self,
        status: Optional[str] = None,
        scope: Optional[str] = None,
        project_key: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[Learning]:
        query = self.session.query(Learning)
        if status:
            query = query.filter(Learning.status == status)
        if scope:
            query = query.filter(Learning.scope == scope)
        if project_key is not None:
            query = query.filter(Learning.project_key == project_key)
        query = query.order_by(Learning.created_at.desc(), Learning.id)
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def list_active(self) -> list[Learning]:
        """Non-rejected learnings, oldest first."""
        return (
            self.session.query(Learning)
            .filter(Learning.status != ReviewStatus.REJECTED.value)
            .order_by(Learning.created_at, Learning.id)
            .all()
        )

    def list_for_conversation(self, conversation_id: uuid.UUID) -> list[Learning]:
        return (
            self.session.query(Learning)
            .filter(Learning.conversation_id == conversation_id)
            .order_by(Learning.created_at)
            .all()
        )

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.session.query(Learning.status, func.count(Learning.id))
            .group_by(Learning.status)
            .all()
        )
        return {status: count for status, count in rows}

    def delete_all(self) -> int:
        return self.session.query(Learning).delete(synchronize_session=False)


class WorkflowSignatureRepository(BaseRepository[WorkflowSignature]):
    """Repository for WorkflowSignature model and its members."""

    def __init__(self, session: Session):
        super().__init__(WorkflowSignature, session)

    def find_active(
        self, scope: str, project_key: str, signature_hash: str
    ) -> Optional[WorkflowSignature]:
        return (
            self.session.query(WorkflowSignature)
            .filter(
                WorkflowSignature.scope == scope,
                WorkflowSignature.project_key == project_key,
                WorkflowSignature.signature_hash == signature_hash,
                WorkflowSignature.status != ReviewStatus.REJECTED.value,
            )
            .first()
        )

    def has_member(self, signature_id: uuid.UUID, conversation_id: uuid.UUID) -> bool:
        return (
            self.session.query(WorkflowSignatureMember.id)
            .filter(
                WorkflowSignatureMember.signature_id == signature_id,
                WorkflowSignatureMember.conversation_id == conversation_id,
            )
            .first()
            is not None
        )

    def add_member(
        self,
        signature_id: uuid.UUID,
        conversation_id: uuid.UUID,
        snippet: Optional[str] = None,
    ) -> WorkflowSignatureMember:
        member = WorkflowSignatureMember(
            signature_id=signature_id, conversation_id=conversation_id, snippet=snippet
        )
        self.session.add(member)
        self.session.flush()
        return member

    def find_all(
        self, status: Optional[str] = None, limit: Optional[int] = None
    ) -> list[WorkflowSignature]:
        query = self.session.query(WorkflowSignature)
        if status:
            query = query.filter(WorkflowSignature.status == status)
        query = query.order_by(
            WorkflowSignature.occurrence_count.desc(), WorkflowSignature.created_at.desc()
        )
        if limit is not None:
            query = query.limit(limit)
        return query.all()

    def count_by_status(self) -> dict[str, int]:
        rows = (
            self.session.query(WorkflowSignature.status, func.count(WorkflowSignature.id))
            .group_by(WorkflowSignature.status)
            .all()
        )
        return {status: count for status, count in rows}

    def delete_all(self) -> int:
        self.session.query(WorkflowSignatureMember).delete(synchronize_session=False)
        return self.session.query(WorkflowSignature).delete(synchronize_session=False)
