"""
Analysis job queue.

A table-backed queue of (conversation, analysis type) items. Exactly one
item per pair may be pending or in progress at a time; the partial unique
index on the table enforces that even across processes. Items are claimed
with a conditional UPDATE so two claimers never get the same item.
"""

import logging
import uuid
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, Optional

from sqlalchemy import func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from lorekeep.models.db import AnalysisQueueItem, AnalysisType, QueueStatus
from lorekeep.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = (QueueStatus.PENDING.value, QueueStatus.IN_PROGRESS.value)


@dataclass
class QueueStats:
    """Statistics about the analysis queue."""

    pending: int = 0
    in_progress: int = 0
    completed: int = 0
    failed: int = 0
    total: int = 0

    @property
    def active(self) -> int:
        """Items that are pending or in progress."""
        return self.pending + self.in_progress


def _type_values(analysis_types: Optional[Iterable[AnalysisType | str]]) -> Optional[list[str]]:
    if analysis_types is None:
        return None
    return [AnalysisType(t).value for t in analysis_types]


class AnalysisJobQueue:
    """
    Queue operations bound to one session.

    The caller owns the transaction; methods only flush.
    """

    def __init__(self, session: Session, max_attempts: int = 3):
        self.session = session
        self.max_attempts = max_attempts

    def _find_active(
        self, conversation_id: uuid.UUID, analysis_type: str
    ) -> Optional[AnalysisQueueItem]:
        return (
            self.session.query(AnalysisQueueItem)
            .filter(
                AnalysisQueueItem.conversation_id == conversation_id,
                AnalysisQueueItem.analysis_type == analysis_type,
                AnalysisQueueItem.status.in_(ACTIVE_STATUSES),
            )
            .first()
        )

    def enqueue(
        self,
        conversation_id: uuid.UUID,
        analysis_type: AnalysisType | str,
        batch_id: Optional[str] = None,
    ) -> AnalysisQueueItem:
        """
        Add a conversation to the queue for one analysis type.

        Idempotent: returns the existing pending or in-progress item when
        there is one.

        Returns:
            The queued item
        """
        type_value = AnalysisType(analysis_type).value
        existing = self._find_active(conversation_id, type_value)
        if existing:
            logger.debug(
                f"{type_value} item already queued for conversation {conversation_id}: "
                f"{existing.id}"
            )
            return existing

        item = AnalysisQueueItem(
            conversation_id=conversation_id,
            analysis_type=type_value,
            status=QueueStatus.PENDING.value,
            max_attempts=self.max_attempts,
            batch_id=batch_id,
        )
        try:
            with self.session.begin_nested():
                self.session.add(item)
        except IntegrityError:
            # Lost a race with another enqueuer on the partial unique index
            existing = self._find_active(conversation_id, type_value)
            if existing is None:
                raise
            logger.debug(f"Concurrent enqueue for {conversation_id}/{type_value} resolved")
            return existing

        logger.debug(f"Enqueued {type_value} item {item.id} for conversation {conversation_id}")
        return item

    def claim_batch(
        self,
        size: int,
        analysis_types: Optional[Iterable[AnalysisType | str]] = None,
        batch_id: Optional[str] = None,
    ) -> list[AnalysisQueueItem]:
        """
        Claim up to `size` pending items, oldest first.

        Each item moves to in_progress through a conditional UPDATE; an item
        claimed by someone else between the SELECT and the UPDATE is skipped.

        Returns:
            Claimed items with attempts already incremented
        """
        types = _type_values(analysis_types)
        query = self.session.query(AnalysisQueueItem.id).filter(
            AnalysisQueueItem.status == QueueStatus.PENDING.value
        )
        if types is not None:
            query = query.filter(AnalysisQueueItem.analysis_type.in_(types))
        candidate_ids = [
            row.id
            for row in query.order_by(AnalysisQueueItem.created_at, AnalysisQueueItem.id)
            .limit(size)
            .all()
        ]
        if not candidate_ids:
            return []

        batch_id = batch_id or uuid.uuid4().hex
        now = utcnow()
        claimed_ids = []
        for item_id in candidate_ids:
            updated = (
                self.session.query(AnalysisQueueItem)
                .filter(
                    AnalysisQueueItem.id == item_id,
                    AnalysisQueueItem.status == QueueStatus.PENDING.value,
                )
                .update(
                    {
                        AnalysisQueueItem.status: QueueStatus.IN_PROGRESS.value,
                        AnalysisQueueItem.attempts: AnalysisQueueItem.attempts + 1,
                        AnalysisQueueItem.started_at: now,
                        AnalysisQueueItem.completed_at: None,
                        AnalysisQueueItem.batch_id: batch_id,
                    },
                    synchronize_session=False,
                )
            )
            if updated == 1:
                claimed_ids.append(item_id)

        if not claimed_ids:
            return []

        items = (
            self.session.query(AnalysisQueueItem)
            .filter(AnalysisQueueItem.id.in_(claimed_ids))
            .order_by(AnalysisQueueItem.created_at, AnalysisQueueItem.id)
            .execution_options(populate_existing=True)
            .all()
        )
        logger.debug(f"Claimed {len(items)} analysis item(s) in batch {batch_id}")
        return items

    def complete(
        self,
        item_id: uuid.UUID,
        success: bool,
        error: Optional[str] = None,
    ) -> Optional[AnalysisQueueItem]:
        """
        Record the outcome of an attempt.

        A failed attempt goes back to pending until attempts reach
        max_attempts, then the item is marked failed.
        """
        item = self.session.get(AnalysisQueueItem, item_id)
        if item is None:
            logger.warning(f"Analysis item {item_id} not found when trying to complete")
            return None

        item.completed_at = utcnow()
        if success:
            item.status = QueueStatus.COMPLETED.value
            item.error = None
            logger.debug(f"Analysis item {item_id} completed")
        else:
            item.error = error
            if item.attempts >= item.max_attempts:
                item.status = QueueStatus.FAILED.value
                logger.warning(
                    f"Analysis item {item_id} failed after {item.attempts} attempts: {error}"
                )
            else:
                item.status = QueueStatus.PENDING.value
                item.started_at = None
                item.completed_at = None
                logger.info(
                    f"Analysis item {item_id} failed, will retry "
                    f"(attempt {item.attempts}/{item.max_attempts}): {error}"
                )
        self.session.flush()
        return item

    def reset_failed(
        self, analysis_types: Optional[Iterable[AnalysisType | str]] = None
    ) -> int:
        """
        Move failed items back to pending with a fresh attempt budget.

        A failed item whose pair has since been re-queued is dropped instead.

        Returns:
            Number of items reset
        """
        types = _type_values(analysis_types)
        query = self.session.query(AnalysisQueueItem).filter(
            AnalysisQueueItem.status == QueueStatus.FAILED.value
        )
        if types is not None:
            query = query.filter(AnalysisQueueItem.analysis_type.in_(types))

        reset = 0
        for item in query.all():
            if self._find_active(item.conversation_id, item.analysis_type):
                self.session.delete(item)
                continue
            item.status = QueueStatus.PENDING.value
            item.attempts = 0
            item.error = None
            item.started_at = None
            item.completed_at = None
            # Flush per item so the next _find_active sees it
            self.session.flush()
            reset += 1

        self.session.flush()
        if reset:
            logger.info(f"Reset {reset} failed analysis item(s)")
        return reset

    def cleanup_stale(self, timeout_seconds: int = 600) -> int:
        """
        Reset in-progress items claimed longer than timeout_seconds ago.

        Handles workers that died mid-item. The attempt already counted
        stays counted.

        Returns:
            Number of items reset
        """
        threshold = utcnow() - timedelta(seconds=timeout_seconds)
        result = (
            self.session.query(AnalysisQueueItem)
            .filter(
                AnalysisQueueItem.status == QueueStatus.IN_PROGRESS.value,
                AnalysisQueueItem.started_at < threshold,
            )
            .update(
                {
                    AnalysisQueueItem.status: QueueStatus.PENDING.value,
                    AnalysisQueueItem.started_at: None,
                },
                synchronize_session=False,
            )
        )
        if result > 0:
            logger.warning(f"Reset {result} stale analysis item(s)")
        return result

    def purge_completed(self, older_than_days: int = 7) -> int:
        """
        Delete completed items older than the given age.

        Returns:
            Number of items deleted
        """
        threshold = utcnow() - timedelta(days=older_than_days)
        result = (
            self.session.query(AnalysisQueueItem)
            .filter(
                AnalysisQueueItem.status == QueueStatus.COMPLETED.value,
                AnalysisQueueItem.completed_at < threshold,
            )
            .delete(synchronize_session=False)
        )
        if result > 0:
            logger.info(f"Purged {result} completed analysis item(s) older than {older_than_days} days")
        return result

    def clear(self, analysis_types: Optional[Iterable[AnalysisType | str]] = None) -> int:
        """Delete every item, or every item of the given types."""
        types = _type_values(analysis_types)
        query = self.session.query(AnalysisQueueItem)
        if types is not None:
            query = query.filter(AnalysisQueueItem.analysis_type.in_(types))
        return query.delete(synchronize_session=False)

    def get_stats(self) -> QueueStats:
        results = (
            self.session.query(AnalysisQueueItem.status, func.count(AnalysisQueueItem.id))
            .group_by(AnalysisQueueItem.status)
            .all()
        )

        stats = QueueStats()
        for status, count in results:
            if status == QueueStatus.PENDING.value:
                stats.pending = count
            elif status == QueueStatus.IN_PROGRESS.value:
                stats.in_progress = count
            elif status == QueueStatus.COMPLETED.value:
                stats.completed = count
            elif status == QueueStatus.FAILED.value:
                stats.failed = count
            stats.total += count
        return stats
