"""
Analysis dispatcher and background worker.

Turns change events into queue items and runs queued items through the
analyzers registered for their type. One item is processed as:

1. load the conversation and its messages in a short session
2. run the analyzers with no session open (models can be slow)
3. store candidates and complete the item in one transaction

A failing item is marked failed for this attempt and never aborts the
batch it came in.
"""

import logging
import threading
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from sqlalchemy.exc import OperationalError, SQLAlchemyError

from lorekeep.analysis.base import AnalysisResult
from lorekeep.analysis.content_filter import is_meta
from lorekeep.analysis.job_queue import AnalysisJobQueue, QueueStats
from lorekeep.analysis.registry import AnalyzerRegistry
from lorekeep.db.connection import db_session
from lorekeep.db.repositories import ConversationRepository, MessageRepository
from lorekeep.exceptions import AnalyzerError, StoreUnavailableError
from lorekeep.learning.lifecycle import LearningLifecycleManager
from lorekeep.models.db import AnalysisType, Conversation, Message, QueueStatus
from lorekeep.pipeline.upsert import ChangeEvent, SessionFactory
from lorekeep.utils.locks import KeyedLocks

logger = logging.getLogger(__name__)

# Types whose analysis is skipped for conversations about the work process
CONTENT_FILTERED_TYPES = (AnalysisType.LEARNING, AnalysisType.WORKFLOW)

OUTCOME_COMPLETED = "completed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_RETRIED = "retried"
OUTCOME_FAILED = "failed"


@dataclass
class ScanStats:
    """Totals for one scan() call."""

    processed: int = 0
    completed: int = 0
    failed: int = 0
    retried: int = 0
    skipped: int = 0
    learnings_created: int = 0
    workflows_created: int = 0
    duplicates_marked: int = 0

    def merge(self, other: "ScanStats") -> None:
        for name in self.__dataclass_fields__:
            setattr(self, name, getattr(self, name) + getattr(other, name))


@dataclass
class _Claim:
    item_id: uuid.UUID
    conversation_id: uuid.UUID
    analysis_type: AnalysisType


@dataclass
class _ItemOutcome:
    status: str
    learnings: int = 0
    workflows: int = 0
    duplicates: int = 0


def parse_analysis_types(values: Iterable[AnalysisType | str]) -> list[AnalysisType]:
    """
    Validate analysis type names, keeping order and dropping repeats.

    Raises:
        ValueError: On an unknown type name
    """
    types: list[AnalysisType] = []
    for value in values:
        name = value.value if isinstance(value, AnalysisType) else str(value).strip().lower()
        try:
            analysis_type = AnalysisType(name)
        except ValueError:
            valid = ", ".join(t.value for t in AnalysisType)
            raise ValueError(
                f"Unknown analysis type {value!r} (expected one of: {valid})"
            ) from None
        if analysis_type not in types:
            types.append(analysis_type)
    return types


class AnalysisDispatcher:
    """
    Feeds the analysis queue and drains it through the analyzer registry.

    Args:
        registry: Analyzers by type
        lifecycle: Where candidates are stored
        session_factory: Transaction context
        analysis_types: Types enqueued on change and scanned by default
        allow_cloud: Cloud consent; without it cloud analyzers never run
        batch_size: Items claimed per batch
        concurrency: Items analyzed in parallel
        max_attempts: Attempts per item before it is marked failed
        poll_interval: Seconds the worker waits when the queue is empty
        stale_timeout_seconds: In-progress claims older than this are reaped
        shutdown_event: Shared stop signal
    """

    def __init__(
        self,
        registry: AnalyzerRegistry,
        lifecycle: LearningLifecycleManager,
        session_factory: SessionFactory = db_session,
        analysis_types: Sequence[AnalysisType | str] = (
            AnalysisType.LEARNING,
            AnalysisType.WORKFLOW,
        ),
        allow_cloud: bool = False,
        batch_size: int = 10,
        concurrency: int = 2,
        max_attempts: int = 3,
        poll_interval: float = 5.0,
        stale_timeout_seconds: int = 600,
        purge_completed_days: int = 7,
        shutdown_event: Optional[threading.Event] = None,
    ):
        self.registry = registry
        self.lifecycle = lifecycle
        self.session_factory = session_factory
        self.analysis_types = parse_analysis_types(analysis_types)
        self.allow_cloud = allow_cloud
        self.batch_size = max(1, batch_size)
        self.concurrency = max(1, concurrency)
        self.max_attempts = max_attempts
        self.poll_interval = poll_interval
        self.stale_timeout_seconds = stale_timeout_seconds
        self.purge_completed_days = purge_completed_days
        self.shutdown_event = shutdown_event or threading.Event()

        self._locks = KeyedLocks()
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._running = False
        self._last_cleanup: Optional[float] = None
        self._totals = ScanStats()
        self._totals_lock = threading.Lock()

    def _queue(self, session) -> AnalysisJobQueue:
        return AnalysisJobQueue(session, max_attempts=self.max_attempts)

    def _should_stop(self) -> bool:
        return self.shutdown_event.is_set() or self._stop_event.is_set()

    # Enqueueing

    def on_change(self, event: ChangeEvent) -> None:
        """Upsert listener: queue analysis when conversation content changed."""
        if not event.affects_content:
            logger.debug(f"Metadata-only change to {event.conversation_id}; not queued")
            return
        with self.session_factory() as session:
            queue = self._queue(session)
            for analysis_type in self.analysis_types:
                queue.enqueue(event.conversation_id, analysis_type)
        logger.debug(
            f"Queued {len(self.analysis_types)} analysis item(s) for {event.conversation_id}"
        )

    def enqueue_all(
        self, analysis_types: Optional[Iterable[AnalysisType | str]] = None
    ) -> int:
        """
        Queue every stored conversation.

        Returns:
            Number of queue items now active for those conversations
        """
        types = parse_analysis_types(analysis_types) if analysis_types else self.analysis_types
        count = 0
        with self.session_factory() as session:
            queue = self._queue(session)
            for conversation_id in ConversationRepository(session).get_all_ids():
                for analysis_type in types:
                    queue.enqueue(conversation_id, analysis_type)
                    count += 1
        logger.info(f"Queued {count} analysis item(s)")
        return count

    # Scanning

    def scan(
        self,
        batch_size: Optional[int] = None,
        analysis_types: Optional[Iterable[AnalysisType | str]] = None,
    ) -> ScanStats:
        """
        Claim and process batches until the queue has nothing pending.

        Raises:
            ValueError: On an unknown analysis type
            StoreUnavailableError: If the store fails outside a single item
        """
        types = parse_analysis_types(analysis_types) if analysis_types else self.analysis_types
        size = batch_size or self.batch_size
        stats = ScanStats()

        try:
            while not self._should_stop():
                claims = self._claim(size, types)
                if not claims:
                    break
                with ThreadPoolExecutor(
                    max_workers=min(self.concurrency, len(claims)),
                    thread_name_prefix="analysis",
                ) as pool:
                    outcomes = list(pool.map(self._process_item, claims))
                for outcome in outcomes:
                    self._record(stats, outcome)
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Analysis scan aborted: {e}") from e

        with self._totals_lock:
            self._totals.merge(stats)
        if stats.processed:
            logger.info(
                f"Analysis scan: {stats.processed} processed, {stats.completed} completed, "
                f"{stats.skipped} skipped, {stats.retried} retried, {stats.failed} failed; "
                f"{stats.learnings_created} learnings, {stats.workflows_created} workflows"
            )
        return stats

    def _claim(self, size: int, types: list[AnalysisType]) -> list[_Claim]:
        # Commit the claim before processing so failed attempts stay counted
        with self.session_factory() as session:
            items = self._queue(session).claim_batch(size, types)
            return [
                _Claim(
                    item_id=item.id,
                    conversation_id=item.conversation_id,
                    analysis_type=AnalysisType(item.analysis_type),
                )
                for item in items
            ]

    @staticmethod
    def _record(stats: ScanStats, outcome: _ItemOutcome) -> None:
        stats.processed += 1
        if outcome.status == OUTCOME_COMPLETED:
            stats.completed += 1
        elif outcome.status == OUTCOME_SKIPPED:
            stats.skipped += 1
        elif outcome.status == OUTCOME_RETRIED:
            stats.retried += 1
        else:
            stats.failed += 1
        stats.learnings_created += outcome.learnings
        stats.workflows_created += outcome.workflows
        stats.duplicates_marked += outcome.duplicates

    def _process_item(self, claim: _Claim) -> _ItemOutcome:
        with self._locks.hold((claim.conversation_id, claim.analysis_type)):
            try:
                return self._analyze_item(claim)
            except Exception as e:
                logger.warning(
                    f"Analysis item {claim.item_id} ({claim.analysis_type.value}) for "
                    f"conversation {claim.conversation_id} failed: {e}"
                )
                with self.session_factory() as session:
                    item = self._queue(session).complete(
                        claim.item_id, success=False, error=str(e)
                    )
                    failed = item is None or item.status == QueueStatus.FAILED.value
                return _ItemOutcome(OUTCOME_FAILED if failed else OUTCOME_RETRIED)

    def _load(self, conversation_id: uuid.UUID) -> tuple[Conversation, list[Message]]:
        with self.session_factory() as session:
            conversation = ConversationRepository(session).get(conversation_id)
            if conversation is None:
                raise AnalyzerError("dispatcher", f"conversation {conversation_id} not found")
            messages = MessageRepository(session).get_for_conversation(conversation_id)
        return conversation, messages

    def _analyze_item(self, claim: _Claim) -> _ItemOutcome:
        conversation, messages = self._load(claim.conversation_id)

        analyzers = self.registry.for_type(claim.analysis_type, allow_cloud=self.allow_cloud)
        skip_reason = None
        if not analyzers:
            skip_reason = "no analyzer available"
        elif claim.analysis_type in CONTENT_FILTERED_TYPES and is_meta(conversation, messages):
            skip_reason = "meta conversation"

        result = AnalysisResult()
        if skip_reason is None:
            for analyzer in analyzers:
                result.extend(analyzer.analyze(conversation, messages))

        outcome = _ItemOutcome(OUTCOME_SKIPPED if skip_reason else OUTCOME_COMPLETED)
        with self.session_factory() as session:
            for candidate in result.learnings:
                if self.lifecycle.submit(candidate, conversation, session=session):
                    outcome.learnings += 1
            for candidate in result.workflows:
                signature = self.lifecycle.submit_workflow(candidate, conversation, session=session)
                if signature is not None and signature.occurrence_count == 1:
                    outcome.workflows += 1
            for match in result.duplicates:
                if self.lifecycle.mark_duplicate(match, session=session):
                    outcome.duplicates += 1
            self._queue(session).complete(claim.item_id, success=True)

        if skip_reason:
            logger.debug(
                f"Skipped {claim.analysis_type.value} for {claim.conversation_id}: {skip_reason}"
            )
        return outcome

    # Maintenance

    def retry_failed(
        self, analysis_types: Optional[Iterable[AnalysisType | str]] = None
    ) -> ScanStats:
        """Give failed items a fresh attempt budget and scan."""
        types = parse_analysis_types(analysis_types) if analysis_types else self.analysis_types
        with self.session_factory() as session:
            self._queue(session).reset_failed(types)
        return self.scan(analysis_types=types)

    def full_rescan(
        self,
        reset: bool = False,
        analysis_types: Optional[Iterable[AnalysisType | str]] = None,
        batch_size: Optional[int] = None,
    ) -> ScanStats:
        """
        Queue every conversation and scan.

        With reset, all learnings, workflow signatures and queue items are
        deleted first.
        """
        types = parse_analysis_types(analysis_types) if analysis_types else self.analysis_types
        if reset:
            with self.session_factory() as session:
                cleared = self._queue(session).clear()
                self.lifecycle.clear_all(session=session)
            logger.warning(f"Reset analysis state ({cleared} queue item(s) removed)")
        self.enqueue_all(types)
        return self.scan(batch_size=batch_size, analysis_types=types)

    def cleanup(self) -> None:
        """Reap stale claims and purge old completed items."""
        with self.session_factory() as session:
            queue = self._queue(session)
            queue.cleanup_stale(self.stale_timeout_seconds)
            queue.purge_completed(self.purge_completed_days)
        self._last_cleanup = time.monotonic()

    def queue_stats(self) -> QueueStats:
        with self.session_factory() as session:
            return self._queue(session).get_stats()

    # Background worker

    def run(self) -> None:
        """
        Worker loop: scan the queue until stopped.

        Waits poll_interval when the queue is empty, backs off when the
        store is unavailable, and reaps stale claims periodically.
        """
        logger.info("Analysis worker starting")
        self._running = True

        while not self._should_stop():
            try:
                if self._cleanup_due():
                    self.cleanup()
                stats = self.scan()
                if stats.processed == 0:
                    self._wait(self.poll_interval)
            except (OperationalError, StoreUnavailableError) as e:
                logger.warning(f"Analysis worker DB unavailable: {e}")
                self._wait(5.0)
            except Exception as e:
                logger.error(f"Error in analysis worker loop: {e}", exc_info=True)
                self._wait(1.0)

        totals = self.get_stats()
        logger.info(
            f"Analysis worker stopped. Processed: {totals['processed']}, "
            f"Completed: {totals['completed']}, Failed: {totals['failed']}"
        )
        self._running = False

    def _cleanup_due(self) -> bool:
        if self._last_cleanup is None:
            return True
        return time.monotonic() - self._last_cleanup >= self.stale_timeout_seconds

    def _wait(self, seconds: float) -> None:
        # Wake on either stop signal
        deadline = time.monotonic() + seconds
        while not self._should_stop():
            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return
            self._stop_event.wait(min(remaining, 0.5))

    def start(self) -> None:
        """Start the worker in a background thread."""
        if self._thread is not None and self._thread.is_alive():
            logger.warning("Analysis worker is already running")
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self.run, daemon=True, name="analysis-worker")
        self._thread.start()
        logger.info("Started analysis worker background thread")

    def stop(self, timeout: float = 10.0) -> None:
        """Stop the worker gracefully."""
        self._stop_event.set()
        if self._thread is not None and self._thread.is_alive():
            self._thread.join(timeout=timeout)
            if self._thread.is_alive():
                logger.warning(f"Analysis worker thread did not stop within {timeout}s timeout")
        self._thread = None

    @property
    def is_running(self) -> bool:
        return self._running

    def get_stats(self) -> dict[str, object]:
        with self._totals_lock:
            totals = ScanStats(**self._totals.__dict__)
        return {"running": self._running, **totals.__dict__}
