"""
Sync orchestrator.

Runs provider passes: discover work units, fetch each one with its stored
cursor fragment, hand the normalized conversations to the upsert engine and
only then persist the new fragment. A crash between the upsert and the
cursor write replays the unit on the next pass, which the upsert engine
absorbs as a no-op.

Each provider has at most one pass in flight. A concurrent full sync shares
the running full pass's result. A caller that names its units shares a pass
only while that pass has yet to start every one of them. Otherwise it waits
for the pass to end and runs its own, so a change made after a unit was
fetched is never reported as synced.
"""

import logging
import threading
import uuid
from concurrent.futures import Future, ThreadPoolExecutor, wait
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable, Iterator, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from lorekeep.db.connection import db_session
from lorekeep.db.repositories import SyncCursorRepository
from lorekeep.exceptions import (
    PartialBatchFailure,
    PermanentError,
    SessionExpiredError,
    StoreUnavailableError,
    TransientError,
)
from lorekeep.models.db import Provider
from lorekeep.models.normalized import FetchResult, WorkUnit, _NotModified
from lorekeep.pipeline.upsert import SessionFactory, UpsertEngine
from lorekeep.sync.adapters.base import SourceAdapter
from lorekeep.sync.progress import ProgressReporter
from lorekeep.utils.timestamps import utcnow

logger = logging.getLogger(__name__)

T = TypeVar("T")

STATUS_COMPLETED = "completed"
STATUS_ABORTED = "aborted"

SESSION_ERROR_KEY = "session"
DISCOVER_ERROR_KEY = "discover"


@dataclass
class SyncStats:
    """Outcome of one provider pass."""

    provider: str
    status: str = STATUS_COMPLETED
    units_total: int = 0
    succeeded: int = 0  # Units fetched and committed (including not-modified)
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0  # Units the adapter reported as not modified
    failed: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    session_expired: bool = False
    conversation_ids: list[uuid.UUID] = field(default_factory=list)
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @property
    def duration_seconds(self) -> float:
        if not self.started_at or not self.finished_at:
            return 0.0
        return (self.finished_at - self.started_at).total_seconds()


@dataclass
class SyncResult:
    """Per-provider stats for one sync_all() call."""

    providers: dict[str, SyncStats] = field(default_factory=dict)

    def _total(self, name: str) -> int:
        return sum(getattr(s, name) for s in self.providers.values())

    @property
    def created(self) -> int:
        return self._total("created")

    @property
    def updated(self) -> int:
        return self._total("updated")

    @property
    def unchanged(self) -> int:
        return self._total("unchanged")

    @property
    def skipped(self) -> int:
        return self._total("skipped")

    @property
    def succeeded(self) -> int:
        return self._total("succeeded")

    @property
    def failed(self) -> int:
        return self._total("failed")

    @property
    def ok(self) -> bool:
        return self.failed == 0

    def raise_for_failures(self) -> None:
        """
        Raises:
            PartialBatchFailure: If any unit failed in any provider
        """
        failures = [
            (f"{stats.provider}:{key}", message)
            for stats in self.providers.values()
            for key, message in stats.errors
            if key != SESSION_ERROR_KEY
        ]
        if failures:
            raise PartialBatchFailure(failures)


@dataclass
class _Lease:
    """A pass in flight and the progress joiners need to judge coverage."""

    full: bool  # Discovers its own units
    future: Future = field(default_factory=Future)
    pending: Optional[set[str]] = None  # Units not yet started; None before discovery
    finished: set[str] = field(default_factory=set)

    def covers(self, keys: set[str]) -> bool:
        return self.pending is not None and keys <= self.pending


class SyncOrchestrator:
    """
    Coordinates adapters, the upsert engine and cursor storage.

    Args:
        adapters: Enabled adapters keyed by provider
        upsert_engine: Engine that reconciles normalized conversations
        session_factory: Transaction context for cursor reads and writes
        max_retries: Retries per unit on TransientError
        backoff_seconds: Base delay; attempt n waits base * 2**n
        max_workers: Providers synced concurrently by sync_all()
        shutdown_event: Set to stop passes between units and cut backoff waits short
        progress: Progress fan-out; a silent reporter is used when omitted
    """

    def __init__(
        self,
        adapters: dict[Provider, SourceAdapter],
        upsert_engine: UpsertEngine,
        session_factory: SessionFactory = db_session,
        max_retries: int = 3,
        backoff_seconds: float = 1.0,
        max_workers: int = 4,
        shutdown_event: Optional[threading.Event] = None,
        progress: Optional[ProgressReporter] = None,
    ):
        self.adapters = dict(adapters)
        self.upsert_engine = upsert_engine
        self.session_factory = session_factory
        self.max_retries = max_retries
        self.backoff_seconds = backoff_seconds
        self.max_workers = max(1, max_workers)
        self.shutdown_event = shutdown_event or threading.Event()
        self.progress = progress or ProgressReporter()

        self._leases: dict[Provider, _Lease] = {}
        self._lease_lock = threading.Lock()

    def sync_all(self, force: bool = False) -> SyncResult:
        """
        Run every enabled provider concurrently.

        Raises:
            StoreUnavailableError: If any provider's pass lost the store
        """
        result = SyncResult()
        if not self.adapters:
            logger.info("No providers enabled, nothing to sync")
            return result

        workers = min(self.max_workers, len(self.adapters))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="lorekeep-sync") as pool:
            futures = {
                provider: pool.submit(self.sync_one, provider, force)
                for provider in self.adapters
            }
            for provider, future in futures.items():
                result.providers[provider.value] = future.result()

        logger.info(
            f"Sync finished: {result.created} created, {result.updated} updated, "
            f"{result.skipped} skipped, {result.failed} failed"
        )
        return result

    def sync_one(
        self,
        provider: Provider | str,
        force: bool = False,
        units: Optional[Iterable[WorkUnit]] = None,
    ) -> SyncStats:
        """
        Run one provider's pass, or join the pass already in flight.

        Args:
            provider: Provider to sync
            force: Clear the provider's cursors first (only honoured by the
                caller that actually starts the pass)
            units: Restrict the pass to these work units instead of discover()

        Returns:
            SyncStats of the pass; joined callers receive the same object

        Raises:
            ValueError: If the provider is not enabled
            StoreUnavailableError: If the store went away mid-pass
        """
        provider = Provider(provider)
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise ValueError(f"Provider {provider.value} is not enabled")

        if units is not None:
            units = list(units)
        keys = None if units is None else {unit.key for unit in units}

        while True:
            with self._lease_lock:
                lease = self._leases.get(provider)
                if lease is None:
                    lease = _Lease(full=keys is None, pending=None if keys is None else set(keys))
                    self._leases[provider] = lease
                    break
                joinable = lease.full if keys is None else lease.covers(keys)

            if not joinable:
                logger.debug(f"{provider.value}: pass running without these units, waiting")
                wait([lease.future])
                continue

            logger.debug(f"{provider.value}: pass already running, joining it")
            stats = lease.future.result()
            if keys is None or keys <= lease.finished:
                return stats
            # The pass stopped before reaching our units; run them ourselves

        try:
            stats = self._run_pass(adapter, force, units, lease)
        except BaseException as e:
            self._release(provider)
            lease.future.set_exception(e)
            raise
        self._release(provider)
        lease.future.set_result(stats)
        return stats

    def _release(self, provider: Provider) -> None:
        with self._lease_lock:
            self._leases.pop(provider, None)

    def is_running(self, provider: Provider | str) -> bool:
        with self._lease_lock:
            return Provider(provider) in self._leases

    def close(self) -> None:
        for adapter in self.adapters.values():
            adapter.close()

    def _run_pass(
        self,
        adapter: SourceAdapter,
        force: bool,
        units: Optional[list[WorkUnit]],
        lease: _Lease,
    ) -> SyncStats:
        provider = adapter.provider
        stats = SyncStats(provider=provider.value, started_at=utcnow())

        if force:
            with self._store("clear cursors") as session:
                cleared = SyncCursorRepository(session).clear(provider.value)
            logger.info(f"{provider.value}: forced resync, cleared {cleared} cursor(s)")

        try:
            work = units if units is not None else self._with_retries(adapter.discover)
        except SessionExpiredError as e:
            self._mark_session_expired(stats, e)
            return self._finish(stats)
        except (TransientError, PermanentError) as e:
            logger.error(f"{provider.value}: discovery failed: {e}")
            stats.failed += 1
            stats.errors.append((DISCOVER_ERROR_KEY, str(e)))
            stats.status = STATUS_ABORTED
            return self._finish(stats)

        stats.units_total = len(work)
        with self._lease_lock:
            lease.pending = {unit.key for unit in work}
        with self._store("read cursors") as session:
            fragments = SyncCursorRepository(session).get_fragments(provider.value)

        tracker = self.progress.tracker(provider.value, len(work))
        try:
            for unit in work:
                if self.shutdown_event.is_set():
                    logger.info(f"{provider.value}: shutdown requested, stopping pass")
                    stats.status = STATUS_ABORTED
                    break
                try:
                    with self._lease_lock:
                        lease.pending.discard(unit.key)
                    self._process_unit(adapter, unit, fragments.get(unit.key), stats)
                except SessionExpiredError as e:
                    self._mark_session_expired(stats, e)
                    break
                except (TransientError, PermanentError) as e:
                    logger.warning(f"{provider.value}: {unit.key} failed: {e}")
                    stats.failed += 1
                    stats.errors.append((unit.key, str(e)))
                    self._mark_finished(lease, unit.key)
                except StoreUnavailableError:
                    stats.status = STATUS_ABORTED
                    raise
                except Exception as e:
                    logger.error(
                        f"{provider.value}: unexpected error on {unit.key}: {e}", exc_info=True
                    )
                    stats.failed += 1
                    stats.errors.append((unit.key, f"{type(e).__name__}: {e}"))
                    self._mark_finished(lease, unit.key)
                else:
                    self._mark_finished(lease, unit.key)
                finally:
                    tracker.advance()
        finally:
            tracker.finish()
            self._finish(stats)
        return stats

    def _mark_finished(self, lease: _Lease, key: str) -> None:
        with self._lease_lock:
            lease.finished.add(key)

    def _process_unit(
        self,
        adapter: SourceAdapter,
        unit: WorkUnit,
        fragment: Optional[dict],
        stats: SyncStats,
    ) -> None:
        result: FetchResult | _NotModified = self._with_retries(
            lambda: adapter.fetch(unit, fragment)
        )
        if isinstance(result, _NotModified):
            stats.skipped += 1
            stats.succeeded += 1
            return

        for conversation in result.conversations:
            outcome = self._with_retries(lambda c=conversation: self.upsert_engine.upsert(c))
            if outcome.created:
                stats.created += 1
                stats.conversation_ids.append(outcome.conversation_id)
            elif outcome.changed:
                stats.updated += 1
                stats.conversation_ids.append(outcome.conversation_id)
            else:
                stats.unchanged += 1

        # Every upsert above has committed; only now may the cursor move
        with self._store("write cursor") as session:
            SyncCursorRepository(session).set_fragment(
                adapter.provider.value, unit.key, result.fragment
            )
        stats.succeeded += 1

    def _with_retries(self, operation: Callable[[], T]) -> T:
        """Call operation, retrying TransientError with exponential backoff."""
        attempt = 0
        while True:
            try:
                return operation()
            except TransientError as e:
                if attempt >= self.max_retries:
                    raise
                delay = self.backoff_seconds * 2**attempt
                if e.retry_after is not None:
                    delay = max(delay, e.retry_after)
                attempt += 1
                logger.info(
                    f"Transient failure ({e}); retry {attempt}/{self.max_retries} "
                    f"in {delay:.1f}s"
                )
                if self.shutdown_event.wait(delay):
                    raise

    @contextmanager
    def _store(self, what: str) -> Iterator[Session]:
        """Session context that reports database failures as StoreUnavailableError."""
        try:
            with self.session_factory() as session:
                yield session
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"Cannot {what}: {e}") from e

    @staticmethod
    def _mark_session_expired(stats: SyncStats, error: SessionExpiredError) -> None:
        logger.warning(f"{stats.provider}: {error}")
        stats.session_expired = True
        stats.status = STATUS_ABORTED
        stats.errors.append((SESSION_ERROR_KEY, str(error)))

    @staticmethod
    def _finish(stats: SyncStats) -> SyncStats:
        if stats.finished_at is None:
            stats.finished_at = utcnow()
            logger.info(
                f"{stats.provider}: {stats.status} - {stats.units_total} units, "
                f"{stats.created} created, {stats.updated} updated, "
                f"{stats.skipped} skipped, {stats.failed} failed"
            )
        return stats

