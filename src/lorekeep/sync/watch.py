"""
File watching daemon for CLI session logs.

Watches the configured CLI roots for new and modified .jsonl files and
triggers a sync pass scoped to the changed file. Files whose pass failed
go into a retry queue with exponential backoff. The daemon also owns the
background analysis worker so a single `lorekeep watch` keeps the store
and the learnings current.
"""

import logging
import platform
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from threading import Event, Thread
from typing import TYPE_CHECKING, Any, Optional

from watchdog.events import FileSystemEvent, FileSystemEventHandler

# PollingObserver on macOS: the fsevents backend is not safe across
# rapid observer start/stop cycles
if platform.system() == "Darwin":
    from watchdog.observers.polling import PollingObserver as Observer
else:
    from watchdog.observers import Observer

from lorekeep.exceptions import StoreUnavailableError
from lorekeep.models.db import Provider
from lorekeep.sync.adapters.cli_logs import CliLogAdapter
from lorekeep.sync.orchestrator import STATUS_ABORTED, SyncOrchestrator
from lorekeep.utils.timestamps import utcnow

if TYPE_CHECKING:
    from lorekeep.analysis.dispatcher import AnalysisDispatcher

logger = logging.getLogger(__name__)


@dataclass
class RetryEntry:
    """A file whose sync failed and is waiting for another attempt."""

    file_path: Path
    provider: Provider
    attempts: int = 0
    last_attempt: Optional[datetime] = None
    last_error: str = ""
    next_retry: Optional[datetime] = None


@dataclass
class WatcherStats:
    """Statistics for the watch daemon."""

    started_at: datetime = field(default_factory=utcnow)
    files_processed: int = 0
    files_skipped: int = 0
    files_failed: int = 0
    files_retried: int = 0
    last_activity: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "started_at": self.started_at.isoformat(),
            "files_processed": self.files_processed,
            "files_skipped": self.files_skipped,
            "files_failed": self.files_failed,
            "files_retried": self.files_retried,
            "last_activity": (
                self.last_activity.isoformat() if self.last_activity else None
            ),
        }


class RetryQueue:
    """
    Files that failed to sync.

    Exponential backoff of base * 3**(attempts - 1): with the default
    base of 5 minutes that is 5, 15 and 45 minutes, then give up.
    """

    def __init__(self, max_retries: int = 3, base_interval: float = 300):
        self.max_retries = max_retries
        self.base_interval = base_interval
        self.queue: dict[str, RetryEntry] = {}
        self._lock = threading.Lock()

    def add(self, file_path: Path, provider: Provider, error: str) -> RetryEntry:
        """Record a failed attempt for a file."""
        path_str = str(file_path)
        with self._lock:
            entry = self.queue.get(path_str)
            if entry is None:
                entry = RetryEntry(file_path=file_path, provider=provider)
                self.queue[path_str] = entry
            entry.attempts += 1
            entry.last_error = error
            entry.last_attempt = utcnow()
            entry.next_retry = self._calculate_next_retry(entry.attempts)

        logger.info(
            f"Added {file_path.name} to retry queue "
            f"(attempt {entry.attempts}/{self.max_retries})"
        )
        return entry

    def _calculate_next_retry(self, attempts: int) -> datetime:
        delay_seconds = self.base_interval * 3 ** (attempts - 1)
        return utcnow() + timedelta(seconds=delay_seconds)

    def get_ready_files(self, now: Optional[datetime] = None) -> list[RetryEntry]:
        """Entries due for a retry. Entries out of attempts are dropped."""
        now = now or utcnow()
        ready = []
        with self._lock:
            for key, entry in list(self.queue.items()):
                if entry.attempts >= self.max_retries:
                    logger.warning(
                        f"Giving up on {entry.file_path.name} "
                        f"after {entry.attempts} attempts: {entry.last_error}"
                    )
                    del self.queue[key]
                    continue
                if entry.next_retry and entry.next_retry <= now:
                    ready.append(entry)
        return ready

    def remove(self, file_path: Path) -> None:
        with self._lock:
            self.queue.pop(str(file_path), None)

    def __contains__(self, file_path: object) -> bool:
        with self._lock:
            return str(file_path) in self.queue

    def __len__(self) -> int:
        with self._lock:
            return len(self.queue)


class SessionLogWatcher(FileSystemEventHandler):
    """
    Watchdog event handler for CLI session logs.

    Each created or modified .jsonl file under a CLI root triggers a
    sync pass restricted to that file.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        retry_queue: Optional[RetryQueue] = None,
        stats: Optional[WatcherStats] = None,
        debounce_seconds: float = 1.0,
        stats_lock: Optional[threading.Lock] = None,
        shutdown_event: Optional[Event] = None,
    ):
        super().__init__()
        self.orchestrator = orchestrator
        self.retry_queue = retry_queue or RetryQueue()
        self.stats = stats or WatcherStats()
        self.debounce_seconds = debounce_seconds
        self.shutdown_event = shutdown_event or orchestrator.shutdown_event
        self._stats_lock = stats_lock or threading.Lock()

        # Files with a pass in progress
        self.processing: set[str] = set()
        # Files changed again while their pass was running
        self.dirty: set[str] = set()
        self._processing_lock = threading.Lock()

        # Debounce tracking: file_path -> last_event_time
        self.last_events: dict[str, float] = {}

    @property
    def cli_adapters(self) -> list[CliLogAdapter]:
        return [
            a for a in self.orchestrator.adapters.values() if isinstance(a, CliLogAdapter)
        ]

    def adapter_for(self, file_path: Path) -> Optional[CliLogAdapter]:
        for adapter in self.cli_adapters:
            if adapter.owns(file_path):
                return adapter
        return None

    def on_created(self, event: FileSystemEvent) -> None:
        path = str(event.src_path)
        if not event.is_directory and path.endswith(".jsonl"):
            self._handle_file_event(Path(path))

    def on_modified(self, event: FileSystemEvent) -> None:
        path = str(event.src_path)
        if not event.is_directory and path.endswith(".jsonl"):
            self._handle_file_event(Path(path))

    def _handle_file_event(self, file_path: Path) -> None:
        """
        Debounce rapid events (write, flush, close) for the same file, then
        process it off the observer thread.
        """
        path_str = str(file_path)
        current_time = time.monotonic()

        last_event_time = self.last_events.get(path_str)
        if last_event_time is not None and current_time - last_event_time < self.debounce_seconds:
            logger.debug(f"Debouncing event for {file_path.name}")
            return
        self.last_events[path_str] = current_time

        thread = Thread(target=self.process_file, args=(file_path,), daemon=True)
        thread.start()

    def process_file(self, file_path: Path, wait: bool = True) -> bool:
        """
        Sync a single file.

        A change that lands while the file is already being synced marks it
        dirty; the running call then syncs it once more before returning.

        Args:
            file_path: Changed log file
            wait: Sleep for the debounce interval first so the writer can finish

        Returns:
            True if the file synced (or had nothing new), False on failure
        """
        path_str = str(file_path)
        adapter = self.adapter_for(file_path)
        if adapter is None:
            logger.debug(f"Ignoring {file_path}: not under a watched root")
            return True

        with self._processing_lock:
            if path_str in self.processing:
                logger.debug(f"Already processing {file_path.name}, syncing again when done")
                self.dirty.add(path_str)
                return True
            self.processing.add(path_str)

        try:
            while True:
                ok = self._sync_file(file_path, adapter, wait)
                with self._processing_lock:
                    if path_str not in self.dirty or self.shutdown_event.is_set():
                        return ok
                    self.dirty.discard(path_str)
                wait = False
        finally:
            with self._processing_lock:
                self.processing.discard(path_str)
                self.dirty.discard(path_str)

    def _sync_file(self, file_path: Path, adapter: CliLogAdapter, wait: bool) -> bool:
        if wait and self.debounce_seconds > 0:
            if self.shutdown_event.wait(self.debounce_seconds):
                return True

        if not file_path.exists():
            logger.debug(f"File no longer exists: {file_path.name}")
            self.retry_queue.remove(file_path)
            return True

        unit = adapter.unit_for(file_path)
        try:
            stats = self.orchestrator.sync_one(adapter.provider, units=[unit])
        except StoreUnavailableError as e:
            self._record_failure(file_path, adapter.provider, str(e))
            return False

        errors = [message for key, message in stats.errors if key == unit.key]
        if not errors and stats.status == STATUS_ABORTED:
            errors = [stats.errors[-1][1] if stats.errors else "sync pass aborted"]
        if errors:
            self._record_failure(file_path, adapter.provider, errors[-1])
            return False

        self.retry_queue.remove(file_path)
        with self._stats_lock:
            if stats.created or stats.updated:
                self.stats.files_processed += 1
            else:
                self.stats.files_skipped += 1
            self.stats.last_activity = utcnow()
        return True

    def _record_failure(self, file_path: Path, provider: Provider, error: str) -> None:
        logger.warning(f"Sync of {file_path.name} failed: {error}")
        self.retry_queue.add(file_path, provider, error)
        with self._stats_lock:
            self.stats.files_failed += 1
            self.stats.last_activity = utcnow()


class WatchDaemon:
    """
    Observer, retry thread and analysis worker under one shutdown event.

    Args:
        orchestrator: Orchestrator whose CLI adapters define the watched roots
        dispatcher: Analysis dispatcher to run in the background, if any
        debounce_seconds: Quiet period before a changed file is synced
        retry_interval: Base retry delay and retry-thread poll interval
        max_retries: Attempts per failed file
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        dispatcher: Optional["AnalysisDispatcher"] = None,
        debounce_seconds: float = 1.0,
        retry_interval: float = 300,
        max_retries: int = 3,
    ):
        self.orchestrator = orchestrator
        self.dispatcher = dispatcher
        self.retry_interval = retry_interval
        self.shutdown_event = orchestrator.shutdown_event
        self._stats_lock = threading.Lock()

        self.stats = WatcherStats()
        self.retry_queue = RetryQueue(max_retries=max_retries, base_interval=retry_interval)
        self.event_handler = SessionLogWatcher(
            orchestrator,
            retry_queue=self.retry_queue,
            stats=self.stats,
            debounce_seconds=debounce_seconds,
            stats_lock=self._stats_lock,
            shutdown_event=self.shutdown_event,
        )

        self.observer = Observer()
        self.watched_roots: list[Path] = []
        for adapter in self.event_handler.cli_adapters:
            for root in adapter.roots:
                if root.is_dir():
                    self.observer.schedule(self.event_handler, str(root), recursive=True)
                    self.watched_roots.append(root)
                else:
                    logger.warning(f"Not watching {root}: directory does not exist")

        self.retry_thread: Optional[Thread] = None

    def start(self, blocking: bool = True) -> None:
        """
        Start watching.

        Args:
            blocking: Block until the shutdown event is set
        """
        logger.info(f"Watching {len(self.watched_roots)} root(s)")
        self.observer.start()

        self._catch_up()

        self.retry_thread = Thread(target=self._retry_loop, name="lorekeep-retry", daemon=False)
        self.retry_thread.start()

        if self.dispatcher is not None:
            self.dispatcher.start()

        if blocking:
            try:
                while not self.shutdown_event.wait(1):
                    pass
            except KeyboardInterrupt:
                pass
            finally:
                self.stop()

    def stop(self) -> None:
        """Stop the observer, the retry thread and the analysis worker."""
        logger.info("Stopping watch daemon...")
        self.shutdown_event.set()

        try:
            self.observer.stop()
            if self.observer.is_alive():
                self.observer.join(timeout=3)
        except RuntimeError as e:
            logger.error(f"Error stopping observer: {e}")

        if self.retry_thread and self.retry_thread.is_alive():
            self.retry_thread.join(timeout=2)

        if self.dispatcher is not None:
            self.dispatcher.stop()

        logger.info("Watch daemon stopped")

    def is_running(self) -> bool:
        return self.observer.is_alive()

    def get_stats_snapshot(self) -> dict[str, Any]:
        with self._stats_lock:
            snapshot = self.stats.to_dict()
        snapshot["retry_queue_size"] = len(self.retry_queue)
        return snapshot

    def _catch_up(self) -> None:
        """Sync changes made while the daemon was not running."""
        for adapter in self.event_handler.cli_adapters:
            if self.shutdown_event.is_set():
                return
            try:
                self.orchestrator.sync_one(adapter.provider)
            except StoreUnavailableError as e:
                logger.error(f"Startup sync for {adapter.provider.value} failed: {e}")

    def _retry_loop(self) -> None:
        """Background thread that retries failed files."""
        poll = min(self.retry_interval, 60)
        while not self.shutdown_event.is_set():
            for entry in self.retry_queue.get_ready_files():
                if self.shutdown_event.is_set():
                    break
                logger.info(f"Retrying {entry.file_path.name} (attempt {entry.attempts + 1})")
                self.event_handler.process_file(entry.file_path, wait=False)
                with self._stats_lock:
                    self.stats.files_retried += 1
            self.shutdown_event.wait(timeout=poll)
