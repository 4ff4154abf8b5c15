"""Tests for SyncOrchestrator."""

import threading
import time
from unittest.mock import Mock

import pytest

from lorekeep.db.repositories import ConversationRepository, SyncCursorRepository
from lorekeep.exceptions import (
    PartialBatchFailure,
    PermanentError,
    SessionExpiredError,
    StoreUnavailableError,
    TransientError,
)
from lorekeep.models.db import Provider
from lorekeep.pipeline.upsert import UpsertEngine
from lorekeep.sync.adapters.cli_logs import CliLogAdapter
from lorekeep.sync.orchestrator import (
    DISCOVER_ERROR_KEY,
    SESSION_ERROR_KEY,
    STATUS_ABORTED,
    STATUS_COMPLETED,
    SyncOrchestrator,
)
from lorekeep.sync.progress import ProgressReporter


@pytest.fixture
def upsert_engine(session_factory):
    return UpsertEngine(session_factory)


@pytest.fixture
def make_orchestrator(upsert_engine, session_factory):
    def _make(*adapters, **kwargs):
        kwargs.setdefault("backoff_seconds", 0)
        return SyncOrchestrator(
            {a.provider: a for a in adapters},
            upsert_engine,
            session_factory=session_factory,
            **kwargs,
        )

    return _make


def conversation_count(session_factory) -> int:
    with session_factory() as session:
        return ConversationRepository(session).count()


class TestSyncOne:
    """Tests for a single provider pass."""

    def test_first_pass_creates(self, make_orchestrator, fake_adapter, session_factory):
        """Test that every unit is fetched, upserted and its cursor stored."""
        stats = make_orchestrator(fake_adapter).sync_one(Provider.WEB_SOURCE_A)

        assert stats.status == STATUS_COMPLETED
        assert stats.units_total == 2
        assert stats.created == 2
        assert stats.succeeded == 2
        assert stats.failed == 0
        assert len(stats.conversation_ids) == 2
        assert stats.finished_at is not None
        assert conversation_count(session_factory) == 2
        with session_factory() as session:
            fragments = SyncCursorRepository(session).get_fragments("web_source_a")
        assert fragments == {"conv-1": {"version": 1}, "conv-2": {"version": 1}}

    def test_second_pass_is_idempotent(self, make_orchestrator, fake_adapter, session_factory):
        """Test that re-running a pass creates nothing new."""
        orchestrator = make_orchestrator(fake_adapter)
        orchestrator.sync_one("web_source_a")
        stats = orchestrator.sync_one("web_source_a")

        assert stats.created == 0
        assert stats.updated == 0
        assert stats.skipped == 2
        assert stats.succeeded == 2
        assert conversation_count(session_factory) == 2
        assert fake_adapter.fetch_calls[-1] == ("conv-2", {"version": 1})

    def test_force_clears_cursors(self, make_orchestrator, fake_adapter, session_factory):
        """Test that force refetches every unit from scratch without duplicating."""
        orchestrator = make_orchestrator(fake_adapter)
        orchestrator.sync_one("web_source_a")
        stats = orchestrator.sync_one("web_source_a", force=True)

        assert stats.skipped == 0
        assert stats.unchanged == 2
        assert all(fragment is None for _, fragment in fake_adapter.fetch_calls[-2:])
        assert conversation_count(session_factory) == 2

    def test_transient_failure_is_retried(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that a TransientError is retried until the fetch succeeds."""
        adapter = adapter_factory(
            conversations={"conv-1": [conversation_factory("conv-1")]},
            failures={"conv-1": [TransientError("timeout"), TransientError("timeout")]},
        )

        stats = make_orchestrator(adapter, max_retries=3).sync_one("web_source_a")

        assert stats.created == 1
        assert stats.failed == 0
        assert len(adapter.fetch_calls) == 3

    def test_retries_exhausted_fails_unit_only(
        self, make_orchestrator, adapter_factory, conversation_factory, session_factory
    ):
        """Test that an exhausted unit fails without blocking the others or its cursor."""
        adapter = adapter_factory(
            conversations={
                "conv-1": [conversation_factory("conv-1")],
                "conv-2": [conversation_factory("conv-2")],
            },
            failures={"conv-1": [TransientError("busy")] * 5},
        )

        stats = make_orchestrator(adapter, max_retries=2).sync_one("web_source_a")

        assert stats.failed == 1
        assert stats.created == 1
        assert stats.errors[0][0] == "conv-1"
        assert stats.status == STATUS_COMPLETED
        assert len([c for c in adapter.fetch_calls if c[0] == "conv-1"]) == 3
        with session_factory() as session:
            assert SyncCursorRepository(session).get_fragment("web_source_a", "conv-1") is None

    def test_permanent_failure_is_not_retried(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that a PermanentError fails the unit on the first attempt."""
        adapter = adapter_factory(
            conversations={
                "conv-1": [conversation_factory("conv-1")],
                "conv-2": [conversation_factory("conv-2")],
            },
            failures={"conv-1": [PermanentError("bad payload")]},
        )

        stats = make_orchestrator(adapter).sync_one("web_source_a")

        assert stats.failed == 1
        assert stats.succeeded == 1
        assert [c[0] for c in adapter.fetch_calls] == ["conv-1", "conv-2"]

    def test_retry_after_is_honoured(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that the wait uses the source's Retry-After when it is longer."""
        adapter = adapter_factory(
            conversations={"conv-1": [conversation_factory("conv-1")]},
            failures={"conv-1": [TransientError("rate limited", retry_after=0.05)]},
        )
        orchestrator = make_orchestrator(adapter)
        orchestrator.shutdown_event = Mock(wraps=threading.Event())

        orchestrator.sync_one("web_source_a")

        orchestrator.shutdown_event.wait.assert_called_once_with(0.05)

    def test_session_expired_aborts_pass(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that an expired session stops the pass and is flagged."""
        adapter = adapter_factory(
            conversations={
                "conv-1": [conversation_factory("conv-1")],
                "conv-2": [conversation_factory("conv-2")],
            },
            failures={"conv-1": [SessionExpiredError("web_source_a")]},
        )

        stats = make_orchestrator(adapter).sync_one("web_source_a")

        assert stats.status == STATUS_ABORTED
        assert stats.session_expired
        assert stats.errors[0][0] == SESSION_ERROR_KEY
        assert [c[0] for c in adapter.fetch_calls] == ["conv-1"]

    def test_discover_failure(self, make_orchestrator, adapter_factory):
        """Test that a failing discovery aborts with a discover error."""
        adapter = adapter_factory(discover_error=PermanentError("listing broken"))

        stats = make_orchestrator(adapter).sync_one("web_source_a")

        assert stats.status == STATUS_ABORTED
        assert stats.failed == 1
        assert stats.errors == [(DISCOVER_ERROR_KEY, "listing broken")]

    def test_shutdown_stops_between_units(self, make_orchestrator, fake_adapter):
        """Test that a set shutdown event aborts before the next unit."""
        orchestrator = make_orchestrator(fake_adapter)
        orchestrator.shutdown_event.set()

        stats = orchestrator.sync_one("web_source_a")

        assert stats.status == STATUS_ABORTED
        assert fake_adapter.fetch_calls == []

    def test_store_failure_propagates(self, fake_adapter, session_factory):
        """Test that StoreUnavailableError aborts the pass and releases the lease."""
        engine = Mock()
        engine.upsert.side_effect = StoreUnavailableError("disk gone")
        orchestrator = SyncOrchestrator(
            {fake_adapter.provider: fake_adapter}, engine, session_factory=session_factory
        )

        with pytest.raises(StoreUnavailableError):
            orchestrator.sync_one("web_source_a")
        assert not orchestrator.is_running("web_source_a")

    def test_unknown_provider(self, make_orchestrator, fake_adapter):
        """Test that syncing a disabled provider raises ValueError."""
        with pytest.raises(ValueError, match="not enabled"):
            make_orchestrator(fake_adapter).sync_one(Provider.CLI_SOURCE_B)

    def test_explicit_units(self, make_orchestrator, fake_adapter):
        """Test that a pass can be restricted to given work units."""
        orchestrator = make_orchestrator(fake_adapter)
        unit = fake_adapter.discover()[1]

        stats = orchestrator.sync_one("web_source_a", units=[unit])

        assert stats.units_total == 1
        assert [c[0] for c in fake_adapter.fetch_calls] == ["conv-2"]

    def test_progress_final_update(self, upsert_engine, session_factory, fake_adapter):
        """Test that observers always receive a done update."""
        reporter = ProgressReporter(step_items=1, step_percent=0)
        updates = []
        reporter.subscribe(updates.append)
        orchestrator = SyncOrchestrator(
            {fake_adapter.provider: fake_adapter},
            upsert_engine,
            session_factory=session_factory,
            progress=reporter,
        )

        orchestrator.sync_one("web_source_a")

        assert updates[-1].done
        assert updates[-1].processed == 2
        assert updates[-1].percent == 100.0


class TestSingleFlight:
    """Tests for coalescing concurrent passes of one provider."""

    def test_concurrent_callers_share_pass(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that a second caller joins the running pass instead of starting one."""
        started = threading.Event()
        release = threading.Event()

        class BlockingAdapter(adapter_factory):
            def discover(self):
                started.set()
                release.wait(5)
                return super().discover()

        adapter = BlockingAdapter(conversations={"conv-1": [conversation_factory("conv-1")]})
        orchestrator = make_orchestrator(adapter)
        results = {}

        leader = threading.Thread(
            target=lambda: results.__setitem__("leader", orchestrator.sync_one("web_source_a"))
        )
        leader.start()
        assert started.wait(5)
        assert orchestrator.is_running("web_source_a")

        follower = threading.Thread(
            target=lambda: results.__setitem__("follower", orchestrator.sync_one("web_source_a"))
        )
        follower.start()
        time.sleep(0.2)
        release.set()
        leader.join(5)
        follower.join(5)

        assert results["leader"] is results["follower"]
        assert len(adapter.fetch_calls) == 1
        assert not orchestrator.is_running("web_source_a")

    def test_unit_caller_waits_for_started_pass(
        self, make_orchestrator, adapter_factory, conversation_factory
    ):
        """Test that a caller does not join a pass that will never fetch its unit."""
        fetching = threading.Event()
        release = threading.Event()

        class BlockingAdapter(adapter_factory):
            def fetch(self, unit, fragment):
                result = super().fetch(unit, fragment)
                if len(self.fetch_calls) == 1:
                    fetching.set()
                    release.wait(5)
                return result

        adapter = BlockingAdapter(
            conversations={
                "conv-1": [conversation_factory("conv-1")],
                "conv-2": [conversation_factory("conv-2")],
            }
        )
        orchestrator = make_orchestrator(adapter)
        conv_1, conv_2 = adapter.discover()
        results = {}

        leader = threading.Thread(
            target=lambda: results.__setitem__(
                "leader", orchestrator.sync_one("web_source_a", units=[conv_1])
            )
        )
        leader.start()
        assert fetching.wait(5)

        second = threading.Thread(
            target=lambda: results.__setitem__(
                "second", orchestrator.sync_one("web_source_a", units=[conv_2])
            )
        )
        second.start()
        time.sleep(0.2)
        release.set()
        leader.join(5)
        second.join(5)

        assert results["second"] is not results["leader"]
        assert [key for key, _ in adapter.fetch_calls] == ["conv-1", "conv-2"]
        assert results["second"].created == 1

    def test_pending_unit_joins_running_pass(
        self, make_orchestrator, adapter_factory, conversation_factory
    ):
        """Test that a caller whose unit the running pass has yet to start shares that pass."""
        fetching = threading.Event()
        release = threading.Event()

        class BlockingAdapter(adapter_factory):
            def fetch(self, unit, fragment):
                if unit.key == "conv-1":
                    fetching.set()
                    release.wait(5)
                return super().fetch(unit, fragment)

        adapter = BlockingAdapter(
            conversations={
                "conv-1": [conversation_factory("conv-1")],
                "conv-2": [conversation_factory("conv-2")],
            }
        )
        orchestrator = make_orchestrator(adapter)
        conv_2 = adapter.discover()[1]
        results = {}

        leader = threading.Thread(
            target=lambda: results.__setitem__("leader", orchestrator.sync_one("web_source_a"))
        )
        leader.start()
        assert fetching.wait(5)

        follower = threading.Thread(
            target=lambda: results.__setitem__(
                "follower", orchestrator.sync_one("web_source_a", units=[conv_2])
            )
        )
        follower.start()
        time.sleep(0.2)
        release.set()
        leader.join(5)
        follower.join(5)

        assert results["follower"] is results["leader"]
        assert [key for key, _ in adapter.fetch_calls] == ["conv-1", "conv-2"]


class TestSyncAll:
    """Tests for sync_all and SyncResult."""

    def test_runs_every_provider(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that sync_all aggregates stats across providers."""
        web_a = adapter_factory(conversations={"a": [conversation_factory("a")]})
        web_b = adapter_factory(
            provider=Provider.WEB_SOURCE_B,
            conversations={"b": [conversation_factory("b", provider=Provider.WEB_SOURCE_B)]},
        )

        result = make_orchestrator(web_a, web_b).sync_all()

        assert set(result.providers) == {"web_source_a", "web_source_b"}
        assert result.created == 2
        assert result.ok
        result.raise_for_failures()

    def test_raise_for_failures(self, make_orchestrator, adapter_factory, conversation_factory):
        """Test that unit failures surface as PartialBatchFailure."""
        adapter = adapter_factory(
            conversations={"conv-1": [conversation_factory("conv-1")]},
            failures={"conv-1": [PermanentError("bad payload")]},
        )

        result = make_orchestrator(adapter).sync_all()

        assert not result.ok
        with pytest.raises(PartialBatchFailure) as exc_info:
            result.raise_for_failures()
        assert exc_info.value.failures == [("web_source_a:conv-1", "bad payload")]

    def test_no_adapters(self, upsert_engine, session_factory):
        """Test that no enabled providers is an empty, successful result."""
        result = SyncOrchestrator({}, upsert_engine, session_factory=session_factory).sync_all()
        assert result.providers == {}
        assert result.ok

    def test_close_closes_adapters(self, make_orchestrator, fake_adapter):
        """Test that close() releases every adapter."""
        make_orchestrator(fake_adapter).close()
        assert fake_adapter.closed


class TestIncrementalCliSync:
    """Tests for syncing appended CLI log content."""

    def test_two_appends_one_pass(self, upsert_engine, session_factory, source_a_log):
        """Test that two separate appends are picked up by a single later pass."""
        adapter = CliLogAdapter(Provider.CLI_SOURCE_A, [source_a_log.root])
        orchestrator = SyncOrchestrator(
            {adapter.provider: adapter},
            upsert_engine,
            session_factory=session_factory,
            backoff_seconds=0,
        )
        path = source_a_log([("user", "Add a retry to the uploader")])
        orchestrator.sync_one(Provider.CLI_SOURCE_A)

        source_a_log([("assistant", "Added a retry with backoff.")])
        source_a_log([("user", "Log every attempt too")])
        stats = orchestrator.sync_one(Provider.CLI_SOURCE_A)

        assert stats.updated == 1
        with session_factory() as session:
            conversations = ConversationRepository(session).get_all()
            fragment = SyncCursorRepository(session).get_fragments("cli_source_a")[str(path)]
        assert len(conversations) == 1
        assert conversations[0].message_count == 3
        assert fragment["offset"] == path.stat().st_size
        assert fragment["line"] == 3
