"""
Pytest configuration and fixtures for lorekeep tests.

Every test gets its own file-backed SQLite database under tmp_path, bound
through lorekeep.db.connection.configure() so that code using the module
level db_session() sees the same store as the test.
"""

import json
import uuid
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Optional

import pytest
from sqlalchemy.orm import Session

from lorekeep.db import connection
from lorekeep.models.db import Conversation, Message, Provider, SourceKind
from lorekeep.models.normalized import (
    NOT_MODIFIED,
    FetchResult,
    NormalizedConversation,
    NormalizedMessage,
    WorkUnit,
)
from lorekeep.sync.adapters.base import SourceAdapter

BASE_TIME = datetime(2025, 3, 1, 9, 0, 0)


@pytest.fixture
def database(tmp_path: Path):
    """Configure a fresh SQLite database for the test and create the schema."""
    engine = connection.configure(f"sqlite:///{tmp_path / 'lorekeep-test.db'}", echo=False)
    connection.init_db()
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(database):
    """
    The transactional session context used by the components under test.

    Tests arrange and inspect data through short `with session_factory()`
    blocks; every SQLite transaction starts with BEGIN IMMEDIATE, so a
    session held open across a call into a component would block it.
    """
    return connection.db_session


def make_message(
    role: str, content: str, minutes: int = 0, sequence: Optional[int] = None
) -> NormalizedMessage:
    return NormalizedMessage(
        role=role,
        content=content,
        timestamp=BASE_TIME + timedelta(minutes=minutes),
        sequence=minutes if sequence is None else sequence,
    )


def make_conversation(
    external_key: str = "conv-1",
    messages: Optional[list[NormalizedMessage]] = None,
    provider: Provider = Provider.WEB_SOURCE_A,
    title: str = "Formatting the export script",
    project_path: Optional[str] = None,
    **kwargs: Any,
) -> NormalizedConversation:
    if messages is None:
        messages = [
            make_message("user", "Write a function that exports orders to CSV", 0),
            make_message("assistant", "Here is a function using camelCase names.", 1),
        ]
    return NormalizedConversation(
        provider=provider,
        source_kind=SourceKind.CLI if provider.is_cli else SourceKind.WEB,
        external_key=external_key,
        title=title,
        messages=messages,
        project_path=project_path,
        **kwargs,
    )


@pytest.fixture
def sample_conversation() -> NormalizedConversation:
    return make_conversation()


def store_conversation(
    session: Session,
    title: str = "Formatting the export script",
    messages: Optional[list[tuple[str, str]]] = None,
    project_path: Optional[str] = None,
    provider: Provider = Provider.WEB_SOURCE_A,
    minutes: int = 0,
) -> Conversation:
    """Insert a conversation and its messages directly, bypassing the upsert engine."""
    when = BASE_TIME + timedelta(minutes=minutes)
    conversation = Conversation(
        provider=provider.value,
        source_kind=SourceKind.WEB.value,
        external_key=f"stored-{uuid.uuid4().hex}",
        title=title,
        project_path=project_path,
        created_at=when,
        updated_at=when,
    )
    session.add(conversation)
    session.flush()
    for index, (role, content) in enumerate(messages or []):
        session.add(
            Message(
                conversation_id=conversation.id,
                role=role,
                content=content,
                timestamp=when + timedelta(seconds=index),
                ordering_key=f"{when:%Y%m%dT%H%M%S}.{index:06d}Z:{index:08d}",
            )
        )
    conversation.message_count = len(messages or [])
    session.flush()
    return conversation


class FakeAdapter(SourceAdapter):
    """
    Scripted in-memory adapter.

    conversations maps unit key to the conversations fetch() returns;
    failures maps unit key to a list of exceptions raised by successive
    fetch() calls before it succeeds.
    """

    source_kind = SourceKind.WEB

    def __init__(
        self,
        provider: Provider = Provider.WEB_SOURCE_A,
        conversations: Optional[dict[str, list[NormalizedConversation]]] = None,
        failures: Optional[dict[str, list[Exception]]] = None,
        discover_error: Optional[Exception] = None,
    ):
        self.provider = provider
        self.conversations = conversations or {}
        self.failures = {k: list(v) for k, v in (failures or {}).items()}
        self.discover_error = discover_error
        self.fetch_calls: list[tuple[str, Optional[dict]]] = []
        self.closed = False

    def discover(self) -> list[WorkUnit]:
        if self.discover_error is not None:
            raise self.discover_error
        return [WorkUnit(provider=self.provider, key=key) for key in self.conversations]

    def fetch(self, unit: WorkUnit, fragment: Optional[dict]):
        self.fetch_calls.append((unit.key, fragment))
        pending = self.failures.get(unit.key)
        if pending:
            raise pending.pop(0)
        if fragment and fragment.get("version") == len(self.conversations[unit.key]):
            return NOT_MODIFIED
        return FetchResult(
            conversations=self.conversations[unit.key],
            fragment={"version": len(self.conversations[unit.key])},
        )

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def fake_adapter() -> FakeAdapter:
    return FakeAdapter(
        conversations={
            "conv-1": [make_conversation("conv-1")],
            "conv-2": [make_conversation("conv-2", title="Drafting the onboarding notes")],
        }
    )


def source_a_record(
    role: str,
    content: Any,
    timestamp: str,
    session_id: str = "session-abc",
    cwd: str = "/work/shop",
) -> dict:
    return {
        "type": role,
        "sessionId": session_id,
        "cwd": cwd,
        "timestamp": timestamp,
        "message": {"role": role, "content": content},
    }


def append_jsonl(path: Path, records: list[dict]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a", encoding="utf-8") as f:
        for record in records:
            f.write(json.dumps(record) + "\n")


@pytest.fixture
def message_factory():
    """Build NormalizedMessage objects offset in minutes from BASE_TIME."""
    return make_message


@pytest.fixture
def conversation_factory():
    """Build NormalizedConversation objects with sensible defaults."""
    return make_conversation


@pytest.fixture
def conversation_store():
    """Insert conversations inside a session the test already holds."""
    return store_conversation


@pytest.fixture
def stored_conversation_factory(session_factory):
    """
    Insert a conversation with messages in its own committed transaction.

    Returns the conversation id.
    """

    def _store(**kwargs: Any) -> uuid.UUID:
        with session_factory() as session:
            return store_conversation(session, **kwargs).id

    return _store


@pytest.fixture
def adapter_factory():
    """The FakeAdapter class, for tests that script their own units."""
    return FakeAdapter


@pytest.fixture
def source_a_log(tmp_path: Path):
    """
    Writer for source A session logs under tmp_path/source-a.

    Call with a list of (role, content) pairs; each call appends to the
    same file and returns its path.
    """
    root = tmp_path / "source-a"
    path = root / "shop" / "session-abc.jsonl"
    counter = {"n": 0}

    def _write(entries: list[tuple[str, Any]], partial: Optional[str] = None) -> Path:
        records = []
        for role, content in entries:
            counter["n"] += 1
            ts = (BASE_TIME + timedelta(minutes=counter["n"])).isoformat() + "Z"
            records.append(source_a_record(role, content, ts))
        append_jsonl(path, records)
        if partial is not None:
            with open(path, "a", encoding="utf-8") as f:
                f.write(partial)
        return path

    _write.root = root  # type: ignore[attr-defined]
    _write.path = path  # type: ignore[attr-defined]
    return _write
