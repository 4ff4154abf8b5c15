"""
CLI session log adapters.

Both CLI sources write one JSONL file per session and only ever append to
it. The adapter reads each file incrementally: the cursor fragment keeps
the byte offset and line count already consumed plus the session header
(id, title, project path) learned from earlier lines, so an append produces
just the new messages under the same conversation key.

Each message's sequence number is its line number in the file, which keeps
ordering keys stable whether a file is read whole or in pieces.
"""

import json
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Iterable, Optional

from lorekeep.exceptions import PermanentError
from lorekeep.models.db import MessageRole, Provider, SourceKind
from lorekeep.models.normalized import (
    NOT_MODIFIED,
    FetchResult,
    NormalizedConversation,
    NormalizedMessage,
    WorkUnit,
    _NotModified,
)
from lorekeep.sync.adapters.base import SourceAdapter
from lorekeep.sync.adapters.incremental import (
    ChangeType,
    detect_file_change_type,
    read_complete_lines,
)
from lorekeep.utils.hashing import calculate_partial_hash
from lorekeep.utils.timestamps import parse_timestamp

logger = logging.getLogger(__name__)

TITLE_LENGTH = 80
EPOCH = datetime(1970, 1, 1)
TEXT_BLOCK_TYPES = {"text", "input_text", "output_text"}


def extract_text_content(content: Any) -> str:
    """
    Extract text from a message content field.

    Content is either a plain string or a list of typed blocks; only text
    blocks are kept.
    """
    if isinstance(content, str):
        return content

    if isinstance(content, list):
        parts = []
        for item in content:
            if isinstance(item, str):
                parts.append(item)
            elif isinstance(item, dict) and item.get("type") in TEXT_BLOCK_TYPES:
                parts.append(item.get("text", ""))
        return "\n".join(p for p in parts if p)

    return ""


def _is_tool_result(content: Any) -> bool:
    return (
        isinstance(content, list)
        and bool(content)
        and all(isinstance(i, dict) and i.get("type") == "tool_result" for i in content)
    )


def _tool_result_text(content: list[dict[str, Any]]) -> str:
    parts = []
    for item in content:
        inner = item.get("content")
        parts.append(inner if isinstance(inner, str) else extract_text_content(inner))
    return "\n".join(p for p in parts if p)


@dataclass
class DecodedRecord:
    """Whatever one log line told us. All fields optional."""

    session_id: Optional[str] = None
    project_path: Optional[str] = None
    title: Optional[str] = None
    created_at: Optional[datetime] = None
    role: Optional[str] = None
    content: Optional[str] = None
    timestamp: Optional[datetime] = None

    @property
    def is_message(self) -> bool:
        return self.role is not None and bool(self.content)


def _timestamp_or_none(value: Any) -> Optional[datetime]:
    try:
        return parse_timestamp(value)
    except ValueError:
        return None


class RecordDecoder(ABC):
    """Maps one JSON record of a CLI log format to a DecodedRecord."""

    @abstractmethod
    def decode(self, record: dict[str, Any]) -> DecodedRecord: ...


class SourceADecoder(RecordDecoder):
    """
    Records shaped like:
    {"type": "user", "sessionId": ..., "cwd": ..., "timestamp": ...,
     "message": {"role": "user", "content": ...}}
    plus {"type": "summary", "summary": ...} title records.
    """

    def decode(self, record: dict[str, Any]) -> DecodedRecord:
        decoded = DecodedRecord(
            session_id=record.get("sessionId"),
            project_path=record.get("cwd"),
            timestamp=_timestamp_or_none(record.get("timestamp")),
        )
        record_type = record.get("type")

        if record_type == "summary":
            decoded.title = (record.get("summary") or "").strip() or None
            return decoded

        if record_type not in ("user", "assistant", "system"):
            return decoded

        message = record.get("message") or {}
        role = message.get("role") or record_type
        content = message.get("content")

        if _is_tool_result(content):
            decoded.role = MessageRole.TOOL.value
            decoded.content = _tool_result_text(content)
        elif role in {r.value for r in MessageRole}:
            decoded.role = role
            decoded.content = extract_text_content(content)
        return decoded


class SourceBDecoder(RecordDecoder):
    """
    Records shaped like:
    {"type": "session_meta", "payload": {"id": ..., "cwd": ..., "timestamp": ...}}
    {"type": "response_item", "timestamp": ...,
     "payload": {"type": "message", "role": "user", "content": [...]}}
    """

    def decode(self, record: dict[str, Any]) -> DecodedRecord:
        payload = record.get("payload") or {}
        record_type = record.get("type")

        if record_type == "session_meta":
            return DecodedRecord(
                session_id=payload.get("id"),
                project_path=payload.get("cwd"),
                created_at=_timestamp_or_none(payload.get("timestamp")),
            )

        decoded = DecodedRecord(timestamp=_timestamp_or_none(record.get("timestamp")))
        if record_type == "response_item" and payload.get("type") == "message":
            role = payload.get("role")
            if role in {r.value for r in MessageRole}:
                decoded.role = role
                decoded.content = extract_text_content(payload.get("content"))
        return decoded


DECODERS: dict[Provider, type[RecordDecoder]] = {
    Provider.CLI_SOURCE_A: SourceADecoder,
    Provider.CLI_SOURCE_B: SourceBDecoder,
}


class CliLogAdapter(SourceAdapter):
    """Incremental adapter over a tree of JSONL session logs."""

    source_kind = SourceKind.CLI

    def __init__(self, provider: Provider, roots: Iterable[str | Path]):
        if provider not in DECODERS:
            raise ValueError(f"{provider.value} is not a CLI provider")
        self.provider = provider
        self.roots = [Path(r).expanduser() for r in roots]
        self.decoder = DECODERS[provider]()

    def discover(self) -> list[WorkUnit]:
        units = []
        for root in self.roots:
            if not root.is_dir():
                logger.debug(f"{self.provider.value}: root {root} does not exist, skipping")
                continue
            for path in sorted(root.rglob("*.jsonl")):
                units.append(self.unit_for(path))
        return units

    def unit_for(self, path: Path) -> WorkUnit:
        """Work unit for a single file (used by file-watch triggers)."""
        return WorkUnit(provider=self.provider, key=str(path), path=path)

    def owns(self, path: Path) -> bool:
        """True if path lives under one of this adapter's roots."""
        resolved = path.expanduser()
        return path.suffix == ".jsonl" and any(
            resolved.is_relative_to(root) for root in self.roots
        )

    def fetch(
        self, unit: WorkUnit, fragment: Optional[dict[str, Any]]
    ) -> FetchResult | _NotModified:
        path = unit.path or Path(unit.key)
        if not path.exists():
            raise PermanentError(f"Log file no longer exists: {path}")

        state = dict(fragment or {})
        if state:
            change = detect_file_change_type(
                path,
                state.get("offset", 0),
                state.get("size", 0),
                state.get("partial_hash"),
            )
            if change == ChangeType.UNCHANGED:
                return NOT_MODIFIED
            if change in (ChangeType.TRUNCATE, ChangeType.REWRITE):
                logger.info(f"{path}: {change.value} detected, rereading from start")
                state = {}

        start_offset = state.get("offset", 0)
        start_line = state.get("line", 0)

        try:
            tail = read_complete_lines(path, start_offset)
        except OSError as e:
            raise PermanentError(f"Cannot read {path}: {e}") from e

        if not tail.lines:
            return NOT_MODIFIED

        messages: list[NormalizedMessage] = []
        header_changed = False
        valid_records = 0
        last_timestamp = _timestamp_or_none(state.get("last_timestamp")) or EPOCH

        for index, raw in enumerate(tail.lines):
            line_no = start_line + index + 1
            if not raw.strip():
                continue
            try:
                record = json.loads(raw.decode("utf-8"))
            except (UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Skipping invalid JSON at {path}:{line_no}: {e}")
                continue
            if not isinstance(record, dict):
                logger.warning(f"Skipping non-object record at {path}:{line_no}")
                continue
            valid_records += 1

            decoded = self.decoder.decode(record)
            if decoded.session_id and not state.get("session_id"):
                state["session_id"] = decoded.session_id
            if decoded.project_path and decoded.project_path != state.get("project_path"):
                state["project_path"] = decoded.project_path
                header_changed = True
            if decoded.created_at and not state.get("created_at"):
                state["created_at"] = decoded.created_at.isoformat()
            if decoded.title and decoded.title != state.get("title"):
                state["title"] = decoded.title
                header_changed = True

            if not decoded.is_message:
                continue

            timestamp = decoded.timestamp or last_timestamp
            last_timestamp = timestamp
            messages.append(
                NormalizedMessage(
                    role=decoded.role or MessageRole.USER.value,
                    content=decoded.content or "",
                    timestamp=timestamp,
                    sequence=line_no,
                )
            )
            if (
                decoded.role == MessageRole.USER.value
                and not state.get("title")
                and decoded.content
            ):
                state["title"] = decoded.content.strip().splitlines()[0][:TITLE_LENGTH]
                header_changed = True

        if valid_records == 0:
            raise PermanentError(
                f"{path}: no valid records in {len(tail.lines)} new line(s)"
            )

        state.setdefault("session_id", path.stem)
        if not state.get("created_at") and messages:
            state["created_at"] = messages[0].timestamp.isoformat()
        if last_timestamp is not EPOCH:
            state["last_timestamp"] = last_timestamp.isoformat()
        state["offset"] = tail.end_offset
        state["size"] = tail.file_size
        state["line"] = start_line + len(tail.lines)
        state["partial_hash"] = calculate_partial_hash(path, tail.end_offset)

        conversations = []
        if messages or header_changed:
            conversations.append(
                NormalizedConversation(
                    provider=self.provider,
                    source_kind=self.source_kind,
                    external_key=f"{path}#{state['session_id']}",
                    title=state.get("title") or "Untitled session",
                    messages=messages,
                    project_path=state.get("project_path"),
                    created_at=_timestamp_or_none(state.get("created_at")),
                )
            )

        logger.debug(
            f"{path}: read lines {start_line + 1}-{state['line']}, "
            f"{len(messages)} message(s)"
        )
        return FetchResult(conversations=conversations, fragment=state)
