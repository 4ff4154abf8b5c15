"""
Normalized source records.

Every source adapter, whatever its wire format, hands the sync orchestrator
these dataclasses. They are plain values with no database identity.
"""

from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional

from lorekeep.models.db import Provider, SourceKind
from lorekeep.utils.timestamps import make_ordering_key, to_utc_naive


@dataclass
class NormalizedMessage:
    """One message as read from a source."""

    role: str  # user, assistant, system, tool
    content: str
    timestamp: datetime
    sequence: int  # Position in the source; tiebreak for equal timestamps

    def __post_init__(self) -> None:
        self.timestamp = to_utc_naive(self.timestamp)

    @property
    def ordering_key(self) -> str:
        return make_ordering_key(self.timestamp, self.sequence)


@dataclass
class NormalizedConversation:
    """A conversation header plus its ordered messages."""

    provider: Provider
    source_kind: SourceKind
    external_key: str
    title: str = ""
    messages: list[NormalizedMessage] = field(default_factory=list)
    project_path: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    summary: Optional[str] = None
    preview_text: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.external_key:
            raise ValueError(f"external_key is required for {self.provider.value}")
        if self.created_at is not None:
            self.created_at = to_utc_naive(self.created_at)
        if self.updated_at is not None:
            self.updated_at = to_utc_naive(self.updated_at)

    @property
    def effective_created_at(self) -> Optional[datetime]:
        if self.created_at:
            return self.created_at
        return self.messages[0].timestamp if self.messages else None

    @property
    def effective_updated_at(self) -> Optional[datetime]:
        """Declared update time, or the newest message timestamp."""
        candidates = [m.timestamp for m in self.messages]
        if self.updated_at:
            candidates.append(self.updated_at)
        return max(candidates) if candidates else None


@dataclass
class WorkUnit:
    """
    A unit of work produced by an adapter's discover().

    For CLI sources this is one log file; for web sources one remote
    conversation, with the listing entry carried in payload.
    """

    provider: Provider
    key: str
    path: Optional[Path] = None
    payload: dict[str, Any] = field(default_factory=dict)


@dataclass
class FetchResult:
    """Conversations read from one work unit, and the cursor fragment to store after commit."""

    conversations: list[NormalizedConversation]
    fragment: dict[str, Any]


class _NotModified:
    """Sentinel returned by fetch() when a work unit has nothing new."""

    _instance: Optional["_NotModified"] = None

    def __new__(cls) -> "_NotModified":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "NOT_MODIFIED"

    def __bool__(self) -> bool:
        return False


NOT_MODIFIED = _NotModified()
