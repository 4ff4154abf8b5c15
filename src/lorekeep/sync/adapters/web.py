"""
Web conversation API adapters.

Both web sources expose an authenticated listing of conversations plus a
per-conversation detail endpoint. discover() walks the listing and returns
one work unit per remote conversation; fetch() downloads the detail only
when the listed update time is newer than the stored watermark.

HTTP and payload failures are mapped onto the sync error taxonomy here so
the orchestrator never sees an httpx exception.
"""

import logging
from abc import abstractmethod
from datetime import datetime
from typing import Any, Iterator, Optional

import httpx
from pydantic import BaseModel, Field, ValidationError

from lorekeep.exceptions import PermanentError, SessionExpiredError, TransientError
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
from lorekeep.sync.adapters.cli_logs import extract_text_content
from lorekeep.utils.hashing import calculate_content_hash
from lorekeep.utils.timestamps import parse_timestamp, to_utc_naive

logger = logging.getLogger(__name__)

VALID_ROLES = {r.value for r in MessageRole}

# Distinct sibling slots per tree depth in a message sequence
SEQUENCE_SLOTS = 10_000


def node_sequence(node_id: str, depth: int) -> int:
    """
    Tiebreak sequence for a message tree node.

    Stays the same when the remote tree gains branches elsewhere, so a
    refetch maps every node to the ordering key it was stored under. Depth
    keeps a message ahead of its replies at equal timestamps; a hash of the
    node id separates sibling branches.
    """
    return depth * SEQUENCE_SLOTS + int(calculate_content_hash(node_id)[:8], 16) % SEQUENCE_SLOTS


# ---------------------------------------------------------------------------
# Payload models
# ---------------------------------------------------------------------------


class ListingEntry(BaseModel):
    """One row of a conversation listing."""

    id: str = Field(min_length=1)
    title: str = ""
    updated_at: datetime


class SourceAListPage(BaseModel):
    items: list[ListingEntry]
    total: Optional[int] = None


class SourceATreeMessage(BaseModel):
    """A message node; replies and regenerations hang off children."""

    id: str
    role: str
    content: Any = ""
    created_at: Optional[datetime] = None
    children: list["SourceATreeMessage"] = Field(default_factory=list)


class SourceADetail(BaseModel):
    id: str
    title: str = ""
    created_at: Optional[datetime] = None
    updated_at: datetime
    project: Optional[str] = None
    summary: Optional[str] = None
    messages: list[SourceATreeMessage] = Field(default_factory=list)


class SourceBListPage(BaseModel):
    items: list[ListingEntry]
    next_cursor: Optional[str] = None


class SourceBAuthor(BaseModel):
    role: str


class SourceBContent(BaseModel):
    parts: list[Any] = Field(default_factory=list)


class SourceBMessage(BaseModel):
    author: SourceBAuthor
    content: SourceBContent = Field(default_factory=SourceBContent)
    create_time: Optional[datetime] = None


class SourceBNode(BaseModel):
    id: str
    parent: Optional[str] = None
    children: list[str] = Field(default_factory=list)
    message: Optional[SourceBMessage] = None


class SourceBDetail(BaseModel):
    id: str
    title: str = ""
    create_time: Optional[datetime] = None
    update_time: datetime
    mapping: dict[str, SourceBNode] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Adapters
# ---------------------------------------------------------------------------


def _retry_after(response: httpx.Response) -> Optional[float]:
    value = response.headers.get("Retry-After")
    if not value:
        return None
    try:
        return max(0.0, float(value))
    except ValueError:
        return None


class WebSourceAdapter(SourceAdapter):
    """
    Shared HTTP plumbing for web sources.

    Subclasses implement the listing walk and the detail decoding.
    """

    source_kind = SourceKind.WEB

    def __init__(
        self,
        provider: Provider,
        base_url: Optional[str],
        session_token: Optional[str],
        page_size: int = 50,
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.provider = provider
        self.base_url = (base_url or "").rstrip("/")
        self.session_token = session_token
        self.page_size = page_size
        self.timeout = timeout
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(
                base_url=self.base_url,
                headers={
                    "Authorization": f"Bearer {self.session_token}",
                    "Accept": "application/json",
                },
                timeout=self.timeout,
                transport=self._transport,
            )
        return self._client

    def close(self) -> None:
        if self._client is not None:
            self._client.close()
            self._client = None

    def _require_session(self) -> None:
        if not self.session_token:
            raise SessionExpiredError(self.provider.value, "no session token configured")
        if not self.base_url:
            raise PermanentError(f"{self.provider.value}: no base URL configured")

    def _get_json(self, path: str, params: Optional[dict[str, Any]] = None) -> Any:
        """
        GET a JSON document.

        Raises:
            TransientError: Timeout, network error, 5xx or 429
            SessionExpiredError: 401 or 403
            PermanentError: Other 4xx or a non-JSON body
        """
        try:
            response = self.client.get(path, params=params)
        except httpx.TimeoutException as e:
            raise TransientError(f"{self.provider.value}: timeout on {path}") from e
        except httpx.TransportError as e:
            raise TransientError(f"{self.provider.value}: network error on {path}: {e}") from e

        status = response.status_code
        if status in (401, 403):
            raise SessionExpiredError(self.provider.value, f"HTTP {status} on {path}")
        if status == 429:
            raise TransientError(
                f"{self.provider.value}: rate limited on {path}",
                retry_after=_retry_after(response),
            )
        if status >= 500:
            raise TransientError(
                f"{self.provider.value}: HTTP {status} on {path}",
                retry_after=_retry_after(response),
            )
        if status >= 400:
            raise PermanentError(f"{self.provider.value}: HTTP {status} on {path}")

        try:
            return response.json()
        except ValueError as e:
            raise PermanentError(f"{self.provider.value}: non-JSON body from {path}") from e

    def _validate(self, model: type[BaseModel], data: Any, what: str) -> Any:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise PermanentError(
                f"{self.provider.value}: unexpected {what} payload: "
                f"{e.error_count()} validation error(s)"
            ) from e

    def discover(self) -> list[WorkUnit]:
        self._require_session()
        units = []
        seen: set[str] = set()
        for entry in self._iter_listing():
            if entry.id in seen:
                continue
            seen.add(entry.id)
            units.append(
                WorkUnit(
                    provider=self.provider,
                    key=entry.id,
                    payload={
                        "updated_at": to_utc_naive(entry.updated_at).isoformat(),
                        "title": entry.title,
                    },
                )
            )
        logger.debug(f"{self.provider.value}: listed {len(units)} conversations")
        return units

    def fetch(
        self, unit: WorkUnit, fragment: Optional[dict[str, Any]]
    ) -> FetchResult | _NotModified:
        listed = parse_timestamp(unit.payload.get("updated_at"))
        watermark = parse_timestamp((fragment or {}).get("updated_at"))
        if listed is not None and watermark is not None and watermark >= listed:
            return NOT_MODIFIED

        self._require_session()
        conversation = self._fetch_detail(unit.key)
        new_mark = max(d for d in (listed, conversation.updated_at) if d is not None)
        return FetchResult(
            conversations=[conversation],
            fragment={"updated_at": new_mark.isoformat()},
        )

    @abstractmethod
    def _iter_listing(self) -> Iterator[ListingEntry]: ...

    @abstractmethod
    def _fetch_detail(self, conversation_id: str) -> NormalizedConversation: ...


class WebSourceAAdapter(WebSourceAdapter):
    """
    Offset-paginated source.

    GET /conversations?offset=&limit= -> {"items": [...], "total": n}
    GET /conversations/{id} -> detail with a nested message tree
    """

    def __init__(self, base_url, session_token, **kwargs):
        super().__init__(Provider.WEB_SOURCE_A, base_url, session_token, **kwargs)

    def _iter_listing(self) -> Iterator[ListingEntry]:
        offset = 0
        while True:
            data = self._get_json(
                "/conversations", params={"offset": offset, "limit": self.page_size}
            )
            page = self._validate(SourceAListPage, data, "listing")
            yield from page.items
            offset += len(page.items)
            if len(page.items) < self.page_size:
                break
            if page.total is not None and offset >= page.total:
                break

    def _fetch_detail(self, conversation_id: str) -> NormalizedConversation:
        data = self._get_json(f"/conversations/{conversation_id}")
        detail: SourceADetail = self._validate(SourceADetail, data, "conversation")

        messages = []
        fallback = detail.created_at or detail.updated_at
        for node, depth in self._walk(detail.messages):
            if node.role not in VALID_ROLES:
                continue
            content = extract_text_content(node.content)
            if not content:
                continue
            timestamp = node.created_at or fallback
            fallback = timestamp
            messages.append(
                NormalizedMessage(
                    role=node.role,
                    content=content,
                    timestamp=timestamp,
                    sequence=node_sequence(node.id, depth),
                )
            )

        return NormalizedConversation(
            provider=self.provider,
            source_kind=self.source_kind,
            external_key=detail.id,
            title=detail.title,
            messages=messages,
            project_path=detail.project,
            created_at=detail.created_at,
            updated_at=detail.updated_at,
            summary=detail.summary,
        )

    @staticmethod
    def _walk(roots: list[SourceATreeMessage]) -> Iterator[tuple[SourceATreeMessage, int]]:
        """Depth-first, children in listed order, with each node's depth."""
        stack = [(node, 0) for node in reversed(roots)]
        while stack:
            node, depth = stack.pop()
            yield node, depth
            stack.extend((child, depth + 1) for child in reversed(node.children))


class WebSourceBAdapter(WebSourceAdapter):
    """
    Cursor-paginated source.

    GET /conversations?cursor=&limit= -> {"items": [...], "next_cursor": str | null}
    GET /conversations/{id} -> {"mapping": {node_id: node}} parent/child graph
    """

    def __init__(self, base_url, session_token, **kwargs):
        super().__init__(Provider.WEB_SOURCE_B, base_url, session_token, **kwargs)

    def _iter_listing(self) -> Iterator[ListingEntry]:
        cursor: Optional[str] = None
        seen_cursors: set[str] = set()
        while True:
            params: dict[str, Any] = {"limit": self.page_size}
            if cursor:
                params["cursor"] = cursor
            data = self._get_json("/conversations", params=params)
            page = self._validate(SourceBListPage, data, "listing")
            yield from page.items
            cursor = page.next_cursor
            if not cursor or not page.items:
                break
            if cursor in seen_cursors:
                raise PermanentError(f"{self.provider.value}: listing cursor {cursor} repeated")
            seen_cursors.add(cursor)

    def _fetch_detail(self, conversation_id: str) -> NormalizedConversation:
        data = self._get_json(f"/conversations/{conversation_id}")
        detail: SourceBDetail = self._validate(SourceBDetail, data, "conversation")

        messages = []
        fallback = detail.create_time or detail.update_time
        for node, depth in self._walk(detail.mapping):
            message = node.message
            if message is None or message.author.role not in VALID_ROLES:
                continue
            content = extract_text_content(message.content.parts)
            if not content:
                continue
            timestamp = message.create_time or fallback
            fallback = timestamp
            messages.append(
                NormalizedMessage(
                    role=message.author.role,
                    content=content,
                    timestamp=timestamp,
                    sequence=node_sequence(node.id, depth),
                )
            )

        return NormalizedConversation(
            provider=self.provider,
            source_kind=self.source_kind,
            external_key=detail.id,
            title=detail.title,
            messages=messages,
            created_at=detail.create_time,
            updated_at=detail.update_time,
        )

    @staticmethod
    def _walk(mapping: dict[str, SourceBNode]) -> Iterator[tuple[SourceBNode, int]]:
        roots = [n for n in mapping.values() if n.parent is None or n.parent not in mapping]
        stack = [(node, 0) for node in reversed(roots)]
        visited: set[str] = set()
        while stack:
            node, depth = stack.pop()
            if node.id in visited:
                continue
            visited.add(node.id)
            yield node, depth
            stack.extend(
                (mapping[child], depth + 1)
                for child in reversed(node.children)
                if child in mapping
            )
