"""Tests for the web conversation API adapters."""

import httpx
import pytest

from lorekeep.exceptions import PermanentError, SessionExpiredError, TransientError
from lorekeep.models.db import Provider
from lorekeep.models.normalized import NOT_MODIFIED, WorkUnit
from lorekeep.pipeline.upsert import UpsertEngine
from lorekeep.sync.adapters import WebSourceAAdapter, WebSourceBAdapter, build_adapters
from lorekeep.sync.adapters.web import node_sequence

BASE_URL = "https://chat.example.test/api"


def source_a_detail(conversation_id="a-1", updated_at="2025-03-02T10:00:00Z"):
    return {
        "id": conversation_id,
        "title": "Parsing invoices",
        "created_at": "2025-03-02T09:00:00Z",
        "updated_at": updated_at,
        "project": "billing",
        "summary": "Invoice parsing help",
        "messages": [
            {
                "id": "m1",
                "role": "user",
                "content": "Parse the invoice PDF",
                "created_at": "2025-03-02T09:00:00Z",
                "children": [
                    {
                        "id": "m2",
                        "role": "assistant",
                        "content": [{"type": "text", "text": "Use pdfplumber."}],
                        "created_at": "2025-03-02T09:01:00Z",
                        "children": [],
                    }
                ],
            }
        ],
    }


def make_a_adapter(handler, token="token-123", page_size=2):
    return WebSourceAAdapter(
        BASE_URL, token, page_size=page_size, transport=httpx.MockTransport(handler)
    )


class TestWebSourceADiscover:
    """Tests for offset-paginated discovery."""

    def test_paginates_until_short_page(self):
        """Test that discovery walks pages and dedups repeated ids."""
        pages = {
            "0": [
                {"id": "a-1", "title": "One", "updated_at": "2025-03-01T00:00:00Z"},
                {"id": "a-2", "title": "Two", "updated_at": "2025-03-01T01:00:00Z"},
            ],
            "2": [{"id": "a-2", "title": "Two", "updated_at": "2025-03-01T01:00:00Z"}],
        }
        seen_auth = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen_auth.append(request.headers.get("Authorization"))
            offset = request.url.params["offset"]
            return httpx.Response(200, json={"items": pages[offset], "total": 3})

        units = make_a_adapter(handler).discover()

        assert [u.key for u in units] == ["a-1", "a-2"]
        assert units[0].payload["updated_at"] == "2025-03-01T00:00:00"
        assert set(seen_auth) == {"Bearer token-123"}

    def test_missing_token_is_session_expired(self):
        """Test that no session token raises SessionExpiredError before any request."""

        def handler(request):
            raise AssertionError("no request expected")

        with pytest.raises(SessionExpiredError):
            make_a_adapter(handler, token=None).discover()

    @pytest.mark.parametrize(
        "status,error",
        [
            (401, SessionExpiredError),
            (403, SessionExpiredError),
            (429, TransientError),
            (503, TransientError),
            (404, PermanentError),
        ],
    )
    def test_status_classification(self, status, error):
        """Test that HTTP statuses map onto the sync error taxonomy."""

        def handler(request):
            return httpx.Response(status, json={})

        with pytest.raises(error):
            make_a_adapter(handler).discover()

    def test_retry_after_is_carried(self):
        """Test that a 429 Retry-After header becomes retry_after."""

        def handler(request):
            return httpx.Response(429, headers={"Retry-After": "7"})

        with pytest.raises(TransientError) as exc_info:
            make_a_adapter(handler).discover()
        assert exc_info.value.retry_after == 7.0

    def test_network_error_is_transient(self):
        """Test that a transport failure raises TransientError."""

        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(TransientError):
            make_a_adapter(handler).discover()

    def test_non_json_body_is_permanent(self):
        """Test that an HTML body raises PermanentError."""

        def handler(request):
            return httpx.Response(200, text="<html>login</html>")

        with pytest.raises(PermanentError):
            make_a_adapter(handler).discover()

    def test_unexpected_payload_is_permanent(self):
        """Test that a listing without items raises PermanentError."""

        def handler(request):
            return httpx.Response(200, json={"conversations": []})

        with pytest.raises(PermanentError):
            make_a_adapter(handler).discover()


class TestWebSourceAFetch:
    """Tests for WebSourceAAdapter.fetch."""

    def unit(self, updated_at="2025-03-02T10:00:00"):
        return WorkUnit(
            provider=Provider.WEB_SOURCE_A, key="a-1", payload={"updated_at": updated_at}
        )

    def test_fetch_flattens_message_tree(self):
        """Test that the nested tree is walked depth-first into ordered messages."""

        def handler(request):
            assert request.url.path.endswith("/conversations/a-1")
            return httpx.Response(200, json=source_a_detail())

        result = make_a_adapter(handler).fetch(self.unit(), None)

        conversation = result.conversations[0]
        assert conversation.external_key == "a-1"
        assert conversation.project_path == "billing"
        assert [(m.role, m.content) for m in conversation.messages] == [
            ("user", "Parse the invoice PDF"),
            ("assistant", "Use pdfplumber."),
        ]
        assert result.fragment == {"updated_at": "2025-03-02T10:00:00"}

    def test_watermark_skips_unchanged(self):
        """Test that a stored watermark at the listed time returns NOT_MODIFIED."""

        def handler(request):
            raise AssertionError("detail should not be fetched")

        result = make_a_adapter(handler).fetch(
            self.unit(), {"updated_at": "2025-03-02T10:00:00"}
        )
        assert result is NOT_MODIFIED

    def test_newer_listing_refetches(self):
        """Test that a listing newer than the watermark fetches the detail."""

        def handler(request):
            return httpx.Response(200, json=source_a_detail(updated_at="2025-03-03T10:00:00Z"))

        result = make_a_adapter(handler).fetch(
            self.unit("2025-03-03T10:00:00"), {"updated_at": "2025-03-02T10:00:00"}
        )
        assert result.fragment == {"updated_at": "2025-03-03T10:00:00"}

    def test_inserted_branch_keeps_stored_messages(self, session_factory):
        """Test that a new sibling branch adds one message without duplicating the rest."""
        details = [source_a_detail(), source_a_detail(updated_at="2025-03-03T10:00:00Z")]
        details[1]["messages"][0]["children"].insert(
            0,
            {
                "id": "m1-retry",
                "role": "assistant",
                "content": "Try camelot for the tables.",
                "created_at": "2025-03-02T09:02:00Z",
                "children": [],
            },
        )

        def handler(request):
            return httpx.Response(200, json=details.pop(0))

        adapter = make_a_adapter(handler)
        engine = UpsertEngine(session_factory)
        first = adapter.fetch(self.unit(), None).conversations[0]
        second = adapter.fetch(self.unit("2025-03-03T10:00:00"), None).conversations[0]

        engine.upsert(first)
        outcome = engine.upsert(second)

        assert {m.ordering_key for m in first.messages} < {m.ordering_key for m in second.messages}
        assert outcome.messages_added == 1
        assert outcome.message_count == 3


class TestWebSourceB:
    """Tests for the cursor-paginated source with a node mapping."""

    def test_cursor_pagination(self):
        """Test that discovery follows next_cursor until it is null."""
        pages = {
            None: {"items": [{"id": "b-1", "updated_at": "2025-03-01T00:00:00Z"}], "next_cursor": "c2"},
            "c2": {"items": [{"id": "b-2", "updated_at": "2025-03-01T01:00:00Z"}], "next_cursor": None},
        }

        def handler(request):
            return httpx.Response(200, json=pages[request.url.params.get("cursor")])

        adapter = WebSourceBAdapter(BASE_URL, "tok", transport=httpx.MockTransport(handler))
        assert [u.key for u in adapter.discover()] == ["b-1", "b-2"]

    def test_repeated_cursor_is_permanent(self):
        """Test that a cursor loop is detected."""

        def handler(request):
            return httpx.Response(
                200,
                json={
                    "items": [{"id": "b-1", "updated_at": "2025-03-01T00:00:00Z"}],
                    "next_cursor": "same",
                },
            )

        adapter = WebSourceBAdapter(BASE_URL, "tok", transport=httpx.MockTransport(handler))
        with pytest.raises(PermanentError):
            adapter.discover()

    def test_mapping_walk(self):
        """Test that the parent/child mapping yields messages in conversation order."""
        detail = {
            "id": "b-1",
            "title": "Resize images",
            "create_time": 1740819600,
            "update_time": 1740819720,
            "mapping": {
                "root": {"id": "root", "parent": None, "children": ["n1"], "message": None},
                "n2": {
                    "id": "n2",
                    "parent": "n1",
                    "children": [],
                    "message": {
                        "author": {"role": "assistant"},
                        "content": {"parts": ["Use Pillow's thumbnail()."]},
                        "create_time": 1740819660,
                    },
                },
                "n1": {
                    "id": "n1",
                    "parent": "root",
                    "children": ["n2"],
                    "message": {
                        "author": {"role": "user"},
                        "content": {"parts": ["Resize a folder of images"]},
                        "create_time": 1740819600,
                    },
                },
            },
        }

        def handler(request):
            return httpx.Response(200, json=detail)

        adapter = WebSourceBAdapter(BASE_URL, "tok", transport=httpx.MockTransport(handler))
        unit = WorkUnit(provider=Provider.WEB_SOURCE_B, key="b-1", payload={})
        conversation = adapter.fetch(unit, None).conversations[0]

        assert [m.role for m in conversation.messages] == ["user", "assistant"]
        assert conversation.messages[0].sequence == node_sequence("n1", 1)
        assert conversation.messages[1].sequence == node_sequence("n2", 2)
        assert conversation.messages[0].ordering_key < conversation.messages[1].ordering_key


class TestBuildAdapters:
    """Tests for build_adapters."""

    def test_builds_enabled(self, tmp_path):
        """Test that each enabled provider gets its adapter type."""

        class Config:
            enabled_providers = ["cli_source_a", "web_source_b"]
            cli_source_a_roots = [str(tmp_path)]
            cli_source_b_roots = []
            web_source_a_base_url = ""
            web_source_a_session_token = ""
            web_source_b_base_url = BASE_URL
            web_source_b_session_token = "tok"
            web_page_size = 10
            http_timeout = 5.0

        adapters = build_adapters(Config())

        assert list(adapters) == [Provider.CLI_SOURCE_A, Provider.WEB_SOURCE_B]
        assert isinstance(adapters[Provider.WEB_SOURCE_B], WebSourceBAdapter)

    def test_unknown_provider(self):
        """Test that an unknown provider name raises ValueError."""

        class Config:
            enabled_providers = ["carrier_pigeon"]

        with pytest.raises(ValueError, match="Unknown provider"):
            build_adapters(Config())
