# =============================================================================
# Unit Tests — Query Submission Orchestrator
# =============================================================================
#
# End-to-end through the client: real HTTP semantics via the in-process fake
# backend, in-memory stream channels, FakeClock for the rate limiter and the
# failure cache.
#
# Test groups:
#   1. Project queries (with and without attachments)
#   2. Follow-ups
#   3. Sync replay and refresh
#   4. Full result fetch: rate limit + failure cache
#   5. Approval and chat messages
#   6. Error mapping
# =============================================================================

from __future__ import annotations

import asyncio

import httpx
import pytest

from query_client.models.errors import QueryError
from query_client.models.requests import ChatMessageRequest
from query_client.models.responses import FileInfo
from query_client.services.error_parser import USER_MESSAGES
from query_client.services.ingestion import LocalFile
from query_client.services.orchestrator import QuerySubmissionOrchestrator
from query_client.services.stream import InMemoryChannelFactory, InMemoryStreamChannel


def _run(coro):
    """Helper to run async functions in sync tests."""
    return asyncio.run(coro)


def _files(*names: str) -> list[LocalFile]:
    return [LocalFile(name=name, content=b"data") for name in names]


# ---------------------------------------------------------------------------
# 1. Project Queries
# ---------------------------------------------------------------------------


class TestSubmit:
    def test_submit_opens_channel(self, backend, make_client, make_orchestrator):
        factory = InMemoryChannelFactory()

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client, factory)
                return await orchestrator.submit(
                    "proj-1", "Assess SME lending growth", context={"region": "UAE"}
                )

        handle = _run(scenario())

        assert handle.query_id.startswith("q-")
        assert handle.entry_id.startswith("e-")
        assert handle.failed_files is None
        assert factory.channels[handle.query_id] is handle.channel
        assert backend.bodies["submit"] == {
            "project_id": "proj-1",
            "query": "Assess SME lending growth",
            "is_followup": False,
            "parent_entry_id": None,
            "include_project_files": True,
            "additional_context": {"region": "UAE"},
        }

    def test_parent_entry_marks_followup(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                await orchestrator.submit("proj-1", "Go deeper", parent_entry_id="e-7")

        _run(scenario())
        assert backend.bodies["submit"]["is_followup"] is True
        assert backend.bodies["submit"]["parent_entry_id"] == "e-7"

    def test_three_files_second_fails(self, backend, make_client, make_orchestrator):
        backend.fail_uploads.add("file2.pdf")
        factory = InMemoryChannelFactory()
        progress: list[int] = []

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client, factory)
                handle = await orchestrator.submit_with_files(
                    "proj-1",
                    "Compare Q3 performance",
                    _files("file1.pdf", "file2.pdf", "file3.pdf"),
                    on_progress=progress.append,
                )
                await orchestrator.aclose()
                return handle

        handle = _run(scenario())

        assert handle.failed_files == ["file2.pdf"]
        assert handle.query_id and handle.entry_id
        assert isinstance(handle.channel, InMemoryStreamChannel)
        assert handle.query_id in factory.channels
        assert progress[-1] == 100
        # Uploads happen before the query goes out.
        upload_index = backend.calls.index(("POST", "/api/v1/files"))
        submit_index = backend.calls.index(("POST", "/api/v1/projects/proj-1/queries"))
        assert upload_index < submit_index

    def test_all_files_succeed_leaves_failed_files_none(
        self, backend, make_client, make_orchestrator
    ):
        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                handle = await orchestrator.submit_with_files("proj-1", "Q", _files("a.pdf"))
                await orchestrator.aclose()
                return handle

        handle = _run(scenario())
        assert handle.failed_files is None
        # Successful ingestion refreshed the file registry.
        assert backend.count("GET", "/files") == 1

    def test_no_files_skips_ingestion(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).submit_with_files("proj-1", "Q", [])

        _run(scenario())
        assert backend.uploads == []

    @pytest.mark.parametrize("text", ["", "   "])
    def test_blank_query_rejected_locally(self, backend, make_client, make_orchestrator, text):
        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit("proj-1", text)

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())

        assert exc_info.value.error.type == "validation"
        assert exc_info.value.error.code == "invalid_query"
        assert backend.calls == []

    def test_missing_project_rejected_locally(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit_with_files("", "Q", _files("a.pdf"))

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())

        assert exc_info.value.error.code == "project_not_found"
        assert backend.calls == []


# ---------------------------------------------------------------------------
# 2. Follow-ups
# ---------------------------------------------------------------------------


class TestFollowup:
    def test_followup_uses_new_query_id(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).submit_followup(
                    "q-1", "What are the risks?", include_files=False
                )

        handle = _run(scenario())

        assert handle.query_id == "q-1-followup"
        assert handle.entry_id == "e-followup"
        assert backend.bodies["followup"] == {
            "query_id": "q-1",
            "query": "What are the risks?",
            "include_project_files": False,
            "additional_context": {},
        }

    def test_followup_falls_back_to_original_id(self, backend, make_client, make_orchestrator):
        backend.followup_returns_id = False

        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).submit_followup("q-1", "And costs?")

        assert _run(scenario()).query_id == "q-1"

    def test_followup_with_files(self, backend, make_client, make_orchestrator):
        backend.fail_process.add("bad.docx")

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                handle = await orchestrator.submit_followup_with_files(
                    "proj-1", "q-1", "Use the new data", _files("good.pdf", "bad.docx")
                )
                await orchestrator.aclose()
                return handle

        handle = _run(scenario())

        assert handle.failed_files == ["bad.docx"]
        assert handle.query_id == "q-1-followup"
        assert [u["project_id"] for u in backend.uploads] == ["proj-1", "proj-1"]

    def test_blank_followup_code(self, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit_followup("q-1", " ")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())
        assert exc_info.value.error.code == "invalid_followup_query"


# ---------------------------------------------------------------------------
# 3. Sync & Refresh
# ---------------------------------------------------------------------------


class TestSyncAndRefresh:
    def test_sync_payload(self, backend, make_client, make_orchestrator):
        uploaded = [
            {"file_id": "f-1", "filename": "a.pdf"},
            FileInfo(file_id="f-2", filename="b.xlsx"),
        ]

        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).submit_sync(
                    "proj-1", "Initial question", "Digital Banking", uploaded
                )

        handle = _run(scenario())

        assert handle.query_id == "q-sync"
        assert backend.bodies["sync"] == {
            "query": "Initial question",
            "context": {
                "project_id": "proj-1",
                "project_name": "Digital Banking",
                "session_id": "proj-1",
                "uploaded_files": [
                    {"file_id": "f-1", "filename": "a.pdf", "file_type": "document"},
                    {"file_id": "f-2", "filename": "b.xlsx", "file_type": "document"},
                ],
                "is_sync": True,
                "require_approval": False,
            },
            "debug": True,
        }

    def test_refresh_matches_target(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).refresh("proj-1", "q-refresh-2")

        handle = _run(scenario())

        assert handle.query_id == "q-refresh-2"
        assert handle.entry_id == "e-refresh-2"
        assert backend.bodies["refresh"] == {
            "project_id": "proj-1",
            "include_followups": True,
            "use_cached_results": False,
        }

    def test_refresh_unknown_target_uses_first(self, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).refresh("proj-1", "q-missing")

        assert _run(scenario()).query_id == "q-refresh-1"

    def test_refresh_without_results(self, backend, make_client, make_orchestrator):
        backend.refresh_results = []

        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).refresh("proj-1")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())
        assert "No queries to refresh" in exc_info.value.error.message


# ---------------------------------------------------------------------------
# 4. Full Result
# ---------------------------------------------------------------------------


class TestFetchFullResult:
    def test_failed_result_cached_for_ttl(self, backend, make_client, make_orchestrator, clock):
        backend.full_results["q-1"] = {"status": "failed", "error": "Agent crashed"}
        path = "/queries/q-1/full-result"

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                first = await orchestrator.fetch_full_result("q-1", "Original question")
                clock.advance(10)
                second = await orchestrator.fetch_full_result("q-1")
                calls_after_hit = backend.count("GET", path)
                clock.advance(51)
                third = await orchestrator.fetch_full_result("q-1")
                return first, second, third, calls_after_hit

        first, second, third, calls_after_hit = _run(scenario())

        assert first.status == "failed"
        assert first.query == "Original question"
        assert second is first
        assert calls_after_hit == 1
        assert third is not first
        assert backend.count("GET", path) == 2

    def test_completed_result_not_cached(self, backend, make_client, make_orchestrator, clock):
        backend.full_results["q-1"] = {"status": "completed", "query": "Q", "result": {"a": 1}}

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                await orchestrator.fetch_full_result("q-1")
                clock.advance(2)
                await orchestrator.fetch_full_result("q-1")

        _run(scenario())
        assert backend.count("GET", "/queries/q-1/full-result") == 2

    def test_back_to_back_fetches_are_spaced(self, backend, make_client, make_orchestrator, clock):
        backend.full_results["q-1"] = {"status": "completed"}

        async def scenario():
            async with make_client() as client:
                orchestrator = make_orchestrator(client)
                await orchestrator.fetch_full_result("q-1")
                await orchestrator.fetch_full_result("q-1")

        _run(scenario())
        assert clock.sleeps == [pytest.approx(1.0)]

    def test_missing_query_raises(self, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).fetch_full_result("q-unknown")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())
        assert exc_info.value.error.status_code == 404
        assert exc_info.value.error.message == "Query not found"


# ---------------------------------------------------------------------------
# 5. Approval & Chat
# ---------------------------------------------------------------------------


class TestApprovalAndChat:
    def test_approval_feedback_payload(self, backend, make_client, make_orchestrator):
        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit_approval_feedback(
                    "q-1", "Looks good, but skip the competitor analysis"
                )

        _run(scenario())
        assert backend.bodies["approve"] == {
            "query_id": "q-1",
            "approved": True,
            "feedback": "Looks good, but skip the competitor analysis",
        }

    def test_add_chat_message(self, backend, make_client, make_orchestrator):
        request = ChatMessageRequest(
            entry_id="e-1", message_type="user", content="Thanks!", query_id="q-1"
        )

        async def scenario():
            async with make_client() as client:
                return await make_orchestrator(client).add_chat_message("proj-1", request)

        response = _run(scenario())

        assert response.message_id == "m-1"
        assert response.status == "saved"
        assert backend.bodies["chat"]["message_type"] == "user"
        assert backend.bodies["chat"]["project_id"] == "proj-1"

    def test_stream_query_status_opens_channel(self, make_client, make_orchestrator):
        factory = InMemoryChannelFactory()

        async def scenario():
            async with make_client() as client:
                return make_orchestrator(client, factory).stream_query_status("q-5")

        channel = _run(scenario())
        assert factory.channels["q-5"] is channel


# ---------------------------------------------------------------------------
# 6. Error Mapping
# ---------------------------------------------------------------------------


class TestErrorMapping:
    def test_guardrail_rejection(self, backend, make_client, make_orchestrator):
        backend.overrides[("POST", "/api/v1/projects/proj-1/queries")] = (
            400,
            {"detail": {"error": "non_business_query", "message": "Rejected",
                        "query": "best pizza?"}},
            "application/json",
        )

        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit("proj-1", "best pizza?")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())

        error = exc_info.value.error
        assert error.type == "validation"
        assert error.retryable is False
        assert error.user_message == USER_MESSAGES["non_business_query"]
        assert error.original_query == "best pizza?"

    def test_plain_text_503(self, backend, make_client, make_orchestrator):
        backend.overrides[("POST", "/api/v1/queries/q-1/followup")] = (
            503, "Service Unavailable", "text/plain",
        )

        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit_followup("q-1", "More?")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())

        assert exc_info.value.type == "server"
        assert exc_info.value.retryable is True

    def test_transport_failure_is_network(self, test_settings):
        def refuse(request):
            raise httpx.ConnectError("All connection attempts failed", request=request)

        async def scenario():
            async with httpx.AsyncClient(
                transport=httpx.MockTransport(refuse), base_url=test_settings.api_url
            ) as client:
                orchestrator = QuerySubmissionOrchestrator(
                    client, channel_factory=InMemoryChannelFactory(), settings=test_settings
                )
                await orchestrator.submit("proj-1", "Q")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())

        assert exc_info.value.type == "network"
        assert exc_info.value.error.status_code == 0
        assert exc_info.value.retryable is True

    def test_malformed_success_body(self, backend, make_client, make_orchestrator):
        backend.overrides[("POST", "/api/v1/projects/proj-1/queries")] = (
            200, "<html>oops</html>", "text/html",
        )

        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit("proj-1", "Q")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())
        assert exc_info.value.type == "unknown"

    def test_missing_query_id(self, backend, make_client, make_orchestrator):
        backend.overrides[("POST", "/api/v1/projects/proj-1/queries")] = (
            200, {"entry_id": "e-1"}, "application/json",
        )

        async def scenario():
            async with make_client() as client:
                await make_orchestrator(client).submit("proj-1", "Q")

        with pytest.raises(QueryError) as exc_info:
            _run(scenario())
        assert "query id" in exc_info.value.error.message


class TestLifecycle:
    def test_from_settings_owns_client(self, test_settings):
        async def scenario():
            async with QuerySubmissionOrchestrator.from_settings(test_settings) as orchestrator:
                client = orchestrator._client
                assert str(client.base_url) == "http://testserver/api/v1/"
            return client.is_closed

        assert _run(scenario()) is True
