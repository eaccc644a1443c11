# =============================================================================
# Shared Test Fixtures — In-Process Fake Analysis Backend
# =============================================================================
#
# The client is exercised against a small FastAPI app served through
# httpx.ASGITransport: real status codes, multipart parsing, JSON bodies
# and SSE framing, no sockets.
#
# FakeBackend knobs:
#   fail_uploads / fail_process  → per-filename ingestion failures
#   overrides[(METHOD, path)]    → canned (status, body, media_type) reply
#   streams[query_id]            → SSE frames served on /queries/{id}/stream
#   full_results[query_id]       → body of /queries/{id}/full-result
#
# FakeClock replaces time.monotonic and asyncio.sleep so TTLs and rate-limit
# waits are deterministic.
# =============================================================================

from __future__ import annotations

import json
from typing import Any

import httpx
import pytest
from fastapi import APIRouter, FastAPI, File, Form, Request, UploadFile
from fastapi.responses import JSONResponse, Response, StreamingResponse

from query_client.config import Settings
from query_client.services.orchestrator import QuerySubmissionOrchestrator
from query_client.services.rate_limiter import ClientContext
from query_client.services.stream import InMemoryChannelFactory

API_PREFIX = "/api/v1"


class FakeClock:
    """Manually advanced monotonic clock with a matching async sleep."""

    def __init__(self, start: float = 1000.0):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def sse(payload: dict[str, Any] | str, event: str | None = None) -> str:
    """Format one SSE frame."""
    data = payload if isinstance(payload, str) else json.dumps(payload)
    head = f"event: {event}\n" if event else ""
    return f"{head}data: {data}\n\n"


class FakeBackend:
    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.bodies: dict[str, Any] = {}
        self.uploads: list[dict[str, Any]] = []
        self.process_params: list[dict[str, str]] = []
        self.fail_uploads: set[str] = set()
        self.fail_process: set[str] = set()
        self.overrides: dict[tuple[str, str], tuple[int, Any, str]] = {}
        self.streams: dict[str, list[str]] = {}
        self.full_results: dict[str, dict[str, Any]] = {}
        self.files: list[dict[str, Any]] = []
        self.refresh_results: list[dict[str, Any]] = [
            {"query_id": "q-refresh-1", "entry_id": "e-refresh-1"},
            {"queryId": "q-refresh-2", "entryId": "e-refresh-2"},
        ]
        self.followup_returns_id = True
        self._next_id = 0
        self.app = self._build_app()

    def _new_id(self, prefix: str) -> str:
        self._next_id += 1
        return f"{prefix}-{self._next_id}"

    def count(self, method: str, path: str) -> int:
        return self.calls.count((method, API_PREFIX + path))

    def _build_app(self) -> FastAPI:
        app = FastAPI()
        router = APIRouter(prefix=API_PREFIX)

        @app.middleware("http")
        async def record_calls(request: Request, call_next):
            key = (request.method, request.url.path)
            self.calls.append(key)
            if key in self.overrides:
                status, body, media_type = self.overrides[key]
                content = body if isinstance(body, str) else json.dumps(body)
                return Response(content=content, status_code=status, media_type=media_type)
            return await call_next(request)

        @router.post("/files")
        async def upload(
            file: UploadFile = File(...),
            scope: str = Form(...),
            project_id: str | None = Form(None),
        ):
            content = await file.read()
            self.uploads.append(
                {"filename": file.filename, "scope": scope,
                 "project_id": project_id, "size": len(content)}
            )
            if file.filename in self.fail_uploads:
                return JSONResponse({"detail": "Storage unavailable"}, status_code=500)
            file_id = self._new_id("file")
            self.files.append({"file_id": file_id, "filename": file.filename, "scope": scope})
            return {"file_id": file_id, "filename": file.filename, "status": "uploaded"}

        @router.get("/files")
        async def list_files(request: Request):
            self.bodies["list_files"] = dict(request.query_params)
            return self.files

        @router.post("/files/{file_id}/process")
        async def process(file_id: str, request: Request):
            self.process_params.append(dict(request.query_params))
            filename = next(
                (f["filename"] for f in self.files if f["file_id"] == file_id), ""
            )
            if filename in self.fail_process:
                return {"file_id": file_id, "status": "failed",
                        "error_message": "Unsupported format"}
            return {"file_id": file_id, "status": "completed",
                    "chunk_count": 4, "vector_count": 4}

        @router.post("/projects/{project_id}/queries")
        async def submit(project_id: str, request: Request):
            self.bodies["submit"] = {"project_id": project_id, **(await request.json())}
            return {"query_id": self._new_id("q"), "entry_id": self._new_id("e")}

        @router.post("/queries/{query_id}/followup")
        async def followup(query_id: str, request: Request):
            self.bodies["followup"] = {"query_id": query_id, **(await request.json())}
            if not self.followup_returns_id:
                return {"entryId": "e-followup"}
            return {"queryId": f"{query_id}-followup", "entryId": "e-followup"}

        @router.post("/queries")
        async def sync(request: Request):
            self.bodies["sync"] = await request.json()
            return {"query_id": "q-sync", "entry_id": "e-sync"}

        @router.post("/projects/{project_id}/refresh")
        async def refresh(project_id: str, request: Request):
            self.bodies["refresh"] = {"project_id": project_id, **(await request.json())}
            return self.refresh_results

        @router.get("/queries/{query_id}/full-result")
        async def full_result(query_id: str):
            if query_id not in self.full_results:
                return JSONResponse({"detail": "Query not found"}, status_code=404)
            return self.full_results[query_id]

        @router.post("/queries/{query_id}/approve")
        async def approve(query_id: str, request: Request):
            self.bodies["approve"] = {"query_id": query_id, **(await request.json())}
            return {"status": "received"}

        @router.post("/projects/{project_id}/chat-messages")
        async def chat_message(project_id: str, request: Request):
            self.bodies["chat"] = {"project_id": project_id, **(await request.json())}
            return {"message_id": "m-1", "timestamp": "2026-01-01T00:00:00Z", "status": "saved"}

        @router.get("/queries/{query_id}/stream")
        async def stream(query_id: str):
            frames = list(self.streams.get(query_id, []))

            async def generate():
                for frame in frames:
                    yield frame

            return StreamingResponse(generate(), media_type="text/event-stream")

        app.include_router(router)
        return app


@pytest.fixture
def backend() -> FakeBackend:
    return FakeBackend()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def test_settings() -> Settings:
    return Settings(api_base_url="http://testserver", api_prefix=API_PREFIX, _env_file=None)


@pytest.fixture
def make_client(backend, test_settings):
    """Factory for AsyncClients wired to the fake backend (use with `async with`)."""

    def factory() -> httpx.AsyncClient:
        return httpx.AsyncClient(
            transport=httpx.ASGITransport(app=backend.app),
            base_url=test_settings.api_url,
        )

    return factory


@pytest.fixture
def make_orchestrator(test_settings, clock):
    def factory(client: httpx.AsyncClient, channel_factory=None) -> QuerySubmissionOrchestrator:
        context = ClientContext.from_settings(test_settings, clock=clock, sleep=clock.sleep)
        return QuerySubmissionOrchestrator(
            client,
            context=context,
            channel_factory=channel_factory or InMemoryChannelFactory(),
            settings=test_settings,
        )

    return factory
