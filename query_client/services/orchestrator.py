# =============================================================================
# Query Submission Orchestrator — Facade over Ingestion, Submission, Streams
# =============================================================================
#
# The single entry point callers (UI collaborators, the CLI) use to talk to
# the multi-agent analysis backend.
#
# FLOW (submit_with_files):
#   files? ──▶ FileIngestionPipeline.ingest()   (best effort, never raises
#         │                                      for a single bad file)
#         ▼
#   POST /projects/{id}/queries ──▶ {query_id, entry_id}
#         ▼
#   channel_factory(query_id) ──▶ QuerySubmissionHandle
#                                  {query_id, entry_id, channel, failed_files}
#
# The caller then listens on the channel until a terminal status
# (completed / failed / rejected) and closes it.
#
# ERROR CONTRACT:
# Every operation either returns its value or raises QueryError wrapping a
# ParsedError. Non-2xx bodies are read once and handed to the error
# normaliser with the response; transport exceptions and unreadable success
# bodies go through the same normaliser. Raw httpx exceptions never escape.
#
# DESIGN DECISION: Everything injectable.
# httpx client, ClientContext (rate limiter + failure cache), channel
# factory, ingestion pipeline, and file registry are constructor arguments.
# from_settings() wires the production defaults; tests wire an ASGI
# transport and an in-memory channel factory instead.
# =============================================================================

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from query_client.config import Settings, get_settings
from query_client.models.errors import BackendErrorCode, QueryError
from query_client.models.requests import (
    ApprovalRequest,
    ChatMessageRequest,
    FollowupRequest,
    QueryRequest,
    RefreshRequest,
    SyncContext,
    SyncQueryRequest,
    UploadedFileRef,
)
from query_client.models.responses import (
    ChatMessageResponse,
    QuerySubmitResponse,
    StreamingStatusEvent,
)
from query_client.services import endpoints
from query_client.services.error_parser import parse_error, validation_error
from query_client.services.file_registry import FileRegistry
from query_client.services.ingestion import FileIngestionPipeline, LocalFile, ProgressCallback
from query_client.services.rate_limiter import ClientContext
from query_client.services.stream import ChannelFactory, SSEChannelFactory, StreamChannel

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)


@dataclass
class QuerySubmissionHandle:
    """
    What a caller holds for one query interaction.

    `failed_files` is None when every attachment made it (or none were sent).
    """

    query_id: str
    entry_id: str
    channel: StreamChannel
    failed_files: list[str] | None = None


class QuerySubmissionOrchestrator:
    """Coordinates file ingestion, query submission, and stream channels."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        context: ClientContext | None = None,
        channel_factory: ChannelFactory | None = None,
        pipeline: FileIngestionPipeline | None = None,
        registry: FileRegistry | None = None,
        settings: Settings | None = None,
    ) -> None:
        self._settings = settings or get_settings()
        self._client = client
        self._owns_client = False
        self.context = context or ClientContext.from_settings(self._settings)
        self.registry = registry or FileRegistry(client, self._settings)
        self.pipeline = pipeline or FileIngestionPipeline(
            client, self._settings, self.registry
        )
        self._channel_factory = channel_factory or SSEChannelFactory(
            client, self._settings
        )

    @classmethod
    def from_settings(
        cls, settings: Settings | None = None, **kwargs: Any
    ) -> QuerySubmissionOrchestrator:
        """Build an orchestrator that owns its own httpx client."""
        settings = settings or get_settings()
        client = httpx.AsyncClient(
            base_url=settings.api_url,
            timeout=settings.request_timeout_seconds,
            headers={"Accept": "application/json"},
        )
        orchestrator = cls(client, settings=settings, **kwargs)
        orchestrator._owns_client = True
        logger.info("Initialized QuerySubmissionOrchestrator (api=%s)", settings.api_url)
        return orchestrator

    async def aclose(self) -> None:
        await self.pipeline.wait_for_background_tasks()
        if self._owns_client:
            await self._client.aclose()

    async def __aenter__(self) -> QuerySubmissionOrchestrator:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    # -------------------------------------------------------------------------
    # Transport Helpers
    # -------------------------------------------------------------------------

    async def _send(
        self,
        method: str,
        url: str,
        operation: str,
        body: BaseModel | None = None,
    ) -> httpx.Response:
        """Issue one request; any failure comes back as QueryError."""
        try:
            response = await self._client.request(
                method,
                url,
                json=body.model_dump(mode="json") if body is not None else None,
            )
        except httpx.HTTPError as e:
            logger.error("Error %s: %s", operation, e)
            raise QueryError(parse_error(e)) from e

        if not response.is_success:
            parsed = parse_error(response.text, response)
            logger.error(
                "Error %s: HTTP %d (%s) %s",
                operation, response.status_code, parsed.code, parsed.message,
            )
            raise QueryError(parsed)

        return response

    @staticmethod
    def _decode(response: httpx.Response, model: type[ModelT]) -> ModelT:
        try:
            return model.model_validate(response.json())
        except ValueError as e:
            raise QueryError(parse_error(e)) from e

    def _open_handle(
        self,
        query_id: str,
        entry_id: str,
        failed_files: list[str] | None = None,
    ) -> QuerySubmissionHandle:
        channel = self._channel_factory(query_id)
        return QuerySubmissionHandle(
            query_id=query_id,
            entry_id=entry_id,
            channel=channel,
            failed_files=failed_files or None,
        )

    @staticmethod
    def _require_text(text: str, code: BackendErrorCode) -> None:
        if not text or not text.strip():
            raise QueryError(
                validation_error(code.value, "Query text must not be empty", text)
            )

    @staticmethod
    def _require_scope(scope_id: str) -> None:
        if not scope_id:
            raise QueryError(
                validation_error(
                    BackendErrorCode.PROJECT_NOT_FOUND.value,
                    "A project id is required",
                )
            )

    @staticmethod
    def _require_query_id(data: QuerySubmitResponse, operation: str) -> str:
        if not data.query_id:
            raise QueryError(
                parse_error(ValueError(f"{operation}: response did not include a query id"))
            )
        return data.query_id

    # -------------------------------------------------------------------------
    # Project Queries
    # -------------------------------------------------------------------------

    async def submit(
        self,
        scope_id: str,
        query_text: str,
        parent_entry_id: str | None = None,
        include_files: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> QuerySubmissionHandle:
        """Submit a project query (no attachments) and open its channel."""
        self._require_scope(scope_id)
        self._require_text(query_text, BackendErrorCode.INVALID_QUERY)

        request = QueryRequest(
            query=query_text,
            is_followup=bool(parent_entry_id),
            parent_entry_id=parent_entry_id or None,
            include_project_files=include_files,
            additional_context=dict(context or {}),
        )
        response = await self._send(
            "POST", endpoints.project_queries(scope_id), "submitting project query", request
        )
        data = self._decode(response, QuerySubmitResponse)
        query_id = self._require_query_id(data, "submit")

        logger.info(
            "Submitted query %s (entry=%s) to project %s", query_id, data.entry_id, scope_id
        )
        return self._open_handle(query_id, data.entry_id)

    async def submit_with_files(
        self,
        scope_id: str,
        query_text: str,
        files: Sequence[LocalFile],
        parent_entry_id: str | None = None,
        include_files: bool = True,
        context: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> QuerySubmissionHandle:
        """
        Ingest attachments, then submit the query regardless of partial
        ingestion failures. Failed attachment names land on the handle.
        """
        self._require_scope(scope_id)
        self._require_text(query_text, BackendErrorCode.INVALID_QUERY)

        failed_files: list[str] = []
        if files:
            failed_files = await self.pipeline.ingest(scope_id, files, on_progress)

        handle = await self.submit(
            scope_id, query_text, parent_entry_id, include_files, context
        )
        handle.failed_files = failed_files or None
        return handle

    # -------------------------------------------------------------------------
    # Follow-ups
    # -------------------------------------------------------------------------

    async def submit_followup(
        self,
        query_id: str,
        followup_text: str,
        include_files: bool = True,
        context: Mapping[str, Any] | None = None,
    ) -> QuerySubmissionHandle:
        """Ask a follow-up against an existing query; the backend mints a new id."""
        self._require_text(followup_text, BackendErrorCode.INVALID_FOLLOWUP_QUERY)

        request = FollowupRequest(
            query=followup_text,
            include_project_files=include_files,
            additional_context=dict(context or {}),
        )
        response = await self._send(
            "POST", endpoints.query_followup(query_id), "submitting follow-up query", request
        )
        data = self._decode(response, QuerySubmitResponse)
        new_query_id = data.query_id or query_id

        logger.info("Submitted follow-up %s (parent query %s)", new_query_id, query_id)
        return self._open_handle(new_query_id, data.entry_id)

    async def submit_followup_with_files(
        self,
        scope_id: str,
        query_id: str,
        followup_text: str,
        files: Sequence[LocalFile],
        include_files: bool = True,
        context: Mapping[str, Any] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> QuerySubmissionHandle:
        self._require_scope(scope_id)
        self._require_text(followup_text, BackendErrorCode.INVALID_FOLLOWUP_QUERY)

        failed_files: list[str] = []
        if files:
            failed_files = await self.pipeline.ingest(scope_id, files, on_progress)

        handle = await self.submit_followup(query_id, followup_text, include_files, context)
        handle.failed_files = failed_files or None
        return handle

    # -------------------------------------------------------------------------
    # Replays & Refresh
    # -------------------------------------------------------------------------

    async def submit_sync(
        self,
        scope_id: str,
        query_text: str,
        scope_name: str,
        uploaded_files: Iterable[Mapping[str, Any] | BaseModel] = (),
    ) -> QuerySubmissionHandle:
        """
        Re-issue a project's initial query with explicit context.

        `uploaded_files` are references to files already stored server-side
        (dicts or registry FileInfo records with file_id and filename).
        """
        self._require_scope(scope_id)
        self._require_text(query_text, BackendErrorCode.INVALID_QUERY)

        try:
            request = SyncQueryRequest(
                query=query_text,
                context=SyncContext(
                    project_id=scope_id,
                    project_name=scope_name,
                    session_id=scope_id,
                    uploaded_files=[
                        UploadedFileRef.model_validate(ref, from_attributes=True)
                        for ref in uploaded_files
                    ],
                ),
            )
        except ValidationError as e:
            raise QueryError(validation_error("invalid_request", str(e), query_text)) from e

        response = await self._send("POST", endpoints.QUERIES, "submitting sync query", request)
        data = self._decode(response, QuerySubmitResponse)
        query_id = self._require_query_id(data, "sync")

        logger.info("Submitted sync query %s for project %s", query_id, scope_id)
        return self._open_handle(query_id, data.entry_id)

    async def refresh(
        self, scope_id: str, target_query_id: str | None = None
    ) -> QuerySubmissionHandle:
        """
        Ask the backend to recompute a project's queries and attach a channel
        to the one matching `target_query_id` (first result otherwise).
        """
        self._require_scope(scope_id)

        response = await self._send(
            "POST", endpoints.project_refresh(scope_id), "refreshing project", RefreshRequest()
        )
        try:
            body = response.json()
            results = [QuerySubmitResponse.model_validate(item) for item in body or []]
        except (TypeError, ValueError) as e:
            raise QueryError(parse_error(e)) from e

        if not results:
            raise QueryError(parse_error(LookupError("No queries to refresh in this project")))

        chosen = results[0]
        if target_query_id:
            match = next((r for r in results if r.query_id == target_query_id), None)
            if match is None:
                logger.warning(
                    "Query ID %s not found in refresh results, using first result",
                    target_query_id,
                )
            else:
                chosen = match

        query_id = self._require_query_id(chosen, "refresh")
        logger.info("Refreshed project %s, streaming query %s", scope_id, query_id)
        return self._open_handle(query_id, chosen.entry_id)

    # -------------------------------------------------------------------------
    # Results, Approval, Chat
    # -------------------------------------------------------------------------

    async def fetch_full_result(
        self, query_id: str, original_query_text: str = ""
    ) -> StreamingStatusEvent:
        """
        Fetch the stored result of a completed or failed query.

        Rate-limited per query id, and a `failed` result is served from the
        failure cache (same object, no request) until its TTL runs out.
        """
        await self.context.rate_limiter.wait_turn(query_id)

        cached = self.context.failure_cache.get(query_id)
        if cached is not None:
            logger.info("Returning cached failed query result: %s", query_id)
            return cached

        response = await self._send(
            "GET", endpoints.query_full_result(query_id), "fetching query full result"
        )
        result = self._decode(response, StreamingStatusEvent)
        if result.query is None and original_query_text:
            result = result.model_copy(update={"query": original_query_text})

        if result.status == "failed":
            self.context.failure_cache.put(query_id, result)

        return result

    async def submit_approval_feedback(self, query_id: str, user_message: str) -> None:
        """
        Send free-text feedback for a query awaiting approval. The backend
        decides from the text whether the plan was approved.
        """
        await self._send(
            "POST",
            endpoints.query_approve(query_id),
            "submitting approval feedback",
            ApprovalRequest(feedback=user_message),
        )
        logger.info("Submitted approval feedback for query %s", query_id)

    async def add_chat_message(
        self, scope_id: str, request: ChatMessageRequest
    ) -> ChatMessageResponse:
        """Persist one chat message under a project's conversation entry."""
        self._require_scope(scope_id)
        response = await self._send(
            "POST", endpoints.project_chat_messages(scope_id), "adding chat message", request
        )
        return self._decode(response, ChatMessageResponse)

    def stream_query_status(self, query_id: str) -> StreamChannel:
        """Open a channel for a query submitted earlier (e.g. after a reload)."""
        return self._channel_factory(query_id)
