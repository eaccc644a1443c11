# =============================================================================
# Response Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data coming BACK from the analysis
# backend, both from discrete request/response calls and from the SSE
# status stream.
#
# DESIGN DECISION: Normalise key spelling at the transport boundary.
# The backend has emitted both `query_id` and `queryId` (and the same for
# entry ids, step ids, token usage) across versions. Each model accepts
# every known spelling via AliasChoices, so business logic only ever reads
# the snake_case attribute.
#
# DESIGN DECISION: Status events keep unknown keys (extra="allow").
# The result payload is free-form and grows with the backend's agent
# roster; dropping unknown keys here would silently lose report sections.
# =============================================================================

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

QueryStatus = Literal[
    "processing", "completed", "failed", "pending_approval", "rejected"
]

# No further events are expected once one of these arrives.
TERMINAL_STATUSES: frozenset[str] = frozenset({"completed", "failed", "rejected"})


# ---------------------------------------------------------------------------
# Query Submission
# ---------------------------------------------------------------------------


class QuerySubmitResponse(BaseModel):
    """Response of every query-creating endpoint (submit, follow-up, sync)."""

    query_id: str | None = Field(
        default=None, validation_alias=AliasChoices("query_id", "queryId")
    )
    entry_id: str = Field(
        default="", validation_alias=AliasChoices("entry_id", "entryId")
    )

    model_config = ConfigDict(extra="ignore")


class ChatMessageResponse(BaseModel):
    """Response for POST /projects/{id}/chat-messages."""

    message_id: str
    timestamp: str
    status: Literal["saved"] = "saved"


# ---------------------------------------------------------------------------
# Streaming Status
# ---------------------------------------------------------------------------


class TokenUsage(BaseModel):
    """LLM token accounting attached to a single agent step."""

    prompt_tokens: int = Field(
        default=0, validation_alias=AliasChoices("prompt_tokens", "promptTokens")
    )
    completion_tokens: int = Field(
        default=0,
        validation_alias=AliasChoices("completion_tokens", "completionTokens"),
    )
    total_tokens: int = Field(
        default=0, validation_alias=AliasChoices("total_tokens", "totalTokens")
    )
    model: str | None = None
    cost: float | None = None


class QueryStep(BaseModel):
    """One agent action inside a query's execution trace."""

    step_id: str = Field(validation_alias=AliasChoices("step_id", "stepId"))
    agent: str
    action: str
    status: Literal["pending", "processing", "completed", "failed", "skipped"]
    reasoning: str | None = None
    result: Any = None
    token_usage: TokenUsage | None = Field(
        default=None, validation_alias=AliasChoices("token_usage", "tokenUsage")
    )
    start_time: str | None = Field(
        default=None, validation_alias=AliasChoices("start_time", "startTime")
    )
    end_time: str | None = Field(
        default=None, validation_alias=AliasChoices("end_time", "endTime")
    )


class StreamingStatusEvent(BaseModel):
    """
    A status snapshot for one query, as pushed on the stream channel and as
    returned by GET /queries/{id}/full-result.

    The interesting payload depends on `status`:
    - processing: progress + steps so far
    - pending_approval: the execution plan awaiting human feedback
    - completed: `result` / `structured_response` carry the report sections
    - failed: `error` (and usually the steps that did run)
    - rejected: `rejection_reason`
    """

    status: QueryStatus
    query_id: str | None = Field(
        default=None, validation_alias=AliasChoices("query_id", "queryId")
    )
    query: str | None = None
    progress: float | None = None
    steps: list[QueryStep] = Field(default_factory=list)
    result: Any = None
    structured_response: dict[str, Any] | None = None
    current_agent: str | None = Field(
        default=None,
        validation_alias=AliasChoices("current_agent", "currentAgent"),
    )
    current_step: str | None = Field(
        default=None, validation_alias=AliasChoices("current_step", "currentStep")
    )
    done: bool | None = None
    error: str | None = None
    errors: list[Any] | None = None
    rejection_reason: str | None = None
    sources: list[Any] | None = None

    model_config = ConfigDict(extra="allow")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------


class FileUploadResponse(BaseModel):
    """Response for POST /files. Only the storage id is needed downstream."""

    file_id: str = Field(validation_alias=AliasChoices("file_id", "fileId"))

    model_config = ConfigDict(extra="ignore")


class FileProcessingResult(BaseModel):
    """Response for POST /files/{id}/process."""

    file_id: str | None = None
    status: str
    chunk_count: int = 0
    vector_count: int = 0
    error_message: str | None = None

    model_config = ConfigDict(extra="ignore")


class FileInfo(BaseModel):
    """A stored file as listed by GET /files (used by the file registry)."""

    file_id: str
    filename: str
    file_path: str | None = None
    file_size: int | None = None
    content_type: str | None = None
    scope: str | None = None
    category: str | None = None
    status: str | None = None
    uploaded_at: str | None = None
    processed_at: str | None = None
    project_id: str | None = None
    chunk_count: int = 0
    vector_count: int = 0
    error_message: str | None = None
    document_metadata: dict[str, Any] = Field(default_factory=dict)
    tags: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")
