# =============================================================================
# Request Models — Pydantic V2 Schemas
# =============================================================================
#
# These models define the shape of data going OUT to the analysis backend.
# They are validated on construction, so a malformed payload fails locally
# instead of costing a round-trip and a 422.
#
# DESIGN DECISION: Frozen models.
# A request is built once per call and never edited afterwards. Freezing
# makes accidental mutation (e.g. a shared additional_context dict leaking
# between two submissions) a loud error.
# =============================================================================

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class QueryRequest(BaseModel):
    """
    Request body for POST /projects/{id}/queries.

    Example:
        {
            "query": "Assess growth opportunities in SME lending",
            "is_followup": false,
            "parent_entry_id": null,
            "include_project_files": true,
            "additional_context": {}
        }
    """

    query: str = Field(..., min_length=1, description="The analytical question")
    is_followup: bool = False
    parent_entry_id: str | None = None
    include_project_files: bool = True
    additional_context: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


class FollowupRequest(BaseModel):
    """Request body for POST /queries/{id}/followup."""

    query: str = Field(..., min_length=1)
    include_project_files: bool = True
    additional_context: dict[str, Any] = Field(default_factory=dict)

    model_config = ConfigDict(frozen=True)


# ---------------------------------------------------------------------------
# Sync Replays
# ---------------------------------------------------------------------------


class UploadedFileRef(BaseModel):
    """A file already stored server-side, referenced by a sync replay."""

    file_id: str
    filename: str
    file_type: str = "document"

    # Registry entries carry many more keys; only the three above are sent.
    model_config = ConfigDict(extra="ignore")


class SyncContext(BaseModel):
    """Explicit context for re-issuing an initial project query."""

    project_id: str
    project_name: str
    session_id: str
    uploaded_files: list[UploadedFileRef] = Field(default_factory=list)
    is_sync: bool = True
    require_approval: bool = False


class SyncQueryRequest(BaseModel):
    """Request body for POST /queries (generic submission used for replays)."""

    query: str = Field(..., min_length=1)
    context: SyncContext
    debug: bool = True


class RefreshRequest(BaseModel):
    """Request body for POST /projects/{id}/refresh."""

    include_followups: bool = True
    use_cached_results: bool = False


class ApprovalRequest(BaseModel):
    """
    Request body for POST /queries/{id}/approve.

    `approved` is always sent as true: the backend reads the free-text
    feedback and decides whether the user actually approved.
    """

    approved: bool = True
    feedback: str


class ChatMessageRequest(BaseModel):
    """Request body for POST /projects/{id}/chat-messages."""

    entry_id: str
    message_type: Literal[
        "user", "system", "assistant", "processing", "execution_plan"
    ]
    content: str
    query_id: str | None = None
    metadata: dict[str, Any] | None = None
    timestamp: str | None = None
