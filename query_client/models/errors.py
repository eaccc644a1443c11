# =============================================================================
# Error Models — Unified Error Taxonomy
# =============================================================================
#
# The analysis backend reports failures in more than one envelope (FastAPI
# HTTPException bodies, the strategy agent's inline {error, response} shape,
# plain-text 5xx pages). Everything is normalised into one ParsedError so
# callers branch on `.type` / `.retryable` without knowing the transport.
#
# DESIGN DECISION: ParsedError is a frozen Pydantic model, not a dataclass.
# It crosses process boundaries as JSON (QueryError's str() is the
# serialised record), and model_validate_json() gives callers the exact
# inverse for free.
# =============================================================================

from __future__ import annotations

import enum

from pydantic import BaseModel, ConfigDict


class ErrorCategory(str, enum.Enum):
    """Top-level error classes, each with its own UI handling strategy."""

    VALIDATION = "validation"  # Bad or out-of-scope query; show suggestions
    NETWORK = "network"        # Transport failure; offer a retry
    SERVER = "server"          # Backend 5xx; apologise, show error id
    AUTH = "auth"              # 401/403; prompt re-authentication
    UNKNOWN = "unknown"


class BackendErrorCode(str, enum.Enum):
    """Error codes the backend is known to emit in `detail.error`."""

    NON_BUSINESS_QUERY = "non_business_query"
    INVALID_FOLLOWUP_QUERY = "invalid_followup_query"
    INVALID_QUERY = "invalid_query"
    PROJECT_NOT_FOUND = "project_not_found"
    QUERY_MANAGER_NOT_INITIALIZED = "query_manager_not_initialized"
    SERVER_ERROR = "server_error"
    AUTHENTICATION_FAILED = "authentication_failed"
    FILE_UPLOAD_FAILED = "file_upload_failed"
    FILE_PROCESSING_FAILED = "file_processing_failed"


class ParsedError(BaseModel):
    """
    A normalised failure, constructed once and never mutated.

    `message` is the technical text (logs, support tickets).
    `user_message` is what end-user surfaces display.
    """

    type: ErrorCategory
    code: str
    message: str
    user_message: str
    retryable: bool
    status_code: int
    original_query: str | None = None
    timestamp: str | None = None
    error_id: str | None = None

    model_config = ConfigDict(frozen=True, use_enum_values=True)


class QueryError(Exception):
    """
    Raised by every orchestrator operation that fails.

    The exception text is the serialised ParsedError, so a caller that only
    sees `str(exc)` (a log line, a queue message) can still recover it with
    ParsedError.model_validate_json().
    """

    def __init__(self, error: ParsedError) -> None:
        super().__init__(error.model_dump_json())
        self.error = error

    @property
    def type(self) -> str:
        return self.error.type

    @property
    def retryable(self) -> bool:
        return self.error.retryable
