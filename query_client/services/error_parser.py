# =============================================================================
# Error Normaliser — One Taxonomy for Every Backend Failure Shape
# =============================================================================
#
# Turns anything that can go wrong on a request (an httpx exception, a non-2xx
# response body, the strategy agent's inline error object) into a ParsedError.
#
# DISPATCH ORDER:
#   1. Non-2xx response available  → parse the body as an HTTP exception
#        {detail: "text"}                         → code "http_exception"
#        {detail: {error, message, query, ...}}   → code = detail.error
#        {error, response|message, query}         → code = error
#        anything else (plain text, HTML)         → code "http_error"
#   2. Inline {error, status} object  → validation, 400, not retryable
#   3. Transport failure              → network, status 0, retryable
#   4. Anything else                  → unknown, status 0, not retryable
#
# DESIGN DECISION: Category and retryability come from the status code only.
# Content heuristics ("the message sounds temporary") are never consulted for
# HTTP-derived errors; the same status always yields the same answer.
#
# DESIGN DECISION: Both error envelopes stay supported.
# The backend has emitted FastAPI `detail` bodies and the strategy agent's
# flat `{error, response}` shape in different releases. Neither is
# authoritative yet, so both code paths are kept.
#
# DESIGN DECISION: Pure functions, no class.
# Nothing here holds state. Module-level functions with lookup tables are
# simpler to test than a class of static methods.
# =============================================================================

from __future__ import annotations

import json
from collections.abc import Mapping
from typing import Any

import httpx

from query_client.models.errors import BackendErrorCode, ErrorCategory, ParsedError


# ---------------------------------------------------------------------------
# Lookup Tables
# ---------------------------------------------------------------------------
# User-facing copy keyed by backend error code. VALIDATION_SUGGESTIONS keys
# must stay a subset of USER_MESSAGES keys (enforced by the test suite).
# ---------------------------------------------------------------------------

GENERIC_USER_MESSAGE = "An error occurred. Please try again."
NETWORK_USER_MESSAGE = (
    "Connection issue. Please check your internet connection and try again."
)
UNKNOWN_USER_MESSAGE = "Something went wrong. Please try again."

USER_MESSAGES: dict[str, str] = {
    BackendErrorCode.NON_BUSINESS_QUERY.value: (
        "This query is not related to business strategy. Please ask about "
        "business topics like market analysis, competitive positioning, or "
        "strategic planning."
    ),
    BackendErrorCode.INVALID_FOLLOWUP_QUERY.value: (
        "This follow-up question is not related to the business analysis. "
        "Please ask questions about the report findings or request additional "
        "analysis."
    ),
    BackendErrorCode.INVALID_QUERY.value: (
        "Please provide a more specific business question. Try asking about "
        "market trends, competitive analysis, or strategic opportunities."
    ),
    BackendErrorCode.PROJECT_NOT_FOUND.value: (
        "The requested project could not be found. It may have been deleted "
        "or you may not have access to it."
    ),
    BackendErrorCode.QUERY_MANAGER_NOT_INITIALIZED.value: (
        "The system is temporarily unavailable. Please try again in a moment."
    ),
    BackendErrorCode.SERVER_ERROR.value: (
        "A server error occurred. Our team has been notified and is working "
        "to fix it."
    ),
    BackendErrorCode.AUTHENTICATION_FAILED.value: (
        "Authentication failed. Please log in again."
    ),
    BackendErrorCode.FILE_UPLOAD_FAILED.value: (
        "File upload failed. Please check the file format and size, then try "
        "again."
    ),
    BackendErrorCode.FILE_PROCESSING_FAILED.value: (
        "File processing failed. The file may be corrupted or in an "
        "unsupported format."
    ),
}

VALIDATION_SUGGESTIONS: dict[str, list[str]] = {
    BackendErrorCode.NON_BUSINESS_QUERY.value: [
        "Analyze our market position in digital banking",
        "Assess growth opportunities in SME lending",
        "Compare our competitive advantages",
        "Evaluate digital transformation strategies",
        "Review customer satisfaction trends",
    ],
    BackendErrorCode.INVALID_FOLLOWUP_QUERY.value: [
        "Can you provide more detail on the market analysis?",
        "What are the key recommendations from this report?",
        "How does this compare to industry benchmarks?",
        "What are the next steps for implementation?",
        "Can you expand on the risk assessment?",
    ],
    BackendErrorCode.INVALID_QUERY.value: [
        "Analyze market trends in the UAE banking sector",
        "Assess competitive positioning against regional banks",
        "Evaluate digital banking adoption rates",
        "Review customer acquisition strategies",
        "Compare financial performance metrics",
    ],
}

# Fallback copy when a status-derived error carries no known code.
_CATEGORY_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.SERVER: USER_MESSAGES[BackendErrorCode.SERVER_ERROR.value],
    ErrorCategory.AUTH: USER_MESSAGES[BackendErrorCode.AUTHENTICATION_FAILED.value],
    ErrorCategory.NETWORK: NETWORK_USER_MESSAGE,
}

_TRANSPORT_HINTS = ("fetch", "connection", "network")


# ---------------------------------------------------------------------------
# Status Code Rules
# ---------------------------------------------------------------------------


def get_error_type(status_code: int) -> ErrorCategory:
    """
    Map an HTTP status to an error category. Total over all integers.

    Order matters: >= 1000 (client-side pseudo statuses) is checked before
    the 5xx rule so it lands in NETWORK, not SERVER.
    """
    if status_code in (401, 403):
        return ErrorCategory.AUTH
    if status_code == 400:
        return ErrorCategory.VALIDATION
    if status_code == 0 or status_code >= 1000:
        return ErrorCategory.NETWORK
    if status_code >= 500:
        return ErrorCategory.SERVER
    return ErrorCategory.UNKNOWN


def is_retryable(status_code: int) -> bool:
    """Network (0), server (>= 500) and rate-limited (429) failures are retryable."""
    if status_code == 0:
        return True
    if status_code >= 500:
        return True
    return status_code == 429


def get_user_friendly_message(error_code: str | None) -> str:
    return USER_MESSAGES.get(error_code or "", GENERIC_USER_MESSAGE)


def get_validation_suggestions(error_code: str | None) -> list[str]:
    """Example corrected queries for a validation code ([] when none apply)."""
    return list(VALIDATION_SUGGESTIONS.get(error_code or "", []))


def _user_message_for(code: str | None, category: ErrorCategory) -> str:
    if code and code in USER_MESSAGES:
        return USER_MESSAGES[code]
    return _CATEGORY_USER_MESSAGES.get(category, GENERIC_USER_MESSAGE)


# ---------------------------------------------------------------------------
# Entry Point
# ---------------------------------------------------------------------------


def parse_error(error: Any, response: httpx.Response | None = None) -> ParsedError:
    """
    Parse any failure into a ParsedError.

    Args:
        error: An exception, the raw error body text, or an inline error
            mapping. For HTTP failures, pass the response body text (or an
            exception whose message is that text).
        response: The HTTP response, when one was received.

    Returns:
        A new ParsedError. Calling twice with the same inputs yields equal
        records.
    """
    if response is not None and not response.is_success:
        return _parse_http_exception(error, response)

    if isinstance(error, Mapping) and error.get("error") and error.get("status"):
        return _parse_strategy_agent_error(error)

    if _is_transport_failure(error):
        return _parse_network_error(error)

    return _parse_generic_error(error)


def validation_error(
    code: str, message: str, query: str | None = None
) -> ParsedError:
    """Build a validation error for input rejected before any request is sent."""
    return ParsedError(
        type=ErrorCategory.VALIDATION,
        code=code,
        message=message,
        user_message=get_user_friendly_message(code),
        original_query=query,
        retryable=is_retryable(400),
        status_code=400,
    )


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


def _parse_http_exception(error: Any, response: httpx.Response) -> ParsedError:
    status_code = response.status_code
    category = get_error_type(status_code)
    text = _error_text(error)

    try:
        body = json.loads(text)
    except (TypeError, ValueError):
        body = None

    if isinstance(body, Mapping) and body.get("detail"):
        detail = body["detail"]

        if isinstance(detail, str):
            return ParsedError(
                type=category,
                code="http_exception",
                message=detail,
                user_message=_user_message_for(detail, category),
                retryable=is_retryable(status_code),
                status_code=status_code,
            )

        if isinstance(detail, Mapping):
            code = detail.get("error") or "unknown"
            return ParsedError(
                type=category,
                code=str(code),
                message=str(detail.get("message") or code or "Unknown error"),
                user_message=_user_message_for(str(code), category),
                original_query=_optional_str(detail.get("query")),
                retryable=is_retryable(status_code),
                status_code=status_code,
                timestamp=_optional_str(detail.get("timestamp")),
                error_id=_optional_str(detail.get("error_id")),
            )

        # FastAPI request-validation bodies: detail is a list of {loc, msg}.
        if isinstance(detail, list):
            messages = [
                str(item.get("msg", item)) if isinstance(item, Mapping) else str(item)
                for item in detail
            ]
            return ParsedError(
                type=category,
                code="request_validation",
                message="; ".join(messages) or "Request validation failed",
                user_message=_user_message_for(None, category),
                retryable=is_retryable(status_code),
                status_code=status_code,
            )

    # Strategy agent envelope returned with an error status.
    if isinstance(body, Mapping) and body.get("error"):
        code = str(body["error"])
        return ParsedError(
            type=category,
            code=code,
            message=str(body.get("response") or body.get("message") or code),
            user_message=_user_message_for(code, category),
            original_query=_optional_str(body.get("query")),
            retryable=is_retryable(status_code),
            status_code=status_code,
        )

    return ParsedError(
        type=category,
        code="http_error",
        message=text or f"HTTP {status_code} {response.reason_phrase}".strip(),
        user_message=_user_message_for(None, category),
        retryable=is_retryable(status_code),
        status_code=status_code,
    )


def _parse_strategy_agent_error(error: Mapping) -> ParsedError:
    code = str(error["error"])
    message = str(error.get("response") or error.get("message") or code)
    return ParsedError(
        type=ErrorCategory.VALIDATION,
        code=code,
        message=message,
        user_message=message,
        original_query=_optional_str(error.get("query")),
        retryable=False,
        status_code=400,
    )


def _parse_network_error(error: Any) -> ParsedError:
    return ParsedError(
        type=ErrorCategory.NETWORK,
        code="network_error",
        message=_error_text(error) or "Network connection failed",
        user_message=NETWORK_USER_MESSAGE,
        retryable=True,
        status_code=0,
    )


def _parse_generic_error(error: Any) -> ParsedError:
    return ParsedError(
        type=ErrorCategory.UNKNOWN,
        code="unknown_error",
        message=_error_text(error) or "An unexpected error occurred",
        user_message=UNKNOWN_USER_MESSAGE,
        retryable=False,
        status_code=0,
    )


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _is_transport_failure(error: Any) -> bool:
    if isinstance(error, (httpx.TransportError, ConnectionError, TimeoutError)):
        return True
    if isinstance(error, BaseException):
        text = str(error).lower()
        return any(hint in text for hint in _TRANSPORT_HINTS)
    return False


def _error_text(error: Any) -> str:
    if error is None:
        return ""
    if isinstance(error, str):
        return error
    if isinstance(error, Mapping):
        return str(error.get("message") or error.get("response") or error.get("error") or "")
    return str(error)


def _optional_str(value: Any) -> str | None:
    return None if value is None else str(value)


# ---------------------------------------------------------------------------
# Predicates
# ---------------------------------------------------------------------------


def is_validation_error(error: ParsedError) -> bool:
    return error.type == ErrorCategory.VALIDATION


def is_network_error(error: ParsedError) -> bool:
    return error.type == ErrorCategory.NETWORK


def is_server_error(error: ParsedError) -> bool:
    return error.type == ErrorCategory.SERVER


def is_auth_error(error: ParsedError) -> bool:
    return error.type == ErrorCategory.AUTH
