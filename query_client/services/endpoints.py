# =============================================================================
# Endpoint Paths — Analysis Backend REST Surface
# =============================================================================
#
# Every path is relative to the httpx client's base_url
# (settings.api_base_url + settings.api_prefix), so the same helpers work
# against production, staging, and the in-process test backend.
#
#   POST /files                           → upload one file (multipart)
#   GET  /files?scope=global&limit=N      → list files (file registry)
#   GET  /files/{id}/download             → download a stored file
#   POST /files/{id}/process?force=bool   → extract + index an upload
#   POST /projects/{id}/queries           → submit a project query
#   POST /projects/{id}/refresh           → recompute a project's queries
#   POST /projects/{id}/chat-messages     → persist a chat message
#   POST /queries                         → generic (sync replay) submission
#   GET  /queries/{id}/stream             → SSE status channel
#   GET  /queries/{id}/full-result        → stored result of a finished query
#   POST /queries/{id}/followup           → follow-up against a prior query
#   POST /queries/{id}/approve            → feedback for pending approval
# =============================================================================

from urllib.parse import quote

FILES = "/files"
QUERIES = "/queries"


def _seg(value: str) -> str:
    """Escape an id for use as a single path segment."""
    return quote(str(value), safe="")


def file_process(file_id: str) -> str:
    return f"/files/{_seg(file_id)}/process"


def file_download(file_id: str) -> str:
    return f"/files/{_seg(file_id)}/download"


def project_queries(project_id: str) -> str:
    return f"/projects/{_seg(project_id)}/queries"


def project_refresh(project_id: str) -> str:
    return f"/projects/{_seg(project_id)}/refresh"


def project_chat_messages(project_id: str) -> str:
    return f"/projects/{_seg(project_id)}/chat-messages"


def query_stream(query_id: str) -> str:
    return f"/queries/{_seg(query_id)}/stream"


def query_full_result(query_id: str) -> str:
    return f"/queries/{_seg(query_id)}/full-result"


def query_followup(query_id: str) -> str:
    return f"/queries/{_seg(query_id)}/followup"


def query_approve(query_id: str) -> str:
    return f"/queries/{_seg(query_id)}/approve"
