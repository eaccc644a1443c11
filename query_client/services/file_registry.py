# =============================================================================
# File Registry — Filename → Stored File Lookup
# =============================================================================
#
# Report sections cite source documents by filename ("Q3_Report.pdf",
# sometimes "Q3_Report" or "q3_report.PDF"). The registry resolves those
# names to stored file records so a caller can build download links.
#
# CACHING:
#   - The global file list is cached in memory for file_registry_cache_seconds
#     (5 minutes by default).
#   - refresh() invalidates and re-fetches; the ingestion pipeline calls it
#     in the background after new files land.
#
# DESIGN DECISION: Graceful degradation on fetch failure.
# If the backend is unreachable, the last successfully fetched list keeps
# serving lookups (logged as a warning). Only a registry that has never
# loaded anything propagates the error.
# =============================================================================

from __future__ import annotations

import logging
import time

import httpx

from query_client.config import Settings
from query_client.models.responses import FileInfo
from query_client.services import endpoints
from query_client.services.rate_limiter import Clock

logger = logging.getLogger(__name__)

COMMON_EXTENSIONS = (".pdf", ".docx", ".doc", ".xlsx", ".xls", ".pptx", ".ppt", ".txt")


def remove_extension(filename: str) -> str:
    stem, dot, _ = filename.rpartition(".")
    return stem if dot else filename


def filename_variations(filename: str) -> list[str]:
    """Candidate keys for fuzzy filename matching, most specific first."""
    variations = [filename, remove_extension(filename)]
    if "." not in filename:
        variations.extend(filename + ext for ext in COMMON_EXTENSIONS)
    variations.extend([filename.lower(), filename.upper()])
    return variations


class FileRegistry:
    """Cached view of the backend's globally scoped files."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        clock: Clock = time.monotonic,
    ) -> None:
        self._client = client
        self._settings = settings
        self._clock = clock
        self._files: list[FileInfo] | None = None
        self._fetched_at: float | None = None
        self._last_known: list[FileInfo] | None = None
        self._file_map: dict[str, FileInfo] = {}

    @property
    def files(self) -> list[FileInfo]:
        return list(self._files or self._last_known or [])

    def _cache_valid(self) -> bool:
        if self._files is None or self._fetched_at is None:
            return False
        age = self._clock() - self._fetched_at
        return age < self._settings.file_registry_cache_seconds

    async def fetch_global_files(self) -> list[FileInfo]:
        """Return the global file list, from cache when still fresh."""
        if self._cache_valid():
            return list(self._files)

        try:
            response = await self._client.get(
                endpoints.FILES,
                params={"scope": "global", "limit": self._settings.file_registry_limit},
            )
            response.raise_for_status()
            files = [FileInfo.model_validate(item) for item in response.json()]
        except (httpx.HTTPError, ValueError) as e:
            if self._last_known is not None:
                logger.warning(
                    "File registry fetch failed (%s). Serving %d cached files.",
                    e, len(self._last_known),
                )
                self._update_file_map(self._last_known)
                return list(self._last_known)
            logger.error("File registry fetch failed with no cached fallback: %s", e)
            raise

        self._files = files
        self._last_known = files
        self._fetched_at = self._clock()
        self._update_file_map(files)
        logger.info("File registry loaded %d global files", len(files))
        return list(files)

    async def refresh(self) -> list[FileInfo]:
        """Drop the cache and fetch the file list again."""
        self._files = None
        self._fetched_at = None
        return await self.fetch_global_files()

    def _update_file_map(self, files: list[FileInfo]) -> None:
        self._file_map.clear()
        for info in files:
            self._file_map[info.filename] = info
            stem = remove_extension(info.filename)
            # Exact filenames win over another file's extension-less alias.
            self._file_map.setdefault(stem, info)

    def get_file_by_name(self, filename: str) -> FileInfo | None:
        for candidate in filename_variations(filename):
            info = self._file_map.get(candidate)
            if info is not None:
                return info
        return None

    def is_file_available(self, filename: str) -> bool:
        return self.get_file_by_name(filename) is not None

    def get_download_url(self, file_id: str) -> str:
        return self._settings.api_url + endpoints.file_download(file_id)
