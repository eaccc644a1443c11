# =============================================================================
# File Ingestion Pipeline — Upload + Process, Failure-Tolerant
# =============================================================================
#
# Attaches local documents to a project before a query is submitted.
#
# PIPELINE (per file, files strictly in input order):
#   1. Upload  → POST /files (multipart: file, scope="project", project_id)
#   2. Process → POST /files/{id}/process?force=<bool>  (extract + index)
#
# PROGRESS:
#   Reported as round(completed_stages / (2 × file_count) × 100). When a file
#   fails, its missing stages are credited anyway, so the percentage is
#   monotonic and always ends at 100.
#
# FAILURE POLICY:
#   A failed upload or process never aborts the batch. The file's original
#   name goes into the returned failure list, the failure is logged, and the
#   next file starts. The caller decides what to do with partial failures
#   (the orchestrator submits the query anyway: a broken attachment must not
#   block the textual question).
#
# DESIGN DECISION: Sequential, not concurrent.
# One file at a time caps load on the extraction backend (processing a large
# PDF is expensive server-side) and keeps progress reporting trivially
# monotonic. A concurrent variant would need a bounded worker count and a
# shared completed-stage counter.
# =============================================================================

from __future__ import annotations

import asyncio
import inspect
import logging
import mimetypes
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass
from pathlib import Path
from typing import Literal

import httpx

from query_client.config import Settings
from query_client.models.responses import FileProcessingResult, FileUploadResponse
from query_client.services import endpoints
from query_client.services.file_registry import FileRegistry

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int], Awaitable[None] | None]


@dataclass(frozen=True)
class LocalFile:
    """A document held in memory, ready to upload."""

    name: str
    content: bytes
    content_type: str = "application/octet-stream"

    @classmethod
    def from_path(cls, path: str | Path) -> LocalFile:
        path = Path(path)
        content_type, _ = mimetypes.guess_type(path.name)
        return cls(
            name=path.name,
            content=path.read_bytes(),
            content_type=content_type or "application/octet-stream",
        )


class IngestionError(Exception):
    """A single file could not be uploaded or processed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class FileIngestionPipeline:
    """Uploads and processes batches of files against the storage service."""

    STAGES_PER_FILE = 2

    def __init__(
        self,
        client: httpx.AsyncClient,
        settings: Settings,
        registry: FileRegistry | None = None,
    ) -> None:
        self._client = client
        self._settings = settings
        self._registry = registry
        self._background_tasks: set[asyncio.Task] = set()

    # -------------------------------------------------------------------------
    # Single-File Stages
    # -------------------------------------------------------------------------

    async def upload_file(
        self,
        file: LocalFile,
        scope: Literal["project", "global"] = "project",
        project_id: str | None = None,
    ) -> str:
        """
        Upload one file and return its storage id.

        Raises:
            IngestionError: Transport failure, non-2xx response, or a response
                without a file id.
        """
        data = {"scope": scope}
        if scope == "project" and project_id:
            data["project_id"] = project_id

        try:
            response = await self._client.post(
                endpoints.FILES,
                data=data,
                files={"file": (file.name, file.content, file.content_type)},
                timeout=self._settings.upload_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise IngestionError(f"Upload failed for {file.name}: {e}") from e

        if not response.is_success:
            raise IngestionError(
                f"Upload failed: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            return FileUploadResponse.model_validate(response.json()).file_id
        except ValueError as e:
            raise IngestionError(f"Upload response had no file id: {e}") from e

    async def process_file(
        self, file_id: str, force_reprocess: bool | None = None
    ) -> FileProcessingResult:
        """
        Trigger extraction/indexing for an uploaded file.

        Raises:
            IngestionError: Transport failure, non-2xx response, or a
                processing result with status "failed".
        """
        force = self._settings.force_reprocess if force_reprocess is None else force_reprocess
        try:
            response = await self._client.post(
                endpoints.file_process(file_id),
                params={"force": force},
                timeout=self._settings.upload_timeout_seconds,
            )
        except httpx.HTTPError as e:
            raise IngestionError(f"Processing failed for {file_id}: {e}") from e

        if not response.is_success:
            raise IngestionError(
                f"Failed to process file: {response.status_code} - {response.text}",
                status_code=response.status_code,
            )

        try:
            result = FileProcessingResult.model_validate(response.json())
        except ValueError as e:
            raise IngestionError(f"Unreadable processing result for {file_id}: {e}") from e

        if result.status == "failed":
            raise IngestionError(
                f"File processing failed: {result.error_message or 'no reason given'}"
            )

        logger.info(
            "File %s processed: %d chunks, %d vectors",
            file_id, result.chunk_count, result.vector_count,
        )
        return result

    # -------------------------------------------------------------------------
    # Batch
    # -------------------------------------------------------------------------

    async def ingest(
        self,
        scope_id: str,
        files: Iterable[LocalFile],
        on_progress: ProgressCallback | None = None,
    ) -> list[str]:
        """
        Upload and process every file under `scope_id`.

        Args:
            scope_id: Project the files belong to.
            files: Files to ingest, processed in order.
            on_progress: Called with an integer percentage after every stage.
                May be a plain function or a coroutine function.

        Returns:
            Original names of the files that failed (empty if all succeeded).

        Raises:
            ValueError: No scope id, so the batch cannot start.
        """
        if not scope_id:
            raise ValueError("scope_id is required to ingest files")

        files = list(files)
        if not files:
            return []

        total_stages = len(files) * self.STAGES_PER_FILE
        completed = 0
        succeeded = 0
        failed_files: list[str] = []

        for file in files:
            stages_done = 0
            try:
                file_id = await self.upload_file(file, "project", scope_id)
                stages_done += 1
                completed += 1
                await _report(on_progress, completed, total_stages)

                await self.process_file(file_id)
                stages_done += 1
                completed += 1
                await _report(on_progress, completed, total_stages)
                succeeded += 1
            except IngestionError as e:
                logger.warning("Failed to upload/process file %s: %s", file.name, e)
                failed_files.append(file.name)
                # Credit the stages this file will never reach.
                completed += self.STAGES_PER_FILE - stages_done
                await _report(on_progress, completed, total_stages)

        logger.info(
            "Ingested %d/%d files into %s (%d failed)",
            succeeded, len(files), scope_id, len(failed_files),
        )

        if succeeded:
            self._refresh_registry_in_background()

        return failed_files

    # -------------------------------------------------------------------------
    # Background Registry Refresh
    # -------------------------------------------------------------------------

    def _refresh_registry_in_background(self) -> None:
        if self._registry is None:
            return
        task = asyncio.create_task(self._refresh_registry())
        # Hold a reference until done; the loop only keeps weak ones.
        self._background_tasks.add(task)
        task.add_done_callback(self._background_tasks.discard)

    async def _refresh_registry(self) -> None:
        try:
            logger.info("Refreshing file registry in background...")
            await self._registry.refresh()
            logger.info("File registry refreshed successfully")
        except Exception as e:
            # Background operation: never affects the submission flow.
            logger.warning("Failed to refresh file registry in background: %s", e)

    async def wait_for_background_tasks(self) -> None:
        """Await any in-flight registry refresh (used on shutdown and in tests)."""
        if self._background_tasks:
            await asyncio.gather(*self._background_tasks)


async def _report(
    on_progress: ProgressCallback | None, completed: int, total: int
) -> None:
    if on_progress is None:
        return
    result = on_progress(round(completed / total * 100))
    if inspect.isawaitable(result):
        await result
