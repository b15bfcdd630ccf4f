"""Finds a job run's artifact files and scans their content.

A job run's stored URL points into the CI results bucket. The object prefix
after the bucket root is listed (bounded by count and time) and each matching
file is optionally streamed through a content matcher. A failing file never
aborts the others; its error is recorded next to whatever partial matches
were produced.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import AsyncExitStack, aclosing

from sqlalchemy.ext.asyncio import AsyncSession

from src.clients.blob_store import BlobStore
from src.config import settings
from src.handlers.content_matchers import ContentMatcher, ContentMatchError
from src.models.job import JobRun as JobRunModel
from src.schemas.artifacts import JobArtifactsResponse, JobRun, JobRunArtifact

logger = logging.getLogger(__name__)


def artifact_url(path: str) -> str:
    return f"{settings.artifact_base_url.rstrip('/')}/{settings.gcs_bucket_root}/{path}"


def job_run_prefix(job_run_id: int, url: str) -> str:
    """Return the bucket object prefix for a job run's artifact URL."""
    if not url:
        raise ValueError(f"job run {job_run_id} has no URL")
    marker = f"/{settings.gcs_bucket_root}/"
    start = url.find(marker)
    if start == -1:
        raise ValueError(
            f"job run {job_run_id} URL {url} does not include bucket root {settings.gcs_bucket_root!r}"
        )
    prefix = url[start + len(marker):]
    if not prefix.endswith("/"):
        prefix += "/"
    return prefix


class JobArtifactQuery:
    """Artifact listing and content scanning for one or more job runs."""

    def __init__(
        self,
        db: AsyncSession,
        blob_store: BlobStore,
        path_glob: str = "",
        matcher: ContentMatcher | None = None,
        max_files: int | None = None,
        scan_concurrency: int | None = None,
    ) -> None:
        self._db = db
        self._blob_store = blob_store
        self.path_glob = path_glob
        self.matcher = matcher
        self._max_files = max_files or settings.max_job_files_to_scan
        self._list_timeout = settings.artifact_list_timeout_seconds
        self._read_timeout = settings.artifact_read_timeout_seconds
        # Shared by every file of every run so the bucket sees a bounded number of reads.
        self._scan_slots = asyncio.Semaphore(scan_concurrency or settings.artifact_scan_concurrency)

    async def get_job_run(self, job_run_id: int) -> tuple[str, JobRun]:
        job_run = JobRun(id=str(job_run_id))
        model = await self._db.get(JobRunModel, job_run_id)
        if model is None:
            raise LookupError(f"job run {job_run_id} not found")
        job_run.job_name = model.job.name if model.job is not None else ""
        job_run.url = model.url or ""
        return job_run_prefix(job_run_id, job_run.url), job_run

    async def get_job_run_files(self, prefix: str) -> tuple[list[str], bool]:
        """List object names under ``prefix``; the flag is set when the cap cut the list short."""
        files: list[str] = []
        truncated = False
        match_glob = prefix + self.path_glob if self.path_glob else ""

        async def _list() -> None:
            nonlocal truncated
            async with aclosing(self._blob_store.list_objects(prefix, match_glob)) as names:
                async for name in names:
                    if len(files) >= self._max_files:
                        truncated = True
                        break
                    files.append(name)

        await asyncio.wait_for(_list(), self._list_timeout)
        return files, truncated

    def _timeout_message(self, path: str) -> str:
        return f"timed out after {self._read_timeout:g}s scanning {path}"

    async def _read_lines(
        self, lines: AsyncIterator[str], deadline: float, path: str
    ) -> AsyncIterator[str]:
        """Yield ``lines`` until ``deadline``, then raise TimeoutError into the matcher."""
        iterator = aiter(lines)
        while True:
            try:
                async with asyncio.timeout_at(deadline):
                    line = await anext(iterator)
            except StopAsyncIteration:
                return
            except TimeoutError:
                raise TimeoutError(self._timeout_message(path)) from None
            yield line

    async def _match_file(self, path: str, artifact: JobRunArtifact) -> None:
        # The matcher sees the deadline as a stream failure and keeps its partial matches.
        deadline = asyncio.get_running_loop().time() + self._read_timeout
        async with AsyncExitStack() as stack:
            try:
                async with asyncio.timeout_at(deadline):
                    lines = await stack.enter_async_context(self._blob_store.open_lines(path))
            except TimeoutError:
                raise TimeoutError(self._timeout_message(path)) from None
            async with aclosing(self._read_lines(lines, deadline, path)) as bounded:
                artifact.matched_content = await self.matcher.get_matches(bounded)

    async def get_file_content_matches(self, job_run_id: int, path: str) -> JobRunArtifact:
        artifact = JobRunArtifact(job_run_id=str(job_run_id), artifact_url=artifact_url(path))
        if self.matcher is None:
            return artifact

        async with self._scan_slots:
            try:
                await self._match_file(path, artifact)
            except ContentMatchError as exc:
                # Incomplete matches are still worth returning.
                artifact.matched_content = exc.partial
                artifact.error = str(exc)
            except Exception as exc:
                artifact.error = str(exc) or exc.__class__.__name__
        if artifact.error:
            logger.warning("Artifact %s of job run %d: %s", path, job_run_id, artifact.error)
        return artifact

    async def scan_job_run(self, job_run_id: int, prefix: str, job_run: JobRun) -> JobRun:
        files, truncated = await self.get_job_run_files(prefix)
        job_run.artifact_list_truncated = truncated
        job_run.artifacts = list(
            await asyncio.gather(*(self.get_file_content_matches(job_run_id, f) for f in files))
        )
        return job_run

    async def query_job_artifacts(self, job_run_id: int) -> JobRun:
        """Resolve, list and scan one job run. Resolution and listing errors raise."""
        prefix, job_run = await self.get_job_run(job_run_id)
        return await self.scan_job_run(job_run_id, prefix, job_run)

    async def query_job_runs(self, job_run_ids: list[int]) -> JobArtifactsResponse:
        """Scan several job runs; one run's failure is reported on that run only."""
        response = JobArtifactsResponse()
        job_runs: dict[int, JobRun] = {}
        prefixes: dict[int, str] = {}
        # The session is not shared across tasks, so resolve runs one at a time.
        for job_run_id in job_run_ids:
            try:
                prefixes[job_run_id], job_runs[job_run_id] = await self.get_job_run(job_run_id)
            except (LookupError, ValueError) as exc:
                logger.error("Could not query bucket path of job run %d: %s", job_run_id, exc)
                job_runs[job_run_id] = JobRun(id=str(job_run_id), error=str(exc))
                response.errors.append(f"job_run:{job_run_id}: {exc}")

        scanned = list(prefixes)
        results = await asyncio.gather(
            *(self.scan_job_run(i, prefixes[i], job_runs[i]) for i in scanned),
            return_exceptions=True,
        )
        for job_run_id, result in zip(scanned, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                message = str(result) or result.__class__.__name__
                logger.error("Could not list artifact files of job run %d: %s", job_run_id, message)
                job_runs[job_run_id].error = message
                response.errors.append(f"job_run:{job_run_id}: {message}")

        response.job_runs = list(job_runs.values())
        return response
