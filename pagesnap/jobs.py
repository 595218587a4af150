"""Job orchestration: validation, state transitions, capture, hand-off."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List
from uuid import uuid4

from pagesnap import metrics
from pagesnap.capture import CaptureResult, cleanup_stale_temp_files, execute_capture
from pagesnap.errors import (
    CaptureError,
    JobAccessError,
    JobNotFoundError,
    JobStateError,
    PersistenceError,
    normalize_error_message,
)
from pagesnap.renderer import RendererController
from pagesnap.schemas import (
    ArtifactDescriptor,
    CaptureJob,
    CaptureRequest,
    JobPage,
    JobStatus,
    ProcessOutcome,
    UsageSummary,
)
from pagesnap.settings import Settings, settings as global_settings
from pagesnap.storage import ObjectStorage
from pagesnap.store import Store, build_store
from pagesnap.url_safety import UrlSafetyValidator, build_validator

LOGGER = logging.getLogger(__name__)

CaptureRunner = Callable[..., Awaitable[CaptureResult]]

USAGE_URL_CAPTURE = "url_capture"
CANCELLED_MESSAGE = "Capture was cancelled"
_EVENT_HISTORY_LIMIT = 100


@dataclass(slots=True)
class MaintenanceReport:
    temp_files_removed: int
    stuck_jobs_failed: int
    event_logs_pruned: int = 0


class JobManager:
    """Drives capture jobs through pending -> processing -> completed/failed.

    The manager is the only writer of job status. Claiming a job is a single
    conditional update in the store, so two concurrent ``process_job`` calls
    for the same job cannot both run the pipeline.
    """

    def __init__(
        self,
        *,
        store: Store | None = None,
        renderer: RendererController | None = None,
        storage: ObjectStorage | None = None,
        validator: UrlSafetyValidator | None = None,
        runner: CaptureRunner | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or global_settings
        self.store = store or build_store()
        self.renderer = renderer or RendererController(self.settings.browser)
        self.storage = storage or ObjectStorage(self.settings.cloud)
        self.validator = validator or build_validator(self.settings.security.blocklist_path)
        self._runner = runner or execute_capture
        self._active: Dict[str, asyncio.Task[Any] | None] = {}
        self._subscribers: Dict[str, List[asyncio.Queue[dict[str, Any]]]] = {}
        self._event_logs: Dict[str, List[dict[str, Any]]] = {}
        self._event_sequences: Dict[str, int] = {}
        self._finished_at: Dict[str, datetime] = {}
        self._watchdog_task: asyncio.Task[None] | None = None
        self._shutdown = False

    async def create_job(self, owner_id: str, request: CaptureRequest) -> CaptureJob:
        url = self.validator.validate(request.url)
        job = await asyncio.to_thread(
            self.store.create_job,
            job_id=uuid4().hex,
            owner_id=owner_id,
            source_url=url,
            options=request.options.model_dump(mode="json"),
        )
        LOGGER.info("Created capture job %s for %s (owner=%s)", job.id, url, owner_id)
        self._emit(job.id, JobStatus.PENDING)
        return job

    async def process_job(self, job_id: str, *, owner_id: str | None = None) -> ProcessOutcome:
        """Claim a pending job, run the capture and record exactly one terminal state."""

        claimed = await asyncio.to_thread(self.store.claim_job, job_id, owner_id=owner_id)
        if not claimed:
            await self._raise_claim_failure(job_id, owner_id)
        job = await asyncio.to_thread(self.store.find_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)

        self._active[job_id] = asyncio.current_task()
        self._emit(job_id, JobStatus.PROCESSING)
        LOGGER.info("Processing capture job %s: %s", job_id, job.source_url)
        try:
            return await self._drive(job)
        finally:
            self._active.pop(job_id, None)

    async def capture_direct(self, request: CaptureRequest) -> ArtifactDescriptor:
        """Validate and capture without creating a job or usage record."""

        url = self.validator.validate(request.url)
        result = await self._runner(url, request.options, renderer=self.renderer, settings=self.settings)
        return result.artifact

    async def get_job(self, job_id: str, *, owner_id: str | None = None) -> CaptureJob:
        job = await asyncio.to_thread(self.store.find_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if owner_id is not None and job.owner_id != owner_id:
            raise JobAccessError(job_id)
        return job

    async def list_jobs(
        self,
        owner_id: str,
        *,
        page: int = 1,
        limit: int = 10,
        status: JobStatus | None = None,
    ) -> JobPage:
        return await asyncio.to_thread(self.store.list_jobs, owner_id, page=page, limit=limit, status=status)

    async def delete_job(self, job_id: str, *, owner_id: str | None = None) -> CaptureJob:
        """Remove the job record plus its local file and remote object."""

        job = await self.get_job(job_id, owner_id=owner_id)
        if job.status is JobStatus.PROCESSING:
            raise JobStateError(job_id, job.status.value)
        artifact = job.result
        if artifact is not None:
            if artifact.local_path:
                _remove_local(Path(artifact.local_path))
            if artifact.remote_key and self.storage.enabled:
                await self.storage.delete_object(artifact.remote_key)
        await asyncio.to_thread(self.store.delete_job, job_id)
        LOGGER.info("Deleted capture job %s", job_id)
        self._forget(job_id)
        return job

    async def usage_analytics(
        self,
        owner_id: str,
        *,
        start_date: date | None = None,
        end_date: date | None = None,
    ) -> UsageSummary:
        """Usage summary; ``end_date`` is inclusive through the end of that day (UTC)."""

        start = datetime.combine(start_date, time.min, tzinfo=timezone.utc) if start_date else None
        end = datetime.combine(end_date, time.max, tzinfo=timezone.utc) if end_date else None
        return await asyncio.to_thread(self.store.query_usage, owner_id, start=start, end=end)

    def subscribe(self, job_id: str) -> asyncio.Queue[dict[str, Any]]:
        queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()
        self._subscribers.setdefault(job_id, []).append(queue)
        return queue

    def unsubscribe(self, job_id: str, queue: asyncio.Queue[dict[str, Any]]) -> None:
        subscribers = self._subscribers.get(job_id)
        if not subscribers:
            return
        if queue in subscribers:
            subscribers.remove(queue)
        if not subscribers:
            self._subscribers.pop(job_id, None)

    def get_events(self, job_id: str, *, min_sequence: int | None = None) -> List[dict[str, Any]]:
        events = self._event_logs.get(job_id, [])
        if min_sequence is None:
            return [event.copy() for event in events]
        return [event.copy() for event in events if event["sequence"] >= min_sequence]

    def is_running(self, job_id: str) -> bool:
        return job_id in self._active

    def start_watchdog(self) -> None:
        """Start the background task that sweeps temp files and stuck jobs."""
        if self._watchdog_task is None or self._watchdog_task.done():
            self._shutdown = False
            self._watchdog_task = asyncio.create_task(self._watchdog_loop())
            LOGGER.info(
                "Job watchdog started (interval=%ds, stuck timeout=%ds)",
                self.settings.jobs.watchdog_interval_seconds,
                self.settings.jobs.stuck_job_timeout_seconds,
            )

    async def stop_watchdog(self) -> None:
        self._shutdown = True
        if self._watchdog_task and not self._watchdog_task.done():
            self._watchdog_task.cancel()
            try:
                await self._watchdog_task
            except asyncio.CancelledError:
                pass
            LOGGER.info("Job watchdog stopped")

    async def run_maintenance(self, *, now: datetime | None = None) -> MaintenanceReport:
        """Delete stale temp captures and fail jobs abandoned in processing."""

        now = now or datetime.now(timezone.utc)
        storage_cfg = self.settings.storage
        removed = await asyncio.to_thread(
            cleanup_stale_temp_files,
            storage_cfg.temp_dir,
            storage_cfg.temp_max_age_seconds,
            now=now.timestamp(),
        )
        timeout_seconds = self.settings.jobs.stuck_job_timeout_seconds
        cutoff = now - timedelta(seconds=timeout_seconds)
        stuck = await asyncio.to_thread(self.store.find_stuck_jobs, started_before=cutoff)
        failed = 0
        for job in stuck:
            if job.id in self._active:
                continue
            message = f"Capture did not finish within {timeout_seconds}s"
            if await self._mark_failed(job.id, message):
                LOGGER.error("Job %s was stuck in processing; marked failed", job.id)
                failed += 1
        pruned = self._prune_event_state(now)
        return MaintenanceReport(temp_files_removed=removed, stuck_jobs_failed=failed, event_logs_pruned=pruned)

    async def shutdown(self) -> None:
        await self.stop_watchdog()
        await self.renderer.dispose()

    async def _watchdog_loop(self) -> None:
        interval = self.settings.jobs.watchdog_interval_seconds
        while not self._shutdown:
            try:
                await asyncio.sleep(interval)
                report = await self.run_maintenance()
                if report.temp_files_removed or report.stuck_jobs_failed or report.event_logs_pruned:
                    LOGGER.info(
                        "Maintenance removed %d temp files, failed %d stuck jobs and pruned %d event logs",
                        report.temp_files_removed,
                        report.stuck_jobs_failed,
                        report.event_logs_pruned,
                    )
            except Exception as exc:  # pragma: no cover
                LOGGER.exception("Watchdog loop error: %s", exc)

    async def _drive(self, job: CaptureJob) -> ProcessOutcome:
        result: CaptureResult | None = None
        try:
            result = await self._runner(job.source_url, job.options, renderer=self.renderer, settings=self.settings)
            artifact = await self._relocate(job, result.artifact)
        except asyncio.CancelledError:
            LOGGER.warning("Capture job %s cancelled", job.id)
            if result is not None and result.artifact.local_path:
                _remove_local(Path(result.artifact.local_path))
            await self._mark_failed(job.id, CANCELLED_MESSAGE)
            raise
        except CaptureError as exc:
            message = normalize_error_message(exc, debug=self.settings.debug)
            LOGGER.warning("Capture job %s failed: %s", job.id, exc)
            await self._mark_failed(job.id, message)
            return ProcessOutcome(success=False, job_id=job.id, error=message)
        except Exception as exc:
            message = normalize_error_message(exc, debug=self.settings.debug)
            LOGGER.exception("Capture job %s failed unexpectedly", job.id)
            await self._mark_failed(job.id, message)
            return ProcessOutcome(success=False, job_id=job.id, error=message)

        try:
            finished = await asyncio.shield(
                asyncio.to_thread(
                    self.store.finish_job,
                    job.id,
                    status=JobStatus.COMPLETED,
                    result=artifact.model_dump(mode="json"),
                )
            )
        except PersistenceError as exc:
            LOGGER.error("Capture job %s succeeded but its result could not be saved: %s", job.id, exc)
            message = normalize_error_message(exc, debug=self.settings.debug)
            await self._mark_failed(job.id, message)
            return ProcessOutcome(success=False, job_id=job.id, artifact=artifact, error=message)
        if not finished:
            LOGGER.warning("Capture job %s was finalized elsewhere; keeping artifact %s", job.id, artifact.file_name)
            return ProcessOutcome(
                success=False,
                job_id=job.id,
                artifact=artifact,
                error="Job was finalized before the capture completed",
            )

        metrics.record_job_completion(JobStatus.COMPLETED.value)
        self._emit(job.id, JobStatus.COMPLETED, url=artifact.url)
        await self._record_usage(job, artifact)
        LOGGER.info("Capture job %s completed: %s", job.id, artifact.url)
        return ProcessOutcome(success=True, job_id=job.id, artifact=artifact)

    async def _relocate(self, job: CaptureJob, artifact: ArtifactDescriptor) -> ArtifactDescriptor:
        if not self.storage.enabled or not artifact.local_path:
            return artifact
        key = self.storage.build_key(job.owner_id, artifact.format)
        upload = await self.storage.upload_and_relocate(
            Path(artifact.local_path),
            key,
            metadata=_upload_metadata(job, artifact),
            cache_control=self.settings.cloud.cache_control,
        )
        if not upload.success:
            LOGGER.warning("Cloud upload failed for job %s, keeping local file: %s", job.id, upload.error)
            return artifact
        return artifact.model_copy(
            update={
                "remote_url": upload.url,
                "remote_key": upload.key,
                "remote_etag": upload.etag,
                "stored_remotely": True,
                "local_path": None,
                "local_url": None,
            }
        )

    async def _mark_failed(self, job_id: str, message: str) -> bool:
        try:
            updated = await asyncio.shield(
                asyncio.to_thread(
                    self.store.finish_job,
                    job_id,
                    status=JobStatus.FAILED,
                    error_message=message,
                )
            )
        except PersistenceError:
            LOGGER.exception("Could not mark job %s as failed", job_id)
            return False
        if updated:
            metrics.record_job_completion(JobStatus.FAILED.value)
            self._emit(job_id, JobStatus.FAILED, error=message)
        return updated

    async def _record_usage(self, job: CaptureJob, artifact: ArtifactDescriptor) -> None:
        try:
            await asyncio.to_thread(
                self.store.append_usage,
                job.owner_id,
                USAGE_URL_CAPTURE,
                job_id=job.id,
                details={
                    "url": job.source_url,
                    "format": artifact.format.value,
                    "dimensions": f"{artifact.width}x{artifact.height}",
                    "file_size": artifact.byte_size,
                    "stored_remotely": artifact.stored_remotely,
                },
            )
        except PersistenceError:
            LOGGER.exception("Usage record for job %s was not written", job.id)

    async def _raise_claim_failure(self, job_id: str, owner_id: str | None) -> None:
        job = await asyncio.to_thread(self.store.find_job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if owner_id is not None and job.owner_id != owner_id:
            raise JobAccessError(job_id)
        raise JobStateError(job_id, job.status.value)

    def _emit(self, job_id: str, status: JobStatus, **data: Any) -> None:
        sequence = self._event_sequences.get(job_id, 0)
        entry: dict[str, Any] = {
            "job_id": job_id,
            "status": status.value,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "sequence": sequence,
        }
        entry.update(data)
        self._event_sequences[job_id] = sequence + 1
        if status.is_terminal:
            self._finished_at[job_id] = datetime.now(timezone.utc)
        log = self._event_logs.setdefault(job_id, [])
        log.append(entry)
        if len(log) > _EVENT_HISTORY_LIMIT:
            del log[: len(log) - _EVENT_HISTORY_LIMIT]
        for queue in list(self._subscribers.get(job_id, [])):
            queue.put_nowait(entry.copy())

    def _forget(self, job_id: str) -> None:
        self._event_logs.pop(job_id, None)
        self._event_sequences.pop(job_id, None)
        self._finished_at.pop(job_id, None)
        self._subscribers.pop(job_id, None)

    def _prune_event_state(self, now: datetime) -> int:
        """Drop event history for jobs finished before the retention window."""

        cutoff = now - timedelta(seconds=self.settings.jobs.event_retention_seconds)
        expired = [
            job_id
            for job_id, finished_at in self._finished_at.items()
            if finished_at < cutoff and job_id not in self._active and not self._subscribers.get(job_id)
        ]
        for job_id in expired:
            self._forget(job_id)
        return len(expired)


def _upload_metadata(job: CaptureJob, artifact: ArtifactDescriptor) -> dict[str, str]:
    return {
        "owner-id": job.owner_id,
        "job-id": job.id,
        "original-url": job.source_url,
        "capture-date": datetime.now(timezone.utc).isoformat(),
        "dimensions": f"{artifact.width}x{artifact.height}",
        "format": artifact.format.value,
    }


def _remove_local(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        LOGGER.warning("Failed to remove artifact %s: %s", path, exc)


__all__ = [
    "CaptureRunner",
    "JobManager",
    "MaintenanceReport",
    "USAGE_URL_CAPTURE",
]
