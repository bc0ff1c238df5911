"""
Client-side job tracking for the conversion API.

``JobPoller`` submits jobs, polls their status until they finish and keeps a
local snapshot of the jobs it tracks, so polling can resume after a restart.
Tracked jobs move through ``idle -> submitting -> polling -> done | failed``.

Example:
    >>> async with httpx.AsyncClient(base_url="http://localhost:3001/api/v1") as http:
    ...     poller = JobPoller(http, JsonFileSnapshotStore(Path("jobs.json")))
    ...     job = await poller.submit_url("https://example.com/report.pdf")
    ...     job = await poller.poll(job.job_id)
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

import anyio
import httpx

from .configuration import Settings
from .models import TERMINAL_STATUSES, JobStatus, PresignedUpload, utcnow

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"


class PollState(str, Enum):
    IDLE = "idle"
    SUBMITTING = "submitting"
    POLLING = "polling"
    DONE = "done"
    FAILED = "failed"


@dataclass
class TrackedJob:
    """Local view of a server-side job."""

    job_id: str
    state: PollState = PollState.IDLE
    source: Optional[str] = None
    status: Optional[str] = None
    output_url: Optional[str] = None
    error: Optional[str] = None
    updated_at: str = field(default_factory=lambda: utcnow().isoformat())

    @property
    def finished(self) -> bool:
        return self.state in (PollState.DONE, PollState.FAILED)

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data["state"] = self.state.value
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TrackedJob":
        values = dict(data)
        values["state"] = PollState(values.get("state", PollState.IDLE.value))
        return cls(**values)


class SnapshotStore(Protocol):
    def load(self) -> Dict[str, TrackedJob]:
        ...

    def save(self, jobs: Dict[str, TrackedJob]) -> None:
        ...


class JsonFileSnapshotStore:
    """
    Stores tracked jobs as ``{"jobs": [...]}`` in a JSON file.

    Writes go to a temporary file that replaces the snapshot, so a crash
    mid-write leaves the previous snapshot intact. An unreadable snapshot is
    treated as empty.
    """

    def __init__(self, path: Path) -> None:
        self.path = Path(path)

    def load(self) -> Dict[str, TrackedJob]:
        if not self.path.exists():
            return {}
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
            jobs = [TrackedJob.from_dict(item) for item in payload.get("jobs", [])]
        except (ValueError, TypeError, AttributeError) as exc:
            logger.warning("Ignoring unreadable job snapshot %s: %s", self.path, exc)
            return {}
        return {job.job_id: job for job in jobs}

    def save(self, jobs: Dict[str, TrackedJob]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"jobs": [job.to_dict() for job in jobs.values()]}
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        tmp_path.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        os.replace(tmp_path, self.path)


class JobPoller:
    """
    Submits conversion jobs and polls them to completion.

    Args:
        client: HTTP client whose ``base_url`` points at the API prefix
        store: Snapshot persistence for tracked jobs
        interval: Seconds between status requests
        sleep: Awaitable used between polls (``asyncio.sleep`` by default)
        upload_client: HTTP client for the presigned PUT; a fresh client is
            used when omitted
    """

    def __init__(
        self,
        client: httpx.AsyncClient,
        store: SnapshotStore,
        interval: float = 2.0,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        upload_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.client = client
        self.store = store
        self.interval = interval
        self._sleep = sleep
        self.upload_client = upload_client
        self.jobs: Dict[str, TrackedJob] = store.load()
        self._cancelled: set[str] = set()

    def _track(self, job: TrackedJob) -> TrackedJob:
        job.updated_at = utcnow().isoformat()
        if job.job_id not in self._cancelled:
            self.jobs[job.job_id] = job
            self.store.save(self.jobs)
        return job

    async def submit_url(self, url: str) -> TrackedJob:
        """
        Start a URL conversion and track the new job.

        Raises:
            httpx.HTTPStatusError: If the API rejects the URL
        """
        response = await self.client.post("/convert/url", json={"url": url})
        response.raise_for_status()
        summary = response.json()
        return self._track(
            TrackedJob(job_id=summary["jobId"], state=PollState.POLLING, source=url, status=summary["status"])
        )

    async def submit_upload(self, path: Path) -> TrackedJob:
        """
        Upload a local PDF through a presigned URL and start its conversion.

        Raises:
            httpx.HTTPError: If any of the three requests fails; the job is
                tracked as failed when the failure happens after the job id
                was allocated
            OSError: If the file cannot be read
        """
        path = Path(path)
        response = await self.client.post(
            "/upload/presigned-url",
            json={"filename": path.name, "contentType": PDF_CONTENT_TYPE},
        )
        response.raise_for_status()
        presigned = PresignedUpload.model_validate(response.json())

        job = self._track(TrackedJob(job_id=presigned.job_id, state=PollState.SUBMITTING, source=str(path)))
        try:
            data = await anyio.to_thread.run_sync(path.read_bytes)
            await self._put(presigned.presigned_url, data)
            response = await self.client.post(
                "/convert/upload",
                json={"jobId": presigned.job_id, "key": presigned.key, "filename": path.name},
            )
            response.raise_for_status()
        except (httpx.HTTPError, OSError) as exc:
            job.state = PollState.FAILED
            job.error = str(exc) or type(exc).__name__
            self._track(job)
            raise

        job.state = PollState.POLLING
        job.status = response.json()["status"]
        return self._track(job)

    async def _put(self, url: str, data: bytes) -> None:
        headers = {"Content-Type": PDF_CONTENT_TYPE}
        if self.upload_client is not None:
            response = await self.upload_client.put(url, content=data, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=60) as upload_client:
                response = await upload_client.put(url, content=data, headers=headers)
        response.raise_for_status()

    def _apply(self, job: TrackedJob, record: Dict[str, Any]) -> None:
        job.status = record.get("status")
        if job.status == JobStatus.COMPLETED.value:
            job.state = PollState.DONE
            job.output_url = record.get("outputUrl")
        elif job.status == JobStatus.FAILED.value:
            job.state = PollState.FAILED
            job.error = record.get("error")
        else:
            job.state = PollState.POLLING

    async def poll(self, job_id: str) -> TrackedJob:
        """
        Poll a job until it is completed or failed, or until it is cancelled.

        Transient HTTP errors are logged and polling continues. A 404 means
        the server no longer knows the job, so it is marked failed locally.
        """
        job = self.jobs.get(job_id) or TrackedJob(job_id=job_id, state=PollState.POLLING)
        while job_id not in self._cancelled:
            try:
                response = await self.client.get(f"/jobs/{job_id}/status")
                if response.status_code == 404:
                    job.state = PollState.FAILED
                    job.error = "Job not found"
                    return self._track(job)
                response.raise_for_status()
                record = response.json()
            except httpx.HTTPError as exc:
                logger.warning("Polling job %s failed: %s", job_id, exc)
            else:
                self._apply(job, record)
                self._track(job)
                if record.get("status") in TERMINAL_STATUSES:
                    logger.info("Job %s finished with status %s", job_id, job.status)
                    return job
            await self._sleep(self.interval)
        logger.info("Stopped polling job %s", job_id)
        return job

    async def resume(self) -> List[TrackedJob]:
        """Poll every tracked job that had not finished when the snapshot was written."""
        pending = [job.job_id for job in self.jobs.values() if not job.finished]
        if pending:
            logger.info("Resuming %d unfinished job(s)", len(pending))
        return list(await asyncio.gather(*(self.poll(job_id) for job_id in pending)))

    def cancel(self, job_id: str) -> None:
        """Stop polling a job and forget it locally; the server-side job is unaffected."""
        self._cancelled.add(job_id)
        if self.jobs.pop(job_id, None) is not None:
            self.store.save(self.jobs)


def build_poller(settings: Settings, client: Optional[httpx.AsyncClient] = None) -> JobPoller:
    client = client or httpx.AsyncClient(base_url=settings.client.base_url, timeout=30)
    return JobPoller(
        client,
        JsonFileSnapshotStore(settings.client.snapshot_path),
        interval=settings.client.poll_interval_seconds,
    )
