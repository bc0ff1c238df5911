"""
Job submission and lookup for the PDF conversion pipeline.

This module manages the API side of the job lifecycle:
- Issuing presigned upload URLs for client-side PDF uploads
- Creating job records and publishing work items for the workers
- Reading job status, Markdown results and structured OCR results

The JobManager class provides the core business logic for the API. It does
not convert anything itself; conversion happens in ``worker.py``, which
consumes the work items published here.
"""

from __future__ import annotations

import logging
from functools import partial
from typing import Optional
from uuid import uuid4

import anyio

from .configuration import Settings
from .errors import InvalidRequest, JobNotFound, JobNotReady, NoOutput
from .job_store import JobStore
from .models import (
    CompletedJob,
    JobRecord,
    JobStatus,
    JobSummary,
    JobType,
    OcrResult,
    PendingJob,
    PresignedUpload,
    WorkItem,
    utcnow,
)
from .s3_service import S3ObjectStorage, parse_locator, to_locator
from .utils import DEFAULT_FILENAME, filename_from_url, upload_key, validate_source_url
from .work_queue import WorkQueue

logger = logging.getLogger(__name__)

PDF_CONTENT_TYPE = "application/pdf"
ENQUEUE_FAILED_MESSAGE = "Job could not be queued"


class JobManager:
    """
    Central coordinator for job submission and lookup.

    Submission is two separate writes: the job record goes to the job store
    first, then the work item is published. If publishing fails the record
    is moved to ``failed`` so it never stays pending without a message.

    Attributes:
        store: Authoritative job records
        queue: Work queue consumed by conversion workers
        storage: Object storage for uploads and Markdown artifacts
    """

    def __init__(
        self,
        store: JobStore,
        queue: WorkQueue,
        storage: S3ObjectStorage,
        settings: Settings,
    ) -> None:
        self.store = store
        self.queue = queue
        self.storage = storage
        self.bucket = settings.storage.bucket
        self.presign_expiry_seconds = settings.storage.presign_expiry_seconds
        self.resolve_dns = settings.url_guard.resolve_dns

    async def issue_presigned_upload(self, filename: Optional[str], content_type: Optional[str]) -> PresignedUpload:
        """
        Allocate a job id and a presigned URL the client can PUT a PDF to.

        Args:
            filename: Name of the file being uploaded
            content_type: Must be ``application/pdf``

        Returns:
            PresignedUpload with the job id, URL and object key

        Raises:
            InvalidRequest: If a field is missing or the file is not a PDF
        """
        if not filename or not content_type:
            raise InvalidRequest("Missing filename or contentType")
        if content_type != PDF_CONTENT_TYPE:
            raise InvalidRequest("Only PDF files are supported")

        job_id = str(uuid4())
        key = upload_key(job_id, filename)
        presigned_url = await anyio.to_thread.run_sync(
            partial(
                self.storage.issue_presigned_upload_url,
                self.bucket,
                key,
                content_type,
                expires_in=self.presign_expiry_seconds,
            )
        )
        return PresignedUpload(job_id=job_id, presigned_url=presigned_url, key=key)

    async def submit_from_upload(
        self,
        job_id: Optional[str],
        storage_key: Optional[str],
        filename: Optional[str] = None,
    ) -> JobSummary:
        """
        Register a job for a PDF the client already uploaded.

        Raises:
            InvalidRequest: If ``job_id`` or ``storage_key`` is missing
            JobAlreadyExists: If a record for ``job_id`` exists already
        """
        job_id = (job_id or "").strip()
        storage_key = (storage_key or "").strip()
        if not job_id or not storage_key:
            raise InvalidRequest("Missing jobId or key")

        filename = filename or storage_key.rsplit("/", 1)[-1] or DEFAULT_FILENAME
        item = WorkItem(
            job_id=job_id,
            type=JobType.UPLOAD,
            source_url=to_locator(self.bucket, storage_key),
            filename=filename,
            bucket=self.bucket,
            key=storage_key,
        )
        await self._submit(item, original_filename=filename)
        return JobSummary(job_id=job_id, status=JobStatus.PENDING, message="Conversion job queued successfully")

    async def submit_from_url(self, url: Optional[str]) -> JobSummary:
        """
        Register a job that downloads its PDF from a public URL.

        Raises:
            InvalidURL: If the URL is missing or malformed
            UnsafeURL: If the URL targets a disallowed scheme or internal host
        """
        url = validate_source_url(url, resolve_dns=self.resolve_dns)
        job_id = str(uuid4())
        filename = filename_from_url(url)
        item = WorkItem(job_id=job_id, type=JobType.URL, source_url=url, filename=filename)
        await self._submit(item, original_filename=filename)
        return JobSummary(job_id=job_id, status=JobStatus.PENDING, message="URL conversion job queued successfully")

    async def _submit(self, item: WorkItem, original_filename: Optional[str]) -> None:
        now = utcnow()
        record = PendingJob(
            job_id=item.job_id,
            type=item.type,
            source_url=item.source_url,
            original_filename=original_filename,
            created_at=now,
            updated_at=now,
        )
        await self.store.create(record)
        logger.info("Job %s created (%s)", item.job_id, item.type.value)

        try:
            await self.queue.publish(item)
        except Exception:
            logger.exception("Failed to publish job %s; marking it failed", item.job_id)
            await self.store.transition(item.job_id, JobStatus.FAILED, error=ENQUEUE_FAILED_MESSAGE)
            raise
        logger.info("Job %s queued", item.job_id)

    async def get_status(self, job_id: str) -> JobRecord:
        """
        Raises:
            JobNotFound: If no record exists for ``job_id``
        """
        record = await self.store.get(job_id)
        if record is None:
            raise JobNotFound(job_id)
        return record

    async def _completed(self, job_id: str) -> CompletedJob:
        record = await self.get_status(job_id)
        if record.status != JobStatus.COMPLETED.value:
            raise JobNotReady(job_id, record.status)
        return record

    async def get_result(self, job_id: str) -> str:
        """
        Fetch the Markdown artifact of a completed job.

        Raises:
            JobNotFound: If no record exists for ``job_id``
            JobNotReady: If the job is not completed
            NoOutput: If the job has no readable output reference, or the
                referenced object is missing from storage
        """
        record = await self._completed(job_id)
        if not record.output_url:
            raise NoOutput(job_id)
        try:
            bucket, key = parse_locator(record.output_url)
        except ValueError as exc:
            raise NoOutput(job_id) from exc
        markdown = await anyio.to_thread.run_sync(self.storage.get_text, bucket, key)
        if markdown is None:
            raise NoOutput(job_id)
        return markdown

    async def get_ocr_result(self, job_id: str) -> OcrResult:
        record = await self._completed(job_id)
        if record.ocr_result is None:
            raise NoOutput(job_id)
        return record.ocr_result
