"""
Conversion worker.

Consumes work items one at a time and drives each job through
``pending -> processing -> completed | failed``:

1. Decode the message; malformed messages are rejected without touching
   any job record.
2. Skip jobs that are already terminal (duplicate delivery).
3. Fetch the PDF (from the URL or from object storage), run OCR, store the
   Markdown artifact and record the outcome.
4. Acknowledge the message only after the outcome has been written.

Run it as ``python -m pdf2html_backend.worker`` or ``pdf2html-worker``.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from functools import partial
from typing import Optional, Tuple

import anyio

from .configuration import Settings, configure_logging, get_settings
from .errors import PoisonMessage
from .fetcher import PdfFetcher, build_fetcher
from .job_store import JobStore, build_job_store
from .models import TERMINAL_STATUSES, JobRecord, JobStatus, JobType, OcrResult, WorkItem
from .ocr_client import OcrEngine, build_ocr_engine
from .s3_service import S3ObjectStorage, build_storage, parse_locator
from .utils import DEFAULT_FILENAME, describe_failure, output_key
from .work_queue import Delivery, WorkQueue, build_work_queue, parse_work_item

logger = logging.getLogger(__name__)

MARKDOWN_CONTENT_TYPE = "text/markdown; charset=utf-8"


class ConversionWorker:
    """
    Processes single deliveries from the work queue.

    The job record is authoritative: the source to convert is read from the
    record, the message only says which job to work on.
    """

    def __init__(
        self,
        store: JobStore,
        storage: S3ObjectStorage,
        ocr: OcrEngine,
        fetcher: PdfFetcher,
        settings: Settings,
    ) -> None:
        self.store = store
        self.storage = storage
        self.ocr = ocr
        self.fetcher = fetcher
        self.bucket = settings.storage.bucket
        self.max_bytes = settings.fetch.max_bytes
        self.job_timeout_seconds = settings.worker.job_timeout_seconds

    async def handle(self, delivery: Delivery) -> None:
        """
        Process one delivery and settle it.

        Raises:
            Exception: Whatever the job store raised while recording the
                outcome; the delivery is left unsettled in that case
        """
        try:
            item = parse_work_item(delivery.body)
        except PoisonMessage as exc:
            logger.warning("Rejecting poison message: %s", exc)
            await delivery.reject(requeue=False)
            return

        record = await self.store.get(item.job_id)
        if record is None:
            logger.warning("No job record for %s; rejecting message", item.job_id)
            await delivery.reject(requeue=False)
            return
        if record.status in TERMINAL_STATUSES:
            logger.info("Job %s is already %s; skipping duplicate delivery", item.job_id, record.status)
            await delivery.ack()
            return

        await self.process(item)
        await delivery.ack()

    async def process(self, item: WorkItem) -> Optional[JobRecord]:
        """Run the conversion for ``item`` and record its terminal state."""
        started = await self.store.transition(item.job_id, JobStatus.PROCESSING)
        if started is None:
            logger.info("Job %s left the pending state concurrently; not processing", item.job_id)
            return None
        logger.info("Job %s processing", item.job_id)

        try:
            with anyio.fail_after(self.job_timeout_seconds):
                output_url, ocr_result = await self._convert(started, item)
        except TimeoutError:
            reason = f"TimeoutError: conversion exceeded {self.job_timeout_seconds}s"
            logger.warning("Job %s failed: %s", item.job_id, reason)
            return await self.store.transition(item.job_id, JobStatus.FAILED, error=reason)
        except Exception as exc:
            reason = describe_failure(exc)
            logger.warning("Job %s failed: %s", item.job_id, reason, exc_info=True)
            return await self.store.transition(item.job_id, JobStatus.FAILED, error=reason)

        completed = await self.store.transition(
            item.job_id,
            JobStatus.COMPLETED,
            output_url=output_url,
            ocr_result=ocr_result,
        )
        if completed is None:
            logger.warning("Job %s was no longer processing; completion not recorded", item.job_id)
            return None
        logger.info("Job %s completed: %s", item.job_id, output_url)
        return completed

    async def _load_pdf(self, record: JobRecord) -> bytes:
        if record.type == JobType.URL:
            return await self.fetcher.fetch(record.source_url)
        bucket, key = parse_locator(record.source_url)
        return await anyio.to_thread.run_sync(partial(self.storage.get_object, bucket, key, max_bytes=self.max_bytes))

    async def _convert(self, record: JobRecord, item: WorkItem) -> Tuple[str, OcrResult]:
        filename = record.original_filename or item.filename or DEFAULT_FILENAME
        pdf_bytes = await self._load_pdf(record)
        result = await self.ocr.convert(pdf_bytes, filename)

        key = output_key(record.job_id, filename)
        output_url = await anyio.to_thread.run_sync(
            partial(
                self.storage.put_object,
                self.bucket,
                key,
                result.to_markdown().encode("utf-8"),
                MARKDOWN_CONTENT_TYPE,
            )
        )
        return output_url, result


async def handle_safely(worker: ConversionWorker, delivery: Delivery, requeue_delay: float = 0) -> None:
    """
    Handle a delivery without letting its failure escape.

    A delivery whose outcome could not be recorded is requeued once; a
    delivery that was already redelivered is rejected for good.
    """
    try:
        await worker.handle(delivery)
    except Exception:
        requeue = not delivery.redelivered
        logger.exception("Could not record the outcome of a delivery (requeue=%s)", requeue)
        if requeue and requeue_delay:
            await anyio.sleep(requeue_delay)
        try:
            await delivery.reject(requeue=requeue)
        except Exception:
            logger.exception("Failed to reject delivery")


async def drain(queue: WorkQueue, worker: ConversionWorker, requeue_delay: float = 0) -> int:
    """Handle every delivery currently available, then return how many were handled."""
    handled = 0
    while True:
        delivery = await queue.get()
        if delivery is None:
            return handled
        await handle_safely(worker, delivery, requeue_delay)
        handled += 1


async def run_worker(
    queue: WorkQueue,
    worker: ConversionWorker,
    stop_event: asyncio.Event,
    requeue_delay: float = 5,
) -> None:
    """Consume deliveries sequentially until ``stop_event`` is set."""
    logger.info("Worker started")
    async for delivery in queue.consume(stop_event):
        await handle_safely(worker, delivery, requeue_delay)
    logger.info("Worker stopped")


def build_worker(settings: Settings, store: JobStore, storage: S3ObjectStorage) -> ConversionWorker:
    return ConversionWorker(
        store=store,
        storage=storage,
        ocr=build_ocr_engine(settings),
        fetcher=build_fetcher(settings),
        settings=settings,
    )


async def serve(settings: Settings) -> None:
    store = build_job_store(settings)
    queue = build_work_queue(settings)
    storage = build_storage(settings)
    worker = build_worker(settings, store, storage)

    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop_event.set)

    await queue.connect()
    try:
        await run_worker(queue, worker, stop_event, requeue_delay=settings.worker.requeue_delay_seconds)
    finally:
        await queue.close()
        await store.close()


def main() -> None:
    settings = get_settings()
    configure_logging(settings)
    asyncio.run(serve(settings))


if __name__ == "__main__":
    main()
