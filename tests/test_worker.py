"""
Tests for the conversion worker message protocol.
"""

import asyncio
import logging

import anyio
import pytest

from pdf2html_backend.configuration import make_runtime_config
from pdf2html_backend.errors import PayloadTooLarge
from pdf2html_backend.job_store import InMemoryJobStore
from pdf2html_backend.models import JobStatus, JobType, WorkItem
from pdf2html_backend.work_queue import encode_work_item
from pdf2html_backend.worker import ConversionWorker, drain, run_worker

pytestmark = pytest.mark.anyio


class FlakyStore(InMemoryJobStore):
    """Fails to record completion ``failures`` times."""

    def __init__(self, failures):
        super().__init__()
        self.failures = failures
        self.history = []

    async def transition(self, job_id, status, **fields):
        if JobStatus(status) == JobStatus.COMPLETED:
            if self.failures > 0:
                self.failures -= 1
                raise ConnectionError("store unavailable")
        updated = await super().transition(job_id, status, **fields)
        if updated is not None:
            self.history.append(updated.status)
        return updated


async def submit_url(manager, url="https://example.com/doc.pdf"):
    return (await manager.submit_from_url(url)).job_id


class TestConversion:
    async def test_status_sequence(self, manager, queue, fetcher, settings, storage, ocr):
        store = FlakyStore(failures=0)
        manager.store = store
        worker = ConversionWorker(store=store, storage=storage, ocr=ocr, fetcher=fetcher, settings=settings)

        job_id = await submit_url(manager)
        assert (await store.get(job_id)).status == "pending"

        await drain(queue, worker)

        assert store.history == ["processing", "completed"]
        record = await store.get(job_id)
        assert record.ocr_result.pages[0].markdown.startswith("# Quarterly Report")
        assert storage.objects[(storage.bucket, f"output/{job_id}/doc.md")].startswith(b"# Quarterly Report")

    async def test_fetch_failure_recorded(self, manager, queue, worker, store, fetcher):
        fetcher.responses["https://example.com/big.pdf"] = PayloadTooLarge("Download exceeds the 100 byte limit")
        job_id = await submit_url(manager, "https://example.com/big.pdf")

        await drain(queue, worker)

        record = await store.get(job_id)
        assert record.status == "failed"
        assert record.error == "PayloadTooLarge: Download exceeds the 100 byte limit"
        assert queue.acked and not queue.rejected

    async def test_missing_upload_recorded(self, manager, queue, worker, store):
        await manager.submit_from_upload("job-7", "uploads/job-7/missing.pdf", "missing.pdf")

        await drain(queue, worker)

        record = await store.get("job-7")
        assert record.status == "failed"
        assert record.error.startswith("ConversionFailure: Object not found")

    async def test_job_deadline(self, manager, queue, store, storage, fetcher, ocr_result):
        class SlowOcr:
            async def convert(self, pdf_bytes, filename):
                await anyio.sleep(5)
                return ocr_result

        settings = make_runtime_config({"worker": {"job_timeout_seconds": 0.05}})
        worker = ConversionWorker(store=store, storage=storage, ocr=SlowOcr(), fetcher=fetcher, settings=settings)
        job_id = await submit_url(manager)

        with anyio.fail_after(3):
            await drain(queue, worker)

        record = await store.get(job_id)
        assert record.status == "failed"
        assert record.error.startswith("TimeoutError")

    async def test_refused_completion_is_not_reported(self, manager, queue, store, storage, fetcher, ocr_result, caplog):
        class RacingOcr:
            async def convert(self, pdf_bytes, filename):
                await store.transition(job_id, "failed", error="RuntimeError: failed elsewhere")
                return ocr_result

        worker = ConversionWorker(
            store=store, storage=storage, ocr=RacingOcr(), fetcher=fetcher, settings=make_runtime_config()
        )
        job_id = await submit_url(manager)

        with caplog.at_level(logging.INFO, logger="pdf2html_backend.worker"):
            await drain(queue, worker)

        record = await store.get(job_id)
        assert record.status == "failed"
        assert record.error == "RuntimeError: failed elsewhere"
        assert queue.acked
        assert "completion not recorded" in caplog.text
        assert f"Job {job_id} completed" not in caplog.text


class TestDeliveryHandling:
    async def test_poison_messages_do_not_block_queue(self, manager, queue, worker, store):
        queue.publish_raw(b"not json at all")
        queue.publish_raw(b'{"type": "url", "sourceUrl": "https://example.com/a.pdf"}')
        job_id = await submit_url(manager)

        assert await drain(queue, worker) == 3

        assert len(queue.rejected) == 2
        assert len(queue.acked) == 1
        assert (await store.get(job_id)).status == "completed"

    async def test_unknown_job_rejected(self, queue, worker, store):
        item = WorkItem(job_id="ghost", type=JobType.URL, source_url="https://example.com/doc.pdf")
        await queue.publish(item)

        await drain(queue, worker)

        assert queue.rejected == [encode_work_item(item)]
        assert await store.get("ghost") is None

    async def test_duplicate_delivery_is_acked_without_reprocessing(self, manager, queue, worker, store, ocr):
        job_id = await submit_url(manager)
        await drain(queue, worker)
        completed = await store.get(job_id)

        await queue.publish(WorkItem(job_id=job_id, type=JobType.URL, source_url="https://example.com/doc.pdf"))
        await drain(queue, worker)

        assert len(ocr.calls) == 1
        assert len(queue.acked) == 2
        assert await store.get(job_id) == completed

    async def test_store_outage_requeues_once(self, manager, queue, fetcher, settings, storage, ocr):
        store = FlakyStore(failures=1)
        manager.store = store
        worker = ConversionWorker(store=store, storage=storage, ocr=ocr, fetcher=fetcher, settings=settings)
        job_id = await submit_url(manager)

        assert await drain(queue, worker) == 2

        assert (await store.get(job_id)).status == "completed"
        assert len(queue.acked) == 1
        assert queue.rejected == []
        assert len(ocr.calls) == 2

    async def test_persistent_store_outage_drops_redelivery(self, manager, queue, fetcher, settings, storage, ocr):
        store = FlakyStore(failures=10)
        manager.store = store
        worker = ConversionWorker(store=store, storage=storage, ocr=ocr, fetcher=fetcher, settings=settings)
        job_id = await submit_url(manager)

        assert await drain(queue, worker) == 2

        assert len(queue.rejected) == 1
        assert queue.acked == []
        assert (await store.get(job_id)).status == "processing"


class TestRunWorker:
    async def test_one_delivery_in_flight_at_a_time(self, manager, queue, store, storage, fetcher, settings, ocr_result):
        observed = []

        class RecordingOcr:
            async def convert(self, pdf_bytes, filename):
                observed.append(queue.in_flight)
                await anyio.sleep(0.01)
                return ocr_result

        worker = ConversionWorker(store=store, storage=storage, ocr=RecordingOcr(), fetcher=fetcher, settings=settings)
        job_ids = [await submit_url(manager, f"https://example.com/{n}.pdf") for n in range(3)]

        stop_event = asyncio.Event()
        with anyio.fail_after(5):
            task = asyncio.create_task(run_worker(queue, worker, stop_event, requeue_delay=0))
            while len(queue.acked) < 3:
                await anyio.sleep(0.01)
            stop_event.set()
            await task

        assert observed == [1, 1, 1]
        assert queue.max_in_flight == 1
        for job_id in job_ids:
            assert (await store.get(job_id)).status == "completed"

    async def test_loop_survives_poison_and_failures(self, manager, queue, worker, store, ocr):
        queue.publish_raw(b"\x00\x01")
        job_id = await submit_url(manager)

        stop_event = asyncio.Event()
        with anyio.fail_after(5):
            task = asyncio.create_task(run_worker(queue, worker, stop_event, requeue_delay=0))
            while not queue.acked:
                await anyio.sleep(0.01)
            stop_event.set()
            await task

        assert len(queue.rejected) == 1
        assert (await store.get(job_id)).status == "completed"
