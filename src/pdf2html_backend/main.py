from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager, suppress
from typing import AsyncIterator

import anyio
import uvicorn
from fastapi import APIRouter, Depends, FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse

from .configuration import configure_logging, get_settings
from .errors import InvalidRequest, JobAlreadyExists, JobNotFound, JobNotReady, NoOutput
from .job_manager import JobManager
from .job_store import build_job_store
from .models import (
    HealthStatus,
    JobRecord,
    JobSummary,
    PresignedUpload,
    PresignedUrlRequest,
    UploadConversionRequest,
    UrlConversionRequest,
    utcnow,
)
from .s3_service import build_storage
from .work_queue import build_work_queue
from .worker import build_worker, run_worker

logger = logging.getLogger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    configure_logging(settings)
    store = build_job_store(settings)
    queue = build_work_queue(settings)
    storage = build_storage(settings)

    await anyio.to_thread.run_sync(storage.ensure_bucket)
    await queue.connect()
    app.state.job_manager = JobManager(store=store, queue=queue, storage=storage, settings=settings)

    stop_event = asyncio.Event()
    worker_task = None
    if settings.worker.embedded:
        logger.info("Starting embedded conversion worker")
        worker = build_worker(settings, store, storage)
        worker_task = asyncio.create_task(
            run_worker(queue, worker, stop_event, requeue_delay=settings.worker.requeue_delay_seconds)
        )

    try:
        yield
    finally:
        stop_event.set()
        if worker_task is not None:
            with suppress(asyncio.CancelledError):
                await worker_task
        await queue.close()
        await store.close()


app = FastAPI(title="PDF2HTML API", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.api.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

router = APIRouter(prefix=settings.api.prefix)


def get_job_manager(request: Request) -> JobManager:
    return request.app.state.job_manager


@app.get("/health", response_model=HealthStatus)
def healthcheck() -> HealthStatus:
    return HealthStatus(status="healthy", timestamp=utcnow())


@router.post("/upload/presigned-url", response_model=PresignedUpload)
async def create_presigned_url(
    payload: PresignedUrlRequest,
    manager: JobManager = Depends(get_job_manager),
) -> PresignedUpload:
    try:
        return await manager.issue_presigned_upload(payload.filename, payload.content_type)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error generating presigned URL")
        raise HTTPException(status_code=500, detail="Failed to generate presigned URL") from exc


@router.post("/convert/upload", response_model=JobSummary)
async def convert_upload(
    payload: UploadConversionRequest,
    manager: JobManager = Depends(get_job_manager),
) -> JobSummary:
    try:
        return await manager.submit_from_upload(payload.job_id, payload.key, payload.filename)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except JobAlreadyExists as exc:
        raise HTTPException(status_code=409, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error starting conversion")
        raise HTTPException(status_code=500, detail="Failed to start conversion") from exc


@router.post("/convert/url", response_model=JobSummary)
async def convert_url(
    payload: UrlConversionRequest,
    manager: JobManager = Depends(get_job_manager),
) -> JobSummary:
    try:
        return await manager.submit_from_url(payload.url)
    except InvalidRequest as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error starting URL conversion")
        raise HTTPException(status_code=500, detail="Failed to start URL conversion") from exc


@router.get("/jobs/{job_id}/status", response_model=JobRecord, response_model_exclude_none=True)
async def job_status(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JobRecord:
    try:
        return await manager.get_status(job_id)
    except JobNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error getting job status")
        raise HTTPException(status_code=500, detail="Failed to get job status") from exc


@router.get("/jobs/{job_id}/result", response_class=PlainTextResponse)
async def job_result(job_id: str, manager: JobManager = Depends(get_job_manager)) -> PlainTextResponse:
    try:
        markdown = await manager.get_result(job_id)
    except (JobNotFound, NoOutput) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobNotReady as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error getting job result")
        raise HTTPException(status_code=500, detail="Failed to get job result") from exc
    return PlainTextResponse(markdown, media_type="text/markdown")


@router.get("/jobs/{job_id}/ocr-result")
async def job_ocr_result(job_id: str, manager: JobManager = Depends(get_job_manager)) -> JSONResponse:
    try:
        result = await manager.get_ocr_result(job_id)
    except (JobNotFound, NoOutput) as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    except JobNotReady as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except Exception as exc:  # noqa: BLE001
        logger.exception("Error getting OCR result")
        raise HTTPException(status_code=500, detail="Failed to get OCR result") from exc
    return JSONResponse(content=result.model_dump(mode="json"))


app.include_router(router)


def run() -> None:
    uvicorn.run("pdf2html_backend.main:app", host=settings.api.host, port=settings.api.port)
