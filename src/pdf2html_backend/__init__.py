"""
PDF2HTML Backend - PDF to Markdown conversion service

This package provides a FastAPI-based orchestrator and a queue-driven worker
that convert PDF documents to Markdown through an external OCR service. It
enables:

- Presigned uploads of PDFs straight to object storage
- Conversion of PDFs fetched from public URLs (with an SSRF guard)
- Job status tracking through a shared key-value store
- Retrieval of Markdown results and structured per-page OCR output
- A client-side poller that resumes tracking after a restart

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Job submission and lookup
    - job_store: Redis and in-memory job record stores
    - work_queue: RabbitMQ and in-memory work queues
    - worker: Conversion worker process
    - client: Job poller with a local snapshot
    - s3_service, ocr_client, fetcher: Storage, OCR and download collaborators
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn pdf2html_backend.main:app --host 0.0.0.0 --port 3001

    Run a conversion worker with:
        python -m pdf2html_backend.worker
"""
