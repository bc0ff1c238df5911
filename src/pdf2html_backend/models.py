from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, FrozenSet, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, model_validator
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(str, Enum):
    UPLOAD = "upload"
    URL = "url"


TERMINAL_STATUSES: FrozenSet[str] = frozenset({JobStatus.COMPLETED.value, JobStatus.FAILED.value})

# Status each transition target may be entered from. "processing" is
# re-entrant so a redelivered message can restart an interrupted job;
# "pending -> failed" only happens when a freshly created job cannot be queued.
ALLOWED_SOURCES: Dict[str, FrozenSet[str]] = {
    JobStatus.PROCESSING.value: frozenset({JobStatus.PENDING.value, JobStatus.PROCESSING.value}),
    JobStatus.COMPLETED.value: frozenset({JobStatus.PROCESSING.value}),
    JobStatus.FAILED.value: frozenset({JobStatus.PENDING.value, JobStatus.PROCESSING.value}),
}


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------------------------------------------------------------------------
# OCR payload (kept in the OCR service's own snake_case shape)
# ---------------------------------------------------------------------------


class OcrImage(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    image_base64: Optional[str] = None


class OcrPage(BaseModel):
    model_config = ConfigDict(extra="allow")

    index: int = 0
    markdown: str = ""
    images: List[OcrImage] = Field(default_factory=list)
    dimensions: Optional[Dict[str, Any]] = None


class OcrResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    model: Optional[str] = None
    pages: List[OcrPage] = Field(default_factory=list)
    usage_info: Optional[Dict[str, Any]] = None

    def to_markdown(self) -> str:
        """Join page markdown with a visible separator before every page after the first."""
        parts = []
        for number, page in enumerate(self.pages, start=1):
            if number == 1:
                parts.append(page.markdown)
            else:
                parts.append(f"\n\n---\n**Page {number}**\n---\n\n{page.markdown}")
        return "\n\n".join(parts)


# ---------------------------------------------------------------------------
# Job record, one variant per status
# ---------------------------------------------------------------------------


class JobBase(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    job_id: str = Field(min_length=1)
    type: JobType
    source_url: str
    original_filename: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class PendingJob(JobBase):
    status: Literal["pending"] = "pending"


class ProcessingJob(JobBase):
    status: Literal["processing"] = "processing"


class CompletedJob(JobBase):
    status: Literal["completed"] = "completed"
    output_url: str
    ocr_result: OcrResult


class FailedJob(JobBase):
    status: Literal["failed"] = "failed"
    error: str = Field(min_length=1)


JobRecord = Annotated[
    Union[PendingJob, ProcessingJob, CompletedJob, FailedJob],
    Field(discriminator="status"),
]

JOB_RECORD_ADAPTER: TypeAdapter = TypeAdapter(JobRecord)


def parse_job_record(data: Dict[str, Any]) -> JobRecord:
    return JOB_RECORD_ADAPTER.validate_python(data)


# ---------------------------------------------------------------------------
# Queue message
# ---------------------------------------------------------------------------


class WorkItem(CamelModel):
    """Snapshot of submission-time facts; the job record stays authoritative."""

    job_id: str = Field(min_length=1)
    type: JobType = JobType.UPLOAD
    source_url: Optional[str] = None
    filename: str = "document.pdf"
    bucket: Optional[str] = None
    key: Optional[str] = None

    @model_validator(mode="after")
    def _check_source(self) -> "WorkItem":
        if self.type == JobType.UPLOAD and not (self.bucket and self.key):
            raise ValueError("upload work items need bucket and key")
        if self.type == JobType.URL and not self.source_url:
            raise ValueError("url work items need sourceUrl")
        return self


# ---------------------------------------------------------------------------
# HTTP payloads
# ---------------------------------------------------------------------------


class PresignedUrlRequest(CamelModel):
    filename: Optional[str] = None
    content_type: Optional[str] = None


class PresignedUpload(CamelModel):
    job_id: str
    presigned_url: str
    key: str


class UploadConversionRequest(CamelModel):
    job_id: Optional[str] = None
    key: Optional[str] = None
    filename: Optional[str] = None


class UrlConversionRequest(CamelModel):
    url: Optional[str] = None


class JobSummary(CamelModel):
    job_id: str
    status: JobStatus
    message: Optional[str] = None


class HealthStatus(BaseModel):
    status: str
    timestamp: datetime
