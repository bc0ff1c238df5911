"""
Error taxonomy for the conversion job lifecycle.

Client input errors (InvalidRequest, InvalidURL, UnsafeURL) are raised before
any state is written. Lookup errors (JobNotFound, JobNotReady, NoOutput) are
raised by the read-only status/result operations. ConversionFailure and its
subclasses are never surfaced over HTTP directly; the worker records them on
the job as its ``error`` field.
"""

from __future__ import annotations


class Pdf2HtmlError(Exception):
    """Base class for all errors raised by this package."""


class InvalidRequest(Pdf2HtmlError):
    pass


class InvalidURL(InvalidRequest):
    pass


class UnsafeURL(InvalidRequest):
    pass


class JobAlreadyExists(Pdf2HtmlError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job {job_id} already exists")
        self.job_id = job_id


class JobNotFound(Pdf2HtmlError):
    def __init__(self, job_id: str) -> None:
        super().__init__("Job not found")
        self.job_id = job_id


class JobNotReady(Pdf2HtmlError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__("Job not completed yet")
        self.job_id = job_id
        self.status = status


class NoOutput(Pdf2HtmlError):
    def __init__(self, job_id: str) -> None:
        super().__init__("No output available")
        self.job_id = job_id


class ConversionFailure(Pdf2HtmlError):
    pass


class PayloadTooLarge(ConversionFailure):
    pass


class NotAPdf(ConversionFailure):
    pass


class OcrServiceError(ConversionFailure):
    pass


class PoisonMessage(Pdf2HtmlError):
    pass
