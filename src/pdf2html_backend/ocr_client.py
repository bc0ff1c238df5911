"""
OCR engine client.

``MistralOcrEngine`` sends the PDF inline as a base64 data URL to the
Mistral OCR endpoint and returns the structured per-page result.
"""

from __future__ import annotations

import base64
import logging
from abc import ABC, abstractmethod
from typing import Optional

import httpx
from pydantic import ValidationError

from .configuration import OcrSettings, Settings
from .errors import OcrServiceError
from .models import OcrResult

logger = logging.getLogger(__name__)


class OcrEngine(ABC):
    @abstractmethod
    async def convert(self, pdf_bytes: bytes, filename: str) -> OcrResult:
        """Run OCR over a PDF; raises ``OcrServiceError`` when the service fails."""


class MistralOcrEngine(OcrEngine):
    def __init__(self, options: OcrSettings, transport: Optional[httpx.AsyncBaseTransport] = None) -> None:
        self.options = options
        self._transport = transport

    def build_payload(self, pdf_bytes: bytes, filename: str) -> dict:
        encoded = base64.b64encode(pdf_bytes).decode("ascii")
        return {
            "model": self.options.model,
            "document": {
                "type": "document_url",
                "document_url": f"data:application/pdf;base64,{encoded}",
                "document_name": filename,
            },
            "include_image_base64": self.options.include_images,
        }

    async def convert(self, pdf_bytes: bytes, filename: str) -> OcrResult:
        if not self.options.api_key:
            raise OcrServiceError("OCR service API key is not configured")

        headers = {"Authorization": f"Bearer {self.options.api_key}"}
        url = f"{self.options.base_url.rstrip('/')}/v1/ocr"
        async with httpx.AsyncClient(timeout=self.options.timeout_seconds, transport=self._transport) as client:
            try:
                response = await client.post(url, json=self.build_payload(pdf_bytes, filename), headers=headers)
            except httpx.TimeoutException as exc:
                raise OcrServiceError(f"OCR request timed out after {self.options.timeout_seconds}s") from exc
            except httpx.HTTPError as exc:
                raise OcrServiceError(f"OCR request failed: {exc}") from exc

        if response.is_error:
            logger.error("OCR service returned %s: %s", response.status_code, response.text[:200])
            raise OcrServiceError(f"OCR service returned HTTP {response.status_code}")

        try:
            result = OcrResult.model_validate(response.json())
        except (ValidationError, ValueError) as exc:
            raise OcrServiceError("OCR service returned an unexpected payload") from exc

        logger.info("OCR finished for %s: %d page(s)", filename, len(result.pages))
        return result


def build_ocr_engine(settings: Settings) -> OcrEngine:
    if not settings.ocr.api_key:
        logger.warning("MISTRAL_API_KEY is not set; conversions will fail")
    return MistralOcrEngine(settings.ocr)
