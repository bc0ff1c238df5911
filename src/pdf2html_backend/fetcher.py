"""Download PDFs from user-supplied URLs."""

from __future__ import annotations

import logging
from typing import Optional

import httpx

from .configuration import MAX_PDF_BYTES, Settings
from .errors import ConversionFailure, NotAPdf, PayloadTooLarge
from .utils import validate_source_url

logger = logging.getLogger(__name__)


class PdfFetcher:
    """
    Streams a PDF over HTTP with a timeout and a size ceiling.

    Every request, including each redirect hop, is re-checked by the URL
    guard, so a public URL cannot redirect the worker to an internal host.
    """

    def __init__(
        self,
        timeout: float = 30,
        max_bytes: int = MAX_PDF_BYTES,
        resolve_dns: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.timeout = timeout
        self.max_bytes = max_bytes
        self.resolve_dns = resolve_dns
        self._transport = transport

    async def _check_request(self, request: httpx.Request) -> None:
        validate_source_url(str(request.url), resolve_dns=self.resolve_dns)

    async def fetch(self, url: str) -> bytes:
        """
        Download ``url`` and return its bytes.

        Raises:
            UnsafeURL: If the URL or a redirect target is not allowed
            NotAPdf: If the response declares a non-PDF content type
            PayloadTooLarge: If the body exceeds ``max_bytes``
            ConversionFailure: On timeouts, transport errors and non-2xx responses
        """
        async with httpx.AsyncClient(
            timeout=self.timeout,
            follow_redirects=True,
            transport=self._transport,
            event_hooks={"request": [self._check_request]},
        ) as client:
            try:
                async with client.stream("GET", url) as response:
                    if response.status_code >= 400:
                        raise ConversionFailure(f"Download failed with HTTP {response.status_code}")

                    content_type = response.headers.get("content-type", "")
                    if content_type and "pdf" not in content_type.lower():
                        raise NotAPdf(f"URL does not point to a PDF file (content-type: {content_type})")

                    declared = response.headers.get("content-length")
                    if declared and declared.isdigit() and int(declared) > self.max_bytes:
                        raise PayloadTooLarge(f"Download is {declared} bytes, limit is {self.max_bytes}")

                    chunks = []
                    received = 0
                    async for chunk in response.aiter_bytes():
                        received += len(chunk)
                        if received > self.max_bytes:
                            raise PayloadTooLarge(f"Download exceeds the {self.max_bytes} byte limit")
                        chunks.append(chunk)
            except httpx.TimeoutException as exc:
                raise ConversionFailure(f"Download timed out after {self.timeout}s") from exc
            except httpx.HTTPError as exc:
                raise ConversionFailure(f"Download failed: {exc}") from exc

        logger.info("Downloaded %d bytes from %s", received, url)
        return b"".join(chunks)


def build_fetcher(settings: Settings) -> PdfFetcher:
    return PdfFetcher(
        timeout=settings.fetch.timeout_seconds,
        max_bytes=settings.fetch.max_bytes,
        resolve_dns=settings.url_guard.resolve_dns,
    )
