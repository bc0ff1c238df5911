"""
Tests for downloading PDFs from URLs.
"""

import httpx
import pytest

from pdf2html_backend.errors import ConversionFailure, NotAPdf, PayloadTooLarge, UnsafeURL
from pdf2html_backend.fetcher import PdfFetcher

pytestmark = pytest.mark.anyio

PDF = b"%PDF-1.4 minimal"


def fetcher_for(handler, **kwargs):
    return PdfFetcher(transport=httpx.MockTransport(handler), **kwargs)


async def test_downloads_pdf(sample_pdf):
    def handler(request):
        assert request.url == "https://example.com/doc.pdf"
        return httpx.Response(200, content=sample_pdf, headers={"content-type": "application/pdf"})

    assert await fetcher_for(handler).fetch("https://example.com/doc.pdf") == sample_pdf


async def test_missing_content_type_is_accepted():
    def handler(request):
        return httpx.Response(200, content=PDF)

    assert await fetcher_for(handler).fetch("https://example.com/doc.pdf") == PDF


async def test_rejects_non_pdf_content_type():
    def handler(request):
        return httpx.Response(200, content=b"<html></html>", headers={"content-type": "text/html"})

    with pytest.raises(NotAPdf):
        await fetcher_for(handler).fetch("https://example.com/doc.pdf")


async def test_enforces_size_ceiling():
    def handler(request):
        return httpx.Response(200, content=b"x" * 64, headers={"content-type": "application/pdf"})

    with pytest.raises(PayloadTooLarge):
        await fetcher_for(handler, max_bytes=32).fetch("https://example.com/doc.pdf")


async def test_http_error_status():
    def handler(request):
        return httpx.Response(404, content=b"missing")

    with pytest.raises(ConversionFailure, match="HTTP 404"):
        await fetcher_for(handler).fetch("https://example.com/doc.pdf")


async def test_timeout():
    def handler(request):
        raise httpx.ReadTimeout("too slow", request=request)

    with pytest.raises(ConversionFailure, match="timed out"):
        await fetcher_for(handler, timeout=1).fetch("https://example.com/doc.pdf")


async def test_follows_public_redirects():
    def handler(request):
        if request.url.path == "/old.pdf":
            return httpx.Response(302, headers={"location": "https://mirror.example.org/new.pdf"})
        return httpx.Response(200, content=PDF, headers={"content-type": "application/pdf"})

    assert await fetcher_for(handler).fetch("https://example.com/old.pdf") == PDF


async def test_rejects_redirect_to_internal_host():
    requested = []

    def handler(request):
        requested.append(str(request.url))
        return httpx.Response(302, headers={"location": "http://169.254.169.254/latest/meta-data"})

    with pytest.raises(UnsafeURL):
        await fetcher_for(handler).fetch("https://example.com/doc.pdf")
    assert requested == ["https://example.com/doc.pdf"]
