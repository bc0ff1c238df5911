"""
Tests for URL validation and naming helpers.
"""

import socket

import pytest

from pdf2html_backend.errors import InvalidURL, NotAPdf, UnsafeURL
from pdf2html_backend.utils import (
    describe_failure,
    filename_from_url,
    output_key,
    sanitize_filename,
    sanitize_label,
    upload_key,
    validate_source_url,
)


class TestValidateSourceUrl:
    @pytest.mark.parametrize(
        "url",
        [
            "https://example.com/doc.pdf",
            "http://example.com/files/report.pdf?download=1",
            "https://cdn.example.org:8443/a/b/c.pdf",
            "https://8.8.8.8/doc.pdf",
            "https://134744072/doc.pdf",
        ],
    )
    def test_accepts_public_urls(self, url):
        assert validate_source_url(url) == url

    def test_strips_whitespace(self):
        assert validate_source_url("  https://example.com/doc.pdf ") == "https://example.com/doc.pdf"

    @pytest.mark.parametrize(
        "url",
        [
            "http://localhost/doc.pdf",
            "http://LOCALHOST:8080/doc.pdf",
            "http://api.localhost/doc.pdf",
            "http://127.0.0.1/doc.pdf",
            "http://127.1.2.3/doc.pdf",
            "http://192.168.0.12/doc.pdf",
            "http://10.0.0.5/doc.pdf",
            "http://172.16.4.4/doc.pdf",
            "http://172.217.1.1/doc.pdf",
            "http://169.254.169.254/latest/meta-data",
            "http://0.0.0.0/doc.pdf",
            "http://[::1]/doc.pdf",
            "http://[::ffff:127.0.0.1]/doc.pdf",
            "http://[fd00::1]/doc.pdf",
            "http://2130706433/doc.pdf",
            "http://0x7f000001/doc.pdf",
            "http://0177.0.0.1/doc.pdf",
            "http://0/doc.pdf",
            "http://0xa.0x1.0x2.0x3/doc.pdf",
            "http://3232235521/doc.pdf",
            "http://99999999999/doc.pdf",
        ],
    )
    def test_rejects_internal_hosts(self, url):
        with pytest.raises(UnsafeURL):
            validate_source_url(url)

    @pytest.mark.parametrize(
        "url",
        ["ftp://example.com/doc.pdf", "file:///etc/passwd", "gopher://example.com/", "javascript:alert(1)"],
    )
    def test_rejects_other_schemes(self, url):
        with pytest.raises(UnsafeURL):
            validate_source_url(url)

    @pytest.mark.parametrize("url", [None, "", "   ", "not a url", "example.com/doc.pdf", "http://", "http://host:port/"])
    def test_rejects_malformed(self, url):
        with pytest.raises(InvalidURL):
            validate_source_url(url)

    def test_resolves_dns_when_enabled(self, monkeypatch):
        def fake_getaddrinfo(host, port):
            return [(socket.AF_INET, socket.SOCK_STREAM, 6, "", ("10.1.2.3", 0))]

        monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)

        assert validate_source_url("https://internal.example.com/doc.pdf")
        with pytest.raises(UnsafeURL):
            validate_source_url("https://internal.example.com/doc.pdf", resolve_dns=True)

    def test_unresolvable_host_is_invalid(self, monkeypatch):
        def fake_getaddrinfo(host, port):
            raise socket.gaierror("no such host")

        monkeypatch.setattr(socket, "getaddrinfo", fake_getaddrinfo)

        with pytest.raises(InvalidURL):
            validate_source_url("https://nowhere.example.com/doc.pdf", resolve_dns=True)


class TestNaming:
    def test_filename_from_url(self):
        assert filename_from_url("https://example.com/papers/My%20Paper.pdf") == "My Paper.pdf"
        assert filename_from_url("https://example.com/") == "document.pdf"
        assert filename_from_url("https://example.com") == "document.pdf"

    def test_sanitize_label(self):
        assert sanitize_label("My Document!", "document") == "my-document"
        assert sanitize_label("@#$", "document") == "document"

    def test_sanitize_filename(self):
        assert sanitize_filename("Annual Report.pdf") == "Annual-Report.pdf"
        assert sanitize_filename("../../etc/passwd") == "passwd.pdf"
        assert sanitize_filename("scan.PDF") == "scan.pdf"

    def test_keys(self):
        assert upload_key("abc", "My Scan.pdf") == "uploads/abc/My-Scan.pdf"
        assert output_key("abc", "Quarterly Report.pdf") == "output/abc/quarterly-report.md"
        assert output_key("abc", "") == "output/abc/document.md"


class TestDescribeFailure:
    def test_includes_exception_type(self):
        assert describe_failure(NotAPdf("not a pdf")) == "NotAPdf: not a pdf"
        assert describe_failure(RuntimeError()) == "RuntimeError"

    def test_truncates_long_messages(self):
        message = describe_failure(ValueError("x" * 2000))
        assert len(message) == 500
        assert message.endswith("...")
