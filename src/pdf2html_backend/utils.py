"""
Utility functions for URL validation, filename handling and object keys.

This module provides helper functions for:
- Rejecting URLs that could be used to reach internal network resources
- Deriving display filenames from URLs
- Sanitizing user-provided names for object-storage keys
- Describing worker failures as short, human-readable strings
"""

from __future__ import annotations

import ipaddress
import re
import socket
from pathlib import Path
from urllib.parse import unquote, urlsplit

from .errors import InvalidURL, UnsafeURL

# Pattern to match characters that are not safe for object keys
# Allows: alphanumeric characters, dots, underscores, and hyphens
SANITIZE_PATTERN = re.compile(r"[^a-zA-Z0-9._-]+")

ALLOWED_SCHEMES = ("http", "https")
BLOCKED_HOSTNAMES = ("localhost",)
BLOCKED_PREFIXES = ("10.", "127.", "172.", "192.168.")
# Hosts made only of decimal, octal or hex labels are IPv4 in inet_aton form
NUMERIC_HOST_PATTERN = re.compile(r"^(0x[0-9a-f]*|[0-9]+)(\.(0x[0-9a-f]*|[0-9]+)){0,3}$")

DEFAULT_FILENAME = "document.pdf"
MAX_ERROR_LENGTH = 500


def sanitize_label(label: str, fallback: str) -> str:
    """
    Generate a key-safe label from user input.

    Args:
        label: The original label string to sanitize
        fallback: Default value to return if sanitization results in an empty string

    Returns:
        A lowercase, key-safe label or the fallback value

    Example:
        >>> sanitize_label("My Document!", "document")
        "my-document"
        >>> sanitize_label("@#$", "document")
        "document"
    """
    cleaned = SANITIZE_PATTERN.sub("-", label.strip())
    cleaned = cleaned.strip("-_.").lower()
    return cleaned or fallback


def sanitize_filename(filename: str) -> str:
    """Return a key-safe PDF filename, forcing the ``.pdf`` suffix."""
    stem = Path(filename).stem or "document"
    safe_stem = "".join(char if char.isalnum() or char in "-_" else "-" for char in stem)
    safe_stem = safe_stem.strip("-_") or "document"
    return f"{safe_stem}.pdf"


def upload_key(job_id: str, filename: str) -> str:
    return f"uploads/{job_id}/{sanitize_filename(filename)}"


def output_key(job_id: str, filename: str) -> str:
    """Deterministic per-job key, so reprocessing a job overwrites the same artifact."""
    stem = sanitize_label(Path(filename or DEFAULT_FILENAME).stem, fallback="document")
    return f"output/{job_id}/{stem}.md"


def filename_from_url(url: str) -> str:
    """
    Derive a display filename from the last path segment of a URL.

    Example:
        >>> filename_from_url("https://example.com/papers/My%20Paper.pdf")
        "My Paper.pdf"
        >>> filename_from_url("https://example.com/")
        "document.pdf"
    """
    segment = urlsplit(url).path.rsplit("/", 1)[-1]
    return unquote(segment) or DEFAULT_FILENAME


def _is_blocked_ip(address: ipaddress.IPv4Address | ipaddress.IPv6Address) -> bool:
    mapped = getattr(address, "ipv4_mapped", None)
    if mapped is not None:
        address = mapped
    return (
        address.is_private
        or address.is_loopback
        or address.is_link_local
        or address.is_reserved
        or address.is_multicast
        or address.is_unspecified
    )


def _is_blocked_host(hostname: str) -> bool:
    if hostname in BLOCKED_HOSTNAMES or hostname.endswith(".localhost"):
        return True
    if hostname.startswith(BLOCKED_PREFIXES):
        return True
    if NUMERIC_HOST_PATTERN.match(hostname):
        try:
            return _is_blocked_ip(ipaddress.IPv4Address(socket.inet_aton(hostname)))
        except OSError:
            return True
    try:
        address = ipaddress.ip_address(hostname)
    except ValueError:
        return False
    return _is_blocked_ip(address)


def _resolve_addresses(hostname: str) -> list[str]:
    try:
        infos = socket.getaddrinfo(hostname, None)
    except socket.gaierror as exc:
        raise InvalidURL(f"Could not resolve host {hostname}") from exc
    return sorted({info[4][0] for info in infos})


def validate_source_url(url: str | None, resolve_dns: bool = False) -> str:
    """
    Check that a URL is well formed and does not point at internal hosts.

    Only http and https are accepted. The hostname is rejected when it is
    ``localhost``, a loopback/private/link-local/reserved IP literal (dotted,
    decimal, octal or hex), or starts with one of the private prefixes in ``BLOCKED_PREFIXES``. With
    ``resolve_dns`` every address the hostname resolves to is checked too.

    Args:
        url: The user-supplied URL
        resolve_dns: Also resolve the hostname and check its addresses

    Returns:
        The stripped URL

    Raises:
        InvalidURL: If the URL is missing or not syntactically well formed
        UnsafeURL: If the scheme or host is not allowed
    """
    if not url or not url.strip():
        raise InvalidURL("Missing URL")
    url = url.strip()

    try:
        parsed = urlsplit(url)
        hostname = parsed.hostname
        parsed.port  # noqa: B018 - raises ValueError for malformed ports
    except ValueError as exc:
        raise InvalidURL("Invalid URL format") from exc

    scheme = parsed.scheme.lower()
    if scheme and scheme not in ALLOWED_SCHEMES:
        raise UnsafeURL("Invalid or unsafe URL: only http and https are allowed")
    if not scheme or not hostname:
        raise InvalidURL("Invalid URL format")

    hostname = hostname.lower().rstrip(".")
    if _is_blocked_host(hostname):
        raise UnsafeURL("Invalid or unsafe URL")

    if resolve_dns:
        for address in _resolve_addresses(hostname):
            if _is_blocked_ip(ipaddress.ip_address(address)):
                raise UnsafeURL("Invalid or unsafe URL")

    return url


def describe_failure(exc: BaseException) -> str:
    """
    Short, human-readable reason stored on a failed job.

    Example:
        >>> describe_failure(NotAPdf("URL does not point to a PDF file"))
        "NotAPdf: URL does not point to a PDF file"
    """
    detail = str(exc).strip()
    message = f"{type(exc).__name__}: {detail}" if detail else type(exc).__name__
    if len(message) > MAX_ERROR_LENGTH:
        message = message[: MAX_ERROR_LENGTH - 3] + "..."
    return message
