"""Client address helpers."""
from __future__ import annotations

from typing import Mapping, Optional

from script_builder.rate_limit import UNKNOWN_CLIENT


def get_header(headers: Optional[Mapping[str, str]], key: str) -> str:
    """Case-insensitive header lookup returning a stripped value or ``""``."""

    if not headers:
        return ""
    value = headers.get(key)
    if value is None:
        lowered = key.lower()
        for name, candidate in headers.items():
            if name.lower() == lowered:
                value = candidate
                break
    return str(value).strip() if value else ""


def client_identifier(headers: Optional[Mapping[str, str]], fallback_host: Optional[str] = None) -> str:
    """Derive the rate-limit key for a request.

    Edge-proxy headers win over ``X-Forwarded-For``; the socket peer is used
    last. Callers without any address share the ``"unknown"`` bucket.
    """

    direct = get_header(headers, "x-nf-client-connection-ip") or get_header(headers, "client-ip")
    if direct:
        return direct

    forwarded = get_header(headers, "x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first

    if fallback_host and fallback_host.strip():
        return fallback_host.strip()
    return UNKNOWN_CLIENT
