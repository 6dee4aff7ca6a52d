"""Utility helpers for string normalization and timestamps."""

from __future__ import annotations

import datetime as dt
import re
from typing import Iterable
from urllib.parse import urlparse

from .errors import UrlValidationError

SLUG_PATTERN = re.compile(r"[^\w]+", re.UNICODE)


def slugify(value: str, fallback: str = "page") -> str:
    """Generate a filesystem-friendly slug, keeping CJK word characters."""
    normalized = SLUG_PATTERN.sub("-", value.strip().lower())
    normalized = normalized.replace("_", "-").strip("-")
    return normalized or fallback


def utc_now() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def elapsed_ms(start: dt.datetime, end: dt.datetime) -> int:
    """Whole milliseconds between two timestamps, never negative."""
    return max(0, int((end - start).total_seconds() * 1000))


def isoformat_z(moment: dt.datetime) -> str:
    return moment.replace(microsecond=0).isoformat().replace("+00:00", "Z")


def validate_article_url(url: str, allowed_hosts: Iterable[str]) -> str:
    """Return ``url`` unchanged if it points at a supported article page.

    Accepted shapes are ``/s/<id>`` and ``/s?__biz=...`` on one of the
    allowed hosts, over http or https.
    """
    try:
        parsed = urlparse(url.strip())
    except ValueError as exc:
        raise UrlValidationError(url, str(exc)) from exc
    if parsed.scheme not in {"http", "https"}:
        raise UrlValidationError(url, "scheme must be http or https")
    host = (parsed.hostname or "").lower()
    if host not in {h.lower() for h in allowed_hosts}:
        raise UrlValidationError(url, f"host {host or '(empty)'} is not supported")
    if parsed.path.startswith("/s/") and len(parsed.path) > 3:
        return url
    if parsed.path in {"/s", "/s/"} and "__biz=" in parsed.query:
        return url
    raise UrlValidationError(url, "path does not look like an article")
