"""Exception types raised while crawling articles."""

from __future__ import annotations


class CrawlError(Exception):
    """Base class for crawler failures."""


class UrlValidationError(CrawlError, ValueError):
    """The URL is malformed or does not point at a supported article."""

    def __init__(self, url: str, reason: str) -> None:
        super().__init__(f"Invalid article URL {url!r}: {reason}")
        self.url = url
        self.reason = reason


class StepFailedError(CrawlError):
    """A step failed in a way that aborts the whole session."""

    def __init__(self, step_name: str, message: str, retryable: bool = False) -> None:
        super().__init__(f"Step {step_name} failed: {message}")
        self.step_name = step_name
        self.retryable = retryable


class SessionCancelled(CrawlError):
    """The session was cancelled at a suspension point."""

    def __init__(self, session_id: str) -> None:
        super().__init__("session cancelled")
        self.session_id = session_id


class SessionDeadlineExceeded(CrawlError):
    """The whole step sequence outran ``session_timeout_ms``."""

    def __init__(self, timeout_ms: int) -> None:
        super().__init__(f"session deadline of {timeout_ms}ms exceeded")
        self.timeout_ms = timeout_ms


class ContentError(CrawlError):
    """The captured page could not be turned into an article document."""
