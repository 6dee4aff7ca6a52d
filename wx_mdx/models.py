"""Data models used throughout the crawler pipeline."""

from __future__ import annotations

import datetime as dt
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from .utils import isoformat_z

UNKNOWN_TITLE = "unknown title"
UNKNOWN_AUTHOR = "unknown author"


def _json_ready(value: Any) -> Any:
    if isinstance(value, dt.datetime):
        return isoformat_z(value)
    if isinstance(value, dict):
        return {key: _json_ready(item) for key, item in value.items()}
    if isinstance(value, list):
        return [_json_ready(item) for item in value]
    return value


@dataclass
class BackendResponse:
    """Raw outcome of one Remote Tool Backend operation."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class StepResult:
    """Outcome of a single step execution attempt."""

    success: bool
    data: Any = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)

    @property
    def failure_reason(self) -> Optional[str]:
        return self.metadata.get("failure_reason")


@dataclass
class ErrorRecord:
    """An error recorded against a session."""

    message: str
    step_name: str
    session_id: str
    retryable: bool
    timestamp: dt.datetime


@dataclass
class SessionMetadata:
    """Hints gathered about the article while a session runs."""

    title: Optional[str] = None
    author: Optional[str] = None
    publish_time: Optional[str] = None
    account_name: Optional[str] = None
    word_count: int = 0
    image_count: int = 0
    has_expand_button: bool = False


@dataclass
class SessionState:
    """Everything the state store knows about one session."""

    session_id: str
    url: str
    start_time: dt.datetime
    current_step: str
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    step_timestamps: Dict[str, dt.datetime] = field(default_factory=dict)
    errors: List[ErrorRecord] = field(default_factory=list)
    metadata: SessionMetadata = field(default_factory=SessionMetadata)
    finished_at: Optional[dt.datetime] = None


@dataclass
class SessionStatus:
    """Snapshot of a session's progress, suitable for status queries."""

    session_id: str
    url: str
    status: str
    current_step: str
    progress: int
    start_time: dt.datetime
    end_time: Optional[dt.datetime]
    duration_ms: int
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return _json_ready(asdict(self))


@dataclass
class ArticleMetadata:
    """Title, author and publish time pulled out of a page."""

    title: str = UNKNOWN_TITLE
    author: str = UNKNOWN_AUTHOR
    publish_time: str = ""


@dataclass
class ImageCandidate:
    """Raw image reference discovered while parsing article content."""

    original_src: str
    absolute_url: str
    alt_text: str


@dataclass
class ImageInfo:
    """Downloaded image stored next to the article document."""

    original_url: str
    local_path: str
    filename: str
    size: int
    mime_type: str
    alt_text: str = ""


@dataclass
class CrawlResult:
    """Terminal artifact of one crawl session."""

    success: bool
    url: str
    title: str = ""
    author: str = ""
    publish_time: str = ""
    content: str = ""
    images: List[ImageInfo] = field(default_factory=list)
    file_path: str = ""
    crawl_time: Optional[dt.datetime] = None
    duration_ms: int = 0
    session_id: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self, include_content: bool = True) -> Dict[str, Any]:
        payload = _json_ready(asdict(self))
        if not include_content:
            payload.pop("content", None)
        return payload


@dataclass
class BatchError:
    url: str
    error: str
    timestamp: dt.datetime


@dataclass
class BatchResult:
    """Aggregate outcome of a batch crawl."""

    success: bool
    total_count: int
    success_count: int
    failed_count: int
    results: List[CrawlResult]
    start_time: dt.datetime
    end_time: dt.datetime
    duration_ms: int
    errors: List[BatchError] = field(default_factory=list)
    summary_path: Optional[str] = None

    def to_dict(self, include_content: bool = False) -> Dict[str, Any]:
        payload = _json_ready(asdict(self))
        payload["results"] = [
            result.to_dict(include_content=include_content) for result in self.results
        ]
        return payload
