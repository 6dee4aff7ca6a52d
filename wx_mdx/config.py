"""Configuration objects and constants for the crawler."""

from __future__ import annotations

import enum
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

DEFAULT_OUTPUT_DIR = "crawled_articles"
DEFAULT_TIMEOUT_MS = 30_000
DEFAULT_RETRY_ATTEMPTS = 3
DEFAULT_STEP_DELAY_MS = 1_000
DEFAULT_RETRY_BASE_DELAY_MS = 2_000
DEFAULT_ALLOWED_HOSTS = ("mp.weixin.qq.com",)
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/120.0.0.0 Safari/537.36"
)
SESSION_MAX_AGE_MS = 24 * 60 * 60 * 1000
CLEANUP_INTERVAL_SECONDS = 60 * 60.0


class OutputFormat(str, enum.Enum):
    MARKDOWN = "markdown"
    JSON = "json"


@dataclass
class CrawlConfig:
    """Process-wide settings shared by every crawl session."""

    output_root: Path = Path(DEFAULT_OUTPUT_DIR)
    allowed_hosts: Tuple[str, ...] = DEFAULT_ALLOWED_HOSTS
    headless: bool = True
    user_agent: str = DEFAULT_USER_AGENT
    locale: str = "zh-CN"
    max_concurrent: int = 3
    session_max_age_ms: int = SESSION_MAX_AGE_MS
    cleanup_interval: float = CLEANUP_INTERVAL_SECONDS
    default_options: "CrawlOptions" = field(default_factory=lambda: CrawlOptions())

    @property
    def screenshot_dir(self) -> Path:
        return self.output_root / "screenshots"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "CrawlConfig":
        """Build a config honouring the ``CRAWL_*`` environment variables."""
        env = os.environ if environ is None else environ
        options = CrawlOptions(
            timeout_ms=int(env.get("CRAWL_DEFAULT_TIMEOUT", DEFAULT_TIMEOUT_MS)),
            retry_attempts=int(env.get("CRAWL_RETRY_ATTEMPTS", DEFAULT_RETRY_ATTEMPTS)),
        )
        options.validate()
        return cls(
            output_root=Path(env.get("CRAWL_OUTPUT_DIR", DEFAULT_OUTPUT_DIR)).expanduser(),
            headless=env.get("CRAWL_HEADLESS", "true").lower() not in {"0", "false", "no"},
            user_agent=env.get("CRAWL_USER_AGENT", DEFAULT_USER_AGENT),
            max_concurrent=int(env.get("CRAWL_MAX_CONCURRENT", 3)),
            default_options=options,
        )


@dataclass
class CrawlOptions:
    """Per-crawl options accepted by the orchestrator."""

    output_format: OutputFormat = OutputFormat.MARKDOWN
    save_images: bool = True
    clean_content: bool = True
    timeout_ms: int = DEFAULT_TIMEOUT_MS
    retry_attempts: int = DEFAULT_RETRY_ATTEMPTS
    delay_between_steps_ms: int = DEFAULT_STEP_DELAY_MS
    retry_base_delay_ms: int = DEFAULT_RETRY_BASE_DELAY_MS
    session_timeout_ms: Optional[int] = None

    def __post_init__(self) -> None:
        self.output_format = OutputFormat(self.output_format)

    def validate(self) -> "CrawlOptions":
        if self.timeout_ms <= 0:
            raise ValueError(f"timeout_ms must be positive, got {self.timeout_ms}")
        if self.retry_attempts < 1:
            raise ValueError(f"retry_attempts must be at least 1, got {self.retry_attempts}")
        if self.delay_between_steps_ms < 0 or self.retry_base_delay_ms < 0:
            raise ValueError("delays must not be negative")
        if self.session_timeout_ms is not None and self.session_timeout_ms <= 0:
            raise ValueError("session_timeout_ms must be positive when set")
        return self


@dataclass
class BatchOptions:
    """Controls how a list of URLs is split into concurrent groups."""

    concurrent_limit: int = 2
    delay_seconds: float = 5.0
    stop_on_error: bool = False
    create_summary: bool = True

    def validate(self) -> "BatchOptions":
        if not 1 <= self.concurrent_limit <= 5:
            raise ValueError(
                f"concurrent_limit must be between 1 and 5, got {self.concurrent_limit}"
            )
        if self.delay_seconds < 0:
            raise ValueError("delay_seconds must not be negative")
        return self
