"""Best-effort title/author/publish-time extraction from raw page HTML."""

from __future__ import annotations

import html
import re
from typing import Optional, Pattern, Protocol, Sequence

from .models import UNKNOWN_AUTHOR, UNKNOWN_TITLE, ArticleMetadata


class Extractor(Protocol):
    def extract(self, content: str) -> ArticleMetadata: ...


TITLE_PATTERNS = (
    re.compile(r'<h1[^>]*id="activity-name"[^>]*>([^<]+)</h1>'),
    re.compile(r'<h1[^>]*class="[^"]*rich_media_title[^"]*"[^>]*>([^<]+)</h1>'),
    re.compile(r'<meta[^>]*property="og:title"[^>]*content="([^"]+)"'),
    re.compile(r"<title>([^<]+)</title>"),
)
AUTHOR_PATTERNS = (
    re.compile(r'<span[^>]*class="[^"]*account_nickname_inner[^"]*"[^>]*>([^<]+)</span>'),
    re.compile(r'<a[^>]*id="js_name"[^>]*>([^<]+)</a>'),
    re.compile(r'<span[^>]*class="[^"]*rich_media_meta_text[^"]*"[^>]*>([^<]+)</span>'),
    re.compile(r'<meta[^>]*name="author"[^>]*content="([^"]+)"'),
)
PUBLISH_TIME_PATTERNS = (
    re.compile(r'<em[^>]*id="publish_time"[^>]*>([^<]+)</em>'),
    re.compile(r'<span[^>]*id="publish_time"[^>]*>([^<]+)</span>'),
    re.compile(r"(\d{4}-\d{2}-\d{2}(?: \d{2}:\d{2})?)"),
)


def first_match(patterns: Sequence[Pattern[str]], content: str) -> Optional[str]:
    """Return the first non-empty capture; earlier patterns win."""
    for pattern in patterns:
        match = pattern.search(content)
        if match:
            value = html.unescape(match.group(1)).strip()
            if value:
                return value
    return None


class RegexExtractor:
    """Pattern-based extractor tuned for WeChat article markup."""

    def __init__(
        self,
        title_patterns: Sequence[Pattern[str]] = TITLE_PATTERNS,
        author_patterns: Sequence[Pattern[str]] = AUTHOR_PATTERNS,
        publish_time_patterns: Sequence[Pattern[str]] = PUBLISH_TIME_PATTERNS,
    ) -> None:
        self.title_patterns = title_patterns
        self.author_patterns = author_patterns
        self.publish_time_patterns = publish_time_patterns

    def extract(self, content: str) -> ArticleMetadata:
        return ArticleMetadata(
            title=first_match(self.title_patterns, content) or UNKNOWN_TITLE,
            author=first_match(self.author_patterns, content) or UNKNOWN_AUTHOR,
            publish_time=first_match(self.publish_time_patterns, content) or "",
        )
