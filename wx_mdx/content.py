"""Article body extraction, cleaning and image discovery."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterable, List
from urllib.parse import urljoin

from bs4 import BeautifulSoup, Tag
from readability import Document
from readability.readability import Unparseable

from .errors import ContentError
from .models import ImageCandidate

logger = logging.getLogger("wx_mdx.content")

_MIN_PLAINTEXT_CHARS = 200
_MAX_AD_BLOCK_CHARS = 120

BODY_SELECTORS = ("#js_content", ".rich_media_content")
NOISE_TAGS = ("script", "style", "noscript", "form")
CHROME_SELECTORS = (
    ".rich_media_js",
    "#js_pc_qr_code",
    ".qr_code_pc",
    ".reward_qrcode",
    ".article_comment",
    ".mp_profile_iframe",
    ".weapp_element",
    ".mp_common_widget",
    ".js_share_container",
    ".rich_media_meta",
    ".rich_media_extra",
    ".rich_media_tool",
)
TRACKING_ATTRIBUTES = (
    "onclick",
    "onload",
    "onerror",
    "onmouseover",
    "onmouseout",
    "onfocus",
    "onblur",
    "data-track",
    "data-stat",
    "data-analytics",
)
AD_KEYWORDS = (
    "广告",
    "推广",
    "赞赏",
    "打赏",
    "二维码",
    "扫码",
    "关注我们",
    "点击阅读原文",
    "阅读原文",
    "更多精彩",
    "往期推荐",
    "相关阅读",
)


@dataclass
class ArticleContent:
    """Cleaned article body ready for Markdown conversion."""

    content_html: str
    plain_text: str
    images: List[ImageCandidate]


def contains_ad_keyword(text: str) -> bool:
    return any(keyword in text for keyword in AD_KEYWORDS)


def _strip_noise(soup: BeautifulSoup) -> None:
    for tag in soup(list(NOISE_TAGS)):
        tag.decompose()


def _strip_chrome(soup: BeautifulSoup) -> None:
    """Remove share widgets, QR codes and short promotional blocks."""
    for selector in CHROME_SELECTORS:
        for tag in soup.select(selector):
            tag.decompose()
    for tag in soup.find_all(["p", "section", "div"]):
        if tag.decomposed or tag.find(["p", "section", "div", "img"]):
            continue
        text = tag.get_text(" ", strip=True)
        if text and len(text) <= _MAX_AD_BLOCK_CHARS and contains_ad_keyword(text):
            logger.debug("Dropping promotional block: %s", text[:50])
            tag.decompose()
    for tag in soup.find_all(True):
        for attribute in TRACKING_ATTRIBUTES:
            if attribute in tag.attrs:
                del tag.attrs[attribute]


def _tidy(soup: BeautifulSoup, clean: bool) -> BeautifulSoup:
    _strip_noise(soup)
    if clean:
        _strip_chrome(soup)
    return soup


def _join_plain_text(soup: BeautifulSoup, clean: bool) -> str:
    lines = [line for line in soup.stripped_strings]
    if clean:
        lines = [line for line in lines if not contains_ad_keyword(line)]
    return "\n".join(lines)


def _iter_fallback_candidates(html: str, soup_full: BeautifulSoup) -> Iterable[BeautifulSoup]:
    """Yield progressively broader content scopes to fall back on."""
    try:
        summary_html = Document(html).summary(html_partial=True)
    except Unparseable as exc:
        logger.debug("Readability could not parse page: %s", exc)
    else:
        yield BeautifulSoup(summary_html, "html.parser")
    for selector in ("main", "article"):
        candidate = soup_full.select_one(selector)
        if candidate:
            yield BeautifulSoup(str(candidate), "html.parser")
    if soup_full.body:
        yield BeautifulSoup(str(soup_full.body), "html.parser")


def _collect_images(body: BeautifulSoup, base_url: str) -> List[ImageCandidate]:
    images: List[ImageCandidate] = []
    for img in body.find_all("img"):
        if not isinstance(img, Tag):
            continue
        src = img.get("data-src") or img.get("src")
        if not src or src.startswith("data:"):
            continue
        # Lazy-loaded images only carry data-src; make the markup self-contained.
        img["src"] = src
        images.append(ImageCandidate(src, urljoin(base_url, src), (img.get("alt") or "").strip()))
    return images


def extract_article(html: str, base_url: str, clean: bool = True) -> ArticleContent:
    """Locate the article body in a page snapshot and tidy it up."""
    if not html or not html.strip():
        raise ContentError("snapshot is empty")
    soup_full = BeautifulSoup(html, "html.parser")

    body = None
    plain_text = ""
    for selector in BODY_SELECTORS:
        found = soup_full.select_one(selector)
        if not found:
            continue
        candidate = _tidy(BeautifulSoup(str(found), "html.parser"), clean)
        text = _join_plain_text(candidate, clean)
        if text:
            body, plain_text = candidate, text
            break

    candidates = _iter_fallback_candidates(html, soup_full) if body is None else ()
    for candidate in candidates:
        candidate = _tidy(candidate, clean)
        text = _join_plain_text(candidate, clean)
        if body is None or len(text) > len(plain_text):
            body, plain_text = candidate, text
        if len(text) >= _MIN_PLAINTEXT_CHARS:
            break

    if body is None:
        raise ContentError("no article body found")

    images = _collect_images(body, base_url)
    logger.debug("Extracted %d chars and %d image(s)", len(plain_text), len(images))
    return ArticleContent(content_html=body.decode(), plain_text=plain_text, images=images)
