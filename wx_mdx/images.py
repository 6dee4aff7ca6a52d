"""Image downloading and validation utilities."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List, Optional
from urllib.parse import parse_qs, urlparse

import requests
from filetype import guess

from .config import DEFAULT_USER_AGENT
from .models import ImageCandidate, ImageInfo
from .utils import slugify

logger = logging.getLogger("wx_mdx.images")

MAX_IMAGE_BYTES = 10 * 1024 * 1024
MIN_IMAGE_BYTES = 512
DOWNLOAD_TIMEOUT_SECONDS = 10
ALLOWED_IMAGE_TYPES = {"png", "jpg", "jpeg", "gif", "webp", "bmp", "tiff", "svg"}
IMAGE_REFERER = "https://mp.weixin.qq.com/"


def detect_image_format(data: bytes) -> Optional[str]:
    """Detect image type using filetype; returns lowercase extension."""
    kind = guess(data)
    if kind and kind.mime.startswith("image/"):
        ext = kind.extension.lower()
        if ext == "jpeg":
            return "jpg"
        return ext
    return None


def _format_hint(url: str) -> Optional[str]:
    # WeChat CDN URLs carry the format in ?wx_fmt= rather than the path.
    values = parse_qs(urlparse(url).query).get("wx_fmt")
    if values and values[0]:
        ext = values[0].lower()
        return "jpg" if ext == "jpeg" else ext
    return None


def infer_image_extension(content_type: Optional[str], data: bytes, url: str = "") -> Optional[str]:
    """Guess an image file extension from the bytes, HTTP metadata or URL."""
    detected = detect_image_format(data)
    if detected:
        return detected
    if content_type:
        parts = content_type.split(";")[0].split("/")
        if len(parts) == 2 and parts[0] == "image":
            ext = parts[1].strip().lower()
            if ext == "jpeg":
                ext = "jpg"
            if ext == "svg+xml":
                ext = "svg"
            return ext
    return _format_hint(url)


def _mime_for(extension: str, content_type: Optional[str]) -> str:
    if content_type and content_type.startswith("image/"):
        return content_type.split(";")[0].strip()
    if extension == "jpg":
        return "image/jpeg"
    if extension == "svg":
        return "image/svg+xml"
    return f"image/{extension}"


def download_images(
    candidates: List[ImageCandidate],
    output_dir: Path,
    session: Optional[requests.Session] = None,
    user_agent: str = DEFAULT_USER_AGENT,
) -> List[ImageInfo]:
    """Download images referenced by the article and persist them locally."""
    if not candidates:
        return []
    image_dir = output_dir / "images"
    image_dir.mkdir(parents=True, exist_ok=True)

    http = session or requests.Session()
    headers = {"User-Agent": user_agent, "Referer": IMAGE_REFERER}
    downloaded: Dict[str, ImageInfo] = {}
    images: List[ImageInfo] = []

    for index, candidate in enumerate(candidates, start=1):
        if candidate.absolute_url in downloaded:
            continue
        try:
            resp = http.get(candidate.absolute_url, headers=headers, timeout=DOWNLOAD_TIMEOUT_SECONDS)
            resp.raise_for_status()
        except requests.RequestException as exc:
            logger.warning("Failed to fetch image %s: %s", candidate.absolute_url, exc)
            continue

        content_type = resp.headers.get("Content-Type", "")
        data = resp.content
        if len(data) < MIN_IMAGE_BYTES:
            logger.warning("Skipping %s: response too small", candidate.absolute_url)
            continue
        if len(data) > MAX_IMAGE_BYTES:
            logger.warning(
                "Skipping %s: image larger than %s bytes",
                candidate.absolute_url,
                MAX_IMAGE_BYTES,
            )
            continue

        extension = infer_image_extension(content_type, data, candidate.absolute_url)
        if not extension or extension not in ALLOWED_IMAGE_TYPES:
            logger.warning(
                "Skipping %s: unsupported image type (Content-Type=%s)",
                candidate.absolute_url,
                content_type,
            )
            continue

        alt_slug = slugify(candidate.alt_text or "image", fallback="image")
        filename = f"image-{index:02d}-{alt_slug}"[:80] + f".{extension}"
        destination = image_dir / filename

        try:
            destination.write_bytes(data)
        except OSError as exc:
            logger.warning("Failed to write image %s: %s", destination, exc)
            continue

        info = ImageInfo(
            original_url=candidate.original_src,
            local_path=str(Path("images") / filename),
            filename=filename,
            size=len(data),
            mime_type=_mime_for(extension, content_type),
            alt_text=candidate.alt_text,
        )
        downloaded[candidate.absolute_url] = info
        images.append(info)
    logger.info("Downloaded %d of %d image(s)", len(images), len(candidates))
    return images
