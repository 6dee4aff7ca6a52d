"""Crawl steps: one backend operation each, plus its own gate and annotations."""

from __future__ import annotations

import asyncio
import datetime as dt
import enum
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, ClassVar, Dict, Optional, Tuple

from .backend import ToolBackend
from .config import DEFAULT_ALLOWED_HOSTS, CrawlOptions
from .errors import SessionCancelled, UrlValidationError
from .models import BackendResponse, StepResult
from .utils import utc_now, validate_article_url

if TYPE_CHECKING:
    from .state import SessionStateStore

logger = logging.getLogger("wx_mdx.steps")

NAVIGATE = "navigate"
WAIT_PAGE_LOAD = "wait_page_load"
INITIAL_SNAPSHOT = "initial_snapshot"
CLICK_EXPAND = "click_expand"
WAIT_CONTENT_LOAD = "wait_content_load"
FINAL_SNAPSHOT = "final_snapshot"
SCREENSHOT = "screenshot"

FAILURE_PRECONDITION = "precondition_failed"
FAILURE_BACKEND = "backend_error"
FAILURE_TIMEOUT = "timeout"
FAILURE_EXCEPTION = "exception"

PAGE_CONTENT_SELECTOR = ".rich_media_content"
ARTICLE_BODY_SELECTOR = "#js_content"
EXPAND_SELECTOR = ".rich_media_js"
EXPAND_MARKERS = ("rich_media_js", "展开全文", "show more", 'data-action="expand"')
OPTIONAL_PROBE_MS = 2_000

_TAG_PATTERN = re.compile(r"<[^>]*>")
_IMG_PATTERN = re.compile(r"<img\b[^>]*>", re.IGNORECASE)
_SPACE_PATTERN = re.compile(r"\s+")


class StepKind(str, enum.Enum):
    NAVIGATE = "navigate"
    WAIT = "wait"
    SNAPSHOT = "snapshot"
    CLICK = "click"
    SCREENSHOT = "screenshot"


@dataclass
class CrawlContext:
    """Working record threaded through the steps of one session."""

    session_id: str
    url: str
    options: CrawlOptions
    backend: ToolBackend
    store: "SessionStateStore"
    start_time: dt.datetime
    step_results: Dict[str, StepResult] = field(default_factory=dict)
    current_step: str = ""
    screenshot_dir: Optional[Path] = None
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    def raise_if_cancelled(self) -> None:
        if self.cancel_event.is_set():
            raise SessionCancelled(self.session_id)


def has_expand_marker(content: str) -> bool:
    return any(marker in content for marker in EXPAND_MARKERS)


def analyze_snapshot(content: str) -> Dict[str, Any]:
    """Cheap structural hints about a serialized page."""
    text = _SPACE_PATTERN.sub(" ", _TAG_PATTERN.sub(" ", content)).strip()
    images = len(_IMG_PATTERN.findall(content))
    return {
        "has_expand_button": has_expand_marker(content),
        "has_images": images > 0 or "data-src=" in content,
        "image_count": images,
        "text_length": len(text),
    }


@dataclass(frozen=True)
class Step:
    """A unit of work against the Remote Tool Backend."""

    name: str
    description: str = ""
    retryable: bool = True
    timeout_ms: int = 15_000

    kind: ClassVar[StepKind]

    async def pre_execute(self, context: CrawlContext) -> bool:
        return True

    def precondition_message(self, context: CrawlContext) -> str:
        return f"Precondition failed for step {self.name}"

    async def execute(self, context: CrawlContext) -> StepResult:
        raise NotImplementedError

    async def post_execute(self, context: CrawlContext, result: StepResult) -> None:
        if result.success:
            logger.debug("Step %s succeeded", self.name)
        else:
            logger.warning("Step %s failed: %s", self.name, result.error)

    async def safe_execute(self, context: CrawlContext) -> StepResult:
        """Run the gate, the step body under its timeout, and the post hook.

        Every failure mode comes back as a ``StepResult`` tagged with a
        ``failure_reason``; only cancellation escapes.
        """
        logger.info("Starting step %s: %s", self.name, self.description)
        try:
            if not await self.pre_execute(context):
                result = self.failure(self.precondition_message(context), FAILURE_PRECONDITION)
            else:
                result = await asyncio.wait_for(
                    self.execute(context), timeout=self.timeout_ms / 1000
                )
        except SessionCancelled:
            raise
        except asyncio.TimeoutError as exc:
            message = f"Step {self.name} timed out after {self.timeout_ms}ms"
            if str(exc):
                message = f"{message}: {exc}"
            result = self.failure(message, FAILURE_TIMEOUT)
        except Exception as exc:  # noqa: BLE001 - normalized into the result
            logger.debug("Step %s raised", self.name, exc_info=True)
            result = self.failure(str(exc) or exc.__class__.__name__, FAILURE_EXCEPTION)
        await self.post_execute(context, result)
        return result

    def _stamp(self, metadata: Dict[str, Any]) -> Dict[str, Any]:
        return {"step_name": self.name, "timestamp": utc_now(), **metadata}

    def success(self, data: Any, **metadata: Any) -> StepResult:
        return StepResult(True, data=data, metadata=self._stamp(metadata))

    def failure(self, error: str, reason: str, data: Any = None, **metadata: Any) -> StepResult:
        return StepResult(
            False,
            data=data,
            error=error,
            metadata=self._stamp({"failure_reason": reason, **metadata}),
        )

    def from_response(self, response: BackendResponse, default_error: str, **metadata: Any) -> StepResult:
        if response.success:
            return self.success(response.data, **{**response.metadata, **metadata})
        return self.failure(
            response.error or default_error, FAILURE_BACKEND, data=response.data, **metadata
        )


@dataclass(frozen=True)
class NavigateStep(Step):
    url: str = ""
    allowed_hosts: Tuple[str, ...] = DEFAULT_ALLOWED_HOSTS

    kind: ClassVar[StepKind] = StepKind.NAVIGATE

    @classmethod
    def to(
        cls,
        url: str,
        timeout_ms: int = 30_000,
        allowed_hosts: Tuple[str, ...] = DEFAULT_ALLOWED_HOSTS,
    ) -> "NavigateStep":
        return cls(
            name=NAVIGATE,
            description=f"Navigate to {url}",
            retryable=False,
            timeout_ms=timeout_ms,
            url=url,
            allowed_hosts=allowed_hosts,
        )

    async def pre_execute(self, context: CrawlContext) -> bool:
        try:
            validate_article_url(self.url, self.allowed_hosts)
        except UrlValidationError as exc:
            logger.error("%s", exc)
            return False
        return True

    def precondition_message(self, context: CrawlContext) -> str:
        try:
            validate_article_url(self.url, self.allowed_hosts)
        except UrlValidationError as exc:
            return str(exc)
        return super().precondition_message(context)

    async def execute(self, context: CrawlContext) -> StepResult:
        response = await context.backend.navigate(self.url, timeout_ms=self.timeout_ms)
        return self.from_response(response, "Navigation failed", url=self.url)


@dataclass(frozen=True)
class WaitStep(Step):
    """Waits for a selector, or for a fixed delay when no selector is set."""

    selector: Optional[str] = None
    state: str = "visible"
    delay_ms: int = 0

    kind: ClassVar[StepKind] = StepKind.WAIT

    @classmethod
    def for_page_load(cls) -> "WaitStep":
        return cls(
            name=WAIT_PAGE_LOAD,
            description=f"Wait for {PAGE_CONTENT_SELECTOR}",
            timeout_ms=15_000,
            selector=PAGE_CONTENT_SELECTOR,
        )

    @classmethod
    def for_content_load(cls) -> "WaitStep":
        return cls(
            name=WAIT_CONTENT_LOAD,
            description=f"Wait for {ARTICLE_BODY_SELECTOR}",
            timeout_ms=10_000,
            selector=ARTICLE_BODY_SELECTOR,
        )

    @classmethod
    def delay(cls, name: str, delay_ms: int) -> "WaitStep":
        return cls(
            name=name,
            description=f"Sleep {delay_ms}ms",
            timeout_ms=delay_ms + 1_000,
            delay_ms=delay_ms,
        )

    async def execute(self, context: CrawlContext) -> StepResult:
        if self.selector is None:
            response = await context.backend.wait_for(None, timeout_ms=self.delay_ms)
        else:
            response = await context.backend.wait_for(
                self.selector, timeout_ms=self.timeout_ms, state=self.state
            )
        return self.from_response(
            response, "Timed out waiting", selector=self.selector, state=self.state
        )


@dataclass(frozen=True)
class SnapshotStep(Step):
    snapshot_type: str = "initial"

    kind: ClassVar[StepKind] = StepKind.SNAPSHOT

    @classmethod
    def initial(cls) -> "SnapshotStep":
        return cls(name=INITIAL_SNAPSHOT, description="Capture initial page content")

    @classmethod
    def final(cls) -> "SnapshotStep":
        return cls(
            name=FINAL_SNAPSHOT,
            description="Capture final page content",
            snapshot_type="final",
        )

    async def execute(self, context: CrawlContext) -> StepResult:
        response = await context.backend.snapshot()
        if response.success and not response.data:
            return self.failure(
                "Snapshot returned no content", FAILURE_BACKEND, snapshot_type=self.snapshot_type
            )
        return self.from_response(
            response, "Snapshot failed", snapshot_type=self.snapshot_type
        )

    async def post_execute(self, context: CrawlContext, result: StepResult) -> None:
        await super().post_execute(context, result)
        if not result.success or not isinstance(result.data, str):
            return
        analysis = analyze_snapshot(result.data)
        result.metadata.update(analysis)
        session_metadata = {
            "image_count": analysis["image_count"],
            "word_count": analysis["text_length"],
        }
        if self.name == INITIAL_SNAPSHOT:
            session_metadata["has_expand_button"] = analysis["has_expand_button"]
        context.store.update_metadata(context.session_id, session_metadata)
        logger.debug("Snapshot %s analysis: %s", self.name, analysis)


@dataclass(frozen=True)
class ClickStep(Step):
    """Clicks a selector; in optional mode a missing target is a skip."""

    selector: str = ""
    optional: bool = False

    kind: ClassVar[StepKind] = StepKind.CLICK

    @classmethod
    def for_expand_button(cls) -> "ClickStep":
        return cls(
            name=CLICK_EXPAND,
            description=f"Click expand control {EXPAND_SELECTOR}",
            timeout_ms=5_000,
            selector=EXPAND_SELECTOR,
            optional=True,
        )

    def _skipped(self, reason: str, **metadata: Any) -> StepResult:
        return self.success(
            {"clicked": False, "skipped": True},
            selector=self.selector,
            optional=True,
            skipped=True,
            skip_reason=reason,
            **metadata,
        )

    async def execute(self, context: CrawlContext) -> StepResult:
        backend = context.backend
        if self.optional:
            probe = await backend.wait_for(
                self.selector, timeout_ms=min(OPTIONAL_PROBE_MS, self.timeout_ms)
            )
            if not probe.success:
                logger.info("Optional target %s not present, skipping click", self.selector)
                return self._skipped("element_not_found")
        try:
            response = await backend.click(self.selector, timeout_ms=self.timeout_ms)
        except Exception as exc:  # noqa: BLE001 - optional clicks never fail the step
            if not self.optional:
                raise
            return self._skipped("click_exception_optional", error=str(exc))
        if not response.success and self.optional:
            logger.warning("Optional click on %s failed: %s", self.selector, response.error)
            return self._skipped("click_failed_optional", error=response.error)
        return self.from_response(
            response, "Click failed", selector=self.selector, optional=self.optional, clicked=response.success
        )


@dataclass(frozen=True)
class ScreenshotStep(Step):
    full_page: bool = True

    kind: ClassVar[StepKind] = StepKind.SCREENSHOT

    @classmethod
    def full(cls) -> "ScreenshotStep":
        return cls(name=SCREENSHOT, description="Capture full-page screenshot", timeout_ms=10_000)

    def target_path(self, context: CrawlContext) -> Optional[Path]:
        if context.screenshot_dir is None:
            return None
        stamp = utc_now().strftime("%Y%m%dT%H%M%S%fZ")
        return context.screenshot_dir / f"screenshot-{context.session_id[:8]}-{stamp}.png"

    async def execute(self, context: CrawlContext) -> StepResult:
        path = self.target_path(context)
        response = await context.backend.screenshot(path, full_page=self.full_page)
        return self.from_response(
            response,
            "Screenshot failed",
            screenshot_path=str(path) if path else None,
            full_page=self.full_page,
        )
