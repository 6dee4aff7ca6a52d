"""Remote Tool Backend contract and its Playwright implementation."""

from __future__ import annotations

import asyncio
import logging
import time
from pathlib import Path
from typing import Callable, Optional, Protocol

from playwright.async_api import (
    Browser,
    BrowserContext,
    Error as PlaywrightError,
    Page,
    Playwright,
    TimeoutError as PlaywrightTimeoutError,
    async_playwright,
)

from .config import CrawlConfig
from .models import BackendResponse

logger = logging.getLogger("wx_mdx.backend")


class ToolBackend(Protocol):
    """Operations the orchestrator needs from a browser-automation backend."""

    async def navigate(self, url: str, timeout_ms: int) -> BackendResponse: ...

    async def wait_for(
        self,
        selector: Optional[str] = None,
        timeout_ms: int = 15_000,
        state: str = "visible",
    ) -> BackendResponse: ...

    async def snapshot(self) -> BackendResponse: ...

    async def click(self, selector: str, timeout_ms: int) -> BackendResponse: ...

    async def screenshot(self, path: Optional[Path], full_page: bool = True) -> BackendResponse: ...

    async def close(self) -> None: ...


BackendFactory = Callable[[], ToolBackend]


class PlaywrightBackend:
    """Backend bound to one browser context and page, owned by one session."""

    def __init__(self, browser: Browser, config: CrawlConfig) -> None:
        self._browser = browser
        self._config = config
        self._context: Optional[BrowserContext] = None
        self._page: Optional[Page] = None

    async def _ensure_page(self) -> Page:
        if self._page is None:
            self._context = await self._browser.new_context(
                viewport={"width": 1920, "height": 1080},
                user_agent=self._config.user_agent,
                locale=self._config.locale,
            )
            self._page = await self._context.new_page()
        return self._page

    async def navigate(self, url: str, timeout_ms: int) -> BackendResponse:
        page = await self._ensure_page()
        start = time.perf_counter()
        try:
            response = await page.goto(url, wait_until="domcontentloaded", timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            return BackendResponse(False, error=f"Navigation timed out: {exc}")
        except PlaywrightError as exc:
            return BackendResponse(False, error=f"Navigation failed: {exc}")
        status = response.status if response is not None else None
        if status is not None and status >= 400:
            return BackendResponse(False, error=f"HTTP {status} while loading {url}")
        return BackendResponse(
            True,
            data={"url": page.url, "status": status},
            metadata={"load_time_ms": int((time.perf_counter() - start) * 1000)},
        )

    async def wait_for(
        self,
        selector: Optional[str] = None,
        timeout_ms: int = 15_000,
        state: str = "visible",
    ) -> BackendResponse:
        page = await self._ensure_page()
        if selector is None:
            await page.wait_for_timeout(timeout_ms)
            return BackendResponse(True, data={"waited_ms": timeout_ms})
        try:
            await page.wait_for_selector(selector, state=state, timeout=timeout_ms)
        except PlaywrightTimeoutError:
            return BackendResponse(
                False,
                data={"found": False},
                error=f"Timed out waiting for {selector} to be {state}",
            )
        return BackendResponse(True, data={"found": True})

    async def snapshot(self) -> BackendResponse:
        page = await self._ensure_page()
        html = await page.content()
        return BackendResponse(True, data=html, metadata={"final_url": page.url})

    async def click(self, selector: str, timeout_ms: int) -> BackendResponse:
        page = await self._ensure_page()
        try:
            await page.click(selector, timeout=timeout_ms)
        except PlaywrightTimeoutError as exc:
            return BackendResponse(False, error=f"Click on {selector} timed out: {exc}")
        except PlaywrightError as exc:
            return BackendResponse(False, error=f"Click on {selector} failed: {exc}")
        return BackendResponse(True, data={"clicked": True})

    async def screenshot(self, path: Optional[Path], full_page: bool = True) -> BackendResponse:
        page = await self._ensure_page()
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)
        data = await page.screenshot(path=str(path) if path else None, full_page=full_page)
        return BackendResponse(
            True,
            data={"path": str(path) if path else None, "bytes": len(data)},
        )

    async def close(self) -> None:
        if self._context is not None:
            await self._context.close()
        self._context = None
        self._page = None


class PlaywrightBackendFactory:
    """Owns the Playwright browser and hands out one backend per session."""

    def __init__(self, config: CrawlConfig) -> None:
        self._config = config
        self._manager = None
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def start(self) -> None:
        if self._browser is not None:
            return
        self._manager = async_playwright()
        self._playwright = await self._manager.start()
        self._browser = await self._playwright.chromium.launch(
            headless=self._config.headless,
            args=["--disable-blink-features=AutomationControlled"],
        )
        logger.debug("Launched Chromium (headless=%s)", self._config.headless)

    def __call__(self) -> PlaywrightBackend:
        if self._browser is None:
            raise RuntimeError("PlaywrightBackendFactory.start() has not been awaited")
        return PlaywrightBackend(self._browser, self._config)

    async def aclose(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        self._manager = None


class _LeasedBackend:
    """View of a shared backend that holds the lease until closed."""

    def __init__(self, backend: ToolBackend, lock: asyncio.Lock) -> None:
        self._backend = backend
        self._lock = lock
        self._held = False

    async def acquire(self) -> None:
        """Wait for the shared backend; a no-op once the lease is held."""
        if not self._held:
            await self._lock.acquire()
            self._held = True

    async def _acquire(self) -> ToolBackend:
        await self.acquire()
        return self._backend

    async def navigate(self, url: str, timeout_ms: int) -> BackendResponse:
        return await (await self._acquire()).navigate(url, timeout_ms)

    async def wait_for(
        self,
        selector: Optional[str] = None,
        timeout_ms: int = 15_000,
        state: str = "visible",
    ) -> BackendResponse:
        return await (await self._acquire()).wait_for(selector, timeout_ms, state)

    async def snapshot(self) -> BackendResponse:
        return await (await self._acquire()).snapshot()

    async def click(self, selector: str, timeout_ms: int) -> BackendResponse:
        return await (await self._acquire()).click(selector, timeout_ms)

    async def screenshot(self, path: Optional[Path], full_page: bool = True) -> BackendResponse:
        return await (await self._acquire()).screenshot(path, full_page)

    async def close(self) -> None:
        if self._held:
            self._held = False
            self._lock.release()


class SingleFlightBackendFactory:
    """Serializes sessions over a backend that exposes a single implicit page.

    The orchestrator takes the lease through ``acquire`` before any step timer
    starts and gives it back when it closes the backend, so two sessions never interleave
    operations on the shared page.
    """

    def __init__(self, backend: ToolBackend) -> None:
        self._backend = backend
        self._lock = asyncio.Lock()

    def __call__(self) -> ToolBackend:
        return _LeasedBackend(self._backend, self._lock)

    async def aclose(self) -> None:
        await self._backend.close()
