"""
Rendering of books into print-ready PDFs.

``Renderer`` is the seam the orchestrator depends on. ``PlaywrightRenderer``
drives headless Chromium: it loads a static template per document type,
injects the serialized book, waits for the template to report it has laid
out the pages, and prints a zero-margin PDF at the exact physical size.

A renderer is a scoped resource. Use it as an async context manager so the
browser is closed on every exit path, including timeouts.
"""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Optional, Sequence

from playwright.async_api import Browser, Page, Playwright, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .configuration import RendererSettings
from .errors import RenderFailure, RenderTimeout
from .models import DocumentType
from .pagination import Book
from .print_spec import Dimensions

logger = logging.getLogger(__name__)

INJECT_BOOK_DATA = """(data) => {
  window.__BOOK_DATA__ = data;
  window.dispatchEvent(new Event('bookDataReady'));
}"""
TEMPLATE_READY = "() => window.__BOOK_READY__ === true"
FONTS_READY = "() => document.fonts.ready.then(() => true)"


class Renderer(ABC):
    """Turns a book into PDF bytes for one document type."""

    async def __aenter__(self) -> "Renderer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_value, traceback) -> None:
        await self.close()

    async def start(self) -> None:
        return None

    async def close(self) -> None:
        return None

    @abstractmethod
    async def render(
        self,
        book: Book,
        document_type: DocumentType,
        dimensions: Dimensions,
        page_count: Optional[int] = None,
    ) -> bytes:
        raise NotImplementedError


class PlaywrightRenderer(Renderer):
    """Headless Chromium renderer; one browser per scope, one tab per document."""

    def __init__(
        self,
        template_base_url: str,
        ready_timeout: float = 20.0,
        settle_delay: float = 1.0,
        chromium_args: Sequence[str] = (),
    ) -> None:
        self.template_base_url = template_base_url.rstrip("/")
        self.ready_timeout = ready_timeout
        self.settle_delay = settle_delay
        self.chromium_args = list(chromium_args)
        self._playwright: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    @classmethod
    def from_settings(cls, settings: RendererSettings) -> "PlaywrightRenderer":
        return cls(
            template_base_url=settings.template_base_url,
            ready_timeout=settings.ready_timeout,
            settle_delay=settings.settle_delay,
            chromium_args=settings.chromium_args,
        )

    def template_url(self, document_type: DocumentType) -> str:
        return f"{self.template_base_url}/{document_type.value}.html"

    async def start(self) -> None:
        if self._browser is not None:
            return
        try:
            self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=True, args=self.chromium_args)
        except PlaywrightError as exc:
            await self.close()
            raise RenderFailure(f"Failed to launch browser: {exc}", stage="rendering") from exc
        logger.info("Headless browser launched")

    async def close(self) -> None:
        browser, self._browser = self._browser, None
        playwright, self._playwright = self._playwright, None
        try:
            if browser is not None:
                await browser.close()
        finally:
            if playwright is not None:
                await playwright.stop()

    async def render(
        self,
        book: Book,
        document_type: DocumentType,
        dimensions: Dimensions,
        page_count: Optional[int] = None,
    ) -> bytes:
        if self._browser is None:
            raise RenderFailure("Renderer has not been started", stage="rendering")

        page: Optional[Page] = None
        try:
            page = await self._browser.new_page()
            # one deadline for the whole document, not one per wait
            pdf = await asyncio.wait_for(
                self._render_page(page, book, document_type, dimensions, page_count),
                timeout=self.ready_timeout + self.settle_delay,
            )
        except (PlaywrightTimeoutError, asyncio.TimeoutError) as exc:
            raise RenderTimeout(
                f"{document_type.value} template did not become ready within {self.ready_timeout}s",
                stage="rendering",
            ) from exc
        except PlaywrightError as exc:
            raise RenderFailure(f"{document_type.value} render failed: {exc}", stage="rendering") from exc
        finally:
            if page is not None:
                await self._close_page(page)

        logger.info(f"Rendered {document_type.value} PDF ({len(pdf)} bytes, {dimensions.css_width} x {dimensions.css_height})")
        return pdf

    async def _render_page(
        self,
        page: Page,
        book: Book,
        document_type: DocumentType,
        dimensions: Dimensions,
        page_count: Optional[int],
    ) -> bytes:
        timeout_ms = self.ready_timeout * 1000
        await page.goto(self.template_url(document_type), wait_until="networkidle", timeout=timeout_ms)
        await page.evaluate(INJECT_BOOK_DATA, book.to_template_payload(page_count))
        await page.wait_for_function(TEMPLATE_READY, timeout=timeout_ms)
        await page.evaluate(FONTS_READY)
        # image decode and layout settle after the ready flag
        await asyncio.sleep(self.settle_delay)
        return await page.pdf(
            width=dimensions.css_width,
            height=dimensions.css_height,
            print_background=True,
            margin={"top": "0", "right": "0", "bottom": "0", "left": "0"},
        )

    async def _close_page(self, page: Page) -> None:
        try:
            await page.close()
        except PlaywrightError as exc:
            # browser already gone (shutdown or crash)
            logger.debug(f"Ignoring error while closing page: {exc}")
