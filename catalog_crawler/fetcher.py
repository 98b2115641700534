import asyncio
import logging
import re
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

from playwright.async_api import Browser, Page, Playwright, Route, async_playwright
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import TimeoutError as PlaywrightTimeoutError

from .errors import NavigationError, PageTimeoutError

logger = logging.getLogger(__name__)

UA = "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 (KHTML, like Gecko) Chrome Safari CatalogCrawler/1.0"

LAUNCH_ARGS = ["--no-sandbox", "--disable-setuid-sandbox", "--disable-dev-shm-usage", "--disable-gpu"]

BLOCKED_RESOURCE_TYPES = {"image", "font", "stylesheet", "media"}
BLOCKED_URL_RE = re.compile(r"\.(png|jpe?g|gif|svg|webp|css|woff2?|ttf)(\?|$)", re.I)

# First element that tells us the product template has rendered.
READY_SELECTOR = "[data-test='product-name'], h1, [itemprop='name']"


class PlaywrightRenderer:
    """
    One Chromium per run, one fresh browser context per task.

    Usage:
        async with PlaywrightRenderer(headless=True) as renderer:
            async with renderer.page() as page:
                await renderer.navigate(page, url, timeout_ms=60000)
    """

    def __init__(
        self,
        headless: bool = True,
        user_agent: str = UA,
        locale: str = "da-DK",
        block_assets: bool = True,
        ready_selector: str = READY_SELECTOR,
        ready_timeout_ms: int = 5000,
        settle_ms: int = 800,
    ):
        self.headless = headless
        self.user_agent = user_agent
        self.locale = locale
        self.block_assets = block_assets
        self.ready_selector = ready_selector
        self.ready_timeout_ms = ready_timeout_ms
        self.settle_ms = settle_ms
        self._pw: Optional[Playwright] = None
        self._browser: Optional[Browser] = None

    async def __aenter__(self) -> "PlaywrightRenderer":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    async def start(self) -> None:
        self._pw = await async_playwright().start()
        self._browser = await self._pw.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
        logger.info("[INIT] Browser initialized (headless=%s, block_assets=%s)", self.headless, self.block_assets)

    async def close(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._pw is not None:
            await self._pw.stop()
            self._pw = None
        logger.info("[SHUTDOWN] Browser closed")

    @asynccontextmanager
    async def page(self) -> AsyncIterator[Page]:
        """
        Isolated context + page. The context is closed on every exit path so
        cookies and storage never leak between tasks.
        """
        if self._browser is None:
            raise RuntimeError("PlaywrightRenderer.start() has not been called")

        ctx = await self._browser.new_context(
            user_agent=self.user_agent,
            viewport={"width": 1280, "height": 720},
            locale=self.locale,
            ignore_https_errors=True,
        )
        try:
            if self.block_assets:
                await ctx.route("**/*", _block_assets)
            yield await ctx.new_page()
        finally:
            try:
                await ctx.close()
            except PlaywrightError as exc:
                logger.debug("Context close failed: %s", exc)

    async def navigate(self, page: Page, url: str, timeout_ms: int) -> Page:
        try:
            await page.goto(url, timeout=timeout_ms, wait_until="domcontentloaded")
        except PlaywrightTimeoutError as exc:
            raise PageTimeoutError(f"Navigation to {url} timed out after {timeout_ms}ms") from exc
        except PlaywrightError as exc:
            raise NavigationError(f"Navigation to {url} failed: {exc}") from exc

        # Bounded readiness wait; a missing selector is the extractor's call, not ours.
        if self.ready_selector and self.ready_timeout_ms:
            try:
                await page.wait_for_selector(self.ready_selector, timeout=self.ready_timeout_ms)
            except PlaywrightTimeoutError:
                logger.debug("Product elements not found immediately on %s, continuing...", url)
        if self.settle_ms:
            await asyncio.sleep(self.settle_ms / 1000)
        return page


async def _block_assets(route: Route) -> None:
    request = route.request
    if request.resource_type in BLOCKED_RESOURCE_TYPES or BLOCKED_URL_RE.search(request.url):
        await route.abort()
    else:
        await route.continue_()
