import asyncio
from contextlib import asynccontextmanager
from typing import Dict, Iterable, Optional

import pytest

from catalog_crawler.config import load_settings
from catalog_crawler.errors import DiscoveryError, NavigationError, PageTimeoutError
from catalog_crawler.store import MemoryStore

BASE_ENV = {
    "SUPABASE_URL": "https://example.supabase.co",
    "SUPABASE_SERVICE_KEY": "service-key",
    "CRAWLER_SITEMAPS": "https://www.stark.dk/sitemap.xml",
    "CRAWLER_DELAY": "0",
    "CRAWLER_RETRY_DELAY": "0",
    "SITEMAP_RETRY_DELAY": "0",
}


async def no_sleep(_seconds):
    return None


class FakePage:
    def __init__(self):
        self.url = None


class FakeRenderer:
    """Stands in for PlaywrightRenderer; records contexts and navigations."""

    def __init__(self, fail_urls: Iterable[str] = (), timeout_urls: Iterable[str] = (), delay: float = 0.0):
        self.fail_urls = set(fail_urls)
        self.timeout_urls = set(timeout_urls)
        self.delay = delay
        self.open_contexts = 0
        self.max_open = 0
        self.opened = 0
        self.closed = 0
        self.navigated = []

    @asynccontextmanager
    async def page(self):
        self.opened += 1
        self.open_contexts += 1
        self.max_open = max(self.max_open, self.open_contexts)
        try:
            yield FakePage()
        finally:
            self.open_contexts -= 1
            self.closed += 1

    async def navigate(self, page, url, timeout_ms):
        self.navigated.append(url)
        if self.delay:
            await asyncio.sleep(self.delay)
        if url in self.timeout_urls:
            raise PageTimeoutError(f"Navigation to {url} timed out after {timeout_ms}ms")
        if url in self.fail_urls:
            raise NavigationError(f"Navigation to {url} failed: net::ERR_CONNECTION_RESET")
        page.url = url
        return page


class FakeExtractor:
    """Returns canned field dicts per URL; an Exception value is raised."""

    def __init__(self, pages: Optional[Dict[str, object]] = None):
        self.pages = pages or {}
        self.calls = []

    async def extract(self, page, url):
        self.calls.append(url)
        value = self.pages.get(url)
        if isinstance(value, Exception):
            raise value
        return dict(value) if value is not None else None


def urlset(*locs: str) -> str:
    entries = "".join(f"<url><loc>{loc}</loc></url>" for loc in locs)
    return f'<?xml version="1.0" encoding="UTF-8"?><urlset xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</urlset>'


def sitemapindex(*locs: str) -> str:
    entries = "".join(f"<sitemap><loc>{loc}</loc></sitemap>" for loc in locs)
    return f'<?xml version="1.0" encoding="UTF-8"?><sitemapindex xmlns="http://www.sitemaps.org/schemas/sitemap/0.9">{entries}</sitemapindex>'


class FakeSitemaps:
    """Async sitemap fetch backed by a dict; missing URLs fail like a 404."""

    def __init__(self, documents: Dict[str, str]):
        self.documents = documents
        self.fetched = []

    async def __call__(self, url):
        self.fetched.append(url)
        if url not in self.documents:
            raise DiscoveryError(f"GET {url} returned HTTP 404")
        return self.documents[url]


@pytest.fixture
def settings():
    return load_settings(dict(BASE_ENV))


@pytest.fixture
def store():
    return MemoryStore()
