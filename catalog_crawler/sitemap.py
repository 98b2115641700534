"""
Sitemap discovery: expand sitemap indexes recursively and keep the page URLs
that look like product pages.
"""

import asyncio
import gzip
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, Iterable, List, Optional, Set, Tuple, Union
from urllib.parse import parse_qs, urlsplit

import requests
import tldextract
from bs4 import BeautifulSoup

from .errors import DiscoveryError, RetryExhaustedError
from .retry import RetryPolicy, linear_backoff

logger = logging.getLogger(__name__)

# Bundled public-suffix snapshot only, so classification never touches the network.
_EXTRACT = tldextract.TLDExtract(suffix_list_urls=())

SitemapBody = Union[str, bytes]
Fetch = Callable[[str], Awaitable[SitemapBody]]


@dataclass(frozen=True)
class UrlRules:
    """
    Product URL classification rules. Deny-list wins over everything.
    """

    excluded_segments: Tuple[str, ...] = (
        "/brands/",
        "/konkurrence",
        "/klima",
        "/kundeservice",
        "/om-stark",
        "/inspiration",
        "/services/",
        "/blog",
        "/customer",
        "/bygger",
        "/projekter",
        "/catalogsearch/",
        "/kategori/",
    )
    excluded_extensions: Tuple[str, ...] = (".pdf", ".jpg", ".jpeg", ".png", ".gif", ".svg", ".webp")
    product_query_param: str = "id"
    category_segments: Tuple[str, ...] = (
        "/maskiner/",
        "/vaerktoej/",
        "/byggematerialer/",
        "/el-artikler/",
        "/vvs/",
        "/havemaskiner/",
        "/sikkerhed/",
        "/beslag/",
        "/dore/",
        "/vinduer/",
    )
    allowed_domains: Tuple[str, ...] = ("stark.dk",)


DEFAULT_RULES = UrlRules()


def _registered_domain(host: str) -> str:
    ext = _EXTRACT(host)
    return f"{ext.domain}.{ext.suffix}" if ext.suffix else ext.domain


def domain_allowed(url: str, rules: UrlRules = DEFAULT_RULES) -> bool:
    if not rules.allowed_domains:
        return True
    try:
        host = urlsplit(url.strip()).hostname
    except ValueError:
        return False
    return bool(host) and _registered_domain(host.lower()) in rules.allowed_domains


def is_candidate_url(url: str, rules: UrlRules = DEFAULT_RULES) -> bool:
    """
    Decide whether a sitemap `loc` is worth rendering.

    1. Reject foreign hosts, excluded sections and binary assets.
    2. Accept URLs carrying the product-identity query parameter.
    3. Otherwise accept only known product-category paths.
    """
    if not url:
        return False
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return False
    if parts.scheme not in ("http", "https") or not parts.hostname:
        return False

    if not domain_allowed(url, rules):
        return False

    path = parts.path.lower()
    if any(segment in path for segment in rules.excluded_segments):
        return False
    if path.endswith(rules.excluded_extensions):
        return False

    if rules.product_query_param in parse_qs(parts.query):
        return True
    return any(segment in path for segment in rules.category_segments)


def parse_sitemap(body: SitemapBody) -> Tuple[str, List[str]]:
    """
    Returns ("index", child sitemap URLs) or ("urlset", page URLs).
    """
    soup = BeautifulSoup(body, "xml")

    index = soup.find("sitemapindex")
    if index is not None:
        children = []
        for node in index.find_all("sitemap"):
            loc = node.find("loc")
            if loc and loc.get_text(strip=True):
                children.append(loc.get_text(strip=True))
        return "index", children

    urlset = soup.find("urlset")
    if urlset is not None:
        pages = []
        for node in urlset.find_all("url"):
            loc = node.find("loc")
            if loc and loc.get_text(strip=True):
                pages.append(loc.get_text(strip=True))
        return "urlset", pages

    raise DiscoveryError("Document is neither a sitemapindex nor a urlset")


class SitemapResolver:
    """
    Walks sitemap indexes depth-first. Every sitemap URL is fetched at most
    once per resolver run, which also breaks reference cycles.
    """

    def __init__(
        self,
        rules: UrlRules = DEFAULT_RULES,
        fetch: Optional[Fetch] = None,
        retry_policy: Optional[RetryPolicy] = None,
        session: Optional[requests.Session] = None,
        timeout: float = 30.0,
        user_agent: str = "CatalogCrawler/1.0 (Compliant Bot)",
        child_delay: float = 0.3,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.rules = rules
        self._fetch = fetch or self._http_fetch
        self._retry = retry_policy or RetryPolicy(
            max_attempts=3, backoff=linear_backoff(1.0), retry_on=(DiscoveryError,), sleep=sleep
        )
        self._session = session or requests.Session()
        self._timeout = timeout
        self._headers = {
            "User-Agent": user_agent,
            "Accept": "text/xml,application/xml,text/html",
        }
        self._child_delay = child_delay
        self._sleep = sleep
        self.visited: Set[str] = set()
        self.failed: Set[str] = set()

    async def discover(self, roots: Iterable[str]) -> Set[str]:
        self.visited = set()
        self.failed = set()
        found: Set[str] = set()
        for root in roots:
            found |= await self._expand(root)
        logger.info(
            "[SITEMAP] Discovered %d candidate URLs from %d sitemaps (%d failed)",
            len(found),
            len(self.visited),
            len(self.failed),
        )
        return found

    async def _expand(self, url: str) -> Set[str]:
        if url in self.visited:
            return set()
        self.visited.add(url)
        logger.info("[SITEMAP] Parsing %s", url)

        try:
            body = await self._retry.run(lambda: self._fetch(url), describe=f"sitemap {url}")
            kind, locs = parse_sitemap(body)
        except (RetryExhaustedError, DiscoveryError) as exc:
            self.failed.add(url)
            logger.error("[SITEMAP] Giving up on %s: %s", url, exc)
            return set()

        found: Set[str] = set()
        if kind == "index":
            for child in locs:
                if child in self.visited:
                    continue
                found |= await self._expand(child)
                if self._child_delay:
                    await self._sleep(self._child_delay)
            return found

        for loc in locs:
            if is_candidate_url(loc, self.rules):
                found.add(loc)
        if locs and not any(domain_allowed(loc, self.rules) for loc in locs):
            logger.warning(
                "[SITEMAP] %s: all %d URLs are outside the allowed domains %s",
                url,
                len(locs),
                ", ".join(self.rules.allowed_domains),
            )
        logger.debug("[SITEMAP] %s: %d/%d URLs kept", url, len(found), len(locs))
        return found

    async def _http_fetch(self, url: str) -> bytes:
        return await asyncio.to_thread(self._get, url)

    def _get(self, url: str) -> bytes:
        try:
            resp = self._session.get(url, headers=self._headers, timeout=self._timeout)
        except requests.RequestException as exc:
            raise DiscoveryError(f"GET {url} failed: {exc}") from exc
        if resp.status_code >= 400:
            raise DiscoveryError(f"GET {url} returned HTTP {resp.status_code}")

        body = resp.content
        if url.endswith(".gz") or body[:2] == b"\x1f\x8b":
            try:
                body = gzip.decompress(body)
            except OSError as exc:
                raise DiscoveryError(f"Could not decompress {url}: {exc}") from exc
        return body
