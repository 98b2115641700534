from typing import Any, Dict, Optional, Protocol
from urllib.parse import urlsplit

from .adapter_generic import GenericProductExtractor, extract_generic


class FieldExtractor(Protocol):
    """
    Pulls raw product fields from a rendered page.

    Returning None means "not a product page / content not ready" and is
    reported as a skip, not a failure.
    """

    async def extract(self, page: Any, url: str) -> Optional[Dict[str, Any]]: ...


class ExtractorRegistry:
    """
    Picks an extractor by host suffix, falling back to the generic one.
    Itself a FieldExtractor, so the scheduler only ever sees one object.
    """

    def __init__(self, default: Optional[FieldExtractor] = None):
        self.default = default or GenericProductExtractor()
        self._by_domain: Dict[str, FieldExtractor] = {}

    def register(self, domain: str, extractor: FieldExtractor) -> None:
        self._by_domain[domain.lower().lstrip(".")] = extractor

    def pick(self, url: str) -> FieldExtractor:
        host = (urlsplit(url).hostname or "").lower()
        for domain, extractor in self._by_domain.items():
            if host == domain or host.endswith("." + domain):
                return extractor
        return self.default

    async def extract(self, page: Any, url: str) -> Optional[Dict[str, Any]]:
        return await self.pick(url).extract(page, url)


__all__ = ["ExtractorRegistry", "FieldExtractor", "GenericProductExtractor", "extract_generic"]
