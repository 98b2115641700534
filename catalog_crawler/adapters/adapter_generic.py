import json
import re
from typing import Any, Dict, List, Optional

from bs4 import BeautifulSoup

CURRENCY_SYMBOLS = {
    "kr": "DKK",
    "DKK": "DKK",
    "€": "EUR",
    "$": "USD",
    "£": "GBP",
}

SKU_PATTERNS = [
    re.compile(r"Varenr\.?:?\s*(\d{4}[\s-]?\d{4,12}|\d+)", re.I),
    re.compile(r"Varenummer:?\s*(\d{4}[\s-]?\d{4,12}|\d+)", re.I),
    re.compile(r"Artikelnr\.?:?\s*(\d+)", re.I),
    re.compile(r"Produktnr\.?:?\s*(\d+)", re.I),
    re.compile(r"SKU:?\s*(\d+)", re.I),
    re.compile(r"Item #:?\s*(\d+)", re.I),
]
EAN_PATTERN = re.compile(r"EAN(?:-nr)?\.?:?\s*(\d{8,14})", re.I)
VVS_PATTERN = re.compile(r"VVS(?:-nr)?\.?:?\s*(\d{3,})", re.I)

NAME_SELECTORS = ["[data-test='product-name']", "h1.page-title", "h1", ".product-name", "[itemprop='name']"]
PRICE_SELECTORS = [
    "[itemprop='price']",
    ".price-wrapper .price",
    ".product-price",
    "[data-price]",
    ".regular-price",
    ".price",
    "[class*='price']",
]
STOCK_SELECTORS = [".stock-status", ".availability", "[data-stock]", ".stock", "[class*='stock']"]
BREADCRUMB_SELECTOR = ".breadcrumbs a, .breadcrumb a, [class*='breadcrumb'] a"

IN_STOCK_WORDS = ("på lager", "tilgængelig", "in stock")
OUT_OF_STOCK_WORDS = ("ikke på lager", "udsolgt", "out of stock", "ikke tilgængelig")


def _safe_json_loads(text: str):
    try:
        return json.loads(text)
    except ValueError:
        return None


def _is_product(node: Any) -> bool:
    if not isinstance(node, dict):
        return False
    t = node.get("@type")
    return t == "Product" or (isinstance(t, list) and "Product" in t)


def _pick_product_node(data: Any) -> Optional[Dict[str, Any]]:
    """
    Given parsed JSON-LD data (dict or list), find a schema.org Product node.
    """
    if isinstance(data, dict):
        # Some sites use @graph
        for node in data.get("@graph", []) or []:
            if _is_product(node):
                return node
        if _is_product(data):
            return data

    if isinstance(data, list):
        for node in data:
            if _is_product(node):
                return node
    return None


def _first(value):
    return value[0] if isinstance(value, list) and value else value


def _extract_from_ld_json(soup: BeautifulSoup) -> Dict[str, Any]:
    result: Dict[str, Any] = {}
    for script in soup.find_all("script", type="application/ld+json"):
        if not script.string:
            continue
        prod = _pick_product_node(_safe_json_loads(script.string))
        if not prod:
            continue

        result["name"] = _first(prod.get("name"))
        result["sku"] = prod.get("sku") or prod.get("mpn") or prod.get("productID")
        result["ean"] = prod.get("gtin13") or prod.get("gtin") or prod.get("gtin14") or prod.get("gtin8")
        result["category"] = _first(prod.get("category"))

        brand = prod.get("brand")
        result["brand"] = brand.get("name") if isinstance(brand, dict) else brand

        offers = _first(prod.get("offers")) or {}
        if isinstance(offers, dict):
            price = offers.get("price") or offers.get("lowPrice")
            if isinstance(price, (int, float)) and not isinstance(price, bool):
                result["price_numeric"] = float(price)
            elif isinstance(price, str):
                result["price_text"] = price
            result["currency"] = offers.get("priceCurrency")
            availability = offers.get("availability")
            if isinstance(availability, str):
                result["in_stock"] = availability.rsplit("/", 1)[-1].lower() in ("instock", "limitedavailability")
        break
    return {k: v for k, v in result.items() if v not in (None, "")}


def _text_of(soup: BeautifulSoup, selectors: List[str]) -> Optional[str]:
    for sel in selectors:
        node = soup.select_one(sel)
        if node is None:
            continue
        text = node.get("content") or node.get("data-price") or node.get_text(" ", strip=True)
        if text and text.strip():
            return text.strip()
    return None


def _stock_from_text(text: Optional[str]) -> Optional[bool]:
    if not text:
        return None
    lowered = text.lower()
    if any(word in lowered for word in OUT_OF_STOCK_WORDS):
        return False
    if any(word in lowered for word in IN_STOCK_WORDS):
        return True
    return None


def _maybe_infer_currency_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    for sym, cur in CURRENCY_SYMBOLS.items():
        if sym in text:
            return cur
    return None


def extract_generic(html: str, url: Optional[str] = None) -> Optional[Dict[str, Any]]:
    """
    Pull product fields out of rendered HTML.

    JSON-LD Product data wins; visible elements and labelled identifiers fill
    the gaps. Returns None when the page carries no name and no identifier,
    i.e. it is not (yet) a product page.
    """
    soup = BeautifulSoup(html, "lxml")
    data = _extract_from_ld_json(soup)

    if not data.get("name"):
        data["name"] = _text_of(soup, NAME_SELECTORS)

    body_text = soup.body.get_text(" ", strip=True) if soup.body else ""
    if not data.get("sku"):
        for pattern in SKU_PATTERNS:
            m = pattern.search(body_text)
            if m:
                data["sku"] = re.sub(r"[\s-]", "", m.group(1))
                break
    if not data.get("ean"):
        m = EAN_PATTERN.search(body_text)
        if m:
            data["ean"] = m.group(1)
    m = VVS_PATTERN.search(body_text)
    if m:
        data["vvs"] = m.group(1)

    if data.get("price_numeric") is None and not data.get("price_text"):
        data["price_text"] = _text_of(soup, PRICE_SELECTORS)
    if not data.get("currency"):
        data["currency"] = _maybe_infer_currency_from_text(data.get("price_text"))

    if data.get("in_stock") is None:
        data["in_stock"] = _stock_from_text(_text_of(soup, STOCK_SELECTORS))

    crumbs = [a.get_text(strip=True) for a in soup.select(BREADCRUMB_SELECTOR)]
    crumbs = [c for c in crumbs if c]
    if len(crumbs) > 1 and not data.get("category"):
        data["category"] = crumbs[1]
    if len(crumbs) > 2:
        data["subcategory"] = crumbs[2]

    if not any(data.get(k) for k in ("name", "sku", "ean", "vvs")):
        return None
    return data


class GenericProductExtractor:
    """FieldExtractor over the rendered page's HTML."""

    async def extract(self, page, url: str) -> Optional[Dict[str, Any]]:
        html = await page.content()
        return extract_generic(html, url=url)
