import re
from typing import Any, Dict, Optional

from .schema import ProductRecord

# Either space-grouped thousands ("1 234,56") or a plain run of digits and separators.
_PRICE_RE = re.compile(r"\d{1,3}(?:[ \u00a0]\d{3})+(?:[.,]\d{1,2})?(?!\d)|\d[\d.,]*")
_SKU_IN_URL_RE = re.compile(r"[?&]id=(\d{4})-(\d{6,12})")
_SKU_IN_TEXT_RE = re.compile(r"(\d{4})[\s-]*(\d{6,12})")
_WS_RE = re.compile(r"\s+")


def parse_price(text: Any) -> Optional[float]:
    """
    Parse a displayed price into a float.

    The decimal separator is told apart from the thousands separator by
    position and group size: "1.234,56" -> 1234.56, "99,99" -> 99.99,
    "1,234.50" -> 1234.5, "1.234" -> 1234.0. Text without digits gives None.
    """
    if text is None or isinstance(text, bool):
        return None
    if isinstance(text, (int, float)):
        return float(text)

    match = _PRICE_RE.search(str(text))
    if not match:
        return None
    raw = re.sub(r"[ \u00a0]", "", match.group(0)).rstrip(".,")
    if not raw:
        return None

    has_dot, has_comma = "." in raw, "," in raw
    if has_dot and has_comma:
        decimal = "." if raw.rfind(".") > raw.rfind(",") else ","
        thousands = "," if decimal == "." else "."
        raw = raw.replace(thousands, "").replace(decimal, ".")
    elif has_dot or has_comma:
        sep = "." if has_dot else ","
        parts = raw.split(sep)
        if len(parts) > 2 or len(parts[-1]) == 3:
            raw = raw.replace(sep, "")
        else:
            raw = raw.replace(sep, ".")

    try:
        return float(raw)
    except ValueError:
        return None


def clean_text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = _WS_RE.sub(" ", str(value)).strip()
    return text or None


def clean_identifier(value: Any) -> Optional[str]:
    text = clean_text(value)
    if text is None:
        return None
    text = text.strip(".:#-/ ")
    return text or None


def sku_from_url(url: Optional[str]) -> Optional[str]:
    """Derive a SKU from the product-identity query marker, e.g. ?id=6400-5224838."""
    if not url:
        return None
    m = _SKU_IN_URL_RE.search(url)
    return f"{m.group(1)}{m.group(2)}" if m else None


def sku_from_text(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    m = _SKU_IN_TEXT_RE.search(text)
    return f"{m.group(1)}{m.group(2)}" if m else None


def canonical_sku(value: Any) -> Optional[str]:
    """
    Vendor+item SKUs are stored as digits only: "6400-5224838" and
    "6400 5224838" both become "64005224838". Anything else is only cleaned.
    """
    sku = clean_identifier(value)
    if sku and _SKU_IN_TEXT_RE.fullmatch(sku):
        return sku_from_text(sku)
    return sku


def _as_bool(value: Any) -> Optional[bool]:
    if value is None or isinstance(value, bool):
        return value
    text = str(value).strip().lower()
    if text in ("true", "1", "yes", "instock", "in_stock"):
        return True
    if text in ("false", "0", "no", "outofstock", "out_of_stock"):
        return False
    return None


def normalize(url: str, raw: Dict[str, Any], default_currency: Optional[str] = None) -> ProductRecord:
    price_text = clean_text(raw.get("price_text"))
    price_numeric = raw.get("price_numeric")
    if price_numeric is None or isinstance(price_numeric, str):
        price_numeric = parse_price(price_numeric if price_numeric is not None else price_text)

    sku = canonical_sku(raw.get("sku")) or sku_from_url(url)
    ean = clean_identifier(raw.get("ean"))
    if ean:
        ean = ean.replace(" ", "")

    return ProductRecord(
        url=url,
        name=clean_text(raw.get("name")),
        sku=sku,
        ean=ean,
        vvs=clean_identifier(raw.get("vvs")),
        price_text=price_text,
        price_numeric=price_numeric,
        currency=(raw.get("currency") or default_currency) if price_numeric is not None else None,
        in_stock=_as_bool(raw.get("in_stock")),
        category=clean_text(raw.get("category")),
        subcategory=clean_text(raw.get("subcategory")),
        brand=clean_text(raw.get("brand")),
    )
