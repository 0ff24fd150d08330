"""Classify extracted product data into stock outcomes."""

from __future__ import annotations

import re
from typing import Callable, Iterable, List, Optional, Sequence, TypeVar
from urllib.parse import urljoin

from .config import GlobalConfig, TargetConfig
from .models import CheckOutcome, ProductRecord, RawItem

NAME_ERROR = "Product name"
URL_ERROR = "Product URL"
OUT_OF_STOCK_ERROR = "Out of stock"
PRICE_ERROR = "Price"

_NON_PRICE_CHARS = re.compile(r"[^\d.]")

T = TypeVar("T")


class FieldError(Exception):
    """A single product field could not be resolved."""


def parse_price(text: Optional[str]) -> float:
    """Strip everything except digits and dots, then convert to a number."""
    if text is None:
        raise FieldError("price element missing")
    cleaned = _NON_PRICE_CHARS.sub("", text)
    if not cleaned:
        raise FieldError(f"no digits in price text {text!r}")
    try:
        return float(cleaned)
    except ValueError as exc:
        raise FieldError(f"malformed price {text!r}") from exc


def resolve_name(item: RawItem) -> str:
    if item.name is None:
        raise FieldError("name element missing")
    return item.name.strip()


def resolve_url(item: RawItem, target: TargetConfig) -> str:
    if not target.locators.product_url:
        return target.url
    if not item.url:
        raise FieldError("product link missing")
    try:
        return urljoin(target.url, item.url)
    except ValueError as exc:
        raise FieldError(f"malformed product link {item.url!r}") from exc


def resolve_out_of_stock(item: RawItem, target: TargetConfig) -> bool:
    if target.out_of_stock_text:
        if item.out_of_stock_text is None:
            return False
        pattern = re.compile(target.out_of_stock_text, re.IGNORECASE)
        return pattern.search(item.out_of_stock_text) is not None
    return item.out_of_stock_present


def _attempt(errors: List[str], tag: str, resolver: Callable[[], T]) -> Optional[T]:
    try:
        return resolver()
    except (FieldError, re.error):
        errors.append(tag)
        return None


def build_record(item: RawItem, target: TargetConfig) -> ProductRecord:
    """Resolve each field independently; failures become error tags."""
    errors: List[str] = []
    name = _attempt(errors, NAME_ERROR, lambda: resolve_name(item))
    url = _attempt(errors, URL_ERROR, lambda: resolve_url(item, target))
    out_of_stock = _attempt(
        errors, OUT_OF_STOCK_ERROR, lambda: resolve_out_of_stock(item, target)
    )
    price = _attempt(errors, PRICE_ERROR, lambda: parse_price(item.price_text))
    return ProductRecord(
        name=name,
        url=url,
        out_of_stock=out_of_stock,
        price=price,
        errors=errors,
    )


def build_records(items: Sequence[RawItem], target: TargetConfig) -> List[ProductRecord]:
    """Evaluate raw items and validate the product count."""
    records = [build_record(item, target) for item in items]
    expected = target.expected_product_count
    if len(records) != expected:
        if not records:
            records.append(
                ProductRecord(errors=[f"Error loading page for {target.store}."])
            )
        else:
            records[-1].errors.append(
                f"Did not find the expected number of results for {target.store}. "
                f"Expected {expected}, found {len(records)}."
            )
    return records


def is_qualifying(record: ProductRecord, ceiling: float) -> bool:
    if record.has_errors or record.out_of_stock:
        return False
    if record.price is None:
        return False
    return record.price < ceiling


def classify(records: Iterable[ProductRecord], ceiling: float) -> CheckOutcome:
    """Partition records into errors and qualifying in-stock items."""
    records = list(records)
    errors = [record for record in records if record.has_errors]
    in_stock = [record for record in records if is_qualifying(record, ceiling)]
    return CheckOutcome(records=records, errors=errors, in_stock=in_stock)


def evaluate(
    items: Sequence[RawItem],
    target: TargetConfig,
    settings: GlobalConfig,
) -> CheckOutcome:
    """Evaluate one page's extracted items for the given target."""
    records = build_records(items, target)
    return classify(records, settings.max_price_for(target))
