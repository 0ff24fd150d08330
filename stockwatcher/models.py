"""Core data models for stockwatcher."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional


@dataclass(frozen=True)
class RawItem:
    """Field values read from one product container, before evaluation.

    A ``None`` value means the element for that field was not found.
    """

    name: Optional[str] = None
    url: Optional[str] = None
    out_of_stock_present: bool = False
    out_of_stock_text: Optional[str] = None
    price_text: Optional[str] = None


@dataclass
class ProductRecord:
    """Evaluated product from a single check."""

    name: Optional[str] = None
    url: Optional[str] = None
    out_of_stock: Optional[bool] = None
    price: Optional[float] = None
    errors: List[str] = field(default_factory=list)

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)


@dataclass
class CheckOutcome:
    """Classification of one check's product records."""

    records: List[ProductRecord]
    errors: List[ProductRecord]
    in_stock: List[ProductRecord]


class CheckStatus(str, enum.Enum):
    ERROR = "error"
    EMPTY = "empty"
    SUCCESS = "success"


class WatchPhase(str, enum.Enum):
    """States of a watch scheduler."""

    IDLE = "idle"
    ACQUIRING = "acquiring"
    LOADING = "loading"
    EVALUATING = "evaluating"
    ERROR_BACKOFF = "error_backoff"
    EMPTY_BACKOFF = "empty_backoff"
    SUCCESS_BACKOFF = "success_backoff"


BACKOFF_PHASES = {
    CheckStatus.ERROR: WatchPhase.ERROR_BACKOFF,
    CheckStatus.EMPTY: WatchPhase.EMPTY_BACKOFF,
    CheckStatus.SUCCESS: WatchPhase.SUCCESS_BACKOFF,
}


@dataclass
class CheckResult:
    """Result returned by a single check, including the next delay."""

    store: str
    checked_at: str
    status: CheckStatus
    delay_seconds: float
    outcome: Optional[CheckOutcome] = None
    screenshot: Optional[Path] = None
    error: Optional[str] = None

    @property
    def in_stock_count(self) -> int:
        return len(self.outcome.in_stock) if self.outcome else 0

    @property
    def error_count(self) -> int:
        if self.outcome:
            return len(self.outcome.errors)
        return 1 if self.status is CheckStatus.ERROR else 0
