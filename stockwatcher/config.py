"""Watch configuration loading and validation."""

from __future__ import annotations

import json
import logging
import math
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

logger = logging.getLogger(__name__)


class ConfigError(ValueError):
    """Raised when the watch or notification configuration is invalid."""


@dataclass(frozen=True)
class Locators:
    """Selectors identifying one product card and its fields on a page."""

    product: str
    product_name: str
    out_of_stock: str
    price: str
    product_url: Optional[str] = None
    product_attribute: Optional[str] = None

    def field_locators(self) -> List[Tuple[str, str]]:
        """Return the sub-locators scoped under the product container, by role."""
        roles = [
            ("name", self.product_name),
            ("url", self.product_url),
            ("out_of_stock", self.out_of_stock),
            ("price", self.price),
        ]
        return [(role, selector) for role, selector in roles if selector]

    def ready_selector(self) -> str:
        """Union of the container and every field locator nested under it."""
        selectors = [self.product]
        selectors.extend(
            f"{self.product} {selector}" for _, selector in self.field_locators()
        )
        return ",".join(selectors)


@dataclass(frozen=True)
class TargetConfig:
    """Immutable descriptor of one watched store page."""

    store: str
    url: str
    expected_product_count: int
    locators: Locators
    max_price: Optional[float] = None
    out_of_stock_text: Optional[str] = None
    refresh_seconds: Optional[float] = None
    max_tabs: Optional[int] = None


@dataclass(frozen=True)
class GlobalConfig:
    """Process-wide defaults shared by every watch."""

    default_refresh_seconds: float = 60.0
    default_max_price: float = math.inf
    error_time_seconds: float = 60.0
    success_time_seconds: float = 300.0
    max_tabs: int = 10
    disabled: Tuple[str, ...] = ()
    headless: bool = True
    verbose: bool = False
    selector_timeout_seconds: float = 30.0
    startup_stagger_seconds: float = 5.0
    screenshot_dir: Path = Path(".")

    def refresh_seconds_for(self, target: TargetConfig) -> float:
        if target.refresh_seconds is not None:
            return target.refresh_seconds
        return self.default_refresh_seconds

    def max_price_for(self, target: TargetConfig) -> float:
        if target.max_price is not None:
            return target.max_price
        return self.default_max_price

    def is_disabled(self, target: TargetConfig) -> bool:
        return target.store in self.disabled


@dataclass(frozen=True)
class AppConfig:
    """Global settings plus the ordered list of watches."""

    settings: GlobalConfig
    watches: Tuple[TargetConfig, ...]

    def enabled_watches(self) -> List[TargetConfig]:
        return [
            watch for watch in self.watches if not self.settings.is_disabled(watch)
        ]


@dataclass(frozen=True)
class NotificationConfig:
    """Credentials and recipients for outgoing stock alerts."""

    sender: str = ""
    password: str = ""
    recipients: Tuple[str, ...] = field(default_factory=tuple)
    smtp_host: str = "smtp.gmail.com"
    smtp_port: int = 587
    slack_webhook: str = ""

    @property
    def email_enabled(self) -> bool:
        return bool(self.sender and self.password and self.recipients)


def load_config(path: str | Path) -> AppConfig:
    """Read a watch configuration JSON file."""
    config_path = Path(path)
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigError(f"Config file not found: {config_path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"Config file {config_path} is not valid JSON: {exc}") from exc
    return parse_config(raw)


def parse_config(raw: Mapping[str, Any]) -> AppConfig:
    """Build an AppConfig from an already-decoded mapping."""
    if not isinstance(raw, Mapping):
        raise ConfigError("Top-level configuration must be an object")

    settings = _parse_settings(raw)
    watches_raw = raw.get("watches")
    if not isinstance(watches_raw, list):
        raise ConfigError("'watches' must be a list of watch definitions")

    watches = tuple(
        _parse_watch(item, index) for index, item in enumerate(watches_raw)
    )
    seen: set[str] = set()
    for watch in watches:
        if watch.store in seen:
            raise ConfigError(f"Duplicate store name: {watch.store}")
        seen.add(watch.store)
        if math.isinf(settings.max_price_for(watch)):
            logger.warning(
                "No price ceiling set for %s; any in-stock price will alert", watch.store
            )

    return AppConfig(settings=settings, watches=watches)


def _parse_settings(raw: Mapping[str, Any]) -> GlobalConfig:
    defaults = GlobalConfig()
    disabled = raw.get("disable") or []
    if not isinstance(disabled, list):
        raise ConfigError("'disable' must be a list of store names")

    default_max_price = raw.get("defaultMaxPrice")
    return GlobalConfig(
        default_refresh_seconds=_positive(
            raw, "defaultRefreshSeconds", defaults.default_refresh_seconds
        ),
        default_max_price=(
            float(default_max_price)
            if default_max_price is not None
            else defaults.default_max_price
        ),
        error_time_seconds=_positive(
            raw, "errorTimeSeconds", defaults.error_time_seconds
        ),
        success_time_seconds=_positive(
            raw, "successTimeSeconds", defaults.success_time_seconds
        ),
        max_tabs=int(_positive(raw, "maxTabs", defaults.max_tabs)),
        disabled=tuple(str(store) for store in disabled),
        headless=bool(raw.get("headless", defaults.headless)),
        verbose=bool(raw.get("verbose", defaults.verbose)),
        selector_timeout_seconds=_positive(
            raw, "selectorTimeoutSeconds", defaults.selector_timeout_seconds
        ),
        startup_stagger_seconds=_non_negative(
            raw, "startupStaggerSeconds", defaults.startup_stagger_seconds
        ),
        screenshot_dir=Path(raw.get("screenshotDir") or defaults.screenshot_dir),
    )


def _parse_watch(raw: Any, index: int) -> TargetConfig:
    if not isinstance(raw, Mapping):
        raise ConfigError(f"Watch #{index} must be an object")

    label = raw.get("store") or f"#{index}"
    for key in ("store", "url", "expectedProductCount", "selectors"):
        if raw.get(key) is None:
            raise ConfigError(f"Watch {label} is missing required key '{key}'")

    selectors = raw["selectors"]
    if not isinstance(selectors, Mapping):
        raise ConfigError(f"Watch {label}: 'selectors' must be an object")
    for key in ("product", "productName", "outOfStockSelector", "price"):
        if not selectors.get(key):
            raise ConfigError(f"Watch {label} is missing selector '{key}'")

    expected = int(raw["expectedProductCount"])
    if expected < 0:
        raise ConfigError(f"Watch {label}: expectedProductCount must be >= 0")

    out_of_stock_text = raw.get("outOfStockText") or None
    if out_of_stock_text:
        try:
            re.compile(out_of_stock_text)
        except re.error as exc:
            raise ConfigError(
                f"Watch {label}: outOfStockText is not a valid pattern: {exc}"
            ) from exc

    max_tabs = raw.get("maxTabs")
    if max_tabs is not None and int(max_tabs) <= 0:
        raise ConfigError(f"Watch {label}: maxTabs must be positive")

    refresh = raw.get("refreshSeconds")
    if refresh is not None and float(refresh) <= 0:
        raise ConfigError(f"Watch {label}: refreshSeconds must be positive")

    max_price = raw.get("maxPrice")
    return TargetConfig(
        store=str(raw["store"]),
        url=str(raw["url"]),
        expected_product_count=expected,
        locators=Locators(
            product=selectors["product"],
            product_name=selectors["productName"],
            out_of_stock=selectors["outOfStockSelector"],
            price=selectors["price"],
            product_url=selectors.get("productURL") or None,
            product_attribute=selectors.get("productAttribute") or None,
        ),
        max_price=float(max_price) if max_price is not None else None,
        out_of_stock_text=out_of_stock_text,
        refresh_seconds=float(refresh) if refresh is not None else None,
        max_tabs=int(max_tabs) if max_tabs is not None else None,
    )


def _positive(raw: Mapping[str, Any], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None:
        return default
    number = float(value)
    if number <= 0:
        raise ConfigError(f"'{key}' must be positive, got {value!r}")
    return number


def _non_negative(raw: Mapping[str, Any], key: str, default: float) -> float:
    value = raw.get(key)
    if value is None:
        return default
    number = float(value)
    if number < 0:
        raise ConfigError(f"'{key}' must not be negative, got {value!r}")
    return number


def load_notification_config(path: str | Path | None = None) -> NotificationConfig:
    """Read notification settings from JSON and apply environment overrides."""
    raw: Dict[str, Any] = {}
    if path:
        notification_path = Path(path)
        if notification_path.exists():
            try:
                raw = json.loads(notification_path.read_text(encoding="utf-8"))
            except json.JSONDecodeError as exc:
                raise ConfigError(
                    f"Notification config {notification_path} is not valid JSON: {exc}"
                ) from exc

    recipients: Sequence[str] = raw.get("recipients") or []
    env_recipients = (os.getenv("NOTIFY_RECIPIENTS") or "").strip()
    if env_recipients:
        recipients = [item.strip() for item in env_recipients.split(",") if item.strip()]

    return NotificationConfig(
        sender=(os.getenv("SMTP_USER") or raw.get("gmail") or "").strip(),
        password=(os.getenv("SMTP_PASSWORD") or raw.get("password") or "").strip(),
        recipients=tuple(recipients),
        smtp_host=os.getenv("SMTP_HOST") or raw.get("smtpHost") or "smtp.gmail.com",
        smtp_port=int(os.getenv("SMTP_PORT") or raw.get("smtpPort") or 587),
        slack_webhook=(os.getenv("SLACK_WEBHOOK") or raw.get("slackWebhook") or "").strip(),
    )
