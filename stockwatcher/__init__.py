"""stockwatcher package initialization."""

from .admission import AdmissionController
from .config import (
    AppConfig,
    ConfigError,
    GlobalConfig,
    Locators,
    NotificationConfig,
    TargetConfig,
    load_config,
    parse_config,
)
from .db import CheckHistory
from .evaluator import classify, evaluate
from .models import (
    CheckOutcome,
    CheckResult,
    CheckStatus,
    ProductRecord,
    RawItem,
    WatchPhase,
)
from .scheduler import WatchScheduler, activate_watches, run_watches

__all__ = [
    "AdmissionController",
    "AppConfig",
    "CheckHistory",
    "CheckOutcome",
    "CheckResult",
    "CheckStatus",
    "ConfigError",
    "GlobalConfig",
    "Locators",
    "NotificationConfig",
    "ProductRecord",
    "RawItem",
    "TargetConfig",
    "WatchPhase",
    "WatchScheduler",
    "activate_watches",
    "classify",
    "evaluate",
    "load_config",
    "parse_config",
    "run_watches",
]
