"""Per-target check cadence and the watch loop."""

from __future__ import annotations

import asyncio
import datetime as dt
import logging
import sqlite3
from pathlib import Path
from typing import Any, List, Optional, Protocol, Sequence

from .admission import AdmissionController
from .config import AppConfig, GlobalConfig, TargetConfig
from .db import CheckHistory
from .evaluator import evaluate
from .loader import NavigationError, PageLoader
from .models import BACKOFF_PHASES, CheckOutcome, CheckResult, CheckStatus, WatchPhase
from .notifications import Notifier, format_stock_alert

logger = logging.getLogger(__name__)

NAVIGATION_TIMEOUT_MS = 5000


class Clock(Protocol):
    """Time source used to arm the next check."""

    async def sleep(self, seconds: float) -> None:
        ...

    def now(self) -> dt.datetime:
        ...


class AsyncioClock:
    """Wall-clock time backed by the running event loop."""

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)

    def now(self) -> dt.datetime:
        return dt.datetime.now()


class WatchScheduler:
    """Run checks for one target and choose the delay before the next one.

    A check moves through acquiring, loading and evaluating, and ends in one
    of three backoff phases depending on the outcome: error, empty or
    success. Only one check per target is ever in flight.
    """

    def __init__(
        self,
        target: TargetConfig,
        settings: GlobalConfig,
        loader: PageLoader,
        admission: AdmissionController,
        notifier: Notifier | None = None,
        history: CheckHistory | None = None,
        clock: Clock | None = None,
        dry_run: bool = False,
    ) -> None:
        self.target = target
        self.settings = settings
        self.loader = loader
        self.admission = admission
        self.notifier = notifier
        self.history = history
        self.clock = clock or AsyncioClock()
        self.dry_run = dry_run
        self.phase = WatchPhase.IDLE
        self.last_status: CheckStatus | None = None
        self._in_flight = False

    @property
    def store(self) -> str:
        return self.target.store

    async def run(self, initial_delay: float = 0.0, max_checks: int | None = None) -> None:
        """Check the target repeatedly; runs forever unless max_checks is given."""
        if initial_delay > 0:
            await self.clock.sleep(initial_delay)
        logger.info("Initializing watch for %s", self.store)

        completed = 0
        while max_checks is None or completed < max_checks:
            try:
                result = await self.check()
            except Exception as exc:  # noqa: BLE001
                logger.exception("Unexpected error checking %s", self.store)
                result = self._result(
                    CheckStatus.ERROR,
                    self.clock.now().isoformat(),
                    error=f"check_failed: {exc}",
                )
                self.last_status = result.status
                self.phase = BACKOFF_PHASES[result.status]
            completed += 1
            if max_checks is not None and completed >= max_checks:
                break
            await self.arm(result)

    async def arm(self, result: CheckResult) -> None:
        """Wait out the backoff chosen for the previous check."""
        self.phase = BACKOFF_PHASES[result.status]
        logger.debug(
            "Next check for %s in %.0f seconds (%s)",
            self.store,
            result.delay_seconds,
            result.status.value,
        )
        await self.clock.sleep(result.delay_seconds)
        self.phase = WatchPhase.IDLE

    async def check(self) -> CheckResult:
        """Run a single check and return its classification and next delay."""
        if self._in_flight:
            raise RuntimeError(f"A check for {self.store} is already in flight")
        self._in_flight = True
        try:
            result = await self._run_check()
        finally:
            self._in_flight = False

        self.last_status = result.status
        self.phase = BACKOFF_PHASES[result.status]
        if result.status is CheckStatus.SUCCESS and result.outcome is not None:
            await self._notify(result.outcome)
        self._record(result)
        return result

    async def _run_check(self) -> CheckResult:
        self.phase = WatchPhase.ACQUIRING
        await self.admission.acquire(self.target)
        page: Any = None
        try:
            self.phase = WatchPhase.LOADING
            checked_at = self.clock.now().isoformat()
            try:
                page = await self.loader.open_page()
                await self._load(page)
                self.phase = WatchPhase.EVALUATING
                items = await self.loader.extract(page, self.target)
            except Exception as exc:  # noqa: BLE001
                logger.error("Error loading page for %s.", self.store)
                logger.debug("Load failure for %s: %s", self.store, exc, exc_info=True)
                screenshot = await self._screenshot(page, CheckStatus.ERROR)
                return self._result(
                    CheckStatus.ERROR,
                    checked_at,
                    screenshot=screenshot,
                    error=f"load_failed: {exc}",
                )

            outcome = evaluate(items, self.target, self.settings)
            logger.debug("Results for %s: %s", self.store, outcome.records)
            return await self._classify(page, outcome, checked_at)
        finally:
            if page is not None:
                await self._close(page)
            self.admission.release()

    async def _load(self, page: Any) -> None:
        logger.debug("Loading %s.", self.store)
        try:
            await self.loader.navigate(page, self.target.url, NAVIGATION_TIMEOUT_MS)
        except NavigationError:
            logger.warning("Loading %s timed out.", self.store)

        await self.loader.wait_for_selector(
            page,
            self.target.locators.ready_selector(),
            int(self.settings.selector_timeout_seconds * 1000),
        )

    async def _classify(
        self, page: Any, outcome: CheckOutcome, checked_at: str
    ) -> CheckResult:
        if outcome.errors:
            logger.error("Error checking stock at %s.", self.store)
            logger.debug("Errors for %s: %s", self.store, outcome.errors)
            screenshot = await self._screenshot(page, CheckStatus.ERROR)
            return self._result(
                CheckStatus.ERROR, checked_at, outcome=outcome, screenshot=screenshot
            )

        if not outcome.in_stock:
            logger.info("No stock at %s.", self.store)
            return self._result(CheckStatus.EMPTY, checked_at, outcome=outcome)

        logger.info("In stock %s!!", self.store)
        logger.debug("In stock at %s: %s", self.store, outcome.in_stock)
        screenshot = await self._screenshot(page, CheckStatus.SUCCESS)
        return self._result(
            CheckStatus.SUCCESS, checked_at, outcome=outcome, screenshot=screenshot
        )

    def _result(
        self,
        status: CheckStatus,
        checked_at: str,
        outcome: CheckOutcome | None = None,
        screenshot: Path | None = None,
        error: str | None = None,
    ) -> CheckResult:
        return CheckResult(
            store=self.store,
            checked_at=checked_at,
            status=status,
            delay_seconds=self.delay_for(status),
            outcome=outcome,
            screenshot=screenshot,
            error=error,
        )

    def delay_for(self, status: CheckStatus) -> float:
        if status is CheckStatus.ERROR:
            return self.settings.error_time_seconds
        if status is CheckStatus.SUCCESS:
            return self.settings.success_time_seconds
        return self.settings.refresh_seconds_for(self.target)

    def screenshot_path(self, status: CheckStatus) -> Path:
        stamp = int(self.clock.now().timestamp() * 1000)
        filename = f"{status.value} - {self.store} - {stamp}{self.loader.screenshot_suffix}"
        return self.settings.screenshot_dir / filename

    async def _screenshot(self, page: Any, status: CheckStatus) -> Optional[Path]:
        if page is None:
            return None
        path = self.screenshot_path(status)
        logger.debug("Taking %s screenshot.", status.value)
        try:
            await self.loader.screenshot(page, path)
        except Exception:  # noqa: BLE001
            logger.warning("Could not capture %s screenshot for %s", status.value, self.store)
            return None
        return path

    async def _close(self, page: Any) -> None:
        try:
            await self.loader.close(page)
        except Exception:  # noqa: BLE001
            logger.warning("Failed to close page for %s", self.store, exc_info=True)

    async def _notify(self, outcome: CheckOutcome) -> None:
        if self.dry_run:
            logger.info("Dry run: skipping notification for %s", self.store)
            return
        if self.notifier is None:
            logger.debug("No notifier configured; skipping alert for %s", self.store)
            return

        subject, body = format_stock_alert(self.store, outcome.in_stock)
        try:
            await asyncio.to_thread(self.notifier.send, subject, body)
        except Exception:  # noqa: BLE001
            logger.exception("Failed to send stock alert for %s", self.store)

    def _record(self, result: CheckResult) -> None:
        if self.history is None:
            return
        try:
            self.history.record(result)
        except (sqlite3.Error, OSError):
            logger.exception("Failed to record check for %s", self.store)


def activate_watches(
    config: AppConfig,
    loader: PageLoader,
    admission: AdmissionController,
    notifier: Notifier | None = None,
    history: CheckHistory | None = None,
    clock: Clock | None = None,
    dry_run: bool = False,
) -> List[WatchScheduler]:
    """Create one scheduler per enabled watch, preserving config order."""
    schedulers = []
    for target in config.watches:
        if config.settings.is_disabled(target):
            logger.info("Skipping disabled watch %s", target.store)
            continue
        schedulers.append(
            WatchScheduler(
                target=target,
                settings=config.settings,
                loader=loader,
                admission=admission,
                notifier=notifier,
                history=history,
                clock=clock,
                dry_run=dry_run,
            )
        )
    return schedulers


async def run_watches(
    schedulers: Sequence[WatchScheduler],
    stagger_seconds: float,
    max_checks: int | None = None,
) -> None:
    """Start every scheduler, staggering start-up by index."""
    await asyncio.gather(
        *(
            scheduler.run(initial_delay=stagger_seconds * index, max_checks=max_checks)
            for index, scheduler in enumerate(schedulers)
        )
    )
