import asyncio
import datetime as dt
import logging
from pathlib import Path
from types import SimpleNamespace

import pytest

from stockwatcher.admission import AdmissionController
from stockwatcher.config import AppConfig, GlobalConfig, Locators, TargetConfig
from stockwatcher.db import CheckHistory
from stockwatcher.loader import LoadFailure, NavigationError
from stockwatcher.models import CheckStatus, RawItem, WatchPhase
from stockwatcher.scheduler import (
    NAVIGATION_TIMEOUT_MS,
    WatchScheduler,
    activate_watches,
    run_watches,
)


class FakeClock:

    def __init__(self):
        self.sleeps = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)

    def now(self) -> dt.datetime:
        return dt.datetime(2025, 1, 1, 12, 0, 0)


class FakeLoader:
    screenshot_suffix = ".png"

    def __init__(self, items=None, navigate_error=None, selector_error=None, gate=None):
        self.items = items or []
        self.navigate_error = navigate_error
        self.selector_error = selector_error
        self.gate = gate
        self.calls = []
        self.screenshots = []
        self.opened = 0
        self.closed = 0

    async def open_page(self):
        self.opened += 1
        return SimpleNamespace(number=self.opened)

    async def navigate(self, page, url, timeout_ms):
        self.calls.append(("navigate", url, timeout_ms))
        if self.gate is not None:
            await self.gate.wait()
        if self.navigate_error is not None:
            raise self.navigate_error

    async def wait_for_selector(self, page, selector, timeout_ms):
        self.calls.append(("wait", selector, timeout_ms))
        if self.selector_error is not None:
            raise self.selector_error

    async def extract(self, page, target):
        return list(self.items)

    async def screenshot(self, page, path: Path):
        self.screenshots.append(path)

    async def close(self, page):
        self.closed += 1


class RecordingNotifier:

    def __init__(self):
        self.messages = []

    def send(self, subject: str, body: str) -> None:
        self.messages.append((subject, body))


SETTINGS = GlobalConfig(
    default_refresh_seconds=60,
    error_time_seconds=30,
    success_time_seconds=600,
    selector_timeout_seconds=20,
    screenshot_dir=Path("shots"),
)


def make_target(**overrides) -> TargetConfig:
    values = dict(
        store="Acme",
        url="https://acme.example.com/gpus",
        expected_product_count=1,
        max_price=500.0,
        locators=Locators(
            product=".card",
            product_name=".title",
            out_of_stock=".sold-out",
            price=".price",
            product_url="a",
        ),
    )
    values.update(overrides)
    return TargetConfig(**values)


def make_item(price_text: str) -> RawItem:
    return RawItem(name="RTX", url="/p/rtx", price_text=price_text)


def build_scheduler(loader, notifier=None, target=None, settings=SETTINGS, **kwargs):
    return WatchScheduler(
        target=target or make_target(),
        settings=settings,
        loader=loader,
        admission=AdmissionController(settings),
        notifier=notifier,
        clock=kwargs.pop("clock", FakeClock()),
        **kwargs,
    )


def test_in_stock_item_under_ceiling_notifies_and_uses_success_delay():
    loader = FakeLoader(items=[make_item("499.99")])
    notifier = RecordingNotifier()
    scheduler = build_scheduler(loader, notifier)

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.SUCCESS
    assert len(result.outcome.in_stock) == 1
    assert result.delay_seconds == 600
    assert notifier.messages == [("Acme in Stock", "https://acme.example.com/p/rtx")]
    assert len(loader.screenshots) == 1
    assert loader.screenshots[0].name.startswith("success - Acme - ")
    assert loader.closed == 1
    assert scheduler.admission.in_use == 0
    assert scheduler.phase is WatchPhase.SUCCESS_BACKOFF


def test_item_at_ceiling_is_empty_and_uses_refresh_delay():
    loader = FakeLoader(items=[make_item("500.00")])
    notifier = RecordingNotifier()
    scheduler = build_scheduler(loader, notifier)

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.EMPTY
    assert result.outcome.in_stock == []
    assert result.delay_seconds == 60
    assert notifier.messages == []
    assert loader.screenshots == []
    assert loader.closed == 1


def test_target_refresh_interval_overrides_default():
    loader = FakeLoader(items=[make_item("900")])
    scheduler = build_scheduler(loader, target=make_target(refresh_seconds=15))

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.EMPTY
    assert result.delay_seconds == 15


def test_navigation_timeout_and_missing_selector_take_error_path(caplog):
    loader = FakeLoader(
        navigate_error=NavigationError("timeout"),
        selector_error=LoadFailure("selector never appeared"),
    )
    notifier = RecordingNotifier()
    scheduler = build_scheduler(loader, notifier)

    with caplog.at_level(logging.DEBUG):
        result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.ERROR
    assert result.outcome is None
    assert result.delay_seconds == 30
    assert "selector never appeared" in result.error
    assert len(loader.screenshots) == 1
    assert loader.screenshots[0].name.startswith("error - Acme - ")
    assert loader.closed == 1
    assert scheduler.admission.in_use == 0
    assert notifier.messages == []
    assert "Loading Acme timed out." in caplog.text
    assert "Error loading page for Acme." in caplog.text


def test_navigation_timeout_alone_is_tolerated():
    loader = FakeLoader(items=[make_item("100")], navigate_error=NavigationError("slow"))
    scheduler = build_scheduler(loader)

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.SUCCESS
    assert loader.calls[0] == ("navigate", "https://acme.example.com/gpus", NAVIGATION_TIMEOUT_MS)
    assert loader.calls[1] == (
        "wait",
        ".card,.card .title,.card a,.card .sold-out,.card .price",
        20000,
    )


def test_evaluation_errors_take_error_path():
    loader = FakeLoader(items=[make_item("N/A")])
    notifier = RecordingNotifier()
    scheduler = build_scheduler(loader, notifier)

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.ERROR
    assert result.outcome.errors[0].errors == ["Price"]
    assert result.delay_seconds == 30
    assert loader.screenshots[0].name.startswith("error - ")
    assert notifier.messages == []


def test_open_page_failure_releases_slot():
    class BrokenLoader(FakeLoader):

        async def open_page(self):
            raise RuntimeError("browser crashed")

    loader = BrokenLoader()
    scheduler = build_scheduler(loader)

    result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.ERROR
    assert loader.screenshots == []
    assert loader.closed == 0
    assert scheduler.admission.in_use == 0


def test_checks_for_one_target_never_overlap():
    async def scenario():
        gate = asyncio.Event()
        loader = FakeLoader(items=[make_item("100")], gate=gate)
        scheduler = build_scheduler(loader)

        first = asyncio.create_task(scheduler.check())
        await asyncio.sleep(0)
        assert scheduler.phase is WatchPhase.LOADING
        with pytest.raises(RuntimeError):
            await scheduler.check()

        gate.set()
        result = await first
        return loader, result

    loader, result = asyncio.run(scenario())
    assert result.status is CheckStatus.SUCCESS
    assert loader.opened == 1


def test_run_rearms_after_each_check_and_notifies_every_success():
    clock = FakeClock()
    loader = FakeLoader(items=[make_item("10")])
    notifier = RecordingNotifier()
    scheduler = build_scheduler(loader, notifier, clock=clock)

    asyncio.run(scheduler.run(max_checks=3))

    assert clock.sleeps == [600, 600]
    assert len(notifier.messages) == 3
    assert loader.opened == 3


def test_dry_run_skips_notifications(caplog):
    notifier = RecordingNotifier()
    scheduler = build_scheduler(FakeLoader(items=[make_item("10")]), notifier, dry_run=True)

    with caplog.at_level(logging.INFO):
        result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.SUCCESS
    assert notifier.messages == []
    assert "Dry run" in caplog.text


def test_notifier_failure_does_not_stop_the_watch(caplog):
    class FailingNotifier:

        def send(self, subject: str, body: str) -> None:
            raise RuntimeError("smtp down")

    scheduler = build_scheduler(FakeLoader(items=[make_item("10")]), FailingNotifier())

    with caplog.at_level(logging.ERROR):
        result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.SUCCESS
    assert "Failed to send stock alert for Acme" in caplog.text


def test_check_results_are_recorded(tmp_path):
    history = CheckHistory(path=tmp_path / "history.db")
    history.initialize()
    scheduler = build_scheduler(FakeLoader(items=[make_item("10")]), history=history)

    asyncio.run(scheduler.check())

    entries = history.recent_checks()
    assert len(entries) == 1
    assert entries[0].store == "Acme"
    assert entries[0].status == "success"
    assert entries[0].in_stock_count == 1
    assert entries[0].checked_at == "2025-01-01T12:00:00"


def test_activate_watches_skips_disabled_and_staggers_startup():
    targets = tuple(make_target(store=name) for name in ("A", "B", "C", "D"))
    settings = GlobalConfig(disabled=("B",))
    config = AppConfig(settings=settings, watches=targets)
    clock = FakeClock()
    loader = FakeLoader(items=[make_item("900")])

    schedulers = activate_watches(
        config,
        loader=loader,
        admission=AdmissionController(settings),
        clock=clock,
    )
    assert [scheduler.store for scheduler in schedulers] == ["A", "C", "D"]

    asyncio.run(run_watches(schedulers, stagger_seconds=5, max_checks=1))

    assert sorted(clock.sleeps) == [5, 10]
    assert loader.opened == 3
    assert all(scheduler.last_status is CheckStatus.EMPTY for scheduler in schedulers)


def test_malformed_link_on_one_target_does_not_stop_other_watches():
    class PerStoreLoader(FakeLoader):

        async def extract(self, page, target):
            url = "http://[broken" if target.store == "Bad" else "/p/rtx"
            return [RawItem(name="RTX", url=url, price_text="10")]

    loader = PerStoreLoader()
    admission = AdmissionController(SETTINGS)
    schedulers = [
        WatchScheduler(
            target=make_target(store=store),
            settings=SETTINGS,
            loader=loader,
            admission=admission,
            clock=FakeClock(),
        )
        for store in ("Bad", "Good")
    ]

    asyncio.run(run_watches(schedulers, stagger_seconds=0, max_checks=3))

    assert loader.opened == 6
    assert loader.closed == 6
    assert admission.in_use == 0
    assert schedulers[0].last_status is CheckStatus.ERROR
    assert schedulers[1].last_status is CheckStatus.SUCCESS


def test_unexpected_check_failure_is_logged_and_rearmed_with_error_delay(caplog):
    class BrokenHistory:

        def __init__(self):
            self.calls = 0

        def record(self, result):
            self.calls += 1
            raise RuntimeError("history unavailable")

    clock = FakeClock()
    history = BrokenHistory()
    scheduler = build_scheduler(
        FakeLoader(items=[make_item("900")]), history=history, clock=clock
    )

    with caplog.at_level(logging.ERROR):
        asyncio.run(scheduler.run(max_checks=2))

    assert history.calls == 2
    assert clock.sleeps == [30]
    assert scheduler.last_status is CheckStatus.ERROR
    assert "Unexpected error checking Acme" in caplog.text


def test_history_os_error_is_logged_and_check_completes(caplog):
    class ReadOnlyHistory:

        def record(self, result):
            raise PermissionError("read-only filesystem")

    scheduler = build_scheduler(FakeLoader(items=[make_item("900")]), history=ReadOnlyHistory())

    with caplog.at_level(logging.ERROR):
        result = asyncio.run(scheduler.check())

    assert result.status is CheckStatus.EMPTY
    assert "Failed to record check for Acme" in caplog.text


def test_arm_returns_to_idle_after_backoff_elapses():
    clock = FakeClock()
    scheduler = build_scheduler(FakeLoader(items=[make_item("10")]), clock=clock)

    async def scenario():
        result = await scheduler.check()
        phase_after_check = scheduler.phase
        await scheduler.arm(result)
        return phase_after_check

    phase_after_check = asyncio.run(scenario())

    assert phase_after_check is WatchPhase.SUCCESS_BACKOFF
    assert clock.sleeps == [600]
    assert scheduler.phase is WatchPhase.IDLE
