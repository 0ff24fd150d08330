"""Page loading collaborators and product extraction."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, List, Optional, Protocol

import requests
from bs4 import BeautifulSoup, Tag
from playwright.async_api import Error as PlaywrightError
from playwright.async_api import async_playwright

from .config import GlobalConfig, Locators, TargetConfig
from .models import RawItem

logger = logging.getLogger(__name__)

USER_AGENT = "stockwatcher/1.0"
TEXT_ATTRIBUTES = {"textContent", "innerText", "text"}


class PageLoadError(Exception):
    """Base class for page loading failures."""


class NavigationError(PageLoadError):
    """The page did not reach a ready state within the navigation budget."""


class LoadFailure(PageLoadError):
    """The product selectors never appeared on the page."""


class PageLoader(Protocol):
    """Contract used by the watch scheduler to drive a page."""

    screenshot_suffix: str

    async def open_page(self) -> Any:
        ...

    async def navigate(self, page: Any, url: str, timeout_ms: int) -> None:
        ...

    async def wait_for_selector(self, page: Any, selector: str, timeout_ms: int) -> None:
        ...

    async def extract(self, page: Any, target: TargetConfig) -> List[RawItem]:
        ...

    async def screenshot(self, page: Any, path: Path) -> None:
        ...

    async def close(self, page: Any) -> None:
        ...


def extract_items(html_text: str, target: TargetConfig) -> List[RawItem]:
    """Read raw field values for every product container in the document."""
    soup = BeautifulSoup(html_text, "html.parser")
    locators = target.locators
    return [_read_item(container, locators) for container in soup.select(locators.product)]


def _read_item(container: Tag, locators: Locators) -> RawItem:
    name_el = container.select_one(locators.product_name)
    url_el = container.select_one(locators.product_url) if locators.product_url else None
    stock_el = container.select_one(locators.out_of_stock)
    price_el = container.select_one(locators.price)
    return RawItem(
        name=_read_name(name_el, locators.product_attribute),
        url=_attribute(url_el, "href"),
        out_of_stock_present=stock_el is not None,
        out_of_stock_text=stock_el.get_text() if stock_el is not None else None,
        price_text=price_el.get_text() if price_el is not None else None,
    )


def _read_name(element: Optional[Tag], attribute: Optional[str]) -> Optional[str]:
    if element is None:
        return None
    if not attribute or attribute in TEXT_ATTRIBUTES:
        return element.get_text()
    return _attribute(element, attribute)


def _attribute(element: Optional[Tag], name: str) -> Optional[str]:
    if element is None:
        return None
    value = element.get(name)
    if isinstance(value, list):
        value = " ".join(value)
    return value


class PlaywrightPageLoader:
    """Drive a shared Chromium instance through Playwright."""

    screenshot_suffix = ".png"

    def __init__(self, settings: GlobalConfig) -> None:
        self.headless = settings.headless
        self._playwright = None
        self._browser = None

    async def start(self) -> None:
        self._playwright = await async_playwright().start()
        self._browser = await self._playwright.chromium.launch(
            headless=self.headless,
            args=["--window-size=1920,1080"],
        )
        logger.info("Browser started (headless=%s)", self.headless)

    async def stop(self) -> None:
        if self._browser is not None:
            await self._browser.close()
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None

    async def __aenter__(self) -> "PlaywrightPageLoader":
        await self.start()
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.stop()

    async def open_page(self) -> Any:
        if self._browser is None:
            raise RuntimeError("PlaywrightPageLoader.start() has not been called")
        return await self._browser.new_page(viewport={"width": 1920, "height": 1080})

    async def navigate(self, page: Any, url: str, timeout_ms: int) -> None:
        try:
            await page.goto(url, wait_until="networkidle", timeout=timeout_ms)
        except PlaywrightError as exc:
            raise NavigationError(str(exc)) from exc

    async def wait_for_selector(self, page: Any, selector: str, timeout_ms: int) -> None:
        try:
            await page.wait_for_selector(selector, state="attached", timeout=timeout_ms)
        except PlaywrightError as exc:
            raise LoadFailure(str(exc)) from exc

    async def extract(self, page: Any, target: TargetConfig) -> List[RawItem]:
        return extract_items(await page.content(), target)

    async def screenshot(self, page: Any, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await page.screenshot(path=str(path), full_page=True)

    async def close(self, page: Any) -> None:
        await page.close()


@dataclass
class HttpPage:
    """Static page fetched over plain HTTP."""

    url: str = ""
    html: str = ""


class HttpPageLoader:
    """Fetch pages with requests and inspect them with BeautifulSoup."""

    screenshot_suffix = ".html"

    def __init__(self, session: requests.Session | None = None) -> None:
        self.session = session or requests.Session()
        self.session.headers.update({"User-Agent": USER_AGENT})

    async def open_page(self) -> HttpPage:
        return HttpPage()

    async def navigate(self, page: HttpPage, url: str, timeout_ms: int) -> None:
        page.url = url
        try:
            response = await asyncio.to_thread(
                self.session.get, url, timeout=timeout_ms / 1000
            )
            response.raise_for_status()
        except requests.RequestException as exc:
            raise NavigationError(str(exc)) from exc
        if not response.encoding or response.encoding.lower() == "iso-8859-1":
            response.encoding = response.apparent_encoding or "utf-8"
        page.html = response.text

    async def wait_for_selector(self, page: HttpPage, selector: str, timeout_ms: int) -> None:
        soup = BeautifulSoup(page.html, "html.parser")
        if soup.select_one(selector) is None:
            raise LoadFailure(f"No element matching {selector!r} at {page.url}")

    async def extract(self, page: HttpPage, target: TargetConfig) -> List[RawItem]:
        return extract_items(page.html, target)

    async def screenshot(self, page: HttpPage, path: Path) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(path.write_text, page.html, encoding="utf-8")

    async def close(self, page: HttpPage) -> None:
        page.html = ""
