import asyncio
from typing import Any, Dict, List, Optional

import pytest

import main


class FakeTimeout(Exception):
    """Stands in for playwright's TimeoutError."""


class FakePage:
    def __init__(self, sections: Optional[list] = None, anchors: Optional[list] = None,
                 present: Optional[List[str]] = None, click_fails: bool = False,
                 goto_errors: Optional[Dict[str, List[Exception]]] = None,
                 navigates: bool = True):
        self.sections = sections or []
        self.anchors = anchors or []
        self.present = set(present or [])
        self.click_fails = click_fails
        self.goto_errors = {k: list(v) for k, v in (goto_errors or {}).items()}
        self.navigates = navigates
        self.url = "about:blank"
        # Recorded calls
        self.goto_calls: List[str] = []
        self.filled: Dict[str, str] = {}
        self.clicked: List[str] = []
        self.closed = False

    async def goto(self, url: str, timeout: Any = None, wait_until: Any = None) -> None:
        self.goto_calls.append(url)
        errors = self.goto_errors.get(url)
        if errors:
            raise errors.pop(0)
        self.url = url

    async def fill(self, selector: str, value: str) -> None:
        self.filled[selector] = value

    async def click(self, selector: str, **kwargs) -> None:
        self.clicked.append(selector)
        if self.click_fails:
            raise FakeTimeout(f"waiting for {selector}")

    async def wait_for_selector(self, selector: str, timeout: Any = None):
        await asyncio.sleep(0)
        if any(part.strip() in self.present for part in selector.split(',')):
            return object()
        raise FakeTimeout(f"waiting for {selector}")

    async def wait_for_url(self, predicate, **kwargs) -> None:
        await asyncio.sleep(0)
        if not self.navigates:
            raise FakeTimeout("waiting for navigation")
        self.url = "https://campus.iou.edu.gm/campus/my/"

    async def evaluate(self, script: str):
        if script == main.SECTIONS_SCRIPT:
            return self.sections
        if script == main.DROPDOWN_SCRIPT:
            return self.anchors
        raise AssertionError("unexpected script")

    async def close(self) -> None:
        self.closed = True


class FakeContext:
    def __init__(self, pages: List[FakePage]):
        self._pages = list(pages)
        self.opened: List[FakePage] = []

    async def new_page(self) -> FakePage:
        page = self._pages.pop(0)
        self.opened.append(page)
        return page


class FakeBrowser:
    def __init__(self, context: FakeContext):
        self.context = context
        self.closed = False

    async def new_context(self, **kwargs) -> FakeContext:
        return self.context

    async def close(self) -> None:
        self.closed = True


class FakeChromium:
    def __init__(self, browser: FakeBrowser):
        self.browser = browser
        self.launch_kwargs: Dict[str, Any] = {}

    async def launch(self, **kwargs) -> FakeBrowser:
        self.launch_kwargs = kwargs
        return self.browser


class FakePlaywright:
    def __init__(self, browser: FakeBrowser):
        self.chromium = FakeChromium(browser)

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc) -> None:
        return None


@pytest.fixture
def no_sleep(monkeypatch):
    """Skip backoff delays and record them instead."""
    delays: List[float] = []

    async def fake_sleep(delay, *args, **kwargs):
        delays.append(delay)

    monkeypatch.setattr(main.asyncio, "sleep", fake_sleep)
    return delays


@pytest.fixture
def fake_browser(monkeypatch):
    """Patch async_playwright; call with the pages the context should hand out."""
    created = {}

    def install(pages: List[FakePage]) -> FakeBrowser:
        browser = FakeBrowser(FakeContext(pages))
        playwright = FakePlaywright(browser)
        created["playwright"] = playwright
        monkeypatch.setattr(main, "async_playwright", lambda: playwright)
        return browser

    install.created = created
    return install
