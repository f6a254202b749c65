import threading

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import TimeoutError as PlaywrightTimeoutError
from playwright.sync_api import sync_playwright

from formpilot.automation.driver import READY_STATES, RemoteFormDriver
from formpilot.core.errors import ElementNotFound
from formpilot.core.logging import get_logger

logger = get_logger(__name__)


class PlaywrightFormDriver(RemoteFormDriver):
    """Chromium session driven through Playwright's sync API.

    Playwright sync objects belong to the thread that created them, so
    ``cancel`` from another thread only records the request; the owning
    thread closes the browser once the engine reaches a checkpoint.
    """

    def __init__(self, *, headless: bool = True, action_timeout_ms: int = 10000) -> None:
        self.headless = headless
        self.action_timeout_ms = action_timeout_ms
        self._playwright = None
        self._browser = None
        self._context = None
        self._page = None
        self._cancel_requested = threading.Event()

    @property
    def page(self):
        if self._page is None:
            raise ElementNotFound("Browser session is not open")
        return self._page

    def open(self, url: str) -> None:
        self._playwright = sync_playwright().start()
        self._browser = self._playwright.chromium.launch(headless=self.headless)
        self._context = self._browser.new_context()
        self._context.set_default_timeout(self.action_timeout_ms)
        self._page = self._context.new_page()
        try:
            self._page.goto(url, wait_until="commit")
        except PlaywrightTimeoutError:
            # Whether the page ever arrived is for the readiness ladder to decide.
            logger.warning("Start page slow to respond", extra={"extra": {"url": url}})

    def _target(self, selector: str):
        locator = self.page.locator(selector)
        if locator.count() == 0:
            raise ElementNotFound(f"Element not found: {selector}")
        return locator.first

    def locate(self, selector: str) -> bool:
        try:
            locator = self.page.locator(selector)
            return locator.count() > 0 and locator.first.is_visible()
        except PlaywrightError:
            return False

    def read(self, selector: str) -> str | None:
        try:
            locator = self.page.locator(selector)
            if locator.count() == 0:
                return None
            return (locator.first.inner_text(timeout=self.action_timeout_ms) or "").strip()
        except PlaywrightError:
            return None

    def read_all(self, selector: str) -> list[str]:
        try:
            return [text.strip() for text in self.page.locator(selector).all_inner_texts() if text.strip()]
        except PlaywrightError:
            return []

    def fill(self, selector: str, value: str) -> None:
        try:
            self._target(selector).fill(value)
        except PlaywrightError as exc:
            raise ElementNotFound(f"Could not fill {selector}: {exc}") from exc

    def select(self, selector: str, *, value: str | None = None, label: str | None = None) -> None:
        target = self._target(selector)
        try:
            if value is not None:
                target.select_option(value=value)
                return
        except PlaywrightError:
            if label is None:
                raise ElementNotFound(f"Option {value!r} not available in {selector}")
        try:
            target.select_option(label=label)
        except PlaywrightError as exc:
            raise ElementNotFound(f"Option {label!r} not available in {selector}") from exc

    def check(self, selector: str, checked: bool = True) -> None:
        try:
            self._target(selector).set_checked(checked)
        except PlaywrightError as exc:
            raise ElementNotFound(f"Could not toggle {selector}: {exc}") from exc

    def click(self, selector: str) -> None:
        try:
            self._target(selector).click()
        except PlaywrightError as exc:
            raise ElementNotFound(f"Could not click {selector}: {exc}") from exc

    def wait_for(self, state: str, timeout_ms: int) -> bool:
        if state not in READY_STATES:
            raise ValueError(f"Unknown load state: {state}")
        try:
            self.page.wait_for_load_state(state, timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        try:
            self.page.wait_for_selector(selector, state="visible", timeout=timeout_ms)
            return True
        except PlaywrightTimeoutError:
            return False

    def is_ready(self) -> bool:
        try:
            return self.page.evaluate("document.readyState") in ("interactive", "complete")
        except PlaywrightError:
            return False

    def pause(self, ms: int) -> None:
        if ms > 0:
            self.page.wait_for_timeout(ms)

    def snapshot(self) -> bytes:
        return self.page.screenshot(full_page=True)

    def element_snapshot(self, selector: str) -> bytes:
        return self._target(selector).screenshot()

    def current_url(self) -> str:
        return self.page.url

    @property
    def cancel_requested(self) -> bool:
        return self._cancel_requested.is_set()

    def cancel(self) -> bool:
        self._cancel_requested.set()
        return self._page is not None

    def close(self) -> None:
        for resource in (self._context, self._browser):
            if resource is None:
                continue
            try:
                resource.close()
            except PlaywrightError:
                logger.warning("Browser resource already closed")
        if self._playwright is not None:
            self._playwright.stop()
        self._page = None
        self._context = None
        self._browser = None
        self._playwright = None
