from types import SimpleNamespace

from playwright.sync_api import TimeoutError as PlaywrightTimeoutError

from formpilot.automation import playwright_driver
from formpilot.automation.playwright_driver import PlaywrightFormDriver


class SlowPage:
    def __init__(self):
        self.gotos = []

    def goto(self, url, *, wait_until):
        self.gotos.append((url, wait_until))
        raise PlaywrightTimeoutError("Timeout 10000ms exceeded")


def _fake_playwright(page, timeouts):
    context = SimpleNamespace(set_default_timeout=timeouts.append, new_page=lambda: page)
    browser = SimpleNamespace(new_context=lambda: context)
    chromium = SimpleNamespace(launch=lambda headless: browser)
    return lambda: SimpleNamespace(start=lambda: SimpleNamespace(chromium=chromium))


def test_slow_start_page_is_left_to_readiness_ladder(monkeypatch):
    page = SlowPage()
    timeouts = []
    monkeypatch.setattr(playwright_driver, "sync_playwright", _fake_playwright(page, timeouts))

    driver = PlaywrightFormDriver(action_timeout_ms=2500)
    driver.open("https://ceac.state.gov/GenNIV/Default.aspx")

    assert page.gotos == [("https://ceac.state.gov/GenNIV/Default.aspx", "commit")]
    assert timeouts == [2500]
    assert driver.page is page
