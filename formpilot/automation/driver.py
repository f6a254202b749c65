from abc import ABC, abstractmethod

from formpilot.core.config import Settings

READY_STATES = ("networkidle", "domcontentloaded")


class RemoteFormDriver(ABC):
    """One open session against the remote form.

    Element operations raise ``ElementNotFound`` when the target is absent;
    waits return False on timeout instead of raising.
    """

    @abstractmethod
    def open(self, url: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def locate(self, selector: str) -> bool:
        raise NotImplementedError

    @abstractmethod
    def read(self, selector: str) -> str | None:
        raise NotImplementedError

    @abstractmethod
    def read_all(self, selector: str) -> list[str]:
        raise NotImplementedError

    @abstractmethod
    def fill(self, selector: str, value: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def select(self, selector: str, *, value: str | None = None, label: str | None = None) -> None:
        raise NotImplementedError

    @abstractmethod
    def check(self, selector: str, checked: bool = True) -> None:
        raise NotImplementedError

    @abstractmethod
    def click(self, selector: str) -> None:
        raise NotImplementedError

    @abstractmethod
    def wait_for(self, state: str, timeout_ms: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        raise NotImplementedError

    @abstractmethod
    def is_ready(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def pause(self, ms: int) -> None:
        raise NotImplementedError

    @abstractmethod
    def snapshot(self) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def element_snapshot(self, selector: str) -> bytes:
        raise NotImplementedError

    @abstractmethod
    def current_url(self) -> str:
        raise NotImplementedError

    @abstractmethod
    def cancel(self) -> bool:
        raise NotImplementedError

    @abstractmethod
    def close(self) -> None:
        raise NotImplementedError


def build_driver(settings: Settings) -> RemoteFormDriver:
    mode = settings.form_driver_mode.strip().lower()
    if mode == "playwright":
        from formpilot.automation.playwright_driver import PlaywrightFormDriver

        return PlaywrightFormDriver(
            headless=settings.form_browser_headless,
            action_timeout_ms=settings.form_action_timeout_ms,
        )
    if mode == "mock":
        from formpilot.automation.mock_driver import MockFormDriver

        return MockFormDriver()
    raise ValueError(f"Unsupported form driver mode: {settings.form_driver_mode}")
