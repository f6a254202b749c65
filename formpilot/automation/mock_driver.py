import threading

from formpilot.automation import site
from formpilot.automation.driver import READY_STATES, RemoteFormDriver
from formpilot.core.errors import ElementNotFound

BASE_URL = "https://ceac.state.gov/GenNIV"


class MockFormDriver(RemoteFormDriver):
    """Scripted stand-in for the consular site, used in development and tests.

    Walks the same page sequence as the real form: start page with CAPTCHA,
    application id confirmation, the numbered steps, then the done page.
    Every interaction is recorded so callers can assert on it.
    """

    def __init__(
        self,
        *,
        total_steps: int = 17,
        captcha_required: bool = True,
        captcha_answer: str | None = None,
        validation_errors: dict[int, list[str]] | None = None,
        application_id: str = "AA00MOCK01",
        confirmation_id: str = "AA00MOCK01-CONF",
        missing: set[str] | None = None,
        stall_tiers: int = 0,
        snapshot_fails: bool = False,
    ) -> None:
        self.total_steps = total_steps
        self.captcha_required = captcha_required
        self.captcha_answer = captcha_answer
        self.validation_errors = validation_errors or {}
        self.application_id = application_id
        self.confirmation_id = confirmation_id
        self.missing = set(missing or ())
        self.stall_tiers = stall_tiers
        self.snapshot_fails = snapshot_fails

        self.page = "closed"
        self.step = 0
        self.captcha_version = 1
        self.captcha_error = False
        self.rejected_step: int | None = None
        self.values: dict[str, str] = {}
        self.checked: dict[str, bool] = {}
        self.fills: list[tuple[str, str]] = []
        self.selects: list[tuple[str, str | None, str | None]] = []
        self.clicks: list[str] = []
        self.waits: list[str] = []
        self.selector_waits: list[str] = []
        self.pauses: list[int] = []
        self.opened_url: str | None = None
        self.closed = False
        self._cancelled = threading.Event()

    @property
    def cancel_requested(self) -> bool:
        return self._cancelled.is_set()

    def _require(self, selector: str) -> None:
        if self.page == "closed":
            raise ElementNotFound("Browser session is not open")
        if selector in self.missing:
            raise ElementNotFound(f"Element not found: {selector}")

    def _errors_here(self) -> list[str]:
        # Errors appear only once the step has been submitted and bounced back.
        if self.page == "step" and self.rejected_step == self.step:
            return list(self.validation_errors.get(self.step, []))
        return []

    def open(self, url: str) -> None:
        self.opened_url = url
        self.page = "start"
        self.closed = False

    def locate(self, selector: str) -> bool:
        if self.page == "closed" or selector in self.missing:
            return False
        if selector == site.CAPTCHA_IMAGE:
            return self.page == "start" and self.captcha_required
        if selector in site.CAPTCHA_ERRORS:
            return self.page == "start" and self.captcha_error
        if selector in site.VALIDATION_SUMMARIES:
            return bool(self._errors_here())
        if selector == site.CONFIRMATION_NUMBER:
            return self.page == "done"
        return True

    def read(self, selector: str) -> str | None:
        if self.page == "closed" or selector in self.missing:
            return None
        if selector == site.BARCODE and self.page == "confirm":
            return self.application_id
        if selector == site.APPLICATION_DATE and self.page == "confirm":
            return "01-JAN-2026"
        if selector == site.CONFIRMATION_NUMBER and self.page == "done":
            return self.confirmation_id
        return self.values.get(selector)

    def read_all(self, selector: str) -> list[str]:
        if selector in site.VALIDATION_ITEMS:
            return self._errors_here()
        return []

    def fill(self, selector: str, value: str) -> None:
        self._require(selector)
        self.values[selector] = value
        self.fills.append((selector, value))

    def select(self, selector: str, *, value: str | None = None, label: str | None = None) -> None:
        self._require(selector)
        self.values[selector] = value if value is not None else label
        self.selects.append((selector, value, label))

    def check(self, selector: str, checked: bool = True) -> None:
        self._require(selector)
        self.checked[selector] = checked

    def click(self, selector: str) -> None:
        self._require(selector)
        self.clicks.append(selector)
        if selector == site.CAPTCHA_REFRESH and self.page == "start":
            self.captcha_version += 1
            self.captcha_error = False
        elif selector == site.START_BUTTON and self.page == "start":
            self._submit_captcha()
        elif selector == site.CONTINUE_BUTTON and self.page == "confirm":
            self.page = "step"
            self.step = 1
        elif selector == site.NEXT_BUTTON and self.page == "step":
            if self.validation_errors.get(self.step):
                self.rejected_step = self.step
                return
            self.rejected_step = None
            if self.step >= self.total_steps:
                self.page = "done"
            else:
                self.step += 1

    def _submit_captcha(self) -> None:
        if not self.captcha_required:
            self.page = "confirm"
            return
        answer = self.values.get(site.CAPTCHA_INPUT, "")
        if self.captcha_answer is None or answer == self.captcha_answer:
            self.page = "confirm"
            self.captcha_error = False
            return
        self.captcha_error = True
        self.captcha_version += 1
        self.values.pop(site.CAPTCHA_INPUT, None)

    def wait_for(self, state: str, timeout_ms: int) -> bool:
        if state not in READY_STATES:
            raise ValueError(f"Unknown load state: {state}")
        self.waits.append(state)
        return self.stall_tiers < READY_STATES.index(state) + 1

    def wait_for_selector(self, selector: str, timeout_ms: int) -> bool:
        self.selector_waits.append(selector)
        return self.locate(selector)

    def is_ready(self) -> bool:
        self.waits.append("ready")
        return self.stall_tiers < 3

    def pause(self, ms: int) -> None:
        self.pauses.append(ms)

    def snapshot(self) -> bytes:
        if self.snapshot_fails:
            raise ElementNotFound("Screenshot failed")
        return f"PNG:{self.page}:{self.step}".encode()

    def element_snapshot(self, selector: str) -> bytes:
        self._require(selector)
        if selector == site.CAPTCHA_IMAGE:
            return f"PNG:captcha:{self.captcha_version}".encode()
        return f"PNG:{selector}".encode()

    def current_url(self) -> str:
        if self.page == "start":
            return f"{BASE_URL}/Default.aspx"
        if self.page == "confirm":
            return f"{BASE_URL}/{site.CONFIRM_PAGE_MARKER}?node=SecureQuestion"
        if self.page == "step":
            return f"{BASE_URL}/General/complete_personal.aspx?node=Step{self.step}"
        if self.page == "done":
            return f"{BASE_URL}/General/complete_done.aspx?node=Done"
        return "about:blank"

    def cancel(self) -> bool:
        self._cancelled.set()
        return self.page != "closed"

    def close(self) -> None:
        self.page = "closed"
        self.closed = True
