import threading
from collections.abc import Callable

from formpilot.core.logging import get_logger, job_extra

logger = get_logger(__name__)


class CancellationRegistry:
    """In-process cancellation flags and live driver sessions, keyed by job id.

    Workers in other processes observe cancellation through the job status at
    their next checkpoint instead.
    """

    def __init__(self) -> None:
        self._flags: dict[str, threading.Event] = {}
        self._sessions: dict[str, object] = {}
        self._listeners: list[Callable[[str], None]] = []
        self._lock = threading.Lock()

    def add_listener(self, callback: Callable[[str], None]) -> None:
        self._listeners.append(callback)

    def register(self, job_id, driver) -> None:
        with self._lock:
            self._sessions[str(job_id)] = driver
            self._flags.setdefault(str(job_id), threading.Event())

    def tracked(self) -> set[str]:
        with self._lock:
            return set(self._flags) | set(self._sessions)

    def unregister(self, job_id) -> None:
        with self._lock:
            self._sessions.pop(str(job_id), None)
            self._flags.pop(str(job_id), None)

    def is_cancelled(self, job_id) -> bool:
        with self._lock:
            flag = self._flags.get(str(job_id))
        return bool(flag and flag.is_set())

    def cancel(self, job_id) -> bool:
        """Flag the job and ask its live session to stop. True only if the session confirmed.

        Jobs this process is not running get no flag; their workers see the
        stored status instead.
        """
        with self._lock:
            flag = self._flags.get(str(job_id))
            driver = self._sessions.get(str(job_id))
        if flag is not None:
            flag.set()
        for listener in self._listeners:
            listener(str(job_id))
        if driver is None:
            return False
        try:
            return bool(driver.cancel())
        except Exception:
            logger.exception("Remote session cancellation failed", extra=job_extra(job_id))
            return False
