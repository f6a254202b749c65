from concurrent.futures import Future, ThreadPoolExecutor

from formpilot.core.config import Settings
from formpilot.core.logging import get_logger, job_extra
from formpilot.workers.runner import run_job

logger = get_logger(__name__)


def broker_priority(priority: int) -> int:
    """Job priority runs 1 (low) to 10 (urgent); the Redis broker serves 0 first."""
    return 10 - max(1, min(10, priority))


class CeleryDispatcher:
    def dispatch(self, job_id: str, *, priority: int = 5) -> str:
        from formpilot.workers.tasks import run_submission_job

        result = run_submission_job.apply_async(args=[job_id], priority=broker_priority(priority))
        return result.id


class ThreadDispatcher:
    """Runs jobs on an in-process pool; each job owns one thread and one driver session."""

    def __init__(self, services, *, max_workers: int = 2, driver_factory=None) -> None:
        self.services = services
        self.driver_factory = driver_factory
        self.executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="formpilot-job")
        self.futures: dict[str, Future] = {}

    def _run(self, job_id: str) -> dict:
        driver = self.driver_factory() if self.driver_factory else None
        try:
            return run_job(self.services, job_id, driver=driver)
        except Exception:
            logger.exception("Job thread crashed", extra=job_extra(job_id))
            raise

    def _prune(self) -> None:
        # Finished jobs stay visible until the next dispatch.
        for job_id in [key for key, future in self.futures.items() if future.done()]:
            self.futures.pop(job_id, None)

    def dispatch(self, job_id: str, *, priority: int = 5) -> str:
        self._prune()
        self.futures[job_id] = self.executor.submit(self._run, job_id)
        return f"thread:{job_id}"

    def shutdown(self, wait: bool = True) -> None:
        self.executor.shutdown(wait=wait)


def build_dispatcher(settings: Settings, services):
    mode = settings.job_dispatch_mode.strip().lower()
    if mode == "thread":
        return ThreadDispatcher(services, max_workers=settings.worker_concurrency)
    if mode == "celery":
        return CeleryDispatcher()
    raise ValueError(f"Unsupported job dispatch mode: {settings.job_dispatch_mode}")
