import threading
import time
from collections.abc import Callable
from datetime import timedelta

from formpilot.core.clock import ensure_utc, now_utc
from formpilot.core.config import Settings
from formpilot.core.enums import TERMINAL_JOB_STATUSES, JobStatus, ProgressStatus, ProgressStep
from formpilot.core.errors import (
    ChallengeAlreadySolved,
    ChallengeAttemptsExhausted,
    ChallengeExpired,
    ChallengeNotFound,
    ChallengePending,
    ChallengeTimeout,
    InvalidChallengeSolution,
    JobCancelled,
    JobNotFound,
)
from formpilot.core.logging import get_logger, job_extra
from formpilot.db import crud, models
from formpilot.db.session import SessionFactory, session_scope
from formpilot.services.audit import audit_job
from formpilot.services.cancellation import CancellationRegistry
from formpilot.services.job_state import transition
from formpilot.services.progress import ProgressPublisher

logger = get_logger(__name__)

CHALLENGE_DETECTED_PERCENT = 50
CHALLENGE_SOLVED_PERCENT = 55


def is_open(challenge: models.CaptchaChallenge, now=None) -> bool:
    now = now or now_utc()
    return (
        not challenge.solved
        and challenge.retired_at is None
        and ensure_utc(challenge.expires_at) > now
    )


def has_pending_solution(challenge: models.CaptchaChallenge) -> bool:
    return bool(challenge.solution) and not challenge.solved and challenge.retired_at is None


def _ensure_live(job: models.SubmissionJob) -> None:
    # Cancelled or superseded while the worker was busy with the form.
    status = JobStatus(job.status)
    if status in TERMINAL_JOB_STATUSES:
        raise JobCancelled(f"Job {job.id} is already {status.value}")


class ChallengeCoordinator:
    """Issues CAPTCHA challenges and parks the worker until one is answered.

    Two parties meet here: the worker blocked in ``await_solution`` and the
    caller answering through ``solve``. Both poll the store, so they may live
    in different processes; an in-process condition shortens the wait when
    they share one.
    """

    def __init__(
        self,
        *,
        session_factory: SessionFactory,
        progress: ProgressPublisher,
        cancellations: CancellationRegistry,
        settings: Settings,
    ) -> None:
        self.session_factory = session_factory
        self.progress = progress
        self.cancellations = cancellations
        self.settings = settings
        self._cond = threading.Condition()
        cancellations.add_listener(self._wake)

    def _wake(self, *_args) -> None:
        with self._cond:
            self._cond.notify_all()

    def _sleep(self, seconds: float) -> None:
        with self._cond:
            self._cond.wait(max(0.0, seconds))

    def active(self, job_id) -> models.CaptchaChallenge | None:
        with session_scope(self.session_factory) as db:
            challenge = crud.get_open_challenge(db, job_id)
            if challenge is None or not is_open(challenge):
                return None
            if JobStatus(crud.get_job(db, challenge.job_id).status) in TERMINAL_JOB_STATUSES:
                return None
            return challenge

    def list_active(self, owner_id: str) -> list[models.CaptchaChallenge]:
        with session_scope(self.session_factory) as db:
            return crud.list_open_challenges_for_owner(db, owner_id, now=now_utc())

    def issue_if_needed(self, job_id, image_ref: str) -> models.CaptchaChallenge:
        now = now_utc()
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None:
                raise JobNotFound(f"Job {job_id} not found")
            _ensure_live(job)
            current = crud.get_open_challenge(db, job.id, lock=True)
            if current is not None and is_open(current, now):
                return current
            if current is not None:
                current.retired_at = now
            latest = crud.get_latest_challenge(db, job.id)
            challenge = crud.add_challenge(
                db,
                job_id=job.id,
                image_ref=image_ref,
                attempts=latest.attempts if latest else 0,
                expires_at=now + timedelta(seconds=self.settings.captcha_ttl_seconds),
            )
            transition(db, job, JobStatus.WAITING_FOR_CAPTCHA)
            audit_job(
                db,
                job.id,
                "captcha_issued",
                actor_type="worker",
                challenge_id=str(challenge.id),
                attempts=challenge.attempts,
            )

        self.progress.record(
            job_id,
            step=ProgressStep.CAPTCHA_DETECTED,
            status=ProgressStatus.WAITING_FOR_CAPTCHA,
            message="Verification required: solve the CAPTCHA to continue",
            percentage=CHALLENGE_DETECTED_PERCENT,
            challenge_image=image_ref,
            needs_challenge=True,
            metadata={
                "challenge_id": str(challenge.id),
                "expires_at": ensure_utc(challenge.expires_at).isoformat(),
                "attempts": challenge.attempts,
            },
        )
        logger.info("CAPTCHA challenge issued", extra=job_extra(job_id, challenge_id=str(challenge.id)))
        return challenge

    def _validate_solution(self, text: str | None) -> str:
        solution = (text or "").strip()
        if not solution:
            raise InvalidChallengeSolution("Solution must not be empty")
        if len(solution) < self.settings.captcha_solution_min_length:
            raise InvalidChallengeSolution(
                f"Solution is too short (minimum {self.settings.captcha_solution_min_length} characters)"
            )
        if len(solution) > self.settings.captcha_solution_max_length:
            raise InvalidChallengeSolution(
                f"Solution is too long (maximum {self.settings.captcha_solution_max_length} characters)"
            )
        return solution

    def submit_solution(self, job_id, text: str | None, *, owner_id: str | None = None) -> models.CaptchaChallenge:
        """Store a caller's answer for the worker to try. Does not wait for the form's verdict."""
        solution = self._validate_solution(text)
        now = now_utc()
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            if job is None or (owner_id is not None and job.owner_id != owner_id):
                raise JobNotFound(f"Job {job_id} not found")
            challenge = crud.get_latest_challenge(db, job.id, lock=True)
            if challenge is None or JobStatus(job.status) in TERMINAL_JOB_STATUSES:
                raise ChallengeNotFound(f"No active CAPTCHA for job {job_id}")
            if challenge.solved:
                raise ChallengeAlreadySolved("CAPTCHA already solved")
            if ensure_utc(challenge.expires_at) <= now:
                raise ChallengeExpired("CAPTCHA expired; wait for a new one")
            if challenge.retired_at is not None:
                raise ChallengeNotFound(f"No active CAPTCHA for job {job_id}")
            if has_pending_solution(challenge):
                raise ChallengePending("A solution for this CAPTCHA is already being verified")
            challenge.solution = solution
            challenge.submitted_at = now
            audit_job(
                db,
                job.id,
                "captcha_solution_submitted",
                actor_type="user",
                actor_id=job.owner_id,
                challenge_id=str(challenge.id),
            )
        self._wake()
        logger.info("CAPTCHA solution received", extra=job_extra(job_id, challenge_id=str(challenge.id)))
        return challenge

    def solve(self, job_id, text: str | None, *, owner_id: str | None = None, wait_seconds: float | None = None) -> dict:
        challenge = self.submit_solution(job_id, text, owner_id=owner_id)
        wait = self.settings.captcha_solve_wait_seconds if wait_seconds is None else wait_seconds
        return self.wait_for_verdict(challenge.id, timeout=wait)

    def _verdict(self, challenge_id) -> dict:
        with session_scope(self.session_factory) as db:
            challenge = crud.get_challenge(db, challenge_id)
            if challenge is None:
                raise ChallengeNotFound(f"CAPTCHA {challenge_id} not found")
            job = crud.get_job(db, challenge.job_id)
            job_status = JobStatus(job.status)
            if challenge.solved:
                status = "solved"
            elif challenge.retired_at is not None:
                status = "incorrect" if challenge.solution else "expired"
            elif job_status in TERMINAL_JOB_STATUSES:
                status = job_status.value
            else:
                status = "pending"
            return {
                "status": status,
                "challenge_id": str(challenge.id),
                "attempts": challenge.attempts,
                "job_status": job_status.value,
            }

    def wait_for_verdict(self, challenge_id, *, timeout: float) -> dict:
        deadline = time.monotonic() + max(0.0, timeout)
        while True:
            verdict = self._verdict(challenge_id)
            remaining = deadline - time.monotonic()
            if verdict["status"] != "pending" or remaining <= 0:
                return verdict
            self._sleep(min(self.settings.captcha_poll_seconds, remaining))

    def await_solution(self, job_id, challenge_id, *, is_cancelled: Callable[[], bool]) -> str | None:
        """Block the worker until an answer arrives. Returns None when a fresh image was requested."""
        while True:
            if is_cancelled():
                raise JobCancelled(f"Job {job_id} cancelled while waiting for CAPTCHA")
            with session_scope(self.session_factory) as db:
                challenge = crud.get_challenge(db, challenge_id, lock=True)
                if challenge is None:
                    raise ChallengeNotFound(f"CAPTCHA {challenge_id} not found")
                if has_pending_solution(challenge):
                    return challenge.solution
                if challenge.refresh_requested:
                    return None
                now = now_utc()
                remaining = (ensure_utc(challenge.expires_at) - now).total_seconds()
                if remaining <= 0:
                    challenge.retired_at = now
            if remaining <= 0:
                raise ChallengeTimeout(f"CAPTCHA not solved within {self.settings.captcha_ttl_seconds} seconds")
            self._sleep(min(self.settings.captcha_poll_seconds, remaining))

    def record_verdict(self, job_id, challenge_id, *, accepted: bool) -> models.CaptchaChallenge:
        now = now_utc()
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id, lock=True)
            challenge = crud.get_challenge(db, challenge_id, lock=True)
            if job is None or challenge is None:
                raise ChallengeNotFound(f"CAPTCHA {challenge_id} not found")
            _ensure_live(job)
            if accepted:
                challenge.solved = True
                challenge.solved_at = now
                transition(db, job, JobStatus.RUNNING)
            else:
                challenge.attempts += 1
                challenge.retired_at = now
            audit_job(
                db,
                job.id,
                "captcha_accepted" if accepted else "captcha_rejected",
                actor_type="worker",
                challenge_id=str(challenge.id),
                attempts=challenge.attempts,
            )
            attempts = challenge.attempts
        self._wake()

        if accepted:
            self.progress.record(
                job_id,
                step=ProgressStep.CAPTCHA_SOLVED,
                status=ProgressStatus.CAPTCHA_SOLVED,
                message="CAPTCHA accepted",
                percentage=CHALLENGE_SOLVED_PERCENT,
                metadata={"challenge_id": str(challenge_id), "attempts": attempts},
            )
            return challenge

        self.progress.record(
            job_id,
            step=ProgressStep.CAPTCHA_INCORRECT,
            status=ProgressStatus.WAITING_FOR_CAPTCHA,
            message="CAPTCHA rejected by the form; a new one is on its way",
            metadata={"signal": "new_captcha", "challenge_id": str(challenge_id), "attempts": attempts},
        )
        logger.warning("CAPTCHA rejected", extra=job_extra(job_id, attempts=attempts))
        if attempts >= self.settings.captcha_max_attempts:
            raise ChallengeAttemptsExhausted(f"CAPTCHA rejected {attempts} times")
        return challenge

    def request_refresh(self, job_id, *, owner_id: str | None = None) -> models.CaptchaChallenge:
        with session_scope(self.session_factory) as db:
            job = crud.get_job(db, job_id)
            if job is None or (owner_id is not None and job.owner_id != owner_id):
                raise JobNotFound(f"Job {job_id} not found")
            challenge = crud.get_open_challenge(db, job.id, lock=True)
            if challenge is None or not is_open(challenge):
                raise ChallengeNotFound(f"No active CAPTCHA for job {job_id}")
            if has_pending_solution(challenge):
                raise ChallengePending("A solution for this CAPTCHA is already being verified")
            challenge.refresh_requested = True
        self._wake()
        self.progress.record(
            job_id,
            step=ProgressStep.CAPTCHA_REFRESH_REQUESTED,
            status=ProgressStatus.WAITING_FOR_CAPTCHA,
            message="New CAPTCHA image requested",
            metadata={"challenge_id": str(challenge.id)},
        )
        return challenge

    def retire(self, challenge_id) -> None:
        with session_scope(self.session_factory) as db:
            challenge = crud.get_challenge(db, challenge_id, lock=True)
            if challenge is not None and challenge.retired_at is None and not challenge.solved:
                challenge.retired_at = now_utc()

    def expire_stale(self) -> int:
        now = now_utc()
        with session_scope(self.session_factory) as db:
            stale = crud.list_stale_challenges(db, now=now)
            for challenge in stale:
                challenge.retired_at = now
        if stale:
            self._wake()
        return len(stale)
