from enum import Enum


class JobStatus(str, Enum):
    QUEUED = "queued"
    RUNNING = "running"
    WAITING_FOR_CAPTCHA = "waiting_for_captcha"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_JOB_STATUSES = frozenset({JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.WAITING_FOR_CAPTCHA})
TERMINAL_JOB_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


class ProgressStatus(str, Enum):
    PENDING = "pending"
    INITIALIZING = "initializing"
    RUNNING = "running"
    WAITING_FOR_CAPTCHA = "waiting_for_captcha"
    CAPTCHA_SOLVED = "captcha_solved"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_PROGRESS_STATUSES = frozenset(
    {ProgressStatus.COMPLETED, ProgressStatus.FAILED, ProgressStatus.CANCELLED}
)


class ProgressStep(str, Enum):
    JOB_CREATED = "job_created"
    JOB_STARTED = "job_started"
    BROWSER_INITIALIZED = "browser_initialized"
    NAVIGATING_TO_FORM = "navigating_to_form"
    EMBASSY_SELECTED = "embassy_selected"
    CAPTCHA_DETECTED = "captcha_detected"
    CAPTCHA_INCORRECT = "captcha_incorrect"
    CAPTCHA_REFRESH_REQUESTED = "captcha_refresh_requested"
    CAPTCHA_SOLVED = "captcha_solved"
    APPLICATION_ID_EXTRACTED = "application_id_extracted"
    FORM_SUBMITTED = "form_submitted"
    CONFIRMATION_ID_EXTRACTED = "confirmation_id_extracted"
    JOB_COMPLETED = "job_completed"
    JOB_FAILED = "job_failed"
    JOB_CANCELLED = "job_cancelled"
    JOB_SUPERSEDED = "job_superseded"


def form_step(number: int) -> str:
    return f"form_step_{number}"


class ArtifactType(str, Enum):
    SCREENSHOT = "screenshot"
    HTML = "html"
    LOG = "log"


class FieldType(str, Enum):
    TEXT = "text"
    TEXTAREA = "textarea"
    SELECT = "select"
    RADIO = "radio"
    CHECKBOX = "checkbox"
    SPLIT_DATE = "split_date"
