class FormPilotError(Exception):
    code = "FORMPILOT_ERROR"
    http_status = 500

    def __init__(self, message: str = "", *, code: str | None = None) -> None:
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__
        if code:
            self.code = code


class JobNotFound(FormPilotError):
    code = "JOB_NOT_FOUND"
    http_status = 404


class InvalidJobTransition(FormPilotError):
    code = "INVALID_TRANSITION"
    http_status = 400


class InvalidSubmission(FormPilotError):
    code = "INVALID_SUBMISSION"
    http_status = 400


class JobCancelled(FormPilotError):
    """Raised at a checkpoint once cancellation has been observed."""

    code = "JOB_CANCELLED"
    http_status = 409


class AutomationError(FormPilotError):
    """Fatal for the job that raised it."""

    code = "AUTOMATION_ERROR"

    def __init__(self, message: str = "", *, code: str | None = None, step: int | None = None) -> None:
        super().__init__(message, code=code)
        self.step = step


class RemoteValidationError(AutomationError):
    def __init__(self, step: int, errors: list[str]) -> None:
        summary = "; ".join(errors[:5]) or "validation error reported by the form"
        super().__init__(
            f"Step {step} rejected by the form: {summary}",
            code=f"STEP_{step}_VALIDATION_FAILED",
            step=step,
        )
        self.errors = list(errors)


class TransportTimeout(AutomationError):
    def __init__(self, phase: str, *, step: int | None = None) -> None:
        code = f"STEP_{step}_TIMEOUT" if step is not None else f"{phase.upper()}_TIMEOUT"
        super().__init__(f"Page did not become ready during {phase}", code=code, step=step)
        self.phase = phase


class ChallengeTimeout(AutomationError):
    code = "CAPTCHA_TIMEOUT"


class ChallengeAttemptsExhausted(AutomationError):
    code = "CAPTCHA_ATTEMPTS_EXHAUSTED"


class ElementNotFound(AutomationError):
    code = "ELEMENT_NOT_FOUND"


class FieldMaterializationError(FormPilotError):
    """A conditional sub-field never appeared. Logged, never fatal."""

    code = "FIELD_NOT_MATERIALIZED"


class ChallengeError(FormPilotError):
    code = "CAPTCHA_ERROR"
    http_status = 409


class ChallengeNotFound(ChallengeError):
    code = "CAPTCHA_NOT_FOUND"
    http_status = 404


class ChallengeExpired(ChallengeError):
    code = "CAPTCHA_EXPIRED"


class ChallengeAlreadySolved(ChallengeError):
    code = "CAPTCHA_ALREADY_SOLVED"


class ChallengePending(ChallengeError):
    code = "CAPTCHA_SOLUTION_PENDING"


class InvalidChallengeSolution(ChallengeError):
    code = "CAPTCHA_SOLUTION_INVALID"
    http_status = 400


class LocalValidationWarning(UserWarning):
    """Pre-submission completeness finding. Collected and logged only."""

    def __init__(self, step: int, field_key: str, message: str) -> None:
        super().__init__(message)
        self.step = step
        self.field_key = field_key
        self.message = message

    def as_dict(self) -> dict:
        return {"step": self.step, "field": self.field_key, "message": self.message}
