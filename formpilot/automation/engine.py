import secrets
import string
from collections.abc import Mapping

from formpilot.automation import site
from formpilot.automation.driver import RemoteFormDriver
from formpilot.automation.hooks import HookContext, StepHooks, default_hooks
from formpilot.automation.readiness import ReadinessLadder
from formpilot.automation.reference import resolve_location
from formpilot.automation.steps import (
    RADIO_INDEXED,
    FieldMapping,
    StepDefinition,
    StepPlan,
    is_checked,
    resolve_value,
    split_date,
    translate_value,
    validate_completeness,
)
from formpilot.core.config import Settings
from formpilot.core.enums import (
    TERMINAL_JOB_STATUSES,
    FieldType,
    JobStatus,
    ProgressStatus,
    ProgressStep,
    form_step,
)
from formpilot.core.errors import (
    AutomationError,
    ElementNotFound,
    FieldMaterializationError,
    InvalidJobTransition,
    JobCancelled,
    RemoteValidationError,
)
from formpilot.core.logging import get_logger, job_extra
from formpilot.services.artifacts import ArtifactCapture
from formpilot.services.cancellation import CancellationRegistry
from formpilot.services.challenges import ChallengeCoordinator
from formpilot.services.job_state import JobStateMachine
from formpilot.services.progress import ProgressPublisher

logger = get_logger(__name__)

BROWSER_PERCENT = 5
NAVIGATION_PERCENT = 10
LOCATION_PERCENT = 15
APPLICATION_ID_PERCENT = 60
STEPS_SPAN_PERCENT = 35
SUBMITTED_PERCENT = 96
CONFIRMATION_PERCENT = 98
COMPLETED_PERCENT = 100
SECURITY_ANSWER_LENGTH = 6


def step_percentage(number: int, total: int) -> int:
    return APPLICATION_ID_PERCENT + round(STEPS_SPAN_PERCENT * number / max(total, 1))


def generate_security_answer(length: int = SECURITY_ANSWER_LENGTH) -> str:
    return "".join(secrets.choice(string.ascii_uppercase) for _ in range(length))


class StepEngine:
    """Drives one job through the remote form, start page to confirmation.

    Steps run strictly in order on a single driver session. Cancellation is
    observed between steps and while parked on a CAPTCHA, never in the middle
    of filling a page. Any automation error fails the whole job; there is no
    per-step retry.
    """

    def __init__(
        self,
        *,
        settings: Settings,
        driver: RemoteFormDriver,
        plan: StepPlan,
        progress: ProgressPublisher,
        challenges: ChallengeCoordinator,
        artifacts: ArtifactCapture,
        states: JobStateMachine,
        cancellations: CancellationRegistry,
        channel,
        hooks: StepHooks | None = None,
        ladder: ReadinessLadder | None = None,
    ) -> None:
        self.settings = settings
        self.driver = driver
        self.plan = plan
        self.progress = progress
        self.challenges = challenges
        self.artifacts = artifacts
        self.states = states
        self.cancellations = cancellations
        self.channel = channel
        self.hooks = hooks or default_hooks()
        self.ladder = ladder or ReadinessLadder.from_settings(settings)
        self.phase = "start"

    def run(self, job_id, *, field_map: Mapping, embassy: str | None = None) -> JobStatus:
        job_id = str(job_id)
        try:
            self._navigate(job_id)
            self._select_location(job_id, embassy)
            self._challenge_gate(job_id)
            self._confirm_application_id(job_id)
            for step in self.plan.steps:
                self._run_step(job_id, step, field_map)
            return self._finish(job_id)
        except JobCancelled:
            logger.info("Job stopped at checkpoint", extra=job_extra(job_id, phase=self.phase))
            return self.states.status_of(job_id) or JobStatus.CANCELLED
        except AutomationError as exc:
            self._fail(job_id, exc)
            return JobStatus.FAILED
        except Exception as exc:
            logger.exception("Unexpected engine error", extra=job_extra(job_id, phase=self.phase))
            self._fail(job_id, exc)
            raise

    def is_cancelled(self, job_id) -> bool:
        if self.cancellations.is_cancelled(job_id):
            return True
        return self.states.status_of(job_id) in TERMINAL_JOB_STATUSES

    def checkpoint(self, job_id) -> None:
        if self.is_cancelled(job_id):
            raise JobCancelled(f"Job {job_id} stopped before {self.phase}")

    def _navigate(self, job_id: str) -> None:
        self.phase = "navigate"
        self.checkpoint(job_id)
        self.driver.open(self.settings.form_start_url)
        self.progress.record(
            job_id,
            step=ProgressStep.BROWSER_INITIALIZED,
            status=ProgressStatus.INITIALIZING,
            message="Browser session started",
            percentage=BROWSER_PERCENT,
        )
        self.ladder.wait(self.driver, phase=self.phase)
        self.progress.record(
            job_id,
            step=ProgressStep.NAVIGATING_TO_FORM,
            status=ProgressStatus.RUNNING,
            message="Application start page loaded",
            percentage=NAVIGATION_PERCENT,
        )

    def _select_location(self, job_id: str, embassy: str | None) -> None:
        self.phase = "location_selection"
        self.checkpoint(job_id)
        code, label = resolve_location(embassy)
        self.driver.select(site.LOCATION_SELECT, value=code, label=label)
        self.ladder.wait(self.driver, phase=self.phase)
        self.progress.record(
            job_id,
            step=ProgressStep.EMBASSY_SELECTED,
            status=ProgressStatus.RUNNING,
            message=f"Interview location selected: {label}",
            percentage=LOCATION_PERCENT,
            metadata={"location": label, "location_code": code},
        )

    def _challenge_accepted(self) -> bool:
        if site.CONFIRM_PAGE_MARKER in self.driver.current_url():
            return True
        if any(self.driver.locate(selector) for selector in site.CAPTCHA_ERRORS):
            return False
        return not self.driver.locate(site.CAPTCHA_IMAGE)

    def _challenge_gate(self, job_id: str, *, submit_target: str = site.START_BUTTON) -> None:
        """Park on the CAPTCHA until the form accepts an answer, then submit past it."""
        self.phase = "challenge_gate"
        self.checkpoint(job_id)
        if not self.driver.locate(site.CAPTCHA_IMAGE):
            self.driver.click(submit_target)
            self.ladder.wait(self.driver, phase=self.phase)
            return

        while True:
            image = self.driver.element_snapshot(site.CAPTCHA_IMAGE)
            image_ref = self.artifacts.store_challenge_image(job_id, image)
            challenge = self.challenges.issue_if_needed(job_id, image_ref)
            solution = self.challenges.await_solution(
                job_id, challenge.id, is_cancelled=lambda: self.is_cancelled(job_id)
            )
            if solution is None:
                self.challenges.retire(challenge.id)
                self.driver.click(site.CAPTCHA_REFRESH)
                self.ladder.wait(self.driver, phase=self.phase)
                continue

            self.driver.fill(site.CAPTCHA_INPUT, solution)
            self.driver.click(submit_target)
            self.ladder.wait(self.driver, phase=self.phase)
            accepted = self._challenge_accepted()
            self.challenges.record_verdict(job_id, challenge.id, accepted=accepted)
            if accepted:
                return

    def _confirm_application_id(self, job_id: str) -> None:
        self.phase = "application_id"
        self.checkpoint(job_id)
        application_id = self.driver.read(site.BARCODE)
        application_date = self.driver.read(site.APPLICATION_DATE)
        if application_id:
            self.channel.push(
                job_id,
                application_id=application_id,
                metadata={"application_id": application_id, "application_date": application_date},
            )
        else:
            logger.warning("Application id not shown on confirmation page", extra=job_extra(job_id))

        self.driver.check(site.PRIVACY_CHECKBOX, True)
        if not self._materialize(site.SECURITY_ANSWER):
            raise ElementNotFound("Security answer input never became available")
        answer = generate_security_answer()
        self.driver.fill(site.SECURITY_ANSWER, answer)
        self.channel.push(job_id, metadata={"security_answer": answer})
        self.driver.click(site.CONTINUE_BUTTON)
        self.ladder.wait(self.driver, phase=self.phase)
        self.progress.record(
            job_id,
            step=ProgressStep.APPLICATION_ID_EXTRACTED,
            status=ProgressStatus.RUNNING,
            message=f"Application id {application_id} confirmed" if application_id else "Application started",
            percentage=APPLICATION_ID_PERCENT,
            metadata={"application_id": application_id, "application_date": application_date},
        )

    def _run_step(self, job_id: str, step: StepDefinition, field_map: Mapping) -> None:
        self.phase = form_step(step.number)
        self.checkpoint(job_id)
        self.ladder.wait(self.driver, phase=self.phase, step=step.number)

        values = self.hooks.run_pre_step(step, field_map)
        for warning in validate_completeness(step, values):
            logger.warning(warning.message, extra=job_extra(job_id, step=step.number, field=warning.field_key))

        context = HookContext(job_id=job_id, driver=self.driver, ladder=self.ladder, step=step)
        try:
            for mapping in step.fields:
                self._apply(context, mapping, values)
        except ElementNotFound as exc:
            exc.step = exc.step or step.number
            raise

        self.driver.click(step.next_target)
        self.ladder.wait(self.driver, phase=self.phase, step=step.number)
        if self.driver.locate(site.CAPTCHA_IMAGE):
            # Verification demanded on submit; answering it resubmits the page.
            self._challenge_gate(job_id, submit_target=step.next_target)
            self.phase = form_step(step.number)
        errors = self._validation_errors(context)
        if errors:
            raise RemoteValidationError(step.number, errors)

        self.progress.record(
            job_id,
            step=form_step(step.number),
            status=ProgressStatus.RUNNING,
            message=f"Step {step.number} of {self.plan.total_steps} completed: {step.name}",
            percentage=step_percentage(step.number, self.plan.total_steps),
            step_number=step.number,
            metadata={"step_name": step.name, "total_steps": self.plan.total_steps},
        )
        logger.info("Step completed", extra=job_extra(job_id, step=step.number))

    def _pause(self, ms: int) -> None:
        if ms > 0:
            self.driver.pause(ms)

    def _apply(self, context: HookContext, mapping: FieldMapping, values: Mapping) -> None:
        raw = resolve_value(values, mapping.key)
        if raw is None:
            return

        if mapping.type == FieldType.SPLIT_DATE:
            try:
                day, month, year = split_date(raw)
            except ValueError:
                logger.warning(
                    "Skipping unparseable date",
                    extra=job_extra(context.job_id, step=context.step.number, field=mapping.key),
                )
                return
            self.driver.select(mapping.date_targets["day"], value=day)
            self.driver.select(mapping.date_targets["month"], value=month)
            self.driver.fill(mapping.date_targets["year"], year)
            value = f"{day}-{month}-{year}"
            self._pause(self.settings.form_select_delay_ms)
        elif mapping.type == FieldType.SELECT:
            value = translate_value(mapping, raw)
            self.driver.select(mapping.target, value=value, label=str(raw).strip().upper())
            self._pause(self.settings.form_select_delay_ms)
        elif mapping.type == FieldType.RADIO:
            value = translate_value(mapping, raw)
            self.driver.click(mapping.radio_target(value))
        elif mapping.type == FieldType.CHECKBOX:
            checked = is_checked(raw)
            self.driver.check(mapping.target, checked)
            value = "Y" if checked else "N"
        else:
            value = str(raw).strip()
            self.driver.fill(mapping.target, value)
            self._pause(self.settings.form_field_delay_ms)

        self.hooks.run_post_field(context, mapping, value)
        if mapping.conditional is None:
            return
        for sub in mapping.conditional.branch(value):
            if resolve_value(values, sub.key) is None:
                continue
            try:
                self._await_field(sub)
            except FieldMaterializationError as exc:
                logger.warning(exc.message, extra=job_extra(context.job_id, step=context.step.number, field=sub.key))
                continue
            self._apply(context, sub, values)

    def _probe(self, mapping: FieldMapping) -> str:
        if mapping.type == FieldType.SPLIT_DATE:
            return mapping.date_targets["day"]
        if mapping.type == FieldType.RADIO and mapping.radio_style == RADIO_INDEXED:
            return f"{mapping.target}_0"
        return mapping.target

    def _materialize(self, selector: str) -> bool:
        poll_ms = max(self.settings.conditional_poll_ms, 1)
        for _ in range(max(1, self.settings.conditional_wait_timeout_ms // poll_ms)):
            if self.driver.wait_for_selector(selector, poll_ms):
                return True
        return self.driver.locate(selector)

    def _await_field(self, mapping: FieldMapping) -> None:
        selector = self._probe(mapping)
        if not self._materialize(selector):
            raise FieldMaterializationError(f"Conditional field {mapping.key} never appeared at {selector}")

    def _validation_errors(self, context: HookContext) -> list[str]:
        errors: list[str] = []
        for selector in site.VALIDATION_ITEMS:
            errors.extend(self.driver.read_all(selector))
        if not errors:
            for selector in site.VALIDATION_SUMMARIES:
                if self.driver.locate(selector):
                    errors.append(self.driver.read(selector) or "Validation summary shown")
        errors.extend(self.hooks.run_validate(context))
        return list(dict.fromkeys(error.strip() for error in errors if error and error.strip()))

    def _finish(self, job_id: str) -> JobStatus:
        self.phase = "completion"
        self.checkpoint(job_id)
        self.progress.record(
            job_id,
            step=ProgressStep.FORM_SUBMITTED,
            status=ProgressStatus.RUNNING,
            message="All form steps submitted",
            percentage=SUBMITTED_PERCENT,
        )
        confirmation_id = None
        if self.driver.locate(site.CONFIRMATION_NUMBER):
            confirmation_id = self.driver.read(site.CONFIRMATION_NUMBER)
        if confirmation_id:
            self.channel.push(job_id, confirmation_id=confirmation_id, metadata={"confirmation_id": confirmation_id})
            self.progress.record(
                job_id,
                step=ProgressStep.CONFIRMATION_ID_EXTRACTED,
                status=ProgressStatus.RUNNING,
                message=f"Confirmation number {confirmation_id}",
                percentage=CONFIRMATION_PERCENT,
                metadata={"confirmation_id": confirmation_id},
            )

        try:
            self.states.move(job_id, JobStatus.COMPLETED, metadata={"completed_steps": self.plan.total_steps})
        except InvalidJobTransition:
            logger.info("Job stopped before completion could be recorded", extra=job_extra(job_id))
            return self.states.status_of(job_id) or JobStatus.CANCELLED
        self.progress.record(
            job_id,
            step=ProgressStep.JOB_COMPLETED,
            status=ProgressStatus.COMPLETED,
            message="Application form completed",
            percentage=COMPLETED_PERCENT,
            metadata={"confirmation_id": confirmation_id},
        )
        return JobStatus.COMPLETED

    def _fail(self, job_id: str, exc: Exception) -> None:
        step = getattr(exc, "step", None)
        code = getattr(exc, "code", None) if isinstance(exc, AutomationError) else type(exc).__name__
        message = getattr(exc, "message", None) or str(exc) or code
        meta = {"failed_step": step, "failed_phase": self.phase}
        if isinstance(exc, RemoteValidationError):
            meta["validation_errors"] = exc.errors
            meta["validation_error_count"] = len(exc.errors)
        if self.states.status_of(job_id) in TERMINAL_JOB_STATUSES:
            logger.warning("Job already terminal; failure not recorded", extra=job_extra(job_id, error_code=code))
            return

        artifact = self.artifacts.capture_failure(
            job_id,
            driver=self.driver,
            step_name=form_step(step) if step else self.phase,
            step_number=step,
            reason=code,
            metadata=meta,
        )
        try:
            self.states.move(job_id, JobStatus.FAILED, error_code=code, error_message=message, metadata=meta)
        except InvalidJobTransition:
            logger.warning("Job already terminal; failure not recorded", extra=job_extra(job_id, error_code=code))
            return
        self.progress.record(
            job_id,
            step=ProgressStep.JOB_FAILED,
            status=ProgressStatus.FAILED,
            message=message,
            step_number=step,
            metadata={**meta, "error_code": code, "artifact_id": str(artifact.id) if artifact else None},
        )
        logger.error("Job failed", extra=job_extra(job_id, step=step, error_code=code))
