import threading
from pathlib import Path

import pytest

from formpilot.automation import site
from formpilot.automation.engine import StepEngine, generate_security_answer, step_percentage
from formpilot.automation.hooks import default_hooks
from formpilot.automation.mock_driver import MockFormDriver
from formpilot.core.enums import JobStatus
from formpilot.workers.channel import DirectWorkerChannel

PREFIX = "#ctl00_SiteContentPlaceHolder_FormView1_"


def _running_job(services, field_map):
    job, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    services.states.move(job.id, JobStatus.RUNNING)
    return job


def _engine(services, driver, hooks=None):
    return StepEngine(
        settings=services.settings,
        driver=driver,
        plan=services.plan,
        progress=services.progress,
        challenges=services.challenges,
        artifacts=services.artifacts,
        states=services.states,
        cancellations=services.cancellations,
        channel=DirectWorkerChannel(services.orchestrator),
        hooks=hooks,
    )


def test_step_percentage_spans_form_steps():
    assert step_percentage(0, 17) == 60
    assert step_percentage(17, 17) == 95
    assert 60 < step_percentage(8, 17) < 95


def test_security_answer_shape():
    answer = generate_security_answer()
    assert len(answer) == 6
    assert answer.isalpha() and answer.isupper()


def test_full_run_completes_job(services, field_map):
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False)

    status = _engine(services, driver).run(job.id, field_map=field_map, embassy="India, New Delhi")

    assert status == JobStatus.COMPLETED
    stored = services.states.load(job.id)
    assert stored.status == JobStatus.COMPLETED
    assert stored.application_id == "AA00MOCK01"
    assert stored.confirmation_id == "AA00MOCK01-CONF"
    assert stored.metadata_json["application_date"] == "01-JAN-2026"
    assert len(stored.metadata_json["security_answer"]) == 6
    assert stored.metadata_json["completed_steps"] == 17

    assert (site.LOCATION_SELECT, "NWD", "INDIA, NEW DELHI") in driver.selects
    assert (f"{PREFIX}ddlAPP_GENDER", "F", "FEMALE") in driver.selects
    assert (f"{PREFIX}ddlAPP_POB_CNTRY", "PKST", "PAKISTAN") in driver.selects
    assert (f"{PREFIX}ddlDOBMonth", "MAR", None) in driver.selects
    assert (f"{PREFIX}tbxDOBYear", "1994") in driver.fills
    assert (f"{PREFIX}tbxAPP_SSN1", "123") in driver.fills
    assert (f"{PREFIX}tbxAPP_SSN3", "6789") in driver.fills
    assert f"{PREFIX}rblOtherNames_1" in driver.clicks
    assert driver.checked[site.PRIVACY_CHECKBOX] is True

    history = services.progress.history(job.id)
    percentages = [event["percentage"] for event in history]
    assert percentages == sorted(percentages)
    assert history[-1]["step"] == "job_completed"
    assert history[-1]["percentage"] == 100
    form_steps = [event for event in history if event["step"].startswith("form_step_")]
    assert [event["step_number"] for event in form_steps] == list(range(1, 18))


def test_remote_validation_error_fails_job_with_artifact(services, field_map):
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False, validation_errors={5: ["Date of arrival is invalid."]})

    status = _engine(services, driver).run(job.id, field_map=field_map)

    assert status == JobStatus.FAILED
    stored = services.states.load(job.id)
    assert stored.error_code == "STEP_5_VALIDATION_FAILED"
    assert stored.metadata_json["failed_step"] == 5
    assert stored.metadata_json["validation_errors"] == ["Date of arrival is invalid."]
    assert stored.metadata_json["validation_error_count"] == 1

    artifacts = services.artifacts.list_for_job(job.id)
    assert len(artifacts) == 1
    assert artifacts[0].artifact_type.value == "screenshot"
    assert artifacts[0].step_number == 5
    assert Path(services.settings.artifact_dir, artifacts[0].storage_ref).read_bytes() == b"PNG:step:5"

    history = services.progress.history(job.id)
    steps = [event["step"] for event in history]
    assert "form_step_4" in steps
    assert "form_step_5" not in steps
    assert driver.clicks.count(site.NEXT_BUTTON) == 5
    assert history[-1]["step"] == "job_failed"
    assert history[-1]["metadata"]["error_code"] == "STEP_5_VALIDATION_FAILED"


def test_readiness_exhaustion_is_a_timeout(services, field_map):
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False, stall_tiers=3)

    assert _engine(services, driver).run(job.id, field_map=field_map) == JobStatus.FAILED
    assert services.states.load(job.id).error_code == "NAVIGATE_TIMEOUT"


def test_failed_snapshot_does_not_mask_failure(services, field_map):
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False, validation_errors={1: ["Surname is required."]}, snapshot_fails=True)

    assert _engine(services, driver).run(job.id, field_map=field_map) == JobStatus.FAILED
    assert services.states.load(job.id).error_code == "STEP_1_VALIDATION_FAILED"
    assert services.artifacts.list_for_job(job.id) == []


def test_missing_security_answer_box(services, field_map):
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False, missing={site.SECURITY_ANSWER})

    assert _engine(services, driver).run(job.id, field_map=field_map) == JobStatus.FAILED
    assert services.states.load(job.id).error_code == "ELEMENT_NOT_FOUND"
    # conditional_wait_timeout_ms / conditional_poll_ms slices
    assert driver.selector_waits.count(site.SECURITY_ANSWER) == 30


def test_cancelled_job_stops_at_next_checkpoint(services, field_map):
    job = _running_job(services, field_map)
    services.orchestrator.cancel(job.id)
    driver = MockFormDriver(captcha_required=False)

    status = _engine(services, driver).run(job.id, field_map=field_map)

    assert status == JobStatus.CANCELLED
    assert driver.opened_url is None
    assert driver.selects == []
    assert services.artifacts.list_for_job(job.id) == []


def test_custom_validate_hook_fails_step(services, field_map):
    job = _running_job(services, field_map)
    hooks = default_hooks()
    hooks.custom_validate(3, lambda context, step: ["Travel purpose not accepted"])

    status = _engine(services, MockFormDriver(captcha_required=False), hooks=hooks).run(job.id, field_map=field_map)

    assert status == JobStatus.FAILED
    stored = services.states.load(job.id)
    assert stored.error_code == "STEP_3_VALIDATION_FAILED"
    assert stored.metadata_json["validation_errors"] == ["Travel purpose not accepted"]


@pytest.mark.parametrize("been_in_us", ["Yes", "No"])
def test_conditional_subfields_follow_answer(services, field_map, been_in_us):
    field_map["us_history"] = {
        "been_in_us": been_in_us,
        "last_visit_date": "2019-06-01",
        "last_visit_length_value": "2",
        "last_visit_length_unit": "Week(s)",
    }
    job = _running_job(services, field_map)
    driver = MockFormDriver(captcha_required=False)

    _engine(services, driver).run(job.id, field_map=field_map)

    filled = (f"{PREFIX}dtlPREV_US_VISIT_ctl00_tbxPREV_US_VISIT_LOS", "2") in driver.fills
    assert filled is (been_in_us == "Yes")


class CancelWhileAnswering(MockFormDriver):
    """Owner cancels between the answer being typed and the form's verdict."""

    def __init__(self, services, job_id, **kwargs):
        super().__init__(**kwargs)
        self.services = services
        self.job_id = job_id

    def fill(self, selector, value):
        super().fill(selector, value)
        if selector == site.CAPTCHA_INPUT:
            self.services.orchestrator.cancel(self.job_id)


def test_cancel_during_captcha_answer_is_not_a_failure(services, field_map, wait_until):
    job = _running_job(services, field_map)
    driver = CancelWhileAnswering(services, job.id)
    outcome = {}

    def run():
        outcome["status"] = _engine(services, driver).run(job.id, field_map=field_map)

    worker = threading.Thread(target=run)
    worker.start()
    wait_until(lambda: services.challenges.active(job.id))
    services.challenges.submit_solution(job.id, "ABCD12", owner_id="owner-1")
    worker.join(timeout=10)

    assert not worker.is_alive()
    assert outcome["status"] == JobStatus.CANCELLED
    stored = services.states.load(job.id)
    assert stored.status == JobStatus.CANCELLED
    assert stored.error_code is None
    assert services.artifacts.list_for_job(job.id) == []
    assert "job_failed" not in [event["step"] for event in services.progress.history(job.id)]
