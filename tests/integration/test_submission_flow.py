import pytest

from formpilot.automation.mock_driver import MockFormDriver
from formpilot.core.enums import JobStatus
from formpilot.workers.dispatch import ThreadDispatcher


@pytest.fixture
def dispatcher(services):
    dispatcher = ThreadDispatcher(services, max_workers=2, driver_factory=lambda: MockFormDriver(captcha_answer="ABCD12"))
    services.orchestrator.dispatcher = dispatcher
    yield dispatcher
    dispatcher.shutdown(wait=False)


def test_captcha_retry_then_completion(services, dispatcher, field_map, wait_until):
    job, _ = services.orchestrator.submit(
        submission_id="sub-1", owner_id="owner-1", field_map=field_map, embassy="PAKISTAN, ISLAMABAD"
    )

    first = wait_until(lambda: services.challenges.active(job.id))
    assert services.states.status_of(job.id) == JobStatus.WAITING_FOR_CAPTCHA

    verdict = services.challenges.solve(job.id, "WRONG1", owner_id="owner-1")
    assert verdict["status"] == "incorrect"

    second = wait_until(lambda: (c := services.challenges.active(job.id)) and c.id != first.id and c)
    assert second.image_ref != first.image_ref

    verdict = services.challenges.solve(job.id, "ABCD12", owner_id="owner-1")
    assert verdict["status"] == "solved"

    result = dispatcher.futures[str(job.id)].result(timeout=30)
    assert result["status"] == "completed"

    stored = services.states.load(job.id)
    assert stored.application_id == "AA00MOCK01"
    assert stored.confirmation_id == "AA00MOCK01-CONF"
    assert len(stored.metadata_json["security_answer"]) == 6

    steps = [event["step"] for event in services.progress.history(job.id)]
    assert steps.count("captcha_detected") == 2
    assert "captcha_incorrect" in steps
    assert "captcha_solved" in steps
    assert steps[-1] == "job_completed"


def test_cancel_while_waiting_for_captcha(services, dispatcher, field_map, wait_until):
    job, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    wait_until(lambda: services.challenges.active(job.id))

    outcome = services.orchestrator.cancel(job.id, owner_id="owner-1")
    assert outcome["job"].status == JobStatus.CANCELLED

    result = dispatcher.futures[str(job.id)].result(timeout=30)
    assert result["status"] == "cancelled"
    assert services.states.load(job.id).application_id is None
    assert services.progress.history(job.id)[-1]["step"] == "job_cancelled"


def test_resubmission_supersedes_running_job(services, dispatcher, field_map, wait_until):
    first, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    wait_until(lambda: services.challenges.active(first.id))

    second, created = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    assert created

    dispatcher.futures[str(first.id)].result(timeout=30)
    stored = services.states.load(first.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "SUPERSEDED"
    assert stored.metadata_json["superseded_by"] == str(second.id)

    wait_until(lambda: services.challenges.active(second.id))
    services.orchestrator.cancel(second.id)
    dispatcher.futures[str(second.id)].result(timeout=30)
