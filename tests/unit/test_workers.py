import uuid
from types import SimpleNamespace

import httpx
import pytest

from formpilot.automation.engine import StepEngine
from formpilot.automation.mock_driver import MockFormDriver
from formpilot.core.enums import JobStatus
from formpilot.core.errors import JobCancelled
from formpilot.workers import runner
from formpilot.workers.channel import DirectWorkerChannel, HttpWorkerChannel, build_channel
from formpilot.workers.dispatch import CeleryDispatcher, ThreadDispatcher, broker_priority, build_dispatcher


def _queued_job(services, field_map):
    job, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    return job


def test_run_job_completes_and_releases_driver(services, field_map):
    job = _queued_job(services, field_map)
    driver = MockFormDriver(captcha_required=False)

    result = runner.run_job(services, str(job.id), driver=driver)

    assert result == {"ok": True, "job_id": str(job.id), "status": "completed"}
    assert driver.closed
    assert services.cancellations.cancel(job.id) is False
    steps = [event["step"] for event in services.progress.history(job.id)]
    assert steps[:2] == ["job_created", "job_started"]


def test_run_job_skips_cancelled_job(services, field_map):
    job = _queued_job(services, field_map)
    services.orchestrator.cancel(job.id)
    driver = MockFormDriver()

    result = runner.run_job(services, str(job.id), driver=driver)

    assert result["ok"] is False
    assert result["status"] == "cancelled"
    assert driver.opened_url is None


def test_run_job_unknown_job(services):
    result = runner.run_job(services, str(uuid.uuid4()))
    assert result["error"] == "JOB_NOT_FOUND"


def test_run_job_marks_crash_as_failure(services, field_map, monkeypatch):
    job = _queued_job(services, field_map)

    def crash(self, job_id, **kwargs):
        raise RuntimeError("browser exploded")

    monkeypatch.setattr(StepEngine, "run", crash)
    driver = MockFormDriver()

    with pytest.raises(RuntimeError):
        runner.run_job(services, str(job.id), driver=driver)

    stored = services.states.load(job.id)
    assert stored.status == JobStatus.FAILED
    assert stored.error_code == "RuntimeError"
    assert driver.closed
    artifacts = services.artifacts.list_for_job(job.id)
    assert [artifact.step_name for artifact in artifacts] == ["worker"]
    last = services.progress.history(job.id)[-1]
    assert last["step"] == "job_failed"
    assert last["metadata"]["artifact_id"] == str(artifacts[0].id)


def test_direct_channel_refuses_finished_job(services, field_map):
    job = _queued_job(services, field_map)
    services.orchestrator.cancel(job.id)

    with pytest.raises(JobCancelled):
        DirectWorkerChannel(services.orchestrator).push(job.id, application_id="AA00TEST01")


class FakeClient:
    def __init__(self, status_code):
        self.status_code = status_code
        self.calls = []

    def post(self, url, *, json, headers):
        self.calls.append(SimpleNamespace(url=url, json=json, headers=headers))
        return httpx.Response(self.status_code, request=httpx.Request("POST", url), text="{}")


def _http_channel(settings, client):
    return HttpWorkerChannel(settings.model_copy(update={"worker_update_base_url": "http://api:8000/"}), client)


def test_http_channel_posts_patch_with_secret(settings):
    client = FakeClient(200)

    _http_channel(settings, client).push("job-1", application_id="AA00TEST01", metadata={"completed_steps": 3})

    call = client.calls[0]
    assert call.url == "http://api:8000/internal/jobs/job-1/worker-update"
    assert call.json == {"application_id": "AA00TEST01", "metadata": {"completed_steps": 3}}
    assert call.headers["X-Worker-Secret"] == settings.worker_shared_secret


@pytest.mark.parametrize("status_code", [404, 409])
def test_http_channel_stops_when_job_is_gone(settings, status_code):
    with pytest.raises(JobCancelled):
        _http_channel(settings, FakeClient(status_code)).push("job-1", confirmation_id="C-1")


def test_http_channel_raises_on_server_error(settings):
    with pytest.raises(httpx.HTTPStatusError):
        _http_channel(settings, FakeClient(500)).push("job-1", confirmation_id="C-1")


def test_build_channel_picks_transport(services, settings):
    assert isinstance(build_channel(settings, services.orchestrator), DirectWorkerChannel)
    remote = settings.model_copy(update={"worker_update_base_url": "http://api:8000"})
    assert isinstance(build_channel(remote, services.orchestrator), HttpWorkerChannel)


def test_build_dispatcher_modes(services, settings):
    threaded = build_dispatcher(settings, services)
    assert isinstance(threaded, ThreadDispatcher)
    threaded.shutdown()

    assert isinstance(build_dispatcher(settings.model_copy(update={"job_dispatch_mode": "celery"}), services), CeleryDispatcher)
    with pytest.raises(ValueError):
        build_dispatcher(settings.model_copy(update={"job_dispatch_mode": "cron"}), services)


def test_thread_dispatcher_runs_job(services, field_map):
    dispatcher = ThreadDispatcher(services, max_workers=1, driver_factory=lambda: MockFormDriver(captcha_required=False))
    services.orchestrator.dispatcher = dispatcher
    try:
        job = _queued_job(services, field_map)
        result = dispatcher.futures[str(job.id)].result(timeout=30)
    finally:
        dispatcher.shutdown()

    assert result["status"] == "completed"
    assert services.states.load(job.id).dispatch_ref == f"thread:{job.id}"


def test_broker_priority_serves_urgent_jobs_first():
    assert broker_priority(10) == 0
    assert broker_priority(1) == 9
    assert broker_priority(42) == 0


def test_thread_dispatcher_forgets_finished_jobs(services, field_map):
    dispatcher = ThreadDispatcher(services, max_workers=1, driver_factory=lambda: MockFormDriver(captcha_required=False))
    services.orchestrator.dispatcher = dispatcher
    try:
        first, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
        dispatcher.futures[str(first.id)].result(timeout=30)
        second, _ = services.orchestrator.submit(submission_id="sub-2", owner_id="owner-1", field_map=field_map)
        dispatcher.futures[str(second.id)].result(timeout=30)
    finally:
        dispatcher.shutdown()

    assert list(dispatcher.futures) == [str(second.id)]
    assert services.cancellations.tracked() == set()
