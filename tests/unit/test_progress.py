import redis

from formpilot.core.config import Settings
from formpilot.core.enums import ProgressStatus, ProgressStep, form_step
from formpilot.services import event_bus
from formpilot.services.event_bus import MemoryEventBus, build_event_bus


def _job(services, field_map):
    job, _ = services.orchestrator.submit(submission_id="sub-1", owner_id="owner-1", field_map=field_map)
    return job


def test_percentage_never_goes_backwards(services, field_map):
    job = _job(services, field_map)

    services.progress.record(job.id, step=ProgressStep.NAVIGATING_TO_FORM, status=ProgressStatus.RUNNING, percentage=40)
    event = services.progress.record(
        job.id, step=ProgressStep.CAPTCHA_INCORRECT, status=ProgressStatus.WAITING_FOR_CAPTCHA, percentage=10
    )
    unset = services.progress.record(job.id, step=ProgressStep.CAPTCHA_DETECTED, status=ProgressStatus.RUNNING)

    assert event["percentage"] == 40
    assert unset["percentage"] == 40


def test_history_is_ordered_and_summary_counts_steps(services, field_map):
    job = _job(services, field_map)
    for number in (1, 2):
        services.progress.record(
            job.id, step=form_step(number), status=ProgressStatus.RUNNING, step_number=number, percentage=60 + number
        )

    history = services.progress.history(job.id)
    assert [event["step"] for event in history] == ["job_created", "form_step_1", "form_step_2"]
    assert [event["id"] for event in history] == sorted(event["id"] for event in history)

    summary = services.progress.summary(job.id)
    assert summary["completed_steps"] == 2
    assert summary["current_step"] == "form_step_2"
    assert summary["progress_percentage"] == 62
    assert summary["update_count"] == 3


def test_subscribers_receive_events_until_terminal(services, field_map):
    job = _job(services, field_map)
    subscription = services.progress.subscribe(job.id)

    services.progress.record(job.id, step=ProgressStep.JOB_STARTED, status=ProgressStatus.RUNNING)
    services.progress.record(job.id, step=ProgressStep.JOB_CANCELLED, status=ProgressStatus.CANCELLED)

    assert subscription.get(timeout=1)["step"] == "job_started"
    terminal = subscription.get(timeout=1)
    assert terminal["terminal"] is True
    assert subscription.closed
    assert services.bus.subscriber_count(str(job.id)) == 0


def test_slow_subscriber_keeps_recent_window():
    bus = MemoryEventBus(buffer_size=2)
    subscription = bus.subscribe("job-1")
    for index in range(5):
        bus.publish("job-1", {"id": index, "terminal": False})

    assert [subscription.get(timeout=0)["id"] for _ in range(2)] == [3, 4]
    assert subscription.get(timeout=0) is None


def test_bus_failure_does_not_lose_update(services, field_map, monkeypatch):
    job = _job(services, field_map)

    def broken(*args, **kwargs):
        raise redis.ConnectionError("down")

    monkeypatch.setattr(services.bus, "publish", broken)
    event = services.progress.record(job.id, step=ProgressStep.JOB_STARTED, status=ProgressStatus.RUNNING)

    assert services.progress.history(job.id)[-1]["id"] == event["id"]


def test_memory_bus_when_redis_unreachable(monkeypatch):
    def unreachable(*args, **kwargs):
        raise redis.ConnectionError("no redis")

    monkeypatch.setattr(event_bus.redis, "from_url", unreachable)

    assert isinstance(build_event_bus(Settings()), MemoryEventBus)
