import uuid

import pytest

from formpilot.core.enums import JobStatus
from formpilot.core.errors import InvalidJobTransition, JobNotFound
from formpilot.db import crud
from formpilot.db.session import session_scope
from formpilot.services.job_state import JobStateMachine, can_transition


def _create(session_factory, **overrides):
    values = {
        "job_id": uuid.uuid4(),
        "submission_id": "sub-1",
        "owner_id": "owner-1",
        "embassy": "Not specified",
        "priority": 5,
        "idempotency_key": uuid.uuid4().hex,
        "form_version": "ds160",
        "field_map": {"personal_info.surnames": "KHAN"},
        "metadata": {"total_steps": 17},
    }
    values.update(overrides)
    with session_scope(session_factory) as db:
        return crud.create_job(db, **values)


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (JobStatus.QUEUED, JobStatus.RUNNING, True),
        (JobStatus.QUEUED, JobStatus.COMPLETED, False),
        (JobStatus.RUNNING, JobStatus.WAITING_FOR_CAPTCHA, True),
        (JobStatus.WAITING_FOR_CAPTCHA, JobStatus.RUNNING, True),
        (JobStatus.WAITING_FOR_CAPTCHA, JobStatus.COMPLETED, False),
        (JobStatus.COMPLETED, JobStatus.FAILED, False),
        (JobStatus.CANCELLED, JobStatus.RUNNING, False),
    ],
)
def test_allowed_transitions(current, target, allowed):
    assert can_transition(current, target) is allowed


def test_move_sets_timestamps(session_factory):
    job = _create(session_factory)
    states = JobStateMachine(session_factory)

    running = states.move(job.id, JobStatus.RUNNING)
    assert running.started_at is not None
    assert running.finished_at is None

    done = states.move(job.id, JobStatus.COMPLETED)
    assert done.finished_at is not None
    assert done.started_at == running.started_at

    stored = states.load(job.id)
    assert stored.started_at.tzinfo is not None
    assert stored.finished_at.tzinfo is not None
    assert stored.finished_at >= stored.started_at


def test_terminal_jobs_reject_moves_and_metadata(session_factory):
    job = _create(session_factory)
    states = JobStateMachine(session_factory)
    states.move(job.id, JobStatus.CANCELLED)

    with pytest.raises(InvalidJobTransition):
        states.move(job.id, JobStatus.RUNNING)
    with pytest.raises(InvalidJobTransition):
        states.merge(job.id, {"late": True})
    assert states.status_of(job.id) == JobStatus.CANCELLED


def test_metadata_merge_is_per_key(session_factory):
    job = _create(session_factory)
    states = JobStateMachine(session_factory)

    states.merge(job.id, {"application_id": "AA001"})
    merged = states.merge(job.id, {"security_answer": "QWERTY", "total_steps": 18})

    assert merged == {"total_steps": 18, "application_id": "AA001", "security_answer": "QWERTY"}


def test_failure_records_error_code(session_factory):
    job = _create(session_factory)
    states = JobStateMachine(session_factory)
    states.move(job.id, JobStatus.RUNNING)

    failed = states.move(job.id, JobStatus.FAILED, error_code="STEP_5_VALIDATION_FAILED")

    assert failed.error_code == "STEP_5_VALIDATION_FAILED"
    assert failed.error_message == "STEP_5_VALIDATION_FAILED"


def test_unknown_job(session_factory):
    states = JobStateMachine(session_factory)
    with pytest.raises(JobNotFound):
        states.move(uuid.uuid4(), JobStatus.RUNNING)
    assert states.status_of("not-a-uuid") is None
