from formpilot.automation.driver import build_driver
from formpilot.automation.engine import StepEngine
from formpilot.core.enums import JobStatus, ProgressStatus, ProgressStep
from formpilot.core.errors import InvalidJobTransition, JobNotFound
from formpilot.core.logging import get_logger, job_context, job_extra
from formpilot.workers.channel import build_channel

logger = get_logger(__name__)


def run_job(services, job_id: str, *, driver=None) -> dict:
    """Run one queued job to a terminal state on a fresh driver session."""
    with job_context(job_id):
        return _run(services, job_id, driver=driver)


def _run(services, job_id: str, *, driver=None) -> dict:
    states = services.states
    try:
        job = states.load(job_id)
    except JobNotFound:
        logger.warning("Dispatched job does not exist", extra=job_extra(job_id))
        return {"ok": False, "job_id": str(job_id), "error": "JOB_NOT_FOUND"}
    if JobStatus(job.status) != JobStatus.QUEUED:
        logger.info("Skipping job that is no longer queued", extra=job_extra(job_id, status=JobStatus(job.status).value))
        return {"ok": False, "job_id": str(job_id), "status": JobStatus(job.status).value}

    try:
        states.move(job.id, JobStatus.RUNNING)
    except InvalidJobTransition:
        # Cancelled or superseded between dispatch and pickup.
        return {"ok": False, "job_id": str(job_id), "status": states.status_of(job.id).value}
    services.progress.record(
        job.id,
        step=ProgressStep.JOB_STARTED,
        status=ProgressStatus.RUNNING,
        message="Worker picked up the job",
        metadata={"form_version": job.form_version},
    )

    session = None
    try:
        session = driver or build_driver(services.settings)
        services.cancellations.register(job.id, session)
        engine = StepEngine(
            settings=services.settings,
            driver=session,
            plan=services.plan,
            progress=services.progress,
            challenges=services.challenges,
            artifacts=services.artifacts,
            states=states,
            cancellations=services.cancellations,
            channel=build_channel(services.settings, services.orchestrator),
        )
        status = engine.run(job.id, field_map=job.field_map or {}, embassy=job.embassy)
    except Exception as exc:
        services.orchestrator.fail(job.id, exc, driver=session)
        raise
    finally:
        services.cancellations.unregister(job.id)
        if session is not None:
            try:
                session.close()
            except Exception:
                logger.exception("Driver close failed", extra=job_extra(job.id))

    logger.info("Job run finished", extra=job_extra(job.id, status=status.value))
    return {"ok": status == JobStatus.COMPLETED, "job_id": str(job.id), "status": status.value}
