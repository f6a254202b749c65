import time

from formpilot.automation.mock_driver import MockFormDriver
from formpilot.core.config import get_settings
from formpilot.core.enums import TERMINAL_JOB_STATUSES
from formpilot.db.session import SessionLocal
from formpilot.services.container import build_services
from formpilot.services.event_bus import build_event_bus
from formpilot.workers.dispatch import ThreadDispatcher

DEMO_ANSWER = "DEMO42"

FIELD_MAP = {
    "personal_info": {
        "surnames": "KHAN",
        "given_names": "AYESHA",
        "other_names_used": "No",
        "telecode_name": "No",
        "sex": "Female",
        "marital_status": "Single",
        "date_of_birth": "1994-03-07",
        "place_of_birth_city": "Lahore",
        "place_of_birth_country": "Pakistan",
        "nationality": "Pakistan",
    },
    "us_history": {"been_in_us": "No"},
}


def main() -> None:
    settings = get_settings().model_copy(update={"form_driver_mode": "mock", "form_select_delay_ms": 0})
    services = build_services(settings=settings, session_factory=SessionLocal, bus=build_event_bus(settings))
    dispatcher = ThreadDispatcher(services, max_workers=1, driver_factory=lambda: MockFormDriver(captcha_answer=DEMO_ANSWER))
    services.orchestrator.dispatcher = dispatcher

    try:
        job, _ = services.orchestrator.submit(
            submission_id="demo-submission",
            owner_id="demo-owner",
            field_map=FIELD_MAP,
            embassy="PAKISTAN, ISLAMABAD",
            created_via="demo",
        )
        print(f"Submitted job {job.id}; answering CAPTCHA prompts automatically...")

        while services.states.status_of(job.id) not in TERMINAL_JOB_STATUSES:
            challenge = services.challenges.active(job.id)
            if challenge is not None and challenge.solution is None:
                verdict = services.challenges.solve(job.id, DEMO_ANSWER, owner_id="demo-owner")
                print(f"CAPTCHA {challenge.id}: {verdict['status']}")
            time.sleep(0.5)

        summary = services.progress.summary(job.id)
        stored = services.states.load(job.id)
        print(
            "Demo finished:",
            f"status={summary['job_status']}",
            f"application_id={stored.application_id}",
            f"confirmation_id={stored.confirmation_id}",
            f"updates={summary['update_count']}",
        )
    finally:
        dispatcher.shutdown()


if __name__ == "__main__":
    main()
