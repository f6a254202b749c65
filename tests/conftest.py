import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from formpilot.core.config import Settings
from formpilot.db import models  # noqa: F401
from formpilot.db.base import Base
from formpilot.services.container import build_services
from formpilot.services.event_bus import MemoryEventBus


@pytest.fixture
def settings(tmp_path):
    return Settings(
        artifact_dir=tmp_path / "artifacts",
        job_dispatch_mode="thread",
        form_driver_mode="mock",
        form_select_delay_ms=0,
        form_field_delay_ms=0,
        captcha_poll_seconds=0.02,
        captcha_ttl_seconds=30,
        captcha_solve_wait_seconds=5.0,
        progress_stream_keepalive_seconds=0.2,
        worker_update_base_url="",
    )


@pytest.fixture
def session_factory(tmp_path):
    engine = create_engine(
        f"sqlite:///{tmp_path / 'formpilot.db'}",
        connect_args={"check_same_thread": False, "timeout": 30},
    )
    Base.metadata.create_all(engine)
    yield sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    engine.dispose()


@pytest.fixture
def bus():
    return MemoryEventBus(buffer_size=100)


@pytest.fixture
def services(settings, session_factory, bus):
    return build_services(settings=settings, session_factory=session_factory, bus=bus)


@pytest.fixture
def field_map():
    return {
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
            "us_social_security_number": "123-45-6789",
        },
        "us_history": {"been_in_us": "No"},
    }


def _wait_until(predicate, *, timeout: float = 10.0, interval: float = 0.02):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        value = predicate()
        if value:
            return value
        time.sleep(interval)
    raise AssertionError("condition not met in time")


@pytest.fixture
def wait_until():
    return _wait_until
