from dataclasses import dataclass
from functools import lru_cache

from formpilot.automation.steps import StepPlan, load_step_plan
from formpilot.core.config import Settings, get_settings
from formpilot.db.session import SessionFactory
from formpilot.services.artifacts import ArtifactCapture, ArtifactStorage
from formpilot.services.cancellation import CancellationRegistry
from formpilot.services.challenges import ChallengeCoordinator
from formpilot.services.event_bus import EventBus, build_event_bus
from formpilot.services.job_state import JobStateMachine
from formpilot.services.orchestrator import JobOrchestrator
from formpilot.services.progress import ProgressPublisher


@dataclass
class Services:
    settings: Settings
    session_factory: SessionFactory
    bus: EventBus
    plan: StepPlan
    states: JobStateMachine
    progress: ProgressPublisher
    cancellations: CancellationRegistry
    challenges: ChallengeCoordinator
    artifacts: ArtifactCapture
    orchestrator: JobOrchestrator


def build_services(
    *,
    settings: Settings,
    session_factory: SessionFactory,
    bus: EventBus,
    plan: StepPlan | None = None,
    dispatcher=None,
) -> Services:
    plan = plan or load_step_plan(str(settings.step_definitions_path))
    cancellations = CancellationRegistry()
    progress = ProgressPublisher(session_factory=session_factory, bus=bus)
    artifacts = ArtifactCapture(session_factory=session_factory, storage=ArtifactStorage(settings.artifact_dir))
    challenges = ChallengeCoordinator(
        session_factory=session_factory,
        progress=progress,
        cancellations=cancellations,
        settings=settings,
    )
    orchestrator = JobOrchestrator(
        session_factory=session_factory,
        settings=settings,
        plan=plan,
        progress=progress,
        artifacts=artifacts,
        cancellations=cancellations,
        dispatcher=dispatcher,
    )
    return Services(
        settings=settings,
        session_factory=session_factory,
        bus=bus,
        plan=plan,
        states=JobStateMachine(session_factory),
        progress=progress,
        cancellations=cancellations,
        challenges=challenges,
        artifacts=artifacts,
        orchestrator=orchestrator,
    )


@lru_cache(maxsize=1)
def get_services() -> Services:
    from formpilot.db.session import SessionLocal
    from formpilot.workers.dispatch import build_dispatcher

    settings = get_settings()
    services = build_services(
        settings=settings,
        session_factory=SessionLocal,
        bus=build_event_bus(settings),
    )
    services.orchestrator.dispatcher = build_dispatcher(settings, services)
    return services
