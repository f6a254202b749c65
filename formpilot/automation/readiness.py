from formpilot.automation.driver import RemoteFormDriver
from formpilot.core.config import Settings
from formpilot.core.errors import TransportTimeout
from formpilot.core.logging import get_logger

logger = get_logger(__name__)

TIER_NETWORK_IDLE = "networkidle"
TIER_DOM_LOADED = "domcontentloaded"
TIER_GRACE = "grace"


class ReadinessLadder:
    """Tiered page-readiness wait.

    The remote site keeps long-polling connections open, so network idle
    often never arrives. Each tier is tried only after the previous one timed
    out, and the wait fails only when all of them do.
    """

    def __init__(self, *, primary_timeout_ms: int, secondary_timeout_ms: int, grace_ms: int) -> None:
        self.primary_timeout_ms = primary_timeout_ms
        self.secondary_timeout_ms = secondary_timeout_ms
        self.grace_ms = grace_ms

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReadinessLadder":
        return cls(
            primary_timeout_ms=settings.readiness_primary_timeout_ms,
            secondary_timeout_ms=settings.readiness_secondary_timeout_ms,
            grace_ms=settings.readiness_grace_ms,
        )

    def wait(self, driver: RemoteFormDriver, *, phase: str, step: int | None = None) -> str:
        if driver.wait_for(TIER_NETWORK_IDLE, self.primary_timeout_ms):
            return TIER_NETWORK_IDLE
        logger.info("Network idle not reached, falling back", extra={"extra": {"phase": phase, "step": step}})

        if driver.wait_for(TIER_DOM_LOADED, self.secondary_timeout_ms):
            return TIER_DOM_LOADED
        logger.warning("DOM load wait timed out, trying grace period", extra={"extra": {"phase": phase, "step": step}})

        driver.pause(self.grace_ms)
        if driver.is_ready():
            return TIER_GRACE
        raise TransportTimeout(phase, step=step)
