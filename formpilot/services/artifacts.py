import hashlib
from datetime import timedelta
from pathlib import Path

from formpilot.core.clock import now_utc
from formpilot.core.enums import ArtifactType
from formpilot.core.logging import get_logger, job_extra
from formpilot.db import crud, models
from formpilot.db.session import SessionFactory, session_scope

logger = get_logger(__name__)

MIME_TYPES = {
    ArtifactType.SCREENSHOT: "image/png",
    ArtifactType.HTML: "text/html",
    ArtifactType.LOG: "text/plain",
}


class ArtifactStorage:
    """Blob store on the local filesystem; refs are paths relative to ``root``."""

    def __init__(self, root: Path) -> None:
        self.root = Path(root)

    def save(self, job_id, kind: str, filename: str, data: bytes) -> tuple[str, str, int]:
        ref = f"jobs/{job_id}/{kind}/{filename}"
        path = self.root / ref
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(data)
        return ref, hashlib.sha256(data).hexdigest(), len(data)

    def read(self, ref: str) -> bytes:
        path = (self.root / ref).resolve()
        if self.root.resolve() not in path.parents:
            raise FileNotFoundError(ref)
        return path.read_bytes()

    def delete(self, ref: str) -> bool:
        path = self.root / ref
        if not path.exists():
            return False
        path.unlink()
        return True


def _stamp() -> str:
    return now_utc().strftime("%Y%m%dT%H%M%S%fZ")


def failure_filename(step_number: int | None, error_count: int, phase: str) -> str:
    if step_number is not None:
        return f"step-{step_number}-validation-error-{error_count}-errors-{_stamp()}.png"
    return f"{phase}-failure-{_stamp()}.png"


class ArtifactCapture:
    def __init__(self, *, session_factory: SessionFactory, storage: ArtifactStorage) -> None:
        self.session_factory = session_factory
        self.storage = storage

    def capture_failure(
        self,
        job_id,
        *,
        driver,
        step_name: str | None,
        step_number: int | None = None,
        reason: str = "",
        metadata: dict | None = None,
    ) -> models.JobArtifact | None:
        """Snapshot the remote page for diagnosis. Never raises."""
        meta = dict(metadata or {})
        try:
            data = driver.snapshot()
            filename = failure_filename(step_number, len(meta.get("validation_errors") or []), step_name or "job")
            ref, checksum, size = self.storage.save(job_id, ArtifactType.SCREENSHOT.value, filename, data)
            try:
                meta.setdefault("page_url", driver.current_url())
            except Exception:
                meta.setdefault("page_url", None)
            meta["reason"] = reason
            with session_scope(self.session_factory) as db:
                artifact = crud.add_artifact(
                    db,
                    job_id=crud.get_job(db, job_id).id,
                    artifact_type=ArtifactType.SCREENSHOT,
                    step_name=step_name,
                    step_number=step_number,
                    storage_ref=ref,
                    checksum_sha256=checksum,
                    mime_type=MIME_TYPES[ArtifactType.SCREENSHOT],
                    size_bytes=size,
                    metadata=meta,
                )
            logger.info("Failure artifact captured", extra=job_extra(job_id, step=step_name, artifact=ref))
            return artifact
        except Exception:
            # Capture must never mask the failure being reported.
            logger.exception("Artifact capture failed", extra=job_extra(job_id, step=step_name))
            return None

    def store_challenge_image(self, job_id, data: bytes) -> str:
        ref, _, _ = self.storage.save(job_id, "captcha", f"captcha-{_stamp()}.png", data)
        return ref

    def list_for_job(self, job_id) -> list[models.JobArtifact]:
        with session_scope(self.session_factory) as db:
            return crud.list_artifacts(db, job_id)

    def read(self, artifact: models.JobArtifact) -> bytes:
        return self.storage.read(artifact.storage_ref)

    def cleanup_older_than(self, days: int) -> int:
        cutoff = now_utc() - timedelta(days=days)
        with session_scope(self.session_factory) as db:
            stale = crud.list_artifacts_older_than(db, cutoff)
            for artifact in stale:
                try:
                    self.storage.delete(artifact.storage_ref)
                except OSError:
                    logger.warning(
                        "Could not delete artifact file",
                        extra=job_extra(artifact.job_id, artifact=artifact.storage_ref),
                    )
            removed = crud.delete_artifacts(db, [artifact.id for artifact in stale])
        logger.info("Artifact retention sweep finished", extra={"extra": {"removed": removed, "cutoff": cutoff}})
        return removed
