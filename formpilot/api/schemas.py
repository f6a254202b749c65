from datetime import datetime
from typing import Any
from uuid import UUID

from pydantic import BaseModel, Field

from formpilot.core.enums import ArtifactType, JobStatus


class LoginRequest(BaseModel):
    api_key: str
    owner_id: str = Field(min_length=1, max_length=255)


class LoginResponse(BaseModel):
    token: str
    owner_id: str


class JobSubmitRequest(BaseModel):
    submission_id: str = Field(min_length=1, max_length=255)
    field_map: dict[str, Any]
    embassy: str | None = None
    priority: int = 5


class JobResponse(BaseModel):
    id: UUID
    submission_id: str
    owner_id: str
    status: JobStatus
    embassy: str
    priority: int
    form_version: str
    application_id: str | None = None
    confirmation_id: str | None = None
    dispatch_ref: str | None = None
    error_code: str | None = None
    error_message: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    created_at: datetime
    started_at: datetime | None = None
    finished_at: datetime | None = None

    model_config = {"from_attributes": True}


class ProgressUpdateResponse(BaseModel):
    id: int
    job_id: str
    step: str
    step_number: int | None = None
    status: str
    message: str
    percentage: int
    challenge_image: str | None = None
    needs_challenge: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: str | None = None
    terminal: bool = False


class ProgressSummary(BaseModel):
    job_id: str
    job_status: JobStatus
    current_step: str | None = None
    current_status: str | None = None
    progress_percentage: int = 0
    total_steps: int | None = None
    completed_steps: int = 0
    needs_captcha: bool = False
    captcha_image: str | None = None
    last_update: str | None = None
    update_count: int = 0


class ProgressResponse(BaseModel):
    summary: ProgressSummary
    updates: list[ProgressUpdateResponse]


class ArtifactResponse(BaseModel):
    id: UUID
    job_id: UUID
    artifact_type: ArtifactType
    step_name: str | None = None
    step_number: int | None = None
    mime_type: str
    size_bytes: int
    checksum_sha256: str
    metadata: dict[str, Any] = Field(default_factory=dict, validation_alias="metadata_json")
    created_at: datetime

    model_config = {"from_attributes": True}


class JobListItem(BaseModel):
    job: JobResponse
    latest_progress: ProgressUpdateResponse | None = None


class JobDetailResponse(BaseModel):
    job: JobResponse
    summary: ProgressSummary
    progress: list[ProgressUpdateResponse]
    artifacts: list[ArtifactResponse]


class CancelResponse(BaseModel):
    job: JobResponse
    session_cancelled: bool


class WorkerUpdateRequest(BaseModel):
    status: JobStatus | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    application_id: str | None = None
    confirmation_id: str | None = None
    error_code: str | None = None
    error_message: str | None = None


class ChallengeResponse(BaseModel):
    id: UUID
    job_id: UUID
    image_ref: str
    attempts: int
    expires_at: datetime
    created_at: datetime
    solution_pending: bool = False

    model_config = {"from_attributes": True}


class ChallengeSolveRequest(BaseModel):
    solution: str


class ChallengeSolveResponse(BaseModel):
    status: str
    challenge_id: str
    attempts: int
    job_status: JobStatus
