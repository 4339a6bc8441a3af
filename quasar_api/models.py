from enum import Enum
from typing import Optional, Dict, Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class JobStatus(str, Enum):
    CREATED = "created"
    QUEUED = "queued"
    COMPLETED = "completed"
    FAILED = "failed"


# Order in which partitions are searched on read; most polls land after completion.
READ_ORDER = (JobStatus.COMPLETED, JobStatus.CREATED, JobStatus.QUEUED, JobStatus.FAILED)

ALLOWED_EDGES = {
    (JobStatus.CREATED, JobStatus.QUEUED),
    (JobStatus.QUEUED, JobStatus.COMPLETED),
    (JobStatus.QUEUED, JobStatus.FAILED),
}

TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED})


class JobRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    status: JobStatus
    args: Dict[str, Any] = {}
    artifact_path: Optional[str] = Field(default=None, alias="artifactPath")

    def resolved_artifact_path(self) -> Optional[str]:
        return self.artifact_path or self.args.get("outputFilePath")

    def to_stored(self) -> Dict[str, Any]:
        # status lives in the partition, never in the body
        return self.model_dump(by_alias=True, exclude={"status"})

    @classmethod
    def from_stored(cls, data: Dict[str, Any], status: JobStatus) -> "JobRecord":
        return cls.model_validate({**data, "status": status})


class JobHandle(BaseModel):
    args: Dict[str, Any]
    destination: Literal["local", "s3"]
    status: JobStatus
    id: str
    jobFile: str
    jobsDirectory: str


class DecodedSource(BaseModel):
    stored_name: str
    extension: str
    path: str
    data: bytes = Field(default=b"", exclude=True, repr=False)


class ArtifactLocation(BaseModel):
    id: str
    path: str


class PendingNotice(BaseModel):
    id: str
    status: JobStatus


class TimedOut(BaseModel):
    job_id: str
    last_status: Optional[JobStatus] = None
    waited: float
