"""Status-partitioned job storage.

A job's status is the partition its record currently sits in. On the local
filesystem that is one directory per status under the jobs folder::

    jobs/created/<id>.json
    jobs/queued/<id>.json
    jobs/completed/<id>.json
    jobs/failed/<id>.json

On S3 it is the equivalent ``<prefix><status>/<id>.json`` key. Records only
move through ``create`` and ``transition``.
"""
import json
import logging
import os
import re
import threading
import time
import uuid
from abc import ABC, abstractmethod
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

import boto3
from botocore.config import Config
from botocore.exceptions import ClientError

from .errors import (
    AlreadyExistsError,
    ArtifactMissingError,
    CorruptStateError,
    IllegalStatusEdgeError,
    InvalidTransitionError,
    JobNotFoundError,
)
from .models import ALLOWED_EDGES, READ_ORDER, JobRecord, JobStatus

JOB_ID_RE = re.compile(r"^[A-Za-z0-9_-]+$")
MISSING_CODES = frozenset({"NoSuchKey", "404", "NotFound"})
CONFLICT_CODES = frozenset({"PreconditionFailed", "412"})


def _error_code(exc: ClientError) -> str:
    return exc.response.get("Error", {}).get("Code", "")


class _KeyedLocks:
    """One lock per job id, dropped again once nobody holds or waits on it."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: Dict[str, list] = {}

    @contextmanager
    def hold(self, key: str):
        with self._guard:
            entry = self._locks.setdefault(key, [threading.Lock(), 0])
            entry[1] += 1
        try:
            with entry[0]:
                yield
        finally:
            with self._guard:
                entry[1] -= 1
                if entry[1] == 0:
                    del self._locks[key]


class JobStore(ABC):
    """Partitioned store; ``settle_window`` is how long a scan that finds the job
    in zero or several partitions is repeated before it is believed, since
    another process may be halfway through moving the record."""

    destination = "local"

    def __init__(self, settle_window: float = 0.05, settle_interval: float = 0.005):
        self._locks = _KeyedLocks()
        self.settle_window = settle_window
        self.settle_interval = settle_interval

    @abstractmethod
    def _load(self, job_id: str, status: JobStatus) -> Optional[dict]:
        """Return the stored body in ``status`` or None when absent."""

    @abstractmethod
    def _insert(self, job_id: str, body: dict) -> None:
        """Write ``body`` into the created partition, failing if already present."""

    @abstractmethod
    def _move(self, job_id: str, from_status: JobStatus, to_status: JobStatus, body: Optional[dict]) -> None:
        """Relocate the record; ``body`` replaces the stored one when given."""

    @abstractmethod
    def location(self, job_id: str, status: JobStatus) -> str:
        ...

    @abstractmethod
    def partition_location(self, status: JobStatus) -> str:
        ...

    def _check_id(self, job_id: str) -> None:
        if not JOB_ID_RE.match(job_id or ""):
            raise JobNotFoundError(job_id)

    def _scan(self, job_id: str) -> Dict[JobStatus, dict]:
        found = {}
        for status in READ_ORDER:
            body = self._load(job_id, status)
            if body is not None:
                found[status] = body
        return found

    def _settled_scan(self, job_id: str) -> Dict[JobStatus, dict]:
        deadline = time.monotonic() + self.settle_window
        while True:
            found = self._scan(job_id)
            if len(found) == 1 or time.monotonic() >= deadline:
                return found
            time.sleep(self.settle_interval)

    def create(self, job_id: str, record: JobRecord) -> None:
        self._check_id(job_id)
        with self._locks.hold(job_id):
            found = self._scan(job_id)
            if found:
                raise AlreadyExistsError(job_id, next(iter(found)).value)
            body = record.model_copy(update={"id": job_id}).to_stored()
            self._insert(job_id, body)
        logging.info("Created job %s at %s", job_id, self.location(job_id, JobStatus.CREATED))

    def read(self, job_id: str) -> JobRecord:
        self._check_id(job_id)
        with self._locks.hold(job_id):
            found = self._settled_scan(job_id)
        if not found:
            raise JobNotFoundError(job_id)
        if len(found) > 1:
            raise CorruptStateError(job_id, [s.value for s in found])
        status, body = next(iter(found.items()))
        return JobRecord.from_stored(body, status)

    def transition(
        self,
        job_id: str,
        from_status: JobStatus,
        to_status: JobStatus,
        artifact_path: Optional[str] = None,
    ) -> JobRecord:
        from_status, to_status = JobStatus(from_status), JobStatus(to_status)
        if (from_status, to_status) not in ALLOWED_EDGES:
            raise IllegalStatusEdgeError(from_status.value, to_status.value)
        self._check_id(job_id)

        with self._locks.hold(job_id):
            found = self._settled_scan(job_id)
            if not found:
                raise JobNotFoundError(job_id)
            if len(found) > 1:
                raise CorruptStateError(job_id, [s.value for s in found])
            actual = next(iter(found))
            if actual != from_status:
                logging.warning(
                    "Stale transition for job %s: expected %s, found %s",
                    job_id, from_status.value, actual.value,
                )
                raise InvalidTransitionError(job_id, from_status.value, actual.value)

            record = JobRecord.from_stored(found[actual], actual)
            body = None
            if artifact_path is not None:
                record = record.model_copy(update={"artifact_path": artifact_path})
                body = record.to_stored()
            if to_status == JobStatus.COMPLETED and not record.resolved_artifact_path():
                raise ArtifactMissingError(job_id, None)

            self._move(job_id, from_status, to_status, body)

        logging.info("Job %s moved %s -> %s", job_id, from_status.value, to_status.value)
        return record.model_copy(update={"status": to_status})


class LocalJobStore(JobStore):
    destination = "local"

    def __init__(self, jobs_dir, **kwargs):
        super().__init__(**kwargs)
        self.jobs_dir = Path(jobs_dir).resolve()
        for status in JobStatus:
            self.partition_dir(status).mkdir(parents=True, exist_ok=True)

    def partition_dir(self, status: JobStatus) -> Path:
        return self.jobs_dir / JobStatus(status).value

    def job_path(self, job_id: str, status: JobStatus) -> Path:
        return self.partition_dir(status) / f"{job_id}.json"

    def location(self, job_id: str, status: JobStatus) -> str:
        return str(self.job_path(job_id, status))

    def partition_location(self, status: JobStatus) -> str:
        return str(self.partition_dir(status))

    def _load(self, job_id: str, status: JobStatus) -> Optional[dict]:
        path = self.job_path(job_id, status)
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except FileNotFoundError:
            return None
        except ValueError as exc:
            raise CorruptStateError(job_id, [status.value], f"job file {path} is unreadable: {exc}") from exc

    def _write_temp(self, directory: Path, body: dict) -> Path:
        tmp = directory / f".{uuid.uuid4().hex}.tmp"
        tmp.write_text(json.dumps(body, ensure_ascii=False), encoding="utf-8")
        return tmp

    def _insert(self, job_id: str, body: dict) -> None:
        target = self.job_path(job_id, JobStatus.CREATED)
        tmp = self._write_temp(target.parent, body)
        try:
            # link() refuses to replace an existing file, even one from another process
            os.link(tmp, target)
        except FileExistsError as exc:
            raise AlreadyExistsError(job_id, JobStatus.CREATED.value) from exc
        finally:
            tmp.unlink()

    def _move(self, job_id: str, from_status: JobStatus, to_status: JobStatus, body: Optional[dict]) -> None:
        src = self.job_path(job_id, from_status)
        dst = self.job_path(job_id, to_status)
        if body is not None:
            os.replace(self._write_temp(src.parent, body), src)
        try:
            os.rename(src, dst)
        except FileNotFoundError as exc:
            # another process moved it first
            raise InvalidTransitionError(job_id, from_status.value, None) from exc


class S3JobStore(JobStore):
    """Same partitions as status-prefixed keys in one bucket."""

    destination = "s3"

    def __init__(self, client, bucket: str, prefix: str = "jobs/", settle_window: float = 0.5, **kwargs):
        super().__init__(settle_window=settle_window, **kwargs)
        self.client = client
        self.bucket = bucket
        self.prefix = prefix

    def key(self, job_id: str, status: JobStatus) -> str:
        return f"{self.prefix}{JobStatus(status).value}/{job_id}.json"

    def location(self, job_id: str, status: JobStatus) -> str:
        return f"s3://{self.bucket}/{self.key(job_id, status)}"

    def partition_location(self, status: JobStatus) -> str:
        return f"s3://{self.bucket}/{self.prefix}{JobStatus(status).value}/"

    def _load(self, job_id: str, status: JobStatus) -> Optional[dict]:
        key = self.key(job_id, status)
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if _error_code(exc) in MISSING_CODES:
                return None
            raise
        try:
            return json.loads(obj["Body"].read())
        except ValueError as exc:
            raise CorruptStateError(job_id, [status.value], f"job object {key} is unreadable: {exc}") from exc

    def _put(self, key: str, body: dict, **kwargs) -> dict:
        return self.client.put_object(
            Bucket=self.bucket,
            Key=key,
            Body=json.dumps(body, ensure_ascii=False).encode("utf-8"),
            ContentType="application/json",
            **kwargs,
        )

    def _insert(self, job_id: str, body: dict) -> None:
        try:
            self._put(self.key(job_id, JobStatus.CREATED), body, IfNoneMatch="*")
        except ClientError as exc:
            if _error_code(exc) in CONFLICT_CODES:
                raise AlreadyExistsError(job_id, JobStatus.CREATED.value) from exc
            raise

    def _move(self, job_id: str, from_status: JobStatus, to_status: JobStatus, body: Optional[dict]) -> None:
        src = self.key(job_id, from_status)
        dst = self.key(job_id, to_status)
        try:
            # every step is conditional on the source ETag read here
            etag = self.client.head_object(Bucket=self.bucket, Key=src)["ETag"]
            if body is not None:
                etag = self._put(src, body, IfMatch=etag)["ETag"]
            # write the destination before deleting the source so the job never vanishes
            self.client.copy_object(
                Bucket=self.bucket,
                Key=dst,
                CopySource={"Bucket": self.bucket, "Key": src},
                CopySourceIfMatch=etag,
            )
            self.client.delete_object(Bucket=self.bucket, Key=src, IfMatch=etag)
        except ClientError as exc:
            if _error_code(exc) in MISSING_CODES | CONFLICT_CODES:
                raise InvalidTransitionError(job_id, from_status.value, None) from exc
            raise


def s3_client(settings):
    config = Config(s3={"addressing_style": "path" if settings.s3_force_path_style else "virtual"})
    return boto3.client(
        "s3",
        endpoint_url=settings.s3_endpoint,
        region_name=settings.s3_region,
        aws_access_key_id=settings.s3_access_key_id,
        aws_secret_access_key=settings.s3_secret_access_key,
        config=config,
    )


def build_store(settings) -> JobStore:
    if settings.jobs_destination == "s3":
        return S3JobStore(s3_client(settings), settings.s3_bucket, settings.s3_prefix)
    return LocalJobStore(settings.jobs_folder)
