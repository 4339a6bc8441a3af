import logging
import os
import re
import threading
import time
from typing import Any, Dict, Optional, Union

from .decoder import PayloadDecoder
from .errors import ArtifactMissingError
from .models import (
    TERMINAL_STATUSES,
    ArtifactLocation,
    JobHandle,
    JobRecord,
    JobStatus,
    PendingNotice,
    TimedOut,
)
from .storage import JobStore
from .stream import JobAnnouncer
from .watcher import CompletionWatcher

TASK_TYPE_RE = re.compile(r"^[A-Za-z0-9-]+$")
DEFAULT_TASK_TYPE = "job"


class MonotonicMillis:
    """Millisecond timestamps that never repeat or go backwards within a process."""

    def __init__(self, clock=time.time):
        self._clock = clock
        self._last = 0
        self._lock = threading.Lock()

    def __call__(self) -> int:
        with self._lock:
            now = int(self._clock() * 1000)
            self._last = max(now, self._last + 1)
            return self._last


def task_type_of(args: Dict[str, Any]) -> str:
    task_type = args.get("qType") or DEFAULT_TASK_TYPE
    if not isinstance(task_type, str) or not TASK_TYPE_RE.match(task_type):
        raise ValueError(f"qType must match {TASK_TYPE_RE.pattern}, got {task_type!r}")
    return task_type


class JobLifecycle:
    def __init__(
        self,
        store: JobStore,
        decoder: PayloadDecoder,
        watcher: Optional[CompletionWatcher] = None,
        announcer: Optional[JobAnnouncer] = None,
        clock=None,
    ):
        self.store = store
        self.decoder = decoder
        self.watcher = watcher or CompletionWatcher(store)
        self.announcer = announcer
        self._millis = clock or MonotonicMillis()

    def new_job_id(self, args: Dict[str, Any]) -> str:
        return f"{task_type_of(args)}_{self._millis()}"

    def submit(self, request: Dict[str, Any]) -> JobHandle:
        if not isinstance(request, dict):
            raise ValueError("job request must be a JSON object")
        job_id = self.new_job_id(request)
        args, source = self.decoder.prepare_args(request)

        record = JobRecord(id=job_id, status=JobStatus.CREATED, args=args)
        self.store.create(job_id, record)
        # sources are only written for jobs that were created
        if source is not None:
            self.decoder.write(source)
        job_file = self.store.location(job_id, JobStatus.CREATED)

        if self.announcer is not None:
            try:
                self.announcer.announce(job_id, JobStatus.CREATED.value, job_file)
            except Exception:
                # the record is already durable; executors also scan the created partition
                logging.exception("Failed announcing job %s", job_id)

        return JobHandle(
            args=args,
            destination=self.store.destination,
            status=JobStatus.CREATED,
            id=job_id,
            jobFile=job_file,
            jobsDirectory=self.store.partition_location(JobStatus.CREATED),
        )

    def status(self, job_id: str) -> JobRecord:
        return self.store.read(job_id)

    def fetch_artifact(self, job_id: str) -> Union[ArtifactLocation, PendingNotice]:
        record = self.store.read(job_id)
        if record.status != JobStatus.COMPLETED:
            return PendingNotice(id=record.id, status=record.status)

        path = record.resolved_artifact_path()
        if not path or not os.path.isfile(path):
            logging.info("Artifact for job %s not found: %s", job_id, path)
            raise ArtifactMissingError(job_id, path)
        return ArtifactLocation(id=record.id, path=path)

    async def wait(self, job_id: str, timeout: float, poll_interval: float) -> Union[JobRecord, TimedOut]:
        return await self.watcher.wait_async(job_id, TERMINAL_STATUSES, timeout, poll_interval)
