"""Bounded waits for a job to reach a status.

Both waits poll the store at a fixed interval and sleep in between; neither
holds a store lock while sleeping. A record that is briefly unreadable (for
example while another process is moving it) is retried for ``grace_period``
seconds before the error is raised.
"""
import asyncio
import logging
import math
import threading
import time
from typing import Iterable, Optional, Union

from .errors import CorruptStateError, JobNotFoundError, WatchCancelledError
from .models import JobRecord, JobStatus, TimedOut
from .storage import JobStore


def check_bounds(timeout: float, poll_interval: float) -> None:
    if not math.isfinite(timeout) or timeout < 0:
        raise ValueError(f"timeout must be a finite number of seconds >= 0, got {timeout!r}")
    if not math.isfinite(poll_interval) or poll_interval <= 0:
        raise ValueError(f"poll_interval must be a finite number of seconds > 0, got {poll_interval!r}")


class CompletionWatcher:
    def __init__(self, store: JobStore, grace_period: float = 1.0):
        self.store = store
        self.grace_period = grace_period

    def _check(self, job_id: str, first_failure: Optional[float], now: float):
        """Read once; returns (record or None, updated first_failure)."""
        try:
            return self.store.read(job_id), None
        except (CorruptStateError, JobNotFoundError) as exc:
            first_failure = now if first_failure is None else first_failure
            if now - first_failure >= self.grace_period:
                if isinstance(exc, CorruptStateError):
                    logging.critical("Job %s storage is corrupt: %s", job_id, exc)
                raise
            return None, first_failure

    def wait(
        self,
        job_id: str,
        targets: Iterable[JobStatus],
        timeout: float,
        poll_interval: float,
        cancel: Optional[threading.Event] = None,
    ) -> Union[JobRecord, TimedOut]:
        check_bounds(timeout, poll_interval)
        targets = {JobStatus(t) for t in targets}
        cancel = cancel or threading.Event()
        start = time.monotonic()
        deadline = start + timeout
        first_failure = None
        last_status = None

        while True:
            if cancel.is_set():
                raise WatchCancelledError(job_id)
            now = time.monotonic()
            record, first_failure = self._check(job_id, first_failure, now)
            if record is not None:
                last_status = record.status
                if record.status in targets:
                    return record

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                logging.debug("Wait on job %s timed out in %s", job_id, last_status)
                return TimedOut(job_id=job_id, last_status=last_status, waited=time.monotonic() - start)
            if cancel.wait(min(poll_interval, remaining)):
                raise WatchCancelledError(job_id)

    async def wait_async(
        self,
        job_id: str,
        targets: Iterable[JobStatus],
        timeout: float,
        poll_interval: float,
    ) -> Union[JobRecord, TimedOut]:
        check_bounds(timeout, poll_interval)
        targets = {JobStatus(t) for t in targets}
        loop = asyncio.get_running_loop()
        start = loop.time()
        deadline = start + timeout
        first_failure = None
        last_status = None

        while True:
            record, first_failure = await asyncio.to_thread(self._check, job_id, first_failure, loop.time())
            if record is not None:
                last_status = record.status
                if record.status in targets:
                    return record

            remaining = deadline - loop.time()
            if remaining <= 0:
                logging.debug("Wait on job %s timed out in %s", job_id, last_status)
                return TimedOut(job_id=job_id, last_status=last_status, waited=loop.time() - start)
            await asyncio.sleep(min(poll_interval, remaining))
