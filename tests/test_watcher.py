import asyncio
import threading
import time

import pytest

from quasar_api.errors import CorruptStateError, JobNotFoundError, WatchCancelledError
from quasar_api.models import TERMINAL_STATUSES, JobRecord, JobStatus, TimedOut
from quasar_api.watcher import CompletionWatcher


@pytest.fixture
def queued_job(store, tmp_path):
    store.create("build_1", JobRecord(id="build_1", status=JobStatus.CREATED, args={}))
    store.transition("build_1", JobStatus.CREATED, JobStatus.QUEUED)
    return "build_1"


def test_wait_times_out_within_bound(store, queued_job):
    watcher = CompletionWatcher(store)

    started = time.monotonic()
    result = watcher.wait(queued_job, TERMINAL_STATUSES, timeout=0.1, poll_interval=0.01)
    elapsed = time.monotonic() - started

    assert isinstance(result, TimedOut)
    assert result.last_status == JobStatus.QUEUED
    assert 0.1 <= elapsed < 0.2


def test_async_wait_times_out_within_bound(store, queued_job):
    watcher = CompletionWatcher(store)

    started = time.monotonic()
    result = asyncio.run(watcher.wait_async(queued_job, TERMINAL_STATUSES, timeout=0.1, poll_interval=0.01))
    elapsed = time.monotonic() - started

    assert isinstance(result, TimedOut)
    assert 0.1 <= elapsed < 0.2


def test_wait_returns_once_status_is_reached(store, queued_job):
    watcher = CompletionWatcher(store)
    timer = threading.Timer(
        0.05, store.transition, args=(queued_job, JobStatus.QUEUED, JobStatus.FAILED)
    )
    timer.start()

    result = watcher.wait(queued_job, TERMINAL_STATUSES, timeout=2.0, poll_interval=0.01)
    timer.join()

    assert isinstance(result, JobRecord)
    assert result.status == JobStatus.FAILED


def test_wait_returns_immediately_when_already_there(store, queued_job):
    result = CompletionWatcher(store).wait(queued_job, {JobStatus.QUEUED}, timeout=0.0, poll_interval=1.0)
    assert result.status == JobStatus.QUEUED


def test_async_wait_sees_transition(store, queued_job, tmp_path):
    artifact = tmp_path / "out.zip"
    artifact.write_bytes(b"zip")
    watcher = CompletionWatcher(store)

    async def scenario():
        waiter = asyncio.create_task(watcher.wait_async(queued_job, TERMINAL_STATUSES, 2.0, 0.01))
        await asyncio.sleep(0.03)
        store.transition(queued_job, JobStatus.QUEUED, JobStatus.COMPLETED, artifact_path=str(artifact))
        return await waiter

    result = asyncio.run(scenario())

    assert result.status == JobStatus.COMPLETED


def test_wait_can_be_cancelled(store, queued_job):
    cancel = threading.Event()
    threading.Timer(0.05, cancel.set).start()

    started = time.monotonic()
    with pytest.raises(WatchCancelledError):
        CompletionWatcher(store).wait(queued_job, TERMINAL_STATUSES, timeout=5.0, poll_interval=1.0, cancel=cancel)

    assert time.monotonic() - started < 0.5


def test_async_wait_can_be_cancelled(store, queued_job):
    watcher = CompletionWatcher(store)

    async def scenario():
        waiter = asyncio.create_task(watcher.wait_async(queued_job, TERMINAL_STATUSES, 5.0, 0.01))
        await asyncio.sleep(0.03)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

    asyncio.run(scenario())


class FlakyStore:
    """Raises the given errors first, then behaves like ``store``."""

    def __init__(self, store, errors):
        self.store = store
        self.errors = list(errors)

    def read(self, job_id):
        if self.errors:
            raise self.errors.pop(0)
        return self.store.read(job_id)


def test_transient_corruption_is_retried(store, queued_job):
    flaky = FlakyStore(store, [CorruptStateError(queued_job, ["queued", "completed"]), JobNotFoundError(queued_job)])

    result = CompletionWatcher(flaky, grace_period=1.0).wait(queued_job, {JobStatus.QUEUED}, 1.0, 0.01)

    assert result.status == JobStatus.QUEUED


def test_persistent_corruption_escalates_after_grace(store, queued_job, caplog):
    flaky = FlakyStore(store, [CorruptStateError(queued_job, ["queued", "completed"])] * 100)

    with pytest.raises(CorruptStateError):
        CompletionWatcher(flaky, grace_period=0.05).wait(queued_job, TERMINAL_STATUSES, 2.0, 0.01)

    assert any(r.levelname == "CRITICAL" for r in caplog.records)


def test_unknown_job_escalates_after_grace(store):
    with pytest.raises(JobNotFoundError):
        CompletionWatcher(store, grace_period=0.02).wait("missing_1", TERMINAL_STATUSES, 2.0, 0.01)


@pytest.mark.parametrize(
    "timeout, poll_interval",
    [
        (float("nan"), 0.01),
        (float("inf"), 0.01),
        (-1.0, 0.01),
        (1.0, 0.0),
        (1.0, -0.01),
        (1.0, float("nan")),
    ],
)
def test_unbounded_waits_are_rejected(store, queued_job, timeout, poll_interval):
    watcher = CompletionWatcher(store)

    started = time.monotonic()
    with pytest.raises(ValueError):
        watcher.wait(queued_job, TERMINAL_STATUSES, timeout, poll_interval)
    with pytest.raises(ValueError):
        asyncio.run(watcher.wait_async(queued_job, TERMINAL_STATUSES, timeout, poll_interval))

    assert time.monotonic() - started < 0.5
