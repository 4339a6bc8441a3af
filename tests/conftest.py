"""Shared fixtures: a job lifecycle wired to temporary folders."""

import pytest

from quasar_api.config import Settings
from quasar_api.decoder import PayloadDecoder
from quasar_api.lifecycle import JobLifecycle
from quasar_api.storage import LocalJobStore
from quasar_api.watcher import CompletionWatcher


@pytest.fixture
def settings(tmp_path):
    return Settings(
        jobs_folder=str(tmp_path / "jobs"),
        sources_folder=str(tmp_path / "sources"),
        assets_folder=str(tmp_path / "assets"),
        poll_interval=0.01,
        grace_period=0.05,
        max_wait=1.0,
    )


@pytest.fixture
def store(settings):
    return LocalJobStore(settings.jobs_folder)


@pytest.fixture
def decoder(settings, tmp_path):
    (tmp_path / "sources").mkdir(exist_ok=True)
    return PayloadDecoder(settings.sources_folder)


@pytest.fixture
def lifecycle(store, decoder, settings):
    return JobLifecycle(store, decoder, CompletionWatcher(store, grace_period=settings.grace_period))
