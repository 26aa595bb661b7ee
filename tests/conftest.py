"""Shared test fixtures."""

import pytest
import tempfile
from pathlib import Path

from bhasha.core.context import RequestContext


class FakeClock:
    """Manually advanced clock for the scheduler."""

    def __init__(self, now: float = 1_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def temp_dir():
    """Temporary directory for tests."""
    with tempfile.TemporaryDirectory() as d:
        yield Path(d)


@pytest.fixture
def db(temp_dir):
    """Test database."""
    from bhasha.persistence.database import Database

    return Database(temp_dir / "test.db")


@pytest.fixture
def store(db):
    """Document store on the test database."""
    from bhasha.persistence.store import DocumentStore

    return DocumentStore(db)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def scheduler(store, clock):
    """Scheduler driven by the fake clock."""
    from bhasha.core.scheduler import TaskScheduler

    return TaskScheduler(store, clock=clock)


@pytest.fixture
def ctx():
    """Acting user."""
    return RequestContext(user_id="user-1")


@pytest.fixture
def other_ctx():
    """A second user who owns nothing of user-1's."""
    return RequestContext(user_id="user-2")


@pytest.fixture
def contents(store, scheduler):
    """Content store without a quality analyzer."""
    from bhasha.persistence.content import ContentStore

    return ContentStore(store, scheduler=scheduler)


@pytest.fixture
def datasets(store, contents):
    """Dataset builder."""
    from bhasha.curation.datasets import DatasetBuilder

    return DatasetBuilder(store, contents)


@pytest.fixture
def externals(store):
    """External dataset store."""
    from bhasha.persistence.external import ExternalDatasetStore

    return ExternalDatasetStore(store)


@pytest.fixture
def connections(store):
    """LLM connection store."""
    from bhasha.persistence.connections import LLMConnectionStore

    return LLMConnectionStore(store)


@pytest.fixture
def config(temp_dir):
    """Test configuration."""
    from bhasha.config import BhashaConfig

    return BhashaConfig(data_dir=temp_dir)


@pytest.fixture
def fake_provider():
    """Provider adapter that records calls and replays queued poll reports."""
    from bhasha.core.retry import RetryConfig
    from bhasha.finetuning.models import JobStatus
    from bhasha.finetuning.providers.base import ProviderAdapter, ProviderStatus

    class FakeProvider(ProviderAdapter):
        name = "fake"

        def __init__(self):
            super().__init__(submit_retry=RetryConfig(max_attempts=1, base_delay=0))
            self.submitted = []
            self.cancelled = []
            self.reports = []
            self.error = None

        async def submit(self, job, dataset, export):
            if self.error:
                raise self.error
            self.submitted.append((job, dataset, export))
            return f"fake-{len(self.submitted)}"

        async def poll(self, job):
            if self.error:
                raise self.error
            if self.reports:
                return self.reports.pop(0)
            return ProviderStatus(status=JobStatus.RUNNING, raw_status="running")

        async def cancel(self, job):
            self.cancelled.append(job.provider_job_id)
            if self.error:
                raise self.error

    return FakeProvider()


@pytest.fixture
def manager(store, datasets, fake_provider):
    """Fine-tune manager with only the fake provider registered."""
    from bhasha.finetuning.manager import FineTuneManager
    from bhasha.finetuning.providers.registry import ProviderRegistry

    return FineTuneManager(store, datasets, ProviderRegistry([fake_provider]))


@pytest.fixture
def driver(store, scheduler, externals, contents, datasets, manager):
    """Import pipeline driver registered with the test scheduler."""
    from bhasha.pipeline.driver import ImportPipelineDriver

    pipelines = ImportPipelineDriver(store, scheduler, externals, contents, datasets, manager)
    pipelines.register()
    return pipelines
