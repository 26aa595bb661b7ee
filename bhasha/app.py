"""Component wiring: builds every store and service from a BhashaConfig."""

from typing import Optional
import httpx
import structlog

from bhasha.analysis.quality import QualityAnalyzer
from bhasha.config import BhashaConfig
from bhasha.core.retry import RetryConfig
from bhasha.core.scheduler import PURGE_FINISHED_TASK, TaskScheduler
from bhasha.curation.datasets import DatasetBuilder
from bhasha.curation.recommender import HyperparameterRecommender
from bhasha.finetuning.evaluator import PROCESS_PENDING_TASK, ChatCompletionClient, ModelEvaluator
from bhasha.finetuning.manager import POLL_RUNNING_TASK, FineTuneManager
from bhasha.finetuning.providers import CustomProvider, OpenAIProvider, ProviderRegistry
from bhasha.persistence.connections import LLMConnectionStore
from bhasha.persistence.content import ANALYZE_QUALITY_TASK, ContentStore
from bhasha.persistence.database import Database
from bhasha.persistence.external import ExternalDatasetStore
from bhasha.persistence.store import DocumentStore
from bhasha.pipeline.driver import ImportPipelineDriver

log = structlog.get_logger()

PURGE_INTERVAL_SECONDS = 3600.0


class BhashaApp:
    """All services sharing one database, scheduler and HTTP settings.

    ``client`` replaces the HTTP client every provider would otherwise open
    per request; tests pass one built on ``httpx.MockTransport``.
    """

    def __init__(
        self,
        config: Optional[BhashaConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or BhashaConfig()
        providers = self.config.providers
        timeout = providers.timeout_seconds

        self.store = DocumentStore(Database(self.config.db_path))
        self.scheduler = TaskScheduler(self.store)

        self.analyzer = QualityAnalyzer(
            api_key=providers.gemini_api_key,
            base_url=providers.gemini_base_url,
            model=providers.gemini_model,
            timeout=timeout,
            client=client,
        )
        self.contents = ContentStore(
            self.store,
            scheduler=self.scheduler,
            analyzer=self.analyzer,
            duplicate_threshold=self.config.curation.duplicate_threshold,
        )
        self.externals = ExternalDatasetStore(self.store)
        self.connections = LLMConnectionStore(self.store, timeout=timeout)
        self.datasets = DatasetBuilder(self.store, self.contents)
        self.recommender = HyperparameterRecommender()

        submit_retry = RetryConfig(
            max_attempts=providers.submit_max_attempts,
            base_delay=providers.submit_backoff_seconds,
            exponential_base=1.0,
        )
        self.providers = ProviderRegistry(
            [
                OpenAIProvider(
                    api_key=providers.openai_api_key,
                    base_url=providers.openai_base_url,
                    timeout=timeout,
                    submit_retry=submit_retry,
                    client=client,
                ),
                CustomProvider(
                    self.connections,
                    timeout=timeout,
                    submit_retry=submit_retry,
                    client=client,
                ),
            ]
        )
        self.manager = FineTuneManager(
            self.store,
            self.datasets,
            self.providers,
            recommender=self.recommender,
            provider_split=self.config.curation.provider_dataset_split,
        )
        self.evaluator = ModelEvaluator(
            self.store,
            self.manager,
            ChatCompletionClient(
                api_key=providers.openai_api_key,
                base_url=providers.openai_base_url,
                timeout=timeout,
                client=client,
            ),
        )
        self.pipelines = ImportPipelineDriver(
            self.store,
            self.scheduler,
            self.externals,
            self.contents,
            self.datasets,
            manager=self.manager,
            max_errors=self.config.curation.max_import_errors,
        )

        self._register_tasks()

    def _register_tasks(self) -> None:
        self.pipelines.register()
        self.scheduler.register(ANALYZE_QUALITY_TASK, self.contents.analyze_quality)
        self.scheduler.register(POLL_RUNNING_TASK, self._poll_running)
        self.scheduler.register(PROCESS_PENDING_TASK, self._process_pending)
        self.scheduler.register(PURGE_FINISHED_TASK, self.scheduler.purge_finished)
        self.scheduler.every(self.config.poll_interval_seconds, POLL_RUNNING_TASK)
        self.scheduler.every(self.config.poll_interval_seconds, PROCESS_PENDING_TASK)
        self.scheduler.every(
            PURGE_INTERVAL_SECONDS,
            PURGE_FINISHED_TASK,
            older_than_seconds=self.config.task_retention_seconds,
        )
        log.debug("app_tasks_registered")

    async def _poll_running(self) -> None:
        await self.manager.poll_running_jobs()

    async def _process_pending(self) -> None:
        await self.evaluator.process_pending_prompts()
