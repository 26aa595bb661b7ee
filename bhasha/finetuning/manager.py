"""Fine-tune job lifecycle: create, submit, poll and cancel.

Jobs start ``pending``, become ``running`` once a provider accepts them, and
are polled until the provider reports a terminal status. Polling never
raises; failures are logged and recorded on the job.
"""

from datetime import datetime
from typing import Any, Optional, Sequence
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import BhashaError, NotFoundError, ProviderError, ValidationError, classify_error
from bhasha.curation.datasets import Dataset, DatasetBuilder
from bhasha.curation.recommender import (
    LEGACY_AVG_TOKENS,
    HyperparameterRecommender,
    Hyperparameters,
    Recommendation,
    estimate_cost,
    estimate_time_minutes,
)
from bhasha.finetuning.models import FineTuneJob, JobStatus
from bhasha.finetuning.providers.registry import ProviderRegistry
from bhasha.persistence.content import ACTIVITY_COLLECTION
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

JOBS_COLLECTION = "finetune_jobs"

POLL_RUNNING_TASK = "finetune.poll_running"

PROVIDER_SPLIT = (0.9, 0.1, 0.0)


class FineTuneManager:
    """Coordinates fine-tune jobs between the store and provider adapters."""

    def __init__(
        self,
        store: DocumentStore,
        datasets: DatasetBuilder,
        providers: ProviderRegistry,
        recommender: Optional[HyperparameterRecommender] = None,
        provider_split: Sequence[float] = PROVIDER_SPLIT,
    ):
        """Initialize the manager.

        Args:
            store: Document store holding jobs
            datasets: Dataset access for export at submission
            providers: Registered provider adapters
            recommender: Hyperparameter recommender
            provider_split: Train/validation/test ratios sent to providers
        """
        self.store = store
        self.datasets = datasets
        self.providers = providers
        self.recommender = recommender or HyperparameterRecommender()
        self.provider_split = tuple(provider_split)

    async def recommend(self, dataset_id: str) -> Recommendation:
        """Recommend hyperparameters for a stored dataset."""
        dataset = await self.datasets.get(dataset_id)
        recommendation = self.recommender.recommend(
            dataset.size,
            distribution=dataset.metadata.token_distribution,
            avg_tokens=dataset.metadata.avg_tokens,
        )
        recommendation.dataset_analysis.update(
            language=dataset.language, quality_score=dataset.quality_score
        )
        return recommendation

    async def get_job(self, job_id: str) -> FineTuneJob:
        data = await self.store.get(job_id, JOBS_COLLECTION)
        if not data:
            raise NotFoundError("Job", job_id)
        return FineTuneJob.from_dict(data)

    async def create_job(
        self,
        ctx: RequestContext,
        dataset_id: str,
        parameters: Hyperparameters,
        provider: str,
        model: str,
        connection_id: Optional[str] = None,
    ) -> str:
        """Record a pending job with cost and time estimates.

        Returns:
            Job ID
        """
        dataset = await self.datasets.get(dataset_id)
        self.providers.get(provider)

        avg_tokens = dataset.metadata.avg_tokens or LEGACY_AVG_TOKENS
        job = FineTuneJob(
            user_id=ctx.user_id,
            dataset_id=dataset_id,
            parameters=parameters,
            provider=provider,
            model=model,
            connection_id=connection_id,
            estimated_cost=estimate_cost(dataset.size, avg_tokens, parameters.epochs),
            estimated_time_minutes=estimate_time_minutes(
                dataset.size, avg_tokens, parameters.epochs
            ),
        )

        async with self.store.transaction() as txn:
            job_id = await txn.insert(JOBS_COLLECTION, job.to_dict())
            await txn.insert(
                ACTIVITY_COLLECTION,
                {
                    "user_id": ctx.user_id,
                    "action": "finetune_started",
                    "finetune_job_id": job_id,
                    "metadata": {"dataset_id": dataset_id, "provider": provider},
                },
            )

        log.info("finetune_job_created", job_id=job_id, dataset_id=dataset_id, provider=provider)
        return job_id

    async def _fail(self, job_id: str, message: str) -> None:
        await self.store.patch(
            job_id,
            {
                "status": JobStatus.FAILED.value,
                "error": message,
                "completed_at": datetime.now().isoformat(),
            },
        )

    async def submit(self, job_id: str) -> str:
        """Export the dataset and hand the job to its provider.

        Returns:
            Provider-assigned job ID

        Raises:
            ValidationError: If the job is not pending or the dataset is empty
            ProviderError: If the provider rejected the job after retries
        """
        job = await self.get_job(job_id)
        if job.status != JobStatus.PENDING:
            raise ValidationError(f"Job {job_id} is {job.status.value}, not pending")

        dataset: Dataset = await self.datasets.get(job.dataset_id)
        if dataset.size == 0:
            message = "Cannot train on an empty dataset"
            await self._fail(job_id, message)
            raise ValidationError(message)

        adapter = self.providers.get(job.provider)
        export = await self.datasets.export(job.dataset_id, split=self.provider_split)

        try:
            provider_job_id = await adapter.submit(job, dataset, export)
        except BhashaError as e:
            log.error("finetune_submit_failed", job_id=job_id, provider=job.provider, error=str(e))
            await self._fail(job_id, str(e))
            raise

        await self.store.patch(
            job_id,
            {"status": JobStatus.RUNNING.value, "provider_job_id": provider_job_id, "error": None},
        )
        log.info("finetune_job_submitted", job_id=job_id, provider_job_id=provider_job_id)
        return provider_job_id

    async def start(
        self,
        ctx: RequestContext,
        dataset_id: str,
        parameters: Hyperparameters,
        provider: str,
        model: str,
        connection_id: Optional[str] = None,
    ) -> str:
        """Create a job and submit it. Returns the job ID."""
        job_id = await self.create_job(ctx, dataset_id, parameters, provider, model, connection_id)
        await self.submit(job_id)
        return job_id

    async def poll(self, job_id: str) -> JobStatus:
        """Refresh a running job from its provider.

        Provider failures are recorded on the job and the status is left
        unchanged. Non-running jobs are returned as-is.
        """
        job = await self.get_job(job_id)
        if job.status != JobStatus.RUNNING or not job.provider_job_id:
            return job.status

        try:
            report = await self.providers.get(job.provider).poll(job)
        except BhashaError as e:
            log.error("finetune_poll_failed", job_id=job_id, provider=job.provider, error=str(e))
            await self.store.patch(job_id, {"error": str(e)})
            return job.status

        try:
            metrics = job.metrics.merge(report.loss, report.steps, report.epoch)
        except (TypeError, ValueError) as e:
            message = f"Malformed provider report: {e}"
            log.error("finetune_poll_failed", job_id=job_id, provider=job.provider, error=message)
            await self.store.patch(job_id, {"error": message})
            return job.status

        updates: dict[str, Any] = {
            "status": report.status.value,
            "metrics": metrics.to_dict(),
            "results": report.results,
            "error": None,
        }
        if report.model_id:
            updates["model_id"] = report.model_id
        if report.status.is_terminal:
            updates["completed_at"] = datetime.now().isoformat()

        async with self.store.transaction() as txn:
            current = await txn.get(job_id, JOBS_COLLECTION)
            if current is None or current["status"] != JobStatus.RUNNING.value:
                # Cancelled or deleted while the provider was being asked
                return JobStatus(current["status"]) if current else job.status
            await txn.patch(job_id, updates)

        if report.status != JobStatus.RUNNING:
            log.info(
                "finetune_job_finished",
                job_id=job_id,
                status=report.status.value,
                provider_status=report.raw_status,
            )
        return report.status

    async def poll_running_jobs(self) -> int:
        """Poll every running job. Returns how many were polled.

        A job that fails to poll is logged and skipped; the rest still run.
        """
        records = await self.store.query(JOBS_COLLECTION, status=JobStatus.RUNNING.value)
        for record in records:
            try:
                await self.poll(record["id"])
            except Exception as e:
                classified = classify_error(e)
                log.error(
                    "finetune_poll_crashed",
                    job_id=record["id"],
                    error=str(e),
                    category=classified.category.value,
                )
        log.info("running_jobs_polled", count=len(records))
        return len(records)

    async def cancel(self, ctx: RequestContext, job_id: str) -> None:
        """Cancel a job the acting user owns.

        Running jobs get a best-effort cancel request at the provider; the
        local job is marked cancelled whatever the provider answers.
        """
        job = await self.get_job(job_id)
        ctx.require_owner(job.user_id, "job")
        if job.status.is_terminal:
            raise ValidationError(f"Job {job_id} is already {job.status.value}")

        if job.status == JobStatus.RUNNING and job.provider_job_id:
            try:
                await self.providers.get(job.provider).cancel(job)
            except (ProviderError, ValidationError, NotFoundError) as e:
                log.warning("provider_cancel_failed", job_id=job_id, error=str(e))

        await self.store.patch(
            job_id,
            {"status": JobStatus.CANCELLED.value, "completed_at": datetime.now().isoformat()},
        )
        log.info("finetune_job_cancelled", job_id=job_id)

    async def get_status(self, ctx: RequestContext, job_id: str) -> FineTuneJob:
        job = await self.get_job(job_id)
        ctx.require_owner(job.user_id, "job")
        return job

    async def list_jobs(
        self,
        user_id: Optional[str] = None,
        status: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[FineTuneJob]:
        """Jobs matching the filters, newest first."""
        filters: dict[str, Any] = {}
        if user_id:
            filters["user_id"] = user_id
        if status:
            filters["status"] = status
        records = await self.store.query(
            JOBS_COLLECTION, limit=limit, newest_first=True, **filters
        )
        return [FineTuneJob.from_dict(r) for r in records]
