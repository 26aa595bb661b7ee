"""Resumable import pipeline driver.

Each step runs as its own ``pipeline.step`` task. A step persists its
results before the next one is queued, so a worker that dies between steps
resumes from the stored pipeline record rather than from memory. Cancellation
is cooperative: the driver re-reads the pipeline before and after every step
and stops once it is terminal.

Step failures are recorded on the pipeline and never re-raised; content
ingested before a failure stays in place.
"""

from collections import Counter
from datetime import datetime
from typing import Any, Optional
import aiosqlite
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import BhashaError, NotFoundError, PipelineStepError, ValidationError
from bhasha.core.scheduler import TaskScheduler
from bhasha.curation.datasets import DatasetBuilder
from bhasha.curation.formats import apply_field_mapping, parse_records
from bhasha.curation.recommender import Hyperparameters
from bhasha.curation.text import deduplicate_records, normalize_text
from bhasha.curation.validator import MAX_IMPORT_ERRORS, validate_import_batch
from bhasha.finetuning.manager import FineTuneManager
from bhasha.logging import bind_pipeline, clear_bindings
from bhasha.persistence.content import STATUSES, ContentStore
from bhasha.persistence.external import ExternalDatasetStore, ExternalStatus
from bhasha.persistence.store import DocumentStore
from bhasha.pipeline.models import (
    PIPELINES_COLLECTION,
    STEP_ORDER,
    ImportPipeline,
    PipelineConfig,
    PipelineStatus,
)

log = structlog.get_logger()

STEP_TASK = "pipeline.step"

ARTIFACTS_COLLECTION = "pipeline_artifacts"

IMPORT_SOURCE = "external_import"

NORMALIZE, VALIDATE, INGEST, CREATE_DATASET, FINE_TUNE = 1, 2, 3, 4, 5


def majority(values: list[str]) -> str:
    """Most frequent value; among ties the one seen last wins."""
    counts = Counter(values)
    return sorted(counts.items(), key=lambda pair: pair[1])[-1][0]


class ImportPipelineDriver:
    """Creates import pipelines and advances them one step per task."""

    def __init__(
        self,
        store: DocumentStore,
        scheduler: TaskScheduler,
        externals: ExternalDatasetStore,
        contents: ContentStore,
        datasets: DatasetBuilder,
        manager: Optional[FineTuneManager] = None,
        max_errors: int = MAX_IMPORT_ERRORS,
    ):
        """Initialize the driver.

        Args:
            store: Document store holding pipelines and step artifacts
            scheduler: Scheduler running ``pipeline.step`` tasks
            externals: Source of raw import payloads
            contents: Content store used for ingestion
            datasets: Builder for the optional automatic dataset
            manager: Fine-tune manager for the optional automatic job
            max_errors: Validation stops once more rows than this have failed
        """
        self.store = store
        self.scheduler = scheduler
        self.externals = externals
        self.contents = contents
        self.datasets = datasets
        self.manager = manager
        self.max_errors = max_errors

    def register(self) -> None:
        """Register the step handler with the scheduler."""
        self.scheduler.register(STEP_TASK, self.process_step)

    async def create(self, ctx: RequestContext, external_dataset_id: str, config: PipelineConfig) -> str:
        """Create a pipeline for an external dataset the user owns and queue step 1.

        Returns:
            Pipeline ID
        """
        await self.externals.get(ctx, external_dataset_id)
        if config.default_status not in STATUSES:
            raise ValidationError(f"Invalid default status: {config.default_status}")
        if config.auto_finetune and self.manager is None:
            raise ValidationError("Fine-tuning is not available for this pipeline")

        pipeline = ImportPipeline(
            user_id=ctx.user_id,
            external_dataset_id=external_dataset_id,
            config=config,
            total_steps=config.total_steps,
        )
        pipeline_id = await self.store.insert(PIPELINES_COLLECTION, pipeline.to_dict())
        await self.scheduler.run_after(0, STEP_TASK, pipeline_id=pipeline_id, step=NORMALIZE)

        log.info(
            "pipeline_created",
            pipeline_id=pipeline_id,
            external_dataset_id=external_dataset_id,
            total_steps=pipeline.total_steps,
        )
        return pipeline_id

    async def load(self, pipeline_id: str) -> ImportPipeline:
        data = await self.store.get(pipeline_id, PIPELINES_COLLECTION)
        if not data:
            raise NotFoundError("Pipeline", pipeline_id)
        return ImportPipeline.from_dict(data)

    async def get_status(self, ctx: RequestContext, pipeline_id: str) -> ImportPipeline:
        pipeline = await self.load(pipeline_id)
        ctx.require_owner(pipeline.user_id, "pipeline")
        return pipeline

    async def list_pipelines(
        self, ctx: RequestContext, status: Optional[str] = None
    ) -> list[ImportPipeline]:
        """The acting user's pipelines, newest first."""
        filters: dict[str, Any] = {"user_id": ctx.user_id}
        if status:
            filters["status"] = status
        records = await self.store.query(PIPELINES_COLLECTION, newest_first=True, **filters)
        return [ImportPipeline.from_dict(r) for r in records]

    async def cancel(self, ctx: RequestContext, pipeline_id: str) -> None:
        """Mark a pipeline cancelled, whatever step it is in.

        A step already running finishes its current work, but no further
        status transition or step follows.

        Raises:
            ValidationError: If the pipeline already finished
        """
        async with self.store.transaction() as txn:
            data = await txn.get(pipeline_id, PIPELINES_COLLECTION)
            if not data:
                raise NotFoundError("Pipeline", pipeline_id)
            ctx.require_owner(data["user_id"], "pipeline")
            status = PipelineStatus(data["status"])
            if status.is_terminal:
                raise ValidationError(f"Pipeline {pipeline_id} is already {status.value}")
            await txn.patch(
                pipeline_id,
                {"status": PipelineStatus.CANCELLED.value, "completed_at": datetime.now().isoformat()},
            )

        log.info("pipeline_status_changed", pipeline_id=pipeline_id, status="cancelled", previous=status.value)

    # ========================================
    # Step execution
    # ========================================

    async def process_step(self, pipeline_id: str, step: int) -> None:
        """Run one pipeline step and queue the next.

        Raises:
            NotFoundError: If the pipeline does not exist
        """
        if step not in STEP_ORDER:
            raise ValidationError(f"Unknown pipeline step: {step}")

        pipeline = await self.load(pipeline_id)
        if pipeline.status.is_terminal:
            log.info("pipeline_step_skipped", pipeline_id=pipeline_id, step=step, status=pipeline.status.value)
            return
        if step < pipeline.current_step:
            log.info("pipeline_step_already_done", pipeline_id=pipeline_id, step=step)
            return

        bind_pipeline(pipeline_id, pipeline.user_id)
        try:
            if not await self._begin(pipeline, step):
                return
            updates = await self._run(pipeline, step)
            if not await self._persist(pipeline_id, updates):
                return

            next_step = self._next_step(pipeline.config, step, updates)
            if next_step is None:
                await self._complete(pipeline)
            else:
                await self.scheduler.run_after(0, STEP_TASK, pipeline_id=pipeline_id, step=next_step)
        except Exception as e:
            await self._fail(pipeline, step, e)
        finally:
            clear_bindings()

    async def _begin(self, pipeline: ImportPipeline, step: int) -> bool:
        status = STEP_ORDER[step]
        updates: dict[str, Any] = {"status": status.value, "current_step": step}
        if step == NORMALIZE:
            updates["started_at"] = datetime.now().isoformat()

        async with self.store.transaction() as txn:
            current = await txn.get(pipeline.id, PIPELINES_COLLECTION)
            if current is None or PipelineStatus(current["status"]).is_terminal:
                log.info("pipeline_stopped", pipeline_id=pipeline.id, step=step)
                return False
            await txn.patch(pipeline.id, updates)

        log.info("pipeline_status_changed", pipeline_id=pipeline.id, status=status.value, step=step)
        return True

    async def _persist(self, pipeline_id: str, updates: dict[str, Any]) -> bool:
        """Store step results; False if the pipeline was cancelled meanwhile."""
        async with self.store.transaction() as txn:
            current = await txn.get(pipeline_id, PIPELINES_COLLECTION)
            if current is None:
                return False
            if updates:
                await txn.patch(pipeline_id, updates)
            status = PipelineStatus(current["status"])

        if status.is_terminal:
            log.info("pipeline_stopped", pipeline_id=pipeline_id, status=status.value)
            return False
        return True

    def _next_step(self, config: PipelineConfig, step: int, updates: dict[str, Any]) -> Optional[int]:
        if step < INGEST:
            return step + 1
        if step == INGEST:
            if config.auto_create_dataset:
                return CREATE_DATASET
            return None
        if step == CREATE_DATASET and config.auto_finetune and updates.get("dataset_id"):
            return FINE_TUNE
        return None

    async def _complete(self, pipeline: ImportPipeline) -> None:
        async with self.store.transaction() as txn:
            current = await txn.get(pipeline.id, PIPELINES_COLLECTION)
            if current is None or PipelineStatus(current["status"]).is_terminal:
                return
            await txn.patch(
                pipeline.id,
                {
                    "status": PipelineStatus.COMPLETED.value,
                    "current_step": pipeline.total_steps,
                    "completed_at": datetime.now().isoformat(),
                },
            )
        await self._clear_artifacts(pipeline.id)
        log.info("pipeline_status_changed", pipeline_id=pipeline.id, status="completed")

    async def _fail(self, pipeline: ImportPipeline, step: int, error: Exception) -> None:
        failure = PipelineStepError(STEP_ORDER[step].value, str(error))
        log.error("pipeline_step_failed", pipeline_id=pipeline.id, step=step, error=str(failure))

        async with self.store.transaction() as txn:
            current = await txn.get(pipeline.id, PIPELINES_COLLECTION)
            if current is None or PipelineStatus(current["status"]).is_terminal:
                return
            await txn.patch(
                pipeline.id,
                {
                    "status": PipelineStatus.FAILED.value,
                    "error_log": list(current.get("error_log") or []) + [str(failure)],
                    "completed_at": datetime.now().isoformat(),
                },
            )

        if step <= INGEST:
            await self.externals.update_status(pipeline.external_dataset_id, ExternalStatus.FAILED)
        log.info("pipeline_status_changed", pipeline_id=pipeline.id, status="failed", step=step)

    async def _run(self, pipeline: ImportPipeline, step: int) -> dict[str, Any]:
        steps = {
            NORMALIZE: self._normalize,
            VALIDATE: self._validate,
            INGEST: self._ingest,
            CREATE_DATASET: self._create_dataset,
            FINE_TUNE: self._start_finetuning,
        }
        return await steps[step](pipeline)

    # ========================================
    # Step artifacts
    # ========================================

    async def _save_artifact(self, pipeline_id: str, stage: str, records: list[dict[str, Any]]) -> None:
        for existing in await self.store.query(ARTIFACTS_COLLECTION, pipeline_id=pipeline_id, stage=stage):
            await self.store.delete(existing["id"])
        await self.store.insert(
            ARTIFACTS_COLLECTION, {"pipeline_id": pipeline_id, "stage": stage, "records": records}
        )

    async def _load_artifact(self, pipeline_id: str, stage: str) -> list[dict[str, Any]]:
        found = await self.store.query(ARTIFACTS_COLLECTION, pipeline_id=pipeline_id, stage=stage)
        if not found:
            raise NotFoundError("Pipeline artifact", f"{pipeline_id}/{stage}")
        return found[-1]["records"]

    async def _clear_artifacts(self, pipeline_id: str) -> None:
        for artifact in await self.store.query(ARTIFACTS_COLLECTION, pipeline_id=pipeline_id):
            await self.store.delete(artifact["id"])

    # ========================================
    # Steps
    # ========================================

    async def _normalize(self, pipeline: ImportPipeline) -> dict[str, Any]:
        """Parse the raw payload, map fields and normalize text."""
        external = await self.externals.load(pipeline.external_dataset_id)
        await self.externals.update_status(external.id, ExternalStatus.PROCESSING)

        fmt, raw_records = parse_records(external.load_raw())
        mappings = pipeline.config.field_mappings

        records = []
        for raw in raw_records:
            record = apply_field_mapping(raw, mappings) if mappings else dict(raw)
            if isinstance(record.get("text"), str):
                record["text"] = normalize_text(record["text"])
            records.append(record)

        parsed = len(records)
        if pipeline.config.remove_duplicates:
            records = deduplicate_records(records)

        await self.externals.update_status(
            external.id, ExternalStatus.PROCESSING, total_records=len(raw_records)
        )
        await self._save_artifact(pipeline.id, "normalized", records)
        log.info(
            "pipeline_records_normalized",
            pipeline_id=pipeline.id,
            format=fmt,
            records=len(records),
            duplicates_dropped=parsed - len(records),
        )
        return {}

    async def _validate(self, pipeline: ImportPipeline) -> dict[str, Any]:
        records = await self._load_artifact(pipeline.id, "normalized")
        config = pipeline.config

        batch = validate_import_batch(
            records,
            default_content_type=config.default_content_type,
            min_quality_threshold=config.min_quality_threshold,
            auto_detect_language=config.auto_detect_language,
            max_errors=self.max_errors,
        )

        await self._save_artifact(pipeline.id, "validated", batch.records)
        await self.externals.update_status(
            pipeline.external_dataset_id,
            ExternalStatus.PROCESSING,
            total_records=len(records),
            processed_records=len(batch.records),
            error_log=batch.errors,
        )
        return {"error_log": pipeline.error_log + batch.errors}

    async def _ingest(self, pipeline: ImportPipeline) -> dict[str, Any]:
        """Create content for every validated record, skipping failures."""
        records = await self._load_artifact(pipeline.id, "validated")
        owner = RequestContext.system(pipeline.user_id)

        content_ids = []
        for index, record in enumerate(records, start=1):
            try:
                content_id = await self.contents.create_imported(
                    owner, record, status=pipeline.config.default_status, source=IMPORT_SOURCE
                )
            except (BhashaError, aiosqlite.Error) as e:
                log.error("pipeline_ingest_failed", pipeline_id=pipeline.id, row=index, error=str(e))
                continue
            content_ids.append(content_id)

        if pipeline.config.enable_ai_analysis:
            for content_id in content_ids:
                await self.contents.schedule_analysis(content_id)

        await self.externals.update_status(
            pipeline.external_dataset_id,
            ExternalStatus.COMPLETED,
            processed_records=len(content_ids),
        )
        log.info("pipeline_content_ingested", pipeline_id=pipeline.id, ingested=len(content_ids), rows=len(records))
        return {"content_ids": content_ids}

    async def _create_dataset(self, pipeline: ImportPipeline) -> dict[str, Any]:
        """Build a dataset from exactly the content this pipeline ingested."""
        if not pipeline.content_ids:
            log.warning("pipeline_dataset_skipped", pipeline_id=pipeline.id, reason="no content ingested")
            return {}

        items = await self.contents.get_many(pipeline.content_ids)
        if not items:
            log.warning("pipeline_dataset_skipped", pipeline_id=pipeline.id, reason="ingested content missing")
            return {}

        settings = pipeline.config.dataset
        name = settings.name
        if not name:
            external = await self.externals.load(pipeline.external_dataset_id)
            name = external.name

        dataset_id = await self.datasets.build_from_items(
            RequestContext.system(pipeline.user_id),
            name=name,
            items=items,
            language=majority([i.language for i in items]),
            content_type=majority([i.content_type for i in items]),
            min_quality=settings.min_quality_score,
        )
        return {"dataset_id": dataset_id}

    async def _start_finetuning(self, pipeline: ImportPipeline) -> dict[str, Any]:
        if self.manager is None:
            raise ValidationError("Fine-tuning is not available for this pipeline")

        settings = pipeline.config.finetune
        recommendation = await self.manager.recommend(pipeline.dataset_id)
        parameters = Hyperparameters.from_dict(
            {**recommendation.parameters.to_dict(), **settings.parameters}
        )

        job_id = await self.manager.create_job(
            RequestContext.system(pipeline.user_id),
            pipeline.dataset_id,
            parameters,
            provider=settings.provider,
            model=settings.model,
            connection_id=settings.connection_id,
        )
        # Recorded before submitting so a rejected job stays linked
        await self.store.patch(pipeline.id, {"finetune_job_id": job_id})
        await self.manager.submit(job_id)
        return {"finetune_job_id": job_id}
