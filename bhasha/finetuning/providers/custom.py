"""Adapter for arbitrary user-configured fine-tuning endpoints.

Responses from these endpoints have no fixed schema, so job ids, statuses
and metrics are looked up under several common field names.
"""

from typing import Any, Optional
import httpx
import structlog

from bhasha.core.errors import ValidationError
from bhasha.core.retry import RetryConfig, SUBMIT_RETRY
from bhasha.curation.datasets import Dataset, DatasetExport, render_records
from bhasha.finetuning.models import FineTuneJob
from bhasha.finetuning.providers.base import (
    ProviderAdapter,
    ProviderStatus,
    first_present,
    map_status,
)
from bhasha.persistence.connections import LLMConnection, LLMConnectionStore

log = structlog.get_logger()

JOB_ID_FIELDS = ("job_id", "id", "task_id", "request_id")
STATUS_FIELDS = ("status", "state", "job_status")
LOSS_FIELDS = ("metrics.loss", "loss")
STEP_FIELDS = ("metrics.steps", "steps", "iterations")
EPOCH_FIELDS = ("metrics.epoch", "epoch", "current_epoch")
MODEL_FIELDS = ("model_id", "model", "fine_tuned_model")

DEFAULT_JOB_ID = "custom-job"


def encode_split(records: list[dict[str, Any]], data_format: str) -> Any:
    """Encode a split for the endpoint: an array for json, text otherwise."""
    if data_format == "json":
        return records
    return render_records(records, data_format)


class CustomProvider(ProviderAdapter):
    """Provider backed by an LLM connection record."""

    name = "custom"

    def __init__(
        self,
        connections: LLMConnectionStore,
        timeout: float = 60.0,
        submit_retry: RetryConfig = SUBMIT_RETRY,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout, submit_retry=submit_retry, client=client)
        self.connections = connections

    async def _connection(self, job: FineTuneJob) -> LLMConnection:
        if not job.connection_id:
            raise ValidationError("Custom provider jobs need a connection")
        return await self.connections.load(job.connection_id)

    def status_url(self, connection: LLMConnection, provider_job_id: str) -> str:
        base = connection.status_endpoint or connection.api_endpoint
        return f"{base.rstrip('/')}/{provider_job_id}"

    async def submit(self, job: FineTuneJob, dataset: Dataset, export: DatasetExport) -> str:
        connection = await self._connection(job)
        if not connection.is_active:
            raise ValidationError(f"Connection {connection.name} is not active")

        payload = {
            "training_data": encode_split(export.train, connection.data_format),
            "validation_data": encode_split(export.validation, connection.data_format),
            "parameters": job.parameters.to_dict(),
            "model_identifier": connection.model_identifier or dataset.language,
            "dataset_info": {
                "language": dataset.language,
                "size": dataset.size,
                "quality_score": dataset.quality_score,
            },
        }

        body = await self._request(
            "POST",
            connection.api_endpoint,
            retry=True,
            headers=connection.auth_headers(),
            json=payload,
        )
        provider_job_id = first_present(body, *JOB_ID_FIELDS)
        if provider_job_id is None:
            log.warning("custom_job_id_missing", connection_id=connection.id)
            provider_job_id = DEFAULT_JOB_ID
        return str(provider_job_id)

    async def poll(self, job: FineTuneJob) -> ProviderStatus:
        connection = await self._connection(job)
        body = await self._request(
            "GET",
            self.status_url(connection, job.provider_job_id),
            headers=connection.auth_headers(),
        )

        raw_status = first_present(body, *STATUS_FIELDS)
        loss = first_present(body, *LOSS_FIELDS)
        if not isinstance(loss, (int, float, list)) or isinstance(loss, bool):
            loss = None

        model_id = first_present(body, *MODEL_FIELDS)
        return ProviderStatus(
            status=map_status(raw_status),
            raw_status=raw_status,
            loss=loss,
            steps=_as_int(first_present(body, *STEP_FIELDS)),
            epoch=_as_int(first_present(body, *EPOCH_FIELDS)),
            model_id=str(model_id) if model_id is not None else None,
            results=body,
        )

    async def cancel(self, job: FineTuneJob) -> None:
        connection = await self._connection(job)
        await self._request(
            "POST",
            f"{self.status_url(connection, job.provider_job_id)}/cancel",
            headers=connection.auth_headers(),
        )


def _as_int(value: Any) -> Optional[int]:
    try:
        return int(value) if value is not None else None
    except (TypeError, ValueError):
        return None
