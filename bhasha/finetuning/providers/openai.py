"""OpenAI fine-tuning adapter: file upload plus the fine_tuning/jobs API."""

import json
from typing import Any, Optional
import httpx
import structlog

from bhasha.core.errors import ProviderError
from bhasha.core.retry import RetryConfig, SUBMIT_RETRY
from bhasha.curation.datasets import Dataset, DatasetExport
from bhasha.finetuning.models import FineTuneJob
from bhasha.finetuning.providers.base import ProviderAdapter, ProviderStatus, map_status

log = structlog.get_logger()

# OpenAI's default learning rate; ours is sent as a multiplier of it
BASE_LEARNING_RATE = 3e-5


def resolve_model(model: str) -> str:
    return "gpt-4-0613" if model == "gpt-4" else "gpt-3.5-turbo-0613"


def to_chat_examples(records: list[dict[str, Any]], language: str) -> list[dict[str, Any]]:
    """Wrap raw samples as chat fine-tuning examples."""
    system = f"You are an AI assistant trained on {language} language data."
    return [
        {
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": record["text"]},
                {"role": "assistant", "content": record["text"]},
            ]
        }
        for record in records
    ]


class OpenAIProvider(ProviderAdapter):
    """Fixed-schema provider backed by the OpenAI REST API."""

    name = "openai"

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        submit_retry: RetryConfig = SUBMIT_RETRY,
        client: Optional[httpx.AsyncClient] = None,
    ):
        super().__init__(timeout=timeout, submit_retry=submit_retry, client=client)
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY not configured")
        return {"Authorization": f"Bearer {self.api_key}"}

    async def _upload(self, examples: list[dict[str, Any]], purpose: str) -> str:
        content = "\n".join(json.dumps(e, ensure_ascii=False) for e in examples)
        body = await self._request(
            "POST",
            f"{self.base_url}/files",
            retry=True,
            headers=self._headers(),
            data={"purpose": "fine-tune"},
            files={"file": (f"{purpose}.jsonl", content.encode("utf-8"), "application/jsonl")},
        )
        file_id = body.get("id")
        if not file_id:
            raise ProviderError("OpenAI file upload returned no file id")
        log.info("openai_file_uploaded", purpose=purpose, file_id=file_id, examples=len(examples))
        return file_id

    async def submit(self, job: FineTuneJob, dataset: Dataset, export: DatasetExport) -> str:
        headers = self._headers()
        training_file = await self._upload(to_chat_examples(export.train, dataset.language), "training")
        validation_file = None
        if export.validation:
            validation_file = await self._upload(
                to_chat_examples(export.validation, dataset.language), "validation"
            )

        payload: dict[str, Any] = {
            "training_file": training_file,
            "model": resolve_model(job.model),
            "hyperparameters": {
                "n_epochs": job.parameters.epochs,
                "batch_size": job.parameters.batch_size,
                "learning_rate_multiplier": job.parameters.learning_rate / BASE_LEARNING_RATE,
            },
            "suffix": f"bhasha-{dataset.language}",
        }
        if validation_file:
            payload["validation_file"] = validation_file

        body = await self._request(
            "POST", f"{self.base_url}/fine_tuning/jobs", retry=True, headers=headers, json=payload
        )
        provider_job_id = body.get("id")
        if not provider_job_id:
            raise ProviderError("OpenAI job creation returned no job id")
        return provider_job_id

    async def poll(self, job: FineTuneJob) -> ProviderStatus:
        body = await self._request(
            "GET",
            f"{self.base_url}/fine_tuning/jobs/{job.provider_job_id}",
            headers=self._headers(),
        )
        hyperparameters = body.get("hyperparameters") or {}
        epoch = hyperparameters.get("n_epochs")
        return ProviderStatus(
            status=map_status(body.get("status")),
            raw_status=body.get("status"),
            steps=body.get("trained_tokens"),
            epoch=epoch if isinstance(epoch, int) else None,
            model_id=body.get("fine_tuned_model"),
            results={
                "fine_tuned_model": body.get("fine_tuned_model"),
                "trained_tokens": body.get("trained_tokens"),
                "result_files": body.get("result_files", []),
            },
        )

    async def cancel(self, job: FineTuneJob) -> None:
        await self._request(
            "POST",
            f"{self.base_url}/fine_tuning/jobs/{job.provider_job_id}/cancel",
            headers=self._headers(),
        )
