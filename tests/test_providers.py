"""Tests for fine-tuning provider adapters."""

import json

import httpx
import pytest

from bhasha.core.errors import ProviderError, ValidationError
from bhasha.core.retry import RetryConfig
from bhasha.curation.datasets import Dataset, DatasetExport
from bhasha.curation.recommender import Hyperparameters
from bhasha.finetuning.models import FineTuneJob, JobStatus
from bhasha.finetuning.providers import (
    CustomProvider,
    OpenAIProvider,
    ProviderRegistry,
    map_status,
)
from bhasha.finetuning.providers.base import first_present
from bhasha.finetuning.providers.openai import resolve_model, to_chat_examples

FAST_RETRY = RetryConfig(max_attempts=3, base_delay=0)

PARAMS = Hyperparameters(learning_rate=3e-5, batch_size=8, epochs=3, lora_rank=8, lora_alpha=16)

RECORDS = [
    {"text": "पहला वाक्य", "language": "hindi", "content_type": "text"},
    {"text": "दूसरा वाक्य", "language": "hindi", "content_type": "text"},
]


def _job(provider="openai", **kwargs):
    return FineTuneJob(
        user_id="user-1",
        dataset_id="ds-1",
        parameters=PARAMS,
        provider=provider,
        model="gpt-3.5-turbo",
        **kwargs,
    )


def _dataset():
    return Dataset(user_id="user-1", name="corpus", language="hindi", entry_ids=["a", "b", "c"])


def _export(validation=True):
    return DatasetExport(train=RECORDS, validation=RECORDS[:1] if validation else [], test=[])


class Recorder:
    """MockTransport handler replaying queued responses."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    def __call__(self, request):
        self.requests.append(request)
        response = self.responses.pop(0) if len(self.responses) > 1 else self.responses[0]
        return response

    def client(self):
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


# ============================================
# Shared helpers
# ============================================


class TestMapStatus:
    """Tests for provider status mapping."""

    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("succeeded", JobStatus.COMPLETED),
            ("Completed", JobStatus.COMPLETED),
            ("DONE", JobStatus.COMPLETED),
            ("error", JobStatus.FAILED),
            ("failed", JobStatus.FAILED),
            ("canceled", JobStatus.CANCELLED),
            ("cancelled", JobStatus.CANCELLED),
            ("aborted", JobStatus.CANCELLED),
            ("validating_files", JobStatus.RUNNING),
            ("queued", JobStatus.RUNNING),
            (None, JobStatus.RUNNING),
        ],
    )
    def test_map_status(self, raw, expected):
        assert map_status(raw) == expected


class TestFirstPresent:
    """Tests for tolerant field lookup."""

    def test_first_key_wins(self):
        assert first_present({"id": "a", "job_id": "b"}, "job_id", "id") == "b"

    def test_skips_empty_values(self):
        assert first_present({"job_id": "", "id": "a"}, "job_id", "id") == "a"

    def test_dotted_keys(self):
        data = {"metrics": {"loss": 0.4}, "loss": 0.9}
        assert first_present(data, "metrics.loss", "loss") == 0.4

    def test_missing(self):
        assert first_present({"metrics": 3}, "metrics.loss", "loss") is None


class TestRegistry:
    """Tests for ProviderRegistry."""

    def test_lookup(self):
        openai = OpenAIProvider(api_key="k")
        registry = ProviderRegistry([openai])

        assert registry.get("openai") is openai
        assert "openai" in registry
        assert registry.names() == ["openai"]

    def test_unknown(self):
        registry = ProviderRegistry([OpenAIProvider(api_key="k")])

        with pytest.raises(ValidationError, match="available: openai"):
            registry.get("anthropic")


# ============================================
# OpenAI
# ============================================


class TestOpenAIProvider:
    """Tests for the OpenAI adapter."""

    def test_resolve_model(self):
        assert resolve_model("gpt-4") == "gpt-4-0613"
        assert resolve_model("gpt-3.5-turbo") == "gpt-3.5-turbo-0613"
        assert resolve_model("anything") == "gpt-3.5-turbo-0613"

    def test_chat_examples(self):
        example = to_chat_examples(RECORDS[:1], "hindi")[0]

        roles = [m["role"] for m in example["messages"]]
        assert roles == ["system", "user", "assistant"]
        assert "hindi" in example["messages"][0]["content"]
        assert example["messages"][1]["content"] == example["messages"][2]["content"] == "पहला वाक्य"

    @pytest.mark.asyncio
    async def test_submit(self):
        handler = Recorder(
            httpx.Response(200, json={"id": "file-train"}),
            httpx.Response(200, json={"id": "file-val"}),
            httpx.Response(200, json={"id": "ftjob-1", "status": "validating_files"}),
        )
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client)
            provider_job_id = await provider.submit(_job(), _dataset(), _export())

        assert provider_job_id == "ftjob-1"
        assert [r.url.path for r in handler.requests] == ["/v1/files", "/v1/files", "/v1/fine_tuning/jobs"]
        assert handler.requests[0].headers["Authorization"] == "Bearer sk-test"
        payload = json.loads(handler.requests[2].content)
        assert payload["training_file"] == "file-train"
        assert payload["validation_file"] == "file-val"
        assert payload["model"] == "gpt-3.5-turbo-0613"
        assert payload["suffix"] == "bhasha-hindi"
        assert payload["hyperparameters"] == {
            "n_epochs": 3,
            "batch_size": 8,
            "learning_rate_multiplier": 1.0,
        }

    @pytest.mark.asyncio
    async def test_submit_without_validation_split(self):
        handler = Recorder(
            httpx.Response(200, json={"id": "file-train"}),
            httpx.Response(200, json={"id": "ftjob-1"}),
        )
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client)
            await provider.submit(_job(), _dataset(), _export(validation=False))

        assert len(handler.requests) == 2
        assert "validation_file" not in json.loads(handler.requests[1].content)

    @pytest.mark.asyncio
    async def test_submit_retries_server_errors(self):
        handler = Recorder(
            httpx.Response(500, text="overloaded"),
            httpx.Response(200, json={"id": "file-train"}),
            httpx.Response(200, json={"id": "ftjob-1"}),
        )
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client, submit_retry=FAST_RETRY)
            assert await provider.submit(_job(), _dataset(), _export(validation=False)) == "ftjob-1"

        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_submit_gives_up(self):
        handler = Recorder(httpx.Response(503, text="unavailable"))
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client, submit_retry=FAST_RETRY)
            with pytest.raises(ProviderError) as exc:
                await provider.submit(_job(), _dataset(), _export())

        assert exc.value.status_code == 503
        assert exc.value.retryable is True
        assert len(handler.requests) == 3

    @pytest.mark.asyncio
    async def test_missing_api_key(self):
        provider = OpenAIProvider(api_key=None)

        with pytest.raises(ProviderError, match="not configured"):
            await provider.poll(_job(provider_job_id="ftjob-1"))

    @pytest.mark.asyncio
    async def test_poll(self):
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "status": "succeeded",
                    "fine_tuned_model": "ft:gpt-3.5:bhasha",
                    "trained_tokens": 12000,
                    "hyperparameters": {"n_epochs": 3},
                },
            )
        )
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client)
            report = await provider.poll(_job(provider_job_id="ftjob-1"))

        assert handler.requests[0].url.path == "/v1/fine_tuning/jobs/ftjob-1"
        assert report.status == JobStatus.COMPLETED
        assert report.raw_status == "succeeded"
        assert report.model_id == "ft:gpt-3.5:bhasha"
        assert report.epoch == 3
        assert report.results["trained_tokens"] == 12000

    @pytest.mark.asyncio
    async def test_poll_is_single_attempt(self):
        handler = Recorder(httpx.Response(502))
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client, submit_retry=FAST_RETRY)
            with pytest.raises(ProviderError):
                await provider.poll(_job(provider_job_id="ftjob-1"))

        assert len(handler.requests) == 1

    @pytest.mark.asyncio
    async def test_cancel(self):
        handler = Recorder(httpx.Response(200, json={"status": "cancelled"}))
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client)
            await provider.cancel(_job(provider_job_id="ftjob-1"))

        assert handler.requests[0].method == "POST"
        assert handler.requests[0].url.path == "/v1/fine_tuning/jobs/ftjob-1/cancel"

    @pytest.mark.asyncio
    async def test_non_json_response(self):
        handler = Recorder(httpx.Response(200, text="<html>"))
        async with handler.client() as client:
            provider = OpenAIProvider(api_key="sk-test", client=client)
            with pytest.raises(ProviderError, match="non-JSON"):
                await provider.poll(_job(provider_job_id="ftjob-1"))


# ============================================
# Custom endpoints
# ============================================


class TestCustomProvider:
    """Tests for the custom endpoint adapter."""

    async def _connection(self, connections, ctx, **kwargs):
        args = {
            "name": "lab",
            "api_endpoint": "https://train.example.com/jobs",
            "api_key": "secret",
            **kwargs,
        }
        return await connections.create(ctx, **args)

    @pytest.mark.asyncio
    async def test_submit_jsonl(self, connections, ctx):
        connection_id = await self._connection(connections, ctx, model_identifier="indic-7b")
        handler = Recorder(httpx.Response(200, json={"task_id": "t-9"}))

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            provider_job_id = await provider.submit(
                _job("custom", connection_id=connection_id), _dataset(), _export()
            )

        assert provider_job_id == "t-9"
        request = handler.requests[0]
        assert request.headers["Authorization"] == "Bearer secret"
        payload = json.loads(request.content)
        assert payload["model_identifier"] == "indic-7b"
        assert payload["parameters"] == PARAMS.to_dict()
        assert payload["dataset_info"] == {"language": "hindi", "size": 3, "quality_score": 0.0}
        assert len(payload["training_data"].split("\n")) == 2

    @pytest.mark.asyncio
    @pytest.mark.parametrize("data_format", ["json", "csv"])
    async def test_submit_formats(self, connections, ctx, data_format):
        connection_id = await self._connection(connections, ctx, data_format=data_format)
        handler = Recorder(httpx.Response(200, json={"id": 42}))

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            provider_job_id = await provider.submit(
                _job("custom", connection_id=connection_id), _dataset(), _export()
            )

        payload = json.loads(handler.requests[0].content)
        assert provider_job_id == "42"
        if data_format == "json":
            assert payload["training_data"] == RECORDS
        else:
            assert payload["training_data"].startswith("text,language,content_type")
        assert payload["model_identifier"] == "hindi"

    @pytest.mark.asyncio
    async def test_missing_job_id_falls_back(self, connections, ctx):
        connection_id = await self._connection(connections, ctx)
        handler = Recorder(httpx.Response(200, json={"accepted": True}))

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            provider_job_id = await provider.submit(
                _job("custom", connection_id=connection_id), _dataset(), _export()
            )

        assert provider_job_id == "custom-job"

    @pytest.mark.asyncio
    async def test_inactive_connection(self, connections, ctx):
        connection_id = await self._connection(connections, ctx)
        await connections.toggle_active(ctx, connection_id)
        provider = CustomProvider(connections)

        with pytest.raises(ValidationError, match="not active"):
            await provider.submit(_job("custom", connection_id=connection_id), _dataset(), _export())

    @pytest.mark.asyncio
    async def test_connection_required(self, connections):
        provider = CustomProvider(connections)

        with pytest.raises(ValidationError):
            await provider.submit(_job("custom"), _dataset(), _export())

    @pytest.mark.asyncio
    async def test_poll_reads_varied_fields(self, connections, ctx):
        connection_id = await self._connection(
            connections, ctx, auth_type="api_key", status_endpoint="https://status.example.com/v2/"
        )
        handler = Recorder(
            httpx.Response(
                200,
                json={
                    "state": "SUCCEEDED",
                    "metrics": {"loss": [0.9, 0.5], "steps": "40"},
                    "current_epoch": 2,
                    "fine_tuned_model": "indic-ft",
                },
            )
        )

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            report = await provider.poll(_job("custom", connection_id=connection_id, provider_job_id="t-9"))

        assert str(handler.requests[0].url) == "https://status.example.com/v2/t-9"
        assert handler.requests[0].headers["X-API-Key"] == "secret"
        assert report.status == JobStatus.COMPLETED
        assert report.loss == [0.9, 0.5]
        assert report.steps == 40
        assert report.epoch == 2
        assert report.model_id == "indic-ft"

    @pytest.mark.asyncio
    async def test_poll_ignores_non_numeric_loss(self, connections, ctx):
        connection_id = await self._connection(connections, ctx)
        handler = Recorder(httpx.Response(200, json={"status": "training", "loss": "n/a"}))

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            report = await provider.poll(_job("custom", connection_id=connection_id, provider_job_id="t-9"))

        assert report.status == JobStatus.RUNNING
        assert report.loss is None
        assert str(handler.requests[0].url) == "https://train.example.com/jobs/t-9"

    @pytest.mark.asyncio
    async def test_cancel(self, connections, ctx):
        connection_id = await self._connection(connections, ctx)
        handler = Recorder(httpx.Response(200, json={}))

        async with handler.client() as client:
            provider = CustomProvider(connections, client=client)
            await provider.cancel(_job("custom", connection_id=connection_id, provider_job_id="t-9"))

        assert handler.requests[0].method == "POST"
        assert str(handler.requests[0].url) == "https://train.example.com/jobs/t-9/cancel"
