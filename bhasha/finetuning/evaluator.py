"""Evaluation of fine-tuned models against test prompts.

This module provides functionality for:
- Storing test prompts (with optional expected output) per fine-tune job
- Generating base and fine-tuned completions via a chat completions API
- Scoring completions locally with unigram BLEU and word-overlap accuracy
"""

import math
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional
import httpx
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import BhashaError, NotFoundError, ProviderError
from bhasha.finetuning.manager import FineTuneManager
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

PROMPTS_COLLECTION = "test_prompts"

PROCESS_PENDING_TASK = "evaluation.process_pending"


def bleu_score(candidate: str, reference: str) -> float:
    """Unigram BLEU: unigram precision times a brevity penalty.

    Precision is the share of candidate tokens found anywhere in the
    reference. The penalty is 1 when the candidate is at least as long as
    the reference, else ``exp(1 - ref_len / cand_len)``. Returns 0 if either
    text has no tokens.
    """
    candidate_tokens = candidate.lower().split()
    reference_tokens = reference.lower().split()
    if not candidate_tokens or not reference_tokens:
        return 0.0

    reference_set = set(reference_tokens)
    matches = sum(1 for token in candidate_tokens if token in reference_set)
    precision = matches / len(candidate_tokens)

    if len(candidate_tokens) >= len(reference_tokens):
        penalty = 1.0
    else:
        penalty = math.exp(1 - len(reference_tokens) / len(candidate_tokens))
    return penalty * precision


def cultural_accuracy(candidate: str, reference: str) -> float:
    """Jaccard overlap of the lowercased word sets."""
    candidate_words = set(candidate.lower().split())
    reference_words = set(reference.lower().split())
    union = candidate_words | reference_words
    if not union:
        return 0.0
    return len(candidate_words & reference_words) / len(union)


class PromptStatus(str, Enum):
    """Evaluation status of a test prompt."""

    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class TestPrompt:
    """A prompt evaluated against a job's base and fine-tuned models."""

    __test__ = False  # keep pytest from collecting this class

    user_id: str
    job_id: str
    prompt: str
    expected_output: Optional[str] = None
    base_model_output: Optional[str] = None
    fine_tuned_output: Optional[str] = None
    bleu_score: Optional[float] = None
    cultural_accuracy: Optional[float] = None
    status: PromptStatus = PromptStatus.PENDING
    error: Optional[str] = None
    id: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "job_id": self.job_id,
            "prompt": self.prompt,
            "expected_output": self.expected_output,
            "base_model_output": self.base_model_output,
            "fine_tuned_output": self.fine_tuned_output,
            "bleu_score": self.bleu_score,
            "cultural_accuracy": self.cultural_accuracy,
            "status": self.status.value,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "TestPrompt":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            job_id=data["job_id"],
            prompt=data["prompt"],
            expected_output=data.get("expected_output"),
            base_model_output=data.get("base_model_output"),
            fine_tuned_output=data.get("fine_tuned_output"),
            bleu_score=data.get("bleu_score"),
            cultural_accuracy=data.get("cultural_accuracy"),
            status=PromptStatus(data.get("status", "pending")),
            error=data.get("error"),
        )


class ChatCompletionClient:
    """Minimal OpenAI-style chat completions client."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://api.openai.com/v1",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self._client = client

    async def complete(self, model: str, prompt: str) -> str:
        """Generate a completion for a single user message."""
        if not self.api_key:
            raise ProviderError("OPENAI_API_KEY not configured")

        payload = {
            "model": model,
            "messages": [{"role": "user", "content": prompt}],
            "max_tokens": 500,
            "temperature": 0.7,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}
        url = f"{self.base_url}/chat/completions"

        try:
            if self._client is not None:
                response = await self._client.post(url, json=payload, headers=headers)
            else:
                async with httpx.AsyncClient(timeout=self.timeout) as client:
                    response = await client.post(url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise ProviderError(f"Chat completion request failed: {e}", retryable=True)

        if not response.is_success:
            raise ProviderError(
                f"OpenAI API error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
            )

        try:
            body = response.json()
        except ValueError:
            raise ProviderError("Chat completion returned a non-JSON response")
        try:
            content = body["choices"][0]["message"]["content"]
        except (KeyError, IndexError, TypeError):
            raise ProviderError("Chat completion returned an unexpected response")
        return content if isinstance(content, str) else ""


class ModelEvaluator:
    """Runs test prompts against a job's base and fine-tuned models."""

    def __init__(self, store: DocumentStore, jobs: FineTuneManager, chat: ChatCompletionClient):
        self.store = store
        self.jobs = jobs
        self.chat = chat

    async def create_prompt(
        self,
        ctx: RequestContext,
        job_id: str,
        prompt: str,
        expected_output: Optional[str] = None,
    ) -> str:
        """Attach a test prompt to a job the acting user owns."""
        job = await self.jobs.get_job(job_id)
        ctx.require_owner(job.user_id, "job")

        test_prompt = TestPrompt(
            user_id=ctx.user_id, job_id=job_id, prompt=prompt, expected_output=expected_output
        )
        prompt_id = await self.store.insert(PROMPTS_COLLECTION, test_prompt.to_dict())
        log.info("test_prompt_created", prompt_id=prompt_id, job_id=job_id)
        return prompt_id

    async def get_prompt(self, prompt_id: str) -> TestPrompt:
        data = await self.store.get(prompt_id, PROMPTS_COLLECTION)
        if not data:
            raise NotFoundError("Test prompt", prompt_id)
        return TestPrompt.from_dict(data)

    async def list_prompts(self, job_id: str) -> list[TestPrompt]:
        records = await self.store.query(PROMPTS_COLLECTION, job_id=job_id)
        return [TestPrompt.from_dict(r) for r in records]

    async def evaluate_prompt(self, prompt_id: str) -> TestPrompt:
        """Generate both completions for a prompt and score them.

        Scores are only computed when the prompt has an expected output,
        and compare the fine-tuned output against it.
        """
        test_prompt = await self.get_prompt(prompt_id)
        job = await self.jobs.get_job(test_prompt.job_id)

        base_output = await self.chat.complete(job.model, test_prompt.prompt)
        fine_tuned_output = ""
        if job.model_id:
            fine_tuned_output = await self.chat.complete(job.model_id, test_prompt.prompt)

        updates: dict[str, Any] = {
            "base_model_output": base_output,
            "fine_tuned_output": fine_tuned_output,
            "status": PromptStatus.COMPLETED.value,
            "error": None,
        }
        if test_prompt.expected_output:
            updates["bleu_score"] = bleu_score(fine_tuned_output, test_prompt.expected_output)
            updates["cultural_accuracy"] = cultural_accuracy(
                fine_tuned_output, test_prompt.expected_output
            )

        data = await self.store.patch(prompt_id, updates)
        data["id"] = prompt_id
        log.info(
            "test_prompt_evaluated",
            prompt_id=prompt_id,
            bleu=updates.get("bleu_score"),
            has_fine_tuned=bool(job.model_id),
        )
        return TestPrompt.from_dict(data)

    async def process_pending_prompts(self) -> int:
        """Evaluate every pending prompt; failures are recorded per prompt.

        Returns:
            Number of prompts evaluated successfully
        """
        records = await self.store.query(PROMPTS_COLLECTION, status=PromptStatus.PENDING.value)
        evaluated = 0
        for record in records:
            try:
                await self.evaluate_prompt(record["id"])
                evaluated += 1
            except BhashaError as e:
                log.error("test_prompt_failed", prompt_id=record["id"], error=str(e))
                await self.store.patch(
                    record["id"], {"status": PromptStatus.FAILED.value, "error": str(e)}
                )
        return evaluated
