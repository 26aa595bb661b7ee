"""Provider adapter interface and shared response handling."""

from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from dataclasses import dataclass, field
from typing import Any, AsyncIterator, Optional
import httpx
import structlog

from bhasha.core.errors import ProviderError
from bhasha.core.retry import NO_RETRY, RetryConfig, SUBMIT_RETRY, with_retry
from bhasha.curation.datasets import Dataset, DatasetExport
from bhasha.finetuning.models import FineTuneJob, JobStatus

log = structlog.get_logger()

COMPLETED_STATUSES = ("completed", "succeeded", "success", "finished", "done")
FAILED_STATUSES = ("failed", "error", "errored")
CANCELLED_STATUSES = ("cancelled", "canceled", "aborted")


def map_status(raw: Optional[str]) -> JobStatus:
    """Map a provider's status word onto the canonical job status.

    Matching is case-insensitive; anything unrecognized counts as running.
    """
    value = str(raw or "").strip().lower()
    if value in COMPLETED_STATUSES:
        return JobStatus.COMPLETED
    if value in FAILED_STATUSES:
        return JobStatus.FAILED
    if value in CANCELLED_STATUSES:
        return JobStatus.CANCELLED
    return JobStatus.RUNNING


def first_present(data: dict[str, Any], *keys: str) -> Any:
    """Value of the first key that is set and non-empty.

    Dotted keys (``"metrics.loss"``) look into nested objects.
    """
    for key in keys:
        value: Any = data
        for part in key.split("."):
            value = value.get(part) if isinstance(value, dict) else None
        if value not in (None, "", []):
            return value
    return None


@dataclass
class ProviderStatus:
    """A provider's view of a job, already mapped to canonical terms."""

    status: JobStatus
    raw_status: Optional[str] = None
    loss: Any = None
    steps: Optional[int] = None
    epoch: Optional[int] = None
    model_id: Optional[str] = None
    results: dict[str, Any] = field(default_factory=dict)


class ProviderAdapter(ABC):
    """A fine-tuning backend: submit, poll and cancel jobs.

    Submission retries per ``submit_retry``; polling and cancellation are
    single attempts since the next scheduled poll retries them anyway.
    """

    name: str = ""

    def __init__(
        self,
        timeout: float = 60.0,
        submit_retry: RetryConfig = SUBMIT_RETRY,
        client: Optional[httpx.AsyncClient] = None,
    ):
        """Initialize the adapter.

        Args:
            timeout: Seconds before an outbound request is abandoned
            submit_retry: Retry policy for submission requests
            client: Shared HTTP client (one per call is created if None)
        """
        self.timeout = timeout
        self.submit_retry = RetryConfig(
            max_attempts=submit_retry.max_attempts,
            base_delay=submit_retry.base_delay,
            max_delay=submit_retry.max_delay,
            exponential_base=submit_retry.exponential_base,
            retryable_exceptions=(ProviderError,),
        )
        self._client = client

    @asynccontextmanager
    async def _http(self) -> AsyncIterator[httpx.AsyncClient]:
        if self._client is not None:
            yield self._client
            return
        async with httpx.AsyncClient(timeout=self.timeout) as client:
            yield client

    async def _send(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        """Issue one request; non-2xx and transport failures raise ProviderError."""
        try:
            async with self._http() as client:
                response = await client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            raise ProviderError(f"{self.name} request to {url} failed: {e}", retryable=True)

        if not response.is_success:
            raise ProviderError(
                f"{self.name} API error ({response.status_code}): {response.text[:500]}",
                status_code=response.status_code,
                retryable=response.status_code >= 500 or response.status_code == 429,
            )
        return response

    async def _request(
        self, method: str, url: str, retry: bool = False, **kwargs: Any
    ) -> dict[str, Any]:
        """Send a request and decode its JSON body."""
        config = self.submit_retry if retry else NO_RETRY
        response = await with_retry(config)(self._send)(method, url, **kwargs)
        try:
            body = response.json()
        except ValueError:
            raise ProviderError(f"{self.name} returned a non-JSON response from {url}")
        if not isinstance(body, dict):
            raise ProviderError(f"{self.name} returned an unexpected response from {url}")
        return body

    @abstractmethod
    async def submit(self, job: FineTuneJob, dataset: Dataset, export: DatasetExport) -> str:
        """Submit a job and return the provider's job id."""

    @abstractmethod
    async def poll(self, job: FineTuneJob) -> ProviderStatus:
        """Fetch the provider's current status for a submitted job."""

    @abstractmethod
    async def cancel(self, job: FineTuneJob) -> None:
        """Ask the provider to stop a submitted job."""
