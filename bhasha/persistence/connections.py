"""LLM connections: user-configured custom fine-tuning endpoints."""

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Optional
from urllib.parse import urlparse
import httpx
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import NotFoundError, ValidationError
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

CONNECTIONS_COLLECTION = "llm_connections"

DATA_FORMATS = ("jsonl", "json", "csv")

UPDATABLE_FIELDS = (
    "name",
    "api_endpoint",
    "auth_type",
    "api_key",
    "data_format",
    "status_endpoint",
    "model_identifier",
    "is_active",
)


class AuthType(str, Enum):
    """How the API key is presented to the endpoint."""

    BEARER = "bearer"
    API_KEY = "api_key"
    NONE = "none"


def validate_url(url: str) -> None:
    """Raise ValidationError unless ``url`` is an absolute http(s) URL."""
    parsed = urlparse(url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise ValidationError(f"Invalid URL format: {url}")


@dataclass
class LLMConnection:
    """A custom fine-tuning endpoint.

    Attributes:
        api_endpoint: URL jobs are POSTed to
        auth_type: bearer, api_key or none
        data_format: jsonl, json or csv encoding of the training data
        status_endpoint: Base URL for status polls (defaults to api_endpoint)
        model_identifier: Model name sent with the job
        test_status: Result of the last connection test (success/failed)
    """

    user_id: str
    name: str
    api_endpoint: str
    auth_type: AuthType = AuthType.BEARER
    api_key: Optional[str] = None
    data_format: str = "jsonl"
    status_endpoint: Optional[str] = None
    model_identifier: Optional[str] = None
    is_active: bool = True
    last_tested: Optional[str] = None
    test_status: Optional[str] = None
    id: Optional[str] = None

    def auth_headers(self) -> dict[str, str]:
        """Request headers carrying the credential, per ``auth_type``."""
        if not self.api_key:
            return {}
        if self.auth_type == AuthType.BEARER:
            return {"Authorization": f"Bearer {self.api_key}"}
        if self.auth_type == AuthType.API_KEY:
            return {"X-API-Key": self.api_key}
        return {}

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "name": self.name,
            "api_endpoint": self.api_endpoint,
            "auth_type": self.auth_type.value,
            "api_key": self.api_key,
            "data_format": self.data_format,
            "status_endpoint": self.status_endpoint,
            "model_identifier": self.model_identifier,
            "is_active": self.is_active,
            "last_tested": self.last_tested,
            "test_status": self.test_status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LLMConnection":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            name=data["name"],
            api_endpoint=data["api_endpoint"],
            auth_type=AuthType(data.get("auth_type", "bearer")),
            api_key=data.get("api_key"),
            data_format=data.get("data_format", "jsonl"),
            status_endpoint=data.get("status_endpoint"),
            model_identifier=data.get("model_identifier"),
            is_active=data.get("is_active", True),
            last_tested=data.get("last_tested"),
            test_status=data.get("test_status"),
        )


def _check_fields(fields: dict[str, Any]) -> None:
    if fields.get("api_endpoint") is not None:
        validate_url(fields["api_endpoint"])
    if fields.get("status_endpoint"):
        validate_url(fields["status_endpoint"])
    if fields.get("auth_type") is not None and fields["auth_type"] not in {a.value for a in AuthType}:
        raise ValidationError(f"Invalid auth type: {fields['auth_type']}")
    if fields.get("data_format") is not None and fields["data_format"] not in DATA_FORMATS:
        raise ValidationError(f"Invalid data format: {fields['data_format']}")


class LLMConnectionStore:
    """CRUD for custom endpoints, scoped to their owners."""

    def __init__(self, store: DocumentStore, timeout: float = 60.0):
        self.store = store
        self.timeout = timeout

    async def create(
        self,
        ctx: RequestContext,
        name: str,
        api_endpoint: str,
        auth_type: str = "bearer",
        api_key: Optional[str] = None,
        data_format: str = "jsonl",
        status_endpoint: Optional[str] = None,
        model_identifier: Optional[str] = None,
    ) -> str:
        """Register an endpoint after validating its URLs."""
        _check_fields(
            {
                "api_endpoint": api_endpoint,
                "status_endpoint": status_endpoint,
                "auth_type": auth_type,
                "data_format": data_format,
            }
        )
        connection = LLMConnection(
            user_id=ctx.user_id,
            name=name,
            api_endpoint=api_endpoint,
            auth_type=AuthType(auth_type),
            api_key=api_key,
            data_format=data_format,
            status_endpoint=status_endpoint,
            model_identifier=model_identifier,
        )
        connection_id = await self.store.insert(CONNECTIONS_COLLECTION, connection.to_dict())
        log.info("connection_created", connection_id=connection_id, name=name)
        return connection_id

    async def load(self, connection_id: str) -> LLMConnection:
        data = await self.store.get(connection_id, CONNECTIONS_COLLECTION)
        if not data:
            raise NotFoundError("Connection", connection_id)
        return LLMConnection.from_dict(data)

    async def get(self, ctx: RequestContext, connection_id: str) -> LLMConnection:
        connection = await self.load(connection_id)
        ctx.require_owner(connection.user_id, "connection")
        return connection

    async def list_connections(self, ctx: RequestContext) -> list[LLMConnection]:
        records = await self.store.query(CONNECTIONS_COLLECTION, user_id=ctx.user_id)
        return [LLMConnection.from_dict(r) for r in records]

    async def update(self, ctx: RequestContext, connection_id: str, **updates: Any) -> LLMConnection:
        await self.get(ctx, connection_id)

        unknown = set(updates) - set(UPDATABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")
        changes = {k: v for k, v in updates.items() if v is not None}
        _check_fields(changes)

        data = await self.store.patch(connection_id, changes)
        data["id"] = connection_id
        return LLMConnection.from_dict(data)

    async def toggle_active(self, ctx: RequestContext, connection_id: str) -> bool:
        """Flip ``is_active`` and return the new value."""
        connection = await self.get(ctx, connection_id)
        await self.store.patch(connection_id, {"is_active": not connection.is_active})
        return not connection.is_active

    async def delete(self, ctx: RequestContext, connection_id: str) -> None:
        await self.get(ctx, connection_id)
        await self.store.delete(connection_id)
        log.info("connection_deleted", connection_id=connection_id)

    async def update_test_status(self, ctx: RequestContext, connection_id: str, success: bool) -> None:
        await self.get(ctx, connection_id)
        await self.store.patch(
            connection_id,
            {
                "test_status": "success" if success else "failed",
                "last_tested": datetime.now().isoformat(),
            },
        )

    async def test_connection(
        self,
        ctx: RequestContext,
        connection_id: str,
        client: Optional[httpx.AsyncClient] = None,
    ) -> bool:
        """GET the endpoint with its credentials and record the outcome.

        Any 2xx answer counts as success; errors are recorded, not raised.
        """
        connection = await self.get(ctx, connection_id)
        owns_client = client is None
        client = client or httpx.AsyncClient(timeout=self.timeout)

        try:
            response = await client.get(connection.api_endpoint, headers=connection.auth_headers())
            success = response.is_success
        except httpx.HTTPError as e:
            log.warning("connection_test_failed", connection_id=connection_id, error=str(e))
            success = False
        finally:
            if owns_client:
                await client.aclose()

        await self.update_test_status(ctx, connection_id, success)
        log.info("connection_tested", connection_id=connection_id, success=success)
        return success
