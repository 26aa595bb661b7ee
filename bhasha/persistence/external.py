"""External datasets: raw import sources waiting to be ingested."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import NotFoundError, ValidationError
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

EXTERNAL_COLLECTION = "external_datasets"


class ExternalSource(str, Enum):
    """Where a raw dataset came from."""

    KAGGLE = "kaggle"
    UPLOAD = "upload"
    URL = "url"


class ExternalStatus(str, Enum):
    """Processing status of an external dataset."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


@dataclass
class ExternalDataset:
    """Metadata wrapper around a raw import payload.

    The payload is either held inline in ``raw_data`` or read from
    ``file_path`` when the pipeline normalizes it.
    """

    user_id: str
    name: str
    source: ExternalSource
    source_identifier: str
    raw_data: Optional[str] = None
    file_path: Optional[str] = None
    status: ExternalStatus = ExternalStatus.PENDING
    total_records: int = 0
    processed_records: int = 0
    error_log: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def load_raw(self) -> str:
        """Return the raw payload text."""
        if self.raw_data is not None:
            return self.raw_data
        if self.file_path:
            return Path(self.file_path).read_text(encoding="utf-8")
        raise ValidationError(f"External dataset {self.name} has no data")

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "name": self.name,
            "source": self.source.value,
            "source_identifier": self.source_identifier,
            "raw_data": self.raw_data,
            "file_path": self.file_path,
            "status": self.status.value,
            "total_records": self.total_records,
            "processed_records": self.processed_records,
            "error_log": self.error_log,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ExternalDataset":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            name=data["name"],
            source=ExternalSource(data["source"]),
            source_identifier=data.get("source_identifier", ""),
            raw_data=data.get("raw_data"),
            file_path=data.get("file_path"),
            status=ExternalStatus(data.get("status", "pending")),
            total_records=data.get("total_records", 0),
            processed_records=data.get("processed_records", 0),
            error_log=data.get("error_log", []),
            metadata=data.get("metadata") or {},
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None
            ),
        )


class ExternalDatasetStore:
    """CRUD for external datasets, scoped to their owners."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def create(
        self,
        ctx: RequestContext,
        name: str,
        source: str,
        source_identifier: str,
        raw_data: Optional[str] = None,
        file_path: Optional[str] = None,
        metadata: Optional[dict[str, Any]] = None,
    ) -> str:
        """Register a raw data source.

        Raises:
            ValidationError: On an unknown source or missing payload
        """
        try:
            source_kind = ExternalSource(source)
        except ValueError:
            raise ValidationError(f"Invalid source: {source}")
        if raw_data is None and not file_path:
            raise ValidationError("Either raw data or a file path is required")

        dataset = ExternalDataset(
            user_id=ctx.user_id,
            name=name,
            source=source_kind,
            source_identifier=source_identifier,
            raw_data=raw_data,
            file_path=file_path,
            metadata=metadata or {},
        )
        dataset_id = await self.store.insert(EXTERNAL_COLLECTION, dataset.to_dict())
        log.info("external_dataset_created", dataset_id=dataset_id, source=source)
        return dataset_id

    async def load(self, dataset_id: str) -> ExternalDataset:
        """Fetch without an ownership check (background work)."""
        data = await self.store.get(dataset_id, EXTERNAL_COLLECTION)
        if not data:
            raise NotFoundError("External dataset", dataset_id)
        return ExternalDataset.from_dict(data)

    async def get(self, ctx: RequestContext, dataset_id: str) -> ExternalDataset:
        dataset = await self.load(dataset_id)
        ctx.require_owner(dataset.user_id, "dataset")
        return dataset

    async def list_datasets(
        self,
        ctx: RequestContext,
        status: Optional[str] = None,
        source: Optional[str] = None,
    ) -> list[ExternalDataset]:
        """The acting user's external datasets, newest first."""
        filters: dict[str, Any] = {"user_id": ctx.user_id}
        if status:
            filters["status"] = status
        if source:
            filters["source"] = source
        records = await self.store.query(EXTERNAL_COLLECTION, newest_first=True, **filters)
        return [ExternalDataset.from_dict(r) for r in records]

    async def update_status(
        self,
        dataset_id: str,
        status: ExternalStatus,
        total_records: Optional[int] = None,
        processed_records: Optional[int] = None,
        error_log: Optional[list[str]] = None,
    ) -> None:
        updates: dict[str, Any] = {"status": status.value}
        if total_records is not None:
            updates["total_records"] = total_records
        if processed_records is not None:
            updates["processed_records"] = processed_records
        if error_log is not None:
            updates["error_log"] = error_log
        await self.store.patch(dataset_id, updates)

    async def delete(self, ctx: RequestContext, dataset_id: str) -> None:
        await self.get(ctx, dataset_id)
        await self.store.delete(dataset_id)
        log.info("external_dataset_deleted", dataset_id=dataset_id)
