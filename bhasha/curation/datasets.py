"""Dataset assembly from the content corpus.

This module provides functionality for:
- Building a dataset snapshot from filtered, deduplicated content
- Re-normalizing an existing dataset in place
- Previewing, summarizing and exporting datasets with train/validation/test splits
"""

import csv
import io
import json
import random
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional, Sequence
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import NotFoundError, ValidationError
from bhasha.curation.stats import TokenDistribution, analyze_token_distribution
from bhasha.curation.text import deduplicate_records, normalize_text
from bhasha.curation.validator import MAX_TEXT_LENGTH, MIN_TEXT_LENGTH
from bhasha.persistence.content import CONTENT_COLLECTION, ContentItem, ContentStore
from bhasha.persistence.store import DocumentStore

log = structlog.get_logger()

DATASETS_COLLECTION = "datasets"

DEFAULT_SPLIT = (0.8, 0.1, 0.1)
EXPORT_FORMATS = ("jsonl", "json", "csv")
EXPORT_FIELDS = ("text", "language", "content_type", "region", "category", "dialect", "cultural_context")


@dataclass
class DatasetMetadata:
    """Derived statistics of a dataset's members.

    Attributes:
        avg_tokens: Mean estimated tokens per entry
        regions: Distinct non-empty regions
        categories: Distinct non-empty categories
        token_distribution: Full token statistics
        duplicates_removed: Entries dropped as exact duplicates when built
    """

    avg_tokens: int = 0
    regions: list[str] = field(default_factory=list)
    categories: list[str] = field(default_factory=list)
    token_distribution: Optional[TokenDistribution] = None
    duplicates_removed: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "avg_tokens": self.avg_tokens,
            "regions": self.regions,
            "categories": self.categories,
            "token_distribution": (
                self.token_distribution.to_dict() if self.token_distribution else None
            ),
            "duplicates_removed": self.duplicates_removed,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DatasetMetadata":
        """Create from dictionary."""
        distribution = data.get("token_distribution")
        return cls(
            avg_tokens=data.get("avg_tokens", 0),
            regions=data.get("regions", []),
            categories=data.get("categories", []),
            token_distribution=TokenDistribution.from_dict(distribution) if distribution else None,
            duplicates_removed=data.get("duplicates_removed", 0),
        )


@dataclass
class Dataset:
    """A named snapshot of content for training.

    ``size`` always equals ``len(entry_ids)``; members are referenced by id.
    """

    user_id: str
    name: str
    language: str
    content_type: str = "mixed"
    entry_ids: list[str] = field(default_factory=list)
    quality_score: float = 0.0
    metadata: DatasetMetadata = field(default_factory=DatasetMetadata)
    status: str = "ready"
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    @property
    def size(self) -> int:
        return len(self.entry_ids)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "name": self.name,
            "language": self.language,
            "content_type": self.content_type,
            "size": self.size,
            "entry_ids": self.entry_ids,
            "quality_score": self.quality_score,
            "metadata": self.metadata.to_dict(),
            "status": self.status,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Dataset":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            name=data["name"],
            language=data["language"],
            content_type=data.get("content_type", "mixed"),
            entry_ids=data.get("entry_ids", []),
            quality_score=data.get("quality_score", 0.0),
            metadata=DatasetMetadata.from_dict(data.get("metadata") or {}),
            status=data.get("status", "ready"),
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None
            ),
        )


@dataclass
class NormalizeReport:
    """Result of re-normalizing a dataset."""

    original_size: int
    new_size: int
    removed: int


@dataclass
class DatasetExport:
    """A dataset split into train/validation/test record lists."""

    train: list[dict[str, Any]]
    validation: list[dict[str, Any]]
    test: list[dict[str, Any]]
    metadata: dict[str, Any] = field(default_factory=dict)

    def render(self, split: str = "train", fmt: str = "jsonl") -> str:
        """Serialize one split as JSON Lines, a JSON array or CSV."""
        return render_records(getattr(self, split), fmt)


def render_records(records: Sequence[dict[str, Any]], fmt: str = "jsonl") -> str:
    """Serialize records in one of the export formats."""
    if fmt == "jsonl":
        return "\n".join(json.dumps(r, ensure_ascii=False) for r in records)
    if fmt == "json":
        return json.dumps(list(records), ensure_ascii=False, indent=2)
    if fmt == "csv":
        buffer = io.StringIO()
        writer = csv.DictWriter(buffer, fieldnames=EXPORT_FIELDS, extrasaction="ignore")
        writer.writeheader()
        for record in records:
            writer.writerow({k: record.get(k) or "" for k in EXPORT_FIELDS})
        return buffer.getvalue()
    raise ValidationError(f"Unsupported export format: {fmt}")


def validate_split(split: Sequence[float]) -> tuple[float, float, float]:
    """Check train/validation/test ratios are non-negative and sum to 1."""
    if len(split) != 3:
        raise ValidationError("Split needs train, validation and test ratios")
    train, validation, test = (float(part) for part in split)
    if min(train, validation, test) < 0 or abs(train + validation + test - 1.0) > 1e-6:
        raise ValidationError("Split ratios must be non-negative and sum to 1")
    return train, validation, test


def _distinct(values: Sequence[Optional[str]]) -> list[str]:
    seen: dict[str, None] = {}
    for value in values:
        if value:
            seen.setdefault(value, None)
    return list(seen)


def _summarize(items: Sequence[ContentItem]) -> tuple[float, DatasetMetadata]:
    quality = sum(item.quality_score for item in items) / len(items) if items else 0.0
    distribution = analyze_token_distribution(items)
    metadata = DatasetMetadata(
        avg_tokens=distribution.avg,
        regions=_distinct([item.region for item in items]),
        categories=_distinct([item.category for item in items]),
        token_distribution=distribution,
    )
    return quality, metadata


def _item_key(item: ContentItem) -> str:
    return item.text


class DatasetBuilder:
    """Builds and maintains dataset snapshots.

    Building never fails on an empty selection; the result is a valid
    zero-size dataset that training refuses to use.
    """

    def __init__(self, store: DocumentStore, contents: Optional[ContentStore] = None):
        self.store = store
        self.contents = contents or ContentStore(store)

    async def build(
        self,
        ctx: RequestContext,
        name: str,
        language: str,
        content_type: Optional[str] = None,
        min_quality: Optional[float] = None,
        content_ids: Optional[Sequence[str]] = None,
        statuses: Optional[Sequence[str]] = ("published",),
    ) -> str:
        """Create a dataset from content matching the filters.

        Args:
            ctx: Acting user, who owns the dataset
            name: Dataset name
            language: Required language of members
            content_type: Restrict to one content type ("mixed" if None)
            min_quality: Minimum member quality score
            content_ids: Restrict to these content ids when non-empty
            statuses: Accepted content statuses (None accepts any)

        Returns:
            ID of the new dataset
        """
        records = await self.store.query(CONTENT_COLLECTION, language=language)
        items = [ContentItem.from_dict(r) for r in records]

        if statuses is not None:
            items = [i for i in items if i.status.value in statuses]
        if content_type:
            items = [i for i in items if i.content_type == content_type]
        if min_quality is not None:
            items = [i for i in items if i.quality_score >= min_quality]
        if content_ids:
            allowed = set(content_ids)
            items = [i for i in items if i.id in allowed]

        return await self._create(ctx, name, language, content_type or "mixed", items)

    async def build_from_items(
        self,
        ctx: RequestContext,
        name: str,
        items: Sequence[ContentItem],
        language: str,
        content_type: str = "mixed",
        min_quality: Optional[float] = None,
    ) -> str:
        """Create a dataset from exactly these items.

        ``language`` and ``content_type`` only label the dataset; members of
        other languages or types are kept. Quality filtering and exact-duplicate
        removal still apply.
        """
        if min_quality is not None:
            items = [i for i in items if i.quality_score >= min_quality]
        return await self._create(ctx, name, language, content_type, list(items))

    async def _create(
        self,
        ctx: RequestContext,
        name: str,
        language: str,
        content_type: str,
        items: list[ContentItem],
    ) -> str:
        unique = deduplicate_records(items, _item_key)
        removed = len(items) - len(unique)
        log.info("duplicates_removed", removed=removed, dataset=name)

        quality, metadata = _summarize(unique)
        metadata.duplicates_removed = removed

        dataset = Dataset(
            user_id=ctx.user_id,
            name=name,
            language=language,
            content_type=content_type,
            entry_ids=[i.id for i in unique],
            quality_score=quality,
            metadata=metadata,
        )
        dataset_id = await self.store.insert(DATASETS_COLLECTION, dataset.to_dict())
        log.info(
            "dataset_created",
            dataset_id=dataset_id,
            size=dataset.size,
            language=language,
            quality=round(quality, 2),
        )
        return dataset_id

    async def get(self, dataset_id: str) -> Dataset:
        data = await self.store.get(dataset_id, DATASETS_COLLECTION)
        if not data:
            raise NotFoundError("Dataset", dataset_id)
        return Dataset.from_dict(data)

    async def list_datasets(
        self,
        language: Optional[str] = None,
        content_type: Optional[str] = None,
        min_quality: Optional[float] = None,
        min_size: Optional[int] = None,
    ) -> list[Dataset]:
        """Datasets matching the filters, newest first."""
        filters = {"language": language} if language else {}
        records = await self.store.query(DATASETS_COLLECTION, newest_first=True, **filters)
        datasets = [Dataset.from_dict(r) for r in records]

        if content_type:
            datasets = [d for d in datasets if d.content_type == content_type]
        if min_quality is not None:
            datasets = [d for d in datasets if d.quality_score >= min_quality]
        if min_size is not None:
            datasets = [d for d in datasets if d.size >= min_size]
        return datasets

    async def normalize(
        self,
        ctx: RequestContext,
        dataset_id: str,
        min_length: int = MIN_TEXT_LENGTH,
        max_length: int = MAX_TEXT_LENGTH,
        min_quality: Optional[float] = None,
        remove_duplicates: bool = True,
    ) -> NormalizeReport:
        """Re-filter a dataset's current members and recompute its metadata."""
        dataset = await self.get(dataset_id)
        ctx.require_owner(dataset.user_id, "dataset")

        items = await self.contents.get_many(dataset.entry_ids)
        original_size = dataset.size

        items = [i for i in items if min_length <= len(normalize_text(i.text)) <= max_length]
        if min_quality is not None:
            items = [i for i in items if i.quality_score >= min_quality]
        if remove_duplicates:
            items = deduplicate_records(items, _item_key)

        quality, metadata = _summarize(items)
        metadata.duplicates_removed = dataset.metadata.duplicates_removed
        entry_ids = [i.id for i in items]

        await self.store.patch(
            dataset_id,
            {
                "entry_ids": entry_ids,
                "size": len(entry_ids),
                "quality_score": quality,
                "metadata": metadata.to_dict(),
            },
        )

        report = NormalizeReport(
            original_size=original_size,
            new_size=len(entry_ids),
            removed=original_size - len(entry_ids),
        )
        log.info("dataset_normalized", dataset_id=dataset_id, removed=report.removed)
        return report

    async def preview(self, dataset_id: str, limit: int = 10) -> list[ContentItem]:
        """The first ``limit`` members that still exist."""
        dataset = await self.get(dataset_id)
        return await self.contents.get_many(dataset.entry_ids[:limit])

    async def stats(self, dataset_id: str) -> dict[str, Any]:
        dataset = await self.get(dataset_id)
        distribution = dataset.metadata.token_distribution
        return {
            "total_entries": dataset.size,
            "avg_tokens": dataset.metadata.avg_tokens,
            "regions": dataset.metadata.regions,
            "categories": dataset.metadata.categories,
            "quality_score": dataset.quality_score,
            "language": dataset.language,
            "content_type": dataset.content_type,
            "token_distribution": distribution.to_dict() if distribution else None,
        }

    async def export(
        self,
        dataset_id: str,
        split: Sequence[float] = DEFAULT_SPLIT,
        seed: Optional[int] = None,
    ) -> DatasetExport:
        """Shuffle the members and cut them into train/validation/test.

        Train gets ``floor(n * train)`` records, validation
        ``floor(n * validation)`` and test the remainder.

        Args:
            dataset_id: Dataset to export
            split: Train, validation and test ratios summing to 1
            seed: Seed for a reproducible shuffle
        """
        train_ratio, validation_ratio, _ = validate_split(split)
        dataset = await self.get(dataset_id)
        items = await self.contents.get_many(dataset.entry_ids)

        records = [
            {k: getattr(item, k) for k in EXPORT_FIELDS}
            for item in items
        ]
        random.Random(seed).shuffle(records)

        n = len(records)
        train_size = int(n * train_ratio)
        validation_size = int(n * validation_ratio)

        export = DatasetExport(
            train=records[:train_size],
            validation=records[train_size:train_size + validation_size],
            test=records[train_size + validation_size:],
        )
        export.metadata = {
            "dataset_name": dataset.name,
            "language": dataset.language,
            "total_samples": n,
            "splits": {
                "train": len(export.train),
                "validation": len(export.validation),
                "test": len(export.test),
            },
        }
        log.info("dataset_exported", dataset_id=dataset_id, **export.metadata["splits"])
        return export
