"""Content items: contributed text samples and their store."""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional, TYPE_CHECKING
import structlog

from bhasha.core.context import RequestContext
from bhasha.core.errors import DuplicateContentError, NotFoundError, ValidationError
from bhasha.curation.text import DUPLICATE_THRESHOLD, find_near_duplicate
from bhasha.curation.validator import validate_content
from bhasha.persistence.store import DocumentStore

if TYPE_CHECKING:
    from bhasha.analysis.quality import QualityAnalyzer
    from bhasha.core.scheduler import TaskScheduler

log = structlog.get_logger()

CONTENT_COLLECTION = "content"
ACTIVITY_COLLECTION = "activities"

ANALYZE_QUALITY_TASK = "content.analyze_quality"

# Fields an owner may change through update()
EDITABLE_FIELDS = (
    "text",
    "language",
    "content_type",
    "region",
    "category",
    "source",
    "dialect",
    "cultural_context",
    "status",
)


class ContentStatus(str, Enum):
    """Publication status of a content item."""

    DRAFT = "draft"
    PUBLISHED = "published"


STATUSES = tuple(s.value for s in ContentStatus)


@dataclass
class ContentItem:
    """A single contributed text sample.

    Attributes:
        user_id: Owner of the item
        text: The sample text
        language: One of the supported languages
        content_type: text, proverb or narrative
        status: Draft or published
        quality_score: 0-10, set by quality analysis
        ai_analysis: Structured breakdown from quality analysis
    """

    user_id: str
    text: str
    language: str
    content_type: str = "text"
    status: ContentStatus = ContentStatus.DRAFT
    quality_score: float = 0.0
    region: Optional[str] = None
    category: Optional[str] = None
    source: Optional[str] = None
    dialect: Optional[str] = None
    cultural_context: Optional[str] = None
    ai_analysis: Optional[dict[str, Any]] = None
    id: Optional[str] = None
    created_at: Optional[datetime] = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to a storable record."""
        return {
            "user_id": self.user_id,
            "text": self.text,
            "language": self.language,
            "content_type": self.content_type,
            "status": self.status.value,
            "quality_score": self.quality_score,
            "region": self.region,
            "category": self.category,
            "source": self.source,
            "dialect": self.dialect,
            "cultural_context": self.cultural_context,
            "ai_analysis": self.ai_analysis,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ContentItem":
        """Create from a stored record."""
        return cls(
            id=data.get("id"),
            user_id=data["user_id"],
            text=data["text"],
            language=data["language"],
            content_type=data.get("content_type", "text"),
            status=ContentStatus(data.get("status", "draft")),
            quality_score=data.get("quality_score", 0.0),
            region=data.get("region"),
            category=data.get("category"),
            source=data.get("source"),
            dialect=data.get("dialect"),
            cultural_context=data.get("cultural_context"),
            ai_analysis=data.get("ai_analysis"),
            created_at=(
                datetime.fromisoformat(data["created_at"]) if data.get("created_at") else None
            ),
        )


@dataclass
class ContentStats:
    """Counts over published content."""

    total: int = 0
    by_language: dict[str, int] = field(default_factory=dict)
    by_type: dict[str, int] = field(default_factory=dict)
    avg_quality: float = 0.0


class ContentStore:
    """Creates, edits and queries content items.

    Direct creation is strict: invalid input raises ValidationError and a
    near-duplicate in the same language raises DuplicateContentError. The
    duplicate check and the insert run in one transaction.
    """

    def __init__(
        self,
        store: DocumentStore,
        scheduler: Optional["TaskScheduler"] = None,
        analyzer: Optional["QualityAnalyzer"] = None,
        duplicate_threshold: float = DUPLICATE_THRESHOLD,
    ):
        self.store = store
        self.scheduler = scheduler
        self.analyzer = analyzer
        self.duplicate_threshold = duplicate_threshold

    async def create(
        self,
        ctx: RequestContext,
        text: str,
        language: str,
        content_type: str,
        status: str = ContentStatus.DRAFT.value,
        region: Optional[str] = None,
        category: Optional[str] = None,
        source: Optional[str] = None,
        dialect: Optional[str] = None,
        cultural_context: Optional[str] = None,
        enable_ai_analysis: bool = False,
    ) -> str:
        """Create a content item owned by the acting user.

        Returns:
            ID of the new item

        Raises:
            ValidationError: If any field breaks the content rules
            DuplicateContentError: If similar text already exists in the language
        """
        fields = {
            "text": text,
            "language": language,
            "content_type": content_type,
            "region": region,
            "category": category,
            "source": source,
            "dialect": dialect,
            "cultural_context": cultural_context,
        }
        result = validate_content(fields)
        if status not in STATUSES:
            result.errors.append(f"Invalid status: {status}")
        if result.errors:
            raise ValidationError(
                "Invalid content: " + "; ".join(result.errors), result.errors
            )

        item = ContentItem(
            user_id=ctx.user_id,
            text=text,
            language=language.strip().lower(),
            content_type=content_type,
            status=ContentStatus(status),
            region=region,
            category=category,
            source=source,
            dialect=dialect,
            cultural_context=cultural_context,
        )

        async with self.store.transaction() as txn:
            existing = await txn.query(CONTENT_COLLECTION, language=item.language)
            match = find_near_duplicate(text, existing, self.duplicate_threshold)
            if match:
                log.info("duplicate_content_rejected", match_id=match[0], similarity=match[1])
                raise DuplicateContentError(*match)

            content_id = await txn.insert(CONTENT_COLLECTION, item.to_dict())
            await txn.insert(
                ACTIVITY_COLLECTION,
                {
                    "user_id": ctx.user_id,
                    "action": "content_created",
                    "content_id": content_id,
                    "metadata": {"language": item.language, "content_type": content_type},
                },
            )

        log.info("content_created", content_id=content_id, language=item.language)

        if enable_ai_analysis:
            await self.schedule_analysis(content_id)

        return content_id

    async def create_imported(
        self,
        ctx: RequestContext,
        record: dict[str, Any],
        status: str = ContentStatus.DRAFT.value,
        source: str = "external_import",
    ) -> str:
        """Insert an already-validated import row.

        No similarity guard runs here; bulk import deduplicates by exact
        text before ingestion.
        """
        item = ContentItem(
            user_id=ctx.user_id,
            text=record["text"],
            language=record["language"],
            content_type=record.get("content_type", "text"),
            status=ContentStatus(status),
            quality_score=record.get("quality_score", 0.0),
            region=record.get("region"),
            category=record.get("category"),
            source=record.get("source") or source,
            dialect=record.get("dialect"),
            cultural_context=record.get("cultural_context"),
        )
        return await self.store.insert(CONTENT_COLLECTION, item.to_dict())

    async def schedule_analysis(self, content_id: str) -> None:
        if self.scheduler is None:
            log.warning("quality_analysis_unavailable", content_id=content_id)
            return
        await self.scheduler.run_after(0, ANALYZE_QUALITY_TASK, content_id=content_id)

    async def get(self, content_id: str) -> Optional[ContentItem]:
        data = await self.store.get(content_id, CONTENT_COLLECTION)
        return ContentItem.from_dict(data) if data else None

    async def get_many(self, content_ids: list[str]) -> list[ContentItem]:
        """Fetch items in the given order, skipping ones that no longer exist."""
        items = []
        for content_id in content_ids:
            item = await self.get(content_id)
            if item is not None:
                items.append(item)
        return items

    async def _get_owned(self, ctx: RequestContext, content_id: str) -> ContentItem:
        item = await self.get(content_id)
        if item is None:
            raise NotFoundError("Content", content_id)
        ctx.require_owner(item.user_id, "content")
        return item

    async def update(self, ctx: RequestContext, content_id: str, **updates: Any) -> ContentItem:
        """Change editable fields of an item the acting user owns.

        The merged item is re-validated with the creation rules.
        """
        item = await self._get_owned(ctx, content_id)

        unknown = set(updates) - set(EDITABLE_FIELDS)
        if unknown:
            raise ValidationError(f"Cannot update fields: {', '.join(sorted(unknown))}")

        changes = {k: v for k, v in updates.items() if v is not None}
        merged = item.to_dict()
        merged.update(changes)

        result = validate_content(merged)
        if merged["status"] not in STATUSES:
            result.errors.append(f"Invalid status: {merged['status']}")
        if result.errors:
            raise ValidationError(
                "Invalid content: " + "; ".join(result.errors), result.errors
            )
        if "language" in changes:
            changes["language"] = changes["language"].strip().lower()

        data = await self.store.patch(content_id, changes)
        data["id"] = content_id
        log.info("content_updated", content_id=content_id, fields=sorted(changes))
        return ContentItem.from_dict(data)

    async def delete(self, ctx: RequestContext, content_id: str) -> None:
        """Delete an item the acting user owns."""
        await self._get_owned(ctx, content_id)
        await self.store.delete(content_id)
        log.info("content_deleted", content_id=content_id)

    async def set_quality(
        self,
        content_id: str,
        quality_score: float,
        analysis: Optional[dict[str, Any]] = None,
    ) -> None:
        await self.store.patch(
            content_id, {"quality_score": quality_score, "ai_analysis": analysis}
        )

    async def analyze_quality(self, content_id: str) -> None:
        """Scheduled task: score an item with the quality analyzer.

        Missing items and an absent analyzer are logged and skipped.
        """
        item = await self.get(content_id)
        if item is None:
            log.warning("quality_analysis_skipped", content_id=content_id, reason="not found")
            return
        if self.analyzer is None:
            log.warning("quality_analysis_skipped", content_id=content_id, reason="no analyzer")
            return

        result = await self.analyzer.analyze(
            item.text, item.language, item.content_type, item.cultural_context
        )
        await self.set_quality(content_id, result.quality_score, result.analysis)
        log.info("quality_analyzed", content_id=content_id, score=result.quality_score)

    async def list_items(
        self,
        language: Optional[str] = None,
        content_type: Optional[str] = None,
        status: Optional[str] = None,
        user_id: Optional[str] = None,
        limit: Optional[int] = None,
    ) -> list[ContentItem]:
        """List items matching the given filters, newest first."""
        filters: dict[str, Any] = {}
        if language:
            filters["language"] = language
        if content_type:
            filters["content_type"] = content_type
        if status:
            filters["status"] = status
        if user_id:
            filters["user_id"] = user_id

        records = await self.store.query(
            CONTENT_COLLECTION, limit=limit, newest_first=True, **filters
        )
        return [ContentItem.from_dict(r) for r in records]

    async def search(self, term: str, language: Optional[str] = None) -> list[ContentItem]:
        """Case-insensitive match against text, category and cultural context."""
        needle = term.lower()
        filters = {"language": language} if language else {}
        records = await self.store.query(CONTENT_COLLECTION, newest_first=True, **filters)

        matches = []
        for record in records:
            haystacks = (
                record.get("text"),
                record.get("category"),
                record.get("cultural_context"),
            )
            if any(h and needle in h.lower() for h in haystacks):
                matches.append(ContentItem.from_dict(record))
        return matches

    async def stats(self) -> ContentStats:
        """Counts and average quality over published items."""
        records = await self.store.query(
            CONTENT_COLLECTION, status=ContentStatus.PUBLISHED.value
        )
        stats = ContentStats(total=len(records))
        for record in records:
            language = record["language"]
            content_type = record.get("content_type", "text")
            stats.by_language[language] = stats.by_language.get(language, 0) + 1
            stats.by_type[content_type] = stats.by_type.get(content_type, 0) + 1
        if records:
            stats.avg_quality = sum(r.get("quality_score", 0) for r in records) / len(records)
        return stats

    async def list_activities(self, user_id: str, limit: Optional[int] = None) -> list[dict[str, Any]]:
        """Activity records for a user, newest first."""
        return await self.store.query(
            ACTIVITY_COLLECTION, limit=limit, newest_first=True, user_id=user_id
        )
