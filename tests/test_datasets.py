"""Tests for dataset building, normalization and export."""

import csv
import io
import json

import pytest
from structlog.testing import capture_logs

from bhasha.core.errors import AuthorizationError, NotFoundError, ValidationError
from bhasha.curation.datasets import DatasetExport, render_records, validate_split

TEXTS = [
    "पहली कहानी एक छोटे गाँव की है",
    "दूसरी कहानी नदी के किनारे की है",
    "पहली कहानी एक छोटे गाँव की है",
    "तीसरी कहानी पहाड़ों के बीच की है",
    "चौथी कहानी एक पुराने मंदिर की है",
]


async def _publish(contents, ctx, text, language="hindi", **extra):
    record = {"text": text, "language": language, "content_type": "text", **extra}
    return await contents.create_imported(ctx, record, status="published")


async def _seed(contents, ctx, count=None, **extra):
    texts = TEXTS if count is None else [f"नमूना वाक्य संख्या {i} यहाँ है" for i in range(count)]
    return [await _publish(contents, ctx, text, **extra) for text in texts]


# ============================================
# Building
# ============================================


class TestBuild:
    """Tests for DatasetBuilder.build."""

    @pytest.mark.asyncio
    async def test_exact_duplicates_removed(self, datasets, contents, ctx):
        ids = await _seed(contents, ctx)

        with capture_logs() as logs:
            dataset_id = await datasets.build(ctx, "stories", "hindi")

        dataset = await datasets.get(dataset_id)
        assert dataset.size == 4
        assert ids[2] not in dataset.entry_ids
        assert dataset.metadata.duplicates_removed == 1
        events = [e for e in logs if e["event"] == "duplicates_removed"]
        assert events[0]["removed"] == 1

    @pytest.mark.asyncio
    async def test_filters(self, datasets, contents, ctx):
        await _publish(contents, ctx, "ऊँचे गुणवत्ता वाला वाक्य यहाँ है", quality_score=9.0, region="Awadh")
        await _publish(contents, ctx, "कम गुणवत्ता वाला वाक्य यहाँ है", quality_score=2.0)
        await _publish(contents, ctx, "தமிழ் மொழியில் ஒரு வாக்கியம்", language="tamil", quality_score=9.0)
        await contents.create_imported(
            ctx, {"text": "मसौदा वाक्य जो शामिल नहीं होगा", "language": "hindi", "quality_score": 9.0}
        )

        dataset = await datasets.get(await datasets.build(ctx, "good", "hindi", min_quality=5.0))

        assert dataset.size == 1
        assert dataset.quality_score == 9.0
        assert dataset.metadata.regions == ["Awadh"]
        assert dataset.content_type == "mixed"

    @pytest.mark.asyncio
    async def test_content_type_filter(self, datasets, contents, ctx):
        await _publish(contents, ctx, "जैसी करनी वैसी भरनी होती है")
        await contents.create_imported(
            ctx,
            {"text": "अधजल गगरी छलकत जाए", "language": "hindi", "content_type": "proverb"},
            status="published",
        )

        dataset = await datasets.get(
            await datasets.build(ctx, "proverbs", "hindi", content_type="proverb")
        )

        assert dataset.size == 1
        assert dataset.content_type == "proverb"

    @pytest.mark.asyncio
    async def test_restricted_to_ids_and_any_status(self, datasets, contents, ctx):
        draft = await contents.create_imported(ctx, {"text": TEXTS[0], "language": "hindi"})
        await _publish(contents, ctx, TEXTS[1])

        dataset = await datasets.get(
            await datasets.build(ctx, "picked", "hindi", content_ids=[draft], statuses=None)
        )

        assert dataset.entry_ids == [draft]

    @pytest.mark.asyncio
    async def test_empty_selection_gives_empty_dataset(self, datasets, ctx):
        dataset = await datasets.get(await datasets.build(ctx, "empty", "bengali"))

        assert dataset.size == 0
        assert dataset.quality_score == 0.0
        assert dataset.metadata.avg_tokens == 0

    @pytest.mark.asyncio
    async def test_size_matches_entries_in_record(self, datasets, store, contents, ctx):
        await _seed(contents, ctx)

        dataset_id = await datasets.build(ctx, "stories", "hindi")
        record = await store.get(dataset_id)

        assert record["size"] == len(record["entry_ids"]) == 4

    @pytest.mark.asyncio
    async def test_build_from_items_keeps_every_member(self, datasets, contents, ctx):
        ids = [
            await _publish(contents, ctx, TEXTS[0], content_type="proverb", quality_score=6.0),
            await _publish(contents, ctx, TEXTS[1], content_type="narrative", quality_score=6.0),
            await _publish(contents, ctx, "தமிழ் மொழியில் ஒரு வாக்கியம்", language="tamil", quality_score=6.0),
            await _publish(contents, ctx, TEXTS[3], quality_score=1.0),
        ]
        items = await contents.get_many(ids)

        dataset = await datasets.get(
            await datasets.build_from_items(
                ctx, "picked", items, language="hindi", content_type="proverb", min_quality=5.0
            )
        )

        assert dataset.entry_ids == ids[:3]
        assert dataset.language == "hindi"
        assert dataset.content_type == "proverb"

    @pytest.mark.asyncio
    async def test_missing_dataset(self, datasets):
        with pytest.raises(NotFoundError):
            await datasets.get("nope")


# ============================================
# Normalization
# ============================================


class TestNormalize:
    """Tests for DatasetBuilder.normalize."""

    @pytest.mark.asyncio
    async def test_normalize_drops_deleted_and_low_quality(self, datasets, contents, ctx):
        ids = await _seed(contents, ctx, count=4, quality_score=6.0)
        await contents.store.patch(ids[1], {"quality_score": 1.0})
        dataset_id = await datasets.build(ctx, "corpus", "hindi")
        await contents.delete(ctx, ids[0])

        report = await datasets.normalize(ctx, dataset_id, min_quality=5.0)

        assert report.original_size == 4
        assert report.new_size == 2
        assert report.removed == 2
        dataset = await datasets.get(dataset_id)
        assert dataset.entry_ids == ids[2:]
        assert dataset.quality_score == 6.0

    @pytest.mark.asyncio
    async def test_normalize_requires_owner(self, datasets, contents, ctx, other_ctx):
        await _seed(contents, ctx, count=2)
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        with pytest.raises(AuthorizationError):
            await datasets.normalize(other_ctx, dataset_id)


# ============================================
# Queries and export
# ============================================


class TestQueries:
    """Tests for listing, preview and stats."""

    @pytest.mark.asyncio
    async def test_list_filters(self, datasets, contents, ctx):
        await _seed(contents, ctx, count=3, quality_score=7.0)
        small = await datasets.build(ctx, "small", "tamil")
        large = await datasets.build(ctx, "large", "hindi")

        assert [d.id for d in await datasets.list_datasets()] == [large, small]
        assert [d.id for d in await datasets.list_datasets(language="tamil")] == [small]
        assert [d.id for d in await datasets.list_datasets(min_size=1)] == [large]
        assert [d.id for d in await datasets.list_datasets(min_quality=7.0)] == [large]

    @pytest.mark.asyncio
    async def test_preview(self, datasets, contents, ctx):
        ids = await _seed(contents, ctx, count=5)
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        preview = await datasets.preview(dataset_id, limit=2)

        assert [item.id for item in preview] == ids[:2]

    @pytest.mark.asyncio
    async def test_stats(self, datasets, contents, ctx):
        await _seed(contents, ctx, count=3, category="Folk")
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        stats = await datasets.stats(dataset_id)

        assert stats["total_entries"] == 3
        assert stats["categories"] == ["Folk"]
        assert stats["token_distribution"]["distribution"]["short"] == 3


class TestExport:
    """Tests for split export."""

    @pytest.mark.asyncio
    async def test_split_sizes(self, datasets, contents, ctx):
        await _seed(contents, ctx, count=10)
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        export = await datasets.export(dataset_id, seed=7)

        assert (len(export.train), len(export.validation), len(export.test)) == (8, 1, 1)
        assert export.metadata["total_samples"] == 10
        assert export.metadata["splits"] == {"train": 8, "validation": 1, "test": 1}

    @pytest.mark.asyncio
    async def test_remainder_goes_to_test(self, datasets, contents, ctx):
        await _seed(contents, ctx, count=7)
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        export = await datasets.export(dataset_id, split=(0.5, 0.3, 0.2), seed=1)

        # floor(3.5) = 3, floor(2.1) = 2
        assert (len(export.train), len(export.validation), len(export.test)) == (3, 2, 2)

    @pytest.mark.asyncio
    async def test_seed_is_reproducible(self, datasets, contents, ctx):
        await _seed(contents, ctx, count=10)
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        first = await datasets.export(dataset_id, seed=42)
        second = await datasets.export(dataset_id, seed=42)

        assert first.train == second.train
        texts = sorted(r["text"] for r in first.train + first.validation + first.test)
        assert len(set(texts)) == 10

    @pytest.mark.asyncio
    async def test_bad_split(self, datasets, contents, ctx):
        dataset_id = await datasets.build(ctx, "corpus", "hindi")

        with pytest.raises(ValidationError):
            await datasets.export(dataset_id, split=(0.9, 0.2, 0.1))


class TestRender:
    """Tests for record serialization."""

    RECORDS = [
        {"text": "पहला", "language": "hindi", "content_type": "text", "region": None},
        {"text": "has, a comma", "language": "hindi", "content_type": "proverb", "region": "Awadh"},
    ]

    def test_jsonl(self):
        lines = render_records(self.RECORDS, "jsonl").split("\n")

        assert len(lines) == 2
        assert json.loads(lines[0])["text"] == "पहला"
        assert "पहला" in lines[0]

    def test_json(self):
        assert json.loads(render_records(self.RECORDS, "json")) == self.RECORDS

    def test_csv(self):
        rows = list(csv.DictReader(io.StringIO(render_records(self.RECORDS, "csv"))))

        assert rows[1]["text"] == "has, a comma"
        assert rows[0]["region"] == ""

    def test_unknown_format(self):
        with pytest.raises(ValidationError):
            render_records(self.RECORDS, "xml")

    def test_export_render_uses_split(self):
        export = DatasetExport(train=self.RECORDS[:1], validation=[], test=self.RECORDS[1:])

        assert json.loads(export.render("test", "json"))[0]["content_type"] == "proverb"


@pytest.mark.parametrize("split", [(0.8, 0.1), (0.8, 0.3, -0.1), (0.5, 0.2, 0.2)])
def test_invalid_splits(split):
    with pytest.raises(ValidationError):
        validate_split(split)
