"""Tests for LLM-backed quality analysis."""

import json

import httpx
import pytest

from bhasha.analysis.quality import (
    NEUTRAL_SCORE,
    QualityAnalyzer,
    build_prompt,
    parse_verdict,
    to_content_scale,
)

VERDICT = {
    "linguisticAccuracy": 0.9,
    "culturalAuthenticity": 0.8,
    "contentRichness": 0.7,
    "preservationValue": 0.8,
    "overallScore": 0.8,
    "reasoning": "Authentic proverb",
    "suggestions": "Add the region",
}


def _gemini_reply(text):
    return httpx.Response(200, json={"candidates": [{"content": {"parts": [{"text": text}]}}]})


def _analyzer(handler, api_key="g-key"):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return QualityAnalyzer(api_key=api_key, client=client), client


class TestScale:
    """Tests for to_content_scale."""

    @pytest.mark.parametrize(
        "score,expected",
        [(0.8, 8.0), (1, 10.0), (0, 0.0), (7.5, 7.5), (12, 10.0), (-0.5, 0.0), (0.123, 1.23)],
    )
    def test_scale(self, score, expected):
        assert to_content_scale(score) == expected


class TestParseVerdict:
    """Tests for reply parsing."""

    def test_fenced_json(self):
        reply = "Here you go:\n```json\n" + json.dumps(VERDICT) + "\n```"

        result = parse_verdict(reply)

        assert result.quality_score == 8.0
        assert result.analysis["cultural_authenticity"] == 0.8
        assert result.analysis["reasoning"] == "Authentic proverb"
        assert "overallScore" not in result.analysis

    def test_no_json(self):
        with pytest.raises(ValueError):
            parse_verdict("I cannot rate this text.")

    def test_missing_overall(self):
        with pytest.raises(ValueError):
            parse_verdict('{"reasoning": "no score"}')

    def test_non_numeric_overall(self):
        with pytest.raises(ValueError):
            parse_verdict('{"overallScore": "high"}')


def test_prompt_mentions_inputs():
    prompt = build_prompt("अधजल गगरी छलकत जाए", "hindi", "proverb", "Village saying")

    assert "hindi proverb" in prompt
    assert "अधजल गगरी छलकत जाए" in prompt
    assert "Cultural Context: Village saying" in prompt
    assert "Cultural Context" not in build_prompt("x", "hindi", "text")


class TestAnalyzer:
    """Tests for QualityAnalyzer."""

    @pytest.mark.asyncio
    async def test_disabled_without_key(self):
        analyzer = QualityAnalyzer(api_key=None)

        result = await analyzer.analyze("text", "hindi", "text")

        assert analyzer.enabled is False
        assert result.quality_score == NEUTRAL_SCORE
        assert result.analysis is None

    @pytest.mark.asyncio
    async def test_success(self):
        seen = []

        def handler(request):
            seen.append(request)
            return _gemini_reply(json.dumps(VERDICT))

        analyzer, client = _analyzer(handler)
        async with client:
            result = await analyzer.analyze("अधजल गगरी छलकत जाए", "hindi", "proverb")

        assert result.quality_score == 8.0
        request = seen[0]
        assert request.url.path == "/v1beta/models/gemini-pro:generateContent"
        assert request.url.params["key"] == "g-key"
        body = json.loads(request.content)
        assert body["generationConfig"] == {"temperature": 0.2, "maxOutputTokens": 500}
        assert "अधजल" in body["contents"][0]["parts"][0]["text"]

    @pytest.mark.asyncio
    async def test_http_error_gives_neutral(self):
        analyzer, client = _analyzer(lambda request: httpx.Response(429, text="quota"))
        async with client:
            result = await analyzer.analyze("text", "hindi", "text")

        assert result.quality_score == NEUTRAL_SCORE

    @pytest.mark.asyncio
    async def test_unparseable_reply_gives_neutral(self):
        analyzer, client = _analyzer(lambda request: _gemini_reply("Looks good to me!"))
        async with client:
            result = await analyzer.analyze("text", "hindi", "text")

        assert result.quality_score == NEUTRAL_SCORE
        assert result.analysis is None

    @pytest.mark.asyncio
    async def test_empty_candidates_gives_neutral(self):
        analyzer, client = _analyzer(lambda request: httpx.Response(200, json={"candidates": []}))
        async with client:
            result = await analyzer.analyze("text", "hindi", "text")

        assert result.quality_score == NEUTRAL_SCORE

    @pytest.mark.asyncio
    async def test_network_error_gives_neutral(self):
        def handler(request):
            raise httpx.ConnectTimeout("timed out", request=request)

        analyzer, client = _analyzer(handler)
        async with client:
            result = await analyzer.analyze("text", "hindi", "text")

        assert result.quality_score == NEUTRAL_SCORE

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        "body",
        [
            ["not", "an", "object"],
            "just a string",
            {"candidates": ["no content"]},
            {"candidates": [{"content": {"parts": [{"text": 42}]}}]},
        ],
    )
    async def test_unexpected_body_shape_gives_neutral(self, body):
        analyzer, client = _analyzer(lambda request: httpx.Response(200, json=body))
        async with client:
            result = await analyzer.analyze("text", "hindi", "text")

        assert result.quality_score == NEUTRAL_SCORE
