"""Content quality scoring through a Gemini-style generateContent API.

Analysis never blocks or fails content creation: without an API key, or on
any provider or parsing failure, the analyzer returns a neutral score and no
breakdown.
"""

import json
import re
from dataclasses import dataclass
from typing import Any, Optional
import httpx
import structlog

log = structlog.get_logger()

NEUTRAL_SCORE = 5.0

_JSON_OBJECT = re.compile(r"\{[\s\S]*\}")

ANALYSIS_FIELDS = (
    "linguistic_accuracy",
    "cultural_authenticity",
    "content_richness",
    "preservation_value",
    "reasoning",
    "suggestions",
)

_RESPONSE_KEYS = {
    "linguisticAccuracy": "linguistic_accuracy",
    "culturalAuthenticity": "cultural_authenticity",
    "contentRichness": "content_richness",
    "preservationValue": "preservation_value",
    "reasoning": "reasoning",
    "suggestions": "suggestions",
}

PROMPT_TEMPLATE = """Analyze the following {language} {content_type} for quality and cultural authenticity.

Text: "{text}"
{context}
Evaluate on these criteria:
1. Linguistic accuracy and grammar (0-1)
2. Cultural authenticity and appropriateness (0-1)
3. Richness of content and detail (0-1)
4. Preservation value for AI training (0-1)

Respond in JSON format:
{{
  "linguisticAccuracy": <score>,
  "culturalAuthenticity": <score>,
  "contentRichness": <score>,
  "preservationValue": <score>,
  "overallScore": <average>,
  "reasoning": "<brief explanation>",
  "suggestions": "<improvement suggestions>"
}}"""


@dataclass
class QualityResult:
    """Quality verdict on the 0-10 content scale."""

    quality_score: float
    analysis: Optional[dict[str, Any]] = None


def to_content_scale(score: float) -> float:
    """Scores in [0, 1] are scaled onto 0-10; larger ones are clamped to 10."""
    if score <= 1:
        score *= 10
    return round(min(max(score, 0.0), 10.0), 2)


def build_prompt(
    text: str,
    language: str,
    content_type: str,
    cultural_context: Optional[str] = None,
) -> str:
    context = f"Cultural Context: {cultural_context}\n" if cultural_context else ""
    return PROMPT_TEMPLATE.format(
        language=language, content_type=content_type, text=text, context=context
    )


def parse_verdict(reply: str) -> QualityResult:
    """Extract the JSON verdict from a model reply.

    Raises:
        ValueError: If no usable JSON object with an overall score is found
    """
    match = _JSON_OBJECT.search(reply)
    if not match:
        raise ValueError("No JSON object in reply")

    verdict = json.loads(match.group(0))
    overall = verdict.get("overallScore")
    if isinstance(overall, bool) or not isinstance(overall, (int, float)):
        raise ValueError("Reply has no numeric overallScore")

    analysis = {target: verdict.get(source) for source, target in _RESPONSE_KEYS.items()}
    return QualityResult(quality_score=to_content_scale(float(overall)), analysis=analysis)


class QualityAnalyzer:
    """Scores content with a hosted LLM."""

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = "https://generativelanguage.googleapis.com/v1beta",
        model: str = "gemini-pro",
        timeout: float = 60.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.api_key = api_key
        self.base_url = base_url.rstrip("/")
        self.model = model
        self.timeout = timeout
        self._client = client

    @property
    def enabled(self) -> bool:
        return bool(self.api_key)

    async def _generate(self, prompt: str) -> str:
        url = f"{self.base_url}/models/{self.model}:generateContent"
        payload = {
            "contents": [{"parts": [{"text": prompt}]}],
            "generationConfig": {"temperature": 0.2, "maxOutputTokens": 500},
        }
        params = {"key": self.api_key}

        if self._client is not None:
            response = await self._client.post(url, json=payload, params=params)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(url, json=payload, params=params)
        response.raise_for_status()

        data = response.json()
        try:
            reply = data["candidates"][0]["content"]["parts"][0]["text"]
        except (KeyError, IndexError, TypeError) as e:
            raise ValueError(f"Unexpected reply shape from quality model: {e!r}") from e
        if not isinstance(reply, str) or not reply:
            raise ValueError("Empty reply from quality model")
        return reply

    async def analyze(
        self,
        text: str,
        language: str,
        content_type: str,
        cultural_context: Optional[str] = None,
    ) -> QualityResult:
        """Score a text sample; returns the neutral score on any failure."""
        if not self.enabled:
            log.warning("quality_analysis_disabled", reason="GEMINI_API_KEY not configured")
            return QualityResult(quality_score=NEUTRAL_SCORE)

        try:
            reply = await self._generate(build_prompt(text, language, content_type, cultural_context))
            return parse_verdict(reply)
        except (httpx.HTTPError, ValueError) as e:
            log.error("quality_analysis_failed", language=language, error=str(e))
            return QualityResult(quality_score=NEUTRAL_SCORE)
