"""Sentiment scoring for tip messages."""
import json
import os
import re
from typing import Optional, Protocol

import httpx
import structlog

from tipheat.models import SENTIMENT_LABELS, SentimentResult

logger = structlog.get_logger()

OPENAI_API_URL = "https://api.openai.com/v1/chat/completions"

POSITIVE_WORDS = (
    "最高", "感動", "ありがとう", "素晴らしい", "良い", "好き", "応援", "頑張",
    "嬉しい", "楽しい", "すごい", "感謝", "助かる", "愛", "幸せ", "おめでとう",
    "成功", "完璧", "amazing", "great", "awesome", "love", "happy", "thanks",
    "excellent", "wonderful", "fantastic", "perfect", "👍", "❤️", "🎉", "😊",
)

NEGATIVE_WORDS = (
    "悲しい", "残念", "悪い", "嫌", "つまらない", "最悪", "ひどい", "ダメ",
    "失敗", "困る", "問題", "不満", "心配", "bad", "terrible", "awful",
    "hate", "sad", "angry", "problem", "😢", "😞", "😠", "💔",
)

NEUTRAL_WORDS = ("普通", "まあまあ", "そこそこ", "ok", "okay", "fine", "normal", "🤔", "😐")

SYSTEM_PROMPT = (
    "You are a sentiment analysis expert. Analyze the user's message and reply with JSON only: "
    '{"score": 0-100 (100 most positive, 0 most negative, 50 neutral), '
    '"label": "positive" | "neutral" | "negative", '
    '"keywords": [up to 3 words that carry the sentiment]}. '
    'For an empty message reply {"score": 50, "label": "neutral", "keywords": []}.'
)


class SentimentService(Protocol):
    async def analyze(self, message: str) -> SentimentResult:
        ...


class KeywordSentimentAnalyzer:
    """Offline word-list classifier."""

    max_keywords = 3

    def __init__(
        self,
        positive: tuple[str, ...] = POSITIVE_WORDS,
        negative: tuple[str, ...] = NEGATIVE_WORDS,
        neutral: tuple[str, ...] = NEUTRAL_WORDS,
    ):
        self.positive = positive
        self.negative = negative
        self.neutral = neutral

    async def analyze(self, message: str) -> SentimentResult:
        return self.score(message)

    def score(self, message: Optional[str]) -> SentimentResult:
        if not message or not message.strip():
            return SentimentResult.neutral()

        lowered = message.lower()
        score = 50
        keywords: list[str] = []

        def hit(word: str) -> bool:
            found = word.lower() in lowered
            if found and len(keywords) < self.max_keywords:
                keywords.append(word)
            return found

        for word in self.positive:
            if hit(word):
                score += 15
        for word in self.negative:
            if hit(word):
                score -= 15
        for word in self.neutral:
            if hit(word):
                score = 50

        exclamations = len(re.findall(r"[！!]", message))
        questions = len(re.findall(r"[？?]", message))
        score += exclamations * 5
        if questions > 1:
            score -= questions * 2

        score = max(0, min(100, score))
        if score >= 65:
            label = "positive"
        elif score <= 35:
            label = "negative"
        else:
            label = "neutral"
        return SentimentResult(score=score, label=label, keywords=keywords)


class OpenAISentimentAnalyzer:
    """Chat-completion classifier that falls back to the keyword analyzer on any failure."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
        fallback: Optional[KeywordSentimentAnalyzer] = None,
    ):
        self.api_key = api_key or os.getenv("OPENAI_API_KEY")
        self.model = model
        self.timeout = timeout
        self._client = client
        self.fallback = fallback or KeywordSentimentAnalyzer()

    @property
    def is_configured(self) -> bool:
        key = self.api_key or ""
        return key.startswith("sk-") and len(key) > 20

    async def analyze(self, message: str) -> SentimentResult:
        if not message or not message.strip():
            return SentimentResult.neutral()
        if not self.is_configured:
            logger.debug("openai_not_configured")
            return self.fallback.score(message)

        try:
            content = await self._complete(message)
            return self._parse(content)
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            logger.warning("sentiment_analysis_failed", error=str(e), message_length=len(message))
            return self.fallback.score(message)

    async def _complete(self, message: str) -> str:
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": SYSTEM_PROMPT},
                {"role": "user", "content": message},
            ],
            "temperature": 0.3,
        }
        headers = {"Authorization": f"Bearer {self.api_key}"}

        if self._client is not None:
            response = await self._client.post(OPENAI_API_URL, json=payload, headers=headers)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(OPENAI_API_URL, json=payload, headers=headers)
        response.raise_for_status()
        return response.json()["choices"][0]["message"]["content"]

    def _parse(self, content: str) -> SentimentResult:
        data = json.loads(content)
        score = max(0, min(100, int(round(float(data["score"])))))
        label = data.get("label")
        if label not in SENTIMENT_LABELS:
            raise ValueError(f"unknown sentiment label {label!r}")
        keywords = [str(k) for k in data.get("keywords") or []]
        return SentimentResult(score=score, label=label, keywords=keywords)


def build_sentiment_service(config: dict) -> SentimentService:
    """Pick the sentiment backend from the `sentiment` config section."""
    sentiment = config.get("sentiment", {})
    provider = sentiment.get("provider", "keyword")

    if provider == "openai":
        analyzer = OpenAISentimentAnalyzer(
            api_key=os.getenv("OPENAI_API_KEY") or sentiment.get("api_key"),
            model=sentiment.get("model", "gpt-4o-mini"),
            timeout=sentiment.get("timeout_seconds", 30.0),
        )
        logger.info("sentiment_provider", provider="openai", configured=analyzer.is_configured)
        return analyzer

    logger.info("sentiment_provider", provider="keyword")
    return KeywordSentimentAnalyzer()
