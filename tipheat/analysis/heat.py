"""Per-sender engagement heat scoring."""
import asyncio
import math
from collections import Counter
from typing import Any, Callable, Iterable, Optional

import structlog

from tipheat.cancellation import CancelToken, check
from tipheat.errors import RunCancelled, SentimentUnavailable
from tipheat.models import (
    HEAT_LEVELS,
    SENTIMENT_LABELS,
    SentimentResult,
    TipEvent,
    UserContributionProfile,
)
from tipheat.sentiment.analyzer import SentimentService
from tipheat.storage.annotations import AnnotationLookup
from tipheat.utils.units import DEFAULT_DECIMALS, iso_timestamp, whole_units

logger = structlog.get_logger()

AMOUNT_CAP = 400
FREQUENCY_CAP = 300
SENTIMENT_WEIGHT = 300
MAX_KEYWORDS = 5

ProgressCallback = Callable[[int, int], Any]


def heat_score(
    total_amount: int,
    tip_count: int,
    avg_sentiment: float,
    decimals: int = DEFAULT_DECIMALS,
) -> int:
    """
    Composite score in [0, 1000].

    - amount: 1 point per 10 whole tokens, capped at 400
    - frequency: 10 points per tip, capped at 300
    - sentiment: average score scaled to 0-300, rounded half up
    """
    amount_score = min(AMOUNT_CAP, max(0, whole_units(total_amount, decimals)) // 10)
    frequency_score = min(FREQUENCY_CAP, max(0, tip_count) * 10)
    sentiment = max(0.0, min(100.0, float(avg_sentiment)))
    sentiment_score = math.floor(sentiment * SENTIMENT_WEIGHT / 100 + 0.5)
    return amount_score + frequency_score + sentiment_score


def heat_level(score: int) -> str:
    for threshold, level in HEAT_LEVELS:
        if score >= threshold:
            return level
    return HEAT_LEVELS[-1][1]


class HeatScoreEngine:
    """Builds contribution profiles from tips, messages and sentiment."""

    def __init__(self, config: dict):
        contract = config.get("contract", {})
        heat = config.get("heat", {})

        self.decimals = contract.get("token_decimals", DEFAULT_DECIMALS)
        self.concurrency = max(1, heat.get("concurrency", 4))
        self.timeout = heat.get("timeout_seconds", 15.0)

    async def compute_heat(
        self,
        events: Iterable[TipEvent],
        annotations: AnnotationLookup,
        sentiment: SentimentService,
        on_progress: Optional[ProgressCallback] = None,
        cancel: Optional[CancelToken] = None,
    ) -> list[UserContributionProfile]:
        """Profiles sorted by heat score; amount_rank holds the amount ordering."""
        check(cancel)
        groups: dict[str, list[TipEvent]] = {}
        for event in events:
            groups.setdefault(event.sender.lower(), []).append(event)

        semaphore = asyncio.Semaphore(self.concurrency)
        total = len(groups)
        completed = 0

        async def build(address: str, tips: list[TipEvent]) -> UserContributionProfile:
            nonlocal completed
            check(cancel)
            messages = []
            for tip in tips:
                message = annotations.message(address, tip.transaction_hash)
                if message and message.strip():
                    messages.append(message)

            sentiments = await asyncio.gather(
                *(self._analyze(sentiment, m, semaphore, cancel) for m in messages)
            )
            profile = self._build_profile(address, tips, messages, list(sentiments), annotations)

            completed += 1
            if on_progress:
                try:
                    on_progress(completed, total)
                except Exception as e:
                    logger.warning("progress_callback_failed", error=str(e))
            return profile

        tasks = [asyncio.ensure_future(build(a, t)) for a, t in groups.items()]
        try:
            profiles = list(await asyncio.gather(*tasks))
        except RunCancelled:
            for task in tasks:
                task.cancel()
            raise
        check(cancel)

        by_amount = sorted(profiles, key=lambda p: (-p.total_amount, p.address))
        for rank, profile in enumerate(by_amount, start=1):
            profile.amount_rank = rank

        profiles.sort(key=lambda p: (-p.heat_score, p.amount_rank))
        logger.info("heat_computed", users=len(profiles))
        return profiles

    async def _analyze(
        self,
        sentiment: SentimentService,
        message: str,
        semaphore: asyncio.Semaphore,
        cancel: Optional[CancelToken] = None,
    ) -> SentimentResult:
        """One sentiment call; neutral on timeout or failure."""
        async with semaphore:
            # queued calls of a cancelled run never reach the service
            check(cancel)
            try:
                result = await asyncio.wait_for(sentiment.analyze(message), self.timeout)
                if result.label not in SENTIMENT_LABELS:
                    raise SentimentUnavailable(f"unknown label {result.label!r}")
                return SentimentResult(
                    score=max(0, min(100, int(result.score))),
                    label=result.label,
                    keywords=list(result.keywords),
                )
            except asyncio.TimeoutError:
                logger.warning("sentiment_timeout", timeout=self.timeout)
            except Exception as e:
                logger.warning("sentiment_unavailable", error=str(e))
        return SentimentResult.neutral()

    def _build_profile(
        self,
        address: str,
        tips: list[TipEvent],
        messages: list[str],
        sentiments: list[SentimentResult],
        annotations: AnnotationLookup,
    ) -> UserContributionProfile:
        total_amount = sum(t.amount for t in tips)

        if sentiments:
            avg_sentiment = sum(s.score for s in sentiments) / len(sentiments)
            label_counts = Counter(s.label for s in sentiments)
            label = max(SENTIMENT_LABELS, key=lambda lbl: label_counts[lbl])
        else:
            avg_sentiment = 50.0
            label = "neutral"

        keyword_counts = Counter(k for s in sentiments for k in s.keywords)
        keywords = [
            k for k, _ in sorted(keyword_counts.items(), key=lambda kv: -kv[1])[:MAX_KEYWORDS]
        ]

        timestamps = [t.timestamp for t in tips if t.is_resolved]
        score = heat_score(total_amount, len(tips), avg_sentiment, self.decimals)

        return UserContributionProfile(
            address=address,
            name=annotations.display_name(address) or address,
            total_amount=total_amount,
            tip_count=len(tips),
            message_count=len(messages),
            sentiment_score=math.floor(avg_sentiment + 0.5),
            sentiment_label=label,
            keywords=keywords,
            heat_score=score,
            heat_level=heat_level(score),
            first_tip_date=iso_timestamp(min(timestamps)) if timestamps else "",
            last_tip_date=iso_timestamp(max(timestamps)) if timestamps else "",
        )

    @staticmethod
    def summarize(profiles: list[UserContributionProfile]) -> dict[str, Any]:
        """Headline numbers for a set of profiles."""
        levels = Counter(p.heat_level for p in profiles)
        average = (
            math.floor(sum(p.heat_score for p in profiles) / len(profiles) + 0.5)
            if profiles else 0
        )
        return {
            "total_users": len(profiles),
            "average_heat_score": average,
            "levels": {level: levels.get(level, 0) for _, level in HEAT_LEVELS},
        }
