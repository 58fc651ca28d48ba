"""Data models for tip heat analysis."""
from dataclasses import dataclass, field
from typing import Any, Optional

from tipheat.errors import ChainRPCError
from tipheat.utils.units import DEFAULT_DECIMALS, format_units, iso_timestamp

PERIODS = ("day", "week", "month", "all")

SENTIMENT_LABELS = ("positive", "neutral", "negative")

# Inclusive lower bounds, highest first
HEAT_LEVELS = (
    (800, "frenzied"),
    (600, "high-value"),
    (400, "active"),
    (0, "light"),
)


def validate_period(period: str) -> str:
    if period not in PERIODS:
        raise ValueError(f"unknown period {period!r}, expected one of {PERIODS}")
    return period


@dataclass(frozen=True)
class TipEvent:
    """One Tipped log entry."""
    sender: str
    amount: int  # smallest token unit
    block_number: int
    transaction_hash: str
    timestamp: Optional[int] = None  # 0 = resolution failed

    @property
    def is_resolved(self) -> bool:
        return bool(self.timestamp)

    def to_dict(self, decimals: int = DEFAULT_DECIMALS) -> dict[str, Any]:
        return {
            "sender": self.sender,
            "amount": str(self.amount),
            "amount_display": format_units(self.amount, decimals),
            "block_number": self.block_number,
            "transaction_hash": self.transaction_hash,
            "timestamp": iso_timestamp(self.timestamp),
        }


@dataclass
class FetchResult:
    """Events from one log query plus the classified error when it failed."""
    events: list[TipEvent]
    error: Optional[ChainRPCError] = None
    from_block: Optional[int] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class TimeBucket:
    """Summed tip amount for one chart slot."""
    key: str
    amount_sum: int

    def to_dict(self, decimals: int = DEFAULT_DECIMALS) -> dict[str, Any]:
        return {
            "key": self.key,
            "amount": format_units(self.amount_sum, decimals),
            "amount_raw": str(self.amount_sum),
        }


@dataclass(frozen=True)
class RankedContributor:
    """Leaderboard row."""
    rank: int
    address: str
    total: int

    def to_dict(self, decimals: int = DEFAULT_DECIMALS) -> dict[str, Any]:
        return {
            "rank": self.rank,
            "address": self.address,
            "total": format_units(self.total, decimals),
            "total_raw": str(self.total),
        }


@dataclass
class SentimentResult:
    """Output of the sentiment service for a single message."""
    score: int
    label: str
    keywords: list[str] = field(default_factory=list)

    @classmethod
    def neutral(cls) -> "SentimentResult":
        return cls(score=50, label="neutral", keywords=[])


@dataclass
class UserContributionProfile:
    """Per-sender engagement profile."""
    address: str
    name: str
    total_amount: int
    tip_count: int
    message_count: int
    sentiment_score: int
    sentiment_label: str
    keywords: list[str]
    heat_score: int
    heat_level: str
    first_tip_date: str
    last_tip_date: str
    amount_rank: int = 0  # assigned once all profiles exist

    def to_dict(self, decimals: int = DEFAULT_DECIMALS) -> dict[str, Any]:
        return {
            "address": self.address,
            "name": self.name,
            "total_amount": format_units(self.total_amount, decimals),
            "total_amount_raw": str(self.total_amount),
            "amount_rank": self.amount_rank,
            "tip_count": self.tip_count,
            "message_count": self.message_count,
            "sentiment_score": self.sentiment_score,
            "sentiment_label": self.sentiment_label,
            "keywords": list(self.keywords),
            "heat_score": self.heat_score,
            "heat_level": self.heat_level,
            "first_tip_date": self.first_tip_date,
            "last_tip_date": self.last_tip_date,
        }


@dataclass
class DashboardSnapshot:
    """Everything one pipeline run produced for a period."""
    period: str
    generation: int
    events: list[TipEvent] = field(default_factory=list)
    total_amount: int = 0
    unique_participants: int = 0
    ranking: list[RankedContributor] = field(default_factory=list)
    buckets: list[TimeBucket] = field(default_factory=list)
    profiles: list[UserContributionProfile] = field(default_factory=list)
    unresolved_blocks: list[int] = field(default_factory=list)
    error: Optional[ChainRPCError] = None
    cancelled: bool = False

    def to_dict(self, decimals: int = DEFAULT_DECIMALS) -> dict[str, Any]:
        return {
            "period": self.period,
            "generation": self.generation,
            "cancelled": self.cancelled,
            "error": self.error.to_dict() if self.error else None,
            "total_amount": format_units(self.total_amount, decimals),
            "total_amount_raw": str(self.total_amount),
            "unique_participants": self.unique_participants,
            "ranking": [r.to_dict(decimals) for r in self.ranking],
            "buckets": [b.to_dict(decimals) for b in self.buckets],
            "profiles": [p.to_dict(decimals) for p in self.profiles],
            "recent": [e.to_dict(decimals) for e in self.events[:10]],
            "unresolved_blocks": list(self.unresolved_blocks),
        }
