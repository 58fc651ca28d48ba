"""Leaderboard and totals over a set of tips."""
from collections import defaultdict
from typing import Iterable, Optional

from tipheat.models import RankedContributor, TipEvent


class RankingEngine:
    """Ranks senders by aggregate tip amount."""

    def __init__(self, config: dict):
        ranking = config.get("ranking", {})
        self.top_n = ranking.get("top_n", 10)

    def totals_by_sender(self, events: Iterable[TipEvent]) -> dict[str, int]:
        totals: dict[str, int] = defaultdict(int)
        for event in events:
            totals[event.sender.lower()] += event.amount
        return dict(totals)

    def rank(self, events: Iterable[TipEvent], top_n: Optional[int] = None) -> list[RankedContributor]:
        """Top senders by total, ties broken by address ascending."""
        limit = self.top_n if top_n is None else top_n
        ordered = sorted(
            self.totals_by_sender(events).items(),
            key=lambda item: (-item[1], item[0]),
        )
        return [
            RankedContributor(rank=i + 1, address=address, total=total)
            for i, (address, total) in enumerate(ordered[:max(0, limit)])
        ]

    def unique_participants(self, events: Iterable[TipEvent]) -> int:
        return len({e.sender.lower() for e in events})

    def total_amount(self, events: Iterable[TipEvent]) -> int:
        return sum(e.amount for e in events)
