"""Block number to timestamp resolution with a session cache."""
import asyncio
from dataclasses import replace
from typing import Iterable, Optional

import structlog

from tipheat.api.rpc import ChainRPCGateway
from tipheat.cancellation import CancelToken, check
from tipheat.errors import ChainRPCError, ResolutionGap
from tipheat.models import TipEvent

logger = structlog.get_logger()

UNRESOLVED = 0


class BlockTimestampCache:
    """Append-only block -> unix seconds map shared across runs of a session."""

    def __init__(self):
        self._times: dict[int, int] = {}

    def __contains__(self, block_number: int) -> bool:
        return block_number in self._times

    def __len__(self) -> int:
        return len(self._times)

    def get(self, block_number: int) -> Optional[int]:
        return self._times.get(block_number)

    def set(self, block_number: int, timestamp: int):
        """Record a timestamp. Real values are final; the sentinel can only be upgraded."""
        current = self._times.get(block_number)
        if current is None or (current == UNRESOLVED and timestamp != UNRESOLVED):
            self._times[block_number] = timestamp
        elif timestamp not in (current, UNRESOLVED):
            raise ValueError(
                f"block {block_number} already has timestamp {current}, refusing {timestamp}"
            )

    def missing(self, block_numbers: Iterable[int]) -> list[int]:
        """Distinct blocks without a real timestamp yet, ascending."""
        return sorted({
            bn for bn in block_numbers
            if self._times.get(bn, UNRESOLVED) == UNRESOLVED
        })

    def unresolved(self) -> list[int]:
        return sorted(bn for bn, ts in self._times.items() if ts == UNRESOLVED)

    def apply(self, events: Iterable[TipEvent]) -> list[TipEvent]:
        """Copies of `events` carrying the cached timestamps."""
        return [
            replace(e, timestamp=self._times.get(e.block_number, e.timestamp))
            for e in events
        ]


class BlockTimestampResolver:
    """Resolves block timestamps in fixed-size concurrent batches."""

    def __init__(self, gateway: ChainRPCGateway, config: dict):
        resolver = config.get("resolver", {})

        self.gateway = gateway
        self.batch_size = max(1, resolver.get("batch_size", 10))
        self.batch_delay = resolver.get("batch_delay_ms", 50) / 1000
        self.last_gaps: list[ResolutionGap] = []
        self._write_lock = asyncio.Lock()

    async def resolve(
        self,
        block_numbers: Iterable[int],
        cache: BlockTimestampCache,
        cancel: Optional[CancelToken] = None,
    ) -> BlockTimestampCache:
        """Fill `cache` for every block in `block_numbers` not already known."""
        need = cache.missing(block_numbers)
        self.last_gaps = []
        if not need:
            return cache

        batches = [need[i:i + self.batch_size] for i in range(0, len(need), self.batch_size)]
        for index, batch in enumerate(batches):
            check(cancel)
            if index > 0 and self.batch_delay > 0:
                await asyncio.sleep(self.batch_delay)

            results = await asyncio.gather(*(self._lookup(bn) for bn in batch))

            async with self._write_lock:
                for block_number, timestamp in results:
                    cache.set(block_number, timestamp)

        logger.info(
            "timestamps_resolved",
            requested=len(need),
            batches=len(batches),
            gaps=len(self.last_gaps),
            cached=len(cache),
        )
        return cache

    async def _lookup(self, block_number: int) -> tuple[int, int]:
        """Timestamp for one block; UNRESOLVED on any failure."""
        try:
            block = await self.gateway.get_block(block_number)
            if not block or not block.get("timestamp"):
                raise ValueError("block has no timestamp")
            return block_number, int(block["timestamp"], 16)
        except (ChainRPCError, ValueError, TypeError, AttributeError) as e:
            gap = ResolutionGap(block_number, e)
            self.last_gaps.append(gap)
            logger.warning("timestamp_unresolved", block=block_number, error=str(e))
            return block_number, UNRESOLVED
