"""Retrieves Tipped event logs for a period through the RPC gateway."""
from typing import Optional

import structlog

from tipheat.api.rpc import ChainRPCGateway
from tipheat.cancellation import CancelToken, check
from tipheat.errors import ChainRPCError
from tipheat.models import FetchResult, TipEvent, validate_period

logger = structlog.get_logger()

# keccak256("Tipped(address,uint256)")
TIPPED_TOPIC = "0x905516bf815c273f240e1d48d78ea7db3f1f0d00b912fc69522caf0ea70450a2"

# Each span covers the longest calendar window of its period (24h, 7d, 31d)
# with margin at block times down to 1s. Tips outside the window are
# dropped later by the aggregator.
DEFAULT_LOOKBACK_BLOCKS = {
    "day": 120_000,
    "week": 800_000,
    "month": 3_000_000,
}
# "all" never reaches back less far than "month"
DEFAULT_MAX_SPAN_BLOCKS = 3_000_000


class EventLogFetcher:
    """Computes the block window for a period and parses the matching logs."""

    def __init__(self, gateway: ChainRPCGateway, config: dict):
        contract = config.get("contract", {})
        fetcher = config.get("fetcher", {})

        self.gateway = gateway
        self.contract_address = (contract.get("address") or "").lower()
        self.topic = (contract.get("tipped_topic") or TIPPED_TOPIC).lower()
        self.lookback_blocks = {**DEFAULT_LOOKBACK_BLOCKS, **fetcher.get("lookback_blocks", {})}
        self.max_span_blocks = fetcher.get("max_span_blocks", DEFAULT_MAX_SPAN_BLOCKS)

    def from_block(self, period: str, latest_block: int) -> int:
        """First block of the query window for `period`."""
        validate_period(period)
        span = self.max_span_blocks if period == "all" else self.lookback_blocks[period]
        return max(0, latest_block - span)

    async def latest_block(
        self, cancel: Optional[CancelToken] = None
    ) -> tuple[Optional[int], Optional[ChainRPCError]]:
        check(cancel)
        try:
            latest = await self.gateway.block_number()
        except ChainRPCError as e:
            logger.error("latest_block_failed", kind=e.kind, error=e.message)
            return None, e
        check(cancel)
        return latest, None

    async def fetch_tips(
        self, period: str, latest_block: int, cancel: Optional[CancelToken] = None
    ) -> FetchResult:
        """Fetch and parse Tipped logs. Gateway failures come back as FetchResult.error."""
        from_block = self.from_block(period, latest_block)
        log_filter = {
            "fromBlock": hex(from_block),
            "toBlock": "latest",
            "topics": [self.topic],
        }
        if self.contract_address:
            log_filter["address"] = self.contract_address

        check(cancel)
        try:
            logs = await self.gateway.get_logs(log_filter)
        except ChainRPCError as e:
            logger.error(
                "tips_fetch_failed",
                period=period,
                from_block=from_block,
                kind=e.kind,
                error=e.message,
            )
            return FetchResult(events=[], error=e, from_block=from_block)
        check(cancel)

        events = []
        for log in logs:
            event = self._parse_log(log)
            if event:
                events.append(event)

        events.sort(key=lambda e: e.transaction_hash)
        events.sort(key=lambda e: e.block_number, reverse=True)

        logger.info("tips_fetched", period=period, from_block=from_block, count=len(events))
        return FetchResult(events=events, from_block=from_block)

    def _parse_log(self, log: dict) -> Optional[TipEvent]:
        """Parse one raw log into a TipEvent, None if malformed."""
        if not isinstance(log, dict):
            logger.warning("log_parse_error", error="log entry is not an object", log=log)
            return None
        try:
            topics = log.get("topics") or []
            sender_topic = str(topics[1])
            data = log.get("data") or "0x0"
            return TipEvent(
                sender="0x" + sender_topic[-40:].lower(),
                amount=int(data, 16) if data != "0x" else 0,
                block_number=int(log["blockNumber"], 16),
                transaction_hash=(log.get("transactionHash") or "").lower(),
            )
        except (IndexError, KeyError, TypeError, ValueError) as e:
            logger.warning("log_parse_error", error=str(e), log=log)
            return None
