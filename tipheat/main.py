"""Main entry point for the tip heat pipeline."""
import argparse
import asyncio
import json
import logging
import os
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional

import aiosqlite
import structlog
import yaml
from dotenv import load_dotenv

from tipheat.analysis.aggregator import TimeBucketAggregator
from tipheat.analysis.heat import HeatScoreEngine, ProgressCallback
from tipheat.analysis.ranking import RankingEngine
from tipheat.api.rpc import ChainRPCGateway
from tipheat.cancellation import CancelToken
from tipheat.chain.fetcher import EventLogFetcher
from tipheat.chain.timestamps import BlockTimestampCache, BlockTimestampResolver
from tipheat.errors import RunCancelled
from tipheat.models import PERIODS, DashboardSnapshot, validate_period
from tipheat.sentiment.analyzer import SentimentService, build_sentiment_service
from tipheat.storage.annotations import AnnotationLookup, AnnotationStore, InMemoryAnnotations
from tipheat.utils.units import DEFAULT_DECIMALS

logger = structlog.get_logger()

ENV_OVERRIDES = (
    ("TIPHEAT_PRIMARY_RPC_URL", "rpc", "primary_url"),
    ("TIPHEAT_SECONDARY_RPC_URL", "rpc", "secondary_url"),
    ("TIPHEAT_CONTRACT_ADDRESS", "contract", "address"),
    ("TIPHEAT_ANNOTATIONS_DB", "annotations", "db_path"),
)


def configure_logging(level: str = "INFO"):
    """Configure structured logging on top of stdlib logging (stderr)."""
    logging.basicConfig(format="%(message)s", stream=sys.stderr, level=level.upper())
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.dev.ConsoleRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )


def load_config(path: Optional[Path] = None) -> dict:
    """Load configuration from YAML file, then apply environment overrides."""
    config_path = path or Path(__file__).parent.parent / "config.yaml"

    config: dict = {}
    if config_path.exists():
        with open(config_path) as f:
            config = yaml.safe_load(f) or {}
        logger.info("config_loaded", path=str(config_path))
    else:
        logger.warning("config_file_not_found", path=str(config_path))

    for env_name, section, key in ENV_OVERRIDES:
        value = os.getenv(env_name)
        if value:
            config.setdefault(section, {})[key] = value
    return config


class TipHeatPipeline:
    """Runs fetch -> resolve -> aggregate/rank/score for one period at a time."""

    def __init__(
        self,
        config: dict,
        gateway: ChainRPCGateway,
        sentiment: Optional[SentimentService] = None,
        annotation_store: Optional[AnnotationStore] = None,
    ):
        self.config = config
        self.gateway = gateway
        self.decimals = config.get("contract", {}).get("token_decimals", DEFAULT_DECIMALS)

        self.fetcher = EventLogFetcher(gateway, config)
        self.resolver = BlockTimestampResolver(gateway, config)
        self.cache = BlockTimestampCache()
        self.aggregator = TimeBucketAggregator(config)
        self.ranking = RankingEngine(config)
        self.heat = HeatScoreEngine(config)
        self.sentiment = sentiment or build_sentiment_service(config)
        self.annotation_store = annotation_store

        self._generation = 0
        self._token: Optional[CancelToken] = None

    @classmethod
    def from_config(cls, config: dict) -> "TipHeatPipeline":
        rpc = config.get("rpc", {})
        gateway = ChainRPCGateway(
            primary_url=rpc.get("primary_url", "https://rpc-amoy.polygon.technology"),
            secondary_url=rpc.get("secondary_url"),
            timeout=rpc.get("timeout_seconds", 30.0),
        )
        db_path = config.get("annotations", {}).get("db_path")
        store = AnnotationStore(db_path) if db_path else None
        return cls(config, gateway, annotation_store=store)

    async def __aenter__(self):
        await self.gateway.__aenter__()
        if self.annotation_store:
            await self.annotation_store.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.annotation_store:
            await self.annotation_store.close()
        await self.gateway.__aexit__(exc_type, exc_val, exc_tb)

    @property
    def generation(self) -> int:
        return self._generation

    def cancel(self):
        """Cancel the in-flight run, if any."""
        if self._token:
            self._token.cancel("cancelled by caller")

    async def run(
        self,
        period: str,
        fill_empty: bool = True,
        analyze: bool = False,
        annotations: Optional[AnnotationLookup] = None,
        on_progress: Optional[ProgressCallback] = None,
        now: Optional[datetime] = None,
    ) -> DashboardSnapshot:
        """One full pass for `period`. Starting a new run supersedes the previous one."""
        validate_period(period)
        self._generation += 1
        generation = self._generation
        if self._token:
            self._token.cancel("superseded")
        token = CancelToken(generation)
        self._token = token

        logger.info("run_start", period=period, generation=generation)
        try:
            snapshot = await self._run(period, fill_empty, analyze, annotations, on_progress, now, token)
        except RunCancelled as e:
            logger.info("run_cancelled", period=period, generation=generation, reason=e.message)
            return DashboardSnapshot(period=period, generation=generation, cancelled=True)

        logger.info(
            "run_complete",
            period=period,
            generation=generation,
            events=len(snapshot.events),
            error=snapshot.error.kind if snapshot.error else None,
        )
        return snapshot

    async def _run(
        self,
        period: str,
        fill_empty: bool,
        analyze: bool,
        annotations: Optional[AnnotationLookup],
        on_progress: Optional[ProgressCallback],
        now: Optional[datetime],
        token: CancelToken,
    ) -> DashboardSnapshot:
        snapshot = DashboardSnapshot(period=period, generation=token.generation)

        latest, error = await self.fetcher.latest_block(token)
        if error:
            snapshot.error = error
            return snapshot

        result = await self.fetcher.fetch_tips(period, latest, token)
        if not result.ok:
            snapshot.error = result.error
            return snapshot

        await self.resolver.resolve((e.block_number for e in result.events), self.cache, token)
        events = self.cache.apply(result.events)
        filtered = self.aggregator.filter_period(events, period, now)

        buckets = self.aggregator.aggregate(filtered, period, fill_empty, now, token)

        profiles = []
        if analyze:
            lookup = annotations
            if lookup is None and self.annotation_store:
                try:
                    lookup = await self.annotation_store.load(e.sender for e in filtered)
                except (aiosqlite.Error, RuntimeError) as e:
                    logger.warning("annotations_unavailable", error=str(e))
                    lookup = InMemoryAnnotations()
            profiles = await self.heat.compute_heat(
                filtered,
                lookup or InMemoryAnnotations(),
                self.sentiment,
                on_progress=on_progress,
                cancel=token,
            )

        token.raise_if_cancelled()
        snapshot.events = filtered
        snapshot.buckets = buckets
        snapshot.profiles = profiles
        snapshot.total_amount = self.ranking.total_amount(filtered)
        snapshot.unique_participants = self.ranking.unique_participants(filtered)
        snapshot.ranking = self.ranking.rank(filtered)
        run_blocks = {e.block_number for e in events}
        snapshot.unresolved_blocks = [bn for bn in self.cache.unresolved() if bn in run_blocks]
        return snapshot


def parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Tip leaderboard, time series and heat scores")
    parser.add_argument("--period", choices=PERIODS, default="day")
    parser.add_argument("--no-fill", action="store_true", help="Only emit buckets with activity")
    parser.add_argument("--analyze", action="store_true", help="Compute per-user heat profiles")
    parser.add_argument("--config", type=Path, default=None)
    parser.add_argument("--log-level", default=os.getenv("TIPHEAT_LOG_LEVEL", "INFO"))
    return parser.parse_args(argv)


async def main(argv: Optional[list[str]] = None) -> int:
    """Run one pipeline pass and print the snapshot as JSON."""
    load_dotenv()
    args = parse_args(argv)
    configure_logging(args.log_level)
    config = load_config(args.config)

    def progress(current: int, total: int):
        logger.info("heat_progress", current=current, total=total)

    async with TipHeatPipeline.from_config(config) as pipeline:
        snapshot = await pipeline.run(
            args.period,
            fill_empty=not args.no_fill,
            analyze=args.analyze,
            on_progress=progress,
        )

    output = snapshot.to_dict(pipeline.decimals)
    if snapshot.profiles:
        output["summary"] = HeatScoreEngine.summarize(snapshot.profiles)
    print(json.dumps(output, ensure_ascii=False, indent=2))
    return 1 if snapshot.error else 0


def cli():
    try:
        sys.exit(asyncio.run(main()))
    except KeyboardInterrupt:
        logger.info("keyboard_interrupt")
        sys.exit(130)


if __name__ == "__main__":
    cli()
