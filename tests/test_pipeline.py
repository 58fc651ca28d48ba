"""End-to-end tests for the pipeline over a simulated chain node."""

import asyncio
import json

import aiosqlite
import httpx
import pytest

from conftest import ALICE, BOB, CAROL, DAY_START, NOW, TOKEN, FakeNode, make_gateway, make_log
from tipheat.api.rpc import ChainRPCGateway
from tipheat.errors import RateLimited, StillIndexing
from tipheat.main import ENV_OVERRIDES, TipHeatPipeline, load_config, parse_args
from tipheat.sentiment.analyzer import KeywordSentimentAnalyzer
from tipheat.storage.annotations import AnnotationStore, InMemoryAnnotations

FREE_TIER = "Under the Free tier plan, you can make eth_getLogs requests with up to a 10 block range."

LOGS = [
    make_log(ALICE, 10 * TOKEN, 900_000, "0x01"),
    make_log(ALICE, 20 * TOKEN, 900_100, "0x02"),
    make_log(BOB, 5 * TOKEN, 900_200, "0x03"),
    make_log(CAROL, 1 * TOKEN, 800_000, "0x04"),
    make_log(BOB, 2 * TOKEN, 900_300, "0x05"),
]

BLOCK_TIMES = {
    900_000: DAY_START + 10 * 3600,
    900_100: DAY_START + 10 * 3600 + 20 * 60,
    900_200: DAY_START + 11 * 3600,
    800_000: DAY_START - 3600,
}


def make_node(**kwargs) -> FakeNode:
    return FakeNode(logs=LOGS, block_times=BLOCK_TIMES, failing_blocks={900_300}, **kwargs)


def make_pipeline(config, gateway) -> TipHeatPipeline:
    return TipHeatPipeline(config, gateway, sentiment=KeywordSentimentAnalyzer())


@pytest.mark.asyncio
async def test_day_run_end_to_end(config):
    node = make_node()
    pipeline = make_pipeline(config, make_gateway(node))
    annotations = InMemoryAnnotations(
        names={ALICE: "alice"},
        messages={(ALICE, "0x01"): "awesome!"},
    )
    progress = []

    snapshot = await pipeline.run(
        "day",
        analyze=True,
        annotations=annotations,
        on_progress=lambda c, t: progress.append((c, t)),
        now=NOW,
    )

    assert not snapshot.cancelled
    assert snapshot.error is None
    assert snapshot.generation == 1
    assert [e.block_number for e in snapshot.events] == [900_200, 900_100, 900_000]
    assert snapshot.total_amount == 35 * TOKEN
    assert snapshot.unique_participants == 2
    assert [(r.address, r.total) for r in snapshot.ranking] == [(ALICE, 30 * TOKEN), (BOB, 5 * TOKEN)]
    assert snapshot.unresolved_blocks == [900_300]

    by_key = {b.key: b.amount_sum for b in snapshot.buckets}
    assert len(snapshot.buckets) == 96
    assert by_key["10:00"] == 10 * TOKEN
    assert by_key["10:15"] == 20 * TOKEN
    assert by_key["11:00"] == 5 * TOKEN

    alice, bob = snapshot.profiles
    assert (alice.address, alice.name, alice.heat_score, alice.sentiment_label) == (ALICE, "alice", 233, "positive")
    assert (bob.address, bob.name, bob.heat_score) == (BOB, BOB, 160)
    assert progress == [(1, 2), (2, 2)]

    assert node.methods().count("eth_getLogs") == 1
    assert node.methods().count("eth_getBlockByNumber") == 5


@pytest.mark.asyncio
async def test_snapshot_serializes_amounts_as_strings(config):
    pipeline = make_pipeline(config, make_gateway(make_node()))
    snapshot = await pipeline.run("day", now=NOW)

    data = snapshot.to_dict()
    json.dumps(data)
    assert data["total_amount"] == "35"
    assert data["total_amount_raw"] == str(35 * TOKEN)
    assert data["ranking"][0]["total"] == "30"
    assert data["recent"][0]["timestamp"] == "2024-05-15T11:00:00+00:00"
    assert data["profiles"] == []
    assert data["error"] is None


@pytest.mark.asyncio
async def test_cache_is_reused_across_runs(config):
    node = make_node()
    pipeline = make_pipeline(config, make_gateway(node))

    await pipeline.run("day", now=NOW)
    node.calls.clear()
    snapshot = await pipeline.run("week", now=NOW)

    # only the unresolved block is asked for again
    assert [p for m, p in node.calls if m == "eth_getBlockByNumber"] == [[hex(900_300), False]]
    assert snapshot.generation == 2
    assert [e.sender for e in snapshot.events].count(CAROL) == 1


@pytest.mark.asyncio
async def test_fetch_failure_is_reported_not_raised(config):
    primary = make_node(method_errors={"eth_getLogs": FREE_TIER})
    secondary = make_node(method_errors={"eth_getLogs": FREE_TIER})
    pipeline = make_pipeline(config, make_gateway(primary, secondary))

    snapshot = await pipeline.run("day", now=NOW)

    assert isinstance(snapshot.error, RateLimited)
    assert snapshot.events == []
    assert snapshot.buckets == []
    assert not snapshot.cancelled
    assert snapshot.to_dict()["error"]["kind"] == "RateLimited"


@pytest.mark.asyncio
async def test_secondary_rescues_run(config):
    primary = make_node(method_errors={"eth_getLogs": "log index not ready"})
    pipeline = make_pipeline(config, make_gateway(primary, make_node()))

    snapshot = await pipeline.run("day", now=NOW)

    assert snapshot.error is None
    assert snapshot.total_amount == 35 * TOKEN


@pytest.mark.asyncio
async def test_latest_block_failure_is_reported(config):
    pipeline = make_pipeline(config, make_gateway(make_node(error_message="still indexing")))

    snapshot = await pipeline.run("all", now=NOW)
    assert isinstance(snapshot.error, StillIndexing)


@pytest.mark.asyncio
async def test_new_run_supersedes_in_flight_run(config):
    node = make_node()
    release = asyncio.Event()
    waiting = 0

    async def handler(request):
        nonlocal waiting
        if json.loads(request.content)["method"] == "eth_getLogs":
            waiting += 1
            await release.wait()
        return node.handle(request)

    gateway = ChainRPCGateway(
        "https://primary.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    pipeline = make_pipeline(config, gateway)

    first = asyncio.create_task(pipeline.run("day", now=NOW))
    while waiting < 1:
        await asyncio.sleep(0)
    second = asyncio.create_task(pipeline.run("week", now=NOW))
    while waiting < 2:
        await asyncio.sleep(0)
    release.set()

    stale, fresh = await asyncio.gather(first, second)

    assert stale.cancelled
    assert stale.generation == 1
    assert stale.events == [] and stale.buckets == []
    assert not fresh.cancelled
    assert fresh.generation == 2
    assert fresh.total_amount == 36 * TOKEN


@pytest.mark.asyncio
async def test_cancel_discards_partial_results(config):
    node = make_node()
    pipeline = None

    def handler(request):
        if json.loads(request.content)["method"] == "eth_getLogs":
            pipeline.cancel()
        return node.handle(request)

    gateway = ChainRPCGateway(
        "https://primary.test",
        client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )
    pipeline = make_pipeline(config, gateway)

    snapshot = await pipeline.run("day", now=NOW)

    assert snapshot.cancelled
    assert snapshot.events == []
    assert "eth_getBlockByNumber" not in node.methods()


@pytest.mark.asyncio
async def test_invalid_period_rejected(config):
    pipeline = make_pipeline(config, make_gateway(make_node()))
    with pytest.raises(ValueError):
        await pipeline.run("year")


def test_load_config_with_env_overrides(tmp_path, monkeypatch):
    for env_name, _, _ in ENV_OVERRIDES:
        monkeypatch.delenv(env_name, raising=False)
    path = tmp_path / "config.yaml"
    path.write_text("rpc:\n  primary_url: https://a.test\nranking:\n  top_n: 3\n")
    monkeypatch.setenv("TIPHEAT_SECONDARY_RPC_URL", "https://b.test")

    config = load_config(path)

    assert config["rpc"] == {"primary_url": "https://a.test", "secondary_url": "https://b.test"}
    assert config["ranking"]["top_n"] == 3


def test_load_config_missing_file(tmp_path, monkeypatch):
    for env_name, _, _ in ENV_OVERRIDES:
        monkeypatch.delenv(env_name, raising=False)
    assert load_config(tmp_path / "absent.yaml") == {}


def test_from_config_wires_endpoints():
    pipeline = TipHeatPipeline.from_config({
        "rpc": {"primary_url": "https://a.test", "secondary_url": "https://b.test"},
    })
    assert pipeline.gateway.endpoints == ["https://a.test", "https://b.test"]
    assert pipeline.annotation_store is None
    assert pipeline.generation == 0


def test_parse_args():
    args = parse_args(["--period", "week", "--no-fill", "--analyze"])
    assert args.period == "week"
    assert args.no_fill
    assert args.analyze


@pytest.mark.asyncio
async def test_annotations_loaded_from_store(config, tmp_path):
    db_path = str(tmp_path / "annotations.db")
    async with AnnotationStore(db_path):
        pass

    async with aiosqlite.connect(db_path) as conn:
        await conn.execute(
            "INSERT INTO profiles (address, display_name) VALUES (?, ?)", (BOB, "bob")
        )
        await conn.execute(
            "INSERT INTO tip_messages (address, tx_hash, message) VALUES (?, ?, ?)",
            (BOB, "0x03", "terrible"),
        )
        await conn.commit()

    store = AnnotationStore(db_path)
    pipeline = TipHeatPipeline(
        config, make_gateway(make_node()), sentiment=KeywordSentimentAnalyzer(), annotation_store=store
    )
    async with pipeline:
        snapshot = await pipeline.run("day", analyze=True, now=NOW)

    bob = next(p for p in snapshot.profiles if p.address == BOB)
    assert bob.name == "bob"
    assert bob.message_count == 1
    assert bob.sentiment_label == "negative"
    # 0 + 10 + 35 * 3
    assert bob.heat_score == 115


@pytest.mark.asyncio
async def test_broken_annotation_store_degrades_to_no_annotations(config, tmp_path):
    db_path = str(tmp_path / "annotations.db")
    store = AnnotationStore(db_path)
    pipeline = TipHeatPipeline(
        config, make_gateway(make_node()), sentiment=KeywordSentimentAnalyzer(), annotation_store=store
    )

    async with pipeline:
        async with aiosqlite.connect(db_path) as conn:
            await conn.execute("DROP TABLE tip_messages")
            await conn.commit()
        snapshot = await pipeline.run("day", analyze=True, now=NOW)

    assert snapshot.error is None
    assert [p.address for p in snapshot.profiles] == [ALICE, BOB]
    assert all(p.message_count == 0 and p.name == p.address for p in snapshot.profiles)


@pytest.mark.asyncio
async def test_unconnected_annotation_store_degrades(config, tmp_path):
    store = AnnotationStore(str(tmp_path / "never-opened.db"))
    pipeline = TipHeatPipeline(
        config, make_gateway(make_node()), sentiment=KeywordSentimentAnalyzer(), annotation_store=store
    )

    snapshot = await pipeline.run("day", analyze=True, now=NOW)

    assert len(snapshot.profiles) == 2


@pytest.mark.asyncio
async def test_unresolved_blocks_limited_to_this_run(config):
    pipeline = make_pipeline(config, make_gateway(make_node()))
    # left over from an earlier session run over other blocks
    pipeline.cache.set(123, 0)

    snapshot = await pipeline.run("day", now=NOW)

    assert pipeline.cache.unresolved() == [123, 900_300]
    assert snapshot.unresolved_blocks == [900_300]
