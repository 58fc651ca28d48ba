"""
Pytest fixtures for tip heat tests.

Chain nodes are simulated with httpx.MockTransport so no test touches the network.
"""

from __future__ import annotations

import json
from datetime import datetime, timezone

import httpx
import pytest

from tipheat.api.rpc import ChainRPCGateway
from tipheat.chain.fetcher import TIPPED_TOPIC
from tipheat.models import TipEvent

ALICE = "0x" + "a1" * 20
BOB = "0x" + "b2" * 20
CAROL = "0x" + "c3" * 20

TOKEN = 10 ** 18

# Wednesday
NOW = datetime(2024, 5, 15, 12, 0, tzinfo=timezone.utc)
DAY_START = int(datetime(2024, 5, 15, tzinfo=timezone.utc).timestamp())


def make_log(sender: str, amount: int, block: int, tx_hash: str) -> dict:
    """Raw eth_getLogs entry for a Tipped(address,uint256) event."""
    return {
        "topics": [TIPPED_TOPIC, "0x" + "0" * 24 + sender[2:].upper()],
        "data": "0x" + format(amount, "064x"),
        "blockNumber": hex(block),
        "transactionHash": tx_hash.upper().replace("0X", "0x"),
    }


def tip(sender: str, amount: int, block: int = 1, tx: str = "", timestamp=None) -> TipEvent:
    return TipEvent(
        sender=sender,
        amount=amount,
        block_number=block,
        transaction_hash=tx or f"0x{block:064x}",
        timestamp=timestamp,
    )


class FakeNode:
    """Scriptable JSON-RPC node."""

    def __init__(
        self,
        latest: int = 1_000_000,
        logs: list[dict] | None = None,
        block_times: dict[int, int] | None = None,
        error_message: str | None = None,
        status_code: int = 200,
        failing_blocks: set[int] | frozenset = frozenset(),
        connect_error: bool = False,
        method_errors: dict[str, str] | None = None,
    ):
        self.method_errors = method_errors or {}
        self.latest = latest
        self.logs = logs or []
        self.block_times = block_times or {}
        self.error_message = error_message
        self.status_code = status_code
        self.failing_blocks = set(failing_blocks)
        self.connect_error = connect_error
        self.calls: list[tuple[str, list]] = []

    def methods(self) -> list[str]:
        return [m for m, _ in self.calls]

    def handle(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content)
        method, params = body["method"], body["params"]
        self.calls.append((method, params))

        if self.connect_error:
            raise httpx.ConnectError("connection refused", request=request)
        if self.status_code != 200:
            return httpx.Response(self.status_code, text="upstream unavailable")
        message = self.method_errors.get(method, self.error_message)
        if message:
            return self._reply(body, error={"code": -32000, "message": message})

        if method == "eth_blockNumber":
            latest = hex(self.latest) if isinstance(self.latest, int) else self.latest
            return self._reply(body, result=latest)
        if method == "eth_getLogs":
            return self._reply(body, result=self.logs)
        if method == "eth_getBlockByNumber":
            number = int(params[0], 16)
            if number in self.failing_blocks:
                return self._reply(body, error={"code": -32000, "message": "header not found"})
            ts = self.block_times.get(number, DAY_START + number)
            return self._reply(body, result={"number": params[0], "timestamp": hex(ts)})
        return self._reply(body, error={"code": -32601, "message": "method not found"})

    @staticmethod
    def _reply(body: dict, result=None, error=None) -> httpx.Response:
        payload = {"jsonrpc": "2.0", "id": body["id"]}
        if error is not None:
            payload["error"] = error
        else:
            payload["result"] = result
        return httpx.Response(200, json=payload)


def make_gateway(primary: FakeNode, secondary: FakeNode | None = None) -> ChainRPCGateway:
    nodes = {"primary.test": primary, "secondary.test": secondary}

    def handler(request: httpx.Request) -> httpx.Response:
        return nodes[request.url.host].handle(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return ChainRPCGateway(
        "https://primary.test",
        "https://secondary.test" if secondary else None,
        client=client,
    )


@pytest.fixture
def config():
    return {
        "contract": {"address": "0x" + "f" * 40, "token_decimals": 18},
        "resolver": {"batch_size": 10, "batch_delay_ms": 0},
        "aggregation": {"timezone": "UTC"},
        "ranking": {"top_n": 10},
        "heat": {"concurrency": 4, "timeout_seconds": 1.0},
        "sentiment": {"provider": "keyword"},
    }
