"""JSON-RPC gateway with primary/secondary endpoint fallback."""
from typing import Any, Optional

import httpx
import structlog

from tipheat.errors import (
    ChainRPCError,
    ProtocolError,
    RateLimited,
    StillIndexing,
    TransportError,
)

logger = structlog.get_logger()

RATE_LIMIT_MARKERS = (
    "block range",
    "rate limit",
    "too many requests",
    "limit exceeded",
    "exceeds the range",
)

INDEXING_MARKERS = (
    "indexing",
    "index not ready",
    "not yet indexed",
    "historical state",
)


def classify_error(
    message: str,
    endpoint: Optional[str] = None,
    method: Optional[str] = None,
    status_code: Optional[int] = None,
    default: type[ChainRPCError] = ProtocolError,
) -> ChainRPCError:
    """Map a node error message onto the error taxonomy."""
    text = (message or "").lower()
    if status_code == 429 or any(m in text for m in RATE_LIMIT_MARKERS):
        cls = RateLimited
    elif any(m in text for m in INDEXING_MARKERS):
        cls = StillIndexing
    else:
        cls = default
    return cls(message, endpoint=endpoint, method=method, status_code=status_code)


class ChainRPCGateway:
    """Issues JSON-RPC calls against a primary node, falling back to a secondary."""

    def __init__(
        self,
        primary_url: str,
        secondary_url: Optional[str] = None,
        timeout: float = 30.0,
        client: Optional[httpx.AsyncClient] = None,
    ):
        if not primary_url:
            raise ValueError("primary_url is required")
        self.primary_url = primary_url
        self.secondary_url = secondary_url or None
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self._request_id = 0

    async def __aenter__(self):
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.timeout)
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()

    async def aclose(self):
        if self._client and self._owns_client:
            await self._client.aclose()
            self._client = None

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            raise RuntimeError("Gateway not initialized. Use 'async with' context manager.")
        return self._client

    @property
    def endpoints(self) -> list[str]:
        return [u for u in (self.primary_url, self.secondary_url) if u]

    async def call(self, method: str, params: Optional[list] = None) -> Any:
        """Call `method` on the primary, then once on the secondary if the primary fails."""
        params = params or []
        try:
            return await self._post(self.primary_url, method, params)
        except ChainRPCError as primary_error:
            if not self.secondary_url:
                raise
            logger.warning(
                "rpc_primary_failed",
                method=method,
                kind=primary_error.kind,
                error=primary_error.message,
            )
            try:
                return await self._post(self.secondary_url, method, params)
            except ChainRPCError as secondary_error:
                logger.error(
                    "rpc_secondary_failed",
                    method=method,
                    kind=secondary_error.kind,
                    error=secondary_error.message,
                )
                if primary_error.is_classified and not secondary_error.is_classified:
                    raise primary_error from secondary_error
                raise secondary_error from primary_error

    async def _post(self, url: str, method: str, params: list) -> Any:
        self._request_id += 1
        payload = {"jsonrpc": "2.0", "id": self._request_id, "method": method, "params": params}

        try:
            response = await self.client.post(url, json=payload)
        except httpx.HTTPError as e:
            raise TransportError(
                f"{type(e).__name__}: {e}", endpoint=url, method=method
            ) from e

        if response.status_code // 100 != 2:
            raise classify_error(
                f"HTTP {response.status_code}: {response.text[:200]}",
                endpoint=url,
                method=method,
                status_code=response.status_code,
                default=TransportError,
            )

        try:
            data = response.json()
        except ValueError as e:
            raise ProtocolError(
                f"invalid JSON-RPC response: {response.text[:200]!r}",
                endpoint=url,
                method=method,
                status_code=response.status_code,
            ) from e

        if not isinstance(data, dict):
            raise ProtocolError("JSON-RPC response is not an object", endpoint=url, method=method)

        error = data.get("error")
        if error:
            message = error.get("message", "RPC error") if isinstance(error, dict) else str(error)
            raise classify_error(message, endpoint=url, method=method, status_code=response.status_code)

        if "result" not in data:
            raise ProtocolError("JSON-RPC response has no result", endpoint=url, method=method)
        return data["result"]

    async def block_number(self) -> int:
        result = await self.call("eth_blockNumber")
        try:
            return int(result, 16)
        except (TypeError, ValueError) as e:
            raise ProtocolError(f"bad block number {result!r}", method="eth_blockNumber") from e

    async def get_block(self, number: int) -> Optional[dict]:
        return await self.call("eth_getBlockByNumber", [hex(number), False])

    async def get_logs(self, log_filter: dict) -> list[dict]:
        result = await self.call("eth_getLogs", [log_filter])
        return result or []
