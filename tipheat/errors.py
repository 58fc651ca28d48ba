"""Error taxonomy for chain reads, timestamp resolution and sentiment calls."""
from typing import Any, Optional


class TipHeatError(Exception):
    """Base exception for all tip heat errors."""

    def __init__(self, message: str, context: Optional[dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.context = context or {}

    @property
    def kind(self) -> str:
        return self.__class__.__name__

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging/serialization."""
        return {
            "kind": self.kind,
            "message": self.message,
            "context": self.context,
        }


class ChainRPCError(TipHeatError):
    """A JSON-RPC call against a chain node failed."""

    def __init__(
        self,
        message: str,
        endpoint: Optional[str] = None,
        method: Optional[str] = None,
        status_code: Optional[int] = None,
        context: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message, context)
        self.endpoint = endpoint
        self.method = method
        self.status_code = status_code

    @property
    def is_classified(self) -> bool:
        """True for errors the caller can react to specifically."""
        return False

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update({
            "endpoint": self.endpoint,
            "method": self.method,
            "status_code": self.status_code,
        })
        return data


class RateLimited(ChainRPCError):
    """Node refused the call because of a plan limit (block range, request rate)."""

    @property
    def is_classified(self) -> bool:
        return True


class StillIndexing(ChainRPCError):
    """Node has not finished building its historical log index."""

    @property
    def is_classified(self) -> bool:
        return True


class TransportError(ChainRPCError):
    """Network failure or non-2xx HTTP response."""


class ProtocolError(ChainRPCError):
    """JSON-RPC error envelope or a payload that could not be decoded."""


class ResolutionGap(TipHeatError):
    """Timestamp of a block could not be obtained."""

    def __init__(self, block_number: int, cause: Optional[Exception] = None):
        super().__init__(
            f"timestamp unavailable for block {block_number}",
            {"block_number": block_number, "cause": str(cause) if cause else None},
        )
        self.block_number = block_number
        self.cause = cause


class SentimentUnavailable(TipHeatError):
    """Sentiment call failed or timed out; replaced by the neutral default."""


class RunCancelled(TipHeatError):
    """A pipeline run was superseded or cancelled by its caller."""
