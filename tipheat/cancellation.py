"""Cooperative cancellation for pipeline runs."""
import asyncio
from typing import Optional

from tipheat.errors import RunCancelled


class CancelToken:
    """Flag shared by the stages of one run, checked between units of work."""

    def __init__(self, generation: int = 0):
        self.generation = generation
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled"):
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self):
        if self._event.is_set():
            raise RunCancelled(
                f"run {self.generation} {self.reason}",
                {"generation": self.generation},
            )


def check(token: Optional[CancelToken]):
    """raise_if_cancelled for an optional token."""
    if token is not None:
        token.raise_if_cancelled()
