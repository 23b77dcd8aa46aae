"""Cooperative cancellation for cache fills.

A fill is detached from the request that started it, so aborting the
request never stops it. Shutdown is the one place that does: it cancels the
fill's token, and the fetcher and committer check the token between chunks,
clean up their own partial state and raise :class:`FillCancelled`.
"""

from __future__ import annotations

import threading
from typing import Optional

from .errors import FillCancelled


class CancellationToken:
    """Thread-safe cancellation flag checked at chunk boundaries."""

    def __init__(self) -> None:
        self._event = threading.Event()
        self._reason: Optional[str] = None

    def cancel(self, reason: str = "fill cancelled") -> None:
        if not self._event.is_set():
            self._reason = reason
            self._event.set()

    def is_cancelled(self) -> bool:
        return self._event.is_set()

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FillCancelled(self._reason or "fill cancelled")
