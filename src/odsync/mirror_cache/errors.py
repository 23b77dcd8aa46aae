"""Error taxonomy for cache fills.

Every component converts its own low-level failures (``OSError``,
``httpx.HTTPError``) into one of these before they reach the coordinator.
"""

from __future__ import annotations


class MirrorCacheError(Exception):
    """Base class for cache fill failures."""

    status_code = 500


class InvalidCacheKey(MirrorCacheError):
    """Raised when a request path cannot be mapped inside the storage root."""

    status_code = 400


class UpstreamNotFound(MirrorCacheError):
    """The origin confirmed the object does not exist. Never retried."""

    status_code = 404


class UpstreamTransientError(MirrorCacheError):
    """Transport failure or unexpected origin status."""

    status_code = 502


class LengthMismatchError(UpstreamTransientError):
    """The origin sent a different number of bytes than it announced."""

    def __init__(self, expected: int, received: int) -> None:
        super().__init__(f"incomplete download: got {received} bytes, expected {expected}")
        self.expected = expected
        self.received = received


class CommitFailure(MirrorCacheError):
    """Local I/O failed while publishing an object."""

    status_code = 502


class FillCancelled(CommitFailure):
    """The fill was cancelled through its cancellation token."""


class VerifyFailure(MirrorCacheError):
    """A freshly committed object did not validate. Indicates a bug or bad hardware."""

    status_code = 500
