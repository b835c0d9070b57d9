"""Error taxonomy shared by the ingestion core.

Per-item normalization errors are recovered inside a batch; store and
connection failures are surfaced to the caller as structured results.
"""

from __future__ import annotations


class UniboxError(Exception):
    """Base class for every error raised by the ingestion core."""


class MalformedPayload(UniboxError):
    """A single native payload is missing a required field."""

    def __init__(self, platform: str, reason: str, payload_id: str | None = None) -> None:
        self.platform = platform
        self.reason = reason
        self.payload_id = payload_id
        super().__init__(f"{platform}: malformed payload ({reason})")


class StoreUnavailable(UniboxError):
    """The persistence layer failed; the caller decides whether to retry."""


class ConnectionFailure(UniboxError):
    """A platform connection failed to authenticate or lost its transport."""

    def __init__(self, platform: str, reason: str) -> None:
        self.platform = platform
        self.reason = reason
        super().__init__(f"{platform}: {reason}")


class UnknownPlatform(UniboxError):
    """The request references a platform that is not configured."""

    def __init__(self, platform: str) -> None:
        self.platform = platform
        super().__init__(f"Unknown platform: {platform!r}")


class IllegalTransition(UniboxError):
    """A connection state change that the lifecycle does not allow."""

    def __init__(self, platform: str, current: str, target: str) -> None:
        self.platform = platform
        self.current = current
        self.target = target
        super().__init__(f"{platform}: illegal transition {current} -> {target}")
