from __future__ import annotations


class FeedLakeError(Exception):
    """Base class for ingester errors."""


class TransportError(FeedLakeError):
    """Transport-level failure. Always answered with a session discard and reconnect."""


class ConnectError(TransportError):
    pass


class SendError(TransportError):
    pass


class ParseError(FeedLakeError):
    def __init__(self, message: str, raw: str | bytes | None = None) -> None:
        super().__init__(message)
        self.raw = raw


class FetchError(FeedLakeError):
    """REST backfill failed for a sequence range."""


class BackfillUnsupportedError(FetchError):
    """The REST API cannot serve the requested channel; retrying will not help."""


class WriteError(FeedLakeError):
    """A persistence sink rejected a message."""


class SequenceInvariantError(FeedLakeError):
    """Raised when sequence tracking state is inconsistent. This is a bug."""
