from __future__ import annotations

from typing import Sequence, Tuple


class PriceFeedError(Exception):
    """Base class for every error raised by the price feed."""


class FetchError(PriceFeedError):
    """A single price source failed; carries which source and which phase."""

    def __init__(self, source_id: str, phase: str, message: str) -> None:
        super().__init__(f"{source_id} {phase}: {message}")
        self.source_id = source_id
        self.phase = phase
        self.message = message


class RequestBuildError(FetchError):
    pass


class NetworkError(FetchError):
    pass


class DecodeError(FetchError):
    pass


class AuthError(FetchError):
    pass


class FetchCancelled(FetchError):
    pass


class CycleError(PriceFeedError):
    """A cycle produced no record."""

    def __init__(self, message: str, failures: Sequence[FetchError] = ()) -> None:
        super().__init__(message)
        self.failures: Tuple[FetchError, ...] = tuple(failures)


class CycleCancelled(CycleError):
    pass


class TimestampParseError(CycleError):
    pass


class SinkError(PriceFeedError):
    pass


class SinkOpenError(SinkError):
    pass


class SinkWriteError(SinkError):
    pass
