"""
Error taxonomy for cl-liquidity-ops

- ValidationError: malformed rule, parameter or request. Raised before any
  state is mutated.
- UpstreamError: lightningd, swap server or swap store failure. Aborts the
  current cycle; no partial result is emitted.
- CancelledError: the caller's cancellation signal fired mid-cycle.

Channels skipped for privacy reasons are NOT errors; they are logged and
skipped by the hop hint selector.
"""

from typing import Optional


class ValidationError(ValueError):
    """A rule, parameter set or request failed validation."""


class ZeroChannelIDError(ValidationError):
    """A channel rule was keyed by the zero short channel id."""

    def __init__(self):
        super().__init__("zero channel ID not allowed")


class InvalidSweepFeeRateLimitError(ValidationError):
    """Sweep fee rate limit below the minimum relay fee."""

    def __init__(self, floor_sat_per_vbyte: int):
        super().__init__(
            f"sweep fee rate limit must be > {floor_sat_per_vbyte} sat/vByte"
        )


class InvalidConfTargetError(ValidationError):
    """Sweep confirmation target below the configured minimum."""

    def __init__(self, minimum: int):
        super().__init__(f"confirmation target must be at least: {minimum}")


class InvalidThresholdError(ValidationError):
    """A threshold rule holds out-of-range percentages."""


class QuoteError(ValidationError):
    """A swap quote cannot be used as requested."""


class UpstreamError(Exception):
    """
    A backend call (lightningd RPC, swap server, swap store) failed.

    Attributes:
        source: Short name of the failing dependency (e.g. 'listpeerchannels')
    """

    def __init__(self, source: str, message: str):
        self.source = source
        super().__init__(f"{source}: {message}")


class CancelledError(UpstreamError):
    """The cycle was cancelled by the caller before it completed."""

    def __init__(self, source: Optional[str] = None):
        super().__init__(source or "cycle", "cancelled")


def check_cancelled(cancel, source: Optional[str] = None) -> None:
    """
    Raise CancelledError if the cancellation signal is set.

    Args:
        cancel: threading.Event (or anything with is_set()), or None
        source: Name of the call about to be made
    """
    if cancel is not None and cancel.is_set():
        raise CancelledError(source)
