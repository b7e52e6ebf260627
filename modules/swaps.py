"""
Swap record and request types for cl-liquidity-ops

Swap records are produced and owned by the swap executor; the liquidity
manager only reads them to decide which channels are busy. Requests and
restrictions are the manager's output and the swap server's input.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Any

from .channels import format_scid


class SwapStateType(Enum):
    """Coarse classification of a swap state."""
    PENDING = "pending"
    SUCCESS = "success"
    FAIL = "fail"


class SwapState(Enum):
    """State of a loop out / loop in swap, as recorded by the swap executor."""
    INITIATED = "initiated"
    PREIMAGE_REVEALED = "preimage_revealed"
    HTLC_PUBLISHED = "htlc_published"
    INVOICE_SETTLED = "invoice_settled"
    FAIL_TEMPORARY = "fail_temporary"   # May be re-dispatched on restart
    SUCCESS = "success"
    FAIL_OFFCHAIN_PAYMENTS = "fail_offchain_payments"
    FAIL_TIMEOUT = "fail_timeout"
    FAIL_SWEEP_TIMEOUT = "fail_sweep_timeout"
    FAIL_INSUFFICIENT_VALUE = "fail_insufficient_value"
    FAIL_INCORRECT_HTLC_AMT = "fail_incorrect_htlc_amt"

    @property
    def type(self) -> SwapStateType:
        if self == SwapState.SUCCESS:
            return SwapStateType.SUCCESS
        if self in _PENDING_STATES:
            return SwapStateType.PENDING
        return SwapStateType.FAIL


_PENDING_STATES = frozenset({
    SwapState.INITIATED,
    SwapState.PREIMAGE_REVEALED,
    SwapState.HTLC_PUBLISHED,
    SwapState.INVOICE_SETTLED,
    SwapState.FAIL_TEMPORARY,
})


@dataclass
class LoopOutSwap:
    """
    A loop out (off-chain to on-chain) swap record.

    Attributes:
        swap_hash: Hex payment hash identifying the swap
        amount_sat: Swap amount in sats
        state: Current state
        outgoing_chan_set: Channels the swap may pay through (empty = any)
        last_update: Unix timestamp of the last state change
    """
    swap_hash: str
    amount_sat: int
    state: SwapState
    outgoing_chan_set: List[int] = field(default_factory=list)
    last_update: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_hash": self.swap_hash,
            "amount_sat": self.amount_sat,
            "state": self.state.value,
            "outgoing_chan_set": [format_scid(c) for c in self.outgoing_chan_set],
            "last_update": self.last_update,
        }


@dataclass
class LoopInSwap:
    """
    A loop in (on-chain to off-chain) swap record.

    Attributes:
        swap_hash: Hex payment hash identifying the swap
        amount_sat: Swap amount in sats
        state: Current state
        last_hop: Peer the payment must arrive through (None = any)
        last_update: Unix timestamp of the last state change
    """
    swap_hash: str
    amount_sat: int
    state: SwapState
    last_hop: Optional[str] = None
    last_update: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "swap_hash": self.swap_hash,
            "amount_sat": self.amount_sat,
            "state": self.state.value,
            "last_hop": self.last_hop,
            "last_update": self.last_update,
        }


@dataclass(frozen=True)
class Restrictions:
    """Server-side swap amount limits in sats, refreshed every cycle."""
    minimum: int
    maximum: int

    def to_dict(self) -> Dict[str, int]:
        return {"minimum_sat": self.minimum, "maximum_sat": self.maximum}


@dataclass
class LoopOutRequest:
    """A loop out swap request built from a recommendation, with fee limits in sats."""
    amount: int
    outgoing_chan_set: List[int]
    max_prepay_routing_fee: int
    max_swap_routing_fee: int
    max_miner_fee: int
    max_swap_fee: int
    max_prepay_amount: int
    sweep_conf_target: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_sat": self.amount,
            "outgoing_chan_set": [format_scid(c) for c in self.outgoing_chan_set],
            "max_prepay_routing_fee_sat": self.max_prepay_routing_fee,
            "max_swap_routing_fee_sat": self.max_swap_routing_fee,
            "max_miner_fee_sat": self.max_miner_fee,
            "max_swap_fee_sat": self.max_swap_fee,
            "max_prepay_amount_sat": self.max_prepay_amount,
            "sweep_conf_target": self.sweep_conf_target,
        }


@dataclass
class LoopInQuoteRequest:
    """
    Loop in quote request as sent to the swap server.

    Attributes:
        amount: Swap amount in sats
        conf_target: Confirmation target for the HTLC publication (None if external)
        external_htlc: The HTLC is published by an external wallet
        last_hop: Peer the off-chain payment must arrive through (None = any)
        private: Route hints were generated for our private channels
        route_hints: Hint groups, each a list of HopHint
    """
    amount: int
    conf_target: Optional[int] = None
    external_htlc: bool = False
    last_hop: Optional[str] = None
    private: bool = False
    route_hints: List[List[Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_sat": self.amount,
            "conf_target": self.conf_target,
            "external_htlc": self.external_htlc,
            "last_hop": self.last_hop,
            "private": self.private,
            "route_hints": [
                [hop.to_dict() for hop in hint] for hint in self.route_hints
            ],
        }


@dataclass
class LoopInQuote:
    """
    Swap server quote for a loop in, in sats.

    htlc_publish_fee is -1 when the server could not estimate the miner fee
    for a non-external swap (usually insufficient wallet funds).
    """
    amount: int
    swap_fee: int
    htlc_publish_fee: int
    cltv_delta: int
    conf_target: Optional[int] = None
    route_hints: List[List[Any]] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "amount_sat": self.amount,
            "swap_fee_sat": self.swap_fee,
            "htlc_publish_fee_sat": self.htlc_publish_fee,
            "cltv_delta": self.cltv_delta,
            "conf_target": self.conf_target,
            "route_hints": [
                [hop.to_dict() for hop in hint] for hint in self.route_hints
            ],
        }
