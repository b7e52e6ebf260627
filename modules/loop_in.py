"""
Loop in quote preparation for cl-liquidity-ops

Turns user input into a LoopInQuoteRequest, fetches a quote from the swap
server and derives the fee limits a loop in would be dispatched with.

Rules:
- An externally published HTLC and a confirmation target exclude each other.
- 'private' and explicit route hints exclude each other; with 'private' we
  generate our own hints from our channels.
- If the server could not estimate the miner fee for an HTLC we publish
  ourselves, the wallet cannot fund it and the quote is rejected.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, TYPE_CHECKING

from .channels import parse_node_id, parse_scid
from .errors import QuoteError, ValidationError
from .hop_hints import DEFAULT_MAX_HOP_HINTS, HopHint
from .swaps import LoopInQuote, LoopInQuoteRequest

if TYPE_CHECKING:
    from .hop_hints import HopHintSelector
    from .swap_server import SwapServerClient


# htlc_publish_fee reported when the miner fee could not be estimated
MINER_FEE_ESTIMATION_FAILED = -1

# Multiplier applied to the quoted HTLC publish fee to allow for fee spikes
# between quote and publication
MINER_FEE_MULTIPLIER = 3


@dataclass(frozen=True)
class InLimits:
    """Fee limits (sats) for dispatching a quoted loop in."""
    max_swap_fee: int
    max_miner_fee: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "max_swap_fee_sat": self.max_swap_fee,
            "max_miner_fee_sat": self.max_miner_fee,
        }


def parse_route_hints(raw: Any) -> List[List[HopHint]]:
    """
    Parse user-supplied route hints: a list of hint groups, each a list of hops.

    Raises:
        ValidationError: If the structure or a hop is malformed
    """
    if not isinstance(raw, list):
        raise ValidationError("route_hints must be a list of hint lists")

    hints = []
    for group in raw:
        if not isinstance(group, list) or not group:
            raise ValidationError("each route hint must be a non-empty list of hops")
        hops = []
        for hop in group:
            try:
                parse_node_id(hop["node_id"])
                hops.append(HopHint(
                    node_id=hop["node_id"],
                    channel_id=parse_scid(hop["short_channel_id"]),
                    fee_base_msat=int(hop.get("fee_base_msat", 0)),
                    fee_proportional_millionths=int(hop.get("fee_proportional_millionths", 0)),
                    cltv_expiry_delta=int(hop.get("cltv_expiry_delta", 0)),
                ))
            except (KeyError, TypeError, ValueError) as e:
                raise ValidationError(f"invalid route hint hop: {e}") from e
        hints.append(hops)
    return hints


def build_loop_in_quote_request(amount: int, selector: Optional['HopHintSelector'] = None,
                                conf_target: Optional[int] = None, external: bool = False,
                                last_hop: Optional[str] = None, private: bool = False,
                                route_hints: Optional[Any] = None,
                                cancel=None) -> LoopInQuoteRequest:
    """
    Validate loop in options and build the quote request.

    Args:
        amount: Swap amount in sats
        selector: Hop hint selector, required when private is set
        conf_target: HTLC confirmation target (0/None = server default)
        external: HTLC will be published by an external wallet
        last_hop: Hex node id the payment must arrive through
        private: Generate route hints for our private channels
        route_hints: Explicit hints (see parse_route_hints)
        cancel: Optional threading.Event

    Raises:
        ValidationError: Conflicting or malformed options
        UpstreamError: Hint generation failed
    """
    if isinstance(amount, bool) or not isinstance(amount, int) or amount <= 0:
        raise ValidationError("amount must be a positive number of sats")

    if external and conf_target:
        raise ValidationError("external and conf_target both set")

    if last_hop is not None:
        try:
            parse_node_id(last_hop)
        except ValueError as e:
            raise ValidationError(f"invalid last_hop: {e}") from e

    if private and route_hints is not None:
        raise ValidationError("private and route_hints both set")

    hints: List[List[HopHint]] = []
    if route_hints is not None:
        hints = parse_route_hints(route_hints)
    elif private:
        if selector is None:
            raise ValidationError("private requires a hop hint selector")
        include_nodes = {last_hop} if last_hop is not None else None
        hints = selector.select_hop_hints(
            amount * 1000, DEFAULT_MAX_HOP_HINTS, include_nodes, cancel=cancel
        )

    return LoopInQuoteRequest(
        amount=amount,
        conf_target=conf_target or None,
        external_htlc=external,
        last_hop=last_hop,
        private=private,
        route_hints=hints,
    )


def check_quote(quote: LoopInQuote, external: bool) -> None:
    """
    Raises:
        QuoteError: The server could not estimate the miner fee for an HTLC
            our wallet would publish
    """
    if not external and quote.htlc_publish_fee == MINER_FEE_ESTIMATION_FAILED:
        raise QuoteError(
            "miner fee estimation not possible, lightningd has insufficient "
            "funds to create a sample transaction for selected amount"
        )


def get_in_limits(quote: LoopInQuote) -> InLimits:
    """Derive dispatch limits from a quote."""
    return InLimits(
        max_swap_fee=quote.swap_fee,
        # External HTLCs may come back without an estimate
        max_miner_fee=max(0, quote.htlc_publish_fee) * MINER_FEE_MULTIPLIER,
    )


def quote_loop_in(client: 'SwapServerClient', request: LoopInQuoteRequest,
                  cancel=None) -> Dict[str, Any]:
    """
    Fetch and check a quote for request.

    Returns:
        Dict with the request, the quote and the derived limits

    Raises:
        QuoteError: See check_quote
        UpstreamError: The swap server call failed
    """
    quote = client.get_loop_in_quote(request, cancel)
    check_quote(quote, request.external_htlc)

    return {
        "request": request.to_dict(),
        "quote": quote.to_dict(),
        "limits": get_in_limits(quote).to_dict(),
    }
