"""
Hop Hint Selector module for cl-liquidity-ops

Builds routing hints for invoices issued by a node whose channels are not
(all) announced, so a payer can still find a route to us.

Privacy: a channel is only ever hinted if its counterparty also has another
public channel with us. Hinting a peer that only has private channels would
reveal a node that intends to stay unadvertised.

Selection is a two-pass greedy heuristic:
1. Channels whose remote balance can carry the whole amount on their own,
   until max_hints is reached.
2. If pass 1 under-filled, any other qualifying channel, until max_hints is
   reached or the hinted inbound bandwidth exceeds HOP_HINT_FACTOR times the
   amount (margin for hinted channels that turn out to be unusable).

Pass 2 is best-effort: per-channel lookup failures and cancellation end up
in a shorter list rather than an error.
"""

from dataclasses import dataclass
from typing import Callable, Dict, Iterable, List, Optional, Any, Set, TYPE_CHECKING

from pyln.client import Plugin

from .channels import ChannelSnapshot, RoutingPolicy, format_scid, parse_node_id
from .errors import CancelledError, UpstreamError, ValidationError
from .metrics import MetricNames

if TYPE_CHECKING:
    from .metrics import PrometheusExporter
    from .node_backend import NodeBackend


# Stop pass 2 once hinted bandwidth exceeds this multiple of the amount
HOP_HINT_FACTOR = 2

# Default cap on the number of hints in one invoice
DEFAULT_MAX_HOP_HINTS = 20


@dataclass(frozen=True)
class HopHint:
    """
    One hop of a routing hint: how to reach us from node_id over channel_id.

    Fee and time-lock values are the counterparty's forwarding policy,
    since that is the side that forwards the HTLC to us.
    """
    node_id: str
    channel_id: int
    fee_base_msat: int
    fee_proportional_millionths: int
    cltv_expiry_delta: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "short_channel_id": format_scid(self.channel_id),
            "fee_base_msat": self.fee_base_msat,
            "fee_proportional_millionths": self.fee_proportional_millionths,
            "cltv_expiry_delta": self.cltv_expiry_delta,
        }


def _discard_log(message: str, level: str = 'info') -> None:
    pass


def parse_include_nodes(raw: Any) -> Optional[Set[str]]:
    """
    Turn the include_nodes argument into a set of peer node ids.

    None means no filter. A bare string is rejected rather than being
    split into characters.

    Raises:
        ValidationError: If raw is not a list or an entry is not a node id
    """
    if raw is None:
        return None
    if not isinstance(raw, (list, tuple)):
        raise ValidationError("include_nodes must be a list of node ids")

    nodes = set()
    for node_id in raw:
        try:
            parse_node_id(node_id)
        except ValueError as e:
            raise ValidationError(f"include_nodes: {e}") from e
        nodes.add(node_id)
    return nodes


def has_other_public_channel(channels: Iterable[ChannelSnapshot],
                             channel: ChannelSnapshot) -> bool:
    """True if channel's peer has a different, public channel with us."""
    return any(
        other.peer_id == channel.peer_id
        and other.channel_id != channel.channel_id
        and not other.private
        for other in channels
    )


def remote_policy(policies: List[RoutingPolicy], peer_id: str) -> Optional[RoutingPolicy]:
    """Pick the policy of the direction that starts at peer_id."""
    for policy in policies:
        if policy.source == peer_id:
            return policy
    return None


def select_hop_hints(channels: List[ChannelSnapshot], amount_msat: int, max_hints: int,
                     include_nodes: Optional[Set[str]],
                     fetch_policies: Callable[[int], List[RoutingPolicy]],
                     log: Optional[Callable[..., None]] = None,
                     cancel=None) -> List[List[HopHint]]:
    """
    Select hop hints from an explicit channel snapshot.

    Args:
        channels: Our open channels, in the order they should be considered
        amount_msat: Invoice amount
        max_hints: Maximum number of hints to return
        include_nodes: If not None, only channels with these peers are hinted
            (used when a last hop is enforced)
        fetch_policies: channel_id -> both directions' RoutingPolicy; may raise
            UpstreamError
        log: Optional log(message, level=...) callable
        cancel: Optional threading.Event

    Returns:
        A list of hint groups; each group currently holds a single hop.

    Raises:
        UpstreamError: A policy lookup failed (or was cancelled) in pass 1
    """
    if log is None:
        log = _discard_log

    if amount_msat < 0:
        raise ValidationError("amount must not be negative")

    hop_hints: List[List[HopHint]] = []
    if max_hints <= 0:
        return hop_hints

    selected: Set[int] = set()
    total_bandwidth = 0

    def make_hint(channel: ChannelSnapshot) -> Optional[HopHint]:
        if include_nodes is not None and channel.peer_id not in include_nodes:
            return None

        if not has_other_public_channel(channels, channel):
            log(f"Skipping channel {channel.scid} due to counterparty "
                f"{channel.peer_id[:12]}... being unadvertised", level='debug')
            return None

        try:
            parse_node_id(channel.peer_id)
        except ValueError as e:
            log(f"Skipping channel {channel.scid}: {e}", level='debug')
            return None

        policy = remote_policy(fetch_policies(channel.channel_id), channel.peer_id)
        if policy is None:
            log(f"Skipping channel {channel.scid}: no routing policy from "
                f"{channel.peer_id[:12]}...", level='debug')
            return None

        return HopHint(
            node_id=channel.peer_id,
            channel_id=channel.channel_id,
            fee_base_msat=policy.fee_base_msat,
            fee_proportional_millionths=policy.fee_rate_ppm,
            cltv_expiry_delta=policy.time_lock_delta,
        )

    # Pass 1: channels that can carry the whole payment on their own.
    for channel in channels:
        if len(hop_hints) >= max_hints:
            break

        if channel.remote_balance_msat < amount_msat:
            continue

        if cancel is not None and cancel.is_set():
            raise CancelledError("select_hop_hints")

        hint = make_hint(channel)
        if hint is None:
            continue

        hop_hints.append([hint])
        selected.add(channel.channel_id)
        total_bandwidth += channel.remote_balance_msat

    if len(hop_hints) >= max_hints:
        return hop_hints

    # Pass 2: top up with smaller channels, useful to multi-part payers.
    for channel in channels:
        if (total_bandwidth > amount_msat * HOP_HINT_FACTOR
                or len(hop_hints) >= max_hints):
            break

        if channel.channel_id in selected:
            continue

        if cancel is not None and cancel.is_set():
            log(f"Hop hint selection cancelled, returning {len(hop_hints)} hints",
                level='warn')
            break

        try:
            hint = make_hint(channel)
        except UpstreamError as e:
            log(f"Skipping channel {channel.scid} as hop hint: {e}", level='warn')
            continue

        if hint is None:
            continue

        hop_hints.append([hint])
        selected.add(channel.channel_id)
        total_bandwidth += channel.remote_balance_msat

    return hop_hints


class HopHintSelector:
    """
    Selects hop hints from live channel and graph data.

    Holds no state between calls; safe to use concurrently. Each candidate
    channel costs one listchannels round trip.
    """

    def __init__(self, backend: 'NodeBackend', plugin: Plugin,
                 metrics_exporter: Optional['PrometheusExporter'] = None):
        self.backend = backend
        self.plugin = plugin
        self.metrics = metrics_exporter

    def select_hop_hints(self, amount_msat: int, max_hints: int = DEFAULT_MAX_HOP_HINTS,
                         include_nodes: Optional[Set[str]] = None,
                         cancel=None) -> List[List[HopHint]]:
        """
        Select up to max_hints hop hints for an invoice of amount_msat.

        Raises:
            UpstreamError: Listing channels or a pass 1 policy lookup failed
        """
        # TODO: cache listchannels results across calls once gossip updates can invalidate them
        channels = self.backend.list_channels(cancel)

        hop_hints = select_hop_hints(
            channels,
            amount_msat,
            max_hints,
            include_nodes,
            lambda channel_id: self.backend.get_channel_policies(channel_id, cancel),
            log=self.plugin.log,
            cancel=cancel,
        )

        self.plugin.log(
            f"Selected {len(hop_hints)} hop hints for {amount_msat} msat "
            f"from {len(channels)} channels",
            level='debug'
        )
        if self.metrics:
            self.metrics.set_gauge(MetricNames.HOP_HINTS_SELECTED, len(hop_hints))

        return hop_hints
