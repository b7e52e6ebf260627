"""
Node backend module for cl-liquidity-ops

Thin adapter over lightningd's RPC (via pyln-client) that produces the
snapshots the liquidity manager and hop hint selector consume:
- listpeerchannels -> ChannelSnapshot list (fresh every call, never cached)
- feerates         -> sweep fee estimate for a confirmation target (sat/kw)
- listchannels     -> per-direction routing policies for a channel

Every RPC failure is surfaced as UpstreamError. Every call honours the
caller's cancellation signal before touching the network.
"""

from typing import Dict, List, Any

from pyln.client import Plugin, RpcError

from .channels import ChannelSnapshot, RoutingPolicy, parse_msat, parse_scid, format_scid
from .errors import UpstreamError, check_cancelled


class NodeBackend:
    """
    Core Lightning access for channel, fee and graph data.
    """

    def __init__(self, plugin: Plugin):
        """
        Args:
            plugin: pyln Plugin (or thread-safe proxy) with .rpc and .log
        """
        self.plugin = plugin

    def list_channels(self, cancel=None) -> List[ChannelSnapshot]:
        """
        List our open channels in the order lightningd returns them.

        Only CHANNELD_NORMAL channels with a short channel id are included.
        """
        check_cancelled(cancel, "listpeerchannels")
        try:
            result = self.plugin.rpc.listpeerchannels()
        except RpcError as e:
            self.plugin.log(f"Error listing channels: {e}", level='error')
            raise UpstreamError("listpeerchannels", str(e)) from e

        channels = []
        for channel_info in result.get("channels", []):
            if channel_info.get("state") != "CHANNELD_NORMAL":
                continue

            scid = channel_info.get("short_channel_id")
            if not scid:
                continue

            try:
                channel_id = parse_scid(scid)
            except ValueError:
                self.plugin.log(f"Skipping channel with malformed scid {scid}", level='debug')
                continue

            total_msat = parse_msat(channel_info.get("total_msat"))
            local_msat = parse_msat(channel_info.get("to_us_msat"))

            channels.append(ChannelSnapshot(
                channel_id=channel_id,
                peer_id=channel_info.get("peer_id", ""),
                local_balance_msat=local_msat,
                remote_balance_msat=max(0, total_msat - local_msat),
                capacity_msat=total_msat,
                private=bool(channel_info.get("private", False)),
            ))

        return channels

    def estimate_fee(self, conf_target: int, cancel=None) -> int:
        """
        Estimate the fee rate (sat/kw) needed to confirm within conf_target blocks.

        Uses the estimate for the largest block count that does not exceed the
        target. If every estimate is slower than the target, the fastest one is used.
        """
        check_cancelled(cancel, "feerates")
        try:
            feerates = self.plugin.rpc.feerates("perkw")
        except RpcError as e:
            self.plugin.log(f"Error fetching feerates: {e}", level='error')
            raise UpstreamError("feerates", str(e)) from e

        estimates = feerates.get("perkw", {}).get("estimates", [])
        if not estimates:
            raise UpstreamError("feerates", "no fee estimates available")

        estimates = sorted(estimates, key=lambda e: e.get("blockcount", 0))
        chosen = estimates[0]
        for estimate in estimates:
            if estimate.get("blockcount", 0) <= conf_target:
                chosen = estimate

        feerate = chosen.get("smoothed_feerate", chosen.get("feerate"))
        if feerate is None:
            raise UpstreamError(
                "feerates", f"estimate for {chosen.get('blockcount')} blocks has no feerate"
            )
        return int(feerate)

    def get_channel_policies(self, channel_id: int, cancel=None) -> List[RoutingPolicy]:
        """
        Fetch the gossip policies of both directions of a channel.

        Returns an empty list if lightningd has no gossip for the channel.
        """
        check_cancelled(cancel, "listchannels")
        scid = format_scid(channel_id)
        try:
            result = self.plugin.rpc.listchannels(short_channel_id=scid)
        except RpcError as e:
            raise UpstreamError("listchannels", f"{scid}: {e}") from e

        return [self._to_policy(half) for half in result.get("channels", [])]

    @staticmethod
    def _to_policy(half: Dict[str, Any]) -> RoutingPolicy:
        return RoutingPolicy(
            source=half.get("source", ""),
            destination=half.get("destination", ""),
            fee_base_msat=int(half.get("base_fee_millisatoshi", 0)),
            fee_rate_ppm=int(half.get("fee_per_millionth", 0)),
            time_lock_delta=int(half.get("delay", 0)),
        )
