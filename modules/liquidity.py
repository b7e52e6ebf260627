"""
Liquidity Manager module for cl-liquidity-ops

Monitors our channel balances against per-channel threshold rules and
suggests loop out swaps that bring channels back into their desired range.

Swap suggestions are limited to channels that are not currently being used
for a pending swap. If an unrestricted swap is in flight (a loop out with no
outgoing channel set, or a loop in with no last hop), no swaps are suggested
at all, because such a swap shifts balances on channels we cannot predict.

Fee restrictions keep suggestions economical:
- Sweep Fee Rate Limit: the maximum sat/kw fee estimate for our sweep to
  confirm within the configured number of blocks. Above it we suggest nothing.

Thread Safety:
    A single lock guards the parameters. It is held for the whole of a
    suggestion cycle, including the blocking RPC calls, so every cycle sees
    one consistent parameter set and concurrent get/set calls wait for it.
"""

import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Any, TYPE_CHECKING

from pyln.client import Plugin

from .channels import ChannelSnapshot, format_scid, parse_scid
from .errors import (
    InvalidConfTargetError,
    InvalidSweepFeeRateLimitError,
    ValidationError,
    ZeroChannelIDError,
    check_cancelled,
)
from .metrics import MetricNames
from .swaps import LoopInSwap, LoopOutRequest, LoopOutSwap, Restrictions, SwapState, SwapStateType
from .threshold_rule import Balances, LoopOutRecommendation, ThresholdRule

if TYPE_CHECKING:
    from .metrics import PrometheusExporter
    from .node_backend import NodeBackend


# =============================================================================
# DEFAULTS
# =============================================================================

# Time we back off from a channel after it was part of a swap that failed
# to route off-chain (seconds)
DEFAULT_FAILURE_BACKOFF = 24 * 60 * 60

# Base used to express fees as parts per million
FEE_BASE = 1_000_000

# Swap fee limit, 0.5% of swap volume
DEFAULT_SWAP_FEE_PPM = 5000

# Routing fee limit for the swap invoice, 1% of swap volume
DEFAULT_ROUTING_FEE_PPM = 10000

# Routing fee limit for the prepay invoice, 0.5% of prepay volume
DEFAULT_PREPAY_ROUTING_FEE_PPM = 5000

# Miner fee limit per swap (sats)
DEFAULT_MAXIMUM_MINER_FEE = 15000

# Prepay invoice limit (sats)
DEFAULT_MAXIMUM_PREPAY = 30000

# Sweep fee estimate limit, 750 sat/kw = 3 sat/vByte
DEFAULT_SWEEP_FEE_RATE_LIMIT = 750

# Blocks we aim to confirm our sweep in
DEFAULT_SWEEP_CONF_TARGET = 100

# Minimum relay fee rate (sat/kw); a sweep fee limit below this could never confirm
FEE_PER_KW_FLOOR = 253


def sat_per_kw_to_sat_per_vbyte(sat_per_kw: int) -> int:
    """Convert a sat/kw fee rate to whole sat/vByte."""
    return sat_per_kw * 4 // 1000


def ppm_to_sat(amount: int, ppm: int) -> int:
    """Return the share of amount that ppm parts per million represents."""
    return amount * ppm // FEE_BASE


# =============================================================================
# PARAMETERS
# =============================================================================

@dataclass
class Parameters:
    """
    User-provided parameters that guide how we assess liquidity.

    Attributes:
        failure_backoff: Seconds that must pass after a channel was part of a
            swap that failed off-chain before we suggest using it again
        sweep_fee_rate_limit: Highest sweep fee estimate (sat/kw) at which we
            still suggest swaps
        sweep_conf_target: Blocks we aim to confirm our sweep transaction in
        channel_rules: Integer short channel id -> ThresholdRule
    """
    failure_backoff: int = DEFAULT_FAILURE_BACKOFF
    sweep_fee_rate_limit: int = DEFAULT_SWEEP_FEE_RATE_LIMIT
    sweep_conf_target: int = DEFAULT_SWEEP_CONF_TARGET
    channel_rules: Dict[int, ThresholdRule] = field(default_factory=dict)

    def __str__(self) -> str:
        rules = ",".join(
            f"{format_scid(channel)}: {rule}"
            for channel, rule in self.channel_rules.items()
        )
        return (f"channel rules: {rules}, failure backoff: {self.failure_backoff}s, "
                f"sweep fee rate limit: {self.sweep_fee_rate_limit} sat/kw, "
                f"sweep conf target: {self.sweep_conf_target}")

    def validate(self, min_confs: int) -> None:
        """
        Check that the parameter set is usable.

        Args:
            min_confs: Minimum confirmation target we allow for sweeps

        Raises:
            ValidationError: On the first problem found
        """
        for channel, rule in self.channel_rules.items():
            if channel == 0:
                raise ZeroChannelIDError()

            try:
                rule.validate()
            except ValidationError as e:
                raise ValidationError(
                    f"channel: {format_scid(channel)} has invalid rule: {e}"
                ) from e

        if self.failure_backoff < 0:
            raise ValidationError("failure backoff must not be negative")

        if self.sweep_fee_rate_limit < FEE_PER_KW_FLOOR:
            raise InvalidSweepFeeRateLimitError(
                sat_per_kw_to_sat_per_vbyte(FEE_PER_KW_FLOOR)
            )

        if self.sweep_conf_target < min_confs:
            raise InvalidConfTargetError(min_confs)

    def clone(self) -> 'Parameters':
        """Deep copy, so neither side can mutate the other's rules."""
        return Parameters(
            failure_backoff=self.failure_backoff,
            sweep_fee_rate_limit=self.sweep_fee_rate_limit,
            sweep_conf_target=self.sweep_conf_target,
            channel_rules={
                channel: ThresholdRule(rule.minimum_incoming, rule.minimum_outgoing)
                for channel, rule in self.channel_rules.items()
            },
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_backoff_sec": self.failure_backoff,
            "sweep_fee_rate_limit_sat_per_kw": self.sweep_fee_rate_limit,
            "sweep_conf_target": self.sweep_conf_target,
            "channel_rules": {
                format_scid(channel): rule.to_dict()
                for channel, rule in self.channel_rules.items()
            },
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any],
                  base: Optional['Parameters'] = None) -> 'Parameters':
        """
        Build parameters from a JSON-style dict.

        Fields missing from data are taken from base (or the defaults).

        Raises:
            ValidationError: If a field cannot be converted
        """
        params = base.clone() if base is not None else Parameters()
        try:
            if data.get("failure_backoff_sec") is not None:
                params.failure_backoff = int(data["failure_backoff_sec"])
            if data.get("sweep_fee_rate_limit_sat_per_kw") is not None:
                params.sweep_fee_rate_limit = int(data["sweep_fee_rate_limit_sat_per_kw"])
            if data.get("sweep_conf_target") is not None:
                params.sweep_conf_target = int(data["sweep_conf_target"])
            if data.get("channel_rules") is not None:
                params.channel_rules = {
                    parse_scid(scid): ThresholdRule.from_dict(rule)
                    for scid, rule in data["channel_rules"].items()
                }
        except ValidationError:
            raise
        except (TypeError, ValueError, AttributeError) as e:
            raise ValidationError(f"invalid parameters: {e}") from e
        return params


# =============================================================================
# MANAGER
# =============================================================================

@dataclass
class ManagerConfig:
    """
    External functionality the liquidity manager needs.

    Attributes:
        backend: Node access (list_channels, estimate_fee)
        loop_out_restrictions: Returns the server's current loop out Restrictions;
            called with the cancellation signal
        list_loop_out: Returns all stored loop out swaps
        list_loop_in: Returns all stored loop in swaps
        clock: Returns the current unix time; injectable for tests
        minimum_confirmations: Lowest sweep confirmation target we accept
    """
    backend: 'NodeBackend'
    loop_out_restrictions: Callable[..., Restrictions]
    list_loop_out: Callable[[], List[LoopOutSwap]]
    list_loop_in: Callable[[], List[LoopInSwap]]
    clock: Callable[[], float] = time.time
    minimum_confirmations: int = 2


class Manager:
    """
    Holds the desired liquidity rules for our channels and turns them into
    loop out suggestions.

    The instance is owned by the plugin and passed explicitly to callers.
    """

    def __init__(self, cfg: ManagerConfig, plugin: Plugin,
                 metrics_exporter: Optional['PrometheusExporter'] = None):
        """
        Args:
            cfg: External dependencies
            plugin: Reference to the pyln Plugin for logging
            metrics_exporter: Optional Prometheus exporter
        """
        self.cfg = cfg
        self.plugin = plugin
        self.metrics = metrics_exporter

        self._params = Parameters()
        self._params_lock = threading.Lock()

    def get_parameters(self) -> Parameters:
        """Return a copy of our current parameters."""
        with self._params_lock:
            return self._params.clone()

    def set_parameters(self, params: Parameters) -> None:
        """
        Replace our parameters if the new set is valid.

        Raises:
            ValidationError: Nothing is changed
        """
        # Validate our own copy so the caller cannot change it after the check
        candidate = params.clone()
        candidate.validate(self.cfg.minimum_confirmations)

        with self._params_lock:
            self._params = candidate

        self.plugin.log(f"Liquidity parameters updated: {candidate}", level='info')

    def suggest_swaps(self, cancel=None) -> List[LoopOutRequest]:
        """
        Suggest loop out swaps for channels whose rules are not met.

        Args:
            cancel: Optional threading.Event; if it is set mid-cycle the cycle
                fails with CancelledError

        Returns:
            One request per recommendation, in channel listing order. Empty if
            no rules are set or the sweep fee estimate is above our limit.

        Raises:
            UpstreamError: Any backend call failed; no partial list is returned
        """
        with self._params_lock:
            params = self._params

            # No rules, no need to bother lightningd or the server.
            if not params.channel_rules:
                return []

            # If sweeping within our target is currently above our fee limit,
            # any swap we suggest now would be uneconomical to complete.
            estimate = self.cfg.backend.estimate_fee(params.sweep_conf_target, cancel)
            self._set_gauge(MetricNames.SWEEP_FEE_ESTIMATE, estimate)

            if estimate > params.sweep_fee_rate_limit:
                self.plugin.log(
                    f"Current fee estimate to sweep within {params.sweep_conf_target} "
                    f"blocks: {sat_per_kw_to_sat_per_vbyte(estimate)} sat/vByte exceeds "
                    f"limit of {sat_per_kw_to_sat_per_vbyte(params.sweep_fee_rate_limit)} "
                    f"sat/vByte",
                    level='debug'
                )
                self._set_gauge(MetricNames.SWAP_SUGGESTIONS, 0)
                return []

            restrictions = self.cfg.loop_out_restrictions(cancel)

            # These listings may race with manually initiated swaps.
            check_cancelled(cancel, "list_loop_out")
            loop_out = self.cfg.list_loop_out()
            check_cancelled(cancel, "list_loop_in")
            loop_in = self.cfg.list_loop_in()

            eligible = self.get_eligible_channels(params, loop_out, loop_in, cancel)

            suggestions = []
            for channel in eligible:
                rule = params.channel_rules.get(channel.channel_id)
                if rule is None:
                    continue

                recommendation = rule.suggest_swap(
                    Balances.from_channel(channel), restrictions
                )

                # No action required for this channel
                if recommendation is None:
                    continue

                self.plugin.log(f"Swap suggestion: {recommendation}", level='debug')
                suggestions.append(self._make_loop_out_request(recommendation, params))

            self.plugin.log(
                f"Liquidity cycle: {len(eligible)} eligible channels, "
                f"{len(suggestions)} swap suggestions",
                level='info'
            )
            self._set_gauge(MetricNames.ELIGIBLE_CHANNELS, len(eligible))
            self._set_gauge(MetricNames.SWAP_SUGGESTIONS, len(suggestions))
            self._set_gauge(MetricNames.LAST_RUN_TIMESTAMP, int(self.cfg.clock()))

            return suggestions

    def get_eligible_channels(self, params: Parameters, loop_out: List[LoopOutSwap],
                              loop_in: List[LoopInSwap], cancel=None) -> List[ChannelSnapshot]:
        """
        Return the channels that are not currently used by a swap.

        If an unrestricted swap is pending we return no channels at all,
        because we cannot know which balances it will move.
        """
        existing_out = set()
        existing_in = set()
        failed_out: Dict[int, float] = {}

        # Any channel in a swap that failed off-chain after this point is
        # still backing off.
        failure_cutoff = self.cfg.clock() - params.failure_backoff

        for out in loop_out:
            state = out.state
            chan_set = out.outgoing_chan_set

            # Off-chain payment failures back off every channel in the set,
            # even though not all of them were necessarily used. Channels that
            # cannot route a swap would otherwise stay unbalanced and be
            # suggested again and again.
            if state == SwapState.FAIL_OFFCHAIN_PAYMENTS and out.last_update > failure_cutoff:
                for channel_id in chan_set:
                    failed_out[channel_id] = out.last_update

            # Completed swaps cannot affect our balances. Temporarily failed
            # swaps count as pending: they may be re-dispatched on restart.
            if state.type != SwapStateType.PENDING:
                continue

            if not chan_set:
                self.plugin.log(
                    f"Ongoing unrestricted loop out: {out.swap_hash}, "
                    f"no suggestions at present",
                    level='debug'
                )
                return []

            existing_out.update(chan_set)

        for swap in loop_in:
            if swap.state.type != SwapStateType.PENDING:
                continue

            if swap.last_hop is None:
                self.plugin.log(
                    f"Ongoing unrestricted loop in: {swap.swap_hash}, "
                    f"no suggestions at present",
                    level='debug'
                )
                return []

            existing_in.add(swap.last_hop)

        channels = self.cfg.backend.list_channels(cancel)

        eligible = []
        for channel in channels:
            scid = channel.scid

            if channel.channel_id in failed_out:
                self.plugin.log(
                    f"Channel {scid} not eligible for suggestions, was part of "
                    f"a failed swap at: {failed_out[channel.channel_id]}",
                    level='debug'
                )
                continue

            if channel.channel_id in existing_out:
                self.plugin.log(
                    f"Channel {scid} not eligible for suggestions, ongoing loop "
                    f"out utilizing channel",
                    level='debug'
                )
                continue

            if channel.peer_id in existing_in:
                self.plugin.log(
                    f"Channel {scid} not eligible for suggestions, ongoing loop "
                    f"in utilizing peer",
                    level='debug'
                )
                continue

            eligible.append(channel)

        return eligible

    def _make_loop_out_request(self, recommendation: LoopOutRecommendation,
                               params: Parameters) -> LoopOutRequest:
        """Create a loop out request with our default fee limits."""
        return LoopOutRequest(
            amount=recommendation.amount,
            outgoing_chan_set=[recommendation.channel_id],
            max_prepay_routing_fee=ppm_to_sat(
                DEFAULT_MAXIMUM_PREPAY, DEFAULT_PREPAY_ROUTING_FEE_PPM
            ),
            max_swap_routing_fee=ppm_to_sat(recommendation.amount, DEFAULT_ROUTING_FEE_PPM),
            max_miner_fee=DEFAULT_MAXIMUM_MINER_FEE,
            max_swap_fee=ppm_to_sat(recommendation.amount, DEFAULT_SWAP_FEE_PPM),
            max_prepay_amount=DEFAULT_MAXIMUM_PREPAY,
            sweep_conf_target=params.sweep_conf_target,
        )

    def _set_gauge(self, name: str, value: float) -> None:
        if self.metrics:
            self.metrics.set_gauge(name, value)
