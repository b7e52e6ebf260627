"""
Threshold rules for cl-liquidity-ops

A ThresholdRule describes the liquidity balance we want on one channel as
two percentages of capacity:
- minimum_incoming: share of capacity that should be inbound (remote)
- minimum_outgoing: share of capacity that should stay outbound (local)

When inbound drops below its minimum and there is outbound to spare, the
rule recommends a loop out that moves the channel towards the midpoint of
the acceptable range, so we do not unbalance it in the other direction.
"""

from dataclasses import dataclass
from typing import Dict, Optional, Any

from .channels import ChannelSnapshot, format_scid
from .errors import InvalidThresholdError
from .swaps import Restrictions


@dataclass(frozen=True)
class Balances:
    """Sat-denominated balance descriptor for a channel."""
    channel_id: int
    capacity: int
    incoming: int
    outgoing: int

    @classmethod
    def from_channel(cls, channel: ChannelSnapshot) -> 'Balances':
        return cls(
            channel_id=channel.channel_id,
            capacity=channel.capacity_msat // 1000,
            incoming=channel.remote_balance_msat // 1000,
            outgoing=channel.local_balance_msat // 1000,
        )


@dataclass(frozen=True)
class LoopOutRecommendation:
    """A recommended loop out amount (sats) for a single channel."""
    channel_id: int
    amount: int

    def __str__(self) -> str:
        return f"channel: {format_scid(self.channel_id)}, amount: {self.amount}"


@dataclass
class ThresholdRule:
    """
    Minimum incoming / outgoing liquidity percentages for a channel.

    Attributes:
        minimum_incoming: Minimum percentage of capacity that should be inbound
        minimum_outgoing: Minimum percentage of capacity that should be outbound
    """
    minimum_incoming: int = 0
    minimum_outgoing: int = 0

    def __str__(self) -> str:
        return (f"incoming threshold: {self.minimum_incoming}%, "
                f"outgoing threshold: {self.minimum_outgoing}%")

    def validate(self) -> None:
        """
        Raises:
            InvalidThresholdError: If either value is outside [0, 100] or
                the two together leave no room to balance towards
        """
        for name, value in (("incoming", self.minimum_incoming),
                            ("outgoing", self.minimum_outgoing)):
            if isinstance(value, bool) or not isinstance(value, int):
                raise InvalidThresholdError(f"{name} threshold must be an integer")
            if not 0 <= value <= 100:
                raise InvalidThresholdError(f"{name} threshold must be in [0, 100]")

        if self.minimum_incoming + self.minimum_outgoing >= 100:
            raise InvalidThresholdError(
                "sum of incoming and outgoing thresholds must be < 100"
            )

    def suggest_swap(self, balances: Balances,
                     restrictions: Restrictions) -> Optional[LoopOutRecommendation]:
        """
        Recommend a loop out for a channel, or None if no action is required.

        The amount is bounded by the server restrictions: below the minimum we
        do not recommend anything, above the maximum we clamp.
        """
        amount = calculate_swap_amount(
            target_amount=balances.incoming,
            reserve_amount=balances.outgoing,
            capacity=balances.capacity,
            target_percentage=self.minimum_incoming,
            reserve_percentage=self.minimum_outgoing,
        )

        if amount <= 0 or amount < restrictions.minimum:
            return None
        if amount > restrictions.maximum:
            amount = restrictions.maximum

        return LoopOutRecommendation(channel_id=balances.channel_id, amount=amount)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "minimum_incoming": self.minimum_incoming,
            "minimum_outgoing": self.minimum_outgoing,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ThresholdRule':
        try:
            return cls(
                minimum_incoming=int(data.get("minimum_incoming", 0)),
                minimum_outgoing=int(data.get("minimum_outgoing", 0)),
            )
        except (TypeError, ValueError) as e:
            raise InvalidThresholdError(f"invalid threshold rule: {e}") from e


def calculate_swap_amount(target_amount: int, reserve_amount: int, capacity: int,
                          target_percentage: int, reserve_percentage: int) -> int:
    """
    Calculate how much of the reserve side to shift to the target side.

    Returns 0 if the target side already meets its minimum or the reserve
    side has nothing above its own minimum to give.
    """
    minimum_target = capacity * target_percentage // 100
    minimum_reserve = capacity * reserve_percentage // 100

    if target_amount >= minimum_target:
        return 0
    if reserve_amount <= minimum_reserve:
        return 0

    # Aim for the midpoint between our minimum and maximum target values
    maximum_target = capacity - minimum_reserve
    midpoint = (minimum_target + maximum_target) // 2
    amount = midpoint - target_amount

    available_reserve = reserve_amount - minimum_reserve
    return min(amount, available_reserve)
