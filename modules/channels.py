"""
Channel snapshot types for cl-liquidity-ops

Short channel ids are carried internally as 64-bit integers
(block << 40 | tx << 16 | output) and rendered as Core Lightning's
'BLOCKxTXxOUT' form at the RPC surface.
"""

import re
from dataclasses import dataclass
from typing import Any, Dict, Union

# Regex for validating 66-character hex node ids
NODE_ID_PATTERN = re.compile(r'^(02|03)[0-9a-fA-F]{64}$')

SCID_PATTERN = re.compile(r'^(\d+)[x:](\d+)[x:](\d+)$')


def parse_scid(scid: Union[str, int]) -> int:
    """
    Convert a short channel id to its integer form.

    Accepts integers, 'BxTxO' and 'B:T:O' strings, and plain decimal strings.

    Raises:
        ValueError: If the value is not a valid short channel id
    """
    if isinstance(scid, bool):
        raise ValueError(f"Invalid short channel id: {scid!r}")
    if isinstance(scid, int):
        if scid < 0 or scid >= 1 << 64:
            raise ValueError(f"Invalid short channel id: {scid}")
        return scid

    scid = str(scid).strip()
    if scid.isdigit():
        return parse_scid(int(scid))

    match = SCID_PATTERN.match(scid)
    if not match:
        raise ValueError(f"Invalid short channel id: '{scid}'")

    block, tx, output = (int(part) for part in match.groups())
    if block >= 1 << 24 or tx >= 1 << 24 or output >= 1 << 16:
        raise ValueError(f"Invalid short channel id: '{scid}'")
    return (block << 40) | (tx << 16) | output


def format_scid(scid: int) -> str:
    """Render an integer short channel id as 'BxTxO'."""
    return f"{scid >> 40}x{(scid >> 16) & 0xFFFFFF}x{scid & 0xFFFF}"


def parse_msat(msat_val: Any) -> int:
    """
    Safely convert msat values to integers.
    Handles '1000msat' strings, raw integers, Millisatoshi objects, and plain numeric strings.
    """
    if msat_val is None:
        return 0
    if hasattr(msat_val, 'millisatoshis'):
        return int(msat_val.millisatoshis)
    if isinstance(msat_val, int):
        return msat_val
    if isinstance(msat_val, str):
        clean_val = msat_val[:-4] if msat_val.endswith('msat') else msat_val
        try:
            return int(clean_val)
        except ValueError:
            return 0
    return 0


def parse_node_id(node_id: str) -> bytes:
    """
    Decode a hex node id into its 33-byte compressed public key.

    Raises:
        ValueError: If node_id is not a valid 66-char hex key
    """
    if not isinstance(node_id, str) or not NODE_ID_PATTERN.match(node_id):
        raise ValueError(f"Invalid node id: '{str(node_id)[:20]}'")
    return bytes.fromhex(node_id)


@dataclass(frozen=True)
class ChannelSnapshot:
    """
    Live state of one of our channels, fetched fresh each cycle.

    Attributes:
        channel_id: Integer short channel id
        peer_id: Counterparty node id (hex)
        local_balance_msat: Our side of the channel
        remote_balance_msat: Counterparty's side of the channel
        capacity_msat: Total channel capacity
        private: True if the channel is unannounced
    """
    channel_id: int
    peer_id: str
    local_balance_msat: int
    remote_balance_msat: int
    capacity_msat: int
    private: bool = False

    @property
    def scid(self) -> str:
        return format_scid(self.channel_id)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "short_channel_id": self.scid,
            "peer_id": self.peer_id,
            "local_balance_msat": self.local_balance_msat,
            "remote_balance_msat": self.remote_balance_msat,
            "capacity_msat": self.capacity_msat,
            "private": self.private,
        }


@dataclass(frozen=True)
class RoutingPolicy:
    """Forwarding policy for one direction of a channel, as seen in gossip."""
    source: str
    destination: str
    fee_base_msat: int
    fee_rate_ppm: int
    time_lock_delta: int
