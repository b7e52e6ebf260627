"""
Pytest fixtures for cl-liquidity-ops tests.

Provides mock plugin, channel factory, fake node backend and database fixtures.
"""

import os
import sys
import tempfile
from typing import Dict, List

import pytest
from unittest.mock import MagicMock

# Add modules to path
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from modules.channels import ChannelSnapshot, RoutingPolicy, parse_scid
from modules.errors import UpstreamError
from modules.swaps import Restrictions


@pytest.fixture
def temp_db_path():
    """Create a temporary database file path."""
    fd, path = tempfile.mkstemp(suffix='.db')
    os.close(fd)
    yield path
    if os.path.exists(path):
        os.unlink(path)


@pytest.fixture
def mock_plugin():
    """Create a mock plugin with basic functionality."""
    plugin = MagicMock()
    plugin.log = MagicMock()
    plugin.rpc = MagicMock()
    return plugin


@pytest.fixture
def sample_peer_ids():
    """Sample peer IDs for testing."""
    return [
        "02" + "a" * 64,
        "02" + "b" * 64,
        "02" + "c" * 64,
        "03" + "d" * 64,
        "03" + "e" * 64,
    ]


def make_channel(scid: str, peer_id: str, local_sat: int = 0, remote_sat: int = 0,
                 private: bool = False) -> ChannelSnapshot:
    """Build a ChannelSnapshot from sat balances."""
    return ChannelSnapshot(
        channel_id=parse_scid(scid),
        peer_id=peer_id,
        local_balance_msat=local_sat * 1000,
        remote_balance_msat=remote_sat * 1000,
        capacity_msat=(local_sat + remote_sat) * 1000,
        private=private,
    )


@pytest.fixture
def channel_factory():
    """Factory for ChannelSnapshot objects (balances in sats)."""
    return make_channel


class FakeBackend:
    """
    In-memory NodeBackend.

    Attributes:
        channels: Returned by list_channels
        fee_estimate: Returned by estimate_fee (sat/kw)
        policies: channel_id -> list of RoutingPolicy
        failing_policies: channel ids whose policy lookup raises UpstreamError
    """

    def __init__(self):
        self.channels: List[ChannelSnapshot] = []
        self.fee_estimate = 253
        self.policies: Dict[int, List[RoutingPolicy]] = {}
        self.failing_policies = set()
        self.list_channels_error = None
        self.calls: List[str] = []

    def list_channels(self, cancel=None):
        self.calls.append("list_channels")
        if self.list_channels_error:
            raise self.list_channels_error
        return list(self.channels)

    def estimate_fee(self, conf_target, cancel=None):
        self.calls.append("estimate_fee")
        return self.fee_estimate

    def get_channel_policies(self, channel_id, cancel=None):
        self.calls.append("get_channel_policies")
        if channel_id in self.failing_policies:
            raise UpstreamError("listchannels", "no such channel")
        return self.policies.get(channel_id, [])

    def add_policy(self, channel: ChannelSnapshot, our_id: str = "03" + "f" * 64,
                   fee_base_msat: int = 1000, fee_rate_ppm: int = 100,
                   time_lock_delta: int = 40):
        """Register both directions for channel; the peer's side has the given values."""
        self.policies[channel.channel_id] = [
            RoutingPolicy(our_id, channel.peer_id, 0, 1, 18),
            RoutingPolicy(channel.peer_id, our_id, fee_base_msat, fee_rate_ppm,
                          time_lock_delta),
        ]


@pytest.fixture
def fake_backend():
    """In-memory node backend."""
    return FakeBackend()


@pytest.fixture
def restrictions():
    """Default swap server restrictions."""
    return Restrictions(minimum=10000, maximum=1000000)


class FixedClock:
    """Manually advanced clock."""

    def __init__(self, now: float = 1_700_000_000):
        self.now = now

    def __call__(self) -> float:
        return self.now


@pytest.fixture
def clock():
    """Deterministic clock for backoff windows."""
    return FixedClock()
