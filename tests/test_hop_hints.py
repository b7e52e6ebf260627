"""
Tests for hop hint selection.

Tests:
- Pass 1 eligibility (remote balance covers the amount)
- Privacy (counterparty must have another public channel)
- max_hints and 2x bandwidth stop conditions
- Best-effort pass 2 (lookup failures and cancellation)
"""

import threading

import pytest

from modules.channels import parse_scid
from modules.errors import CancelledError, UpstreamError, ValidationError
from modules.hop_hints import (
    HOP_HINT_FACTOR,
    HopHintSelector,
    parse_include_nodes,
    select_hop_hints,
)
from modules.metrics import MetricNames, PrometheusExporter


def hinted_ids(hop_hints):
    return [hint[0].channel_id for hint in hop_hints]


def select(backend, amount_msat, max_hints=20, include_nodes=None, cancel=None):
    return select_hop_hints(
        backend.channels, amount_msat, max_hints, include_nodes,
        lambda channel_id: backend.get_channel_policies(channel_id),
        cancel=cancel,
    )


@pytest.fixture
def hint_setup(fake_backend, channel_factory, sample_peer_ids):
    """
    Private channels A and B to two peers that also have public channels with us.

    Remote balances: A 150 sat, B 80 sat.
    """
    peer_a, peer_b = sample_peer_ids[0], sample_peer_ids[1]
    chan_a = channel_factory("600000x1x0", peer_a, local_sat=10, remote_sat=150, private=True)
    chan_b = channel_factory("600001x1x0", peer_b, local_sat=10, remote_sat=80, private=True)
    pub_a = channel_factory("500000x1x0", peer_a, local_sat=1, remote_sat=0)
    pub_b = channel_factory("500001x1x0", peer_b, local_sat=1, remote_sat=0)

    fake_backend.channels = [chan_a, chan_b, pub_a, pub_b]
    for channel in fake_backend.channels:
        fake_backend.add_policy(channel)
    return fake_backend, chan_a, chan_b


class TestPassOne:
    """Test selection of channels that can carry the whole amount."""

    def test_only_sufficient_remote_balance(self, hint_setup):
        """For 100,000 msat only A (150,000) is pass 1 eligible, not B (80,000)."""
        backend, chan_a, chan_b = hint_setup

        hints = select(backend, 100000, max_hints=1)

        assert hinted_ids(hints) == [chan_a.channel_id]

    def test_insufficient_channel_waits_for_pass_two(self, hint_setup):
        """B is listed first but only hinted after A, once pass 1 is done."""
        backend, chan_a, chan_b = hint_setup
        backend.channels = [chan_b, chan_a] + backend.channels[2:]

        fetched = []

        def fetch(channel_id):
            fetched.append(channel_id)
            return backend.get_channel_policies(channel_id)

        hints = select_hop_hints(backend.channels, 100000, 20, None, fetch)

        assert hinted_ids(hints) == [chan_a.channel_id, chan_b.channel_id]
        assert fetched.index(chan_a.channel_id) < fetched.index(chan_b.channel_id)

    def test_hint_uses_counterparty_policy(self, hint_setup, sample_peer_ids):
        """The hint carries the peer's forwarding policy, not ours."""
        backend, chan_a, _ = hint_setup
        backend.add_policy(chan_a, fee_base_msat=1234, fee_rate_ppm=56, time_lock_delta=78)

        hop = select(backend, 100000, max_hints=1)[0][0]

        assert hop.node_id == sample_peer_ids[0]
        assert hop.fee_base_msat == 1234
        assert hop.fee_proportional_millionths == 56
        assert hop.cltv_expiry_delta == 78

    def test_exact_balance_is_sufficient(self, hint_setup):
        """A remote balance equal to the amount qualifies."""
        backend, chan_a, _ = hint_setup
        assert hinted_ids(select(backend, 150000, max_hints=1)) == [chan_a.channel_id]

    def test_policy_failure_in_pass_one_raises(self, hint_setup):
        """A policy lookup failure on a pass 1 candidate is an error."""
        backend, chan_a, _ = hint_setup
        backend.failing_policies.add(chan_a.channel_id)

        with pytest.raises(UpstreamError):
            select(backend, 100000)

    def test_negative_amount(self, hint_setup):
        """Negative amounts are rejected."""
        backend, _, _ = hint_setup
        with pytest.raises(ValidationError):
            select(backend, -1)

    def test_zero_max_hints(self, hint_setup):
        """max_hints of zero yields no hints."""
        backend, _, _ = hint_setup
        assert select(backend, 100000, max_hints=0) == []

    def test_cancelled_in_pass_one(self, hint_setup):
        """A set signal before a pass 1 lookup raises CancelledError."""
        backend, _, _ = hint_setup
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(CancelledError):
            select(backend, 100000, cancel=cancel)


class TestPrivacy:
    """Test that unadvertised peers are never revealed."""

    def test_peer_without_public_channel_skipped(self, fake_backend, channel_factory,
                                                 sample_peer_ids):
        """A peer whose only channels are private is never hinted."""
        secret = channel_factory("600000x1x0", sample_peer_ids[2], remote_sat=500, private=True)
        secret2 = channel_factory("600002x1x0", sample_peer_ids[2], remote_sat=500, private=True)
        fake_backend.channels = [secret, secret2]
        for channel in fake_backend.channels:
            fake_backend.add_policy(channel)

        assert select(fake_backend, 1000) == []

    def test_single_public_channel_not_enough(self, fake_backend, channel_factory,
                                              sample_peer_ids):
        """The channel itself does not count as the peer's other public channel."""
        only = channel_factory("600000x1x0", sample_peer_ids[2], remote_sat=500)
        fake_backend.channels = [only]
        fake_backend.add_policy(only)

        assert select(fake_backend, 1000) == []

    def test_every_hint_has_public_alternative(self, hint_setup):
        """All returned hints satisfy the privacy rule."""
        backend, _, _ = hint_setup
        channels = backend.channels

        for hint in select(backend, 10000):
            hop = hint[0]
            assert any(
                c.peer_id == hop.node_id and c.channel_id != hop.channel_id and not c.private
                for c in channels
            )

    def test_invalid_node_id_skipped(self, fake_backend, channel_factory):
        """Channels whose peer id cannot be parsed are skipped, not fatal."""
        bad_peer = "zz" * 33
        chan = channel_factory("600000x1x0", bad_peer, remote_sat=500, private=True)
        pub = channel_factory("500000x1x0", bad_peer, local_sat=1)
        fake_backend.channels = [chan, pub]

        assert select(fake_backend, 1000) == []

    def test_include_nodes_filter(self, hint_setup, sample_peer_ids):
        """Only channels to included nodes are hinted."""
        backend, _, chan_b = hint_setup

        hints = select(backend, 1000, include_nodes={sample_peer_ids[1]})

        assert chan_b.channel_id in hinted_ids(hints)
        assert all(h[0].node_id == sample_peer_ids[1] for h in hints)


class TestPassTwo:
    """Test the best-effort top-up pass."""

    def test_tops_up_smaller_channels(self, hint_setup):
        """Pass 2 adds channels that cannot carry the amount alone."""
        backend, chan_a, chan_b = hint_setup

        hints = select(backend, 100000)

        ids = hinted_ids(hints)
        assert ids[0] == chan_a.channel_id
        assert chan_b.channel_id in ids

    def test_stops_above_bandwidth_factor(self, fake_backend, channel_factory, sample_peer_ids):
        """Pass 2 stops once hinted bandwidth exceeds twice the amount."""
        peer = sample_peer_ids[0]
        chans = [
            channel_factory(f"60000{i}x1x0", peer, remote_sat=60, private=True)
            for i in range(5)
        ]
        fake_backend.channels = chans + [channel_factory("500000x1x0", peer, local_sat=1)]
        for channel in fake_backend.channels:
            fake_backend.add_policy(channel)

        # 100 sat requested, each channel 60 sat: stop after 4 (240 > 200)
        hints = select(fake_backend, 100000)

        assert len(hints) == 4
        assert sum(c.remote_balance_msat for c in chans[:4]) > 100000 * HOP_HINT_FACTOR

    def test_never_more_than_max_hints(self, fake_backend, channel_factory, sample_peer_ids):
        """The number of hints is capped by max_hints in both passes."""
        peer = sample_peer_ids[0]
        fake_backend.channels = [
            channel_factory(f"60000{i}x1x0", peer, remote_sat=1000, private=True)
            for i in range(6)
        ] + [channel_factory("500000x1x0", peer, local_sat=1)]
        for channel in fake_backend.channels:
            fake_backend.add_policy(channel)

        assert len(select(fake_backend, 1000, max_hints=3)) == 3
        assert len(select(fake_backend, 10000000, max_hints=2)) == 2

    def test_lookup_failure_skipped(self, hint_setup):
        """A pass 2 policy failure skips the channel instead of failing."""
        backend, chan_a, chan_b = hint_setup
        backend.failing_policies.add(chan_b.channel_id)

        hints = select(backend, 100000)

        assert chan_b.channel_id not in hinted_ids(hints)
        assert chan_a.channel_id in hinted_ids(hints)

    def test_no_duplicate_channels(self, hint_setup):
        """A channel picked in pass 1 is not added again in pass 2."""
        backend, _, _ = hint_setup
        ids = hinted_ids(select(backend, 100000))
        assert len(ids) == len(set(ids))


class TestHopHintSelector:
    """Test the backend-driven selector wrapper."""

    def test_selects_from_backend(self, hint_setup, mock_plugin):
        """The selector lists channels and returns hints."""
        backend, chan_a, _ = hint_setup
        exporter = PrometheusExporter()
        selector = HopHintSelector(backend, mock_plugin, exporter)

        hints = selector.select_hop_hints(100000, max_hints=1)

        assert hinted_ids(hints) == [chan_a.channel_id]
        assert exporter.get_metric(MetricNames.HOP_HINTS_SELECTED) == 1

    def test_list_failure_propagates(self, fake_backend, mock_plugin):
        """A channel listing failure is an error."""
        fake_backend.list_channels_error = UpstreamError("listpeerchannels", "down")
        selector = HopHintSelector(fake_backend, mock_plugin)

        with pytest.raises(UpstreamError):
            selector.select_hop_hints(1000)

    def test_hint_to_dict(self, hint_setup, mock_plugin):
        """Hints render with a BxTxO channel id."""
        backend, _, _ = hint_setup
        selector = HopHintSelector(backend, mock_plugin)

        hop = selector.select_hop_hints(100000, max_hints=1)[0][0]

        assert hop.to_dict()["short_channel_id"] == "600000x1x0"
        assert parse_scid(hop.to_dict()["short_channel_id"]) == hop.channel_id


class TestIncludeNodes:
    """Test parsing of the include_nodes argument."""

    def test_none_means_no_filter(self):
        """No argument leaves selection unfiltered."""
        assert parse_include_nodes(None) is None

    def test_list_of_node_ids(self, sample_peer_ids):
        """A list of node ids becomes a set."""
        nodes = parse_include_nodes(sample_peer_ids[:2] + sample_peer_ids[:1])
        assert nodes == {sample_peer_ids[0], sample_peer_ids[1]}

    def test_bare_string_rejected(self, sample_peer_ids):
        """A single node id string is not split into characters."""
        with pytest.raises(ValidationError, match="must be a list"):
            parse_include_nodes(sample_peer_ids[0])

    def test_invalid_entry_rejected(self, sample_peer_ids):
        """Every entry must be a valid node id."""
        with pytest.raises(ValidationError, match="include_nodes"):
            parse_include_nodes([sample_peer_ids[0], "not-a-node"])

    def test_filter_applies_to_selection(self, hint_setup, sample_peer_ids):
        """Only the listed peer's channel is hinted."""
        backend, _, chan_b = hint_setup
        nodes = parse_include_nodes([sample_peer_ids[1]])

        hints = select(backend, 50000, include_nodes=nodes)

        assert hinted_ids(hints) == [chan_b.channel_id]
