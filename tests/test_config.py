"""
Tests for plugin configuration.
"""

import dataclasses

import pytest

from modules.config import Config, ConfigSnapshot
from modules.errors import ValidationError


class TestConfig:
    """Test defaults, option parsing and validation."""

    def test_defaults(self):
        """Defaults match the documented values and validate."""
        config = Config()
        assert config.min_sweep_conf == 2
        assert config.max_hop_hints == 20
        assert config.swap_server_timeout_seconds == 30
        assert config.enable_prometheus is False
        config.validate()

    def test_from_options_strings(self):
        """Plugin option strings are converted to field types."""
        config = Config.from_options({
            'swap_server_timeout_seconds': '10',
            'min_sweep_conf': '3',
            'enable_prometheus': 'true',
            'prometheus_port': '9999',
        })
        assert config.swap_server_timeout_seconds == 10
        assert config.min_sweep_conf == 3
        assert config.enable_prometheus is True
        assert config.prometheus_port == 9999

    def test_bad_int(self):
        """Unparseable numbers are validation errors."""
        with pytest.raises(ValidationError, match="min_sweep_conf"):
            Config.from_options({'min_sweep_conf': 'soon'})

    def test_out_of_range(self):
        """Values outside their range are rejected."""
        with pytest.raises(ValidationError, match="out of range"):
            Config.from_options({'prometheus_port': '70000'})

    def test_unknown_key(self):
        """Unknown keys are rejected."""
        with pytest.raises(ValidationError, match="Unknown"):
            Config.from_options({'dry_run': 'true'})

    def test_bad_url(self):
        """The swap server URL must be http(s)."""
        with pytest.raises(ValidationError):
            Config(swap_server_url='ftp://swap').validate()


class TestConfigSnapshot:
    """Test snapshot immutability."""

    def test_snapshot_copies_values(self):
        """Snapshots carry every config value."""
        config = Config(max_hop_hints=5)
        snap = config.snapshot()
        assert snap.max_hop_hints == 5
        assert snap.to_dict()['db_path'] == config.db_path

    def test_snapshot_frozen(self):
        """Snapshots cannot be mutated."""
        snap = Config().snapshot()
        with pytest.raises(dataclasses.FrozenInstanceError):
            snap.max_hop_hints = 1

    def test_snapshot_isolated(self):
        """Later config changes do not affect an existing snapshot."""
        config = Config()
        snap = config.snapshot()
        config.max_hop_hints = 3
        assert snap.max_hop_hints == 20
        assert isinstance(snap, ConfigSnapshot)
