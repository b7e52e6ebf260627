"""
Configuration module for cl-liquidity-ops

Contains the Config dataclass that holds the plugin-option values, and
ConfigSnapshot, the immutable copy handed to request handlers.

Liquidity parameters (channel rules, fee limits) are not part of Config;
they are owned by the liquidity Manager and changed through RPC.
"""

from dataclasses import dataclass, fields
from typing import Dict, Any

from .errors import ValidationError


# Type mapping for config fields (for validation)
CONFIG_FIELD_TYPES: Dict[str, type] = {
    'db_path': str,
    'swap_server_url': str,
    'swap_server_timeout_seconds': int,
    'min_sweep_conf': int,
    'max_hop_hints': int,
    'enable_prometheus': bool,
    'prometheus_port': int,
}

# Range constraints for numeric fields
CONFIG_FIELD_RANGES: Dict[str, tuple] = {
    'swap_server_timeout_seconds': (1, 300),
    'min_sweep_conf': (1, 1008),
    'max_hop_hints': (0, 100),
    'prometheus_port': (1, 65535),
}


def _coerce(key: str, value: Any) -> Any:
    """Convert a raw option value (usually a string) to the field's type."""
    field_type = CONFIG_FIELD_TYPES.get(key, str)
    if field_type == bool:
        if isinstance(value, bool):
            return value
        return str(value).lower() in ('true', '1', 'yes', 'on')
    if field_type == int:
        return int(value)
    return str(value)


@dataclass
class Config:
    """
    Configuration container for the liquidity plugin.

    All values can be set via plugin options at startup.
    """

    # Database path (swap records)
    db_path: str = '~/.lightning/liquidity_ops.db'

    # Swap server
    swap_server_url: str = 'http://127.0.0.1:11010'
    swap_server_timeout_seconds: int = 30

    # Lowest sweep confirmation target a parameter set may use
    min_sweep_conf: int = 2

    # Default cap on hop hints per invoice
    max_hop_hints: int = 20

    # Prometheus Metrics
    enable_prometheus: bool = False
    prometheus_port: int = 9810

    @classmethod
    def from_options(cls, options: Dict[str, Any]) -> 'Config':
        """
        Build a Config from plugin option values keyed by field name.

        Raises:
            ValidationError: A value cannot be converted or is out of range
        """
        config = cls()
        for key, value in options.items():
            if key not in CONFIG_FIELD_TYPES:
                raise ValidationError(f"Unknown config key: {key}")
            if value is None:
                continue
            try:
                setattr(config, key, _coerce(key, value))
            except (ValueError, TypeError) as e:
                raise ValidationError(
                    f"Invalid value for {key} "
                    f"(expected {CONFIG_FIELD_TYPES[key].__name__}): {e}"
                ) from e
        config.validate()
        return config

    def validate(self) -> None:
        """
        Raises:
            ValidationError: On the first field with a wrong type or out of range
        """
        for key, field_type in CONFIG_FIELD_TYPES.items():
            value = getattr(self, key)
            if field_type == int and (isinstance(value, bool) or not isinstance(value, int)):
                raise ValidationError(f"{key} must be an integer")
            if not isinstance(value, field_type):
                raise ValidationError(f"{key} must be {field_type.__name__}")

        for key, (min_val, max_val) in CONFIG_FIELD_RANGES.items():
            value = getattr(self, key)
            if not (min_val <= value <= max_val):
                raise ValidationError(
                    f"Value {value} out of range [{min_val}, {max_val}] for {key}"
                )

        if not self.swap_server_url.startswith(('http://', 'https://')):
            raise ValidationError("swap_server_url must be an http(s) URL")

    def snapshot(self) -> 'ConfigSnapshot':
        """
        Create an immutable snapshot for request handling.

        Handlers capture a snapshot once and use only that, so a config
        change mid-request cannot produce a torn read.
        """
        return ConfigSnapshot.from_config(self)


@dataclass(frozen=True)
class ConfigSnapshot:
    """
    Immutable configuration snapshot.

    Usage:
        cfg = config.snapshot()
        hints = selector.select_hop_hints(amount, cfg.max_hop_hints)
    """
    db_path: str
    swap_server_url: str
    swap_server_timeout_seconds: int
    min_sweep_conf: int
    max_hop_hints: int
    enable_prometheus: bool
    prometheus_port: int

    @classmethod
    def from_config(cls, config: 'Config') -> 'ConfigSnapshot':
        """Create snapshot from mutable Config."""
        return cls(**{f.name: getattr(config, f.name) for f in fields(cls)})

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}
