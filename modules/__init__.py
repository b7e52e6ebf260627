"""
cl-liquidity-ops modules package

This package contains the core modules for the liquidity plugin:
- liquidity: Parameter store and loop out suggestion engine
- threshold_rule: Per-channel liquidity thresholds
- hop_hints: Privacy-preserving routing hint selection
- loop_in: Loop in quote preparation
- node_backend: lightningd RPC adapter
- swap_server: Swap server REST client
- database: SQLite storage for swap records
- config: Configuration and constants
"""

from .config import Config
from .database import Database
from .errors import UpstreamError, ValidationError
from .hop_hints import HopHint, HopHintSelector
from .liquidity import Manager, ManagerConfig, Parameters
from .node_backend import NodeBackend
from .swap_server import SwapServerClient
from .threshold_rule import ThresholdRule

__all__ = [
    'Config',
    'Database',
    'UpstreamError',
    'ValidationError',
    'HopHint',
    'HopHintSelector',
    'Manager',
    'ManagerConfig',
    'Parameters',
    'NodeBackend',
    'SwapServerClient',
    'ThresholdRule',
]
