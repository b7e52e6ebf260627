#!/usr/bin/env python3
"""
cl-liquidity-ops: A Liquidity Management Plugin for Core Lightning

This plugin is the decision side of a swap-based rebalancing service. It
watches our channel balances, applies per-channel threshold rules and
suggests loop out swaps that move channels back into their desired range.
Separately, it builds privacy-preserving hop hints for invoices issued by a
node with unadvertised channels.

SUGGEST, DON'T DISPATCH:
------------------------
Suggestions are returned to the caller; executing a swap is left to the
swap client. Swap records written by that client are read back from our
database so channels already involved in a swap are not suggested again.

Dependencies:
- pyln-client: Core Lightning plugin framework
- requests: Swap server REST client

License: MIT
"""

import os
import signal
import sqlite3
import threading
import time
from typing import Dict, List, Optional, Any

from pyln.client import Plugin

from modules.channels import format_scid, parse_scid
from modules.config import Config
from modules.database import Database
from modules.errors import UpstreamError, ValidationError
from modules.hop_hints import HopHintSelector, parse_include_nodes
from modules.liquidity import Manager, ManagerConfig, Parameters
from modules.loop_in import build_loop_in_quote_request, quote_loop_in
from modules.metrics import PrometheusExporter, MetricNames
from modules.node_backend import NodeBackend
from modules.swap_server import SwapServerClient
from modules.threshold_rule import ThresholdRule

# Initialize the plugin
plugin = Plugin()

# =============================================================================
# GRACEFUL SHUTDOWN SUPPORT
# =============================================================================
# When `lightning-cli plugin stop cl-liquidity-ops` is called, CLN sends
# SIGTERM. We set this event; it is the cancellation signal handed to every
# suggestion cycle and hop hint selection, so in-flight work stops at the
# next backend call.

shutdown_event = threading.Event()

# =============================================================================
# THREAD-SAFE RPC WRAPPER
# =============================================================================
# pyln-client's RPC is not inherently thread-safe for concurrent calls.
# This lock serializes all RPC calls made through the proxy.

RPC_LOCK = threading.Lock()


class ThreadSafeRpcProxy:
    """
    A thread-safe proxy for the plugin's RPC interface.

    Every attribute call (rpc.listpeerchannels(), rpc.feerates(...)) is run
    while holding RPC_LOCK.
    """

    def __init__(self, rpc):
        self._rpc = rpc

    def __getattr__(self, name):
        method = getattr(self._rpc, name)
        if not callable(method):
            return method

        def wrapper(*args, **kwargs):
            with RPC_LOCK:
                return method(*args, **kwargs)

        return wrapper


class ThreadSafePluginProxy:
    """
    A proxy for the Plugin object that provides thread-safe RPC access.
    """

    def __init__(self, plugin_instance: Plugin):
        self._plugin = plugin_instance
        self.rpc = ThreadSafeRpcProxy(plugin_instance.rpc)

    def log(self, message, level='info'):
        """Delegate logging to the original plugin."""
        self._plugin.log(message, level=level)

    def __getattr__(self, name):
        """Delegate all other attribute access to the original plugin."""
        return getattr(self._plugin, name)


# Global instances (initialized in init)
config: Optional[Config] = None
database: Optional[Database] = None
swap_server: Optional[SwapServerClient] = None
manager: Optional[Manager] = None
hop_hint_selector: Optional[HopHintSelector] = None
metrics_exporter: Optional[PrometheusExporter] = None
safe_plugin: Optional[ThreadSafePluginProxy] = None


# =============================================================================
# PLUGIN OPTIONS
# =============================================================================

plugin.add_option(
    name='liquidity-ops-db-path',
    default='~/.lightning/liquidity_ops.db',
    description='Path to the SQLite database holding swap records'
)

plugin.add_option(
    name='liquidity-ops-swap-server-url',
    default='http://127.0.0.1:11010',
    description='Base URL of the swap server REST API'
)

plugin.add_option(
    name='liquidity-ops-swap-server-timeout',
    default='30',
    description='Timeout in seconds for swap server requests (default: 30)'
)

plugin.add_option(
    name='liquidity-ops-min-sweep-conf',
    default='2',
    description='Lowest sweep confirmation target a parameter set may use (default: 2)'
)

plugin.add_option(
    name='liquidity-ops-max-hop-hints',
    default='20',
    description='Default maximum number of hop hints per invoice (default: 20)'
)

plugin.add_option(
    name='liquidity-ops-enable-prometheus',
    default='false',
    description='Enable the Prometheus metrics endpoint (default: false)'
)

plugin.add_option(
    name='liquidity-ops-prometheus-port',
    default='9810',
    description='Port for the Prometheus metrics endpoint (default: 9810)'
)


@plugin.init()
def init(options: Dict[str, Any], configuration: Dict[str, Any], plugin: Plugin, **kwargs):
    """
    Initialize the liquidity plugin.

    We:
    1. Parse and validate options
    2. Initialize the swap database
    3. Wire the node backend, swap server client, manager and hop hint selector
    4. Start the Prometheus exporter (if enabled)
    """
    global config, database, swap_server, manager, hop_hint_selector, metrics_exporter, safe_plugin

    plugin.log("Initializing cl-liquidity-ops plugin...")

    config = Config.from_options({
        'db_path': options['liquidity-ops-db-path'],
        'swap_server_url': options['liquidity-ops-swap-server-url'],
        'swap_server_timeout_seconds': options['liquidity-ops-swap-server-timeout'],
        'min_sweep_conf': options['liquidity-ops-min-sweep-conf'],
        'max_hop_hints': options['liquidity-ops-max-hop-hints'],
        'enable_prometheus': options['liquidity-ops-enable-prometheus'],
        'prometheus_port': options['liquidity-ops-prometheus-port'],
    })

    plugin.log(f"Configuration loaded: swap_server={config.swap_server_url}, "
               f"min_sweep_conf={config.min_sweep_conf}, "
               f"max_hop_hints={config.max_hop_hints}")

    # All handler threads share a single RPC connection
    safe_plugin = ThreadSafePluginProxy(plugin)

    database = Database(os.path.expanduser(config.db_path), safe_plugin)
    database.initialize()

    if config.enable_prometheus:
        metrics_exporter = PrometheusExporter(port=config.prometheus_port, plugin=safe_plugin)
        if not metrics_exporter.start_server():
            metrics_exporter = None

    backend = NodeBackend(safe_plugin)
    swap_server = SwapServerClient(
        config.swap_server_url, config.swap_server_timeout_seconds, safe_plugin
    )

    manager = Manager(
        ManagerConfig(
            backend=backend,
            loop_out_restrictions=swap_server.get_loop_out_terms,
            list_loop_out=database.list_loop_out,
            list_loop_in=database.list_loop_in,
            clock=time.time,
            minimum_confirmations=config.min_sweep_conf,
        ),
        safe_plugin,
        metrics_exporter,
    )
    hop_hint_selector = HopHintSelector(backend, safe_plugin, metrics_exporter)

    # =========================================================================
    # SIGNAL HANDLER: Clean Shutdown on `lightning-cli plugin stop`
    # =========================================================================
    def handle_shutdown_signal(signum, frame):
        """
        Handle SIGTERM for graceful shutdown.

        Sets shutdown_event, cancelling in-flight cycles at their next
        backend call.
        """
        plugin.log("Received SIGTERM, initiating clean shutdown...", level='info')
        shutdown_event.set()

        if metrics_exporter:
            metrics_exporter.stop_server()

        if database:
            database.close()

    signal.signal(signal.SIGTERM, handle_shutdown_signal)

    plugin.log("cl-liquidity-ops plugin initialized successfully!")
    return None


def _not_initialized() -> Dict[str, Any]:
    return {"status": "error", "error": "Plugin not fully initialized"}


def _upstream_failure(method: str, e: UpstreamError) -> Dict[str, Any]:
    plugin.log(f"{method} failed: {e}", level='error')
    if metrics_exporter:
        metrics_exporter.inc_counter(
            MetricNames.CYCLE_FAILURES_TOTAL, labels={"source": e.source}
        )
    return {"status": "error", "error": str(e), "source": e.source}


# =============================================================================
# RPC METHODS
# =============================================================================

@plugin.method("liquidity-params")
def liquidity_params(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the current liquidity parameters.

    Usage: lightning-cli liquidity-params
    """
    if manager is None:
        return _not_initialized()

    return {"status": "success", "parameters": manager.get_parameters().to_dict()}


@plugin.method("liquidity-set-params")
def liquidity_set_params(plugin: Plugin, failure_backoff_sec: Optional[int] = None,
                         sweep_fee_rate_limit_sat_per_kw: Optional[int] = None,
                         sweep_conf_target: Optional[int] = None,
                         channel_rules: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Update liquidity parameters. Omitted fields keep their current value;
    channel_rules, when given, replaces the whole rule set.

    Usage: lightning-cli liquidity-set-params -k sweep_conf_target=50
    """
    if manager is None:
        return _not_initialized()

    try:
        params = Parameters.from_dict({
            "failure_backoff_sec": failure_backoff_sec,
            "sweep_fee_rate_limit_sat_per_kw": sweep_fee_rate_limit_sat_per_kw,
            "sweep_conf_target": sweep_conf_target,
            "channel_rules": channel_rules,
        }, base=manager.get_parameters())
        manager.set_parameters(params)
    except ValidationError as e:
        return {"status": "error", "error": str(e)}

    return {"status": "success", "parameters": manager.get_parameters().to_dict()}


@plugin.method("liquidity-set-rule")
def liquidity_set_rule(plugin: Plugin, channel_id: str, minimum_incoming: int,
                       minimum_outgoing: int = 0) -> Dict[str, Any]:
    """
    Set the threshold rule for one channel.

    Usage: lightning-cli liquidity-set-rule channel_id minimum_incoming [minimum_outgoing]
    """
    if manager is None:
        return _not_initialized()

    try:
        scid = parse_scid(channel_id)
        rule = ThresholdRule.from_dict({
            "minimum_incoming": minimum_incoming,
            "minimum_outgoing": minimum_outgoing,
        })
        params = manager.get_parameters()
        params.channel_rules[scid] = rule
        manager.set_parameters(params)
    except ValueError as e:
        # ValidationError included
        return {"status": "error", "error": str(e)}

    return {"status": "success", "channel": format_scid(scid), "rule": rule.to_dict()}


@plugin.method("liquidity-clear-rule")
def liquidity_clear_rule(plugin: Plugin, channel_id: str) -> Dict[str, Any]:
    """
    Remove the threshold rule for one channel.

    Usage: lightning-cli liquidity-clear-rule channel_id
    """
    if manager is None:
        return _not_initialized()

    try:
        scid = parse_scid(channel_id)
        params = manager.get_parameters()
        removed = params.channel_rules.pop(scid, None)
        if removed is None:
            return {"status": "error", "error": f"No rule for channel {format_scid(scid)}"}
        manager.set_parameters(params)
    except ValueError as e:
        return {"status": "error", "error": str(e)}

    return {"status": "success", "channel": format_scid(scid)}


@plugin.method("liquidity-suggest")
def liquidity_suggest(plugin: Plugin) -> Dict[str, Any]:
    """
    Run one liquidity cycle and return loop out suggestions.

    Usage: lightning-cli liquidity-suggest
    """
    if manager is None:
        return _not_initialized()

    try:
        suggestions = manager.suggest_swaps(cancel=shutdown_event)
    except UpstreamError as e:
        return _upstream_failure("liquidity-suggest", e)

    return {
        "status": "success",
        "suggestions": [request.to_dict() for request in suggestions],
    }


@plugin.method("liquidity-hop-hints")
def liquidity_hop_hints(plugin: Plugin, amount_msat: int, max_hints: Optional[int] = None,
                        include_nodes: Optional[List[str]] = None) -> Dict[str, Any]:
    """
    Select hop hints for an invoice.

    Usage: lightning-cli liquidity-hop-hints amount_msat [max_hints] [include_nodes]
    """
    if hop_hint_selector is None or config is None:
        return _not_initialized()

    cfg = config.snapshot()
    try:
        amount_msat = int(amount_msat)
        limit = cfg.max_hop_hints if max_hints is None else int(max_hints)
        hints = hop_hint_selector.select_hop_hints(
            amount_msat,
            limit,
            parse_include_nodes(include_nodes),
            cancel=shutdown_event,
        )
    except ValueError as e:
        return {"status": "error", "error": str(e)}
    except UpstreamError as e:
        return _upstream_failure("liquidity-hop-hints", e)

    return {
        "status": "success",
        "hop_hints": [[hop.to_dict() for hop in hint] for hint in hints],
    }


@plugin.method("liquidity-loopin-quote")
def liquidity_loopin_quote(plugin: Plugin, amount_sat: int, conf_target: Optional[int] = None,
                           external: bool = False, last_hop: Optional[str] = None,
                           private: bool = False,
                           route_hints: Optional[List[Any]] = None) -> Dict[str, Any]:
    """
    Get a loop in quote and the fee limits it would be dispatched with.

    Usage: lightning-cli liquidity-loopin-quote amount_sat [conf_target] [external] [last_hop] [private]
    """
    if swap_server is None or hop_hint_selector is None:
        return _not_initialized()

    try:
        request = build_loop_in_quote_request(
            int(amount_sat),
            hop_hint_selector,
            conf_target=int(conf_target) if conf_target is not None else None,
            external=bool(external),
            last_hop=last_hop,
            private=bool(private),
            route_hints=route_hints,
            cancel=shutdown_event,
        )
        result = quote_loop_in(swap_server, request, cancel=shutdown_event)
    except ValueError as e:
        return {"status": "error", "error": str(e)}
    except UpstreamError as e:
        return _upstream_failure("liquidity-loopin-quote", e)

    return {"status": "success", **result}


@plugin.method("liquidity-status")
def liquidity_status(plugin: Plugin) -> Dict[str, Any]:
    """
    Get the plugin configuration, current parameters and swap counts.

    Usage: lightning-cli liquidity-status
    """
    if manager is None or config is None or database is None:
        return _not_initialized()

    try:
        swap_counts = database.get_swap_counts()
    except sqlite3.Error as e:
        plugin.log(f"Error counting swaps: {e}", level='warn')
        swap_counts = {}

    return {
        "status": "running",
        "config": config.snapshot().to_dict(),
        "parameters": manager.get_parameters().to_dict(),
        "swaps": swap_counts,
        "prometheus": metrics_exporter.is_running() if metrics_exporter else False,
    }


# =============================================================================
# ENTRY POINT
# =============================================================================

if __name__ == "__main__":
    plugin.run()
