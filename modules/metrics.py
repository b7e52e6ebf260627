"""
Prometheus Metrics Exporter module for cl-liquidity-ops

Exposes the outcome of the last liquidity cycle and hop hint selection
on a /metrics endpoint in Prometheus text format, using only the standard
library (http.server + threading).

All metric names are prefixed with 'cl_liquidity_'.
"""

import socket
import threading
from http.server import HTTPServer, BaseHTTPRequestHandler
from typing import Dict, Optional, Any


class MetricType:
    """Metric type constants."""
    GAUGE = "gauge"
    COUNTER = "counter"


class MetricNames:
    """Standard metric names for cl-liquidity-ops."""

    # Liquidity manager (Gauges)
    ELIGIBLE_CHANNELS = "cl_liquidity_eligible_channels"
    SWAP_SUGGESTIONS = "cl_liquidity_swap_suggestions"
    SWEEP_FEE_ESTIMATE = "cl_liquidity_sweep_fee_estimate_sat_per_kw"
    LAST_RUN_TIMESTAMP = "cl_liquidity_last_run_timestamp"

    # Liquidity manager (Counters)
    CYCLE_FAILURES_TOTAL = "cl_liquidity_cycle_failures_total"

    # Hop hint selector
    HOP_HINTS_SELECTED = "cl_liquidity_hop_hints_selected"


METRIC_HELP = {
    MetricNames.ELIGIBLE_CHANNELS: "Channels not used by any pending swap in the last cycle",
    MetricNames.SWAP_SUGGESTIONS: "Loop out suggestions produced by the last cycle",
    MetricNames.SWEEP_FEE_ESTIMATE: "Sweep fee estimate at the configured confirmation target",
    MetricNames.LAST_RUN_TIMESTAMP: "Unix timestamp of the last completed liquidity cycle",
    MetricNames.CYCLE_FAILURES_TOTAL: "Liquidity cycles aborted by a backend failure",
    MetricNames.HOP_HINTS_SELECTED: "Hop hints returned by the last selection",
}


class PrometheusExporter:
    """
    Thread-safe gauge/counter store with an optional HTTP endpoint.

    Usage:
        exporter = PrometheusExporter(port=9810)
        exporter.start_server()
        exporter.set_gauge(MetricNames.SWAP_SUGGESTIONS, 2)
    """

    def __init__(self, port: int = 9810, plugin=None):
        """
        Args:
            port: HTTP server port
            plugin: Optional plugin instance for logging
        """
        self.port = port
        self.plugin = plugin

        self._lock = threading.Lock()
        # name -> {"type", "help", "values": {frozenset(labels): value}}
        self._metrics: Dict[str, Dict[str, Any]] = {}

        self._server: Optional[HTTPServer] = None
        self._server_thread: Optional[threading.Thread] = None
        self._running = False

    def _log(self, message: str, level: str = 'info'):
        if self.plugin:
            self.plugin.log(message, level=level)

    def _entry(self, name: str, metric_type: str, help_text: str) -> Dict[str, Any]:
        if name not in self._metrics:
            self._metrics[name] = {
                "type": metric_type,
                "help": help_text or METRIC_HELP.get(name, ""),
                "values": {},
            }
        return self._metrics[name]

    def set_gauge(self, name: str, value: float, labels: Optional[Dict[str, str]] = None,
                  help_text: str = "") -> None:
        """Set a gauge to value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            self._entry(name, MetricType.GAUGE, help_text)["values"][label_key] = value

    def inc_counter(self, name: str, value: float = 1, labels: Optional[Dict[str, str]] = None,
                    help_text: str = "") -> None:
        """Increment a counter by value."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            values = self._entry(name, MetricType.COUNTER, help_text)["values"]
            values[label_key] = values.get(label_key, 0) + value

    def get_metric(self, name: str, labels: Optional[Dict[str, str]] = None) -> Optional[float]:
        """Current value for an exact label set, or None."""
        label_key = frozenset((labels or {}).items())
        with self._lock:
            if name in self._metrics:
                return self._metrics[name]["values"].get(label_key)
        return None

    def format_prometheus(self) -> str:
        """Render all metrics in Prometheus text exposition format."""
        lines = []
        with self._lock:
            for name, metric in sorted(self._metrics.items()):
                if metric["help"]:
                    lines.append(f"# HELP {name} {metric['help']}")
                lines.append(f"# TYPE {name} {metric['type']}")

                for label_key, value in sorted(metric["values"].items(), key=lambda x: str(x[0])):
                    if label_key:
                        label_part = ", ".join(f'{k}="{v}"' for k, v in sorted(label_key))
                        lines.append(f"{name}{{{label_part}}} {value}")
                    else:
                        lines.append(f"{name} {value}")
                lines.append("")

        return "\n".join(lines)

    def _create_request_handler(self):
        exporter = self

        class MetricsHandler(BaseHTTPRequestHandler):
            """Serves /metrics."""

            def log_message(self, format, *args):
                pass

            def do_GET(self):
                try:
                    if self.path not in ('/', '/metrics'):
                        self.send_response(404)
                        self.end_headers()
                        return

                    content = exporter.format_prometheus().encode('utf-8')
                    self.send_response(200)
                    self.send_header('Content-Type', 'text/plain; charset=utf-8')
                    self.send_header('Content-Length', str(len(content)))
                    self.end_headers()
                    self.wfile.write(content)
                except (BrokenPipeError, ConnectionResetError):
                    # Client went away mid-response
                    pass

        return MetricsHandler

    def start_server(self) -> bool:
        """
        Start the HTTP server in a daemon thread.

        Returns:
            True if the server is running, False if it could not be started
        """
        if self._running:
            return True

        try:
            self._server = HTTPServer(('0.0.0.0', self.port), self._create_request_handler())
            self._server.socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        except OSError as e:
            self._log(f"Failed to start Prometheus server on port {self.port}: {e}", level='error')
            return False

        self._server_thread = threading.Thread(
            target=self._server.serve_forever,
            daemon=True,
            name="prometheus-exporter"
        )
        self._server_thread.start()
        self._running = True
        self._log(f"Prometheus metrics server started on port {self.port}")
        return True

    def stop_server(self):
        if self._server:
            self._server.shutdown()
            self._running = False
            self._log("Prometheus metrics server stopped")

    def is_running(self) -> bool:
        return self._running
