"""
Tests for the Prometheus exporter.
"""

from modules.metrics import MetricNames, PrometheusExporter


class TestPrometheusExporter:
    """Test metric storage and formatting."""

    def test_gauge_overwrites(self):
        """Gauges hold the last value set."""
        exporter = PrometheusExporter()
        exporter.set_gauge(MetricNames.SWAP_SUGGESTIONS, 3)
        exporter.set_gauge(MetricNames.SWAP_SUGGESTIONS, 1)
        assert exporter.get_metric(MetricNames.SWAP_SUGGESTIONS) == 1

    def test_counter_accumulates(self):
        """Counters add up per label set."""
        exporter = PrometheusExporter()
        labels = {"source": "feerates"}
        exporter.inc_counter(MetricNames.CYCLE_FAILURES_TOTAL, labels=labels)
        exporter.inc_counter(MetricNames.CYCLE_FAILURES_TOTAL, labels=labels)

        assert exporter.get_metric(MetricNames.CYCLE_FAILURES_TOTAL, labels) == 2
        assert exporter.get_metric(MetricNames.CYCLE_FAILURES_TOTAL) is None

    def test_unknown_metric(self):
        """Unset metrics read as None."""
        assert PrometheusExporter().get_metric("cl_liquidity_missing") is None

    def test_format(self):
        """Output follows the text exposition format with help and type lines."""
        exporter = PrometheusExporter()
        exporter.set_gauge(MetricNames.ELIGIBLE_CHANNELS, 4)
        exporter.inc_counter(MetricNames.CYCLE_FAILURES_TOTAL, labels={"source": "swap_server"})

        text = exporter.format_prometheus()

        assert f"# TYPE {MetricNames.ELIGIBLE_CHANNELS} gauge" in text
        assert f"{MetricNames.ELIGIBLE_CHANNELS} 4" in text
        assert f"# TYPE {MetricNames.CYCLE_FAILURES_TOTAL} counter" in text
        assert f'{MetricNames.CYCLE_FAILURES_TOTAL}{{source="swap_server"}} 1' in text
        assert f"# HELP {MetricNames.ELIGIBLE_CHANNELS} " in text

    def test_not_running_by_default(self):
        """The HTTP server only runs once started."""
        assert PrometheusExporter().is_running() is False
