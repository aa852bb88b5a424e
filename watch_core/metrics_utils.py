import os

from prometheus_client import CollectorRegistry, Counter, Gauge, start_http_server


class Metrics:
    """Prometheus counters for sweeps. Inert unless enabled."""

    def __init__(self, enabled: bool = False, registry: CollectorRegistry = None):
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()
        self.scanned = Counter('updater_scanned_total', 'Containers scanned', registry=self.registry)
        self.updated = Counter('updater_updated_total', 'Containers updated', registry=self.registry)
        self.failed = Counter('updater_failed_total', 'Container updates that failed', registry=self.registry)
        self.skipped = Counter('updater_skipped_total', 'Containers skipped', registry=self.registry)
        self.sweeps = Counter('updater_sweeps_total', 'Sweeps completed', registry=self.registry)
        self.unverified_restarts = Counter(
            'updater_unverified_restarts_total',
            'Replaced containers without a healthcheck, assumed healthy once started',
            registry=self.registry,
        )
        self.last_sweep = Gauge('updater_last_sweep_timestamp_seconds', 'Time of the last sweep', registry=self.registry)

    def record_report(self, report):
        if not self.enabled:
            return
        self.scanned.inc(len(report.scanned))
        self.updated.inc(len(report.updated))
        self.failed.inc(len(report.failed))
        self.skipped.inc(len(report.skipped))
        self.sweeps.inc()
        self.last_sweep.set_to_current_time()

    def unverified_restart(self):
        if self.enabled:
            self.unverified_restarts.inc()


def init_metrics(logger) -> Metrics:
    """Start the metrics endpoint when METRICS_PORT is set."""
    port = os.getenv('METRICS_PORT')
    metrics = Metrics()
    if not port:
        return metrics
    addr = os.getenv('METRICS_ADDR', '0.0.0.0')
    try:
        start_http_server(int(port), addr=addr, registry=metrics.registry)
        metrics.enabled = True
        logger.info(f"Prometheus metrics server on {addr}:{port}")
    except (OSError, ValueError) as e:
        logger.warning(f"Failed to start metrics: {e}")
    return metrics
