"""
Prometheus metrics for the commerce indexer.

``mnee_indexer_last_success_timestamp_seconds`` is the one to alert on: it
stops moving whenever passes keep failing, whatever the cause.
"""

from __future__ import annotations

import logging

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


class IndexerMetrics:
    """Counters and gauges updated by the sync loop."""

    def __init__(self, registry=None):
        self.registry = registry or REGISTRY

        self.passes = Counter(
            'mnee_indexer_passes_total',
            'Sync passes by outcome',
            ['outcome'],
            registry=self.registry
        )

        self.events_applied = Counter(
            'mnee_indexer_events_total',
            'Contract events applied to storage',
            ['kind', 'outcome'],
            registry=self.registry
        )

        self.resets = Counter(
            'mnee_indexer_chain_resets_total',
            'Chain resets detected (orders purged, checkpoint zeroed)',
            registry=self.registry
        )

        self.rebinds = Counter(
            'mnee_indexer_contract_rebinds_total',
            'Times the indexer switched to a new contract address',
            registry=self.registry
        )

        self.last_block = Gauge(
            'mnee_indexer_last_processed_block',
            'Checkpoint after the most recent successful pass',
            registry=self.registry
        )

        self.chain_height = Gauge(
            'mnee_indexer_chain_height',
            'Latest block number reported by the node',
            registry=self.registry
        )

        self.last_success = Gauge(
            'mnee_indexer_last_success_timestamp_seconds',
            'Unix time of the last pass that completed without error',
            registry=self.registry
        )

        self.pass_duration = Histogram(
            'mnee_indexer_pass_duration_seconds',
            'Wall-clock duration of a sync pass',
            buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
            registry=self.registry
        )


def start_metrics_server(port: int) -> bool:
    """Expose the default registry on ``port``. Returns False if the port is taken."""
    try:
        start_http_server(port)
    except OSError as e:
        logger.warning(
            "Metrics server not started on port %s: %s",
            port,
            e,
            extra={"event": "metrics.server_failed", "port": port},
        )
        return False
    logger.info(
        "Prometheus metrics server started on port %s",
        port,
        extra={"event": "metrics.server_started", "port": port},
    )
    return True
