"""
Monitoring and metrics collection for the crawler.
"""

import logging
import time
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram, start_http_server


class MetricsCollector:
    """Owns the Prometheus registry and the crawler's metric objects."""

    def __init__(self, prometheus_port: Optional[int] = None):
        self.logger = logging.getLogger(__name__)
        self.prometheus_port = prometheus_port
        self.registry = CollectorRegistry()

        self.fetched = Counter(
            'crawler_pages_fetched_total',
            'Pages fetched successfully',
            ['status_code'],
            registry=self.registry
        )
        self.dropped = Counter(
            'crawler_urls_dropped_total',
            'URLs dropped, by reason',
            ['reason'],
            registry=self.registry
        )
        self.requeued = Counter(
            'crawler_urls_requeued_total',
            'URLs requeued after a retryable failure',
            ['reason'],
            registry=self.registry
        )
        self.links = Counter(
            'crawler_links_total',
            'Discovered links, by outcome',
            ['outcome'],
            registry=self.registry
        )
        self.response_time = Histogram(
            'crawler_response_time_seconds',
            'Response time for HTTP requests',
            registry=self.registry
        )
        self.queue_size = Gauge(
            'crawler_queue_size',
            'Number of URLs in the frontier',
            registry=self.registry
        )
        self.in_flight = Gauge(
            'crawler_in_flight',
            'Fetches currently in flight',
            registry=self.registry
        )

        # Plain counters for summaries without scraping the registry
        self.totals: Dict[str, float] = {}

    def start_server(self):
        """Start the Prometheus metrics HTTP server if a port is configured."""
        if self.prometheus_port is None:
            return
        start_http_server(self.prometheus_port, registry=self.registry)
        self.logger.info(f"Prometheus metrics server started on port {self.prometheus_port}")

    def bump(self, name: str, amount: float = 1):
        self.totals[name] = self.totals.get(name, 0) + amount


class CrawlerMonitor:
    """High-level monitoring interface for the crawler."""

    def __init__(self, metrics_collector: MetricsCollector):
        self.metrics = metrics_collector
        self.start_time = time.time()

    def record_fetch(self, status_code: int, response_time: float):
        self.metrics.fetched.labels(status_code=str(status_code)).inc()
        self.metrics.response_time.observe(response_time)
        self.metrics.bump('fetched')

    def record_drop(self, reason: str):
        self.metrics.dropped.labels(reason=reason).inc()
        self.metrics.bump(f'dropped:{reason}')

    def record_requeue(self, reason: str):
        self.metrics.requeued.labels(reason=reason).inc()
        self.metrics.bump('requeued')

    def record_links(self, outcome: str, count: int = 1):
        if count:
            self.metrics.links.labels(outcome=outcome).inc(count)
            self.metrics.bump(f'links:{outcome}', count)

    def update_queue_size(self, size: int):
        self.metrics.queue_size.set(size)

    def update_in_flight(self, count: int):
        self.metrics.in_flight.set(count)

    def get_summary(self) -> Dict[str, Any]:
        runtime = time.time() - self.start_time
        fetched = self.metrics.totals.get('fetched', 0)
        return {
            'runtime_seconds': runtime,
            'totals': dict(self.metrics.totals),
            'pages_per_minute': fetched / (runtime / 60) if runtime > 0 else 0,
        }


def initialize_monitoring(prometheus_port: Optional[int] = None) -> CrawlerMonitor:
    """Create a monitor and start its exporter when a port is given."""
    collector = MetricsCollector(prometheus_port)
    collector.start_server()
    return CrawlerMonitor(collector)
