"""Prometheus metrics for the transaction history API"""
from prometheus_client import (
    Counter, CollectorRegistry, GCCollector, PlatformCollector, ProcessCollector,
    generate_latest, CONTENT_TYPE_LATEST
)
from typing import Tuple


class APIMetrics:
    """Per-application registry so several apps (and tests) never share counters"""

    def __init__(self, registry: CollectorRegistry = None):
        self.registry = registry or CollectorRegistry()

        # Default process, interpreter and GC series
        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)
        GCCollector(registry=self.registry)

        self.http_requests = Counter(
            'http_requests_total',
            'Total number of HTTP requests',
            ['method', 'path'],
            registry=self.registry
        )

        self.ledger_submissions = Counter(
            'ledger_submissions_total',
            'Ledger submissions by kind and outcome',
            ['kind', 'outcome'],
            registry=self.registry
        )

    def record_request(self, method: str, path: str) -> None:
        """Count a request; path is a route template, never a raw URL"""
        self.http_requests.labels(method=method, path=path).inc()

    def record_submission(self, kind: str, outcome: str) -> None:
        self.ledger_submissions.labels(kind=kind, outcome=outcome).inc()

    def render(self) -> Tuple[bytes, str]:
        """Return the exposition payload and its content type"""
        return generate_latest(self.registry), CONTENT_TYPE_LATEST
