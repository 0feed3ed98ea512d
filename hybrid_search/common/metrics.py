"""Metrics collection for hybrid search.

Provides a thin convenience wrapper around ``prometheus_client`` so the
coordinator and indexer record search, retrieval-branch, cache, typo and
indexing metrics consistently.

Design notes
- Metrics and labels are predeclared to avoid cardinality explosions
- Each collector owns its registry so several coordinators (or tests) can
  coexist in one process
"""

from typing import Optional

from prometheus_client import CollectorRegistry, Counter, Histogram, generate_latest


class MetricsCollector:
    """Centralized metrics collection for search components.

    Parameters
    - service_name: Logical name used for scoping
    - registry: Optional custom ``CollectorRegistry``
    """

    def __init__(self, service_name: str = "hybrid-search", registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry or CollectorRegistry()

        self.search_requests = Counter(
            'search_requests_total',
            'Total search requests',
            ['mode'],
            registry=self.registry
        )

        self.search_duration = Histogram(
            'search_duration_seconds',
            'End-to-end search duration',
            ['mode'],
            registry=self.registry
        )

        self.branch_duration = Histogram(
            'search_branch_duration_seconds',
            'Retrieval branch duration',
            ['branch'],
            registry=self.registry
        )

        self.branch_failures = Counter(
            'search_branch_failures_total',
            'Retrieval branch failures',
            ['branch', 'reason'],
            registry=self.registry
        )

        self.cache_hits = Counter(
            'search_cache_hits_total',
            'Total cache hits',
            ['cache_type'],
            registry=self.registry
        )

        self.cache_misses = Counter(
            'search_cache_misses_total',
            'Total cache misses',
            ['cache_type'],
            registry=self.registry
        )

        self.typo_corrections = Counter(
            'search_typo_corrections_total',
            'Query tokens replaced by typo correction',
            registry=self.registry
        )

        self.index_operations = Counter(
            'search_index_operations_total',
            'Index mutations by operation',
            ['operation'],
            registry=self.registry
        )

    def record_search(self, mode: str, duration: float) -> None:
        """Record search metrics.

        duration is expected in seconds to match Prometheus histogram units.
        """
        self.search_requests.labels(mode=mode).inc()
        self.search_duration.labels(mode=mode).observe(duration)

    def record_branch(self, branch: str, duration: float) -> None:
        """Record a completed retrieval branch."""
        self.branch_duration.labels(branch=branch).observe(duration)

    def record_branch_failure(self, branch: str, reason: str) -> None:
        """Record a failed retrieval branch (``timeout`` or ``error``)."""
        self.branch_failures.labels(branch=branch, reason=reason).inc()

    def record_cache_hit(self, cache_type: str) -> None:
        """Record cache hit."""
        self.cache_hits.labels(cache_type=cache_type).inc()

    def record_cache_miss(self, cache_type: str) -> None:
        """Record cache miss."""
        self.cache_misses.labels(cache_type=cache_type).inc()

    def record_typo_corrections(self, count: int) -> None:
        if count:
            self.typo_corrections.inc(count)

    def record_index_operation(self, operation: str, count: int = 1) -> None:
        """Record index mutations (``index``, ``remove``, ``create``, ...)."""
        self.index_operations.labels(operation=operation).inc(count)

    def get_metrics(self) -> str:
        """Get metrics in Prometheus exposition format for scraping."""
        return generate_latest(self.registry).decode('utf-8')
