"""Common utilities shared by the coordinator and the indexer.

Includes:
- ``config``: Pydantic-based configuration from environment variables.
- ``logging``: structured logging setup with structlog.
- ``metrics``: Prometheus metrics collector.
- ``events``: Redis pub/sub index update events and publisher.
- ``filters``: metadata filter matching shared by the stores and the coordinator.

Import pattern:
- from hybrid_search.common.config import SearchConfig
- from hybrid_search.common.logging import configure_logging
"""
