"""Search retrievers and caches.

Retrievers encapsulate how candidates are fetched from backends before
ranking. ``base`` holds the interfaces; ``keyword``, ``embedding`` and
``cache_manager`` hold the PostgreSQL, HTTP and Redis adapters.
"""
