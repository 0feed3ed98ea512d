"""Exception hierarchy for hybrid search.

Two families matter to callers:

- ``SearchValidationError``: the request itself is incomplete or invalid
  (missing query text or index, negative weights). Surface it, do not retry.
- ``CollaboratorError``: a backend the core depends on (keyword engine,
  vector store, embedding provider, cache) failed. The original exception is
  chained as ``__cause__`` so the root failure stays visible.

Soft-fail conditions (unparsable dates, missing coordinates, empty typo
vocabulary, malformed facet values) are not represented here; components
treat them as neutral inputs instead of raising.
"""

from typing import Optional


class SearchError(Exception):
    """Base exception for search operations."""
    pass


class SearchValidationError(SearchError):
    """Query is missing required parameters or carries invalid values."""

    @classmethod
    def missing(cls, parameter: str) -> "SearchValidationError":
        return cls(f"Search {parameter} must be set before searching")

    @classmethod
    def invalid(cls, reason: str) -> "SearchValidationError":
        return cls(f"Invalid search query: {reason}")


class CollaboratorError(SearchError):
    """A collaborator (backend) call failed.

    Parameters
    - collaborator: Stable name of the failing backend, e.g. ``keyword``
    - message: Human readable description of the failed operation
    """

    def __init__(self, collaborator: str, message: str, operation: Optional[str] = None):
        super().__init__(f"{collaborator}: {message}")
        self.collaborator = collaborator
        self.operation = operation


class KeywordEngineError(CollaboratorError):
    """Keyword (full-text) engine failure."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__("keyword", message, operation)


class EmbeddingError(CollaboratorError):
    """Embedding provider failure."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__("embedding", message, operation)


class CacheError(CollaboratorError):
    """Result cache failure."""

    def __init__(self, message: str, operation: Optional[str] = None):
        super().__init__("cache", message, operation)
