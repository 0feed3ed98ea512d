"""Search package.

Layout:
- ``models``: query, hit and result types.
- ``intelligence``: query normalization and typo tolerance.
- ``ranking``: result fusion and relevance tuning.
- ``facets``: facet aggregation and suggestions.
- ``retrievers``: collaborator interfaces and their adapters.
- ``hybrid``: search coordination and index maintenance.
"""
