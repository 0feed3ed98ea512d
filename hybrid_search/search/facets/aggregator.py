"""Facet aggregation over ranked hits.

Facets are computed over the full fused candidate list, not only the page
being returned, so counts describe everything the query matched.

Facet kinds
- terms: value counts with cumulative hit score, most frequent first
- range: named numeric buckets (overlapping buckets are allowed)
- hierarchy: ``a/b/c`` paths folded into a prefix tree
- date: calendar buckets (day, ISO week, month, quarter, year)

Malformed values are skipped rather than raised.
"""

from dataclasses import dataclass
from datetime import datetime
from difflib import SequenceMatcher
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import structlog

from ..models import FacetEntry, FacetRange, FacetRequest, FacetSpec, SearchHit, SearchQuery
from ..ranking.relevance import as_number, parse_datetime

logger = structlog.get_logger("search_service.facets")


@dataclass(frozen=True)
class FacetConfig:
    """Facet aggregation limits."""
    max_facets_per_field: int = 10
    max_suggestions: int = 5
    auto_suggest_fields: Tuple[str, ...] = ("category", "tags", "author", "type")
    min_facet_count: int = 1


class DateInterval(Enum):
    DAY = "day"
    WEEK = "week"
    MONTH = "month"
    QUARTER = "quarter"
    YEAR = "year"

    @classmethod
    def parse(cls, value: Any) -> "DateInterval":
        """Interval from a name; unknown names fall back to month."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            return cls.MONTH


def _facet_key(value: Any) -> Optional[str]:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    if isinstance(value, str):
        return value.strip()
    return None


class FacetAggregator:
    """Builds facet summaries from search hits."""

    def __init__(self, config: Optional[FacetConfig] = None):
        self.config = config or FacetConfig()

    def aggregate(self, hits: Sequence[SearchHit], requests: Sequence[FacetSpec]) -> Dict[str, List[FacetEntry]]:
        """Compute every requested facet; bare field names are terms facets."""
        facets: Dict[str, List[FacetEntry]] = {}

        for spec in requests:
            request = spec if isinstance(spec, FacetRequest) else FacetRequest(field=spec)

            if request.kind == "range":
                facets[request.field] = self.range_facet(hits, request.field, request.ranges)
            elif request.kind == "hierarchy":
                facets[request.field] = self.hierarchical_facet(hits, request.field, request.separator)
            elif request.kind == "date":
                facets[request.field] = self.date_facet(hits, request.field, request.interval)
            elif request.kind == "terms":
                facets[request.field] = self.terms_facet(hits, request.field, request.max_count)
            else:
                logger.warning("Unknown facet kind", field=request.field, kind=request.kind)

        logger.debug("Facets aggregated", fields=list(facets), hit_count=len(hits))

        return facets

    def terms_facet(
        self,
        hits: Sequence[SearchHit],
        field_name: str,
        max_count: Optional[int] = None,
    ) -> List[FacetEntry]:
        counts: Dict[str, List[Any]] = {}

        for hit in hits:
            value = hit.document.get(field_name)
            if value is None:
                continue

            values = value if isinstance(value, (list, tuple, set)) else [value]
            for item in values:
                key = _facet_key(item)
                if key is None or key == "":
                    continue
                if key not in counts:
                    display = key if isinstance(item, bool) else item
                    counts[key] = [display, 0, 0.0]
                counts[key][1] += 1
                counts[key][2] += hit.score

        entries = [
            FacetEntry(value=value, count=count, score=score)
            for value, count, score in counts.values()
            if count >= self.config.min_facet_count
        ]
        entries.sort(key=lambda e: e.count, reverse=True)

        limit = self.config.max_facets_per_field if max_count is None else max_count
        return entries[:limit]

    def range_facet(
        self,
        hits: Sequence[SearchHit],
        field_name: str,
        ranges: Mapping[str, FacetRange],
    ) -> List[FacetEntry]:
        counts = {name: 0 for name in ranges}

        for hit in hits:
            value = as_number(hit.document.get(field_name))
            if value is None:
                continue
            for name, bucket in ranges.items():
                if bucket.contains(value):
                    counts[name] += 1

        return [FacetEntry(value=name, count=count) for name, count in counts.items() if count > 0]

    def hierarchical_facet(
        self,
        hits: Sequence[SearchHit],
        field_name: str,
        separator: str = "/",
    ) -> List[FacetEntry]:
        tree: Dict[str, Dict[str, Any]] = {}

        for hit in hits:
            value = hit.document.get(field_name)
            if not isinstance(value, str) or not value:
                continue

            # Leading, trailing and doubled separators add no level
            parts = [part for part in value.split(separator) if part]

            level = tree
            for part in parts:
                node = level.setdefault(part, {"count": 0, "children": {}})
                node["count"] += 1
                level = node["children"]

        return self._format_tree(tree, 0)

    def _format_tree(self, tree: Dict[str, Dict[str, Any]], level: int) -> List[FacetEntry]:
        return [
            FacetEntry(
                value=value,
                count=node["count"],
                level=level,
                children=tuple(self._format_tree(node["children"], level + 1)),
            )
            for value, node in tree.items()
        ]

    def date_facet(self, hits: Sequence[SearchHit], field_name: str, interval: Any = "month") -> List[FacetEntry]:
        interval = DateInterval.parse(interval)
        counts: Dict[str, int] = {}

        for hit in hits:
            timestamp = parse_datetime(hit.document.get(field_name))
            if timestamp is None:
                continue
            bucket = self.date_bucket(timestamp, interval)
            counts[bucket] = counts.get(bucket, 0) + 1

        return [FacetEntry(value=bucket, count=counts[bucket]) for bucket in sorted(counts)]

    @staticmethod
    def date_bucket(timestamp: datetime, interval: DateInterval) -> str:
        if interval is DateInterval.DAY:
            return timestamp.strftime("%Y-%m-%d")
        if interval is DateInterval.WEEK:
            year, week, _ = timestamp.isocalendar()
            return f"{year}-W{week:02d}"
        if interval is DateInterval.QUARTER:
            return f"{timestamp.year}-Q{(timestamp.month - 1) // 3 + 1}"
        if interval is DateInterval.YEAR:
            return f"{timestamp.year}"
        return timestamp.strftime("%Y-%m")

    @staticmethod
    def query_relevance(query: str, value: Any) -> float:
        """How closely a facet value matches the query text, in [0, 1]."""
        if not query or value is None or value == "":
            return 0.0

        query_lower = query.lower()
        value_lower = str(value).lower()

        if query_lower == value_lower:
            return 1.0
        if value_lower.startswith(query_lower):
            return 0.8
        if query_lower in value_lower:
            return 0.6

        return SequenceMatcher(None, query_lower, value_lower).ratio() * 0.4

    def order_by_relevance(
        self,
        facets: Mapping[str, Sequence[FacetEntry]],
        query: str,
    ) -> Dict[str, List[FacetEntry]]:
        """Reorder each facet by ``count*0.7 + relevance*0.3``."""
        def rank(entry: FacetEntry) -> float:
            return entry.count * 0.7 + self.query_relevance(query, entry.value) * 0.3

        return {
            field_name: sorted(entries, key=rank, reverse=True)
            for field_name, entries in facets.items()
        }

    def suggest(
        self,
        query: str,
        facets: Mapping[str, Sequence[FacetEntry]],
    ) -> Dict[str, List[Dict[str, Any]]]:
        """Facet values containing the query, for the auto-suggest fields."""
        suggestions: Dict[str, List[Dict[str, Any]]] = {}
        query_lower = query.lower()

        for field_name in self.config.auto_suggest_fields:
            if field_name not in facets:
                continue

            candidates = []
            for entry in facets[field_name]:
                if entry.count <= 0 or entry.value is None:
                    continue
                if query_lower not in str(entry.value).lower():
                    continue
                candidates.append({
                    "value": entry.value,
                    "count": entry.count,
                    "field": field_name,
                    "relevance": self.query_relevance(query, entry.value),
                })

            candidates.sort(key=lambda s: s["relevance"] * 0.6 + (s["count"] / 100) * 0.4, reverse=True)
            if candidates:
                suggestions[field_name] = candidates[:self.config.max_suggestions]

        return suggestions

    def apply_facet_filters(self, query: SearchQuery, facet_filters: Mapping[str, Any]) -> SearchQuery:
        """New query with the selected facet values added as list filters."""
        filters: Dict[str, Any] = {}

        for field_name, values in facet_filters.items():
            if isinstance(values, (list, tuple, set, frozenset)):
                if values:
                    filters[field_name] = list(values)
            elif values is not None and values != "":
                filters[field_name] = [values]

        return query.with_filters(filters)
