"""Request and response shapes for hybrid search.

All types are frozen dataclasses. Nothing is mutated in place: derivations
(``SearchQuery.with_limit``, ``SearchHit.with_score``, ...) return new
instances via ``dataclasses.replace``.
"""

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from ..errors import SearchValidationError


class HitSource(str, Enum):
    """Which retrieval path produced a hit."""
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"


class RetrievalMode(Enum):
    """Closed set of retrieval variants selected by the query toggles."""
    KEYWORD = "keyword"
    SEMANTIC = "semantic"
    HYBRID = "hybrid"

    @classmethod
    def from_toggles(cls, include_keywords: bool, include_semantic: bool) -> "RetrievalMode":
        if include_keywords and include_semantic:
            return cls.HYBRID
        if include_semantic:
            return cls.SEMANTIC
        if include_keywords:
            return cls.KEYWORD
        raise SearchValidationError.invalid("at least one of keyword or semantic retrieval must be enabled")

    @property
    def uses_keywords(self) -> bool:
        return self in (RetrievalMode.KEYWORD, RetrievalMode.HYBRID)

    @property
    def uses_semantic(self) -> bool:
        return self in (RetrievalMode.SEMANTIC, RetrievalMode.HYBRID)


@dataclass(frozen=True)
class SearchHit:
    """A single scored document.

    ``score`` is on the producing source's scale until fusion; ``metadata``
    accumulates provenance (``keyword_score``, ``semantic_score``,
    ``original_score``, ``total_boost``).
    """
    id: str
    document: Mapping[str, Any]
    score: float
    highlights: Tuple[str, ...] = ()
    metadata: Mapping[str, Any] = field(default_factory=dict)
    source: HitSource = HitSource.HYBRID

    def get(self, field_name: str, default: Any = None) -> Any:
        value = self.document.get(field_name)
        return default if value is None else value

    def has(self, field_name: str) -> bool:
        return field_name in self.document

    def with_score(self, score: float, **metadata: Any) -> "SearchHit":
        """Copy with a new score and extra metadata merged over the existing."""
        return replace(self, score=score, metadata={**self.metadata, **metadata})

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "document": dict(self.document),
            "score": self.score,
            "highlights": list(self.highlights),
            "metadata": dict(self.metadata),
            "source": self.source.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchHit":
        return cls(
            id=str(data["id"]),
            document=dict(data.get("document") or {}),
            score=float(data.get("score", 0.0)),
            highlights=tuple(data.get("highlights") or ()),
            metadata=dict(data.get("metadata") or {}),
            source=HitSource(data.get("source", HitSource.HYBRID.value)),
        )


@dataclass(frozen=True)
class FacetEntry:
    """One facet value with its count, accumulated score and nested children."""
    value: Any
    count: int
    score: float = 0.0
    level: int = 0
    children: Tuple["FacetEntry", ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": self.value,
            "count": self.count,
            "score": self.score,
            "level": self.level,
            "children": [child.to_dict() for child in self.children],
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FacetEntry":
        return cls(
            value=data.get("value"),
            count=int(data.get("count", 0)),
            score=float(data.get("score", 0.0)),
            level=int(data.get("level", 0)),
            children=tuple(cls.from_dict(child) for child in data.get("children") or ()),
        )


@dataclass(frozen=True)
class FacetRange:
    """Named numeric bucket. ``min`` is inclusive; ``max`` inclusive unless ``include_max`` is off."""
    min: Optional[float] = None
    max: Optional[float] = None
    include_max: bool = True

    def contains(self, value: float) -> bool:
        if self.min is not None and value < self.min:
            return False
        if self.max is not None:
            if self.include_max:
                return value <= self.max
            return value < self.max
        return True


@dataclass(frozen=True)
class FacetRequest:
    """Facet to compute for a field.

    ``kind`` is one of ``terms``, ``range``, ``hierarchy`` or ``date``.
    """
    field: str
    kind: str = "terms"
    max_count: Optional[int] = None
    ranges: Mapping[str, FacetRange] = field(default_factory=dict)
    separator: str = "/"
    interval: str = "month"


FacetSpec = Union[str, FacetRequest]


def _freeze_filters(filters: Mapping[str, Any]) -> Dict[str, Any]:
    frozen = {}
    for key, value in filters.items():
        if isinstance(value, (set, frozenset, tuple)):
            value = list(value)
        frozen[key] = value
    return frozen


@dataclass(frozen=True)
class SearchQuery:
    """Immutable search request.

    Weights are independent non-negative floats; they are not required to
    sum to 1.
    """
    query: str
    index: str
    limit: int = 10
    offset: int = 0
    filters: Mapping[str, Any] = field(default_factory=dict)
    facets: Tuple[FacetSpec, ...] = ()
    include_keywords: bool = True
    include_semantic: bool = True
    semantic_weight: float = 0.7
    keyword_weight: float = 0.3
    typo_tolerant: bool = True
    sort_by: Mapping[str, str] = field(default_factory=dict)
    highlight_fields: Tuple[str, ...] = ()
    min_score: float = 0.0
    search_after: Optional[str] = None

    def __post_init__(self):
        if self.semantic_weight < 0 or self.keyword_weight < 0:
            raise SearchValidationError.invalid("weights must be non-negative")
        if self.limit < 0 or self.offset < 0:
            raise SearchValidationError.invalid("limit and offset must be non-negative")
        object.__setattr__(self, "filters", _freeze_filters(self.filters))
        object.__setattr__(self, "facets", tuple(self.facets))
        object.__setattr__(self, "highlight_fields", tuple(self.highlight_fields))

    @property
    def mode(self) -> RetrievalMode:
        return RetrievalMode.from_toggles(self.include_keywords, self.include_semantic)

    @property
    def facet_fields(self) -> List[str]:
        return [spec.field if isinstance(spec, FacetRequest) else spec for spec in self.facets]

    def with_query(self, query: str) -> "SearchQuery":
        return replace(self, query=query)

    def with_limit(self, limit: int) -> "SearchQuery":
        return replace(self, limit=limit)

    def with_offset(self, offset: int) -> "SearchQuery":
        return replace(self, offset=offset)

    def with_filters(self, filters: Mapping[str, Any]) -> "SearchQuery":
        """Merge ``filters`` over the existing ones."""
        return replace(self, filters={**self.filters, **filters})

    def with_facets(self, facets: Sequence[FacetSpec]) -> "SearchQuery":
        return replace(self, facets=tuple(facets))

    def with_weights(self, semantic_weight: float, keyword_weight: float) -> "SearchQuery":
        return replace(self, semantic_weight=semantic_weight, keyword_weight=keyword_weight)

    def only_keywords(self) -> "SearchQuery":
        return replace(
            self,
            include_keywords=True,
            include_semantic=False,
            semantic_weight=0.0,
            keyword_weight=1.0,
        )

    def only_semantic(self) -> "SearchQuery":
        return replace(
            self,
            include_keywords=False,
            include_semantic=True,
            semantic_weight=1.0,
            keyword_weight=0.0,
        )

    def echo(self) -> Dict[str, Any]:
        """Parameters reported back in ``SearchResult.query``."""
        return {
            "query": self.query,
            "index": self.index,
            "mode": self.mode.value,
            "semantic_weight": self.semantic_weight,
            "keyword_weight": self.keyword_weight,
            "filters": dict(self.filters),
            "facets": self.facet_fields,
            "min_score": self.min_score,
        }


@dataclass(frozen=True)
class SearchResult:
    """Final, ranked page of hits plus facets and request echo."""
    hits: Tuple[SearchHit, ...]
    total: int
    offset: int
    limit: int
    processing_time: float
    facets: Mapping[str, List[FacetEntry]] = field(default_factory=dict)
    query: Mapping[str, Any] = field(default_factory=dict)
    next_cursor: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "hits", tuple(self.hits))

    @property
    def has_more(self) -> bool:
        return self.offset + self.limit < self.total

    @property
    def is_empty(self) -> bool:
        return not self.hits

    @property
    def first_hit(self) -> Optional[SearchHit]:
        return self.hits[0] if self.hits else None

    def pluck(self, field_name: str) -> List[Any]:
        return [hit.document.get(field_name) for hit in self.hits]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "hits": [hit.to_dict() for hit in self.hits],
            "total": self.total,
            "offset": self.offset,
            "limit": self.limit,
            "processing_time": self.processing_time,
            "facets": {
                name: [entry.to_dict() for entry in entries]
                for name, entries in self.facets.items()
            },
            "query": dict(self.query),
            "next_cursor": self.next_cursor,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SearchResult":
        return cls(
            hits=tuple(SearchHit.from_dict(hit) for hit in data.get("hits") or ()),
            total=int(data.get("total", 0)),
            offset=int(data.get("offset", 0)),
            limit=int(data.get("limit", 0)),
            processing_time=float(data.get("processing_time", 0.0)),
            facets={
                name: [FacetEntry.from_dict(entry) for entry in entries]
                for name, entries in (data.get("facets") or {}).items()
            },
            query=dict(data.get("query") or {}),
            next_cursor=data.get("next_cursor"),
        )
