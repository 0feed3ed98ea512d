"""Relevance tuning for ranked search results.

The tuner runs an ordered pipeline of boost factors over an already ranked
hit list. Every factor computes a multiplicative boost (>= 0) from the hit's
document fields and its own configuration; the product of all enabled
factors is the hit's ``total_boost``.

Boosts always apply to the pre-tuning base score, recorded in metadata as
``original_score``. Tuning an already tuned list therefore yields the same
scores instead of compounding.

Factors
- ``FieldBoostFactor``: numeric fields scale as ``1 + v*w``, other non-empty
  values multiply by ``w``
- ``TimeDecayFactor``: exponential decay per 30 days of age, floored
- ``PopularityFactor``: log or linear normalized counters added to 1
- ``CategoryBoostFactor``: exact category multiplier lookup
- ``UserPreferenceFactor``: category/author/language preference multipliers
- ``GeographicFactor``: haversine proximity boost, floored beyond range
- ``QueryFieldFactor``: share of query terms present in configured fields
"""

import math
import re
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import date, datetime, timezone
from typing import Any, Dict, List, Optional, Sequence

import structlog
from pydantic import BaseModel, Field

from ..models import SearchHit, SearchResult

logger = structlog.get_logger("search_service.relevance")

EARTH_RADIUS_KM = 6371.0


class TimeDecayConfig(BaseModel):
    """Recency decay settings."""
    field: str = Field("created_at", description="Document date field")
    decay_rate: float = Field(0.1, ge=0.0, description="Decay per 30 days of age")
    max_age_days: int = Field(365, ge=0, description="Older documents get the floor")
    min_score: float = Field(0.1, ge=0.0, description="Boost floor")


class PopularityConfig(BaseModel):
    """Popularity counters to normalize and add to the boost."""
    fields: List[str] = Field(default_factory=lambda: ["views", "likes", "downloads"])
    weights: Dict[str, float] = Field(default_factory=dict, description="Per-field weight, default 1.0")
    max_popularity: float = Field(1000.0, gt=0.0, description="Value normalized to 1.0")
    log_scale: bool = Field(True, description="Use log(v+1)/log(max+1) instead of linear")


class UserPreferenceProfile(BaseModel):
    """Caller-supplied preferences matched exactly against hit fields."""
    categories: List[str] = Field(default_factory=list)
    authors: List[str] = Field(default_factory=list)
    language: Optional[str] = None
    category_boost: float = Field(1.5, ge=0.0)
    author_boost: float = Field(1.3, ge=0.0)
    language_boost: float = Field(1.2, ge=0.0)


class GeoConfig(BaseModel):
    """Proximity boost around the caller's coordinates."""
    user_lat: Optional[float] = None
    user_lon: Optional[float] = None
    max_distance_km: float = Field(1000.0, gt=0.0)
    boost_strength: float = Field(0.5, ge=0.0)
    min_boost: float = Field(0.5, ge=0.0, description="Boost at or beyond max distance")
    lat_field: str = "latitude"
    lon_field: str = "longitude"


class BoostConfig(BaseModel):
    """Enumerated tuning options. Sections left empty are disabled."""
    field_boosts: Dict[str, float] = Field(default_factory=dict)
    time_decay: Optional[TimeDecayConfig] = None
    popularity: Optional[PopularityConfig] = None
    category_boosts: Dict[str, float] = Field(default_factory=dict)
    category_field: str = "category"
    user_preferences: Optional[UserPreferenceProfile] = None
    geographic: Optional[GeoConfig] = None
    query: Optional[str] = None
    query_field_boosts: Dict[str, float] = Field(default_factory=dict)


def parse_datetime(value: Any) -> Optional[datetime]:
    """Parse a document date; ``None`` when missing or unparsable.

    Accepts ``datetime``, ``date``, epoch seconds and ISO 8601 strings (a
    trailing ``Z`` is read as UTC). Naive values are taken as UTC.
    """
    parsed: Optional[datetime] = None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            parsed = datetime.fromtimestamp(value, tz=timezone.utc)
        except (OverflowError, OSError, ValueError):
            return None
    elif isinstance(value, str) and value.strip():
        text = value.strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None

    if parsed is None:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


NUMERIC_PATTERN = re.compile(r"^\s*[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?\s*$")


def as_number(value: Any) -> Optional[float]:
    """Finite numeric view of a field value (numbers and decimal strings).

    Strings such as ``"nan"``, ``"Infinity"`` or ``"1_000"`` are not numbers.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str) and NUMERIC_PATTERN.match(value):
        number = float(value)
    else:
        return None
    return number if math.isfinite(number) else None


def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres."""
    lat_delta = math.radians(lat2 - lat1)
    lon_delta = math.radians(lon2 - lon1)

    a = (
        math.sin(lat_delta / 2) ** 2
        + math.cos(math.radians(lat1)) * math.cos(math.radians(lat2)) * math.sin(lon_delta / 2) ** 2
    )
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))

    return EARTH_RADIUS_KM * c


def tokenize_query(query: str) -> List[str]:
    return [term for term in query.lower().split() if len(term) > 1]


class BoostFactor(ABC):
    """One stage of the tuning pipeline."""

    name: str = "boost"

    def __init__(self, enabled: bool = True):
        self.enabled = enabled

    @abstractmethod
    def compute(self, hit: SearchHit) -> float:
        """Multiplicative boost for ``hit`` (1.0 is neutral)."""
        raise NotImplementedError


class FieldBoostFactor(BoostFactor):
    name = "field"

    def __init__(self, field_boosts: Dict[str, float], enabled: bool = True):
        super().__init__(enabled)
        self.field_boosts = field_boosts

    def compute(self, hit: SearchHit) -> float:
        boost = 1.0
        for field_name, weight in self.field_boosts.items():
            if not hit.has(field_name):
                continue
            value = hit.document[field_name]
            number = as_number(value)
            if number is not None:
                boost *= 1 + number * weight
            elif value:
                boost *= weight
        return boost


class TimeDecayFactor(BoostFactor):
    name = "time_decay"

    def __init__(self, config: TimeDecayConfig, now: Optional[datetime] = None, enabled: bool = True):
        super().__init__(enabled)
        self.config = config
        self.now = now

    def age_days(self, hit: SearchHit) -> Optional[int]:
        timestamp = parse_datetime(hit.document.get(self.config.field))
        if timestamp is None:
            return None
        now = self.now or datetime.now(timezone.utc)
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return abs(now - timestamp).days

    def compute(self, hit: SearchHit) -> float:
        age = self.age_days(hit)
        if age is None:
            return 1.0
        if age > self.config.max_age_days:
            return self.config.min_score
        return max(self.config.min_score, math.exp(-self.config.decay_rate * (age / 30)))


class PopularityFactor(BoostFactor):
    name = "popularity"

    def __init__(self, config: PopularityConfig, enabled: bool = True):
        super().__init__(enabled)
        self.config = config

    def normalize(self, value: float) -> float:
        max_value = self.config.max_popularity
        if self.config.log_scale and value > 0:
            return math.log(value + 1) / math.log(max_value + 1)
        return min(max(value / max_value, 0.0), 1.0)

    def compute(self, hit: SearchHit) -> float:
        boost = 1.0
        for field_name in self.config.fields:
            value = as_number(hit.document.get(field_name))
            if value is None:
                continue
            weight = self.config.weights.get(field_name, 1.0)
            boost += self.normalize(value) * weight
        return boost


class CategoryBoostFactor(BoostFactor):
    name = "category"

    def __init__(self, category_boosts: Dict[str, float], category_field: str = "category", enabled: bool = True):
        super().__init__(enabled)
        self.category_boosts = category_boosts
        self.category_field = category_field

    def compute(self, hit: SearchHit) -> float:
        category = hit.document.get(self.category_field)
        if isinstance(category, str) and category in self.category_boosts:
            return self.category_boosts[category]
        return 1.0


class UserPreferenceFactor(BoostFactor):
    name = "user_preferences"

    def __init__(self, profile: UserPreferenceProfile, enabled: bool = True):
        super().__init__(enabled)
        self.profile = profile

    def compute(self, hit: SearchHit) -> float:
        profile = self.profile
        boost = 1.0
        if profile.categories and hit.get("category") in profile.categories:
            boost *= profile.category_boost
        if profile.authors and hit.get("author") in profile.authors:
            boost *= profile.author_boost
        if profile.language and hit.get("language") == profile.language:
            boost *= profile.language_boost
        return boost


class GeographicFactor(BoostFactor):
    name = "geographic"

    def __init__(self, config: GeoConfig, enabled: bool = True):
        super().__init__(enabled)
        self.config = config

    def distance_km(self, hit: SearchHit) -> Optional[float]:
        config = self.config
        if config.user_lat is None or config.user_lon is None:
            return None
        lat = as_number(hit.document.get(config.lat_field))
        lon = as_number(hit.document.get(config.lon_field))
        if lat is None or lon is None:
            return None
        return haversine_km(config.user_lat, config.user_lon, lat, lon)

    def compute(self, hit: SearchHit) -> float:
        distance = self.distance_km(hit)
        if distance is None:
            return 1.0
        if distance >= self.config.max_distance_km:
            return self.config.min_boost
        return 1.0 + self.config.boost_strength * (1 - distance / self.config.max_distance_km)


class QueryFieldFactor(BoostFactor):
    name = "query_fields"

    def __init__(self, query: str, field_boosts: Dict[str, float], enabled: bool = True):
        super().__init__(enabled)
        self.terms = tokenize_query(query)
        self.field_boosts = field_boosts

    def compute(self, hit: SearchHit) -> float:
        if not self.terms:
            return 1.0
        boost = 1.0
        for field_name, field_boost in self.field_boosts.items():
            if not hit.has(field_name):
                continue
            value = str(hit.document.get(field_name) or "").lower()
            matches = sum(1 for term in self.terms if term in value)
            if matches:
                boost += field_boost * (matches / len(self.terms))
        return boost


class RelevanceTuner:
    """Applies the boost pipeline to ranked hits."""

    def __init__(self, factors: Optional[Sequence[BoostFactor]] = None):
        self.factors: List[BoostFactor] = list(factors or [])

    @classmethod
    def from_config(cls, config: BoostConfig, now: Optional[datetime] = None) -> "RelevanceTuner":
        """Build the pipeline in its canonical order from ``config``."""
        factors: List[BoostFactor] = []

        if config.field_boosts:
            factors.append(FieldBoostFactor(config.field_boosts))
        if config.time_decay:
            factors.append(TimeDecayFactor(config.time_decay, now=now))
        if config.popularity:
            factors.append(PopularityFactor(config.popularity))
        if config.category_boosts:
            factors.append(CategoryBoostFactor(config.category_boosts, config.category_field))
        if config.user_preferences:
            factors.append(UserPreferenceFactor(config.user_preferences))
        if config.geographic:
            factors.append(GeographicFactor(config.geographic))
        if config.query and config.query_field_boosts:
            factors.append(QueryFieldFactor(config.query, config.query_field_boosts))

        return cls(factors)

    @property
    def enabled_factors(self) -> List[BoostFactor]:
        return [factor for factor in self.factors if factor.enabled]

    def explain(self, hit: SearchHit) -> Dict[str, float]:
        """Per-factor boosts for ``hit``."""
        return {factor.name: factor.compute(hit) for factor in self.enabled_factors}

    def total_boost(self, hit: SearchHit) -> float:
        boost = 1.0
        for factor in self.enabled_factors:
            boost *= max(0.0, factor.compute(hit))
        return boost

    def tune_hit(self, hit: SearchHit) -> SearchHit:
        base_score = float(hit.metadata.get("original_score", hit.score))
        total_boost = self.total_boost(hit)
        boosted = base_score * total_boost

        return hit.with_score(
            boosted,
            original_score=base_score,
            total_boost=total_boost,
            boost_applied=boosted != base_score,
        )

    def tune_hits(self, hits: Sequence[SearchHit]) -> List[SearchHit]:
        """Boost every hit and re-sort by the new score (stable)."""
        tuned = [self.tune_hit(hit) for hit in hits]
        tuned.sort(key=lambda h: h.score, reverse=True)

        logger.debug(
            "Relevance tuning applied",
            hit_count=len(tuned),
            factors=[factor.name for factor in self.enabled_factors]
        )

        return tuned

    def tune(self, result: SearchResult) -> SearchResult:
        """Tune a result's hits; facets and totals are kept as they are."""
        return replace(
            result,
            hits=tuple(self.tune_hits(result.hits)),
            query={**result.query, "relevance_tuning_applied": True},
        )
