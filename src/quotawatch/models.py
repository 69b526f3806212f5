import math
from dataclasses import dataclass, field, replace
from enum import StrEnum
from types import MappingProxyType
from typing import Mapping

# returned by Metric.percent() when no percentage can be derived
PERCENT_UNKNOWN = -1.0


class Status(StrEnum):
    OK = "OK"
    AUTH_REQUIRED = "AUTH_REQUIRED"
    LIMITED = "LIMITED"
    ERROR = "ERROR"
    UNKNOWN = "UNKNOWN"


@dataclass(frozen=True, slots=True)
class Metric:
    """
    Metric represents one measured quantity reported by a source.

    Absent fields mean "not reported by the source", never zero. At
    least one of limit, remaining and used must be present.
    """

    limit: "float | None" = None
    remaining: "float | None" = None
    used: "float | None" = None
    # "requests", "tokens", "USD", "%", ...
    unit: "str" = ""
    # free-form label: "5h", "1d", "7d", "today", "all-time", "current", ...
    window: "str" = ""

    def __post_init__(self) -> "None":
        if self.limit is None and self.remaining is None and self.used is None:
            raise ValueError("metric needs at least one of limit, remaining, used")

    def percent(self) -> "float":
        """
        returns the used percentage (0-100), or PERCENT_UNKNOWN when
        it can't be derived from the reported fields.
        """
        if self.used is not None and self.limit is not None and self.limit > 0:
            return self.used / self.limit * 100
        if self.remaining is not None and self.limit is not None and self.limit > 0:
            return (self.limit - self.remaining) / self.limit * 100
        if self.unit == "%" and self.used is not None:
            return self.used
        return PERCENT_UNKNOWN

    def remaining_percent(self) -> "float":
        """
        returns the headroom left (100 - percent()), or PERCENT_UNKNOWN.
        """
        used = self.percent()
        if used == PERCENT_UNKNOWN:
            return PERCENT_UNKNOWN
        return 100 - used


def _as_float(value: "float | int | None") -> "float | None":
    if value is None:
        return None
    value = float(value)
    if math.isnan(value):
        return None
    return value


def make_metric(
    *,
    limit: "float | int | None" = None,
    remaining: "float | int | None" = None,
    used: "float | int | None" = None,
    percent: "float | int | None" = None,
    unit: "str" = "",
    window: "str" = "",
) -> "Metric":
    """
    normalizes whatever subset of limit/remaining/used/percent a source
    has into a Metric. The missing one of limit/remaining/used is only
    computed when the other two are known, or when one of them is known
    together with the used percentage. Percent-only input is stored as
    used=percent with unit "%"; no limit is synthesized for it.
    """
    limit = _as_float(limit)
    remaining = _as_float(remaining)
    used = _as_float(used)
    percent = _as_float(percent)

    if limit is None and remaining is None and used is None:
        if percent is None:
            raise ValueError("make_metric called without any value")
        return Metric(used=percent, unit="%", window=window)

    # a single absolute value plus a percentage pins down the other two
    if percent is not None and [limit, remaining, used].count(None) == 2:
        share = percent / 100
        if limit is not None:
            used = limit * share
        elif used is not None and share > 0:
            limit = used / share
        elif remaining is not None and share < 1:
            limit = remaining / (1 - share)

    if used is None and limit is not None and remaining is not None:
        used = limit - remaining
    elif remaining is None and limit is not None and used is not None:
        remaining = limit - used
    elif limit is None and used is not None and remaining is not None:
        limit = used + remaining

    return Metric(limit=limit, remaining=remaining, used=used, unit=unit, window=window)


@dataclass(frozen=True, slots=True)
class TimePoint:
    # calendar day, YYYY-MM-DD
    date: "str"
    value: "float"


@dataclass(frozen=True, slots=True)
class ModelUsageRecord:
    """
    ModelUsageRecord is a per-(model, source, window) usage breakdown.
    Records are never deduplicated: two records for the same model
    from different sources carry different provenance.
    """

    raw_model_id: "str"
    # api | jsonl | sqlite | ...
    raw_source: "str" = ""
    window: "str" = ""
    input_tokens: "float | None" = None
    output_tokens: "float | None" = None
    total_tokens: "float | None" = None
    requests: "float | None" = None
    cost_usd: "float | None" = None
    # provenance tags, e.g. provider, estimation
    dimensions: "Mapping[str, str]" = field(
        default_factory=lambda: MappingProxyType({})
    )

    def with_dimension(self, key: "str", value: "str") -> "ModelUsageRecord":
        """
        returns a copy carrying the extra dimension. Blank keys or
        values are ignored.
        """
        if not key.strip() or not value.strip():
            return self
        dims = dict(self.dimensions)
        dims[key] = value
        return replace(self, dimensions=MappingProxyType(dims))
