from dataclasses import dataclass, field
from datetime import datetime
from types import MappingProxyType
from typing import Any

from quotawatch.errors import SnapshotFinalizedError
from quotawatch.models import PERCENT_UNKNOWN, Metric, ModelUsageRecord, Status, TimePoint


@dataclass
class Snapshot:
    """
    Snapshot is the fused usage record for one account at one point in
    time. It is built empty at the start of a fetch cycle, filled by the
    coordinator from each source's Contribution, then finalized exactly
    once. After finalize() the snapshot is read-only.
    """

    provider_id: "str"
    account_id: "str"
    timestamp: "datetime"
    metrics: "dict[str, Metric]" = field(default_factory=dict)
    # when a named window is expected to roll over
    resets: "dict[str, datetime]" = field(default_factory=dict)
    raw: "dict[str, str]" = field(default_factory=dict)
    # the subset of raw the classifier relies on (block_start, block_end, ...)
    attributes: "dict[str, str]" = field(default_factory=dict)
    # non-fatal error text keyed by source name
    diagnostics: "dict[str, str]" = field(default_factory=dict)
    daily_series: "dict[str, list[TimePoint]]" = field(default_factory=dict)
    model_usage: "list[ModelUsageRecord]" = field(default_factory=list)
    # cache group -> observed_at of the values restored from cache
    restored: "dict[str, datetime]" = field(default_factory=dict)
    status: "Status | None" = None
    message: "str" = ""
    _finalized: "bool" = field(default=False, repr=False, compare=False)

    @property
    def finalized(self) -> "bool":
        return self._finalized

    def _check_open(self) -> "None":
        if self._finalized:
            raise SnapshotFinalizedError(
                f"snapshot {self.provider_id}/{self.account_id} is finalized"
            )

    def set_metric(self, key: "str", metric: "Metric") -> "None":
        self._check_open()
        self.metrics[key] = metric

    def set_reset(self, key: "str", when: "datetime") -> "None":
        self._check_open()
        self.resets[key] = when

    def set_raw(self, key: "str", value: "str") -> "None":
        self._check_open()
        self.raw[key] = value

    def set_attribute(self, key: "str", value: "str") -> "None":
        self._check_open()
        self.attributes[key] = value
        self.raw[key] = value

    def set_diagnostic(self, source_name: "str", text: "str") -> "None":
        self._check_open()
        self.diagnostics[source_name] = text

    def append_model_usage(self, record: "ModelUsageRecord") -> "None":
        self._check_open()
        if not record.raw_model_id.strip():
            return
        self.model_usage.append(record)

    def append_daily_point(self, series_key: "str", date: "str", value: "float") -> "None":
        self._check_open()
        self.daily_series.setdefault(series_key, []).append(
            TimePoint(date=date, value=float(value))
        )

    def merge(self, contribution: "Contribution") -> "None":
        """
        commits a source's staged writes. Keys already present are
        replaced (last writer wins), nothing is ever removed.
        """
        for key, metric in contribution.metrics.items():
            self.set_metric(key, metric)
        for key, when in contribution.resets.items():
            self.set_reset(key, when)
        for key, value in contribution.raw.items():
            self.set_raw(key, value)
        for key, value in contribution.attributes.items():
            self.set_attribute(key, value)
        for key, text in contribution.diagnostics.items():
            self.set_diagnostic(key, text)
        for record in contribution.model_usage:
            self.append_model_usage(record)
        for series_key, point in contribution.daily_points:
            self.append_daily_point(series_key, point.date, point.value)

    def restore(
        self,
        group: "str",
        metrics: "dict[str, Metric]",
        resets: "dict[str, datetime]",
        observed_at: "datetime",
    ) -> "None":
        """
        merges cached values under the same keys the source used.
        """
        self._check_open()
        for key, metric in metrics.items():
            self.set_metric(key, metric)
        for key, when in resets.items():
            self.set_reset(key, when)
        self.restored[group] = observed_at

    def finalize(self, status: "Status", message: "str") -> "Snapshot":
        """
        closes the daily series (sorted by date, last write wins for
        duplicate dates), sets status and message, and freezes the
        snapshot.
        """
        self._check_open()
        closed: "dict[str, tuple[TimePoint, ...]]" = {}
        for series_key, points in self.daily_series.items():
            by_date: "dict[str, TimePoint]" = {}
            for point in points:
                by_date[point.date] = point
            closed[series_key] = tuple(by_date[d] for d in sorted(by_date))

        self.status = status
        self.message = message
        self.metrics = MappingProxyType(dict(self.metrics))
        self.resets = MappingProxyType(dict(self.resets))
        self.raw = MappingProxyType(dict(self.raw))
        self.attributes = MappingProxyType(dict(self.attributes))
        self.diagnostics = MappingProxyType(dict(self.diagnostics))
        self.daily_series = MappingProxyType(closed)
        self.model_usage = tuple(self.model_usage)
        self.restored = MappingProxyType(dict(self.restored))
        self._finalized = True
        return self

    def worst_remaining_percent(self) -> "float":
        """
        returns the lowest known remaining percentage across all
        metrics, or PERCENT_UNKNOWN when no metric has one.
        """
        known = [
            m.remaining_percent()
            for m in self.metrics.values()
            if m.remaining_percent() != PERCENT_UNKNOWN
        ]
        if not known:
            return PERCENT_UNKNOWN
        return min(known)

    def as_dict(self) -> "dict[str, Any]":
        """
        returns a plain, JSON-serializable view for the consumer layer.
        """
        return {
            "provider_id": self.provider_id,
            "account_id": self.account_id,
            "timestamp": self.timestamp.isoformat(),
            "status": str(self.status) if self.status else None,
            "message": self.message,
            "metrics": {
                key: {
                    "limit": m.limit,
                    "remaining": m.remaining,
                    "used": m.used,
                    "unit": m.unit,
                    "window": m.window,
                }
                for key, m in self.metrics.items()
            },
            "resets": {key: when.isoformat() for key, when in self.resets.items()},
            "raw": dict(self.raw),
            "attributes": dict(self.attributes),
            "diagnostics": dict(self.diagnostics),
            "daily_series": {
                key: [{"date": p.date, "value": p.value} for p in points]
                for key, points in self.daily_series.items()
            },
            "model_usage": [
                {
                    "raw_model_id": r.raw_model_id,
                    "raw_source": r.raw_source,
                    "window": r.window,
                    "input_tokens": r.input_tokens,
                    "output_tokens": r.output_tokens,
                    "total_tokens": r.total_tokens,
                    "requests": r.requests,
                    "cost_usd": r.cost_usd,
                    "dimensions": dict(r.dimensions),
                }
                for r in self.model_usage
            ],
            "restored": {group: ts.isoformat() for group, ts in self.restored.items()},
        }


class Contribution:
    """
    Contribution is the writer a source receives. Writes are staged
    here and only merged into the Snapshot once the source returns
    normally, so a failed or cancelled source leaves nothing behind.

    Metrics and resets may be tagged with a cache group; the coordinator
    stores each written group in the resilience cache.
    """

    def __init__(self, source: "str", now: "datetime") -> "None":
        self.source = source
        # reference time of the fetch cycle, shared by every source
        self.now = now
        self.metrics: "dict[str, Metric]" = {}
        self.resets: "dict[str, datetime]" = {}
        self.raw: "dict[str, str]" = {}
        self.attributes: "dict[str, str]" = {}
        self.diagnostics: "dict[str, str]" = {}
        self.model_usage: "list[ModelUsageRecord]" = []
        self.daily_points: "list[tuple[str, TimePoint]]" = []
        self._group_metrics: "dict[str, list[str]]" = {}
        self._group_resets: "dict[str, list[str]]" = {}

    def set_metric(self, key: "str", metric: "Metric", group: "str | None" = None) -> "None":
        self.metrics[key] = metric
        if group:
            keys = self._group_metrics.setdefault(group, [])
            if key not in keys:
                keys.append(key)

    def set_reset(self, key: "str", when: "datetime", group: "str | None" = None) -> "None":
        self.resets[key] = when
        if group:
            keys = self._group_resets.setdefault(group, [])
            if key not in keys:
                keys.append(key)

    def set_raw(self, key: "str", value: "str") -> "None":
        self.raw[key] = value

    def set_attribute(self, key: "str", value: "str") -> "None":
        self.attributes[key] = value

    def set_diagnostic(self, source_name: "str", text: "str") -> "None":
        self.diagnostics[source_name] = text

    def append_model_usage(self, record: "ModelUsageRecord") -> "None":
        self.model_usage.append(record)

    def append_daily_point(self, series_key: "str", date: "str", value: "float") -> "None":
        self.daily_points.append((series_key, TimePoint(date=date, value=float(value))))

    @property
    def groups(self) -> "list[str]":
        """
        returns the cache groups this contribution wrote, in write order.
        """
        seen = list(self._group_metrics)
        seen.extend(g for g in self._group_resets if g not in self._group_metrics)
        return seen

    def group_values(
        self, group: "str"
    ) -> "tuple[dict[str, Metric], dict[str, datetime]]":
        metrics = {k: self.metrics[k] for k in self._group_metrics.get(group, [])}
        resets = {k: self.resets[k] for k in self._group_resets.get(group, [])}
        return metrics, resets
