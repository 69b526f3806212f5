from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from quotawatch.models import PERCENT_UNKNOWN, Metric, Status
from quotawatch.snapshot import Snapshot

if TYPE_CHECKING:
    from quotawatch.provider import ProviderSpec

# remaining headroom (percent) below which a quota metric is LIMITED
LIMITED_THRESHOLD = 5.0
# remaining headroom (percent) below which an OK message leads with a warning
NEAR_LIMIT_THRESHOLD = 20.0

MIN_SUMMARY_METRICS = 2
MAX_SUMMARY_METRICS = 4


@dataclass
class FetchOutcome:
    """
    FetchOutcome carries what the coordinator learned while running the
    sources of one fetch cycle, beyond what ended up in the snapshot.
    """

    has_data: "bool" = False
    # source names that raised AuthenticationFailed
    auth_failed: "list[str]" = field(default_factory=list)
    # source names that raised RateLimited
    rate_limited: "list[str]" = field(default_factory=list)
    # required sources whose tooling is missing, with no cache fallback
    tools_missing: "list[str]" = field(default_factory=list)
    # the account needs a credential and none resolved
    missing_credential: "bool" = False


def is_quota_key(key: "str", spec: "ProviderSpec") -> "bool":
    return key.endswith("_quota") or key in spec.quota_keys


def _quota_headroom(snapshot: "Snapshot", spec: "ProviderSpec") -> "list[tuple[str, float]]":
    out: "list[tuple[str, float]]" = []
    for key in sorted(snapshot.metrics):
        if not is_quota_key(key, spec):
            continue
        left = snapshot.metrics[key].remaining_percent()
        if left != PERCENT_UNKNOWN:
            out.append((key, left))
    # tightest quota first
    out.sort(key=lambda item: item[1])
    return out


def _num(value: "float") -> "str":
    return f"{value:g}"


def format_metric(key: "str", metric: "Metric") -> "str":
    unit = f" {metric.unit}" if metric.unit and metric.unit != "%" else ""
    if metric.unit == "%" and metric.used is not None and metric.limit is None:
        return f"{key}: {metric.used:.0f}%"
    if metric.limit is not None and metric.used is not None:
        return f"{key}: {_num(metric.used)}/{_num(metric.limit)}{unit} ({metric.percent():.0f}%)"
    if metric.limit is not None and metric.remaining is not None:
        return f"{key}: {_num(metric.remaining)}/{_num(metric.limit)}{unit} left"
    if metric.used is not None:
        return f"{key}: {_num(metric.used)}{unit}"
    if metric.remaining is not None:
        return f"{key}: {_num(metric.remaining)}{unit} left"
    return f"{key}: {_num(metric.limit)}{unit} limit"


def summarize(
    metrics: "dict[str, Metric]",
    priority: "tuple[str, ...]" = (),
    exclude: "tuple[str, ...]" = (),
) -> "str":
    """
    builds a short summary from the 2-4 most salient metrics: the
    provider's priority keys first, topped up with metrics that have a
    known percentage, then the rest in key order.
    """
    chosen = [k for k in priority if k in metrics and k not in exclude]
    chosen = chosen[:MAX_SUMMARY_METRICS]

    if len(chosen) < MIN_SUMMARY_METRICS:
        rest = sorted(
            (k for k in metrics if k not in chosen and k not in exclude),
            key=lambda k: (metrics[k].percent() == PERCENT_UNKNOWN, k),
        )
        chosen.extend(rest[: MIN_SUMMARY_METRICS - len(chosen)])

    return ", ".join(format_metric(k, metrics[k]) for k in chosen)


def _stale_notes(snapshot: "Snapshot", spec: "ProviderSpec", now: "datetime") -> "list[str]":
    notes: "list[str]" = []
    for group, observed_at in snapshot.restored.items():
        limit = spec.stale_after.get(group)
        if limit is None:
            continue
        age = now - observed_at
        if age > limit:
            minutes = int(age / timedelta(minutes=1))
            notes.append(f"(cached {group} data, {minutes}m old)")
    return notes


def _join(*parts: "str") -> "str":
    return "; ".join(p for p in parts if p)


def classify(
    snapshot: "Snapshot",
    outcome: "FetchOutcome",
    spec: "ProviderSpec",
    now: "datetime | None" = None,
) -> "tuple[Status, str]":
    """
    maps a completed snapshot and the fetch outcome to one status and
    a message. Rules are evaluated in priority order, first match wins:
    AUTH_REQUIRED, LIMITED, ERROR, OK (near limit), OK, UNKNOWN.
    """
    now = now or datetime.now(timezone.utc)
    headroom = _quota_headroom(snapshot, spec)

    if not outcome.has_data and (outcome.auth_failed or outcome.missing_credential):
        if outcome.auth_failed:
            return (
                Status.AUTH_REQUIRED,
                f"authentication failed: {', '.join(outcome.auth_failed)}",
            )
        return Status.AUTH_REQUIRED, "no credential configured"

    if not outcome.has_data and outcome.rate_limited:
        return Status.LIMITED, f"rate limited: {', '.join(outcome.rate_limited)}"

    exhausted = [(k, left) for k, left in headroom if 0 <= left < spec.limited_threshold]
    if exhausted:
        key, left = exhausted[0]
        summary = summarize(snapshot.metrics, spec.summary_priority, exclude=(key,))
        return Status.LIMITED, _join(f"{key} nearly exhausted ({left:.0f}% left)", summary)

    if outcome.tools_missing:
        return (
            Status.ERROR,
            f"required tooling unavailable: {', '.join(outcome.tools_missing)}",
        )

    if not outcome.has_data:
        return Status.UNKNOWN, "no usage data available"

    stale = " ".join(_stale_notes(snapshot, spec, now))

    near = [
        (k, left)
        for k, left in headroom
        if spec.limited_threshold <= left < spec.near_limit_threshold
    ]
    if near:
        key, left = near[0]
        summary = summarize(snapshot.metrics, spec.summary_priority, exclude=(key,))
        message = _join(f"near limit: {key} {left:.0f}% left", summary)
        return Status.OK, f"{message} {stale}".strip()

    summary = summarize(snapshot.metrics, spec.summary_priority)
    return Status.OK, f"{summary} {stale}".strip() or "ok"
