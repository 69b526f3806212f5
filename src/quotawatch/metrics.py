from prometheus_client import REGISTRY, CollectorRegistry, Counter, Gauge, Histogram

from quotawatch.models import PERCENT_UNKNOWN, Status
from quotawatch.snapshot import Snapshot


class MetricsUpdater:
    """
    exports fetch-cycle health and finalized snapshots as Prometheus
    metrics.
    """

    def __init__(self, registry: "CollectorRegistry" = REGISTRY) -> "None":
        self._registry: "CollectorRegistry" = registry
        self._fetch_duration: "Histogram" = Histogram(
            "quotawatch_fetch_duration_seconds",
            "Duration of one account fetch cycle",
            ["provider"],
            registry=registry,
        )
        self._source_errors: "Counter" = Counter(
            "quotawatch_source_errors_total",
            "Total number of source failures by provider, source and kind",
            ["provider", "source", "kind"],
            registry=registry,
        )
        self._cache_restores: "Counter" = Counter(
            "quotawatch_cache_restores_total",
            "Total number of metric groups restored from the resilience cache",
            ["provider", "group"],
            registry=registry,
        )
        self._fetch_failures: "Counter" = Counter(
            "quotawatch_fetch_failures_total",
            "Total number of fetches that produced no snapshot",
            ["provider"],
            registry=registry,
        )
        self._last_fetch_success: "Gauge" = Gauge(
            "quotawatch_last_fetch_success_timestamp_seconds",
            "Unix timestamp of the last snapshot per account",
            ["provider", "account"],
            registry=registry,
        )
        self._status: "Gauge" = Gauge(
            "quotawatch_snapshot_status",
            "Current snapshot status per account (1 for the active status)",
            ["provider", "account", "status"],
            registry=registry,
        )
        self._used_percent: "Gauge" = Gauge(
            "quotawatch_metric_used_percent",
            "Used percentage of each snapshot metric that has one",
            ["provider", "account", "metric"],
            registry=registry,
        )

        # (provider, account) -> metric keys with an exported percentage
        self._percent_keys: "dict[tuple[str, str], set[str]]" = {}

    def observe_fetch_duration(self, provider: "str", duration_seconds: "float") -> "None":
        self._fetch_duration.labels(provider=provider).observe(duration_seconds)

    def inc_source_error(self, provider: "str", source: "str", kind: "str") -> "None":
        self._source_errors.labels(provider=provider, source=source, kind=kind).inc()

    def inc_cache_restore(self, provider: "str", group: "str") -> "None":
        self._cache_restores.labels(provider=provider, group=group).inc()

    def inc_fetch_failure(self, provider: "str") -> "None":
        self._fetch_failures.labels(provider=provider).inc()

    def update_snapshot(self, snapshot: "Snapshot") -> "None":
        """
        sets the status one-hot gauge and the per-metric percentages
        of a finalized snapshot.
        """
        labels = {"provider": snapshot.provider_id, "account": snapshot.account_id}
        for status in Status:
            self._status.labels(**labels, status=status.value).set(
                1 if snapshot.status == status else 0
            )
        account = (snapshot.provider_id, snapshot.account_id)
        exported: "set[str]" = set()
        for key, metric in snapshot.metrics.items():
            pct = metric.percent()
            if pct == PERCENT_UNKNOWN:
                continue
            self._used_percent.labels(**labels, metric=key).set(pct)
            exported.add(key)
        # drop series of metrics the account no longer reports
        for key in self._percent_keys.get(account, set()) - exported:
            self._used_percent.remove(snapshot.provider_id, snapshot.account_id, key)
        self._percent_keys[account] = exported
        self._last_fetch_success.labels(**labels).set(snapshot.timestamp.timestamp())
