from datetime import datetime, timedelta

from quotawatch.classifier import (
    LIMITED_THRESHOLD,
    NEAR_LIMIT_THRESHOLD,
    FetchOutcome,
    classify,
    format_metric,
    summarize,
)
from quotawatch.models import Metric, Status
from quotawatch.provider import (
    ProviderSpec,
    with_quota_keys,
    with_stale_after,
    with_summary_priority,
    with_thresholds,
)
from quotawatch.snapshot import Snapshot


def _snapshot(now: "datetime", **metrics: "Metric") -> "Snapshot":
    snap = Snapshot(provider_id="cursor", account_id="acct-1", timestamp=now)
    for key, metric in metrics.items():
        snap.set_metric(key, metric)
    return snap


CURSOR = ProviderSpec(provider_id="cursor")


class TestStatusPriority:
    def test_rate_limit_without_data_is_limited(self, now: "datetime") -> "None":
        outcome = FetchOutcome(rate_limited=["api"])
        status, message = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.LIMITED
        assert "api" in message

    def test_auth_failure_without_data(self, now: "datetime") -> "None":
        outcome = FetchOutcome(auth_failed=["api"])
        status, _ = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.AUTH_REQUIRED

    def test_auth_outranks_rate_limit(self, now: "datetime") -> "None":
        outcome = FetchOutcome(auth_failed=["a"], rate_limited=["b"])
        status, _ = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.AUTH_REQUIRED

    def test_missing_credential(self, now: "datetime") -> "None":
        outcome = FetchOutcome(missing_credential=True)
        status, message = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.AUTH_REQUIRED
        assert message == "no credential configured"

    def test_auth_failure_with_other_data_is_ok(self, now: "datetime") -> "None":
        snap = _snapshot(now, messages_today=Metric(used=12))
        outcome = FetchOutcome(has_data=True, auth_failed=["remote"])
        status, message = classify(snap, outcome, CURSOR, now=now)
        assert status == Status.OK
        assert "messages_today: 12" in message

    def test_rate_limit_with_other_data_is_ok(self, now: "datetime") -> "None":
        snap = _snapshot(now, messages_today=Metric(used=12))
        outcome = FetchOutcome(has_data=True, rate_limited=["remote"])
        status, _ = classify(snap, outcome, CURSOR, now=now)
        assert status == Status.OK

    def test_exhausted_quota_is_limited_even_with_data(self, now: "datetime") -> "None":
        snap = _snapshot(now, requests_quota=Metric(used=97, limit=100))
        status, message = classify(snap, FetchOutcome(has_data=True), CURSOR, now=now)
        assert status == Status.LIMITED
        assert message.startswith("requests_quota nearly exhausted (3% left)")

    def test_required_tool_missing_is_error(self, now: "datetime") -> "None":
        outcome = FetchOutcome(tools_missing=["cli"])
        status, message = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.ERROR
        assert "cli" in message

    def test_limited_outranks_error(self, now: "datetime") -> "None":
        outcome = FetchOutcome(rate_limited=["api"], tools_missing=["cli"])
        status, _ = classify(_snapshot(now), outcome, CURSOR, now=now)
        assert status == Status.LIMITED

    def test_near_limit_stays_ok_and_leads_message(self, now: "datetime") -> "None":
        snap = _snapshot(
            now,
            requests_quota=Metric(used=90, limit=100),
            messages_today=Metric(used=3),
        )
        status, message = classify(snap, FetchOutcome(has_data=True), CURSOR, now=now)
        assert status == Status.OK
        assert message.startswith("near limit: requests_quota 10% left")

    def test_plain_ok(self, now: "datetime") -> "None":
        snap = _snapshot(now, requests_quota=Metric(used=10, limit=100))
        status, _ = classify(snap, FetchOutcome(has_data=True), CURSOR, now=now)
        assert status == Status.OK

    def test_nothing_is_unknown(self, now: "datetime") -> "None":
        status, message = classify(_snapshot(now), FetchOutcome(), CURSOR, now=now)
        assert status == Status.UNKNOWN
        assert message == "no usage data available"


class TestQuotaKeys:
    def test_non_quota_metric_never_limits(self, now: "datetime") -> "None":
        snap = _snapshot(now, monthly_spend=Metric(used=99, limit=100))
        status, _ = classify(snap, FetchOutcome(has_data=True), CURSOR, now=now)
        assert status == Status.OK

    def test_provider_declared_quota_key(self, now: "datetime") -> "None":
        spec = ProviderSpec.build("openai", with_quota_keys("monthly_spend"))
        snap = _snapshot(now, monthly_spend=Metric(used=99, limit=100))
        status, _ = classify(snap, FetchOutcome(has_data=True), spec, now=now)
        assert status == Status.LIMITED

    def test_percent_only_quota(self, now: "datetime") -> "None":
        snap = _snapshot(now, usage_five_hour_quota=Metric(used=98, unit="%"))
        status, _ = classify(snap, FetchOutcome(has_data=True), CURSOR, now=now)
        assert status == Status.LIMITED

    def test_custom_thresholds(self, now: "datetime") -> "None":
        spec = ProviderSpec.build("cursor", with_thresholds(limited=15, near_limit=30))
        snap = _snapshot(now, requests_quota=Metric(used=90, limit=100))
        status, _ = classify(snap, FetchOutcome(has_data=True), spec, now=now)
        assert status == Status.LIMITED

    def test_default_thresholds(self) -> "None":
        assert LIMITED_THRESHOLD == 5.0
        assert NEAR_LIMIT_THRESHOLD == 20.0


class TestMessage:
    def test_summary_follows_priority(self, now: "datetime") -> "None":
        spec = ProviderSpec.build("claude", with_summary_priority("plan_spend", "messages_today"))
        snap = _snapshot(
            now,
            messages_today=Metric(used=12),
            plan_spend=Metric(used=4, limit=20, unit="USD"),
            tokens_today=Metric(used=900),
        )
        _, message = classify(snap, FetchOutcome(has_data=True), spec, now=now)
        assert message == "plan_spend: 4/20 USD (20%), messages_today: 12"

    def test_summary_caps_at_four(self) -> "None":
        metrics = {f"m{i}": Metric(used=i) for i in range(6)}
        summary = summarize(metrics, priority=tuple(metrics))
        assert summary.count(",") == 3

    def test_summary_fallback_prefers_percentages(self) -> "None":
        metrics = {
            "a_count": Metric(used=1),
            "z_quota": Metric(used=1, limit=2),
            "b_count": Metric(used=2),
        }
        assert summarize(metrics) == "z_quota: 1/2 (50%), a_count: 1"

    def test_format_metric_shapes(self) -> "None":
        assert format_metric("cap", Metric(used=40, unit="%")) == "cap: 40%"
        assert format_metric("rpm", Metric(limit=60, remaining=45, unit="requests")) == (
            "rpm: 45/60 requests left"
        )
        assert format_metric("credits", Metric(remaining=3.5, unit="USD")) == "credits: 3.5 USD left"

    def test_stale_restore_is_flagged(self, now: "datetime") -> "None":
        spec = ProviderSpec.build("openai", with_stale_after("billing", timedelta(hours=1)))
        snap = _snapshot(now)
        snap.restore("billing", {"plan_spend": Metric(used=4, limit=20)}, {}, now - timedelta(hours=3))
        _, message = classify(snap, FetchOutcome(has_data=True), spec, now=now)
        assert message.endswith("(cached billing data, 180m old)")

    def test_fresh_restore_is_not_flagged(self, now: "datetime") -> "None":
        spec = ProviderSpec.build("openai", with_stale_after("billing", timedelta(hours=1)))
        snap = _snapshot(now)
        snap.restore("billing", {"plan_spend": Metric(used=4, limit=20)}, {}, now - timedelta(minutes=10))
        _, message = classify(snap, FetchOutcome(has_data=True), spec, now=now)
        assert "cached" not in message
