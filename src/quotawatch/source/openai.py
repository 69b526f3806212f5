import asyncio
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from email.utils import parsedate_to_datetime

import httpx
import structlog

from quotawatch.config import AccountConfig
from quotawatch.errors import AuthenticationFailed, RateLimited, SourceError
from quotawatch.models import ModelUsageRecord, make_metric
from quotawatch.snapshot import Contribution
from quotawatch.windows import UsageEvent, apply_windows

logger = structlog.get_logger()

OPENAI_BASE_URL = "https://api.openai.com/v1/organization"

# usage endpoints summed into the request/token windows
USAGE_ENDPOINTS: "list[str]" = ["completions", "embeddings"]

BILLING_GROUP = "billing"
USAGE_GROUP = "model_aggregation"

# one week of hourly buckets
_LOOKBACK = timedelta(days=7)
_BUCKET_LIMIT = 168


def _month_bounds(now: "datetime") -> "tuple[datetime, datetime]":
    now = now.astimezone(timezone.utc)
    start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)
    if start.month == 12:
        end = start.replace(year=start.year + 1, month=1)
    else:
        end = start.replace(month=start.month + 1)
    return start, end


def parse_retry_after(value: "str | None", now: "datetime | None" = None) -> "float | None":
    """
    converts a Retry-After header (delay in seconds or an HTTP date)
    to seconds. Returns None when the header is missing or unreadable.
    """
    if not value:
        return None
    try:
        return max(float(value), 0.0)
    except ValueError:
        pass
    try:
        when = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        return None
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    now = now or datetime.now(timezone.utc)
    return max((when - now).total_seconds(), 0.0)


class OpenAIUsageSource:
    """
    OpenAIUsageSource reads the organization usage and costs endpoints.
    Usage buckets become request/token windows and per-model records
    (cache group "model_aggregation"); costs become the monthly spend
    (cache group "billing"). Either group may fail on its own, in which
    case the coordinator restores it from the resilience cache.
    """

    def __init__(
        self,
        api_key: "str" = "",
        org_id: "str" = "",
        base_url: "str" = OPENAI_BASE_URL,
        client: "httpx.AsyncClient | None" = None,
        monthly_budget_usd: "float | None" = None,
        required: "bool" = False,
    ) -> "None":
        self._api_key = api_key
        self._org_id = org_id
        self._base_url = base_url.rstrip("/")
        self._client: "httpx.AsyncClient" = client or httpx.AsyncClient(timeout=10.0)
        self._monthly_budget = monthly_budget_usd
        self._required = required

    @property
    def name(self) -> "str":
        return "openai_api"

    @property
    def required(self) -> "bool":
        return self._required

    @property
    def cache_groups(self) -> "tuple[str, ...]":
        return (USAGE_GROUP, BILLING_GROUP)

    async def close(self) -> "None":
        """
        closes the underlying HTTP client.
        """
        await self._client.aclose()

    def _headers(self, api_key: "str") -> "dict[str, str]":
        headers = {"Authorization": f"Bearer {api_key}"}
        if self._org_id:
            headers["OpenAI-Organization"] = self._org_id
        return headers

    async def fetch(self, account: "AccountConfig", contribution: "Contribution") -> "bool":
        api_key = account.resolve_credential() or self._api_key
        if not api_key:
            raise AuthenticationFailed("no OpenAI API key configured")
        headers = self._headers(api_key)
        now = contribution.now

        failures: "list[Exception]" = []
        for group, collect in (
            (USAGE_GROUP, self._collect_usage),
            (BILLING_GROUP, self._collect_costs),
        ):
            try:
                await collect(headers, account, contribution, now)
            except (AuthenticationFailed, RateLimited):
                raise
            except (httpx.HTTPError, SourceError, ValueError, KeyError) as exc:
                logger.warning("openai_group_failed", group=group, error=str(exc))
                contribution.set_diagnostic(f"{self.name}.{group}", f"error: {exc}")
                failures.append(exc)

        if len(failures) == len(self.cache_groups):
            raise failures[0]
        return True

    def _check(self, resp: "httpx.Response") -> "None":
        if resp.status_code in (401, 403):
            raise AuthenticationFailed(f"OpenAI rejected credentials ({resp.status_code})")
        if resp.status_code == 429:
            raise RateLimited(
                "OpenAI rate limit reached",
                retry_after=parse_retry_after(resp.headers.get("retry-after")),
            )
        resp.raise_for_status()

    async def _collect_usage(
        self,
        headers: "dict[str, str]",
        account: "AccountConfig",
        contribution: "Contribution",
        now: "datetime",
    ) -> "None":
        start_time = int((now - _LOOKBACK).timestamp())
        end_time = int(now.timestamp())
        tasks = [
            self._fetch_endpoint_usage(path, headers, start_time, end_time)
            for path in USAGE_ENDPOINTS
        ]
        results = await asyncio.gather(*tasks, return_exceptions=True)

        events: "list[UsageEvent]" = []
        errors: "list[BaseException]" = []
        for path, result in zip(USAGE_ENDPOINTS, results):
            if isinstance(result, (AuthenticationFailed, RateLimited)):
                raise result
            if isinstance(result, BaseException):
                logger.error("openai_usage_endpoint_error", endpoint=path, error=str(result))
                errors.append(result)
                continue
            events.extend(result)

        if len(errors) == len(USAGE_ENDPOINTS):
            raise SourceError(f"all usage endpoints failed: {errors[0]}")

        apply_windows(
            contribution,
            "requests",
            events,
            now,
            unit="requests",
            series_key="requests",
            group=USAGE_GROUP,
        )
        apply_windows(
            contribution,
            "tokens",
            events,
            now,
            unit="tokens",
            value=lambda e: e.total_tokens,
            series_key="tokens",
            group=USAGE_GROUP,
        )

        per_model: "dict[str, list[UsageEvent]]" = defaultdict(list)
        for event in events:
            per_model[event.model].append(event)
        for model in sorted(per_model):
            items = per_model[model]
            record = ModelUsageRecord(
                raw_model_id=model,
                raw_source="api",
                window="7d",
                input_tokens=sum(e.input_tokens for e in items),
                output_tokens=sum(e.output_tokens for e in items),
                total_tokens=sum(e.total_tokens for e in items),
                requests=sum(e.value for e in items),
            )
            contribution.append_model_usage(record.with_dimension("provider", account.provider))

    async def _fetch_endpoint_usage(
        self,
        path: "str",
        headers: "dict[str, str]",
        start_time: "int",
        end_time: "int",
    ) -> "list[UsageEvent]":
        """
        fetches hourly usage buckets for one endpoint, handling pagination.
        """
        events: "list[UsageEvent]" = []
        next_page = ""

        while True:
            url = (
                f"{self._base_url}/usage/{path}"
                f"?start_time={start_time}&end_time={end_time}"
                f"&bucket_width=1h&limit={_BUCKET_LIMIT}&group_by=model"
            )
            if next_page:
                url += f"&page={next_page}"

            logger.debug("openai_fetch_usage", url=url)
            resp = await self._client.get(url, headers=headers)
            self._check(resp)
            data = resp.json()

            for bucket in data.get("data", []):
                bucket_start = datetime.fromtimestamp(bucket["start_time"], tz=timezone.utc)
                for result in bucket.get("results", []):
                    events.append(
                        UsageEvent(
                            timestamp=bucket_start,
                            value=float(result.get("num_model_requests", 0)),
                            model=result.get("model") or "unknown",
                            input_tokens=float(result.get("input_tokens", 0)),
                            output_tokens=float(result.get("output_tokens", 0)),
                        )
                    )

            # break if there are no more pages to fetch
            if not data.get("has_more"):
                break
            next_page = data.get("next_page", "")

        logger.debug("openai_usage_endpoint_done", endpoint=path, events=len(events))
        return events

    async def _collect_costs(
        self,
        headers: "dict[str, str]",
        account: "AccountConfig",
        contribution: "Contribution",
        now: "datetime",
    ) -> "None":
        """
        sums the cost buckets of the current calendar month.
        """
        month_start, month_end = _month_bounds(now)
        total = 0.0
        next_page = ""

        while True:
            url = (
                f"{self._base_url}/costs"
                f"?start_time={int(month_start.timestamp())}"
                f"&end_time={int(now.timestamp())}&bucket_width=1d&limit=31"
            )
            if next_page:
                url += f"&page={next_page}"

            logger.debug("openai_fetch_costs", url=url)
            resp = await self._client.get(url, headers=headers)
            self._check(resp)
            data = resp.json()

            for bucket in data.get("data", []):
                for result in bucket.get("results", []):
                    amount = result.get("amount", {})
                    total += float(amount.get("value", 0.0))

            if not data.get("has_more"):
                break
            next_page = data.get("next_page", "")

        contribution.set_metric(
            "monthly_spend",
            make_metric(used=total, limit=self._monthly_budget, unit="USD", window="month"),
            group=BILLING_GROUP,
        )
        contribution.set_reset("monthly_spend", month_end, group=BILLING_GROUP)
        logger.debug("openai_costs_done", total_usd=total)
