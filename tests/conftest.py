from datetime import datetime, timezone

import pytest
from prometheus_client import CollectorRegistry


@pytest.fixture()
def registry() -> "CollectorRegistry":
    """
    fresh Prometheus registry to avoid cross-test state.
    """
    return CollectorRegistry()


@pytest.fixture()
def now() -> "datetime":
    """
    fixed, timezone-aware reference time. UTC keeps calendar-day and
    block boundaries independent of the machine running the tests.
    """
    return datetime(2026, 3, 10, 12, 30, tzinfo=timezone.utc)
