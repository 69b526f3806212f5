from typing import Protocol

from quotawatch.config import AccountConfig
from quotawatch.snapshot import Contribution


class Source(Protocol):
    """
    Source stands as the common protocol every data source of a
    provider must satisfy: a local service API, an on-disk database,
    a log directory, a remote billing API.

    fetch() writes into the contribution and returns True when it
    produced usable data, False when it had nothing to report.
    Structured failures are raised as AuthenticationFailed,
    RateLimited or ToolUnavailable; anything else is a transient
    error. Sources never set the snapshot status.
    """

    @property
    def name(self) -> "str": ...

    @property
    def required(self) -> "bool": ...

    # cache groups this source writes; restored from cache when the
    # source fails or leaves a group unwritten
    @property
    def cache_groups(self) -> "tuple[str, ...]": ...

    async def fetch(
        self,
        account: "AccountConfig",
        contribution: "Contribution",
    ) -> "bool": ...
