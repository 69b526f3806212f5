import asyncio
import time
from datetime import datetime
from typing import Callable, Mapping, Sequence

import structlog

from quotawatch.cache import SnapshotCache
from quotawatch.classifier import FetchOutcome, classify
from quotawatch.config import AccountConfig
from quotawatch.errors import (
    AccountConfigError,
    AuthenticationFailed,
    FetchError,
    RateLimited,
    RequiredSourceError,
    ToolUnavailable,
)
from quotawatch.metrics import MetricsUpdater
from quotawatch.provider import ProviderSpec
from quotawatch.snapshot import Contribution, Snapshot
from quotawatch.source.base import Source

logger = structlog.get_logger()

_DEFAULT_FETCH_TIMEOUT_SECONDS = 10.0


def _local_now() -> "datetime":
    return datetime.now().astimezone()


class Coordinator:
    """
    Coordinator is responsible for fusing the sources of a provider
    into one Snapshot per account. Sources run sequentially in their
    declared order, so later sources override earlier ones key by key.
    A failing source only ever adds a diagnostic (and a cache restore
    of its last good values); it never stops the remaining sources.

    Accounts are fetched concurrently by refresh_all(), while fetches
    of the same account are serialized by a per-account lock.
    """

    def __init__(
        self,
        sources: "Mapping[str, Sequence[Source]]",
        cache: "SnapshotCache",
        metrics_updater: "MetricsUpdater | None" = None,
        specs: "Mapping[str, ProviderSpec] | None" = None,
        fetch_timeout_seconds: "float" = _DEFAULT_FETCH_TIMEOUT_SECONDS,
        interval_seconds: "int" = 60,
        clock: "Callable[[], datetime]" = _local_now,
    ) -> "None":
        self._sources: "dict[str, tuple[Source, ...]]" = {
            provider: tuple(items) for provider, items in sources.items()
        }
        self._cache = cache
        self._metrics = metrics_updater
        self._specs: "dict[str, ProviderSpec]" = dict(specs or {})
        self._timeout = fetch_timeout_seconds
        self._interval = interval_seconds
        self._clock = clock
        self._account_locks: "dict[str, asyncio.Lock]" = {}
        self._snapshots: "dict[str, Snapshot]" = {}
        self._stop_event: "asyncio.Event" = asyncio.Event()

    def stop(self) -> "None":
        """
        signals the refresh loop to stop after the current cycle.
        """
        self._stop_event.set()

    async def close(self) -> "None":
        """
        closes every source that holds resources (HTTP clients, ...).
        """
        seen: "set[int]" = set()
        for items in self._sources.values():
            for source in items:
                close = getattr(source, "close", None)
                if close is None or id(source) in seen:
                    continue
                seen.add(id(source))
                await close()

    def snapshots(self) -> "dict[str, Snapshot]":
        """
        returns the latest finalized snapshot per account id.
        """
        return dict(self._snapshots)

    def spec_for(self, provider_id: "str") -> "ProviderSpec":
        return self._specs.get(provider_id) or ProviderSpec(provider_id=provider_id)

    def _validate(self, account: "AccountConfig") -> "None":
        if not account.id.strip():
            raise AccountConfigError("account id is empty")
        if not account.provider.strip():
            raise AccountConfigError(f"account {account.id!r} has no provider")
        if account.provider not in self._sources:
            raise AccountConfigError(
                f"no sources registered for provider {account.provider!r}"
            )

    def _account_lock(self, account_id: "str") -> "asyncio.Lock":
        lock = self._account_locks.get(account_id)
        if lock is None:
            lock = asyncio.Lock()
            self._account_locks[account_id] = lock
        return lock

    async def fetch(self, account: "AccountConfig") -> "Snapshot":
        """
        runs one fetch cycle for an account and returns the finalized
        snapshot. Raises FetchError subclasses when no snapshot can be
        produced at all.
        """
        self._validate(account)
        async with self._account_lock(account.id):
            with structlog.contextvars.bound_contextvars(
                provider=account.provider, account=account.id
            ):
                snapshot = await self._fetch_locked(account)
        self._snapshots[account.id] = snapshot
        return snapshot

    async def _fetch_locked(self, account: "AccountConfig") -> "Snapshot":
        cycle_start = time.monotonic()
        now = self._clock()
        spec = self.spec_for(account.provider)
        snapshot = Snapshot(
            provider_id=account.provider,
            account_id=account.id,
            timestamp=now,
        )
        outcome = FetchOutcome()

        if account.requires_credential and not account.resolve_credential():
            outcome.missing_credential = True
            logger.warning("account_credential_missing", auth=account.auth)

        deadline = asyncio.get_running_loop().time() + self._timeout
        # required sources that failed without any fallback
        unreachable: "list[tuple[str, BaseException]]" = []

        for source in self._sources[account.provider]:
            contributed, failure = await self._run_source(
                source, account, snapshot, outcome, now, deadline
            )
            outcome.has_data = outcome.has_data or contributed
            if (
                failure is not None
                and not contributed
                and source.required
                and not isinstance(failure, (AuthenticationFailed, RateLimited, ToolUnavailable))
            ):
                unreachable.append((source.name, failure))

        if unreachable and not outcome.has_data:
            name, cause = unreachable[0]
            raise RequiredSourceError(name, cause)

        status, message = classify(snapshot, outcome, spec, now=now)
        snapshot.finalize(status, message)

        duration = time.monotonic() - cycle_start
        if self._metrics:
            self._metrics.observe_fetch_duration(account.provider, duration)
            self._metrics.update_snapshot(snapshot)

        logger.info(
            "fetch_complete",
            status=str(status),
            has_data=outcome.has_data,
            diagnostics=len(snapshot.diagnostics),
            duration=round(duration, 3),
        )
        return snapshot

    async def _run_source(
        self,
        source: "Source",
        account: "AccountConfig",
        snapshot: "Snapshot",
        outcome: "FetchOutcome",
        now: "datetime",
        deadline: "float",
    ) -> "tuple[bool, BaseException | None]":
        """
        runs a single source and merges its contribution. Returns
        whether the source (or the cache standing in for it)
        contributed, and the failure if there was one.
        """
        contribution = Contribution(source.name, now)
        try:
            async with asyncio.timeout_at(deadline):
                produced = await source.fetch(account, contribution)
        except AuthenticationFailed as exc:
            outcome.auth_failed.append(source.name)
            failure, kind = exc, "auth"
        except RateLimited as exc:
            outcome.rate_limited.append(source.name)
            failure, kind = exc, "rate_limit"
        except ToolUnavailable as exc:
            failure, kind = exc, "tool_unavailable"
        except TimeoutError as exc:
            failure, kind = exc, "timeout"
        except Exception as exc:
            failure, kind = exc, "error"
        else:
            if not produced:
                logger.debug("source_no_data", source=source.name)
                return self._restore(snapshot, account, source), None

            snapshot.merge(contribution)
            for group in contribution.groups:
                metrics, resets = contribution.group_values(group)
                self._cache.put(account.id, group, metrics, resets, now)
            # groups the source declares but left unwritten this time
            self._restore(snapshot, account, source, skip=contribution.groups)
            logger.debug(
                "source_contributed",
                source=source.name,
                metrics=len(contribution.metrics),
            )
            return True, None

        text = str(failure) or type(failure).__name__
        if kind == "timeout":
            text = f"timed out after {self._timeout:g}s"
        snapshot.set_diagnostic(source.name, f"{kind}: {text}")
        if self._metrics:
            self._metrics.inc_source_error(account.provider, source.name, kind)

        if kind == "error":
            logger.warning("source_fetch_error", source=source.name, exc_info=failure)
        else:
            logger.warning("source_fetch_failed", source=source.name, kind=kind, error=text)

        restored = self._restore(snapshot, account, source)
        if kind == "tool_unavailable" and source.required and not restored:
            outcome.tools_missing.append(source.name)
        return restored, failure

    def _restore(
        self,
        snapshot: "Snapshot",
        account: "AccountConfig",
        source: "Source",
        skip: "Sequence[str]" = (),
    ) -> "bool":
        restored = False
        for group in source.cache_groups:
            if group in skip:
                continue
            cached = self._cache.get(account.id, group)
            if cached is None:
                continue
            snapshot.restore(group, dict(cached.metrics), dict(cached.resets), cached.observed_at)
            restored = True
            if self._metrics:
                self._metrics.inc_cache_restore(account.provider, group)
            logger.info(
                "cache_restored",
                source=source.name,
                group=group,
                observed_at=cached.observed_at.isoformat(),
            )
        return restored

    async def refresh_all(
        self, accounts: "Sequence[AccountConfig]"
    ) -> "dict[str, Snapshot]":
        """
        fetches every account concurrently. An account whose fetch
        fails hard keeps its previous snapshot.
        """
        results = await asyncio.gather(
            *(self.fetch(account) for account in accounts),
            return_exceptions=True,
        )
        for account, result in zip(accounts, results):
            if isinstance(result, FetchError):
                if self._metrics:
                    self._metrics.inc_fetch_failure(account.provider)
                logger.error(
                    "fetch_failed",
                    provider=account.provider,
                    account=account.id,
                    error=str(result),
                )
            elif isinstance(result, Exception):
                logger.error(
                    "fetch_crashed",
                    provider=account.provider,
                    account=account.id,
                    exc_info=result,
                )
            elif isinstance(result, BaseException):
                raise result
        return self.snapshots()

    async def run(self, accounts: "Sequence[AccountConfig]") -> "None":
        """
        runs the refresh loop. Runs until stop() is called.
        """
        while not self._stop_event.is_set():
            logger.info("refresh_cycle_start", accounts=len(accounts))
            await self.refresh_all(accounts)
            logger.info("refresh_cycle_end")

            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self._interval)
            except TimeoutError:
                pass
