import asyncio
import signal
from datetime import timedelta

import structlog
from prometheus_client import start_http_server

from quotawatch.cache import MemoryCache
from quotawatch.cli import parse_args
from quotawatch.config import AccountConfig, Config
from quotawatch.coordinator import Coordinator
from quotawatch.logging import setup_logging
from quotawatch.metrics import MetricsUpdater
from quotawatch.provider import (
    ProviderSpec,
    with_quota_keys,
    with_stale_after,
    with_summary_priority,
)
from quotawatch.source.base import Source
from quotawatch.source.jsonl import JsonlLogSource
from quotawatch.source.openai import BILLING_GROUP, OpenAIUsageSource

logger = structlog.get_logger()


def _parse_listen_address(addr: "str") -> "tuple[str, int]":
    """
    parses listen address in format ':9186' or '0.0.0.0:9186'.
    """
    if addr.startswith(":"):
        return ("0.0.0.0", int(addr[1:]))

    host, port = addr.rsplit(":", 1)
    return (host, int(port))


def build_accounts(
    config: "Config",
) -> "tuple[dict[str, list[Source]], dict[str, ProviderSpec], list[AccountConfig]]":
    """
    wires sources, provider specs and accounts from the configuration.
    Each enabled backend becomes its own provider with a single source
    and a single account.
    """
    sources: "dict[str, list[Source]]" = {}
    specs: "dict[str, ProviderSpec]" = {}
    accounts: "list[AccountConfig]" = []

    if config.jsonl_enabled:
        sources["local_logs"] = [JsonlLogSource(config.log_dir)]
        specs["local_logs"] = ProviderSpec.build(
            "local_logs",
            with_summary_priority("block_messages", "messages_today", "tokens_today"),
        )
        accounts.append(AccountConfig(id="local_logs", provider="local_logs", auth="local"))
        logger.info("provider_enabled", provider="local_logs", log_dir=config.log_dir)

    if config.openai_enabled:
        sources["openai"] = [
            OpenAIUsageSource(api_key=config.openai_api_key, org_id=config.openai_org_id)
        ]
        specs["openai"] = ProviderSpec.build(
            "openai",
            with_quota_keys("monthly_spend"),
            with_summary_priority("monthly_spend", "requests_today", "tokens_today"),
            with_stale_after(BILLING_GROUP, timedelta(hours=6)),
        )
        accounts.append(
            AccountConfig(
                id="openai",
                provider="openai",
                auth="api_key",
                api_key_env="OPENAI_API_KEY",
            )
        )
        logger.info("provider_enabled", provider="openai")

    return sources, specs, accounts


def main() -> "None":
    config = parse_args()
    setup_logging(config.log_level, json_output=config.log_json)

    sources, specs, accounts = build_accounts(config)
    if not accounts:
        raise SystemExit(
            "No accounts configured. Set OPENAI_API_KEY or QUOTAWATCH_LOG_DIR."
        )

    metrics_updater = MetricsUpdater()
    host, port = _parse_listen_address(config.listen_address)
    start_http_server(port, addr=host)
    logger.info("metrics_server_started", host=host, port=port)

    coordinator = Coordinator(
        sources,
        MemoryCache(),
        metrics_updater=metrics_updater,
        specs=specs,
        fetch_timeout_seconds=config.fetch_timeout,
        interval_seconds=config.interval,
    )

    async def _run() -> "None":
        loop = asyncio.get_running_loop()
        # for SIGINT and SIGTERM, signal the coordinator
        # to stop gracefully
        for sig in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(sig, coordinator.stop)

        try:
            await coordinator.run(accounts)
        finally:
            logger.info("shutting_down")
            await coordinator.close()
            logger.info("shutdown_complete")

    asyncio.run(_run())


if __name__ == "__main__":
    main()
