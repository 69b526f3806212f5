import asyncio
import json
from collections import defaultdict
from datetime import datetime
from pathlib import Path

import structlog

from quotawatch.config import AccountConfig
from quotawatch.dedup import EventDeduplicator
from quotawatch.errors import ToolUnavailable
from quotawatch.models import ModelUsageRecord
from quotawatch.snapshot import Contribution
from quotawatch.windows import UsageEvent, apply_windows, local_midnight, to_aware

logger = structlog.get_logger()

# matches usage.jsonl as well as rotated usage.jsonl.1, usage.jsonl.2, ...
LOG_PATTERN = "*.jsonl*"


def _parse_timestamp(value: "object") -> "datetime | None":
    if not isinstance(value, str) or not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        return None


def _token_count(usage: "dict", key: "str") -> "float":
    value = usage.get(key, 0)
    return float(value) if isinstance(value, (int, float)) else 0.0


class JsonlLogSource:
    """
    JsonlLogSource reads rotating conversation logs from a directory.
    Each assistant entry carrying token usage becomes one UsageEvent;
    repeated entries (same message and request id) are counted once.

    The directory is taken from the account's "log_dir" extra value,
    falling back to the one given at construction.
    """

    def __init__(self, log_dir: "str | Path" = "", required: "bool" = False) -> "None":
        self._log_dir = Path(log_dir) if log_dir else None
        self._required = required

    @property
    def name(self) -> "str":
        return "jsonl_logs"

    @property
    def required(self) -> "bool":
        return self._required

    @property
    def cache_groups(self) -> "tuple[str, ...]":
        return ()

    def _resolve_dir(self, account: "AccountConfig") -> "Path":
        override = account.extra.get("log_dir", "")
        if override:
            return Path(override).expanduser()
        if self._log_dir is None:
            raise ToolUnavailable("no log directory configured")
        return self._log_dir.expanduser()

    async def fetch(self, account: "AccountConfig", contribution: "Contribution") -> "bool":
        log_dir = self._resolve_dir(account)
        if not log_dir.is_dir():
            raise ToolUnavailable(f"log directory {log_dir} does not exist")

        # file reads run in a worker thread so the fetch deadline applies
        events, files, skipped = await asyncio.to_thread(self._read_events, log_dir)
        logger.debug(
            "jsonl_logs_read",
            files=files,
            events=len(events),
            skipped_lines=skipped,
        )
        contribution.set_raw("jsonl_files_found", str(files))
        if skipped:
            contribution.set_raw("jsonl_skipped_lines", str(skipped))
        if not events:
            return False

        now = contribution.now
        apply_windows(
            contribution,
            "messages",
            events,
            now,
            unit="messages",
            series_key="messages",
            block_prefix="block_messages",
        )
        apply_windows(
            contribution,
            "tokens",
            events,
            now,
            unit="tokens",
            value=lambda e: e.total_tokens,
            series_key="tokens",
        )
        self._emit_model_usage(account, contribution, events, now)
        return True

    def _read_events(self, log_dir: "Path") -> "tuple[list[UsageEvent], int, int]":
        dedup = EventDeduplicator()
        events: "list[UsageEvent]" = []
        files = 0
        skipped = 0

        for path in sorted(log_dir.rglob(LOG_PATTERN)):
            if not path.is_file():
                continue
            files += 1
            with path.open(encoding="utf-8", errors="replace") as fh:
                for line in fh:
                    line = line.strip()
                    if not line:
                        continue
                    try:
                        entry = json.loads(line)
                    except json.JSONDecodeError:
                        skipped += 1
                        continue
                    event = self._to_event(entry, dedup)
                    if event is not None:
                        events.append(event)

        return events, files, skipped

    @staticmethod
    def _to_event(entry: "object", dedup: "EventDeduplicator") -> "UsageEvent | None":
        if not isinstance(entry, dict) or entry.get("type") != "assistant":
            return None
        message = entry.get("message")
        if not isinstance(message, dict):
            return None
        usage = message.get("usage")
        if not isinstance(usage, dict):
            return None

        if not dedup.is_new(str(message.get("id") or ""), str(entry.get("requestId") or "")):
            return None

        return UsageEvent(
            timestamp=_parse_timestamp(entry.get("timestamp")),
            model=str(message.get("model") or ""),
            input_tokens=_token_count(usage, "input_tokens"),
            output_tokens=_token_count(usage, "output_tokens"),
        )

    @staticmethod
    def _emit_model_usage(
        account: "AccountConfig",
        contribution: "Contribution",
        events: "list[UsageEvent]",
        now: "datetime",
    ) -> "None":
        now = to_aware(now)
        midnight = local_midnight(now)
        per_model: "dict[str, list[UsageEvent]]" = defaultdict(list)
        for event in events:
            if event.timestamp is None or not event.model:
                continue
            ts = to_aware(event.timestamp)
            if midnight <= ts <= now:
                per_model[event.model].append(event)

        for model in sorted(per_model):
            items = per_model[model]
            record = ModelUsageRecord(
                raw_model_id=model,
                raw_source="jsonl",
                window="today",
                input_tokens=sum(e.input_tokens for e in items),
                output_tokens=sum(e.output_tokens for e in items),
                total_tokens=sum(e.total_tokens for e in items),
                requests=float(len(items)),
            )
            contribution.append_model_usage(record.with_dimension("provider", account.provider))

        if per_model:
            contribution.set_raw("jsonl_today_models", ", ".join(sorted(per_model)))
