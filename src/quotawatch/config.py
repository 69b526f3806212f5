import os
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Mapping

# auth types for which an account can't work without a credential
CREDENTIAL_AUTH_TYPES = frozenset({"api_key", "oauth", "token"})


@dataclass
class Config:
    # listen_address: format ":9186" or
    # "0.0.0.0:9186"
    listen_address: "str" = ":9186"
    # seconds between fetch cycles
    interval: "int" = 60
    # deadline in seconds for all sources of one account's fetch
    fetch_timeout: "float" = 10.0
    log_level: "str" = "info"
    log_json: "bool" = False

    openai_api_key: "str" = ""
    openai_org_id: "str" = ""
    # directory holding rotating *.jsonl usage logs
    log_dir: "str" = ""

    @classmethod
    def from_env(cls) -> "Config":
        return cls(
            interval=int(os.environ.get("QUOTAWATCH_INTERVAL", "60")),
            fetch_timeout=float(os.environ.get("QUOTAWATCH_FETCH_TIMEOUT", "10")),
            openai_api_key=os.environ.get("OPENAI_API_KEY", ""),
            openai_org_id=os.environ.get("OPENAI_ORG_ID", ""),
            log_dir=os.environ.get("QUOTAWATCH_LOG_DIR", ""),
        )

    @property
    def openai_enabled(self) -> "bool":
        return bool(self.openai_api_key)

    @property
    def jsonl_enabled(self) -> "bool":
        return bool(self.log_dir)


@dataclass(frozen=True, slots=True)
class AccountConfig:
    """
    AccountConfig describes one monitored account.
    """

    id: "str"
    provider: "str"
    # "api_key", "oauth", "token", "cli", "local" or "" when unknown
    auth: "str" = ""
    # env var holding the API key
    api_key_env: "str" = ""
    # runtime-only credential, never persisted
    token: "str" = field(default="", repr=False)
    base_url: "str" = ""
    extra: "Mapping[str, str]" = field(default_factory=lambda: MappingProxyType({}))

    @property
    def requires_credential(self) -> "bool":
        return self.auth in CREDENTIAL_AUTH_TYPES

    def resolve_credential(self) -> "str":
        """
        returns the explicit token, or the value of api_key_env, or "".
        """
        if self.token:
            return self.token
        if self.api_key_env:
            return os.environ.get(self.api_key_env, "")
        return ""
