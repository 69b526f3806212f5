from dataclasses import dataclass, field, replace
from datetime import timedelta
from types import MappingProxyType
from typing import Callable, Mapping

from quotawatch.classifier import LIMITED_THRESHOLD, NEAR_LIMIT_THRESHOLD


@dataclass(frozen=True, slots=True)
class ProviderSpec:
    """
    ProviderSpec is the per-provider policy consumed by the coordinator
    and the classifier. Providers build it from defaults plus the few
    options that differ, instead of each carrying its own builder.
    """

    provider_id: "str"
    # metric keys treated as hard quotas, on top of every "*_quota" key
    quota_keys: "frozenset[str]" = frozenset()
    # metric keys to lead the status message with, most salient first
    summary_priority: "tuple[str, ...]" = ()
    limited_threshold: "float" = LIMITED_THRESHOLD
    near_limit_threshold: "float" = NEAR_LIMIT_THRESHOLD
    # cache group -> age after which restored values are flagged as stale
    stale_after: "Mapping[str, timedelta]" = field(
        default_factory=lambda: MappingProxyType({})
    )

    @classmethod
    def build(cls, provider_id: "str", *options: "ProviderOption") -> "ProviderSpec":
        spec = cls(provider_id=provider_id)
        for option in options:
            spec = option(spec)
        return spec


ProviderOption = Callable[[ProviderSpec], ProviderSpec]


def with_quota_keys(*keys: "str") -> "ProviderOption":
    def _apply(spec: "ProviderSpec") -> "ProviderSpec":
        return replace(spec, quota_keys=spec.quota_keys | frozenset(keys))

    return _apply


def with_summary_priority(*keys: "str") -> "ProviderOption":
    def _apply(spec: "ProviderSpec") -> "ProviderSpec":
        return replace(spec, summary_priority=tuple(keys))

    return _apply


def with_thresholds(limited: "float", near_limit: "float") -> "ProviderOption":
    if not 0 <= limited <= near_limit <= 100:
        raise ValueError(
            f"thresholds must satisfy 0 <= limited <= near_limit <= 100, "
            f"got {limited} and {near_limit}"
        )

    def _apply(spec: "ProviderSpec") -> "ProviderSpec":
        return replace(spec, limited_threshold=limited, near_limit_threshold=near_limit)

    return _apply


def with_stale_after(group: "str", age: "timedelta") -> "ProviderOption":
    def _apply(spec: "ProviderSpec") -> "ProviderSpec":
        merged = dict(spec.stale_after)
        merged[group] = age
        return replace(spec, stale_after=MappingProxyType(merged))

    return _apply
