"""Domain records shared by the reconciliation pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any

KEY_STATUSES = ("active", "inactive")
USAGE_WINDOWS = ("today", "period")
TOKEN_FIELDS = ("input_tokens", "output_tokens", "cache_read_tokens", "cache_creation_tokens")
COST_SCOPES = ("workspace", "key")


@dataclass(frozen=True)
class ProviderKey:
    """A key as reported by the provider's key registry."""

    provider_key_id: str
    name: str
    status: str
    created_at: datetime | None = None
    workspace_id: str | None = None
    partial_key_hint: str | None = None


@dataclass
class LocalKeyRecord:
    """A tracked API key persisted in the local store.

    Attributes:
        id: Local identity, assigned by the store on first insert.
        provider_key_id: Opaque provider identifier. ``None`` for keys that
            were imported by hand and never observed through a listing.
        api_key_prefix: Masked leading characters of the key material.
        api_key_suffix: Masked trailing characters of the key material.
        owner_name, owner_email, business, description: User-edited
            metadata. The sync pipeline never writes these.
    """

    id: str | None
    provider_key_id: str | None
    platform: str
    platform_account_id: str | None
    name: str
    status: str = "active"
    api_key_prefix: str = ""
    api_key_suffix: str = ""
    workspace_id: str | None = None
    last_synced_at: datetime | None = None
    tenant_id: str | None = None
    creation_method: str = "sync"
    owner_name: str | None = None
    owner_email: str | None = None
    business: str | None = None
    description: str | None = None


@dataclass(frozen=True)
class LocalKeyPatch:
    """Sync-owned fields to refresh on an existing local key."""

    local_key_id: str
    provider_key_id: str
    name: str
    status: str
    workspace_id: str | None
    last_synced_at: datetime

    def as_changes(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "workspace_id": self.workspace_id,
            "last_synced_at": self.last_synced_at,
        }


@dataclass(frozen=True)
class UsageFragment:
    provider_key_id: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_creation_tokens


@dataclass(frozen=True)
class UsageBucket:
    period_start: datetime
    period_end: datetime | None
    fragments: tuple[UsageFragment, ...] = ()


@dataclass(frozen=True)
class CostLine:
    """Spend in USD for one cost group within a bucket.

    ``group_id`` is a workspace or project id for ``scope="workspace"``
    buckets and a provider key id for ``scope="key"`` buckets.
    """

    group_id: str
    amount_usd: float
    line_item: str | None = None


@dataclass(frozen=True)
class CostBucket:
    period_start: datetime
    period_end: datetime | None
    scope: str = "workspace"
    lines: tuple[CostLine, ...] = ()


@dataclass
class UsageAggregate:
    local_key_id: str
    window: str
    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens + self.cache_read_tokens + self.cache_creation_tokens


@dataclass
class UsageRecord:
    """Persisted per-key usage row, identified by ``(api_key_id, period_start)``."""

    api_key_id: str
    period_start: date
    token_usage_daily: int = 0
    token_usage_monthly: int = 0
    token_usage_total: int = 0
    prompt_tokens_total: int = 0
    completion_tokens_total: int = 0
    synced_at: datetime | None = None
    sync_status: str = "success"
    cost_usd_daily: float | None = None
    cost_usd_monthly: float | None = None

    def usage_columns(self) -> dict[str, Any]:
        """Columns to write. Unknown spend (``None``) leaves the stored value alone."""
        columns: dict[str, Any] = {
            "token_usage_daily": self.token_usage_daily,
            "token_usage_monthly": self.token_usage_monthly,
            "token_usage_total": self.token_usage_total,
            "prompt_tokens_total": self.prompt_tokens_total,
            "completion_tokens_total": self.completion_tokens_total,
            "synced_at": self.synced_at,
            "sync_status": self.sync_status,
        }
        if self.cost_usd_daily is not None:
            columns["cost_usd_daily"] = self.cost_usd_daily
        if self.cost_usd_monthly is not None:
            columns["cost_usd_monthly"] = self.cost_usd_monthly
        return columns


@dataclass(frozen=True)
class SyncFailure:
    key_id: str
    message: str
    period_start: date | None = None

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"api_key_id": self.key_id, "error": self.message}
        if self.period_start is not None:
            payload["period_start"] = self.period_start.isoformat()
        return payload


@dataclass(frozen=True)
class MatchedKey:
    provider_key_id: str
    local_key_id: str
    name: str
    period_tokens: int
    today_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "provider_key_id": self.provider_key_id,
            "db_id": self.local_key_id,
            "name": self.name,
            "month_tokens": self.period_tokens,
            "today_tokens": self.today_tokens,
        }


@dataclass(frozen=True)
class UnmatchedKey:
    provider_key_id: str
    total_tokens: int

    def to_dict(self) -> dict[str, Any]:
        return {"provider_key_id": self.provider_key_id, "total_tokens": self.total_tokens}


@dataclass(frozen=True)
class KeySpend:
    local_key_id: str
    name: str
    group_id: str
    month_cost_usd: float
    today_cost_usd: float
    keys_in_group: int = 1

    def to_dict(self) -> dict[str, Any]:
        return {
            "db_id": self.local_key_id,
            "name": self.name,
            "group_id": self.group_id,
            "month_cost": self.month_cost_usd,
            "today_cost": self.today_cost_usd,
            "keys_in_group": self.keys_in_group,
        }


@dataclass(frozen=True)
class UnmatchedSpend:
    group_id: str
    cost_usd: float

    def to_dict(self) -> dict[str, Any]:
        return {"group_id": self.group_id, "cost": self.cost_usd}


@dataclass
class SyncSummary:
    buckets_count: int = 0
    usage_keys_count: int = 0
    matched_keys_count: int = 0
    unmatched_keys_count: int = 0
    saved_count: int = 0
    keys_listed: int = 0
    keys_inserted: int = 0
    keys_updated: int = 0
    cost_buckets_count: int = 0
    month_cost_usd: float = 0.0
    today_cost_usd: float = 0.0
    save_errors: list[SyncFailure] = field(default_factory=list)
    save_errors_count: int = 0

    def record_failure(self, failure: SyncFailure, *, max_details: int) -> None:
        self.save_errors_count += 1
        if len(self.save_errors) < max_details:
            self.save_errors.append(failure)

    def to_dict(self) -> dict[str, Any]:
        return {
            "buckets_count": self.buckets_count,
            "usage_keys_count": self.usage_keys_count,
            "matched_keys_count": self.matched_keys_count,
            "unmatched_keys_count": self.unmatched_keys_count,
            "saved_count": self.saved_count,
            "save_errors_count": self.save_errors_count,
            "keys_listed": self.keys_listed,
            "keys_inserted": self.keys_inserted,
            "keys_updated": self.keys_updated,
            "cost_buckets_count": self.cost_buckets_count,
            "month_cost_usd": self.month_cost_usd,
            "today_cost_usd": self.today_cost_usd,
        }


@dataclass
class PlatformAccount:
    """An organization-level provider account holding one admin credential."""

    id: str
    name: str
    platform: str
    credential_ref: str
    tenant_id: str | None = None
    status: str = "active"
    last_synced_at: datetime | None = None
    sync_in_progress: bool = False
