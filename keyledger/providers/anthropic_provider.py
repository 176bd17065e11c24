"""Anthropic (Claude) admin API client: organization keys, messages usage and cost report."""

from __future__ import annotations

import logging
from typing import Any

from keyledger.config import (
    ANTHROPIC_API_BASE_URL,
    ANTHROPIC_API_KEYS_ENDPOINT,
    ANTHROPIC_COST_REPORT_ENDPOINT,
    ANTHROPIC_USAGE_REPORT_MESSAGES_ENDPOINT,
    ANTHROPIC_VERSION,
    DEFAULT_COST_GROUP,
    REQUEST_TIMEOUT_SECONDS,
)
from keyledger.http_client import AdminHTTPClient
from keyledger.models import CostBucket, CostLine, ProviderKey, UsageBucket, UsageFragment
from keyledger.providers.base import (
    CostQuery,
    CredentialError,
    KeyFilters,
    ProviderClient,
    UsageQuery,
    normalize_status,
    to_float,
    to_int,
    to_iso8601,
    to_utc_datetime,
)

logger = logging.getLogger(__name__)

ADMIN_KEY_PREFIX = "sk-ant-admin"


class AnthropicProviderClient(ProviderClient):
    provider_name = "anthropic"
    supports_costs = True

    def __init__(
        self,
        admin_key: str,
        *,
        base_url: str = ANTHROPIC_API_BASE_URL,
        version: str = ANTHROPIC_VERSION,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        http: AdminHTTPClient | None = None,
    ) -> None:
        self.admin_key = parse_anthropic_credential(admin_key)
        self.http = http or AdminHTTPClient(
            base_url,
            headers={"x-api-key": self.admin_key, "anthropic-version": version},
            timeout_seconds=timeout_seconds,
        )

    def close(self) -> None:
        self.http.close()

    def list_keys(self, filters: KeyFilters | None = None) -> list[ProviderKey]:
        filters = filters or KeyFilters()
        params: dict[str, Any] = {"limit": filters.limit}
        if filters.status:
            params["status"] = filters.status
        if filters.workspace_id:
            params["workspace_id"] = filters.workspace_id

        rows = self.http.paginate(
            ANTHROPIC_API_KEYS_ENDPOINT,
            params=params,
            cursor_param="after_id",
            cursor_field="last_id",
        )
        keys = [normalize_anthropic_key(row) for row in rows]
        logger.info("Anthropic listed %d keys.", len(keys))
        return [key for key in keys if key.provider_key_id]

    def fetch_usage(self, query: UsageQuery) -> list[UsageBucket]:
        params: dict[str, Any] = {
            "starting_at": to_iso8601(query.start),
            "ending_at": to_iso8601(query.end),
            "bucket_width": "1h" if query.bucket_width == "1h" else "1d",
            "group_by[]": ["api_key_id"],
            "limit": 168 if query.bucket_width == "1h" else 31,
        }
        raw_buckets = self.http.paginate(ANTHROPIC_USAGE_REPORT_MESSAGES_ENDPOINT, params=params)
        return [bucket for bucket in map(normalize_anthropic_bucket, raw_buckets) if bucket is not None]

    def fetch_costs(self, query: CostQuery) -> list[CostBucket]:
        # The cost report only supports daily buckets.
        params: dict[str, Any] = {
            "starting_at": to_iso8601(query.start),
            "ending_at": to_iso8601(query.end),
            "bucket_width": "1d",
            "group_by[]": ["workspace_id"],
            "limit": 31,
        }
        raw_buckets = self.http.paginate(ANTHROPIC_COST_REPORT_ENDPOINT, params=params)
        return [bucket for bucket in map(normalize_anthropic_cost_bucket, raw_buckets) if bucket is not None]


def parse_anthropic_credential(raw: str | None) -> str:
    admin_key = (raw or "").strip()
    if not admin_key.startswith(ADMIN_KEY_PREFIX):
        raise CredentialError(
            f"Anthropic Admin Key is missing or malformed (must start with {ADMIN_KEY_PREFIX}).",
            platform="anthropic",
        )
    return admin_key


def normalize_anthropic_key(row: dict[str, Any]) -> ProviderKey:
    return ProviderKey(
        provider_key_id=str(row.get("id") or ""),
        name=str(row.get("name") or "Claude Key"),
        status=normalize_status(row.get("status")),
        created_at=to_utc_datetime(row.get("created_at")),
        workspace_id=row.get("workspace_id") or None,
        partial_key_hint=row.get("partial_key_hint") or None,
    )


def normalize_anthropic_bucket(bucket: dict[str, Any]) -> UsageBucket | None:
    period_start = to_utc_datetime(bucket.get("starting_at") or bucket.get("start_time"))
    if period_start is None:
        return None

    fragments: list[UsageFragment] = []
    for result in bucket.get("results") or []:
        if not isinstance(result, dict):
            continue
        key_id = result.get("api_key_id")
        if not key_id:
            # Console/workbench traffic carries no key id.
            continue
        fragments.append(
            UsageFragment(
                provider_key_id=str(key_id),
                input_tokens=extract_input_tokens(result),
                output_tokens=to_int(result.get("output_tokens")),
                cache_read_tokens=to_int(result.get("cache_read_input_tokens")),
                cache_creation_tokens=extract_cache_creation_tokens(result),
            )
        )

    return UsageBucket(
        period_start=period_start,
        period_end=to_utc_datetime(bucket.get("ending_at") or bucket.get("end_time")),
        fragments=tuple(fragments),
    )


def extract_input_tokens(result: dict[str, Any]) -> int:
    """``uncached_input_tokens`` is canonical; older report versions only send ``input_tokens``."""
    if result.get("uncached_input_tokens") is not None:
        return to_int(result.get("uncached_input_tokens"))
    return to_int(result.get("input_tokens"))


def extract_cache_creation_tokens(result: dict[str, Any]) -> int:
    """Sum every sub-field of the nested ``cache_creation`` object.

    Falls back to the flat ``cache_creation_input_tokens`` field when the
    nested object is absent.
    """
    cache_creation = result.get("cache_creation")
    if isinstance(cache_creation, dict):
        return sum(to_int(value) for value in cache_creation.values())
    return to_int(result.get("cache_creation_input_tokens"))


def normalize_anthropic_cost_bucket(bucket: dict[str, Any]) -> CostBucket | None:
    period_start = to_utc_datetime(bucket.get("starting_at") or bucket.get("start_time"))
    if period_start is None:
        return None

    lines = [
        CostLine(
            group_id=str(result.get("workspace_id") or DEFAULT_COST_GROUP),
            amount_usd=extract_cost_usd(result),
            line_item=result.get("description") or None,
        )
        for result in bucket.get("results") or []
        if isinstance(result, dict)
    ]
    return CostBucket(
        period_start=period_start,
        period_end=to_utc_datetime(bucket.get("ending_at") or bucket.get("end_time")),
        scope="workspace",
        lines=tuple(lines),
    )


def extract_cost_usd(result: dict[str, Any]) -> float:
    # Cost report `amount` is a decimal string in cents.
    amount = result.get("amount")
    if isinstance(amount, dict):
        amount = amount.get("value")
    return to_float(amount) / 100.0
