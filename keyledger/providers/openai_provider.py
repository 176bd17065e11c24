"""OpenAI admin API client: project keys, completions usage and costs."""

from __future__ import annotations

import logging
from typing import Any

from keyledger.config import (
    DEFAULT_COST_GROUP,
    OPENAI_API_BASE_URL,
    OPENAI_COSTS_ENDPOINT,
    OPENAI_PROJECT_KEYS_ENDPOINT_TEMPLATE,
    OPENAI_PROJECTS_ENDPOINT,
    OPENAI_USAGE_COMPLETIONS_ENDPOINT,
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
    to_float,
    to_int,
    to_utc_datetime,
)

logger = logging.getLogger(__name__)

# Max buckets per page accepted by the usage endpoint.
_BUCKET_LIMITS = {"1d": 31, "1h": 168, "1m": 1440}


class OpenAIProviderClient(ProviderClient):
    provider_name = "openai"
    supports_costs = True

    def __init__(
        self,
        admin_key: str,
        *,
        base_url: str = OPENAI_API_BASE_URL,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        http: AdminHTTPClient | None = None,
    ) -> None:
        self.admin_key = parse_openai_credential(admin_key)
        self.http = http or AdminHTTPClient(
            base_url,
            headers={"Authorization": f"Bearer {self.admin_key}"},
            timeout_seconds=timeout_seconds,
        )

    def close(self) -> None:
        self.http.close()

    def list_keys(self, filters: KeyFilters | None = None) -> list[ProviderKey]:
        filters = filters or KeyFilters()
        projects = list(
            self.http.paginate(
                OPENAI_PROJECTS_ENDPOINT,
                params={"limit": filters.limit},
                cursor_param="after",
                cursor_field="last_id",
            )
        )

        keys: list[ProviderKey] = []
        for project in projects:
            project_id = str(project.get("id") or "").strip()
            if not project_id:
                continue
            if filters.workspace_id and project_id != filters.workspace_id:
                continue

            rows = self.http.paginate(
                OPENAI_PROJECT_KEYS_ENDPOINT_TEMPLATE.format(project_id=project_id),
                params={"limit": filters.limit},
                cursor_param="after",
                cursor_field="last_id",
            )
            keys.extend(normalize_openai_key(row, project_id=project_id) for row in rows)

        logger.info("OpenAI listed %d keys across %d projects.", len(keys), len(projects))
        return [key for key in keys if key.provider_key_id]

    def fetch_usage(self, query: UsageQuery) -> list[UsageBucket]:
        params: dict[str, Any] = {
            "start_time": int(query.start.timestamp()),
            "end_time": int(query.end.timestamp()),
            "bucket_width": query.bucket_width,
            "group_by": ["api_key_id"],
            "limit": _BUCKET_LIMITS.get(query.bucket_width, 31),
        }
        raw_buckets = self.http.paginate(OPENAI_USAGE_COMPLETIONS_ENDPOINT, params=params)
        return [bucket for bucket in map(normalize_openai_bucket, raw_buckets) if bucket is not None]

    def fetch_costs(self, query: CostQuery) -> list[CostBucket]:
        params: dict[str, Any] = {
            "start_time": int(query.start.timestamp()),
            "end_time": int(query.end.timestamp()),
            "bucket_width": "1d",
            "group_by": ["project_id"],
            "limit": 180,
        }
        raw_buckets = self.http.paginate(OPENAI_COSTS_ENDPOINT, params=params)
        return [bucket for bucket in map(normalize_openai_cost_bucket, raw_buckets) if bucket is not None]


def parse_openai_credential(raw: str | None) -> str:
    admin_key = (raw or "").strip()
    if not admin_key:
        raise CredentialError("An OpenAI Admin API key is required.", platform="openai")
    return admin_key


def normalize_openai_key(row: dict[str, Any], *, project_id: str) -> ProviderKey:
    owner = row.get("owner") if isinstance(row.get("owner"), dict) else {}
    name = row.get("name") or owner.get("name") or f"OpenAI Key {str(row.get('id', ''))[-4:]}"
    return ProviderKey(
        provider_key_id=str(row.get("id") or ""),
        name=str(name),
        # Listed project keys are always usable; revoked keys disappear from the listing.
        status="active",
        created_at=to_utc_datetime(row.get("created_at")),
        workspace_id=project_id,
        partial_key_hint=row.get("redacted_value") or None,
    )


def normalize_openai_bucket(bucket: dict[str, Any]) -> UsageBucket | None:
    """Map one ``/organization/usage/completions`` bucket.

    ``input_tokens`` already includes cached input, so the cached share is
    split out into ``cache_read_tokens`` to keep the four components disjoint.
    OpenAI has no cache-creation charge.
    """
    period_start = to_utc_datetime(bucket.get("start_time"))
    if period_start is None:
        return None

    fragments: list[UsageFragment] = []
    for result in bucket.get("results") or []:
        if not isinstance(result, dict):
            continue
        key_id = result.get("api_key_id")
        if not key_id:
            continue
        input_tokens = to_int(result.get("input_tokens"))
        cached = min(to_int(result.get("input_cached_tokens")), input_tokens)
        fragments.append(
            UsageFragment(
                provider_key_id=str(key_id),
                input_tokens=input_tokens - cached,
                output_tokens=to_int(result.get("output_tokens")),
                cache_read_tokens=cached,
                cache_creation_tokens=0,
            )
        )

    return UsageBucket(
        period_start=period_start,
        period_end=to_utc_datetime(bucket.get("end_time")),
        fragments=tuple(fragments),
    )


def normalize_openai_cost_bucket(bucket: dict[str, Any]) -> CostBucket | None:
    """Map one ``/organization/costs`` bucket; amounts are already in USD."""
    period_start = to_utc_datetime(bucket.get("start_time"))
    if period_start is None:
        return None

    lines: list[CostLine] = []
    for result in bucket.get("results") or []:
        if not isinstance(result, dict):
            continue
        amount = result.get("amount")
        value = amount.get("value") if isinstance(amount, dict) else amount
        lines.append(
            CostLine(
                group_id=str(result.get("project_id") or DEFAULT_COST_GROUP),
                amount_usd=to_float(value),
                line_item=result.get("line_item") or None,
            )
        )

    return CostBucket(
        period_start=period_start,
        period_end=to_utc_datetime(bucket.get("end_time")),
        scope="workspace",
        lines=tuple(lines),
    )
