"""OpenRouter provisioning API client."""

from __future__ import annotations

import logging
from datetime import UTC, datetime, time, timedelta
from typing import Any

from keyledger.config import OPENROUTER_API_BASE_URL, OPENROUTER_KEYS_ENDPOINT, REQUEST_TIMEOUT_SECONDS
from keyledger.http_client import AdminHTTPClient
from keyledger.models import CostBucket, CostLine, ProviderKey, UsageBucket
from keyledger.providers.base import (
    CostQuery,
    CredentialError,
    KeyFilters,
    ProviderClient,
    UsageQuery,
    to_float,
    to_utc_datetime,
)

logger = logging.getLogger(__name__)

PROVISIONING_KEY_PREFIX = "sk-or-"


class OpenRouterProviderClient(ProviderClient):
    """Lists provisioned keys and their credit spend.

    OpenRouter reports per-key spend in credits (USD) only, with no token
    buckets, so this client exposes spend but no usage buckets.
    """

    provider_name = "openrouter"
    supports_usage = False
    supports_costs = True

    def __init__(
        self,
        provisioning_key: str,
        *,
        base_url: str = OPENROUTER_API_BASE_URL,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        http: AdminHTTPClient | None = None,
    ) -> None:
        self.provisioning_key = parse_openrouter_credential(provisioning_key)
        self.http = http or AdminHTTPClient(
            base_url,
            headers={"Authorization": f"Bearer {self.provisioning_key}"},
            timeout_seconds=timeout_seconds,
        )

    def close(self) -> None:
        self.http.close()

    def list_keys(self, filters: KeyFilters | None = None) -> list[ProviderKey]:
        filters = filters or KeyFilters()
        keys = [normalize_openrouter_key(row) for row in self._key_rows()]
        if filters.status:
            keys = [key for key in keys if key.status == filters.status]
        logger.info("OpenRouter listed %d keys.", len(keys))
        return [key for key in keys if key.provider_key_id][: filters.limit]

    def fetch_usage(self, query: UsageQuery) -> list[UsageBucket]:
        logger.info("OpenRouter exposes no per-key token buckets; skipping usage fetch.")
        return []

    def fetch_costs(self, query: CostQuery) -> list[CostBucket]:
        """Per-key spend from the key listing's ``usage_daily``/``usage_monthly`` credits.

        The listing carries running totals rather than buckets, so the month
        is split into two buckets: the last UTC day of the window and the rest
        of the window before it.
        """
        last_day = (query.end - timedelta(microseconds=1)).astimezone(UTC).date()
        today_start = datetime.combine(last_day, time.min, tzinfo=UTC)
        earlier: list[CostLine] = []
        today: list[CostLine] = []
        for row in self._key_rows():
            key_id = str(row.get("hash") or row.get("id") or "")
            if not key_id:
                continue
            daily = to_float(row.get("usage_daily"))
            monthly = max(to_float(row.get("usage_monthly")), daily)
            today.append(CostLine(group_id=key_id, amount_usd=daily))
            earlier.append(CostLine(group_id=key_id, amount_usd=monthly - daily))

        buckets = [CostBucket(today_start, today_start + timedelta(days=1), scope="key", lines=tuple(today))]
        if query.start < today_start:
            buckets.insert(0, CostBucket(query.start, today_start, scope="key", lines=tuple(earlier)))
        return buckets

    def _key_rows(self) -> list[dict[str, Any]]:
        payload = self.http.get(OPENROUTER_KEYS_ENDPOINT, params={"include_disabled": "true"})
        return [row for row in payload.get("data") or [] if isinstance(row, dict)]


def parse_openrouter_credential(raw: str | None) -> str:
    key = (raw or "").strip()
    if not key.startswith(PROVISIONING_KEY_PREFIX):
        raise CredentialError(
            f"OpenRouter provisioning key is missing or malformed (must start with {PROVISIONING_KEY_PREFIX}).",
            platform="openrouter",
        )
    return key


def normalize_openrouter_key(row: dict[str, Any]) -> ProviderKey:
    return ProviderKey(
        provider_key_id=str(row.get("hash") or row.get("id") or ""),
        name=str(row.get("name") or "OpenRouter Key"),
        status="inactive" if row.get("disabled") else "active",
        created_at=to_utc_datetime(row.get("created_at")),
        workspace_id=None,
        partial_key_hint=row.get("label") or None,
    )
