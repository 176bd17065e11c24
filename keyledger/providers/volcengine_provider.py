"""Volcengine client: IAM access keys and Ark model usage."""

from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Any

from keyledger.config import (
    REQUEST_TIMEOUT_SECONDS,
    VOLCENGINE_ARK_HOST,
    VOLCENGINE_ARK_REGION,
    VOLCENGINE_ARK_VERSION,
    VOLCENGINE_IAM_HOST,
    VOLCENGINE_IAM_REGION,
    VOLCENGINE_IAM_VERSION,
)
from keyledger.http_client import AdminHTTPClient, ProviderError
from keyledger.models import ProviderKey, UsageBucket, UsageFragment
from keyledger.providers.base import (
    CredentialError,
    KeyFilters,
    ProviderClient,
    UsageQuery,
    normalize_status,
    to_int,
    to_iso8601,
    to_utc_datetime,
)
from keyledger.providers.volcengine_signature import sign_request

logger = logging.getLogger(__name__)

# Result keys that may carry per-day usage rows, in lookup order.
_USAGE_LIST_FIELDS = ("Items", "List", "UsageList", "Data")


class VolcengineProviderClient(ProviderClient):
    """Signed IAM/Ark client.

    Ark usage is reported per account, not per access key, so every usage
    fragment is attributed to the access key that signs the request.
    """

    provider_name = "volcengine"

    def __init__(
        self,
        credential: str,
        *,
        timeout_seconds: int = REQUEST_TIMEOUT_SECONDS,
        http: AdminHTTPClient | None = None,
        user_name: str | None = None,
    ) -> None:
        self.access_key_id, self.secret_access_key = parse_volcengine_credential(credential)
        self.user_name = user_name
        self.http = http or AdminHTTPClient(f"https://{VOLCENGINE_ARK_HOST}", timeout_seconds=timeout_seconds)

    def close(self) -> None:
        self.http.close()

    def list_keys(self, filters: KeyFilters | None = None) -> list[ProviderKey]:
        filters = filters or KeyFilters()
        query = {"Action": "ListAccessKeys", "Version": VOLCENGINE_IAM_VERSION}
        if self.user_name:
            query["UserName"] = self.user_name

        payload = self._call(service="iam", region=VOLCENGINE_IAM_REGION, host=VOLCENGINE_IAM_HOST, query=query)
        result = payload.get("Result") or {}
        rows = result.get("AccessKeyMetadata") or []

        keys = [normalize_volcengine_key(row) for row in rows if isinstance(row, dict)]
        if filters.status:
            keys = [key for key in keys if key.status == filters.status]
        logger.info("Volcengine listed %d access keys.", len(keys))
        return [key for key in keys if key.provider_key_id][: filters.limit]

    def fetch_usage(self, query: UsageQuery) -> list[UsageBucket]:
        body = json.dumps(
            {
                "StartTime": to_iso8601(query.start),
                "EndTime": to_iso8601(query.end),
                "Aggregation": "Day" if query.bucket_width == "1d" else "Total",
            }
        )
        payload = self._call(
            service="ark",
            region=VOLCENGINE_ARK_REGION,
            host=VOLCENGINE_ARK_HOST,
            query={"Action": "GetUsage", "Version": VOLCENGINE_ARK_VERSION},
            method="POST",
            body=body,
        )
        result = payload.get("Result")
        if not isinstance(result, dict):
            return []
        return normalize_volcengine_usage(
            result,
            access_key_id=self.access_key_id,
            window_start=query.start,
            window_end=query.end,
        )

    def _call(
        self,
        *,
        service: str,
        region: str,
        host: str,
        query: dict[str, str],
        method: str = "GET",
        body: str = "",
    ) -> dict[str, Any]:
        signed = sign_request(
            access_key_id=self.access_key_id,
            secret_access_key=self.secret_access_key,
            service=service,
            region=region,
            host=host,
            method=method,
            query=query,
            body=body,
        )
        try:
            return self.http.request(method, signed.url, data=signed.body or None, headers=signed.headers)
        except ProviderError as exc:
            raise ProviderError(_friendly_message(exc.message), exc.status_code, exc.retryable) from exc


def parse_volcengine_credential(raw: str | None) -> tuple[str, str]:
    """Split an ``AK:SK`` credential."""
    parts = (raw or "").strip().split(":")
    if len(parts) != 2 or not all(part.strip() for part in parts):
        raise CredentialError('Volcengine admin key must use the "AK:SK" format.', platform="volcengine")
    return parts[0].strip(), parts[1].strip()


def normalize_volcengine_key(row: dict[str, Any]) -> ProviderKey:
    access_key_id = str(row.get("AccessKeyId") or "")
    return ProviderKey(
        provider_key_id=access_key_id,
        name=str(row.get("UserName") or access_key_id),
        status=normalize_status(row.get("Status")),
        created_at=to_utc_datetime(row.get("CreateDate")),
        workspace_id=None,
        # The access key id is not secret and serves as its own hint.
        partial_key_hint=access_key_id or None,
    )


def normalize_volcengine_usage(
    result: dict[str, Any],
    *,
    access_key_id: str,
    window_start: datetime,
    window_end: datetime,
) -> list[UsageBucket]:
    """Map a ``GetUsage`` result to buckets.

    Daily rows are used when the result carries a list; otherwise the account
    total becomes a single bucket spanning the requested window.
    """
    for field_name in _USAGE_LIST_FIELDS:
        rows = result.get(field_name)
        if isinstance(rows, list):
            buckets: list[UsageBucket] = []
            for row in rows:
                if not isinstance(row, dict):
                    continue
                start = to_utc_datetime(row.get("Date") or row.get("StartTime"))
                if start is None:
                    continue
                buckets.append(
                    UsageBucket(
                        period_start=start,
                        period_end=to_utc_datetime(row.get("EndTime")),
                        fragments=(_usage_fragment(row, access_key_id),),
                    )
                )
            return buckets

    fragment = _usage_fragment(result, access_key_id)
    if fragment.total_tokens == 0:
        return []
    return [UsageBucket(period_start=window_start, period_end=window_end, fragments=(fragment,))]


def _usage_fragment(row: dict[str, Any], access_key_id: str) -> UsageFragment:
    prompt = to_int(row.get("PromptTokens"))
    completion = to_int(row.get("CompletionTokens"))
    if prompt == 0 and completion == 0:
        prompt = to_int(row.get("TotalTokens"))
    cached = min(to_int(row.get("CachedTokens") or row.get("PromptCachedTokens")), prompt)
    return UsageFragment(
        provider_key_id=access_key_id,
        input_tokens=prompt - cached,
        output_tokens=completion,
        cache_read_tokens=cached,
        cache_creation_tokens=0,
    )


_FRIENDLY_ERRORS = {
    "InvalidAccessKeyId": "AccessKeyId is invalid or does not exist",
    "SignatureDoesNotMatch": "Signature mismatch; check the SecretAccessKey",
    "AccessDenied": "Access denied; check the admin key permissions",
}


def _friendly_message(message: str) -> str:
    code, _, _ = message.partition(":")
    return _FRIENDLY_ERRORS.get(code.strip(), message)
