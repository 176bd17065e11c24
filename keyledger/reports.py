"""Tabular views over stored keys, usage rows and sync responses."""

from __future__ import annotations

from collections.abc import Iterable

import pandas as pd

from keyledger.config import PLATFORM_LABELS
from keyledger.models import LocalKeyRecord, UsageRecord
from keyledger.orchestrator import SyncResponse

KEY_USAGE_COLUMNS = [
    "key_id",
    "name",
    "platform",
    "status",
    "masked_key",
    "period_start",
    "token_usage_daily",
    "token_usage_monthly",
    "prompt_tokens_total",
    "completion_tokens_total",
    "cost_usd_daily",
    "cost_usd_monthly",
    "last_synced_at",
]
COST_FIELDS = ["cost_usd_daily", "cost_usd_monthly"]


def key_usage_frame(keys: Iterable[LocalKeyRecord], usage: Iterable[UsageRecord]) -> pd.DataFrame:
    """Join local keys with their latest usage row, newest month first."""
    key_rows = [
        {
            "key_id": key.id,
            "name": key.name,
            "platform": PLATFORM_LABELS.get(key.platform, key.platform),
            "status": key.status,
            "masked_key": f"{key.api_key_prefix}...{key.api_key_suffix}",
            "last_synced_at": key.last_synced_at,
        }
        for key in keys
    ]
    if not key_rows:
        return pd.DataFrame(columns=KEY_USAGE_COLUMNS)

    keys_df = pd.DataFrame(key_rows)
    usage_df = pd.DataFrame(
        [
            {
                "key_id": record.api_key_id,
                "period_start": record.period_start,
                "token_usage_daily": record.token_usage_daily,
                "token_usage_monthly": record.token_usage_monthly,
                "prompt_tokens_total": record.prompt_tokens_total,
                "completion_tokens_total": record.completion_tokens_total,
                "cost_usd_daily": record.cost_usd_daily or 0.0,
                "cost_usd_monthly": record.cost_usd_monthly or 0.0,
            }
            for record in usage
        ],
        columns=[
            "key_id",
            "period_start",
            "token_usage_daily",
            "token_usage_monthly",
            "prompt_tokens_total",
            "completion_tokens_total",
            *COST_FIELDS,
        ],
    )
    if not usage_df.empty:
        usage_df = usage_df.sort_values("period_start").drop_duplicates("key_id", keep="last")

    merged = keys_df.merge(usage_df, on="key_id", how="left")
    for col in ["token_usage_daily", "token_usage_monthly", "prompt_tokens_total", "completion_tokens_total"]:
        merged[col] = merged[col].fillna(0).astype("int64")
    for col in COST_FIELDS:
        merged[col] = merged[col].fillna(0.0).astype("float64")
    return (
        merged[KEY_USAGE_COLUMNS]
        .sort_values(["token_usage_monthly", "name"], ascending=[False, True])
        .reset_index(drop=True)
    )


def matched_keys_frame(response: SyncResponse) -> pd.DataFrame:
    columns = ["provider_key_id", "db_id", "name", "month_tokens", "today_tokens"]
    return pd.DataFrame([key.to_dict() for key in response.matched_keys], columns=columns)


def unmatched_keys_frame(response: SyncResponse) -> pd.DataFrame:
    columns = ["provider_key_id", "total_tokens"]
    return pd.DataFrame([key.to_dict() for key in response.unmatched_keys], columns=columns)


def save_errors_frame(response: SyncResponse) -> pd.DataFrame:
    columns = ["api_key_id", "period_start", "error"]
    return pd.DataFrame([failure.to_dict() for failure in response.summary.save_errors], columns=columns)


def spend_frame(response: SyncResponse) -> pd.DataFrame:
    columns = ["db_id", "name", "group_id", "month_cost", "today_cost", "keys_in_group"]
    return pd.DataFrame([item.to_dict() for item in response.spend], columns=columns)


def unmatched_spend_frame(response: SyncResponse) -> pd.DataFrame:
    columns = ["group_id", "cost"]
    return pd.DataFrame([item.to_dict() for item in response.unmatched_spend], columns=columns)
