"""Usage aggregation: provider buckets -> per-key totals for the today and period windows.

Spend buckets go through the same today/period split in ``aggregate_costs``.
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import UTC, date

import pandas as pd

from keyledger.config import COST_DECIMALS, DEFAULT_COST_GROUP
from keyledger.models import (
    TOKEN_FIELDS,
    CostBucket,
    KeySpend,
    LocalKeyRecord,
    UnmatchedKey,
    UnmatchedSpend,
    UsageAggregate,
    UsageBucket,
)

FRAGMENT_COLUMNS = ["period_start", "bucket_date", "provider_key_id", *TOKEN_FIELDS]
COST_COLUMNS = ["period_start", "bucket_date", "scope", "group_id", "amount_usd"]


@dataclass
class AggregationResult:
    period: dict[str, UsageAggregate] = field(default_factory=dict)
    today: dict[str, UsageAggregate] = field(default_factory=dict)
    unmatched: dict[str, UnmatchedKey] = field(default_factory=dict)
    fragments_df: pd.DataFrame = field(default_factory=lambda: pd.DataFrame(columns=FRAGMENT_COLUMNS))

    def today_or_zero(self, local_key_id: str) -> UsageAggregate:
        return self.today.get(local_key_id) or UsageAggregate(local_key_id=local_key_id, window="today")

    @property
    def usage_keys_count(self) -> int:
        if self.fragments_df.empty:
            return 0
        return int(self.fragments_df["provider_key_id"].nunique())


def build_fragments_df(buckets: Iterable[UsageBucket]) -> pd.DataFrame:
    """Flatten buckets into one row per fragment with exact int64 token columns."""
    rows = []
    for bucket in buckets:
        start = bucket.period_start.astimezone(UTC)
        for fragment in bucket.fragments:
            rows.append(
                {
                    "period_start": start,
                    "bucket_date": start.date(),
                    "provider_key_id": fragment.provider_key_id,
                    "input_tokens": fragment.input_tokens,
                    "output_tokens": fragment.output_tokens,
                    "cache_read_tokens": fragment.cache_read_tokens,
                    "cache_creation_tokens": fragment.cache_creation_tokens,
                }
            )

    df = pd.DataFrame(rows, columns=FRAGMENT_COLUMNS)
    for col in TOKEN_FIELDS:
        df[col] = df[col].astype("int64")
    return df


def aggregate(
    buckets: Iterable[UsageBucket],
    key_map: Mapping[str, str],
    as_of: date,
) -> AggregationResult:
    """Sum fragments per local key.

    Every fragment whose provider key resolves through ``key_map`` counts
    toward the period window; only fragments from buckets starting on the
    UTC date ``as_of`` also count toward today. Fragments with no local
    counterpart are collected in ``unmatched`` and never attributed to
    another key. Bucket order does not matter and repeated fragments for one
    key are summed.
    """
    df = build_fragments_df(buckets)
    result = AggregationResult(fragments_df=df)
    if df.empty:
        return result

    df = df.assign(local_key_id=df["provider_key_id"].map(dict(key_map)))
    matched = df[df["local_key_id"].notna()]
    unmatched = df[df["local_key_id"].isna()]

    result.period = _sum_by_key(matched, "period")
    result.today = _sum_by_key(matched[matched["bucket_date"] == as_of], "today")

    if not unmatched.empty:
        totals = unmatched.groupby("provider_key_id")[list(TOKEN_FIELDS)].sum().sum(axis=1)
        result.unmatched = {
            str(key_id): UnmatchedKey(provider_key_id=str(key_id), total_tokens=int(total))
            for key_id, total in totals.items()
        }
    return result


def _sum_by_key(df: pd.DataFrame, window: str) -> dict[str, UsageAggregate]:
    if df.empty:
        return {}
    sums = df.groupby("local_key_id")[list(TOKEN_FIELDS)].sum()
    return {
        str(local_key_id): UsageAggregate(
            local_key_id=str(local_key_id),
            window=window,
            **{col: int(row[col]) for col in TOKEN_FIELDS},
        )
        for local_key_id, row in sums.iterrows()
    }


def daily_usage_frame(result: AggregationResult, key_map: Mapping[str, str]) -> pd.DataFrame:
    """Per-day, per-local-key totals for charts."""
    df = result.fragments_df
    if df.empty:
        return pd.DataFrame(columns=["bucket_date", "local_key_id", "total_tokens"])

    df = df.assign(local_key_id=df["provider_key_id"].map(dict(key_map)))
    df = df[df["local_key_id"].notna()]
    df = df.assign(total_tokens=df[list(TOKEN_FIELDS)].sum(axis=1))
    return (
        df.groupby(["bucket_date", "local_key_id"], as_index=False)["total_tokens"]
        .sum()
        .sort_values(["bucket_date", "local_key_id"])
        .reset_index(drop=True)
    )


@dataclass
class CostAggregation:
    month: dict[str, float] = field(default_factory=dict)
    today: dict[str, float] = field(default_factory=dict)
    spend: list[KeySpend] = field(default_factory=list)
    unmatched: dict[str, UnmatchedSpend] = field(default_factory=dict)
    month_total: float = 0.0
    today_total: float = 0.0


def build_costs_df(buckets: Iterable[CostBucket]) -> pd.DataFrame:
    rows = []
    for bucket in buckets:
        start = bucket.period_start.astimezone(UTC)
        for line in bucket.lines:
            rows.append(
                {
                    "period_start": start,
                    "bucket_date": start.date(),
                    "scope": bucket.scope,
                    "group_id": line.group_id,
                    "amount_usd": line.amount_usd,
                }
            )

    df = pd.DataFrame(rows, columns=COST_COLUMNS)
    df["amount_usd"] = pd.to_numeric(df["amount_usd"], errors="coerce").fillna(0.0)
    return df


def aggregate_costs(
    buckets: Iterable[CostBucket],
    local_keys: Iterable[LocalKeyRecord],
    as_of: date,
) -> CostAggregation:
    """Attribute spend to local keys for the month and the UTC date ``as_of``.

    Key-scoped spend goes to the local key with that provider key id.
    Workspace-scoped spend is split evenly across the local keys in the
    workspace; keys with no workspace belong to the default group. Spend
    that reaches no local key is reported in ``unmatched``.
    """
    df = build_costs_df(buckets)
    result = CostAggregation()
    if df.empty:
        return result

    members: dict[tuple[str, str], list[LocalKeyRecord]] = {}
    for record in local_keys:
        if not record.id:
            continue
        members.setdefault(("workspace", record.workspace_id or DEFAULT_COST_GROUP), []).append(record)
        if record.provider_key_id:
            members.setdefault(("key", record.provider_key_id), []).append(record)

    df = df.assign(today_usd=df["amount_usd"].where(df["bucket_date"] == as_of, 0.0))
    sums = df.groupby(["scope", "group_id"])[["amount_usd", "today_usd"]].sum()

    for (scope, group_id), row in sums.iterrows():
        month_usd = float(row["amount_usd"])
        today_usd = float(row["today_usd"])
        keys = members.get((str(scope), str(group_id)), [])
        if not keys:
            result.unmatched[str(group_id)] = UnmatchedSpend(str(group_id), round(month_usd, COST_DECIMALS))
            continue
        for record in keys:
            share_month = month_usd / len(keys)
            share_today = today_usd / len(keys)
            result.month[record.id] = result.month.get(record.id, 0.0) + share_month
            result.today[record.id] = result.today.get(record.id, 0.0) + share_today
            result.spend.append(
                KeySpend(
                    local_key_id=record.id,
                    name=record.name,
                    group_id=str(group_id),
                    month_cost_usd=round(share_month, COST_DECIMALS),
                    today_cost_usd=round(share_today, COST_DECIMALS),
                    keys_in_group=len(keys),
                )
            )

    result.month = {key: round(value, COST_DECIMALS) for key, value in result.month.items()}
    result.today = {key: round(value, COST_DECIMALS) for key, value in result.today.items()}
    result.spend.sort(key=lambda item: (item.group_id, item.local_key_id))
    result.month_total = round(float(df["amount_usd"].sum()), COST_DECIMALS)
    result.today_total = round(float(df["today_usd"].sum()), COST_DECIMALS)
    return result
