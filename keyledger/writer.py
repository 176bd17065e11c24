"""Usage upsert writer: read-check-then-write per ``(api_key_id, period_start)``."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, replace
from datetime import UTC, date, datetime

from keyledger.aggregator import CostAggregation
from keyledger.models import SyncFailure, UsageAggregate, UsageRecord
from keyledger.store import StoreError, UsageStore

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteResult:
    api_key_id: str
    period_start: date
    saved: bool
    inserted: bool = False
    error: str | None = None


def month_start(value: date | datetime) -> date:
    """First day of the UTC month containing ``value``."""
    if isinstance(value, datetime):
        value = value.astimezone(UTC).date() if value.tzinfo else value.date()
    return value.replace(day=1)


def build_usage_records(
    period: Mapping[str, UsageAggregate],
    today: Mapping[str, UsageAggregate],
    *,
    synced_at: datetime,
    period_start: date | None = None,
    costs: CostAggregation | None = None,
) -> list[UsageRecord]:
    """Turn month-to-date aggregates into absolute usage rows for one month.

    The aggregator recomputes totals from the provider's month on every run,
    so the rows carry absolute values and a re-run overwrites rather than adds.
    ``period_start`` defaults to the month of ``synced_at``. Without ``costs``
    the spend columns are left as ``None`` so stored spend is not touched;
    with them every key gets its spend, zero when it had none.
    """
    period_start = month_start(period_start or synced_at)
    key_ids = set(period)
    if costs is not None:
        key_ids.update(costs.month)

    records: list[UsageRecord] = []
    for local_key_id in sorted(key_ids):
        period_agg = period.get(local_key_id) or UsageAggregate(local_key_id=local_key_id, window="period")
        today_agg = today.get(local_key_id)
        records.append(
            UsageRecord(
                api_key_id=local_key_id,
                period_start=period_start,
                token_usage_daily=today_agg.total_tokens if today_agg else 0,
                token_usage_monthly=period_agg.total_tokens,
                token_usage_total=period_agg.total_tokens,
                prompt_tokens_total=(
                    period_agg.input_tokens + period_agg.cache_read_tokens + period_agg.cache_creation_tokens
                ),
                completion_tokens_total=period_agg.output_tokens,
                synced_at=synced_at,
                sync_status="success",
                cost_usd_daily=costs.today.get(local_key_id, 0.0) if costs is not None else None,
                cost_usd_monthly=costs.month.get(local_key_id, 0.0) if costs is not None else None,
            )
        )
    return records


class UsageUpsertWriter:
    """Converging writer for usage rows.

    The existence check and the write are two store calls, so two writers for
    the same key and month can race. Callers hold the per-account sync lock
    for the duration of a run.
    """

    def __init__(self, store: UsageStore) -> None:
        self.store = store

    def upsert(self, record: UsageRecord) -> WriteResult:
        normalized = replace(record, period_start=month_start(record.period_start))
        try:
            existing = self.store.find_usage(normalized.api_key_id, normalized.period_start)
            if existing is not None:
                self.store.update_usage(normalized.api_key_id, normalized.period_start, normalized.usage_columns())
                inserted = False
            else:
                self.store.insert_usage(
                    replace(
                        normalized,
                        sync_status="success",
                        cost_usd_daily=normalized.cost_usd_daily or 0.0,
                        cost_usd_monthly=normalized.cost_usd_monthly or 0.0,
                    )
                )
                inserted = True
        except StoreError as exc:
            logger.warning(
                "Failed to save usage for key %s period %s: %s",
                normalized.api_key_id,
                normalized.period_start,
                exc,
            )
            return WriteResult(
                api_key_id=normalized.api_key_id,
                period_start=normalized.period_start,
                saved=False,
                error=str(exc),
            )

        return WriteResult(
            api_key_id=normalized.api_key_id,
            period_start=normalized.period_start,
            saved=True,
            inserted=inserted,
        )

    def write_all(self, records: Iterable[UsageRecord]) -> tuple[int, list[SyncFailure]]:
        saved = 0
        failures: list[SyncFailure] = []
        for record in records:
            result = self.upsert(record)
            if result.saved:
                saved += 1
            else:
                failures.append(
                    SyncFailure(
                        key_id=result.api_key_id,
                        message=result.error or "unknown error",
                        period_start=result.period_start,
                    )
                )
        return saved, failures
