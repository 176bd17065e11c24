from datetime import UTC, date, datetime

from keyledger.aggregator import CostAggregation
from keyledger.models import UsageAggregate, UsageRecord
from keyledger.store import InMemoryStore, StoreError
from keyledger.writer import UsageUpsertWriter, build_usage_records, month_start

SYNCED_AT = datetime(2025, 1, 15, 9, 0, tzinfo=UTC)


def _record(api_key_id: str, monthly: int, daily: int = 0) -> UsageRecord:
    return UsageRecord(
        api_key_id=api_key_id,
        period_start=date(2025, 1, 1),
        token_usage_daily=daily,
        token_usage_monthly=monthly,
        token_usage_total=monthly,
        synced_at=SYNCED_AT,
    )


def test_month_start_uses_utc_date() -> None:
    assert month_start(date(2025, 1, 31)) == date(2025, 1, 1)
    assert month_start(datetime(2025, 2, 1, 0, 30, tzinfo=UTC)) == date(2025, 2, 1)


def test_build_usage_records_splits_prompt_and_completion() -> None:
    period = {
        "local_1": UsageAggregate("local_1", "period", input_tokens=100, output_tokens=50, cache_read_tokens=20, cache_creation_tokens=5)
    }
    today = {"local_1": UsageAggregate("local_1", "today", input_tokens=10, output_tokens=2)}

    [record] = build_usage_records(period, today, synced_at=SYNCED_AT)

    assert record.period_start == date(2025, 1, 1)
    assert record.token_usage_daily == 12
    assert record.token_usage_monthly == record.token_usage_total == 175
    assert record.prompt_tokens_total == 125
    assert record.completion_tokens_total == 50


def test_key_without_usage_today_gets_zero_daily() -> None:
    period = {"local_1": UsageAggregate("local_1", "period", input_tokens=9)}

    [record] = build_usage_records(period, {}, synced_at=SYNCED_AT)

    assert record.token_usage_daily == 0


def test_rerun_overwrites_instead_of_accumulating() -> None:
    store = InMemoryStore()
    writer = UsageUpsertWriter(store)

    first = writer.upsert(_record("local_1", monthly=150, daily=150))
    second = writer.upsert(_record("local_1", monthly=150, daily=150))
    third = writer.upsert(_record("local_1", monthly=200, daily=50))

    assert first.inserted and not second.inserted and not third.inserted
    assert len(store.usage) == 1
    row = store.find_usage("local_1", date(2025, 1, 1))
    assert row is not None
    assert (row.token_usage_monthly, row.token_usage_daily) == (200, 50)


def test_upsert_normalizes_period_to_month_start() -> None:
    store = InMemoryStore()
    writer = UsageUpsertWriter(store)
    record = _record("local_1", monthly=10)
    record.period_start = date(2025, 1, 20)

    result = writer.upsert(record)

    assert result.period_start == date(2025, 1, 1)
    assert store.find_usage("local_1", date(2025, 1, 1)) is not None


class FailingOnKeyStore(InMemoryStore):
    def __init__(self, bad_key: str) -> None:
        super().__init__()
        self.bad_key = bad_key

    def insert_usage(self, record: UsageRecord) -> None:
        if record.api_key_id == self.bad_key:
            raise StoreError("disk full", key_id=record.api_key_id)
        super().insert_usage(record)


def test_one_failing_record_does_not_stop_the_batch() -> None:
    store = FailingOnKeyStore(bad_key="k2")
    writer = UsageUpsertWriter(store)

    saved, failures = writer.write_all([_record("k1", 10), _record("k2", 20), _record("k3", 30)])

    assert saved == 2
    assert [failure.key_id for failure in failures] == ["k2"]
    assert failures[0].to_dict() == {
        "api_key_id": "k2",
        "error": "disk full (key=k2)",
        "period_start": "2025-01-01",
    }
    assert {key for key, _ in store.usage} == {"k1", "k3"}


def test_spend_only_keys_get_rows_and_keys_without_spend_get_zero() -> None:
    period = {"local_1": UsageAggregate("local_1", "period", input_tokens=9)}
    costs = CostAggregation(month={"local_2": 1.5}, today={"local_2": 0.5})

    records = build_usage_records(period, {}, synced_at=SYNCED_AT, period_start=date(2025, 1, 10), costs=costs)

    assert [(r.api_key_id, r.period_start, r.cost_usd_monthly, r.cost_usd_daily) for r in records] == [
        ("local_1", date(2025, 1, 1), 0.0, 0.0),
        ("local_2", date(2025, 1, 1), 1.5, 0.5),
    ]
    assert records[1].token_usage_monthly == 0


def test_update_without_costs_keeps_stored_spend() -> None:
    store = InMemoryStore()
    writer = UsageUpsertWriter(store)
    writer.upsert(UsageRecord("local_1", date(2025, 1, 1), token_usage_monthly=5, cost_usd_monthly=2.0, cost_usd_daily=1.0))

    [record] = build_usage_records(
        {"local_1": UsageAggregate("local_1", "period", output_tokens=8)}, {}, synced_at=SYNCED_AT
    )
    writer.upsert(record)

    row = store.find_usage("local_1", date(2025, 1, 1))
    assert row is not None
    assert row.token_usage_monthly == 8
    assert (row.cost_usd_monthly, row.cost_usd_daily) == (2.0, 1.0)


def test_insert_without_costs_stores_zero_spend() -> None:
    store = InMemoryStore()

    UsageUpsertWriter(store).upsert(_record("local_1", monthly=10))

    row = store.find_usage("local_1", date(2025, 1, 1))
    assert row is not None
    assert (row.cost_usd_monthly, row.cost_usd_daily) == (0.0, 0.0)
