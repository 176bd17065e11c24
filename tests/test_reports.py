from datetime import date

from keyledger.charts import daily_usage_chart, key_tokens_chart
from keyledger.models import (
    KeySpend,
    LocalKeyRecord,
    MatchedKey,
    SyncFailure,
    UnmatchedKey,
    UnmatchedSpend,
    UsageRecord,
)
from keyledger.orchestrator import SyncResponse
from keyledger.reports import (
    key_usage_frame,
    matched_keys_frame,
    save_errors_frame,
    spend_frame,
    unmatched_keys_frame,
    unmatched_spend_frame,
)


def _key(local_id: str, name: str) -> LocalKeyRecord:
    return LocalKeyRecord(
        id=local_id,
        provider_key_id=f"p_{local_id}",
        platform="anthropic",
        platform_account_id="acct_1",
        name=name,
        api_key_prefix="sk-ant-api03-ab",
        api_key_suffix="wxyz1234",
    )


def test_key_usage_frame_keeps_latest_month_and_zero_fills() -> None:
    keys = [_key("k1", "prod"), _key("k2", "idle")]
    usage = [
        UsageRecord("k1", date(2024, 12, 1), token_usage_monthly=999),
        UsageRecord(
            "k1",
            date(2025, 1, 1),
            token_usage_monthly=150,
            prompt_tokens_total=100,
            completion_tokens_total=50,
            cost_usd_monthly=1.25,
        ),
    ]

    df = key_usage_frame(keys, usage)

    assert list(df["key_id"]) == ["k1", "k2"]
    assert df.loc[0, "token_usage_monthly"] == 150
    assert df.loc[0, "platform"] == "Claude"
    assert df.loc[0, "masked_key"] == "sk-ant-api03-ab...wxyz1234"
    assert df.loc[1, "token_usage_monthly"] == 0
    assert df.loc[0, "cost_usd_monthly"] == 1.25
    assert df.loc[1, "cost_usd_monthly"] == 0.0


def test_key_usage_frame_empty() -> None:
    df = key_usage_frame([], [])

    assert df.empty
    assert "token_usage_monthly" in df.columns
    assert key_tokens_chart(df).layout.annotations[0].text == "No stored usage yet"


def test_response_frames_follow_response_contract() -> None:
    response = SyncResponse(success=True, action="sync_usage")
    response.matched_keys = [MatchedKey("apikey_01", "k1", "prod", 150, 20)]
    response.unmatched_keys = [UnmatchedKey("apikey_gone", 7)]
    response.summary.record_failure(SyncFailure("k2", "disk full", date(2025, 1, 1)), max_details=10)

    assert matched_keys_frame(response).iloc[0].to_dict() == {
        "provider_key_id": "apikey_01",
        "db_id": "k1",
        "name": "prod",
        "month_tokens": 150,
        "today_tokens": 20,
    }
    assert unmatched_keys_frame(response).iloc[0]["total_tokens"] == 7
    assert save_errors_frame(response).iloc[0]["period_start"] == "2025-01-01"


def test_daily_usage_chart_handles_missing_frame() -> None:
    fig = daily_usage_chart(None, {}, "Daily Tokens by Key")

    assert fig.layout.annotations[0].text == "No usage data for selected range"


def test_spend_frames_list_key_shares_and_unmatched_groups() -> None:
    response = SyncResponse(success=True, action="sync_usage")
    response.spend = [KeySpend("k1", "prod", "wrkspc_1", 2.0, 0.5, keys_in_group=2)]
    response.unmatched_spend = [UnmatchedSpend("wrkspc_gone", 0.5)]

    assert spend_frame(response).iloc[0].to_dict() == {
        "db_id": "k1",
        "name": "prod",
        "group_id": "wrkspc_1",
        "month_cost": 2.0,
        "today_cost": 0.5,
        "keys_in_group": 2,
    }
    assert unmatched_spend_frame(response).iloc[0]["cost"] == 0.5
