from datetime import UTC, date, datetime

import pytest

from keyledger.http_client import ProviderError
from keyledger.models import (
    CostBucket,
    CostLine,
    LocalKeyRecord,
    PlatformAccount,
    ProviderKey,
    SyncFailure,
    SyncSummary,
    UsageBucket,
    UsageFragment,
)
from keyledger.orchestrator import (
    SyncOrchestrator,
    SyncRangeError,
    SyncRequest,
    SyncState,
    format_sync_message,
    resolve_window,
)
from keyledger.providers import CredentialError, ProviderClient
from keyledger.store import InMemoryStore, StoreError

NOW = datetime(2025, 1, 15, 12, 0, tzinfo=UTC)


class FakeClient(ProviderClient):
    provider_name = "fake"

    def __init__(
        self,
        keys: list[ProviderKey],
        buckets: list[UsageBucket],
        usage_errors: list[Exception] | None = None,
        cost_buckets: list[CostBucket] | None = None,
        cost_errors: list[Exception] | None = None,
    ) -> None:
        self.keys = keys
        self.buckets = buckets
        self.usage_errors = list(usage_errors or [])
        self.cost_buckets = cost_buckets or []
        self.cost_errors = list(cost_errors or [])
        self.supports_costs = cost_buckets is not None or bool(cost_errors)
        self.cost_queries = []
        self.list_calls = 0
        self.queries = []
        self.closed = False

    def list_keys(self, filters=None):
        self.list_calls += 1
        return list(self.keys)

    def fetch_usage(self, query):
        self.queries.append(query)
        if self.usage_errors:
            raise self.usage_errors.pop(0)
        return [bucket for bucket in self.buckets if query.start <= bucket.period_start < query.end]

    def fetch_costs(self, query):
        self.cost_queries.append(query)
        if self.cost_errors:
            raise self.cost_errors.pop(0)
        return list(self.cost_buckets)

    def close(self) -> None:
        self.closed = True


def _bucket(day: int, *fragments: UsageFragment) -> UsageBucket:
    return UsageBucket(datetime(2025, 1, day, tzinfo=UTC), datetime(2025, 1, day + 1, tzinfo=UTC), fragments)


def _store(**account_fields) -> InMemoryStore:
    store = InMemoryStore()
    fields = {"id": "acct_1", "name": "Main", "platform": "anthropic", "credential_ref": "ANTHROPIC_ADMIN_KEY"}
    fields.update(account_fields)
    store.save_account(PlatformAccount(**fields))
    return store


def _orchestrator(store: InMemoryStore, client: FakeClient, **kwargs) -> SyncOrchestrator:
    kwargs.setdefault("credential_resolver", lambda ref: "sk-ant-admin-test")
    return SyncOrchestrator(
        store,
        client_factory=lambda platform, credential: client,
        clock=lambda: NOW,
        sleep=lambda seconds: None,
        **kwargs,
    )


def _sync(**fields) -> SyncRequest:
    return SyncRequest(action="sync_usage", platform_account_id="acct_1", **fields)


KEYS = [ProviderKey("apikey_01", "prod", "active"), ProviderKey("apikey_02", "batch", "active")]
BUCKETS = [
    _bucket(14, UsageFragment("apikey_01", input_tokens=1000, output_tokens=200)),
    _bucket(15, UsageFragment("apikey_01", input_tokens=100, output_tokens=50), UsageFragment("apikey_02", output_tokens=7)),
]


def test_first_sync_lists_keys_then_persists_usage() -> None:
    store = _store()
    client = FakeClient(KEYS, BUCKETS)

    response = _orchestrator(store, client).handle(_sync())

    assert response.success
    assert response.transitions == list(SyncState)
    assert client.list_calls == 1 and client.closed
    assert response.summary.keys_inserted == 2
    assert response.summary.saved_count == 2
    assert response.message == "Synced 2 keys"

    local_ids = {key.provider_key_id: key.id for key in store.list_keys("anthropic", "acct_1")}
    row = store.find_usage(local_ids["apikey_01"], date(2025, 1, 1))
    assert row is not None
    assert (row.token_usage_monthly, row.token_usage_daily) == (1350, 150)
    assert row.prompt_tokens_total == 1100 and row.completion_tokens_total == 250
    assert store.get_account("acct_1").last_synced_at == NOW


def test_rerun_converges_to_same_rows() -> None:
    store = _store()
    client = FakeClient(KEYS, BUCKETS)
    orchestrator = _orchestrator(store, client)

    orchestrator.handle(_sync())
    snapshot = {identity: row.token_usage_monthly for identity, row in store.usage.items()}
    second = orchestrator.handle(_sync())

    assert second.success
    assert client.list_calls == 1
    assert {identity: row.token_usage_monthly for identity, row in store.usage.items()} == snapshot


def test_response_dict_shape() -> None:
    store = _store()
    response = _orchestrator(store, FakeClient(KEYS, BUCKETS)).handle(
        {"action": "sync_usage", "platform_account_id": "acct_1"}
    )

    payload = response.to_dict()

    assert payload["success"] is True
    assert payload["summary"]["buckets_count"] == 2
    assert payload["summary"]["usage_keys_count"] == 2
    assert payload["summary"]["matched_keys_count"] == 2
    assert payload["summary"]["save_errors_count"] == 0
    prod = next(item for item in payload["matched_keys"] if item["provider_key_id"] == "apikey_01")
    assert (prod["name"], prod["month_tokens"], prod["today_tokens"]) == ("prod", 1350, 150)
    assert payload["unmatched_keys"] == []
    assert payload["save_errors"] == []
    assert payload["synced_at"] == NOW.isoformat()
    assert payload["transitions"][-1] == "done"


def test_no_usage_short_circuits_without_writing() -> None:
    store = _store()
    response = _orchestrator(store, FakeClient(KEYS, [])).handle(_sync())

    assert response.success
    assert response.message == "No usage data for the selected range"
    assert response.summary.buckets_count == 0
    assert store.usage == {}
    assert SyncState.AGGREGATING not in response.transitions


def test_unmatched_usage_triggers_one_key_resync() -> None:
    store = _store()
    store.insert_key(
        LocalKeyRecord(id="local_1", provider_key_id="apikey_01", platform="anthropic", platform_account_id="acct_1", name="prod")
    )
    client = FakeClient(KEYS, BUCKETS)

    response = _orchestrator(store, client).handle(_sync())

    assert client.list_calls == 1
    assert response.unmatched_keys == []
    assert response.summary.matched_keys_count == 2
    assert response.transitions.count(SyncState.AGGREGATING) == 2


def test_still_unmatched_keys_are_reported_separately() -> None:
    store = _store()
    buckets = BUCKETS + [_bucket(15, UsageFragment("apikey_deleted", input_tokens=33))]

    response = _orchestrator(store, FakeClient(KEYS, buckets)).handle(_sync())

    assert response.success
    assert [key.to_dict() for key in response.unmatched_keys] == [
        {"provider_key_id": "apikey_deleted", "total_tokens": 33}
    ]
    assert response.message == "Synced 2 keys, 1 unmatched"
    assert all(row.api_key_id != "apikey_deleted" for row in store.usage.values())


def test_credential_error_is_fatal() -> None:
    def missing(ref):
        raise CredentialError(f"Admin credential {ref} is not set.")

    response = _orchestrator(_store(), FakeClient(KEYS, BUCKETS), credential_resolver=missing).handle(_sync())

    assert not response.success
    assert response.error == "Admin credential ANTHROPIC_ADMIN_KEY is not set."
    assert response.transitions == []


def test_usage_fetch_failure_keeps_persisted_keys() -> None:
    store = _store()
    client = FakeClient(KEYS, BUCKETS, usage_errors=[ProviderError("forbidden", status_code=403)])

    response = _orchestrator(store, client).handle(_sync())

    assert not response.success
    assert response.error == "forbidden (status=403)"
    assert response.transitions[-1] == SyncState.FETCHING_USAGE
    assert len(store.list_keys("anthropic", "acct_1")) == 2
    assert store.usage == {}
    assert store.get_account("acct_1").sync_in_progress is False


def test_retryable_usage_error_is_retried_with_backoff() -> None:
    sleeps: list[float] = []
    store = _store()
    client = FakeClient(KEYS, BUCKETS, usage_errors=[ProviderError("overloaded", status_code=529, retryable=True)])
    orchestrator = SyncOrchestrator(
        store,
        client_factory=lambda platform, credential: client,
        credential_resolver=lambda ref: "secret",
        clock=lambda: NOW,
        sleep=sleeps.append,
    )

    response = orchestrator.handle(_sync())

    assert response.success
    assert len(client.queries) == 2
    assert sleeps == [0.5]


def test_unknown_inactive_or_foreign_account_is_rejected() -> None:
    client = FakeClient(KEYS, BUCKETS)

    missing = _orchestrator(_store(), client).handle(SyncRequest(action="sync_usage", platform_account_id="nope"))
    disabled = _orchestrator(_store(status="disabled"), client).handle(_sync())
    foreign = _orchestrator(_store(tenant_id="tenant_a"), client).handle(_sync(tenant_id="tenant_b"))
    unknown_action = _orchestrator(_store(), client).handle(SyncRequest(action="delete", platform_account_id="acct_1"))

    assert "not found" in missing.error
    assert "disabled" in disabled.error
    assert "tenant" in foreign.error
    assert unknown_action.error == "Unsupported action: delete"
    assert client.list_calls == 0


def test_concurrent_run_fails_fast() -> None:
    store = _store()
    assert store.acquire_sync_guard("acct_1")

    response = _orchestrator(store, FakeClient(KEYS, BUCKETS)).handle(_sync())

    assert not response.success
    assert "already in progress" in response.error


def test_hook_failure_does_not_fail_the_sync() -> None:
    seen: list[str] = []

    def broken_hook(account, response):
        raise RuntimeError("webhook down")

    def recording_hook(account, response):
        seen.append(response.message)

    response = _orchestrator(_store(), FakeClient(KEYS, BUCKETS), hooks=[broken_hook, recording_hook]).handle(_sync())

    assert response.success
    assert seen == ["Synced 2 keys"]


def test_list_keys_action_only_touches_key_registry() -> None:
    store = _store()
    client = FakeClient(KEYS, BUCKETS)

    response = _orchestrator(store, client).handle(SyncRequest(action="list_keys", platform_account_id="acct_1"))

    assert response.success
    assert response.message == "Listed 2 keys: 2 new, 0 updated"
    assert client.queries == []
    assert response.transitions == [
        SyncState.FETCHING_KEYS,
        SyncState.RECONCILING_KEYS,
        SyncState.PERSISTING_KEYS,
        SyncState.DONE,
    ]


def test_api_key_filter_restricts_usage() -> None:
    store = _store()

    response = _orchestrator(store, FakeClient(KEYS, BUCKETS)).handle(_sync(api_key_id="apikey_02"))

    assert response.summary.saved_count == 1
    assert [key.provider_key_id for key in response.matched_keys] == ["apikey_02"]


def test_today_range_keeps_stored_month_totals() -> None:
    store = _store()
    client = FakeClient(KEYS, BUCKETS)
    orchestrator = _orchestrator(store, client)

    orchestrator.handle(_sync(range="month"))
    today = orchestrator.handle(_sync(range="today"))

    assert today.success
    assert client.queries[-1].start == datetime(2025, 1, 1, tzinfo=UTC)
    assert client.queries[-1].end == datetime(2025, 1, 16, tzinfo=UTC)
    local_ids = {key.provider_key_id: key.id for key in store.list_keys("anthropic", "acct_1")}
    row = store.find_usage(local_ids["apikey_01"], date(2025, 1, 1))
    assert row is not None
    assert (row.token_usage_monthly, row.token_usage_daily) == (1350, 150)
    prod = next(key for key in today.matched_keys if key.provider_key_id == "apikey_01")
    assert prod.period_tokens == 150
    assert today.daily_usage["bucket_date"].tolist() == [date(2025, 1, 15), date(2025, 1, 15)]


def test_range_inside_month_reports_window_but_stores_month() -> None:
    store = _store()

    response = _orchestrator(store, FakeClient(KEYS, BUCKETS)).handle(
        _sync(starting_at="2025-01-14", ending_at="2025-01-15")
    )

    assert response.success
    assert [(key.provider_key_id, key.period_tokens) for key in response.matched_keys] == [("apikey_01", 1200)]
    assert sorted(row.token_usage_monthly for row in store.usage.values()) == [7, 1350]


def test_range_outside_current_month_is_reported_but_not_stored() -> None:
    store = _store()
    december = [
        UsageBucket(
            datetime(2024, 12, 3, tzinfo=UTC),
            datetime(2024, 12, 4, tzinfo=UTC),
            (UsageFragment("apikey_01", input_tokens=40),),
        )
    ]
    client = FakeClient(KEYS, december, cost_buckets=[])

    response = _orchestrator(store, client).handle(_sync(starting_at="2024-12-01", ending_at="2025-01-01"))

    assert response.success
    assert response.message == "Reported 1 keys; range not stored"
    assert response.matched_keys[0].period_tokens == 40
    assert store.usage == {}
    assert client.cost_queries == []
    assert SyncState.PERSISTING_USAGE not in response.transitions
    assert any("not stored" in warning for warning in response.warnings)


def test_resolve_window_defaults_and_errors() -> None:
    assert resolve_window(None, None, None, NOW) == (datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 1, 16, tzinfo=UTC))
    assert resolve_window(None, "2024-12-01", "2024-12-31T00:00:00Z", NOW) == (
        datetime(2024, 12, 1, tzinfo=UTC),
        datetime(2024, 12, 31, tzinfo=UTC),
    )
    with pytest.raises(SyncRangeError):
        resolve_window(None, "2025-01-10", "2025-01-01", NOW)
    with pytest.raises(SyncRangeError):
        resolve_window(None, "yesterday", None, NOW)


def test_invalid_range_is_fatal() -> None:
    response = _orchestrator(_store(), FakeClient(KEYS, BUCKETS)).handle(_sync(starting_at="2025-01-10", ending_at="2025-01-01"))

    assert not response.success
    assert "before" in response.error


def test_failure_details_are_bounded_but_count_is_exact() -> None:
    summary = SyncSummary()
    for index in range(5):
        summary.record_failure(SyncFailure(key_id=f"k{index}", message="boom"), max_details=3)

    assert summary.save_errors_count == 5
    assert len(summary.save_errors) == 3
    assert format_sync_message(summary) == "Synced 0 keys, 5 failed"


class LockedStore(InMemoryStore):
    def __init__(self, fail_on: str) -> None:
        super().__init__()
        self.fail_on = fail_on

    def acquire_sync_guard(self, account_id: str) -> bool:
        if self.fail_on == "acquire":
            raise StoreError("SQLite error: database is locked")
        return super().acquire_sync_guard(account_id)

    def release_sync_guard(self, account_id: str) -> None:
        if self.fail_on == "release":
            raise StoreError("SQLite error: database is locked")
        super().release_sync_guard(account_id)

    def get_account(self, account_id: str) -> PlatformAccount | None:
        if self.fail_on == "get_account":
            raise StoreError("SQLite error: unable to open database file")
        return super().get_account(account_id)


def _locked_store(fail_on: str) -> LockedStore:
    store = LockedStore(fail_on)
    store.save_account(PlatformAccount(id="acct_1", name="Main", platform="anthropic", credential_ref="ANTHROPIC_ADMIN_KEY"))
    return store


def test_store_failure_on_guard_or_lookup_returns_failed_response() -> None:
    client = FakeClient(KEYS, BUCKETS)

    locked = _orchestrator(_locked_store("acquire"), client).handle(_sync())
    unreadable = _orchestrator(_locked_store("get_account"), client).handle(_sync())

    assert not locked.success
    assert locked.error == "SQLite error: database is locked"
    assert not unreadable.success
    assert "unable to open" in unreadable.error
    assert client.list_calls == 0


def test_guard_release_failure_becomes_warning() -> None:
    store = _locked_store("release")

    response = _orchestrator(store, FakeClient(KEYS, BUCKETS)).handle(_sync())

    assert response.success
    assert response.warnings == ["Could not release sync guard: SQLite error: database is locked"]


def test_foreign_credential_ref_is_ignored() -> None:
    seen: list[str | None] = []

    def resolver(ref):
        seen.append(ref)
        return "sk-ant-admin-test"

    orchestrator = _orchestrator(_store(), FakeClient(KEYS, BUCKETS), credential_resolver=resolver)
    foreign = orchestrator.handle(_sync(credential_ref="OTHER_TENANT_ADMIN_KEY"))
    own = orchestrator.handle(_sync(credential_ref="ANTHROPIC_ADMIN_KEY"))

    assert seen == ["ANTHROPIC_ADMIN_KEY", "ANTHROPIC_ADMIN_KEY"]
    assert foreign.success
    assert foreign.warnings == ["Ignored credential_ref that does not belong to this account"]
    assert own.warnings == []


WORKSPACE_KEYS = [
    ProviderKey("apikey_01", "prod", "active", workspace_id="wrkspc_1"),
    ProviderKey("apikey_02", "batch", "active", workspace_id="wrkspc_1"),
]
COST_BUCKETS = [
    CostBucket(
        datetime(2025, 1, 14, tzinfo=UTC),
        datetime(2025, 1, 15, tzinfo=UTC),
        "workspace",
        (CostLine("wrkspc_1", 3.0),),
    ),
    CostBucket(
        datetime(2025, 1, 15, tzinfo=UTC),
        datetime(2025, 1, 16, tzinfo=UTC),
        "workspace",
        (CostLine("wrkspc_1", 1.0), CostLine("wrkspc_gone", 0.5)),
    ),
]


def test_spend_is_split_across_workspace_keys_and_stored() -> None:
    store = _store()
    client = FakeClient(WORKSPACE_KEYS, BUCKETS, cost_buckets=COST_BUCKETS)

    response = _orchestrator(store, client).handle(_sync(range="today"))

    assert response.success
    [query] = client.cost_queries
    assert (query.start, query.end) == (datetime(2025, 1, 1, tzinfo=UTC), datetime(2025, 1, 16, tzinfo=UTC))
    assert (response.summary.month_cost_usd, response.summary.today_cost_usd) == (4.5, 1.5)
    assert sorted((item.name, item.month_cost_usd, item.today_cost_usd) for item in response.spend) == [
        ("batch", 2.0, 0.5),
        ("prod", 2.0, 0.5),
    ]
    assert [item.to_dict() for item in response.unmatched_spend] == [{"group_id": "wrkspc_gone", "cost": 0.5}]
    assert response.message == "Synced 2 keys, $4.50 spent this month"
    assert sorted((row.cost_usd_monthly, row.cost_usd_daily) for row in store.usage.values()) == [(2.0, 0.5), (2.0, 0.5)]


def test_cost_fetch_failure_keeps_stored_spend() -> None:
    store = _store()
    _orchestrator(store, FakeClient(WORKSPACE_KEYS, BUCKETS, cost_buckets=COST_BUCKETS)).handle(_sync())
    failing = FakeClient(WORKSPACE_KEYS, BUCKETS, cost_errors=[ProviderError("forbidden", status_code=403)])

    response = _orchestrator(store, failing).handle(_sync())

    assert response.success
    assert response.warnings == ["Cost sync failed: forbidden (status=403)"]
    assert all(row.cost_usd_monthly == 2.0 for row in store.usage.values())


def test_spend_only_provider_stores_spend_without_token_buckets() -> None:
    store = _store(platform="openrouter")
    keys = [ProviderKey("h1", "app", "active")]
    spend = [CostBucket(datetime(2025, 1, 15, tzinfo=UTC), datetime(2025, 1, 16, tzinfo=UTC), "key", (CostLine("h1", 2.5),))]

    response = _orchestrator(store, FakeClient(keys, [], cost_buckets=spend)).handle(_sync())

    assert response.success
    assert response.summary.buckets_count == 0
    [row] = store.usage.values()
    assert (row.token_usage_monthly, row.cost_usd_monthly, row.cost_usd_daily) == (0, 2.5, 2.5)
