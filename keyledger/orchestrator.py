"""Sync orchestrator: drives key reconciliation and usage persistence per account.

One run is strictly sequential::

    FETCHING_KEYS -> RECONCILING_KEYS -> PERSISTING_KEYS
        -> FETCHING_USAGE -> AGGREGATING -> PERSISTING_USAGE -> DONE

Usage rows are always rebuilt from the month to date; a narrower ``range``
only shapes the report in the response.

Pipeline-fatal errors (bad credential, provider failure while fetching
usage, malformed range, concurrent run) end the run with a failed response.
Record-level errors are collected into ``save_errors`` and never abort it.
"""

from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterable, Mapping, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime, time as dt_time, timedelta
from enum import Enum
from typing import Any, TypeVar

import pandas as pd

from keyledger.accounts import resolve_credential
from keyledger.aggregator import AggregationResult, CostAggregation, aggregate, aggregate_costs, daily_usage_frame
from keyledger.config import DEFAULT_BUCKET_WIDTH, MAX_FAILURE_DETAILS, RETRY_BACKOFF_SECONDS, STAGE_RETRIES
from keyledger.http_client import ProviderError
from keyledger.models import (
    CostBucket,
    KeySpend,
    LocalKeyRecord,
    MatchedKey,
    PlatformAccount,
    SyncSummary,
    UnmatchedKey,
    UnmatchedSpend,
    UsageBucket,
)
from keyledger.providers import build_provider_client
from keyledger.providers.base import (
    CostQuery,
    CredentialError,
    KeyFilters,
    ProviderClient,
    UsageQuery,
    to_utc_datetime,
)
from keyledger.reconciler import apply_plan, reconcile
from keyledger.store import StoreError, UsageStore
from keyledger.writer import UsageUpsertWriter, build_usage_records

logger = logging.getLogger(__name__)

T = TypeVar("T")

ACTIONS = ("list_keys", "sync_usage")


class SyncState(str, Enum):
    FETCHING_KEYS = "fetching_keys"
    RECONCILING_KEYS = "reconciling_keys"
    PERSISTING_KEYS = "persisting_keys"
    FETCHING_USAGE = "fetching_usage"
    AGGREGATING = "aggregating"
    PERSISTING_USAGE = "persisting_usage"
    DONE = "done"


@dataclass
class SyncRangeError(Exception):
    message: str

    def __str__(self) -> str:
        return self.message


@dataclass
class SyncInProgressError(Exception):
    account_id: str

    def __str__(self) -> str:
        return f"A sync is already in progress for account {self.account_id}"


@dataclass(frozen=True)
class SyncRequest:
    """Inbound trigger from the UI, a timer or the cron shell."""

    action: str
    platform_account_id: str
    credential_ref: str | None = None
    range: str | None = None
    starting_at: str | None = None
    ending_at: str | None = None
    bucket_width: str = DEFAULT_BUCKET_WIDTH
    api_key_id: str | None = None
    tenant_id: str | None = None
    refresh_keys: bool = False

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> "SyncRequest":
        return cls(
            action=str(payload.get("action") or ""),
            platform_account_id=str(payload.get("platform_account_id") or ""),
            credential_ref=payload.get("credential_ref"),
            range=payload.get("range"),
            starting_at=payload.get("starting_at"),
            ending_at=payload.get("ending_at"),
            bucket_width=payload.get("bucket_width") or DEFAULT_BUCKET_WIDTH,
            api_key_id=payload.get("api_key_id"),
            tenant_id=payload.get("tenant_id"),
            refresh_keys=bool(payload.get("refresh_keys", False)),
        )


@dataclass
class SyncResponse:
    success: bool
    action: str
    summary: SyncSummary = field(default_factory=SyncSummary)
    matched_keys: list[MatchedKey] = field(default_factory=list)
    unmatched_keys: list[UnmatchedKey] = field(default_factory=list)
    spend: list[KeySpend] = field(default_factory=list)
    unmatched_spend: list[UnmatchedSpend] = field(default_factory=list)
    synced_at: datetime | None = None
    message: str = ""
    error: str | None = None
    warnings: list[str] = field(default_factory=list)
    transitions: list[SyncState] = field(default_factory=list)
    daily_usage: pd.DataFrame | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "success": self.success,
            "action": self.action,
            "message": self.message,
            "error": self.error,
            "summary": self.summary.to_dict(),
            "matched_keys": [key.to_dict() for key in self.matched_keys],
            "unmatched_keys": [key.to_dict() for key in self.unmatched_keys],
            "spend": [item.to_dict() for item in self.spend],
            "unmatched_spend": [item.to_dict() for item in self.unmatched_spend],
            "save_errors": [failure.to_dict() for failure in self.summary.save_errors],
            "warnings": list(self.warnings),
            "synced_at": self.synced_at.isoformat() if self.synced_at else None,
            "transitions": [state.value for state in self.transitions],
        }


PostSyncHook = Callable[[PlatformAccount, SyncResponse], None]


class AccountLocks:
    """In-process mutex per platform account."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def get(self, account_id: str) -> threading.Lock:
        with self._guard:
            return self._locks.setdefault(account_id, threading.Lock())


def resolve_window(
    range_name: str | None,
    starting_at: str | None,
    ending_at: str | None,
    now: datetime,
) -> tuple[datetime, datetime]:
    """Return the ``[start, end)`` UTC window for a request.

    Explicit bounds win; ``range="today"`` covers the current UTC day;
    anything else covers the current month up to the end of today.
    """
    month_from, tomorrow = month_to_date(now)

    if starting_at or ending_at:
        start = to_utc_datetime(starting_at)
        end = to_utc_datetime(ending_at)
        if start is None or end is None:
            raise SyncRangeError("Both starting_at and ending_at must be valid ISO-8601 dates.")
        if start >= end:
            raise SyncRangeError("starting_at must be before ending_at.")
        return start, end

    if range_name == "today":
        return tomorrow - timedelta(days=1), tomorrow
    if range_name not in (None, "", "month"):
        raise SyncRangeError(f"Unsupported range: {range_name}")
    return month_from, tomorrow


def month_to_date(now: datetime) -> tuple[datetime, datetime]:
    """First instant of the current UTC month and the end of the current UTC day."""
    today_start = datetime.combine(now.astimezone(UTC).date(), dt_time.min, tzinfo=UTC)
    return today_start.replace(day=1), today_start + timedelta(days=1)


def format_sync_message(summary: SyncSummary) -> str:
    message = f"Synced {summary.saved_count} keys"
    if summary.save_errors_count:
        message += f", {summary.save_errors_count} failed"
    if summary.unmatched_keys_count:
        message += f", {summary.unmatched_keys_count} unmatched"
    if summary.cost_buckets_count:
        message += f", ${summary.month_cost_usd:.2f} spent this month"
    return message


class SyncOrchestrator:
    def __init__(
        self,
        store: UsageStore,
        *,
        client_factory: Callable[[str, str], ProviderClient] = build_provider_client,
        credential_resolver: Callable[[str | None], str] = resolve_credential,
        hooks: Sequence[PostSyncHook] = (),
        locks: AccountLocks | None = None,
        stage_retries: int = STAGE_RETRIES,
        clock: Callable[[], datetime] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.client_factory = client_factory
        self.credential_resolver = credential_resolver
        self.hooks = list(hooks)
        self.locks = locks or AccountLocks()
        self.stage_retries = stage_retries
        self.clock = clock or (lambda: datetime.now(tz=UTC))
        self.sleep = sleep
        self.writer = UsageUpsertWriter(store)

    def handle(self, request: SyncRequest | Mapping[str, Any]) -> SyncResponse:
        if not isinstance(request, SyncRequest):
            request = SyncRequest.from_dict(request)

        if request.action not in ACTIONS:
            return SyncResponse(success=False, action=request.action, error=f"Unsupported action: {request.action}")

        try:
            account = self.store.get_account(request.platform_account_id)
        except StoreError as exc:
            return self._fail(request, str(exc))
        if account is None:
            return self._fail(request, f"Platform account {request.platform_account_id} not found")
        if account.status != "active":
            return self._fail(request, f"Platform account status is {account.status}")
        if request.tenant_id and account.tenant_id and request.tenant_id != account.tenant_id:
            return self._fail(request, "Platform account does not belong to this tenant")

        lock = self.locks.get(account.id)
        if not lock.acquire(blocking=False):
            return self._fail(request, str(SyncInProgressError(account.id)))
        try:
            try:
                acquired = self.store.acquire_sync_guard(account.id)
            except StoreError as exc:
                return self._fail(request, str(exc))
            if not acquired:
                return self._fail(request, str(SyncInProgressError(account.id)))
            try:
                response = self._run(request, account)
            finally:
                release_error = self._release_guard(account)
            if release_error:
                response.warnings.append(release_error)
        finally:
            lock.release()

        if response.success and SyncState.PERSISTING_USAGE in response.transitions:
            self._run_hooks(account, response)
        return response

    def _run(self, request: SyncRequest, account: PlatformAccount) -> SyncResponse:
        now = self.clock()
        response = SyncResponse(success=False, action=request.action, synced_at=now)

        if request.credential_ref and request.credential_ref != account.credential_ref:
            logger.warning(
                "Ignoring credential_ref %s for account %s; using the account's own credential.",
                request.credential_ref,
                account.id,
            )
            response.warnings.append("Ignored credential_ref that does not belong to this account")

        try:
            credential = self.credential_resolver(account.credential_ref)
            client = self.client_factory(account.platform, credential)
        except CredentialError as exc:
            logger.warning("Credential error for account %s: %s", account.id, exc)
            response.error = str(exc)
            return response

        with client:
            try:
                if request.action == "list_keys":
                    self._list_keys(client, account, response, now)
                else:
                    self._sync_usage(client, request, account, response, now)
            except (ProviderError, SyncRangeError, StoreError) as exc:
                logger.warning(
                    "Account %s %s failed during %s: %s",
                    account.id,
                    request.action,
                    response.transitions[-1].value if response.transitions else "setup",
                    exc,
                )
                response.success = False
                response.error = str(exc)
                return response

        try:
            self.store.mark_account_synced(account.id, now)
        except StoreError as exc:
            response.warnings.append(f"Could not record sync time: {exc}")
        return response

    def _list_keys(
        self,
        client: ProviderClient,
        account: PlatformAccount,
        response: SyncResponse,
        now: datetime,
    ) -> None:
        self._sync_key_registry(client, account, response, now)
        self._transition(account, response, SyncState.DONE)
        response.success = True
        response.message = (
            f"Listed {response.summary.keys_listed} keys: {response.summary.keys_inserted} new, "
            f"{response.summary.keys_updated} updated"
        )
        if response.summary.save_errors_count:
            response.message += f", {response.summary.save_errors_count} failed"

    def _sync_usage(
        self,
        client: ProviderClient,
        request: SyncRequest,
        account: PlatformAccount,
        response: SyncResponse,
        now: datetime,
    ) -> None:
        start, end = resolve_window(request.range, request.starting_at, request.ending_at, now)
        month_from, month_to = month_to_date(now)
        persist = month_from <= start and end <= month_to
        if persist:
            fetch_start, fetch_end = month_from, month_to
        else:
            fetch_start, fetch_end = start, end
            response.warnings.append("Range lies outside the current month; usage is reported but not stored")

        local_keys = self._local_keys(account)
        keys_refreshed = False
        if request.refresh_keys or not _key_map(local_keys):
            # New account: list keys before usage.
            keys_refreshed = self._try_key_registry(client, account, response, now)
            local_keys = self._local_keys(account)

        self._transition(account, response, SyncState.FETCHING_USAGE)
        buckets = self._with_retries(
            lambda: client.fetch_usage(UsageQuery(start=fetch_start, end=fetch_end, bucket_width=request.bucket_width))
        )
        if request.api_key_id:
            buckets = _filter_buckets(buckets, request.api_key_id)
        cost_buckets = self._try_fetch_costs(client, account, response, month_from, month_to) if persist else None
        response.summary.buckets_count = len(buckets)
        response.summary.cost_buckets_count = len(cost_buckets or [])

        if not buckets and not cost_buckets:
            self._transition(account, response, SyncState.DONE)
            response.success = True
            response.message = "No usage data for the selected range"
            return

        self._transition(account, response, SyncState.AGGREGATING)
        as_of = now.astimezone(UTC).date()
        result = aggregate(buckets, _key_map(local_keys), as_of)

        if result.unmatched and not keys_refreshed:
            logger.info(
                "Account %s: %d usage keys have no local record; resyncing key list.",
                account.id,
                len(result.unmatched),
            )
            if self._try_key_registry(client, account, response, now):
                local_keys = self._local_keys(account)
                self._transition(account, response, SyncState.AGGREGATING)
                result = aggregate(buckets, _key_map(local_keys), as_of)

        if (fetch_start, fetch_end) == (start, end):
            report = result
        else:
            report = aggregate(_window_buckets(buckets, start, end), _key_map(local_keys), as_of)
        self._fill_key_report(response, report, local_keys)
        response.daily_usage = daily_usage_frame(report, _key_map(local_keys))

        costs: CostAggregation | None = None
        if cost_buckets is not None:
            costs = aggregate_costs(cost_buckets, local_keys, as_of)
            if request.api_key_id:
                costs = _filter_costs(costs, _key_map(local_keys).get(request.api_key_id))
            self._fill_spend_report(response, costs)

        if not persist:
            self._transition(account, response, SyncState.DONE)
            response.success = True
            response.message = f"Reported {response.summary.matched_keys_count} keys; range not stored"
            return

        self._transition(account, response, SyncState.PERSISTING_USAGE)
        records = build_usage_records(
            result.period,
            result.today,
            synced_at=now,
            period_start=month_from.date(),
            costs=costs,
        )
        saved, failures = self.writer.write_all(records)
        response.summary.saved_count = saved
        for failure in failures:
            response.summary.record_failure(failure, max_details=MAX_FAILURE_DETAILS)

        self._transition(account, response, SyncState.DONE)
        response.success = True
        response.message = format_sync_message(response.summary)

    def _try_fetch_costs(
        self,
        client: ProviderClient,
        account: PlatformAccount,
        response: SyncResponse,
        start: datetime,
        end: datetime,
    ) -> list[CostBucket] | None:
        """Month-to-date spend, or ``None`` when the provider has none or the fetch failed."""
        if not client.supports_costs:
            return None
        try:
            return self._with_retries(lambda: client.fetch_costs(CostQuery(start=start, end=end)))
        except ProviderError as exc:
            logger.warning("Cost sync for account %s failed: %s", account.id, exc)
            response.warnings.append(f"Cost sync failed: {exc}")
            return None

    def _sync_key_registry(
        self,
        client: ProviderClient,
        account: PlatformAccount,
        response: SyncResponse,
        now: datetime,
    ) -> None:
        self._transition(account, response, SyncState.FETCHING_KEYS)
        provider_keys = self._with_retries(lambda: client.list_keys(KeyFilters()))

        self._transition(account, response, SyncState.RECONCILING_KEYS)
        plan = reconcile(
            provider_keys,
            self._local_keys(account),
            platform=account.platform,
            platform_account_id=account.id,
            tenant_id=account.tenant_id,
            now=now,
        )

        self._transition(account, response, SyncState.PERSISTING_KEYS)
        applied = apply_plan(self.store, plan)
        response.summary.keys_listed = len(provider_keys)
        response.summary.keys_inserted = len(applied.inserted)
        response.summary.keys_updated = len(applied.updated)
        for failure in applied.failures:
            response.summary.record_failure(failure, max_details=MAX_FAILURE_DETAILS)

    def _try_key_registry(
        self,
        client: ProviderClient,
        account: PlatformAccount,
        response: SyncResponse,
        now: datetime,
    ) -> bool:
        """Key-list sync inside a usage run; its failure is fatal for that stage only."""
        try:
            self._sync_key_registry(client, account, response, now)
        except ProviderError as exc:
            logger.warning("Key list sync for account %s failed: %s", account.id, exc)
            response.warnings.append(f"Key list sync failed: {exc}")
            return False
        return True

    def _local_keys(self, account: PlatformAccount) -> list[LocalKeyRecord]:
        return self.store.list_keys(account.platform, account.id)

    def _fill_key_report(
        self,
        response: SyncResponse,
        result: AggregationResult,
        local_keys: Iterable[LocalKeyRecord],
    ) -> None:
        by_id = {record.id: record for record in local_keys if record.id}
        response.matched_keys = [
            MatchedKey(
                provider_key_id=str(by_id[local_id].provider_key_id) if local_id in by_id else "",
                local_key_id=local_id,
                name=by_id[local_id].name if local_id in by_id else "",
                period_tokens=period_agg.total_tokens,
                today_tokens=result.today_or_zero(local_id).total_tokens,
            )
            for local_id, period_agg in sorted(result.period.items())
        ]
        response.unmatched_keys = sorted(result.unmatched.values(), key=lambda key: key.provider_key_id)
        response.summary.usage_keys_count = result.usage_keys_count
        response.summary.matched_keys_count = len(response.matched_keys)
        response.summary.unmatched_keys_count = len(response.unmatched_keys)

    @staticmethod
    def _fill_spend_report(response: SyncResponse, costs: CostAggregation) -> None:
        response.spend = list(costs.spend)
        response.unmatched_spend = sorted(costs.unmatched.values(), key=lambda item: item.group_id)
        response.summary.month_cost_usd = costs.month_total
        response.summary.today_cost_usd = costs.today_total

    def _with_retries(self, call: Callable[[], T]) -> T:
        for attempt in range(self.stage_retries + 1):
            try:
                return call()
            except ProviderError as exc:
                if not exc.retryable or attempt == self.stage_retries:
                    raise
                logger.info("Retryable provider error (%s); attempt %d.", exc, attempt + 1)
                self.sleep(RETRY_BACKOFF_SECONDS * (2**attempt))
        raise ProviderError("Request failed after retries")

    def _transition(self, account: PlatformAccount, response: SyncResponse, state: SyncState) -> None:
        previous = response.transitions[-1].value if response.transitions else "start"
        response.transitions.append(state)
        logger.info("Account %s (%s): %s -> %s", account.id, account.platform, previous, state.value)

    def _release_guard(self, account: PlatformAccount) -> str | None:
        try:
            self.store.release_sync_guard(account.id)
        except StoreError as exc:
            logger.warning("Could not release sync guard for account %s: %s", account.id, exc)
            return f"Could not release sync guard: {exc}"
        return None

    def _run_hooks(self, account: PlatformAccount, response: SyncResponse) -> None:
        for hook in self.hooks:
            try:
                hook(account, response)
            except Exception:
                logger.exception("Post-sync hook %r failed for account %s.", hook, account.id)

    @staticmethod
    def _fail(request: SyncRequest, error: str) -> SyncResponse:
        logger.warning("Rejected %s for account %s: %s", request.action, request.platform_account_id, error)
        return SyncResponse(success=False, action=request.action, error=error)


def _key_map(local_keys: Iterable[LocalKeyRecord]) -> dict[str, str]:
    return {record.provider_key_id: record.id for record in local_keys if record.provider_key_id and record.id}


def _filter_buckets(buckets: Iterable[UsageBucket], provider_key_id: str) -> list[UsageBucket]:
    filtered: list[UsageBucket] = []
    for bucket in buckets:
        fragments = tuple(f for f in bucket.fragments if f.provider_key_id == provider_key_id)
        if fragments:
            filtered.append(UsageBucket(bucket.period_start, bucket.period_end, fragments))
    return filtered


def _window_buckets(buckets: Iterable[UsageBucket], start: datetime, end: datetime) -> list[UsageBucket]:
    return [bucket for bucket in buckets if start <= bucket.period_start < end]


def _filter_costs(costs: CostAggregation, local_key_id: str | None) -> CostAggregation:
    """Keep only one local key's spend; totals stay account-wide."""
    keep = {local_key_id} if local_key_id else set()
    return CostAggregation(
        month={key: value for key, value in costs.month.items() if key in keep},
        today={key: value for key, value in costs.today.items() if key in keep},
        spend=[item for item in costs.spend if item.local_key_id in keep],
        unmatched={},
        month_total=costs.month_total,
        today_total=costs.today_total,
    )
