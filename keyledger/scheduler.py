"""Timer and cron triggers for usage syncs."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import UTC, datetime

from keyledger.config import AUTO_SYNC_DEBOUNCE_SECONDS, CRON_SYNC_INTERVAL_SECONDS, MAX_ACCOUNTS_PER_RUN
from keyledger.models import PlatformAccount
from keyledger.orchestrator import SyncOrchestrator, SyncRequest, SyncResponse

logger = logging.getLogger(__name__)


def should_auto_sync(
    last_synced_at: datetime | None,
    now: datetime,
    debounce_seconds: int = AUTO_SYNC_DEBOUNCE_SECONDS,
) -> bool:
    """True when the account has never synced or its last sync is older than the debounce."""
    if last_synced_at is None:
        return True
    if last_synced_at.tzinfo is None:
        last_synced_at = last_synced_at.replace(tzinfo=UTC)
    return (now - last_synced_at).total_seconds() >= debounce_seconds


@dataclass
class ScheduledRun:
    account_id: str
    success: bool
    message: str = ""
    error: str | None = None

    def to_dict(self) -> dict[str, object]:
        return {
            "account_id": self.account_id,
            "success": self.success,
            "message": self.message,
            "error": self.error,
        }


@dataclass
class SchedulerReport:
    runs: list[ScheduledRun] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for run in self.runs if run.success)

    @property
    def fail_count(self) -> int:
        return sum(1 for run in self.runs if not run.success)

    def to_dict(self) -> dict[str, object]:
        return {
            "total": len(self.runs),
            "success": self.success_count,
            "failed": self.fail_count,
            "skipped": list(self.skipped),
            "results": [run.to_dict() for run in self.runs],
        }


class AutoSyncScheduler:
    """Batch sync over due accounts, oldest first.

    One account failing never stops the batch; each account's outcome is
    reported on its own.
    """

    def __init__(
        self,
        orchestrator: SyncOrchestrator,
        *,
        interval_seconds: int = CRON_SYNC_INTERVAL_SECONDS,
        max_accounts_per_run: int = MAX_ACCOUNTS_PER_RUN,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.orchestrator = orchestrator
        self.interval_seconds = interval_seconds
        self.max_accounts_per_run = max_accounts_per_run
        self.clock = clock or (lambda: datetime.now(tz=UTC))

    def due_accounts(self, accounts: Iterable[PlatformAccount]) -> list[PlatformAccount]:
        now = self.clock()
        due = [
            account
            for account in accounts
            if account.status == "active"
            and not account.sync_in_progress
            and should_auto_sync(account.last_synced_at, now, self.interval_seconds)
        ]
        oldest = datetime.min.replace(tzinfo=UTC)
        due.sort(key=lambda account: _aware(account.last_synced_at) or oldest)
        return due[: self.max_accounts_per_run]

    def run_due(self, accounts: Iterable[PlatformAccount] | None = None) -> SchedulerReport:
        candidates = list(accounts) if accounts is not None else self.orchestrator.store.list_accounts(status="active")
        due = self.due_accounts(candidates)
        due_ids = {account.id for account in due}

        report = SchedulerReport(skipped=[account.id for account in candidates if account.id not in due_ids])
        logger.info("Cron sync: %d due of %d accounts.", len(due), len(candidates))

        for account in due:
            report.runs.append(self._run_one(account))

        logger.info("Cron sync finished: %d succeeded, %d failed.", report.success_count, report.fail_count)
        return report

    def _run_one(self, account: PlatformAccount) -> ScheduledRun:
        request = SyncRequest(action="sync_usage", platform_account_id=account.id, tenant_id=account.tenant_id)
        try:
            response: SyncResponse = self.orchestrator.handle(request)
        except Exception as exc:
            logger.exception("Scheduled sync crashed for account %s.", account.id)
            return ScheduledRun(account_id=account.id, success=False, error=str(exc))
        return ScheduledRun(
            account_id=account.id,
            success=response.success,
            message=response.message,
            error=response.error,
        )


def _aware(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=UTC)
