"""Local key/usage store consumed by the sync pipeline.

The pipeline only needs two idempotent capabilities from the store: upsert a
key record by provider key id and upsert a usage record by
``(api_key_id, period_start)``. ``UsageStore`` spells those out as plain
read/insert/update calls plus the per-account sync guard.
"""

from __future__ import annotations

import sqlite3
import threading
import uuid
from abc import ABC, abstractmethod
from collections.abc import Generator
from contextlib import contextmanager
from dataclasses import dataclass, replace
from datetime import date, datetime
from pathlib import Path
from typing import Any

from keyledger.models import LocalKeyRecord, PlatformAccount, UsageRecord

# Columns the sync pipeline may write on an existing key. User-edited
# metadata (owner, business, description) is never among them.
SYNC_OWNED_KEY_FIELDS = frozenset({"name", "status", "workspace_id", "last_synced_at"})

USAGE_COLUMNS = (
    "token_usage_daily",
    "token_usage_monthly",
    "token_usage_total",
    "prompt_tokens_total",
    "completion_tokens_total",
    "synced_at",
    "sync_status",
    "cost_usd_daily",
    "cost_usd_monthly",
)


@dataclass
class StoreError(Exception):
    """A single store operation failed."""

    message: str
    key_id: str | None = None

    def __str__(self) -> str:
        if self.key_id is None:
            return self.message
        return f"{self.message} (key={self.key_id})"


def _check_key_changes(changes: dict[str, Any]) -> None:
    illegal = set(changes) - SYNC_OWNED_KEY_FIELDS
    if illegal:
        raise StoreError(f"Refusing to overwrite non-sync fields: {sorted(illegal)}")


class UsageStore(ABC):
    """Abstract store interface."""

    @abstractmethod
    def list_keys(self, platform: str, platform_account_id: str | None) -> list[LocalKeyRecord]:
        """Return local keys for one provider account."""

    @abstractmethod
    def insert_key(self, record: LocalKeyRecord) -> LocalKeyRecord:
        """Insert a key and return it with its generated ``id``."""

    @abstractmethod
    def update_key(self, key_id: str, changes: dict[str, Any]) -> None:
        """Update sync-owned columns of an existing key."""

    @abstractmethod
    def find_usage(self, api_key_id: str, period_start: date) -> UsageRecord | None:
        ...

    @abstractmethod
    def insert_usage(self, record: UsageRecord) -> None:
        ...

    @abstractmethod
    def update_usage(self, api_key_id: str, period_start: date, columns: dict[str, Any]) -> None:
        ...

    @abstractmethod
    def list_usage(self, api_key_ids: list[str] | None = None) -> list[UsageRecord]:
        ...

    @abstractmethod
    def get_account(self, account_id: str) -> PlatformAccount | None:
        ...

    @abstractmethod
    def list_accounts(self, status: str | None = None) -> list[PlatformAccount]:
        ...

    @abstractmethod
    def save_account(self, account: PlatformAccount) -> None:
        ...

    @abstractmethod
    def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        ...

    @abstractmethod
    def acquire_sync_guard(self, account_id: str) -> bool:
        """Set the persisted "sync in progress" flag; False if it was already set."""

    @abstractmethod
    def release_sync_guard(self, account_id: str) -> None:
        ...


class InMemoryStore(UsageStore):
    """Dict-backed store for tests and local demos."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self.keys: dict[str, LocalKeyRecord] = {}
        self.usage: dict[tuple[str, date], UsageRecord] = {}
        self.accounts: dict[str, PlatformAccount] = {}

    def list_keys(self, platform: str, platform_account_id: str | None) -> list[LocalKeyRecord]:
        with self._lock:
            return [
                replace(record)
                for record in self.keys.values()
                if record.platform == platform and record.platform_account_id == platform_account_id
            ]

    def insert_key(self, record: LocalKeyRecord) -> LocalKeyRecord:
        with self._lock:
            if record.provider_key_id:
                for existing in self.keys.values():
                    if (
                        existing.platform == record.platform
                        and existing.platform_account_id == record.platform_account_id
                        and existing.provider_key_id == record.provider_key_id
                    ):
                        raise StoreError("Duplicate provider key id", key_id=record.provider_key_id)
            stored = replace(record, id=record.id or str(uuid.uuid4()))
            self.keys[stored.id] = stored
            return replace(stored)

    def update_key(self, key_id: str, changes: dict[str, Any]) -> None:
        _check_key_changes(changes)
        with self._lock:
            if key_id not in self.keys:
                raise StoreError("Key not found", key_id=key_id)
            self.keys[key_id] = replace(self.keys[key_id], **changes)

    def find_usage(self, api_key_id: str, period_start: date) -> UsageRecord | None:
        with self._lock:
            record = self.usage.get((api_key_id, period_start))
            return replace(record) if record else None

    def insert_usage(self, record: UsageRecord) -> None:
        with self._lock:
            identity = (record.api_key_id, record.period_start)
            if identity in self.usage:
                raise StoreError("Duplicate usage row", key_id=record.api_key_id)
            self.usage[identity] = replace(record)

    def update_usage(self, api_key_id: str, period_start: date, columns: dict[str, Any]) -> None:
        with self._lock:
            identity = (api_key_id, period_start)
            if identity not in self.usage:
                raise StoreError("Usage row not found", key_id=api_key_id)
            self.usage[identity] = replace(self.usage[identity], **columns)

    def list_usage(self, api_key_ids: list[str] | None = None) -> list[UsageRecord]:
        with self._lock:
            rows = [replace(record) for record in self.usage.values()]
        if api_key_ids is not None:
            wanted = set(api_key_ids)
            rows = [row for row in rows if row.api_key_id in wanted]
        return sorted(rows, key=lambda row: (row.api_key_id, row.period_start))

    def get_account(self, account_id: str) -> PlatformAccount | None:
        with self._lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def list_accounts(self, status: str | None = None) -> list[PlatformAccount]:
        with self._lock:
            accounts = [replace(account) for account in self.accounts.values()]
        return [account for account in accounts if status is None or account.status == status]

    def save_account(self, account: PlatformAccount) -> None:
        with self._lock:
            self.accounts[account.id] = replace(account)

    def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        with self._lock:
            if account_id in self.accounts:
                self.accounts[account_id] = replace(self.accounts[account_id], last_synced_at=synced_at)

    def acquire_sync_guard(self, account_id: str) -> bool:
        with self._lock:
            account = self.accounts.get(account_id)
            if account is None:
                return True
            if account.sync_in_progress:
                return False
            self.accounts[account_id] = replace(account, sync_in_progress=True)
            return True

    def release_sync_guard(self, account_id: str) -> None:
        with self._lock:
            if account_id in self.accounts:
                self.accounts[account_id] = replace(self.accounts[account_id], sync_in_progress=False)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS platform_accounts (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    platform TEXT NOT NULL,
    credential_ref TEXT NOT NULL,
    tenant_id TEXT,
    status TEXT NOT NULL DEFAULT 'active',
    last_synced_at TEXT,
    sync_in_progress INTEGER NOT NULL DEFAULT 0
);
CREATE TABLE IF NOT EXISTS api_keys (
    id TEXT PRIMARY KEY,
    provider_key_id TEXT,
    platform TEXT NOT NULL,
    platform_account_id TEXT,
    name TEXT NOT NULL,
    status TEXT NOT NULL,
    api_key_prefix TEXT NOT NULL DEFAULT '',
    api_key_suffix TEXT NOT NULL DEFAULT '',
    workspace_id TEXT,
    last_synced_at TEXT,
    tenant_id TEXT,
    creation_method TEXT NOT NULL DEFAULT 'sync',
    owner_name TEXT,
    owner_email TEXT,
    business TEXT,
    description TEXT
);
CREATE UNIQUE INDEX IF NOT EXISTS ux_api_keys_provider_key
    ON api_keys (platform, platform_account_id, provider_key_id)
    WHERE provider_key_id IS NOT NULL;
CREATE TABLE IF NOT EXISTS api_key_usage (
    api_key_id TEXT NOT NULL,
    period_start TEXT NOT NULL,
    token_usage_daily INTEGER NOT NULL DEFAULT 0,
    token_usage_monthly INTEGER NOT NULL DEFAULT 0,
    token_usage_total INTEGER NOT NULL DEFAULT 0,
    prompt_tokens_total INTEGER NOT NULL DEFAULT 0,
    completion_tokens_total INTEGER NOT NULL DEFAULT 0,
    synced_at TEXT,
    sync_status TEXT NOT NULL DEFAULT 'success',
    cost_usd_daily REAL NOT NULL DEFAULT 0,
    cost_usd_monthly REAL NOT NULL DEFAULT 0,
    PRIMARY KEY (api_key_id, period_start)
);
"""

# Columns added after the first release, applied to older databases on open.
_USAGE_MIGRATIONS = {
    "cost_usd_daily": "REAL NOT NULL DEFAULT 0",
    "cost_usd_monthly": "REAL NOT NULL DEFAULT 0",
}

_KEY_COLUMNS = (
    "id",
    "provider_key_id",
    "platform",
    "platform_account_id",
    "name",
    "status",
    "api_key_prefix",
    "api_key_suffix",
    "workspace_id",
    "last_synced_at",
    "tenant_id",
    "creation_method",
    "owner_name",
    "owner_email",
    "business",
    "description",
)


def _to_db(value: Any) -> Any:
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    return value


def _parse_datetime(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


class SQLiteStore(UsageStore):
    """SQLite-backed store, one short-lived connection per operation."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        with self.connect() as conn:
            conn.executescript(_SCHEMA)
            existing = {row["name"] for row in conn.execute("PRAGMA table_info(api_key_usage)")}
            for column, ddl in _USAGE_MIGRATIONS.items():
                if column not in existing:
                    conn.execute(f"ALTER TABLE api_key_usage ADD COLUMN {column} {ddl}")

    @contextmanager
    def connect(self) -> Generator[sqlite3.Connection, None, None]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except sqlite3.Error as exc:
            conn.rollback()
            raise StoreError(f"SQLite error: {exc}") from exc
        finally:
            conn.close()

    def list_keys(self, platform: str, platform_account_id: str | None) -> list[LocalKeyRecord]:
        with self.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM api_keys WHERE platform = ? AND platform_account_id IS ?",
                (platform, platform_account_id),
            ).fetchall()
        return [self._key_from_row(row) for row in rows]

    def insert_key(self, record: LocalKeyRecord) -> LocalKeyRecord:
        stored = replace(record, id=record.id or str(uuid.uuid4()))
        placeholders = ", ".join("?" for _ in _KEY_COLUMNS)
        try:
            with self.connect() as conn:
                conn.execute(
                    f"INSERT INTO api_keys ({', '.join(_KEY_COLUMNS)}) VALUES ({placeholders})",
                    tuple(_to_db(getattr(stored, column)) for column in _KEY_COLUMNS),
                )
        except StoreError as exc:
            raise StoreError(exc.message, key_id=record.provider_key_id) from exc
        return stored

    def update_key(self, key_id: str, changes: dict[str, Any]) -> None:
        _check_key_changes(changes)
        if not changes:
            return
        assignments = ", ".join(f"{column} = ?" for column in changes)
        with self.connect() as conn:
            cursor = conn.execute(
                f"UPDATE api_keys SET {assignments} WHERE id = ?",
                (*(_to_db(value) for value in changes.values()), key_id),
            )
            if cursor.rowcount == 0:
                raise StoreError("Key not found", key_id=key_id)

    def find_usage(self, api_key_id: str, period_start: date) -> UsageRecord | None:
        with self.connect() as conn:
            row = conn.execute(
                "SELECT * FROM api_key_usage WHERE api_key_id = ? AND period_start = ?",
                (api_key_id, period_start.isoformat()),
            ).fetchone()
        return self._usage_from_row(row) if row else None

    def insert_usage(self, record: UsageRecord) -> None:
        usage = record.usage_columns()
        columns = ("api_key_id", "period_start", *usage)
        values = (record.api_key_id, record.period_start, *usage.values())
        try:
            with self.connect() as conn:
                conn.execute(
                    f"INSERT INTO api_key_usage ({', '.join(columns)}) VALUES ({', '.join('?' for _ in columns)})",
                    tuple(_to_db(value) for value in values),
                )
        except StoreError as exc:
            raise StoreError(exc.message, key_id=record.api_key_id) from exc

    def update_usage(self, api_key_id: str, period_start: date, columns: dict[str, Any]) -> None:
        unknown = set(columns) - set(USAGE_COLUMNS)
        if unknown:
            raise StoreError(f"Unknown usage columns: {sorted(unknown)}", key_id=api_key_id)
        assignments = ", ".join(f"{column} = ?" for column in columns)
        with self.connect() as conn:
            cursor = conn.execute(
                f"UPDATE api_key_usage SET {assignments} WHERE api_key_id = ? AND period_start = ?",
                (*(_to_db(value) for value in columns.values()), api_key_id, period_start.isoformat()),
            )
            if cursor.rowcount == 0:
                raise StoreError("Usage row not found", key_id=api_key_id)

    def list_usage(self, api_key_ids: list[str] | None = None) -> list[UsageRecord]:
        with self.connect() as conn:
            rows = conn.execute("SELECT * FROM api_key_usage ORDER BY api_key_id, period_start").fetchall()
        records = [self._usage_from_row(row) for row in rows]
        if api_key_ids is not None:
            wanted = set(api_key_ids)
            records = [record for record in records if record.api_key_id in wanted]
        return records

    def get_account(self, account_id: str) -> PlatformAccount | None:
        with self.connect() as conn:
            row = conn.execute("SELECT * FROM platform_accounts WHERE id = ?", (account_id,)).fetchone()
        return self._account_from_row(row) if row else None

    def list_accounts(self, status: str | None = None) -> list[PlatformAccount]:
        with self.connect() as conn:
            if status is None:
                rows = conn.execute("SELECT * FROM platform_accounts ORDER BY name").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM platform_accounts WHERE status = ? ORDER BY name", (status,)
                ).fetchall()
        return [self._account_from_row(row) for row in rows]

    def save_account(self, account: PlatformAccount) -> None:
        with self.connect() as conn:
            conn.execute(
                """
                INSERT INTO platform_accounts (id, name, platform, credential_ref, tenant_id, status, last_synced_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (id) DO UPDATE SET
                    name = excluded.name,
                    platform = excluded.platform,
                    credential_ref = excluded.credential_ref,
                    tenant_id = excluded.tenant_id,
                    status = excluded.status
                """,
                (
                    account.id,
                    account.name,
                    account.platform,
                    account.credential_ref,
                    account.tenant_id,
                    account.status,
                    _to_db(account.last_synced_at),
                ),
            )

    def mark_account_synced(self, account_id: str, synced_at: datetime) -> None:
        with self.connect() as conn:
            conn.execute(
                "UPDATE platform_accounts SET last_synced_at = ? WHERE id = ?",
                (synced_at.isoformat(), account_id),
            )

    def acquire_sync_guard(self, account_id: str) -> bool:
        with self.connect() as conn:
            exists = conn.execute("SELECT 1 FROM platform_accounts WHERE id = ?", (account_id,)).fetchone()
            if exists is None:
                return True
            cursor = conn.execute(
                "UPDATE platform_accounts SET sync_in_progress = 1 WHERE id = ? AND sync_in_progress = 0",
                (account_id,),
            )
            return cursor.rowcount == 1

    def release_sync_guard(self, account_id: str) -> None:
        with self.connect() as conn:
            conn.execute("UPDATE platform_accounts SET sync_in_progress = 0 WHERE id = ?", (account_id,))

    @staticmethod
    def _key_from_row(row: sqlite3.Row) -> LocalKeyRecord:
        values = {column: row[column] for column in _KEY_COLUMNS}
        values["last_synced_at"] = _parse_datetime(values["last_synced_at"])
        return LocalKeyRecord(**values)

    @staticmethod
    def _usage_from_row(row: sqlite3.Row) -> UsageRecord:
        return UsageRecord(
            api_key_id=row["api_key_id"],
            period_start=date.fromisoformat(row["period_start"]),
            token_usage_daily=row["token_usage_daily"],
            token_usage_monthly=row["token_usage_monthly"],
            token_usage_total=row["token_usage_total"],
            prompt_tokens_total=row["prompt_tokens_total"],
            completion_tokens_total=row["completion_tokens_total"],
            synced_at=_parse_datetime(row["synced_at"]),
            sync_status=row["sync_status"],
            cost_usd_daily=row["cost_usd_daily"],
            cost_usd_monthly=row["cost_usd_monthly"],
        )

    @staticmethod
    def _account_from_row(row: sqlite3.Row) -> PlatformAccount:
        return PlatformAccount(
            id=row["id"],
            name=row["name"],
            platform=row["platform"],
            credential_ref=row["credential_ref"],
            tenant_id=row["tenant_id"],
            status=row["status"],
            last_synced_at=_parse_datetime(row["last_synced_at"]),
            sync_in_progress=bool(row["sync_in_progress"]),
        )
