"""Provider client interface and shared normalization helpers."""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import UTC, datetime
from typing import Any

from keyledger.config import DEFAULT_BUCKET_WIDTH, DEFAULT_KEY_LIST_LIMIT
from keyledger.models import CostBucket, ProviderKey, UsageBucket


@dataclass
class CredentialError(Exception):
    """Missing or malformed admin credential. Fatal for the whole run."""

    message: str
    platform: str | None = None

    def __str__(self) -> str:
        if self.platform is None:
            return self.message
        return f"{self.message} (platform={self.platform})"


@dataclass(frozen=True)
class KeyFilters:
    limit: int = DEFAULT_KEY_LIST_LIMIT
    status: str | None = None
    workspace_id: str | None = None


@dataclass(frozen=True)
class UsageQuery:
    start: datetime
    end: datetime
    bucket_width: str = DEFAULT_BUCKET_WIDTH
    group_by: tuple[str, ...] = ("key",)


@dataclass(frozen=True)
class CostQuery:
    start: datetime
    end: datetime
    bucket_width: str = DEFAULT_BUCKET_WIDTH


class ProviderClient(ABC):
    """Abstract interface that every provider client implements."""

    provider_name: str
    supports_usage: bool = True
    supports_costs: bool = False

    @abstractmethod
    def list_keys(self, filters: KeyFilters | None = None) -> list[ProviderKey]:
        """Return every key the provider's registry knows about."""

    @abstractmethod
    def fetch_usage(self, query: UsageQuery) -> list[UsageBucket]:
        """Return usage buckets for the window, one fragment per key and bucket."""

    def fetch_costs(self, query: CostQuery) -> list[CostBucket]:
        """Return spend buckets for the window. Providers without a cost API return none."""
        return []

    def close(self) -> None:
        """Release HTTP resources."""

    def __enter__(self) -> "ProviderClient":
        return self

    def __exit__(self, exc_type: Any, exc: Any, tb: Any) -> None:
        self.close()


def to_int(value: Any) -> int:
    """Coerce a provider token count into a non-negative int."""
    try:
        if value is None or value == "":
            return 0
        number = int(float(value))
    except (TypeError, ValueError):
        return 0
    return max(number, 0)


def to_float(value: Any) -> float:
    """Coerce a provider amount (number or numeric string) into a float."""
    try:
        if value is None or value == "":
            return 0.0
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def to_utc_datetime(value: Any) -> datetime | None:
    """Parse unix seconds or ISO-8601 text into an aware UTC datetime."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.astimezone(UTC) if value.tzinfo else value.replace(tzinfo=UTC)
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(int(value), tz=UTC)
    text = str(value).strip()
    if text.isdigit():
        return datetime.fromtimestamp(int(text), tz=UTC)
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed.astimezone(UTC) if parsed.tzinfo else parsed.replace(tzinfo=UTC)


def to_iso8601(value: datetime) -> str:
    return value.astimezone(UTC).isoformat().replace("+00:00", "Z")


def normalize_status(value: Any) -> str:
    text = str(value or "").strip().lower()
    if text in {"active", "enabled", "true"}:
        return "active"
    return "inactive"
