"""Key registry reconciliation: provider listing vs. local key records.

Provider keys are matched to local records by ``provider_key_id`` only. Key
names are mutable and non-unique on every provider, so they are never used
as a join key.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Iterable

from keyledger.config import DEFAULT_KEY_PREFIXES, MASKED_PREFIX_LENGTH, MASKED_SUFFIX_LENGTH
from keyledger.models import LocalKeyPatch, LocalKeyRecord, ProviderKey, SyncFailure
from keyledger.store import StoreError, UsageStore

logger = logging.getLogger(__name__)

MASKED_SUFFIX_PLACEHOLDER = "****"


@dataclass
class ReconcilePlan:
    to_insert: list[LocalKeyRecord] = field(default_factory=list)
    to_update: list[LocalKeyPatch] = field(default_factory=list)


@dataclass
class ApplyResult:
    inserted: list[LocalKeyRecord] = field(default_factory=list)
    updated: list[LocalKeyPatch] = field(default_factory=list)
    failures: list[SyncFailure] = field(default_factory=list)


def mask_key_hint(hint: str | None, platform: str) -> tuple[str, str]:
    """Return ``(prefix, suffix)`` for the masked key columns.

    A missing hint degrades to the platform placeholder instead of failing.
    """
    text = (hint or "").strip()
    if not text:
        return DEFAULT_KEY_PREFIXES.get(platform, ""), MASKED_SUFFIX_PLACEHOLDER
    return text[:MASKED_PREFIX_LENGTH], text[-MASKED_SUFFIX_LENGTH:]


def reconcile(
    provider_keys: Iterable[ProviderKey],
    local_keys: Iterable[LocalKeyRecord],
    *,
    platform: str,
    platform_account_id: str | None,
    tenant_id: str | None = None,
    now: datetime | None = None,
) -> ReconcilePlan:
    synced_at = now or datetime.now(tz=UTC)
    by_provider_id = {record.provider_key_id: record for record in local_keys if record.provider_key_id}

    plan = ReconcilePlan()
    seen: set[str] = set()
    for key in provider_keys:
        if not key.provider_key_id or key.provider_key_id in seen:
            continue
        seen.add(key.provider_key_id)

        existing = by_provider_id.get(key.provider_key_id)
        if existing is not None and existing.id is not None:
            plan.to_update.append(
                LocalKeyPatch(
                    local_key_id=existing.id,
                    provider_key_id=key.provider_key_id,
                    name=key.name,
                    status=key.status,
                    workspace_id=key.workspace_id,
                    last_synced_at=synced_at,
                )
            )
            continue

        prefix, suffix = mask_key_hint(key.partial_key_hint, platform)
        plan.to_insert.append(
            LocalKeyRecord(
                id=None,
                provider_key_id=key.provider_key_id,
                platform=platform,
                platform_account_id=platform_account_id,
                name=key.name,
                status=key.status,
                api_key_prefix=prefix,
                api_key_suffix=suffix,
                workspace_id=key.workspace_id,
                last_synced_at=synced_at,
                tenant_id=tenant_id,
                creation_method="sync",
            )
        )

    logger.debug(
        "Reconciled %s keys for account %s: %d to insert, %d to update.",
        platform,
        platform_account_id,
        len(plan.to_insert),
        len(plan.to_update),
    )
    return plan


def apply_plan(store: UsageStore, plan: ReconcilePlan) -> ApplyResult:
    """Persist a plan key by key; one failing key never aborts the rest."""
    result = ApplyResult()

    for record in plan.to_insert:
        try:
            result.inserted.append(store.insert_key(record))
        except StoreError as exc:
            logger.warning("Failed to insert key %s: %s", record.provider_key_id, exc)
            result.failures.append(SyncFailure(key_id=str(record.provider_key_id), message=str(exc)))

    for patch in plan.to_update:
        try:
            store.update_key(patch.local_key_id, patch.as_changes())
        except StoreError as exc:
            logger.warning("Failed to update key %s: %s", patch.local_key_id, exc)
            result.failures.append(SyncFailure(key_id=patch.local_key_id, message=str(exc)))
        else:
            result.updated.append(patch)

    return result
