"""Platform account loading and admin credential resolution."""

from __future__ import annotations

import logging
import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from keyledger.config import DEFAULT_CREDENTIAL_ENV, PLATFORMS
from keyledger.models import PlatformAccount
from keyledger.providers.base import CredentialError

logger = logging.getLogger(__name__)


def load_accounts(yaml_path: Path | str) -> list[PlatformAccount]:
    """Read platform accounts from a YAML file.

    Expected layout::

        accounts:
          - id: acct_claude_main
            name: Claude production
            platform: anthropic
            credential_ref: ANTHROPIC_ADMIN_KEY
            tenant_id: tenant_1

    ``credential_ref`` names the environment variable holding the admin
    credential and defaults to the platform's standard variable. Secrets are
    never stored in the file.
    """
    path = Path(yaml_path)
    if not path.exists():
        logger.info("No accounts file at %s.", path)
        return []

    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ValueError(f"Failed to parse accounts YAML at {path}: {exc}") from exc

    entries = raw.get("accounts") if isinstance(raw, dict) else None
    if not isinstance(entries, list):
        raise ValueError(f"Accounts YAML at {path} must contain an 'accounts' list.")

    accounts = [_account_from_entry(entry) for entry in entries if isinstance(entry, dict)]
    logger.info("Loaded %d platform accounts from %s.", len(accounts), path)
    return accounts


def _account_from_entry(entry: dict[str, Any]) -> PlatformAccount:
    platform = str(entry.get("platform") or "").strip().lower()
    if platform not in PLATFORMS:
        raise ValueError(f"Unsupported platform {platform!r} for account {entry.get('id')!r}.")
    account_id = str(entry.get("id") or "").strip()
    if not account_id:
        raise ValueError("Every account needs an id.")
    return PlatformAccount(
        id=account_id,
        name=str(entry.get("name") or account_id),
        platform=platform,
        credential_ref=str(entry.get("credential_ref") or DEFAULT_CREDENTIAL_ENV[platform]),
        tenant_id=entry.get("tenant_id"),
        status=str(entry.get("status") or "active"),
    )


def resolve_credential(credential_ref: str | None, environ: Mapping[str, str] | None = None) -> str:
    """Look up the admin credential named by ``credential_ref``."""
    env = os.environ if environ is None else environ
    if not credential_ref:
        raise CredentialError("No credential reference configured for this account.")
    value = (env.get(credential_ref) or "").strip()
    if not value:
        raise CredentialError(f"Admin credential {credential_ref} is not set.")
    return value
