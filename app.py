"""Streamlit entrypoint for LLM Key Ledger."""

from __future__ import annotations

import logging
import os
from datetime import UTC, datetime

import streamlit as st
from dotenv import load_dotenv

from keyledger.accounts import load_accounts
from keyledger.charts import daily_usage_chart, key_tokens_chart, platform_share_pie
from keyledger.config import (
    DEFAULT_ACCOUNTS_FILE,
    DEFAULT_SQLITE_PATH,
    ENV_ACCOUNTS_FILE,
    ENV_SQLITE_PATH,
)
from keyledger.models import PlatformAccount
from keyledger.orchestrator import SyncOrchestrator, SyncRequest, SyncResponse
from keyledger.reports import (
    key_usage_frame,
    matched_keys_frame,
    save_errors_frame,
    spend_frame,
    unmatched_keys_frame,
    unmatched_spend_frame,
)
from keyledger.scheduler import should_auto_sync
from keyledger.store import SQLiteStore
from keyledger.ui import (
    apply_app_styles,
    render_header,
    render_limitations,
    render_sidebar,
    render_summary_cards,
)


@st.cache_resource(show_spinner=False)
def get_orchestrator(db_path: str, accounts_file: str) -> SyncOrchestrator:
    """One store and orchestrator per server process, seeded from the accounts file."""
    store = SQLiteStore(db_path)
    for account in load_accounts(accounts_file):
        store.save_account(account)
        # Clear guards left behind by a crashed process.
        store.release_sync_guard(account.id)
    return SyncOrchestrator(store)


def run_sync(orchestrator: SyncOrchestrator, account: PlatformAccount, action: str, range_name: str) -> SyncResponse:
    request = SyncRequest(
        action=action,
        platform_account_id=account.id,
        range=range_name if action == "sync_usage" else None,
        tenant_id=account.tenant_id,
    )
    with st.spinner(f"Syncing {account.name}..."):
        response = orchestrator.handle(request)
    st.session_state[f"last_response:{account.id}"] = response
    return response


def render_sync_result(response: SyncResponse, key_names: dict[str, str]) -> None:
    if not response.success:
        st.error(response.error or "Sync failed.")
        return

    if response.summary.save_errors_count:
        st.warning(response.message)
    else:
        st.success(response.message)
    for warning in response.warnings:
        st.warning(warning)

    if response.action != "sync_usage":
        return

    render_summary_cards(response.summary)
    st.plotly_chart(daily_usage_chart(response.daily_usage, key_names, "Daily Tokens by Key"), width="stretch")

    col1, col2 = st.columns(2)
    with col1:
        st.markdown("**Matched keys**")
        st.dataframe(matched_keys_frame(response), width="stretch", hide_index=True)
    with col2:
        st.markdown("**Unmatched provider keys**")
        unmatched_df = unmatched_keys_frame(response)
        if unmatched_df.empty:
            st.caption("Every key with usage is tracked locally.")
        else:
            st.dataframe(unmatched_df, width="stretch", hide_index=True)

    if response.spend or response.unmatched_spend:
        st.markdown("**Spend by key (USD)**")
        st.dataframe(spend_frame(response), width="stretch", hide_index=True)
        if response.unmatched_spend:
            st.caption("Spend in workspaces or projects with no tracked key:")
            st.dataframe(unmatched_spend_frame(response), width="stretch", hide_index=True)

    if response.summary.save_errors:
        with st.expander(f"Save errors ({response.summary.save_errors_count})", expanded=False):
            st.dataframe(save_errors_frame(response), width="stretch", hide_index=True)


def main() -> None:
    load_dotenv()
    logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

    st.set_page_config(page_title="LLM Key Ledger", layout="wide")
    apply_app_styles()
    render_header()

    db_path = os.getenv(ENV_SQLITE_PATH, DEFAULT_SQLITE_PATH)
    accounts_file = os.getenv(ENV_ACCOUNTS_FILE, DEFAULT_ACCOUNTS_FILE)
    try:
        orchestrator = get_orchestrator(db_path, accounts_file)
    except ValueError as exc:
        st.error(f"Could not load accounts: {exc}")
        st.stop()

    store = orchestrator.store
    accounts = store.list_accounts()
    selection = render_sidebar(accounts)
    if selection.account_id is None:
        st.info(f"Add platform accounts to `{accounts_file}` to get started.")
        render_limitations()
        return

    account = store.get_account(selection.account_id)
    if account is None:
        st.error("Selected account no longer exists.")
        return

    response: SyncResponse | None = None
    if selection.list_keys_clicked:
        response = run_sync(orchestrator, account, "list_keys", selection.range)
    elif selection.sync_clicked:
        response = run_sync(orchestrator, account, "sync_usage", selection.range)
    elif selection.auto_sync and should_auto_sync(account.last_synced_at, datetime.now(tz=UTC)):
        response = run_sync(orchestrator, account, "sync_usage", selection.range)
    else:
        response = st.session_state.get(f"last_response:{account.id}")

    keys = store.list_keys(account.platform, account.id)
    key_names = {key.id: key.name for key in keys if key.id}

    if response is not None:
        render_sync_result(response, key_names)
    elif account.last_synced_at:
        st.caption(f"Last synced {account.last_synced_at:%Y-%m-%d %H:%M} UTC.")

    st.subheader("Tracked Keys")
    key_usage = key_usage_frame(keys, store.list_usage(list(key_names)))
    col1, col2 = st.columns(2)
    col1.plotly_chart(key_tokens_chart(key_usage), width="stretch")
    all_keys = [key for item in accounts for key in store.list_keys(item.platform, item.id)]
    all_usage = key_usage_frame(all_keys, store.list_usage([key.id for key in all_keys if key.id]))
    col2.plotly_chart(platform_share_pie(all_usage), width="stretch")
    st.dataframe(key_usage, width="stretch", hide_index=True)
    st.download_button(
        label="Download Key Usage CSV",
        data=key_usage.to_csv(index=False).encode("utf-8"),
        file_name=f"{account.id}_key_usage.csv",
        mime="text/csv",
    )

    render_limitations()


if __name__ == "__main__":
    main()
