"""UI helpers for Streamlit layout and controls."""

from __future__ import annotations

from dataclasses import dataclass

import streamlit as st

from keyledger.config import PLATFORM_LABELS
from keyledger.models import PlatformAccount, SyncSummary


@dataclass(frozen=True)
class SidebarSelection:
    account_id: str | None
    range: str
    sync_clicked: bool
    list_keys_clicked: bool
    auto_sync: bool


def apply_app_styles() -> None:
    st.markdown(
        """
        <style>
            .block-container {
                padding-top: 1rem;
                padding-bottom: 2rem;
                max-width: 1250px;
            }
            [data-testid="stSidebar"] {
                border-right: 1px solid #e5e7eb;
            }
            [data-testid="metric-container"] {
                border: 1px solid #e5e7eb;
                border-radius: 8px;
                padding: 10px 12px;
                background: #f8fafc;
            }
        </style>
        """,
        unsafe_allow_html=True,
    )


def render_header() -> None:
    st.title("LLM Key Ledger")
    st.caption(
        "Per-key token usage for OpenAI, Anthropic, OpenRouter and Volcengine accounts, "
        "synced from each provider's admin API."
    )


def account_label(account: PlatformAccount) -> str:
    platform = PLATFORM_LABELS.get(account.platform, account.platform)
    synced = account.last_synced_at.strftime("%Y-%m-%d %H:%M UTC") if account.last_synced_at else "never synced"
    return f"{account.name} ({platform}, {synced})"


def render_sidebar(accounts: list[PlatformAccount]) -> SidebarSelection:
    st.sidebar.header("Accounts")

    if not accounts:
        st.sidebar.info("No platform accounts configured.")
        return SidebarSelection(account_id=None, range="month", sync_clicked=False, list_keys_clicked=False, auto_sync=False)

    labels = {account.id: account_label(account) for account in accounts}
    account_id = st.sidebar.selectbox(
        "Platform account",
        options=list(labels),
        format_func=lambda value: labels[value],
    )
    range_name = st.sidebar.radio(
        "Sync window",
        options=["month", "today"],
        format_func=lambda value: "Current month" if value == "month" else "Today (UTC)",
        horizontal=True,
    )
    auto_sync = st.sidebar.toggle(
        "Auto-sync on load",
        value=True,
        help="Syncs the selected account when its last sync is older than five minutes.",
    )
    sync_clicked = st.sidebar.button("Sync now", type="primary")
    list_keys_clicked = st.sidebar.button("Refresh key list")

    return SidebarSelection(
        account_id=account_id,
        range=range_name,
        sync_clicked=sync_clicked,
        list_keys_clicked=list_keys_clicked,
        auto_sync=auto_sync,
    )


def render_summary_cards(summary: SyncSummary) -> None:
    c1, c2, c3, c4, c5, c6 = st.columns(6)
    c1.metric("Usage Buckets", f"{summary.buckets_count:,}")
    c2.metric("Keys With Usage", f"{summary.usage_keys_count:,}")
    c3.metric("Matched", f"{summary.matched_keys_count:,}")
    c4.metric("Unmatched", f"{summary.unmatched_keys_count:,}")
    c5.metric("Saved", f"{summary.saved_count:,}")
    c6.metric(
        "Spend (Month)",
        f"${summary.month_cost_usd:,.2f}",
        delta=f"${summary.today_cost_usd:,.2f} today" if summary.cost_buckets_count else None,
        delta_color="off",
    )


def render_limitations() -> None:
    st.info(
        "Usage rows hold absolute monthly totals recomputed from the provider on every sync; "
        "the range selector only changes what the sync result shows. "
        "Workspace and project spend is split evenly across the keys in it. "
        "OpenRouter exposes per-key credit spend but no token history, and Volcengine usage is reported per account "
        "and attributed to the calling access key."
    )
