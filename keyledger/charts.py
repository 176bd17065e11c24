"""Plotly chart builders for the Streamlit dashboard."""

from __future__ import annotations

import pandas as pd
import plotly.express as px
import plotly.graph_objects as go

PLOTLY_TEMPLATE = "plotly_white"


def empty_figure(message: str) -> go.Figure:
    fig = go.Figure()
    fig.add_annotation(
        x=0.5,
        y=0.5,
        text=message,
        showarrow=False,
        xref="paper",
        yref="paper",
        font={"size": 14},
    )
    fig.update_xaxes(visible=False)
    fig.update_yaxes(visible=False)
    fig.update_layout(template=PLOTLY_TEMPLATE, height=360, margin=dict(l=10, r=10, t=40, b=10))
    return fig


def daily_usage_chart(daily_usage: pd.DataFrame | None, key_names: dict[str, str], title: str) -> go.Figure:
    """Stacked daily tokens per key for the last sync window."""
    if daily_usage is None or daily_usage.empty:
        return empty_figure("No usage data for selected range")

    plot_df = daily_usage.assign(key=daily_usage["local_key_id"].map(lambda key_id: key_names.get(key_id, key_id)))
    fig = px.bar(
        plot_df,
        x="bucket_date",
        y="total_tokens",
        color="key",
        title=title,
        labels={"bucket_date": "Date", "total_tokens": "Tokens", "key": "Key"},
        template=PLOTLY_TEMPLATE,
    )
    fig.update_layout(height=360, margin=dict(l=10, r=10, t=50, b=10), barmode="stack", legend_title_text="")
    return fig


def key_tokens_chart(key_usage: pd.DataFrame, top_n: int = 15) -> go.Figure:
    """Prompt vs completion tokens for the heaviest keys this month."""
    if key_usage.empty or int(key_usage["token_usage_monthly"].sum()) == 0:
        return empty_figure("No stored usage yet")

    top_df = key_usage.nlargest(top_n, "token_usage_monthly")
    melt_df = top_df.melt(
        id_vars=["name"],
        value_vars=["prompt_tokens_total", "completion_tokens_total"],
        var_name="token_type",
        value_name="tokens",
    )
    melt_df["token_type"] = melt_df["token_type"].map(
        {"prompt_tokens_total": "Prompt", "completion_tokens_total": "Completion"}
    )
    fig = px.bar(
        melt_df,
        x="tokens",
        y="name",
        color="token_type",
        orientation="h",
        title="Monthly Tokens by Key",
        labels={"name": "Key", "tokens": "Tokens", "token_type": "Token Type"},
        template=PLOTLY_TEMPLATE,
    )
    fig.update_layout(
        height=max(360, 28 * len(top_df)),
        margin=dict(l=10, r=10, t=50, b=10),
        legend_title_text="",
        yaxis={"categoryorder": "total ascending"},
    )
    return fig


def platform_share_pie(key_usage: pd.DataFrame) -> go.Figure:
    if key_usage.empty or int(key_usage["token_usage_monthly"].sum()) == 0:
        return empty_figure("No stored usage yet")

    share_df = key_usage.groupby("platform", as_index=False)["token_usage_monthly"].sum()
    fig = px.pie(
        share_df,
        values="token_usage_monthly",
        names="platform",
        title="Monthly Tokens by Platform",
        template=PLOTLY_TEMPLATE,
        hole=0.35,
    )
    fig.update_layout(height=360, margin=dict(l=10, r=10, t=50, b=10))
    return fig
