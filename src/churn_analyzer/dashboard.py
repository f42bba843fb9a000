# src/churn_analyzer/dashboard.py
"""
Streamlit dashboard for churn risk across matched accounts.
"""

import matplotlib.pyplot as plt
import pandas as pd
import seaborn as sns
import streamlit as st

from churn_analyzer import config
from churn_analyzer.churn_signature import describe_signature, latest_signature
from churn_analyzer.db import session_scope
from churn_analyzer.report import build_dashboard_payload, prediction_frame, risk_score_frame

PALETTE = {"low": "#2ecc71", "medium": "#f1c40f", "high": "#e67e22", "critical": "#e74c3c"}
LEVEL_ORDER = ["low", "medium", "high", "critical"]


def load_data() -> tuple[dict, pd.DataFrame, pd.DataFrame, pd.DataFrame | None]:
    with session_scope() as session:
        payload = build_dashboard_payload(session)
        scores = risk_score_frame(session)
        predictions = prediction_frame(session)
        signature = latest_signature(session, config.CHURN_LOOKBACK_WINDOW, max_age_days=36500)
        signals = describe_signature(signature) if signature is not None else None
    return payload, scores, predictions, signals


def run_dashboard_app() -> None:
    st.set_page_config(page_title="Churn Risk Analyzer", layout="wide")

    st.title("Churn Risk Dashboard")
    st.markdown("Support-ticket signals and churn risk for every matched account.")

    payload, scores, predictions, signals = load_data()

    if scores.empty:
        st.error("No risk scores found. Run `churn-analyzer analyze` first to generate them.")
        st.stop()

    # --- refresh button to rerun analysis ---
    st.subheader("Refresh Data")

    if st.button("Run Latest Churn Analysis"):
        from churn_analyzer.pipeline import run_heuristic_analysis

        with st.spinner("Running churn analysis..."):
            run_heuristic_analysis()
        st.success("Analysis complete! Rerun the page to see new results.")

    # --- summary metrics ---
    summary = payload["summary"]
    col1, col2, col3, col4, col5 = st.columns(5)
    col1.metric("Matched Accounts", summary["matched"])
    col2.metric("Critical", summary["critical"])
    col3.metric("High", summary["high"])
    col4.metric("Medium", summary["medium"])
    col5.metric(
        "Model Recall",
        f"{summary['model_recall']}%" if summary["model_recall"] is not None else "n/a",
    )

    # --- Risk score distribution (Seaborn + Matplotlib) ---
    st.subheader("Risk Score Distribution")

    fig, ax = plt.subplots(figsize=(8, 4))
    sns.histplot(
        data=scores,
        x="overall_score",
        bins=20,
        hue="risk_level",
        hue_order=LEVEL_ORDER,
        multiple="stack",
        palette=PALETTE,
        edgecolor="black",
        ax=ax,
    )
    ax.set_xlabel("Churn Risk Score")
    ax.set_ylabel("Account Count")
    ax.set_title("Distribution of Account Risk Scores")
    st.pyplot(fig)

    # --- Top risk factors ---
    if payload["top_risk_factors"]:
        st.subheader("Top Risk Factors")
        factors = pd.DataFrame(payload["top_risk_factors"])
        fig2, ax2 = plt.subplots(figsize=(6, 4))
        sns.barplot(data=factors, x="count", y="name", color="#e74c3c", ax=ax2)
        ax2.set_xlabel("Accounts")
        ax2.set_ylabel("")
        st.pyplot(fig2)

    # --- Churned vs active ---
    correlation = payload["churn_correlation"]
    if correlation["has_churn_data"]:
        st.subheader("Churned vs Active Accounts")
        st.table(
            pd.DataFrame(
                {
                    "Churned": [
                        correlation["avg_tickets_monthly_churned"],
                        correlation["avg_escalation_rate_churned"],
                        correlation["avg_resolution_hours_churned"],
                    ],
                    "Active": [
                        correlation["avg_tickets_monthly_active"],
                        correlation["avg_escalation_rate_active"],
                        correlation["avg_resolution_hours_active"],
                    ],
                },
                index=["Tickets / month", "Escalation rate", "Resolution hours"],
            )
        )

    # --- Churn signature ---
    if signals is not None:
        st.subheader("Churn Signature")
        columns = ["label", "separation", "direction", "churned_mean", "active_mean", "weight"]
        st.dataframe(signals[columns])

    if not predictions.empty:
        st.subheader("Signature Predictions")
        st.dataframe(predictions.head(config.REPORT_TOP_N))

    # --- Top accounts at highest risk ---
    st.subheader(f"Top {config.REPORT_TOP_N} Accounts at Highest Risk")
    top = scores.sort_values("overall_score", ascending=False).head(config.REPORT_TOP_N)
    st.dataframe(
        top[["name", "overall_score", "risk_level", "ticket_count_30d", "trend_direction", "mrr"]]
    )


if __name__ == "__main__":
    run_dashboard_app()
