"""
EcoGuard – Industrial Safety Monitoring Console

Run with:
  streamlit run app.py

Operator console over the EcoGuard safety engine:
- scenario selector (normal operations, Bhopal E610 pressure runaway, Vizag M6 inhibitor depletion)
- live tier, gauges and 5-minute trend
- worker roster with mark-safe and incident resolution
- human-in-the-loop authorization of recommended actions
- hash-chained compliance log with on-demand integrity verification

The console holds no decision logic; every button is an intent on the session.
Time advances one sensor interval per tick so runs are reproducible.
"""
from __future__ import annotations

import logging
import time
from typing import Any, Dict, List

import pandas as pd
import streamlit as st

from ecoguard import (
    ManualClock,
    RiskTier,
    SafetySession,
    ScenarioKind,
    load_default_config,
)

logging.basicConfig(level=logging.INFO, format="%(asctime)s %(levelname)s %(name)s: %(message)s")

st.set_page_config(page_title="EcoGuard – Industrial Safety Monitoring", layout="wide")

TIER_BADGE = {
    RiskTier.NORMAL: "🟢 NORMAL",
    RiskTier.WARNING: "🟡 WARNING",
    RiskTier.CRITICAL: "🔴 CRITICAL",
}


def init_session() -> None:
    if "session" not in st.session_state:
        clock = ManualClock(start_ms=int(time.time() * 1000))
        st.session_state.clock = clock
        st.session_state.session = SafetySession(config=load_default_config(), clock=clock)
        st.session_state.last_result = None


def advance(ticks: int) -> None:
    session: SafetySession = st.session_state.session
    clock: ManualClock = st.session_state.clock
    for _ in range(ticks):
        clock.advance(session.config.timing.sensor_interval_ms)
        session.advance_scenario_clock()
        st.session_state.last_result = session.sample()


init_session()
session: SafetySession = st.session_state.session  # type: ignore[assignment]

# --- sidebar: scenario control ------------------------------------------------
st.sidebar.header("Scenario")

kinds = [ScenarioKind.NONE, ScenarioKind.DISASTER_A, ScenarioKind.DISASTER_B]
run = session.scenario_run
selected = st.sidebar.selectbox(
    "Training scenario",
    kinds,
    index=kinds.index(run.kind),
    format_func=lambda k: k.label,
    disabled=run.active,
)
if selected != run.kind and not run.active:
    session.select_scenario(selected)
    run = session.scenario_run

st.sidebar.caption(run.kind.description)

sc_cols = st.sidebar.columns(3)
with sc_cols[0]:
    if st.button("Start", disabled=run.active or run.kind == ScenarioKind.NONE):
        st.session_state.last_result = session.start_scenario()
with sc_cols[1]:
    if st.button("Stop", disabled=not run.active):
        st.session_state.last_result = session.stop_scenario()
with sc_cols[2]:
    if st.button("Reset"):
        st.session_state.last_result = session.reset_scenario()

st.sidebar.markdown("---")
st.sidebar.markdown("#### Clock")
tick_cols = st.sidebar.columns(2)
with tick_cols[0]:
    if st.button("Advance tick"):
        advance(1)
with tick_cols[1]:
    if st.button("Advance 10"):
        advance(10)

if st.sidebar.button("Reset session"):
    st.session_state.last_result = session.reset()

st.sidebar.markdown("---")
cfg_exp = st.sidebar.expander("Active configuration", expanded=False)
with cfg_exp:
    st.code(
        "\n".join(
            [
                f"id: {session.config.id}",
                f"source_hash: {session.config.source_hash[:16]}...",
                f"sensor interval: {session.config.timing.sensor_interval_ms} ms",
                f"history window: {session.config.history_window_ms // 1000} s",
                f"ledger cap: {session.config.ledger_cap}",
            ]
        )
    )

ops_exp = st.sidebar.expander("Audit / integrity", expanded=False)
with ops_exp:
    if st.button("Verify hash chain"):
        result = session.verify_integrity()
        if result.ok:
            st.success(result.message)
        else:
            st.error(result.message)
    st.download_button(
        label="Download compliance_log.json",
        data=session.export_ledger_json(),
        file_name="ecoguard_compliance_log.json",
        mime="application/json",
    )

# --- header -------------------------------------------------------------------
st.title("ECO GUARD AI")
st.caption("Industrial safety monitoring · physics-based disaster training · hash-chained compliance log · human-in-the-loop.")

reading = session.current_reading
tier = session.current_tier

status_cols = st.columns(6)
with status_cols[0]:
    st.metric("System state", TIER_BADGE[tier])
with status_cols[1]:
    st.metric("Temperature (°C)", f"{reading.temperature:.1f}")
with status_cols[2]:
    st.metric("Pressure (psi)", f"{reading.pressure:.1f}")
with status_cols[3]:
    st.metric("TBC inhibitor (ppm)", f"{reading.inhibitor_level:.0f}")
with status_cols[4]:
    st.metric("dT/dt (°C/min)", f"{reading.temperature_rate_of_change:.2f}")
with status_cols[5]:
    st.metric("EDP prevented", f"${session.damage_prevented_total:.2f}M")

if run.active:
    st.info(f"{run.kind.label} running · t = {session.scenario_elapsed_s:.0f}s")
if session.is_rate_critical:
    st.error("Rapid temperature rise: rate of change above critical limit.")

last = st.session_state.get("last_result")
if last is not None and not last.ok:
    st.warning(f"Intent ignored: {last.detail}")

st.markdown("---")

# --- trend + scorecard --------------------------------------------------------
left, right = st.columns([1.6, 1.0])

with left:
    st.markdown("### Trend (last 5 minutes)")
    hist_df = session.history_frame()
    if not hist_df.empty:
        st.line_chart(hist_df[["temperature", "pressure"]])
        st.line_chart(hist_df[["inhibitor_level"]])
    else:
        st.caption("No history yet. Advance the clock.")

with right:
    st.markdown("### Sustainability scorecard")
    score = session.prevention_score()
    st.metric("Prevention score", f"{score['score']:.1f}%")
    st.dataframe(
        pd.DataFrame(
            [
                {"factor": "temperature", "value": score["temperature_factor"]},
                {"factor": "pressure", "value": score["pressure_factor"]},
                {"factor": "inhibitor", "value": score["inhibitor_factor"]},
            ]
        ),
        use_container_width=True,
        height=150,
    )

st.markdown("---")

# --- workers + human-in-the-loop ---------------------------------------------
w_col, h_col = st.columns([1.2, 1.0])

with w_col:
    st.markdown("### Digital twin – personnel")
    workers = session.workers()
    in_danger = session.workers_in_danger()
    st.metric("Workers in danger zone", f"{len(in_danger)} / {len(workers)}")

    for instruction in session.field_instructions():
        st.warning(instruction)

    st.dataframe(session.workers_frame(), use_container_width=True, height=280)

    unsafe = [w for w in workers if not w.safe]
    if unsafe:
        target = st.selectbox("Worker", unsafe, format_func=lambda w: f"{w.name} · zone {w.zone} · unit {w.unit}")
        if st.button("Mark worker safe"):
            st.session_state.last_result = session.mark_worker_safe(target.id)

with h_col:
    st.markdown("### Safety consultant (human-in-the-loop)")
    if tier == RiskTier.CRITICAL:
        st.error("CRITICAL STATE DETECTED – human authorization required.")
        if st.button("AUTHORIZE & RESOLVE INCIDENT"):
            st.session_state.last_result = session.resolve_incident()
        for idx, action in enumerate(session.recommended_actions()):
            if st.button(f"Authorize: {action.name}", key=f"authorize-{idx}"):
                st.session_state.last_result = session.authorize_action(action.name, action.incident_tag)
    else:
        st.info("No emergency actions required.")

    actions = session.authorized_actions()
    if actions:
        st.markdown("#### Authorized actions")
        action_rows: List[Dict[str, Any]] = [
            {
                "time": a.timestamp,
                "action": a.action_name,
                "incident": a.prevented_incident_tag,
                "edp ($M)": round(a.damage_value_musd, 2),
            }
            for a in reversed(actions)
        ]
        st.dataframe(pd.DataFrame(action_rows), use_container_width=True, height=200)

    for entry in reversed(session.resolution_log()):
        st.success(f"{entry.timestamp} · {entry.message}")

st.markdown("---")

st.markdown("### Compliance log (newest first)")
ledger_df = session.ledger_frame()
if not ledger_df.empty:
    st.dataframe(ledger_df, use_container_width=True, height=300)
else:
    st.caption("No compliance events yet.")

st.caption(
    "EcoGuard demo – synthetic sensors only. The hash chain demonstrates tamper evidence; "
    "it is not a legal-grade signature. No real actuation is performed."
)
