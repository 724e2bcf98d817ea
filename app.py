"""
Fracture Growth Optimizer: Streamlit App

Interactive viewer for growth runs. Loads a solver input file (or the built-in
demo geometry), grows it with the debug solver and shows geometry, work
history and per-tip angle works.
"""

import logging
import streamlit as st
import numpy as np
import plotly.graph_objects as go
from plotly.subplots import make_subplots
import sys
import os

# Ensure project root is on path
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from config import SEARCH, DRIVER, DASHBOARD, LOGGING
from modules.m01_geometry import Segment, Fracture, Boundary, GeometrySnapshot
from modules.m04_solver import GrowInputError, read_input_text
from modules.m09_driver import RunConfiguration, GrowthDriver, GrowthReport

TEMPLATE = DASHBOARD["plot_template"]

logging.basicConfig(level=LOGGING["level"], format=LOGGING["format"])

# ─── Page Config ─────────────────────────────────────────────────────────────
st.set_page_config(
    page_title="Fracture Growth Optimizer",
    layout="wide",
    initial_sidebar_state="expanded",
)


def demo_snapshot():
    disp = ("2", "0", "0", "0", "-0.01")
    box = Boundary("box", (
        Segment(-10, -10, 10, -10, 4, disp),
        Segment(10, -10, 10, 10, 4, disp),
        Segment(10, 10, -10, 10, 4, disp),
        Segment(-10, 10, -10, -10, 4, disp),
    ))
    fa = Fracture("fa", (Segment(-3, -1, -2, -1, 1, ("0.6", "0")),), grow_end1=True, grow_end2=True)
    fb = Fracture("fb", (Segment(2, 1, 3, 2, 1, ("0.6", "0")),), grow_end2=True)
    return GeometrySnapshot((fa, fb), boundaries=(box,))


# ─── Sidebar ─────────────────────────────────────────────────────────────────
st.sidebar.title("frac-grow")
st.sidebar.markdown("---")

uploaded = st.sidebar.file_uploader("Solver input file (.in)", type=["in"])
angle_increment = st.sidebar.slider("Angle increment (deg)", 1.0, 45.0, float(SEARCH["angle_increment"]), 1.0)
angle_range = st.sidebar.slider("Angle range (deg)", 0.0, 359.0,
                                (float(SEARCH["angle_start"]), float(SEARCH["angle_end"])), 1.0)
max_increments = st.sidebar.slider("Increments", 1, DRIVER["max_increments"], 5)
seed = st.sidebar.number_input("Debug solver seed", value=DASHBOARD["default_seed"], step=1)
serial = st.sidebar.checkbox("Serial mode (grow only the best tip)", value=False)
use_forecast = st.sidebar.checkbox("Forecast instead of tuning", value=False)
forecast_fraction = st.sidebar.slider("Forecast fraction of peak", 0.05, 1.0, 0.8, 0.05, disabled=not use_forecast)

st.sidebar.markdown("---")
st.sidebar.caption("Debug solver: random work, every element slips")

# ─── Title ───────────────────────────────────────────────────────────────────
st.title("Fracture Growth Optimizer")

if uploaded is not None:
    name = uploaded.name
    try:
        snapshot = read_input_text(uploaded.getvalue().decode("utf-8"))
    except GrowInputError as exc:
        st.error(f"Could not read {name}: {exc}")
        st.stop()
else:
    name = "demo.in"
    snapshot = demo_snapshot()

try:
    config = RunConfiguration.from_snapshot(
        snapshot, name, angle_increment, angle_range[0], angle_range[1],
        forecast=f"min {forecast_fraction}" if use_forecast else None,
        debug=True, seed=int(seed), max_increments=max_increments,
    )
except GrowInputError as exc:
    st.error(str(exc))
    st.stop()
if serial:
    config.serial = True

report = GrowthReport()
try:
    history = GrowthDriver(config, report=report).run(snapshot)
except GrowInputError as exc:
    st.error(str(exc))
    st.stop()

st.caption(f"Input: **{name}** | {len(history.increments)} increments | final state: "
           f"**{history.final_state.value}**")

# ─── Tabs ────────────────────────────────────────────────────────────────────
tabs = st.tabs(["Geometry", "Work History", "Tip Angle Works", "Report"])

# ═════════════════════════════════════════════════════════════════════════════
# TAB 1: GEOMETRY
# ═════════════════════════════════════════════════════════════════════════════
with tabs[0]:
    st.header("Fault Geometry per Increment")

    step = st.slider("Increment", 0, len(history.increments), len(history.increments))
    snap = history.snapshots[step]

    fig_geo = go.Figure()
    for boundary in snap.boundaries:
        for seg in boundary.segments:
            fig_geo.add_trace(go.Scatter(
                x=[seg.x1, seg.x2], y=[seg.y1, seg.y2], mode="lines",
                line=dict(color=DASHBOARD["boundary_color"], width=1),
                showlegend=False, hoverinfo="skip",
            ))
    for fracture in snap.fractures:
        xs, ys = [], []
        for seg in fracture.segments:
            xs += [seg.x1, seg.x2, None]
            ys += [seg.y1, seg.y2, None]
        fig_geo.add_trace(go.Scatter(
            x=xs, y=ys, mode="lines+markers", name=fracture.name,
            line=dict(width=2), marker=dict(size=4),
        ))
        for tip in fracture.growing_tips():
            x, y = fracture.tip(tip.end)
            fig_geo.add_trace(go.Scatter(
                x=[x], y=[y], mode="markers", showlegend=False,
                marker=dict(symbol="star", size=12, color=DASHBOARD["fracture_color"]),
                hovertemplate=f"{tip}<extra></extra>",
            ))
    fig_geo.update_layout(
        xaxis_title="x (m)", yaxis_title="y (m)",
        yaxis=dict(scaleanchor="x", scaleratio=1),
        height=600, template=TEMPLATE,
    )
    st.plotly_chart(fig_geo, use_container_width=True)

    c1, c2, c3 = st.columns(3)
    c1.metric("Fractures", len(snap.fractures))
    c2.metric("Growing tips", len(snap.growing_tips()))
    c3.metric("Total fracture length", f"{snap.total_fracture_length():.3f} m")

# ═════════════════════════════════════════════════════════════════════════════
# TAB 2: WORK HISTORY
# ═════════════════════════════════════════════════════════════════════════════
with tabs[1]:
    st.header("External Work")

    works = history.works_unnorm()
    norm = [np.nan] + [o.work if o.best is not None else np.nan for o in history.increments]
    fig_work = make_subplots(rows=1, cols=2, subplot_titles=("Wext (J)", "delWext/delA (J/m²)"))
    fig_work.add_trace(go.Scatter(x=list(range(len(works))), y=works, mode="lines+markers",
                                  line=dict(color=DASHBOARD["fracture_color"], width=2),
                                  name="Wext"), row=1, col=1)
    fig_work.add_trace(go.Bar(x=list(range(len(norm))), y=norm, name="delWext/delA"), row=1, col=2)
    fig_work.update_xaxes(title_text="Increment")
    fig_work.update_layout(height=420, template=TEMPLATE, showlegend=False)
    st.plotly_chart(fig_work, use_container_width=True)

    st.table({col: [row[i] for row in history.summary_rows()]
              for i, col in enumerate(DRIVER["summary_columns"])})

# ═════════════════════════════════════════════════════════════════════════════
# TAB 3: TIP ANGLE WORKS
# ═════════════════════════════════════════════════════════════════════════════
with tabs[2]:
    st.header("Candidate Works per Tip")

    if not history.increments:
        st.info("No increments were run.")
    else:
        inc = st.selectbox("Increment", [o.increment for o in history.increments])
        outcome = history.increments[inc - 1]
        if outcome.stall is not None:
            st.warning(outcome.stall.message)
        fig_tip = go.Figure()
        for tip, works_by_angle in sorted(outcome.tip_works.items()):
            angles = sorted(works_by_angle)
            fig_tip.add_trace(go.Scatter(
                x=angles, y=[works_by_angle[a][1] for a in angles],
                mode="lines+markers", name=str(tip),
            ))
            if tip in outcome.angles:
                fig_tip.add_vline(x=outcome.angles[tip], line_dash="dot", line_color="gray",
                                  annotation_text=f"{tip}: {outcome.angles[tip]:g}")
        fig_tip.update_layout(
            xaxis_title="Propagation angle (deg)", yaxis_title="delWext/delA (J/m²)",
            height=450, template=TEMPLATE,
        )
        st.plotly_chart(fig_tip, use_container_width=True)

# ═════════════════════════════════════════════════════════════════════════════
# TAB 4: REPORT
# ═════════════════════════════════════════════════════════════════════════════
with tabs[3]:
    st.header("Run Report")
    st.download_button("Download report", report.text, file_name=f"{config.root}{DRIVER['report_suffix']}")
    st.code(report.text, language=None)
