#!/usr/bin/env python3
"""
Growth Driver - Demonstration Script

Grows two faults inside a displacement-loaded box with the random-work debug
solver, prints the cumulative summary and plots the geometry per increment.

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import sys
import logging
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt
from pathlib import Path

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from modules.m01_geometry import Segment, Fracture, Boundary, GeometrySnapshot
from modules.m09_driver import RunConfiguration, GrowthDriver
from config import LOGGING, DASHBOARD


def demo_snapshot():
    """Box of side 20 with two short faults; the box is shortened along x."""
    disp = ("2", "0", "0", "0", "-0.01")
    box = Boundary("box", (
        Segment(-10, -10, 10, -10, 4, disp),
        Segment(10, -10, 10, 10, 4, disp),
        Segment(10, 10, -10, 10, 4, disp),
        Segment(-10, 10, -10, -10, 4, disp),
    ))
    fa = Fracture("fa", (Segment(-3, -1, -2, -1, 1, ("0.6", "0")),), grow_end1=True, grow_end2=True)
    fb = Fracture("fb", (Segment(2, 1, 3, 2, 1, ("0.6", "0")),), grow_end2=True)
    return GeometrySnapshot((fa, fb), boundaries=(box,), options=(("*Run_Mode", "SEQUENTIAL"),))


def demo_growth(increments=4, seed=DASHBOARD["default_seed"]):
    """Run a short debug growth and print the summary table."""
    print("=== Growth Demo (debug solver) ===")
    snapshot = demo_snapshot()
    config = RunConfiguration.from_snapshot(snapshot, "demo.in", 15, 120, 240,
                                            debug=True, seed=seed, max_increments=increments)
    for line in config.describe():
        print(line)

    driver = GrowthDriver(config)
    history = driver.run(snapshot)

    print(f"\nFinal state: {history.final_state.value}")
    for label, wext, norm in history.summary_rows():
        print(f"{label:>8}  {wext:>16}  {norm:>16}")
    return history


def plot_history(history, path="grow_demo.png"):
    """Geometry after every increment and the Wext trace."""
    fig, (ax_geo, ax_work) = plt.subplots(1, 2, figsize=(12, 5))

    for boundary in history.initial.boundaries:
        for seg in boundary.segments:
            ax_geo.plot([seg.x1, seg.x2], [seg.y1, seg.y2], color=DASHBOARD["boundary_color"], lw=1)

    snapshots = history.snapshots
    cmap = plt.get_cmap("Reds")
    for i, snap in enumerate(snapshots):
        color = cmap(0.3 + 0.7 * i / max(len(snapshots) - 1, 1))
        for fracture in snap.fractures:
            for seg in fracture.segments:
                ax_geo.plot([seg.x1, seg.x2], [seg.y1, seg.y2], color=color, lw=2)
    ax_geo.set_aspect("equal")
    ax_geo.set_title("Fault geometry per increment")
    ax_geo.set_xlabel("x (m)")
    ax_geo.set_ylabel("y (m)")

    works = history.works_unnorm()
    ax_work.plot(range(len(works)), works, "o-", color=DASHBOARD["fracture_color"])
    ax_work.set_xlabel("Increment")
    ax_work.set_ylabel("Wext (J)")
    ax_work.set_title("External work")

    fig.tight_layout()
    fig.savefig(path, dpi=120)
    plt.close(fig)
    print(f"Saved {path}")


def main():
    """Run the demonstration."""
    logging.basicConfig(level=LOGGING["level"], format=LOGGING["format"])
    print("Fracture Growth Optimizer - Growth Driver Demo")
    print("=" * 70)

    history = demo_growth()
    plot_history(history)

    print("\n" + "=" * 70)
    print("Demo completed successfully!")
    return 0


if __name__ == "__main__":
    sys.exit(main())
