"""
Fracture Growth Optimizer (frac-grow): Configuration

Nine-module architecture:
  M1: Geometry Model
  M2: Intersection Corrector
  M3: Scenario Generator
  M4: Solver Adapter
  M5: Concurrent Evaluator
  M6: Selector / Filter
  M7: Tuner
  M8: Branch Evaluator
  M9: Growth Driver
"""

import logging

# =============================================================================
# Angle Search
# =============================================================================
SEARCH = {
    "angle_start": 90.0,          # Default first candidate angle [deg]
    "angle_end": 270.0,           # Default end of candidate range (exclusive) [deg]
    "angle_increment": 10.0,      # Default coarse increment [deg]
    "flaw_angle_start": 0.0,      # Point-seeded flaws search the full circle [deg]
    "flaw_angle_end": 360.0,      # (exclusive) [deg]
    "coordinate_decimals": 5,     # Rounding of written node coordinates
    "zero_tolerance": 1e-15,      # |v| below this is written as 0
}

# =============================================================================
# Selection / Outlier Filtering
# =============================================================================
SELECTION = {
    "condition_factor": 5.0,      # Discard cond > factor * median(cond)
    "work_outlier_factor": 10.0,  # Discard Wext > factor * median(Wext)
    "length_tolerance": 1e-10,    # |dL| below this: no length normalization [m]
}

# =============================================================================
# Intersection Correction
# =============================================================================
INTERSECTION = {
    "self_exclusion": 4,          # Same-fracture segments closer in index are skipped
    "min_angle_deg": 20.0,        # Minimum interior angle between connected fractures [deg]
    "snap_fraction": 0.5,         # Capture radius as fraction of element length
    "node_decimals": 8,           # Rounding used to compare node coordinates
    "node_tolerance": 1e-10,      # Point-on-segment tolerance
    "final_tip_fraction": 0.5,    # Tips closer than fraction * element length stop
    "short_element_fraction": 0.5,  # Elements shorter than fraction * mean length are dropped
}

# =============================================================================
# Branching (Coulomb stress criterion)
# =============================================================================
BRANCHING = {
    "min_elements": 5,            # Fractures with fewer elements never branch
    "poisson": 0.2,               # Poisson-like ratio in the tangential stress term
    "stiffness": 0.023,           # Gradient coefficient in the tangential stress term
    "friction_angle_deg": 30.0,   # Internal friction angle [deg]
    "geometry_row_tokens": 15,    # Output rows with at least this many fields carry geometry and S0
    "branch_suffixes": ("b1", "b2"),  # Names of the two child fractures
}

# =============================================================================
# Limit Test (restrict search to high stress-intensity tips)
# =============================================================================
LIMIT_TEST = {
    "fraction": 0.9,              # Keep tips with f > fraction * max(f)
}

# =============================================================================
# Forecast Mode
# =============================================================================
FORECAST = {
    "criteria": ("min", "max"),
    "angle_decimals": 2,          # Rounding of the interpolated angle [deg]
}

# =============================================================================
# External Solver
# =============================================================================
SOLVER = {
    "fric_command": ("./fric2d", "-i", "{input}", "-o", "{output}", "-v"),
    "sand_command": ("./sandbox", "-i", "{input}", "-o", "{output}", "-t", "{topo}", "-v"),
    "work_command": None,         # Optional external Wext extractor, e.g. ("./wext", "{output}")
    "timeout": None,              # Per-run timeout [s]
    "input_suffix": ".in",
    "output_suffix": ".out",
    "max_name_length": 25,        # Max input stem length (continuation files exempt)
    "max_work_name_length": 50,   # Max output file name passed to the work extractor
    "debug_work_scale": 1e7,      # Debug stub: Wext = scale * U(0, 100)
    "debug_condition_number": 100.0,
}

# =============================================================================
# Concurrency
# =============================================================================
CONCURRENCY = {
    "batch_size": 16,             # Trials per batch; pool is sized to the batch
}

# =============================================================================
# Driver
# =============================================================================
DRIVER = {
    "max_increments": 50,         # Hard cap on growth increments per run
    "report_suffix": ".raw",
    "index_suffix": ".index",
    "summary_columns": ("PROP", "Wext(J)", "delWext/delA (J/m^2)"),
}

# =============================================================================
# Logging
# =============================================================================
LOGGING = {
    "level": logging.INFO,
    "format": "%(asctime)s %(name)s %(levelname)s: %(message)s",
}

# =============================================================================
# Dashboard
# =============================================================================
DASHBOARD = {
    "plot_template": "plotly_white",
    "fracture_color": "#d62728",
    "boundary_color": "#7f7f7f",
    "default_seed": 42,
}
