"""
M8: Branch Evaluator
Fracture Growth Optimizer (frac-grow)

Post-increment Coulomb stress check that may split a grown fault in two.

For every interior node between elements i and i+1 the change of slip and
traction across the node gives a local stress state:

    tang  = k / (1 - nu^2) * dUs / l + nu / (1 - nu) * dsigN / 2
    sxx   = dsigN / 2,  syy = tang,  tau = dsigS / 2
    coul  = 0.5 * ((s1 + s3) * tan(phi) + (s1 - s3) / cos(phi))

evaluated with the slip on both sides of the fault (top: Us+, bottom: Us-);
the larger value counts. The fault splits at the node with the largest
Coulomb stress that exceeds the mean strength S0 of the two elements;
nodes are located by element index, not by the printed coordinates.

Classes:
    NodeStress: Coulomb stress at one interior node
    BranchResult: Outcome of a branch test for one fault
    BranchEvaluator: Coulomb test and split

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import re
import logging
import warnings
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Sequence

import numpy as np

try:
    from config import BRANCHING, INTERSECTION
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import BRANCHING, INTERSECTION

from .m01_geometry import Fracture, GeometrySnapshot, Point, node_key
from .m04_solver import parse_fault_rows

_LOGGER = logging.getLogger(__name__)

# Column layout of the solver's per-element rows
GEOMETRY_COLUMNS = {"x1": 1, "y1": 2, "x2": 3, "y2": 4, "length": 5, "S0": 10}
STRESS_COLUMNS = {"us_neg": 2, "us_pos": 3, "sig_s": 7, "sig_n": 8}

_BRANCHED_NAME = re.compile(r"b\d+$")


@dataclass(frozen=True)
class NodeStress:
    """Coulomb stress between elements i and i+1"""
    index: int
    split_point: Point           # Second node of element i, as printed by the solver
    coulomb_top: float
    coulomb_bottom: float
    strength: float              # Mean S0 of the two elements

    @property
    def coulomb(self) -> float:
        return max(self.coulomb_top, self.coulomb_bottom)


@dataclass
class BranchResult:
    """Outcome of BranchEvaluator.branch for one fault"""
    fracture: str
    split: bool = False
    node: Optional[NodeStress] = None
    children: List[str] = field(default_factory=list)
    stresses: List[NodeStress] = field(default_factory=list)
    snapshot: Optional[GeometrySnapshot] = None


class BranchEvaluator:
    """
    Coulomb-stress branching of grown faults.

    Args:
        params: Overrides for BRANCHING constants
    """

    def __init__(self, params: Optional[Dict] = None):
        self.params = dict(BRANCHING)
        if params:
            self.params.update(params)
        self.decimals = INTERSECTION["node_decimals"]

    def principal_coulomb(self, sig_xx: float, sig_yy: float, tau: float) -> float:
        """Coulomb stress of a 2D stress state from its principal stresses."""
        phi = np.radians(self.params["friction_angle_deg"])
        centre = 0.5 * (sig_xx + sig_yy)
        radius = np.sqrt((0.5 * (sig_xx - sig_yy)) ** 2 + tau ** 2)
        s_max, s_min = centre + radius, centre - radius
        return float(0.5 * ((s_max + s_min) * np.tan(phi) + (s_max - s_min) / np.cos(phi)))

    def node_stresses(self, geometry: Sequence[Sequence[str]],
                      stresses: Sequence[Sequence[str]]) -> List[NodeStress]:
        """Coulomb stress at each interior node from the solver rows of one fault."""
        n = min(len(geometry), len(stresses))
        if n < 2:
            return []
        geo = np.array([[float(row[c]) for c in GEOMETRY_COLUMNS.values()] for row in geometry[:n]])
        st = np.array([[float(row[c]) for c in STRESS_COLUMNS.values()] for row in stresses[:n]])
        x2, y2, length, s0 = geo[:, 2], geo[:, 3], geo[:, 4], geo[:, 5]
        us_neg, us_pos, sig_s, sig_n = st.T

        nu = self.params["poisson"]
        k = self.params["stiffness"]
        result = []
        for i in range(n - 1):
            l_mean = (length[i] + length[i + 1]) / 2
            d_sig_n = sig_n[i + 1] - sig_n[i]
            d_sig_s = sig_s[i + 1] - sig_s[i]
            normal_term = nu / (1 - nu) * (d_sig_n / 2)
            tang_top = k / (1 - nu ** 2) * (us_pos[i + 1] - us_pos[i]) / l_mean + normal_term
            tang_bot = k / (1 - nu ** 2) * (us_neg[i + 1] - us_neg[i]) / l_mean + normal_term
            result.append(NodeStress(
                index=i,
                split_point=(float(x2[i]), float(y2[i])),
                coulomb_top=self.principal_coulomb(d_sig_n / 2, tang_top, d_sig_s / 2),
                coulomb_bottom=self.principal_coulomb(d_sig_n / 2, tang_bot, d_sig_s / 2),
                strength=float((s0[i] + s0[i + 1]) / 2),
            ))
        return result

    def is_branch_node(self, snapshot: GeometrySnapshot, fracture: Fracture, index: int) -> bool:
        """
        True if node index (between elements index and index + 1) is the end
        of a previously branched fault that another fault already shares.
        """
        if not _BRANCHED_NAME.search(fracture.name):
            return False
        elements = [e for seg in fracture.segments for e in seg.elements()]
        if index not in (0, len(elements) - 2):
            return False
        key = node_key(elements[index].tail, self.decimals)
        for other in snapshot.fractures:
            if other.name == fracture.name:
                continue
            for seg in other.segments:
                if key in seg.nodes(self.decimals):
                    return True
        return False

    def split(self, fracture: Fracture, cut: int) -> List[Fracture]:
        """
        Two children: the first cut elements and the rest.

        Raises:
            ValueError: cut does not fall on an interior node
        """
        b1, b2 = self.params["branch_suffixes"]
        elements = [e for seg in fracture.segments for e in seg.elements()]
        if not 0 < cut < len(elements):
            raise ValueError(f"Element {cut} is not an interior node of {fracture.name} "
                             f"({len(elements)} elements)")
        first = Fracture(
            name=fracture.name + b1,
            segments=tuple(elements[:cut]),
            grow_end1=fracture.grow_end1,
            grow_end2=False,
            crack_props=fracture.crack_props,
        )
        second = Fracture(
            name=fracture.name + b2,
            segments=tuple(elements[cut:]),
            grow_end1=False,
            grow_end2=fracture.grow_end2,
            crack_props=fracture.crack_props,
        )
        return [first, second]

    def branch(self, snapshot: GeometrySnapshot, output_text: str, name: str) -> BranchResult:
        """
        Test one fault for branching and split it if a node fails.

        Args:
            snapshot: Geometry that produced output_text
            output_text: Solver output with per-element rows
            name: Fault to test

        Returns:
            BranchResult; result.snapshot holds the new geometry when split
        """
        result = BranchResult(fracture=name, snapshot=snapshot)
        fracture = snapshot.fracture(name)
        if fracture.element_count < self.params["min_elements"]:
            return result

        geometry, stresses = parse_fault_rows(output_text, name, self.params["geometry_row_tokens"])
        if not geometry or not stresses:
            warnings.warn(f"No element rows for fault {name} in solver output; not branching")
            return result
        if len(geometry) != fracture.element_count:
            warnings.warn(f"Solver printed {len(geometry)} elements for fault {name}, "
                          f"geometry has {fracture.element_count}; not branching")
            return result

        best = None
        running_max = 0.0
        for node in self.node_stresses(geometry, stresses):
            result.stresses.append(node)
            if self.is_branch_node(snapshot, fracture, node.index):
                continue
            if node.coulomb > node.strength and node.coulomb > running_max:
                best = node
                running_max = node.coulomb

        if best is None:
            return result

        try:
            children = self.split(fracture, best.index + 1)
        except ValueError as exc:
            warnings.warn(f"{exc}; not branching")
            return result
        _LOGGER.info("Splitting fault %s at (%g, %g): Coulomb %g > S0 %g", name,
                     best.split_point[0], best.split_point[1], best.coulomb, best.strength)
        fractures = []
        for frac in snapshot.fractures:
            fractures.extend(children if frac.name == name else [frac])
        result.split = True
        result.node = best
        result.children = [c.name for c in children]
        result.snapshot = snapshot.with_fractures(fractures)
        return result
