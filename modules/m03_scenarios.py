"""
M3: Scenario Generator
Fracture Growth Optimizer (frac-grow)

Enumerates candidate growth angles per tip and builds one trial geometry per
(tip, angle) pair by adding a single element at that tip.

Angle convention: the angle is measured clockwise from the direction
pointing back along the tip element (tip -> preceding node), so 180 deg
continues the fracture straight ahead and 90 / 270 turn it by a right angle.

Classes:
    Scenario: Immutable (tip -> angle) assignment
    ScenarioGenerator: Builds trial snapshots from scenarios

Functions:
    get_angles: Coarse candidate list on [start, end)
    tuned_band: Three-angle band around a coarse optimum
    new_tip_coordinates: Angle-to-coordinate conversion

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import numpy as np
import logging
from dataclasses import dataclass
from typing import Dict, List, Tuple, Optional, Mapping, Sequence

try:
    from config import SEARCH
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import SEARCH

from .m01_geometry import (
    GeometrySnapshot,
    Fracture,
    Segment,
    TipKey,
    Point,
    check_number,
    distance,
)

_LOGGER = logging.getLogger(__name__)


def get_angles(start: float, end: float, increment: float) -> List[float]:
    """
    Candidate angles start, start + inc, ... strictly below end.

    Args:
        start: First angle [deg]
        end: Exclusive upper bound [deg]
        increment: Step [deg]

    Returns:
        ceil((end - start) / increment) angles
    """
    if increment <= 0:
        raise ValueError("Angle increment must be positive")
    if end < start:
        raise ValueError("Ending angle must not be smaller than starting angle")
    count = int(np.ceil(round((end - start) / increment, 9)))
    angles = [round(start + k * increment, 9) for k in range(count)]
    return [a for a in angles if a < end]


def tuned_band(angle: float, delta: float) -> List[float]:
    """Three-point refinement band {angle - delta, angle, angle + delta}."""
    return [round(angle - delta, 9), angle, round(angle + delta, 9)]


def new_tip_coordinates(back: Point, tip: Point, angle_deg: float,
                        length: Optional[float] = None) -> Point:
    """
    Coordinates of the node added at tip for a given growth angle.

    Args:
        back: Node one element behind the tip
        tip: Current tip node
        angle_deg: Growth angle [deg], clockwise from the tip -> back direction
        length: New element length; defaults to |tip - back|

    Returns:
        (x, y) of the new tip
    """
    bx, by = check_number(back[0]), check_number(back[1])
    tx, ty = check_number(tip[0]), check_number(tip[1])
    d = distance((bx, by), (tx, ty)) if length is None else length

    # direction of the element behind the tip, rotated clockwise by the angle
    backward = np.arctan2(by - ty, bx - tx)
    t = backward - np.radians(angle_deg)

    tol = SEARCH["zero_tolerance"]
    x = float(tx + d * np.cos(t))
    y = float(ty + d * np.sin(t))
    return (0.0 if abs(x) < tol else x, 0.0 if abs(y) < tol else y)


@dataclass(frozen=True)
class Scenario:
    """Mapping from tip to growth angle, stored sorted by tip"""
    angles: Tuple[Tuple[TipKey, float], ...]

    @classmethod
    def single(cls, tip: TipKey, angle: float) -> "Scenario":
        return cls(((tip, angle),))

    @classmethod
    def from_mapping(cls, mapping: Mapping[TipKey, float]) -> "Scenario":
        return cls(tuple(sorted(mapping.items())))

    @property
    def tips(self) -> List[TipKey]:
        return [tip for tip, _ in self.angles]

    def as_dict(self) -> Dict[TipKey, float]:
        return dict(self.angles)

    def angle_for(self, tip: TipKey) -> float:
        return self.as_dict()[tip]

    def with_angle(self, tip: TipKey, angle: float) -> "Scenario":
        mapping = self.as_dict()
        mapping[tip] = angle
        return Scenario.from_mapping(mapping)

    def label(self) -> str:
        """File-name friendly label, e.g. 'faultA_2_135'."""
        parts = []
        for tip, angle in self.angles:
            ang = f"{angle:g}"
            parts.append(f"{tip.fracture}_{tip.end}_{ang}")
        return "__".join(parts)

    def sort_key(self) -> Tuple:
        return tuple((tip.fracture, tip.end, angle) for tip, angle in self.angles)

    def __len__(self) -> int:
        return len(self.angles)


class ScenarioGenerator:
    """
    Builds trial snapshots; the base snapshot is never modified.

    A tip may belong to an existing fracture or to a point-seeded flaw. For a
    flaw the added element starts at the seed point and has the flaw's
    user-specified length.
    """

    def __init__(self, params: Optional[Dict] = None):
        self.params = dict(SEARCH)
        if params:
            self.params.update(params)

    def angle_plan(self, tips: Sequence[TipKey], start: float, end: float,
                   increment: float) -> Dict[TipKey, List[float]]:
        angles = get_angles(start, end, increment)
        return {tip: list(angles) for tip in sorted(tips)}

    def flaw_tips(self, snapshot: GeometrySnapshot) -> List[TipKey]:
        """Point-seeded flaws always search from end 2."""
        return sorted(TipKey(flaw.name, 2) for flaw in snapshot.flaws)

    def scenarios(self, plan: Mapping[TipKey, Sequence[float]]) -> List[Scenario]:
        """Single-tip scenarios, tip-sorted then in angle order."""
        return [Scenario.single(tip, angle) for tip in sorted(plan) for angle in plan[tip]]

    def _round(self, point: Point) -> Point:
        decimals = self.params["coordinate_decimals"]
        return (round(point[0], decimals) + 0.0, round(point[1], decimals) + 0.0)

    def _grow_flaw(self, snapshot: GeometrySnapshot, tip: TipKey, angle: float) -> GeometrySnapshot:
        flaw = next(f for f in snapshot.flaws if f.name == tip.fracture)
        seed = flaw.initial_segment()
        new_pt = self._round(new_tip_coordinates(seed.head, seed.tail, angle, flaw.length))
        frac = Fracture(
            name=flaw.name,
            segments=(Segment(flaw.x, flaw.y, new_pt[0], new_pt[1], 1, flaw.props),),
            grow_end1=flaw.both_ends,
            grow_end2=True,
            crack_props=flaw.props or None,
        )
        flaws = tuple(f for f in snapshot.flaws if f.name != flaw.name)
        return GeometrySnapshot(
            fractures=snapshot.fractures + (frac,),
            boundaries=snapshot.boundaries,
            flaws=flaws,
            preamble=snapshot.preamble,
            options=snapshot.options,
        )

    def grow_tip(self, snapshot: GeometrySnapshot, tip: TipKey, angle: float) -> GeometrySnapshot:
        """
        Add one element at a tip.

        Args:
            snapshot: Base geometry (not modified)
            tip: Growing tip (fracture or flaw)
            angle: Growth angle [deg]

        Returns:
            New snapshot with the element appended (end 2) or prepended (end 1)
        """
        if not snapshot.has_fracture(tip.fracture):
            if any(f.name == tip.fracture for f in snapshot.flaws):
                return self._grow_flaw(snapshot, tip, angle)
            raise KeyError(f"Unknown fracture or flaw: {tip.fracture}")

        frac = snapshot.fracture(tip.fracture)
        tip_pt = frac.tip(tip.end)
        back_pt = frac.back_point(tip.end)
        new_pt = self._round(new_tip_coordinates(back_pt, tip_pt, angle))
        props = frac.new_element_props(tip.end)

        if tip.end == 1:
            seg = Segment(new_pt[0], new_pt[1], tip_pt[0], tip_pt[1], 1, props)
        else:
            seg = Segment(tip_pt[0], tip_pt[1], new_pt[0], new_pt[1], 1, props)
        return snapshot.replace_fracture(frac.with_growth(tip.end, seg))

    def build(self, snapshot: GeometrySnapshot, scenario: Scenario) -> GeometrySnapshot:
        """Apply every (tip, angle) of a scenario in tip order, without correction."""
        trial = snapshot
        for tip, angle in scenario.angles:
            trial = self.grow_tip(trial, tip, angle)
        return trial

    def generate(self, snapshot: GeometrySnapshot,
                 plan: Mapping[TipKey, Sequence[float]]) -> List[Tuple[Scenario, GeometrySnapshot]]:
        """One (scenario, trial snapshot) pair per (tip, angle)."""
        trials = []
        for scenario in self.scenarios(plan):
            trials.append((scenario, self.build(snapshot, scenario)))
        _LOGGER.debug("Generated %d trial geometries for %d tips", len(trials), len(plan))
        return trials
