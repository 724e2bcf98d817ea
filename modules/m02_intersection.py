"""
M2: Intersection Corrector
Fracture Growth Optimizer (frac-grow)

Keeps trial geometries topologically valid after a tip has been grown:
detects self-intersection, fracture-fracture and fracture-boundary
intersections for the grown tip(s), snaps the tip onto the through-going
structure one intersection at a time, and re-verifies until the geometry is
clean or an attempt budget runs out.

Classes:
    CorrectionStatus: Outcome of a correction run
    IntersectionKind: Self / fracture / boundary intersection
    IntersectionRecord: Which structures meet, where, and in which role
    CorrectionResult: Corrected snapshot plus status and applied records
    IntersectionCorrector: Bounded detect-and-correct loop

Functions:
    stop_multiply_connected_tips: Stop tips that touch other fractures more than once
    stop_converging_tips: Stop pairs of single-element tips that nearly meet

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Tuple, Optional, Sequence

try:
    from config import INTERSECTION
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import INTERSECTION

from .m01_geometry import (
    GeometrySnapshot,
    Segment,
    TipKey,
    Point,
    node_key,
    distance,
    closest_point,
    segments_cross,
    on_segment,
    shared_node,
    interior_angle,
)

_LOGGER = logging.getLogger(__name__)


class CorrectionStatus(Enum):
    NO_INTERSECTION = "no_intersection"
    SELF_INTERSECTION = "self_intersection"
    CORRECTED = "corrected"
    UNRESOLVABLE = "unresolvable"


class IntersectionKind(Enum):
    SELF = "self"
    FRACTURE = "fracture"
    BOUNDARY = "boundary"


@dataclass(frozen=True)
class IntersectionRecord:
    """One detected intersection of a grown tip"""
    kind: IntersectionKind
    growing: TipKey                # Tip whose coordinate is rewritten
    through: str                   # Name of the through-going fracture or boundary
    point: Point                   # Snapped tip coordinate
    growing_segment: Segment       # Leading segment of the growing tip
    through_segment: Segment       # Segment that is intersected
    distance: float                # Distance from the tip to the intersection


@dataclass
class CorrectionResult:
    """Outcome of IntersectionCorrector.correct"""
    status: CorrectionStatus
    snapshot: GeometrySnapshot         # Corrected trial (input trial if nothing applied)
    corrections: int = 0               # Number of corrections applied
    records: List[IntersectionRecord] = field(default_factory=list)
    reason: str = ""

    @property
    def is_valid(self) -> bool:
        return self.status in (CorrectionStatus.NO_INTERSECTION, CorrectionStatus.CORRECTED)


class IntersectionCorrector:
    """
    Bounded detect-and-correct loop for newly grown tips.

    Each pass rejects overlapping elements and too-acute connections, then
    looks for the first intersection of the grown tips (in tip order). A
    self-intersection is fatal. Fracture and boundary intersections move the
    tip onto the nearer node of the through-going segment; boundary hits also
    stop the tip. The pass repeats until no intersection remains or the
    attempt budget (2 x fractures + boundary segments) is exceeded.
    """

    def __init__(self, params: Optional[Dict] = None):
        self.params = dict(INTERSECTION)
        if params:
            self.params.update(params)
        self.decimals = self.params["node_decimals"]

    # ------------------------------------------------------------------
    # Whole-snapshot validity checks
    # ------------------------------------------------------------------

    def attempt_budget(self, snapshot: GeometrySnapshot) -> int:
        return 2 * len(snapshot.fractures) + len(snapshot.boundary_segments())

    def find_overlap(self, snapshot: GeometrySnapshot) -> Optional[str]:
        """Name of a fracture holding an element that duplicates another element."""
        seen: Dict[Tuple, str] = {}
        for frac in snapshot.fractures:
            for seg in frac.segments:
                a, b = seg.nodes(self.decimals)
                key = (a, b) if a <= b else (b, a)
                if key in seen:
                    _LOGGER.debug("Overlapping element %s in %s and %s", seg.coords, seen[key], frac.name)
                    return frac.name
                seen[key] = frac.name
        return None

    def _connected_pairs(self, snapshot: GeometrySnapshot):
        """Yield (name1, seg1, name2, seg2) for segments of different fractures sharing a node."""
        fracs = snapshot.fractures
        for i, frac_a in enumerate(fracs):
            for frac_b in fracs[i + 1:]:
                for seg_a in frac_a.segments:
                    for seg_b in frac_b.segments:
                        if shared_node(seg_a, seg_b, self.decimals) is not None:
                            yield frac_a.name, seg_a, frac_b.name, seg_b

    def find_acute(self, snapshot: GeometrySnapshot) -> Optional[Tuple[str, str, float]]:
        """First connection between two fractures with an interior angle below the minimum."""
        min_angle = self.params["min_angle_deg"]
        for name_a, seg_a, name_b, seg_b in self._connected_pairs(snapshot):
            angle = interior_angle(seg_a, seg_b, self.decimals)
            if angle is not None and angle < min_angle:
                return name_a, name_b, angle
        return None

    def find_triangle(self, snapshot: GeometrySnapshot) -> bool:
        """True if two connected fractures are closed into a triangle by a third element."""
        closing = set()
        for frac in snapshot.fractures:
            for seg in frac.segments:
                a, b = seg.nodes(self.decimals)
                closing.add((a, b) if a <= b else (b, a))
        for name_a, seg_a, name_b, seg_b in self._connected_pairs(snapshot):
            _, far_a, far_b = shared_node(seg_a, seg_b, self.decimals)
            key = (far_a, far_b) if far_a <= far_b else (far_b, far_a)
            if key in closing:
                _LOGGER.debug("Triangle between %s and %s", name_a, name_b)
                return True
        return False

    # ------------------------------------------------------------------
    # Single-tip intersection test
    # ------------------------------------------------------------------

    def _capture(self, grow_seg: Segment, tip: Point, back: Point,
                 other: Segment) -> Optional[Tuple[Point, float]]:
        """
        Intersection of a leading segment with another segment.

        Returns:
            (snapped node of other, distance from tip) or None. A tip that
            already sits on a node of other is a connection, not an
            intersection, and also returns None.
        """
        tip_key = node_key(tip, self.decimals)
        back_key = node_key(back, self.decimals)
        other_nodes = other.nodes(self.decimals)
        if tip_key in other_nodes or back_key in other_nodes:
            return None

        radius = self.params["snap_fraction"] * grow_seg.element_length
        crossing = segments_cross(grow_seg, other)
        near, near_dist = closest_point(tip, other)

        if crossing is not None:
            reference = crossing
            dist = distance(tip, crossing)
        elif near_dist <= radius:
            reference = near
            dist = 0.0 if on_segment(near, grow_seg) else near_dist
        else:
            return None

        snapped = other.head if distance(reference, other.head) <= distance(reference, other.tail) else other.tail
        return snapped, dist

    def is_connection(self, snapshot: GeometrySnapshot, tip: TipKey, boundaries: bool = False) -> bool:
        """True if the tip node coincides with a node of another fracture (or a boundary)."""
        key = node_key(snapshot.fracture(tip.fracture).tip(tip.end), self.decimals)
        if boundaries:
            return any(key in seg.nodes(self.decimals) for seg in snapshot.boundary_segments())
        for frac in snapshot.fractures:
            if frac.name == tip.fracture:
                continue
            if any(key in seg.nodes(self.decimals) for seg in frac.segments):
                return True
        return False

    def test_tip(self, snapshot: GeometrySnapshot, tip: TipKey) -> Optional[IntersectionRecord]:
        """
        First intersection of a grown tip, checked in order self -> fractures -> boundaries.

        Args:
            snapshot: Trial geometry
            tip: Tip that was just grown

        Returns:
            IntersectionRecord, or None when the tip is clean
        """
        frac = snapshot.fracture(tip.fracture)
        grow_seg = frac.tip_segment(tip.end)
        tip_pt = frac.tip(tip.end)
        back_pt = grow_seg.tail if tip.end == 1 else grow_seg.head
        lead = 0 if tip.end == 1 else len(frac.segments) - 1

        # same fracture, only segments far enough along the chain
        for j, seg in enumerate(frac.segments):
            if abs(lead - j) <= self.params["self_exclusion"]:
                continue
            if segments_cross(grow_seg, seg) is not None or \
                    closest_point(tip_pt, seg)[1] <= self.params["snap_fraction"] * grow_seg.element_length:
                return IntersectionRecord(
                    IntersectionKind.SELF, tip, frac.name, tip_pt, grow_seg, seg, 0.0
                )

        # other fractures, closest capture wins
        if not self.is_connection(snapshot, tip):
            best = None
            for other in snapshot.fractures:
                if other.name == frac.name:
                    continue
                for seg in other.segments:
                    hit = self._capture(grow_seg, tip_pt, back_pt, seg)
                    if hit is None:
                        continue
                    point, dist = hit
                    if best is None or dist < best.distance:
                        best = IntersectionRecord(
                            IntersectionKind.FRACTURE, tip, other.name, point, grow_seg, seg, dist
                        )
            if best is not None:
                return best

        # boundaries
        if self.is_connection(snapshot, tip, boundaries=True):
            return None
        best = None
        for bound in snapshot.boundaries:
            for seg in bound.segments:
                hit = self._capture(grow_seg, tip_pt, back_pt, seg)
                if hit is None:
                    continue
                point, dist = hit
                if best is None or dist < best.distance:
                    best = IntersectionRecord(
                        IntersectionKind.BOUNDARY, tip, bound.name, point, grow_seg, seg, dist
                    )
        return best

    # ------------------------------------------------------------------
    # Correction loop
    # ------------------------------------------------------------------

    def apply(self, snapshot: GeometrySnapshot, record: IntersectionRecord) -> GeometrySnapshot:
        """Move the growing tip onto the snapped node; boundary hits stop the tip."""
        frac = snapshot.fracture(record.growing.fracture)
        frac = frac.with_tip(record.growing.end, record.point)
        if record.kind == IntersectionKind.BOUNDARY:
            frac = frac.with_growing(record.growing.end, False)
        return snapshot.replace_fracture(frac)

    def correct(self, snapshot: GeometrySnapshot, tips: Sequence[TipKey]) -> CorrectionResult:
        """
        Detect and correct intersections of the given grown tips.

        Args:
            snapshot: Trial geometry produced by the scenario generator
            tips: Tips grown in this trial

        Returns:
            CorrectionResult with NO_INTERSECTION, SELF_INTERSECTION,
            CORRECTED (corrections >= 1) or UNRESOLVABLE
        """
        budget = self.attempt_budget(snapshot)
        tips = sorted(tips)
        records: List[IntersectionRecord] = []
        corrections = 0

        while True:
            if corrections > budget:
                return CorrectionResult(CorrectionStatus.UNRESOLVABLE, snapshot, corrections,
                                        records, "correction budget exceeded")

            overlap = self.find_overlap(snapshot)
            if overlap is not None:
                return CorrectionResult(CorrectionStatus.UNRESOLVABLE, snapshot, corrections,
                                        records, f"overlapping element in {overlap}")
            acute = self.find_acute(snapshot)
            if acute is not None:
                return CorrectionResult(CorrectionStatus.UNRESOLVABLE, snapshot, corrections, records,
                                        f"angle {acute[2]:.1f} deg between {acute[0]} and {acute[1]}")

            record = None
            for tip in tips:
                if not snapshot.has_fracture(tip.fracture):
                    continue
                record = self.test_tip(snapshot, tip)
                if record is not None:
                    break

            if record is None:
                status = CorrectionStatus.CORRECTED if corrections else CorrectionStatus.NO_INTERSECTION
                return CorrectionResult(status, snapshot, corrections, records)

            if record.kind == IntersectionKind.SELF:
                _LOGGER.info("Fracture %s intersects itself", record.growing.fracture)
                records.append(record)
                return CorrectionResult(CorrectionStatus.SELF_INTERSECTION, snapshot, corrections,
                                        records, f"{record.growing} intersects itself")

            _LOGGER.info("Tip %s intersects %s at (%.5g, %.5g)",
                         record.growing, record.through, record.point[0], record.point[1])
            snapshot = self.apply(snapshot, record)
            records.append(record)

            if record.kind == IntersectionKind.FRACTURE and self.find_triangle(snapshot):
                return CorrectionResult(CorrectionStatus.UNRESOLVABLE, snapshot, corrections + 1,
                                        records, "correction closes a triangle")
            corrections += 1


# =============================================================================
# Post-increment tip checks
# =============================================================================

def stop_multiply_connected_tips(
    snapshot: GeometrySnapshot, decimals: int = None
) -> Tuple[GeometrySnapshot, List[TipKey]]:
    """Turn off growing tips whose node matches nodes of other fractures more than once."""
    if decimals is None:
        decimals = INTERSECTION["node_decimals"]
    stopped = []
    for tip in snapshot.growing_tips():
        key = node_key(snapshot.fracture(tip.fracture).tip(tip.end), decimals)
        matches = 0
        for frac in snapshot.fractures:
            if frac.name == tip.fracture:
                continue
            for seg in frac.segments:
                if key in seg.nodes(decimals):
                    matches += 1
        if matches > 1:
            _LOGGER.info("Found %d connections at %s; turning off growth", matches, tip)
            stopped.append(tip)
    for tip in stopped:
        snapshot = snapshot.with_growing(tip, False)
    return snapshot, stopped


def stop_converging_tips(
    snapshot: GeometrySnapshot, fraction: float = None
) -> Tuple[GeometrySnapshot, List[TipKey]]:
    """
    Turn off pairs of tips of different fractures that nearly meet.

    Only tips whose end segment holds a single element are tested; two tips
    closer than fraction * (other tip element length) both stop.
    """
    if fraction is None:
        fraction = INTERSECTION["final_tip_fraction"]
    stopped = set()
    fracs = snapshot.fractures
    for frac in fracs:
        for end in (1, 2):
            if frac.tip_segment(end).num != 1:
                continue
            tip_pt = frac.tip(end)
            for other in fracs:
                if other.name == frac.name:
                    continue
                for other_end in (1, 2):
                    other_seg = other.tip_segment(other_end)
                    if distance(tip_pt, other.tip(other_end)) < fraction * other_seg.length:
                        stopped.add(TipKey(frac.name, end))
                        stopped.add(TipKey(other.name, other_end))
    result = []
    for tip in sorted(stopped):
        if snapshot.fracture(tip.fracture).is_growing(tip.end):
            snapshot = snapshot.with_growing(tip, False)
            result.append(tip)
            _LOGGER.info("Tip %s converges on another tip; turning off growth", tip)
    return snapshot, result
