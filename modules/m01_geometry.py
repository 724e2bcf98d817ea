"""
M1: Geometry Model
Fracture Growth Optimizer (frac-grow)

Segment-based representation of fractures and domain boundaries, plus the
point/segment queries used by the intersection corrector and the scenario
generator.

Classes:
    TipKey: Typed (fracture, end) key for a fracture tip
    Segment: Straight line carrying one or more boundary elements
    Fracture: Named chain of segments with per-end growing flags
    Boundary: Named, non-growing chain of boundary segments
    Flaw: Point-seeded flaw that becomes a one-element fracture
    GeometrySnapshot: Immutable set of fractures and boundaries

Author: Fracture Growth Optimizer Team
Date: 2026-02-25
"""

import numpy as np
import logging
from dataclasses import dataclass, field, replace
from typing import Dict, List, Tuple, Optional, Iterable

try:
    from config import SEARCH, INTERSECTION
except ImportError:
    import sys
    import os
    sys.path.insert(0, os.path.dirname(os.path.dirname(__file__)))
    from config import SEARCH, INTERSECTION

_LOGGER = logging.getLogger(__name__)

Point = Tuple[float, float]


def check_number(value: float, decimals: int = None, tol: float = None) -> float:
    """Round a coordinate for comparison; tiny magnitudes collapse to zero."""
    if decimals is None:
        decimals = INTERSECTION["node_decimals"]
    if tol is None:
        tol = SEARCH["zero_tolerance"]
    if abs(value) < tol:
        return 0.0
    rounded = round(value, decimals)
    # avoid -0.0 keys
    return rounded + 0.0


def node_key(point: Point, decimals: int = None) -> Tuple[float, float]:
    """Hashable, rounded representation of a node."""
    return (check_number(point[0], decimals), check_number(point[1], decimals))


def points_match(p: Point, q: Point, decimals: int = None) -> bool:
    return node_key(p, decimals) == node_key(q, decimals)


def distance(p: Point, q: Point) -> float:
    return float(np.hypot(p[0] - q[0], p[1] - q[1]))


@dataclass(frozen=True, order=True)
class TipKey:
    """Identifies one end of a fracture; end 1 is the head, end 2 the tail."""
    fracture: str
    end: int

    def __post_init__(self):
        if self.end not in (1, 2):
            raise ValueError(f"Tip end must be 1 or 2, got {self.end}")

    def __str__(self) -> str:
        return f"{self.fracture} {self.end}"


@dataclass(frozen=True)
class Segment:
    """Straight line from head (x1, y1) to tail (x2, y2) split into num elements"""
    x1: float
    y1: float
    x2: float
    y2: float
    num: int = 1                          # Number of boundary elements on the line
    props: Tuple[str, ...] = ()           # Trailing property tokens, kept verbatim

    @property
    def head(self) -> Point:
        return (self.x1, self.y1)

    @property
    def tail(self) -> Point:
        return (self.x2, self.y2)

    @property
    def coords(self) -> Tuple[float, float, float, float]:
        return (self.x1, self.y1, self.x2, self.y2)

    @property
    def length(self) -> float:
        return distance(self.head, self.tail)

    @property
    def element_length(self) -> float:
        return self.length / max(self.num, 1)

    def is_degenerate(self, decimals: int = None) -> bool:
        return points_match(self.head, self.tail, decimals)

    def nodes(self, decimals: int = None) -> Tuple[Tuple[float, float], Tuple[float, float]]:
        return node_key(self.head, decimals), node_key(self.tail, decimals)

    def same_element(self, other: "Segment", decimals: int = None) -> bool:
        """True when both segments join the same two nodes, in either direction."""
        mine = self.nodes(decimals)
        theirs = other.nodes(decimals)
        return mine == theirs or mine == theirs[::-1]

    def with_head(self, point: Point) -> "Segment":
        return replace(self, x1=point[0], y1=point[1])

    def with_tail(self, point: Point) -> "Segment":
        return replace(self, x2=point[0], y2=point[1])

    def elements(self) -> List["Segment"]:
        """Split into num single-element segments of equal length."""
        if self.num <= 1:
            return [self]
        dx = (self.x2 - self.x1) / self.num
        dy = (self.y2 - self.y1) / self.num
        return [
            Segment(self.x1 + i * dx, self.y1 + i * dy,
                    self.x1 + (i + 1) * dx, self.y1 + (i + 1) * dy, 1, self.props)
            for i in range(self.num)
        ]


@dataclass(frozen=True)
class Fracture:
    """Named chain of segments, head of the first segment is end 1"""
    name: str
    segments: Tuple[Segment, ...]
    grow_end1: bool = False
    grow_end2: bool = False
    grow_tail: str = "no"                      # Third header token, written back unchanged
    crack_props: Optional[Tuple[str, ...]] = None  # Properties for newly added elements

    def __post_init__(self):
        if not self.segments:
            raise ValueError(f"Fracture {self.name} has no segments")

    def tip_segment(self, end: int) -> Segment:
        return self.segments[0] if end == 1 else self.segments[-1]

    def tip(self, end: int) -> Point:
        seg = self.tip_segment(end)
        return seg.head if end == 1 else seg.tail

    def back_point(self, end: int) -> Point:
        """Node one element in from the tip."""
        seg = self.tip_segment(end)
        dx = (seg.x2 - seg.x1) / max(seg.num, 1)
        dy = (seg.y2 - seg.y1) / max(seg.num, 1)
        if end == 1:
            return (seg.x1 + dx, seg.y1 + dy)
        return (seg.x2 - dx, seg.y2 - dy)

    def element_length(self, end: int) -> float:
        return self.tip_segment(end).element_length

    def is_growing(self, end: int) -> bool:
        return self.grow_end1 if end == 1 else self.grow_end2

    def growing_tips(self) -> List[TipKey]:
        tips = []
        if self.grow_end1:
            tips.append(TipKey(self.name, 1))
        if self.grow_end2:
            tips.append(TipKey(self.name, 2))
        return tips

    @property
    def length(self) -> float:
        return sum(seg.length for seg in self.segments)

    @property
    def element_count(self) -> int:
        return sum(seg.num for seg in self.segments)

    def new_element_props(self, end: int) -> Tuple[str, ...]:
        if self.crack_props is not None:
            return self.crack_props
        return self.tip_segment(end).props

    def with_growth(self, end: int, segment: Segment) -> "Fracture":
        """Return a copy with one segment prepended (end 1) or appended (end 2)."""
        if end == 1:
            return replace(self, segments=(segment,) + self.segments)
        return replace(self, segments=self.segments + (segment,))

    def with_tip(self, end: int, point: Point) -> "Fracture":
        """Move the tip node, keeping the element count."""
        segs = list(self.segments)
        if end == 1:
            segs[0] = segs[0].with_head(point)
        else:
            segs[-1] = segs[-1].with_tail(point)
        return replace(self, segments=tuple(segs))

    def with_growing(self, end: int, flag: bool) -> "Fracture":
        if end == 1:
            return replace(self, grow_end1=flag)
        return replace(self, grow_end2=flag)


@dataclass(frozen=True)
class Boundary:
    """Domain edge; props of each segment carry the boundary condition tokens"""
    name: str
    segments: Tuple[Segment, ...]


@dataclass(frozen=True)
class Flaw:
    """Point-seeded flaw: grows from (x, y) after a seed element of length L"""
    name: str
    x: float
    y: float
    length: float
    both_ends: bool = False
    props: Tuple[str, ...] = ()

    def initial_segment(self) -> Segment:
        return Segment(self.x - self.length, self.y, self.x, self.y, 1, self.props)

    def as_fracture(self) -> Fracture:
        return Fracture(
            name=self.name,
            segments=(self.initial_segment(),),
            grow_end1=self.both_ends,
            grow_end2=True,
            crack_props=self.props or None,
        )


@dataclass(frozen=True)
class GeometrySnapshot:
    """
    Complete, self-consistent set of fractures and boundaries.

    Snapshots are never mutated; every growth or correction step returns a
    new instance via the with_* helpers.
    """
    fractures: Tuple[Fracture, ...]
    boundaries: Tuple[Boundary, ...] = ()
    flaws: Tuple[Flaw, ...] = ()
    preamble: Tuple[str, ...] = ()        # Non-geometry input lines, written back verbatim
    options: Tuple[Tuple[str, str], ...] = ()  # (*Key, VALUE) option lines

    def __post_init__(self):
        names = [f.name for f in self.fractures]
        if len(names) != len(set(names)):
            raise ValueError(f"Duplicate fracture names in snapshot: {names}")

    @property
    def fracture_names(self) -> List[str]:
        return [f.name for f in self.fractures]

    def fracture(self, name: str) -> Fracture:
        for frac in self.fractures:
            if frac.name == name:
                return frac
        raise KeyError(f"Unknown fracture: {name}")

    def has_fracture(self, name: str) -> bool:
        return any(f.name == name for f in self.fractures)

    def replace_fracture(self, fracture: Fracture) -> "GeometrySnapshot":
        fracs = tuple(fracture if f.name == fracture.name else f for f in self.fractures)
        return replace(self, fractures=fracs)

    def with_fractures(self, fractures: Iterable[Fracture]) -> "GeometrySnapshot":
        return replace(self, fractures=tuple(fractures))

    def with_growing(self, tip: TipKey, flag: bool) -> "GeometrySnapshot":
        frac = self.fracture(tip.fracture)
        return self.replace_fracture(frac.with_growing(tip.end, flag))

    def option(self, key: str, default: str = None) -> Optional[str]:
        for k, v in self.options:
            if k.lower() == key.lower():
                return v
        return default

    def growing_tips(self) -> List[TipKey]:
        """All tips whose growing flag is set, sorted by name then end."""
        tips = []
        for frac in self.fractures:
            tips.extend(frac.growing_tips())
        return sorted(tips)

    def total_fracture_length(self) -> float:
        return sum(f.length for f in self.fractures)

    def boundary_segments(self) -> List[Segment]:
        segs = []
        for bound in self.boundaries:
            segs.extend(bound.segments)
        return segs

    def all_segments(self) -> List[Tuple[str, Segment]]:
        """(owner name, segment) for every fracture and boundary segment."""
        pairs = [(f.name, s) for f in self.fractures for s in f.segments]
        pairs.extend((b.name, s) for b in self.boundaries for s in b.segments)
        return pairs

    def mean_element_length(self) -> float:
        lengths = [s.element_length for _, s in self.all_segments()]
        if not lengths:
            return 0.0
        return float(np.mean(lengths))


# =============================================================================
# Point / segment queries
# =============================================================================

def _endpoints(seg: Segment) -> Tuple[np.ndarray, np.ndarray]:
    """Head and direction vector of a segment."""
    head = np.array([seg.x1, seg.y1], dtype=float)
    return head, np.array([seg.x2, seg.y2], dtype=float) - head


def _cross(u: np.ndarray, v: np.ndarray) -> float:
    return float(u[0] * v[1] - u[1] * v[0])


def on_segment(point: Optional[Point], seg: Segment, tol: float = None) -> bool:
    """True if point lies on the closed segment (within tol)."""
    if point is None:
        return False
    if tol is None:
        tol = INTERSECTION["node_tolerance"]
    p = np.asarray(point, dtype=float)
    head, d = _endpoints(seg)
    if np.all(np.abs(p - head) < tol) or np.all(np.abs(p - head - d) < tol):
        return True
    length = np.hypot(d[0], d[1])
    if length == 0.0:
        return False
    # perpendicular offset from the line, then position along it
    if abs(_cross(d, p - head)) / length >= tol:
        return False
    t = np.dot(p - head, d) / length ** 2
    return -tol / length <= t <= 1.0 + tol / length


def line_intersection(seg1: Segment, seg2: Segment) -> Optional[Point]:
    """
    Intersection of the infinite lines through two segments.

    Coincident lines return whichever end of seg1 lies on seg2 (head first,
    tail otherwise); parallel distinct lines return None.
    """
    p, r = _endpoints(seg1)
    q, s = _endpoints(seg2)
    denom = _cross(r, s)
    scale = np.hypot(r[0], r[1]) * np.hypot(s[0], s[1])

    if scale == 0.0 or abs(denom) <= SEARCH["zero_tolerance"] * scale:
        r_len = np.hypot(r[0], r[1])
        gap = abs(_cross(q - p, r)) / r_len if r_len > 0.0 else np.hypot(*(q - p))
        if gap > INTERSECTION["node_tolerance"]:
            return None
        return seg1.head if on_segment(seg1.head, seg2) else seg1.tail

    t = _cross(q - p, s) / denom
    point = p + t * r
    return (float(point[0]), float(point[1]))


def _within_box(point: Point, seg: Segment, tol: float) -> bool:
    lo = np.minimum([seg.x1, seg.y1], [seg.x2, seg.y2]) - tol
    hi = np.maximum([seg.x1, seg.y1], [seg.x2, seg.y2]) + tol
    return bool(np.all((lo <= point) & (np.asarray(point) <= hi)))


def segments_cross(seg1: Segment, seg2: Segment, tol: float = None) -> Optional[Point]:
    """Crossing point of two segments, or None if they do not meet."""
    if tol is None:
        tol = INTERSECTION["node_tolerance"]
    point = line_intersection(seg1, seg2)
    if point is None:
        return None
    if _within_box(point, seg1, tol) and _within_box(point, seg2, tol):
        return point
    return None


def closest_point(point: Point, seg: Segment) -> Tuple[Point, float]:
    """Projection of point onto the closed segment and its distance."""
    p = np.asarray(point, dtype=float)
    head, d = _endpoints(seg)
    denom = float(np.dot(d, d))
    if denom == 0.0:
        return seg.head, distance(point, seg.head)
    t = np.clip(np.dot(p - head, d) / denom, 0.0, 1.0)
    proj = head + t * d
    proj = (float(proj[0]), float(proj[1]))
    return proj, distance(point, proj)


def are_connected(seg1: Segment, seg2: Segment, decimals: int = None) -> bool:
    """True if the segments share at least one node."""
    a1, a2 = seg1.nodes(decimals)
    b1, b2 = seg2.nodes(decimals)
    return a1 in (b1, b2) or a2 in (b1, b2)


def shared_node(seg1: Segment, seg2: Segment, decimals: int = None) -> Optional[Tuple[Point, Point, Point]]:
    """
    Shared node of two connected segments.

    Returns:
        (shared node, far node of seg1, far node of seg2) or None
    """
    a1, a2 = seg1.nodes(decimals)
    b1, b2 = seg2.nodes(decimals)
    if a1 == b1:
        return a1, a2, b2
    if a2 == b1:
        return a2, a1, b2
    if a1 == b2:
        return a1, a2, b1
    if a2 == b2:
        return a2, a1, b1
    return None


def interior_angle(seg1: Segment, seg2: Segment, decimals: int = None) -> Optional[float]:
    """Angle in degrees between two connected segments at their shared node."""
    nodes = shared_node(seg1, seg2, decimals)
    if nodes is None:
        return None
    pend, p1, p2 = (np.asarray(n, dtype=float) for n in nodes)
    u, v = p1 - pend, p2 - pend
    norms = np.linalg.norm(u) * np.linalg.norm(v)
    if norms == 0.0:
        return 0.0
    cos_angle = np.clip(np.dot(u, v) / norms, -1.0, 1.0)
    return float(np.degrees(np.arccos(cos_angle)))


# =============================================================================
# Snapshot cleanup
# =============================================================================

def _touches_other(point: Point, owner: str, snapshot: GeometrySnapshot) -> bool:
    key = node_key(point)
    for name, seg in snapshot.all_segments():
        if name != owner and key in seg.nodes():
            return True
    return False


def clean_snapshot(snapshot: GeometrySnapshot, fraction: float = None) -> GeometrySnapshot:
    """
    Remove degenerate, short and duplicate fracture elements.

    A fracture element shorter than fraction * mean element length is merged
    into a neighbour: backwards by default, forwards when its head is a node
    shared with another structure (so that the connection survives).
    """
    if fraction is None:
        fraction = INTERSECTION["short_element_fraction"]
    mean_len = snapshot.mean_element_length()
    cleaned = []

    for frac in snapshot.fractures:
        segs = [s for s in frac.segments if not s.is_degenerate()]
        if not segs:
            _LOGGER.warning("Fracture %s collapsed to zero length; keeping original", frac.name)
            cleaned.append(frac)
            continue

        i = 0
        while len(segs) > 1 and i < len(segs):
            seg = segs[i]
            if seg.element_length > fraction * mean_len:
                i += 1
                continue
            forward = i == 0 or (_touches_other(seg.head, frac.name, snapshot) and i < len(segs) - 1)
            if forward:
                nxt = segs[i + 1]
                segs[i:i + 2] = [Segment(seg.x1, seg.y1, nxt.x2, nxt.y2, nxt.num, seg.props)]
            else:
                prev = segs[i - 1]
                segs[i - 1:i + 1] = [Segment(prev.x1, prev.y1, seg.x2, seg.y2, prev.num, seg.props)]
                i -= 1
            _LOGGER.info("Merged short element of %s (length %.3g)", frac.name, seg.element_length)

        unique = []
        for seg in segs:
            if any(seg.same_element(u) for u in unique):
                _LOGGER.info("Removed duplicate element of %s: %s", frac.name, seg.coords)
                continue
            unique.append(seg)
        cleaned.append(replace(frac, segments=tuple(unique)))

    return snapshot.with_fractures(cleaned)
