"""
spatial_index.py

Bounding-box tree over road-network elements for approximate
nearest-neighbour queries.

The tree is a shapely STRtree (the same structure GeoDataFrame.sindex
exposes). It is built once from the full element set and never updated;
a changed network needs a new index.
"""

from __future__ import annotations

import logging
import math
from collections import Counter
from typing import Iterable, List, Optional, Sequence, Tuple

import numpy as np
import shapely
from shapely.geometry import Point, box
from shapely.geometry.base import BaseGeometry
from shapely.strtree import STRtree

from .constants import TIE_EPSILON
from .errors import EmptyNetwork
from .model import Coord, NetworkElement

logger = logging.getLogger(__name__)

BBox = Tuple[float, float, float, float]


def _as_point(point) -> Point:
    if isinstance(point, Point):
        return point
    x, y = point
    return Point(float(x), float(y))


class SpatialIndex:
    """
    Read-only index mapping element bounding boxes to element ids.

    Every element present at build time has exactly one entry.
    """

    def __init__(
        self,
        element_ids: Sequence[int],
        geometries: Sequence[BaseGeometry],
        crs: Optional[str] = None,
        node_capacity: int = 10,
    ):
        self._ids = np.asarray(element_ids, dtype=np.int64)
        self._geoms = np.asarray(geometries, dtype=object)
        self._ids.setflags(write=False)
        self._geoms.setflags(write=False)
        self._tree = STRtree(self._geoms, node_capacity=node_capacity)
        self._position = {int(eid): i for i, eid in enumerate(self._ids)}
        self.crs = crs
        self.bounds: BBox = tuple(float(v) for v in shapely.total_bounds(self._geoms))
        self._extent_diagonal = math.hypot(
            self.bounds[2] - self.bounds[0], self.bounds[3] - self.bounds[1]
        )
        self._initial_radius = self._estimate_initial_radius()

    def __len__(self) -> int:
        return len(self._ids)

    def __contains__(self, element_id) -> bool:
        return int(element_id) in self._position

    @property
    def element_ids(self) -> Tuple[int, ...]:
        return tuple(int(i) for i in self._ids)

    def geometry(self, element_id: int) -> BaseGeometry:
        return self._geoms[self._position[int(element_id)]]

    def _estimate_initial_radius(self) -> float:
        """Typical element size; the first ring of a nearest search."""
        b = shapely.bounds(self._geoms)
        diagonals = np.hypot(b[:, 2] - b[:, 0], b[:, 3] - b[:, 1])
        radius = float(np.median(diagonals))
        if radius <= 0:
            radius = self._extent_diagonal / math.sqrt(len(self._ids))
        if radius <= 0:
            radius = 1.0
        return radius

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def query(self, bbox: BBox) -> List[int]:
        """Ids whose bounding boxes intersect bbox. May include false positives."""
        minx, miny, maxx, maxy = (float(v) for v in bbox)
        if minx > maxx or miny > maxy:
            raise ValueError(f"Invalid bbox {bbox}: min must not exceed max")
        candidates = self._tree.query(box(minx, miny, maxx, maxy))
        return sorted(int(i) for i in self._ids[candidates])

    def _within(self, pt: Point, radius: float) -> Tuple[np.ndarray, np.ndarray]:
        """Positions and distances of elements within radius of pt."""
        candidates = self._tree.query(box(pt.x - radius, pt.y - radius, pt.x + radius, pt.y + radius))
        if len(candidates) == 0:
            return candidates, np.empty(0)
        dists = shapely.distance(self._geoms[candidates], pt)
        mask = dists <= radius
        return candidates[mask], dists[mask]

    def _search_limit(self, pt: Point, max_distance: float) -> float:
        # No element is farther than this from pt, so larger radii are pointless.
        reach = float(shapely.distance(box(*self.bounds), pt)) + self._extent_diagonal
        return min(float(max_distance), reach)

    def nearest(self, point, max_distance: float) -> Optional[Tuple[int, float]]:
        """
        Closest element within max_distance, as (element_id, distance).

        The search radius starts at the typical element size and doubles
        until a candidate lies inside it or it reaches max_distance.
        Equidistant candidates (within TIE_EPSILON) resolve to the lowest id.
        """
        if max_distance is None or max_distance < 0 or math.isnan(max_distance):
            raise ValueError(f"max_distance must be a non-negative number, got {max_distance}")
        pt = _as_point(point)
        limit = self._search_limit(pt, max_distance)
        radius = min(self._initial_radius, limit)

        while True:
            positions, dists = self._within(pt, radius)
            if len(positions):
                best = self._break_ties(positions, dists)
                return int(self._ids[positions[best]]), float(dists[best])
            if radius >= limit:
                return None
            radius = min(radius * 2.0, limit)

    def _break_ties(self, positions: np.ndarray, dists: np.ndarray) -> int:
        """Index into positions/dists of the closest candidate, lowest id on ties."""
        d_min = dists.min()
        tied = np.flatnonzero(dists <= d_min + TIE_EPSILON)
        if len(tied) == 1:
            return int(tied[0])
        ids = self._ids[positions[tied]]
        return int(tied[np.argmin(ids)])

    def all_close(self, point, max_distance: float) -> List[Tuple[int, Coord, float]]:
        """
        Every element within max_distance of point as
        (element_id, closest point on the element, distance), ordered by
        distance then id.
        """
        if max_distance < 0:
            raise ValueError(f"max_distance must be non-negative, got {max_distance}")
        pt = _as_point(point)
        positions, dists = self._within(pt, self._search_limit(pt, max_distance))
        if len(positions) == 0:
            return []
        lines = shapely.shortest_line(self._geoms[positions], pt)
        out = []
        for pos, line, d in zip(positions, lines, dists):
            x, y = line.coords[0]
            out.append((int(self._ids[pos]), (float(x), float(y)), float(d)))
        out.sort(key=lambda t: (t[2], t[0]))
        return out

    def elements_inside(self, polygon: BaseGeometry) -> List[int]:
        """Ids of elements intersecting polygon."""
        positions = self._tree.query(polygon, predicate="intersects")
        return sorted(int(i) for i in self._ids[positions])


# ==============================================================================
# Functional interface
# ==============================================================================


def build_index(
    elements: Iterable[NetworkElement],
    crs: Optional[str] = None,
    node_capacity: int = 10,
) -> SpatialIndex:
    """Build the index over every element. Raises EmptyNetwork for an empty set."""
    elements = list(elements)
    if not elements:
        raise EmptyNetwork("Cannot build a spatial index over an empty network.")

    counts = Counter(e.element_id for e in elements)
    dupes = sorted(eid for eid, n in counts.items() if n > 1)
    if dupes:
        raise ValueError(f"Duplicate network element ids: {dupes[:10]}")

    index = SpatialIndex(
        [e.element_id for e in elements],
        [e.geometry() for e in elements],
        crs=crs,
        node_capacity=node_capacity,
    )
    logger.info(
        "Built spatial index over %d elements, extent %s",
        len(index),
        tuple(round(v, 3) for v in index.bounds),
    )
    return index


def query(index: SpatialIndex, bbox: BBox) -> List[int]:
    return index.query(bbox)


def nearest(index: SpatialIndex, point, max_distance: float) -> Optional[Tuple[int, float]]:
    return index.nearest(point, max_distance)


def all_close(index: SpatialIndex, point, max_distance: float) -> List[Tuple[int, Coord, float]]:
    return index.all_close(point, max_distance)


def elements_inside(index: SpatialIndex, polygon: BaseGeometry) -> List[int]:
    return index.elements_inside(polygon)
