"""
conflation.py

Attach external point/line records (collisions, parking, amenities,
traffic counts) to the nearest road-network element within a distance
tolerance.

Key design notes
----------------
- Each record is matched by its representative point: the point itself for
  point records, the midpoint along the line for line records.
- The match is the closest element within tolerance; equidistant elements
  resolve to the lowest element id.
- The attachment stores the projection of the representative point onto the
  element: distance along it (position) and signed perpendicular offset
  (positive to the left of the digitized direction).
- Records that find no element are reported, never dropped. Whether too many
  unmatched records is a failure is the caller's decision.
- Records must be in the network's planar CRS. A differing CRS without a
  transform aborts the whole call before any matching.
"""

from __future__ import annotations

import logging
import math
from concurrent.futures import ThreadPoolExecutor
from collections import Counter
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple, Union

import pandas as pd
from pyproj import CRS, Transformer
from shapely.geometry import Point
from tqdm import tqdm

from .constants import COORD_PRECISION, MAX_EXAMPLES
from .errors import CoordinateSystemMismatch, CorruptRecordStream, EmptyNetwork, RecordMatchFailure
from .model import Attachment, Coord, ExternalRecord, NetworkElement
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)

Transform = Callable[[float, float], Tuple[float, float]]


# ==============================================================================
# Coordinate systems
# ==============================================================================


def _crs_key(crs: Any) -> Optional[str]:
    if crs is None:
        return None
    if isinstance(crs, CRS):
        return crs.to_string()
    return str(crs)


@lru_cache(maxsize=128)
def _same_crs(a: Optional[str], b: Optional[str]) -> bool:
    if a is None or b is None:
        return True
    if a == b:
        return True
    return CRS.from_user_input(a) == CRS.from_user_input(b)


def same_crs(a: Any, b: Any) -> bool:
    """True when two CRS declarations name the same system. None matches anything."""
    return _same_crs(_crs_key(a), _crs_key(b))


def make_transform(from_crs: Any, to_crs: Any) -> Transform:
    """Build an (x, y) -> (x, y) transform between two CRSs (lon/lat axis order)."""
    transformer = Transformer.from_crs(from_crs, to_crs, always_xy=True)
    return transformer.transform


def normalize_records(
    records: Sequence[ExternalRecord],
    network_crs: Any,
    transform: Optional[Transform] = None,
) -> List[ExternalRecord]:
    """
    Return records expressed in the network CRS.

    Records that declare no CRS are taken to already be in it. A network
    without a CRS accepts any record CRS, with a warning.
    """
    if network_crs is None:
        declared = sorted({str(r.crs) for r in records if r.crs is not None})
        if declared:
            logger.warning(
                "Network has no CRS; assuming records declaring %s are already in its coordinates",
                ", ".join(declared),
            )
    mismatched = [r for r in records if not same_crs(r.crs, network_crs)]
    if not mismatched:
        return list(records)
    if transform is None:
        raise CoordinateSystemMismatch(
            mismatched[0].crs,
            network_crs,
            record_ids=[r.record_id for r in mismatched],
        )

    logger.info(
        "Transforming %d records from %s to %s",
        len(mismatched),
        mismatched[0].crs,
        _crs_key(network_crs),
    )
    target = _crs_key(network_crs)
    out = []
    for r in records:
        if same_crs(r.crs, network_crs):
            out.append(r)
            continue
        pts = [transform(x, y) for x, y in r.points]
        if not all(math.isfinite(x) and math.isfinite(y) for x, y in pts):
            raise CorruptRecordStream(
                f"Record {r.record_id} has non-finite coordinates after transform from {r.crs}"
            )
        out.append(r.with_points(pts, target))
    return out


# ==============================================================================
# Projection onto element shapes
# ==============================================================================


def _side_of_polyline(points: Sequence[Coord], position: float, pt: Coord) -> int:
    """+1 if pt is left of the polyline at position, -1 if right, 0 if on it."""
    px, py = pt
    travelled = 0.0
    for (x0, y0), (x1, y1) in zip(points[:-1], points[1:]):
        seg_len = math.hypot(x1 - x0, y1 - y0)
        if seg_len == 0:
            continue
        if position <= travelled + seg_len + 1e-12 or (x1, y1) == points[-1]:
            cross = (x1 - x0) * (py - y0) - (y1 - y0) * (px - x0)
            if cross > 0:
                return 1
            if cross < 0:
                return -1
            return 0
        travelled += seg_len
    return 0


def project_onto(element: NetworkElement, point: Coord) -> Tuple[float, float]:
    """(distance along the element, signed perpendicular offset) of point."""
    geom = element.geometry()
    pt = Point(point)
    if isinstance(geom, Point):
        return 0.0, float(geom.distance(pt))
    position = float(geom.project(pt))
    dist = float(geom.interpolate(position).distance(pt))
    side = _side_of_polyline(element.points, position, point)
    return position, dist * (side if side != 0 else 1)


# ==============================================================================
# Matching
# ==============================================================================


@dataclass
class ConflationResult:
    attachments: List[Attachment]
    unmatched: List[str]
    failures: List[RecordMatchFailure] = field(default_factory=list)
    total: int = 0

    @property
    def matched(self) -> int:
        return len(self.attachments)

    @property
    def unmatched_fraction(self) -> float:
        if self.total == 0:
            return 0.0
        return len(self.unmatched) / self.total

    def examples(self, n: int = MAX_EXAMPLES) -> List[str]:
        return [str(f) for f in self.failures[:n]]


def check_record_stream(records: Iterable[Any]) -> List[ExternalRecord]:
    """Materialize the stream, raising CorruptRecordStream on anything malformed."""
    try:
        records = list(records)
    except TypeError as e:
        raise CorruptRecordStream(f"Record stream is not iterable: {e}") from e

    for i, r in enumerate(records):
        if not isinstance(r, ExternalRecord):
            raise CorruptRecordStream(
                f"Item {i} of the record stream is a {type(r).__name__}, not an ExternalRecord"
            )
        if not r.points:
            raise CorruptRecordStream(f"Record {r.record_id} has no coordinates")
        if not all(math.isfinite(x) and math.isfinite(y) for x, y in r.points):
            raise CorruptRecordStream(f"Record {r.record_id} has non-finite coordinates")

    counts = Counter(r.record_id for r in records)
    dupes = sorted(rid for rid, n in counts.items() if n > 1)
    if dupes:
        raise CorruptRecordStream(f"Duplicate record ids in stream: {dupes[:MAX_EXAMPLES]}")
    return records


def _match_record(
    record: ExternalRecord,
    index: SpatialIndex,
    elements_by_id: Dict[int, NetworkElement],
    tolerance: float,
) -> Union[Attachment, RecordMatchFailure]:
    rep = record.representative_point()
    hit = index.nearest(rep, tolerance)
    if hit is None:
        beyond = index.nearest(rep, math.inf)
        return RecordMatchFailure(
            record_id=record.record_id,
            kind=record.kind.value,
            reason="no network element within tolerance",
            nearest_distance=round(beyond[1], COORD_PRECISION) if beyond else None,
        )

    element_id, dist = hit
    position, offset = project_onto(elements_by_id[element_id], rep)
    confidence = 1.0 - dist / tolerance if tolerance > 0 else 1.0
    return Attachment(
        record_id=record.record_id,
        element_id=element_id,
        kind=record.kind,
        offset=round(offset, COORD_PRECISION),
        position=round(position, COORD_PRECISION),
        distance=round(dist, COORD_PRECISION),
        confidence=round(max(0.0, min(1.0, confidence)), COORD_PRECISION),
        source=record.source,
    )


def conflate(
    index: SpatialIndex,
    elements: Sequence[NetworkElement],
    records: Iterable[ExternalRecord],
    tolerance: float,
    transform: Optional[Transform] = None,
    workers: int = 1,
    show_progress: bool = False,
) -> ConflationResult:
    """
    Attach each record to the closest network element within tolerance.

    Parameters
    ----------
    index : SpatialIndex
        Index built from `elements`.
    elements : sequence of NetworkElement
        The network the index was built from; used for element shapes.
    records : iterable of ExternalRecord
        Records to attach. Ids must be unique within the stream.
    tolerance : float
        Maximum matching distance in network CRS units.
    transform : callable, optional
        (x, y) -> (x, y) applied to records whose CRS differs from the index CRS.
    workers : int, default 1
        Worker threads. Results do not depend on this value.

    Returns
    -------
    ConflationResult
        Attachments in record order, unmatched record ids sorted by id, and
        one RecordMatchFailure per unmatched record.

    Raises
    ------
    EmptyNetwork
        The element set is empty; no attachments are produced.
    CoordinateSystemMismatch
        A record's CRS differs from the network's and no transform was given.
    CorruptRecordStream
        The stream holds something other than well-formed records.
    """
    elements = list(elements)
    if not elements or len(index) == 0:
        raise EmptyNetwork("Cannot conflate records onto an empty network.")
    if tolerance is None or math.isnan(tolerance) or tolerance < 0:
        raise ValueError(f"tolerance must be a non-negative number, got {tolerance}")

    elements_by_id = {e.element_id: e for e in elements}
    if set(elements_by_id) != set(index.element_ids):
        raise ValueError("Spatial index was not built from the given network elements.")

    records = check_record_stream(records)
    records = normalize_records(records, index.crs, transform)

    def match(record: ExternalRecord):
        return _match_record(record, index, elements_by_id, tolerance)

    progress = dict(total=len(records), desc="conflating", disable=not show_progress)
    if workers > 1 and len(records) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(tqdm(executor.map(match, records), **progress))
    else:
        results = [match(r) for r in tqdm(records, **progress)]

    attachments = [r for r in results if isinstance(r, Attachment)]
    failures = sorted(
        (r for r in results if isinstance(r, RecordMatchFailure)),
        key=lambda f: f.record_id,
    )
    result = ConflationResult(
        attachments=attachments,
        unmatched=[f.record_id for f in failures],
        failures=failures,
        total=len(records),
    )
    logger.info(
        "Conflated %d records: %d attached, %d unmatched (tolerance %.3f)",
        result.total,
        result.matched,
        len(result.unmatched),
        tolerance,
    )
    if failures:
        logger.debug("Unmatched examples: %s", "; ".join(result.examples()))
    return result


def attachment_summary(attachments: Sequence[Attachment]) -> pd.DataFrame:
    """Attachment counts per (element_id, kind)."""
    if not attachments:
        return pd.DataFrame(columns=["element_id", "kind", "count"])
    df = pd.DataFrame([a.to_dict() for a in attachments])
    return (
        df.groupby(["element_id", "kind"])
        .size()
        .rename("count")
        .reset_index()
        .sort_values(["element_id", "kind"])
        .reset_index(drop=True)
    )
