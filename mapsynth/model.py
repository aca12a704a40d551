from __future__ import annotations

from dataclasses import dataclass, field, asdict
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

import pandas as pd
from shapely.geometry import LineString, Point
from shapely.geometry.base import BaseGeometry

Coord = Tuple[float, float]


class ElementKind(str, Enum):
    SEGMENT = "segment"
    INTERSECTION = "intersection"


class RecordKind(str, Enum):
    """Closed set of external dataset kinds; each has a fixed payload schema."""

    COLLISION = "collision"
    PARKING = "parking"
    AMENITY = "amenity"
    TRAFFIC_COUNT = "traffic_count"

    @classmethod
    def parse(cls, value) -> "RecordKind":
        if isinstance(value, cls):
            return value
        return cls(str(value).lower())


def _as_coords(points) -> Tuple[Coord, ...]:
    # z and m values are dropped; everything here is planar
    return tuple((float(x), float(y)) for x, y, *_ in points)


@dataclass(frozen=True)
class NetworkElement:
    """A road segment or intersection node, borrowed read-only from the network builder."""

    element_id: int
    kind: ElementKind
    points: Tuple[Coord, ...]
    attributes: Dict[str, Any] = field(default_factory=dict, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "points", _as_coords(self.points))
        object.__setattr__(self, "kind", ElementKind(self.kind))
        if not self.points:
            raise ValueError(f"Network element {self.element_id} has no points")
        if self.kind == ElementKind.SEGMENT and len(self.points) < 2:
            raise ValueError(f"Segment {self.element_id} needs at least two points")

    def geometry(self) -> BaseGeometry:
        if self.kind == ElementKind.INTERSECTION or len(self.points) == 1:
            return Point(self.points[0])
        return LineString(self.points)

    def representative_point(self) -> Coord:
        geom = self.geometry()
        if isinstance(geom, Point):
            return self.points[0]
        mid = geom.interpolate(0.5, normalized=True)
        return (mid.x, mid.y)


@dataclass(frozen=True)
class ExternalRecord:
    """A parsed point or short line from an external dataset."""

    record_id: str
    kind: RecordKind
    points: Tuple[Coord, ...]
    payload: Mapping[str, Any] = field(default_factory=dict, compare=False)
    crs: Optional[str] = None
    source: Optional[str] = None

    def __post_init__(self):
        object.__setattr__(self, "record_id", str(self.record_id))
        object.__setattr__(self, "kind", RecordKind(self.kind))
        object.__setattr__(self, "points", _as_coords(self.points))

    @property
    def is_line(self) -> bool:
        return len(self.points) >= 2

    def geometry(self) -> BaseGeometry:
        if self.is_line:
            return LineString(self.points)
        return Point(self.points[0])

    def representative_point(self) -> Coord:
        """Centroid for point records, midpoint along the line for line records."""
        geom = self.geometry()
        if isinstance(geom, LineString):
            pt = geom.interpolate(0.5, normalized=True)
        else:
            pt = geom.centroid
        return (pt.x, pt.y)

    def with_points(self, points, crs: Optional[str]) -> "ExternalRecord":
        return ExternalRecord(
            record_id=self.record_id,
            kind=self.kind,
            points=points,
            payload=self.payload,
            crs=crs,
            source=self.source,
        )


@dataclass(frozen=True)
class Attachment:
    """
    Link from an external record to a network element.

    Record ids are only unique within a source, so (source, record_id)
    identifies the record.

    offset is the signed perpendicular distance (positive to the left of the
    element's digitized direction), position the distance along the element.
    """

    record_id: str
    element_id: int
    kind: RecordKind
    offset: float
    position: float
    distance: float
    confidence: float
    source: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["kind"] = self.kind.value
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "Attachment":
        return cls(
            record_id=str(d["record_id"]),
            element_id=int(d["element_id"]),
            kind=RecordKind(d["kind"]),
            offset=float(d["offset"]),
            position=float(d["position"]),
            distance=float(d["distance"]),
            confidence=float(d["confidence"]),
            source=d.get("source"),
        )


@dataclass(frozen=True)
class EnrichedMap:
    """Network elements plus the attachment relation produced by conflation."""

    elements: Tuple[NetworkElement, ...]
    attachments: Tuple[Attachment, ...]
    crs: Optional[str] = None

    def attachments_for(self, element_id: int) -> List[Attachment]:
        return [a for a in self.attachments if a.element_id == element_id]

    @staticmethod
    def sort_key(attachment: Attachment):
        return (attachment.element_id, attachment.source or "", attachment.record_id)

    def attachments_frame(self) -> pd.DataFrame:
        columns = ["record_id", "element_id", "kind", "offset", "position", "distance", "confidence", "source"]
        return pd.DataFrame([a.to_dict() for a in self.attachments], columns=columns)


@dataclass(frozen=True)
class PopulationCell:
    cell_id: str
    population: int
    jobs: int
    households: int
    geometry: Optional[BaseGeometry] = field(default=None, compare=False)
    parking_capacity: Optional[int] = None

    def __post_init__(self):
        object.__setattr__(self, "cell_id", str(self.cell_id))
        for name in ("population", "jobs", "households"):
            value = int(getattr(self, name))
            if value < 0:
                raise ValueError(f"Cell {self.cell_id}: {name} must be non-negative, got {value}")
            object.__setattr__(self, name, value)

    def centroid(self) -> Optional[Coord]:
        if self.geometry is None or self.geometry.is_empty:
            return None
        pt = self.geometry.representative_point()
        return (pt.x, pt.y)


@dataclass(frozen=True)
class TripRecord:
    trip_id: str
    person_id: str
    ordinal: int
    origin_cell: str
    destination_cell: str
    origin: Optional[Coord]
    destination: Optional[Coord]
    departure_seconds: int
    mode: str
    purpose: str
    origin_element: Optional[int] = None
    destination_element: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["origin"] = list(self.origin) if self.origin is not None else None
        d["destination"] = list(self.destination) if self.destination is not None else None
        return d

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "TripRecord":
        origin = d.get("origin")
        destination = d.get("destination")
        return cls(
            trip_id=d["trip_id"],
            person_id=d["person_id"],
            ordinal=int(d["ordinal"]),
            origin_cell=str(d["origin_cell"]),
            destination_cell=str(d["destination_cell"]),
            origin=tuple(origin) if origin is not None else None,
            destination=tuple(destination) if destination is not None else None,
            departure_seconds=int(d["departure_seconds"]),
            mode=d["mode"],
            purpose=d["purpose"],
            origin_element=d.get("origin_element"),
            destination_element=d.get("destination_element"),
        )


@dataclass(frozen=True)
class Scenario:
    name: str
    seed: int
    trips: Tuple[TripRecord, ...]
    boundary: Optional[str] = None
    parameters: Dict[str, Any] = field(default_factory=dict)
    warnings: Tuple[str, ...] = ()

    def to_frame(self) -> pd.DataFrame:
        rows = []
        for t in self.trips:
            row = t.to_dict()
            ox_, oy_ = t.origin if t.origin is not None else (None, None)
            dx_, dy_ = t.destination if t.destination is not None else (None, None)
            row.update({"origin_x": ox_, "origin_y": oy_, "destination_x": dx_, "destination_y": dy_})
            del row["origin"], row["destination"]
            rows.append(row)
        return pd.DataFrame(rows)
