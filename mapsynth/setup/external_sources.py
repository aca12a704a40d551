"""
external_sources.py

Read external annotation datasets (collisions, parking, amenities, traffic
counts) into ExternalRecords, and clip them to the study boundary.

Inputs:
    - delimited text with x/y columns or a WKT geometry column
    - any geospatial file geopandas can read (GeoJSON, GeoPackage, shapefile)

Each kind has a fixed payload schema (constants.RECORD_PAYLOAD_FIELDS);
extra columns are ignored, missing payload columns become None.
"""

from __future__ import annotations

import logging
import math
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

import geopandas as gpd
import pandas as pd
import shapely
import shapely.wkt
from shapely.geometry import LineString, MultiLineString, Point, box
from shapely.errors import ShapelyError
from shapely.geometry.base import BaseGeometry
from shapely.ops import linemerge

from ..constants import RECORD_PAYLOAD_FIELDS
from ..errors import CorruptRecordStream
from ..model import ExternalRecord, RecordKind

logger = logging.getLogger(__name__)

DELIMITED_SUFFIXES = {".csv", ".txt", ".tsv"}


# ---------------------------------------------------------------------------
# Geometry helpers
# ---------------------------------------------------------------------------

def geometry_to_points(geom: BaseGeometry) -> List[Tuple[float, float]]:
    """
    Reduce a geometry to the point or line shape records carry.

    Polygons and multipoints collapse to their centroid; multilines are
    merged, keeping the longest part if they do not join up.
    """
    if geom is None or geom.is_empty:
        return []
    if isinstance(geom, Point):
        return [(geom.x, geom.y)]
    if isinstance(geom, LineString):
        return [(x, y) for x, y, *_ in geom.coords]
    if isinstance(geom, MultiLineString):
        merged = linemerge(geom)
        if isinstance(merged, MultiLineString):
            merged = max(merged.geoms, key=lambda g: g.length)
        return [(x, y) for x, y, *_ in merged.coords]
    if geom.geom_type in ("Polygon", "MultiPolygon", "MultiPoint", "GeometryCollection"):
        c = geom.centroid
        return [(c.x, c.y)]
    return []


def _coerce_payload(row: Dict[str, Any], kind: RecordKind, record_id: str) -> Dict[str, Any]:
    payload = {}
    for name, typ in RECORD_PAYLOAD_FIELDS[kind.value].items():
        value = row.get(name)
        if value is None or (isinstance(value, float) and math.isnan(value)):
            payload[name] = None
            continue
        try:
            payload[name] = typ(value) if typ is not int else int(float(value))
        except (TypeError, ValueError) as e:
            raise CorruptRecordStream(
                f"Record {record_id}: {name}={value!r} is not a valid {typ.__name__}"
            ) from e
    return payload


# ---------------------------------------------------------------------------
# Frames -> records
# ---------------------------------------------------------------------------

def records_from_frame(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    kind: Union[str, RecordKind],
    source: Optional[str] = None,
    crs: Optional[str] = None,
    id_column: str = "id",
    x_column: str = "x",
    y_column: str = "y",
    geometry_column: Optional[str] = None,
) -> List[ExternalRecord]:
    """
    Convert a (Geo)DataFrame to ExternalRecords, preserving row order.

    Geometry comes from the active geometry of a GeoDataFrame, else from a
    WKT column, else from x/y columns. Rows without usable geometry make the
    whole stream corrupt.
    """
    kind = RecordKind.parse(kind)
    if isinstance(df, gpd.GeoDataFrame) and geometry_column is None:
        geoms = list(df.geometry)
    elif geometry_column is not None:
        if geometry_column not in df.columns:
            raise KeyError(f"Geometry column '{geometry_column}' not found in columns.")
        geoms = [shapely.wkt.loads(v) if isinstance(v, str) and v.strip() else None for v in df[geometry_column]]
    else:
        missing = {x_column, y_column} - set(df.columns)
        if missing:
            raise KeyError(f"Coordinate columns {sorted(missing)} not found in columns.")
        geoms = [
            Point(float(x), float(y)) if pd.notna(x) and pd.notna(y) else None
            for x, y in zip(df[x_column], df[y_column])
        ]

    if id_column in df.columns:
        ids = [str(v) for v in df[id_column]]
    else:
        logger.warning("Id column '%s' missing; using row positions as record ids", id_column)
        ids = [str(i) for i in range(len(df))]

    rows = df.drop(columns=[c for c in ("geometry",) if c in df.columns]).to_dict("records")
    records = []
    for record_id, geom, row in zip(ids, geoms, rows):
        points = geometry_to_points(geom)
        if not points:
            raise CorruptRecordStream(f"Record {record_id} in {source or kind.value} has no usable geometry")
        records.append(
            ExternalRecord(
                record_id=record_id,
                kind=kind,
                points=points,
                payload=_coerce_payload(row, kind, record_id),
                crs=crs,
                source=source,
            )
        )
    return records


def load_records(
    path: Union[str, Path],
    kind: Union[str, RecordKind],
    source: Optional[str] = None,
    crs: Optional[str] = None,
    id_column: str = "id",
    x_column: str = "x",
    y_column: str = "y",
    geometry_column: Optional[str] = None,
    layer: Optional[str] = None,
) -> List[ExternalRecord]:
    """
    Load a raw dataset into ExternalRecords tagged with its source and CRS.

    For geospatial files the file's own CRS wins; `crs` is only used when the
    file declares none. Delimited files always take `crs`.
    """
    path = Path(path)
    source = source or path.stem
    if path.suffix.lower() in DELIMITED_SUFFIXES:
        sep = "\t" if path.suffix.lower() == ".tsv" else ","
        df = pd.read_csv(path, sep=sep)
        record_crs = crs
    else:
        df = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
        record_crs = df.crs.to_string() if df.crs is not None else crs

    records = records_from_frame(
        df,
        kind,
        source=source,
        crs=record_crs,
        id_column=id_column,
        x_column=x_column,
        y_column=y_column,
        geometry_column=geometry_column,
    )
    logger.info("Loaded %d %s records from %s (crs %s)", len(records), RecordKind.parse(kind).value, path, record_crs)
    return records


# ---------------------------------------------------------------------------
# Boundary
# ---------------------------------------------------------------------------

def load_boundary(boundary: Any) -> Optional[BaseGeometry]:
    """
    Resolve a configured boundary to a geometry.

    Accepts None, a shapely geometry, a [minx, miny, maxx, maxy] list, a WKT
    string, or a path to a geospatial file (all features are unioned).
    """
    if boundary is None:
        return None
    if isinstance(boundary, BaseGeometry):
        return boundary
    if isinstance(boundary, (list, tuple)):
        minx, miny, maxx, maxy = (float(v) for v in boundary)
        return box(minx, miny, maxx, maxy)
    if isinstance(boundary, (str, Path)):
        text = str(boundary).strip()
        if Path(text).suffix and Path(text).exists():
            try:
                gdf = gpd.read_file(text)
            except (OSError, RuntimeError) as e:
                raise ValueError(f"Boundary file {text} could not be read: {e}") from e
            return gdf.union_all()
        try:
            return shapely.wkt.loads(text)
        except ShapelyError as e:
            raise ValueError(f"Boundary {text!r} is neither an existing file nor valid WKT") from e
    raise TypeError(f"Unsupported boundary type: {type(boundary)}")


def clip_to_boundary(
    records: Sequence[ExternalRecord],
    boundary: Optional[BaseGeometry],
) -> Tuple[List[ExternalRecord], List[str]]:
    """Split records into those whose representative point lies in boundary and the clipped ids."""
    if boundary is None:
        return list(records), []
    shapely.prepare(boundary)
    kept, clipped = [], []
    for r in records:
        if boundary.covers(Point(r.representative_point())):
            kept.append(r)
        else:
            clipped.append(r.record_id)
    if clipped:
        logger.info("Clipped %d of %d records outside the boundary", len(clipped), len(records))
    return kept, sorted(clipped)
