"""
population_inputs.py

Population cells and survey distributions for demand synthesis.

Cell tables follow the analysis-area convention: one row per geography with
a string geom_id, total_pop, lodes_jobs and total_hh columns. Geometry is the
polygon of the area, or x/y centroid columns for plain tables.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

import geopandas as gpd
import pandas as pd
from shapely.geometry import Point

from ..constants import load_pipeline_params
from ..model import Attachment, ExternalRecord, PopulationCell, RecordKind
from ..synthesis import SurveyDistributions

logger = logging.getLogger(__name__)

DEFAULT_COLUMNS = {
    "cell_id": "geom_id",
    "population": "total_pop",
    "jobs": "lodes_jobs",
    "households": "total_hh",
}


def _counts(series: pd.Series, name: str) -> pd.Series:
    missing = series.isna().sum()
    if missing:
        logger.warning("%d cells have no %s value; using 0", missing, name)
    return series.fillna(0).round().astype(int)


def cells_from_frame(
    df: Union[pd.DataFrame, gpd.GeoDataFrame],
    columns: Optional[Dict[str, str]] = None,
    x_column: str = "x",
    y_column: str = "y",
) -> List[PopulationCell]:
    """
    Build PopulationCells from a table, keeping row order.

    `columns` maps cell fields to column names, defaulting to geom_id,
    total_pop, lodes_jobs and total_hh. If geom_id is absent the row
    position is used, as when analysis areas are first numbered.
    """
    cols = dict(DEFAULT_COLUMNS)
    cols.update(columns or {})
    df = df.reset_index(drop=True)

    missing = [cols[k] for k in ("population", "jobs", "households") if cols[k] not in df.columns]
    if missing:
        raise KeyError(f"Population table is missing columns {missing}")

    ids = df[cols["cell_id"]].astype(str) if cols["cell_id"] in df.columns else df.index.astype(str)
    population = _counts(df[cols["population"]], "population")
    jobs = _counts(df[cols["jobs"]], "jobs")
    households = _counts(df[cols["households"]], "households")

    if isinstance(df, gpd.GeoDataFrame):
        geoms = list(df.geometry)
    elif {x_column, y_column} <= set(df.columns):
        geoms = [
            Point(float(x), float(y)) if pd.notna(x) and pd.notna(y) else None
            for x, y in zip(df[x_column], df[y_column])
        ]
    else:
        geoms = [None] * len(df)

    cells = [
        PopulationCell(cell_id=i, population=p, jobs=j, households=h, geometry=g)
        for i, p, j, h, g in zip(ids, population, jobs, households, geoms)
    ]
    if len({c.cell_id for c in cells}) != len(cells):
        raise ValueError("Population cell ids must be unique")
    return cells


def load_cells(
    path: Union[str, Path],
    columns: Optional[Dict[str, str]] = None,
    target_crs: Optional[str] = None,
    layer: Optional[str] = None,
) -> List[PopulationCell]:
    """
    Load population cells from CSV or a geospatial file.

    Geospatial inputs are reprojected to `target_crs` (the network CRS) when given.
    """
    path = Path(path)
    if path.suffix.lower() == ".csv":
        df = pd.read_csv(path, dtype={(columns or DEFAULT_COLUMNS).get("cell_id", "geom_id"): str})
    else:
        df = gpd.read_file(path, layer=layer) if layer else gpd.read_file(path)
        if target_crs is not None and df.crs is not None and df.crs != target_crs:
            df = df.to_crs(target_crs)
    cells = cells_from_frame(df, columns)
    logger.info(
        "Loaded %d population cells from %s (population %d, jobs %d)",
        len(cells),
        path,
        sum(c.population for c in cells),
        sum(c.jobs for c in cells),
    )
    return cells


def load_distributions(source: Union[None, str, Path, dict] = None) -> SurveyDistributions:
    """Survey distributions from a mapping, a JSON file, or the packaged defaults."""
    if source is None:
        data = load_pipeline_params()["survey_distributions"]
    elif isinstance(source, dict):
        data = source
    else:
        with open(source, "r", encoding="utf-8") as f:
            data = json.load(f)
    return SurveyDistributions.from_mapping(data)


def _capacity(record: ExternalRecord) -> int:
    value = record.payload.get("capacity")
    return 1 if value is None else int(value)


def apply_parking_capacity(
    cells: Sequence[PopulationCell],
    attachments: Sequence[Attachment],
    records: Sequence[ExternalRecord],
    crs: Optional[str] = None,
) -> List[PopulationCell]:
    """
    Sum the capacity of attached parking records inside each cell.

    Only parking records that were attached to the network count. A record
    with unknown capacity counts as one space. Cells without geometry keep
    parking_capacity None; cells with geometry and no parking get 0.
    """
    attached = {(a.source, a.record_id) for a in attachments if a.kind == RecordKind.PARKING}
    parking = [r for r in records if r.kind == RecordKind.PARKING and (r.source, r.record_id) in attached]

    located = [(i, c) for i, c in enumerate(cells) if c.geometry is not None and not c.geometry.is_empty]
    capacity = pd.Series(0, index=[i for i, _ in located], dtype=int)

    if parking and located:
        spots = gpd.GeoDataFrame(
            {"capacity": [_capacity(r) for r in parking]},
            geometry=[Point(r.representative_point()) for r in parking],
            crs=crs,
        )
        areas = gpd.GeoDataFrame(
            {"cell_pos": [i for i, _ in located]},
            geometry=[c.geometry for _, c in located],
            crs=crs,
        )
        joined = gpd.sjoin(spots, areas, predicate="intersects")
        # a spot on a shared edge is counted once, in the first cell
        joined = joined.sort_values("cell_pos").loc[lambda d: ~d.index.duplicated(keep="first")]
        sums = joined.groupby("cell_pos")["capacity"].sum()
        capacity = sums.reindex(capacity.index, fill_value=0).astype(int)

    out = list(cells)
    for i, c in located:
        out[i] = PopulationCell(
            cell_id=c.cell_id,
            population=c.population,
            jobs=c.jobs,
            households=c.households,
            geometry=c.geometry,
            parking_capacity=int(capacity[i]),
        )
    logger.info(
        "Applied %d attached parking records to %d cells (%d cells without parking)",
        len(parking),
        len(located),
        int((capacity == 0).sum()),
    )
    return out
