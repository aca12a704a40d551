from __future__ import annotations

import json

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import LineString, MultiLineString, MultiPoint, Point, Polygon, box

from mapsynth.errors import CorruptRecordStream
from mapsynth.model import Attachment, PopulationCell, RecordKind
from mapsynth.setup.external_sources import (
    clip_to_boundary,
    geometry_to_points,
    load_boundary,
    load_records,
    records_from_frame,
)
from mapsynth.setup.population_inputs import (
    apply_parking_capacity,
    cells_from_frame,
    load_cells,
    load_distributions,
)


# ------------------------------------------------------------------
# External records
# ------------------------------------------------------------------


def test_load_records_from_csv(tmp_path):
    path = tmp_path / "collisions.csv"
    pd.DataFrame(
        {
            "id": [10, 11, 12],
            "x": [1.0, 2.5, 3.0],
            "y": [0.5, 0.5, 9.0],
            "severity": [2, None, "3"],
            "extra": ["a", "b", "c"],
        }
    ).to_csv(path, index=False)

    records = load_records(path, "collision", crs="EPSG:32618")
    assert [r.record_id for r in records] == ["10", "11", "12"]
    assert records[0].points == ((1.0, 0.5),)
    assert [r.payload["severity"] for r in records] == [2, None, 3]
    assert all(r.crs == "EPSG:32618" and r.source == "collisions" for r in records)
    assert all(r.kind == RecordKind.COLLISION for r in records)


def test_load_records_with_wkt_lines(tmp_path):
    path = tmp_path / "counts.csv"
    pd.DataFrame(
        {"station": ["s1"], "wkt": ["LINESTRING (0 0, 4 0)"], "volume": [1250]}
    ).to_csv(path, index=False)
    records = load_records(path, "traffic_count", id_column="station", geometry_column="wkt")
    assert records[0].is_line
    assert records[0].representative_point() == (2.0, 0.0)
    assert records[0].payload == {"volume": 1250.0}


def test_load_records_from_geojson_keeps_file_crs(tmp_path):
    gdf = gpd.GeoDataFrame(
        {"id": ["a", "b"], "category": ["cafe", "school"]},
        geometry=[Point(1, 2), box(0, 0, 2, 2)],
        crs="EPSG:32618",
    )
    path = tmp_path / "amenities.geojson"
    gdf.to_file(path, driver="GeoJSON")

    records = load_records(path, RecordKind.AMENITY, crs="EPSG:4326")
    assert [r.record_id for r in records] == ["a", "b"]
    assert records[1].points == ((1.0, 1.0),)
    assert records[0].payload == {"category": "cafe"}
    assert "32618" in records[0].crs


def test_bad_payload_value_is_corrupt():
    df = pd.DataFrame({"id": [1], "x": [0], "y": [0], "capacity": ["lots"]})
    with pytest.raises(CorruptRecordStream):
        records_from_frame(df, "parking")


def test_missing_coordinates_are_corrupt():
    df = pd.DataFrame({"id": [1, 2], "x": [0.0, None], "y": [0.0, 1.0]})
    with pytest.raises(CorruptRecordStream):
        records_from_frame(df, "amenity")


def test_unknown_kind_is_rejected():
    df = pd.DataFrame({"id": [1], "x": [0], "y": [0]})
    with pytest.raises(ValueError):
        records_from_frame(df, "pothole")


def test_geometry_to_points():
    assert geometry_to_points(Point(1, 2)) == [(1.0, 2.0)]
    assert geometry_to_points(LineString([(0, 0), (1, 1)])) == [(0.0, 0.0), (1.0, 1.0)]
    assert geometry_to_points(Polygon([(0, 0), (2, 0), (2, 2), (0, 2)])) == [(1.0, 1.0)]
    assert geometry_to_points(MultiPoint([(0, 0), (2, 2)])) == [(1.0, 1.0)]
    joined = MultiLineString([[(0, 0), (1, 0)], [(1, 0), (3, 0)]])
    assert sorted(geometry_to_points(joined)) == [(0.0, 0.0), (1.0, 0.0), (3.0, 0.0)]
    apart = MultiLineString([[(0, 0), (1, 0)], [(5, 5), (9, 5)]])
    assert geometry_to_points(apart) == [(5.0, 5.0), (9.0, 5.0)]
    assert geometry_to_points(Point()) == []


def test_clip_to_boundary(record):
    records = [record("in", (1, 1)), record("edge", (2, 1)), record("out", (5, 5)), record("line", (1, 0), (9, 0))]
    kept, clipped = clip_to_boundary(records, box(0, 0, 2, 2))
    assert [r.record_id for r in kept] == ["in", "edge"]
    assert clipped == ["line", "out"]
    assert clip_to_boundary(records, None) == (records, [])


def test_load_boundary_forms(tmp_path):
    assert load_boundary(None) is None
    assert load_boundary([0, 0, 1, 2]).equals(box(0, 0, 1, 2))
    assert load_boundary("POLYGON ((0 0, 1 0, 1 1, 0 1, 0 0))").area == 1.0
    path = tmp_path / "area.geojson"
    gpd.GeoDataFrame(geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)], crs="EPSG:32618").to_file(path, driver="GeoJSON")
    assert load_boundary(str(path)).area == pytest.approx(2.0)
    with pytest.raises(ValueError):
        load_boundary("not a geometry")


# ------------------------------------------------------------------
# Population
# ------------------------------------------------------------------


def test_cells_from_frame_defaults():
    df = pd.DataFrame(
        {
            "geom_id": ["7", "3"],
            "total_pop": [100.4, None],
            "lodes_jobs": [20, 5],
            "total_hh": [40, 2],
            "x": [1.0, 2.0],
            "y": [1.0, 2.0],
        }
    )
    cells = cells_from_frame(df)
    assert [c.cell_id for c in cells] == ["7", "3"]
    assert [c.population for c in cells] == [100, 0]
    assert cells[0].centroid() == (1.0, 1.0)
    assert cells[0].parking_capacity is None


def test_cells_from_frame_rejects_duplicates_and_missing_columns():
    df = pd.DataFrame({"geom_id": ["a", "a"], "total_pop": [1, 1], "lodes_jobs": [1, 1], "total_hh": [1, 1]})
    with pytest.raises(ValueError):
        cells_from_frame(df)
    with pytest.raises(KeyError):
        cells_from_frame(df.drop(columns=["lodes_jobs"]))


def test_load_cells_from_geopackage(tmp_path):
    gdf = gpd.GeoDataFrame(
        {"geom_id": ["0", "1"], "pop": [10, 20], "lodes_jobs": [1, 2], "total_hh": [3, 4]},
        geometry=[box(0, 0, 1, 1), box(1, 0, 2, 1)],
        crs="EPSG:32618",
    )
    path = tmp_path / "cells.gpkg"
    gdf.to_file(path, driver="GPKG")
    cells = load_cells(path, columns={"population": "pop"})
    assert [(c.cell_id, c.population) for c in cells] == [("0", 10), ("1", 20)]
    assert cells[1].geometry.equals(box(1, 0, 2, 1))


def test_load_distributions_defaults_and_file(tmp_path, survey):
    defaults = load_distributions()
    assert "CAR" in defaults.mode_share.values
    assert defaults.no_parking_drive_factor == pytest.approx(0.6)
    path = tmp_path / "survey.json"
    path.write_text(json.dumps(survey))
    assert load_distributions(path).purpose.values == ("WORK", "OTHER")


def test_apply_parking_capacity(record):
    cells = [
        PopulationCell("a", 10, 1, 1, geometry=box(0, 0, 10, 10)),
        PopulationCell("b", 10, 1, 1, geometry=box(10, 0, 20, 10)),
        PopulationCell("c", 10, 1, 1),
    ]
    records = [
        record("p1", (2, 2), kind=RecordKind.PARKING, payload={"capacity": 5}),
        record("p2", (3, 3), kind=RecordKind.PARKING, payload={"capacity": None}),
        record("p3", (4, 4), kind=RecordKind.PARKING, payload={"capacity": 50}),
        record("c1", (15, 5)),
    ]
    attachments = [
        Attachment(rid, 0, kind, 0.0, 0.0, 0.0, 1.0, source="test")
        for rid, kind in [("p1", RecordKind.PARKING), ("p2", RecordKind.PARKING), ("c1", RecordKind.COLLISION)]
    ]
    out = apply_parking_capacity(cells, attachments, records)
    # p3 was never attached
    assert [c.parking_capacity for c in out] == [6, 0, None]
    assert [c.cell_id for c in out] == ["a", "b", "c"]


def test_parking_from_another_source_with_the_same_id_is_not_counted(record):
    cells = [PopulationCell("a", 10, 1, 1, geometry=box(0, 0, 10, 10))]
    records = [
        record("1", (2, 2), kind=RecordKind.PARKING, payload={"capacity": 4}, source="lot_a"),
        record("1", (3, 3), kind=RecordKind.PARKING, payload={"capacity": 50}, source="lot_b"),
    ]
    attachments = [Attachment("1", 0, RecordKind.PARKING, 0.0, 0.0, 0.0, 1.0, source="lot_a")]
    assert apply_parking_capacity(cells, attachments, records)[0].parking_capacity == 4


def test_z_coordinates_are_dropped():
    gdf = gpd.GeoDataFrame(geometry=[LineString([(0, 0, 5), (10, 0, 6)]), Point(1, 2, 3)])
    records = records_from_frame(gdf, "collision")
    assert records[0].points == ((0.0, 0.0), (10.0, 0.0))
    assert records[0].representative_point() == (5.0, 0.0)
    assert records[1].points == ((1.0, 2.0),)
    assert geometry_to_points(MultiLineString([[(0, 0, 1), (1, 0, 1)], [(1, 0, 1), (3, 0, 2)]]))[0] in [
        (0.0, 0.0),
        (3.0, 0.0),
    ]
