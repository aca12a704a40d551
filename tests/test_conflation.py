from __future__ import annotations

import logging
import math

import numpy as np
import pytest
from shapely.geometry import Point

from mapsynth.conflation import attachment_summary, conflate, make_transform, normalize_records, same_crs
from mapsynth.errors import CoordinateSystemMismatch, CorruptRecordStream, EmptyNetwork
from mapsynth.model import ElementKind, ExternalRecord, NetworkElement, RecordKind
from mapsynth.spatial_index import build_index


@pytest.fixture
def index(two_segments):
    return build_index(two_segments, crs="EPSG:32618")


def test_concrete_two_segment_scenario(index, two_segments, record):
    result = conflate(index, two_segments, [record("r1", (5, 1)), record("r2", (20, 20))], tolerance=2)

    assert len(result.attachments) == 1
    att = result.attachments[0]
    assert att.record_id == "r1"
    assert att.element_id == 1
    assert att.offset == pytest.approx(1.0)
    assert att.position == pytest.approx(5.0)
    assert att.distance == pytest.approx(1.0)
    assert att.confidence == pytest.approx(0.5)
    assert result.unmatched == ["r2"]
    assert result.failures[0].nearest_distance == pytest.approx(math.hypot(10, 10), abs=1e-6)
    assert result.unmatched_fraction == pytest.approx(0.5)


def test_offset_is_negative_right_of_travel_direction(index, two_segments, record):
    result = conflate(index, two_segments, [record("r", (5, -1.5))], tolerance=2)
    assert result.attachments[0].offset == pytest.approx(-1.5)


def test_line_records_match_by_midpoint(index, two_segments, record):
    # midpoint (5, 3) is closer to A than to B
    result = conflate(index, two_segments, [record("line", (0, 3), (10, 3))], tolerance=4)
    att = result.attachments[0]
    assert att.element_id == 1
    assert att.offset == pytest.approx(3.0)
    assert att.position == pytest.approx(5.0)


def test_equidistant_record_goes_to_lowest_id(segment, record):
    elements = [segment(9, (0, 0), (0, 10)), segment(4, (2, 0), (2, 10))]
    index = build_index(elements)
    result = conflate(index, elements, [record("tie", (1, 5))], tolerance=2)
    assert result.attachments[0].element_id == 4


def test_intersection_offsets_are_unsigned(record):
    elements = [NetworkElement(0, ElementKind.INTERSECTION, [(0, 0)])]
    index = build_index(elements)
    att = conflate(index, elements, [record("p", (-3, -4))], tolerance=10).attachments[0]
    assert att.offset == pytest.approx(5.0)
    assert att.position == 0.0


def test_empty_network_fails_before_matching(index, record):
    with pytest.raises(EmptyNetwork):
        conflate(index, [], [record("r1", (5, 1))], tolerance=2)


def test_negative_tolerance_is_rejected(index, two_segments, record):
    with pytest.raises(ValueError):
        conflate(index, two_segments, [record("r1", (5, 1))], tolerance=-1)


def test_index_must_match_elements(index, segment, record):
    with pytest.raises(ValueError, match="not built from"):
        conflate(index, [segment(77, (0, 0), (1, 1))], [record("r1", (5, 1))], tolerance=2)


def test_crs_mismatch_without_transform(index, two_segments, record):
    records = [record("a", (5, 1), crs="EPSG:32618"), record("b", (5, 1), crs="EPSG:3857")]
    with pytest.raises(CoordinateSystemMismatch) as excinfo:
        conflate(index, two_segments, records, tolerance=2)
    assert excinfo.value.record_ids == ["b"]


def test_crs_mismatch_with_transform(index, two_segments, record):
    records = [record("shifted", (105, 1), crs="EPSG:3857")]
    result = conflate(index, two_segments, records, tolerance=2, transform=lambda x, y: (x - 100, y))
    assert [a.record_id for a in result.attachments] == ["shifted"]
    assert result.attachments[0].offset == pytest.approx(1.0)


def test_records_without_crs_are_taken_as_network_crs(index, two_segments, record):
    result = conflate(index, two_segments, [record("r", (5, 1), crs=None)], tolerance=2)
    assert result.matched == 1


def test_same_crs_uses_pyproj_equality():
    assert same_crs("EPSG:4326", "epsg:4326")
    assert same_crs(None, "EPSG:4326")
    assert not same_crs("EPSG:4326", "EPSG:3857")


def test_make_transform_projects_lon_lat():
    to_mercator = make_transform("EPSG:4326", "EPSG:3857")
    x, y = to_mercator(0.0, 0.0)
    assert x == pytest.approx(0.0, abs=1e-6)
    assert y == pytest.approx(0.0, abs=1e-6)
    x, _ = to_mercator(1.0, 0.0)
    assert x == pytest.approx(111319.49, rel=1e-6)


def test_normalize_rejects_non_finite_transform_output(record):
    records = [record("r", (1, 1), crs="EPSG:3857")]
    with pytest.raises(CorruptRecordStream):
        normalize_records(records, "EPSG:32618", lambda x, y: (float("inf"), y))


@pytest.mark.parametrize(
    "records",
    [
        ["not a record"],
        None,
        [ExternalRecord("nan", RecordKind.AMENITY, [(float("nan"), 0.0)])],
        [ExternalRecord("empty", RecordKind.AMENITY, [])],
        [
            ExternalRecord("dup", RecordKind.AMENITY, [(1.0, 1.0)]),
            ExternalRecord("dup", RecordKind.AMENITY, [(2.0, 1.0)]),
        ],
    ],
)
def test_corrupt_record_streams_abort(index, two_segments, records):
    with pytest.raises(CorruptRecordStream):
        conflate(index, two_segments, records, tolerance=2)


def test_unmatched_ids_are_sorted(index, two_segments, record):
    records = [record(rid, (500, 500 + i)) for i, rid in enumerate(["z", "a", "m"])]
    result = conflate(index, two_segments, records, tolerance=2)
    assert result.unmatched == ["a", "m", "z"]
    assert [f.record_id for f in result.failures] == ["a", "m", "z"]
    assert "no network element within tolerance" in result.examples()[0]


def test_no_false_negatives_or_positives(segment):
    rng = np.random.default_rng(21)
    elements = []
    for i in range(120):
        x, y = rng.uniform(0, 500, size=2)
        elements.append(segment(i, (x, y), (x + rng.uniform(-20, 20), y + rng.uniform(-20, 20))))
    index = build_index(elements)
    points = rng.uniform(-50, 550, size=(300, 2))
    records = [
        ExternalRecord(f"r{i:03d}", RecordKind.COLLISION, [tuple(p)]) for i, p in enumerate(points)
    ]
    tolerance = 8.0
    result = conflate(index, elements, records, tolerance)
    attached = {a.record_id: a.element_id for a in result.attachments}

    for r, p in zip(records, points):
        dists = sorted((e.geometry().distance(Point(p)), e.element_id) for e in elements)
        d_true, id_true = dists[0]
        if d_true <= tolerance - 1e-6:
            assert attached.get(r.record_id) == id_true
        elif d_true > tolerance + 1e-6:
            assert r.record_id in result.unmatched
    assert len(attached) + len(result.unmatched) == len(records)


def test_parallel_matching_gives_identical_results(segment):
    rng = np.random.default_rng(4)
    elements = [
        segment(i, tuple(p), tuple(p + rng.uniform(-10, 10, size=2)))
        for i, p in enumerate(rng.uniform(0, 300, size=(80, 2)))
    ]
    index = build_index(elements)
    records = [
        ExternalRecord(f"r{i}", RecordKind.PARKING, [tuple(p)])
        for i, p in enumerate(rng.uniform(0, 300, size=(200, 2)))
    ]
    serial = conflate(index, elements, records, 6.0, workers=1)
    parallel = conflate(index, elements, records, 6.0, workers=4)
    assert serial.attachments == parallel.attachments
    assert serial.unmatched == parallel.unmatched


def test_attachment_summary_counts_per_element_and_kind(index, two_segments, record):
    records = [
        record("c1", (2, 1)),
        record("c2", (3, -1)),
        record("p1", (9.5, 6), kind=RecordKind.PARKING),
    ]
    result = conflate(index, two_segments, records, tolerance=2)
    summary = attachment_summary(result.attachments)
    assert summary.to_dict("records") == [
        {"element_id": 1, "kind": "collision", "count": 2},
        {"element_id": 2, "kind": "parking", "count": 1},
    ]
    assert attachment_summary([]).empty


def test_attachments_carry_the_record_source(index, two_segments, record):
    result = conflate(index, two_segments, [record("r1", (5, 1), source="crashes")], tolerance=2)
    assert result.attachments[0].source == "crashes"
    assert result.attachments[0].to_dict()["source"] == "crashes"


def test_network_without_crs_warns_about_declared_record_crs(two_segments, record, caplog):
    index = build_index(two_segments)
    with caplog.at_level(logging.WARNING, logger="mapsynth.conflation"):
        result = conflate(index, two_segments, [record("r", (5, 1), crs="EPSG:4326")], tolerance=2)
    assert result.matched == 1
    assert "EPSG:4326" in caplog.text
    assert "no CRS" in caplog.text
