from __future__ import annotations

import pytest
from shapely.geometry import box

from mapsynth.model import ElementKind, ExternalRecord, NetworkElement, PopulationCell, RecordKind
from mapsynth.synthesis import SurveyDistributions


@pytest.fixture
def segment():
    def make(element_id, *points, **attributes):
        return NetworkElement(element_id, ElementKind.SEGMENT, points, attributes)

    return make


@pytest.fixture
def record():
    def make(record_id, *points, kind=RecordKind.COLLISION, crs=None, payload=None, source="test"):
        return ExternalRecord(
            record_id=record_id,
            kind=kind,
            points=points,
            payload=payload or {},
            crs=crs,
            source=source,
        )

    return make


@pytest.fixture
def two_segments(segment):
    """Segment A (id 1) along the x axis, segment B (id 2) going north from its end."""
    return [
        segment(1, (0, 0), (10, 0), name="A"),
        segment(2, (10, 0), (10, 10), name="B"),
    ]


@pytest.fixture
def grid_cells():
    """Four 100 x 100 cells laid out 2 x 2, in row order."""
    specs = [
        ("c0", 0, 0, 120, 40, 50),
        ("c1", 100, 0, 80, 200, 30),
        ("c2", 0, 100, 0, 15, 0),
        ("c3", 100, 100, 60, 0, 25),
    ]
    return [
        PopulationCell(cell_id=cid, population=pop, jobs=jobs, households=hh, geometry=box(x, y, x + 100, y + 100))
        for cid, x, y, pop, jobs, hh in specs
    ]


@pytest.fixture
def survey():
    return {
        "trip_rate": {"1.0": 0.5, "2.0": 0.5},
        "mode_share": {"CAR": 0.5, "TRANSIT": 0.2, "WALK": 0.3},
        "departure_hour": {"7": 0.3, "8": 0.4, "17": 0.3},
        "purpose": {"WORK": 0.6, "OTHER": 0.4},
    }


@pytest.fixture
def distributions(survey):
    return SurveyDistributions.from_mapping(survey)
