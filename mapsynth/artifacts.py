"""
artifacts.py

Persist the enriched map, scenarios and run reports.

Every artifact is rendered to text first and then written atomically: the
bytes go to a temporary file in the destination directory, are fsynced, and
the file is moved over the target path. A failed write leaves whatever was
at the target path before, never a partial file.

Output is deterministic: keys are sorted, elements and attachments are
ordered by id, and floats are written with Python's shortest round-trip
repr, so identical inputs give identical bytes.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import Any, Callable, Dict, IO, Union

import numpy as np

from .errors import SerializationFailure
from .model import Attachment, ElementKind, EnrichedMap, NetworkElement, Scenario, TripRecord

logger = logging.getLogger(__name__)

MAP_FORMAT = "mapsynth.enriched_map/1"
SCENARIO_FORMAT = "mapsynth.scenario/1"

TRIP_COLUMNS = [
    "trip_id",
    "person_id",
    "ordinal",
    "origin_cell",
    "destination_cell",
    "origin_x",
    "origin_y",
    "destination_x",
    "destination_y",
    "departure_seconds",
    "mode",
    "purpose",
    "origin_element",
    "destination_element",
]


def _json_default(obj: Any):
    if isinstance(obj, np.generic):
        return obj.item()
    if isinstance(obj, np.ndarray):
        return obj.tolist()
    if isinstance(obj, Path):
        return str(obj)
    raise TypeError(f"Object of type {type(obj).__name__} is not JSON serializable")


def _dumps(data: Any) -> str:
    return json.dumps(data, sort_keys=True, indent=2, allow_nan=False, default=_json_default) + "\n"


def _atomic_write(path: Union[str, Path], render: Callable[[IO[str]], None]) -> Path:
    path = Path(path)
    tmp_name = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(
            "w",
            dir=path.parent,
            prefix=f".{path.name}.",
            suffix=".tmp",
            delete=False,
            encoding="utf-8",
            newline="",
        ) as f:
            tmp_name = f.name
            render(f)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except (OSError, TypeError, ValueError) as e:
        if tmp_name is not None and os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise SerializationFailure(f"Failed to write {path}: {e}") from e
    logger.debug("Wrote %s", path)
    return path


def _write_text(path: Union[str, Path], render: Callable[[], str]) -> Path:
    # render before opening anything so a bad value never creates a temp file
    try:
        text = render()
    except (TypeError, ValueError) as e:
        raise SerializationFailure(f"Failed to render {path}: {e}") from e
    return _atomic_write(path, lambda f: f.write(text))


# ==============================================================================
# Enriched map
# ==============================================================================


def _element_feature(element: NetworkElement) -> Dict[str, Any]:
    coords = [list(p) for p in element.points]
    if element.kind == ElementKind.INTERSECTION:
        geometry = {"type": "Point", "coordinates": coords[0]}
    else:
        geometry = {"type": "LineString", "coordinates": coords}
    properties = dict(element.attributes)
    properties.update({"element_id": element.element_id, "kind": element.kind.value})
    return {"type": "Feature", "id": element.element_id, "geometry": geometry, "properties": properties}


def render_map(enriched: EnrichedMap) -> str:
    """GeoJSON FeatureCollection text of the map, attachments as a top-level array."""
    elements = sorted(enriched.elements, key=lambda e: e.element_id)
    attachments = sorted(enriched.attachments, key=EnrichedMap.sort_key)
    data = {
        "type": "FeatureCollection",
        "format": MAP_FORMAT,
        "crs": enriched.crs,
        "features": [_element_feature(e) for e in elements],
        "attachments": [a.to_dict() for a in attachments],
    }
    return _dumps(data)


def write_map(enriched: EnrichedMap, path: Union[str, Path]) -> Path:
    path = _write_text(path, lambda: render_map(enriched))
    logger.info(
        "Wrote enriched map with %d elements and %d attachments to %s",
        len(enriched.elements),
        len(enriched.attachments),
        path,
    )
    return path


def read_map(path: Union[str, Path]) -> EnrichedMap:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)

    elements = []
    for feature in data["features"]:
        props = dict(feature["properties"])
        element_id = int(props.pop("element_id"))
        kind = ElementKind(props.pop("kind"))
        geometry = feature["geometry"]
        if geometry["type"] == "Point":
            points = [tuple(geometry["coordinates"])]
        else:
            points = [tuple(c) for c in geometry["coordinates"]]
        elements.append(NetworkElement(element_id=element_id, kind=kind, points=points, attributes=props))

    attachments = [Attachment.from_dict(a) for a in data.get("attachments", [])]
    return EnrichedMap(elements=tuple(elements), attachments=tuple(attachments), crs=data.get("crs"))


# ==============================================================================
# Scenario
# ==============================================================================


def render_scenario(scenario: Scenario) -> str:
    data = {
        "format": SCENARIO_FORMAT,
        "name": scenario.name,
        "seed": scenario.seed,
        "boundary": scenario.boundary,
        "parameters": scenario.parameters,
        "warnings": list(scenario.warnings),
        "trip_count": len(scenario.trips),
        "trips": [t.to_dict() for t in scenario.trips],
    }
    return _dumps(data)


def scenario_digest(scenario: Scenario) -> str:
    """sha256 of the scenario artifact bytes; equal digests mean identical scenarios."""
    return hashlib.sha256(render_scenario(scenario).encode("utf-8")).hexdigest()


def write_scenario(scenario: Scenario, path: Union[str, Path]) -> Path:
    path = _write_text(path, lambda: render_scenario(scenario))
    logger.info("Wrote scenario '%s' with %d trips to %s", scenario.name, len(scenario.trips), path)
    return path


def read_scenario(path: Union[str, Path]) -> Scenario:
    with open(path, "r", encoding="utf-8") as f:
        data = json.load(f)
    return Scenario(
        name=data["name"],
        seed=int(data["seed"]),
        trips=tuple(TripRecord.from_dict(t) for t in data["trips"]),
        boundary=data.get("boundary"),
        parameters=data.get("parameters", {}),
        warnings=tuple(data.get("warnings", [])),
    )


def write_trips_csv(scenario: Scenario, path: Union[str, Path]) -> Path:
    """One row per trip, for tools that want a flat table."""
    df = scenario.to_frame().reindex(columns=TRIP_COLUMNS)
    for col in ("origin_element", "destination_element"):
        df[col] = df[col].astype("Int64")
    return _write_text(path, lambda: df.to_csv(index=False, lineterminator="\n"))


# ==============================================================================
# Run report
# ==============================================================================


def write_run_report(report: Any, path: Union[str, Path]) -> Path:
    """Write a run report given as a dict or as anything with to_dict(), such as a PipelineRun."""
    if hasattr(report, "to_dict"):
        report = report.to_dict()
    return _write_text(path, lambda: _dumps(report))


def read_json(path: Union[str, Path]) -> Dict[str, Any]:
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)
