from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field, asdict
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

from .constants import RECORD_PAYLOAD_FIELDS, load_pipeline_params

logger = logging.getLogger(__name__)


@dataclass
class SourceConfig:
    """
    One external dataset to conflate.

    Attributes
    ----------
    name : str
        Source name used in the run report.
    kind : str
        Record kind, one of RECORD_PAYLOAD_FIELDS.
    path : str, optional
        File to load (CSV or anything geopandas can read).
    crs : str, optional
        CRS of the file when it does not declare one itself.
    tolerance, unmatched_threshold : float, optional
        Per-source overrides of the pipeline values.
    id_column, x_column, y_column, geometry_column, layer :
        How to read records out of the file.
    """

    name: str
    kind: str
    path: Optional[str] = None
    crs: Optional[str] = None
    tolerance: Optional[float] = None
    unmatched_threshold: Optional[float] = None
    id_column: str = "id"
    x_column: str = "x"
    y_column: str = "y"
    geometry_column: Optional[str] = None
    layer: Optional[str] = None

    def __post_init__(self):
        self.kind = self.kind.value if isinstance(self.kind, Enum) else str(self.kind).lower()
        if self.kind not in RECORD_PAYLOAD_FIELDS:
            raise ValueError(
                f"sources.{self.name}.kind: unknown record kind {self.kind!r}; "
                f"expected one of {sorted(RECORD_PAYLOAD_FIELDS)}"
            )
        if self.tolerance is not None and self.tolerance < 0:
            raise ValueError(f"sources.{self.name}.tolerance must be non-negative")
        if self.unmatched_threshold is not None and not 0.0 <= self.unmatched_threshold <= 1.0:
            raise ValueError(f"sources.{self.name}.unmatched_threshold must be within [0, 1]")


@dataclass
class PipelineConfig:
    """
    Options recognized by the pipeline.

    tolerance is the maximum matching distance in network CRS units,
    unmatched_threshold the fraction of unmatched records a source may have
    before it is marked failed, and boundary the clip region (WKT, a
    [minx, miny, maxx, maxy] list, or a path to a geospatial file).
    """

    tolerance: float = 15.0
    seed: int = 0
    unmatched_threshold: float = 0.1
    boundary: Any = None
    crs: Optional[str] = None
    workers: int = 1
    scenario_name: str = "scenario"
    snap_tolerance: Optional[float] = None
    sources: Dict[str, SourceConfig] = field(default_factory=dict)
    source_defaults: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    survey_distributions: Dict[str, Any] = field(default_factory=dict)

    def __post_init__(self):
        if self.tolerance is None or self.tolerance < 0:
            raise ValueError(f"tolerance must be non-negative, got {self.tolerance}")
        if not 0.0 <= self.unmatched_threshold <= 1.0:
            raise ValueError(f"unmatched_threshold must be within [0, 1], got {self.unmatched_threshold}")
        if not isinstance(self.seed, int) or not 0 <= self.seed < 2**64:
            raise ValueError(f"seed must be an integer in [0, 2**64), got {self.seed!r}")
        if not isinstance(self.workers, int) or self.workers < 1:
            raise ValueError(f"workers must be a positive integer, got {self.workers!r}")
        if self.snap_tolerance is not None and self.snap_tolerance < 0:
            raise ValueError(f"snap_tolerance must be non-negative, got {self.snap_tolerance}")
        if isinstance(self.boundary, (list, tuple)) and len(self.boundary) != 4:
            raise ValueError("boundary given as a list must be [minx, miny, maxx, maxy]")

    @classmethod
    def from_dict(cls, data: Mapping[str, Any], defaults: Optional[Mapping[str, Any]] = None) -> "PipelineConfig":
        """Build a config from a mapping, filling gaps from the default parameters file."""
        if defaults is None:
            defaults = load_pipeline_params()
        merged: Dict[str, Any] = dict(defaults.get("pipeline", {}))
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(data) - known
        if unknown:
            raise ValueError(f"Unknown configuration keys: {sorted(unknown)}")
        merged.update({k: v for k, v in data.items() if k not in ("sources", "source_defaults")})

        source_defaults = {k: dict(v) for k, v in defaults.get("source_defaults", {}).items()}
        for kind, overrides in data.get("source_defaults", {}).items():
            source_defaults.setdefault(kind, {}).update(overrides)

        sources = {}
        for name, options in data.get("sources", {}).items():
            options = dict(options)
            options.setdefault("name", name)
            sources[name] = SourceConfig(**options)

        if "survey_distributions" not in data:
            merged["survey_distributions"] = dict(defaults.get("survey_distributions", {}))

        return cls(sources=sources, source_defaults=source_defaults, **merged)

    @classmethod
    def from_json(cls, path: str | Path) -> "PipelineConfig":
        path = Path(path)
        with path.open("r", encoding="utf-8") as f:
            data = json.load(f)
        logger.info("Loaded pipeline configuration from %s", path)
        return cls.from_dict(data)

    def tolerance_for(self, source_name: str, kind: Optional[str] = None) -> float:
        src = self.sources.get(source_name)
        if src is not None and src.tolerance is not None:
            return float(src.tolerance)
        kind = kind or (src.kind if src is not None else None)
        kind_default = self.source_defaults.get(kind or "", {}).get("tolerance")
        if kind_default is not None:
            return float(kind_default)
        return float(self.tolerance)

    def threshold_for(self, source_name: str) -> float:
        src = self.sources.get(source_name)
        if src is not None and src.unmatched_threshold is not None:
            return float(src.unmatched_threshold)
        return float(self.unmatched_threshold)

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        if self.boundary is not None and not isinstance(self.boundary, (str, list, tuple)):
            d["boundary"] = str(self.boundary)
        return d
