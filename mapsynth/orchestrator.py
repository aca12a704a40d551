"""
orchestrator.py

Run the pipeline stages in dependency order and keep the run record.

    index build -> conflation of every configured source
                -> synthesis (only if no source failed)
                -> artifact writing (only if nothing failed)

Each stage moves through
    PENDING -> RUNNING -> {SUCCEEDED, PARTIALLY_MATCHED, FAILED}
or PENDING -> SKIPPED when an upstream stage failed or the stage has no
input. Nothing is retried. Once the run is finalized its record is frozen.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import pandas as pd

from .artifacts import write_map, write_run_report, write_scenario, write_trips_csv
from .config import PipelineConfig
from .constants import MAX_EXAMPLES, load_pipeline_params
from .conflation import Transform, check_record_stream, conflate, normalize_records
from .errors import EmptyInputSet, EmptyNetwork, MapSynthError, SerializationFailure
from .model import Attachment, EnrichedMap, ExternalRecord, NetworkElement, PopulationCell, RecordKind, Scenario
from .setup.external_sources import clip_to_boundary, load_boundary
from .setup.population_inputs import apply_parking_capacity
from .spatial_index import SpatialIndex, build_index
from .synthesis import SurveyDistributions, synthesize

logger = logging.getLogger(__name__)


# ==============================================================================
# Run record
# ==============================================================================


class SourceStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    PARTIALLY_MATCHED = "partially_matched"
    FAILED = "failed"
    SKIPPED = "skipped"


_TRANSITIONS = {
    SourceStatus.PENDING: {SourceStatus.RUNNING, SourceStatus.SKIPPED},
    SourceStatus.RUNNING: {SourceStatus.SUCCEEDED, SourceStatus.PARTIALLY_MATCHED, SourceStatus.FAILED},
}

TERMINAL = {SourceStatus.SUCCEEDED, SourceStatus.PARTIALLY_MATCHED, SourceStatus.FAILED, SourceStatus.SKIPPED}


@dataclass
class StageRun:
    """
    Status and counts of one stage of a run.

    For a conflation stage total counts the source's records, clipped those
    outside the boundary, matched/unmatched the rest. For synthesis total
    counts cells and unmatched the cells without a valid destination.
    """

    name: str
    stage: str
    kind: Optional[str] = None
    status: SourceStatus = SourceStatus.PENDING
    total: int = 0
    clipped: int = 0
    matched: int = 0
    unmatched: int = 0
    error: Optional[str] = None
    examples: List[str] = field(default_factory=list)
    details: Dict[str, Any] = field(default_factory=dict)
    _locked: bool = field(default=False, repr=False, compare=False)

    def __setattr__(self, name, value):
        if getattr(self, "_locked", False):
            raise RuntimeError(f"Stage {self.name} belongs to a finalized run and cannot change")
        super().__setattr__(name, value)

    def _move(self, status: SourceStatus):
        if status not in _TRANSITIONS.get(self.status, set()):
            raise RuntimeError(f"Stage {self.name}: illegal transition {self.status.value} -> {status.value}")
        self.status = status

    def start(self):
        self._move(SourceStatus.RUNNING)

    def skip(self, reason: str):
        self._move(SourceStatus.SKIPPED)
        self.error = reason

    def fail(self, error: Any):
        self._move(SourceStatus.FAILED)
        self.error = str(error)

    def succeed(self):
        self._move(SourceStatus.SUCCEEDED)

    def partially_matched(self):
        self._move(SourceStatus.PARTIALLY_MATCHED)

    @property
    def unmatched_fraction(self) -> float:
        considered = self.matched + self.unmatched
        return self.unmatched / considered if considered else 0.0

    def summary(self) -> str:
        line = (
            f"{self.stage:<10} {self.name:<20} {self.status.value:<18} "
            f"total={self.total} clipped={self.clipped} matched={self.matched} unmatched={self.unmatched}"
        )
        if self.error:
            line += f" ({self.error})"
        return line

    def to_dict(self) -> Dict[str, Any]:
        d = {f.name: getattr(self, f.name) for f in fields(self) if not f.name.startswith("_")}
        d["status"] = self.status.value
        d["examples"] = list(self.examples)
        d["details"] = dict(self.details)
        d["unmatched_fraction"] = round(self.unmatched_fraction, 6)
        return d


# conflation stages are the per-source records of a run
SourceRun = StageRun


def _now() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds")


@dataclass
class PipelineRun:
    """Per-stage status of one pipeline run; frozen by finalize()."""

    index: StageRun
    sources: Dict[str, StageRun]
    synthesis: StageRun
    write: StageRun
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None
    status: Optional[SourceStatus] = None

    def __setattr__(self, name, value):
        if getattr(self, "finished_at", None) is not None:
            raise RuntimeError("Pipeline run is finalized and cannot change")
        super().__setattr__(name, value)

    @classmethod
    def begin(cls, source_names: Iterable[str]) -> "PipelineRun":
        return cls(
            index=StageRun(name="network", stage="index"),
            sources={name: StageRun(name=name, stage="conflation") for name in source_names},
            synthesis=StageRun(name="demand", stage="synthesis"),
            write=StageRun(name="artifacts", stage="write"),
        )

    def stages(self) -> List[StageRun]:
        return [self.index, *self.sources.values(), self.synthesis, self.write]

    def failed_sources(self) -> List[str]:
        return [name for name, s in self.sources.items() if s.status == SourceStatus.FAILED]

    @property
    def finalized(self) -> bool:
        return self.finished_at is not None

    def finalize(self) -> SourceStatus:
        if self.finalized:
            raise RuntimeError("Pipeline run is already finalized")
        open_stages = [s.name for s in self.stages() if s.status not in TERMINAL]
        if open_stages:
            raise RuntimeError(f"Cannot finalize run with unfinished stages: {open_stages}")

        statuses = {s.status for s in self.stages()}
        if SourceStatus.FAILED in statuses:
            self.status = SourceStatus.FAILED
        elif SourceStatus.PARTIALLY_MATCHED in statuses:
            self.status = SourceStatus.PARTIALLY_MATCHED
        else:
            self.status = SourceStatus.SUCCEEDED
        self.finished_at = _now()
        for s in self.stages():
            s._locked = True
        return self.status

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value if self.status is not None else None,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
            "stages": [s.to_dict() for s in self.stages()],
        }

    def to_frame(self) -> pd.DataFrame:
        columns = ["stage", "name", "kind", "status", "total", "clipped", "matched", "unmatched", "unmatched_fraction", "error"]
        return pd.DataFrame([s.to_dict() for s in self.stages()]).reindex(columns=columns)


@dataclass
class PipelineResult:
    run: PipelineRun
    enriched_map: Optional[EnrichedMap] = None
    scenario: Optional[Scenario] = None
    paths: Dict[str, Path] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return self.run.status != SourceStatus.FAILED


# ==============================================================================
# Stages
# ==============================================================================


def _conflate_source(
    stage: StageRun,
    records: Iterable[ExternalRecord],
    config: PipelineConfig,
    index: SpatialIndex,
    elements: Sequence[NetworkElement],
    boundary,
    transform: Optional[Transform],
    show_progress: bool,
) -> Tuple[List[Attachment], List[ExternalRecord]]:
    stage.start()
    try:
        records = check_record_stream(records)
        if not records:
            raise EmptyInputSet(f"Source {stage.name} has no records")
        # ids are only unique per source, so every record carries its source name
        records = [r if r.source == stage.name else replace(r, source=stage.name) for r in records]
        configured = config.sources.get(stage.name)
        stage.kind = configured.kind if configured is not None else records[0].kind.value
        stage.total = len(records)

        records = normalize_records(records, index.crs, transform)
        kept, clipped = clip_to_boundary(records, boundary)
        stage.clipped = len(clipped)

        tolerance = config.tolerance_for(stage.name, stage.kind)
        threshold = config.threshold_for(stage.name)
        stage.details.update({"tolerance": tolerance, "unmatched_threshold": threshold})
        result = conflate(
            index,
            elements,
            kept,
            tolerance,
            workers=config.workers,
            show_progress=show_progress,
        )
    except MapSynthError as e:
        logger.error("Source %s failed: %s", stage.name, e)
        stage.fail(e)
        return [], []

    stage.matched = result.matched
    stage.unmatched = len(result.unmatched)
    stage.examples = result.examples(MAX_EXAMPLES)

    if stage.unmatched == 0:
        stage.succeed()
    elif stage.matched == 0:
        stage.fail(f"none of {stage.unmatched} records matched within tolerance {tolerance}")
    elif result.unmatched_fraction > threshold:
        stage.fail(
            f"unmatched fraction {result.unmatched_fraction:.3f} exceeds threshold {threshold:.3f}"
        )
    else:
        stage.partially_matched()
    return result.attachments, kept


def _synthesize_stage(
    stage: StageRun,
    config: PipelineConfig,
    cells: Sequence[PopulationCell],
    distributions: Optional[SurveyDistributions],
    index: SpatialIndex,
    attachments: Sequence[Attachment],
    records: Sequence[ExternalRecord],
    boundary,
    show_progress: bool,
) -> Optional[Scenario]:
    stage.start()
    try:
        if distributions is None:
            distributions = SurveyDistributions.from_mapping(
                config.survey_distributions or load_pipeline_params()["survey_distributions"]
            )
        cells = list(cells)
        stage.total = len(cells)
        if any(r.kind == RecordKind.PARKING for r in records):
            cells = apply_parking_capacity(cells, attachments, records, crs=index.crs)
            stage.details["parking_capacity"] = {c.cell_id: c.parking_capacity for c in cells}
        scenario = synthesize(
            cells,
            distributions,
            config.seed,
            index=index,
            name=config.scenario_name,
            boundary=boundary.wkt if boundary is not None else None,
            workers=config.workers,
            snap_tolerance=config.snap_tolerance,
            show_progress=show_progress,
        )
    except (MapSynthError, ValueError, KeyError) as e:
        logger.error("Synthesis failed: %s", e)
        stage.fail(e)
        return None

    stage.unmatched = len(scenario.warnings)
    stage.matched = stage.total - stage.unmatched
    stage.examples = list(scenario.warnings[:MAX_EXAMPLES])
    stage.details["trips"] = len(scenario.trips)
    if scenario.warnings:
        stage.partially_matched()
    else:
        stage.succeed()
    return scenario


def _write_stage(
    stage: StageRun,
    output_dir: Path,
    enriched: EnrichedMap,
    scenario: Optional[Scenario],
) -> Dict[str, Path]:
    stage.start()
    paths: Dict[str, Path] = {}
    try:
        paths["map"] = write_map(enriched, output_dir / "enriched_map.geojson")
        if scenario is not None:
            paths["scenario"] = write_scenario(scenario, output_dir / f"{scenario.name}.scenario.json")
            paths["trips"] = write_trips_csv(scenario, output_dir / f"{scenario.name}.trips.csv")
    except SerializationFailure as e:
        logger.error("Writing artifacts failed: %s", e)
        stage.fail(e)
        return paths
    stage.total = stage.matched = len(paths)
    stage.details["paths"] = {k: str(v) for k, v in paths.items()}
    stage.succeed()
    return paths


# ==============================================================================
# Pipeline
# ==============================================================================


def run_pipeline(
    config: PipelineConfig,
    elements: Sequence[NetworkElement],
    sources: Mapping[str, Iterable[ExternalRecord]],
    cells: Optional[Sequence[PopulationCell]] = None,
    distributions: Optional[SurveyDistributions] = None,
    output_dir: Optional[str | Path] = None,
    transforms: Optional[Mapping[str, Transform]] = None,
    network_crs: Optional[str] = None,
    show_progress: bool = False,
) -> PipelineResult:
    """
    Conflate every source onto the network, synthesize demand, write artifacts.

    Parameters
    ----------
    config : PipelineConfig
        Matching tolerance, seed, unmatched threshold, boundary and the rest.
    elements : sequence of NetworkElement
        The road network in its planar CRS.
    sources : mapping of source name -> records
        Parsed external datasets, processed in mapping order.
    cells : sequence of PopulationCell, optional
        Population cells in the order synthesis must use. Synthesis is
        skipped without them.
    distributions : SurveyDistributions, optional
        Defaults to config.survey_distributions.
    output_dir : path, optional
        Where artifacts and the run report go. Nothing is written without it.
    transforms : mapping of source name -> transform, optional
        Coordinate transforms for sources not in the network CRS.
    network_crs : str, optional
        CRS of `elements`; defaults to config.crs.

    Returns
    -------
    PipelineResult
        The finalized run record, the enriched map, the scenario (if
        synthesized) and the paths written. Stage failures are recorded in
        the run, not raised.
    """
    transforms = dict(transforms or {})
    network_crs = network_crs or config.crs
    output_dir = Path(output_dir) if output_dir is not None else None
    run = PipelineRun.begin(sources.keys())

    enriched = scenario = None
    paths: Dict[str, Path] = {}

    run.index.start()
    boundary = None
    try:
        boundary = load_boundary(config.boundary)
        index = build_index(elements, crs=network_crs)
    except (EmptyNetwork, ValueError, TypeError) as e:
        logger.error("Network index failed: %s", e)
        run.index.fail(e)
        index = None
    else:
        run.index.total = run.index.matched = len(index)
        run.index.succeed()

    if index is None:
        for stage in [*run.sources.values(), run.synthesis, run.write]:
            stage.skip("network index failed")
    else:
        attachments: List[Attachment] = []
        conflated: List[ExternalRecord] = []
        for name, records in sources.items():
            found, kept = _conflate_source(
                run.sources[name],
                records,
                config,
                index,
                elements,
                boundary,
                transforms.get(name),
                show_progress,
            )
            attachments.extend(found)
            conflated.extend(kept)

        enriched = EnrichedMap(
            elements=tuple(sorted(elements, key=lambda e: e.element_id)),
            attachments=tuple(sorted(attachments, key=EnrichedMap.sort_key)),
            crs=index.crs,
        )

        failed = run.failed_sources()
        if failed:
            run.synthesis.skip(f"failed sources: {', '.join(failed)}")
        elif cells is None:
            run.synthesis.skip("no population cells given")
        else:
            scenario = _synthesize_stage(
                run.synthesis,
                config,
                cells,
                distributions,
                index,
                attachments,
                conflated,
                boundary,
                show_progress,
            )

        if output_dir is None:
            run.write.skip("no output directory given")
        elif failed or run.synthesis.status == SourceStatus.FAILED:
            run.write.skip("an upstream stage failed")
        else:
            paths = _write_stage(run.write, output_dir, enriched, scenario)

    status = run.finalize()
    for stage in run.stages():
        logger.info(stage.summary())
    logger.info("Pipeline run %s", status.value)

    if output_dir is not None:
        paths["report"] = write_run_report(run.to_dict(), output_dir / "run_report.json")
    return PipelineResult(run=run, enriched_map=enriched, scenario=scenario, paths=paths)
