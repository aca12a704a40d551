"""
synthesis.py

Turn population cells and travel-survey distributions into concrete,
reproducible trip records.

Reproducibility rules
---------------------
- Cells are used in the caller's order and never re-sorted.
- Every random draw comes from a generator seeded by a pure function of
  (seed, ordinal): `SeedSequence(seed, spawn_key=(stage, ordinal))`. Cells
  (phase 1) and trips (phase 2) can therefore be generated in any order or
  in parallel with identical output.
- Trip and person ids are hashes of the seed and ordinals, not counters.
"""

from __future__ import annotations

import hashlib
import logging
import math
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from numpy.random import Generator, SeedSequence, default_rng
from shapely.geometry import Point
from shapely.geometry.base import BaseGeometry
from tqdm import tqdm

from .constants import COORD_PRECISION, MAX_POINT_SAMPLES, MODES, PURPOSES
from .errors import EmptyInputSet, NoValidDestination
from .model import Coord, PopulationCell, Scenario, TripRecord
from .spatial_index import SpatialIndex

logger = logging.getLogger(__name__)

_CELL_STAGE = 0
_TRIP_STAGE = 1
MAX_SEED = 2**64 - 1


# ==============================================================================
# Distributions
# ==============================================================================


@dataclass(frozen=True)
class DiscreteDistribution:
    """Finite distribution over values, in the order they were given."""

    values: Tuple[Any, ...]
    probabilities: Tuple[float, ...]
    cumulative: np.ndarray = field(init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "cumulative", np.cumsum(self.probabilities))

    @classmethod
    def from_mapping(
        cls,
        mapping: Mapping[Any, float],
        name: str = "distribution",
        key_type: Callable[[Any], Any] = lambda k: k,
    ) -> "DiscreteDistribution":
        if not isinstance(mapping, Mapping) or not mapping:
            raise ValueError(f"{name} must be a non-empty mapping of value -> weight")
        values = []
        weights = []
        for k, w in mapping.items():
            w = float(w)
            if not math.isfinite(w) or w < 0:
                raise ValueError(f"{name}: weight for {k!r} must be a non-negative number, got {w}")
            values.append(key_type(k))
            weights.append(w)
        total = sum(weights)
        if total <= 0:
            raise ValueError(f"{name}: weights sum to zero")
        return cls(tuple(values), tuple(w / total for w in weights))

    def draw(self, rng: Generator):
        idx = int(np.searchsorted(self.cumulative, rng.random(), side="right"))
        return self.values[min(idx, len(self.values) - 1)]

    def reweighted(self, factors: Mapping[Any, float]) -> "DiscreteDistribution":
        """Scale the weight of some values and renormalize; unchanged if all weight vanishes."""
        weights = [p * factors.get(v, 1.0) for v, p in zip(self.values, self.probabilities)]
        total = sum(weights)
        if total <= 0:
            return self
        return DiscreteDistribution(self.values, tuple(w / total for w in weights))

    def to_dict(self) -> Dict[str, float]:
        return {str(v): p for v, p in zip(self.values, self.probabilities)}


def _mode_key(k) -> str:
    mode = str(k).upper()
    if mode not in MODES:
        raise ValueError(f"Unknown mode {k!r}; expected one of {MODES}")
    return mode


def _purpose_key(k) -> str:
    purpose = str(k).upper()
    if purpose not in PURPOSES:
        raise ValueError(f"Unknown purpose {k!r}; expected one of {PURPOSES}")
    return purpose


def _hour_key(k) -> int:
    hour = int(k)
    if not 0 <= hour <= 23:
        raise ValueError(f"Departure hour must be in 0..23, got {k!r}")
    return hour


def _rate_key(k) -> float:
    rate = float(k)
    if not math.isfinite(rate) or rate < 0:
        raise ValueError(f"Trip rate must be a non-negative number, got {k!r}")
    return rate


@dataclass(frozen=True)
class SurveyDistributions:
    """
    Travel-survey distributions driving synthesis.

    Attributes
    ----------
    trip_rate : DiscreteDistribution
        Trips per resident; one draw per cell.
    mode_share : DiscreteDistribution
        Mode of each trip.
    departure_hour : DiscreteDistribution
        Hour of day (0-23) of each departure; the second within the hour is uniform.
    purpose : DiscreteDistribution
        Trip purpose.
    max_trip_distance : float, optional
        Destination cells farther than this from the origin cell are excluded.
    allow_intra_cell : bool
        Whether a trip may end in its origin cell.
    no_parking_drive_factor : float
        Multiplier on the CAR share when the destination cell has no known
        parking capacity (parking_capacity == 0). 1.0 disables the adjustment.
    """

    trip_rate: DiscreteDistribution
    mode_share: DiscreteDistribution
    departure_hour: DiscreteDistribution
    purpose: DiscreteDistribution
    max_trip_distance: Optional[float] = None
    allow_intra_cell: bool = True
    no_parking_drive_factor: float = 1.0

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "SurveyDistributions":
        for key in ("trip_rate", "mode_share", "departure_hour"):
            if key not in data:
                raise KeyError(f"Survey distributions are missing '{key}'")
        factor = float(data.get("no_parking_drive_factor", 1.0))
        if factor < 0:
            raise ValueError(f"no_parking_drive_factor must be non-negative, got {factor}")
        max_dist = data.get("max_trip_distance")
        return cls(
            trip_rate=DiscreteDistribution.from_mapping(data["trip_rate"], "trip_rate", _rate_key),
            mode_share=DiscreteDistribution.from_mapping(data["mode_share"], "mode_share", _mode_key),
            departure_hour=DiscreteDistribution.from_mapping(
                data["departure_hour"], "departure_hour", _hour_key
            ),
            purpose=DiscreteDistribution.from_mapping(
                data.get("purpose", {"OTHER": 1.0}), "purpose", _purpose_key
            ),
            max_trip_distance=float(max_dist) if max_dist is not None else None,
            allow_intra_cell=bool(data.get("allow_intra_cell", True)),
            no_parking_drive_factor=factor,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "trip_rate": self.trip_rate.to_dict(),
            "mode_share": self.mode_share.to_dict(),
            "departure_hour": self.departure_hour.to_dict(),
            "purpose": self.purpose.to_dict(),
            "max_trip_distance": self.max_trip_distance,
            "allow_intra_cell": self.allow_intra_cell,
            "no_parking_drive_factor": self.no_parking_drive_factor,
        }


# ==============================================================================
# Deterministic randomness and ids
# ==============================================================================


def rng_for(seed: int, stage: int, ordinal: int) -> Generator:
    """Generator whose stream depends only on (seed, stage, ordinal)."""
    return default_rng(SeedSequence(seed, spawn_key=(stage, ordinal)))


def stable_id(prefix: str, *parts: Any) -> str:
    """Short hex id derived from prefix and parts; identical across runs and processes."""
    h = hashlib.blake2b(digest_size=8)
    h.update(":".join(str(p) for p in (prefix,) + parts).encode("utf-8"))
    return f"{prefix[0]}{h.hexdigest()}"


def _round_coord(x: float, y: float) -> Coord:
    return (round(float(x), COORD_PRECISION), round(float(y), COORD_PRECISION))


def sample_point(rng: Generator, geometry: Optional[BaseGeometry]) -> Optional[Coord]:
    """
    Uniform point inside geometry by bounded rejection sampling.

    Points return themselves; after MAX_POINT_SAMPLES misses the
    representative point is used.
    """
    if geometry is None or geometry.is_empty:
        return None
    if isinstance(geometry, Point):
        return _round_coord(geometry.x, geometry.y)
    minx, miny, maxx, maxy = geometry.bounds
    for _ in range(MAX_POINT_SAMPLES):
        x = rng.uniform(minx, maxx)
        y = rng.uniform(miny, maxy)
        if geometry.contains(Point(x, y)):
            return _round_coord(x, y)
    rep = geometry.representative_point()
    return _round_coord(rep.x, rep.y)


# ==============================================================================
# Phase 1: trip counts and destination pools per cell
# ==============================================================================


@dataclass(frozen=True)
class _CellPlan:
    ordinal: int
    trip_count: int
    pool: np.ndarray  # positions of candidate destination cells
    pool_cumulative: np.ndarray  # cumulative destination probabilities over pool
    warning: Optional[str] = None
    demand: bool = False


def _destination_mask(
    ordinal: int,
    jobs: np.ndarray,
    centroids: np.ndarray,
    distributions: SurveyDistributions,
) -> np.ndarray:
    mask = jobs > 0
    if not distributions.allow_intra_cell:
        mask[ordinal] = False
    max_dist = distributions.max_trip_distance
    origin = centroids[ordinal]
    if max_dist is not None and not np.isnan(origin).any():
        d = np.hypot(centroids[:, 0] - origin[0], centroids[:, 1] - origin[1])
        # cells without a location cannot be ruled out by distance
        mask &= np.isnan(d) | (d <= max_dist)
    return mask


def _plan_cell(
    ordinal: int,
    cell: PopulationCell,
    seed: int,
    jobs: np.ndarray,
    centroids: np.ndarray,
    distributions: SurveyDistributions,
) -> _CellPlan:
    empty = np.empty(0, dtype=np.int64)
    if cell.population == 0:
        return _CellPlan(ordinal, 0, empty, np.empty(0))

    rng = rng_for(seed, _CELL_STAGE, ordinal)
    rate = distributions.trip_rate.draw(rng)
    trip_count = int(math.floor(cell.population * rate + 0.5))
    if trip_count == 0:
        return _CellPlan(ordinal, 0, empty, np.empty(0))

    mask = _destination_mask(ordinal, jobs, centroids, distributions)
    pool = np.flatnonzero(mask)
    if len(pool) == 0:
        err = NoValidDestination(cell.cell_id)
        return _CellPlan(ordinal, 0, empty, np.empty(0), warning=str(err), demand=True)

    weights = jobs[pool].astype(float)
    return _CellPlan(ordinal, trip_count, pool, np.cumsum(weights / weights.sum()), demand=True)


# ==============================================================================
# Phase 2: individual trips
# ==============================================================================


def _choose_mode(rng: Generator, destination: PopulationCell, distributions: SurveyDistributions) -> str:
    mode_share = distributions.mode_share
    factor = distributions.no_parking_drive_factor
    if factor != 1.0 and destination.parking_capacity == 0:
        mode_share = mode_share.reweighted({"CAR": factor})
    return mode_share.draw(rng)


def _make_trip(
    ordinal: int,
    cell_ordinal: int,
    plan: _CellPlan,
    cells: Sequence[PopulationCell],
    seed: int,
    distributions: SurveyDistributions,
    index: Optional[SpatialIndex],
    snap_tolerance: float,
) -> TripRecord:
    rng = rng_for(seed, _TRIP_STAGE, ordinal)
    origin_cell = cells[cell_ordinal]

    pick = min(int(np.searchsorted(plan.pool_cumulative, rng.random(), side="right")), len(plan.pool) - 1)
    destination_cell = cells[int(plan.pool[pick])]

    mode = _choose_mode(rng, destination_cell, distributions)
    hour = distributions.departure_hour.draw(rng)
    departure_seconds = hour * 3600 + int(rng.integers(0, 3600))
    purpose = distributions.purpose.draw(rng)
    person_index = int(rng.integers(0, origin_cell.population))
    origin = sample_point(rng, origin_cell.geometry)
    destination = sample_point(rng, destination_cell.geometry)

    origin_element = destination_element = None
    if index is not None:
        if origin is not None:
            hit = index.nearest(origin, snap_tolerance)
            origin_element = hit[0] if hit else None
        if destination is not None:
            hit = index.nearest(destination, snap_tolerance)
            destination_element = hit[0] if hit else None

    return TripRecord(
        trip_id=stable_id("trip", seed, ordinal),
        person_id=stable_id("person", seed, cell_ordinal, person_index),
        ordinal=ordinal,
        origin_cell=origin_cell.cell_id,
        destination_cell=destination_cell.cell_id,
        origin=origin,
        destination=destination,
        departure_seconds=departure_seconds,
        mode=mode,
        purpose=purpose,
        origin_element=origin_element,
        destination_element=destination_element,
    )


def _run(fn, items, workers: int, desc: str, show_progress: bool):
    progress = dict(total=len(items), desc=desc, disable=not show_progress)
    if workers > 1 and len(items) > 1:
        with ThreadPoolExecutor(max_workers=workers) as executor:
            return list(tqdm(executor.map(fn, items), **progress))
    return [fn(item) for item in tqdm(items, **progress)]


def synthesize(
    cells: Sequence[PopulationCell],
    distributions: SurveyDistributions,
    seed: int,
    *,
    index: Optional[SpatialIndex] = None,
    name: str = "scenario",
    boundary: Optional[str] = None,
    workers: int = 1,
    snap_tolerance: Optional[float] = None,
    show_progress: bool = False,
) -> Scenario:
    """
    Generate a scenario of synthetic trips.

    The output is a pure function of (cells in the given order,
    distributions, seed). `workers` only changes how fast it is produced.

    Cells with zero population produce no trips. A cell whose destination
    pool is empty after filtering produces no trips and a warning on the
    scenario; if every cell with demand fails, NoValidDestination is raised.
    If `index` is given, trip endpoints are snapped to the nearest network
    element within `snap_tolerance` (unbounded if None).
    """
    cells = list(cells)
    if not cells:
        raise EmptyInputSet("Cannot synthesize trips without population cells.")
    if not isinstance(seed, (int, np.integer)) or not 0 <= int(seed) <= MAX_SEED:
        raise ValueError(f"seed must be an integer in [0, 2**64), got {seed!r}")
    seed = int(seed)

    jobs = np.array([c.jobs for c in cells], dtype=np.int64)
    centroids = np.array(
        [c.centroid() if c.centroid() is not None else (np.nan, np.nan) for c in cells],
        dtype=float,
    )

    plans: List[_CellPlan] = _run(
        lambda i: _plan_cell(i, cells[i], seed, jobs, centroids, distributions),
        list(range(len(cells))),
        workers,
        "planning cells",
        show_progress,
    )

    warnings = tuple(p.warning for p in plans if p.warning)
    with_demand = [p for p in plans if p.demand]
    if with_demand and all(p.warning for p in with_demand):
        raise NoValidDestination(
            message=f"No valid destination for any of the {len(with_demand)} cells with demand"
        )
    for w in warnings:
        logger.warning("Partial synthesis: %s", w)

    # global ordinal of each trip, in cell order
    trip_slots: List[Tuple[int, int]] = []
    for p in plans:
        start = len(trip_slots)
        trip_slots.extend((start + k, p.ordinal) for k in range(p.trip_count))

    snap = math.inf if snap_tolerance is None else float(snap_tolerance)
    trips = _run(
        lambda slot: _make_trip(slot[0], slot[1], plans[slot[1]], cells, seed, distributions, index, snap),
        trip_slots,
        workers,
        "synthesizing trips",
        show_progress,
    )

    logger.info(
        "Synthesized %d trips from %d cells (seed %d, %d cell warnings)",
        len(trips),
        len(cells),
        seed,
        len(warnings),
    )
    return Scenario(
        name=name,
        seed=seed,
        trips=tuple(trips),
        boundary=boundary,
        parameters={
            "distributions": distributions.to_dict(),
            "cell_count": len(cells),
            "snap_tolerance": snap_tolerance,
            "snapped": index is not None,
        },
        warnings=warnings,
    )
