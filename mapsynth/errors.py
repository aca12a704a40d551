from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Optional


class MapSynthError(Exception):
    """Base class for errors raised by the conflation and synthesis pipeline."""


class CoordinateSystemMismatch(MapSynthError, ValueError):
    """A record set declares a CRS other than the network's and no transform was given."""

    def __init__(self, record_crs, network_crs, record_ids: Iterable[str] = ()):
        self.record_crs = record_crs
        self.network_crs = network_crs
        self.record_ids = sorted(record_ids)
        examples = ", ".join(self.record_ids[:5])
        super().__init__(
            f"Records declare CRS {record_crs!s} but the network is in {network_crs!s}; "
            f"supply a transform (examples: {examples})"
        )


class EmptyNetwork(MapSynthError, ValueError):
    """The network element set is empty."""


class EmptyInputSet(MapSynthError, ValueError):
    """A required input collection (records, cells) is empty."""


class CorruptRecordStream(MapSynthError, ValueError):
    """The record stream cannot be interpreted as external records."""


class NoValidDestination(MapSynthError):
    """No destination cell is left for a cell's trips after filtering."""

    def __init__(self, cell_id: Optional[str] = None, message: Optional[str] = None):
        self.cell_id = cell_id
        if message is None:
            message = f"No valid destination for trips from cell {cell_id}"
        super().__init__(message)


class SerializationFailure(MapSynthError):
    """An artifact could not be written; nothing was left at the target path."""


@dataclass(frozen=True)
class RecordMatchFailure:
    """Why a single record was not attached. Collected, never raised."""

    record_id: str
    kind: str
    reason: str
    nearest_distance: Optional[float] = None

    def __str__(self) -> str:
        if self.nearest_distance is None:
            return f"{self.kind}:{self.record_id} ({self.reason})"
        return f"{self.kind}:{self.record_id} ({self.reason}, nearest {self.nearest_distance:.3f})"
