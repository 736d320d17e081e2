from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

Phase = Literal["generating", "loading-tiles", "calculating", "finalizing"]


def normalize_lon(lon: float) -> float:
  if -180.0 <= lon <= 180.0:
    return float(lon)
  return ((lon + 180.0) % 360.0) - 180.0


@dataclass(frozen=True)
class GeoPoint:
  lat: float
  lon: float

  def __post_init__(self) -> None:
    if not -90.0 <= self.lat <= 90.0:
      raise ValueError(f"Latitude must be between -90 and 90, got {self.lat}.")
    object.__setattr__(self, "lon", normalize_lon(self.lon))


@dataclass(frozen=True)
class StationPoint(GeoPoint):
  height: float = 0.0

  def as_geo(self) -> GeoPoint:
    return GeoPoint(self.lat, self.lon)


@dataclass(frozen=True)
class Bounds:
  west: float
  south: float
  east: float
  north: float

  @property
  def center(self) -> GeoPoint:
    return GeoPoint((self.south + self.north) / 2.0, (self.west + self.east) / 2.0)

  def corners(self) -> list[tuple[float, float]]:
    """[NW, NE, SE, SW] as (lon, lat) pairs."""
    return [
      (self.west, self.north),
      (self.east, self.north),
      (self.east, self.south),
      (self.west, self.south),
    ]


@dataclass(frozen=True)
class GridCell:
  lat: float
  lon: float
  distance: float
  clear: bool | None
  fresnel_clear: bool | None
  has_data: bool


@dataclass(frozen=True)
class TaskProgress:
  phase: Phase
  tiles_loaded: int = 0
  tiles_total: int = 0
  tiles_failed: int = 0
  points_processed: int = 0
  points_total: int = 0
  percent: float = 0.0
  eta_seconds: float | None = None


@dataclass(frozen=True)
class CalculationSummary:
  total_processed: int
  clear: int
  blocked: int
  no_data: int
  failed_chunks: int
  duration_s: float
  cancelled: bool = False

  @classmethod
  def from_cells(
    cls,
    cells: list[GridCell],
    failed_chunks: int,
    duration_s: float,
    cancelled: bool = False,
  ) -> CalculationSummary:
    clear = 0
    blocked = 0
    for cell in cells:
      if cell.clear is True:
        clear += 1
      elif cell.clear is False:
        blocked += 1
    return cls(
      total_processed=len(cells),
      clear=clear,
      blocked=blocked,
      no_data=len(cells) - clear - blocked,
      failed_chunks=failed_chunks,
      duration_s=duration_s,
      cancelled=cancelled,
    )
