from __future__ import annotations

from dataclasses import dataclass
from typing import Sequence, Union

from sightline.errors import ConfigurationError
from sightline.models import GeoPoint, StationPoint

DEFAULT_TARGET_HEIGHT_M = 2.0


@dataclass(frozen=True)
class ExplicitPoints:
  points: tuple[GeoPoint, ...]

  def __init__(self, points: Sequence[GeoPoint]) -> None:
    object.__setattr__(self, "points", tuple(points))


@dataclass(frozen=True)
class SectorScan:
  center: GeoPoint
  min_distance: float
  max_distance: float
  resolution: float
  min_azimuth: float = 0.0
  max_azimuth: float = 360.0

  def __post_init__(self) -> None:
    if self.resolution <= 0:
      raise ConfigurationError("Sector resolution must be positive.")
    if self.max_distance <= 0:
      raise ConfigurationError("Sector maximum distance must be positive.")
    if not 0 <= self.min_distance <= self.max_distance:
      raise ConfigurationError("Sector minimum distance must lie between 0 and the maximum distance.")
    if self.min_azimuth == self.max_azimuth:
      raise ConfigurationError("Sector azimuth window is empty; use 0 to 360 for a full circle.")

  @property
  def azimuth_range(self) -> tuple[float, float]:
    return (self.min_azimuth % 360.0, self.max_azimuth % 360.0)

  @property
  def azimuth_span(self) -> float:
    start, end = self.azimuth_range
    return end - start if start <= end else (360.0 - start) + end

  @property
  def full_circle(self) -> bool:
    """True for windows such as 0..360 or -180..180 that wrap onto themselves."""
    return abs(self.max_azimuth - self.min_azimuth) >= 360.0 or self.azimuth_span == 0


@dataclass(frozen=True)
class PolygonScan:
  vertices: tuple[GeoPoint, ...]
  resolution: float

  def __init__(self, vertices: Sequence[GeoPoint], resolution: float) -> None:
    object.__setattr__(self, "vertices", tuple(vertices))
    object.__setattr__(self, "resolution", resolution)
    if len(self.vertices) < 3:
      raise ConfigurationError(f"Polygon needs at least 3 vertices, got {len(self.vertices)}.")
    if resolution <= 0:
      raise ConfigurationError("Polygon resolution must be positive.")


PointSource = Union[ExplicitPoints, SectorScan, PolygonScan]


@dataclass(frozen=True)
class TaskConfig:
  origin: StationPoint
  source: PointSource
  target_height: float = DEFAULT_TARGET_HEIGHT_M
  frequency_mhz: float | None = None
  chunk_size: int | None = None
  zoom: int | None = None

  def __post_init__(self) -> None:
    if not isinstance(self.source, (ExplicitPoints, SectorScan, PolygonScan)):
      raise TypeError(f"Unsupported point source: {type(self.source).__name__}")
    if self.frequency_mhz is not None and self.frequency_mhz <= 0:
      raise ConfigurationError("Frequency must be positive.")
    if self.chunk_size is not None and self.chunk_size <= 0:
      raise ConfigurationError("Chunk size must be positive.")
    if self.zoom is not None and not 0 <= self.zoom <= 20:
      raise ConfigurationError("Zoom must be between 0 and 20.")

  @classmethod
  def sector(
    cls,
    origin: StationPoint,
    min_distance: float,
    max_distance: float,
    resolution: float,
    min_azimuth: float = 0.0,
    max_azimuth: float = 360.0,
    **kwargs,
  ) -> TaskConfig:
    scan = SectorScan(
      center=origin.as_geo(),
      min_distance=min_distance,
      max_distance=max_distance,
      resolution=resolution,
      min_azimuth=min_azimuth,
      max_azimuth=max_azimuth,
    )
    return cls(origin=origin, source=scan, **kwargs)
