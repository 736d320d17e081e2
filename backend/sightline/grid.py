from __future__ import annotations

import math
from dataclasses import dataclass

import numpy as np

from sightline.errors import ConfigurationError
from sightline.geodesy import (
  haversine,
  initial_bearing,
  meters_to_lat_degrees,
  meters_to_lon_degrees,
  point_in_polygon,
  polygon_bbox,
  spherical_polygon_area,
)
from sightline.models import Bounds
from sightline.tasks import ExplicitPoints, PointSource, PolygonScan, SectorScan

DEFAULT_CHUNK_SIZE = 500


@dataclass(frozen=True)
class Lattice:
  """Regular lat/lon grid addressed by integer row and column indices."""

  lat0: float
  lon0: float
  lat_step: float
  lon_step: float
  rows: int
  cols: int

  def row(self, index: int) -> tuple[np.ndarray, np.ndarray]:
    lons = self.lon0 + np.arange(self.cols, dtype=np.float64) * self.lon_step
    lats = np.full(self.cols, self.lat0 + index * self.lat_step, dtype=np.float64)
    return lats, lons


class PointChunkStream:
  """
  Lazily produces (n, 2) [lat, lon] chunks of at most `chunk_size` rows.

  Each stream re-derives points from the source; it holds no more than one
  lattice row plus one partial chunk, and `close()` ends it early.
  """

  def __init__(self, source: PointSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
    if chunk_size <= 0:
      raise ConfigurationError("chunk_size must be positive.")
    self.source = source
    self.chunk_size = chunk_size
    self._cursor = 0
    self._pending: list[np.ndarray] = []
    self._pending_count = 0
    self._closed = False
    if isinstance(source, ExplicitPoints):
      self._explicit = np.array([[p.lat, p.lon] for p in source.points], dtype=np.float64).reshape(-1, 2)
      self._lattice = None
    else:
      self._explicit = None
      self._lattice = lattice_for(source)

  @property
  def closed(self) -> bool:
    return self._closed

  def __iter__(self) -> PointChunkStream:
    return self

  def __next__(self) -> np.ndarray:
    if self._closed:
      raise StopIteration
    while self._pending_count < self.chunk_size:
      block = self._next_block()
      if block is None:
        break
      if len(block):
        self._pending.append(block)
        self._pending_count += len(block)

    if self._pending_count == 0:
      self.close()
      raise StopIteration

    data = self._pending[0] if len(self._pending) == 1 else np.concatenate(self._pending)
    chunk = data[: self.chunk_size]
    rest = data[self.chunk_size :]
    self._pending = [rest] if len(rest) else []
    self._pending_count = len(rest)
    return chunk

  def close(self) -> None:
    self._closed = True
    self._pending = []
    self._pending_count = 0

  def _next_block(self) -> np.ndarray | None:
    if self._explicit is not None:
      if self._cursor >= len(self._explicit):
        return None
      block = self._explicit[self._cursor : self._cursor + self.chunk_size]
      self._cursor += self.chunk_size
      return block

    lattice = self._lattice
    if self._cursor >= lattice.rows:
      return None
    lats, lons = lattice.row(self._cursor)
    self._cursor += 1
    keep = contains(self.source, lats, lons)
    return np.column_stack([lats[keep], lons[keep]])


def iter_point_chunks(source: PointSource, chunk_size: int = DEFAULT_CHUNK_SIZE) -> PointChunkStream:
  return PointChunkStream(source, chunk_size)


def lattice_for(source: SectorScan | PolygonScan) -> Lattice:
  if isinstance(source, SectorScan):
    ref_lat = source.center.lat
    lat_step = meters_to_lat_degrees(source.resolution)
    lon_step = meters_to_lon_degrees(source.resolution, ref_lat)
    lat_extent = meters_to_lat_degrees(source.max_distance)
    lon_extent = meters_to_lon_degrees(source.max_distance, ref_lat)
    lat_min, lat_max = ref_lat - lat_extent, ref_lat + lat_extent
    lon_min, lon_max = source.center.lon - lon_extent, source.center.lon + lon_extent
  elif isinstance(source, PolygonScan):
    lat_min, lon_min, lat_max, lon_max = polygon_bbox(source.vertices)
    ref_lat = reference_lat(source)
    lat_step = meters_to_lat_degrees(source.resolution)
    lon_step = meters_to_lon_degrees(source.resolution, ref_lat)
  else:
    raise TypeError(f"Unsupported point source: {type(source).__name__}")

  return Lattice(
    lat0=lat_min,
    lon0=lon_min,
    lat_step=lat_step,
    lon_step=lon_step,
    rows=math.ceil((lat_max - lat_min) / lat_step) + 1,
    cols=math.ceil((lon_max - lon_min) / lon_step) + 1,
  )


def contains(source: SectorScan | PolygonScan, lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
  if isinstance(source, SectorScan):
    center = source.center
    dist = haversine(center.lat, center.lon, lats, lons)
    keep = (dist >= source.min_distance) & (dist <= source.max_distance)
    if not source.full_circle:
      start, end = source.azimuth_range
      bearings = initial_bearing(center.lat, center.lon, lats, lons)
      if start <= end:
        keep &= (bearings >= start) & (bearings <= end)
      else:
        keep &= (bearings >= start) | (bearings <= end)
    return keep
  if isinstance(source, PolygonScan):
    return point_in_polygon(lats, lons, source.vertices)
  raise TypeError(f"Unsupported point source: {type(source).__name__}")


def reference_lat(source: PointSource) -> float:
  """Latitude at which longitude steps are converted from meters."""

  if isinstance(source, SectorScan):
    return source.center.lat
  if isinstance(source, PolygonScan):
    min_lat, _, max_lat, _ = polygon_bbox(source.vertices)
    return (min_lat + max_lat) / 2.0
  if isinstance(source, ExplicitPoints):
    if not source.points:
      return 0.0
    return float(np.mean([p.lat for p in source.points]))
  raise TypeError(f"Unsupported point source: {type(source).__name__}")


def estimate_count(source: PointSource) -> int:
  if isinstance(source, ExplicitPoints):
    return len(source.points)
  if isinstance(source, SectorScan):
    fraction = 1.0 if source.full_circle else source.azimuth_span / 360.0
    area = math.pi * (source.max_distance**2 - source.min_distance**2) * fraction
    return math.ceil(area / (source.resolution**2))
  if isinstance(source, PolygonScan):
    return math.ceil(spherical_polygon_area(source.vertices) / (source.resolution**2))
  raise TypeError(f"Unsupported point source: {type(source).__name__}")


def compute_bounds(source: PointSource) -> Bounds:
  if isinstance(source, SectorScan):
    ref_lat = source.center.lat
    half_lat = meters_to_lat_degrees(source.resolution) / 2.0
    half_lon = meters_to_lon_degrees(source.resolution, ref_lat) / 2.0
    lat_extent = meters_to_lat_degrees(source.max_distance)
    lon_extent = meters_to_lon_degrees(source.max_distance, ref_lat)
    return Bounds(
      west=source.center.lon - lon_extent - half_lon,
      south=ref_lat - lat_extent - half_lat,
      east=source.center.lon + lon_extent + half_lon,
      north=ref_lat + lat_extent + half_lat,
    )
  if isinstance(source, PolygonScan):
    ref_lat = reference_lat(source)
    half_lat = meters_to_lat_degrees(source.resolution) / 2.0
    half_lon = meters_to_lon_degrees(source.resolution, ref_lat) / 2.0
    min_lat, min_lon, max_lat, max_lon = polygon_bbox(source.vertices)
    return Bounds(
      west=min_lon - half_lon,
      south=min_lat - half_lat,
      east=max_lon + half_lon,
      north=max_lat + half_lat,
    )
  if isinstance(source, ExplicitPoints):
    if not source.points:
      raise ConfigurationError("Cannot compute bounds of an empty point list.")
    lats = [p.lat for p in source.points]
    lons = [p.lon for p in source.points]
    return Bounds(west=min(lons), south=min(lats), east=max(lons), north=max(lats))
  raise TypeError(f"Unsupported point source: {type(source).__name__}")


def compute_zoom(source: PointSource) -> int:
  if isinstance(source, ExplicitPoints):
    count = len(source.points)
    if count > 100_000:
      return 10
    if count > 20_000:
      return 11
    return 12
  if isinstance(source, SectorScan):
    return zoom_for_span(source.max_distance)
  if isinstance(source, PolygonScan):
    min_lat, min_lon, max_lat, max_lon = polygon_bbox(source.vertices)
    return zoom_for_span(float(haversine(min_lat, min_lon, max_lat, max_lon)))
  raise TypeError(f"Unsupported point source: {type(source).__name__}")


def zoom_for_span(span_m: float) -> int:
  if span_m > 100_000:
    return 10
  if span_m > 50_000:
    return 11
  if span_m > 10_000:
    return 12
  return 13
