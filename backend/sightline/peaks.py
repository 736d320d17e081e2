from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Callable, Sequence

import numpy as np

from sightline.engine import CalculationControl, TaskEngine
from sightline.errors import ConfigurationError
from sightline.geodesy import haversine
from sightline.grid import estimate_count, iter_point_chunks
from sightline.models import GeoPoint
from sightline.tasks import PolygonScan

log = logging.getLogger(__name__)

PEAK_ZOOM = 12
SAMPLE_BATCH = 5000


@dataclass(frozen=True)
class Peak:
  rank: int
  lat: float
  lon: float
  elevation: float


def find_peaks(
  engine: TaskEngine,
  vertices: Sequence[GeoPoint],
  resolution: float = 50.0,
  max_peaks: int = 10,
  min_separation_m: float = 500.0,
  min_elevation: float | None = None,
  zoom: int = PEAK_ZOOM,
  on_progress: Callable[[int, int], None] | None = None,
  control: CalculationControl | None = None,
) -> list[Peak]:
  """
  Highest terrain points inside a polygon, at least `min_separation_m` apart.

  Candidates are ranked by elevation and accepted greedily, so each peak is
  the highest sample not within the separation radius of a better one.
  Returns an empty list when cancelled.
  """

  if max_peaks < 1:
    raise ConfigurationError("max_peaks must be at least 1.")
  scan = PolygonScan(vertices, resolution)
  estimate = estimate_count(scan)
  if estimate > engine.settings.limits.max_points:
    raise ConfigurationError(f"Peak search over ~{estimate:,} samples exceeds the point limit.")

  lats: list[np.ndarray] = []
  lons: list[np.ndarray] = []
  elevations: list[np.ndarray] = []
  sampled = 0
  for chunk in iter_point_chunks(scan, SAMPLE_BATCH):
    if control is not None and control.cancelled:
      log.info("Peak search cancelled after %d samples", sampled)
      return []
    values = engine.sample_elevations(chunk[:, 0], chunk[:, 1], zoom)
    keep = np.isfinite(values)
    if min_elevation is not None:
      keep &= values >= min_elevation
    lats.append(chunk[keep, 0])
    lons.append(chunk[keep, 1])
    elevations.append(values[keep])
    sampled += len(chunk)
    if on_progress is not None:
      on_progress(sampled, max(sampled, estimate))

  if not elevations:
    return []
  cand_lat = np.concatenate(lats)
  cand_lon = np.concatenate(lons)
  cand_elev = np.concatenate(elevations)
  order = np.argsort(-cand_elev, kind="stable")

  peaks: list[Peak] = []
  chosen_lat: list[float] = []
  chosen_lon: list[float] = []
  for index in order:
    if len(peaks) >= max_peaks:
      break
    lat = float(cand_lat[index])
    lon = float(cand_lon[index])
    if chosen_lat and np.min(haversine(lat, lon, np.array(chosen_lat), np.array(chosen_lon))) < min_separation_m:
      continue
    chosen_lat.append(lat)
    chosen_lon.append(lon)
    peaks.append(Peak(rank=len(peaks) + 1, lat=lat, lon=lon, elevation=float(cand_elev[index])))

  log.info("Found %d peaks among %d samples", len(peaks), sampled)
  return peaks
