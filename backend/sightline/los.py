from __future__ import annotations

import math
from dataclasses import dataclass
from typing import Callable, Literal

import numpy as np

from sightline.geodesy import (
  STANDARD_K_FACTOR,
  bearing,
  curvature_drop,
  distance,
  fresnel_radius,
  geodesic_distance,
  haversine,
  interpolate_arrays,
)
from sightline.models import GridCell, StationPoint

ElevationLookup = Callable[[np.ndarray, np.ndarray], np.ndarray]
Confidence = Literal["high", "medium", "low"]

MIN_PATH_LENGTH_M = 1.0
DEFAULT_AREA_SAMPLES = 200
DEFAULT_FRESNEL_ZONE_PERCENT = 60.0
MAX_REASONABLE_HEIGHT_M = 1000.0
LONG_PATH_M = 200_000.0
SHORT_PATH_M = 10.0


@dataclass(frozen=True)
class LOSOptions:
  k_factor: float = STANDARD_K_FACTOR
  sample_step_m: float = 30.0
  min_samples: int = 10
  max_samples: int = 10_000
  frequency_mhz: float | None = None
  fresnel_zone_percent: float = DEFAULT_FRESNEL_ZONE_PERCENT


@dataclass(frozen=True)
class ProfileSample:
  lat: float
  lon: float
  distance: float
  ground_elevation: float | None
  los_height: float
  clearance: float | None
  fresnel_radius: float | None = None
  fresnel_clearance: float | None = None


@dataclass(frozen=True)
class Obstruction:
  lat: float
  lon: float
  distance: float
  elevation: float
  blockage: float
  fresnel_intrusion: float | None = None


@dataclass(frozen=True)
class ConfidenceDetails:
  data_completeness: float
  elevation_std_m: float
  suspicious_jumps: int
  missing_samples: int


@dataclass(frozen=True)
class LOSResult:
  clear: bool | None
  fresnel_clear: bool | None
  has_data: bool
  total_distance: float
  geodesic_distance: float
  bearing: float
  min_clearance: float | None
  min_clearance_distance: float
  min_fresnel_clearance: float | None
  profile: tuple[ProfileSample, ...]
  obstruction: Obstruction | None
  confidence: Confidence
  confidence_details: ConfidenceDetails
  null_samples: int
  total_samples: int
  frequency_mhz: float | None
  warnings: tuple[str, ...]


def sample_count(total_distance: float, options: LOSOptions) -> int:
  calculated = math.ceil(total_distance / options.sample_step_m)
  return max(options.min_samples, min(options.max_samples, calculated))


def line_of_sight(
  origin: StationPoint,
  target: StationPoint,
  lookup: ElevationLookup,
  options: LOSOptions | None = None,
) -> LOSResult:
  """
  Evaluate one origin-to-target path and report the full elevation profile.

  Unlike the batch evaluator every sample is inspected, so the worst
  obstruction and the minimum clearance cover the whole path.
  """

  options = options or LOSOptions()
  total = distance(origin, target)
  path_bearing = bearing(origin, target)
  ellipsoidal = geodesic_distance(origin, target)
  frequency = options.frequency_mhz

  if total < MIN_PATH_LENGTH_M:
    return LOSResult(
      clear=True,
      fresnel_clear=True,
      has_data=True,
      total_distance=total,
      geodesic_distance=ellipsoidal,
      bearing=path_bearing,
      min_clearance=None,
      min_clearance_distance=0.0,
      min_fresnel_clearance=None,
      profile=(),
      obstruction=None,
      confidence="high",
      confidence_details=ConfidenceDetails(1.0, 0.0, 0, 0),
      null_samples=0,
      total_samples=0,
      frequency_mhz=frequency,
      warnings=tuple(_validate(origin, target, total, np.empty(0))),
    )

  n = sample_count(total, options)
  fractions = np.arange(n + 1, dtype=np.float64) / n
  lats, lons = interpolate_arrays(origin.lat, origin.lon, target.lat, target.lon, fractions)
  lats[0], lons[0] = origin.lat, origin.lon
  lats[-1], lons[-1] = target.lat, target.lon

  ground = np.asarray(lookup(lats, lons), dtype=np.float64)
  valid = np.isfinite(ground)
  null_samples = int((~valid).sum())
  warnings = tuple(_validate(origin, target, total, ground))
  details = _confidence_details(ground, total / n)
  confidence = _classify(null_samples / len(ground), details.suspicious_jumps, len(ground))

  d1 = total * fractions
  d2 = total - d1
  start_height = (ground[0] if valid[0] else 0.0) + origin.height
  end_height = (ground[-1] if valid[-1] else 0.0) + target.height
  los_height = start_height + (end_height - start_height) * fractions - curvature_drop(d1, d2, options.k_factor)
  clearance = np.where(valid, los_height - ground, np.nan)

  interior = np.zeros(n + 1, dtype=bool)
  interior[1:-1] = True
  if frequency is not None:
    radius = np.where(interior, fresnel_radius(d1, d2, frequency), np.nan)
    fresnel_clearance = clearance - radius * (options.fresnel_zone_percent / 100.0)
  else:
    radius = np.full(n + 1, np.nan)
    fresnel_clearance = np.full(n + 1, np.nan)

  profile = tuple(
    ProfileSample(
      lat=float(lats[i]),
      lon=float(lons[i]),
      distance=float(d1[i]),
      ground_elevation=_optional(ground[i]),
      los_height=float(los_height[i]),
      clearance=_optional(clearance[i]),
      fresnel_radius=_optional(radius[i]),
      fresnel_clearance=_optional(fresnel_clearance[i]),
    )
    for i in range(n + 1)
  )

  checked = interior & valid
  if not valid.any():
    return LOSResult(
      clear=None,
      fresnel_clear=None,
      has_data=False,
      total_distance=total,
      geodesic_distance=ellipsoidal,
      bearing=path_bearing,
      min_clearance=None,
      min_clearance_distance=0.0,
      min_fresnel_clearance=None,
      profile=profile,
      obstruction=None,
      confidence="low",
      confidence_details=details,
      null_samples=null_samples,
      total_samples=n + 1,
      frequency_mhz=frequency,
      warnings=warnings,
    )

  min_clearance = None
  min_clearance_distance = 0.0
  obstruction = None
  if checked.any():
    worst = int(np.flatnonzero(checked)[np.argmin(clearance[checked])])
    min_clearance = float(clearance[worst])
    min_clearance_distance = float(d1[worst])
    if min_clearance < 0:
      intrusion = None
      if frequency is not None and radius[worst] > 0:
        intrusion = min(100.0, -min_clearance / float(radius[worst]) * 100.0)
      obstruction = Obstruction(
        lat=float(lats[worst]),
        lon=float(lons[worst]),
        distance=float(d1[worst]),
        elevation=float(ground[worst]),
        blockage=-min_clearance,
        fresnel_intrusion=intrusion,
      )

  min_fresnel_clearance = None
  fresnel_clear = None
  if frequency is not None:
    fresnel_clear = True
    if checked.any():
      min_fresnel_clearance = float(np.min(fresnel_clearance[checked]))
      fresnel_clear = min_fresnel_clearance >= 0

  return LOSResult(
    clear=obstruction is None,
    fresnel_clear=fresnel_clear,
    has_data=True,
    total_distance=total,
    geodesic_distance=ellipsoidal,
    bearing=path_bearing,
    min_clearance=min_clearance,
    min_clearance_distance=min_clearance_distance,
    min_fresnel_clearance=min_fresnel_clearance,
    profile=profile,
    obstruction=obstruction,
    confidence=confidence,
    confidence_details=details,
    null_samples=null_samples,
    total_samples=n + 1,
    frequency_mhz=frequency,
    warnings=warnings,
  )


def evaluate_targets(
  origin: StationPoint,
  targets: np.ndarray,
  target_height: float,
  lookup: ElevationLookup,
  samples: int = DEFAULT_AREA_SAMPLES,
  k_factor: float = STANDARD_K_FACTOR,
  frequency_mhz: float | None = None,
  fresnel_zone_percent: float = DEFAULT_FRESNEL_ZONE_PERCENT,
) -> list[GridCell]:
  """
  Evaluate a chunk of targets against one origin with a fixed sample count.

  `targets` is an (n, 2) array of [lat, lon]. Only pass/fail flags are
  produced; a path with no elevation data anywhere reports clear=None.
  """

  targets = np.asarray(targets, dtype=np.float64).reshape(-1, 2)
  if len(targets) == 0:
    return []

  t_lat = targets[:, 0]
  t_lon = targets[:, 1]
  dist = np.asarray(haversine(origin.lat, origin.lon, t_lat, t_lon), dtype=np.float64)

  fractions = np.arange(samples + 1, dtype=np.float64) / samples
  path_lat, path_lon = interpolate_arrays(
    origin.lat,
    origin.lon,
    t_lat[:, None],
    t_lon[:, None],
    fractions[None, :],
  )
  path_lat[:, 0], path_lon[:, 0] = origin.lat, origin.lon
  path_lat[:, -1], path_lon[:, -1] = t_lat, t_lon

  ground = np.asarray(lookup(path_lat, path_lon), dtype=np.float64)
  has_data = np.isfinite(ground).any(axis=1)

  start_height = np.nan_to_num(ground[:, 0], nan=0.0) + origin.height
  end_height = np.nan_to_num(ground[:, -1], nan=0.0) + target_height
  d1 = dist[:, None] * fractions[None, :]
  d2 = dist[:, None] - d1
  los_height = (
    start_height[:, None]
    + (end_height - start_height)[:, None] * fractions[None, :]
    - curvature_drop(d1, d2, k_factor)
  )
  clearance = (los_height - ground)[:, 1:-1]

  with np.errstate(invalid="ignore"):
    clear = ~(clearance < 0).any(axis=1)
    if frequency_mhz is not None:
      required = fresnel_radius(d1, d2, frequency_mhz)[:, 1:-1] * (fresnel_zone_percent / 100.0)
      fresnel_ok = ~(clearance < required).any(axis=1)
    else:
      fresnel_ok = None

  short = dist < MIN_PATH_LENGTH_M
  cells: list[GridCell] = []
  for i in range(len(targets)):
    if short[i]:
      cells.append(GridCell(float(t_lat[i]), float(t_lon[i]), float(dist[i]), True, True, True))
      continue
    if not has_data[i]:
      cells.append(GridCell(float(t_lat[i]), float(t_lon[i]), float(dist[i]), None, None, False))
      continue
    cells.append(
      GridCell(
        lat=float(t_lat[i]),
        lon=float(t_lon[i]),
        distance=float(dist[i]),
        clear=bool(clear[i]),
        fresnel_clear=None if fresnel_ok is None else bool(fresnel_ok[i]),
        has_data=True,
      )
    )
  return cells


def _optional(value: float) -> float | None:
  return float(value) if np.isfinite(value) else None


def _confidence_details(ground: np.ndarray, step_m: float) -> ConfidenceDetails:
  valid = ground[np.isfinite(ground)]
  completeness = len(valid) / len(ground) if len(ground) else 0.0
  std = float(np.std(valid)) if len(valid) > 1 else 0.0
  max_change = 500.0 * (step_m / 30.0)
  jumps = int((np.abs(np.diff(valid)) > max_change).sum()) if len(valid) > 1 else 0
  return ConfidenceDetails(
    data_completeness=completeness,
    elevation_std_m=std,
    suspicious_jumps=jumps,
    missing_samples=len(ground) - len(valid),
  )


def _classify(null_ratio: float, suspicious_jumps: int, total_samples: int) -> Confidence:
  if null_ratio < 0.05 and suspicious_jumps == 0:
    return "high"
  if null_ratio < 0.15 and suspicious_jumps < total_samples * 0.02:
    return "medium"
  return "low"


def _validate(origin: StationPoint, target: StationPoint, total: float, ground: np.ndarray) -> list[str]:
  warnings: list[str] = []
  for label, station in (("origin", origin), ("target", target)):
    if not 0 <= station.height <= MAX_REASONABLE_HEIGHT_M:
      warnings.append(f"Unusual {label} antenna height: {station.height:g} m.")
  if total > LONG_PATH_M:
    warnings.append("Path longer than 200 km; accuracy may degrade.")
  if total < SHORT_PATH_M:
    warnings.append("Path shorter than 10 m; line of sight is trivially clear.")
  if len(ground):
    valid = ground[np.isfinite(ground)]
    coverage = len(valid) / len(ground)
    if coverage < 0.5:
      warnings.append(f"Partial elevation data ({round(coverage * 100)}% coverage).")
    if len(valid) and len(ground) > 20 and len(np.unique(np.round(valid))) == 1:
      warnings.append("All elevation samples are identical; the terrain data may be missing.")
  return warnings
