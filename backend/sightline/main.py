from __future__ import annotations

import time
from functools import lru_cache
from typing import Any, Literal

from fastapi import Depends, FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field, field_validator

from sightline.engine import TaskEngine
from sightline.errors import ConfigurationError, EngineBusyError, SightlineError
from sightline.grid import estimate_count, reference_lat
from sightline.los import LOSResult
from sightline.models import GeoPoint, StationPoint
from sightline.peaks import find_peaks
from sightline.raster import render_area
from sightline.settings import load_settings
from sightline.tasks import PolygonScan, SectorScan, TaskConfig
from sightline.utils.logging import setup_logging

app = FastAPI(title="Sightline Visibility API")

MAX_PEAKS = 100

app.add_middleware(
  CORSMiddleware,
  allow_origins=[
    "http://localhost:5173",
    "http://127.0.0.1:5173",
  ],
  allow_credentials=True,
  allow_methods=["*"],
  allow_headers=["*"],
)


class Location(BaseModel):
  lat: float
  lon: float

  @field_validator("lat")
  @classmethod
  def validate_lat(cls, value: float) -> float:
    if not -90 <= value <= 90:
      raise ValueError("Latitude must be between -90 and 90.")
    return value

  @field_validator("lon")
  @classmethod
  def validate_lon(cls, value: float) -> float:
    if not -180 <= value <= 180:
      raise ValueError("Longitude must be between -180 and 180.")
    return value

  def to_geo(self) -> GeoPoint:
    return GeoPoint(self.lat, self.lon)


class Station(Location):
  heightM: float = 0.0

  def to_station(self) -> StationPoint:
    return StationPoint(self.lat, self.lon, self.heightM)


class LOSRequest(BaseModel):
  origin: Station
  target: Station
  frequencyMHz: float | None = Field(None, gt=0)


class AreaRequest(BaseModel):
  origin: Station
  mode: Literal["sector", "polygon"] = "sector"
  targetHeightM: float = Field(2.0, ge=0)
  resolutionM: float = Field(gt=0)
  minDistanceM: float = Field(0.0, ge=0)
  maxDistanceM: float | None = Field(None, gt=0)
  minAzimuth: float = 0.0
  maxAzimuth: float = 360.0
  polygon: list[Location] | None = None
  frequencyMHz: float | None = Field(None, gt=0)


class PeaksRequest(BaseModel):
  polygon: list[Location] = Field(min_length=3)
  resolutionM: float = Field(50.0, gt=0)
  maxPeaks: int = Field(10, ge=1, le=MAX_PEAKS)
  minSeparationM: float = Field(500.0, ge=0)
  minElevationM: float | None = None


class LOSResponse(BaseModel):
  result: dict[str, Any]
  profile: list[dict[str, Any]] | None = None
  warnings: list[str]


class AreaResponse(BaseModel):
  overlay: dict[str, Any] | None
  summary: dict[str, Any]
  estimate: dict[str, Any]
  warnings: list[str]


class PeaksResponse(BaseModel):
  peaks: list[dict[str, Any]]


@lru_cache(maxsize=1)
def get_engine() -> TaskEngine:
  settings = load_settings()
  setup_logging(settings.logging, verbose=1)
  return TaskEngine(settings)


@app.get("/health")
def health_check() -> dict:
  return {"status": "ok"}


@app.post("/los", response_model=LOSResponse)
def line_of_sight_endpoint(
  payload: LOSRequest,
  profile: int = Query(1, ge=0, le=1),
  engine: TaskEngine = Depends(get_engine),
) -> LOSResponse:
  options = engine.default_los_options(payload.frequencyMHz)
  try:
    result = engine.line_of_sight(payload.origin.to_station(), payload.target.to_station(), options)
  except SightlineError as exc:
    raise _http_error(exc) from exc

  return LOSResponse(
    result=_encode_los(result),
    profile=_encode_profile(result) if profile else None,
    warnings=list(result.warnings),
  )


@app.post("/area", response_model=AreaResponse)
def area_endpoint(payload: AreaRequest, engine: TaskEngine = Depends(get_engine)) -> AreaResponse:
  request_start = time.perf_counter()
  origin = payload.origin.to_station()
  try:
    if payload.mode == "sector":
      if payload.maxDistanceM is None:
        raise ConfigurationError("maxDistanceM is required for sector requests.")
      source = SectorScan(
        center=origin.as_geo(),
        min_distance=payload.minDistanceM,
        max_distance=payload.maxDistanceM,
        resolution=payload.resolutionM,
        min_azimuth=payload.minAzimuth,
        max_azimuth=payload.maxAzimuth,
      )
    else:
      source = PolygonScan([v.to_geo() for v in payload.polygon or []], payload.resolutionM)
    config = TaskConfig(
      origin=origin,
      source=source,
      target_height=payload.targetHeightM,
      frequency_mhz=payload.frequencyMHz,
    )

    estimate = estimate_count(source)
    warnings: list[str] = []
    if estimate > engine.settings.limits.warn_points:
      warnings.append(f"Large request: ~{estimate:,} points. Computation may be slow.")

    rendered = render_area(engine, config, payload.resolutionM, reference_lat(source))
  except SightlineError as exc:
    raise _http_error(exc) from exc

  raster = rendered.raster
  overlay = None
  if raster is not None:
    overlay = {
      "pngBase64": raster.png_base64,
      "corners": [list(corner) for corner in raster.corners],
      "width": raster.width,
      "height": raster.height,
    }
  else:
    warnings.append("No point in the area has elevation data.")

  summary = rendered.summary
  return AreaResponse(
    overlay=overlay,
    summary={
      "totalProcessed": summary.total_processed,
      "clear": summary.clear,
      "blocked": summary.blocked,
      "noData": summary.no_data,
      "failedChunks": summary.failed_chunks,
      "durationS": summary.duration_s,
      "cancelled": summary.cancelled,
    },
    estimate={
      "points": estimate,
      "elapsedS": time.perf_counter() - request_start,
    },
    warnings=warnings,
  )


@app.post("/peaks", response_model=PeaksResponse)
def peaks_endpoint(payload: PeaksRequest, engine: TaskEngine = Depends(get_engine)) -> PeaksResponse:
  try:
    peaks = find_peaks(
      engine,
      [v.to_geo() for v in payload.polygon],
      resolution=payload.resolutionM,
      max_peaks=payload.maxPeaks,
      min_separation_m=payload.minSeparationM,
      min_elevation=payload.minElevationM,
    )
  except SightlineError as exc:
    raise _http_error(exc) from exc
  return PeaksResponse(
    peaks=[
      {"rank": peak.rank, "lat": peak.lat, "lon": peak.lon, "elevationM": peak.elevation}
      for peak in peaks
    ]
  )


@app.delete("/tiles/cache")
def clear_tile_cache(engine: TaskEngine = Depends(get_engine)) -> dict:
  dropped = len(engine.cache)
  engine.clear_cache()
  return {"status": "cleared", "tiles": dropped}


def _http_error(exc: SightlineError) -> HTTPException:
  if isinstance(exc, ConfigurationError):
    return HTTPException(status_code=400, detail=str(exc))
  if isinstance(exc, EngineBusyError):
    return HTTPException(status_code=409, detail=str(exc))
  return HTTPException(status_code=500, detail=str(exc))


def _encode_los(result: LOSResult) -> dict[str, Any]:
  obstruction = None
  if result.obstruction is not None:
    obstruction = {
      "lat": result.obstruction.lat,
      "lon": result.obstruction.lon,
      "distanceM": result.obstruction.distance,
      "elevationM": result.obstruction.elevation,
      "blockageM": result.obstruction.blockage,
      "fresnelIntrusionPercent": result.obstruction.fresnel_intrusion,
    }
  details = result.confidence_details
  return {
    "clear": result.clear,
    "fresnelClear": result.fresnel_clear,
    "hasData": result.has_data,
    "distanceM": result.total_distance,
    "geodesicDistanceM": result.geodesic_distance,
    "bearing": result.bearing,
    "minClearanceM": result.min_clearance,
    "minClearanceDistanceM": result.min_clearance_distance,
    "minFresnelClearanceM": result.min_fresnel_clearance,
    "obstruction": obstruction,
    "confidence": result.confidence,
    "confidenceDetails": {
      "dataCompleteness": details.data_completeness,
      "elevationStdM": details.elevation_std_m,
      "suspiciousJumps": details.suspicious_jumps,
      "missingSamples": details.missing_samples,
    },
    "nullSamples": result.null_samples,
    "totalSamples": result.total_samples,
    "frequencyMHz": result.frequency_mhz,
  }


def _encode_profile(result: LOSResult) -> list[dict[str, Any]]:
  return [
    {
      "lat": sample.lat,
      "lon": sample.lon,
      "distanceM": sample.distance,
      "groundM": sample.ground_elevation,
      "losM": sample.los_height,
      "clearanceM": sample.clearance,
      "fresnelRadiusM": sample.fresnel_radius,
      "fresnelClearanceM": sample.fresnel_clearance,
    }
    for sample in result.profile
  ]
