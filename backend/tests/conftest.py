import threading
from collections import Counter
from io import BytesIO
from typing import Callable

import numpy as np
import pytest
from PIL import Image

from sightline.dem.coords import MERCATOR_RADIUS_M, TILE_SIZE, TileKey, pixel_transform
from sightline.dem.providers.base import TileSource
from sightline.engine import TaskEngine
from sightline.errors import TileFetchError
from sightline.settings import ConcurrencyConfig, EngineSettings, TileConfig

ElevationFn = Callable[[np.ndarray, np.ndarray], np.ndarray]


def pixel_centers(key: TileKey) -> tuple[np.ndarray, np.ndarray]:
  """(lats, lons) of every pixel center in a tile, shaped (256, 256)."""
  offsets = np.arange(TILE_SIZE, dtype=np.float64) + 0.5
  cols, rows = np.meshgrid(key.x * TILE_SIZE + offsets, key.y * TILE_SIZE + offsets)
  x, y = pixel_transform(key.z) * (cols, rows)
  lons = np.degrees(x / MERCATOR_RADIUS_M)
  lats = np.degrees(2.0 * np.arctan(np.exp(y / MERCATOR_RADIUS_M)) - np.pi / 2.0)
  return lats, lons


def encode_terrarium(elevation: np.ndarray) -> bytes:
  """Encode an elevation raster as a Terrarium PNG; NaN becomes transparent."""

  nodata = ~np.isfinite(elevation)
  value = np.where(nodata, 32768.0, elevation.astype(np.float64) + 32768.0)
  value = np.clip(value, 0.0, 65535.996)
  whole = np.floor(value)
  rgba = np.zeros(elevation.shape + (4,), dtype=np.uint8)
  rgba[:, :, 0] = (whole // 256).astype(np.uint8)
  rgba[:, :, 1] = (whole % 256).astype(np.uint8)
  rgba[:, :, 2] = np.floor((value - whole) * 256.0).astype(np.uint8)
  rgba[:, :, 3] = np.where(nodata, 0, 255).astype(np.uint8)

  buffer = BytesIO()
  Image.fromarray(rgba).save(buffer, format="PNG")
  return buffer.getvalue()


class SyntheticTileSource(TileSource):
  """Renders Terrarium tiles from an elevation function of (lats, lons)."""

  def __init__(self, elevation: ElevationFn, fail_keys: set[TileKey] | None = None, fail_times: int = 0) -> None:
    self.elevation = elevation
    self.fail_keys = fail_keys or set()
    self.fail_times = fail_times
    self.calls: Counter = Counter()
    self._lock = threading.Lock()

  def fetch_tile(self, key: TileKey) -> bytes:
    with self._lock:
      self.calls[key] += 1
      attempt = self.calls[key]
    if key in self.fail_keys or attempt <= self.fail_times:
      raise TileFetchError(key, "synthetic failure")
    lats, lons = pixel_centers(key)
    return encode_terrarium(np.asarray(self.elevation(lats, lons), dtype=np.float64))

  @property
  def total_calls(self) -> int:
    with self._lock:
      return sum(self.calls.values())


def flat(height: float) -> ElevationFn:
  def elevation(lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    return np.full(np.shape(lats), height, dtype=np.float64)

  return elevation


def ridge_at_lon(lon: float, height: float, half_width_deg: float = 0.002, base: float = 100.0) -> ElevationFn:
  """Flat terrain at `base` with a north-south wall centered on `lon`."""

  def elevation(lats: np.ndarray, lons: np.ndarray) -> np.ndarray:
    return np.where(np.abs(lons - lon) <= half_width_deg, height, base)

  return elevation


def thread_settings(**concurrency) -> EngineSettings:
  options = {"mode": "thread", "max_workers": 2, "poll_interval_s": 0.01}
  options.update(concurrency)
  return EngineSettings(
    tiles=TileConfig(retry_count=1, retry_delay_s=0.0),
    concurrency=ConcurrencyConfig(**options),
  )


@pytest.fixture
def flat_source() -> SyntheticTileSource:
  return SyntheticTileSource(flat(100.0))


@pytest.fixture
def flat_engine(flat_source: SyntheticTileSource) -> TaskEngine:
  return TaskEngine(thread_settings(), source=flat_source)
