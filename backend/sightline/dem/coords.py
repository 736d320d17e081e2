from __future__ import annotations

import math
from typing import NamedTuple

import numpy as np
from affine import Affine

from sightline.geodesy import MAX_MERCATOR_LAT
from sightline.models import Bounds

TILE_SIZE = 256
MERCATOR_RADIUS_M = 6378137.0
ORIGIN_SHIFT = math.pi * MERCATOR_RADIUS_M
INITIAL_RESOLUTION = 2 * math.pi * MERCATOR_RADIUS_M / TILE_SIZE


class TileKey(NamedTuple):
  z: int
  x: int
  y: int

  def __str__(self) -> str:
    return f"{self.z}/{self.x}/{self.y}"


def pixel_transform(zoom: int) -> Affine:
  """Global pixel (col, row) at `zoom` to EPSG:3857 meters."""

  res = INITIAL_RESOLUTION / (2**zoom)
  return Affine(res, 0.0, -ORIGIN_SHIFT, 0.0, -res, ORIGIN_SHIFT)


def lonlat_to_mercator(lons, lats) -> tuple[np.ndarray, np.ndarray]:
  lons = np.asarray(lons, dtype=np.float64)
  lat_rad = np.radians(np.clip(np.asarray(lats, dtype=np.float64), -MAX_MERCATOR_LAT, MAX_MERCATOR_LAT))
  x = MERCATOR_RADIUS_M * np.radians(lons)
  y = MERCATOR_RADIUS_M * np.log(np.tan(np.pi / 4.0 + lat_rad / 2.0))
  return x, y


def lonlat_to_global_pixel(lons, lats, zoom: int) -> tuple[np.ndarray, np.ndarray]:
  """Fractional global pixel coordinates, unclamped."""

  x, y = lonlat_to_mercator(lons, lats)
  col, row = ~pixel_transform(zoom) * (x, y)
  return np.asarray(col, dtype=np.float64), np.asarray(row, dtype=np.float64)


def lonlat_to_tile_pixel(lons, lats, zoom: int) -> tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
  """
  Map lon/lat to (tile_x, tile_y, pixel_x, pixel_y) integer arrays.

  Latitude is clamped to +-85.05 before projection, tile indices to
  [0, 2^zoom - 1] and pixels to [0, TILE_SIZE - 1].
  """

  n = 1 << zoom
  col, row = lonlat_to_global_pixel(lons, lats, zoom)
  tile_fx = col / TILE_SIZE
  tile_fy = row / TILE_SIZE
  tile_x = np.floor(tile_fx).astype(np.int64)
  tile_y = np.floor(tile_fy).astype(np.int64)
  pixel_x = np.floor((tile_fx - tile_x) * TILE_SIZE).astype(np.int64)
  pixel_y = np.floor((tile_fy - tile_y) * TILE_SIZE).astype(np.int64)
  return (
    np.clip(tile_x, 0, n - 1),
    np.clip(tile_y, 0, n - 1),
    np.clip(pixel_x, 0, TILE_SIZE - 1),
    np.clip(pixel_y, 0, TILE_SIZE - 1),
  )


def tile_for_point(lat: float, lon: float, zoom: int) -> TileKey:
  tx, ty, _, _ = lonlat_to_tile_pixel(lon, lat, zoom)
  return TileKey(zoom, int(tx), int(ty))


def tile_pixel_to_lonlat(key: TileKey, pixel_x: float, pixel_y: float) -> tuple[float, float]:
  """Center of a tile pixel as (lon, lat)."""

  col = key.x * TILE_SIZE + pixel_x + 0.5
  row = key.y * TILE_SIZE + pixel_y + 0.5
  x, y = pixel_transform(key.z) * (col, row)
  lon = math.degrees(x / MERCATOR_RADIUS_M)
  lat = math.degrees(2 * math.atan(math.exp(y / MERCATOR_RADIUS_M)) - math.pi / 2)
  return lon, lat


def pixel_size_m(zoom: int, lat: float) -> float:
  """Ground size of one tile pixel at `lat`."""

  lat_clamped = max(min(lat, MAX_MERCATOR_LAT), -MAX_MERCATOR_LAT)
  return INITIAL_RESOLUTION * math.cos(math.radians(lat_clamped)) / (2**zoom)


def tile_keys_for_bounds(bounds: Bounds, zoom: int) -> list[TileKey]:
  min_tx, min_ty, _, _ = lonlat_to_tile_pixel(bounds.west, bounds.north, zoom)
  max_tx, max_ty, _, _ = lonlat_to_tile_pixel(bounds.east, bounds.south, zoom)
  return [
    TileKey(zoom, int(tx), int(ty))
    for ty in range(int(min_ty), int(max_ty) + 1)
    for tx in range(int(min_tx), int(max_tx) + 1)
  ]


def tile_keys_for_points(lats, lons, zoom: int) -> set[TileKey]:
  tx, ty, _, _ = lonlat_to_tile_pixel(lons, lats, zoom)
  pairs = np.unique(np.stack([np.ravel(tx), np.ravel(ty)], axis=1), axis=0)
  return {TileKey(zoom, int(x), int(y)) for x, y in pairs}
