from __future__ import annotations

from io import BytesIO
from typing import Literal, Mapping

import numpy as np
from PIL import Image

from sightline.dem.coords import TILE_SIZE, TileKey, lonlat_to_global_pixel

MIN_VALID_ELEVATION_M = -500.0
MAX_VALID_ELEVATION_M = 9000.0

Interpolation = Literal["nearest", "bilinear"]


def decode_terrarium(png_bytes: bytes) -> np.ndarray:
  """
  Decode a Terrarium PNG into a read-only float32 elevation raster.

  Pixels with zero alpha, or whose decoded elevation falls outside
  [-500, 9000] m, are NaN.
  """

  with Image.open(BytesIO(png_bytes)) as image:
    rgba = np.asarray(image.convert("RGBA"), dtype=np.float32)

  if rgba.shape[:2] != (TILE_SIZE, TILE_SIZE):
    raise ValueError(f"Expected a {TILE_SIZE}x{TILE_SIZE} tile, got {rgba.shape[1]}x{rgba.shape[0]}.")

  r = rgba[:, :, 0]
  g = rgba[:, :, 1]
  b = rgba[:, :, 2]
  elevation = (r * 256.0 + g + b / 256.0) - 32768.0
  invalid = (rgba[:, :, 3] == 0) | (elevation < MIN_VALID_ELEVATION_M) | (elevation > MAX_VALID_ELEVATION_M)
  elevation[invalid] = np.nan
  elevation = elevation.astype(np.float32)
  elevation.setflags(write=False)
  return elevation


class TileSampler:
  """
  Elevation lookup over a fixed set of decoded tiles.

  Calling the sampler with lat/lon arrays returns float64 elevations with
  NaN wherever the tile is missing or the pixel holds no data.
  """

  def __init__(
    self,
    tiles: Mapping[TileKey, np.ndarray],
    zoom: int,
    interpolation: Interpolation = "nearest",
  ) -> None:
    if interpolation not in ("nearest", "bilinear"):
      raise ValueError(f"Unknown interpolation: {interpolation}")
    self.tiles = tiles
    self.zoom = zoom
    self.interpolation = interpolation
    self._limit = (1 << zoom) * TILE_SIZE - 1

  def __call__(self, lats, lons) -> np.ndarray:
    col, row = lonlat_to_global_pixel(lons, lats, self.zoom)
    if self.interpolation == "nearest":
      return self._lookup(np.floor(col), np.floor(row))
    return self._bilinear(col - 0.5, row - 0.5)

  def _bilinear(self, col: np.ndarray, row: np.ndarray) -> np.ndarray:
    x0 = np.floor(col)
    y0 = np.floor(row)
    fx = col - x0
    fy = row - y0

    corners = np.stack(
      [
        self._lookup(x0, y0),
        self._lookup(x0 + 1, y0),
        self._lookup(x0, y0 + 1),
        self._lookup(x0 + 1, y0 + 1),
      ]
    )
    weights = np.stack(
      [
        (1 - fx) * (1 - fy),
        fx * (1 - fy),
        (1 - fx) * fy,
        fx * fy,
      ]
    )

    valid = np.isfinite(corners)
    all_valid = valid.all(axis=0)
    any_valid = valid.any(axis=0)
    filled = np.where(valid, corners, 0.0)
    blended = (filled * weights).sum(axis=0)
    with np.errstate(invalid="ignore", divide="ignore"):
      fallback = filled.sum(axis=0) / valid.sum(axis=0)
    return np.where(all_valid, blended, np.where(any_valid, fallback, np.nan))

  def _lookup(self, gx: np.ndarray, gy: np.ndarray) -> np.ndarray:
    gx = np.clip(np.asarray(gx), 0, self._limit).astype(np.int64)
    gy = np.clip(np.asarray(gy), 0, self._limit).astype(np.int64)
    out = np.full(gx.shape, np.nan, dtype=np.float64)
    tile_x = gx // TILE_SIZE
    tile_y = gy // TILE_SIZE
    codes = tile_x * (1 << self.zoom) + tile_y
    unique_codes, inverse = np.unique(codes, return_inverse=True)
    inverse = inverse.reshape(codes.shape)
    for index, code in enumerate(unique_codes):
      key = TileKey(self.zoom, int(code) // (1 << self.zoom), int(code) % (1 << self.zoom))
      raster = self.tiles.get(key)
      if raster is None:
        continue
      selected = inverse == index
      out[selected] = raster[gy[selected] % TILE_SIZE, gx[selected] % TILE_SIZE]
    return out
