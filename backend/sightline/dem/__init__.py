from __future__ import annotations

from pathlib import Path

from sightline.dem.coords import (
  TILE_SIZE,
  TileKey,
  lonlat_to_tile_pixel,
  tile_for_point,
  tile_keys_for_bounds,
  tile_pixel_to_lonlat,
)
from sightline.dem.providers.base import TileSource
from sightline.dem.providers.terrarium import TerrariumTileSource
from sightline.dem.terrarium import TileSampler, decode_terrarium
from sightline.dem.tiles import TileCache, TileLoader
from sightline.settings import TileConfig


def source_from_config(config: TileConfig) -> TileSource:
  cache_dir = Path(config.cache_dir).expanduser() if config.cache_dir else None
  return TerrariumTileSource(
    tile_url=config.url,
    timeout_s=config.timeout_s,
    cache_dir=cache_dir,
  )


__all__ = [
  "TILE_SIZE",
  "TerrariumTileSource",
  "TileCache",
  "TileKey",
  "TileLoader",
  "TileSampler",
  "TileSource",
  "decode_terrarium",
  "lonlat_to_tile_pixel",
  "source_from_config",
  "tile_for_point",
  "tile_keys_for_bounds",
  "tile_pixel_to_lonlat",
]
