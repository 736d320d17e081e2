from __future__ import annotations

import logging
import os
from pathlib import Path

import requests

from sightline.dem.coords import TileKey
from sightline.dem.providers.base import TileSource
from sightline.errors import TileFetchError
from sightline.settings import DEFAULT_TILE_URL

log = logging.getLogger(__name__)


class TerrariumTileSource(TileSource):
  def __init__(
    self,
    tile_url: str = DEFAULT_TILE_URL,
    timeout_s: float = 10.0,
    cache_dir: Path | None = None,
    session: requests.Session | None = None,
  ) -> None:
    self.tile_url = tile_url
    self.timeout_s = timeout_s
    self.cache_dir = cache_dir
    self.session = session or requests.Session()

  def fetch_tile(self, key: TileKey) -> bytes:
    tile_path = self._get_tile_path(key)
    if tile_path is not None and tile_path.exists():
      return tile_path.read_bytes()

    url = self.tile_url.format(z=key.z, x=key.x, y=key.y)
    try:
      response = self.session.get(url, timeout=self.timeout_s)
    except requests.RequestException as exc:
      raise TileFetchError(key, f"request failed: {exc}") from exc
    if response.status_code != 200:
      raise TileFetchError(key, f"HTTP {response.status_code} from {url}")

    if tile_path is not None:
      self._store(tile_path, response.content)
    return response.content

  def is_cached(self, key: TileKey) -> bool:
    tile_path = self._get_tile_path(key)
    return tile_path is not None and tile_path.exists()

  def describe(self) -> str:
    return f"terrarium:{self.tile_url}"

  def close(self) -> None:
    self.session.close()

  def _store(self, tile_path: Path, content: bytes) -> None:
    tile_path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = tile_path.with_name(f"{tile_path.stem}.{os.getpid()}.tmp")
    tmp_path.write_bytes(content)
    tmp_path.replace(tile_path)
    log.debug("Cached tile at %s", tile_path)

  def _get_tile_path(self, key: TileKey) -> Path | None:
    if self.cache_dir is None:
      return None
    return self.cache_dir / str(key.z) / str(key.x) / f"{key.y}.png"
