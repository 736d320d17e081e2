from pathlib import Path

import numpy as np
import pytest
import requests

from conftest import SyntheticTileSource, flat
from sightline.dem.coords import TileKey
from sightline.dem.providers.terrarium import TerrariumTileSource
from sightline.dem.tiles import TileCache, TileLoader
from sightline.errors import TileFetchError


def _keys(count: int) -> list[TileKey]:
  return [TileKey(12, 2000 + i, 1400) for i in range(count)]


def test_cache_evicts_oldest_insert() -> None:
  cache = TileCache(max_size=3)
  keys = _keys(4)
  for key in keys[:3]:
    assert cache.put(key, np.zeros((2, 2))) is None
  cache.get(keys[0])

  evicted = cache.put(keys[3], np.zeros((2, 2)))
  assert evicted == keys[0]
  assert len(cache) == 3
  assert keys[0] not in cache


def test_cache_with_recency_tracking_evicts_least_recent() -> None:
  cache = TileCache(max_size=3, track_recency=True)
  keys = _keys(4)
  for key in keys[:3]:
    cache.put(key, np.zeros((2, 2)))
  cache.get(keys[0])

  assert cache.put(keys[3], np.zeros((2, 2))) == keys[1]
  assert keys[0] in cache


def test_cache_clear_forgets_failures() -> None:
  cache = TileCache(max_size=2)
  key = _keys(1)[0]
  cache.mark_failed(key)
  assert cache.is_failed(key)
  cache.clear()
  assert not cache.is_failed(key)
  assert len(cache) == 0


def test_loader_fetches_each_tile_once() -> None:
  source = SyntheticTileSource(flat(250.0))
  loader = TileLoader(source, TileCache(), batch_size=2)
  keys = _keys(5)

  tiles = loader.load_many(keys + keys[:2])
  assert set(tiles) == set(keys)
  assert np.allclose(tiles[keys[0]], 250.0)

  loader.load_many(keys)
  assert source.total_calls == 5


def test_loader_reports_progress() -> None:
  source = SyntheticTileSource(flat(0.0), fail_keys={_keys(3)[2]})
  loader = TileLoader(source, TileCache(), batch_size=2, retry_count=1)
  events: list[tuple[int, int, int]] = []

  loader.load_many(_keys(3), on_progress=lambda *args: events.append(args))
  assert len(events) == 3
  assert events[-1] == (2, 1, 3)


def test_loader_retries_with_backoff() -> None:
  source = SyntheticTileSource(flat(10.0), fail_times=2)
  delays: list[float] = []
  loader = TileLoader(source, TileCache(), retry_count=3, retry_delay_s=0.5, sleep=delays.append)

  tiles = loader.load_many(_keys(1))
  assert len(tiles) == 1
  assert delays == [0.5, 1.0]


def test_failed_tile_is_not_refetched_until_cleared() -> None:
  key = _keys(1)[0]
  source = SyntheticTileSource(flat(10.0), fail_keys={key})
  cache = TileCache()
  loader = TileLoader(source, cache, retry_count=2, retry_delay_s=0.0, sleep=lambda _: None)

  assert loader.load_many([key]) == {}
  assert cache.is_failed(key)
  assert source.total_calls == 2

  events: list[tuple[int, int, int]] = []
  loader.load_many([key], on_progress=lambda *args: events.append(args))
  assert source.total_calls == 2
  assert events == [(0, 1, 1)]

  cache.clear()
  loader.load_many([key])
  assert source.total_calls == 4


def test_loader_stops_between_batches() -> None:
  source = SyntheticTileSource(flat(10.0))
  loader = TileLoader(source, TileCache(), batch_size=2)

  tiles = loader.load_many(_keys(6), should_stop=lambda: source.total_calls >= 2)
  assert len(tiles) == 2


class _Response:
  def __init__(self, status_code: int, content: bytes = b"") -> None:
    self.status_code = status_code
    self.content = content


class _Session:
  def __init__(self, response: _Response | Exception) -> None:
    self.response = response
    self.urls: list[str] = []

  def get(self, url: str, timeout: float) -> _Response:
    self.urls.append(url)
    if isinstance(self.response, Exception):
      raise self.response
    return self.response

  def close(self) -> None:
    pass


def test_terrarium_source_formats_url_and_caches_to_disk(tmp_path: Path) -> None:
  session = _Session(_Response(200, b"png-bytes"))
  source = TerrariumTileSource("https://tiles.test/{z}/{x}/{y}.png", cache_dir=tmp_path, session=session)
  key = TileKey(12, 2140, 1447)

  assert source.fetch_tile(key) == b"png-bytes"
  assert session.urls == ["https://tiles.test/12/2140/1447.png"]
  assert (tmp_path / "12" / "2140" / "1447.png").read_bytes() == b"png-bytes"
  assert source.is_cached(key)

  assert source.fetch_tile(key) == b"png-bytes"
  assert len(session.urls) == 1


def test_terrarium_source_raises_on_http_error() -> None:
  source = TerrariumTileSource("https://tiles.test/{z}/{x}/{y}.png", session=_Session(_Response(404)))
  with pytest.raises(TileFetchError):
    source.fetch_tile(TileKey(1, 0, 0))


def test_terrarium_source_raises_on_connection_error() -> None:
  session = _Session(requests.ConnectionError("unreachable"))
  source = TerrariumTileSource("https://tiles.test/{z}/{x}/{y}.png", session=session)
  with pytest.raises(TileFetchError):
    source.fetch_tile(TileKey(1, 0, 0))
