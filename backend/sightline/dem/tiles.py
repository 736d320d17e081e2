from __future__ import annotations

import logging
import threading
import time
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Iterable

import numpy as np

from sightline.dem.coords import TileKey
from sightline.dem.providers.base import TileSource
from sightline.dem.terrarium import decode_terrarium
from sightline.errors import TileFetchError

log = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]
StopCheck = Callable[[], bool]


class TileCache:
  """
  Bounded map of decoded tiles plus the keys that failed this session.

  Eviction drops the oldest inserted entry. With `track_recency` a lookup
  also refreshes the entry, which turns the cache into a plain LRU.
  """

  def __init__(self, max_size: int = 2000, track_recency: bool = False) -> None:
    if max_size <= 0:
      raise ValueError("max_size must be positive.")
    self.max_size = max_size
    self.track_recency = track_recency
    self._entries: OrderedDict[TileKey, np.ndarray] = OrderedDict()
    self._failed: set[TileKey] = set()
    self._lock = threading.Lock()

  def get(self, key: TileKey) -> np.ndarray | None:
    with self._lock:
      raster = self._entries.get(key)
      if raster is not None and self.track_recency:
        self._entries.move_to_end(key)
      return raster

  def put(self, key: TileKey, raster: np.ndarray) -> TileKey | None:
    """Insert a tile and return the key evicted to make room, if any."""
    with self._lock:
      if key in self._entries:
        self._entries[key] = raster
        return None
      evicted = None
      if len(self._entries) >= self.max_size:
        evicted, _ = self._entries.popitem(last=False)
      self._entries[key] = raster
      self._failed.discard(key)
      return evicted

  def mark_failed(self, key: TileKey) -> None:
    with self._lock:
      self._failed.add(key)

  def is_failed(self, key: TileKey) -> bool:
    with self._lock:
      return key in self._failed

  @property
  def failed(self) -> frozenset[TileKey]:
    with self._lock:
      return frozenset(self._failed)

  def clear(self) -> None:
    with self._lock:
      self._entries.clear()
      self._failed.clear()

  def __contains__(self, key: object) -> bool:
    with self._lock:
      return key in self._entries

  def __len__(self) -> int:
    with self._lock:
      return len(self._entries)


class TileLoader:
  def __init__(
    self,
    source: TileSource,
    cache: TileCache,
    batch_size: int = 20,
    retry_count: int = 3,
    retry_delay_s: float = 0.5,
    sleep: Callable[[float], None] = time.sleep,
  ) -> None:
    self.source = source
    self.cache = cache
    self.batch_size = max(1, batch_size)
    self.retry_count = max(1, retry_count)
    self.retry_delay_s = retry_delay_s
    self._sleep = sleep

  def load_many(
    self,
    keys: Iterable[TileKey],
    on_progress: ProgressCallback | None = None,
    should_stop: StopCheck | None = None,
  ) -> dict[TileKey, np.ndarray]:
    """
    Ensure every key is cached, fetching missing ones in concurrent batches.

    Returns the decoded raster for each key that is available. Keys that
    failed earlier in the session are not retried until the cache is cleared.
    """

    requested = list(dict.fromkeys(keys))
    total = len(requested)
    tiles: dict[TileKey, np.ndarray] = {}
    pending: list[TileKey] = []
    failed = 0

    for key in requested:
      raster = self.cache.get(key)
      if raster is not None:
        tiles[key] = raster
      elif self.cache.is_failed(key):
        failed += 1
      else:
        pending.append(key)

    loaded = len(tiles)
    if not pending:
      if on_progress is not None:
        on_progress(loaded, failed, total)
      return tiles

    log.info("Loading %d tiles (%d cached, %d failed earlier)", len(pending), loaded, failed)
    with ThreadPoolExecutor(max_workers=min(self.batch_size, len(pending))) as executor:
      for start in range(0, len(pending), self.batch_size):
        if should_stop is not None and should_stop():
          log.info("Tile loading stopped after %d of %d tiles", loaded + failed, total)
          break
        batch = pending[start : start + self.batch_size]
        futures = {executor.submit(self._fetch_with_retry, key): key for key in batch}
        for future in as_completed(futures):
          key = futures[future]
          raster = future.result()
          if raster is None:
            self.cache.mark_failed(key)
            failed += 1
          else:
            self.cache.put(key, raster)
            tiles[key] = raster
            loaded += 1
          if on_progress is not None:
            on_progress(loaded, failed, total)

    if failed:
      log.warning("%d of %d tiles unavailable", failed, total)
    return tiles

  def _fetch_with_retry(self, key: TileKey) -> np.ndarray | None:
    for attempt in range(self.retry_count):
      try:
        return decode_terrarium(self.source.fetch_tile(key))
      except (TileFetchError, OSError, ValueError) as exc:
        if attempt + 1 >= self.retry_count:
          log.warning("Tile %s failed after %d attempts: %s", key, self.retry_count, exc)
          return None
        delay = self.retry_delay_s * (2**attempt)
        log.debug("Tile %s attempt %d failed (%s), retrying in %.2fs", key, attempt + 1, exc, delay)
        self._sleep(delay)
    return None
