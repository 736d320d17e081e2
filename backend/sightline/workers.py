from __future__ import annotations

import itertools
import logging
import multiprocessing as mp
import queue
import threading
import time
from dataclasses import dataclass
from multiprocessing import shared_memory
from typing import Any, Mapping, Union

import numpy as np

from sightline.dem.coords import TILE_SIZE, TileKey
from sightline.dem.terrarium import TileSampler
from sightline.errors import SightlineError
from sightline.los import evaluate_targets
from sightline.models import GridCell, StationPoint

log = logging.getLogger(__name__)

TILE_DTYPE = np.float32


@dataclass(frozen=True)
class ChunkParams:
  origin: StationPoint
  target_height: float
  zoom: int
  samples: int
  k_factor: float
  frequency_mhz: float | None
  fresnel_zone_percent: float


@dataclass(frozen=True)
class LoadTiles:
  request_id: int
  zoom: int
  keys: tuple[TileKey, ...]
  shm_name: str | None = None
  tiles: Mapping[TileKey, np.ndarray] | None = None


@dataclass(frozen=True)
class EvaluateChunk:
  request_id: int
  chunk_index: int
  points: np.ndarray
  params: ChunkParams


@dataclass(frozen=True)
class Shutdown:
  pass


@dataclass(frozen=True)
class TilesReady:
  request_id: int
  unit_id: int
  tile_count: int


@dataclass(frozen=True)
class ChunkDone:
  request_id: int
  unit_id: int
  chunk_index: int
  cells: list[GridCell]


@dataclass(frozen=True)
class ChunkFailed:
  request_id: int
  unit_id: int
  chunk_index: int
  error: str


Request = Union[LoadTiles, EvaluateChunk, Shutdown]
Response = Union[TilesReady, ChunkDone, ChunkFailed]


def worker_main(unit_id: int, requests: Any, responses: Any) -> None:
  """Message loop of one execution unit. Holds a private copy of the tiles."""

  sampler: TileSampler | None = None
  while True:
    message = requests.get()
    if isinstance(message, Shutdown):
      break
    if isinstance(message, LoadTiles):
      tiles = _receive_tiles(message)
      sampler = TileSampler(tiles, message.zoom, interpolation="nearest")
      responses.put(TilesReady(message.request_id, unit_id, len(tiles)))
    elif isinstance(message, EvaluateChunk):
      try:
        if sampler is None:
          raise SightlineError("Tiles were not loaded before the first chunk.")
        params = message.params
        cells = evaluate_targets(
          params.origin,
          message.points,
          params.target_height,
          sampler,
          samples=params.samples,
          k_factor=params.k_factor,
          frequency_mhz=params.frequency_mhz,
          fresnel_zone_percent=params.fresnel_zone_percent,
        )
      except Exception as exc:
        log.exception("Unit %d failed on chunk %d", unit_id, message.chunk_index)
        responses.put(ChunkFailed(message.request_id, unit_id, message.chunk_index, f"{type(exc).__name__}: {exc}"))
      else:
        responses.put(ChunkDone(message.request_id, unit_id, message.chunk_index, cells))


def _receive_tiles(message: LoadTiles) -> dict[TileKey, np.ndarray]:
  if message.tiles is not None:
    return dict(message.tiles)
  if message.shm_name is None or not message.keys:
    return {}

  shm = shared_memory.SharedMemory(name=message.shm_name)
  try:
    block = np.ndarray((len(message.keys), TILE_SIZE, TILE_SIZE), dtype=TILE_DTYPE, buffer=shm.buf)
    tiles = {key: np.array(block[index]) for index, key in enumerate(message.keys)}
    del block
  finally:
    shm.close()
  return tiles


class WorkerPool:
  """
  A fixed set of execution units fed through per-unit request queues.

  All units answer on one shared response queue; every response carries
  the unit id and the request id it answers.
  """

  def __init__(self, size: int, mode: str = "process") -> None:
    if size < 1:
      raise ValueError("Pool size must be at least 1.")
    if mode not in ("process", "thread"):
      raise ValueError(f"Unknown worker mode: {mode}")
    self.size = size
    self.mode = mode
    self._ids = itertools.count(1)
    self._requests: dict[int, Any] = {}
    self._handles: dict[int, Any] = {}
    self._retired: set[int] = set()
    self._responses: Any = None
    self._started = False

  def start(self) -> WorkerPool:
    if self._started:
      return self
    if self.mode == "process":
      ctx = mp.get_context("spawn")
      self._responses = ctx.Queue()
      for unit_id in range(self.size):
        requests = ctx.Queue()
        process = ctx.Process(
          target=worker_main,
          args=(unit_id, requests, self._responses),
          name=f"sightline-unit-{unit_id}",
          daemon=True,
        )
        process.start()
        self._requests[unit_id] = requests
        self._handles[unit_id] = process
    else:
      self._responses = queue.Queue()
      for unit_id in range(self.size):
        requests: Any = queue.Queue()
        thread = threading.Thread(
          target=worker_main,
          args=(unit_id, requests, self._responses),
          name=f"sightline-unit-{unit_id}",
          daemon=True,
        )
        thread.start()
        self._requests[unit_id] = requests
        self._handles[unit_id] = thread
    self._started = True
    log.info("Started %d %s units", self.size, self.mode)
    return self

  @property
  def live_units(self) -> list[int]:
    return [unit_id for unit_id in self._handles if unit_id not in self._retired]

  def broadcast_tiles(self, tiles: Mapping[TileKey, np.ndarray], zoom: int, timeout_s: float) -> list[int]:
    """
    Send every live unit its own copy of `tiles` and wait for acknowledgements.

    Units that do not confirm within `timeout_s` are retired. Returns the
    ids of the units that are ready.
    """

    request_id = next(self._ids)
    keys = tuple(tiles)
    shm = None
    try:
      if self.mode == "process":
        if keys:
          shm = shared_memory.SharedMemory(create=True, size=len(keys) * TILE_SIZE * TILE_SIZE * np.dtype(TILE_DTYPE).itemsize)
          block = np.ndarray((len(keys), TILE_SIZE, TILE_SIZE), dtype=TILE_DTYPE, buffer=shm.buf)
          for index, key in enumerate(keys):
            block[index] = tiles[key]
          del block
        for unit_id in self.live_units:
          self._requests[unit_id].put(LoadTiles(request_id, zoom, keys, shm_name=shm.name if shm else None))
      else:
        for unit_id in self.live_units:
          private = {key: np.array(tiles[key]) for key in keys}
          self._requests[unit_id].put(LoadTiles(request_id, zoom, keys, tiles=private))

      waiting = set(self.live_units)
      deadline = time.monotonic() + timeout_s
      while waiting:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
          break
        response = self.receive(remaining)
        if isinstance(response, TilesReady) and response.request_id == request_id:
          waiting.discard(response.unit_id)
    finally:
      if shm is not None:
        shm.close()
        shm.unlink()

    for unit_id in waiting:
      log.warning("Unit %d did not confirm tiles within %.1fs; retiring it", unit_id, timeout_s)
      self.retire(unit_id)
    ready = self.live_units
    if not ready:
      raise SightlineError("No execution unit confirmed the tile broadcast.")
    return ready

  def submit(self, unit_id: int, chunk_index: int, points: np.ndarray, params: ChunkParams) -> int:
    request_id = next(self._ids)
    self._requests[unit_id].put(EvaluateChunk(request_id, chunk_index, points, params))
    return request_id

  def receive(self, timeout_s: float) -> Response | None:
    try:
      return self._responses.get(timeout=max(0.0, timeout_s))
    except queue.Empty:
      return None

  def retire(self, unit_id: int) -> None:
    """Stop using a unit. Process units are terminated; thread units exit after their current chunk."""
    if unit_id in self._retired or unit_id not in self._handles:
      return
    self._retired.add(unit_id)
    handle = self._handles[unit_id]
    if self.mode == "process":
      handle.terminate()
    else:
      self._requests[unit_id].put(Shutdown())

  def shutdown(self, timeout_s: float = 5.0) -> None:
    if not self._started:
      return
    for unit_id in self.live_units:
      self._requests[unit_id].put(Shutdown())
    deadline = time.monotonic() + timeout_s
    for handle in self._handles.values():
      handle.join(max(0.0, deadline - time.monotonic()))
      if self.mode == "process" and handle.is_alive():
        handle.terminate()
        handle.join(1.0)
    if self.mode == "process":
      for requests in self._requests.values():
        requests.close()
        requests.cancel_join_thread()
      self._responses.close()
      self._responses.cancel_join_thread()
    self._started = False
    log.info("Pool of %d %s units shut down", self.size, self.mode)

  def __enter__(self) -> WorkerPool:
    return self.start()

  def __exit__(self, *exc_info: object) -> None:
    self.shutdown()
