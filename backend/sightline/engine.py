from __future__ import annotations

import logging
import math
import threading
import time
from dataclasses import dataclass
from typing import Callable

import numpy as np

from sightline.dem import TileCache, TileLoader, TileSampler, source_from_config
from sightline.dem.coords import TileKey, tile_keys_for_bounds, tile_keys_for_points
from sightline.dem.providers.base import TileSource
from sightline.errors import ConfigurationError, EngineBusyError, SightlineError
from sightline.geodesy import EARTH_RADIUS_M, distance, interpolate_arrays, meters_to_lat_degrees
from sightline.grid import compute_bounds, compute_zoom, estimate_count, iter_point_chunks, zoom_for_span
from sightline.los import LOSOptions, LOSResult, line_of_sight, sample_count
from sightline.models import Bounds, CalculationSummary, GeoPoint, GridCell, StationPoint, TaskProgress
from sightline.settings import EngineSettings
from sightline.tasks import ExplicitPoints, TaskConfig
from sightline.workers import ChunkDone, ChunkParams, WorkerPool

log = logging.getLogger(__name__)

TILE_PHASE_PERCENT = 15.0
POINTS_PER_UNIT = 1000


@dataclass
class EngineCallbacks:
  on_progress: Callable[[TaskProgress], None] | None = None
  on_bounds: Callable[[Bounds, int], None] | None = None
  on_batch: Callable[[list[GridCell], TaskProgress], None] | None = None
  on_partial: Callable[[list[GridCell], TaskProgress], None] | None = None
  on_complete: Callable[[list[GridCell], CalculationSummary], None] | None = None
  on_error: Callable[[str], None] | None = None


class CalculationControl:
  """Cancel/pause handle for one calculation. Every method is idempotent."""

  def __init__(self) -> None:
    self._cancelled = threading.Event()
    self._running = threading.Event()
    self._running.set()

  def cancel(self) -> None:
    self._cancelled.set()
    self._running.set()

  def pause(self) -> None:
    if not self._cancelled.is_set():
      self._running.clear()

  def resume(self) -> None:
    self._running.set()

  @property
  def cancelled(self) -> bool:
    return self._cancelled.is_set()

  @property
  def paused(self) -> bool:
    return not self._running.is_set()

  def wait_while_paused(self, poll_interval_s: float) -> bool:
    """Block while paused. Returns False once the calculation is cancelled."""
    while not self._running.is_set():
      self._running.wait(poll_interval_s)
    return not self._cancelled.is_set()


@dataclass
class _InFlight:
  request_id: int
  chunk_index: int
  size: int
  deadline: float


class TaskEngine:
  """
  Runs area and point-list LOS calculations over a bounded pool of units.

  The engine owns its tile cache and loader. Only one `calculate` call may
  run at a time; the unit pool is created per call and torn down after it.
  """

  def __init__(self, settings: EngineSettings | None = None, source: TileSource | None = None) -> None:
    self.settings = settings or EngineSettings()
    tiles = self.settings.tiles
    self.source = source or source_from_config(tiles)
    self.cache = TileCache(max_size=tiles.cache_size, track_recency=tiles.track_recency)
    self.loader = TileLoader(
      self.source,
      self.cache,
      batch_size=tiles.batch_size,
      retry_count=tiles.retry_count,
      retry_delay_s=tiles.retry_delay_s,
    )
    self._busy = threading.Lock()
    self._control: CalculationControl | None = None

  @property
  def running(self) -> bool:
    return self._busy.locked()

  def cancel(self) -> None:
    if self._control is not None:
      self._control.cancel()

  def pause(self) -> None:
    if self._control is not None:
      self._control.pause()

  def resume(self) -> None:
    if self._control is not None:
      self._control.resume()

  def clear_cache(self) -> None:
    self.cache.clear()

  def close(self) -> None:
    self.source.close()

  def calculate(
    self,
    config: TaskConfig,
    callbacks: EngineCallbacks | None = None,
    control: CalculationControl | None = None,
  ) -> list[GridCell]:
    callbacks = callbacks or EngineCallbacks()
    control = control or CalculationControl()
    if not self._busy.acquire(blocking=False):
      raise EngineBusyError("A calculation is already running on this engine.")
    self._control = control
    try:
      return self._run(config, callbacks, control)
    except SightlineError as exc:
      _emit(callbacks.on_error, str(exc))
      raise
    finally:
      self._control = None
      self._busy.release()

  def line_of_sight(
    self,
    origin: StationPoint,
    target: StationPoint,
    options: LOSOptions | None = None,
  ) -> LOSResult:
    """Single-pair LOS with the full profile, sampled bilinearly."""

    options = options or self.default_los_options()
    total = distance(origin, target)
    zoom = zoom_for_span(total)
    n = sample_count(total, options)
    fractions = np.arange(n + 1, dtype=np.float64) / n
    lats, lons = interpolate_arrays(origin.lat, origin.lon, target.lat, target.lon, fractions)
    keys = tile_keys_for_points(np.append(lats, [origin.lat, target.lat]), np.append(lons, [origin.lon, target.lon]), zoom)
    tiles = self.loader.load_many(sorted(keys))
    sampler = TileSampler(tiles, zoom, interpolation="bilinear")
    return line_of_sight(origin, target, sampler, options)

  def sample_elevations(
    self,
    lats: np.ndarray,
    lons: np.ndarray,
    zoom: int,
    on_progress: Callable[[int, int, int], None] | None = None,
  ) -> np.ndarray:
    keys = tile_keys_for_points(lats, lons, zoom)
    tiles = self.loader.load_many(sorted(keys), on_progress=on_progress)
    return TileSampler(tiles, zoom, interpolation="nearest")(lats, lons)

  def default_los_options(self, frequency_mhz: float | None = None) -> LOSOptions:
    prop = self.settings.propagation
    return LOSOptions(
      k_factor=prop.k_factor,
      sample_step_m=prop.sample_step_m,
      min_samples=prop.min_samples,
      max_samples=prop.max_samples,
      frequency_mhz=frequency_mhz,
      fresnel_zone_percent=prop.fresnel_zone_percent,
    )

  def _run(self, config: TaskConfig, callbacks: EngineCallbacks, control: CalculationControl) -> list[GridCell]:
    started = time.monotonic()
    limits = self.settings.limits
    concurrency = self.settings.concurrency
    source = config.source

    _emit(callbacks.on_progress, TaskProgress(phase="generating"))
    total = estimate_count(source)
    if total > limits.max_points:
      raise ConfigurationError(f"Requested ~{total:,} points exceeds the limit of {limits.max_points:,}.")
    if total > limits.warn_points:
      log.warning("Large calculation: ~%s points requested", f"{total:,}")

    if isinstance(source, ExplicitPoints) and not source.points:
      return self._finish([], 0, started, control, callbacks)

    bounds = compute_bounds(source)
    _emit(callbacks.on_bounds, bounds, total)
    zoom = config.zoom if config.zoom is not None else compute_zoom(source)
    keys = self._tile_keys(config, bounds, zoom)
    log.info("Calculation of ~%d points at zoom %d needs %d tiles", total, zoom, len(keys))

    def tile_progress(loaded: int, failed: int, requested: int) -> None:
      done = (loaded + failed) / requested if requested else 1.0
      _emit(
        callbacks.on_progress,
        TaskProgress(
          phase="loading-tiles",
          tiles_loaded=loaded,
          tiles_total=requested,
          tiles_failed=failed,
          points_total=total,
          percent=TILE_PHASE_PERCENT * done,
        ),
      )

    tiles = self.loader.load_many(keys, on_progress=tile_progress, should_stop=lambda: control.cancelled)
    if control.cancelled:
      return self._finish([], 0, started, control, callbacks)

    pool_size = max(1, min(concurrency.max_workers, math.ceil(total / POINTS_PER_UNIT)))
    chunk_size = config.chunk_size or concurrency.chunk_size
    prop = self.settings.propagation
    params = ChunkParams(
      origin=config.origin,
      target_height=config.target_height,
      zoom=zoom,
      samples=prop.area_samples,
      k_factor=prop.k_factor,
      frequency_mhz=config.frequency_mhz,
      fresnel_zone_percent=prop.fresnel_zone_percent,
    )

    pool = WorkerPool(pool_size, mode=concurrency.mode)
    try:
      pool.start()
      ready = pool.broadcast_tiles(tiles, zoom, concurrency.tiles_ready_timeout_s)
      results, failed_chunks = self._dispatch(
        pool,
        ready,
        iter_point_chunks(source, chunk_size),
        params,
        total,
        callbacks,
        control,
      )
    finally:
      pool.shutdown()

    return self._finish(results, failed_chunks, started, control, callbacks)

  def _tile_keys(self, config: TaskConfig, bounds: Bounds, zoom: int) -> list[TileKey]:
    """Every tile of the result bbox extended to the origin, so each path is covered end to end."""
    origin = config.origin
    west = min(bounds.west, origin.lon)
    south = min(bounds.south, origin.lat)
    east = max(bounds.east, origin.lon)
    north = max(bounds.north, origin.lat)
    # great-circle paths bow poleward of their endpoints
    span = distance(GeoPoint(south, west), GeoPoint(north, east))
    max_lat = min(max(abs(south), abs(north)), 85.0)
    pad = meters_to_lat_degrees(span**2 / (8.0 * EARTH_RADIUS_M) * math.tan(math.radians(max_lat)))
    covering = Bounds(west=west, south=max(-90.0, south - pad), east=east, north=min(90.0, north + pad))
    return tile_keys_for_bounds(covering, zoom)

  def _dispatch(
    self,
    pool: WorkerPool,
    ready: list[int],
    stream,
    params: ChunkParams,
    total: int,
    callbacks: EngineCallbacks,
    control: CalculationControl,
  ) -> tuple[list[GridCell], int]:
    concurrency = self.settings.concurrency
    results: list[GridCell] = []
    in_flight: dict[int, _InFlight] = {}
    failed_chunks = 0
    completions = 0
    rounds = 0
    next_index = 0
    partial_every = _partial_interval(total)
    calc_started = time.monotonic()

    def dispatch(unit_id: int) -> bool:
      nonlocal next_index
      chunk = next(stream, None)
      if chunk is None:
        return False
      request_id = pool.submit(unit_id, next_index, chunk, params)
      in_flight[unit_id] = _InFlight(request_id, next_index, len(chunk), time.monotonic() + concurrency.chunk_timeout_s)
      next_index += 1
      return True

    def progress() -> TaskProgress:
      processed = len(results)
      points_total = max(total, processed)
      elapsed = time.monotonic() - calc_started
      eta = None
      if processed:
        eta = elapsed / processed * max(0, points_total - processed)
      share = processed / points_total if points_total else 1.0
      return TaskProgress(
        phase="calculating",
        points_processed=processed,
        points_total=points_total,
        percent=min(99.0, TILE_PHASE_PERCENT + (100.0 - TILE_PHASE_PERCENT) * share),
        eta_seconds=eta,
      )

    exhausted = False
    for unit_id in ready:
      if not dispatch(unit_id):
        exhausted = True
        break

    while in_flight:
      if not control.wait_while_paused(concurrency.poll_interval_s):
        break
      response = pool.receive(concurrency.poll_interval_s)
      now = time.monotonic()
      for unit_id, job in list(in_flight.items()):
        if now > job.deadline:
          log.warning("Chunk %d timed out on unit %d; retiring unit", job.chunk_index, unit_id)
          del in_flight[unit_id]
          failed_chunks += 1
          pool.retire(unit_id)
      if response is None:
        continue

      job = in_flight.get(response.unit_id)
      if job is None or job.request_id != response.request_id:
        continue
      del in_flight[response.unit_id]
      completions += 1

      if isinstance(response, ChunkDone):
        results.extend(response.cells)
        _emit(callbacks.on_batch, response.cells, progress())
      else:
        failed_chunks += 1
        log.warning("Chunk %d failed on unit %d: %s", job.chunk_index, response.unit_id, response.error)

      if control.cancelled:
        break

      live = pool.live_units
      if completions % max(1, len(live)) == 0:
        rounds += 1
        snapshot = progress()
        _emit(callbacks.on_progress, snapshot)
        if callbacks.on_partial is not None and rounds % partial_every == 0:
          callbacks.on_partial(list(results), snapshot)

      if response.unit_id not in live:
        continue
      if not control.wait_while_paused(concurrency.poll_interval_s):
        break
      if not exhausted:
        exhausted = not dispatch(response.unit_id)

    stream.close()
    if not exhausted and not control.cancelled:
      log.warning("No live units remain; points after chunk %d were skipped", next_index - 1)
    log.info(
      "Dispatch finished: %d chunks, %d cells, %d failed chunks%s",
      next_index,
      len(results),
      failed_chunks,
      " (cancelled)" if control.cancelled else "",
    )
    return results, failed_chunks

  def _finish(
    self,
    results: list[GridCell],
    failed_chunks: int,
    started: float,
    control: CalculationControl,
    callbacks: EngineCallbacks,
  ) -> list[GridCell]:
    summary = CalculationSummary.from_cells(results, failed_chunks, time.monotonic() - started, control.cancelled)
    _emit(
      callbacks.on_progress,
      TaskProgress(
        phase="finalizing",
        points_processed=len(results),
        points_total=len(results),
        percent=100.0,
        eta_seconds=0.0,
      ),
    )
    _emit(callbacks.on_complete, results, summary)
    log.info(
      "Calculation done: %d points, %d clear, %d blocked, %d no data in %.1fs",
      summary.total_processed,
      summary.clear,
      summary.blocked,
      summary.no_data,
      summary.duration_s,
    )
    return results


def _partial_interval(total: int) -> int:
  """Rounds between partial-result emissions."""
  if total > 5_000_000:
    return 100
  if total > 1_000_000:
    return 50
  return 20


def _emit(callback: Callable | None, *args: object) -> None:
  if callback is not None:
    callback(*args)
