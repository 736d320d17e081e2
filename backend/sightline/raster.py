from __future__ import annotations

import base64
import enum
import math
import threading
import time
from dataclasses import dataclass
from io import BytesIO
from typing import Callable, Generic, Iterable, TypeVar

import numpy as np
from affine import Affine
from PIL import Image

from sightline.engine import CalculationControl, EngineCallbacks, TaskEngine
from sightline.geodesy import meters_to_lat_degrees, meters_to_lon_degrees
from sightline.models import Bounds, CalculationSummary, GridCell, TaskProgress
from sightline.tasks import TaskConfig

CLEAR_RGBA = (16, 185, 129, 200)
BLOCKED_RGBA = (244, 63, 94, 200)
MAX_DIMENSION = 4096
FLUSH_INTERVAL_S = 0.5
FLUSH_DIRTY_CELLS = 50_000

T = TypeVar("T")


@dataclass(frozen=True)
class RasterStats:
  clear: int = 0
  blocked: int = 0
  no_data: int = 0


@dataclass(frozen=True)
class RasterResult:
  png_bytes: bytes
  bounds: Bounds
  width: int
  height: int
  stats: RasterStats

  @property
  def corners(self) -> list[tuple[float, float]]:
    """[NW, NE, SE, SW] as (lon, lat) pairs."""
    return self.bounds.corners()

  @property
  def png_base64(self) -> str:
    return base64.b64encode(self.png_bytes).decode("ascii")

  @property
  def data_url(self) -> str:
    return f"data:image/png;base64,{self.png_base64}"


class StreamingRasterRenderer:
  """
  Paints pass/fail cells into a persistent north-up RGBA buffer.

  One pixel per grid cell at native resolution; grids larger than
  `max_dim` on either side are scaled down and the last painted cell wins.
  """

  def __init__(
    self,
    bounds: Bounds,
    resolution_m: float,
    ref_lat: float,
    max_dim: int = MAX_DIMENSION,
  ) -> None:
    if resolution_m <= 0:
      raise ValueError("resolution_m must be positive.")
    if max_dim < 1:
      raise ValueError("max_dim must be at least 1.")
    self.bounds = bounds
    lat_step = meters_to_lat_degrees(resolution_m)
    lon_step = meters_to_lon_degrees(resolution_m, ref_lat)
    native_cols = max(1, math.ceil((bounds.east - bounds.west) / lon_step))
    native_rows = max(1, math.ceil((bounds.north - bounds.south) / lat_step))
    scale = min(1.0, max_dim / max(native_cols, native_rows))
    self.width = max(1, min(max_dim, math.ceil(native_cols * scale)))
    self.height = max(1, min(max_dim, math.ceil(native_rows * scale)))
    self.transform = Affine(lon_step / scale, 0.0, bounds.west, 0.0, -lat_step / scale, bounds.north)
    self._inverse = ~self.transform
    self._rgba = np.zeros((self.height, self.width, 4), dtype=np.uint8)
    self._lock = threading.Lock()
    self._clear = 0
    self._blocked = 0
    self._no_data = 0

  @property
  def stats(self) -> RasterStats:
    with self._lock:
      return RasterStats(self._clear, self._blocked, self._no_data)

  def pixel_for(self, lats, lons) -> tuple[np.ndarray, np.ndarray]:
    """(row, col) of each cell, clamped into the image."""
    col_f, row_f = self._inverse * (np.asarray(lons, dtype=np.float64), np.asarray(lats, dtype=np.float64))
    cols = np.clip(np.floor(col_f).astype(np.int64), 0, self.width - 1)
    rows = np.clip(np.floor(row_f).astype(np.int64), 0, self.height - 1)
    return rows, cols

  def paint(self, cells: Iterable[GridCell]) -> int:
    """Paint a batch of cells and return how many carried a verdict."""
    cells = list(cells)
    if not cells:
      return 0
    lats = np.fromiter((c.lat for c in cells), dtype=np.float64, count=len(cells))
    lons = np.fromiter((c.lon for c in cells), dtype=np.float64, count=len(cells))
    state = np.fromiter(
      (1 if c.clear is True else 0 if c.clear is False else -1 for c in cells),
      dtype=np.int8,
      count=len(cells),
    )
    rows, cols = self.pixel_for(lats, lons)
    colors = np.zeros((len(cells), 4), dtype=np.uint8)
    colors[state == 1] = CLEAR_RGBA
    colors[state == 0] = BLOCKED_RGBA
    painted = state >= 0

    with self._lock:
      self._rgba[rows[painted], cols[painted]] = colors[painted]
      self._clear += int((state == 1).sum())
      self._blocked += int((state == 0).sum())
      self._no_data += int((state == -1).sum())
    return int(painted.sum())

  def snapshot(self) -> RasterResult:
    """Encode the current buffer without holding up painters during encoding."""
    with self._lock:
      rgba = self._rgba.copy()
      stats = RasterStats(self._clear, self._blocked, self._no_data)

    image = Image.fromarray(rgba)
    buffer = BytesIO()
    image.save(buffer, format="PNG")
    return RasterResult(
      png_bytes=buffer.getvalue(),
      bounds=self.bounds,
      width=self.width,
      height=self.height,
      stats=stats,
    )


def render_cells(
  cells: list[GridCell],
  resolution_m: float,
  ref_lat: float,
  max_dim: int = MAX_DIMENSION,
) -> RasterResult | None:
  """
  Render a finished result list in one pass.

  Bounds come from the cells with a verdict, padded by half a cell. Returns
  None when no cell carries a verdict.
  """

  valid = [cell for cell in cells if cell.clear is not None]
  if not valid:
    return None

  half_lat = meters_to_lat_degrees(resolution_m) / 2.0
  half_lon = meters_to_lon_degrees(resolution_m, ref_lat) / 2.0
  bounds = Bounds(
    west=min(c.lon for c in valid) - half_lon,
    south=min(c.lat for c in valid) - half_lat,
    east=max(c.lon for c in valid) + half_lon,
    north=max(c.lat for c in valid) + half_lat,
  )
  renderer = StreamingRasterRenderer(bounds, resolution_m, ref_lat, max_dim=max_dim)
  renderer.paint(cells)
  return renderer.snapshot()


class FlushState(enum.Enum):
  IDLE = "idle"
  SCHEDULED = "scheduled"
  FLUSHING = "flushing"


class FlushScheduler(Generic[T]):
  """
  Decides when dirty raster content is worth a snapshot.

  `mark_dirty` moves idle to scheduled and flushes once the interval has
  elapsed since scheduling or enough cells are dirty. `flush` forces one.
  """

  def __init__(
    self,
    flush: Callable[[], T],
    interval_s: float = FLUSH_INTERVAL_S,
    max_dirty: int = FLUSH_DIRTY_CELLS,
    clock: Callable[[], float] = time.monotonic,
  ) -> None:
    self._flush = flush
    self.interval_s = interval_s
    self.max_dirty = max_dirty
    self._clock = clock
    self._lock = threading.Lock()
    self._state = FlushState.IDLE
    self._dirty = 0
    self._scheduled_at = 0.0

  @property
  def state(self) -> FlushState:
    return self._state

  @property
  def dirty(self) -> int:
    return self._dirty

  def mark_dirty(self, count: int = 1) -> T | None:
    with self._lock:
      self._dirty += count
      if self._state is FlushState.IDLE:
        self._state = FlushState.SCHEDULED
        self._scheduled_at = self._clock()
      due = self._state is FlushState.SCHEDULED and (
        self._dirty >= self.max_dirty or self._clock() - self._scheduled_at >= self.interval_s
      )
    if due:
      return self.flush()
    return None

  def flush(self) -> T | None:
    with self._lock:
      if self._state is FlushState.FLUSHING or self._dirty == 0:
        return None
      self._state = FlushState.FLUSHING
      self._dirty = 0
    try:
      return self._flush()
    finally:
      with self._lock:
        if self._dirty:
          self._state = FlushState.SCHEDULED
          self._scheduled_at = self._clock()
        else:
          self._state = FlushState.IDLE


@dataclass(frozen=True)
class AreaRender:
  cells: list[GridCell]
  summary: CalculationSummary
  raster: RasterResult | None
  snapshots: int


def render_area(
  engine: TaskEngine,
  config: TaskConfig,
  resolution_m: float,
  ref_lat: float,
  on_snapshot: Callable[[RasterResult], None] | None = None,
  control: CalculationControl | None = None,
  max_dim: int = MAX_DIMENSION,
  interval_s: float = FLUSH_INTERVAL_S,
  max_dirty: int = FLUSH_DIRTY_CELLS,
) -> AreaRender:
  """
  Run a calculation and paint its batches as they arrive.

  The live buffer is sized from the bounds the engine announces before
  dispatch, and its snapshots go to `on_snapshot` at the flush scheduler's
  cadence. The returned raster is re-rendered from the finished cells with
  tight bounds, and is None when no cell carried a verdict.
  """

  renderer: StreamingRasterRenderer | None = None
  scheduler: FlushScheduler[RasterResult] | None = None
  summaries: list[CalculationSummary] = []
  snapshots = 0

  def on_bounds(bounds: Bounds, _total: int) -> None:
    nonlocal renderer, scheduler
    renderer = StreamingRasterRenderer(bounds, resolution_m, ref_lat, max_dim=max_dim)
    scheduler = FlushScheduler(renderer.snapshot, interval_s=interval_s, max_dirty=max_dirty)

  def deliver(snapshot: RasterResult | None) -> None:
    nonlocal snapshots
    if snapshot is None:
      return
    snapshots += 1
    if on_snapshot is not None:
      on_snapshot(snapshot)

  def on_batch(cells: list[GridCell], _progress: TaskProgress) -> None:
    renderer.paint(cells)
    deliver(scheduler.mark_dirty(len(cells)))

  def on_complete(_cells: list[GridCell], summary: CalculationSummary) -> None:
    summaries.append(summary)

  callbacks = EngineCallbacks(on_bounds=on_bounds, on_batch=on_batch, on_complete=on_complete)
  cells = engine.calculate(config, callbacks, control)

  if scheduler is not None:
    deliver(scheduler.flush())
  raster = render_cells(cells, resolution_m, ref_lat, max_dim=max_dim)
  return AreaRender(cells=cells, summary=summaries[0], raster=raster, snapshots=snapshots)
