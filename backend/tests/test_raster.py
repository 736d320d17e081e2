import base64
from io import BytesIO

import numpy as np
from PIL import Image

from conftest import SyntheticTileSource, flat, thread_settings
from sightline.engine import TaskEngine
from sightline.models import Bounds, GridCell, StationPoint
from sightline.raster import (
  BLOCKED_RGBA,
  CLEAR_RGBA,
  FlushScheduler,
  FlushState,
  StreamingRasterRenderer,
  render_area,
  render_cells,
)
from sightline.tasks import TaskConfig

BOUNDS = Bounds(west=8.0, south=46.0, east=8.01, north=46.01)
ORIGIN = StationPoint(46.5, 8.0, height=10.0)


def _cell(lat: float, lon: float, clear: bool | None) -> GridCell:
  return GridCell(lat=lat, lon=lon, distance=0.0, clear=clear, fresnel_clear=None, has_data=clear is not None)


def _pixels(png_bytes: bytes) -> np.ndarray:
  return np.array(Image.open(BytesIO(png_bytes)).convert("RGBA"))


def test_renderer_paints_verdicts_and_leaves_gaps_transparent() -> None:
  renderer = StreamingRasterRenderer(BOUNDS, 100.0, ref_lat=46.005)
  cells = [
    _cell(46.0095, 8.0005, True),
    _cell(46.0005, 8.0095, False),
    _cell(46.005, 8.005, None),
  ]
  assert renderer.paint(cells) == 2

  result = renderer.snapshot()
  pixels = _pixels(result.png_bytes)
  assert pixels.shape == (renderer.height, renderer.width, 4)
  assert (renderer.width, renderer.height) == (8, 12)

  rows, cols = renderer.pixel_for([46.0095, 46.0005, 46.005], [8.0005, 8.0095, 8.005])
  assert tuple(pixels[rows[0], cols[0]]) == CLEAR_RGBA
  assert tuple(pixels[rows[1], cols[1]]) == BLOCKED_RGBA
  assert pixels[rows[2], cols[2], 3] == 0

  assert result.stats.clear == 1
  assert result.stats.blocked == 1
  assert result.stats.no_data == 1


def test_north_is_up() -> None:
  renderer = StreamingRasterRenderer(BOUNDS, 100.0, ref_lat=46.005)
  rows, cols = renderer.pixel_for([46.0099, BOUNDS.south], [8.0001, BOUNDS.east])
  assert rows[0] == 0 and cols[0] == 0
  assert rows[1] == renderer.height - 1 and cols[1] == renderer.width - 1


def test_snapshots_are_independent() -> None:
  renderer = StreamingRasterRenderer(BOUNDS, 100.0, ref_lat=46.005)
  renderer.paint([_cell(46.0095, 8.0005, True)])
  first = renderer.snapshot()
  renderer.paint([_cell(46.0005, 8.0095, False)])
  second = renderer.snapshot()

  assert first.stats.blocked == 0
  assert second.stats.blocked == 1
  assert first.png_bytes != second.png_bytes


def test_large_grids_are_downscaled() -> None:
  renderer = StreamingRasterRenderer(Bounds(7.0, 45.0, 9.0, 47.0), 10.0, ref_lat=46.0, max_dim=512)
  assert max(renderer.width, renderer.height) == 512
  assert renderer.width >= 1 and renderer.height >= 1
  rows, cols = renderer.pixel_for([47.0, 45.0], [9.0, 7.0])
  assert 0 <= rows.min() and rows.max() < renderer.height
  assert 0 <= cols.min() and cols.max() < renderer.width


def test_render_cells_bounds_from_valid_cells() -> None:
  cells = [_cell(46.0, 8.0, True), _cell(46.01, 8.01, False), _cell(50.0, 9.0, None)]
  result = render_cells(cells, 100.0, ref_lat=46.005)

  assert result is not None
  assert result.bounds.north > 46.01 and result.bounds.south < 46.0
  assert result.bounds.east > 8.01 and result.bounds.west < 8.0
  assert result.bounds.north < 46.02
  assert result.stats.no_data == 1


def test_render_cells_without_verdicts() -> None:
  assert render_cells([_cell(46.0, 8.0, None)], 100.0, ref_lat=46.0) is None
  assert render_cells([], 100.0, ref_lat=46.0) is None


def test_render_area_streams_intermediate_snapshots(flat_engine: TaskEngine) -> None:
  config = TaskConfig.sector(ORIGIN, 0.0, 800.0, 50.0, chunk_size=50)
  seen = []

  rendered = render_area(flat_engine, config, 50.0, ref_lat=ORIGIN.lat, on_snapshot=seen.append, interval_s=0.0)

  assert rendered.snapshots == len(seen) >= 1
  cleared = [snapshot.stats.clear for snapshot in seen]
  assert cleared == sorted(cleared)
  assert rendered.raster is not None
  assert rendered.raster.stats.clear == rendered.summary.clear == len(rendered.cells)
  assert rendered.raster.bounds.west < ORIGIN.lon < rendered.raster.bounds.east


def test_render_area_export(flat_engine: TaskEngine) -> None:
  rendered = render_area(flat_engine, TaskConfig.sector(ORIGIN, 0.0, 500.0, 100.0), 100.0, ref_lat=ORIGIN.lat)
  raster = rendered.raster

  assert raster.corners == [
    (raster.bounds.west, raster.bounds.north),
    (raster.bounds.east, raster.bounds.north),
    (raster.bounds.east, raster.bounds.south),
    (raster.bounds.west, raster.bounds.south),
  ]
  assert base64.b64decode(raster.png_base64) == raster.png_bytes
  assert raster.data_url.startswith("data:image/png;base64,")
  assert _pixels(raster.png_bytes).shape == (raster.height, raster.width, 4)


def test_render_area_without_verdicts() -> None:
  engine = TaskEngine(thread_settings(), source=SyntheticTileSource(flat(100.0), fail_times=10**9))
  config = TaskConfig.sector(ORIGIN, 100.0, 500.0, 100.0)
  rendered = render_area(engine, config, 100.0, ref_lat=ORIGIN.lat)

  assert rendered.raster is None
  assert rendered.summary.no_data == len(rendered.cells)


class _Clock:
  def __init__(self) -> None:
    self.now = 0.0

  def __call__(self) -> float:
    return self.now


def test_flush_after_interval() -> None:
  clock = _Clock()
  flushes = []
  scheduler = FlushScheduler(lambda: flushes.append(clock.now) or len(flushes), interval_s=0.5, max_dirty=1000, clock=clock)

  assert scheduler.mark_dirty(10) is None
  assert scheduler.state is FlushState.SCHEDULED
  clock.now = 0.3
  assert scheduler.mark_dirty(10) is None
  clock.now = 0.6
  assert scheduler.mark_dirty(1) == 1
  assert flushes == [0.6]
  assert scheduler.state is FlushState.IDLE
  assert scheduler.dirty == 0


def test_flush_on_dirty_threshold() -> None:
  clock = _Clock()
  flushes = []
  scheduler = FlushScheduler(lambda: flushes.append(True), interval_s=0.5, max_dirty=50_000, clock=clock)

  scheduler.mark_dirty(49_999)
  assert flushes == []
  scheduler.mark_dirty(1)
  assert flushes == [True]


def test_forced_flush_only_when_dirty() -> None:
  flushes = []
  scheduler = FlushScheduler(lambda: flushes.append(True) or "snapshot", clock=_Clock())

  assert scheduler.flush() is None
  scheduler.mark_dirty(3)
  assert scheduler.flush() == "snapshot"
  assert scheduler.flush() is None
  assert flushes == [True]
