#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import logging
import sys
from concurrent.futures import ThreadPoolExecutor, as_completed
from pathlib import Path

ROOT_DIR = Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT_DIR))

from sightline.dem.coords import TileKey, tile_keys_for_bounds
from sightline.dem.providers.terrarium import TerrariumTileSource
from sightline.errors import TileFetchError
from sightline.models import Bounds
from sightline.settings import load_settings
from sightline.utils.logging import setup_logging


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
  parser = argparse.ArgumentParser(description="Prefetch Terrarium elevation tiles for a bounding box.")
  parser.add_argument("--min-lat", type=float, required=True, help="Minimum latitude")
  parser.add_argument("--min-lon", type=float, required=True, help="Minimum longitude")
  parser.add_argument("--max-lat", type=float, required=True, help="Maximum latitude")
  parser.add_argument("--max-lon", type=float, required=True, help="Maximum longitude")
  parser.add_argument(
    "--zoom",
    type=int,
    action="append",
    help="Zoom level to fetch; repeat for several levels (default 12).",
  )
  parser.add_argument("--cache-dir", type=Path, help="Tile cache directory (overrides config).")
  parser.add_argument("--config", type=Path, help="YAML settings file.")
  parser.add_argument(
    "--resume",
    action=argparse.BooleanOptionalAction,
    default=True,
    help="Retry tiles listed in the previous failed-tiles manifest first.",
  )
  parser.add_argument(
    "--workers",
    type=int,
    default=8,
    help="Number of parallel download workers.",
  )
  parser.add_argument("-v", "--verbose", action="count", default=0)
  return parser.parse_args(argv)


def main(argv: list[str] | None = None) -> int:
  args = parse_args(argv)
  settings = load_settings(args.config)
  setup_logging(settings.logging, verbose=args.verbose)

  cache_dir = args.cache_dir or (Path(settings.tiles.cache_dir).expanduser() if settings.tiles.cache_dir else None)
  if cache_dir is None:
    raise SystemExit("No cache directory. Pass --cache-dir or set tiles.cache_dir / SIGHTLINE_CACHE_DIR.")
  if args.min_lat >= args.max_lat or args.min_lon >= args.max_lon:
    raise SystemExit("Bounding box must have min < max on both axes.")

  cache_dir.mkdir(parents=True, exist_ok=True)
  source = TerrariumTileSource(settings.tiles.url, timeout_s=settings.tiles.timeout_s, cache_dir=cache_dir)
  print(f"Using cache dir: {cache_dir}")

  bounds = Bounds(west=args.min_lon, south=args.min_lat, east=args.max_lon, north=args.max_lat)
  zooms = sorted(set(args.zoom or [12]))
  manifest_path = _manifest_path(cache_dir, bounds, zooms)
  failed_tiles = _load_failed_tiles(manifest_path) if args.resume else []
  if failed_tiles:
    print(f"Resuming {len(failed_tiles)} failed tiles from {manifest_path.name}")

  tile_queue: list[TileKey] = []
  seen: set[TileKey] = set()
  for key in failed_tiles + [k for zoom in zooms for k in tile_keys_for_bounds(bounds, zoom)]:
    if key not in seen:
      tile_queue.append(key)
      seen.add(key)

  counts = {"downloaded": 0, "cached": 0, "failed": 0}
  remaining_failed: set[TileKey] = set()
  total_tiles = len(tile_queue)
  print(f"Fetching {total_tiles} tiles at zoom {', '.join(map(str, zooms))} with {args.workers} workers...")

  def fetch_one(key: TileKey) -> str:
    if source.is_cached(key):
      return "cached"
    source.fetch_tile(key)
    return "downloaded"

  completed = 0
  try:
    with ThreadPoolExecutor(max_workers=max(1, args.workers)) as executor:
      futures = {executor.submit(fetch_one, key): key for key in tile_queue}
      for future in as_completed(futures):
        key = futures[future]
        try:
          status = future.result()
        except (TileFetchError, OSError) as exc:
          logging.getLogger("sightline.prefetch").warning("Tile %s failed: %s", key, exc)
          status = "failed"
          remaining_failed.add(key)
        counts[status] += 1

        completed += 1
        if completed % 200 == 0 or completed == total_tiles:
          print(f"  progress: {completed}/{total_tiles}")
  finally:
    source.close()

  _write_manifest(manifest_path, bounds, zooms, sorted(remaining_failed))

  print("Prefetch complete:")
  print(f"  zooms: {zooms}")
  for key, value in counts.items():
    print(f"  tiles_{key}: {value}")
  if remaining_failed:
    print(f"  failed_manifest: {manifest_path}")
  return 1 if remaining_failed else 0


def _manifest_path(cache_dir: Path, bounds: Bounds, zooms: list[int]) -> Path:
  tag = "_".join(f"{value:.4f}" for value in (bounds.west, bounds.south, bounds.east, bounds.north))
  zoom_tag = "-".join(str(zoom) for zoom in zooms)
  return cache_dir / f"prefetch_{tag.replace('.', 'p')}_z{zoom_tag}.json"


def _load_failed_tiles(manifest_path: Path) -> list[TileKey]:
  if not manifest_path.exists():
    return []
  try:
    data = json.loads(manifest_path.read_text())
  except (OSError, ValueError):
    return []

  failed = data.get("failed_tiles", []) if isinstance(data, dict) else []
  if not isinstance(failed, list):
    return []
  result: list[TileKey] = []
  for item in failed:
    if isinstance(item, list) and len(item) == 3:
      result.append(TileKey(int(item[0]), int(item[1]), int(item[2])))
  return result


def _write_manifest(manifest_path: Path, bounds: Bounds, zooms: list[int], failed_tiles: list[TileKey]) -> None:
  payload = {
    "bounds": [bounds.west, bounds.south, bounds.east, bounds.north],
    "zooms": zooms,
    "failed_tiles": [list(key) for key in failed_tiles],
  }
  manifest_path.write_text(json.dumps(payload, indent=2, sort_keys=True))


if __name__ == "__main__":
  sys.exit(main())
