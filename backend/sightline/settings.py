from __future__ import annotations

import os
from pathlib import Path

import yaml
from pydantic import BaseModel, Field, field_validator

DEFAULT_TILE_URL = "https://s3.amazonaws.com/elevation-tiles-prod/terrarium/{z}/{x}/{y}.png"
CONFIG_ENV_VAR = "SIGHTLINE_CONFIG"


def _default_max_workers() -> int:
  return max(1, min(16, os.cpu_count() or 1))


class TileConfig(BaseModel):
  url: str = DEFAULT_TILE_URL
  cache_size: int = Field(2000, gt=0)
  track_recency: bool = False
  cache_dir: str | None = None
  retry_count: int = Field(3, ge=1)
  retry_delay_s: float = Field(0.5, ge=0)
  timeout_s: float = Field(10.0, gt=0)
  batch_size: int = Field(20, gt=0)

  @field_validator("url")
  @classmethod
  def validate_url(cls, value: str) -> str:
    for placeholder in ("{z}", "{x}", "{y}"):
      if placeholder not in value:
        raise ValueError(f"Tile URL template must contain {placeholder}.")
    return value


class ConcurrencyConfig(BaseModel):
  mode: str = Field("process", pattern="^(process|thread)$")
  max_workers: int = Field(default_factory=_default_max_workers, gt=0)
  chunk_size: int = Field(500, gt=0)
  chunk_timeout_s: float = Field(300.0, gt=0)
  tiles_ready_timeout_s: float = Field(30.0, gt=0)
  poll_interval_s: float = Field(0.1, gt=0)


class LimitsConfig(BaseModel):
  max_points: int = Field(500_000_000, gt=0)
  warn_points: int = Field(5_000_000, gt=0)


class PropagationConfig(BaseModel):
  k_factor: float = Field(4.0 / 3.0, gt=0)
  fresnel_zone_percent: float = Field(60.0, gt=0, le=100)
  area_samples: int = Field(200, ge=2)
  sample_step_m: float = Field(30.0, gt=0)
  min_samples: int = Field(10, ge=1)
  max_samples: int = Field(10_000, ge=1)


class EngineSettings(BaseModel):
  tiles: TileConfig = TileConfig()
  concurrency: ConcurrencyConfig = ConcurrencyConfig()
  limits: LimitsConfig = LimitsConfig()
  propagation: PropagationConfig = PropagationConfig()
  logging: dict = Field(default_factory=lambda: {"level": "INFO"})

  def apply_env_overrides(self) -> EngineSettings:
    tile_url = os.getenv("SIGHTLINE_TILE_URL")
    if tile_url:
      self.tiles = TileConfig(**{**self.tiles.model_dump(), "url": tile_url})
    cache_dir = os.getenv("SIGHTLINE_CACHE_DIR")
    if cache_dir:
      self.tiles = TileConfig(**{**self.tiles.model_dump(), "cache_dir": cache_dir})
    worker_mode = os.getenv("SIGHTLINE_WORKER_MODE")
    if worker_mode:
      self.concurrency = ConcurrencyConfig(**{**self.concurrency.model_dump(), "mode": worker_mode})
    return self

  @classmethod
  def from_file(cls, path: str | Path) -> EngineSettings:
    path = Path(path)
    with open(path, "r", encoding="utf-8") as f:
      data = yaml.safe_load(f) or {}
    return cls(**data)


def load_settings(path: str | Path | None = None) -> EngineSettings:
  """
  Load engine settings from a YAML file and apply environment overrides.

  The file is `path` when given, else the file named by $SIGHTLINE_CONFIG,
  else built-in defaults are used.
  """
  config_path = path or os.getenv(CONFIG_ENV_VAR)
  if config_path:
    settings = EngineSettings.from_file(config_path)
  else:
    settings = EngineSettings()
  return settings.apply_env_overrides()


__all__ = [
  "ConcurrencyConfig",
  "EngineSettings",
  "LimitsConfig",
  "PropagationConfig",
  "TileConfig",
  "load_settings",
]
