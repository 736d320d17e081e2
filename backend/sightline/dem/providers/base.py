from __future__ import annotations

from abc import ABC, abstractmethod

from sightline.dem.coords import TileKey


class TileSource(ABC):
  """A source of encoded elevation tiles addressed by (z, x, y)."""

  @abstractmethod
  def fetch_tile(self, key: TileKey) -> bytes:
    """Return the encoded PNG for `key` or raise TileFetchError."""
    raise NotImplementedError

  def describe(self) -> str:
    return self.__class__.__name__

  def close(self) -> None:
    return None
