from __future__ import annotations


class SightlineError(Exception):
  """Base class for errors raised by the visibility engine."""


class ConfigurationError(SightlineError, ValueError):
  """A task or point source that cannot be computed as requested."""


class EngineBusyError(SightlineError):
  """Raised when a calculation is started while another one is running."""


class TileFetchError(SightlineError):
  def __init__(self, key: object, message: str) -> None:
    super().__init__(f"{key}: {message}")
    self.key = key
