from __future__ import annotations

import logging
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
CONSOLE_LEVELS = (logging.WARNING, logging.INFO, logging.DEBUG)
QUIET_LOGGERS = ("urllib3", "PIL")


def setup_logging(cfg: dict, verbose: int = 0) -> logging.Logger:
  """
  Route engine logs to the console and, when `cfg["file"]` is set, a log file.

  `verbose` picks the console level (0 warning, 1 info, 2+ debug). The file
  handler uses `cfg["level"]`. HTTP and image libraries stay at WARNING so tile
  fetches do not flood debug output.
  """
  console = logging.StreamHandler()
  console.setLevel(CONSOLE_LEVELS[min(max(verbose, 0), len(CONSOLE_LEVELS) - 1)])
  handlers: list[logging.Handler] = [console]

  if cfg.get("file"):
    path = Path(cfg["file"])
    path.parent.mkdir(parents=True, exist_ok=True)
    file_handler = logging.FileHandler(path)
    file_handler.setLevel(logging.getLevelName(str(cfg.get("level", "INFO")).upper()))
    handlers.append(file_handler)

  logging.basicConfig(level=logging.NOTSET, format=LOG_FORMAT, handlers=handlers, force=True)
  for name in QUIET_LOGGERS:
    logging.getLogger(name).setLevel(logging.WARNING)
  return logging.getLogger("sightline")
