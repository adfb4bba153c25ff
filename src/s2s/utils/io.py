"""Logging, run directories and metrics output.

Kept boring on purpose:
- one run directory per job, holding a resolved config snapshot,
  `metrics.jsonl` and (optionally) `train.log`
- JSONL is append-only, one row per epoch, readable even after a crash
"""

from __future__ import annotations

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Any

from s2s.config import Config

_CONSOLE_QUIET = ("jax", "jaxlib", "absl")
_PLAIN_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"


class _QuietThirdParty(logging.Filter):
    """Drop INFO chatter from JAX internals on the console."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.split(".", 1)[0] in _CONSOLE_QUIET:
            return record.levelno >= logging.WARNING
        return True


def _make_console_handler(level: int, use_rich: bool) -> logging.Handler:
    if use_rich:
        from rich.logging import RichHandler

        handler: logging.Handler = RichHandler(show_time=True, show_level=True, show_path=False)
        handler.setFormatter(logging.Formatter("%(message)s"))
    else:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_PLAIN_FORMAT))
    handler.setLevel(level)
    handler.addFilter(_QuietThirdParty())
    return handler


def setup_logging(level: str, *, use_rich: bool = True) -> None:
    """Configure the root logger with a single console handler.

    Re-running replaces existing handlers instead of stacking new ones.

    :param str level: Level name (DEBUG, INFO, WARNING, ERROR).
    :param bool use_rich: Render console logs with Rich.
    """
    numeric = getattr(logging, level, logging.INFO)
    root = logging.getLogger()
    root.setLevel(numeric)
    for h in list(root.handlers):
        root.removeHandler(h)
    root.addHandler(_make_console_handler(numeric, use_rich))


def add_file_logging(path: str | Path, *, level: str) -> logging.Handler:
    """Attach a file handler to the root logger and return it.

    The caller owns the handler and should remove + close it when the run ends.

    :param path: Log file path.
    :param str level: Level name (DEBUG, INFO, WARNING, ERROR).
    :return logging.Handler: The attached handler.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    numeric = getattr(logging, level, logging.INFO)
    handler = logging.FileHandler(path, encoding="utf-8")
    handler.setLevel(numeric)
    handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
    root = logging.getLogger()
    # Records below the root level never reach any handler.
    if root.getEffectiveLevel() > numeric:
        root.setLevel(numeric)
    root.addHandler(handler)
    return handler


def create_run_dir(cfg: Config, *, config_path: str | Path | None = None) -> Path:
    """Create the run directory and snapshot the resolved config.

    - logging.run_dir set: use it, refusing to reuse an existing directory
    - otherwise: runs/<project>/<timestamp>_<config stem>

    :param Config cfg: Run configuration.
    :param config_path: Original YAML path (copied next to the snapshot).
    :raises RuntimeError: If logging.run_dir already exists.
    :return Path: The new run directory.
    """
    if cfg.logging.run_dir is not None:
        run_dir = Path(cfg.logging.run_dir)
        if run_dir.exists():
            raise RuntimeError(
                f"Run dir already exists: {run_dir}. Refusing to clobber; "
                "set logging.run_dir to a new path."
            )
    else:
        stamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        name = Path(config_path).stem if config_path is not None else "run"
        run_dir = Path("runs") / cfg.logging.project / f"{stamp}_{name}"
    run_dir.mkdir(parents=True, exist_ok=False)

    (run_dir / "config_resolved.json").write_text(json.dumps(cfg.to_dict(), indent=2, sort_keys=True))
    if config_path is not None and Path(config_path).exists():
        (run_dir / "config_original.yaml").write_text(Path(config_path).read_text())
    return run_dir


class MetricsWriter:
    """Append-only JSONL writer; one flushed line per `write`."""

    def __init__(self, path: str | Path):
        self.path = Path(path)
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self._f = self.path.open("a", buffering=1, encoding="utf-8")

    def write(self, row: dict[str, Any]) -> None:
        self._f.write(json.dumps(row, ensure_ascii=False) + "\n")
        self._f.flush()

    def close(self) -> None:
        if not self._f.closed:
            self._f.close()

    def __enter__(self) -> MetricsWriter:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()
