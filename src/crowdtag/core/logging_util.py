"""Logging helpers for tagging runs."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Iterable, Mapping

from . import naming

LOGGER_PREFIX = "crowdtag.run"
LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] %(message)s"


def get_logger(run_id: str, *, log_path: Path | None = None) -> logging.Logger:
    """Return the logger of one tagging run (file under META_ROOT/logs + console)."""

    logger = logging.getLogger(f"{LOGGER_PREFIX}.{run_id}")
    if logger.handlers:
        return logger

    if log_path is None:
        log_path = naming.meta_paths(run_id, "run")["log_path"]

    log_path = Path(log_path)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    logger.setLevel(logging.INFO)
    formatter = logging.Formatter(LOG_FORMAT)

    file_handler = logging.FileHandler(log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)

    stream_handler = logging.StreamHandler()
    stream_handler.setFormatter(formatter)
    logger.addHandler(stream_handler)

    logger.propagate = False
    return logger


def close_logger(logger: logging.Logger) -> None:
    """Detach and close all handlers (releases the log file)."""

    for handler in list(logger.handlers):
        handler.close()
        logger.removeHandler(handler)


def log_summary(logger: logging.Logger, stats: Mapping[str, Any]) -> None:
    """Output the tagging summary; unset values are left out."""

    lines = ["=== crowdtag タグ付けサマリー ==="]
    for key, value in stats.items():
        if value is None:
            continue
        lines.append(f"{key}: {value}")
    logger.info("\n".join(lines))


def log_pending(logger: logging.Logger, rows: Iterable[Mapping[str, Any]]) -> int:
    """Warn about agents whose anchors were not all written.

    `rows` are `TaggingEngine.progress()` entries. Returns the number of agents reported.
    """

    reported = 0
    for row in rows:
        pending = row["anchors"] - row["cursor"]
        if pending <= 0:
            continue
        reported += 1
        logger.warning(
            "agent=%s pending anchors=%d next=[%s..%s] traj_end=%s",
            row["agent_id"], pending, row["next_start"], row["next_end"], row["traj_end"],
        )
    return reported
