"""
Plain-text session logs.

Two files are written next to each other:

* ``<base>_bpm.csv`` – one line per emitted result.
* ``<base>_frames.csv`` – one line per processed frame (tracking state and
  the raw sample, if one was taken).

A failing disk never stops the pipeline: the first ``OSError`` is logged
and the log is disabled for the rest of the session.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import IO, Optional, Sequence

from face_heartbeat.types import Result

logger = logging.getLogger(__name__)


class ResultLog:
    def __init__(self, base_path: str) -> None:
        self.base_path = Path(base_path)
        self._results: Optional[IO[str]] = None
        self._frames: Optional[IO[str]] = None
        try:
            self.base_path.parent.mkdir(parents=True, exist_ok=True)
            self._results = open(f"{self.base_path}_bpm.csv", "w", encoding="utf-8")
            self._frames = open(f"{self.base_path}_frames.csv", "w", encoding="utf-8")
            self._results.write("time;mean;min;max\n")
            self._frames.write("time;valid;updated;jump;b;g;r\n")
        except OSError as exc:
            logger.error("Cannot open log files at %s: %s", self.base_path, exc)
            self.close()
        else:
            logger.info("Logging results to %s_bpm.csv", self.base_path)

    @property
    def active(self) -> bool:
        return self._results is not None

    def write_result(self, result: Result) -> None:
        self._write(
            self._results,
            f"{result.timestamp};{result.mean_bpm:.3f};{result.min_bpm:.3f};{result.max_bpm:.3f}\n",
        )

    def write_frame(
        self,
        timestamp: int,
        valid: bool,
        updated: bool,
        jump: bool,
        means: Optional[Sequence[float]] = None,
    ) -> None:
        channels = ";".join(f"{m:.4f}" for m in means) if means is not None else ";;"
        self._write(
            self._frames,
            f"{timestamp};{int(valid)};{int(updated)};{int(jump)};{channels}\n",
        )

    def close(self) -> None:
        for handle in (self._results, self._frames):
            if handle is not None:
                try:
                    handle.close()
                except OSError as exc:
                    logger.warning("Error closing log file: %s", exc)
        self._results = None
        self._frames = None

    def _write(self, handle: Optional[IO[str]], line: str) -> None:
        if handle is None:
            return
        try:
            handle.write(line)
        except OSError as exc:
            logger.error("Log write failed, disabling log: %s", exc)
            self.close()
