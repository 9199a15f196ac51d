"""
Append-only log file shared by the validator and faucet processes.
"""

from __future__ import annotations

import datetime
import logging
from pathlib import Path
from typing import BinaryIO, Optional

from .errors import LogSinkError

logger = logging.getLogger(__name__)


class LogSink:
    """An open, append-mode file that child processes write into.

    The stream is unbuffered and opened with O_APPEND, so each process's
    writes land in order at the end of the file without locking.
    """

    def __init__(self, path: Path, stream: BinaryIO):
        self.path = Path(path)
        self.stream = stream

    @classmethod
    def open(cls, path: Path) -> "LogSink":
        path = Path(path)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            stream = open(path, "ab", buffering=0)
        except OSError as e:
            raise LogSinkError(path, e) from e
        logger.info(f"Logging node output to {path}")
        return cls(path, stream)

    @property
    def closed(self) -> bool:
        return self.stream.closed

    def write_header(self, text: str) -> None:
        timestamp = datetime.datetime.now(datetime.timezone.utc).isoformat()
        line = f"\n{'=' * 80}\n{text} at {timestamp}\n{'=' * 80}\n"
        try:
            self.stream.write(line.encode("utf-8"))
        except OSError as e:
            raise LogSinkError(self.path, e) from e

    def close(self) -> None:
        if not self.stream.closed:
            self.stream.close()

    def __enter__(self) -> "LogSink":
        return self

    def __exit__(self, *exc) -> None:
        self.close()


class LazyLogSink:
    """Opens the LogSink on first use, and only if logging to file is enabled.

    If the file cannot be opened the run carries on with terminal output;
    the failure is logged once and not retried.
    """

    def __init__(self, path: Path, enabled: bool):
        self.path = Path(path)
        self.enabled = enabled
        self._sink: Optional[LogSink] = None
        self._failed = False

    def get(self) -> Optional[LogSink]:
        if not self.enabled or self._failed:
            return None
        if self._sink is None:
            sink = None
            try:
                sink = LogSink.open(self.path)
                sink.write_header("aptflow run started")
            except LogSinkError as e:
                logger.warning(f"{e}; node output goes to the terminal instead")
                if sink is not None:
                    sink.close()
                self._failed = True
                return None
            self._sink = sink
        return self._sink

    @property
    def degraded(self) -> bool:
        return self._failed

    def close(self) -> None:
        if self._sink is not None:
            self._sink.close()
