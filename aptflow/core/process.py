"""
Ownership wrapper around one spawned external process.
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from pathlib import Path
from typing import Any, Dict, Iterable, Optional, TYPE_CHECKING

from .errors import AbnormalExit, SpawnError

if TYPE_CHECKING:
    from .log_sink import LogSink

logger = logging.getLogger(__name__)

TERMINATE_GRACE_SECONDS = 5.0


class ProcessHandle:
    """A spawned process, reaped exactly once.

    Public API:
      - ProcessHandle.spawn(command, args, label=..., output_target=..., ...)
      - wait() -> int
      - terminate() -> None (idempotent)
      - poll(), is_running, pid, label
    """

    def __init__(
        self,
        popen: subprocess.Popen,
        label: str,
        output_target: Optional["LogSink"] = None,
        detached: bool = False,
    ):
        self._popen = popen
        self.label = label
        self.output_target = output_target
        self.detached = detached
        self._terminated = False

    @classmethod
    def spawn(
        cls,
        command: str,
        args: Iterable[str] = (),
        *,
        label: Optional[str] = None,
        output_target: Optional["LogSink"] = None,
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        detached: bool = False,
    ) -> "ProcessHandle":
        """Start ``command args...`` without a shell.

        - output_target: a LogSink receiving both stdout and stderr; None
          inherits the controlling terminal.
        - detached=True: start in a new session (POSIX) with stdin closed, so a
          terminal Ctrl+C does not reach it and terminate() signals the whole
          group. Used for long-lived processes.
        """
        argv = [command, *args]
        label = label or Path(command).name
        popen_kwargs: Dict[str, Any] = {
            "cwd": str(cwd) if cwd else None,
            "env": env,
        }
        if output_target is not None:
            popen_kwargs.update({
                "stdout": output_target.stream,
                "stderr": subprocess.STDOUT,
            })
        if detached:
            popen_kwargs["stdin"] = subprocess.DEVNULL
            if os.name == "posix":
                popen_kwargs["start_new_session"] = True

        if cwd is not None and not Path(cwd).is_dir():
            raise SpawnError(label, command, f"working directory {cwd} does not exist")

        cmd_repr = " ".join(shlex.quote(x) for x in argv)
        logger.debug(f"spawn {label}: {cmd_repr} cwd={cwd} detached={detached}")
        try:
            popen = subprocess.Popen(argv, **popen_kwargs)
        except FileNotFoundError as e:
            if e.filename not in (None, command):
                raise SpawnError(label, command, f"{e.strerror}: {e.filename}") from e
            raise SpawnError(label, command, "executable not found. Is it installed?") from e
        except OSError as e:
            raise SpawnError(label, command, str(e)) from e

        logger.info(f"Started {label} (pid {popen.pid})")
        return cls(popen, label, output_target=output_target, detached=detached)

    @property
    def pid(self) -> int:
        return self._popen.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._popen.returncode

    def poll(self) -> Optional[int]:
        return self._popen.poll()

    @property
    def is_running(self) -> bool:
        return self._popen.poll() is None

    def wait(self, timeout: Optional[float] = None) -> int:
        """Block until the process exits and return its exit code.

        Raises AbnormalExit when the process was killed by a signal.
        """
        rc = self._popen.wait(timeout=timeout)
        logger.debug(f"{self.label} (pid {self.pid}) exited rc={rc}")
        if rc < 0:
            raise AbnormalExit(self.label, -rc)
        return rc

    def terminate(self, grace_seconds: float = TERMINATE_GRACE_SECONDS) -> None:
        """Stop the process: SIGTERM, then SIGKILL after ``grace_seconds``.

        Calling it on an exited or already terminated process does nothing.
        """
        if self._terminated:
            return
        if self._popen.poll() is not None:
            self._terminated = True
            return

        logger.info(f"Terminating {self.label} (pid {self.pid})")
        self._send(kill=False)
        try:
            self._popen.wait(timeout=grace_seconds)
        except subprocess.TimeoutExpired:
            logger.warning(f"{self.label} ignored SIGTERM for {grace_seconds:g}s; killing")
            self._send(kill=True)
            self._popen.wait()
        # only once the process is reaped; an interrupted call can be repeated
        self._terminated = True

    def _send(self, kill: bool) -> None:
        try:
            if self.detached and os.name == "posix":
                os.killpg(self._popen.pid, signal.SIGKILL if kill else signal.SIGTERM)
            elif kill:
                self._popen.kill()
            else:
                self._popen.terminate()
        except ProcessLookupError:
            # exited between poll() and the signal
            pass

    def __repr__(self) -> str:
        return f"ProcessHandle(label={self.label!r}, pid={self.pid}, returncode={self.returncode})"
