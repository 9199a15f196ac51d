"""
Error kinds raised by the orchestration core.

Every error carries the process exit code the CLI reports for it, so that the
invoking shell can tell a build failure from a test failure from a tool that
could not be started.
"""

from __future__ import annotations

from enum import IntEnum
from pathlib import Path
from typing import Optional


class ExitCode(IntEnum):
    """Exit codes exposed to the invoking shell."""
    OK = 0
    ERROR = 1
    BUILD_FAILED = 2
    TESTS_FAILED = 3
    SPAWN_FAILED = 4
    ABNORMAL_EXIT = 5
    READINESS_TIMEOUT = 6
    CONFIG_ERROR = 7
    TERMINATED = 8


class AptflowError(Exception):
    """Base class for all aptflow failures."""
    exit_code: ExitCode = ExitCode.ERROR


class ConfigurationError(AptflowError):
    """Invalid aptflow.yaml, run options or project layout."""
    exit_code = ExitCode.CONFIG_ERROR


class SpawnError(AptflowError):
    """An external executable was missing or the OS refused to start it."""
    exit_code = ExitCode.SPAWN_FAILED

    def __init__(self, label: str, command: str, reason: str):
        self.label = label
        self.command = command
        self.reason = reason
        super().__init__(f"could not start {label} ('{command}'): {reason}")


class SessionStartError(SpawnError):
    """Validator or faucet bring-up failed; nothing was left running."""

    def __init__(self, component: str, cause: SpawnError):
        self.component = component
        self.cause = cause
        super().__init__(cause.label, cause.command, cause.reason)
        self.args = (f"failed to start {component}: {cause}",)


class StepFailure(AptflowError):
    """A build step (compile, publish, scaffolding) exited non-zero."""
    exit_code = ExitCode.BUILD_FAILED

    def __init__(self, step: str, returncode: Optional[int]):
        self.step = step
        self.returncode = returncode
        super().__init__(f"{step} failed with exit code {returncode}")


class TestRunnerFailure(AptflowError):
    """The end-to-end test runner exited non-zero."""
    __test__ = False
    exit_code = ExitCode.TESTS_FAILED

    def __init__(self, returncode: int):
        self.returncode = returncode
        super().__init__(f"e2e tests failed with exit code {returncode}")


class AbnormalExit(AptflowError):
    """A process was killed by a signal instead of exiting."""
    exit_code = ExitCode.ABNORMAL_EXIT

    def __init__(self, label: str, signum: int):
        self.label = label
        self.signum = signum
        super().__init__(f"{label} was killed by signal {signum}")


class LogSinkError(AptflowError):
    """The node log file could not be created or appended to."""

    def __init__(self, path: Path, cause: OSError):
        self.path = Path(path)
        self.cause = cause
        super().__init__(f"cannot write log file {self.path}: {cause}")


class ReadinessTimeout(AptflowError):
    """The validator did not accept connections within the probe timeout."""
    exit_code = ExitCode.READINESS_TIMEOUT

    def __init__(self, endpoint: str, timeout: float, attempts: int):
        self.endpoint = endpoint
        self.timeout = timeout
        self.attempts = attempts
        super().__init__(
            f"validator at {endpoint} not ready after {timeout:g}s ({attempts} attempts)"
        )


class Terminated(AptflowError):
    """aptflow itself received SIGTERM or SIGHUP; the run is torn down."""
    exit_code = ExitCode.TERMINATED

    def __init__(self, signum: int):
        self.signum = signum
        super().__init__(f"terminated by signal {signum}")
