"""
Pydantic models for run options, pipeline results and run outcomes.
"""

from __future__ import annotations

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from .errors import ExitCode

DEFAULT_START_DELAY = 14


class StepName(str, Enum):
    COMPILE = "compile"
    PUBLISH = "publish"


class PostBuildPhase(str, Enum):
    """What happens once the node is up and the package is published."""
    INTERACTIVE = "interactive"
    TESTING = "testing"


class RunState(str, Enum):
    IDLE = "idle"
    SESSION_STARTING = "session_starting"
    DELAYING = "delaying"
    BUILDING = "building"
    INTERACTIVE = "interactive"
    TESTING = "testing"
    TEARING_DOWN = "tearing_down"
    DONE = "done"
    FAILED = "failed"


class RunConfig(BaseModel):
    """Immutable options for a single `aptflow run`."""
    model_config = ConfigDict(frozen=True)

    skip_compile: bool = False
    skip_publish: bool = False
    skip_faucet: bool = False
    interactive: bool = False
    log_to_file: bool = False
    start_delay_seconds: int = Field(default=DEFAULT_START_DELAY, ge=0)
    # None keeps the plain fixed delay; a value enables the TCP readiness probe
    ready_timeout_seconds: Optional[float] = Field(default=None, gt=0)

    @property
    def post_build_phase(self) -> PostBuildPhase:
        return PostBuildPhase.INTERACTIVE if self.interactive else PostBuildPhase.TESTING

    @property
    def skips_build(self) -> bool:
        return self.skip_compile and self.skip_publish

    @property
    def faucet_warmup_seconds(self) -> int:
        """Part of the start delay spent between validator and faucet spawn."""
        if self.skip_faucet:
            return 0
        return self.start_delay_seconds // 2


class PipelineResult(BaseModel):
    succeeded: bool
    failing_step: Optional[StepName] = None
    exit_code: Optional[int] = None
    steps_run: List[StepName] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_failure(self) -> "PipelineResult":
        if self.succeeded and self.failing_step is not None:
            raise ValueError("a successful pipeline cannot have a failing step")
        if not self.succeeded and self.failing_step is None:
            raise ValueError("a failed pipeline must name its failing step")
        return self


class RunOutcome(BaseModel):
    state: RunState
    exit_code: ExitCode = ExitCode.OK
    failing_step: Optional[StepName] = None
    test_exit_code: Optional[int] = None
    error: Optional[str] = None
    history: List[RunState] = Field(default_factory=list)

    @model_validator(mode="after")
    def check_terminal(self) -> "RunOutcome":
        if self.state not in (RunState.DONE, RunState.FAILED):
            raise ValueError(f"run outcome must be terminal, got {self.state.value}")
        if (self.state == RunState.DONE) != (self.exit_code == ExitCode.OK):
            raise ValueError("only a successful run may exit with code 0")
        return self
