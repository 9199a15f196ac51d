"""
Process-orchestration core: process handles, the validator session, the
build pipeline and the run state machine.
"""

from .errors import (
    ExitCode, AptflowError, ConfigurationError, SpawnError, SessionStartError,
    StepFailure, TestRunnerFailure, AbnormalExit, LogSinkError, ReadinessTimeout, Terminated,
)
from .models import RunConfig, RunState, RunOutcome, PipelineResult, PostBuildPhase, StepName
from .configuration import ToolCommand, ToolsConfig, ConfigurationLoader, read_default_account
from .process import ProcessHandle
from .log_sink import LogSink, LazyLogSink
from .session import ValidatorSession, find_mint_key_path
from .pipeline import BuildPipeline
from .readiness import wait_until_ready
from .orchestrator import RunOrchestrator, cancel_on_signals
from .scaffold import ProjectScaffolder

__all__ = [
    "ExitCode",
    "AptflowError",
    "ConfigurationError",
    "SpawnError",
    "SessionStartError",
    "StepFailure",
    "TestRunnerFailure",
    "AbnormalExit",
    "LogSinkError",
    "ReadinessTimeout",
    "Terminated",
    "RunConfig",
    "RunState",
    "RunOutcome",
    "PipelineResult",
    "PostBuildPhase",
    "StepName",
    "ToolCommand",
    "ToolsConfig",
    "ConfigurationLoader",
    "read_default_account",
    "ProcessHandle",
    "LogSink",
    "LazyLogSink",
    "ValidatorSession",
    "find_mint_key_path",
    "BuildPipeline",
    "wait_until_ready",
    "RunOrchestrator",
    "cancel_on_signals",
    "ProjectScaffolder",
]
