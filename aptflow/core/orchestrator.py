"""
Run orchestrator: the top-level state machine behind `aptflow run`.

    IDLE -> SESSION_STARTING -> DELAYING -> BUILDING -> {INTERACTIVE | TESTING}
         -> TEARING_DOWN -> DONE

A failure in SESSION_STARTING ends the run in FAILED directly. Once the
session has started, every path goes through TEARING_DOWN, which stops the
validator session, before ending in DONE or FAILED. That includes a failed
build, a failed readiness probe, failing tests, Ctrl+C in INTERACTIVE and
SIGTERM or SIGHUP in any state.
"""

from __future__ import annotations

import contextlib
import logging
import signal
import threading
import time
from pathlib import Path
from typing import Callable, Iterator, List, Optional

from aptflow.utils import console
from .configuration import ToolsConfig
from .errors import AptflowError, ExitCode, StepFailure, Terminated, TestRunnerFailure
from .log_sink import LazyLogSink
from .models import PostBuildPhase, RunConfig, RunOutcome, RunState, StepName
from .pipeline import BuildPipeline
from .process import ProcessHandle
from .readiness import wait_until_ready
from .session import ValidatorSession

logger = logging.getLogger(__name__)

CANCEL_POLL_INTERVAL = 0.5


def _termination_signals() -> List[int]:
    return [s for s in (getattr(signal, "SIGTERM", None), getattr(signal, "SIGHUP", None)) if s is not None]


@contextlib.contextmanager
def cancel_on_signals(event: threading.Event) -> Iterator[threading.Event]:
    """Route process signals into the run for the duration of the block.

    - SIGINT (Ctrl+C) sets ``event``: it ends an interactive session, and
      foreground children receive it from the terminal themselves.
    - SIGTERM and SIGHUP set ``event`` and raise Terminated once, so the
      session's scoped teardown stops the detached validator and faucet
      before aptflow exits. Later deliveries only set the event.

    Previous handlers are restored on exit. Must run on the main thread.
    """
    raised = []

    def _handle_sigint(signum, frame) -> None:
        logger.info("Received interrupt")
        event.set()

    def _handle_termination(signum, frame) -> None:
        logger.warning(f"Received signal {signum}; tearing down")
        event.set()
        if not raised:
            raised.append(signum)
            raise Terminated(signum)

    original_handlers = {signal.SIGINT: signal.signal(signal.SIGINT, _handle_sigint)}
    for signum in _termination_signals():
        original_handlers[signum] = signal.signal(signum, _handle_termination)
    try:
        yield event
    finally:
        for signum, handler in original_handlers.items():
            signal.signal(signum, handler)


class RunOrchestrator:
    """Drives one run from session start to teardown.

    Public API:
      - RunOrchestrator(config, tools, project_dir, cancel_event=None, ...)
      - run() -> RunOutcome
      - state, history, session
    """

    def __init__(
        self,
        config: RunConfig,
        tools: ToolsConfig,
        project_dir: Path,
        *,
        cancel_event: Optional[threading.Event] = None,
        sleep: Callable[[float], None] = time.sleep,
        readiness_probe: Callable[..., int] = wait_until_ready,
    ):
        self.config = config
        self.tools = tools
        self.project_dir = Path(project_dir)
        self.cancel_event = cancel_event or threading.Event()
        self._sleep = sleep
        self._readiness_probe = readiness_probe
        self._log_sink = LazyLogSink(tools.resolve(self.project_dir, tools.log_file), config.log_to_file)
        self.session: Optional[ValidatorSession] = None
        self.state = RunState.IDLE
        self.history: List[RunState] = [RunState.IDLE]
        self._failing_step: Optional[StepName] = None
        self._test_exit_code: Optional[int] = None

    def _enter(self, state: RunState) -> None:
        logger.debug(f"state {self.state.value} -> {state.value}")
        self.state = state
        self.history.append(state)

    def run(self) -> RunOutcome:
        if self.state != RunState.IDLE:
            raise RuntimeError("RunOrchestrator.run() may only be called once")

        failure: Optional[AptflowError] = None
        try:
            self._enter(RunState.SESSION_STARTING)
            try:
                self.session = ValidatorSession.start(
                    self.config,
                    self.tools,
                    self.project_dir,
                    log_sink=self._log_sink.get(),
                    sleep=self._sleep,
                )
            except AptflowError as e:
                # start() already cleaned up after itself
                console.failure(f"Error: {e}")
                self._enter(RunState.FAILED)
                return self._outcome(e)

            with self.session:
                try:
                    self._drive()
                except AptflowError as e:
                    failure = e
                    console.failure(f"Error: {e}")
                finally:
                    self._enter(RunState.TEARING_DOWN)
        finally:
            self._log_sink.close()

        if failure is not None:
            self._enter(RunState.FAILED)
            return self._outcome(failure)

        self._enter(RunState.DONE)
        console.success("Done")
        return self._outcome(None)

    def _drive(self) -> None:
        self._enter(RunState.DELAYING)
        self._delay()

        if self.config.skips_build:
            logger.info("Compile and publish both skipped")
        else:
            self._enter(RunState.BUILDING)
            result = BuildPipeline(self.tools, self.project_dir).run(self.config)
            if not result.succeeded:
                self._failing_step = result.failing_step
                raise StepFailure(result.failing_step.value, result.exit_code)

        if self.config.post_build_phase is PostBuildPhase.INTERACTIVE:
            self._enter(RunState.INTERACTIVE)
            self._wait_for_cancellation()
        else:
            self._enter(RunState.TESTING)
            self._run_tests()

    def _delay(self) -> None:
        session = self.session
        remaining = self.config.start_delay_seconds - (session.warmup_seconds if session else 0)
        if remaining > 0:
            logger.info(f"Waiting {remaining}s for the validator to spin up")
            self._sleep(remaining)
        if self.config.ready_timeout_seconds is not None:
            self._readiness_probe(self.tools.node_url, self.config.ready_timeout_seconds)

    def _wait_for_cancellation(self) -> None:
        console.success("Local Node is running.")
        console.step("End to End tests can be run separately now, or Ctrl+C\nto exit tool and close node...")
        while not self.cancel_event.wait(CANCEL_POLL_INTERVAL):
            pass
        logger.info("Interactive session cancelled")

    def _run_tests(self) -> None:
        console.step("Running e2e tests...")
        tool = self.tools.test_runner
        handle = ProcessHandle.spawn(
            tool.command,
            tool.render(**self.tools.context(self.project_dir)),
            label="test-runner",
            cwd=self.project_dir,
        )
        try:
            rc = handle.wait()
        finally:
            handle.terminate()
        self._test_exit_code = rc
        if rc != 0:
            raise TestRunnerFailure(rc)

    def _outcome(self, error: Optional[AptflowError]) -> RunOutcome:
        return RunOutcome(
            state=self.state,
            exit_code=error.exit_code if error is not None else ExitCode.OK,
            failing_step=self._failing_step,
            test_exit_code=self._test_exit_code,
            error=str(error) if error is not None else None,
            history=list(self.history),
        )
