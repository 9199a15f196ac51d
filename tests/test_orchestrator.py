import os
import signal
import sys
import threading

import pytest

from aptflow.core.configuration import ToolCommand
from aptflow.core.errors import ExitCode, ReadinessTimeout
from aptflow.core.models import RunConfig, RunState, StepName
from aptflow.core.orchestrator import RunOrchestrator, cancel_on_signals


def _orchestrator(tmp_path, tools, no_sleep, **cfg):
    cfg.setdefault("start_delay_seconds", 1)
    return RunOrchestrator(RunConfig(**cfg), tools, tmp_path, sleep=no_sleep)


def _assert_torn_down(orch):
    assert orch.session is not None
    assert orch.session.stopped
    for handle in orch.session.handles:
        assert not handle.is_running, handle


def test_all_tools_succeed(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(tmp_path, fake_tools.config(), no_sleep)
    outcome = orch.run()

    assert outcome.state is RunState.DONE
    assert outcome.exit_code == ExitCode.OK
    assert outcome.test_exit_code == 0
    assert outcome.history == [
        RunState.IDLE,
        RunState.SESSION_STARTING,
        RunState.DELAYING,
        RunState.BUILDING,
        RunState.TESTING,
        RunState.TEARING_DOWN,
        RunState.DONE,
    ]
    assert orch.session.faucet is not None
    _assert_torn_down(orch)
    sequential = [c for c in fake_tools.calls() if c not in ("validator", "faucet")]
    assert sequential == ["compile", "publish", "test_runner"]
    # warmup before the faucet plus the rest of the delay
    assert sum(no_sleep.calls) == 1
    assert not orch.cancel_event.is_set()


def test_publish_failure_fails_run_and_tears_down(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(tmp_path, fake_tools.config(publish="fail"), no_sleep)
    outcome = orch.run()

    assert outcome.state is RunState.FAILED
    assert outcome.failing_step is StepName.PUBLISH
    assert outcome.exit_code == ExitCode.BUILD_FAILED
    assert outcome.exit_code != 0
    assert "test_runner" not in fake_tools.calls()
    assert outcome.history[-2:] == [RunState.TEARING_DOWN, RunState.FAILED]
    _assert_torn_down(orch)


def test_compile_failure_never_publishes(tmp_path, fake_tools, no_sleep):
    outcome = _orchestrator(tmp_path, fake_tools.config(compile="fail"), no_sleep).run()
    assert outcome.failing_step is StepName.COMPILE
    assert "publish" not in fake_tools.calls()
    assert "test_runner" not in fake_tools.calls()


def test_skip_faucet_run_spawns_no_faucet(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(tmp_path, fake_tools.config(), no_sleep, skip_faucet=True)
    outcome = orch.run()
    assert outcome.state is RunState.DONE
    assert orch.session.faucet is None
    assert "faucet" not in fake_tools.calls()
    assert no_sleep.calls == [1]


def test_both_skips_bypass_building_but_still_delay(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(
        tmp_path, fake_tools.config(), no_sleep,
        skip_compile=True, skip_publish=True, skip_faucet=True, start_delay_seconds=3,
    )
    outcome = orch.run()
    assert outcome.state is RunState.DONE
    assert RunState.BUILDING not in outcome.history
    assert no_sleep.calls == [3]
    assert [c for c in fake_tools.calls() if c != "validator"] == ["test_runner"]


def test_interactive_waits_for_cancellation_and_skips_tests(tmp_path, fake_tools, no_sleep):
    cancel = threading.Event()
    orch = RunOrchestrator(
        RunConfig(interactive=True, start_delay_seconds=0), fake_tools.config(), tmp_path,
        cancel_event=cancel, sleep=no_sleep,
    )
    timer = threading.Timer(0.3, cancel.set)
    timer.start()
    try:
        outcome = orch.run()
    finally:
        timer.cancel()

    assert outcome.state is RunState.DONE
    assert RunState.INTERACTIVE in outcome.history
    assert RunState.TESTING not in outcome.history
    assert "test_runner" not in fake_tools.calls()
    _assert_torn_down(orch)


def test_failing_tests_are_surfaced(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(tmp_path, fake_tools.config(test_runner="fail"), no_sleep)
    outcome = orch.run()
    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.TESTS_FAILED
    assert outcome.test_exit_code == 1
    assert outcome.failing_step is None
    _assert_torn_down(orch)


def test_missing_test_runner_is_spawn_failure(tmp_path, fake_tools, no_sleep):
    tools = fake_tools.config().model_copy(
        update={"test_runner": ToolCommand(command=str(tmp_path / "no-npm"), args=["run", "test"])}
    )
    orch = _orchestrator(tmp_path, tools, no_sleep)
    outcome = orch.run()
    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.SPAWN_FAILED
    _assert_torn_down(orch)


def test_validator_spawn_failure_fails_without_teardown(tmp_path, fake_tools, no_sleep):
    tools = fake_tools.config().model_copy(
        update={"validator": ToolCommand(command=str(tmp_path / "no-aptos-node"))}
    )
    orch = _orchestrator(tmp_path, tools, no_sleep)
    outcome = orch.run()
    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.SPAWN_FAILED
    assert outcome.history == [RunState.IDLE, RunState.SESSION_STARTING, RunState.FAILED]
    assert orch.session is None
    assert fake_tools.calls() == []


def test_readiness_timeout_fails_after_teardown(tmp_path, fake_tools, no_sleep):
    probed = []

    def probe(url, timeout):
        probed.append((url, timeout))
        raise ReadinessTimeout("127.0.0.1:8080", timeout, 3)

    orch = RunOrchestrator(
        RunConfig(start_delay_seconds=0, ready_timeout_seconds=5), fake_tools.config(), tmp_path,
        sleep=no_sleep, readiness_probe=probe,
    )
    outcome = orch.run()
    assert probed == [("http://0.0.0.0:8080", 5)]
    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.READINESS_TIMEOUT
    assert RunState.BUILDING not in outcome.history
    assert fake_tools.calls().count("compile") == 0
    _assert_torn_down(orch)


def test_readiness_probe_not_used_by_default(tmp_path, fake_tools, no_sleep):
    def probe(url, timeout):
        raise AssertionError("probe should not run")

    orch = RunOrchestrator(
        RunConfig(start_delay_seconds=0), fake_tools.config(), tmp_path, sleep=no_sleep, readiness_probe=probe
    )
    assert orch.run().state is RunState.DONE


def test_log_to_file_captures_node_output(tmp_path, fake_tools, no_sleep):
    log = tmp_path / "validator.log"
    # the "tests" only finish once both nodes have written to the log
    wait_for_nodes = (
        "import sys, time, pathlib\n"
        "p = pathlib.Path(sys.argv[1])\n"
        "deadline = time.time() + 10\n"
        "while time.time() < deadline and not all(s in p.read_text() for s in ('err from faucet', 'err from validator')):\n"
        "    time.sleep(0.02)\n"
    )
    tools = fake_tools.config(validator="chatty", faucet="chatty").model_copy(
        update={"test_runner": ToolCommand(command=sys.executable, args=["-c", wait_for_nodes, str(log)])}
    )
    orch = _orchestrator(tmp_path, tools, no_sleep, log_to_file=True, skip_compile=True, skip_publish=True)
    assert orch.run().state is RunState.DONE
    text = log.read_text()
    assert "aptflow run started" in text
    assert "out from validator" in text
    assert "err from faucet" in text


def test_no_log_file_by_default(tmp_path, fake_tools, no_sleep):
    _orchestrator(tmp_path, fake_tools.config(), no_sleep).run()
    assert not (tmp_path / "validator.log").exists()


def test_interrupt_outside_interactive_still_tears_down(tmp_path, fake_tools):
    def sleep(seconds):
        if seconds == 2:
            raise KeyboardInterrupt

    orch = RunOrchestrator(RunConfig(start_delay_seconds=3), fake_tools.config(), tmp_path, sleep=sleep)
    with pytest.raises(KeyboardInterrupt):
        orch.run()
    assert orch.state is RunState.TEARING_DOWN
    _assert_torn_down(orch)


def test_run_only_once(tmp_path, fake_tools, no_sleep):
    orch = _orchestrator(tmp_path, fake_tools.config(), no_sleep, skip_compile=True, skip_publish=True)
    orch.run()
    with pytest.raises(RuntimeError):
        orch.run()


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
def test_cancel_on_signals_sets_event_and_restores_handler():
    before = signal.getsignal(signal.SIGINT)
    event = threading.Event()
    with cancel_on_signals(event):
        os.kill(os.getpid(), signal.SIGINT)
        assert event.wait(2.0)
    assert signal.getsignal(signal.SIGINT) is before


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
def test_cancel_on_signals_restores_every_handler():
    watched = [signal.SIGINT, signal.SIGTERM, signal.SIGHUP]
    before = {s: signal.getsignal(s) for s in watched}
    with cancel_on_signals(threading.Event()):
        assert all(signal.getsignal(s) is not before[s] for s in watched)
    assert {s: signal.getsignal(s) for s in watched} == before


def _kill_self_later(signum, after=None, fake_tools=None):
    def _send():
        if after is not None:
            fake_tools.wait_for(after)
        os.kill(os.getpid(), signum)

    sender = threading.Thread(target=_send, daemon=True)
    sender.start()
    return sender


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
@pytest.mark.parametrize("signum", [signal.SIGTERM, signal.SIGHUP])
def test_termination_signal_in_interactive_tears_down(tmp_path, fake_tools, no_sleep, signum):
    cancel = threading.Event()
    orch = RunOrchestrator(
        RunConfig(interactive=True, start_delay_seconds=0, skip_compile=True, skip_publish=True),
        fake_tools.config(), tmp_path, cancel_event=cancel, sleep=no_sleep,
    )
    with cancel_on_signals(cancel):
        sender = _kill_self_later(signum, after="faucet", fake_tools=fake_tools)
        outcome = orch.run()
    sender.join(5)

    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.TERMINATED
    assert outcome.history[-2:] == [RunState.TEARING_DOWN, RunState.FAILED]
    _assert_torn_down(orch)
    assert not fake_tools.alive(fake_tools.pid_of("validator"))
    assert not fake_tools.alive(fake_tools.pid_of("faucet"))


@pytest.mark.skipif(os.name != "posix", reason="needs POSIX signals")
def test_sigterm_while_tests_run_stops_everything(tmp_path, fake_tools, no_sleep):
    cancel = threading.Event()
    orch = RunOrchestrator(
        RunConfig(start_delay_seconds=0, skip_compile=True, skip_publish=True),
        fake_tools.config(test_runner="serve"), tmp_path, cancel_event=cancel, sleep=no_sleep,
    )
    with cancel_on_signals(cancel):
        sender = _kill_self_later(signal.SIGTERM, after="test_runner", fake_tools=fake_tools)
        outcome = orch.run()
    sender.join(5)

    assert outcome.exit_code == ExitCode.TERMINATED
    assert RunState.TESTING in outcome.history
    _assert_torn_down(orch)
    assert not fake_tools.alive(fake_tools.pid_of("test_runner"))


def test_unreadable_aptos_config_fails_run_with_config_error(tmp_path, fake_tools, no_sleep):
    aptos_config = tmp_path / ".aptos" / "config.yaml"
    aptos_config.parent.mkdir()
    aptos_config.write_bytes(b"\xff\xfe\x00profiles")
    orch = _orchestrator(tmp_path, fake_tools.config(), no_sleep, skip_compile=True)
    outcome = orch.run()
    assert outcome.state is RunState.FAILED
    assert outcome.exit_code == ExitCode.CONFIG_ERROR
    assert "publish" not in fake_tools.calls()
    _assert_torn_down(orch)


def test_test_dir_outside_aptflow_dir_is_rejected(tmp_path, fake_tools, no_sleep):
    (tmp_path / "Move.toml").write_text("[package]\n")
    tools = fake_tools.config().model_copy(update={"test_dir": "."})
    outcome = _orchestrator(tmp_path, tools, no_sleep).run()
    assert outcome.exit_code == ExitCode.CONFIG_ERROR
    assert outcome.history == [RunState.IDLE, RunState.SESSION_STARTING, RunState.FAILED]
    assert (tmp_path / "Move.toml").exists()
    assert fake_tools.calls() == []
