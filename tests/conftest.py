import io
import os
import sys
import time
import textwrap
from pathlib import Path
from typing import Callable, Dict, List

import pytest
from rich.console import Console

from aptflow.core.configuration import ToolCommand, ToolsConfig
from aptflow.utils import console

# A stand-in for aptos-node, aptos-faucet, aptos and npm. It appends its role
# to a calls file and its pid to <role>.pid, then behaves according to its mode:
#   ok -> exit 0, fail -> exit 1, serve -> run until killed,
#   chatty -> write to stdout and stderr, then exit 0
FAKE_TOOL = textwrap.dedent(
    """
    import os, sys, time
    calls, role, mode = sys.argv[1], sys.argv[2], sys.argv[3]
    with open(os.path.join(os.path.dirname(calls), role + ".pid"), "w") as f:
        f.write(str(os.getpid()))
    with open(calls, "a") as f:
        f.write(role + " " + " ".join(sys.argv[4:]) + "\\n")
    if mode == "fail":
        sys.exit(1)
    if mode == "chatty":
        print("out from " + role, flush=True)
        print("err from " + role, file=sys.stderr, flush=True)
    if mode == "serve":
        deadline = time.time() + 60
        while time.time() < deadline:
            time.sleep(0.05)
    """
)

ROLES = ("validator", "faucet", "compile", "fund", "publish", "test_runner", "move_init", "npm_install")


class FakeTools:
    def __init__(self, root: Path):
        self.root = root
        self.script = root / "fake_tool.py"
        self.script.write_text(FAKE_TOOL)
        self.calls_file = root / "calls.log"

    def command(self, role: str, mode: str, *extra: str) -> ToolCommand:
        return ToolCommand(
            command=sys.executable,
            args=[str(self.script), str(self.calls_file), role, mode, *extra],
        )

    def config(self, **modes: str) -> ToolsConfig:
        defaults: Dict[str, str] = {
            "validator": "serve",
            "faucet": "serve",
            "compile": "ok",
            "fund": "ok",
            "publish": "ok",
            "test_runner": "ok",
            "move_init": "ok",
            "npm_install": "ok",
        }
        defaults.update(modes)
        tools = {role: self.command(role, defaults[role]) for role in ROLES}
        return ToolsConfig(**tools)

    def calls(self) -> List[str]:
        if not self.calls_file.exists():
            return []
        return [line.split(" ")[0] for line in self.calls_file.read_text().splitlines()]

    def call_lines(self) -> List[str]:
        if not self.calls_file.exists():
            return []
        return self.calls_file.read_text().splitlines()

    def wait_for(self, role: str, timeout: float = 10.0) -> None:
        """Block until a long-lived fake tool has recorded its start."""
        deadline = time.time() + timeout
        while time.time() < deadline:
            if role in self.calls():
                return
            time.sleep(0.02)
        raise AssertionError(f"{role} never started")

    def pid_of(self, role: str, timeout: float = 10.0) -> int:
        """Pid of the most recent fake tool started in ``role``."""
        pid_file = self.root / f"{role}.pid"
        deadline = time.time() + timeout
        while time.time() < deadline:
            if pid_file.exists() and pid_file.read_text():
                return int(pid_file.read_text())
            time.sleep(0.02)
        raise AssertionError(f"{role} never wrote its pid")

    @staticmethod
    def alive(pid: int) -> bool:
        try:
            os.kill(pid, 0)
        except ProcessLookupError:
            return False
        return True


@pytest.fixture
def fake_tools(tmp_path) -> FakeTools:
    return FakeTools(tmp_path)


@pytest.fixture
def no_sleep() -> Callable[[float], None]:
    slept: List[float] = []

    def _sleep(seconds: float) -> None:
        slept.append(seconds)

    _sleep.calls = slept  # type: ignore[attr-defined]
    return _sleep


@pytest.fixture(autouse=True)
def quiet_console():
    original = console.get_console()
    recorder = Console(file=io.StringIO(), record=True, width=120)
    console.set_console(recorder)
    yield recorder
    console.set_console(original)


