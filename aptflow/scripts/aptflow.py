#!/usr/bin/env python3
"""
aptflow: a small framework to assist in testing Aptos Move programs

Commands:
  aptflow init NAME   # create a Move package with an npm e2e test harness
  aptflow run         # start a local node, compile, publish, run e2e tests
"""
from __future__ import annotations

import argparse
import sys
import threading
from pathlib import Path
from typing import List, Optional
import logging

from aptflow.core.configuration import ConfigurationLoader
from aptflow.core.errors import AptflowError, ExitCode, Terminated
from aptflow.core.models import DEFAULT_START_DELAY, RunConfig
from aptflow.core.orchestrator import RunOrchestrator, cancel_on_signals
from aptflow.core.scaffold import ProjectScaffolder
from aptflow.utils import console
from aptflow.utils.logging_config import setup_logging


def _project_dir(args: argparse.Namespace) -> Path:
    return Path(getattr(args, "project_dir", None) or Path.cwd()).resolve()


def build_run_config(args: argparse.Namespace) -> RunConfig:
    return RunConfig(
        skip_compile=args.no_compile,
        skip_publish=args.no_publish,
        skip_faucet=args.no_faucet,
        interactive=args.interactive,
        log_to_file=args.log,
        start_delay_seconds=args.start_delay,
        ready_timeout_seconds=args.ready_timeout,
    )


def cmd_init(args: argparse.Namespace) -> int:
    project_dir = _project_dir(args)
    setup_logging(level=args.log_level, log_file=project_dir / ".aptflow" / "aptflow.log")
    try:
        tools = ConfigurationLoader(project_dir).load()
        ProjectScaffolder(project_dir, tools).init(args.name)
    except AptflowError as e:
        console.failure(str(e))
        logging.getLogger("aptflow").error(f"init failed: {e}")
        return int(e.exit_code)
    return int(ExitCode.OK)


def cmd_run(args: argparse.Namespace) -> int:
    project_dir = _project_dir(args)
    setup_logging(level=args.log_level, log_file=project_dir / ".aptflow" / "aptflow.log")
    log = logging.getLogger("aptflow")
    try:
        config = build_run_config(args)
        tools = ConfigurationLoader(project_dir).load()
    except AptflowError as e:
        console.failure(str(e))
        return int(e.exit_code)
    except ValueError as e:
        # pydantic ValidationError on the run options
        console.failure(f"Invalid run options:\n{e}")
        return int(ExitCode.CONFIG_ERROR)

    cancel = threading.Event()
    try:
        with cancel_on_signals(cancel):
            orchestrator = RunOrchestrator(config, tools, project_dir, cancel_event=cancel)
            outcome = orchestrator.run()
    except Terminated as e:
        # arrived outside the session; nothing is left running
        console.failure(f"Error: {e}")
        return int(e.exit_code)
    failing_step = outcome.failing_step.value if outcome.failing_step else None
    log.info(
        f"run finished state={outcome.state.value} exit={int(outcome.exit_code)} "
        f"failing_step={failing_step} tests_rc={outcome.test_exit_code}"
    )
    return int(outcome.exit_code)


def main(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(
        prog="aptflow", description="A small framework to assist in testing Aptos programs"
    )
    sub = parser.add_subparsers(dest="cmd")

    def common(p: argparse.ArgumentParser) -> None:
        p.add_argument("--project-dir", default=None, help="Project root (default: current directory)")
        p.add_argument("--log-level", choices=["DEBUG", "INFO", "WARNING", "ERROR"], default="INFO")

    p_init = sub.add_parser("init", help="Initialize a new project")
    p_init.add_argument("name", help="Move package name")
    common(p_init)
    p_init.set_defaults(func=cmd_init)

    p_run = sub.add_parser("run", help="Runs the framework in the current directory")
    p_run.add_argument("-c", "--no-compile", action="store_true", help='Removes call to "aptos move compile"')
    p_run.add_argument("-p", "--no-publish", action="store_true", help='Removes call to "aptos move publish"')
    p_run.add_argument(
        "-d", "--start-delay", type=int, default=DEFAULT_START_DELAY,
        help=f"Seconds to wait on the validator spinning up before interacting with it (default: {DEFAULT_START_DELAY})",
    )
    p_run.add_argument("-f", "--no-faucet", action="store_true", help="Run just the validator node, without a faucet")
    p_run.add_argument(
        "-i", "--interactive", action="store_true",
        help="Start the validator and wait for Ctrl+C so that e2e tests can be run manually",
    )
    p_run.add_argument("-l", "--log", action="store_true", help="Log the output of the validator to a file")
    p_run.add_argument(
        "--ready-timeout", type=float, default=None,
        help="After the start delay, poll the node until it accepts connections (seconds; off by default)",
    )
    common(p_run)
    p_run.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)
    if not hasattr(args, "func"):
        parser.print_help()
        return 1
    return int(args.func(args))


if __name__ == "__main__":
    sys.exit(main())
