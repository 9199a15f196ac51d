"""
Compile-then-publish pipeline for the Move package.

Each step is a short-lived process waited to completion before the next
one starts; the first non-zero exit stops the pipeline.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Dict, List

from aptflow.utils import console
from .configuration import ToolCommand, ToolsConfig, read_default_account
from .models import PipelineResult, RunConfig, StepName
from .process import ProcessHandle

logger = logging.getLogger(__name__)


class BuildPipeline:
    def __init__(self, tools: ToolsConfig, project_dir: Path):
        self.tools = tools
        self.project_dir = Path(project_dir)

    def run(self, config: RunConfig) -> PipelineResult:
        ctx = self.tools.context(self.project_dir)
        steps_run: List[StepName] = []

        if not config.skip_compile:
            console.step("Compiling Move code...")
            steps_run.append(StepName.COMPILE)
            rc = self._run_step(StepName.COMPILE.value, self.tools.compile, ctx)
            if rc != 0:
                console.failure("Compilation failed.")
                return PipelineResult(
                    succeeded=False, failing_step=StepName.COMPILE, exit_code=rc, steps_run=steps_run
                )

        if not config.skip_publish:
            if not config.skip_faucet:
                self._fund_account(ctx)
            console.step("Deploying Move code...")
            steps_run.append(StepName.PUBLISH)
            rc = self._run_step(StepName.PUBLISH.value, self.tools.publish, ctx)
            if rc != 0:
                console.failure("Aptos reports publish failed.")
                return PipelineResult(
                    succeeded=False, failing_step=StepName.PUBLISH, exit_code=rc, steps_run=steps_run
                )
            console.success("Deployment successful.")

        return PipelineResult(succeeded=True, steps_run=steps_run)

    def _run_step(self, label: str, tool: ToolCommand, ctx: Dict[str, str]) -> int:
        handle = ProcessHandle.spawn(tool.command, tool.render(**ctx), label=label, cwd=self.project_dir)
        try:
            rc = handle.wait()
        finally:
            # only does anything if wait() was interrupted
            handle.terminate()
        logger.info(f"{label} finished rc={rc}")
        return rc

    def _fund_account(self, ctx: Dict[str, str]) -> None:
        """Fund the project's default account through the faucet.

        The result is informational only: a funding problem shows up as a
        publish failure right after.
        """
        account = read_default_account(self.tools.resolve(self.project_dir, self.tools.aptos_config))
        if account is None:
            logger.warning(
                f"No default account in {self.tools.aptos_config}; skipping funding. Did you run aptos init?"
            )
            return
        console.step("Funding new account on local node...")
        rc = self._run_step("fund", self.tools.fund, {**ctx, "account": account})
        if rc != 0:
            logger.warning(f"Funding account {account} exited with code {rc}")
