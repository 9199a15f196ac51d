"""
`aptflow init NAME`: lay out a new Move package with an npm e2e test harness.
"""

from __future__ import annotations

import json
import logging
import re
from pathlib import Path
from typing import Any, Dict

from aptflow.utils import console
from .configuration import ToolCommand, ToolsConfig
from .errors import ConfigurationError, StepFailure
from .process import ProcessHandle

logger = logging.getLogger(__name__)

_NAME_PATTERN = re.compile(r"[A-Za-z][A-Za-z0-9_]*")

TEST_SCRIPT = (
    "env TS_NODE_COMPILER_OPTIONS='{\"module\": \"commonjs\" }' "
    "mocha -r ts-node/register 'tests/**/*.ts'"
)
DEV_DEPENDENCIES = {
    "@types/chai": "^4.3.1",
    "@types/mocha": "^9.1.1",
    "aptos": "^1.2.0",
    "chai": "^4.3.6",
    "mocha": "^10.0.0",
    "ts-mocha": "^10.0.0",
    "typescript": "^4.7.4",
}


def package_json(name: str) -> Dict[str, Any]:
    return {
        "name": f"test_{name}",
        "version": "1.0.0",
        "scripts": {"test": TEST_SCRIPT},
        "dependencies": dict(DEV_DEPENDENCIES),
    }


class ProjectScaffolder:
    def __init__(self, project_dir: Path, tools: ToolsConfig):
        self.project_dir = Path(project_dir)
        self.tools = tools

    def init(self, name: str) -> None:
        if not _NAME_PATTERN.fullmatch(name or ""):
            raise ConfigurationError(
                f"invalid package name '{name}': use letters, digits and underscores"
            )
        if (self.project_dir / "Move.toml").exists():
            raise ConfigurationError("Move.toml file already exists here!")

        self.project_dir.mkdir(parents=True, exist_ok=True)
        self._run("move init", self.tools.move_init, name=name)

        pkg = self.project_dir / "package.json"
        with open(pkg, "w") as f:
            json.dump(package_json(name), f, indent=2)
        logger.info(f"Wrote {pkg}")
        (self.project_dir / "tests").mkdir(exist_ok=True)

        console.step("Installing dependencies...")
        self._run("npm install", self.tools.npm_install, name=name)
        console.success(f"Project {name} initialized.")

    def _run(self, label: str, tool: ToolCommand, **extra: str) -> None:
        ctx = {**self.tools.context(self.project_dir), **extra}
        handle = ProcessHandle.spawn(tool.command, tool.render(**ctx), label=label, cwd=self.project_dir)
        try:
            rc = handle.wait()
        finally:
            handle.terminate()
        if rc != 0:
            raise StepFailure(label, rc)
