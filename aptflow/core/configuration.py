"""
Configuration management for aptflow.

The external tools aptflow drives (validator, faucet, Move CLI, npm) are
described by ``ToolCommand`` entries. Defaults match a stock Aptos CLI
install; a project can override any of them in an ``aptflow.yaml`` file at
its root:

    tools:
      validator:
        command: aptos-node
        args: ["--test", "--test-dir", "{test_dir}"]
      test_runner:
        command: npx
        args: ["mocha"]
    node_url: http://127.0.0.1:8080

Arguments may reference ``{test_dir}``, ``{mint_key}``, ``{node_url}``,
``{faucet_url}``, ``{project_dir}`` and, for the fund step, ``{account}``.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigurationError

logger = logging.getLogger(__name__)

CONFIG_FILE_NAME = "aptflow.yaml"
APTOS_CONFIG = Path(".aptos") / "config.yaml"


class ToolCommand(BaseModel):
    """An external executable plus its argument template."""
    model_config = ConfigDict(frozen=True)

    command: str
    args: List[str] = Field(default_factory=list)

    @field_validator("command")
    @classmethod
    def command_not_blank(cls, v: str) -> str:
        if not v or not v.strip():
            raise ValueError("command must not be empty")
        return v.strip()

    def render(self, **context: Any) -> List[str]:
        """Return the argument list with ``{placeholders}`` filled in."""
        rendered: List[str] = []
        for arg in self.args:
            try:
                rendered.append(arg.format(**context))
            except KeyError as e:
                raise ConfigurationError(
                    f"unknown placeholder {e} in arguments of '{self.command}'"
                ) from e
        return rendered


def _tool(command: str, *args: str) -> ToolCommand:
    return ToolCommand(command=command, args=list(args))


class ToolsConfig(BaseModel):
    """Commands and locations used by a run. Every field has a working default."""
    model_config = ConfigDict(extra="forbid", frozen=True)

    validator: ToolCommand = _tool("aptos-node", "--test", "--test-dir", "{test_dir}")
    faucet: ToolCommand = _tool(
        "aptos-faucet",
        "--chain-id", "TESTING",
        "--mint-key-file-path", "{mint_key}",
        "--address", "0.0.0.0",
        "--port", "8000",
        "--server-url", "http://localhost:8080",
    )
    compile: ToolCommand = _tool("aptos", "move", "compile")
    fund: ToolCommand = _tool(
        "aptos", "account", "fund", "--faucet-url", "{faucet_url}", "--account", "{account}"
    )
    publish: ToolCommand = _tool("aptos", "move", "publish", "--url", "{node_url}")
    test_runner: ToolCommand = _tool("npm", "run", "test")
    move_init: ToolCommand = _tool("aptos", "move", "init", "--name", "{name}")
    npm_install: ToolCommand = _tool("npm", "install")

    test_dir: str = ".aptflow/testnet"
    # Wipe test_dir before each run so every run starts from genesis
    fresh_chain: bool = True
    mint_key_name: str = "mint.key"
    node_url: str = "http://0.0.0.0:8080"
    faucet_url: str = "http://0.0.0.0:8000"
    log_file: str = "validator.log"
    aptos_config: str = str(APTOS_CONFIG)

    @field_validator("node_url", "faucet_url")
    @classmethod
    def url_has_scheme(cls, v: str) -> str:
        if "://" not in v:
            raise ValueError(f"url must include a scheme: {v}")
        return v.rstrip("/")

    def resolve(self, project_dir: Path, relative: str) -> Path:
        p = Path(relative)
        if not p.is_absolute():
            p = Path(project_dir) / p
        return p

    def context(self, project_dir: Path) -> Dict[str, str]:
        """Placeholder values shared by every tool invocation of a run."""
        project_dir = Path(project_dir).resolve()
        test_dir = self.resolve(project_dir, self.test_dir)
        return {
            "project_dir": str(project_dir),
            "test_dir": str(test_dir),
            "mint_key": str(test_dir / self.mint_key_name),
            "node_url": self.node_url,
            "faucet_url": self.faucet_url,
        }


class ConfigurationLoader:
    """Load ``ToolsConfig`` from a project's aptflow.yaml (if any)."""

    def __init__(self, project_dir: Path, config_file: Optional[Path] = None):
        self.project_dir = Path(project_dir)
        self.config_file = Path(config_file) if config_file else self.project_dir / CONFIG_FILE_NAME

    def load(self) -> ToolsConfig:
        if not self.config_file.exists():
            logger.debug(f"No {self.config_file.name} in {self.project_dir}; using default tools")
            return ToolsConfig()

        try:
            data = yaml.safe_load(self.config_file.read_text()) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in {self.config_file}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigurationError(f"{self.config_file} must contain a mapping")

        tools = data.get("tools") or {}
        if not isinstance(tools, dict):
            raise ConfigurationError(f"'tools' in {self.config_file} must be a mapping")

        settings = {k: v for k, v in data.items() if k != "tools"}
        try:
            config = ToolsConfig.model_validate({**settings, **tools})
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration in {self.config_file}:\n{e}") from e

        logger.info(f"Loaded tool configuration from {self.config_file}")
        return config


def read_default_account(aptos_config: Path) -> Optional[str]:
    """Return the default profile's account from an Aptos CLI config file.

    Returns None when the file is missing or has no default account; the
    caller decides whether that matters.
    """
    path = Path(aptos_config)
    if not path.exists():
        return None
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Could not parse Aptos config file {path}: {e}") from e
    except (OSError, UnicodeDecodeError) as e:
        raise ConfigurationError(f"Could not read Aptos config file {path}: {e}") from e

    if not isinstance(data, dict):
        raise ConfigurationError(f"Aptos config file {path} must contain a mapping")
    profiles = data.get("profiles")
    default = profiles.get("default") if isinstance(profiles, dict) else None
    if not isinstance(default, dict):
        return None
    account = default.get("account")
    if account is None:
        return None
    return str(account)
