"""
Validator session: the local node plus its optional faucet.

Both processes are brought up together by ``ValidatorSession.start`` and
torn down together by ``stop()``. Use the session as a context manager so
teardown is bound to the block:

    with ValidatorSession.start(config, tools, project_dir) as session:
        ...
"""

from __future__ import annotations

import logging
import re
import shutil
import time
from pathlib import Path
from typing import Callable, List, Optional

from .configuration import ToolsConfig
from .errors import AptflowError, ConfigurationError, SessionStartError, SpawnError
from .log_sink import LogSink
from .models import RunConfig
from .process import ProcessHandle
from aptflow.utils import console

logger = logging.getLogger(__name__)

_ROOT_KEY_PATTERN = re.compile(r'Aptos root key path:\s*"?([^"\n]+?)"?\s*$', re.MULTILINE)


def find_mint_key_path(output: str) -> Optional[str]:
    """Return the mint key path the validator printed, or None.

    When the output holds several runs the most recent path wins.
    """
    matches = _ROOT_KEY_PATTERN.findall(output)
    if not matches:
        return None
    return matches[-1].strip()


class ValidatorSession:
    """Owns the validator process and, unless disabled, the faucet process."""

    def __init__(
        self,
        validator: ProcessHandle,
        faucet: Optional[ProcessHandle] = None,
        warmup_seconds: int = 0,
    ):
        self.validator = validator
        self.faucet = faucet
        # Part of the start delay already spent inside start()
        self.warmup_seconds = warmup_seconds
        self._stopped = False

    @classmethod
    def start(
        cls,
        config: RunConfig,
        tools: ToolsConfig,
        project_dir: Path,
        log_sink: Optional[LogSink] = None,
        sleep: Callable[[float], None] = time.sleep,
    ) -> "ValidatorSession":
        """Spawn the validator, then (unless skip_faucet) the faucet.

        The faucet needs the mint key the validator writes, so half of the
        start delay elapses between the two spawns; the caller waits out the
        rest. If anything fails, whatever was started is torn down before
        the error propagates. A test_dir outside ``<project>/.aptflow`` with
        fresh_chain enabled raises ConfigurationError before anything starts.
        """
        ctx = tools.context(project_dir)
        test_dir = Path(ctx["test_dir"])
        if tools.fresh_chain:
            cls._wipe_test_dir(test_dir, Path(ctx["project_dir"]))
        test_dir.parent.mkdir(parents=True, exist_ok=True)

        console.step("Starting local validator node...")
        try:
            validator = ProcessHandle.spawn(
                tools.validator.command,
                tools.validator.render(**ctx),
                label="validator",
                output_target=log_sink,
                cwd=project_dir,
                detached=True,
            )
        except SpawnError as e:
            raise SessionStartError("validator", e) from e

        warmup = config.faucet_warmup_seconds
        try:
            if config.skip_faucet:
                return cls(validator)
            sleep(warmup)
            ctx["mint_key"] = cls._resolve_mint_key(Path(ctx["mint_key"]), log_sink)
            faucet = ProcessHandle.spawn(
                tools.faucet.command,
                tools.faucet.render(**ctx),
                label="faucet",
                output_target=log_sink,
                cwd=project_dir,
                detached=True,
            )
        except SpawnError as e:
            validator.terminate()
            raise SessionStartError("faucet", e) from e
        except BaseException:
            validator.terminate()
            raise
        return cls(validator, faucet, warmup_seconds=warmup)

    @staticmethod
    def _wipe_test_dir(test_dir: Path, project_dir: Path) -> None:
        """Remove the previous chain; only ever below ``<project>/.aptflow``."""
        managed_root = (project_dir / ".aptflow").resolve()
        target = test_dir.resolve()
        if managed_root not in target.parents:
            raise ConfigurationError(
                f"refusing to wipe test_dir {target}: with fresh_chain enabled it must be "
                f"inside {managed_root} (set fresh_chain: false to keep an external chain)"
            )
        if target.exists():
            logger.info(f"Removing previous test chain at {target}")
            try:
                shutil.rmtree(target)
            except OSError as e:
                raise AptflowError(f"could not remove previous test chain at {target}: {e}") from e

    @staticmethod
    def _resolve_mint_key(default: Path, log_sink: Optional[LogSink]) -> str:
        if default.exists() or log_sink is None:
            return str(default)
        try:
            found = find_mint_key_path(log_sink.path.read_text(encoding="utf-8", errors="replace"))
        except OSError as e:
            logger.warning(f"Could not scan {log_sink.path} for the mint key: {e}")
            return str(default)
        if found:
            logger.info(f"Using mint key reported by the validator: {found}")
            return found
        logger.warning(f"Mint key not found at {default}; the faucet may fail to start")
        return str(default)

    @property
    def handles(self) -> List[ProcessHandle]:
        return [h for h in (self.validator, self.faucet) if h is not None]

    @property
    def stopped(self) -> bool:
        return self._stopped

    def stop(self) -> None:
        """Terminate the faucet, then the validator. Safe to call repeatedly."""
        if self._stopped:
            return
        self._stopped = True
        console.step("Closing local node...")
        for handle in (self.faucet, self.validator):
            if handle is None:
                continue
            # a second attempt covers a signal raised mid-terminate
            for _ in range(2):
                try:
                    handle.terminate()
                    break
                except Exception as e:  # teardown must reach the validator
                    logger.error(f"Failed to stop {handle.label} (pid {handle.pid}): {e}")

    def __enter__(self) -> "ValidatorSession":
        return self

    def __exit__(self, *exc) -> None:
        self.stop()
