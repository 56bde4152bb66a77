"""Utility for running external tools (cargo, packagers, service managers)."""

import os
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Union

from structlog import get_logger

from .error_handling import CommandError

logger = get_logger(__name__)

Arg = Union[str, Path]


@dataclass(frozen=True)
class CommandResult:
    """Completed external command."""

    argv: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Runs external commands as blocking calls with no partial results.

    Every tool invocation in the deployment pipeline goes through here, so
    tests can substitute a scripted runner.
    """

    def __init__(self, verbose: bool = False, timeout: Optional[float] = None):
        self.verbose = verbose
        self.timeout = timeout

    def run(
        self,
        argv: Sequence[Arg],
        cwd: Optional[Path] = None,
        env: Optional[Dict[str, str]] = None,
        check: bool = True,
        description: Optional[str] = None,
    ) -> CommandResult:
        """
        Run a command and capture its output.

        Args:
            argv: Command and arguments
            cwd: Working directory
            env: Extra environment variables, merged over ``os.environ``
            check: Raise ``CommandError`` on a nonzero exit
            description: Human-readable description for the log

        Returns:
            CommandResult with decoded stdout/stderr

        Raises:
            CommandError: On nonzero exit (when ``check``), missing executable
                or timeout
        """
        command = [str(a) for a in argv]
        logger.debug(
            description or "Running command",
            argv=command,
            cwd=str(cwd) if cwd else None,
        )

        merged_env = None
        if env:
            merged_env = {**os.environ, **env}

        try:
            completed = subprocess.run(
                command,
                cwd=cwd,
                env=merged_env,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=self.timeout,
                check=False,
            )
        except FileNotFoundError as e:
            raise CommandError(command, 127, stderr=f"{command[0]}: command not found ({e})")
        except subprocess.TimeoutExpired as e:
            raise CommandError(command, 124, stderr=f"timed out after {e.timeout}s")

        result = CommandResult(
            argv=command,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )

        if self.verbose and result.stdout:
            logger.debug("Command output", argv=command, stdout=result.stdout.strip())

        if not result.ok:
            logger.debug(
                "Command failed",
                argv=command,
                returncode=result.returncode,
                stderr=result.stderr.strip(),
            )
            if check:
                raise CommandError(command, result.returncode, result.stdout, result.stderr)

        return result
