"""Local command execution.

Every host collaborator goes through :class:`CommandRunner`, which is the only
place that spawns processes. Commands are classified as mutating (they change
the host) or read-only probes; in dry-run mode mutating commands are logged
and skipped while probes still run so the plan reflects the real host.
"""

import logging
import os
import shlex
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Mapping, Optional, Sequence, Union

from gpuctl.utils import redact_argv, redact_values
from ..errors import CommandError

logger = logging.getLogger("gpuctl.host.shell")

PathLike = Union[str, Path]


@dataclass
class CommandResult:
    """Outcome of one command invocation."""
    argv: List[str]
    returncode: int
    stdout: str = ''
    stderr: str = ''

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """Runs commands on the local host.

    Args:
        dry_run: If True, only log mutating commands without executing them
        env: Extra environment variables for every command
    """

    def __init__(self, dry_run: bool = False, env: Optional[Mapping[str, str]] = None):
        self.dry_run = dry_run
        self.env: Dict[str, str] = dict(env or {})
        self._secrets: List[str] = []

    def add_secret(self, value: Optional[str]) -> None:
        """Mask a value wherever a command line or its output is logged."""
        if value and value not in self._secrets:
            self._secrets.append(value)

    def display(self, argv: Sequence[str]) -> str:
        return shlex.join(redact_argv([str(a) for a in argv], self._secrets))

    def run(
        self,
        argv: Sequence[PathLike],
        check: bool = True,
        mutating: bool = True,
        cwd: Optional[PathLike] = None,
        env: Optional[Mapping[str, str]] = None,
        input: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """Run a command and capture its output.

        Args:
            argv: Program and arguments
            check: Raise CommandError on a non-zero exit
            mutating: Whether the command changes host state (skipped in dry-run)
            cwd: Working directory
            env: Extra environment variables for this command
            input: Text fed to stdin
            timeout: Seconds before the command is abandoned

        Returns:
            CommandResult: exit status and captured output

        Raises:
            CommandError: If check is True and the command fails or cannot start
        """
        args = [str(a) for a in argv]
        shown = self.display(args)

        if self.dry_run and mutating:
            logger.info(f"[DRY RUN] Would execute: {shown}")
            return CommandResult(args, 0)

        logger.debug(f"Executing: {shown}")
        merged_env = None
        if self.env or env:
            merged_env = {**os.environ, **self.env, **(env or {})}

        try:
            proc = subprocess.run(
                args,
                capture_output=True,
                text=True,
                cwd=str(cwd) if cwd else None,
                env=merged_env,
                input=input,
                timeout=timeout,
            )
        except FileNotFoundError as e:
            result = CommandResult(args, 127, '', str(e))
        except subprocess.TimeoutExpired:
            result = CommandResult(args, 124, '', f"timed out after {timeout}s")
        else:
            result = CommandResult(args, proc.returncode, proc.stdout or '', proc.stderr or '')

        if not result.ok:
            logger.debug(f"Command exited {result.returncode}: {shown}")
            if check:
                raise CommandError(
                    redact_argv(args, self._secrets),
                    result.returncode,
                    redact_values(result.stderr, self._secrets),
                )
        return result

    def probe(self, argv: Sequence[PathLike], **kwargs) -> CommandResult:
        """Run a read-only command; never raises on failure."""
        return self.run(argv, check=False, mutating=False, **kwargs)

    def succeeds(self, argv: Sequence[PathLike], **kwargs) -> bool:
        return self.probe(argv, **kwargs).ok

    def output(self, argv: Sequence[PathLike], **kwargs) -> str:
        """Stripped stdout of a probe, empty when it fails."""
        result = self.probe(argv, **kwargs)
        return result.stdout.strip() if result.ok else ''

    def shell(self, script: str, check: bool = True, **kwargs) -> CommandResult:
        """Run a piped installer one-liner through ``sh -c``."""
        return self.run(['sh', '-c', script], check=check, **kwargs)

    @staticmethod
    def which(name: str) -> Optional[str]:
        return shutil.which(name)
