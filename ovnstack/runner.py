"""Thin wrappers around subprocess for the third-party OVS/OVN CLIs.

Every external command the orchestrator issues goes through a
CommandRunner, so tests can substitute a recording fake and the CLI can
substitute DryRunRunner.
"""

from __future__ import annotations

import logging
import os
import subprocess
from pathlib import Path
from typing import Optional

from .errors import CommandError

logger = logging.getLogger(__name__)


class CommandRunner:
    """Runs commands, optionally via sudo."""

    dry_run = False

    def __init__(self, use_sudo: bool = True):
        self.use_sudo = use_sudo

    def _argv(self, cmd: list[str], sudo: bool) -> list[str]:
        if sudo and self.use_sudo and os.geteuid() != 0:
            return ["sudo", *cmd]
        return list(cmd)

    def run(
        self,
        cmd: list[str],
        *,
        sudo: bool = False,
        check: bool = True,
        cwd: str | Path | None = None,
        timeout: float | None = None,
    ) -> subprocess.CompletedProcess:
        """Run a command to completion and capture its output.

        Raises CommandError if the command cannot be executed, or exits
        non-zero while ``check`` is set.
        """
        argv = self._argv(cmd, sudo)
        logger.debug(f"Running: {' '.join(argv)}")
        try:
            result = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                cwd=str(cwd) if cwd else None,
                timeout=timeout,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            raise CommandError(f"Could not run {argv[0]}: {e}", command=argv) from e

        if check and result.returncode != 0:
            raise CommandError(
                f"{argv[0]} exited with status {result.returncode}",
                command=argv,
                exit_code=result.returncode,
                stderr=result.stderr,
            )
        return result

    def spawn(
        self,
        cmd: list[str],
        *,
        log_file: str | Path | None = None,
        sudo: bool = False,
        cwd: str | Path | None = None,
    ) -> Optional[int]:
        """Start a command detached from this process and return its pid.

        The child gets its own session and is never waited on. Output is
        appended to ``log_file`` when given.
        """
        argv = self._argv(cmd, sudo)
        logger.debug(f"Spawning: {' '.join(argv)}")
        try:
            log_handle = open(log_file, "ab") if log_file else subprocess.DEVNULL
        except OSError as e:
            raise CommandError(f"Cannot open log file {log_file}: {e}", command=argv) from e
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=log_handle,
                stderr=subprocess.STDOUT,
                cwd=str(cwd) if cwd else None,
                start_new_session=True,
            )
        except OSError as e:
            raise CommandError(f"Could not start {argv[0]}: {e}", command=argv) from e
        finally:
            if log_file:
                log_handle.close()
        return proc.pid


class DryRunRunner(CommandRunner):
    """Logs commands instead of running them."""

    dry_run = True

    def __init__(self, use_sudo: bool = True):
        super().__init__(use_sudo=use_sudo)
        self.commands: list[list[str]] = []

    def run(self, cmd, *, sudo=False, check=True, cwd=None, timeout=None):
        argv = self._argv(cmd, sudo)
        self.commands.append(argv)
        logger.info(f"DRY RUN - would run: {' '.join(argv)}")
        return subprocess.CompletedProcess(args=argv, returncode=0, stdout="", stderr="")

    def spawn(self, cmd, *, log_file=None, sudo=False, cwd=None):
        argv = self._argv(cmd, sudo)
        self.commands.append(argv)
        logger.info(f"DRY RUN - would start: {' '.join(argv)}")
        return None
