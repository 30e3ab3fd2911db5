"""Asynchronous external command execution.

Everything shipyard does to the host (git, docker, nginx, certbot, dig)
goes through :class:`ProcessRunner`. Commands are given as argument
vectors, never shell strings, and run with
``asyncio.create_subprocess_exec`` so one slow build never blocks the
event loop.

Key Concepts:
    ProcessResult: Captured exit code, stdout and stderr of one command.
    ProcessRunner: ``run(args, ...)`` with optional timeout, working
        directory, environment and a ``secrets`` tuple whose values are
        masked in every log line and error message.
    ProcessError: Raised on a non-zero exit (when ``check=True``), on a
        timeout, or when the executable cannot be found.

Tags:
    subprocess, asyncio, process, redaction
"""

from __future__ import annotations

import asyncio
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol, runtime_checkable

from shipyard.core.errors import ProcessError
from shipyard.core.logging import get_logger

logger = get_logger(__name__)

REDACTED = "***"


def redact(text: str, secrets: Sequence[str]) -> str:
    """Replace every occurrence of each secret in ``text``."""
    for secret in secrets:
        if secret:
            text = text.replace(secret, REDACTED)
    return text


@dataclass
class ProcessResult:
    """Outcome of a finished command."""

    args: list[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined stdout and stderr."""
        return "\n".join(part for part in (self.stdout.strip(), self.stderr.strip()) if part)


@runtime_checkable
class CommandRunner(Protocol):
    """What the rest of the engine needs from a process runner."""

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        secrets: Sequence[str] = (),
    ) -> ProcessResult: ...


class ProcessRunner:
    """Runs external commands with ``asyncio.create_subprocess_exec``.

    Parameters
    ----------
    default_timeout
        Seconds before a command is killed when the caller passes no
        timeout. ``None`` waits forever.
    """

    def __init__(self, default_timeout: float | None = 600.0) -> None:
        self.default_timeout = default_timeout

    async def run(
        self,
        args: Sequence[str],
        *,
        cwd: str | Path | None = None,
        env: Mapping[str, str] | None = None,
        timeout: float | None = None,
        check: bool = True,
        secrets: Sequence[str] = (),
    ) -> ProcessResult:
        """Run a command to completion and capture its output.

        Raises
        ------
        ProcessError
            Non-zero exit with ``check=True``, timeout, or missing executable.
        """
        argv = [str(a) for a in args]
        printable = redact(" ".join(argv), secrets)
        timeout = self.default_timeout if timeout is None else timeout
        logger.debug("process.exec", cmd=printable, cwd=str(cwd) if cwd else None)

        full_env = None
        if env is not None:
            full_env = {**os.environ, **env}

        try:
            proc = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(cwd) if cwd else None,
                env=full_env,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise ProcessError(
                f"Cannot execute {argv[0]!r}: {exc.strerror or exc}",
                args=redact_args(argv, secrets),
                cause=exc,
            ) from exc

        try:
            stdout_b, stderr_b = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except TimeoutError as exc:
            proc.kill()
            await proc.wait()
            raise ProcessError(
                f"Command timed out after {timeout}s: {printable}",
                args=redact_args(argv, secrets),
                retryable=True,
                cause=exc,
            ) from exc
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.kill()
                await proc.wait()
            raise

        result = ProcessResult(
            args=redact_args(argv, secrets),
            returncode=proc.returncode if proc.returncode is not None else -1,
            stdout=redact(stdout_b.decode(errors="replace"), secrets),
            stderr=redact(stderr_b.decode(errors="replace"), secrets),
        )

        if check and not result.ok:
            logger.debug("process.failed", cmd=printable, returncode=result.returncode)
            raise ProcessError(
                f"Command failed (exit {result.returncode}): {printable}\n{result.stderr.strip()}".rstrip(),
                args=result.args,
                returncode=result.returncode,
                stdout=result.stdout,
                stderr=result.stderr,
            )
        return result


def redact_args(args: Sequence[str], secrets: Sequence[str]) -> list[str]:
    return [redact(a, secrets) for a in args]


__all__ = ["CommandRunner", "ProcessResult", "ProcessRunner", "REDACTED", "redact"]
