"""Subprocess execution with a hard timeout, shared by scripts, shortcuts and hooks."""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path

from tolk.plugins.errors import PluginTimeoutError, ProcessLaunchError, ScriptFailedError

logger = logging.getLogger(__name__)

_INTERPRETERS = {
    ".sh": "bash",
    ".bash": "bash",
    ".zsh": "zsh",
    ".py": "python3",
    ".js": "node",
    ".mjs": "node",
    ".rb": "ruby",
    ".swift": "swift",
}


def infer_interpreter(command: str) -> str | None:
    return _INTERPRETERS.get(Path(command).suffix.lower())


def build_argv(script: Path, interpreter: str | None) -> list[str]:
    if not interpreter:
        return [str(script)]
    resolved = shutil.which(interpreter) or interpreter
    return [resolved, str(script)]


@dataclass
class ProcessOutput:
    returncode: int
    stdout: str
    stderr: str


async def run_process(
    argv: list[str],
    *,
    timeout: float,
    env: dict[str, str] | None = None,
    cwd: Path | None = None,
    stdin: str | None = None,
    check: bool = True,
) -> ProcessOutput:
    """Run ``argv`` to completion, killing it after ``timeout`` seconds.

    stdout and stderr are decoded and stripped. With ``check`` a non-zero
    exit raises :class:`ScriptFailedError`; a command that cannot be
    started raises :class:`ProcessLaunchError`.
    """
    try:
        proc = await asyncio.create_subprocess_exec(
            *argv,
            stdin=asyncio.subprocess.PIPE if stdin is not None else asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=str(cwd) if cwd else None,
            env=env,
        )
    except OSError as e:
        raise ProcessLaunchError(argv[0], e.strerror or str(e)) from e
    try:
        stdout, stderr = await asyncio.wait_for(
            proc.communicate(stdin.encode() if stdin is not None else None),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        logger.warning("Process %s killed after %ss", argv[0], timeout)
        raise PluginTimeoutError(timeout) from None

    output = ProcessOutput(
        returncode=proc.returncode if proc.returncode is not None else -1,
        stdout=stdout.decode(errors="replace").strip(),
        stderr=stderr.decode(errors="replace").strip(),
    )
    if check and output.returncode != 0:
        raise ScriptFailedError(output.returncode, output.stdout, output.stderr)
    return output


def child_env(extra: dict[str, str]) -> dict[str, str]:
    """The current environment overlaid with ``extra``."""
    env = dict(os.environ)
    env.update(extra)
    return env
