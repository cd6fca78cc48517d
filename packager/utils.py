from __future__ import annotations

import hashlib
import json
import os
import subprocess
from pathlib import Path
from typing import Callable, Mapping, Optional, Sequence


class CommandError(RuntimeError):
    """Raised when a subprocess exits with a non-zero status code."""

    def __init__(self, command: Sequence[str], returncode: int, stdout: str, stderr: str) -> None:
        self.command = list(command)
        self.returncode = returncode
        self.stdout = stdout
        self.stderr = stderr
        super().__init__(
            f"Command {' '.join(command)} failed with exit code {returncode}\nSTDOUT:{stdout}\nSTDERR:{stderr}"
        )


def run_command(
    command: Sequence[str],
    *,
    cwd: str | Path | None = None,
    env: Mapping[str, str] | None = None,
    input: Optional[str] = None,
    timeout: Optional[float] = None,
    check: bool = True,
) -> subprocess.CompletedProcess[str]:
    """Execute a subprocess command and return the completed process.

    A missing executable surfaces as ``FileNotFoundError`` and an expired
    ``timeout`` as ``subprocess.TimeoutExpired``; neither is caught here.
    """

    process_env = os.environ.copy()
    if env:
        process_env.update(env)

    result = subprocess.run(
        list(command),
        cwd=str(cwd) if cwd else None,
        env=process_env,
        input=input,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        encoding="utf-8",
        errors="replace",
        timeout=timeout,
        check=False,
    )
    if check and result.returncode != 0:
        raise CommandError(command, result.returncode, result.stdout, result.stderr)
    return result


# Anything with run_command's call signature; tests substitute a recording fake.
CommandRunner = Callable[..., "subprocess.CompletedProcess[str]"]


def sha256_file(path: str | Path) -> str:
    """Compute the SHA256 hash of the provided file."""

    digest = hashlib.sha256()
    with open(path, "rb") as file_handle:
        for chunk in iter(lambda: file_handle.read(8192), b""):
            digest.update(chunk)
    return digest.hexdigest()


def dump_json(path: str | Path, payload: Mapping[str, object], *, indent: int = 2) -> None:
    """Write structured JSON to disk with a trailing newline for readability."""

    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, indent=indent, sort_keys=True) + "\n")
