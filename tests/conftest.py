from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

import pytest
import structlog

from packager.utils import CommandError

Effect = Callable[[Path, List[str], Optional[str]], None]


def _rm(cwd: Path, command: List[str], _input: Optional[str]) -> None:
    for name in command[command.index("--") + 1:]:
        target = cwd / name
        if target.is_dir() and not target.is_symlink():
            shutil.rmtree(target)
        elif target.exists() or target.is_symlink():
            target.unlink()


def _yarn(cwd: Path, _command: List[str], _input: Optional[str]) -> None:
    dependency = cwd / "node_modules" / "leftpad"
    dependency.mkdir(parents=True, exist_ok=True)
    (dependency / "index.js").write_text("module.exports = s => s;\n")


def _tsc(cwd: Path, _command: List[str], _input: Optional[str]) -> None:
    for source in cwd.glob("*.ts"):
        source.with_suffix(".js").write_text(source.read_text())


def _zip(cwd: Path, command: List[str], input: Optional[str]) -> None:
    (cwd / command[-1]).write_text(input or "")


class RecordingRunner:
    """Stands in for run_command and replays cheap filesystem effects."""

    def __init__(self, fail_on: Optional[str] = None, effects: Optional[Dict[str, Effect]] = None) -> None:
        self.fail_on = fail_on
        self.effects: Dict[str, Effect] = {"rm": _rm, "yarn": _yarn, "tsc": _tsc, "zip": _zip}
        self.effects.update(effects or {})
        self.calls: List[List[str]] = []
        self.kwargs: List[dict] = []

    @property
    def programs(self) -> List[str]:
        return [call[0] for call in self.calls]

    def __call__(self, command: Sequence[str], *, cwd=None, **kwargs) -> subprocess.CompletedProcess[str]:
        command = list(command)
        self.calls.append(command)
        self.kwargs.append(dict(kwargs, cwd=cwd))
        if command[0] == self.fail_on:
            raise CommandError(command, 1, "", f"{command[0]}: simulated failure")
        effect = self.effects.get(command[0])
        if effect is not None:
            effect(Path(cwd), command, kwargs.get("input"))
        return subprocess.CompletedProcess(command, 0, "", "")


@pytest.fixture
def runner() -> RecordingRunner:
    return RecordingRunner()


@pytest.fixture
def make_runner() -> Callable[..., RecordingRunner]:
    return RecordingRunner


@pytest.fixture
def ts_project(tmp_path: Path) -> Path:
    project = tmp_path / "ts-function"
    project.mkdir()
    (project / "package.json").write_text('{"dependencies": {"leftpad": "1.0.0"}}\n')
    (project / "index.ts").write_text("export const handler = async () => 'ok';\n")
    return project


@pytest.fixture
def js_project(tmp_path: Path) -> Path:
    project = tmp_path / "js-function"
    project.mkdir()
    (project / "package.json").write_text("{}\n")
    (project / "index.js").write_text("exports.handler = async () => 'ok';\n")
    return project


@pytest.fixture(autouse=True)
def reset_logging():
    """Drop handlers the CLI bound to a captured stream once the test ends."""
    yield
    for handler in list(logging.root.handlers):
        logging.root.removeHandler(handler)
    structlog.reset_defaults()
