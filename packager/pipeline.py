from __future__ import annotations

import os
import subprocess
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum, auto
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import structlog

from .errors import ConfigurationError, PackagingError
from .models import ArtifactDescriptor, LanguageVariant, PackageRequest, StageResult, Toolchain
from .utils import CommandError, CommandRunner, run_command, sha256_file

logger = structlog.get_logger()

ARTIFACT_NAME = "bundle.zip"
# GNU touch date for the Unix epoch; zip clamps it to its own 1980 floor.
EPOCH_ZERO = "@0"


class Stage(Enum):
    CLEAN = auto()
    INSTALL = auto()
    COMPILE = auto()
    NORMALIZE = auto()
    BUNDLE = auto()

    @classmethod
    def ordered(cls) -> Tuple["Stage", ...]:
        return (
            cls.CLEAN,
            cls.INSTALL,
            cls.COMPILE,
            cls.NORMALIZE,
            cls.BUNDLE,
        )

    @classmethod
    def for_language(cls, language: LanguageVariant) -> Tuple["Stage", ...]:
        """Stages to execute, in order, for ``language``."""
        if language.requires_compile:
            return cls.ordered()
        return tuple(stage for stage in cls.ordered() if stage is not cls.COMPILE)

    @property
    def label(self) -> str:
        return self.name.lower()


class RunState(Enum):
    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


class StageError(PackagingError):
    """Raised when a stage's external tool fails, is missing, or times out."""

    def __init__(self, stage: Stage, cause: BaseException) -> None:
        self.stage = stage
        self.cause = cause
        self.stdout = _decode(getattr(cause, "stdout", None))
        self.stderr = _decode(getattr(cause, "stderr", None))
        if isinstance(cause, CommandError):
            summary = f"exit code {cause.returncode}"
        elif isinstance(cause, subprocess.TimeoutExpired):
            summary = f"timed out after {cause.timeout}s"
        else:
            summary = f"{type(cause).__name__}: {cause}"
        message = f"{stage.label} stage failed ({summary})"
        # Compilers such as tsc report diagnostics on stdout.
        for stream in (self.stderr, self.stdout):
            if stream.strip():
                message += f"\n{stream.rstrip()}"
        super().__init__(message)


def _decode(value: object) -> str:
    if value is None:
        return ""
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return str(value)


@dataclass
class PipelineContext:
    request: PackageRequest
    toolchain: Toolchain = field(default_factory=Toolchain)
    runner: CommandRunner = run_command

    def __post_init__(self) -> None:
        directory = self.request.source_directory
        if not directory.exists():
            raise ConfigurationError(f"Source directory does not exist: {directory}")
        if not directory.is_dir():
            raise ConfigurationError(f"Source directory is not a directory: {directory}")
        if not os.access(directory, os.R_OK | os.W_OK | os.X_OK):
            raise ConfigurationError(f"Source directory is not readable and writable: {directory}")

    @property
    def source_dir(self) -> Path:
        return self.request.source_directory

    @property
    def dependency_path(self) -> Path:
        return self.source_dir / self.toolchain.dependency_dir

    @property
    def artifact_path(self) -> Path:
        return self.source_dir / ARTIFACT_NAME

    def output_files(self) -> List[str]:
        """Top-level files that end up in the bundle, sorted by name."""
        names = {
            path.name
            for pattern in self.toolchain.output_patterns
            for path in self.source_dir.glob(pattern)
            if path.is_file() and path.name != ARTIFACT_NAME
        }
        return sorted(names)

    def dependency_files(self) -> List[str]:
        """Files under the dependency directory, following symlinked packages."""
        if not self.dependency_path.is_dir():
            return []
        members: List[str] = []
        visited = set()
        for root, dirs, files in os.walk(self.dependency_path, followlinks=True):
            real_root = os.path.realpath(root)
            if real_root in visited:
                dirs[:] = []
                continue
            visited.add(real_root)
            relative_root = Path(root).relative_to(self.source_dir)
            members.extend(
                (relative_root / name).as_posix()
                for name in files
                if os.path.isfile(os.path.join(root, name))
            )
        return sorted(members)

    def bundle_members(self) -> List[str]:
        return sorted(self.dependency_files() + self.output_files())

    def invoke(
        self,
        command: Sequence[str],
        *,
        input: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
    ) -> subprocess.CompletedProcess[str]:
        process_env = dict(self.toolchain.env)
        if env:
            process_env.update(env)
        return self.runner(
            list(command),
            cwd=self.source_dir,
            env=process_env,
            input=input,
            timeout=self.toolchain.timeout_s,
        )


StageHandler = Callable[[PipelineContext], StageResult]


def _completed(stage: Stage, command: Sequence[str], result: subprocess.CompletedProcess[str], **extra: object) -> StageResult:
    details: Dict[str, object] = {
        "command": list(command),
        "returncode": result.returncode,
        "stdout": result.stdout,
        "stderr": result.stderr,
    }
    details.update(extra)
    return StageResult(stage.label, "completed", details)


def _stage_clean(context: PipelineContext) -> StageResult:
    targets = [context.toolchain.dependency_dir, ARTIFACT_NAME, *context.toolchain.lockfiles]
    if context.request.language.requires_compile:
        # Interpreted sources match the output patterns too; only compiled output is disposable.
        targets = context.output_files() + targets
    present = [name for name in targets if os.path.lexists(context.source_dir / name)]
    command = ["rm", "-rf", "--", *targets]
    result = context.invoke(command)
    return _completed(Stage.CLEAN, command, result, removed=present)


def _stage_install(context: PipelineContext) -> StageResult:
    command = context.toolchain.install_command
    result = context.invoke(command)
    return _completed(Stage.INSTALL, command, result)


def _stage_compile(context: PipelineContext) -> StageResult:
    command = context.toolchain.compile_command
    result = context.invoke(command)
    return _completed(Stage.COMPILE, command, result)


def _stage_normalize(context: PipelineContext) -> StageResult:
    targets: List[str] = []
    if context.dependency_path.is_dir():
        targets.append(context.toolchain.dependency_dir)
    targets.extend(context.output_files())
    if not targets:
        return StageResult(Stage.NORMALIZE.label, "completed", {"command": None, "targets": []})

    # -L walks into symlinked packages the archiver will copy.
    command = ["find", "-L", *targets, "-exec", "touch", "-c", "-d", EPOCH_ZERO, "{}", "+"]
    result = context.invoke(command)
    return _completed(Stage.NORMALIZE, command, result, targets=targets)


def _stage_bundle(context: PipelineContext) -> StageResult:
    # zip updates an existing archive in place, so start from nothing.
    context.artifact_path.unlink(missing_ok=True)
    members = context.bundle_members()
    command = ["zip", "-q", "-X", "-D", "-@", ARTIFACT_NAME]
    result = context.invoke(
        command,
        input="".join(f"{member}\n" for member in members),
        env={"TZ": "UTC"},
    )
    if not context.artifact_path.is_file():
        raise FileNotFoundError(f"Archiver reported success but {context.artifact_path} is missing")
    return _completed(
        Stage.BUNDLE,
        command,
        result,
        artifact=str(context.artifact_path),
        member_count=len(members),
    )


_STAGE_HANDLERS: Dict[Stage, StageHandler] = {
    Stage.CLEAN: _stage_clean,
    Stage.INSTALL: _stage_install,
    Stage.COMPILE: _stage_compile,
    Stage.NORMALIZE: _stage_normalize,
    Stage.BUNDLE: _stage_bundle,
}


class PackagingPipeline:
    """Runs the packaging stages for one source directory, stopping at the first failure.

    A failed run leaves the directory as the failing stage left it; run
    :meth:`clean` or the whole pipeline again before retrying. Two pipelines
    must never target the same directory at once.
    """

    def __init__(self, context: PipelineContext) -> None:
        self.context = context
        self.stages = Stage.for_language(context.request.language)
        self.state = RunState.PENDING
        self.current_stage: Optional[Stage] = None
        self.results: List[StageResult] = []
        self.error: Optional[StageError] = None
        self._log = logger.bind(
            directory=str(context.source_dir),
            language=context.request.language.value,
        )

    def run(self) -> Path:
        self.state = RunState.RUNNING
        self.results = []
        self.error = None
        self._log.info("pipeline_started", stages=self.plan())
        if Stage.COMPILE not in self.stages:
            self._log.debug("stage_skipped", stage=Stage.COMPILE.label)

        for stage in self.stages:
            self.current_stage = stage
            try:
                result = self.run_stage(stage)
            except StageError as exc:
                self.state = RunState.FAILED
                self.error = exc
                raise
            self.results.append(result)

        self.current_stage = None
        self.state = RunState.SUCCEEDED
        self._log.info("pipeline_completed", artifact=str(self.context.artifact_path))
        return self.context.artifact_path

    def run_stage(self, stage: Stage) -> StageResult:
        if stage not in self.stages:
            raise ConfigurationError(
                f"{stage.label} stage does not apply to {self.context.request.language.value} sources"
            )
        handler = _STAGE_HANDLERS[stage]
        self._log.info("stage_started", stage=stage.label)
        start = time.perf_counter()
        try:
            result = handler(self.context)
        except (CommandError, OSError, subprocess.TimeoutExpired) as exc:
            error = StageError(stage, exc)
            self._log.error("stage_failed", stage=stage.label, error=str(error))
            raise error from exc
        result.details["duration_s"] = round(time.perf_counter() - start, 3)
        self._log.info("stage_completed", stage=stage.label, duration_s=result.details["duration_s"])
        return result

    def clean(self) -> StageResult:
        return self.run_stage(Stage.CLEAN)

    def plan(self) -> List[str]:
        return [stage.label for stage in self.stages]


def package(
    request: PackageRequest,
    toolchain: Optional[Toolchain] = None,
    runner: CommandRunner = run_command,
) -> Path:
    """Package ``request`` and return the archive path."""
    context = PipelineContext(request=request, toolchain=toolchain or Toolchain(), runner=runner)
    return PackagingPipeline(context).run()


def describe_artifact(request: PackageRequest, artifact_path: Path) -> ArtifactDescriptor:
    return ArtifactDescriptor(
        path=artifact_path,
        sha256=sha256_file(artifact_path),
        entrypoint=request.entrypoint,
        environment=request.environment,
    )


@dataclass
class PackageOutcome:
    request: PackageRequest
    artifact: Optional[ArtifactDescriptor] = None
    error: Optional[PackagingError] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> Dict[str, object]:
        return {
            "directory": str(self.request.source_directory),
            "status": "succeeded" if self.ok else "failed",
            "artifact": self.artifact.to_dict() if self.artifact else None,
            "error": str(self.error) if self.error else None,
        }


def package_all(
    requests: Iterable[PackageRequest],
    toolchain: Optional[Toolchain] = None,
    runner: CommandRunner = run_command,
    max_workers: Optional[int] = None,
) -> List[PackageOutcome]:
    """Package several directories concurrently, one pipeline per directory.

    Outcomes come back in request order; a failure in one directory does not
    stop the others.
    """
    requests = list(requests)
    seen: Dict[Path, PackageRequest] = {}
    for request in requests:
        key = request.source_directory.resolve()
        if key in seen:
            raise ConfigurationError(f"Directory requested more than once: {request.source_directory}")
        seen[key] = request

    def _run(request: PackageRequest) -> PackageOutcome:
        try:
            path = package(request, toolchain, runner)
        except PackagingError as exc:
            return PackageOutcome(request=request, error=exc)
        return PackageOutcome(request=request, artifact=describe_artifact(request, path))

    if not requests:
        return []
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        return list(executor.map(_run, requests))
