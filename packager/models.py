from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional

from .errors import ConfigurationError

DEFAULT_ENTRYPOINT = "index.handler"


class LanguageVariant(Enum):
    """Whether the source tree needs a compile step before it can be bundled."""

    COMPILED = "compiled"
    INTERPRETED = "interpreted"

    @classmethod
    def parse(cls, value: "str | LanguageVariant") -> "LanguageVariant":
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower()
        aliases = {"ts": cls.COMPILED, "js": cls.INTERPRETED}
        if normalized in aliases:
            return aliases[normalized]
        try:
            return cls(normalized)
        except ValueError as exc:
            raise ConfigurationError(f"Unknown language variant: {value!r}") from exc

    @property
    def requires_compile(self) -> bool:
        return self is LanguageVariant.COMPILED


@dataclass(frozen=True)
class PackageRequest:
    """What to package and how.

    ``entrypoint`` and ``environment`` are carried through to whoever registers
    the artifact; the pipeline never reads them.
    """

    source_directory: Path
    language: LanguageVariant
    entrypoint: str = DEFAULT_ENTRYPOINT
    environment: Mapping[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        object.__setattr__(self, "source_directory", Path(self.source_directory))
        object.__setattr__(self, "language", LanguageVariant.parse(self.language))
        object.__setattr__(self, "environment", MappingProxyType(dict(self.environment)))

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PackageRequest":
        try:
            directory = data["directory"]
            language = data["language"]
        except KeyError as exc:
            raise ConfigurationError(f"Package request is missing {exc.args[0]!r}") from exc
        return cls(
            source_directory=Path(directory),
            language=LanguageVariant.parse(language),
            entrypoint=data.get("entrypoint") or data.get("handler") or DEFAULT_ENTRYPOINT,
            environment=dict(data.get("environment", {})),
        )


@dataclass
class Toolchain:
    """External tools and path patterns used by the packaging stages."""

    install_command: List[str] = field(default_factory=lambda: ["yarn", "--no-lockfile"])
    compile_command: List[str] = field(default_factory=lambda: ["tsc"])
    dependency_dir: str = "node_modules"
    output_patterns: List[str] = field(default_factory=lambda: ["*.js"])
    lockfiles: List[str] = field(default_factory=lambda: ["package-lock.json"])
    timeout_s: Optional[float] = None
    env: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for pattern in self.output_patterns:
            if "/" in pattern or "\\" in pattern:
                raise ConfigurationError(
                    f"output_patterns match top-level files only, got {pattern!r}"
                )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Toolchain":
        defaults = cls()
        return cls(
            install_command=_command(data, "install_command", defaults.install_command),
            compile_command=_command(data, "compile_command", defaults.compile_command),
            dependency_dir=str(data.get("dependency_dir", defaults.dependency_dir)),
            output_patterns=list(data.get("output_patterns", defaults.output_patterns)),
            lockfiles=list(data.get("lockfiles", defaults.lockfiles)),
            timeout_s=data.get("timeout_s"),
            env={str(k): str(v) for k, v in data.get("env", {}).items()},
        )


def _command(data: Dict[str, Any], key: str, default: List[str]) -> List[str]:
    value = data.get(key, default)
    if isinstance(value, str):
        value = value.split()
    if not isinstance(value, list) or not value:
        raise ConfigurationError(f"{key} must be a non-empty command")
    return [str(part) for part in value]


@dataclass
class StageResult:
    """Summary emitted by a pipeline stage."""

    name: str
    status: str
    details: Dict[str, Any]

    def to_dict(self) -> Dict[str, Any]:
        return {"stage": self.name, "status": self.status, "details": self.details}


@dataclass(frozen=True)
class ArtifactDescriptor:
    """Hand-off record for the layer that registers the packaged function."""

    path: Path
    sha256: str
    entrypoint: str
    environment: Mapping[str, str]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": str(self.path),
            "sha256": self.sha256,
            "entrypoint": self.entrypoint,
            "environment": dict(self.environment),
        }
