"""Reproducible packaging of function source directories into deployable archives."""

from .config import FunctionManifest, load_toolchain
from .errors import ConfigurationError, PackagingError
from .models import ArtifactDescriptor, LanguageVariant, PackageRequest, Toolchain
from .pipeline import (
    ARTIFACT_NAME,
    PackagingPipeline,
    PipelineContext,
    Stage,
    StageError,
    describe_artifact,
    package,
    package_all,
)

__all__ = [
    "ARTIFACT_NAME",
    "ArtifactDescriptor",
    "ConfigurationError",
    "FunctionManifest",
    "LanguageVariant",
    "PackageRequest",
    "PackagingError",
    "PackagingPipeline",
    "PipelineContext",
    "Stage",
    "StageError",
    "Toolchain",
    "describe_artifact",
    "load_toolchain",
    "package",
    "package_all",
]
