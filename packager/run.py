from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List

from .config import FunctionManifest, load_toolchain
from .errors import ConfigurationError, PackagingError
from .logging_config import configure_logging
from .models import DEFAULT_ENTRYPOINT, LanguageVariant, PackageRequest
from .pipeline import PackagingPipeline, PipelineContext, Stage, describe_artifact, package_all
from .utils import dump_json

_LANGUAGE_CHOICES = ["compiled", "interpreted", "ts", "js"]


def _parse_env(pairs: List[str]) -> Dict[str, str]:
    environment: Dict[str, str] = {}
    for pair in pairs:
        key, sep, value = pair.partition("=")
        if not sep or not key:
            raise ConfigurationError(f"Environment entries must look like KEY=VALUE, got {pair!r}")
        environment[key] = value
    return environment


def _build_pipeline(args: argparse.Namespace) -> PackagingPipeline:
    request = PackageRequest(
        source_directory=Path(args.directory),
        language=LanguageVariant.parse(args.language),
        entrypoint=args.entrypoint,
        environment=_parse_env(args.env),
    )
    context = PipelineContext(request=request, toolchain=load_toolchain(args.config))
    return PackagingPipeline(context)


def cmd_package(args: argparse.Namespace) -> int:
    pipeline = _build_pipeline(args)
    artifact_path = pipeline.run()
    descriptor = describe_artifact(pipeline.context.request, artifact_path)
    if args.output:
        dump_json(args.output, descriptor.to_dict())
    print(json.dumps(descriptor.to_dict(), indent=2))
    return 0


def cmd_clean(args: argparse.Namespace) -> int:
    pipeline = _build_pipeline(args)
    result = pipeline.clean()
    print(json.dumps(result.to_dict(), indent=2))
    return 0


def cmd_plan(args: argparse.Namespace) -> int:
    stages = Stage.for_language(LanguageVariant.parse(args.language))
    print(json.dumps([stage.label for stage in stages], indent=2))
    return 0


def cmd_package_all(args: argparse.Namespace) -> int:
    manifest = FunctionManifest.from_file(args.manifest)
    toolchain = load_toolchain(args.config) if args.config else manifest.toolchain
    outcomes = package_all(manifest.iter_requests(), toolchain, max_workers=args.jobs)
    report = {
        function_id: outcome.to_dict()
        for function_id, outcome in zip(manifest.ids(), outcomes)
    }
    if args.output:
        dump_json(args.output, report)
    print(json.dumps(report, indent=2))
    return 0 if all(outcome.ok for outcome in outcomes) else 1


def _add_request_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("directory", help="Function source directory.")
    parser.add_argument(
        "--language",
        required=True,
        choices=_LANGUAGE_CHOICES,
        type=str.lower,
        help="Whether the sources need compiling (compiled/ts) or not (interpreted/js).",
    )
    parser.add_argument(
        "--entrypoint",
        default=DEFAULT_ENTRYPOINT,
        help="Handler recorded alongside the artifact.",
    )
    parser.add_argument(
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Environment variable recorded alongside the artifact (repeatable).",
    )
    parser.add_argument("--config", help="Toolchain override file (JSON or YAML).")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Package function source directories into deployable archives")
    parser.add_argument(
        "--log-level",
        default="INFO",
        type=str.upper,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Logging level.",
    )
    parser.add_argument(
        "--log-format",
        default="console",
        choices=["console", "json"],
        help="Log renderer written to stderr.",
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    package_parser = subparsers.add_parser("package", help="Run the full packaging pipeline")
    _add_request_arguments(package_parser)
    package_parser.add_argument("--output", help="Also write the artifact descriptor JSON here.")
    package_parser.set_defaults(func=cmd_package)

    clean_parser = subparsers.add_parser("clean", help="Remove build output from a previous run")
    _add_request_arguments(clean_parser)
    clean_parser.set_defaults(func=cmd_clean)

    plan_parser = subparsers.add_parser("plan", help="Show the stages a language variant runs")
    plan_parser.add_argument("--language", required=True, choices=_LANGUAGE_CHOICES, type=str.lower)
    plan_parser.set_defaults(func=cmd_plan)

    all_parser = subparsers.add_parser("package-all", help="Package every function listed in a manifest")
    all_parser.add_argument("manifest", help="Manifest file (JSON or YAML) with a 'functions' list.")
    all_parser.add_argument("--config", help="Toolchain override file; replaces the manifest's section.")
    all_parser.add_argument("--jobs", type=int, default=None, help="Maximum concurrent pipelines.")
    all_parser.add_argument("--output", help="Also write the report JSON here.")
    all_parser.set_defaults(func=cmd_package_all)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.log_level, args.log_format)
    try:
        return args.func(args)
    except PackagingError as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
