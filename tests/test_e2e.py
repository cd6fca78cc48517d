from __future__ import annotations

import shutil
import sys
import time
import zipfile
from pathlib import Path

import pytest

from packager.models import LanguageVariant, PackageRequest, Toolchain
from packager.pipeline import PackagingPipeline, PipelineContext, Stage, StageError, describe_artifact
from packager.utils import sha256_file

pytestmark = pytest.mark.skipif(
    not all(shutil.which(tool) for tool in ("rm", "find", "touch", "zip")),
    reason="needs rm, find, touch and zip on PATH",
)

# Stand-ins for yarn and tsc that only touch the local filesystem.
INSTALL_SCRIPT = """
import json, pathlib, sys
if pathlib.Path("FAIL_INSTALL").exists():
    sys.stderr.write("error: registry unreachable\\n")
    sys.exit(1)
for name in json.loads(pathlib.Path("package.json").read_text()).get("dependencies", {}):
    target = pathlib.Path("node_modules") / name
    target.mkdir(parents=True, exist_ok=True)
    (target / "index.js").write_text("module.exports = s => s;\\n")
"""

COMPILE_SCRIPT = """
import pathlib
for source in sorted(pathlib.Path(".").glob("*.ts")):
    source.with_suffix(".js").write_text("// compiled\\n" + source.read_text())
"""


@pytest.fixture
def toolchain() -> Toolchain:
    return Toolchain(
        install_command=[sys.executable, "-c", INSTALL_SCRIPT],
        compile_command=[sys.executable, "-c", COMPILE_SCRIPT],
    )


def _pipeline(directory: Path, language: LanguageVariant, toolchain: Toolchain) -> PackagingPipeline:
    request = PackageRequest(source_directory=directory, language=language)
    return PackagingPipeline(PipelineContext(request=request, toolchain=toolchain))


def _members(archive: Path) -> list[str]:
    with zipfile.ZipFile(archive) as bundle:
        return bundle.namelist()


def test_interpreted_package_contains_source(js_project: Path, toolchain: Toolchain) -> None:
    pipeline = _pipeline(js_project, LanguageVariant.INTERPRETED, toolchain)

    artifact = pipeline.run()

    assert artifact == js_project / "bundle.zip"
    assert _members(artifact) == ["index.js"]
    descriptor = describe_artifact(pipeline.context.request, artifact)
    assert descriptor.entrypoint == "index.handler"
    assert descriptor.sha256 == sha256_file(artifact)


def test_compiled_package_with_one_dependency(ts_project: Path, toolchain: Toolchain) -> None:
    (ts_project / "stale.js").write_text("// from an earlier build\n")
    pipeline = _pipeline(ts_project, LanguageVariant.COMPILED, toolchain)

    artifact = pipeline.run()

    assert _members(artifact) == ["index.js", "node_modules/leftpad/index.js"]
    assert not (ts_project / "stale.js").exists()
    with zipfile.ZipFile(artifact) as bundle:
        assert bundle.read("index.js").startswith(b"// compiled\n")
        assert len({info.date_time for info in bundle.infolist()}) == 1


def test_normalize_leaves_sources_alone(ts_project: Path, toolchain: Toolchain) -> None:
    source = ts_project / "index.ts"
    original_mtime = source.stat().st_mtime

    _pipeline(ts_project, LanguageVariant.COMPILED, toolchain).run()

    assert source.stat().st_mtime == original_mtime
    assert (ts_project / "index.js").stat().st_mtime == 0
    assert (ts_project / "node_modules" / "leftpad" / "index.js").stat().st_mtime == 0


def test_repackaging_is_byte_identical(ts_project: Path, toolchain: Toolchain) -> None:
    first = sha256_file(_pipeline(ts_project, LanguageVariant.COMPILED, toolchain).run())
    # Outlast zip's two-second timestamp resolution so unnormalized files would differ.
    time.sleep(2.1)
    second = sha256_file(_pipeline(ts_project, LanguageVariant.COMPILED, toolchain).run())

    assert first == second


def test_rerun_after_install_failure(ts_project: Path, toolchain: Toolchain) -> None:
    marker = ts_project / "FAIL_INSTALL"
    marker.write_text("")
    pipeline = _pipeline(ts_project, LanguageVariant.COMPILED, toolchain)

    with pytest.raises(StageError) as excinfo:
        pipeline.run()
    assert excinfo.value.stage is Stage.INSTALL
    assert "registry unreachable" in str(excinfo.value)
    assert not (ts_project / "index.js").exists()

    marker.unlink()
    pipeline.clean()
    artifact = pipeline.run()

    assert _members(artifact) == ["index.js", "node_modules/leftpad/index.js"]


def test_symlinked_dependency_is_bundled_with_normalized_time(js_project: Path) -> None:
    shared = js_project.parent / "shared"
    shared.mkdir()
    (shared / "index.js").write_text("module.exports = 'shared';\n")
    link_script = (
        "import pathlib; pathlib.Path('node_modules').mkdir(); "
        "pathlib.Path('node_modules/shared').symlink_to(pathlib.Path('../shared').resolve())"
    )
    toolchain = Toolchain(install_command=[sys.executable, "-c", link_script])

    artifact = _pipeline(js_project, LanguageVariant.INTERPRETED, toolchain).run()

    assert _members(artifact) == ["index.js", "node_modules/shared/index.js"]
    assert (shared / "index.js").stat().st_mtime == 0
