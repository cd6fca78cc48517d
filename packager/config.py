from __future__ import annotations

import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional

import yaml

from .errors import ConfigurationError
from .models import PackageRequest, Toolchain


def _read_structured(path: Path) -> Any:
    try:
        raw_text = path.read_text()
    except OSError as exc:
        raise ConfigurationError(f"Cannot read configuration file {path}: {exc}") from exc
    try:
        return json.loads(raw_text)
    except json.JSONDecodeError:
        try:
            return yaml.safe_load(raw_text)
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"{path} is neither valid JSON nor YAML: {exc}") from exc


def load_toolchain(path: str | Path | None) -> Toolchain:
    """Load a toolchain override file; ``None`` yields the default Node toolchain."""

    if path is None:
        return Toolchain()
    raw_data = _read_structured(Path(path))
    if raw_data is None:
        return Toolchain()
    if not isinstance(raw_data, dict):
        raise ConfigurationError("Toolchain file must contain a mapping")
    return Toolchain.from_dict(raw_data.get("toolchain", raw_data))


@dataclass
class FunctionManifest:
    """Several functions to package, with an optional shared toolchain section.

    Relative ``directory`` entries are resolved against the manifest's folder.
    """

    path: Path
    _requests: Optional[Dict[str, PackageRequest]] = None
    _toolchain: Optional[Toolchain] = None

    @classmethod
    def from_file(cls, path: str | Path) -> "FunctionManifest":
        return cls(path=Path(path))

    def _load(self) -> Dict[str, PackageRequest]:
        if self._requests is not None:
            return self._requests

        raw_data = _read_structured(self.path)
        if not isinstance(raw_data, dict) or not isinstance(raw_data.get("functions"), list):
            raise ConfigurationError("Manifest must contain a top-level 'functions' list")

        requests: Dict[str, PackageRequest] = {}
        for entry in raw_data["functions"]:
            if not isinstance(entry, dict) or "id" not in entry:
                raise ConfigurationError("Every manifest function needs an 'id'")
            if entry["id"] in requests:
                raise ConfigurationError(f"Duplicate function id: {entry['id']}")
            entry = dict(entry)
            entry["directory"] = self.path.parent / str(entry.get("directory", entry["id"]))
            requests[entry["id"]] = PackageRequest.from_dict(entry)

        self._toolchain = Toolchain.from_dict(raw_data.get("toolchain") or {})
        self._requests = requests
        return requests

    @property
    def toolchain(self) -> Toolchain:
        self._load()
        assert self._toolchain is not None
        return self._toolchain

    def iter_requests(self) -> Iterable[PackageRequest]:
        return self._load().values()

    def ids(self) -> List[str]:
        return list(self._load())

    def get(self, function_id: str) -> PackageRequest:
        try:
            return self._load()[function_id]
        except KeyError as exc:
            raise ConfigurationError(f"Unknown function id: {function_id}") from exc

    def __len__(self) -> int:
        return len(self._load())

    def __contains__(self, function_id: str) -> bool:
        return function_id in self._load()
