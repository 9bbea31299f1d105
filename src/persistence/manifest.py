"""Project manifest (``box.json``) reading and writing.

Unknown keys and key order are preserved; only the dependency sections are
ever changed by boxpm.
"""

from __future__ import annotations

import hashlib
import json
import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional

from common.errors import MalformedConstraint, PersistenceFailure

logger = logging.getLogger(__name__)

DEPENDENCIES = "dependencies"
DEV_DEPENDENCIES = "devDependencies"


def _section(data: Mapping[str, Any], key: str, path: Path) -> Dict[str, str]:
    value = data.get(key) or {}
    if not isinstance(value, dict):
        raise MalformedConstraint(f"'{key}' in {path} must be an object")
    out = {}
    for name, spec in value.items():
        if spec is not None and not isinstance(spec, str):
            raise MalformedConstraint(f"spec for '{name}' in {path} must be a string", package=str(name))
        out[str(name)] = spec or ""
    return out


class Manifest:
    """In-memory view of a manifest file."""

    def __init__(self, path: Path, data: Optional[Dict[str, Any]] = None, original_text: Optional[str] = None):
        self.path = Path(path)
        self.data: Dict[str, Any] = data if data is not None else {}
        self.original_text = original_text
        # Validate eagerly so a broken section fails before any network work.
        _section(self.data, DEPENDENCIES, self.path)
        _section(self.data, DEV_DEPENDENCIES, self.path)

    @classmethod
    def load(cls, path: Path, fs) -> "Manifest":
        """Read and parse ``path``.

        Raises:
            PersistenceFailure: When the file is missing or not a JSON object.
            MalformedConstraint: When a dependency section is malformed.
        """
        try:
            text = fs.read_text(path)
        except FileNotFoundError as exc:
            raise PersistenceFailure(f"manifest not found: {path}", cause=exc) from exc
        except OSError as exc:
            raise PersistenceFailure(f"cannot read manifest {path}: {exc}", cause=exc) from exc
        try:
            data = json.loads(text)
        except json.JSONDecodeError as exc:
            raise PersistenceFailure(f"manifest {path} is not valid JSON: {exc}", cause=exc) from exc
        if not isinstance(data, dict):
            raise PersistenceFailure(f"manifest {path} must contain a JSON object")
        return cls(path, data, original_text=text)

    @property
    def name(self) -> Optional[str]:
        return self.data.get("name")

    @property
    def version(self) -> Optional[str]:
        return self.data.get("version")

    @property
    def dependencies(self) -> Dict[str, str]:
        return _section(self.data, DEPENDENCIES, self.path)

    @property
    def dev_dependencies(self) -> Dict[str, str]:
        return _section(self.data, DEV_DEPENDENCIES, self.path)

    @property
    def engines(self) -> Dict[str, str]:
        value = self.data.get("engines")
        return {str(k): str(v) for k, v in value.items()} if isinstance(value, dict) else {}

    def has(self, name: str) -> bool:
        return name in self.dependencies or name in self.dev_dependencies

    def save_entry(self, name: str, spec: str, dev: bool = False) -> None:
        """Record ``name: spec`` in the matching section, dropping it from the other."""
        target, other = (DEV_DEPENDENCIES, DEPENDENCIES) if dev else (DEPENDENCIES, DEV_DEPENDENCIES)
        self.data.setdefault(target, {})[name] = spec
        if name in (self.data.get(other) or {}):
            del self.data[other][name]

    def remove_entries(self, names: Iterable[str]) -> List[str]:
        """Drop ``names`` from both sections; returns the names actually removed."""
        removed = []
        for name in names:
            for key in (DEPENDENCIES, DEV_DEPENDENCIES):
                section = self.data.get(key)
                if isinstance(section, dict) and name in section:
                    del section[name]
                    if name not in removed:
                        removed.append(name)
        return removed

    def digest(self, options: Optional[Mapping[str, Any]] = None) -> str:
        """sha256 over the dependency sections, engines and install options."""
        canonical = json.dumps(
            {
                DEPENDENCIES: self.dependencies,
                DEV_DEPENDENCIES: self.dev_dependencies,
                "engines": self.engines,
                "options": dict(options or {}),
            },
            sort_keys=True,
            separators=(",", ":"),
        )
        return "sha256-" + hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_text(self) -> str:
        return json.dumps(self.data, indent=2, ensure_ascii=False) + "\n"

    def write(self, fs) -> bool:
        """Atomically write the manifest unless nothing changed.

        Returns:
            True when the file was written.

        Raises:
            PersistenceFailure: When the write fails.
        """
        text = self.to_text()
        if self.original_text is not None and json.loads(self.original_text) == self.data:
            logger.debug("Manifest unchanged; not rewriting %s", self.path)
            return False
        try:
            fs.write_text(self.path, text)
        except OSError as exc:
            raise PersistenceFailure(f"cannot write manifest {self.path}: {exc}", cause=exc) from exc
        self.original_text = text
        return True
