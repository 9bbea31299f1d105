"""Install records: what is on disk, read from per-package marker files.

Each installed package directory carries a ``.box-install.json`` marker
written into the staging directory before the swap, so a record and the files
it describes always appear (and disappear) together. A linked local
package keeps its marker beside the link instead of inside the target.
"""

from __future__ import annotations

import json
import logging
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Dict, Optional

from constants import Constants, DependencyKind

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InstalledPackageRecord:
    """One installed package as recorded by its marker."""
    name: str
    installed_version: str
    install_path: str
    kind: str = DependencyKind.DIRECT.value
    is_dev: bool = False
    source: str = ""
    integrity: Optional[str] = None

    def to_json(self) -> str:
        return json.dumps(asdict(self), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_dict(cls, data: Dict, install_path: str) -> "InstalledPackageRecord":
        return cls(
            name=str(data["name"]),
            installed_version=str(data["installed_version"]),
            install_path=install_path,
            kind=str(data.get("kind", DependencyKind.DIRECT.value)),
            is_dev=bool(data.get("is_dev", False)),
            source=str(data.get("source", "")),
            integrity=data.get("integrity"),
        )


def package_dir(install_dir: str, chain) -> str:
    """Relative path of the package at scope ``chain``: ``modules/a/modules/b``."""
    return "/".join(f"{install_dir}/{name}" for name in chain)


class RecordStore:
    """Reads install records beneath the project's install root."""

    def __init__(self, fs, project_dir: Path, install_dir: str = Constants.INSTALL_DIR):
        self.fs = fs
        self.project_dir = Path(project_dir)
        self.install_dir = install_dir

    def marker(self, install_path: str) -> Path:
        """Record file for ``install_path``.

        Linked packages keep theirs beside the link (``modules/.foo.box-install.json``)
        so nothing is written into the linked source directory.
        """
        target = self.project_dir / install_path
        if self.fs.is_symlink(target):
            return self.link_marker(install_path)
        return target / Constants.RECORD_FILE

    def link_marker(self, install_path: str) -> Path:
        target = self.project_dir / install_path
        return target.parent / f".{target.name}{Constants.RECORD_FILE}"

    def read(self, install_path: str) -> Optional[InstalledPackageRecord]:
        marker = self.marker(install_path)
        if not self.fs.exists(marker):
            return None
        try:
            data = json.loads(self.fs.read_text(marker))
            return InstalledPackageRecord.from_dict(data, install_path)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            logger.warning("Ignoring unreadable install record %s: %s", marker, exc)
            return None

    def scan(self) -> Dict[str, InstalledPackageRecord]:
        """Every record under the install root, keyed by install path."""
        records: Dict[str, InstalledPackageRecord] = {}
        self._scan_dir(self.install_dir, records)
        logger.debug("Found %d install record(s)", len(records))
        return records

    def _scan_dir(self, rel_dir: str, records: Dict[str, InstalledPackageRecord]) -> None:
        for entry in self.fs.listdir(self.project_dir / rel_dir):
            if entry.startswith(".") or any(
                suffix in entry
                for suffix in (Constants.STAGING_SUFFIX, Constants.TRASH_SUFFIX, Constants.REMOVE_SUFFIX)
            ):
                continue
            rel = f"{rel_dir}/{entry}"
            if not self.fs.is_dir(self.project_dir / rel):
                continue
            if entry.startswith("@") and not self.fs.exists(self.marker(rel)):
                # Scope directory: @scope/name
                self._scan_dir(rel, records)
                continue
            record = self.read(rel)
            if record is not None:
                records[rel] = record
            if not self.fs.is_symlink(self.project_dir / rel):
                self._scan_dir(f"{rel}/{self.install_dir}", records)
