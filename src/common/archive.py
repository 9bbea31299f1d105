"""Safe archive extraction and embedded manifest lookup."""

from __future__ import annotations

import json
import logging
import shutil
import tarfile
import threading
import zipfile
from pathlib import Path, PurePosixPath
from typing import Any, Dict, List, Optional

from common.errors import CorruptArtifact, OperationCancelled

logger = logging.getLogger(__name__)


def _is_zip(path: Path) -> bool:
    return zipfile.is_zipfile(path)


def _check_member(name: str) -> PurePosixPath:
    """Reject absolute and parent-escaping member paths."""
    member = PurePosixPath(name.replace("\\", "/"))
    if member.is_absolute() or ".." in member.parts:
        raise CorruptArtifact(f"unsafe path in archive: {name}")
    return member


def _common_root(names: List[str]) -> Optional[str]:
    """Return the single top-level directory shared by every member, if any."""
    roots = set()
    nested = False
    for name in names:
        parts = PurePosixPath(name).parts
        if not parts:
            continue
        roots.add(parts[0])
        if len(parts) > 1:
            nested = True
    if len(roots) == 1 and nested:
        return roots.pop()
    return None


def _member_names(archive: Path) -> List[str]:
    if _is_zip(archive):
        with zipfile.ZipFile(archive) as zf:
            return [n for n in zf.namelist() if not n.endswith("/")]
    with tarfile.open(archive, "r:*") as tf:
        return [m.name for m in tf.getmembers() if m.isfile()]


def extract_archive(archive: Path, dest: Path, cancel_event: Optional[threading.Event] = None) -> Path:
    """Unpack a zip or tar archive into ``dest``.

    A single top-level directory (``package/`` or ``repo-<sha>/``) is stripped.
    Links and special files in tarballs are skipped.

    Raises:
        CorruptArtifact: If the archive is unreadable or contains unsafe paths.
        OperationCancelled: If ``cancel_event`` is set between members.
    """
    dest.mkdir(parents=True, exist_ok=True)
    try:
        root = _common_root(_member_names(archive))
        if _is_zip(archive):
            with zipfile.ZipFile(archive) as zf:
                for info in zf.infolist():
                    _checkpoint(cancel_event)
                    _extract_member(info.filename, info.is_dir(), lambda i=info: zf.open(i), dest, root)
        else:
            with tarfile.open(archive, "r:*") as tf:
                for member in tf.getmembers():
                    _checkpoint(cancel_event)
                    if not (member.isfile() or member.isdir()):
                        logger.debug("Skipping non-regular archive member %s", member.name)
                        continue
                    _extract_member(member.name, member.isdir(), lambda m=member: tf.extractfile(m), dest, root)
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError) as exc:
        raise CorruptArtifact(f"cannot unpack {archive.name}: {exc}", cause=exc) from exc
    return dest


def _checkpoint(cancel_event: Optional[threading.Event]) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise OperationCancelled("extraction interrupted")


def _extract_member(name, is_dir, opener, dest: Path, root: Optional[str]) -> None:
    member = _check_member(name)
    parts = member.parts
    if root is not None and parts and parts[0] == root:
        parts = parts[1:]
    if not parts:
        return
    target = dest.joinpath(*parts)
    if is_dir:
        target.mkdir(parents=True, exist_ok=True)
        return
    target.parent.mkdir(parents=True, exist_ok=True)
    source = opener()
    if source is None:
        return
    with source, open(target, "wb") as out:
        shutil.copyfileobj(source, out)


def read_embedded_manifest(archive: Path, manifest_name: str) -> Optional[Dict[str, Any]]:
    """Return the top-level manifest inside an archive, or None when absent."""
    try:
        names = _member_names(archive)
        root = _common_root(names)
        wanted = {manifest_name}
        if root is not None:
            wanted.add(f"{root}/{manifest_name}")
        match = next((n for n in names if n in wanted), None)
        if match is None:
            return None
        if _is_zip(archive):
            with zipfile.ZipFile(archive) as zf:
                raw = zf.read(match)
        else:
            with tarfile.open(archive, "r:*") as tf:
                fh = tf.extractfile(match)
                raw = fh.read() if fh is not None else b""
        data = json.loads(raw.decode("utf-8"))
    except (tarfile.TarError, zipfile.BadZipFile, EOFError, OSError, UnicodeDecodeError) as exc:
        raise CorruptArtifact(f"cannot read {archive.name}: {exc}", cause=exc) from exc
    except json.JSONDecodeError as exc:
        raise CorruptArtifact(f"embedded {manifest_name} is not valid JSON", cause=exc) from exc
    return data if isinstance(data, dict) else None
