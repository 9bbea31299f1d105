"""Filesystem abstraction handed to the core by the host.

``LocalFileSystem`` is the default implementation. Every mutation of the
install tree and of the manifest/lock files goes through one of these methods
so that a host can substitute its own (or a recording one in tests).
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from pathlib import Path
from typing import List, Union

from constants import Constants

logger = logging.getLogger(__name__)

PathLike = Union[str, Path]


class LocalFileSystem:
    """Direct ``os``/``shutil`` backed filesystem."""

    def exists(self, path: PathLike) -> bool:
        return os.path.lexists(path)

    def is_dir(self, path: PathLike) -> bool:
        return os.path.isdir(path)

    def read_text(self, path: PathLike) -> str:
        with open(path, "r", encoding="utf-8") as fh:
            return fh.read()

    def write_text(self, path: PathLike, content: str) -> None:
        """Write ``content`` atomically: temp file in the same directory, then rename."""
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        except BaseException:
            if os.path.exists(tmp):
                os.unlink(tmp)
            raise

    def makedirs(self, path: PathLike) -> None:
        os.makedirs(path, exist_ok=True)

    def listdir(self, path: PathLike) -> List[str]:
        try:
            return sorted(os.listdir(path))
        except FileNotFoundError:
            return []

    def atomic_rename(self, src: PathLike, dst: PathLike) -> None:
        """Rename ``src`` over ``dst``; atomic for files and for empty/absent directory targets."""
        os.replace(src, dst)

    def is_symlink(self, path: PathLike) -> bool:
        return os.path.islink(path)

    def copytree(self, src: PathLike, dst: PathLike, ignore=None) -> None:
        shutil.copytree(src, dst, symlinks=True, dirs_exist_ok=True, ignore=ignore)

    def copyfile(self, src: PathLike, dst: PathLike) -> None:
        Path(dst).parent.mkdir(parents=True, exist_ok=True)
        shutil.copyfile(src, dst)

    def symlink(self, src: PathLike, dst: PathLike) -> None:
        os.symlink(os.path.abspath(src), dst, target_is_directory=True)

    def remove(self, path: PathLike) -> None:
        """Delete a file, symlink or directory tree.

        Directories are renamed aside first so the visible path disappears in one step.
        """
        path = Path(path)
        if path.is_symlink() or path.is_file():
            path.unlink()
            return
        if not path.exists():
            return
        trash = path.with_name(f"{path.name}{Constants.REMOVE_SUFFIX}{uuid.uuid4().hex[:8]}")
        os.replace(path, trash)
        shutil.rmtree(trash, ignore_errors=True)

    def replace_dir(self, staged: PathLike, target: PathLike) -> None:
        """Move a fully prepared ``staged`` directory to ``target``.

        POSIX cannot rename over a non-empty directory, so an existing target is
        first renamed aside and deleted only after the new one is in place.
        Observers see the old tree, briefly nothing, then the new tree; never a mix.
        """
        staged, target = Path(staged), Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        if target.is_symlink() or target.is_file():
            target.unlink()
        if not target.exists():
            os.replace(staged, target)
            return
        trash = target.with_name(f"{target.name}{Constants.TRASH_SUFFIX}{uuid.uuid4().hex[:8]}")
        os.replace(target, trash)
        try:
            os.replace(staged, target)
        except OSError:
            os.replace(trash, target)
            raise
        shutil.rmtree(trash, ignore_errors=True)

    def make_staging_dir(self, target: PathLike) -> Path:
        """Create an empty sibling directory of ``target`` for staging."""
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        return Path(tempfile.mkdtemp(prefix=f"{target.name}{Constants.STAGING_SUFFIX}", dir=target.parent))

    def staging_path(self, target: PathLike) -> Path:
        """A fresh, unused sibling path of ``target`` (for staged symlinks)."""
        target = Path(target)
        target.parent.mkdir(parents=True, exist_ok=True)
        return target.with_name(f"{target.name}{Constants.STAGING_SUFFIX}{uuid.uuid4().hex[:8]}")

    def sweep_leftovers(self, root: PathLike) -> int:
        """Clean up after an interrupted run.

        Staging directories and half-deleted removals are deleted. A swap trash
        directory whose original path is missing (interrupted mid-swap) is moved
        back so the old version reappears.
        """
        removed = 0
        for dirpath, dirnames, _ in os.walk(root):
            for name in list(dirnames):
                full = os.path.join(dirpath, name)
                if Constants.TRASH_SUFFIX in name:
                    original = os.path.join(dirpath, name.split(Constants.TRASH_SUFFIX, 1)[0])
                    if not os.path.lexists(original):
                        os.replace(full, original)
                        logger.warning("Restored %s from an interrupted swap", original)
                        dirnames.remove(name)
                        continue
                elif Constants.STAGING_SUFFIX not in name and Constants.REMOVE_SUFFIX not in name:
                    continue
                if os.path.islink(full):
                    os.unlink(full)
                else:
                    shutil.rmtree(full, ignore_errors=True)
                dirnames.remove(name)
                removed += 1
        if removed:
            logger.info("Removed %d leftover staging director%s", removed, "y" if removed == 1 else "ies")
        return removed
