"""Manifest and lock file persistence."""

from .lock import LockEntry, LockState
from .manifest import Manifest

__all__ = ["LockEntry", "LockState", "Manifest"]
