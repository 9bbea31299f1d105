"""Tests for the local filesystem implementation."""

import os

from common.fs import LocalFileSystem
from constants import Constants


class TestWriteText:
    """Atomic file writes."""

    def test_creates_parents_and_leaves_no_temp_files(self, tmp_path):
        fs = LocalFileSystem()
        target = tmp_path / "a" / "b.json"
        fs.write_text(target, "{}\n")
        assert target.read_text() == "{}\n"
        assert os.listdir(target.parent) == ["b.json"]


class TestReplaceDir:
    """Directory swaps."""

    def test_into_empty_slot(self, tmp_path):
        fs = LocalFileSystem()
        staged = fs.make_staging_dir(tmp_path / "modules" / "foo")
        (staged / "new.txt").write_text("new")
        fs.replace_dir(staged, tmp_path / "modules" / "foo")
        assert (tmp_path / "modules" / "foo" / "new.txt").exists()
        assert os.listdir(tmp_path / "modules") == ["foo"]

    def test_over_existing_directory(self, tmp_path):
        fs = LocalFileSystem()
        target = tmp_path / "modules" / "foo"
        target.mkdir(parents=True)
        (target / "old.txt").write_text("old")
        staged = fs.make_staging_dir(target)
        (staged / "new.txt").write_text("new")

        fs.replace_dir(staged, target)

        assert sorted(os.listdir(target)) == ["new.txt"]
        assert os.listdir(tmp_path / "modules") == ["foo"]

    def test_over_symlink(self, tmp_path):
        fs = LocalFileSystem()
        source = tmp_path / "src"
        source.mkdir()
        (source / "keep.txt").write_text("keep")
        target = tmp_path / "modules" / "foo"
        target.parent.mkdir()
        fs.symlink(source, target)
        staged = fs.make_staging_dir(target)

        fs.replace_dir(staged, target)

        assert not target.is_symlink()
        assert (source / "keep.txt").exists()


    def test_symlink_staged_on_fresh_project(self, tmp_path):
        fs = LocalFileSystem()
        source = tmp_path / "src"
        source.mkdir()
        target = tmp_path / "project" / "modules" / "foo"

        staged = fs.staging_path(target)
        fs.symlink(source, staged)
        fs.replace_dir(staged, target)

        assert target.is_symlink()
        assert os.listdir(target.parent) == ["foo"]


class TestRemove:
    """Deletion."""

    def test_removes_tree(self, tmp_path):
        fs = LocalFileSystem()
        target = tmp_path / "modules" / "foo"
        (target / "deep").mkdir(parents=True)
        fs.remove(target)
        assert os.listdir(tmp_path / "modules") == []

    def test_symlink_removed_not_followed(self, tmp_path):
        fs = LocalFileSystem()
        source = tmp_path / "src"
        source.mkdir()
        (source / "keep.txt").write_text("keep")
        link = tmp_path / "link"
        fs.symlink(source, link)
        fs.remove(link)
        assert not os.path.lexists(link)
        assert (source / "keep.txt").exists()

    def test_missing_is_noop(self, tmp_path):
        LocalFileSystem().remove(tmp_path / "nothing")


class TestSweepLeftovers:
    """Recovery after an interrupted run."""

    def test_staging_directories_removed(self, tmp_path):
        fs = LocalFileSystem()
        root = tmp_path / "modules"
        fs.make_staging_dir(root / "foo")
        (root / "bar").mkdir()

        assert fs.sweep_leftovers(root) == 1
        assert os.listdir(root) == ["bar"]

    def test_orphaned_trash_restored(self, tmp_path):
        fs = LocalFileSystem()
        root = tmp_path / "modules"
        trash = root / f"foo{Constants.TRASH_SUFFIX}abcd1234"
        trash.mkdir(parents=True)
        (trash / "old.txt").write_text("old")

        fs.sweep_leftovers(root)

        assert (root / "foo" / "old.txt").exists()
        assert not trash.exists()

    def test_trash_beside_live_dir_removed(self, tmp_path):
        fs = LocalFileSystem()
        root = tmp_path / "modules"
        (root / "foo").mkdir(parents=True)
        (root / f"foo{Constants.TRASH_SUFFIX}abcd1234").mkdir()

        assert fs.sweep_leftovers(root) == 1
        assert os.listdir(root) == ["foo"]

    def test_half_deleted_removal_not_restored(self, tmp_path):
        fs = LocalFileSystem()
        root = tmp_path / "modules"
        trash = root / f"foo{Constants.REMOVE_SUFFIX}abcd1234"
        trash.mkdir(parents=True)
        (trash / Constants.RECORD_FILE).write_text("{}")

        assert fs.sweep_leftovers(root) == 1
        assert os.listdir(root) == []

    def test_nested_staging_found(self, tmp_path):
        fs = LocalFileSystem()
        root = tmp_path / "modules"
        fs.make_staging_dir(root / "foo" / "modules" / "bar")

        assert fs.sweep_leftovers(root) == 1
        assert os.listdir(root / "foo" / "modules") == []
