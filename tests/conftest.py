"""Shared fixtures: an in-memory registry, archive builders and run contexts."""

import io
import json
import tarfile
import threading
from collections import Counter
from pathlib import Path

import pytest

from common.errors import NotFound
from common.fs import LocalFileSystem
from context import RunContext
from endpoints import EndpointRegistry
from endpoints.local import LocalPathEndpoint
from endpoints.registry import RegistryEndpoint
from service import PackageService
from settings import Settings
from versioning.models import PackageCatalog

REGISTRY = "https://registry.test/packages"


def build_tarball(dest, files, root="package"):
    """Write a gzip tarball holding ``files`` (name -> text) under ``root/``."""
    dest = Path(dest)
    dest.parent.mkdir(parents=True, exist_ok=True)
    with tarfile.open(dest, "w:gz") as tf:
        for name, content in sorted(files.items()):
            data = content.encode("utf-8")
            info = tarfile.TarInfo(f"{root}/{name}" if root else name)
            info.size = len(data)
            tf.addfile(info, io.BytesIO(data))
    return dest


class FakeRegistry(RegistryEndpoint):
    """Registry endpoint serving published packages from memory.

    Version selection, satisfaction and identity come from RegistryEndpoint;
    only the network edges (``load`` and ``fetch``) are replaced.
    """

    def __init__(self):
        self.packages = {}
        self.loads = Counter()
        self.fetches = []
        self.broken = set()
        self._lock = threading.Lock()

    def publish(self, name, version, dependencies=None, scripts=None, engines=None, files=None):
        self.packages.setdefault(name, {})[version] = {
            "name": name,
            "version": version,
            "dependencies": dict(dependencies or {}),
            "scripts": dict(scripts or {}),
            "engines": dict(engines or {}),
            "files": dict(files or {}),
            "dist": {"tarball": f"{REGISTRY}/{name}/-/{name}-{version}.tgz"},
        }

    def load(self, identifier, ctx):
        name = identifier.name
        with self._lock:
            self.loads[name] += 1
        versions = self.packages.get(name)
        if not versions:
            raise NotFound("package not published", package=name)
        catalog = PackageCatalog(name)
        for version, doc in versions.items():
            catalog.add(self._version_entry(name, version, doc))
        return catalog

    def fetch(self, artifact, dest_dir, ctx):
        filename = artifact.location.rsplit("/", 1)[-1]
        name = artifact.location.split("/-/", 1)[0].rsplit("/", 1)[-1]
        version = filename[len(name) + 1:-len(".tgz")]
        with self._lock:
            self.fetches.append((name, version))
        if name in self.broken:
            raise NotFound("tarball missing", package=name)
        doc = self.packages[name][version]
        files = {
            "box.json": json.dumps({"name": name, "version": version, "dependencies": doc["dependencies"]}),
            "index.js": f"// {name} {version}\n",
        }
        files.update(doc["files"])
        return build_tarball(Path(dest_dir) / filename, files)


class RecordingFileSystem(LocalFileSystem):
    """LocalFileSystem that remembers every mutation."""

    def __init__(self):
        self.writes = []

    def write_text(self, path, content):
        self.writes.append(("write_text", str(path)))
        super().write_text(path, content)

    def replace_dir(self, staged, target):
        self.writes.append(("replace_dir", str(target)))
        super().replace_dir(staged, target)

    def remove(self, path):
        self.writes.append(("remove", str(path)))
        super().remove(path)


@pytest.fixture
def make_tarball():
    return build_tarball


@pytest.fixture
def settings():
    return Settings(
        registry_url=REGISTRY,
        retry_base_delay=0.0,
        retry_max_delay=0.0,
        max_workers=2,
    )


@pytest.fixture
def project(tmp_path):
    path = tmp_path / "project"
    path.mkdir()
    return path


@pytest.fixture
def write_manifest(project):
    """Write ``box.json`` into the project and return its path."""

    def _write(dependencies=None, dev_dependencies=None, **extra):
        data = {"name": "app", "version": "1.0.0"}
        data.update(extra)
        if dependencies is not None:
            data["dependencies"] = dependencies
        if dev_dependencies is not None:
            data["devDependencies"] = dev_dependencies
        path = project / "box.json"
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
        return path

    return _write


@pytest.fixture
def registry():
    return FakeRegistry()


@pytest.fixture
def endpoints(registry, project):
    return EndpointRegistry([registry, LocalPathEndpoint(project)])


@pytest.fixture
def events():
    return []


@pytest.fixture
def ctx(settings, endpoints, project, events):
    context = RunContext(settings=settings, endpoints=endpoints, project_dir=project, events=events.append)
    yield context
    context.close()


@pytest.fixture
def recording_fs():
    return RecordingFileSystem()


@pytest.fixture
def service(settings, endpoints, recording_fs, events):
    return PackageService(settings=settings, endpoints=endpoints, fs=recording_fs, events=events.append)


def read_record(project, install_path):
    """Parsed install marker of the package at ``install_path``."""
    return json.loads((Path(project) / install_path / ".box-install.json").read_text(encoding="utf-8"))


@pytest.fixture
def record_of(project):
    return lambda install_path: read_record(project, install_path)
