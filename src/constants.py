"""Constants used in the project."""

from enum import Enum


class ExitCodes(Enum):
    """Exit codes for the program.

    Args:
        Enum (int): Exit codes for the program.
    """

    SUCCESS = 0
    FILE_ERROR = 1
    CONNECTION_ERROR = 2
    RESOLUTION_FAILED = 3
    PARTIAL_INSTALL_FAILED = 4
    PERSISTENCE_FAILED = 5
    CANCELLED = 130


class SourceKind(Enum):
    """Kinds of package sources an identifier can point at.

    Args:
        Enum (string): Source kind tag used in manifests and the lock file.
    """

    REGISTRY = "registry"
    VCS = "vcs"
    URL = "url"
    LOCAL = "local"


class DependencyKind(Enum):
    """Whether an installed package was requested by the manifest or pulled in."""

    DIRECT = "direct"
    TRANSITIVE = "transitive"


class Constants:  # pylint: disable=too-few-public-methods
    """General constants used in the project.
    Data holder for configuration defaults; not intended to provide behavior.
    """

    REGISTRY_URL = "https://registry.boxpm.io/api/v1/packages"
    MANIFEST_FILE = "box.json"
    LOCK_FILE = "box.lock"
    INSTALL_DIR = "modules"
    RECORD_FILE = ".box-install.json"
    CONFIG_FILES = [".boxpm.yml", ".boxpm.yaml", ".boxpm.json"]
    LOCKFILE_VERSION = 1
    STAGING_SUFFIX = ".box-tmp-"
    TRASH_SUFFIX = ".box-old-"
    REMOVE_SUFFIX = ".box-del-"
    LOG_FORMAT = "[%(levelname)s] %(message)s"
    ENV_PREFIX = "BOXPM_"
    REQUEST_TIMEOUT = 30  # Timeout in seconds for all HTTP requests
    DOWNLOAD_CHUNK_SIZE = 64 * 1024

    # Repository API constants
    GITHUB_API_BASE = "https://api.github.com"
    GITLAB_API_BASE = "https://gitlab.com/api/v4"
    ENV_GITHUB_TOKEN = "GITHUB_TOKEN"
    ENV_GITLAB_TOKEN = "GITLAB_TOKEN"
    ENV_REGISTRY_TOKEN = "BOXPM_REGISTRY_TOKEN"

    HTTP_RETRY_MAX = 3
    HTTP_RETRY_BASE_DELAY_SEC = 0.3
    HTTP_RETRY_MAX_DELAY_SEC = 10.0
    MAX_WORKERS = 8
    HOOK_TIMEOUT_SEC = 300
