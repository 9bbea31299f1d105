"""Configuration snapshot for one run.

Precedence (lowest to highest): ``Constants`` defaults, user config
(``~/.boxpm.yml``), project config (``.boxpm.yml`` beside the manifest),
``BOXPM_*`` environment variables and token variables, explicit overrides.
The resulting ``Settings`` is frozen and passed through the run context; no
code path re-reads configuration mid-run.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from constants import Constants

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Settings:  # pylint: disable=too-many-instance-attributes
    """Immutable runtime configuration."""

    registry_url: str = Constants.REGISTRY_URL
    registry_token: Optional[str] = None
    github_api: str = Constants.GITHUB_API_BASE
    gitlab_api: str = Constants.GITLAB_API_BASE
    github_token: Optional[str] = None
    gitlab_token: Optional[str] = None
    request_timeout: float = float(Constants.REQUEST_TIMEOUT)
    retry_attempts: int = Constants.HTTP_RETRY_MAX
    retry_base_delay: float = Constants.HTTP_RETRY_BASE_DELAY_SEC
    retry_max_delay: float = Constants.HTTP_RETRY_MAX_DELAY_SEC
    max_workers: int = Constants.MAX_WORKERS
    install_dir: str = Constants.INSTALL_DIR
    manifest_file: str = Constants.MANIFEST_FILE
    lock_file: str = Constants.LOCK_FILE
    run_hooks: bool = True
    fatal_hooks: bool = False
    hook_timeout: float = float(Constants.HOOK_TIMEOUT_SEC)
    allow_prerelease: bool = False
    link_local: bool = False
    engines: Dict[str, str] = field(default_factory=dict)

    def replace(self, **changes: Any) -> "Settings":
        """Copy with ``changes`` applied (validated like a fresh load)."""
        return _build(dataclasses.asdict(self), changes)


_FIELDS = {f.name: f for f in dataclasses.fields(Settings)}
_ENV_TOKENS = {
    "registry_token": Constants.ENV_REGISTRY_TOKEN,
    "github_token": Constants.ENV_GITHUB_TOKEN,
    "gitlab_token": Constants.ENV_GITLAB_TOKEN,
}


def _coerce(name: str, value: Any) -> Any:
    """Convert a config/env value to the declared field type."""
    default = _FIELDS[name].default
    if name == "engines":
        if isinstance(value, str):
            value = dict(part.split("=", 1) for part in value.split(",") if "=" in part)
        if not isinstance(value, Mapping):
            raise ValueError(f"{name} must be a mapping")
        return {str(k).strip(): str(v).strip() for k, v in value.items()}
    if isinstance(default, bool):
        if isinstance(value, str):
            return value.strip().lower() in ("1", "true", "yes", "on")
        return bool(value)
    if isinstance(default, int):
        return int(value)
    if isinstance(default, float):
        return float(value)
    return None if value is None else str(value)


def _build(base: Mapping[str, Any], changes: Mapping[str, Any]) -> Settings:
    values = dict(base)
    for key, value in changes.items():
        if key not in _FIELDS:
            logger.warning("Ignoring unknown setting '%s'", key)
            continue
        try:
            values[key] = _coerce(key, value)
        except (TypeError, ValueError) as exc:
            logger.warning("Ignoring invalid value for '%s': %s", key, exc)
    if values.get("max_workers", 1) < 1:
        values["max_workers"] = 1
    if values.get("retry_attempts", 1) < 1:
        values["retry_attempts"] = 1
    return Settings(**values)


def load_config_file(path: Path) -> Dict[str, Any]:
    """Read a YAML or JSON config file; a ``boxpm:`` section is used when present."""
    try:
        with open(path, "r", encoding="utf-8") as fh:
            if path.suffix == ".json":
                data = json.load(fh)
            else:
                data = yaml.safe_load(fh) or {}
    except FileNotFoundError:
        return {}
    except (OSError, ValueError, yaml.YAMLError) as exc:
        logger.warning("Failed to load config %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Config %s is not a mapping; ignored", path)
        return {}
    section = data.get("boxpm", data)
    return {str(k).replace("-", "_"): v for k, v in section.items()} if isinstance(section, dict) else {}


def _env_values(environ: Mapping[str, str]) -> Dict[str, Any]:
    values: Dict[str, Any] = {}
    for key, var in _ENV_TOKENS.items():
        if environ.get(var, "").strip():
            values[key] = environ[var].strip()
    for name in _FIELDS:
        var = f"{Constants.ENV_PREFIX}{name.upper()}"
        if var in environ and name not in _ENV_TOKENS:
            values[name] = environ[var]
    return values


def load_settings(
    project_dir: Optional[Path] = None,
    *,
    config_path: Optional[Path] = None,
    overrides: Optional[Mapping[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> Settings:
    """Capture the configuration snapshot for one run."""
    environ = os.environ if environ is None else environ
    layers: Dict[str, Any] = {}
    home = environ.get("HOME")
    candidates = []
    if home:
        candidates.extend(Path(home) / name for name in Constants.CONFIG_FILES)
    if project_dir is not None:
        candidates.extend(Path(project_dir) / name for name in Constants.CONFIG_FILES)
    if config_path is not None:
        candidates.append(Path(config_path))
    for candidate in candidates:
        layers.update(load_config_file(candidate))
    layers.update(_env_values(environ))
    layers.update({k: v for k, v in (overrides or {}).items() if v is not None})
    return _build(dataclasses.asdict(Settings()), layers)
