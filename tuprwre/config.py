# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Layered configuration for tuprwre.

Sources, later ones overriding earlier ones:

1. Built-in defaults.
2. ``.env`` files (XDG config directory, then the current directory),
   loaded once into the process environment.
3. Global config: ``~/.config/tuprwre/tuprwre.yaml``.
4. Workspace config: the nearest ``.tuprwre/tuprwre.yaml`` found walking
   up from the current directory.
5. Environment variables ``TUPRWRE_BASE_IMAGE``, ``TUPRWRE_RUNTIME``,
   ``TUPRWRE_MEMORY`` and ``TUPRWRE_CPUS``.

Example::

    base_image: debian:bookworm
    runtime: docker
    resources:
      memory: 25%
      cpus: "2"
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

import yaml
from platformdirs import user_config_path


logger = logging.getLogger(__name__)

_APP_NAME = "tuprwre"

DEFAULT_BASE_IMAGE = "ubuntu:22.04"
DEFAULT_RUNTIME = "docker"

WORKSPACE_CONFIG_PATH = Path(".tuprwre") / "tuprwre.yaml"

SUPPORTED_RUNTIMES = ("docker", "containerd")

_dotenv_loaded = False


class ConfigError(Exception):
    """Base exception for configuration errors."""


class RuntimeNotImplemented(ConfigError):
    """Raised for a known runtime without a run path."""


class RuntimeNotSupported(ConfigError):
    """Raised for an unknown runtime name."""


def get_config_path() -> Path:
    """Return the global config file path (``$XDG_CONFIG_HOME/tuprwre``)."""
    return user_config_path(_APP_NAME) / "tuprwre.yaml"


def get_dotenv_path() -> Path:
    """Return the ``.env`` path inside the XDG config directory."""
    return user_config_path(_APP_NAME) / ".env"


def load_dotenv_once() -> None:
    """Load .env files once, if not already loaded.

    The XDG file is loaded first; ``python-dotenv`` does not overwrite
    existing variables, so it wins over ``./.env``.
    """
    global _dotenv_loaded
    if _dotenv_loaded:
        return

    from dotenv import load_dotenv

    for env_path in (get_dotenv_path(), Path.cwd() / ".env"):
        if env_path.exists():
            load_dotenv(env_path)
            logger.debug("Loaded .env from %s", env_path)

    _dotenv_loaded = True


def reset_dotenv_state() -> None:
    """Reset the dotenv loaded state. For testing only."""
    global _dotenv_loaded
    _dotenv_loaded = False


def find_workspace_root(start: Path) -> Path | None:
    """Nearest ancestor of ``start`` holding a workspace config."""
    current = start.resolve()
    for candidate in (current, *current.parents):
        if (candidate / WORKSPACE_CONFIG_PATH).is_file():
            return candidate
    return None


def validate_runtime(name: str) -> str:
    """Check a runtime selector.

    Returns:
        The normalized runtime name.

    Raises:
        RuntimeNotImplemented: For ``containerd``.
        RuntimeNotSupported: For anything else but ``docker``.
    """
    normalized = name.strip().lower()
    if normalized == "docker":
        return normalized
    if normalized == "containerd":
        raise RuntimeNotImplemented(
            f"runtime {name!r} is not implemented yet in run path"
        )
    raise RuntimeNotSupported(
        f"runtime {name!r} is not supported "
        f"(supported: {', '.join(SUPPORTED_RUNTIMES)})"
    )


@dataclass(frozen=True)
class TuprwreConfig:
    """Resolved configuration.

    Attributes:
        base_dir: Root directory for tuprwre data.
        shim_dir: Directory receiving generated shims.
        base_image: Default image installs start from.
        runtime: Container runtime selector.
        memory: Default memory spec (``512m``, ``25%`` or empty).
        cpus: Default CPU spec (``2``, ``50%`` or empty).
        workspace_root: Directory holding the workspace config, if any.
    """

    base_dir: Path
    shim_dir: Path
    base_image: str = DEFAULT_BASE_IMAGE
    runtime: str = DEFAULT_RUNTIME
    memory: str = ""
    cpus: str = ""
    workspace_root: Path | None = None

    @classmethod
    def defaults(cls) -> TuprwreConfig:
        base_dir = Path(
            os.environ.get("TUPRWRE_DIR") or Path.home() / ".tuprwre"
        )
        return cls(base_dir=base_dir, shim_dir=base_dir / "bin")

    @classmethod
    def load(
        cls,
        *,
        config_path: Path | None = None,
        cwd: Path | None = None,
    ) -> TuprwreConfig:
        """Load configuration from all layers.

        Args:
            config_path: Global config file. Defaults to the XDG location.
            cwd: Directory the workspace lookup starts from.

        Raises:
            ConfigError: If a config file is unreadable or malformed.
        """
        load_dotenv_once()
        config = cls.defaults()

        global_path = config_path or get_config_path()
        config = config._merge_file(global_path)

        workspace_root = find_workspace_root(cwd or Path.cwd())
        if workspace_root is not None:
            config = replace(config, workspace_root=workspace_root)
            config = config._merge_file(workspace_root / WORKSPACE_CONFIG_PATH)

        return config._merge_env()

    def _merge_file(self, path: Path) -> TuprwreConfig:
        raw = _read_yaml(path)
        if raw is None:
            return self

        updates: dict[str, Any] = {}
        for key in ("base_image", "runtime"):
            if key in raw:
                updates[key] = _require_str(raw[key], key, path)

        resources = raw.get("resources")
        if resources is not None:
            if not isinstance(resources, dict):
                raise ConfigError(f"'resources' must be a mapping in {path}")
            for key in ("memory", "cpus"):
                if key in resources:
                    updates[key] = _require_str(
                        resources[key], f"resources.{key}", path
                    )

        logger.debug("Loaded config from %s", path)
        return replace(self, **updates)

    def _merge_env(self) -> TuprwreConfig:
        updates: dict[str, Any] = {}
        for env_var, key in (
            ("TUPRWRE_BASE_IMAGE", "base_image"),
            ("TUPRWRE_RUNTIME", "runtime"),
            ("TUPRWRE_MEMORY", "memory"),
            ("TUPRWRE_CPUS", "cpus"),
        ):
            value = os.environ.get(env_var)
            if value:
                updates[key] = value
        return replace(self, **updates)


def _read_yaml(path: Path) -> dict[str, Any] | None:
    if not path.exists():
        return None
    try:
        with open(path) as f:
            raw = yaml.safe_load(f)
    except (OSError, yaml.YAMLError) as e:
        raise ConfigError(f"Failed to read config {path}: {e}") from e

    if raw is None:
        return None
    if not isinstance(raw, dict):
        raise ConfigError(f"Config file must be a YAML mapping: {path}")
    return raw


def _require_str(value: object, key: str, path: Path) -> str:
    # YAML reads ``cpus: 2`` as an int.
    if isinstance(value, bool) or not isinstance(value, (str, int, float)):
        raise ConfigError(f"'{key}' must be a string in {path}")
    return str(value)
