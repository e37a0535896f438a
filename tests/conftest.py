# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures used across multiple test packages."""

from collections.abc import Iterator
from pathlib import Path

import pytest

from tuprwre.config import reset_dotenv_state


_TUPRWRE_ENV = (
    "TUPRWRE_DIR",
    "TUPRWRE_BASE_IMAGE",
    "TUPRWRE_RUNTIME",
    "TUPRWRE_MEMORY",
    "TUPRWRE_CPUS",
)


@pytest.fixture
def isolated_config(
    tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> Iterator[Path]:
    """Point XDG config, home and cwd at a temporary directory.

    Returns:
        The temporary XDG config home.
    """
    config_home = tmp_path / "xdg"
    config_home.mkdir()
    workdir = tmp_path / "work"
    workdir.mkdir()

    monkeypatch.setenv("XDG_CONFIG_HOME", str(config_home))
    monkeypatch.setenv("HOME", str(tmp_path / "home"))
    for name in _TUPRWRE_ENV:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.chdir(workdir)

    reset_dotenv_state()
    yield config_home
    reset_dotenv_state()
