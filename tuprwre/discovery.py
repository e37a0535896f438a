# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Binary discovery by image diff.

After an install is committed, the executables on the new image's PATH
are compared against those of the base image. What the install added,
minus common system tools, becomes the set of binaries to expose as
host-side shims.
"""

from __future__ import annotations

import logging
import posixpath
from dataclasses import dataclass
from typing import Protocol

from tuprwre.sandbox.errors import NotImplementedFeature


logger = logging.getLogger(__name__)

#: Names never exposed as shims even when an install adds them.
SYSTEM_BINARIES = frozenset(
    {
        "sh",
        "bash",
        "zsh",
        "ls",
        "cat",
        "grep",
        "awk",
        "sed",
        "curl",
        "wget",
        "tar",
        "gzip",
        "[",
        "test",
        "[[",
    }
)


class ExecutableLister(Protocol):
    def list_image_executables(self, image: str) -> list[str]: ...


@dataclass(frozen=True)
class Binary:
    """An executable discovered in an image.

    Attributes:
        name: File name, used as the shim name.
        path: Absolute path inside the image.
        version: Always empty; version detection is not implemented.
    """

    name: str
    path: str
    version: str = ""


class Discoverer:
    """Finds binaries an install added to an image."""

    def __init__(self, runtime: ExecutableLister) -> None:
        self._runtime = runtime

    def discover_binaries(
        self, base_image: str, new_image: str
    ) -> list[Binary]:
        """List binaries present in ``new_image`` but not in ``base_image``.

        Args:
            base_image: Image the install started from.
            new_image: Committed result of the install.

        Returns:
            New binaries in path order, system binaries removed.

        Raises:
            SandboxError: If either image cannot be inspected.
        """
        baseline = self._runtime.list_image_executables(base_image)
        current = self._runtime.list_image_executables(new_image)

        new_paths = difference(current, baseline)
        binaries = [
            Binary(name=posixpath.basename(path), path=path)
            for path in new_paths
        ]
        binaries = self.filter_system_binaries(binaries)
        logger.info(
            "Discovered %d new binaries in %s", len(binaries), new_image
        )
        return binaries

    def discover_from_filesystem_diff(
        self, container_id: str, base_image: str
    ) -> list[Binary]:
        raise NotImplementedFeature("filesystem diff discovery not implemented")

    def get_binary_version(self, binary_path: str, container_id: str) -> str:
        raise NotImplementedFeature("binary version detection not implemented")

    @staticmethod
    def filter_system_binaries(binaries: list[Binary]) -> list[Binary]:
        """Drop common system tools and names not starting alphanumeric."""
        return [
            b
            for b in binaries
            if b.name
            and b.name not in SYSTEM_BINARIES
            and _is_ascii_alphanumeric(b.name[0])
        ]


def difference(current: list[str], baseline: list[str]) -> list[str]:
    """Sorted, deduplicated paths of ``current`` missing from ``baseline``."""
    known = set(baseline)
    return sorted({path for path in current if path not in known})


def _is_ascii_alphanumeric(char: str) -> bool:
    return char.isascii() and char.isalnum()
