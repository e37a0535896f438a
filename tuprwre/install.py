# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Install flow: run an install command, commit it, discover binaries.

A container created by the flow is always removed once the flow
finishes, whether it succeeded or not; a resumed container is kept.
Failures are reported as ``InstallError`` tagged with the phase that
failed.
"""

from __future__ import annotations

import base64
import logging
import shlex
from dataclasses import dataclass, field

from tuprwre.discovery import Binary, Discoverer
from tuprwre.sandbox.errors import (
    ContainerLifecycleError,
    ImagePullFailed,
    SandboxError,
)
from tuprwre.sandbox.runtime import DockerRuntime
from tuprwre.sandbox.types import ResourcePolicy


logger = logging.getLogger(__name__)

INSTALL_PHASES = ("pull", "create", "run", "commit", "discover")


class InstallError(Exception):
    """Raised when a phase of the install flow fails.

    Attributes:
        phase: One of ``INSTALL_PHASES``.
        cause: The underlying error.
    """

    def __init__(self, phase: str, cause: Exception) -> None:
        super().__init__(f"install failed during {phase}: {cause}")
        self.phase = phase
        self.cause = cause


@dataclass(frozen=True)
class InstallResult:
    """Outcome of a successful install."""

    image_name: str
    container_id: str
    base_image: str
    command: str
    binaries: list[Binary] = field(default_factory=list)


def build_script_install_command(script: bytes, args: list[str]) -> str:
    """Embed a local install script into a single shell command.

    The script travels base64-encoded so that no quoting of its content
    is needed; arguments are passed to it with ``sh -s --``.
    """
    encoded = base64.b64encode(script).decode("ascii")
    command = f"printf '{encoded}' | base64 -d | sh -s --"
    if args:
        command += " " + " ".join(shlex.quote(arg) for arg in args)
    return command


def run_install_flow(
    runtime: DockerRuntime,
    *,
    base_image: str,
    command: str,
    image_name: str = "",
    resources: ResourcePolicy | None = None,
    discoverer: Discoverer | None = None,
    container_id: str = "",
) -> InstallResult:
    """Install into a fresh container and commit the result.

    With ``container_id`` the install is resumed from an already prepared
    container: nothing is pulled or run, the container is committed as is
    and left in place.

    Args:
        runtime: Connected or connectable runtime.
        base_image: Image the install starts from.
        command: Shell command run with ``sh -c``.
        image_name: Name of the committed image. Generated when empty.
        resources: Limits for the install container.
        discoverer: Discovery strategy. Defaults to image diff.
        container_id: Existing container to commit instead of running
            ``command``.

    Returns:
        The committed image and the binaries it added.

    Raises:
        InstallError: If any phase fails.
    """
    image_name = image_name or runtime.generate_image_name()

    if container_id:
        logger.info("Resuming install from container %s", container_id[:12])
        _commit(runtime, container_id, image_name)
    else:
        container_id = _run_and_commit(
            runtime, base_image, command, image_name, resources
        )

    discoverer = discoverer or Discoverer(runtime)
    try:
        binaries = discoverer.discover_binaries(base_image, image_name)
    except SandboxError as e:
        raise InstallError("discover", e) from e

    return InstallResult(
        image_name=image_name,
        container_id=container_id,
        base_image=base_image,
        command=command,
        binaries=binaries,
    )


def _run_and_commit(
    runtime: DockerRuntime,
    base_image: str,
    command: str,
    image_name: str,
    resources: ResourcePolicy | None,
) -> str:
    """Run ``command`` in a fresh container, commit it and remove it."""
    try:
        runtime.pull_image(base_image)
    except SandboxError as e:
        raise InstallError("pull", e) from e

    logger.info("Running install in %s: %s", base_image, command)
    container_id = ""
    try:
        try:
            container_id = runtime.run_install(base_image, command, resources)
        except ContainerLifecycleError as e:
            container_id = e.container_id or ""
            phase = "create" if e.phase == "create" else "run"
            raise InstallError(phase, e) from e
        except ImagePullFailed as e:
            raise InstallError("pull", e) from e
        except SandboxError as e:
            container_id = getattr(e, "container_id", None) or ""
            raise InstallError("run", e) from e

        _commit(runtime, container_id, image_name)
    finally:
        if container_id:
            try:
                runtime.cleanup_container(container_id)
            except SandboxError as e:
                logger.warning(
                    "Failed to remove install container %s: %s",
                    container_id[:12],
                    e,
                )
    return container_id


def _commit(runtime: DockerRuntime, container_id: str, image_name: str) -> None:
    try:
        runtime.commit(container_id, image_name)
    except SandboxError as e:
        raise InstallError("commit", e) from e
