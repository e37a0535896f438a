# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Type definitions for the sandbox library.

Provides the core types used throughout the sandbox: Mount,
ExecutionRequest, ExecutionResult, the resource types and the listing
records used by cleanup tooling.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import BinaryIO

from tuprwre.sandbox.errors import InvalidRequest


@dataclass(frozen=True)
class Mount:
    """A volume mount for the container.

    Attributes:
        host_path: Absolute path on the host.
        container_path: Path inside the container.
        read_only: Whether the mount is read-only.
    """

    host_path: Path
    container_path: str
    read_only: bool = False

    @property
    def bind_spec(self) -> str:
        """Docker bind notation (``host:container:ro``)."""
        mode = "ro" if self.read_only else "rw"
        return f"{self.host_path}:{self.container_path}:{mode}"

    @classmethod
    def parse(cls, spec: str) -> Mount:
        """Parse ``host:container[:ro|:rw]`` notation.

        A spec without a container path mounts the host path at the same
        location inside the container.

        Raises:
            InvalidRequest: If the spec is empty or has an unknown mode.
        """
        parts = spec.split(":")
        if not spec or not parts[0]:
            raise InvalidRequest(f"invalid volume spec {spec!r}")

        read_only = False
        if len(parts) == 3:
            if parts[2] not in ("ro", "rw"):
                raise InvalidRequest(
                    f"invalid volume mode {parts[2]!r} in {spec!r}"
                )
            read_only = parts[2] == "ro"
        elif len(parts) > 3:
            raise InvalidRequest(f"invalid volume spec {spec!r}")

        container_path = parts[1] if len(parts) > 1 and parts[1] else parts[0]
        return cls(
            host_path=Path(parts[0]),
            container_path=container_path,
            read_only=read_only,
        )


@dataclass(frozen=True)
class ResourceSpec:
    """User-facing resource request, possibly host-relative.

    Attributes:
        memory: ``"512m"``, ``"1g"``, ``"25%"`` or empty for no limit.
        cpus: ``"2.0"``, ``"50%"`` or empty for no limit.
    """

    memory: str = ""
    cpus: str = ""


@dataclass(frozen=True)
class ResourcePolicy:
    """Resolved container resource limits. Zero means no limit."""

    memory: int = 0
    cpus: float = 0.0

    def is_zero(self) -> bool:
        return self.memory == 0 and self.cpus == 0


@dataclass(frozen=True)
class HostResources:
    """Totals reported by the engine host."""

    memory_total: int = 0
    cpu_count: int = 0


@dataclass(frozen=True)
class ExecutionRequest:
    """Everything needed for one proxied run.

    Exactly one of ``image`` and ``container_id`` must be set. With an
    image, a fresh container is created and removed; with a container id,
    the binary is exec'd inside that running container.

    Stream handles are binary file-like objects. ``stdin`` is optional;
    ``stdout``/``stderr`` default to discarding output.

    Attributes:
        binary: Executable name or path inside the container.
        args: Arguments passed to the binary.
        image: Image to create the container from.
        container_id: Existing container to exec into.
        workdir: Working directory inside the container.
        env: ``KEY=VALUE`` entries.
        mounts: Volume mounts.
        stdin: Input forwarded to the process.
        stdout: Sink for the process stdout.
        stderr: Sink for the process stderr and diagnostics.
        capture_file: Path receiving a copy of stdout and stderr.
        read_only_rootfs: Mount the container root filesystem read-only.
        network_disabled: Run without network access.
        debug_io: Emit human-readable lifecycle diagnostics.
        debug_io_json: Emit lifecycle diagnostics as JSON lines.
        resources: Resolved resource limits.
    """

    binary: str
    args: tuple[str, ...] = ()
    image: str = ""
    container_id: str = ""
    workdir: str = ""
    env: tuple[str, ...] = ()
    mounts: tuple[Mount, ...] = ()
    stdin: BinaryIO | None = None
    stdout: BinaryIO | None = None
    stderr: BinaryIO | None = None
    capture_file: Path | None = None
    read_only_rootfs: bool = True
    network_disabled: bool = False
    debug_io: bool = False
    debug_io_json: bool = False
    resources: ResourcePolicy = field(default_factory=ResourcePolicy)

    def __post_init__(self) -> None:
        if bool(self.image) == bool(self.container_id):
            raise InvalidRequest(
                "exactly one of image and container_id must be set"
            )
        if not self.binary:
            raise InvalidRequest("no binary specified")

    @property
    def command(self) -> list[str]:
        return [self.binary, *self.args]


@dataclass(frozen=True)
class ExecutionResult:
    """Outcome of a run that never raises.

    Attributes:
        exit_code: Process exit code, 1 when the run failed before one
            was observed.
        container_id: Container used for the run, if one was created.
        error: The failure, or None when an exit code was observed.
    """

    exit_code: int
    container_id: str | None = None
    error: Exception | None = None


@dataclass(frozen=True)
class TuprwreImage:
    """A tuprwre-created image, for listing and cleanup."""

    id: str
    repository: str
    tag: str
    size: int
    created: int


@dataclass(frozen=True)
class TuprwreContainer:
    """A stopped tuprwre container, for listing and cleanup."""

    id: str
    name: str
    image: str
    state: str
