# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Docker runtime: container lifecycle for installs and proxied runs.

``DockerRuntime`` owns the engine connection and exposes the operations
the rest of tuprwre needs: running an install command, running a proxied
binary, committing, cleaning up, listing tuprwre images and containers,
and listing the executables of an image.
"""

from __future__ import annotations

import logging
import os
import re
import sys
import threading
import time
import uuid
from datetime import datetime
from typing import IO, Any

from docker.errors import APIError, DockerException, NotFound

from tuprwre.logging import SecretFilter
from tuprwre.sandbox.diagnostics import RunDiagnostics
from tuprwre.sandbox.engine import EngineClient
from tuprwre.sandbox.errors import (
    CleanupFailed,
    CommitFailed,
    ContainerLifecycleError,
    HostInfoUnavailable,
    ImagePullFailed,
    NonZeroExit,
    NotImplementedFeature,
    RunCancelled,
    SandboxError,
)
from tuprwre.sandbox.resources import (
    needs_host_info,
    resolve_resource_spec,
    resource_limit_kwargs,
)
from tuprwre.sandbox.session import CaptureFile, ExecutionSession
from tuprwre.sandbox.types import (
    ExecutionRequest,
    ExecutionResult,
    HostResources,
    ResourcePolicy,
    ResourceSpec,
    TuprwreContainer,
    TuprwreImage,
)


logger = logging.getLogger(__name__)

NAME_PREFIX = "tuprwre-"

DEFAULT_PATH = "/usr/local/bin:/usr/bin:/bin:/usr/sbin:/sbin"

#: Writable scratch area of proxied runs (root filesystem is read-only).
RUN_TMPFS = {"/tmp": "size=64m,noexec"}

_STOPPED_STATES = frozenset({"exited", "dead", "created"})

_COMMIT_AUTHOR = "tuprwre"
_COMMIT_MESSAGE = "tuprwre installation commit"

#: Environment names whose values are redacted from log output.
_SECRET_NAME = re.compile(
    r"TOKEN|SECRET|KEY|PASSWORD|PASSWD|CREDENTIAL|AUTH", re.IGNORECASE
)

#: Shortest value redacted for a secret-looking name.
_SECRET_NAMED_MIN_LENGTH = 4

#: Values at least this long are redacted whatever their name.
_SECRET_MIN_LENGTH = 16


def _short_id() -> str:
    return uuid.uuid4().hex[:8]


def _current_user() -> str:
    return f"{os.getuid()}:{os.getgid()}"


def _register_env_secrets(env: tuple[str, ...]) -> None:
    """Register secret-looking ``KEY=VALUE`` values for log redaction.

    Short values under ordinary names (``DEBUG=1``) are left alone so
    they do not mangle unrelated log text.
    """
    for entry in env:
        name, sep, value = entry.partition("=")
        if not sep:
            continue
        named = bool(_SECRET_NAME.search(name))
        if len(value) >= _SECRET_MIN_LENGTH or (
            named and len(value) >= _SECRET_NAMED_MIN_LENGTH
        ):
            SecretFilter.register_secret(value)


def _open_capture(request: ExecutionRequest) -> CaptureFile | None:
    if request.capture_file is None:
        return None
    try:
        return CaptureFile(request.capture_file)
    except OSError as e:
        raise SandboxError(
            f"failed to create capture file {request.capture_file}: {e}"
        ) from e


class DockerRuntime:
    """Container lifecycle management on a Docker engine.

    The engine connection is established by ``connect()``, which every
    operation calls; concurrent or repeated calls share one connection.

    Thread Safety: Thread-safe. Independent runs may execute concurrently;
    they share only the engine client.
    """

    def __init__(self, engine: EngineClient | None = None) -> None:
        """Initialize runtime.

        Args:
            engine: Pre-built engine client. When omitted, ``connect()``
                builds one from the environment.
        """
        self._engine = engine
        self._connect_lock = threading.Lock()

    def connect(self) -> EngineClient:
        """Connect to the engine once and return the shared client.

        Raises:
            EngineUnreachable: If the daemon cannot be reached.
        """
        with self._connect_lock:
            if self._engine is None:
                self._engine = EngineClient.from_env()
                logger.debug("Connected to Docker engine")
            return self._engine

    def close(self) -> None:
        with self._connect_lock:
            if self._engine is not None:
                self._engine.close()
                self._engine = None

    # -- images ---------------------------------------------------------

    def pull_image(self, image: str) -> None:
        """Ensure ``image`` exists locally, pulling it if necessary.

        Raises:
            ImagePullFailed: If the image is missing and cannot be pulled.
        """
        engine = self.connect()
        try:
            if engine.image_exists(image):
                return
        except DockerException as e:
            raise ImagePullFailed(image, str(e)) from e

        logger.info("Pulling image %s", image)
        engine.pull(image)

    def remove_image(self, image: str) -> None:
        engine = self.connect()
        try:
            engine.remove_image(image)
        except DockerException as e:
            raise SandboxError(f"failed to remove image {image}: {e}") from e

    def list_images(self) -> list[TuprwreImage]:
        """List images whose repository starts with ``tuprwre-``.

        Returns:
            Images, newest first.
        """
        engine = self.connect()
        try:
            summaries = engine.images()
        except DockerException as e:
            raise SandboxError(f"failed to list images: {e}") from e

        images: list[TuprwreImage] = []
        for summary in summaries:
            for repo_tag in summary.get("RepoTags") or []:
                parsed = split_repo_tag(repo_tag)
                if parsed is None or not parsed[0].startswith(NAME_PREFIX):
                    continue
                images.append(
                    TuprwreImage(
                        id=summary.get("Id", ""),
                        repository=parsed[0],
                        tag=parsed[1],
                        size=int(summary.get("Size") or 0),
                        created=int(summary.get("Created") or 0),
                    )
                )
                break

        images.sort(key=lambda image: image.created, reverse=True)
        return images

    def generate_image_name(self) -> str:
        """Unique name for a committed install image."""
        timestamp = datetime.now().strftime("%Y%m%d-%H%M%S")
        return f"{NAME_PREFIX}{timestamp}-{_short_id()}"

    # -- containers -----------------------------------------------------

    def list_stopped_containers(self) -> list[TuprwreContainer]:
        """List exited, dead or never-started tuprwre containers."""
        engine = self.connect()
        try:
            summaries = engine.containers()
        except DockerException as e:
            raise SandboxError(f"failed to list containers: {e}") from e

        containers: list[TuprwreContainer] = []
        for summary in summaries:
            state = summary.get("State", "")
            if state not in _STOPPED_STATES:
                continue

            names = [n.lstrip("/") for n in summary.get("Names") or []]
            image = summary.get("Image", "")
            name = next((n for n in names if n.startswith(NAME_PREFIX)), "")
            if not name and image.startswith(NAME_PREFIX):
                name = names[0] if names else summary.get("Id", "")[:12]
            if not name:
                continue

            containers.append(
                TuprwreContainer(
                    id=summary.get("Id", ""),
                    name=name,
                    image=image,
                    state=state,
                )
            )
        return containers

    def remove_container(self, container_id: str) -> None:
        """Force-remove a container and its volumes.

        Raises:
            CleanupFailed: If removal fails.
        """
        engine = self.connect()
        try:
            engine.remove_container(container_id)
        except DockerException as e:
            raise CleanupFailed(
                f"failed to remove container {container_id[:12]}: {e}"
            ) from e

    def cleanup_container(self, container_id: str) -> None:
        """Remove an ephemeral container; repeated calls are harmless.

        A container that is already gone, or whose removal is already in
        progress, is not an error.

        Raises:
            CleanupFailed: For any other removal failure.
        """
        engine = self.connect()
        try:
            engine.remove_container(container_id)
        except NotFound:
            logger.debug("Container %s already removed", container_id[:12])
        except APIError as e:
            if e.status_code == 409 and "in progress" in str(e.explanation):
                logger.debug(
                    "Removal of container %s already in progress",
                    container_id[:12],
                )
                return
            raise CleanupFailed(
                f"failed to remove container {container_id[:12]}: {e}"
            ) from e
        except DockerException as e:
            raise CleanupFailed(
                f"failed to remove container {container_id[:12]}: {e}"
            ) from e

    def commit(self, container_id: str, image_name: str) -> str:
        """Snapshot a container into a new image tagged ``image_name``.

        Returns:
            The new image id.

        Raises:
            CommitFailed: If commit or tagging fails.
        """
        engine = self.connect()
        try:
            image_id = engine.commit(
                container_id,
                image_name,
                message=_COMMIT_MESSAGE,
                author=_COMMIT_AUTHOR,
            )
        except DockerException as e:
            raise CommitFailed(
                f"failed to commit container {container_id[:12]} "
                f"as {image_name}: {e}"
            ) from e
        logger.info(
            "Committed container %s as %s", container_id[:12], image_name
        )
        return image_id

    # -- resources ------------------------------------------------------

    def host_resources(self) -> HostResources:
        """Query host memory and CPU totals from the engine.

        Raises:
            HostInfoUnavailable: If the query fails.
        """
        try:
            info = self.connect().info()
        except (SandboxError, DockerException) as e:
            raise HostInfoUnavailable(
                f"failed to query Docker host info: {e}"
            ) from e
        return HostResources(
            memory_total=int(info.get("MemTotal") or 0),
            cpu_count=int(info.get("NCPU") or 0),
        )

    def resolve_resource_spec(self, spec: ResourceSpec) -> ResourcePolicy:
        """Resolve ``spec``, querying the host only for percentages."""
        host = self.host_resources() if needs_host_info(spec) else None
        return resolve_resource_spec(spec, host)

    # -- execution ------------------------------------------------------

    def run_install(
        self,
        image: str,
        command: str,
        resources: ResourcePolicy | None = None,
        *,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
    ) -> str:
        """Run an install command in a fresh container from ``image``.

        Output streams to the process stdout/stderr. The container is kept
        for a subsequent ``commit()``; the caller removes it.

        Returns:
            The container id.

        Raises:
            EngineUnreachable: If the daemon cannot be reached.
            ImagePullFailed: If ``image`` cannot be fetched.
            ContainerLifecycleError: create/attach/start/wait failures.
            NonZeroExit: If the command exits non-zero.
        """
        self.pull_image(image)
        engine = self.connect()

        host_config = resource_limit_kwargs(resources or ResourcePolicy())
        name = f"{NAME_PREFIX}{_short_id()}"
        try:
            container_id = engine.create_container(
                image,
                ["sh", "-c", command],
                name=name,
                host_config=host_config,
            )
        except DockerException as e:
            raise ContainerLifecycleError(
                "create", f"from image {image}: {e}"
            ) from e
        logger.info("Created install container %s from %s", name, image)

        session = ExecutionSession(
            engine,
            container_id,
            stdout=stdout or sys.stdout.buffer,
            stderr=stderr or sys.stderr.buffer,
        )
        exit_code = session.run()
        if exit_code != 0:
            raise NonZeroExit(exit_code, container_id)
        return container_id

    def run(
        self,
        request: ExecutionRequest,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> int:
        """Run a binary in a sandbox, returning its exit code.

        A non-zero exit code is returned, not raised, so shims can pass it
        through to their own exit.

        Args:
            request: What to run and how.
            cancel: Set from another thread to abort the run.
            timeout: Seconds after which the run is aborted.

        Raises:
            RunCancelled: On cancellation or timeout.
            SandboxError: On engine, pull or lifecycle failures.
        """
        exit_code, _ = self._run(request, cancel, timeout)
        return exit_code

    def execute(
        self,
        request: ExecutionRequest,
        *,
        cancel: threading.Event | None = None,
        timeout: float | None = None,
    ) -> ExecutionResult:
        """Like ``run()``, but failures are returned instead of raised."""
        try:
            exit_code, container_id = self._run(request, cancel, timeout)
        except SandboxError as e:
            return ExecutionResult(
                exit_code=1,
                container_id=getattr(e, "container_id", None)
                or request.container_id
                or None,
                error=e,
            )
        return ExecutionResult(exit_code=exit_code, container_id=container_id)

    def _run(
        self,
        request: ExecutionRequest,
        cancel: threading.Event | None,
        timeout: float | None,
    ) -> tuple[int, str]:
        """Run ``request``; returns the exit code and the container id."""
        _register_env_secrets(request.env)

        deadline = time.monotonic() + timeout if timeout is not None else None
        diag_writer = request.stderr
        if (request.debug_io or request.debug_io_json) and diag_writer is None:
            diag_writer = sys.stderr.buffer
        diagnostics = RunDiagnostics(
            text_enabled=request.debug_io,
            json_enabled=request.debug_io_json,
            writer=diag_writer,
        )

        engine = self.connect()
        if request.container_id:
            exit_code = self._run_exec(
                engine, request, diagnostics, cancel, deadline
            )
            return exit_code, request.container_id

        self.pull_image(request.image)
        if cancel is not None and cancel.is_set():
            raise RunCancelled("cancelled")

        host_config: dict[str, Any] = {
            "read_only": request.read_only_rootfs,
            "tmpfs": dict(RUN_TMPFS),
            "auto_remove": False,
            **resource_limit_kwargs(request.resources),
        }
        if request.mounts:
            host_config["binds"] = [m.bind_spec for m in request.mounts]

        capture = _open_capture(request)
        try:
            name = f"{NAME_PREFIX}{_short_id()}"
            try:
                container_id = engine.create_container(
                    request.image,
                    request.command,
                    name=name,
                    host_config=host_config,
                    stdin_open=request.stdin is not None,
                    environment=list(request.env),
                    working_dir=request.workdir,
                    user=_current_user(),
                    network_disabled=request.network_disabled,
                )
            except DockerException as e:
                raise ContainerLifecycleError(
                    "create", f"from image {request.image}: {e}"
                ) from e
            diagnostics.container_id = container_id
            diagnostics.event("create")
            logger.debug("Created container %s (%s)", name, container_id[:12])

            try:
                session = ExecutionSession(
                    engine,
                    container_id,
                    stdin=request.stdin,
                    stdout=request.stdout,
                    stderr=request.stderr,
                    capture=capture,
                    diagnostics=diagnostics,
                    cancel=cancel,
                    deadline=deadline,
                )
                exit_code = session.run()
                logger.debug(
                    "Container %s exited with code %d",
                    container_id[:12],
                    exit_code,
                )
                return exit_code, container_id
            finally:
                diagnostics.event("cleanup")
                self._cleanup_quietly(container_id)
        finally:
            if capture is not None:
                capture.close()

    def _run_exec(
        self,
        engine: EngineClient,
        request: ExecutionRequest,
        diagnostics: RunDiagnostics,
        cancel: threading.Event | None,
        deadline: float | None,
    ) -> int:
        capture = _open_capture(request)
        try:
            session = ExecutionSession(
                engine,
                request.container_id,
                stdin=request.stdin,
                stdout=request.stdout,
                stderr=request.stderr,
                capture=capture,
                diagnostics=diagnostics,
                cancel=cancel,
                deadline=deadline,
            )
            return session.run_exec(
                request.command,
                environment=list(request.env),
                working_dir=request.workdir,
                user=_current_user(),
            )
        finally:
            if capture is not None:
                capture.close()

    def _cleanup_quietly(self, container_id: str) -> None:
        try:
            self.cleanup_container(container_id)
        except SandboxError as e:
            logger.warning("Cleanup of %s failed: %s", container_id[:12], e)

    # -- inspection -----------------------------------------------------

    def list_image_executables(self, image: str) -> list[str]:
        """List executable files in every PATH directory of ``image``.

        Starts a short-lived inspection container, reads its PATH,
        lists regular executable files and removes the container.

        Returns:
            Sorted, deduplicated absolute paths.
        """
        self.pull_image(image)
        engine = self.connect()

        name = f"{NAME_PREFIX}inspect-{_short_id()}"
        try:
            container_id = engine.create_container(
                image, ["sleep", "3600"], name=name, host_config={}
            )
        except DockerException as e:
            raise ContainerLifecycleError(
                "create inspection", f"from image {image}: {e}"
            ) from e

        try:
            try:
                engine.start(container_id)
                config = engine.inspect_container(container_id).get("Config")
                path_env = container_path(config or {})
                command = find_executables_command(path_env)
                output = engine.exec_output(
                    container_id, ["sh", "-c", command]
                )
            except DockerException as e:
                raise ContainerLifecycleError(
                    "inspect", str(e), container_id=container_id
                ) from e
        finally:
            self._cleanup_quietly(container_id)

        lines = output.decode(errors="replace").splitlines()
        return sorted({line.strip() for line in lines if line.strip()})

    def container_filesystem(self, container_id: str) -> str:
        raise NotImplementedFeature(
            "container filesystem access not implemented"
        )


def container_path(config: dict[str, Any]) -> str:
    """PATH from a container config, falling back to the usual default."""
    for entry in config.get("Env") or []:
        if entry.startswith("PATH="):
            return entry[len("PATH=") :]
    return DEFAULT_PATH


def find_executables_command(path_env: str) -> str:
    """Shell command printing executables in each PATH directory."""
    return (
        f"find $(echo {path_env} | tr ':' ' ') -maxdepth 1 -type f "
        "-executable 2>/dev/null | sort -u"
    )


def split_repo_tag(repo_tag: str) -> tuple[str, str] | None:
    """Split ``repository:tag``; None for untagged or malformed entries."""
    if not repo_tag or repo_tag == "<none>:<none>":
        return None
    idx = repo_tag.rfind(":")
    if idx <= 0 or idx >= len(repo_tag) - 1:
        return None
    return repo_tag[:idx], repo_tag[idx + 1 :]
