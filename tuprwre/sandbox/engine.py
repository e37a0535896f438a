# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Container engine adapter over docker-py.

This is the only module that talks to the Docker Engine API. It exposes
the primitives the execution protocol needs as separate calls, in
particular an attach that happens before start and a ``next-exit`` wait
registration whose completion is known before start.

The rest of the sandbox depends on the small surface of ``EngineClient``
so tests can substitute an in-memory engine.
"""

from __future__ import annotations

import logging
import platform
import socket
from typing import Any

import docker
import requests
from docker.errors import DockerException, ImageNotFound, NotFound
from docker.utils import parse_repository_tag

from tuprwre.sandbox.errors import EngineUnreachable, ImagePullFailed


logger = logging.getLogger(__name__)

#: Seconds allowed for the initial daemon health check.
PING_TIMEOUT = 2


def docker_start_hint(system: str | None = None) -> str:
    """Platform-specific advice for starting the engine."""
    system = (system or platform.system()).lower()
    if system in ("darwin", "windows"):
        return "Start Docker Desktop and retry."
    return "Start Docker and retry (for example: 'systemctl start docker')."


class AttachedStream:
    """A hijacked attach connection carrying multiplexed output.

    Reads go through ``socket``; stdin is written with ``sendall`` and
    ended with ``close_write``. ``close`` shuts the connection down so a
    reader blocked on it wakes up with EOF.
    """

    def __init__(self, raw: Any) -> None:
        self._raw = raw
        self._sock = getattr(raw, "_sock", raw)
        # Long silent processes must not trip the client's read timeout.
        self._sock.settimeout(None)

    @property
    def socket(self) -> Any:
        return self._sock

    def sendall(self, data: bytes) -> None:
        self._sock.sendall(data)

    def close_write(self) -> None:
        self._sock.shutdown(socket.SHUT_WR)

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except OSError:
            pass
        self._raw.close()
        if self._raw is not self._sock:
            self._sock.close()


class WaitRegistration:
    """An in-flight ``POST /containers/{id}/wait?condition=next-exit``.

    The daemon answers the request headers once the wait is registered;
    the body carrying the status code arrives when the container exits.
    """

    def __init__(self, response: requests.Response, raw: Any) -> None:
        self._response = response
        self._sock = getattr(raw, "_sock", raw)

    def result(self) -> int | None:
        """Block until the container exits.

        Returns:
            The exit status, or None if the body carried no status.

        Raises:
            Exception: Transport or decoding errors.
        """
        body = self._response.json()
        if not isinstance(body, dict):
            return None
        error = body.get("Error") or {}
        if error.get("Message"):
            logger.debug("Wait reported error: %s", error["Message"])
        status = body.get("StatusCode")
        if status is None:
            return None
        return int(status)

    def close(self) -> None:
        try:
            self._sock.shutdown(socket.SHUT_RDWR)
        except (OSError, AttributeError):
            pass
        self._response.close()


class EngineClient:
    """Thin wrapper around docker-py's low-level ``APIClient``.

    Thread Safety: Calls are independent request/response units and may
    be issued from several threads.
    """

    def __init__(self, client: docker.DockerClient) -> None:
        self._client = client
        self._api = client.api

    @classmethod
    def from_env(cls) -> EngineClient:
        """Connect using ``DOCKER_HOST`` and friends, then health-check.

        Raises:
            EngineUnreachable: If the daemon cannot be reached.
        """
        try:
            client = docker.from_env()
        except DockerException as e:
            raise EngineUnreachable(
                f"Docker daemon is not running or unreachable. "
                f"{docker_start_hint()} ({e})"
            ) from e

        engine = cls(client)
        try:
            engine.ping()
        except (DockerException, requests.exceptions.RequestException) as e:
            client.close()
            raise EngineUnreachable(
                f"Docker daemon health check failed. {docker_start_hint()} "
                f"({e})"
            ) from e
        return engine

    def ping(self) -> None:
        saved = self._api.timeout
        self._api.timeout = PING_TIMEOUT
        try:
            self._api.ping()
        finally:
            self._api.timeout = saved

    def close(self) -> None:
        self._client.close()

    # -- host and images ------------------------------------------------

    def info(self) -> dict[str, Any]:
        return self._api.info()

    def image_exists(self, image: str) -> bool:
        try:
            self._api.inspect_image(image)
        except (ImageNotFound, NotFound):
            return False
        return True

    def pull(self, image: str) -> None:
        """Pull ``image``, logging progress.

        Raises:
            ImagePullFailed: If the registry or daemon reports an error.
        """
        repository, tag = parse_repository_tag(image)
        try:
            for progress in self._api.pull(
                repository, tag=tag, stream=True, decode=True
            ):
                if "error" in progress:
                    raise ImagePullFailed(image, str(progress["error"]))
                logger.debug(
                    "pull %s: %s %s",
                    image,
                    progress.get("status", ""),
                    progress.get("progress", ""),
                )
        except DockerException as e:
            raise ImagePullFailed(image, str(e)) from e

    def images(self) -> list[dict[str, Any]]:
        return self._api.images()

    def remove_image(self, image: str) -> None:
        self._api.remove_image(image, noprune=False)

    def commit(
        self,
        container_id: str,
        image_name: str,
        *,
        message: str,
        author: str,
    ) -> str:
        repository, tag = parse_repository_tag(image_name)
        response = self._api.commit(
            container_id,
            repository=repository,
            tag=tag or "latest",
            message=message,
            author=author,
        )
        return str(response.get("Id", ""))

    # -- containers -----------------------------------------------------

    def create_container(
        self,
        image: str,
        command: list[str],
        *,
        name: str,
        host_config: dict[str, Any],
        stdin_open: bool = False,
        environment: list[str] | None = None,
        working_dir: str | None = None,
        user: str | None = None,
        network_disabled: bool = False,
    ) -> str:
        response = self._api.create_container(
            image,
            command=command,
            name=name,
            stdin_open=stdin_open,
            tty=False,
            environment=environment or None,
            working_dir=working_dir or None,
            user=user,
            network_disabled=network_disabled,
            host_config=self._api.create_host_config(**host_config),
        )
        return str(response["Id"])

    def attach(self, container_id: str, *, stdin: bool) -> AttachedStream:
        params = {"stdout": 1, "stderr": 1, "stream": 1}
        if stdin:
            params["stdin"] = 1
        return AttachedStream(self._api.attach_socket(container_id, params))

    def register_wait(self, container_id: str) -> WaitRegistration:
        """Register a ``next-exit`` wait and return once it is in place.

        docker-py's ``wait()`` only returns after the container exits, so
        the request is issued directly with a streamed body: the daemon
        flushes the response headers as soon as the wait is registered.
        """
        url = self._api._url("/containers/{0}/wait", container_id)
        response = self._api._post(
            url,
            params={"condition": "next-exit"},
            timeout=None,
            stream=True,
        )
        self._api._raise_for_status(response)
        raw = self._api._get_raw_response_socket(response)
        return WaitRegistration(response, raw)

    def start(self, container_id: str) -> None:
        self._api.start(container_id)

    def inspect_container(self, container_id: str) -> dict[str, Any]:
        return self._api.inspect_container(container_id)

    def remove_container(self, container_id: str) -> None:
        self._api.remove_container(container_id, v=True, force=True)

    def containers(self) -> list[dict[str, Any]]:
        return self._api.containers(all=True)

    # -- exec -----------------------------------------------------------

    def exec_output(self, container_id: str, command: list[str]) -> bytes:
        """Run ``command`` in a running container and return its stdout."""
        exec_id = self._api.exec_create(
            container_id, command, stdout=True, stderr=False
        )["Id"]
        output = self._api.exec_start(exec_id)
        return output or b""

    def exec_attach(
        self,
        container_id: str,
        command: list[str],
        *,
        stdin: bool,
        environment: list[str] | None = None,
        working_dir: str | None = None,
        user: str | None = None,
    ) -> tuple[str, AttachedStream]:
        exec_id = self._api.exec_create(
            container_id,
            command,
            stdout=True,
            stderr=True,
            stdin=stdin,
            tty=False,
            environment=environment or None,
            workdir=working_dir or None,
            user=user or "",
        )["Id"]
        raw = self._api.exec_start(exec_id, socket=True)
        return exec_id, AttachedStream(raw)

    def exec_exit_code(self, exec_id: str) -> int | None:
        code = self._api.exec_inspect(exec_id).get("ExitCode")
        return None if code is None else int(code)
