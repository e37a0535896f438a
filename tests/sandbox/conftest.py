# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Shared pytest fixtures for sandbox tests.

``FakeEngine`` stands in for ``EngineClient``. Its attach streams are real
``socket.socketpair()`` connections carrying Docker-multiplexed frames, so
the drain path runs docker-py's own frame parser.
"""

import socket
import struct
import threading
import time
from collections.abc import Iterator
from dataclasses import dataclass, field

import pytest
from docker.errors import APIError, NotFound

from tuprwre.sandbox.engine import AttachedStream


STDOUT = 1
STDERR = 2


def frame(stream: int, data: bytes) -> bytes:
    """Encode one Docker multiplexed frame."""
    return struct.pack(">BxxxL", stream, len(data)) + data


@dataclass
class Behavior:
    """Scripted behavior of one fake container process.

    Attributes:
        frames: ``(stream, payload)`` pairs written after start.
        exit_code: Status delivered by the wait.
        status_first: Deliver the exit status before any output.
        output_delay: Seconds between status and output with status_first.
        echo_stdin: Copy stdin back to stdout once stdin is closed.
        hold: Keep running until removed (or released) instead of exiting.
        no_status: The wait finishes without status or error.
        wait_error: The wait fails with this exception.
        start_error: ``start()`` raises this exception.
        attach_error: ``attach()`` raises this exception.
    """

    frames: list[tuple[int, bytes]] = field(default_factory=list)
    exit_code: int = 0
    status_first: bool = False
    output_delay: float = 0.1
    echo_stdin: bool = False
    hold: bool = False
    no_status: bool = False
    wait_error: Exception | None = None
    start_error: Exception | None = None
    attach_error: Exception | None = None


class FakeRegistration:
    """In-flight wait whose result is resolved by the fake container."""

    def __init__(self) -> None:
        self._done = threading.Event()
        self._status: int | None = None
        self._error: Exception | None = None
        self.closed = False

    def resolve(
        self, status: int | None = None, error: Exception | None = None
    ) -> None:
        self._status = status
        self._error = error
        self._done.set()

    def result(self) -> int | None:
        self._done.wait()
        if self._error is not None:
            raise self._error
        if self._status is None and self.closed:
            raise OSError("wait connection closed")
        return self._status

    def close(self) -> None:
        self.closed = True
        self._done.set()


class FakeContainer:
    """One scripted container process behind a socketpair."""

    def __init__(self, container_id: str, image: str, behavior: Behavior):
        self.id = container_id
        self.image = image
        self.behavior = behavior
        self.registration = FakeRegistration()
        self.released = threading.Event()
        self.started = False
        self.removed = False
        self.stdin_received = b""
        self._peer: socket.socket | None = None
        self._thread: threading.Thread | None = None

    def attach(self) -> AttachedStream:
        ours, peer = socket.socketpair()
        self._peer = peer
        return AttachedStream(ours)

    def start(self) -> None:
        self.started = True
        if self._peer is None:
            # Started without attach, e.g. an inspection container.
            return
        self._thread = threading.Thread(
            target=self._run, name=f"fake-{self.id}", daemon=True
        )
        self._thread.start()

    def release(self) -> None:
        self.released.set()

    def join(self, timeout: float = 5.0) -> None:
        if self._thread is not None:
            self._thread.join(timeout)

    def _run(self) -> None:
        b = self.behavior
        peer = self._peer
        assert peer is not None
        try:
            if b.status_first:
                self._finish_wait()
                time.sleep(b.output_delay)
            for stream, data in b.frames:
                peer.sendall(frame(stream, data))
            if b.echo_stdin:
                chunks = []
                while True:
                    chunk = peer.recv(4096)
                    if not chunk:
                        break
                    chunks.append(chunk)
                self.stdin_received = b"".join(chunks)
                peer.sendall(frame(STDOUT, self.stdin_received))
            if b.hold:
                self.released.wait(10)
        except OSError:
            pass
        finally:
            peer.close()
            if not b.status_first and not b.hold:
                self._finish_wait()

    def _finish_wait(self) -> None:
        b = self.behavior
        if b.wait_error is not None:
            self.registration.resolve(error=b.wait_error)
        elif b.no_status:
            self.registration.resolve()
        else:
            self.registration.resolve(b.exit_code)


class FakeEngine:
    """In-memory replacement for ``EngineClient``.

    Containers take their behavior from ``script()`` in creation order,
    falling back to a silent process exiting 0.
    """

    def __init__(self) -> None:
        self.calls: list[str] = []
        self.containers_by_id: dict[str, FakeContainer] = {}
        self.created: list[dict] = []
        self.committed: list[tuple[str, str, str, str]] = []
        self.removed_images: list[str] = []
        self.local_images: set[str] = {"ubuntu:22.04"}
        self.pulled: list[str] = []
        self.unpullable: set[str] = set()
        self.executables: dict[str, list[str]] = {}
        self.image_env: dict[str, list[str]] = {}
        self.image_summaries: list[dict] = []
        self.container_summaries: list[dict] = []
        self.host_info: dict = {"MemTotal": 8 * 1024**3, "NCPU": 4}
        self.info_error: Exception | None = None
        self.remove_error: Exception | None = None
        self.commit_error: Exception | None = None
        self.closed = False
        self._behaviors: list[Behavior] = []
        self._counter = 0
        self._exec_codes: dict[str, int] = {}

    # -- scripting ------------------------------------------------------

    def script(self, *behaviors: Behavior) -> None:
        self._behaviors.extend(behaviors)

    def _next_behavior(self) -> Behavior:
        return self._behaviors.pop(0) if self._behaviors else Behavior()

    def add_container(self, image: str = "img") -> FakeContainer:
        self._counter += 1
        container_id = f"{self._counter:064x}"
        container = FakeContainer(container_id, image, self._next_behavior())
        self.containers_by_id[container_id] = container
        return container

    def release_all(self) -> None:
        for container in self.containers_by_id.values():
            container.release()
            container.join()

    # -- EngineClient surface -------------------------------------------

    def close(self) -> None:
        self.closed = True

    def info(self) -> dict:
        self.calls.append("info")
        if self.info_error is not None:
            raise self.info_error
        return self.host_info

    def image_exists(self, image: str) -> bool:
        return image in self.local_images

    def pull(self, image: str) -> None:
        from tuprwre.sandbox.errors import ImagePullFailed

        self.calls.append("pull")
        if image in self.unpullable:
            raise ImagePullFailed(image, "not found")
        self.pulled.append(image)
        self.local_images.add(image)

    def images(self) -> list[dict]:
        return self.image_summaries

    def remove_image(self, image: str) -> None:
        self.removed_images.append(image)

    def commit(
        self, container_id: str, image_name: str, *, message: str, author: str
    ) -> str:
        self.calls.append("commit")
        if self.commit_error is not None:
            raise self.commit_error
        self.committed.append((container_id, image_name, message, author))
        self.local_images.add(image_name)
        return f"sha256:{len(self.committed):064x}"

    def create_container(self, image: str, command: list[str], **kwargs):
        self.calls.append("create")
        container = self.add_container(image)
        self.created.append({"image": image, "command": command, **kwargs})
        return container.id

    def attach(self, container_id: str, *, stdin: bool) -> AttachedStream:
        self.calls.append("attach")
        container = self.containers_by_id[container_id]
        if container.behavior.attach_error is not None:
            raise container.behavior.attach_error
        return container.attach()

    def register_wait(self, container_id: str) -> FakeRegistration:
        self.calls.append("register_wait")
        return self.containers_by_id[container_id].registration

    def start(self, container_id: str) -> None:
        self.calls.append("start")
        container = self.containers_by_id[container_id]
        if container.behavior.start_error is not None:
            raise container.behavior.start_error
        container.start()

    def inspect_container(self, container_id: str) -> dict:
        image = self.containers_by_id[container_id].image
        return {"Config": {"Env": self.image_env.get(image, [])}}

    def remove_container(self, container_id: str) -> None:
        self.calls.append("remove")
        if self.remove_error is not None:
            raise self.remove_error
        container = self.containers_by_id.get(container_id)
        if container is None or container.removed:
            raise NotFound(f"No such container: {container_id}")
        container.removed = True
        container.release()

    def containers(self) -> list[dict]:
        return self.container_summaries

    def exec_output(self, container_id: str, command: list[str]) -> bytes:
        self.calls.append("exec_output")
        image = self.containers_by_id[container_id].image
        return "".join(
            f"{path}\n" for path in self.executables.get(image, [])
        ).encode()

    def exec_attach(
        self, container_id: str, command: list[str], **kwargs
    ) -> tuple[str, AttachedStream]:
        self.calls.append("exec_attach")
        if container_id not in self.containers_by_id:
            raise APIError(f"No such container: {container_id}")
        process = self.add_container(self.containers_by_id[container_id].image)
        exec_id = f"exec-{process.id[-4:]}"
        self._exec_codes[exec_id] = process.behavior.exit_code
        stream = process.attach()
        process.start()
        return exec_id, stream

    def exec_exit_code(self, exec_id: str) -> int | None:
        return self._exec_codes.get(exec_id)


def tuprwre_threads() -> list[threading.Thread]:
    """Live background threads started by the sandbox."""
    return [t for t in threading.enumerate() if t.name.startswith("tuprwre-")]


@pytest.fixture
def engine() -> Iterator[FakeEngine]:
    """Fake engine; releases held containers on teardown."""
    fake = FakeEngine()
    yield fake
    fake.release_all()
