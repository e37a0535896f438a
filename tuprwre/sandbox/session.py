# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Execution session: one command in one container.

The session drives an already created container through the attach,
wait, start and drain protocol::

    create            (runtime)
    attach            stream subscribed before the process can write
    wait-registered   next-exit wait in place before the process can exit
    start
    drain             background thread demultiplexes output until EOF
    wait-exit         first of {status, wait error}
    stream-eof        return only after all output has been read
    cleanup           (runtime, always)

Background work per run is one drain thread, one wait reader thread and
an optional stdin forwarder. All of them are joined before ``run()``
returns or raises, including when the run is cancelled.
"""

from __future__ import annotations

import logging
import os
import queue
import selectors
import threading
import time
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import IO, Any

from docker.utils.socket import STDOUT, frames_iter

from tuprwre.sandbox.diagnostics import RunDiagnostics
from tuprwre.sandbox.engine import AttachedStream, WaitRegistration
from tuprwre.sandbox.errors import (
    ContainerLifecycleError,
    RunCancelled,
    WaitChannelsClosedWithoutStatus,
)


logger = logging.getLogger(__name__)

#: Seconds between cancellation checks while blocked on the engine.
POLL_INTERVAL = 0.05

_CHUNK_SIZE = 32 * 1024


class Once:
    """Runs a callable at most once.

    Concurrent callers block until the first call has finished, so every
    caller returns only after the guarded action completed.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._done = False

    @property
    def done(self) -> bool:
        return self._done

    def do(self, action: Callable[[], None]) -> None:
        with self._lock:
            if self._done:
                return
            try:
                action()
            finally:
                self._done = True


class CaptureFile:
    """Combined stdout/stderr copy of a run.

    A failing write disables the capture; the primary sinks are never
    affected.
    """

    def __init__(self, path: Path) -> None:
        self.path = path
        self._file: IO[bytes] | None = path.open("wb")

    def write(self, data: bytes) -> None:
        if self._file is None:
            return
        try:
            self._file.write(data)
        except (OSError, ValueError) as e:
            logger.warning("Disabling capture file %s: %s", self.path, e)
            self._close()

    def close(self) -> None:
        self._close()

    def _close(self) -> None:
        if self._file is None:
            return
        f, self._file = self._file, None
        try:
            f.close()
        except OSError as e:
            logger.warning("Failed to close capture file %s: %s", self.path, e)


class _Sink:
    """Write target for one demultiplexed stream."""

    def __init__(
        self,
        name: str,
        primary: IO[bytes] | None,
        capture: CaptureFile | None,
    ) -> None:
        self._name = name
        self._primary = primary
        self._capture = capture

    def write(self, data: bytes) -> None:
        if self._primary is not None:
            try:
                self._primary.write(data)
                self._primary.flush()
            except (OSError, ValueError) as e:
                # Keep draining so the container is never blocked on output.
                logger.warning("Discarding further %s: %s", self._name, e)
                self._primary = None
        if self._capture is not None:
            self._capture.write(data)


class ExecutionSession:
    """Lifecycle of one run inside one container.

    The caller creates the container and owns its removal; the session
    owns everything between: the attach stream, the wait registration and
    the background threads.

    Thread Safety:
        ``run()`` and ``run_exec()`` are called once from the controlling
        thread. ``cancel`` may be set from any thread.
    """

    def __init__(
        self,
        engine: Any,
        container_id: str,
        *,
        stdin: IO[bytes] | None = None,
        stdout: IO[bytes] | None = None,
        stderr: IO[bytes] | None = None,
        capture: CaptureFile | None = None,
        diagnostics: RunDiagnostics | None = None,
        cancel: threading.Event | None = None,
        deadline: float | None = None,
    ) -> None:
        self._engine = engine
        self.container_id = container_id
        self._stdin = stdin
        self._stdout = _Sink("stdout", stdout, capture)
        self._stderr = _Sink("stderr", stderr, capture)
        self._diag = diagnostics or RunDiagnostics()
        self._diag.container_id = container_id
        self._cancel = cancel
        self._deadline = deadline

        self._stream: AttachedStream | None = None
        self._registration: WaitRegistration | None = None
        self._drain_thread: threading.Thread | None = None
        self._wait_thread: threading.Thread | None = None
        self._stdin_thread: threading.Thread | None = None
        self._messages: queue.Queue[tuple[str, Any]] = queue.Queue()

        self._close_once = Once()
        self._drain_once = Once()
        self._wait_stop_once = Once()
        self._stopped = threading.Event()
        self._cancelled: str | None = None

    # -- public ---------------------------------------------------------

    def run(self) -> int:
        """Attach, register the wait, start, drain and observe the exit.

        Returns:
            The container's exit code, after all output was drained.

        Raises:
            ContainerLifecycleError: attach, wait registration, start or
                wait failed.
            WaitChannelsClosedWithoutStatus: the wait ended without
                status or error.
            RunCancelled: cancellation or deadline.
        """
        try:
            return self._run()
        finally:
            self._force_close_and_drain()
            self._stop_wait()
            self._join_stdin()

    def run_exec(
        self,
        command: list[str],
        *,
        environment: list[str] | None = None,
        working_dir: str | None = None,
        user: str | None = None,
    ) -> int:
        """Run ``command`` inside the already running container.

        Exec start both attaches and starts, so no output can be lost.
        The exit code is read once the stream reached EOF.
        """
        try:
            try:
                exec_id, self._stream = self._engine.exec_attach(
                    self.container_id,
                    command,
                    stdin=self._stdin is not None,
                    environment=environment,
                    working_dir=working_dir,
                    user=user,
                )
            except Exception as e:
                raise ContainerLifecycleError(
                    "exec", str(e), container_id=self.container_id
                ) from e
            self._diag.event("attach")
            self._start_drain()
            self._diag.event("start")
            self._start_stdin()

            self._wait_for_drain()
            if self._cancelled:
                raise RunCancelled(self._cancelled, self.container_id)

            code = self._engine.exec_exit_code(exec_id)
            if code is None:
                raise WaitChannelsClosedWithoutStatus(self.container_id)
            self._diag.event("wait-exit", {"status_code": code})
            return code
        finally:
            self._force_close_and_drain()
            self._join_stdin()

    # -- protocol -------------------------------------------------------

    def _run(self) -> int:
        try:
            self._stream = self._engine.attach(
                self.container_id, stdin=self._stdin is not None
            )
        except Exception as e:
            raise ContainerLifecycleError(
                "attach", str(e), container_id=self.container_id
            ) from e
        self._diag.event("attach")
        self._start_drain()

        try:
            self._registration = self._engine.register_wait(self.container_id)
        except Exception as e:
            raise ContainerLifecycleError(
                "wait on", str(e), container_id=self.container_id
            ) from e
        self._start_wait_reader()
        self._diag.event("wait-registered")

        reason = self._cancel_reason()
        if reason is not None:
            self._diag.event("wait-exit", {"cancelled": reason})
            raise RunCancelled(reason, self.container_id)

        try:
            self._engine.start(self.container_id)
        except Exception as e:
            raise ContainerLifecycleError(
                "start", str(e), container_id=self.container_id
            ) from e
        self._diag.event("start")
        self._start_stdin()

        return self._observe_exit()

    def _observe_exit(self) -> int:
        while True:
            reason = self._cancel_reason()
            if reason is not None:
                self._diag.event("wait-exit", {"cancelled": reason})
                self._cancelled = reason
                self._force_close_and_drain()
                raise RunCancelled(reason, self.container_id)

            try:
                kind, value = self._messages.get(timeout=POLL_INTERVAL)
            except queue.Empty:
                continue

            if kind == "status":
                self._diag.event("wait-exit", {"status_code": value})
                self._wait_for_drain()
                if self._cancelled:
                    raise RunCancelled(self._cancelled, self.container_id)
                return int(value)

            if kind == "error":
                self._diag.event("wait-exit", {"error": str(value)})
                self._force_close_and_drain()
                raise ContainerLifecycleError(
                    "wait for", str(value), container_id=self.container_id
                ) from value

            # Both sources finished without delivering anything.
            self._force_close_and_drain()
            raise WaitChannelsClosedWithoutStatus(self.container_id)

    # -- background threads ---------------------------------------------

    def _start_drain(self) -> None:
        self._drain_thread = threading.Thread(
            target=self._drain,
            name=f"tuprwre-drain-{self.container_id[:12]}",
            daemon=True,
        )
        self._drain_thread.start()

    def _drain(self) -> None:
        assert self._stream is not None
        try:
            for stream_id, payload in frames_iter(
                self._stream.socket, tty=False
            ):
                if stream_id == STDOUT:
                    self._stdout.write(payload)
                else:
                    self._stderr.write(payload)
        except (OSError, ValueError) as e:
            logger.debug(
                "Attach stream for %s ended: %s", self.container_id[:12], e
            )

    def _start_wait_reader(self) -> None:
        self._wait_thread = threading.Thread(
            target=self._read_wait,
            name=f"tuprwre-wait-{self.container_id[:12]}",
            daemon=True,
        )
        self._wait_thread.start()

    def _read_wait(self) -> None:
        assert self._registration is not None
        try:
            status = self._registration.result()
        except Exception as e:
            self._messages.put(("error", e))
        else:
            if status is not None:
                self._messages.put(("status", status))
        finally:
            self._messages.put(("closed", None))

    def _start_stdin(self) -> None:
        if self._stdin is None:
            return
        self._stdin_thread = threading.Thread(
            target=self._forward_stdin,
            name=f"tuprwre-stdin-{self.container_id[:12]}",
            daemon=True,
        )
        self._stdin_thread.start()

    def _forward_stdin(self) -> None:
        assert self._stdin is not None and self._stream is not None
        try:
            for chunk in self._stdin_chunks():
                self._stream.sendall(chunk)
            if not self._stopped.is_set():
                self._stream.close_write()
        except (OSError, ValueError) as e:
            logger.debug(
                "Stdin forwarding for %s stopped: %s",
                self.container_id[:12],
                e,
            )

    def _stdin_chunks(self) -> Iterator[bytes]:
        """Yield input until EOF or until the session stops.

        Pollable descriptors are waited on in ``POLL_INTERVAL`` slices, so
        a pipe or terminal that never reaches EOF does not keep the
        forwarder alive past the run.
        """
        assert self._stdin is not None
        fd = _fileno(self._stdin)
        with selectors.DefaultSelector() as selector:
            if fd is not None:
                try:
                    selector.register(fd, selectors.EVENT_READ)
                except (OSError, ValueError):
                    # Regular files cannot be polled; reads never block.
                    fd = None

            if fd is None:
                read = getattr(self._stdin, "read1", self._stdin.read)
                while not self._stopped.is_set():
                    chunk = read(_CHUNK_SIZE)
                    if not chunk:
                        return
                    yield chunk
                return

            while not self._stopped.is_set():
                if not selector.select(POLL_INTERVAL):
                    continue
                chunk = os.read(fd, _CHUNK_SIZE)
                if not chunk:
                    return
                yield chunk

    # -- guarded teardown -----------------------------------------------

    def _cancel_reason(self) -> str | None:
        if self._cancel is not None and self._cancel.is_set():
            return "cancelled"
        if self._deadline is not None and time.monotonic() >= self._deadline:
            return "timeout"
        return None

    def _close_attach(self) -> None:
        def close() -> None:
            self._stopped.set()
            if self._stream is not None:
                self._stream.close()

        self._close_once.do(close)

    def _wait_for_drain(self) -> None:
        """Join the drain thread, force-closing it on cancellation."""

        def join() -> None:
            thread = self._drain_thread
            if thread is None:
                return
            while thread.is_alive():
                thread.join(POLL_INTERVAL)
                reason = self._cancel_reason()
                if reason is not None and thread.is_alive():
                    self._cancelled = reason
                    self._close_attach()
            self._diag.event("stream-eof")

        self._drain_once.do(join)

    def _force_close_and_drain(self) -> None:
        self._close_attach()
        self._wait_for_drain()

    def _stop_wait(self) -> None:
        def stop() -> None:
            # Closing unblocks a reader still waiting for the exit.
            if self._registration is not None:
                self._registration.close()
            if self._wait_thread is not None:
                self._wait_thread.join()

        self._wait_stop_once.do(stop)

    def _join_stdin(self) -> None:
        # The forwarder observes _stopped, set when the stream is closed.
        if self._stdin_thread is not None:
            self._stdin_thread.join()


def _fileno(stream: IO[bytes]) -> int | None:
    try:
        return stream.fileno()
    except (AttributeError, OSError, ValueError):
        return None
