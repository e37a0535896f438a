# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Exception taxonomy for the sandbox.

Every failure the engine can produce is a distinct ``SandboxError``
subclass so callers can match on type instead of message text.
"""

from __future__ import annotations


class SandboxError(Exception):
    """Base exception for sandbox failures."""


class EngineUnreachable(SandboxError):
    """Raised when the container engine daemon cannot be reached.

    Not retried. The user has to start the engine.
    """


class ImagePullFailed(SandboxError):
    """Raised when an image is missing locally and cannot be pulled."""

    def __init__(self, image: str, message: str) -> None:
        super().__init__(f"failed to pull image {image}: {message}")
        self.image = image


class ContainerLifecycleError(SandboxError):
    """Raised when create, attach, wait registration, start or exec fails.

    Attributes:
        phase: Lifecycle step that failed (``create``, ``attach``, ...).
        container_id: Container the step operated on, if one exists.
    """

    def __init__(
        self,
        phase: str,
        message: str,
        *,
        container_id: str | None = None,
    ) -> None:
        super().__init__(f"failed to {phase} container: {message}")
        self.phase = phase
        self.container_id = container_id


class WaitChannelsClosedWithoutStatus(SandboxError):
    """Raised when the wait registration ends without status or error.

    This is a protocol violation by the engine and always indicates a bug.
    """

    def __init__(self, container_id: str) -> None:
        super().__init__(
            f"container wait channels closed without status ({container_id})"
        )
        self.container_id = container_id


class NonZeroExit(SandboxError):
    """Raised by the install path when the command exits non-zero."""

    def __init__(self, exit_code: int, container_id: str) -> None:
        super().__init__(f"container exited with code {exit_code}")
        self.exit_code = exit_code
        self.container_id = container_id


class RunCancelled(SandboxError):
    """Raised when a run is cancelled or exceeds its deadline.

    Attributes:
        reason: ``"cancelled"`` or ``"timeout"``.
    """

    def __init__(self, reason: str, container_id: str | None = None) -> None:
        super().__init__(f"run {reason}")
        self.reason = reason
        self.container_id = container_id


class ResourceSpecError(SandboxError):
    """Base exception for resource spec resolution failures."""


class InvalidPercentage(ResourceSpecError):
    """Raised when a percentage is not in ``(0, 100]`` or not numeric."""


class InvalidAbsoluteValue(ResourceSpecError):
    """Raised when an absolute memory or CPU value cannot be parsed."""


class HostInfoUnavailable(ResourceSpecError):
    """Raised when a percentage needs host totals that are unavailable."""


class NotImplementedFeature(SandboxError, NotImplementedError):
    """Raised by entry points that exist but are deliberately unimplemented."""


class CommitFailed(SandboxError):
    """Raised when committing or tagging a container image fails."""


class CleanupFailed(SandboxError):
    """Raised when a container cannot be removed.

    Run paths log this as a warning and never surface it as the primary
    error of the run.
    """


class InvalidRequest(SandboxError):
    """Raised for malformed execution requests."""
