# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Sandboxed container execution.

The sandbox owns the container lifecycle of installs and proxied runs:
ordered attach, wait and start, output draining, cancellation, resource
limits and cleanup. Callers describe what to run with an
``ExecutionRequest``; ``DockerRuntime`` runs it.
"""

from tuprwre.sandbox.diagnostics import (
    LIFECYCLE_EVENTS,
    DiagnosticEvent,
    RunDiagnostics,
)
from tuprwre.sandbox.engine import EngineClient, docker_start_hint
from tuprwre.sandbox.errors import (
    CleanupFailed,
    CommitFailed,
    ContainerLifecycleError,
    EngineUnreachable,
    HostInfoUnavailable,
    ImagePullFailed,
    InvalidAbsoluteValue,
    InvalidPercentage,
    InvalidRequest,
    NonZeroExit,
    NotImplementedFeature,
    ResourceSpecError,
    RunCancelled,
    SandboxError,
    WaitChannelsClosedWithoutStatus,
)
from tuprwre.sandbox.resources import (
    merge_resource_spec,
    resolve_resource_spec,
    resource_limit_kwargs,
)
from tuprwre.sandbox.runtime import DockerRuntime
from tuprwre.sandbox.session import ExecutionSession
from tuprwre.sandbox.types import (
    ExecutionRequest,
    ExecutionResult,
    HostResources,
    Mount,
    ResourcePolicy,
    ResourceSpec,
    TuprwreContainer,
    TuprwreImage,
)


__all__ = [
    # runtime
    "DockerRuntime",
    "ExecutionSession",
    "EngineClient",
    "docker_start_hint",
    # types
    "ExecutionRequest",
    "ExecutionResult",
    "HostResources",
    "Mount",
    "ResourcePolicy",
    "ResourceSpec",
    "TuprwreContainer",
    "TuprwreImage",
    # resources
    "merge_resource_spec",
    "resolve_resource_spec",
    "resource_limit_kwargs",
    # diagnostics
    "LIFECYCLE_EVENTS",
    "DiagnosticEvent",
    "RunDiagnostics",
    # errors
    "SandboxError",
    "EngineUnreachable",
    "ImagePullFailed",
    "ContainerLifecycleError",
    "WaitChannelsClosedWithoutStatus",
    "NonZeroExit",
    "RunCancelled",
    "ResourceSpecError",
    "InvalidPercentage",
    "InvalidAbsoluteValue",
    "HostInfoUnavailable",
    "NotImplementedFeature",
    "CommitFailed",
    "CleanupFailed",
    "InvalidRequest",
]
