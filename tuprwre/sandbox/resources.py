# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Resource policy resolution.

Translates user-supplied memory and CPU specs into absolute container
limits. Specs are either absolute (``512m``, ``1g``, ``2.0``) or relative
to the engine host (``25%``). Host totals are only needed for the
relative form, so the engine is queried lazily by the runtime.
"""

from __future__ import annotations

import math
from typing import Any

from docker.errors import DockerException
from docker.utils import parse_bytes

from tuprwre.sandbox.errors import (
    HostInfoUnavailable,
    InvalidAbsoluteValue,
    InvalidPercentage,
)
from tuprwre.sandbox.types import HostResources, ResourcePolicy, ResourceSpec


def merge_resource_spec(
    flag_memory: str,
    flag_cpus: float,
    default_memory: str,
    default_cpus: str,
) -> ResourceSpec:
    """Merge command line flag values with configured defaults.

    Flag values win when non-empty (memory) or greater than zero (cpus).
    A numeric CPU flag is stored in its shortest decimal form so every
    downstream consumer handles a string.
    """
    memory = flag_memory if flag_memory else default_memory
    cpus = default_cpus
    if flag_cpus > 0:
        cpus = repr(flag_cpus).removesuffix(".0")
    return ResourceSpec(memory=memory, cpus=cpus)


def is_percentage(value: str) -> bool:
    return value.strip().endswith("%")


def needs_host_info(spec: ResourceSpec) -> bool:
    """Whether resolving ``spec`` requires host totals."""
    return is_percentage(spec.memory) or is_percentage(spec.cpus)


def resolve_resource_spec(
    spec: ResourceSpec,
    host: HostResources | None = None,
) -> ResourcePolicy:
    """Resolve a spec into concrete limits using the given host totals.

    Args:
        spec: Raw memory and CPU specs.
        host: Host totals. Only consulted for percentage specs.

    Returns:
        Resolved policy. Empty components resolve to 0 (no limit).

    Raises:
        InvalidPercentage: Percentage not numeric or not in ``(0, 100]``.
        InvalidAbsoluteValue: Absolute value not parseable or negative.
        HostInfoUnavailable: Percentage given without host totals.
    """
    host = host or HostResources()
    memory = 0
    cpus = 0.0

    if spec.memory.strip():
        memory = _resolve_memory(spec.memory, host.memory_total)
    if spec.cpus.strip():
        cpus = _resolve_cpus(spec.cpus, host.cpu_count)

    return ResourcePolicy(memory=memory, cpus=cpus)


def resource_limit_kwargs(policy: ResourcePolicy) -> dict[str, Any]:
    """Host config keyword arguments applying ``policy``.

    Zero components are omitted so the engine applies no limit.
    """
    kwargs: dict[str, Any] = {}
    if policy.memory > 0:
        kwargs["mem_limit"] = policy.memory
    if policy.cpus > 0:
        kwargs["nano_cpus"] = int(policy.cpus * 1e9)
    return kwargs


def _resolve_memory(spec: str, host_total: int) -> int:
    spec = spec.strip()
    if spec.endswith("%"):
        pct = _parse_percentage(spec, "memory")
        if host_total <= 0:
            raise HostInfoUnavailable(
                f"cannot resolve memory {spec!r}: host memory info unavailable"
            )
        return int(host_total * pct / 100)

    try:
        value = parse_bytes(spec)
    except (DockerException, ValueError, OverflowError) as e:
        raise InvalidAbsoluteValue(f"invalid memory spec {spec!r}: {e}") from e
    if value < 0:
        raise InvalidAbsoluteValue(
            f"invalid memory spec {spec!r}: must be non-negative"
        )
    return int(value)


def _resolve_cpus(spec: str, host_cpus: int) -> float:
    spec = spec.strip()
    if spec.endswith("%"):
        pct = _parse_percentage(spec, "CPU")
        if host_cpus <= 0:
            raise HostInfoUnavailable(
                f"cannot resolve CPU {spec!r}: host CPU count unavailable"
            )
        return host_cpus * pct / 100

    try:
        value = float(spec)
    except ValueError as e:
        raise InvalidAbsoluteValue(f"invalid CPU spec {spec!r}") from e
    if not math.isfinite(value):
        raise InvalidAbsoluteValue(f"invalid CPU spec {spec!r}")
    if value < 0:
        raise InvalidAbsoluteValue(
            f"CPU limit must be non-negative, got {value:g}"
        )
    return value


def _parse_percentage(spec: str, kind: str) -> float:
    number = spec[:-1].strip()
    try:
        value = float(number)
    except ValueError as e:
        raise InvalidPercentage(f"invalid {kind} percentage {spec!r}") from e
    if not math.isfinite(value) or value <= 0 or value > 100:
        raise InvalidPercentage(
            f"{kind} percentage must be greater than 0 and at most 100, "
            f"got {spec!r}"
        )
    return value
