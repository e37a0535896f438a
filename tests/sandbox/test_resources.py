# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Tests for tuprwre/sandbox/resources.py."""

import pytest

from tuprwre.sandbox.errors import (
    HostInfoUnavailable,
    InvalidAbsoluteValue,
    InvalidPercentage,
)
from tuprwre.sandbox.resources import (
    merge_resource_spec,
    needs_host_info,
    resolve_resource_spec,
    resource_limit_kwargs,
)
from tuprwre.sandbox.types import HostResources, ResourcePolicy, ResourceSpec


HOST = HostResources(memory_total=8 * 1024**3, cpu_count=4)


class TestMergeResourceSpec:
    """Tests for merge_resource_spec()."""

    def test_flags_win(self) -> None:
        spec = merge_resource_spec("1g", 2.0, "512m", "1")
        assert spec == ResourceSpec(memory="1g", cpus="2")

    def test_defaults_when_flags_unset(self) -> None:
        spec = merge_resource_spec("", 0, "25%", "50%")
        assert spec == ResourceSpec(memory="25%", cpus="50%")

    def test_fractional_cpus_shortest_form(self) -> None:
        assert merge_resource_spec("", 0.5, "", "").cpus == "0.5"

    def test_cpus_keep_full_precision(self) -> None:
        assert merge_resource_spec("", 1.2345678, "", "").cpus == "1.2345678"

    def test_everything_empty(self) -> None:
        assert merge_resource_spec("", 0, "", "") == ResourceSpec()


class TestResolveAbsolute:
    """Absolute memory and CPU values."""

    @pytest.mark.parametrize(
        ("memory", "expected"),
        [
            ("512m", 536_870_912),
            ("1g", 1_073_741_824),
            ("1024k", 1_048_576),
            ("2gb", 2 * 1024**3),
            ("1000", 1000),
        ],
    )
    def test_memory_units(self, memory: str, expected: int) -> None:
        assert resolve_resource_spec(ResourceSpec(memory=memory)).memory == (
            expected
        )

    def test_cpus(self) -> None:
        assert resolve_resource_spec(ResourceSpec(cpus="1.5")).cpus == 1.5

    def test_empty_is_unlimited(self) -> None:
        policy = resolve_resource_spec(ResourceSpec())
        assert policy == ResourcePolicy()
        assert policy.is_zero()

    @pytest.mark.parametrize(
        "memory", ["lots", "12x", "-5m", "infm", "1e400m", "nang"]
    )
    def test_invalid_memory(self, memory: str) -> None:
        with pytest.raises(InvalidAbsoluteValue):
            resolve_resource_spec(ResourceSpec(memory=memory))

    @pytest.mark.parametrize("cpus", ["two", "-1", "nan", "inf"])
    def test_invalid_cpus(self, cpus: str) -> None:
        with pytest.raises(InvalidAbsoluteValue):
            resolve_resource_spec(ResourceSpec(cpus=cpus))


class TestResolvePercentage:
    """Host-relative values."""

    def test_memory_percentage(self) -> None:
        policy = resolve_resource_spec(ResourceSpec(memory="25%"), HOST)
        assert policy.memory == 2 * 1024**3

    def test_memory_truncates(self) -> None:
        host = HostResources(memory_total=1001, cpu_count=1)
        policy = resolve_resource_spec(ResourceSpec(memory="50%"), host)
        assert policy.memory == 500

    def test_cpu_percentage(self) -> None:
        policy = resolve_resource_spec(ResourceSpec(cpus="50%"), HOST)
        assert policy.cpus == 2.0

    def test_hundred_percent_allowed(self) -> None:
        policy = resolve_resource_spec(ResourceSpec(cpus="100%"), HOST)
        assert policy.cpus == 4.0

    @pytest.mark.parametrize("value", ["0%", "150%", "-10%", "abc%", "%"])
    def test_invalid_percentage(self, value: str) -> None:
        with pytest.raises(InvalidPercentage):
            resolve_resource_spec(ResourceSpec(memory=value), HOST)
        with pytest.raises(InvalidPercentage):
            resolve_resource_spec(ResourceSpec(cpus=value), HOST)

    def test_missing_host_memory(self) -> None:
        with pytest.raises(HostInfoUnavailable):
            resolve_resource_spec(ResourceSpec(memory="25%"))

    def test_missing_host_cpus(self) -> None:
        host = HostResources(memory_total=1024, cpu_count=0)
        with pytest.raises(HostInfoUnavailable):
            resolve_resource_spec(ResourceSpec(cpus="25%"), host)

    def test_needs_host_info(self) -> None:
        assert needs_host_info(ResourceSpec(memory="10%"))
        assert needs_host_info(ResourceSpec(cpus="10%"))
        assert not needs_host_info(ResourceSpec(memory="1g", cpus="2"))


class TestResourceLimitKwargs:
    """Tests for resource_limit_kwargs()."""

    def test_maps_limits(self) -> None:
        kwargs = resource_limit_kwargs(ResourcePolicy(memory=1024, cpus=1.5))
        assert kwargs == {"mem_limit": 1024, "nano_cpus": 1_500_000_000}

    def test_omits_zero_values(self) -> None:
        assert resource_limit_kwargs(ResourcePolicy()) == {}
