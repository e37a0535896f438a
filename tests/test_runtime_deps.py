# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""Test that all third-party imports in tuprwre/ are declared as deps.

Statically scans tuprwre/ source files for imports and verifies each one
is either stdlib, internal, or provided by a declared runtime dependency
(including transitive deps).
"""

import ast
import re
import sys
import tomllib
from importlib.metadata import packages_distributions, requires
from pathlib import Path

from packaging.requirements import Requirement


PROJECT_ROOT = Path(__file__).parent.parent
PACKAGE_DIR = PROJECT_ROOT / "tuprwre"


def _collect_imports(source_dir: Path) -> set[str]:
    """Collect top-level import names from Python files in source_dir."""
    imports: set[str] = set()
    for py_file in source_dir.rglob("*.py"):
        tree = ast.parse(py_file.read_text(), filename=str(py_file))
        for node in ast.walk(tree):
            if isinstance(node, ast.Import):
                for alias in node.names:
                    imports.add(alias.name.split(".")[0])
            elif isinstance(node, ast.ImportFrom):
                if node.module and node.level == 0:
                    imports.add(node.module.split(".")[0])
    return imports


def _declared_dependencies() -> set[str]:
    with open(PROJECT_ROOT / "pyproject.toml", "rb") as f:
        config = tomllib.load(f)
    return {
        _normalize(re.split(r"[<>=!~;\[\s]", dep)[0].strip())
        for dep in config["project"]["dependencies"]
    }


def _resolve_runtime_distributions() -> set[str]:
    """Resolve all distribution names reachable from runtime deps."""
    resolved: set[str] = set()
    queue = list(_declared_dependencies())
    while queue:
        dist = queue.pop()
        if dist in resolved:
            continue
        resolved.add(dist)
        for req in requires(dist) or []:
            requirement = Requirement(req)
            if not _applies(requirement):
                continue
            normalized = _normalize(requirement.name)
            if normalized not in resolved:
                queue.append(normalized)
    return resolved


def _applies(requirement: Requirement) -> bool:
    """Whether a requirement is installed here without extras."""
    marker = requirement.marker
    return marker is None or marker.evaluate({"extra": ""})


def _normalize(name: str) -> str:
    """Normalize a distribution name for comparison."""
    return re.sub(r"[-_.]+", "-", name).lower()


def test_imports_covered_by_runtime_deps() -> None:
    """All third-party imports in tuprwre/ are provided by runtime deps."""
    imports = _collect_imports(PACKAGE_DIR)

    stdlib = sys.stdlib_module_names | {"_thread", "_io"}
    third_party = {
        name for name in imports if name not in stdlib and name != "tuprwre"
    }

    import_to_dist = packages_distributions()
    runtime_dists = _resolve_runtime_distributions()

    missing = []
    for imp in sorted(third_party):
        dists = import_to_dist.get(imp, [])
        if not dists:
            missing.append(f"{imp} (no distribution found)")
            continue
        if not any(_normalize(d) in runtime_dists for d in dists):
            missing.append(f"{imp} (from {', '.join(dists)})")

    assert not missing, (
        "tuprwre/ imports third-party packages not declared as runtime "
        "dependencies:\n"
        + "\n".join(f"  - {m}" for m in missing)
        + "\n\nAdd them to [project] dependencies in pyproject.toml."
    )


def test_direct_imports_are_declared() -> None:
    """Libraries imported directly are declared, not only transitive."""
    declared = _declared_dependencies()
    for dist in ("docker", "requests", "pyyaml", "python-dotenv"):
        assert dist in declared


def test_platform_markers_are_evaluated() -> None:
    """Requirements for other platforms or extras are not followed."""
    windows_only = Requirement('pywin32>=304; sys_platform == "win32"')
    assert _applies(windows_only) == (sys.platform == "win32")
    assert not _applies(Requirement('paramiko>=2.4.3; extra == "ssh"'))
    assert _applies(Requirement("requests>=2.26.0"))
