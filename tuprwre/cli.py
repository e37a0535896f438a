# Copyright (c) 2026 Pyry Haulos
#
# This software is released under the MIT License.
# https://opensource.org/licenses/MIT

"""tuprwre CLI: multi-command entry point.

Subcommands:

* ``install`` - run an install command in a sandbox and commit the result
* ``run``     - run a binary from a tuprwre image as a transparent proxy
* ``images``  - list images created by tuprwre
* ``clean``   - remove stopped tuprwre containers and tuprwre images
"""

from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
from collections.abc import Callable
from pathlib import Path
from types import FrameType

from tuprwre.config import ConfigError, TuprwreConfig, validate_runtime
from tuprwre.install import (
    InstallError,
    build_script_install_command,
    run_install_flow,
)
from tuprwre.logging import configure_logging
from tuprwre.sandbox.errors import RunCancelled, SandboxError
from tuprwre.sandbox.resources import merge_resource_spec
from tuprwre.sandbox.runtime import DockerRuntime
from tuprwre.sandbox.types import ExecutionRequest, Mount


logger = logging.getLogger(__name__)

_SUBCOMMANDS = frozenset({"install", "run", "images", "clean"})

_USAGE = """\
usage: tuprwre <command> [args]

commands:
  install   Install a tool inside a sandbox and commit it as an image
  run       Run a binary from a tuprwre image
  images    List tuprwre images
  clean     Remove stopped tuprwre containers and tuprwre images

Run 'tuprwre <command> --help' for command-specific help.\
"""

#: Exit code of a run interrupted by SIGINT or SIGTERM.
EXIT_CANCELLED = 130


def _split_command(argv: list[str]) -> tuple[list[str], list[str]]:
    """Split ``argv`` at the first ``--`` into flags and command."""
    if "--" in argv:
        idx = argv.index("--")
        return argv[:idx], argv[idx + 1 :]
    return argv, []


def _log_level(verbose: bool) -> int:
    return logging.DEBUG if verbose else logging.INFO


# ── install subcommand ──────────────────────────────────────────────


def cmd_install(argv: list[str]) -> int:
    """Run an install in a sandbox, commit it and report new binaries.

    Args:
        argv: Flags, then ``--`` and the install command (or the script
            arguments with ``--script``).

    Returns:
        Exit code (0 on success, 1 on error, 2 on usage error).
    """
    flags, command = _split_command(argv)
    parser = argparse.ArgumentParser(
        prog="tuprwre install",
        description="Install a tool inside a sandbox container.",
    )
    parser.add_argument("--base-image", default="", help="Image to start from")
    parser.add_argument("--image", default="", help="Name of the new image")
    parser.add_argument(
        "-c",
        "--container",
        default="",
        help="Resume from an already prepared container",
    )
    parser.add_argument("--script", type=Path, help="Local install script")
    parser.add_argument("--memory", default="", help="Memory limit")
    parser.add_argument("--cpus", type=float, default=0.0, help="CPU limit")
    parser.add_argument("-v", "--verbose", action="store_true")
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    args = parser.parse_args(flags)
    command = args.extra + command

    configure_logging(_log_level(args.verbose))

    if args.script is not None:
        try:
            script = args.script.read_bytes()
        except OSError as e:
            logger.error("Failed to read script %s: %s", args.script, e)
            return 1
        install_command = build_script_install_command(script, command)
    elif command:
        install_command = " ".join(command)
    elif args.container:
        install_command = ""
    else:
        print(
            "tuprwre install: no installation command provided",
            file=sys.stderr,
        )
        return 2

    try:
        config = TuprwreConfig.load()
        validate_runtime(config.runtime)
    except ConfigError as e:
        logger.error("%s", e)
        return 1

    runtime = DockerRuntime()
    try:
        spec = merge_resource_spec(
            args.memory, args.cpus, config.memory, config.cpus
        )
        resources = runtime.resolve_resource_spec(spec)
        result = run_install_flow(
            runtime,
            base_image=args.base_image or config.base_image,
            command=install_command,
            image_name=args.image,
            resources=resources,
            container_id=args.container,
        )
    except (InstallError, SandboxError) as e:
        logger.error("%s", e)
        return 1
    finally:
        runtime.close()

    print(f"Image: {result.image_name}")
    print(f"Discovered {len(result.binaries)} new binaries")
    for binary in result.binaries:
        print(f"  {binary.name}\t{binary.path}")
    return 0


# ── run subcommand ──────────────────────────────────────────────────


def cmd_run(argv: list[str]) -> int:
    """Run a binary inside a sandbox container.

    The current directory is always mounted at the same path.

    Args:
        argv: Flags, then ``--``, the binary and its arguments.

    Returns:
        The sandboxed process's exit code, or 1 on error.
    """
    flags, command = _split_command(argv)
    parser = argparse.ArgumentParser(
        prog="tuprwre run",
        description="Run a binary from a tuprwre image.",
    )
    target = parser.add_mutually_exclusive_group(required=True)
    target.add_argument("--image", default="", help="Image to run")
    target.add_argument("--container", default="", help="Running container")
    parser.add_argument("-w", "--workdir", default="", help="Working directory")
    parser.add_argument(
        "-e", "--env", action="append", default=[], help="KEY=VALUE"
    )
    parser.add_argument(
        "-v", "--volume", action="append", default=[], help="H:C[:ro]"
    )
    parser.add_argument("--capture-file", type=Path, help="Copy output here")
    parser.add_argument("--debug-io", action="store_true")
    parser.add_argument("--debug-io-json", action="store_true")
    parser.add_argument("--read-only-cwd", action="store_true")
    parser.add_argument("--no-network", action="store_true")
    parser.add_argument("--memory", default="", help="Memory limit")
    parser.add_argument("--cpus", type=float, default=0.0, help="CPU limit")
    parser.add_argument("-r", "--runtime", default="", help="docker|containerd")
    parser.add_argument("--timeout", type=float, help="Seconds before abort")
    parser.add_argument("--verbose", action="store_true")
    parser.add_argument("extra", nargs="*", help=argparse.SUPPRESS)
    args = parser.parse_args(flags)
    command = args.extra + command

    configure_logging(logging.DEBUG if args.verbose else logging.WARNING)

    if not command:
        print("tuprwre run: no binary specified", file=sys.stderr)
        return 2

    try:
        config = TuprwreConfig.load()
        validate_runtime(args.runtime or config.runtime)
        cwd = Path.cwd()
        mounts = [Mount.parse(spec) for spec in args.volume]
        mounts.append(
            Mount(
                host_path=cwd,
                container_path=str(cwd),
                read_only=args.read_only_cwd,
            )
        )
    except (ConfigError, SandboxError) as e:
        logger.error("%s", e)
        return 1

    runtime = DockerRuntime()
    cancel = threading.Event()
    restore = _install_cancel_handlers(cancel)
    try:
        spec = merge_resource_spec(
            args.memory, args.cpus, config.memory, config.cpus
        )
        request = ExecutionRequest(
            binary=command[0],
            args=tuple(command[1:]),
            image=args.image,
            container_id=args.container,
            workdir=args.workdir or str(cwd),
            env=tuple(args.env),
            mounts=tuple(mounts),
            stdin=sys.stdin.buffer,
            stdout=sys.stdout.buffer,
            stderr=sys.stderr.buffer,
            capture_file=args.capture_file,
            network_disabled=args.no_network,
            debug_io=args.debug_io,
            debug_io_json=args.debug_io_json,
            resources=runtime.resolve_resource_spec(spec),
        )
        return runtime.run(request, cancel=cancel, timeout=args.timeout)
    except RunCancelled as e:
        logger.warning("%s", e)
        return EXIT_CANCELLED
    except SandboxError as e:
        logger.error("sandbox execution failed: %s", e)
        return 1
    finally:
        restore()
        runtime.close()


def _install_cancel_handlers(
    cancel: threading.Event,
) -> Callable[[], None]:
    """Set ``cancel`` on SIGINT/SIGTERM; returns a restore callable."""

    def handler(signum: int, frame: FrameType | None) -> None:
        cancel.set()

    previous = {
        sig: signal.signal(sig, handler)
        for sig in (signal.SIGINT, signal.SIGTERM)
    }

    def restore() -> None:
        for sig, prev in previous.items():
            signal.signal(sig, prev)

    return restore


# ── images subcommand ───────────────────────────────────────────────


def cmd_images(argv: list[str]) -> int:
    """List tuprwre images, newest first."""
    parser = argparse.ArgumentParser(prog="tuprwre images")
    parser.parse_args(argv)
    configure_logging(logging.WARNING)

    runtime = DockerRuntime()
    try:
        images = runtime.list_images()
    except SandboxError as e:
        logger.error("%s", e)
        return 1
    finally:
        runtime.close()

    if not images:
        print("No tuprwre images found.")
        return 0
    for image in images:
        size_mb = image.size / (1024 * 1024)
        print(
            f"{image.repository}:{image.tag}\t{image.id[:19]}\t{size_mb:.1f}MB"
        )
    return 0


# ── clean subcommand ────────────────────────────────────────────────


def cmd_clean(argv: list[str]) -> int:
    """Remove stopped tuprwre containers, then tuprwre images.

    Returns:
        0 if everything was removed, 1 if any removal failed.
    """
    parser = argparse.ArgumentParser(prog="tuprwre clean")
    parser.add_argument(
        "--dry-run", action="store_true", help="Only list what would go"
    )
    args = parser.parse_args(argv)
    configure_logging(logging.INFO)

    runtime = DockerRuntime()
    failed = False
    try:
        containers = runtime.list_stopped_containers()
        images = runtime.list_images()

        for container in containers:
            print(f"container {container.name} ({container.state})")
            if args.dry_run:
                continue
            try:
                runtime.remove_container(container.id)
            except SandboxError as e:
                logger.error("%s", e)
                failed = True

        for image in images:
            ref = f"{image.repository}:{image.tag}"
            print(f"image {ref}")
            if args.dry_run:
                continue
            try:
                runtime.remove_image(ref)
            except SandboxError as e:
                logger.error("%s", e)
                failed = True
    except SandboxError as e:
        logger.error("%s", e)
        return 1
    finally:
        runtime.close()

    return 1 if failed else 0


# ── CLI plumbing ────────────────────────────────────────────────────


_DISPATCH: dict[str, str] = {
    "install": "cmd_install",
    "run": "cmd_run",
    "images": "cmd_images",
    "clean": "cmd_clean",
}


def cli() -> None:
    """Entry point for ``tuprwre``."""
    argv = sys.argv[1:]

    if not argv or argv[0] in ("-h", "--help"):
        print(_USAGE)
        sys.exit(0)

    if argv[0] not in _SUBCOMMANDS:
        print(f"tuprwre: unknown command '{argv[0]}'", file=sys.stderr)
        print(_USAGE, file=sys.stderr)
        sys.exit(2)

    command = argv[0]
    rest = argv[1:]

    # Look up handler by name so tests can mock individual commands.
    import tuprwre.cli as _self

    handler = getattr(_self, _DISPATCH[command])
    sys.exit(handler(rest))

