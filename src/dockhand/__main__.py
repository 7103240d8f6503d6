"""Entry point for `python -m dockhand` / `dockhand`.

Subcommands:
    dockhand platform                   Print the detected container runtime
    dockhand orphans                    List managed containers from other sessions
    dockhand cleanup-orphans [--no-force]  Stop and remove them
"""

from __future__ import annotations

import argparse
import sys


def _platform() -> None:
    from dockhand.config import get_settings
    from dockhand.platform import get_platform

    info = get_platform(get_settings().executor.runtime)
    print(f"runtime:  {info.runtime.value}")
    print(f"cli:      {info.runtime.cli}")
    print(f"version:  {info.version}")
    print(f"host os:  {info.host_os.value}")
    print(f"socket:   {info.socket_path or '-'}")


def _orphans() -> None:
    from dockhand.client import get_docker

    orphans = get_docker().registry.find_orphans()
    if not orphans:
        print("No orphaned containers")
        return
    for c in orphans:
        print(f"{c.id[:12]}  {c.name:<30}  {c.image:<30}  {c.status}")


def _cleanup_orphans(force: bool) -> None:
    from dockhand.client import get_docker

    removed = get_docker().registry.cleanup_orphans(force=force)
    print(f"Removed {removed} orphaned container(s)")


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="dockhand",
        description="Typed container CLI toolkit",
    )
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("platform", help="Print the detected container runtime")
    sub.add_parser(
        "orphans",
        help="List managed containers stamped by other sessions (including live ones)",
    )
    cleanup = sub.add_parser("cleanup-orphans", help="Stop and remove orphaned containers")
    cleanup.add_argument(
        "--no-force", dest="force", action="store_false", help="Don't pass --force to rm"
    )

    args = parser.parse_args(argv)

    match args.command:
        case "platform":
            _platform()
        case "orphans":
            _orphans()
        case "cleanup-orphans":
            _cleanup_orphans(args.force)
        case _:
            parser.print_help()
            sys.exit(2)


if __name__ == "__main__":
    main()
