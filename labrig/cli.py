"""Command line entry point.

A topology script declares its nodes and links and calls ``run(topology)``;
the installed ``labrig`` command calls ``run()`` without one and works from
the persisted topology in the state directory.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from typing import Sequence

from labrig.console.proxy import serial_console
from labrig.errors import LabrigError, UsageError
from labrig.lifecycle import InfoResult, LabOrchestrator, StopResult
from labrig.logging_config import setup_logging, verbosity_to_level
from labrig.schemas import Deployment
from labrig.store import TopologyStore
from labrig.topology import Topology
from labrig.version import __version__

logger = logging.getLogger(__name__)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="labrig",
        description="Launch and manage a virtual test topology on this host.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    parser.add_argument("-v", "--verbose", action="count", default=0, help="More logging (repeatable)")
    parser.add_argument("--state-dir", default=None, help="State directory (default: .labrig)")

    sub = parser.add_subparsers(dest="command", metavar="command")
    sub.required = True

    launch = sub.add_parser("launch", help="launch topology")
    launch.add_argument("--backend-path", default=None, help="Hypervisor backend binary to use")

    sub.add_parser("destroy", help="destroy topology")

    serial = sub.add_parser("serial", help="get a serial console session for the specified vm")
    serial.add_argument("node", help="Name of the VM to connect to")

    info = sub.add_parser("info", help="display topology information")
    info.add_argument("--live", action="store_true", help="Query running backends for instance state")

    reboot = sub.add_parser("reboot", help="reboot a vm")
    reboot.add_argument("node", help="Name of the VM to reboot")

    hyperstop = sub.add_parser("hyperstop", help="stop a vm's hypervisor")
    hyperstop.add_argument("node", nargs="?", default=None, help="Name of the VM to stop")
    hyperstop.add_argument("-a", "--all", action="store_true", help="Stop all VMs in the topology")

    hyperstart = sub.add_parser("hyperstart", help="start a vm's hypervisor")
    hyperstart.add_argument("node", nargs="?", default=None, help="Name of the VM to start")
    hyperstart.add_argument("-a", "--all", action="store_true", help="Start all VMs in the topology")
    hyperstart.add_argument("--backend-path", default=None, help="Hypervisor backend binary to use")

    sub.add_parser("netcreate", help="create a topology's network")
    sub.add_parser("netdestroy", help="destroy a topology's network")

    snapshot = sub.add_parser("snapshot", help="snapshot a node into a new base image")
    snapshot.add_argument("node", help="Name of the VM to snapshot")
    snapshot.add_argument("image", help="Name of the new base image")

    return parser


def _select_nodes(args: argparse.Namespace) -> list[str] | None:
    """None means every node; otherwise the single named node."""
    if args.all:
        return None
    if args.node is None:
        raise UsageError("vm name required unless --all flag is used")
    return [args.node]


def _print_stop(result: StopResult, verb: str = "stopped") -> None:
    for report in result.reports:
        suffix = "" if report.clean else f" ({len(report.warnings)} warnings)"
        print(f"{verb} {report.node_name}{suffix}")
        for warning in report.warnings:
            print(f"  warning: {warning}")


def format_info(result: InfoResult) -> str:
    """Render the node table shown by ``info``."""
    deployment = result.deployment
    headers = ["Name", "Image", "Radix", "Mounts", "UUID", "Port", "PID", "Status"]
    rows: list[list[str]] = []
    for row in result.rows:
        node = row.node
        mounts = [f"{m.source} -> {m.destination}" for m in node.mounts]
        status = row.status
        if row.live_state:
            status = f"{status} ({row.live_state})"
        elif row.detail:
            status = f"{status} ({row.detail})"
        rows.append([
            node.name,
            node.image,
            str(node.radix),
            mounts[0] if mounts else "",
            str(node.id),
            "" if row.handle.port is None else str(row.handle.port),
            "" if row.handle.pid is None else str(row.handle.pid),
            status,
        ])
        for extra in mounts[1:]:
            rows.append(["", "", "", extra, "", "", "", ""])

    widths = [len(h) for h in headers]
    for cells in rows:
        widths = [max(w, len(c)) for w, c in zip(widths, cells)]

    def line(cells: list[str]) -> str:
        return "  ".join(c.ljust(w) for c, w in zip(cells, widths)).rstrip()

    out = [f"name: {deployment.name}", "Nodes", line(headers), line(["-" * len(h) for h in headers])]
    out.extend(line(cells) for cells in rows)

    if deployment.links:
        out.append("Links")
        for link in deployment.links:
            mac = f" ({link.mac})" if link.mac else ""
            out.append(f"{link.endpoints[0]} <-> {link.endpoints[1]}{mac}")

    for name in result.orphans:
        out.append(f"warning: runtime handle files for unknown node {name}")
    return "\n".join(out)


async def _dispatch(args: argparse.Namespace, orchestrator: LabOrchestrator, declared: Deployment | None) -> None:
    command = args.command

    if command == "launch":
        deployment = declared or orchestrator.deployment()
        handles = await orchestrator.launch(deployment, args.backend_path)
        for handle in handles:
            print(f"started {handle.name}: port {handle.port}, pid {handle.pid}")

    elif command == "destroy":
        result = await orchestrator.destroy(declared)
        _print_stop(result)
        for warning in result.teardown_warnings:
            print(f"warning: {warning}")
        print("destroyed" if result.clean else "destroyed with warnings, state kept for retry")

    elif command == "serial":
        orchestrator.deployment().find_node(args.node)
        await serial_console(orchestrator.store, args.node)

    elif command == "info":
        print(format_info(await orchestrator.info(live=args.live)))

    elif command == "reboot":
        await orchestrator.reboot(args.node)
        print(f"rebooting {args.node}")

    elif command == "hyperstop":
        _print_stop(orchestrator.hyperstop(_select_nodes(args)))

    elif command == "hyperstart":
        for handle in orchestrator.hyperstart(_select_nodes(args), args.backend_path):
            print(f"started {handle.name}: port {handle.port}, pid {handle.pid}")

    elif command == "netcreate":
        await orchestrator.netcreate()
        print("network created")

    elif command == "netdestroy":
        for warning in await orchestrator.netdestroy():
            print(f"warning: {warning}")
        print("network destroyed")

    elif command == "snapshot":
        result = orchestrator.snapshot(args.node, args.image)
        print(f"created image {result.image} from {result.node_name}: {result.base_snapshot}")

    else:
        raise UsageError(f"unknown command: {command}")


def run(
    topology: Topology | Deployment | None = None,
    argv: Sequence[str] | None = None,
    orchestrator: LabOrchestrator | None = None,
) -> int:
    """Parse arguments, run one command and return the exit status."""
    args = build_parser().parse_args(argv)

    declared = topology.deployment if isinstance(topology, Topology) else topology
    setup_logging(
        deployment=declared.name if declared else "",
        level=verbosity_to_level(args.verbose),
    )

    if orchestrator is None:
        orchestrator = LabOrchestrator(store=TopologyStore(args.state_dir))

    try:
        asyncio.run(_dispatch(args, orchestrator, declared))
    except UsageError as e:
        print(f"labrig {args.command}: {e}", file=sys.stderr)
        return 2
    except LabrigError as e:
        logger.debug("Command failed", exc_info=True)
        print(f"labrig {args.command}: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        return 130
    return 0


def main() -> None:
    sys.exit(run())


if __name__ == "__main__":
    main()
