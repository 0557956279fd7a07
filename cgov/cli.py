#!/usr/bin/env python3
"""
cgov - command-line front end of the cgroup resource governor
"""

import os
import atexit
import sys
import json
import signal
import logging
import argparse
import subprocess
from typing import Any, Dict, List, Optional

import psutil
import tabulate
import yaml

from . import __version__
from .cgroups.cgroupfs import CgroupFS, HostPaths
from .cgroups.controllers import DEVICE_LIMITS, Controller
from .cgroups.cpuset import check_cpuset
from .cgroups.instance import InstanceScope, parse_pids
from .cgroups.limits import LimitEnforcementEngine, probe_swap_accounting
from .cgroups.online import CPU, NODE, read_online
from .cgroups.topology import DEFAULT_PARENT, TopologyResolver
from .exceptions import CgovError, SetupFailure, ValidationFailure
from .governor import Governor, GovernorConfig
from .settings import DEFAULT_CONFIG, GovernorSettings, load_settings

logger = logging.getLogger('cgov.cli')


def format_output(data: Any, output: str) -> str:
    if output == "json":
        return json.dumps(data, indent=2)
    return yaml.dump(data, default_flow_style=False)


def _load(path: str, governor: Governor, required: bool) -> GovernorSettings:
    if not required and not os.path.exists(path):
        logger.info(f"No settings file at {path}, using defaults")
        return GovernorSettings()
    return load_settings(path, governor.validation_context())


def _reload(governor: Governor, path: str):
    logger.info(f"Reloading settings from {path}")
    try:
        governor.apply_settings(_load(path, governor, required=True))
    except CgovError as e:
        logger.error(f"Settings not applied: {e}")


def cmd_run(args) -> int:
    """
    Run a command inside a fresh instance scope of this process.

    The scope is removed by the exit hook when cgov exits.
    """
    if not args.cmd:
        print("Error: no command given", file=sys.stderr)
        return 2

    governor = Governor(GovernorConfig(parent=args.parent), CgroupFS(), atexit.register)
    child = None

    def forward(signum, frame):
        if child is None:
            # exit through the interpreter so the teardown hook runs
            sys.exit(128 + signum)
        child.send_signal(signum)

    def reload(signum, frame):
        if governor.initialized:
            _reload(governor, args.config)

    signal.signal(signal.SIGTERM, forward)
    signal.signal(signal.SIGINT, forward)
    signal.signal(signal.SIGHUP, reload)

    governor.initialize(os.getpid())

    required = args.config != DEFAULT_CONFIG
    governor.apply_settings(_load(args.config, governor, required))

    child = subprocess.Popen(args.cmd)
    returncode = child.wait()
    if returncode < 0:
        return 128 - returncode
    return returncode


def _member_rows(pids: List[int]) -> List[Dict[str, Any]]:
    rows = []
    for pid in pids:
        try:
            name = psutil.Process(pid).name()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            name = "?"
        rows.append({'pid': pid, 'name': name})
    return rows


def collect_status(fs: CgroupFS, paths: HostPaths, parent: str, owner_pid: int) -> Dict[str, Any]:
    """Read back the limits currently enforced on an instance scope"""
    topology = TopologyResolver(fs, paths, parent).discover()
    scope = InstanceScope(str(owner_pid), topology)
    if not fs.is_dir(scope.path(Controller.MEMORY)):
        raise SetupFailure(f"process {owner_pid} has no control group under /{parent}")

    engine = LimitEnforcementEngine(fs, scope, probe_swap_accounting(fs, topology))
    status = {
        'memory_limit': engine.memory_limit_mb(),
        'swap_limit': engine.swap_limit_mb(),
        'oom_killer': engine.oom_killer(),
        'cpu_share': engine.cpu_share(),
        'cpus': engine.cpus(),
        'memory_nodes': engine.memory_nodes(),
    }
    for parameter in DEVICE_LIMITS:
        status[parameter] = engine.device_limit(parameter)

    procs = engine.read(Controller.MEMORY, "cgroup.procs")
    status['members'] = _member_rows(parse_pids(procs))
    return status


def cmd_status(args) -> int:
    """Show the limits of the instance scope owned by a process."""
    status = collect_status(CgroupFS(), HostPaths(), args.parent, args.pid)

    if args.output != "table":
        print(format_output(status, args.output))
        return 0

    members = status.pop('members')
    rows = [(name, "unlimited" if value == -1 else value) for name, value in status.items()]
    print(tabulate.tabulate(rows, headers=["SETTING", "VALUE"], tablefmt="plain"))
    print()
    print(tabulate.tabulate([(m['pid'], m['name']) for m in members],
                            headers=["PID", "NAME"], tablefmt="plain"))
    return 0


def cmd_discover(args) -> int:
    """Show where the governed controllers are mounted."""
    fs = CgroupFS()
    paths = HostPaths()
    topology = TopologyResolver(fs, paths, args.parent).discover()

    rows = [(c.value, path, topology.parent_path(c)) for c, path in topology.mount_points.items()]
    print(tabulate.tabulate(rows, headers=["CONTROLLER", "MOUNT POINT", "PARENT"], tablefmt="plain"))
    print()
    print(f"online cpus:     {read_online(fs, paths, CPU)}")
    print(f"online nodes:    {read_online(fs, paths, NODE)}")
    print(f"swap accounting: {'yes' if probe_swap_accounting(fs, topology) else 'no'}")
    return 0


def cmd_check_cpuset(args) -> int:
    """Validate a CPU or memory node list against the online range."""
    online = read_online(CgroupFS(), HostPaths(), NODE if args.nodes else CPU)
    problem = check_cpuset(args.expression, online)
    if problem:
        print(f"Error: {problem}")
        return 1
    print(f"\"{args.expression}\" is valid (online: {online})")
    return 0


def cmd_version(args) -> int:
    print(f"cgov version {__version__}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cgov", description="Cgroup resource governor")
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    parser.add_argument("--parent", default=DEFAULT_PARENT, help="Shared parent control group")
    subparsers = parser.add_subparsers(dest="command", help="Command")

    # run command
    run_parser = subparsers.add_parser("run", help="Run a command under resource control")
    run_parser.add_argument("-c", "--config", default=DEFAULT_CONFIG, help="Settings file (YAML)")
    run_parser.add_argument("cmd", nargs=argparse.REMAINDER, help="Command and arguments")
    run_parser.set_defaults(func=cmd_run)

    # status command
    status_parser = subparsers.add_parser("status", help="Show limits of an instance")
    status_parser.add_argument("pid", type=int, help="Owner process ID")
    status_parser.add_argument("-o", "--output", choices=["table", "json", "yaml"], default="table",
                               help="Output format")
    status_parser.set_defaults(func=cmd_status)

    # discover command
    discover_parser = subparsers.add_parser("discover", help="Show the cgroup topology")
    discover_parser.set_defaults(func=cmd_discover)

    # check-cpuset command
    check_parser = subparsers.add_parser("check-cpuset", help="Validate a CPU or node list")
    check_parser.add_argument("expression", help="List such as 0-3,6")
    check_parser.add_argument("--nodes", action="store_true", help="Check memory nodes instead of CPUs")
    check_parser.set_defaults(func=cmd_check_cpuset)

    # version command
    version_parser = subparsers.add_parser("version", help="Show version information")
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )

    if not hasattr(args, 'func'):
        parser.print_help()
        return 2

    if getattr(args, 'cmd', None) and args.cmd[0] == "--":
        args.cmd = args.cmd[1:]

    try:
        return args.func(args)
    except SetupFailure as e:
        logger.critical(f"{e}")
        return 1
    except ValidationFailure as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except CgovError as e:
        logger.error(f"{e}")
        return 1


if __name__ == "__main__":
    sys.exit(main())
