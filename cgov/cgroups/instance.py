"""
cgov Instance Lifecycle Manager
Creates, populates and removes the per-instance control group
"""

import os
import errno
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional

from ..exceptions import ApplyFailure, SetupFailure, TeardownFailure
from .cgroupfs import CgroupFS, HostPaths
from .controllers import (
    CONTROLLERS, CFS_PERIOD, CPUSET_CPUS, CPUSET_MEMS, DEFAULT_CFS_PERIOD,
    PROCS_FILE, Controller
)
from .online import CPU, NODE, read_online
from .ownership import OwnerToken, holds
from .topology import Topology

logger = logging.getLogger('cgov.cgroups.instance')


@dataclass(frozen=True)
class InstanceScope:
    """The control group owned by one server instance, one directory per controller"""
    name: str
    topology: Topology
    default_cpus: str = ""
    default_memory_nodes: str = ""

    def path(self, controller: Controller) -> str:
        return self.topology.scope_path(controller, self.name)

    def parent_path(self, controller: Controller) -> str:
        return self.topology.parent_path(controller)

    def parameter_path(self, controller: Controller, parameter: str) -> str:
        return os.path.join(self.path(controller), parameter)


def parse_pids(text: str) -> List[int]:
    """Parse the contents of a task membership file"""
    return [int(pid) for pid in text.split() if pid.isdigit()]


class InstanceLifecycleManager:
    """Owns the kernel side of an instance scope from mkdir to rmdir"""

    def __init__(self, fs: CgroupFS, topology: Topology, token: OwnerToken,
                 paths: HostPaths = HostPaths(), cfs_period: int = DEFAULT_CFS_PERIOD,
                 mode: int = 0o700):
        self.fs = fs
        self.topology = topology
        self.paths = paths
        self.cfs_period = cfs_period
        self.mode = mode
        self._token = token
        self._destroyed = False
        # controllers whose scope directory was made by this process
        self.created: List[Controller] = []

    def _seed(self, path: str, value: str, only_if_empty: bool = False):
        if only_if_empty:
            try:
                if self.fs.read_text(path).strip():
                    return
            except OSError as e:
                raise SetupFailure(f"cannot read \"{path}\": {e}") from e

        try:
            self.fs.write_text(path, value)
        except OSError as e:
            raise SetupFailure(f"error writing \"{value}\" to \"{path}\": {e}") from e

    def create(self, owner_pid: int, token: OwnerToken) -> Optional[InstanceScope]:
        """Create the instance scope named after ``owner_pid`` under every controller

        Seeds cpuset.cpus and cpuset.mems with the online ranges, on the
        shared parent first if it has none, because tasks cannot join a
        cpuset group with empty values. Raises SetupFailure on any error.
        """
        if not holds(self._token, token):
            logger.debug(f"Ignoring create request without the owner token: {token!r}")
            return None

        name = str(owner_pid)
        for controller in CONTROLLERS:
            path = self.topology.scope_path(controller, name)
            try:
                self.fs.make_dir(path, self.mode)
            except OSError as e:
                raise SetupFailure(
                    f"cannot create control group \"/{self.topology.parent}/{name}\" "
                    f"for the \"{controller.value}\" controller: {e}"
                ) from e
            logger.debug(f"Created {path}")
            self.created.append(controller)

        default_cpus = read_online(self.fs, self.paths, CPU)
        default_mems = read_online(self.fs, self.paths, NODE)
        scope = InstanceScope(name, self.topology, default_cpus, default_mems)

        parent = scope.parent_path(Controller.CPUSET)
        self._seed(os.path.join(parent, CPUSET_CPUS), default_cpus, only_if_empty=True)
        self._seed(scope.parameter_path(Controller.CPUSET, CPUSET_CPUS), default_cpus)
        self._seed(os.path.join(parent, CPUSET_MEMS), default_mems, only_if_empty=True)
        self._seed(scope.parameter_path(Controller.CPUSET, CPUSET_MEMS), default_mems)

        self._seed(scope.parameter_path(Controller.CPU, CFS_PERIOD), str(self.cfs_period))

        logger.info(f"Created control group /{self.topology.parent}/{name} "
                    f"(cpus {default_cpus}, memory nodes {default_mems})")
        return scope

    def _write_pids(self, directory: str, pids: Iterable[int], silent: bool) -> bool:
        path = os.path.join(directory, PROCS_FILE)
        ok = True
        for pid in pids:
            try:
                self.fs.write_text(path, f"{pid}\n")
            except OSError as e:
                if not silent:
                    raise ApplyFailure(f"error writing PID {pid} to \"{path}\": {e}", path) from e
                logger.debug(f"Could not move PID {pid} to {directory}: {e}")
                ok = False
        return ok

    def attach(self, scope: InstanceScope, pids: Iterable[int], token: OwnerToken,
               silent: bool = False) -> bool:
        """Add processes to the scope under every controller

        In silent mode failures are logged and skipped; otherwise the first
        failure raises ApplyFailure.
        """
        if not holds(self._token, token):
            return False

        pids = list(pids)
        ok = True
        for controller in CONTROLLERS:
            ok = self._write_pids(scope.path(controller), pids, silent) and ok
        return ok

    def members(self, scope: InstanceScope, controller: Controller = Controller.MEMORY) -> List[int]:
        """PIDs currently in the scope; empty if the scope does not exist"""
        try:
            return parse_pids(self.fs.read_text(scope.parameter_path(controller, PROCS_FILE)))
        except OSError as e:
            if e.errno != errno.ENOENT:
                logger.debug(f"Cannot list members of {scope.path(controller)}: {e}")
            return []

    def _relocate(self, scope: InstanceScope, controller: Controller) -> int:
        members = self.members(scope, controller)
        self._write_pids(scope.parent_path(controller), members, silent=True)
        return len(members)

    def _remove(self, scope: InstanceScope, controller: Controller):
        path = scope.path(controller)
        remaining = self.members(scope, controller)
        if remaining:
            raise TeardownFailure(f"{path} still has {len(remaining)} processes")

        try:
            self.fs.remove_dir(path)
        except OSError as e:
            if e.errno == errno.ENOENT:
                return
            raise TeardownFailure(f"cannot remove {path}: {e}") from e
        logger.debug(f"Removed {path}")

    def destroy(self, scope: InstanceScope, token: OwnerToken):
        """Move every member back to the shared parent and remove the scope

        Only directories made by create() in this process are touched; a
        directory that already existed belongs to someone else. Best effort
        and idempotent: this runs while the owner exits, so errors are
        logged and never raised.
        """
        if not holds(self._token, token) or self._destroyed:
            return
        self._destroyed = True

        controllers = [c for c in CONTROLLERS if c in self.created]
        if not controllers:
            logger.debug(f"No control group of /{self.topology.parent}/{scope.name} "
                         "was created by this process")
            return

        moved = max(self._relocate(scope, controller) for controller in controllers)
        if moved:
            logger.info(f"Moved {moved} processes to /{self.topology.parent}")

        complete = True
        for controller in controllers:
            try:
                self._remove(scope, controller)
            except TeardownFailure as e:
                logger.warning(f"Teardown of the {controller.value} controller incomplete: {e}")
                complete = False

        if complete:
            logger.info(f"Removed control group /{self.topology.parent}/{scope.name}")
