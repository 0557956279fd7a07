"""
cgov Topology Resolver
Finds the mount point of every governed controller and verifies the shared parent scope
"""

import os
import re
import logging
from dataclasses import dataclass
from types import MappingProxyType
from typing import Dict, List, Mapping, Set

from ..exceptions import SetupFailure
from .cgroupfs import CgroupFS, HostPaths
from .controllers import CONTROLLERS, Controller

logger = logging.getLogger('cgov.cgroups.topology')

DEFAULT_PARENT = "postgres"

_OCTAL_ESCAPE = re.compile(r'\\([0-7]{3})')


@dataclass(frozen=True)
class Topology:
    """Resolved controller mount points; immutable once discovered"""
    mount_points: Mapping[Controller, str]
    parent: str = DEFAULT_PARENT

    def parent_path(self, controller: Controller) -> str:
        return os.path.join(self.mount_points[controller], self.parent)

    def scope_path(self, controller: Controller, name: str) -> str:
        return os.path.join(self.parent_path(controller), name)


def unescape_mount_field(value: str) -> str:
    """Undo the octal escaping of spaces, tabs and backslashes in /proc/mounts"""
    return _OCTAL_ESCAPE.sub(lambda m: chr(int(m.group(1), 8)), value)


class TopologyResolver:
    """Discovers the cgroup v1 topology from the kernel registries"""

    def __init__(self, fs: CgroupFS, paths: HostPaths = HostPaths(),
                 parent: str = DEFAULT_PARENT):
        self.fs = fs
        self.paths = paths
        self.parent = parent

    def _read(self, path: str, hint: str) -> List[str]:
        try:
            return self.fs.read_text(path).splitlines()
        except OSError as e:
            raise SetupFailure(f"cannot read \"{path}\": {e}. {hint}") from e

    def registered_controllers(self) -> Set[str]:
        """Controller names listed in the kernel's controller registry"""
        names = set()
        lines = self._read(
            self.paths.proc_cgroups,
            "Make sure that Linux Control Groups are supported by the kernel and activated."
        )
        for line in lines:
            if not line or line.startswith('#'):
                continue
            names.add(line.split('\t', 1)[0])
        return names

    def check_controllers(self):
        """Fail unless all governed controllers are registered"""
        registered = self.registered_controllers()
        for controller in CONTROLLERS:
            if controller.value not in registered:
                raise SetupFailure(
                    f"cgroup controller \"{controller.value}\" is not defined. "
                    "There is something wrong with your Linux Control Group setup."
                )

    def find_mount_points(self) -> Dict[Controller, str]:
        """Map each controller to the cgroup mount that lists it as a mount option"""
        wanted = {controller.value: controller for controller in CONTROLLERS}
        mount_points: Dict[Controller, str] = {}

        lines = self._read(self.paths.proc_mounts,
                           "There is something wrong with your Linux operating system.")
        for line in lines:
            fields = line.split()
            if len(fields) < 4 or fields[2] != "cgroup":
                continue

            # exact token match, "cpu" must not match "cpuset" or "cpuacct"
            for option in fields[3].split(','):
                if option in wanted:
                    mount_points[wanted[option]] = unescape_mount_field(fields[1])

        for controller in CONTROLLERS:
            if controller not in mount_points:
                raise SetupFailure(
                    f"no mount point found for cgroup controller \"{controller.value}\". "
                    "There is something wrong with your Linux Control Group setup."
                )
        return mount_points

    def discover(self) -> Topology:
        """Resolve all mount points and verify the shared parent scope under each"""
        self.check_controllers()
        mount_points = self.find_mount_points()

        topology = Topology(MappingProxyType(mount_points), self.parent)
        for controller in CONTROLLERS:
            parent_path = topology.parent_path(controller)
            if not self.fs.is_dir(parent_path):
                raise SetupFailure(
                    f"no control group \"/{self.parent}\" for the \"{controller.value}\" controller. "
                    f"Create \"{parent_path}\" and give the server user ownership of it."
                )
            logger.info(f"Controller {controller.value} mounted at {mount_points[controller]}")

        return topology
