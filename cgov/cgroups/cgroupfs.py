"""
cgov Pseudo-Filesystem Access
Narrow read/write layer over cgroupfs, sysfs and procfs
"""

import os
import logging
from dataclasses import dataclass

logger = logging.getLogger('cgov.cgroups.fs')


@dataclass(frozen=True)
class HostPaths:
    """Well-known kernel registries consulted by the governor"""
    proc_cgroups: str = "/proc/cgroups"  # controller registry
    proc_mounts: str = "/proc/mounts"  # mounted filesystem table
    sysfs_system: str = "/sys/devices/system"  # holds cpu/online and node/online
    dev_block: str = "/dev/block"  # major:minor block device nodes

    def online_file(self, topic: str) -> str:
        """Path of the online range file for "cpu" or "node" """
        return os.path.join(self.sysfs_system, topic, "online")


class CgroupFS:
    """File accessor for kernel pseudo-files

    Every kernel interaction of the governor goes through one of these
    methods, so tests can substitute an in-memory implementation.
    Errors are raised as ``OSError``; callers decide how fatal they are.
    """

    def read_text(self, path: str) -> str:
        """Read a whole pseudo-file"""
        with open(path, 'r') as f:
            return f.read()

    def write_text(self, path: str, value: str):
        """Truncate a pseudo-file and write ``value`` in a single write

        Some kernels reject zero-length writes, so an empty value is never
        written; opening with truncation clears the parameter.
        """
        with open(path, 'w') as f:
            if value:
                f.write(value)

    def make_dir(self, path: str, mode: int = 0o700):
        """Create a cgroup directory, failing if it already exists"""
        os.mkdir(path, mode)

    def remove_dir(self, path: str):
        """Remove a cgroup directory (the kernel requires it to be empty of tasks)"""
        os.rmdir(path)

    def is_dir(self, path: str) -> bool:
        return os.path.isdir(path)
