"""
cgov Limit Enforcement Engine
Transcribes resource limits into the instance scope and reads them back
"""

import os
import errno
import logging
from typing import Optional, Union

from ..exceptions import ApplyFailure, ValidationFailure
from .cgroupfs import CgroupFS
from .controllers import (
    CFS_QUOTA, CPUSET_CPUS, CPUSET_MEMS, DEVICE_LIMITS, MEMORY_LIMIT, MEMSW_LIMIT,
    OOM_CONTROL, UNLIMITED, Controller
)
from .cpuset import validate_cpuset
from .instance import InstanceScope
from .ownership import OwnerToken, holds
from .topology import Topology

logger = logging.getLogger('cgov.cgroups.limits')

MB = 1048576

# The kernel reports "no limit" as LONG_MAX rounded down to a page boundary
UNLIMITED_BYTES = (1 << 63) - MB


def mb_to_bytes(value_mb: int) -> int:
    return UNLIMITED if value_mb == UNLIMITED else value_mb * MB


def bytes_to_mb(value: int) -> int:
    """Round a byte count up to whole MiB; huge or negative values mean unlimited"""
    if value < 0 or value >= UNLIMITED_BYTES:
        return UNLIMITED
    return (value + MB - 1) // MB


def combined_limit_mb(memory_mb: int, swap_mb: int) -> int:
    """memory + swap ceiling; unlimited if either part is unlimited"""
    if memory_mb == UNLIMITED or swap_mb == UNLIMITED:
        return UNLIMITED
    return memory_mb + swap_mb


def probe_swap_accounting(fs: CgroupFS, topology: Topology) -> bool:
    """Check whether the kernel accounts swap, i.e. memory.memsw.* exists"""
    path = os.path.join(topology.parent_path(Controller.MEMORY), MEMSW_LIMIT)
    try:
        fs.read_text(path)
    except OSError as e:
        if e.errno not in (errno.ENOENT, None):
            logger.warning(f"Cannot read {path}: {e}")
        logger.info("Kernel has no swap accounting, swap limits are disabled")
        return False
    return True


class LimitEnforcementEngine:
    """Writes limits into an instance scope

    Memory ceilings are remembered so that a change to either the memory
    ceiling or the swap allowance rewrites both kernel values in an order
    that never leaves memory.limit_in_bytes above memory.memsw.limit_in_bytes.
    """

    def __init__(self, fs: CgroupFS, scope: InstanceScope, swap_accounting: bool,
                 token: Optional[OwnerToken] = None):
        self.fs = fs
        self.scope = scope
        self.swap_accounting = swap_accounting
        self._token = token
        self.memory_limit = UNLIMITED
        self.swap_limit = UNLIMITED

    def set_limit(self, token: OwnerToken, controller: Controller, parameter: str,
                  value: Union[int, str]) -> bool:
        """Write a single parameter of the instance scope

        Returns False without touching the kernel unless ``token`` is the
        owner token. Raises ApplyFailure if the kernel rejects the write.
        """
        if not holds(self._token, token):
            return False

        path = self.scope.parameter_path(controller, parameter)
        text = str(value)
        try:
            self.fs.write_text(path, text)
        except OSError as e:
            raise ApplyFailure(f"error writing \"{text}\" to \"{path}\": {e}", path) from e

        logger.info(f"Set {parameter} = {text!r}")
        return True

    def set_memory_limits(self, token: OwnerToken, memory_mb: int, swap_mb: int) -> bool:
        """Apply a memory ceiling and a swap allowance (both MiB, -1 = unlimited) together"""
        if not holds(self._token, token):
            return False

        memory_bytes = mb_to_bytes(memory_mb)
        if not self.swap_accounting:
            if swap_mb != UNLIMITED and swap_mb != self.swap_limit:
                logger.warning(f"Ignoring swap limit of {swap_mb} MB, "
                               "the kernel does not account swap")
            self.set_limit(token, Controller.MEMORY, MEMORY_LIMIT, memory_bytes)
            self.memory_limit = memory_mb
            self.swap_limit = swap_mb
            return True

        combined_bytes = mb_to_bytes(combined_limit_mb(memory_mb, swap_mb))
        raising = memory_mb == UNLIMITED or (
            self.memory_limit != UNLIMITED and memory_mb > self.memory_limit)

        if raising:
            # memory + swap has to make room first
            self.set_limit(token, Controller.MEMORY, MEMSW_LIMIT, combined_bytes)
            self.set_limit(token, Controller.MEMORY, MEMORY_LIMIT, memory_bytes)
        else:
            self.set_limit(token, Controller.MEMORY, MEMORY_LIMIT, memory_bytes)
            self.set_limit(token, Controller.MEMORY, MEMSW_LIMIT, combined_bytes)

        self.memory_limit = memory_mb
        self.swap_limit = swap_mb
        return True

    def set_memory_limit(self, token: OwnerToken, memory_mb: int) -> bool:
        return self.set_memory_limits(token, memory_mb, self.swap_limit)

    def set_swap_limit(self, token: OwnerToken, swap_mb: int) -> bool:
        if not self.swap_accounting:
            if holds(self._token, token) and swap_mb != UNLIMITED:
                logger.warning(f"Ignoring swap limit of {swap_mb} MB, "
                               "the kernel does not account swap")
            return False
        return self.set_memory_limits(token, self.memory_limit, swap_mb)

    def set_oom_killer(self, token: OwnerToken, enabled: bool) -> bool:
        return self.set_limit(token, Controller.MEMORY, OOM_CONTROL, 0 if enabled else 1)

    def set_device_limit(self, token: OwnerToken, parameter: str, value: str) -> bool:
        """Write a "major:minor limit" list, one device per line"""
        if not holds(self._token, token):
            return False
        if parameter not in DEVICE_LIMITS:
            raise ValidationFailure(f"unknown device limit \"{parameter}\"")
        return self.set_limit(token, Controller.BLKIO, parameter, (value or "").replace(',', '\n'))

    def set_cpu_share(self, token: OwnerToken, quota_us: int) -> bool:
        return self.set_limit(token, Controller.CPU, CFS_QUOTA, quota_us)

    def set_cpus(self, token: OwnerToken, cpus: str) -> bool:
        if not holds(self._token, token):
            return False
        validate_cpuset(cpus, self.scope.default_cpus, "cpus")
        return self.set_limit(token, Controller.CPUSET, CPUSET_CPUS, cpus)

    def set_memory_nodes(self, token: OwnerToken, nodes: str) -> bool:
        if not holds(self._token, token):
            return False
        validate_cpuset(nodes, self.scope.default_memory_nodes, "memory_nodes")
        return self.set_limit(token, Controller.CPUSET, CPUSET_MEMS, nodes)

    # Read-back for display

    def read(self, controller: Controller, parameter: str) -> str:
        return self.fs.read_text(self.scope.parameter_path(controller, parameter)).strip()

    def _read_mb(self, parameter: str) -> int:
        return bytes_to_mb(int(self.read(Controller.MEMORY, parameter)))

    def memory_limit_mb(self) -> int:
        return self._read_mb(MEMORY_LIMIT)

    def swap_limit_mb(self) -> Optional[int]:
        """Swap allowance derived from memsw minus memory; None without swap accounting"""
        if not self.swap_accounting:
            return None
        memory_mb = self.memory_limit_mb()
        combined_mb = self._read_mb(MEMSW_LIMIT)
        if memory_mb == UNLIMITED or combined_mb == UNLIMITED:
            return UNLIMITED
        return combined_mb - memory_mb

    def oom_killer(self) -> bool:
        # "oom_kill_disable 0\nunder_oom 0"
        for line in self.read(Controller.MEMORY, OOM_CONTROL).splitlines():
            fields = line.split()
            if len(fields) == 2 and fields[0] == "oom_kill_disable":
                return fields[1] == "0"
            if len(fields) == 1:
                return fields[0] == "0"
        return True

    def cpu_share(self) -> int:
        return int(self.read(Controller.CPU, CFS_QUOTA))

    def cpus(self) -> str:
        return self.read(Controller.CPUSET, CPUSET_CPUS)

    def memory_nodes(self) -> str:
        return self.read(Controller.CPUSET, CPUSET_MEMS)

    def device_limit(self, parameter: str) -> str:
        return ",".join(self.read(Controller.BLKIO, parameter).splitlines())
