"""
Cgroup controllers and the kernel parameters cgov writes
"""

from enum import Enum


class Controller(Enum):
    """Cgroup v1 controllers governed by cgov"""
    MEMORY = "memory"
    CPU = "cpu"
    BLKIO = "blkio"
    CPUSET = "cpuset"


# Order matters for error reporting and directory creation
CONTROLLERS = (Controller.MEMORY, Controller.CPU, Controller.BLKIO, Controller.CPUSET)

# Task membership file, accepts one PID per write
PROCS_FILE = "cgroup.procs"

MEMORY_LIMIT = "memory.limit_in_bytes"
MEMSW_LIMIT = "memory.memsw.limit_in_bytes"
OOM_CONTROL = "memory.oom_control"

CFS_PERIOD = "cpu.cfs_period_us"
CFS_QUOTA = "cpu.cfs_quota_us"
DEFAULT_CFS_PERIOD = 100000

CPUSET_CPUS = "cpuset.cpus"
CPUSET_MEMS = "cpuset.mems"

READ_BPS_DEVICE = "blkio.throttle.read_bps_device"
WRITE_BPS_DEVICE = "blkio.throttle.write_bps_device"
READ_IOPS_DEVICE = "blkio.throttle.read_iops_device"
WRITE_IOPS_DEVICE = "blkio.throttle.write_iops_device"
DEVICE_LIMITS = (READ_BPS_DEVICE, WRITE_BPS_DEVICE, READ_IOPS_DEVICE, WRITE_IOPS_DEVICE)

UNLIMITED = -1
