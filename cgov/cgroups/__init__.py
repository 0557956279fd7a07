"""
cgov Control Groups
Topology discovery, instance scope lifecycle and limit enforcement
"""

from .cgroupfs import CgroupFS, HostPaths
from .controllers import CONTROLLERS, Controller
from .cpuset import check_cpuset, validate_cpuset
from .instance import InstanceLifecycleManager, InstanceScope
from .limits import LimitEnforcementEngine, probe_swap_accounting
from .online import parse_online, read_online
from .ownership import OwnerToken
from .topology import Topology, TopologyResolver

__all__ = [
    'CgroupFS', 'HostPaths', 'CONTROLLERS', 'Controller',
    'check_cpuset', 'validate_cpuset',
    'InstanceLifecycleManager', 'InstanceScope',
    'LimitEnforcementEngine', 'probe_swap_accounting',
    'parse_online', 'read_online', 'OwnerToken',
    'Topology', 'TopologyResolver',
]
