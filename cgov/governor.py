"""
cgov Governor
Entry point used by the host server: sets up the instance scope at start-up,
applies limit changes while running and removes the scope at exit
"""

import atexit
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from .cgroups.cgroupfs import CgroupFS, HostPaths
from .cgroups.controllers import (
    DEFAULT_CFS_PERIOD, READ_BPS_DEVICE, READ_IOPS_DEVICE, WRITE_BPS_DEVICE,
    WRITE_IOPS_DEVICE, Controller
)
from .cgroups.instance import InstanceLifecycleManager, InstanceScope
from .cgroups.limits import LimitEnforcementEngine, probe_swap_accounting
from .cgroups.online import parse_online
from .cgroups.ownership import OwnerToken
from .cgroups.topology import DEFAULT_PARENT, Topology, TopologyResolver
from .exceptions import ApplyFailure, CgovError, SetupFailure
from .settings import GovernorSettings

logger = logging.getLogger('cgov.governor')

DEVICE_SETTINGS = {
    'read_bps_limit': READ_BPS_DEVICE,
    'write_bps_limit': WRITE_BPS_DEVICE,
    'read_iops_limit': READ_IOPS_DEVICE,
    'write_iops_limit': WRITE_IOPS_DEVICE,
}


@dataclass
class GovernorConfig:
    """Static configuration of the governor"""
    parent: str = DEFAULT_PARENT  # shared parent scope provisioned by the operator
    cfs_period: int = DEFAULT_CFS_PERIOD  # cpu.cfs_period_us of the instance scope
    mode: int = 0o700  # permissions of the instance scope directories
    paths: HostPaths = field(default_factory=HostPaths)


@dataclass(frozen=True)
class InitResult:
    """What the host learns from a successful initialize()"""
    mount_points: Dict[str, str]
    default_cpus: str
    default_memory_nodes: str
    swap_accounting: bool


class Governor:
    """Resource governor for one server process and its descendants"""

    def __init__(self, config: Optional[GovernorConfig] = None, fs: Optional[CgroupFS] = None,
                 register_exit: Callable[[Callable[[], None]], Any] = atexit.register):
        self.config = config or GovernorConfig()
        self.fs = fs or CgroupFS()
        self._register_exit = register_exit

        self.topology: Optional[Topology] = None
        self.scope: Optional[InstanceScope] = None
        self.engine: Optional[LimitEnforcementEngine] = None
        self.settings = GovernorSettings()
        self._token: Optional[OwnerToken] = None
        self._manager: Optional[InstanceLifecycleManager] = None
        self._owner_pid: Optional[int] = None

    @property
    def initialized(self) -> bool:
        return self.engine is not None

    def initialize(self, owner_pid: int) -> InitResult:
        """Discover the topology, create and join the instance scope

        The teardown routine is registered with the exit hook before any
        directory is created, so a partial set-up is cleaned up as well.
        Raises SetupFailure if resource control cannot be guaranteed.
        """
        if self._owner_pid is not None:
            raise SetupFailure("the governor is already initialized")

        resolver = TopologyResolver(self.fs, self.config.paths, self.config.parent)
        self.topology = resolver.discover()

        self._owner_pid = owner_pid
        self._token = OwnerToken.issue(owner_pid)
        self._manager = InstanceLifecycleManager(
            self.fs, self.topology, self._token, self.config.paths,
            self.config.cfs_period, self.config.mode
        )
        self._register_exit(self.destroy)

        self.scope = self._manager.create(owner_pid, self._token)
        try:
            self._manager.attach(self.scope, [owner_pid], self._token)
        except ApplyFailure as e:
            raise SetupFailure(f"cannot add process {owner_pid} to its control group: {e}") from e

        swap_accounting = probe_swap_accounting(self.fs, self.topology)
        self.engine = LimitEnforcementEngine(self.fs, self.scope, swap_accounting, self._token)

        logger.info(f"Process {owner_pid} is governed by control group "
                    f"/{self.topology.parent}/{self.scope.name}")
        return InitResult(
            mount_points={c.value: path for c, path in self.topology.mount_points.items()},
            default_cpus=self.scope.default_cpus,
            default_memory_nodes=self.scope.default_memory_nodes,
            swap_accounting=swap_accounting,
        )

    def _require_engine(self) -> LimitEnforcementEngine:
        if self.engine is None:
            raise ApplyFailure("the governor has not been initialized")
        return self.engine

    def set_limit(self, controller: Controller, parameter: str, value: Union[int, str]) -> bool:
        return self._require_engine().set_limit(self._token, controller, parameter, value)

    def set_memory_limits(self, memory_mb: int, swap_mb: int) -> bool:
        return self._require_engine().set_memory_limits(self._token, memory_mb, swap_mb)

    def get_default_cpus(self) -> Optional[str]:
        return self.scope.default_cpus if self.scope else None

    def get_default_memory_nodes(self) -> Optional[str]:
        return self.scope.default_memory_nodes if self.scope else None

    def max_cpu_share(self) -> Optional[int]:
        """Upper bound for cpu.cfs_quota_us: all online CPUs at full use"""
        cpus = self.get_default_cpus()
        if not cpus:
            return None
        _, highest = parse_online(cpus)
        return (highest + 1) * self.config.cfs_period

    def validation_context(self) -> Dict[str, Any]:
        """Machine facts that GovernorSettings validation depends on"""
        return {
            'default_cpus': self.get_default_cpus(),
            'default_memory_nodes': self.get_default_memory_nodes(),
            'max_cpu_share': self.max_cpu_share(),
            'dev_block': self.config.paths.dev_block,
        }

    def _apply_one(self, name: str, settings: GovernorSettings) -> bool:
        engine = self._require_engine()
        value = getattr(settings, name)

        if name == 'oom_killer':
            return engine.set_oom_killer(self._token, value)
        if name in DEVICE_SETTINGS:
            return engine.set_device_limit(self._token, DEVICE_SETTINGS[name], value)
        if name == 'cpu_share':
            return engine.set_cpu_share(self._token, value)
        if name == 'cpus':
            return engine.set_cpus(self._token, value or self.get_default_cpus())
        if name == 'memory_nodes':
            return engine.set_memory_nodes(self._token, value or self.get_default_memory_nodes())
        raise KeyError(name)

    def apply_settings(self, settings: GovernorSettings) -> List[str]:
        """Apply every setting that differs from the currently applied ones

        Memory and swap are applied as one coupled change. A failing setting
        does not stop the others; failures are raised together as one
        ApplyFailure afterwards. Returns the names of the applied settings.
        """
        self._require_engine()
        current = self.settings
        applied: List[str] = []
        failures: List[str] = []

        if (settings.memory_limit, settings.swap_limit) != (current.memory_limit, current.swap_limit):
            try:
                if self.engine.set_memory_limits(self._token, settings.memory_limit,
                                                 settings.swap_limit):
                    applied += ['memory_limit', 'swap_limit']
            except CgovError as e:
                failures.append(f"memory_limit/swap_limit: {e}")

        for name in GovernorSettings.model_fields:
            if name in ('memory_limit', 'swap_limit'):
                continue
            if getattr(settings, name) == getattr(current, name):
                continue
            try:
                if self._apply_one(name, settings):
                    applied.append(name)
            except CgovError as e:
                failures.append(f"{name}: {e}")

        if applied:
            self.settings = current.model_copy(
                update={name: getattr(settings, name) for name in applied})

        if failures:
            raise ApplyFailure("; ".join(failures))
        return applied

    def destroy(self):
        """Teardown routine for the exit hook; never raises"""
        if self._manager is None or self.topology is None:
            return

        scope = self.scope or InstanceScope(str(self._owner_pid), self.topology)
        try:
            self._manager.destroy(scope, self._token)
        except Exception as e:
            logger.debug(f"Unexpected error during teardown: {e}")
