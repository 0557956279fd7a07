"""
cgov Settings

This module defines the Pydantic model for the live-reloadable resource
settings of a governed server. Values are validated before they are handed
to the limit enforcement engine, so a rejected value never reaches the
kernel. All memory sizes are in MiB, -1 means "no limit".

Validation that depends on the running machine (online CPUs and memory
nodes, the largest permitted CPU share, the block device directory) reads
its data from the pydantic validation context, see Governor.validation_context().
"""

import os
import stat
import logging
from typing import Any, Dict, Optional

import yaml
from pydantic import BaseModel, ConfigDict, ValidationError, ValidationInfo, field_validator

from .cgroups.cpuset import check_cpuset
from .exceptions import ValidationFailure

logger = logging.getLogger('cgov.settings')

DEFAULT_CONFIG = os.environ.get('CGOV_CONFIG', '/etc/cgov.yaml')

MAX_MEMORY_MB = 2147483647 // 2
MIN_CPU_SHARE = 1000


def _context(info: ValidationInfo) -> Dict[str, Any]:
    return info.context or {}


def check_block_device(device: str, dev_block: str = "/dev/block") -> Optional[str]:
    """Return None if ``dev_block/device`` is a block device, else the problem"""
    filename = os.path.join(dev_block, device)
    try:
        mode = os.stat(filename).st_mode
    except FileNotFoundError:
        return f"Device file \"{filename}\" does not exist."
    except OSError as e:
        return f"Error accessing device file \"{filename}\": {e}"

    if not stat.S_ISBLK(mode):
        return f"Device file \"{filename}\" is not a block device."
    return None


def check_device_limits(value: str, dev_block: str = "/dev/block") -> Optional[str]:
    """Validate a comma separated list of "major:minor limit" entries"""
    if not value:
        return None

    for entry in value.split(','):
        device, sep, limit = entry.partition(' ')
        if not sep:
            return f"Entry \"{entry}\" must have a space between device and limit."

        major, colon, minor = device.partition(':')
        if not (colon and major.isdigit() and minor.isdigit()):
            return f"Entry \"{entry}\" does not start with \"major:minor\" device numbers."

        limit = limit.lstrip(' ')
        if not limit.isdigit():
            return f"Limit \"{limit}\" must be an integer number."

        problem = check_block_device(device, dev_block)
        if problem:
            return problem

    return None


class GovernorSettings(BaseModel):
    """Resource settings for the governed server instance"""
    model_config = ConfigDict(extra='forbid', frozen=True)

    memory_limit: int = -1  # memory.limit_in_bytes, in MiB
    swap_limit: int = -1  # memory.memsw.limit_in_bytes minus memory_limit, in MiB
    oom_killer: bool = True  # negation of memory.oom_control
    read_bps_limit: str = ""  # blkio.throttle.read_bps_device
    write_bps_limit: str = ""  # blkio.throttle.write_bps_device
    read_iops_limit: str = ""  # blkio.throttle.read_iops_device
    write_iops_limit: str = ""  # blkio.throttle.write_iops_device
    cpu_share: int = -1  # cpu.cfs_quota_us, 100000 = one CPU
    cpus: Optional[str] = None  # cpuset.cpus, None keeps the online CPUs
    memory_nodes: Optional[str] = None  # cpuset.mems, None keeps the online nodes

    @field_validator('memory_limit')
    @classmethod
    def validate_memory_limit(cls, v):
        if v == 0:
            raise ValueError("a memory limit of 0 is not allowed")
        if v < -1 or v > MAX_MEMORY_MB:
            raise ValueError(f"must be -1 or between 1 and {MAX_MEMORY_MB}")
        return v

    @field_validator('swap_limit')
    @classmethod
    def validate_swap_limit(cls, v):
        # the swap allowance is added to the memory limit, so it can never
        # push memory+swap below the memory limit
        if v < -1 or v > MAX_MEMORY_MB:
            raise ValueError(f"must be -1 or between 0 and {MAX_MEMORY_MB}")
        return v

    @field_validator('read_bps_limit', 'write_bps_limit', 'read_iops_limit', 'write_iops_limit')
    @classmethod
    def validate_device_limit(cls, v, info: ValidationInfo):
        problem = check_device_limits(v, _context(info).get('dev_block', "/dev/block"))
        if problem:
            raise ValueError(problem)
        return v

    @field_validator('cpu_share')
    @classmethod
    def validate_cpu_share(cls, v, info: ValidationInfo):
        if v != -1 and v < MIN_CPU_SHARE:
            raise ValueError(f"must be -1 or at least {MIN_CPU_SHARE}")
        max_share = _context(info).get('max_cpu_share')
        if max_share is not None and v > max_share:
            raise ValueError(f"must not exceed {max_share}")
        return v

    @field_validator('cpus')
    @classmethod
    def validate_cpus(cls, v, info: ValidationInfo):
        online = _context(info).get('default_cpus')
        if v is not None and online:
            problem = check_cpuset(v, online)
            if problem:
                raise ValueError(problem)
        return v

    @field_validator('memory_nodes')
    @classmethod
    def validate_memory_nodes(cls, v, info: ValidationInfo):
        online = _context(info).get('default_memory_nodes')
        if v is not None and online:
            problem = check_cpuset(v, online)
            if problem:
                raise ValueError(problem)
        return v


def _describe(error: ValidationError) -> ValidationFailure:
    first = error.errors()[0]
    setting = ".".join(str(part) for part in first['loc']) or None
    message = first['msg']
    if message.startswith("Value error, "):
        message = message[len("Value error, "):]
    return ValidationFailure(message, setting)


def parse_settings(data: Optional[Dict[str, Any]],
                   context: Optional[Dict[str, Any]] = None) -> GovernorSettings:
    """Validate a settings mapping; raise ValidationFailure on the first bad value"""
    try:
        return GovernorSettings.model_validate(data or {}, context=context)
    except ValidationError as e:
        raise _describe(e) from e


def load_settings(path: str = DEFAULT_CONFIG,
                  context: Optional[Dict[str, Any]] = None) -> GovernorSettings:
    """Load settings from a YAML file; an empty file gives the defaults"""
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f)
    except OSError as e:
        raise ValidationFailure(f"cannot read settings file \"{path}\": {e}") from e
    except yaml.YAMLError as e:
        raise ValidationFailure(f"settings file \"{path}\" is not valid YAML: {e}") from e

    if data is not None and not isinstance(data, dict):
        raise ValidationFailure(f"settings file \"{path}\" must contain a mapping")

    settings = parse_settings(data, context)
    logger.debug(f"Loaded settings from {path}: {settings}")
    return settings
