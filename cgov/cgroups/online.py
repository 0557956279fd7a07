"""
Online-Range Reader
Reads which CPUs and NUMA memory nodes the kernel reports as present
"""

import logging
from typing import Tuple

from ..exceptions import SetupFailure, ValidationFailure
from .cgroupfs import CgroupFS, HostPaths

logger = logging.getLogger('cgov.cgroups.online')

CPU = "cpu"
NODE = "node"

# No CPU or node index in an online range has more than five digits
MAX_DIGITS = 5


def read_online(fs: CgroupFS, paths: HostPaths, topic: str) -> str:
    """Read ``<sysfs>/<topic>/online`` without its trailing newline

    Raises SetupFailure when the file cannot be read or is empty.
    """
    path = paths.online_file(topic)
    try:
        value = fs.read_text(path)
    except OSError as e:
        raise SetupFailure(f"cannot read \"{path}\": {e}") from e

    value = value.rstrip('\n')
    if not value:
        raise SetupFailure(f"file \"{path}\" is empty")

    logger.debug(f"Online {topic} range: {value}")
    return value


def _leading_number(text: str) -> str:
    end = 0
    while end < len(text) and text[end].isdigit():
        end += 1
    return text[:end]


def _trailing_number(text: str) -> str:
    start = len(text)
    while start > 0 and text[start - 1].isdigit():
        start -= 1
    return text[start:]


def parse_online(online: str) -> Tuple[int, int]:
    """Return the first and the last number of an online range string

    "0-3" gives (0, 3), "0-3,8-11" gives (0, 11), "0" gives (0, 0).
    """
    first = _leading_number(online)
    if not first or len(first) > MAX_DIGITS:
        raise ValidationFailure(f"Online limit \"{online}\" does not start with a valid number.")

    last = _trailing_number(online)
    if not last or len(last) > MAX_DIGITS:
        raise ValidationFailure(f"Online limit \"{online}\" does not end with a valid number.")

    return int(first), int(last)
