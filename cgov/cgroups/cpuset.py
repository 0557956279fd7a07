"""
Cpuset Validator
Checks CPU and memory node list expressions such as "0-3,5" against an online range
"""

import re
from typing import Optional

from ..exceptions import ValidationFailure
from .online import MAX_DIGITS, parse_online

_INVALID_CHAR = re.compile(r'[^0-9,-]')


def check_cpuset(expression: str, online: str) -> Optional[str]:
    """Validate a cpuset expression

    The expression must match ``N[-N](,N[-N])*``. Every single number and
    the lower end of every range must lie within the first and last number
    of ``online``; the upper end of a range must lie between the lower end
    and the last online number.

    Returns None if the expression is valid, otherwise a description of
    the problem.
    """
    try:
        online_min, online_max = parse_online(online)
    except ValidationFailure as e:
        return e.detail

    if _INVALID_CHAR.search(expression):
        return f"Value \"{expression}\" contains an invalid character."

    for group in expression.split(','):
        if not group:
            return f"Value \"{expression}\" is missing a number at the end of a group."

        parts = group.split('-')
        if len(parts) > 2 or not parts[0]:
            return f"Value \"{expression}\" has \"-\" in an invalid place."
        if any(len(part) > MAX_DIGITS for part in parts):
            return f"Value \"{expression}\" contains an invalid number."

        low = int(parts[0])
        if low < online_min or low > online_max:
            return f"Number {low} is outside of range {online_min}-{online_max}."

        if not parts[-1]:
            return f"Value \"{expression}\" is missing a number at the end of a group."

        if len(parts) == 2:
            high = int(parts[1])
            if high < low or high > online_max:
                return f"Number {high} is outside of range {low}-{online_max}."

    return None


def validate_cpuset(expression: str, online: str, setting: Optional[str] = None):
    """Like check_cpuset, but raise ValidationFailure on a bad expression"""
    detail = check_cpuset(expression, online)
    if detail is not None:
        raise ValidationFailure(detail, setting)
