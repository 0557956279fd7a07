"""
cgov - Linux control group resource governor for a long-lived server process
"""

__version__ = "0.9.1"

from .exceptions import (
    CgovError, SetupFailure, ValidationFailure, ApplyFailure, TeardownFailure
)
from .governor import Governor, GovernorConfig, InitResult
from .settings import GovernorSettings, load_settings, parse_settings

__all__ = [
    'CgovError', 'SetupFailure', 'ValidationFailure', 'ApplyFailure', 'TeardownFailure',
    'Governor', 'GovernorConfig', 'InitResult',
    'GovernorSettings', 'load_settings', 'parse_settings',
]
