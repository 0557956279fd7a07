"""
cgov Exception Hierarchy
Setup, validation, apply and teardown failures
"""

from typing import Optional


class CgovError(Exception):
    """Base exception for all cgov errors"""
    pass


class SetupFailure(CgovError):
    """Topology or instance scope cannot be set up; the process must not continue"""
    pass


class ValidationFailure(CgovError):
    """A requested value was rejected before reaching the kernel"""

    def __init__(self, detail: str, setting: Optional[str] = None):
        self.detail = detail
        self.setting = setting
        if setting:
            super().__init__(f"invalid value for \"{setting}\": {detail}")
        else:
            super().__init__(detail)


class ApplyFailure(CgovError):
    """A kernel write failed after the instance scope was created"""

    def __init__(self, message: str, path: Optional[str] = None):
        self.path = path
        super().__init__(message)


class TeardownFailure(CgovError):
    """Error while removing the instance scope; logged, never raised to callers"""
    pass
