"""
Owner token
Capability that lets exactly one process mutate the instance scope
"""

import os
from typing import Optional


class OwnerToken:
    """Write capability for an instance scope

    A token issued in the owner process is revoked in every child created
    with fork(), so worker processes that inherit the governor cannot
    change kernel state.
    """

    def __init__(self, owner_pid: int):
        self.owner_pid = owner_pid
        self._valid = True

    @classmethod
    def issue(cls, owner_pid: int) -> 'OwnerToken':
        token = cls(owner_pid)
        if hasattr(os, 'register_at_fork'):
            os.register_at_fork(after_in_child=token.revoke)
        return token

    @property
    def valid(self) -> bool:
        return self._valid

    def revoke(self):
        self._valid = False

    def __repr__(self):
        state = "valid" if self._valid else "revoked"
        return f"OwnerToken(owner_pid={self.owner_pid}, {state})"


def holds(expected: Optional[OwnerToken], presented: Optional[OwnerToken]) -> bool:
    """True if ``presented`` is the live token that was issued for the scope"""
    if expected is None or presented is not expected:
        return False
    return presented.valid
