"""Error taxonomy for reconciliation and migration.

Every error names the host, role, and offending declaration where they are
known. Secret values are never placed in an error message.
"""

from __future__ import annotations


class HostguardError(Exception):
    """Base class for all hostguard failures."""

    def __init__(
        self,
        message: str,
        host: str = "",
        role: str = "",
        declaration: str = "",
    ):
        self.message = message
        self.host = host
        self.role = role
        self.declaration = declaration
        super().__init__(self.describe())

    def __str__(self) -> str:
        return self.describe()

    @property
    def kind(self) -> str:
        return type(self).__name__

    def describe(self) -> str:
        where = []
        if self.host:
            where.append(f"host={self.host}")
        if self.role:
            where.append(f"role={self.role}")
        if self.declaration:
            where.append(f"declaration={self.declaration}")
        if not where:
            return self.message
        return f"{self.message} [{', '.join(where)}]"

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "message": self.message,
            "host": self.host,
            "role": self.role,
            "declaration": self.declaration,
        }


class InventoryError(HostguardError):
    """The inventory is malformed or references something undefined."""


class RangeConflict(HostguardError):
    """Two roles, or two accounts, need incompatible subordinate ranges on one host."""


class PolicyViolation(HostguardError):
    """A volume declaration breaks the named-storage policy."""


class SecretWriteError(HostguardError):
    """A secret cannot be written because its directory fails policy checks."""


class OwnershipDriftError(HostguardError):
    """A managed path is owned by an unexpected account and will not be auto-corrected."""


class MigrationPreconditionError(HostguardError):
    """A migration was attempted before the destination was ready for it."""


class ApplyError(HostguardError):
    """A mutation failed during the apply phase of a pass."""

    def __init__(self, step: str, cause: Exception, host: str = "", role: str = "", declaration: str = ""):
        self.step = step
        self.cause = cause
        if isinstance(cause, HostguardError):
            role = role or cause.role
            declaration = declaration or cause.declaration
            message = f"{step} step failed: {cause.kind}: {cause.message}"
        else:
            message = f"{step} step failed: {type(cause).__name__}: {cause}"
        super().__init__(message, host=host, role=role, declaration=declaration)
