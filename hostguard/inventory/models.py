"""Inventory data models: hosts, roles, and their declarations.

These are pure data. The inventory is the only writer of desired state and
nothing in a reconciliation pass mutates it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

from hostguard.config import PlatformConfig
from hostguard.errors import InventoryError


class VolumeScope(Enum):
    """Where a volume's backing data lives."""

    NAMED = "named"  # Owned by the container engine
    BIND = "bind"  # A host path mounted directly


class BindException(Enum):
    """The closed set of sanctioned bind mounts.

    Adding a member here is the only way to admit a new kind of bind mount.
    """

    NONE = "none"
    READ_ONLY_LOG_SHARE = "read_only_log_share"
    SOCKET_PASSTHROUGH = "socket_passthrough"


class SecretType(Enum):
    OPAQUE = "opaque"  # Random alphanumeric string
    PASSWORD = "password"  # Mixed character classes
    DERIVED = "derived"  # HMAC of another secret


class SecretOwner(Enum):
    CONTAINER = "container"  # The role's remapped identity
    ROOT = "root"


@dataclass(frozen=True)
class VolumeDeclaration:
    """A single mount a role asks for."""

    target: str
    name: str = ""
    scope: VolumeScope = VolumeScope.NAMED
    source: str = ""
    exception: BindException = BindException.NONE
    read_only: bool = False
    reason: str = ""  # Required to make an exception read-write
    justification: str = ""  # Required for socket passthrough
    device: str = ""  # Backing device for driver-managed named volumes

    @property
    def label(self) -> str:
        if self.scope == VolumeScope.NAMED:
            return f"volume:{self.name}->{self.target}"
        return f"bind:{self.source}->{self.target}"


@dataclass(frozen=True)
class SecretDeclaration:
    """A secret a role consumes, mounted at /run/secrets/<name>."""

    name: str
    type: SecretType = SecretType.OPAQUE
    length: int = 0  # 0 means the platform minimum
    owner: SecretOwner = SecretOwner.CONTAINER
    mode: int = 0o400
    derive_from: str = ""
    label: str = ""


@dataclass(frozen=True)
class SubordinateRange:
    """A requested subordinate id block."""

    start: int
    size: int


@dataclass(frozen=True)
class Role:
    """A service definition."""

    name: str
    image: str
    uid: int
    gid: int
    environment: dict[str, str] = field(default_factory=dict)
    volumes: tuple[VolumeDeclaration, ...] = ()
    secrets: tuple[SecretDeclaration, ...] = ()
    networks: tuple[str, ...] = ()
    stateful: bool = False
    subordinate_range: SubordinateRange | None = None
    vars: dict[str, str] = field(default_factory=dict)

    @property
    def named_volumes(self) -> list[VolumeDeclaration]:
        return [v for v in self.volumes if v.scope == VolumeScope.NAMED]


@dataclass(frozen=True)
class RoleAssignment:
    """A role placed on a host. Held roles are configured but not started."""

    role: str
    hold: bool = False


@dataclass(frozen=True)
class Host:
    name: str
    address: str = ""
    connection: str = "local"
    tags: tuple[str, ...] = ()
    assignments: tuple[RoleAssignment, ...] = ()
    vars: dict[str, str] = field(default_factory=dict)

    @property
    def role_names(self) -> list[str]:
        return [a.role for a in self.assignments]

    @property
    def held_roles(self) -> set[str]:
        return {a.role for a in self.assignments if a.hold}


@dataclass
class Inventory:
    """Desired state for the whole fleet."""

    platform: PlatformConfig = field(default_factory=PlatformConfig)
    hosts: dict[str, Host] = field(default_factory=dict)
    roles: dict[str, Role] = field(default_factory=dict)
    revision: str = ""  # Commit sha when loaded from Git

    def host(self, name: str) -> Host:
        if name not in self.hosts:
            raise InventoryError(f"Unknown host '{name}'", host=name)
        return self.hosts[name]

    def roles_for(self, host: Host) -> list[Role]:
        return [self.roles[name] for name in host.role_names]

    def select_hosts(self, names: list[str] | None = None, tags: list[str] | None = None) -> list[Host]:
        """Hosts matching any of the given names and any of the given tags."""
        selected = []
        for host in self.hosts.values():
            if names and host.name not in names:
                continue
            if tags and not any(t in host.tags for t in tags):
                continue
            selected.append(host)
        return selected
