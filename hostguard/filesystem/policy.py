"""Directory policy and volume classification.

The directory policy is the fixed platform tree plus a few directories per
role. Volume classification enforces named storage: a bind mount is only
accepted when it matches one of the :class:`BindException` members and the
rules attached to that member.
"""

from __future__ import annotations

import posixpath
from dataclasses import dataclass

from hostguard.config import PlatformConfig
from hostguard.errors import PolicyViolation
from hostguard.identity.mapping import IdentityMapping
from hostguard.inventory.models import BindException, Role, VolumeDeclaration, VolumeScope
from hostguard.services.spec import SECRETS_MOUNT_DIR

ROOT_ID = 0

SOCKET_SUFFIX = ".sock"


@dataclass(frozen=True)
class DirectoryPolicyEntry:
    path: str
    uid: int
    gid: int
    mode: int
    role: str = ""

    def describe(self) -> str:
        return f"{self.path} {self.uid}:{self.gid} {oct(self.mode)}"


def platform_tree(platform: PlatformConfig) -> list[DirectoryPolicyEntry]:
    """The managed root and its immediate children, all owned by root."""
    return [
        DirectoryPolicyEntry(platform.managed_root, ROOT_ID, ROOT_ID, 0o755),
        DirectoryPolicyEntry(platform.engine_dir, ROOT_ID, ROOT_ID, 0o700),
        DirectoryPolicyEntry(platform.services_dir, ROOT_ID, ROOT_ID, 0o750),
        DirectoryPolicyEntry(platform.secrets_dir, ROOT_ID, ROOT_ID, 0o700),
        DirectoryPolicyEntry(platform.logs_dir, ROOT_ID, ROOT_ID, 0o755),
    ]


def role_tree(platform: PlatformConfig, role: Role, mapping: IdentityMapping) -> list[DirectoryPolicyEntry]:
    """Per-role directories. Only the log directory is service-private."""
    uid, gid = mapping.host_ids(role.uid, role.gid)
    return [
        DirectoryPolicyEntry(f"{platform.services_dir}/{role.name}", ROOT_ID, ROOT_ID, 0o750, role.name),
        DirectoryPolicyEntry(f"{platform.secrets_dir}/{role.name}", ROOT_ID, ROOT_ID, 0o700, role.name),
        DirectoryPolicyEntry(f"{platform.logs_dir}/{role.name}", uid, gid, 0o750, role.name),
    ]


def build_directory_policy(
    platform: PlatformConfig,
    roles: list[Role],
    mapping: IdentityMapping,
) -> list[DirectoryPolicyEntry]:
    entries = platform_tree(platform)
    for role in sorted(roles, key=lambda r: r.name):
        entries.extend(role_tree(platform, role, mapping))
    return entries


def check_role(platform: PlatformConfig, host: str, role: Role) -> None:
    """Reject a role that breaks the storage or least-privilege rules.

    Raises:
        PolicyViolation: on the first offending declaration.
    """
    if role.uid == ROOT_ID or role.gid == ROOT_ID:
        raise PolicyViolation(
            "Service would run as root inside its container",
            host=host,
            role=role.name,
            declaration=f"user {role.uid}:{role.gid}",
        )

    targets: dict[str, VolumeDeclaration] = {}
    reserved = {f"{SECRETS_MOUNT_DIR}/{s.name}" for s in role.secrets}
    for volume in role.volumes:
        target = posixpath.normpath(volume.target)
        if target in targets:
            raise PolicyViolation(
                f"Mount target already used by {targets[target].label}",
                host=host,
                role=role.name,
                declaration=volume.label,
            )
        if target in reserved or target == SECRETS_MOUNT_DIR:
            raise PolicyViolation(
                "Mount target collides with a managed secret",
                host=host,
                role=role.name,
                declaration=volume.label,
            )
        targets[target] = volume
        classify_volume(platform, host, role.name, volume)


def classify_volume(platform: PlatformConfig, host: str, role: str, volume: VolumeDeclaration) -> BindException | None:
    """Return the sanctioned exception a bind matches, or None for a named volume."""

    def violation(message: str) -> PolicyViolation:
        return PolicyViolation(message, host=host, role=role, declaration=volume.label)

    if volume.scope == VolumeScope.NAMED:
        if volume.exception != BindException.NONE:
            raise violation("Bind exceptions only apply to bind mounts")
        if volume.device and not _is_under(volume.device, platform.engine_storage_root):
            raise violation(
                f"Named volume is backed by {volume.device}, outside engine storage "
                f"{platform.engine_storage_root}"
            )
        return None

    source = volume.source
    if not source.startswith("/") or ".." in source.split("/"):
        raise violation("Bind source must be an absolute path without '..'")

    if volume.exception == BindException.NONE:
        raise violation("Bind mounts are not allowed for persistent data; declare a named volume")

    if not volume.read_only and not volume.reason:
        raise violation("A read-write bind exception needs a recorded 'reason'")

    if volume.exception == BindException.READ_ONLY_LOG_SHARE:
        if not _is_under(source, platform.logs_dir):
            raise violation(f"Log shares must live under {platform.logs_dir}")
    elif volume.exception == BindException.SOCKET_PASSTHROUGH:
        if not volume.justification:
            raise violation("Socket passthrough needs an administrator 'justification'")
        if not source.endswith(SOCKET_SUFFIX):
            raise violation(f"Socket passthrough source must be a '{SOCKET_SUFFIX}' socket")

    return volume.exception


def _is_under(path: str, root: str) -> bool:
    path = posixpath.normpath(path)
    root = posixpath.normpath(root)
    return path.startswith(root.rstrip("/") + "/")
