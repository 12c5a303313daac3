"""Filesystem Policy Enforcer.

Plans directory creation, ownership and mode fixes for a host's policy
entries and applies them one path at a time. Ownership is never changed
recursively, and engine-managed storage is only ever inspected.
"""

from __future__ import annotations

import logging
import posixpath

from hostguard.config import PlatformConfig
from hostguard.errors import OwnershipDriftError
from hostguard.filesystem.policy import ROOT_ID, DirectoryPolicyEntry, check_role
from hostguard.hosts.base import HostBackend
from hostguard.inventory.models import Role
from hostguard.reconcile.changes import Change, Finding, FindingKind, Step

logger = logging.getLogger(__name__)

PARENT_MODE = 0o755


class FilesystemEnforcer:
    def __init__(self, platform: PlatformConfig):
        self.platform = platform

    def validate_roles(self, host: str, roles: list[Role]) -> None:
        """Classify every volume of every role; raises PolicyViolation on the first bad one."""
        for role in roles:
            check_role(self.platform, host, role)

    def plan(self, backend: HostBackend, entries: list[DirectoryPolicyEntry]) -> tuple[list[Change], list[Finding]]:
        changes: list[Change] = []
        findings = self._check_engine_storage(backend)

        for parent in _ancestors(self.platform.managed_root):
            if backend.stat(parent) is None:
                changes.append(
                    Change(
                        Step.FILESYSTEM,
                        "mkdir",
                        parent,
                        detail=f"{ROOT_ID}:{ROOT_ID} {oct(PARENT_MODE)}",
                        params={"uid": ROOT_ID, "gid": ROOT_ID, "mode": PARENT_MODE},
                    )
                )

        for entry in entries:
            changes.extend(self._plan_entry(backend, entry))
        return changes, findings

    def _plan_entry(self, backend: HostBackend, entry: DirectoryPolicyEntry) -> list[Change]:
        params = {"uid": entry.uid, "gid": entry.gid, "mode": entry.mode}
        st = backend.stat(entry.path)
        if st is None:
            return [
                Change(
                    Step.FILESYSTEM,
                    "mkdir",
                    entry.path,
                    role=entry.role,
                    detail=f"{entry.uid}:{entry.gid} {oct(entry.mode)}",
                    params=params,
                )
            ]

        if not st.is_dir:
            raise OwnershipDriftError(
                f"Managed path is a {st.kind}, expected a directory",
                host=backend.name,
                role=entry.role,
                declaration=entry.describe(),
            )

        changes = []
        if (st.uid, st.gid) != (entry.uid, entry.gid):
            # Root-owned paths are ones we (or an installer) created; anything else
            # belongs to someone and is surfaced instead of taken over.
            if st.uid not in (ROOT_ID, entry.uid) or st.gid not in (ROOT_ID, entry.gid):
                raise OwnershipDriftError(
                    f"Owned by {st.uid}:{st.gid}, policy requires {entry.uid}:{entry.gid}",
                    host=backend.name,
                    role=entry.role,
                    declaration=entry.describe(),
                )
            changes.append(
                Change(
                    Step.FILESYSTEM,
                    "chown",
                    entry.path,
                    role=entry.role,
                    detail=f"{st.uid}:{st.gid} -> {entry.uid}:{entry.gid}",
                    params=params,
                )
            )
        if st.mode != entry.mode:
            changes.append(
                Change(
                    Step.FILESYSTEM,
                    "chmod",
                    entry.path,
                    role=entry.role,
                    detail=f"{oct(st.mode)} -> {oct(entry.mode)}",
                    params=params,
                )
            )
        return changes

    def _check_engine_storage(self, backend: HostBackend) -> list[Finding]:
        root = self.platform.engine_storage_root
        st = backend.stat(root)
        if st is None:
            return [
                Finding(
                    FindingKind.WARNING,
                    "Engine storage root is missing; the engine creates it on first start",
                    target=root,
                )
            ]
        if not st.is_dir or st.uid != ROOT_ID:
            raise OwnershipDriftError(
                f"Engine storage root must be a root-owned directory, found {st.kind} owned by {st.uid}:{st.gid}",
                host=backend.name,
                declaration=root,
            )
        return []

    def apply(self, backend: HostBackend, changes: list[Change]) -> list[Change]:
        applied = []
        for change in changes:
            uid, gid, mode = change.params["uid"], change.params["gid"], change.params["mode"]
            if change.action == "mkdir":
                backend.mkdir(change.target, mode)
                if (uid, gid) != (ROOT_ID, ROOT_ID):
                    backend.chown(change.target, uid, gid)
                # Some backends apply the umask on mkdir
                backend.chmod(change.target, mode)
            elif change.action == "chown":
                backend.chown(change.target, uid, gid)
            elif change.action == "chmod":
                backend.chmod(change.target, mode)
            else:
                raise ValueError(f"Unknown filesystem action: {change.action}")
            logger.info("[%s] %s", backend.name, change.describe())
            applied.append(change)
        return applied


def _ancestors(path: str) -> list[str]:
    """Parents of ``path`` from the top down, excluding ``/`` and ``path`` itself."""
    parents = []
    current = posixpath.dirname(posixpath.normpath(path))
    while current not in ("/", ""):
        parents.append(current)
        current = posixpath.dirname(current)
    return list(reversed(parents))
