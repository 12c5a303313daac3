"""Secret Lifecycle Manager.

A secret that exists is authoritative: it is never regenerated, rewritten or
re-permissioned by a pass. Missing secrets are generated once and written
atomically. Each pass fingerprints what it sees so that a later pass can
report files changed behind its back instead of quietly accepting them.
"""

from __future__ import annotations

import hashlib
import logging
import posixpath
from dataclasses import dataclass

from hostguard.config import PlatformConfig
from hostguard.errors import SecretWriteError
from hostguard.filesystem.policy import ROOT_ID, DirectoryPolicyEntry
from hostguard.hosts.base import HostBackend
from hostguard.identity.mapping import IdentityMapping
from hostguard.inventory.models import Role, SecretDeclaration, SecretOwner, SecretType
from hostguard.reconcile.changes import Change, Finding, FindingKind, Step
from hostguard.secrets.generate import generate
from hostguard.services.spec import secret_path

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SecretFingerprint:
    """What a pass remembers about a secret. Never the content itself."""

    sha256: str
    uid: int
    gid: int
    mode: int

    def to_dict(self) -> dict:
        return {"sha256": self.sha256, "uid": self.uid, "gid": self.gid, "mode": self.mode}

    @classmethod
    def from_dict(cls, data: dict) -> SecretFingerprint:
        return cls(sha256=data["sha256"], uid=data["uid"], gid=data["gid"], mode=data["mode"])


@dataclass(frozen=True)
class SecretTarget:
    role: str
    declaration: SecretDeclaration
    path: str
    uid: int
    gid: int
    mode: int
    length: int

    @property
    def key(self) -> str:
        return f"{self.role}/{self.declaration.name}"

    @property
    def label(self) -> str:
        return f"secret:{self.declaration.name}"


def content_digest(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def derivation_depth(declaration: SecretDeclaration, by_name: dict[str, SecretDeclaration]) -> int:
    """Number of derivation hops to a generated secret; 0 for generated secrets."""
    depth = 0
    while declaration.type == SecretType.DERIVED and depth <= len(by_name):
        declaration = by_name[declaration.derive_from]
        depth += 1
    return depth


class SecretManager:
    def __init__(self, platform: PlatformConfig):
        self.platform = platform

    def targets(self, roles: list[Role], mapping: IdentityMapping) -> list[SecretTarget]:
        """Resolve declarations to paths and ownership, bases before derived secrets."""
        resolved = []
        for role in sorted(roles, key=lambda r: r.name):
            container_ids = mapping.host_ids(role.uid, role.gid)
            by_name = {s.name: s for s in role.secrets}
            ordered = sorted(role.secrets, key=lambda s: derivation_depth(s, by_name))
            for declaration in ordered:
                uid, gid = container_ids if declaration.owner == SecretOwner.CONTAINER else (ROOT_ID, ROOT_ID)
                resolved.append(
                    SecretTarget(
                        role=role.name,
                        declaration=declaration,
                        path=secret_path(self.platform, role.name, declaration.name),
                        uid=uid,
                        gid=gid,
                        mode=declaration.mode,
                        length=declaration.length or self.platform.secret_min_length,
                    )
                )
        return resolved

    def fingerprint(self, backend: HostBackend, path: str) -> SecretFingerprint | None:
        st = backend.stat(path)
        data = backend.read_file(path)
        if st is None or data is None:
            return None
        return SecretFingerprint(content_digest(data), st.uid, st.gid, st.mode)

    def plan(
        self,
        backend: HostBackend,
        targets: list[SecretTarget],
        recorded: dict[str, SecretFingerprint],
    ) -> tuple[list[Change], list[Finding], dict[str, SecretFingerprint]]:
        """Return (changes, findings, fingerprints to record).

        Drifted secrets keep their previous record so the drift is reported
        again on every pass until an operator accepts or rotates them.
        """
        changes: list[Change] = []
        findings: list[Finding] = []
        observed: dict[str, SecretFingerprint] = {}

        for target in targets:
            previous = recorded.get(target.key)
            current = self.fingerprint(backend, target.path)

            if current is None:
                if previous is not None:
                    observed[target.key] = previous
                    findings.append(
                        Finding(
                            FindingKind.SECRET_DRIFT,
                            "Recorded secret is missing; it will not be regenerated. "
                            "Run 'hostguard secrets rotate' to issue a new one.",
                            target=target.path,
                            role=target.role,
                        )
                    )
                    continue
                changes.append(
                    Change(
                        Step.SECRETS,
                        "create_secret",
                        target.path,
                        role=target.role,
                        detail=f"{target.declaration.type.value}, {target.length} chars, "
                        f"{target.uid}:{target.gid} {oct(target.mode)}",
                        params={"key": target.key},
                    )
                )
                continue

            if previous is None:
                observed[target.key] = current
                if (current.uid, current.gid, current.mode) != (target.uid, target.gid, target.mode):
                    findings.append(
                        Finding(
                            FindingKind.WARNING,
                            f"Adopted existing secret with {current.uid}:{current.gid} {oct(current.mode)}, "
                            f"policy is {target.uid}:{target.gid} {oct(target.mode)}",
                            target=target.path,
                            role=target.role,
                        )
                    )
                continue

            observed[target.key] = previous
            if current != previous:
                findings.append(
                    Finding(
                        FindingKind.SECRET_DRIFT,
                        _describe_drift(previous, current)
                        + "; run 'hostguard secrets accept' or 'hostguard secrets rotate'",
                        target=target.path,
                        role=target.role,
                    )
                )

        return changes, findings, observed

    def apply(
        self,
        backend: HostBackend,
        changes: list[Change],
        targets: list[SecretTarget],
        directories: dict[str, DirectoryPolicyEntry],
    ) -> tuple[list[Change], dict[str, SecretFingerprint]]:
        by_key = {t.key: t for t in targets}
        applied = []
        written: dict[str, SecretFingerprint] = {}
        for change in changes:
            if change.action != "create_secret":
                raise ValueError(f"Unknown secrets action: {change.action}")
            target = by_key[change.params["key"]]
            if backend.stat(target.path) is not None:
                # Appeared since planning; existing content always wins
                written[target.key] = self.fingerprint(backend, target.path)
                continue
            written[target.key] = self._write(backend, target, targets, directories)
            logger.info("[%s] %s", backend.name, change.describe())
            applied.append(change)
        return applied, written

    def rotate(
        self,
        backend: HostBackend,
        target: SecretTarget,
        targets: list[SecretTarget],
        directories: dict[str, DirectoryPolicyEntry],
    ) -> SecretFingerprint:
        """Replace a secret's content. Only ever called on an explicit operator request."""
        fingerprint = self._write(backend, target, targets, directories)
        logger.warning("[%s] Rotated %s for %s", backend.name, target.label, target.role)
        return fingerprint

    def _write(
        self,
        backend: HostBackend,
        target: SecretTarget,
        targets: list[SecretTarget],
        directories: dict[str, DirectoryPolicyEntry],
    ) -> SecretFingerprint:
        self._check_directory(backend, target, directories)

        base = None
        declaration = target.declaration
        if declaration.type == SecretType.DERIVED:
            base_path = secret_path(self.platform, target.role, declaration.derive_from)
            base = backend.read_file(base_path)
            if base is None:
                raise SecretWriteError(
                    f"Base secret '{declaration.derive_from}' does not exist",
                    host=backend.name,
                    role=target.role,
                    declaration=target.label,
                )

        content = generate(declaration.type, target.length, base=base, label=declaration.label)
        backend.write_file_atomic(target.path, content, target.uid, target.gid, target.mode)
        return SecretFingerprint(content_digest(content), target.uid, target.gid, target.mode)

    def _check_directory(
        self,
        backend: HostBackend,
        target: SecretTarget,
        directories: dict[str, DirectoryPolicyEntry],
    ) -> None:
        parent = posixpath.dirname(target.path)
        entry = directories.get(parent)
        st = backend.stat(parent)

        def refuse(reason: str) -> SecretWriteError:
            return SecretWriteError(
                f"Refusing to write into {parent}: {reason}",
                host=backend.name,
                role=target.role,
                declaration=target.label,
            )

        if entry is None:
            raise refuse("directory is not covered by the directory policy")
        if st is None or not st.is_dir:
            raise refuse("directory does not exist")
        if (st.uid, st.gid, st.mode) != (entry.uid, entry.gid, entry.mode):
            raise refuse(
                f"found {st.uid}:{st.gid} {oct(st.mode)}, policy requires "
                f"{entry.uid}:{entry.gid} {oct(entry.mode)}"
            )


def _describe_drift(previous: SecretFingerprint, current: SecretFingerprint) -> str:
    changed = []
    if current.sha256 != previous.sha256:
        changed.append("content")
    if (current.uid, current.gid) != (previous.uid, previous.gid):
        changed.append(f"owner {previous.uid}:{previous.gid} -> {current.uid}:{current.gid}")
    if current.mode != previous.mode:
        changed.append(f"mode {oct(previous.mode)} -> {oct(current.mode)}")
    return "Changed outside hostguard: " + ", ".join(changed)
