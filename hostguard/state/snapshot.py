"""Observed-state snapshots: what the last pass established on a host."""

from __future__ import annotations

from dataclasses import dataclass, field

from hostguard.identity.mapping import IdentityMapping
from hostguard.secrets.manager import SecretFingerprint


class PassStatus:
    NEVER = "never"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class RoleState:
    static_applied: bool = False  # Identity, directories and secrets in place
    service_hash: str = ""  # Config hash of the last started service


@dataclass
class PassOutcome:
    status: str = PassStatus.NEVER
    finished_at: str = ""
    failed_step: str = ""
    error: str = ""


@dataclass
class HostSnapshot:
    host: str
    updated_at: str = ""
    revision: str = ""
    identity: IdentityMapping | None = None
    directories: dict[str, tuple[int, int, int]] = field(default_factory=dict)
    secrets: dict[str, SecretFingerprint] = field(default_factory=dict)
    roles: dict[str, RoleState] = field(default_factory=dict)
    holds: list[str] = field(default_factory=list)
    last_pass: PassOutcome = field(default_factory=PassOutcome)

    def role(self, name: str) -> RoleState:
        return self.roles.setdefault(name, RoleState())

    @property
    def converged(self) -> bool:
        return self.last_pass.status == PassStatus.SUCCESS

    def hold(self, role: str) -> None:
        if role not in self.holds:
            self.holds.append(role)

    def release(self, role: str) -> bool:
        if role in self.holds:
            self.holds.remove(role)
            return True
        return False


def snapshot_to_dict(snapshot: HostSnapshot) -> dict:
    identity = None
    if snapshot.identity:
        identity = {
            "account": snapshot.identity.account,
            "range_start": snapshot.identity.range_start,
            "range_size": snapshot.identity.range_size,
        }
    return {
        "host": snapshot.host,
        "updated_at": snapshot.updated_at,
        "revision": snapshot.revision,
        "identity": identity,
        "directories": {path: list(v) for path, v in snapshot.directories.items()},
        "secrets": {key: fp.to_dict() for key, fp in snapshot.secrets.items()},
        "roles": {
            name: {"static_applied": r.static_applied, "service_hash": r.service_hash}
            for name, r in snapshot.roles.items()
        },
        "holds": list(snapshot.holds),
        "last_pass": {
            "status": snapshot.last_pass.status,
            "finished_at": snapshot.last_pass.finished_at,
            "failed_step": snapshot.last_pass.failed_step,
            "error": snapshot.last_pass.error,
        },
    }


def snapshot_from_dict(data: dict) -> HostSnapshot:
    identity = None
    if data.get("identity"):
        identity = IdentityMapping(
            host=data["host"],
            account=data["identity"]["account"],
            range_start=data["identity"]["range_start"],
            range_size=data["identity"]["range_size"],
        )
    last_pass = data.get("last_pass", {})
    return HostSnapshot(
        host=data["host"],
        updated_at=data.get("updated_at", ""),
        revision=data.get("revision", ""),
        identity=identity,
        directories={path: tuple(v) for path, v in data.get("directories", {}).items()},
        secrets={key: SecretFingerprint.from_dict(v) for key, v in data.get("secrets", {}).items()},
        roles={
            name: RoleState(
                static_applied=r.get("static_applied", False),
                service_hash=r.get("service_hash", ""),
            )
            for name, r in data.get("roles", {}).items()
        },
        holds=list(data.get("holds", [])),
        last_pass=PassOutcome(
            status=last_pass.get("status", PassStatus.NEVER),
            finished_at=last_pass.get("finished_at", ""),
            failed_step=last_pass.get("failed_step", ""),
            error=last_pass.get("error", ""),
        ),
    )
