"""Drift detection: compare what the last pass recorded with what a host shows now.

Drift happens when:
1. A managed directory changed owner or mode, or disappeared
2. A secret's content, owner or mode changed, or the file disappeared
3. The remap account or its subordinate range records went away
4. A service the last pass started is no longer running

Detection only reads. The next pass decides what is corrected and what is
reported.
"""

from __future__ import annotations

from dataclasses import dataclass, field

from hostguard.config import PlatformConfig
from hostguard.engine.base import ServiceStatus
from hostguard.hosts.base import HostBackend
from hostguard.identity.allocator import IdentityAllocator, read_registry
from hostguard.secrets.manager import SecretManager
from hostguard.services.spec import secret_path
from hostguard.state.snapshot import HostSnapshot
from hostguard.state.store import StateStore


class DriftType:
    DIRECTORY = "directory_drift"
    SECRET = "secret_drift"
    IDENTITY = "identity_drift"
    SERVICE = "service_drift"


@dataclass
class DriftReport:
    """Report of detected drift for a single host."""

    host: str
    revision: str = ""
    drift_types: list[str] = field(default_factory=list)
    details: list[str] = field(default_factory=list)

    @property
    def has_drift(self) -> bool:
        return len(self.drift_types) > 0

    def add(self, drift_type: str, detail: str) -> None:
        if drift_type not in self.drift_types:
            self.drift_types.append(drift_type)
        self.details.append(detail)

    def summary(self) -> str:
        if not self.has_drift:
            return f"{self.host}: no drift detected"
        return f"{self.host}: DRIFT [{', '.join(self.drift_types)}]"


class DriftDetector:
    """Detects drift between a host's snapshot and its observed state."""

    def __init__(self, platform: PlatformConfig, store: StateStore):
        self.platform = platform
        self.store = store
        self.secrets = SecretManager(platform)
        self.identity = IdentityAllocator(platform)

    def check(self, host: str, backend: HostBackend) -> DriftReport:
        snapshot = self.store.load(host)
        report = DriftReport(host=host, revision=snapshot.revision)

        if snapshot.identity is None and not snapshot.directories:
            report.details.append("No snapshot found; host has never been reconciled.")
            return report

        self._check_identity(snapshot, backend, report)
        self._check_directories(snapshot, backend, report)
        self._check_secrets(snapshot, backend, report)
        self._check_services(snapshot, backend, report)
        return report

    def _check_identity(self, snapshot: HostSnapshot, backend: HostBackend, report: DriftReport) -> None:
        mapping = snapshot.identity
        if mapping is None:
            return
        if backend.get_account(mapping.account) is None:
            report.add(DriftType.IDENTITY, f"Account {mapping.account} no longer exists")
        for _, path in self.identity.registries():
            entries = read_registry(backend, path)
            if not any(
                (e.account, e.start, e.size) == (mapping.account, mapping.range_start, mapping.range_size)
                for e in entries
            ):
                report.add(DriftType.IDENTITY, f"{path} no longer holds {mapping.record()}")

    def _check_directories(self, snapshot: HostSnapshot, backend: HostBackend, report: DriftReport) -> None:
        for path, (uid, gid, mode) in sorted(snapshot.directories.items()):
            st = backend.stat(path)
            if st is None:
                report.add(DriftType.DIRECTORY, f"{path} is missing")
            elif not st.is_dir:
                report.add(DriftType.DIRECTORY, f"{path} is no longer a directory")
            elif (st.uid, st.gid) != (uid, gid):
                report.add(DriftType.DIRECTORY, f"{path} owner {st.uid}:{st.gid}, expected {uid}:{gid}")
            elif st.mode != mode:
                report.add(DriftType.DIRECTORY, f"{path} mode {oct(st.mode)}, expected {oct(mode)}")

    def _check_secrets(self, snapshot: HostSnapshot, backend: HostBackend, report: DriftReport) -> None:
        for key, recorded in sorted(snapshot.secrets.items()):
            role, name = key.split("/", 1)
            current = self.secrets.fingerprint(backend, secret_path(self.platform, role, name))
            if current is None:
                report.add(DriftType.SECRET, f"{key}: file is missing")
            elif current != recorded:
                report.add(DriftType.SECRET, f"{key}: changed outside hostguard")

    def _check_services(self, snapshot: HostSnapshot, backend: HostBackend, report: DriftReport) -> None:
        for name, state in sorted(snapshot.roles.items()):
            if not state.service_hash or name in snapshot.holds:
                continue
            status = backend.engine.service_status(name)
            if status != ServiceStatus.RUNNING:
                report.add(DriftType.SERVICE, f"{name}: service is {status.value}")
