"""Migration Orchestrator: move one stateful role's named volumes between hosts.

Sequence:
1. Preconditions: the destination completed a successful pass with the
   role's static configuration, the role is stateful and assigned there, its
   service is not running, both hosts share one identity range, and the
   destination volumes are absent or empty
2. Stop the source service and hold it there
3. Archive each named volume with numeric ownership
4. Stage the archives on the control node
5. Create each volume on the destination and extract into it
6. Release the destination hold and run a pass to start the service

A migration that failed during or after the restore can be resumed under its
own id. The journal must show that same migration restoring into the
destination; the partial data there is then overwritten from a fresh archive
of the still-stopped source.

The orchestrator never restarts the source. Whatever step fails, the source
stays stopped and the destination stays unstarted until an operator retries
or backs out.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path

from hostguard.engine.base import ServiceStatus
from hostguard.errors import ApplyError, HostguardError, MigrationPreconditionError
from hostguard.hosts.base import HostBackend
from hostguard.inventory.models import Role
from hostguard.reconcile.reconciler import HostReport, Reconciler
from hostguard.state.snapshot import PassStatus
from hostguard.state.store import EventKind, HistoryRecord

logger = logging.getLogger(__name__)

STAGING_DIR = "migrations"


class MigrationStep:
    PRECONDITIONS = "preconditions"
    STOP_SOURCE = "stop_source"
    ARCHIVE = "archive"
    TRANSFER = "transfer"
    RESTORE = "restore"
    ACTIVATE = "activate"


@dataclass
class MigrationResult:
    migration_id: str
    role: str
    source: str
    destination: str
    volumes: dict[str, int] = field(default_factory=dict)  # volume -> archive bytes
    completed: list[str] = field(default_factory=list)
    activation: HostReport | None = None
    resumed: bool = False

    @property
    def ok(self) -> bool:
        return self.activation is not None and self.activation.ok


class MigrationOrchestrator:
    """Drives one migration at a time; every step lands in the pass history."""

    def __init__(self, reconciler: Reconciler, staging_dir: str | Path | None = None):
        self.reconciler = reconciler
        self.inventory = reconciler.inventory
        self.store = reconciler.store
        self.audit = reconciler.audit
        self.staging_dir = Path(staging_dir) if staging_dir else self.store.state_dir / STAGING_DIR

    # ------------------------------------------------------------------
    # Preconditions
    # ------------------------------------------------------------------

    def check_preconditions(
        self,
        role_name: str,
        source: str,
        source_backend: HostBackend,
        destination: str,
        destination_backend: HostBackend,
        resuming: bool = False,
    ) -> dict[str, str]:
        """Raise MigrationPreconditionError unless the move is safe; return volume mountpoints on the source.

        When ``resuming``, destination volumes may hold the partial restore of
        the migration being resumed, and the destination's last pass may be
        that migration's failed activation.
        """

        def refuse(message: str, host: str = destination, declaration: str = "") -> MigrationPreconditionError:
            return MigrationPreconditionError(message, host=host, role=role_name, declaration=declaration)

        if source == destination:
            raise refuse("Source and destination are the same host")
        role = self._role(role_name)
        if not role.stateful:
            raise refuse("Role is not stateful; there is no data to migrate", declaration="stateful")
        if not role.named_volumes:
            raise refuse("Role declares no named volumes", declaration="volumes")
        if role_name not in self.inventory.host(destination).role_names:
            raise refuse("Role is not assigned to the destination")

        dest_snapshot = self.store.load(destination)
        # A resumed migration may follow its own failed activation pass
        if not dest_snapshot.converged and not resuming:
            raise refuse(
                f"Destination has no successful reconciliation pass (last: {dest_snapshot.last_pass.status})"
            )
        state = dest_snapshot.roles.get(role_name)
        if state is None or not state.static_applied:
            raise refuse("Role's static configuration has not been applied on the destination")
        if destination_backend.engine.service_status(role_name) == ServiceStatus.RUNNING:
            raise refuse("Service is already running on the destination")

        source_snapshot = self.store.load(source)
        if source_snapshot.identity is None:
            raise refuse("Source identity mapping is unknown; reconcile the source first", host=source)
        src, dst = source_snapshot.identity, dest_snapshot.identity
        if (src.account, src.range_start, src.range_size) != (dst.account, dst.range_start, dst.range_size):
            raise refuse(
                f"Identity ranges differ: source {src.record()}, destination {dst.record()}",
                declaration="subordinate_range",
            )

        mountpoints = {}
        for volume in role.named_volumes:
            mountpoint = source_backend.engine.volume_mountpoint(volume.name)
            if mountpoint is None:
                raise refuse("Volume does not exist on the source", host=source, declaration=volume.label)
            mountpoints[volume.name] = mountpoint

            existing = destination_backend.engine.volume_mountpoint(volume.name)
            if not resuming and existing is not None and destination_backend.list_dir(existing):
                raise refuse("Destination volume already holds data", declaration=volume.label)
        return mountpoints

    def _role(self, name: str) -> Role:
        if name not in self.inventory.roles:
            raise MigrationPreconditionError(f"Unknown role '{name}'", role=name)
        return self.inventory.roles[name]

    def _check_resumable(self, migration_id: str, role_name: str, source: str, destination: str) -> None:
        def refuse(message: str) -> MigrationPreconditionError:
            return MigrationPreconditionError(message, host=destination, role=role_name, declaration=f"migration:{migration_id}")

        journal = [
            r
            for r in self.store.get_history(destination, EventKind.MIGRATION)
            if r.details.get("migration_id") == migration_id
        ]
        if not journal:
            raise refuse("No such migration journaled for the destination")
        if journal[0].role != role_name or journal[0].details.get("source") != source:
            raise refuse(
                f"Migration moved {journal[0].role} from {journal[0].details.get('source')}, not {role_name} from {source}"
            )
        steps = {(r.details.get("step"), r.status) for r in journal}
        if (MigrationStep.ACTIVATE, PassStatus.SUCCESS) in steps:
            raise refuse("Migration already completed")
        if not any(step == MigrationStep.RESTORE for step, _ in steps):
            raise refuse("Migration never reached the restore step; start a new one instead")

    # ------------------------------------------------------------------
    # Migration
    # ------------------------------------------------------------------

    def migrate(
        self,
        role_name: str,
        source: str,
        source_backend: HostBackend,
        destination: str,
        destination_backend: HostBackend,
        resume: str | None = None,
    ) -> MigrationResult:
        """Run a migration, or resume the journaled migration ``resume``."""
        result = MigrationResult(
            migration_id=resume or uuid.uuid4().hex[:12],
            role=role_name,
            source=source,
            destination=destination,
            resumed=resume is not None,
        )
        verb = "Resuming" if result.resumed else "Migrating"
        logger.info("[%s] %s %s from %s to %s", result.migration_id, verb, role_name, source, destination)

        try:
            if resume:
                self._check_resumable(resume, role_name, source, destination)
            mountpoints = self.check_preconditions(
                role_name, source, source_backend, destination, destination_backend, resuming=result.resumed
            )
        except HostguardError as e:
            self._journal(result, MigrationStep.PRECONDITIONS, PassStatus.FAILED, error=e)
            raise
        self._journal(result, MigrationStep.PRECONDITIONS, PassStatus.SUCCESS)

        # The destination stays held until the final pass releases it
        dest_snapshot = self.store.load(destination)
        dest_snapshot.hold(role_name)
        self.store.save(dest_snapshot)

        staged: dict[str, Path] = {}
        self._step(result, MigrationStep.STOP_SOURCE, lambda: self._stop_source(role_name, source, source_backend))
        self._step(
            result,
            MigrationStep.ARCHIVE,
            lambda: self._archive(result, source_backend, mountpoints, staged),
        )
        self._step(result, MigrationStep.TRANSFER, lambda: self._verify_staged(result, staged))
        self._step(
            result,
            MigrationStep.RESTORE,
            lambda: self._restore(role_name, destination_backend, staged),
        )

        report = self.reconciler.reconcile(destination, destination_backend, release={role_name})
        result.activation = report
        if report.ok:
            result.completed.append(MigrationStep.ACTIVATE)
            self._journal(result, MigrationStep.ACTIVATE, PassStatus.SUCCESS)
            for path in staged.values():
                path.unlink(missing_ok=True)
            logger.info("[%s] Migration complete", result.migration_id)
        else:
            self._journal(result, MigrationStep.ACTIVATE, PassStatus.FAILED, error=report.error)
            logger.error("[%s] Activation pass failed: %s", result.migration_id, report.summary())
        return result

    def _step(self, result: MigrationResult, step: str, action) -> None:
        try:
            action()
        except Exception as e:
            error = ApplyError(step, e, role=result.role)
            self._journal(result, step, PassStatus.FAILED, error=error)
            logger.error("[%s] %s", result.migration_id, error)
            raise error from e
        result.completed.append(step)
        self._journal(result, step, PassStatus.SUCCESS)

    def _stop_source(self, role_name: str, source: str, backend: HostBackend) -> None:
        backend.engine.stop_service(role_name)
        snapshot = self.store.load(source)
        snapshot.hold(role_name)
        self.store.save(snapshot)
        logger.info("[%s] Stopped and held %s", source, role_name)

    def _archive(
        self,
        result: MigrationResult,
        backend: HostBackend,
        mountpoints: dict[str, str],
        staged: dict[str, Path],
    ) -> None:
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        for volume, mountpoint in mountpoints.items():
            data = backend.archive_tree(mountpoint)
            path = self.staging_dir / f"{result.migration_id}-{volume}.tar"
            path.write_bytes(data)
            path.chmod(0o600)
            staged[volume] = path
            result.volumes[volume] = len(data)
            logger.info("[%s] Archived %s (%d bytes)", backend.name, volume, len(data))

    def _verify_staged(self, result: MigrationResult, staged: dict[str, Path]) -> None:
        for volume, path in staged.items():
            size = path.stat().st_size
            if size != result.volumes[volume]:
                raise HostguardError(
                    f"Staged archive is {size} bytes, expected {result.volumes[volume]}",
                    role=result.role,
                    declaration=f"volume:{volume}",
                )

    def _restore(self, role_name: str, backend: HostBackend, staged: dict[str, Path]) -> None:
        for volume, path in staged.items():
            mountpoint = backend.engine.volume_mountpoint(volume) or backend.engine.create_volume(volume, role_name)
            backend.extract_tree(mountpoint, path.read_bytes())
            logger.info("[%s] Restored %s into %s", backend.name, volume, mountpoint)

    def _journal(self, result: MigrationResult, step: str, status: str, error: Exception | None = None) -> None:
        details = {
            "migration_id": result.migration_id,
            "step": step,
            "source": result.source,
            "destination": result.destination,
            "volumes": dict(result.volumes),
            "resumed": result.resumed,
        }
        self.store.record(
            HistoryRecord(
                host=result.destination,
                kind=EventKind.MIGRATION,
                status=status,
                role=result.role,
                revision=self.inventory.revision,
                failed_step=step if status == PassStatus.FAILED else "",
                error=str(error) if error else "",
                details=details,
            )
        )
        if self.audit is not None:
            self.audit.log_event(
                f"migration_{step}",
                result.destination,
                result.role,
                details=details,
                success=status == PassStatus.SUCCESS,
            )
