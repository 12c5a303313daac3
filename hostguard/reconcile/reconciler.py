"""The reconciliation control loop.

One pass against one host runs to completion:

1. Load: inventory entries for the host and its last snapshot
2. Validate: plan every step without touching the host; the first
   validation error aborts the pass
3. Apply identity, filesystem, secrets, services, strictly in that order
4. Record: persist the new snapshot and a history entry

An apply failure stops the remaining steps. Nothing is rolled back; each
step is idempotent, so the fix is to correct the cause and run again.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from hostguard.engine.base import ServiceStatus
from hostguard.errors import ApplyError, HostguardError, RangeConflict
from hostguard.filesystem.enforcer import FilesystemEnforcer
from hostguard.filesystem.policy import DirectoryPolicyEntry, build_directory_policy
from hostguard.hosts.base import HostBackend
from hostguard.identity.allocator import IdentityAllocator, effective_range
from hostguard.identity.mapping import IdentityMapping
from hostguard.inventory.models import Host, Inventory, Role
from hostguard.reconcile.changes import STEP_ORDER, Change, ChangeSet, Finding, FindingKind, Step
from hostguard.secrets.manager import SecretFingerprint, SecretManager, SecretTarget
from hostguard.services.spec import ServiceSpec, definition_path, render_service
from hostguard.state.audit import AuditLogger
from hostguard.state.snapshot import HostSnapshot, PassStatus
from hostguard.state.store import EventKind, HistoryRecord, StateStore, utc_now

logger = logging.getLogger(__name__)

VALIDATE_STEP = "validate"
DEFINITION_MODE = 0o640


@dataclass
class PassPlan:
    """Everything a pass needs to apply, computed before the first mutation."""

    host: Host
    backend: HostBackend
    snapshot: HostSnapshot
    mapping: IdentityMapping
    roles: list[Role]
    directories: list[DirectoryPolicyEntry]
    secret_targets: list[SecretTarget]
    secret_records: dict[str, SecretFingerprint]
    services: dict[str, ServiceSpec]
    held: set[str]
    changeset: ChangeSet
    full_scope: bool = True


@dataclass
class HostReport:
    """Outcome of one pass (or dry run) against one host."""

    host: str
    dry_run: bool = False
    planned: list[Change] = field(default_factory=list)
    applied: list[Change] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)
    error: HostguardError | None = None
    failed_step: str = ""

    @property
    def ok(self) -> bool:
        return self.error is None and not any(f.is_failure for f in self.findings)

    @property
    def changes(self) -> list[Change]:
        """Changes that were applied, or would be for a dry run."""
        return self.planned if self.dry_run else self.applied

    def summary(self) -> str:
        if self.error:
            return f"{self.host}: FAILED at {self.failed_step}: {self.error}"
        verb = "would apply" if self.dry_run else "applied"
        drift = sum(1 for f in self.findings if f.is_failure)
        text = f"{self.host}: {verb} {len(self.changes)} change(s)"
        if drift:
            text += f", {drift} drift finding(s)"
        return text


class Reconciler:
    def __init__(self, inventory: Inventory, store: StateStore, audit: AuditLogger | None = None):
        self.inventory = inventory
        self.platform = inventory.platform
        self.store = store
        self.audit = audit
        self.identity = IdentityAllocator(self.platform)
        self.filesystem = FilesystemEnforcer(self.platform)
        self.secrets = SecretManager(self.platform)

    # ------------------------------------------------------------------
    # Planning
    # ------------------------------------------------------------------

    def plan(
        self,
        host_name: str,
        backend: HostBackend,
        roles: list[str] | None = None,
        release: set[str] | frozenset[str] = frozenset(),
    ) -> PassPlan:
        """Load and validate; return the full change-set without mutating anything."""
        host = self.inventory.host(host_name)
        snapshot = self.store.load(host.name)
        all_roles = self.inventory.roles_for(host)
        scoped = self._scope(host, all_roles, roles)

        # The range must fit every role on the host, not just the scoped ones
        mapping = effective_range(host, all_roles, self.platform)
        self._check_stable_identity(snapshot, mapping)
        self.filesystem.validate_roles(host.name, scoped)

        changeset = ChangeSet(host=host.name)
        changeset.extend(self.identity.plan(backend, mapping))

        directories = build_directory_policy(self.platform, scoped, mapping)
        changeset.extend(*self.filesystem.plan(backend, directories))

        targets = self.secrets.targets(scoped, mapping)
        secret_changes, secret_findings, records = self.secrets.plan(backend, targets, snapshot.secrets)
        changeset.extend(secret_changes, secret_findings)

        held = (host.held_roles | set(snapshot.holds)) - set(release)
        services = {role.name: render_service(host, role, self.platform) for role in scoped}
        changeset.extend(*self._plan_services(backend, snapshot, services, held))

        return PassPlan(
            host=host,
            backend=backend,
            snapshot=snapshot,
            mapping=mapping,
            roles=scoped,
            directories=directories,
            secret_targets=targets,
            secret_records=records,
            services=services,
            held=held,
            changeset=changeset,
            full_scope=roles is None,
        )

    def _scope(self, host: Host, all_roles: list[Role], names: list[str] | None) -> list[Role]:
        if names is None:
            return all_roles
        unknown = [n for n in names if n not in host.role_names]
        if unknown:
            raise HostguardError(
                f"Role(s) not assigned to this host: {', '.join(unknown)}",
                host=host.name,
            )
        return [r for r in all_roles if r.name in names]

    def _check_stable_identity(self, snapshot: HostSnapshot, mapping: IdentityMapping) -> None:
        previous = snapshot.identity
        if previous is None:
            return
        if (previous.account, previous.range_start, previous.range_size) != (
            mapping.account,
            mapping.range_start,
            mapping.range_size,
        ):
            raise RangeConflict(
                f"Host was converged with {previous.record()}; switching to {mapping.record()} "
                f"would orphan existing file ownership",
                host=snapshot.host,
                declaration="subordinate_range",
            )

    def _plan_services(
        self,
        backend: HostBackend,
        snapshot: HostSnapshot,
        services: dict[str, ServiceSpec],
        held: set[str],
    ) -> tuple[list[Change], list[Finding]]:
        changes = []
        findings = []
        for name, spec in services.items():
            if name in held:
                findings.append(Finding(FindingKind.HELD, "Service activation is on hold", target=name, role=name))
                continue

            status = backend.engine.service_status(name)
            recorded = snapshot.roles.get(name)
            recorded_hash = recorded.service_hash if recorded else ""
            params = {"hash": spec.config_hash}

            if status == ServiceStatus.ABSENT:
                changes.append(Change(Step.SERVICES, "start_service", name, role=name, detail=spec.image, params=params))
            elif recorded_hash != spec.config_hash:
                changes.append(
                    Change(Step.SERVICES, "update_service", name, role=name, detail="configuration changed", params=params)
                )
            elif status == ServiceStatus.STOPPED:
                changes.append(Change(Step.SERVICES, "start_service", name, role=name, detail="not running", params=params))
            elif backend.read_file(definition_path(self.platform, name)) != spec.to_yaml().encode("utf-8"):
                changes.append(Change(Step.SERVICES, "write_definition", definition_path(self.platform, name), role=name))
        return changes, findings

    # ------------------------------------------------------------------
    # Passes
    # ------------------------------------------------------------------

    def reconcile(
        self,
        host_name: str,
        backend: HostBackend,
        roles: list[str] | None = None,
        dry_run: bool = False,
        release: set[str] | frozenset[str] = frozenset(),
    ) -> HostReport:
        """Run one pass. Never raises for host-level failures; they land in the report."""
        report = HostReport(host=host_name, dry_run=dry_run)

        try:
            plan = self.plan(host_name, backend, roles=roles, release=release)
        except HostguardError as e:
            if not e.host:
                e.host = host_name
            logger.error("[%s] Validation failed: %s", host_name, e)
            report.error = e
            report.failed_step = VALIDATE_STEP
            self._record_failed_validation(report, dry_run)
            return report
        except Exception as e:
            report.error = ApplyError(VALIDATE_STEP, e, host=host_name)
            report.failed_step = VALIDATE_STEP
            logger.error("[%s] Could not inspect host: %s", host_name, report.error)
            self._record_failed_validation(report, dry_run)
            return report

        report.planned = list(plan.changeset.changes)
        report.findings = list(plan.changeset.findings)
        for finding in report.findings:
            if finding.is_failure:
                logger.warning("[%s] %s", host_name, finding.describe())

        if dry_run:
            self.store.record(
                HistoryRecord(
                    host=host_name,
                    kind=EventKind.VALIDATE,
                    status=PassStatus.SUCCESS if report.ok else PassStatus.FAILED,
                    revision=self.inventory.revision,
                    changes=len(report.planned),
                )
            )
            return report

        completed: list[Step] = []
        written: dict[str, SecretFingerprint] = {}
        for step in STEP_ORDER:
            try:
                applied = self._apply_step(step, plan, written)
            except Exception as e:
                report.error = ApplyError(step.value, e, host=host_name)
                report.failed_step = step.value
                logger.error("[%s] %s", host_name, report.error)
                break
            report.applied.extend(applied)
            completed.append(step)
            for change in applied:
                self._audit(host_name, change)

        self._record(plan, report, completed, written, release)
        logger.info("[%s] %s", host_name, report.summary())
        return report

    def _apply_step(self, step: Step, plan: PassPlan, written: dict[str, SecretFingerprint]) -> list[Change]:
        changes = plan.changeset.for_step(step)
        backend = plan.backend
        if step == Step.IDENTITY:
            return self.identity.apply(backend, plan.mapping, changes)
        if step == Step.FILESYSTEM:
            return self.filesystem.apply(backend, changes)
        if step == Step.SECRETS:
            directories = {d.path: d for d in plan.directories}
            applied, fingerprints = self.secrets.apply(backend, changes, plan.secret_targets, directories)
            written.update(fingerprints)
            return applied
        return self._apply_services(plan, changes)

    def _apply_services(self, plan: PassPlan, changes: list[Change]) -> list[Change]:
        backend = plan.backend
        applied = []
        for change in changes:
            spec = plan.services[change.role]
            path = definition_path(self.platform, change.role)
            backend.write_file_atomic(path, spec.to_yaml().encode("utf-8"), 0, 0, DEFINITION_MODE)
            if change.action in ("start_service", "update_service"):
                backend.engine.apply_service(spec)
            logger.info("[%s] %s", backend.name, change.describe())
            applied.append(change)
        return applied

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    def _record(
        self,
        plan: PassPlan,
        report: HostReport,
        completed: list[Step],
        written: dict[str, SecretFingerprint],
        release: set[str] | frozenset[str],
    ) -> None:
        snapshot = plan.snapshot
        snapshot.revision = self.inventory.revision

        if Step.IDENTITY in completed:
            snapshot.identity = plan.mapping
        if Step.FILESYSTEM in completed:
            for entry in plan.directories:
                snapshot.directories[entry.path] = (entry.uid, entry.gid, entry.mode)

        # Written secrets are recorded even when a later change in the step failed
        snapshot.secrets.update(plan.secret_records)
        snapshot.secrets.update(written)

        static_done = {Step.IDENTITY, Step.FILESYSTEM, Step.SECRETS} <= set(completed)
        services_done = Step.SERVICES in completed
        for role in plan.roles:
            state = snapshot.role(role.name)
            if static_done:
                state.static_applied = True
            if services_done and role.name not in plan.held:
                state.service_hash = plan.services[role.name].config_hash

        if plan.full_scope:
            assigned = set(plan.host.role_names)
            for name in list(snapshot.roles):
                if name not in assigned:
                    del snapshot.roles[name]
            for key in list(snapshot.secrets):
                if key.split("/", 1)[0] not in assigned:
                    del snapshot.secrets[key]

        for role in release:
            snapshot.release(role)

        snapshot.last_pass.finished_at = utc_now()
        if report.ok:
            snapshot.last_pass.status = PassStatus.SUCCESS
            snapshot.last_pass.failed_step = ""
            snapshot.last_pass.error = ""
        else:
            snapshot.last_pass.status = PassStatus.FAILED
            snapshot.last_pass.failed_step = report.failed_step or Step.SECRETS.value
            snapshot.last_pass.error = str(report.error) if report.error else "secret drift detected"
        self.store.save(snapshot)

        self.store.record(
            HistoryRecord(
                host=plan.host.name,
                kind=EventKind.RECONCILE,
                status=snapshot.last_pass.status,
                revision=self.inventory.revision,
                changes=len(report.applied),
                failed_step=report.failed_step,
                error=str(report.error) if report.error else "",
                details={"drift": [f.to_dict() for f in report.findings if f.is_failure]},
            )
        )

    def _record_failed_validation(self, report: HostReport, dry_run: bool) -> None:
        if not dry_run:
            snapshot = self.store.load(report.host)
            snapshot.last_pass.status = PassStatus.FAILED
            snapshot.last_pass.finished_at = utc_now()
            snapshot.last_pass.failed_step = VALIDATE_STEP
            snapshot.last_pass.error = str(report.error)
            self.store.save(snapshot)
        self.store.record(
            HistoryRecord(
                host=report.host,
                kind=EventKind.VALIDATE if dry_run else EventKind.RECONCILE,
                status=PassStatus.FAILED,
                revision=self.inventory.revision,
                failed_step=VALIDATE_STEP,
                error=str(report.error),
                details=report.error.to_dict(),
            )
        )

    def _audit(self, host: str, change: Change) -> None:
        if self.audit is not None:
            self.audit.log_event(change.action, host, change.target, details=change.to_dict())

    # ------------------------------------------------------------------
    # Operator actions
    # ------------------------------------------------------------------

    def _secret_context(
        self, host_name: str, backend: HostBackend, role_name: str, secret_name: str
    ) -> tuple[HostSnapshot, SecretTarget, list[SecretTarget], dict[str, DirectoryPolicyEntry]]:
        host = self.inventory.host(host_name)
        if role_name not in host.role_names:
            raise HostguardError("Role is not assigned to this host", host=host_name, role=role_name)
        role = self.inventory.roles[role_name]
        mapping = effective_range(host, self.inventory.roles_for(host), self.platform)
        targets = self.secrets.targets([role], mapping)
        matches = [t for t in targets if t.declaration.name == secret_name]
        if not matches:
            raise HostguardError(
                "Secret is not declared by this role",
                host=host_name,
                role=role_name,
                declaration=f"secret:{secret_name}",
            )
        directories = {d.path: d for d in build_directory_policy(self.platform, [role], mapping)}
        return self.store.load(host_name), matches[0], targets, directories

    def rotate_secret(self, host_name: str, backend: HostBackend, role_name: str, secret_name: str) -> None:
        """Regenerate a secret and mark the role's service for a restart on the next pass."""
        snapshot, target, targets, directories = self._secret_context(host_name, backend, role_name, secret_name)
        fingerprint = self.secrets.rotate(backend, target, targets, directories)
        snapshot.secrets[target.key] = fingerprint
        snapshot.role(role_name).service_hash = ""
        self.store.save(snapshot)
        self.store.record(
            HistoryRecord(
                host=host_name,
                kind=EventKind.ROTATE,
                status=PassStatus.SUCCESS,
                role=role_name,
                details={"secret": secret_name},
            )
        )
        if self.audit is not None:
            self.audit.log_event("rotate_secret", host_name, target.path, details={"role": role_name})

    def accept_secret(self, host_name: str, backend: HostBackend, role_name: str, secret_name: str) -> None:
        """Record a secret changed outside hostguard as the new authoritative content."""
        snapshot, target, _, _ = self._secret_context(host_name, backend, role_name, secret_name)
        fingerprint = self.secrets.fingerprint(backend, target.path)
        if fingerprint is None:
            raise HostguardError(
                "Cannot accept a secret that does not exist; rotate it instead",
                host=host_name,
                role=role_name,
                declaration=target.label,
            )
        snapshot.secrets[target.key] = fingerprint
        self.store.save(snapshot)
        self.store.record(
            HistoryRecord(
                host=host_name,
                kind=EventKind.ACCEPT,
                status=PassStatus.SUCCESS,
                role=role_name,
                details={"secret": secret_name},
            )
        )
        if self.audit is not None:
            self.audit.log_event("accept_secret", host_name, target.path, details={"role": role_name})

    def release_hold(self, host_name: str, role_name: str) -> bool:
        """Drop a hold recorded by a migration so the next pass may start the service."""
        snapshot = self.store.load(host_name)
        released = snapshot.release(role_name)
        if released:
            self.store.save(snapshot)
            self.store.record(
                HistoryRecord(host=host_name, kind=EventKind.RELEASE, status=PassStatus.SUCCESS, role=role_name)
            )
        return released
