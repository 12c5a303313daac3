"""Tests for the reconciliation control loop and the fleet runner."""

import copy
import json
import tempfile
from pathlib import Path

from hostguard.engine.base import ServiceStatus
from hostguard.errors import ApplyError, HostguardError, PolicyViolation, RangeConflict
from hostguard.hosts.memory import MemoryHost
from hostguard.inventory.loader import parse_inventory
from hostguard.reconcile.changes import FindingKind, Step
from hostguard.reconcile.fleet import reconcile_fleet
from hostguard.reconcile.reconciler import Reconciler
from hostguard.state.audit import AuditLogger
from hostguard.state.snapshot import PassStatus
from hostguard.state.store import EventKind, StateStore

INVENTORY = {
    "roles": {
        "web": {
            "image": "nginx:1.25",
            "volumes": [{"name": "web_cache", "target": "/var/cache/nginx"}],
            "secrets": ["session_key"],
            "networks": ["frontend"],
        },
        "api": {
            "image": "registry.local/api:2",
            "environment": {"DB_HOST": "$db_host"},
            "secrets": [{"name": "db_password", "type": "password"}],
        },
    },
    "hosts": {
        "node1": {"roles": ["web", "api"], "vars": {"db_host": "10.0.0.5"}},
    },
}

DB_PASSWORD = "/opt/hostguard/secrets/api/db_password"


def _reconciler(tmpdir: str, data: dict | None = None, audit: bool = False) -> Reconciler:
    inventory = parse_inventory(copy.deepcopy(data or INVENTORY))
    logger = AuditLogger(Path(tmpdir) / "audit") if audit else None
    return Reconciler(inventory, StateStore(Path(tmpdir) / "state"), logger)


def _with(**roles) -> dict:
    data = copy.deepcopy(INVENTORY)
    for name, changes in roles.items():
        data["roles"][name].update(changes)
    return data


# --- Convergence ---


def test_first_pass_converges_host():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host)

        assert report.ok, report.summary()
        steps = [c.step for c in report.applied]
        assert steps == sorted(steps, key=[Step.IDENTITY, Step.FILESYSTEM, Step.SECRETS, Step.SERVICES].index)
        assert host.engine.service_status("web") == ServiceStatus.RUNNING
        assert host.engine.service_status("api") == ServiceStatus.RUNNING
        assert host.engine.volume_mountpoint("web_cache") is not None

        api = host.engine.services["api"].spec
        assert api.user == "1000:1000"
        assert api.environment == {"DB_HOST": "10.0.0.5"}
        assert [s.target for s in api.secrets] == ["/run/secrets/db_password"]
        assert host.read_file("/opt/hostguard/services/api/service.yaml") == api.to_yaml().encode()

        snapshot = reconciler.store.load("node1")
        assert snapshot.converged
        assert snapshot.identity.record() == "dockremap:100000:65536"
        assert snapshot.roles["api"].service_hash == api.config_hash


def test_second_pass_makes_no_changes():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        reconciler.reconcile("node1", host)
        mutations = list(host.mutations)

        report = reconciler.reconcile("node1", host)
        assert report.ok
        assert report.planned == []
        assert report.applied == []
        assert host.mutations == mutations


def test_dry_run_touches_nothing():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host, dry_run=True)

        assert report.ok
        assert report.planned
        assert report.changes == report.planned
        assert report.applied == []
        assert host.mutations == []
        assert reconciler.store.known_hosts() == []
        assert reconciler.store.get_latest("node1").kind == EventKind.VALIDATE


def test_scenario_shared_container_identity():
    """Two roles with the platform identity share one remap account and host uid."""
    with tempfile.TemporaryDirectory() as tmpdir:
        host = MemoryHost("node1")
        assert _reconciler(tmpdir).reconcile("node1", host).ok

        web = host.stat("/opt/hostguard/logs/web")
        api = host.stat("/opt/hostguard/logs/api")
        assert (web.uid, web.gid) == (api.uid, api.gid) == (101000, 101000)
        assert [name for name in host.accounts if name != "root"] == ["dockremap"]
        assert host.read_file("/etc/subuid") == b"dockremap:100000:65536\n"


def test_scenario_bind_for_persistent_data_rejected():
    """A role mixing a named volume with a bind for the same data never reaches the host."""
    data = copy.deepcopy(INVENTORY)
    data["roles"]["cache"] = {
        "image": "redis:7",
        "volumes": [
            {"name": "cache_data", "target": "/data"},
            {"source": "/var/appdata/cache", "target": "/var/appdata"},
        ],
    }
    data["hosts"]["node1"]["roles"].append("cache")

    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, data)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host)

        assert not report.ok
        assert isinstance(report.error, PolicyViolation)
        assert report.failed_step == "validate"
        assert (report.error.host, report.error.role) == ("node1", "cache")
        assert "/var/appdata/cache" in report.error.declaration
        assert report.applied == []
        assert host.mutations == []
        assert host.stat("/opt/hostguard") is None

        snapshot = reconciler.store.load("node1")
        assert snapshot.last_pass.status == PassStatus.FAILED
        assert snapshot.last_pass.failed_step == "validate"


def test_scenario_secret_generated_once():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        reconciler.reconcile("node1", host)

        content = host.read_file(DB_PASSWORD)
        st = host.stat(DB_PASSWORD)
        assert len(content) == 32
        assert (st.uid, st.gid, st.mode) == (101000, 101000, 0o400)

        reconciler.reconcile("node1", host)
        assert host.read_file(DB_PASSWORD) == content


# --- Services ---


def test_changed_configuration_updates_only_that_service():
    with tempfile.TemporaryDirectory() as tmpdir:
        host = MemoryHost("node1")
        _reconciler(tmpdir).reconcile("node1", host)

        report = _reconciler(tmpdir, _with(web={"image": "nginx:1.27"})).reconcile("node1", host)
        assert report.ok
        assert [(c.action, c.target) for c in report.applied] == [("update_service", "web")]
        assert host.engine.services["web"].spec.image == "nginx:1.27"


def test_stopped_service_restarted():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        reconciler.reconcile("node1", host)
        host.engine.stop_service("api")

        report = reconciler.reconcile("node1", host)
        assert [(c.action, c.target) for c in report.applied] == [("start_service", "api")]


def test_held_role_configured_but_not_started():
    data = copy.deepcopy(INVENTORY)
    data["hosts"]["node1"]["roles"] = ["web", {"name": "api", "hold": True}]

    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, data)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host)

        assert report.ok
        assert [f.role for f in report.findings if f.kind == FindingKind.HELD] == ["api"]
        assert host.engine.service_status("api") == ServiceStatus.ABSENT
        assert host.read_file(DB_PASSWORD) is not None
        snapshot = reconciler.store.load("node1")
        assert snapshot.roles["api"].static_applied
        assert snapshot.roles["api"].service_hash == ""

        report = reconciler.reconcile("node1", host, release={"api"})
        assert host.engine.service_status("api") == ServiceStatus.RUNNING


def test_scoped_pass_touches_only_named_roles():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host, roles=["web"])

        assert report.ok
        assert {c.role for c in report.applied if c.role} == {"web"}
        assert host.stat("/opt/hostguard/logs/api") is None
        assert host.engine.service_status("api") == ServiceStatus.ABSENT


def test_scope_with_unassigned_role():
    with tempfile.TemporaryDirectory() as tmpdir:
        report = _reconciler(tmpdir).reconcile("node1", MemoryHost("node1"), roles=["db"])
        assert report.failed_step == "validate"
        assert isinstance(report.error, HostguardError)


# --- Failures ---


def test_apply_failure_stops_pass_and_is_recorded():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")

        def engine_down(spec):
            raise RuntimeError("daemon not responding")

        host.engine.apply_service = engine_down
        report = reconciler.reconcile("node1", host)

        assert not report.ok
        assert isinstance(report.error, ApplyError)
        assert report.error.step == "services"
        assert report.failed_step == "services"
        assert "daemon not responding" in str(report.error)
        assert host.read_file(DB_PASSWORD) is not None  # Earlier steps stay applied

        snapshot = reconciler.store.load("node1")
        assert snapshot.last_pass.status == PassStatus.FAILED
        assert snapshot.last_pass.failed_step == "services"
        assert snapshot.roles["web"].static_applied
        assert snapshot.roles["web"].service_hash == ""

        del host.engine.apply_service
        report = reconciler.reconcile("node1", host)
        assert report.ok
        assert {c.target for c in report.applied} == {"web", "api"}


def test_range_change_after_convergence_rejected():
    with tempfile.TemporaryDirectory() as tmpdir:
        host = MemoryHost("node1")
        _reconciler(tmpdir).reconcile("node1", host)

        moved = _with(
            web={"subordinate_range": {"start": 300000, "size": 65536}},
            api={"subordinate_range": {"start": 300000, "size": 65536}},
        )
        report = _reconciler(tmpdir, moved).reconcile("node1", host)
        assert isinstance(report.error, RangeConflict)
        assert report.failed_step == "validate"


# --- Secret drift ---


def _drifted(tmpdir: str):
    reconciler = _reconciler(tmpdir)
    host = MemoryHost("node1")
    reconciler.reconcile("node1", host)
    host.put_file(DB_PASSWORD, b"changed-by-hand", 101000, 101000, 0o400)
    return reconciler, host


def test_secret_drift_fails_pass_without_repair():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler, host = _drifted(tmpdir)
        report = reconciler.reconcile("node1", host)

        assert not report.ok
        assert [f.target for f in report.findings if f.is_failure] == [DB_PASSWORD]
        assert host.read_file(DB_PASSWORD) == b"changed-by-hand"

        snapshot = reconciler.store.load("node1")
        assert snapshot.last_pass.status == PassStatus.FAILED
        assert snapshot.last_pass.failed_step == "secrets"
        latest = reconciler.store.get_latest("node1", EventKind.RECONCILE)
        assert latest.status == PassStatus.FAILED
        assert "changed-by-hand" not in json.dumps(latest.details)

        # Reported again until resolved
        assert not reconciler.reconcile("node1", host).ok


def test_accept_resolves_drift():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler, host = _drifted(tmpdir)
        reconciler.accept_secret("node1", host, "api", "db_password")

        report = reconciler.reconcile("node1", host)
        assert report.ok
        assert host.read_file(DB_PASSWORD) == b"changed-by-hand"
        assert reconciler.store.get_latest("node1", EventKind.ACCEPT) is not None


def test_rotate_resolves_drift_and_restarts_service():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler, host = _drifted(tmpdir)
        reconciler.rotate_secret("node1", host, "api", "db_password")
        assert host.read_file(DB_PASSWORD) != b"changed-by-hand"

        report = reconciler.reconcile("node1", host)
        assert report.ok
        assert [(c.action, c.target) for c in report.applied] == [("update_service", "api")]


def test_rotate_unknown_secret():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        reconciler.reconcile("node1", host)
        try:
            reconciler.rotate_secret("node1", host, "api", "nope")
        except HostguardError as e:
            assert e.declaration == "secret:nope"
        else:
            raise AssertionError("expected HostguardError")


# --- Audit and history ---


def test_applied_changes_audited_without_secret_content():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, audit=True)
        host = MemoryHost("node1")
        report = reconciler.reconcile("node1", host)

        events = reconciler.audit.get_events(host="node1", limit=1000)
        assert len(events) == len(report.applied)
        assert {e.action for e in events} >= {"create_account", "mkdir", "create_secret", "start_service"}
        exported = reconciler.audit.export_events("json", limit=1000)
        assert host.read_file(DB_PASSWORD).decode() not in exported


def test_history_records_every_pass():
    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir)
        host = MemoryHost("node1")
        reconciler.reconcile("node1", host)
        reconciler.reconcile("node1", host)

        history = reconciler.store.get_history("node1", EventKind.RECONCILE)
        assert [h.status for h in history] == [PassStatus.SUCCESS, PassStatus.SUCCESS]
        assert history[0].changes > 0
        assert history[1].changes == 0


# --- Fleet ---


def test_fleet_isolates_host_failures():
    data = copy.deepcopy(INVENTORY)
    data["hosts"]["node2"] = {"roles": ["web"]}
    data["hosts"]["node3"] = {"roles": ["web"]}

    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, data)
        backends = {"node1": MemoryHost("node1"), "node3": MemoryHost("node3")}

        def factory(host):
            if host.name not in backends:
                raise HostguardError("unreachable", host=host.name)
            return backends[host.name]

        hosts = reconciler.inventory.select_hosts()
        reports = reconcile_fleet(reconciler, hosts, factory, workers=3)

        assert [r.host for r in reports] == ["node1", "node2", "node3"]
        assert reports[0].ok and reports[2].ok
        assert not reports[1].ok
        assert reports[1].failed_step == "connect"
        assert backends["node3"].engine.service_status("web") == ServiceStatus.RUNNING


def test_fleet_role_filter_skips_hosts_without_role():
    data = copy.deepcopy(INVENTORY)
    data["hosts"]["node2"] = {"roles": ["web"]}

    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, data)
        backends = {"node1": MemoryHost("node1"), "node2": MemoryHost("node2")}
        reports = reconcile_fleet(
            reconciler,
            reconciler.inventory.select_hosts(),
            lambda h: backends[h.name],
            roles=["api"],
        )
        assert all(r.ok for r in reports)
        assert backends["node1"].engine.service_status("api") == ServiceStatus.RUNNING
        assert backends["node2"].engine.services == {}


def test_fleet_survives_unexpected_error_on_one_host():
    data = copy.deepcopy(INVENTORY)
    data["hosts"]["node2"] = {"roles": ["web"]}
    data["hosts"]["node3"] = {"roles": ["web"]}

    with tempfile.TemporaryDirectory() as tmpdir:
        reconciler = _reconciler(tmpdir, data)
        backends = {name: MemoryHost(name) for name in ("node1", "node2", "node3")}
        backends["node1"].put_file("/etc/subuid", b"\xff\xfe:1:2\n")

        def engine_unreachable(name):
            raise ConnectionError("engine socket refused")

        backends["node2"].engine.service_status = engine_unreachable

        reports = reconcile_fleet(reconciler, reconciler.inventory.select_hosts(), lambda h: backends[h.name])

        assert [r.host for r in reports] == ["node1", "node2", "node3"]
        assert isinstance(reports[0].error, HostguardError)
        assert "/etc/subuid" in str(reports[0].error)
        assert isinstance(reports[1].error, ApplyError)
        assert "engine socket refused" in str(reports[1].error)
        assert {r.failed_step for r in reports[:2]} == {"validate"}
        assert reports[2].ok
        assert backends["node3"].engine.service_status("web") == ServiceStatus.RUNNING
        # Nothing was applied to the hosts that could not be inspected
        assert backends["node2"].get_account("dockremap") is None
        assert reconciler.store.load("node2").last_pass.failed_step == "validate"
