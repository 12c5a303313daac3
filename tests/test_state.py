"""Tests for snapshots, history, the audit journal and drift detection."""

import copy
import json
import tempfile
from pathlib import Path

from hostguard.config import STATE_DIR_ENV, state_dir
from hostguard.hosts.memory import MemoryHost
from hostguard.identity.mapping import IdentityMapping
from hostguard.inventory.loader import parse_inventory
from hostguard.reconcile.reconciler import Reconciler
from hostguard.secrets.manager import SecretFingerprint
from hostguard.state.audit import AuditLogger
from hostguard.state.drift import DriftDetector, DriftType
from hostguard.state.snapshot import HostSnapshot, PassStatus, RoleState
from hostguard.state.store import EventKind, HistoryRecord, StateStore

INVENTORY = {
    "roles": {
        "web": {"image": "nginx:1.25", "secrets": ["session_key"]},
    },
    "hosts": {"node1": {"roles": ["web"]}},
}


# --- Store ---


def test_snapshot_round_trip():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        snapshot = HostSnapshot(
            host="node1",
            revision="abc123",
            identity=IdentityMapping("node1", "dockremap", 100000, 65536),
            directories={"/opt/hostguard": (0, 0, 0o755)},
            secrets={"web/session_key": SecretFingerprint("f" * 64, 101000, 101000, 0o400)},
            roles={"web": RoleState(static_applied=True, service_hash="h1")},
            holds=["db"],
        )
        snapshot.last_pass.status = PassStatus.SUCCESS
        store.save(snapshot)

        loaded = store.load("node1")
        assert loaded.identity == snapshot.identity
        assert loaded.directories == {"/opt/hostguard": (0, 0, 0o755)}
        assert loaded.secrets == snapshot.secrets
        assert loaded.roles["web"] == RoleState(True, "h1")
        assert loaded.holds == ["db"]
        assert loaded.converged
        assert loaded.updated_at
        assert store.known_hosts() == ["node1"]


def test_unknown_host_has_empty_snapshot():
    with tempfile.TemporaryDirectory() as tmpdir:
        snapshot = StateStore(tmpdir).load("ghost")
        assert snapshot.identity is None
        assert snapshot.last_pass.status == PassStatus.NEVER
        assert not snapshot.converged


def test_holds():
    snapshot = HostSnapshot(host="node1")
    snapshot.hold("db")
    snapshot.hold("db")
    assert snapshot.holds == ["db"]
    assert snapshot.release("db")
    assert not snapshot.release("db")


def test_history_filters():
    with tempfile.TemporaryDirectory() as tmpdir:
        store = StateStore(tmpdir)
        store.record(HistoryRecord(host="a", kind=EventKind.RECONCILE, status=PassStatus.SUCCESS, changes=4))
        store.record(HistoryRecord(host="b", kind=EventKind.RECONCILE, status=PassStatus.FAILED))
        store.record(HistoryRecord(host="a", kind=EventKind.MIGRATION, status=PassStatus.SUCCESS, role="db"))

        assert len(store.get_history()) == 3
        assert [r.kind for r in store.get_history("a")] == [EventKind.RECONCILE, EventKind.MIGRATION]
        assert store.get_latest("a", EventKind.RECONCILE).changes == 4
        assert store.get_latest("c") is None
        assert all(r.recorded_at for r in store.get_history())


def test_state_dir_from_environment(monkeypatch):
    monkeypatch.setenv(STATE_DIR_ENV, "/srv/hostguard-state")
    assert state_dir() == Path("/srv/hostguard-state")
    assert state_dir("/tmp/explicit") == Path("/tmp/explicit")


# --- Audit ---


def test_audit_log_and_filter():
    with tempfile.TemporaryDirectory() as tmpdir:
        audit = AuditLogger(Path(tmpdir))
        audit.log_event("mkdir", "node1", "/opt/hostguard", details={"mode": "0o755"})
        audit.log_event("create_secret", "node2", "/opt/hostguard/secrets/web/key")
        audit.log_event("start_service", "node1", "web", success=False)

        events = audit.get_events(host="node1")
        assert {e.action for e in events} == {"mkdir", "start_service"}
        assert events[0].timestamp >= events[1].timestamp
        assert [e.resource for e in audit.get_events(action="create_secret")] == ["/opt/hostguard/secrets/web/key"]
        assert len(audit.get_events(limit=1)) == 1


def test_audit_export():
    with tempfile.TemporaryDirectory() as tmpdir:
        audit = AuditLogger(Path(tmpdir))
        audit.log_event("mkdir", "node1", "/opt/hostguard")

        as_json = json.loads(audit.export_events("json"))
        assert as_json[0]["actor"] == "hostguard"
        as_csv = audit.export_events("csv").splitlines()
        assert as_csv[0] == "id,timestamp,actor,action,host,resource,success"
        assert as_csv[1].endswith(",mkdir,node1,/opt/hostguard,True")


# --- Drift ---


def _converged(tmpdir: str):
    inventory = parse_inventory(copy.deepcopy(INVENTORY))
    store = StateStore(tmpdir)
    host = MemoryHost("node1")
    assert Reconciler(inventory, store).reconcile("node1", host).ok
    return DriftDetector(inventory.platform, store), host


def test_no_drift_after_pass():
    with tempfile.TemporaryDirectory() as tmpdir:
        detector, host = _converged(tmpdir)
        report = detector.check("node1", host)
        assert not report.has_drift
        assert report.summary() == "node1: no drift detected"


def test_never_reconciled_host():
    with tempfile.TemporaryDirectory() as tmpdir:
        inventory = parse_inventory(copy.deepcopy(INVENTORY))
        report = DriftDetector(inventory.platform, StateStore(tmpdir)).check("node1", MemoryHost("node1"))
        assert not report.has_drift
        assert report.details


def test_drift_detected_read_only():
    with tempfile.TemporaryDirectory() as tmpdir:
        detector, host = _converged(tmpdir)
        host.chmod("/opt/hostguard/logs/web", 0o777)
        host.put_file("/opt/hostguard/secrets/web/session_key", b"edited", 101000, 101000, 0o400)
        host.put_file("/etc/subuid", b"")
        host.engine.stop_service("web")
        mutations = list(host.mutations)

        report = detector.check("node1", host)
        assert set(report.drift_types) == {
            DriftType.DIRECTORY,
            DriftType.SECRET,
            DriftType.IDENTITY,
            DriftType.SERVICE,
        }
        assert "DRIFT" in report.summary()
        assert host.mutations == mutations
        assert not any("edited" in d for d in report.details)
