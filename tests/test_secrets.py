"""Tests for secret generation and the secret lifecycle manager."""

import pytest

from hostguard.config import PlatformConfig
from hostguard.errors import SecretWriteError
from hostguard.filesystem.enforcer import FilesystemEnforcer
from hostguard.filesystem.policy import build_directory_policy
from hostguard.hosts.memory import MemoryHost
from hostguard.identity.mapping import IdentityMapping
from hostguard.inventory.models import Role, SecretDeclaration, SecretOwner, SecretType
from hostguard.reconcile.changes import FindingKind
from hostguard.secrets.generate import ALPHANUMERIC, derive, generate, satisfies_password_policy
from hostguard.secrets.manager import SecretManager, content_digest

PLATFORM = PlatformConfig()
MAPPING = IdentityMapping(host="node1", account="dockremap", range_start=100000, range_size=65536)

DB = Role(
    name="db",
    image="postgres:16",
    uid=1000,
    gid=1000,
    secrets=(
        SecretDeclaration(name="replication_key", type=SecretType.DERIVED, derive_from="db_password", label="repl"),
        SecretDeclaration(name="db_password", type=SecretType.PASSWORD, length=40),
        SecretDeclaration(name="tls_key", owner=SecretOwner.ROOT),
    ),
)


def _prepared_host():
    """A host with the directory tree for DB in place."""
    host = MemoryHost("node1")
    enforcer = FilesystemEnforcer(PLATFORM)
    entries = build_directory_policy(PLATFORM, [DB], MAPPING)
    enforcer.apply(host, enforcer.plan(host, entries)[0])
    return host, {e.path: e for e in entries}


def _converge(manager, host, directories, recorded=None):
    targets = manager.targets([DB], MAPPING)
    changes, findings, observed = manager.plan(host, targets, recorded or {})
    applied, written = manager.apply(host, changes, targets, directories)
    return {**observed, **written}, applied, findings


# --- Generation ---


def test_opaque_secret():
    value = generate(SecretType.OPAQUE, 32).decode()
    assert len(value) == 32
    assert all(c in ALPHANUMERIC for c in value)


def test_password_secret_meets_policy():
    for _ in range(20):
        value = generate(SecretType.PASSWORD, 16).decode()
        assert len(value) == 16
        assert satisfies_password_policy(value)


def test_derived_secret_is_deterministic():
    first = generate(SecretType.DERIVED, 80, base=b"base", label="repl")
    second = generate(SecretType.DERIVED, 80, base=b"base", label="repl")
    other = generate(SecretType.DERIVED, 80, base=b"base", label="other")
    assert first == second != other
    assert len(first) == 80


def test_derived_secret_needs_base():
    with pytest.raises(ValueError):
        generate(SecretType.DERIVED, 32)


# --- Manager ---


def test_targets_order_and_ownership():
    targets = SecretManager(PLATFORM).targets([DB], MAPPING)
    assert [t.declaration.name for t in targets] == ["db_password", "tls_key", "replication_key"]
    by_name = {t.declaration.name: t for t in targets}
    assert (by_name["db_password"].uid, by_name["db_password"].gid) == (101000, 101000)
    assert (by_name["tls_key"].uid, by_name["tls_key"].gid) == (0, 0)
    assert by_name["tls_key"].length == PLATFORM.secret_min_length
    assert by_name["db_password"].path == "/opt/hostguard/secrets/db/db_password"


def test_missing_secrets_created():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, applied, findings = _converge(manager, host, directories)

    assert len(applied) == 3
    assert findings == []
    password = host.read_file("/opt/hostguard/secrets/db/db_password")
    assert len(password) == 40
    st = host.stat("/opt/hostguard/secrets/db/db_password")
    assert (st.uid, st.gid, st.mode) == (101000, 101000, 0o400)

    derived = host.read_file("/opt/hostguard/secrets/db/replication_key")
    assert derived.decode() == derive(password, "repl", PLATFORM.secret_min_length)
    assert records["db/db_password"].sha256 == content_digest(password)


def test_existing_secrets_never_rewritten():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, _, _ = _converge(manager, host, directories)
    before = {k: host.read_file(f"/opt/hostguard/secrets/{k}") for k in records}

    mutations = len(host.mutations)
    records_again, applied, findings = _converge(manager, host, directories, records)
    assert applied == []
    assert findings == []
    assert len(host.mutations) == mutations
    assert records_again == records
    assert {k: host.read_file(f"/opt/hostguard/secrets/{k}") for k in records} == before


def test_changed_content_reported_not_repaired():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, _, _ = _converge(manager, host, directories)

    path = "/opt/hostguard/secrets/db/db_password"
    host.put_file(path, b"operator-typed-this", 101000, 101000, 0o400)
    _, findings, observed = manager.plan(host, manager.targets([DB], MAPPING), records)

    drift = [f for f in findings if f.kind == FindingKind.SECRET_DRIFT]
    assert len(drift) == 1 and drift[0].target == path
    assert "operator-typed-this" not in drift[0].message
    assert observed["db/db_password"] == records["db/db_password"]
    assert host.read_file(path) == b"operator-typed-this"


def test_permission_change_reported():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, _, _ = _converge(manager, host, directories)

    host.chmod("/opt/hostguard/secrets/db/tls_key", 0o644)
    _, findings, _ = manager.plan(host, manager.targets([DB], MAPPING), records)
    assert [f.kind for f in findings] == [FindingKind.SECRET_DRIFT]
    assert "mode" in findings[0].message


def test_deleted_recorded_secret_not_regenerated():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, _, _ = _converge(manager, host, directories)

    host._nodes.pop("/opt/hostguard/secrets/db/tls_key")
    changes, findings, _ = manager.plan(host, manager.targets([DB], MAPPING), records)
    assert changes == []
    assert [f.kind for f in findings] == [FindingKind.SECRET_DRIFT]


def test_unrecorded_file_adopted():
    host, directories = _prepared_host()
    host.put_file("/opt/hostguard/secrets/db/db_password", b"x" * 40, 101000, 101000, 0o600)
    manager = SecretManager(PLATFORM)
    changes, findings, observed = manager.plan(host, manager.targets([DB], MAPPING), {})

    assert "/opt/hostguard/secrets/db/db_password" not in [c.target for c in changes]
    assert observed["db/db_password"].mode == 0o600
    assert [f.kind for f in findings] == [FindingKind.WARNING]


def test_directory_with_wrong_mode_refused():
    host, directories = _prepared_host()
    host.chmod("/opt/hostguard/secrets/db", 0o755)
    manager = SecretManager(PLATFORM)
    targets = manager.targets([DB], MAPPING)
    changes, _, _ = manager.plan(host, targets, {})
    with pytest.raises(SecretWriteError) as exc:
        manager.apply(host, changes, targets, directories)
    assert exc.value.role == "db"


def test_missing_directory_refused():
    host = MemoryHost("node1")
    manager = SecretManager(PLATFORM)
    targets = manager.targets([DB], MAPPING)
    changes, _, _ = manager.plan(host, targets, {})
    directories = {e.path: e for e in build_directory_policy(PLATFORM, [DB], MAPPING)}
    with pytest.raises(SecretWriteError):
        manager.apply(host, changes, targets, directories)


def test_rotate_replaces_content():
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    records, _, _ = _converge(manager, host, directories)
    targets = manager.targets([DB], MAPPING)
    target = next(t for t in targets if t.declaration.name == "db_password")

    fingerprint = manager.rotate(host, target, targets, directories)
    assert fingerprint != records["db/db_password"]
    assert fingerprint.sha256 == content_digest(host.read_file(target.path))


def test_derived_chain_written_after_its_bases():
    chained = Role(
        name="db",
        image="postgres:16",
        uid=1000,
        gid=1000,
        secrets=(
            SecretDeclaration(name="audit_key", type=SecretType.DERIVED, derive_from="replication_key", label="audit"),
            SecretDeclaration(name="replication_key", type=SecretType.DERIVED, derive_from="db_password", label="repl"),
            SecretDeclaration(name="db_password", type=SecretType.PASSWORD, length=40),
        ),
    )
    host, directories = _prepared_host()
    manager = SecretManager(PLATFORM)
    targets = manager.targets([chained], MAPPING)
    assert [t.declaration.name for t in targets] == ["db_password", "replication_key", "audit_key"]

    changes, _, _ = manager.plan(host, targets, {})
    applied, _ = manager.apply(host, changes, targets, directories)
    assert len(applied) == 3
    replication = host.read_file("/opt/hostguard/secrets/db/replication_key")
    audit = host.read_file("/opt/hostguard/secrets/db/audit_key")
    assert audit.decode() == derive(replication, "audit", PLATFORM.secret_min_length)
