"""Load an inventory from YAML.

The source may be a YAML file, a directory holding ``inventory.yaml``, or a
Git URL which is cloned to a temporary directory first. Git-backed
inventories record the commit they were loaded from so snapshots can say
which revision of desired state a host was converged to.
"""

from __future__ import annotations

import re
from pathlib import Path
from typing import Any

import yaml

from hostguard.config import PlatformConfig
from hostguard.errors import InventoryError
from hostguard.inventory.git_source import ensure_local_checkout, head_revision
from hostguard.inventory.models import (
    BindException,
    Host,
    Inventory,
    Role,
    RoleAssignment,
    SecretDeclaration,
    SecretOwner,
    SecretType,
    SubordinateRange,
    VolumeDeclaration,
    VolumeScope,
)

INVENTORY_FILE = "inventory.yaml"

_NAME_RE = re.compile(r"^[a-z0-9][a-z0-9_.-]*$")


def load_inventory(source: str | Path) -> Inventory:
    """Load and validate an inventory from a file, directory, or Git URL."""
    source = str(source)
    if source.startswith(("http://", "https://", "git@", "git://")):
        with ensure_local_checkout(source) as checkout:
            inventory = load_inventory_file(checkout.local_path / INVENTORY_FILE)
            inventory.revision = checkout.revision
            return inventory

    path = Path(source)
    if path.is_dir():
        inventory = load_inventory_file(path / INVENTORY_FILE)
        inventory.revision = head_revision(path)
        return inventory
    return load_inventory_file(path)


def load_inventory_file(path: str | Path) -> Inventory:
    path = Path(path)
    if not path.exists():
        raise InventoryError(f"Inventory not found: {path}")
    try:
        with open(path) as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise InventoryError(f"Invalid YAML in {path}: {e}") from e

    if not isinstance(data, dict):
        raise InventoryError(f"Inventory root must be a mapping: {path}")
    return parse_inventory(data)


def parse_inventory(data: dict[str, Any]) -> Inventory:
    """Build an :class:`Inventory` from already-parsed YAML."""
    platform = PlatformConfig.from_dict(data.get("platform"))

    roles = {}
    for name, role_data in (data.get("roles") or {}).items():
        roles[name] = _parse_role(name, role_data or {}, platform)

    hosts = {}
    for name, host_data in (data.get("hosts") or {}).items():
        host = _parse_host(name, host_data or {})
        for role_name in host.role_names:
            if role_name not in roles:
                raise InventoryError(
                    f"Host assigns undefined role '{role_name}'",
                    host=name,
                    role=role_name,
                )
        if len(set(host.role_names)) != len(host.role_names):
            raise InventoryError("Role assigned more than once", host=name)
        hosts[name] = host

    return Inventory(platform=platform, hosts=hosts, roles=roles)


def _parse_host(name: str, data: dict) -> Host:
    _check_name(name, "host")
    assignments = []
    for entry in data.get("roles", []):
        if isinstance(entry, str):
            assignments.append(RoleAssignment(role=entry))
        elif isinstance(entry, dict) and "name" in entry:
            assignments.append(RoleAssignment(role=entry["name"], hold=bool(entry.get("hold", False))))
        else:
            raise InventoryError(f"Invalid role assignment: {entry!r}", host=name)

    return Host(
        name=name,
        address=str(data.get("address", "")),
        connection=data.get("connection", "local"),
        tags=tuple(data.get("tags", [])),
        assignments=tuple(assignments),
        vars={k: str(v) for k, v in (data.get("vars") or {}).items()},
    )


def _parse_role(name: str, data: dict, platform: PlatformConfig) -> Role:
    _check_name(name, "role")
    if not data.get("image"):
        raise InventoryError("Role has no image", role=name)

    uid = data.get("uid", platform.container_uid)
    gid = data.get("gid", platform.container_gid)
    if not isinstance(uid, int) or not isinstance(gid, int) or uid < 0 or gid < 0:
        raise InventoryError("Container uid/gid must be non-negative integers", role=name)

    subrange = None
    if "subordinate_range" in data:
        raw = data["subordinate_range"] or {}
        try:
            subrange = SubordinateRange(start=int(raw["start"]), size=int(raw["size"]))
        except (KeyError, TypeError, ValueError) as e:
            raise InventoryError(
                "subordinate_range needs integer 'start' and 'size'",
                role=name,
                declaration="subordinate_range",
            ) from e

    volumes = tuple(_parse_volume(name, v) for v in data.get("volumes", []))
    secrets = tuple(_parse_secret(name, s, platform) for s in data.get("secrets", []))

    secret_names = [s.name for s in secrets]
    if len(set(secret_names)) != len(secret_names):
        raise InventoryError("Secret declared more than once", role=name)
    by_name = {s.name: s for s in secrets}
    for secret in secrets:
        if secret.type == SecretType.DERIVED and secret.derive_from not in by_name:
            raise InventoryError(
                f"Derived secret refers to undeclared secret '{secret.derive_from}'",
                role=name,
                declaration=f"secret:{secret.name}",
            )
    for secret in secrets:
        _check_derivation(name, secret, by_name)

    return Role(
        name=name,
        image=str(data["image"]),
        uid=uid,
        gid=gid,
        environment={k: str(v) for k, v in (data.get("environment") or {}).items()},
        volumes=volumes,
        secrets=secrets,
        networks=tuple(data.get("networks", [])),
        stateful=bool(data.get("stateful", False)),
        subordinate_range=subrange,
        vars={k: str(v) for k, v in (data.get("vars") or {}).items()},
    )


def _check_derivation(role: str, secret: SecretDeclaration, by_name: dict[str, SecretDeclaration]) -> None:
    chain = [secret.name]
    current = secret
    while current.type == SecretType.DERIVED:
        current = by_name[current.derive_from]
        if current.name in chain:
            raise InventoryError(
                f"Derived secret depends on itself: {' -> '.join(chain + [current.name])}",
                role=role,
                declaration=f"secret:{secret.name}",
            )
        chain.append(current.name)


def _parse_volume(role: str, data: Any) -> VolumeDeclaration:
    if not isinstance(data, dict) or "target" not in data:
        raise InventoryError(f"Volume needs a 'target': {data!r}", role=role)

    target = data["target"]
    if not str(target).startswith("/"):
        raise InventoryError("Volume target must be absolute", role=role, declaration=str(target))

    try:
        exception = BindException(data.get("exception", "none"))
    except ValueError as e:
        raise InventoryError(
            f"Unknown bind exception '{data.get('exception')}'",
            role=role,
            declaration=str(target),
        ) from e

    if "source" in data:
        if "name" in data:
            raise InventoryError(
                "Volume declares both 'name' and 'source'",
                role=role,
                declaration=str(target),
            )
        scope = VolumeScope.BIND
    elif "name" in data:
        scope = VolumeScope.NAMED
        _check_name(data["name"], "volume", role=role)
    else:
        raise InventoryError("Volume needs a 'name' or a 'source'", role=role, declaration=str(target))

    return VolumeDeclaration(
        target=target,
        name=data.get("name", ""),
        scope=scope,
        source=data.get("source", ""),
        exception=exception,
        read_only=bool(data.get("read_only", scope == VolumeScope.BIND)),
        reason=data.get("reason", ""),
        justification=data.get("justification", ""),
        device=data.get("device", ""),
    )


def _parse_secret(role: str, data: Any, platform: PlatformConfig) -> SecretDeclaration:
    if isinstance(data, str):
        data = {"name": data}
    if not isinstance(data, dict) or "name" not in data:
        raise InventoryError(f"Secret needs a 'name': {data!r}", role=role)

    name = data["name"]
    _check_name(name, "secret", role=role)
    declaration = f"secret:{name}"

    try:
        secret_type = SecretType(data.get("type", "opaque"))
        owner = SecretOwner(data.get("owner", "container"))
    except ValueError as e:
        raise InventoryError(str(e), role=role, declaration=declaration) from e

    try:
        length = int(data.get("length", 0))
    except (TypeError, ValueError) as e:
        raise InventoryError("Secret length must be an integer", role=role, declaration=declaration) from e
    if length and length < platform.secret_min_length:
        raise InventoryError(
            f"Secret length {length} is below the platform minimum of {platform.secret_min_length}",
            role=role,
            declaration=declaration,
        )

    mode = _parse_mode(data.get("mode", 0o400), role, declaration)
    if mode & 0o077:
        raise InventoryError(
            f"Secret mode {oct(mode)} grants group or other access",
            role=role,
            declaration=declaration,
        )

    if secret_type == SecretType.DERIVED and not data.get("derive_from"):
        raise InventoryError("Derived secret needs 'derive_from'", role=role, declaration=declaration)

    return SecretDeclaration(
        name=name,
        type=secret_type,
        length=length,
        owner=owner,
        mode=mode,
        derive_from=data.get("derive_from", ""),
        label=data.get("label", name),
    )


def _parse_mode(value: Any, role: str, declaration: str) -> int:
    if isinstance(value, int):
        return value
    try:
        return int(str(value), 8)
    except ValueError as e:
        raise InventoryError(f"Invalid mode {value!r}", role=role, declaration=declaration) from e


def _check_name(name: Any, kind: str, role: str = "") -> None:
    if not isinstance(name, str) or not _NAME_RE.match(name):
        raise InventoryError(f"Invalid {kind} name {name!r}", role=role)
