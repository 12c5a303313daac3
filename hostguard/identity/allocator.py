"""Identity Allocator: one remap account and one subordinate range per host.

Planning is pure with respect to the host: it reads accounts, the subid
registries and the engine daemon configuration, and returns changes. Applying
those changes is idempotent; a converged host plans nothing.
"""

from __future__ import annotations

import json
import logging
import posixpath

from hostguard.config import PlatformConfig
from hostguard.errors import HostguardError, RangeConflict
from hostguard.hosts.base import HostBackend
from hostguard.identity.mapping import IdentityMapping, SubIdEntry, format_subids, parse_subids
from hostguard.inventory.models import Host, Inventory, Role, SubordinateRange
from hostguard.reconcile.changes import Change, Step

logger = logging.getLogger(__name__)

USERNS_KEY = "userns-remap"
REGISTRY_MODE = 0o644


def effective_range(host: Host, roles: list[Role], platform: PlatformConfig) -> IdentityMapping:
    """Compute the single subordinate range every role on ``host`` must share.

    Raises:
        RangeConflict: roles ask for different ranges, or a role's container
            identity falls outside the range.
    """
    default = SubordinateRange(platform.subordinate_range_start, platform.subordinate_range_size)
    chosen: SubordinateRange | None = None
    chosen_by = ""

    for role in roles:
        wanted = role.subordinate_range or default
        if chosen is None:
            chosen, chosen_by = wanted, role.name
        elif wanted != chosen:
            raise RangeConflict(
                f"Role needs range {wanted.start}:{wanted.size} but role '{chosen_by}' "
                f"needs {chosen.start}:{chosen.size}; a host has exactly one remap account",
                host=host.name,
                role=role.name,
                declaration="subordinate_range",
            )

    chosen = chosen or default
    mapping = IdentityMapping(
        host=host.name,
        account=platform.remap_account,
        range_start=chosen.start,
        range_size=chosen.size,
    )

    for role in roles:
        for label, value in (("uid", role.uid), ("gid", role.gid)):
            if not 0 <= value < mapping.range_size:
                raise RangeConflict(
                    f"Container {label} {value} does not fit in range {mapping.record()}",
                    host=host.name,
                    role=role.name,
                    declaration=label,
                )
    return mapping


def check_fleet_ranges(inventory: Inventory) -> dict[str, IdentityMapping]:
    """Hosts whose effective range differs from the platform default.

    Data whose ownership was written under one range is only portable to
    hosts using the same range, so these hosts cannot exchange stateful
    volumes with the rest of the fleet.
    """
    platform = inventory.platform
    outliers = {}
    for host in inventory.hosts.values():
        mapping = effective_range(host, inventory.roles_for(host), platform)
        if (mapping.range_start, mapping.range_size) != (
            platform.subordinate_range_start,
            platform.subordinate_range_size,
        ):
            outliers[host.name] = mapping
    return outliers


def read_registry(backend: HostBackend, path: str) -> list[SubIdEntry]:
    raw = backend.read_file(path)
    if raw is None:
        return []
    try:
        text = raw.decode("utf-8")
    except UnicodeDecodeError as e:
        raise HostguardError(f"{path} is not valid UTF-8 text", host=backend.name, declaration=path) from e
    return parse_subids(text, source=path)


def read_engine_config(backend: HostBackend, path: str) -> dict:
    raw = backend.read_file(path)
    if raw is None or not raw.strip():
        return {}
    try:
        data = json.loads(raw)
    except json.JSONDecodeError as e:
        raise HostguardError(
            f"Engine configuration is not valid JSON: {e}",
            host=backend.name,
            declaration=path,
        ) from e
    if not isinstance(data, dict):
        raise HostguardError("Engine configuration must be a JSON object", host=backend.name, declaration=path)
    return data


class IdentityAllocator:
    """Plans and applies the remap account, subid records and engine remap setting."""

    def __init__(self, platform: PlatformConfig):
        self.platform = platform

    def registries(self) -> list[tuple[str, str]]:
        return [("subuid", self.platform.subuid_path), ("subgid", self.platform.subgid_path)]

    def plan(self, backend: HostBackend, mapping: IdentityMapping) -> list[Change]:
        changes = []

        if backend.get_account(mapping.account) is None:
            changes.append(
                Change(Step.IDENTITY, "create_account", mapping.account, detail="system account, no login")
            )

        for kind, path in self.registries():
            entries = read_registry(backend, path)
            if not self._check_registry(backend, mapping, kind, entries):
                changes.append(
                    Change(
                        Step.IDENTITY,
                        "write_subids",
                        path,
                        detail=mapping.record(),
                        params={"kind": kind},
                    )
                )

        engine_config = read_engine_config(backend, self.platform.engine_config_path)
        current = engine_config.get(USERNS_KEY)
        if current != mapping.account:
            if current:
                raise RangeConflict(
                    f"Engine already remaps to '{current}'; only one remap account is allowed",
                    host=backend.name,
                    declaration=f"{self.platform.engine_config_path}:{USERNS_KEY}",
                )
            changes.append(
                Change(
                    Step.IDENTITY,
                    "set_engine_userns",
                    self.platform.engine_config_path,
                    detail=f"{USERNS_KEY}={mapping.account}; engine restart required",
                )
            )

        return changes

    def _check_registry(
        self,
        backend: HostBackend,
        mapping: IdentityMapping,
        kind: str,
        entries: list[SubIdEntry],
    ) -> bool:
        """True when the registry already holds our exact range. Raises on conflicts."""
        present = False
        for entry in entries:
            if entry.account == mapping.account:
                if (entry.start, entry.size) != (mapping.range_start, mapping.range_size):
                    raise RangeConflict(
                        f"{kind} already assigns {entry.format()}; changing it would orphan "
                        f"existing file ownership (wanted {mapping.record()})",
                        host=backend.name,
                        declaration=f"{kind}:{entry.format()}",
                    )
                present = True
            elif mapping.overlaps(entry.start, entry.size):
                raise RangeConflict(
                    f"{kind} range {entry.format()} overlaps {mapping.record()}",
                    host=backend.name,
                    declaration=f"{kind}:{entry.format()}",
                )
        return present

    def apply(self, backend: HostBackend, mapping: IdentityMapping, changes: list[Change]) -> list[Change]:
        applied = []
        for change in changes:
            if change.action == "create_account":
                if backend.get_account(mapping.account) is None:
                    backend.create_account(mapping.account)
            elif change.action == "write_subids":
                self._append_registry(backend, change.target, mapping, change.params["kind"])
            elif change.action == "set_engine_userns":
                self._set_engine_userns(backend, mapping)
            else:
                raise ValueError(f"Unknown identity action: {change.action}")
            logger.info("[%s] %s", backend.name, change.describe())
            applied.append(change)
        return applied

    def _append_registry(self, backend: HostBackend, path: str, mapping: IdentityMapping, kind: str) -> None:
        entries = read_registry(backend, path)
        if self._check_registry(backend, mapping, kind, entries):
            return
        entries.append(SubIdEntry(mapping.account, mapping.range_start, mapping.range_size))
        backend.write_file_atomic(path, format_subids(entries).encode("utf-8"), 0, 0, REGISTRY_MODE)

    def _set_engine_userns(self, backend: HostBackend, mapping: IdentityMapping) -> None:
        path = self.platform.engine_config_path
        parent = posixpath.dirname(path)
        if backend.stat(parent) is None:
            backend.mkdir(parent, 0o755)
        config = read_engine_config(backend, path)
        config[USERNS_KEY] = mapping.account
        payload = json.dumps(config, indent=2, sort_keys=True) + "\n"
        backend.write_file_atomic(path, payload.encode("utf-8"), 0, 0, REGISTRY_MODE)
