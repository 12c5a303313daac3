"""Platform-wide constants and runtime configuration.

The defaults below describe the standard platform. An inventory may override
any of them under its ``platform:`` key; state and audit locations can also be
moved with ``HOSTGUARD_STATE_DIR`` and ``HOSTGUARD_AUDIT_DIR``.
"""

from __future__ import annotations

import os
from dataclasses import dataclass, fields
from pathlib import Path

from hostguard.errors import InventoryError

# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------

DEFAULT_REMAP_ACCOUNT = "dockremap"
DEFAULT_RANGE_START = 100000
DEFAULT_RANGE_SIZE = 65536
DEFAULT_CONTAINER_UID = 1000
DEFAULT_CONTAINER_GID = 1000
DEFAULT_MANAGED_ROOT = "/opt/hostguard"
DEFAULT_ENGINE_STORAGE_ROOT = "/var/lib/docker"
DEFAULT_ENGINE_CONFIG_PATH = "/etc/docker/daemon.json"
DEFAULT_SUBUID_PATH = "/etc/subuid"
DEFAULT_SUBGID_PATH = "/etc/subgid"
DEFAULT_SECRET_MIN_LENGTH = 32
DEFAULT_STATE_DIR = "~/.hostguard/state"
DEFAULT_AUDIT_DIR = "~/.hostguard/audit"

STATE_DIR_ENV = "HOSTGUARD_STATE_DIR"
AUDIT_DIR_ENV = "HOSTGUARD_AUDIT_DIR"


@dataclass(frozen=True)
class PlatformConfig:
    """Constants shared by every host in the fleet."""

    remap_account: str = DEFAULT_REMAP_ACCOUNT
    subordinate_range_start: int = DEFAULT_RANGE_START
    subordinate_range_size: int = DEFAULT_RANGE_SIZE
    container_uid: int = DEFAULT_CONTAINER_UID
    container_gid: int = DEFAULT_CONTAINER_GID
    managed_root: str = DEFAULT_MANAGED_ROOT
    engine_storage_root: str = DEFAULT_ENGINE_STORAGE_ROOT
    engine_config_path: str = DEFAULT_ENGINE_CONFIG_PATH
    subuid_path: str = DEFAULT_SUBUID_PATH
    subgid_path: str = DEFAULT_SUBGID_PATH
    secret_min_length: int = DEFAULT_SECRET_MIN_LENGTH

    @classmethod
    def from_dict(cls, data: dict | None) -> PlatformConfig:
        """Build a config from an inventory ``platform:`` mapping."""
        if not data:
            return cls()
        known = {f.name: f for f in fields(cls)}
        unknown = sorted(set(data) - set(known))
        if unknown:
            raise InventoryError(f"Unknown platform setting(s): {', '.join(unknown)}")

        values = {}
        for key, value in data.items():
            expected = known[key].type
            if expected == "int":
                if isinstance(value, bool) or not isinstance(value, int):
                    raise InventoryError(f"Platform setting '{key}' must be an integer")
            elif not isinstance(value, str):
                raise InventoryError(f"Platform setting '{key}' must be a string")
            values[key] = value

        config = cls(**values)
        config.check()
        return config

    def check(self) -> None:
        if self.subordinate_range_start <= 0 or self.subordinate_range_size <= 0:
            raise InventoryError("Subordinate range start and size must be positive")
        if self.container_uid == 0 or self.container_gid == 0:
            raise InventoryError("The platform container identity must be non-root")
        if not self.managed_root.startswith("/"):
            raise InventoryError(f"managed_root must be absolute: {self.managed_root}")
        if self.secret_min_length < 16:
            raise InventoryError("secret_min_length must be at least 16")

    # Platform tree -------------------------------------------------------

    @property
    def engine_dir(self) -> str:
        return f"{self.managed_root}/engine"

    @property
    def services_dir(self) -> str:
        return f"{self.managed_root}/services"

    @property
    def secrets_dir(self) -> str:
        return f"{self.managed_root}/secrets"

    @property
    def logs_dir(self) -> str:
        return f"{self.managed_root}/logs"


def state_dir(override: str | Path | None = None) -> Path:
    """Resolve the directory holding host snapshots and pass history."""
    raw = override or os.environ.get(STATE_DIR_ENV) or DEFAULT_STATE_DIR
    return Path(raw).expanduser()


def audit_dir(override: str | Path | None = None) -> Path:
    """Resolve the directory holding the daily audit journal."""
    raw = override or os.environ.get(AUDIT_DIR_ENV) or DEFAULT_AUDIT_DIR
    return Path(raw).expanduser()
