"""Service specifications handed to the container engine.

A spec is everything that determines how a role's container runs: image,
environment, non-root identity, named volumes, sanctioned binds, secrets and
networks. Its hash is what the reconciler compares between passes.
"""

from __future__ import annotations

import hashlib
import json
from dataclasses import asdict, dataclass, field
from string import Template

import yaml

from hostguard.config import PlatformConfig
from hostguard.inventory.models import Host, Role, VolumeScope

SECRETS_MOUNT_DIR = "/run/secrets"


@dataclass(frozen=True)
class Mount:
    kind: str  # volume | bind
    source: str  # Volume name or host path
    target: str
    read_only: bool = False


@dataclass(frozen=True)
class SecretMount:
    name: str
    source: str
    target: str


@dataclass
class ServiceSpec:
    name: str
    image: str
    user: str
    environment: dict[str, str] = field(default_factory=dict)
    mounts: list[Mount] = field(default_factory=list)
    secrets: list[SecretMount] = field(default_factory=list)
    networks: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)

    @property
    def config_hash(self) -> str:
        canonical = json.dumps(self.to_dict(), sort_keys=True, separators=(",", ":"))
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    def to_yaml(self) -> str:
        data = {"service": self.to_dict(), "config_hash": self.config_hash}
        return yaml.safe_dump(data, sort_keys=False)

    @property
    def volume_names(self) -> list[str]:
        return [m.source for m in self.mounts if m.kind == "volume"]


def render_service(host: Host, role: Role, platform: PlatformConfig) -> ServiceSpec:
    """Build the engine-facing specification for one role on one host.

    Host ``vars`` override role ``vars``; both may be referenced as ``$name``
    in the image reference and in environment values.
    """
    variables = {**role.vars, **host.vars}

    mounts = []
    for volume in role.volumes:
        if volume.scope == VolumeScope.NAMED:
            mounts.append(Mount("volume", volume.name, volume.target, volume.read_only))
        else:
            mounts.append(Mount("bind", volume.source, volume.target, volume.read_only))

    secrets = [
        SecretMount(
            name=s.name,
            source=secret_path(platform, role.name, s.name),
            target=f"{SECRETS_MOUNT_DIR}/{s.name}",
        )
        for s in role.secrets
    ]

    return ServiceSpec(
        name=role.name,
        image=Template(role.image).safe_substitute(variables),
        user=f"{role.uid}:{role.gid}",
        environment={
            key: Template(value).safe_substitute(variables)
            for key, value in sorted(role.environment.items())
        },
        mounts=mounts,
        secrets=secrets,
        networks=sorted(role.networks),
    )


def secret_path(platform: PlatformConfig, role: str, name: str) -> str:
    return f"{platform.secrets_dir}/{role}/{name}"


def definition_path(platform: PlatformConfig, role: str) -> str:
    return f"{platform.services_dir}/{role}/service.yaml"
