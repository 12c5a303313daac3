"""Docker engine adapter built on the Docker SDK for Python."""

from __future__ import annotations

import logging

import docker
from docker.errors import NotFound
from docker.types import Mount as DockerMount

from hostguard.engine.base import (
    HASH_LABEL,
    MANAGED_LABEL,
    ROLE_LABEL,
    ContainerEngine,
    ServiceStatus,
)
from hostguard.errors import HostguardError
from hostguard.services.spec import ServiceSpec

logger = logging.getLogger(__name__)

RESTART_POLICY = {"Name": "unless-stopped"}
STOP_TIMEOUT = 30


class DockerEngine(ContainerEngine):
    """Talks to the Docker daemon of the host being reconciled."""

    def __init__(self, client: docker.DockerClient | None = None, base_url: str | None = None):
        if client is None:
            client = docker.DockerClient(base_url=base_url) if base_url else docker.from_env()
        self.client = client

    # Volumes -------------------------------------------------------------

    def volume_mountpoint(self, name: str) -> str | None:
        try:
            return self.client.volumes.get(name).attrs["Mountpoint"]
        except NotFound:
            return None

    def create_volume(self, name: str, role: str) -> str:
        volume = self.client.volumes.create(
            name=name,
            labels={MANAGED_LABEL: "true", ROLE_LABEL: role},
        )
        logger.info("[Engine] Created volume %s for %s", name, role)
        return volume.attrs["Mountpoint"]

    # Services ------------------------------------------------------------

    def service_status(self, name: str) -> ServiceStatus:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return ServiceStatus.ABSENT
        return ServiceStatus.RUNNING if container.status == "running" else ServiceStatus.STOPPED

    def apply_service(self, spec: ServiceSpec) -> None:
        for network in spec.networks:
            self._ensure_network(network)
        for volume in spec.volume_names:
            if self.volume_mountpoint(volume) is None:
                self.create_volume(volume, spec.name)

        self._remove_existing(spec.name)

        mounts = [
            DockerMount(
                target=m.target,
                source=m.source,
                type="volume" if m.kind == "volume" else "bind",
                read_only=m.read_only,
            )
            for m in spec.mounts
        ]
        mounts += [
            DockerMount(target=s.target, source=s.source, type="bind", read_only=True)
            for s in spec.secrets
        ]

        container = self.client.containers.run(
            spec.image,
            detach=True,
            name=spec.name,
            user=spec.user,
            environment=spec.environment,
            mounts=mounts,
            network=spec.networks[0] if spec.networks else None,
            labels={
                MANAGED_LABEL: "true",
                ROLE_LABEL: spec.name,
                HASH_LABEL: spec.config_hash,
            },
            restart_policy=RESTART_POLICY,
            security_opt=["no-new-privileges:true"],
        )
        for network in spec.networks[1:]:
            self.client.networks.get(network).connect(container)
        logger.info("[Engine] Started %s (%s)", spec.name, spec.image)

    def stop_service(self, name: str) -> None:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return
        container.stop(timeout=STOP_TIMEOUT)
        logger.info("[Engine] Stopped %s", name)

    # Helpers -------------------------------------------------------------

    def _ensure_network(self, name: str) -> None:
        try:
            self.client.networks.get(name)
        except NotFound:
            self.client.networks.create(name, driver="bridge", labels={MANAGED_LABEL: "true"})
            logger.info("[Engine] Created network %s", name)

    def _remove_existing(self, name: str) -> None:
        try:
            container = self.client.containers.get(name)
        except NotFound:
            return
        if container.labels.get(MANAGED_LABEL) != "true":
            raise HostguardError("Container exists but is not managed by hostguard", role=name)
        container.remove(force=True)
