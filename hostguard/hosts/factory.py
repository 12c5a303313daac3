"""Choose a backend for an inventory host."""

from __future__ import annotations

from docker.errors import DockerException

from hostguard.errors import HostguardError
from hostguard.hosts.base import HostBackend
from hostguard.hosts.memory import MemoryHost
from hostguard.inventory.models import Host

LOCAL = "local"
SIMULATED = "simulated"


def backend_for(host: Host, root: str = "/") -> HostBackend:
    """Build the backend named by ``host.connection``.

    ``local`` converges the machine hostguard runs on. ``simulated`` is an
    in-memory host, useful for trying an inventory out.
    """
    if host.connection == LOCAL:
        from hostguard.engine.docker_engine import DockerEngine
        from hostguard.hosts.local import LocalHost

        try:
            engine = DockerEngine(base_url=host.vars.get("docker_host") or None)
        except DockerException as e:
            raise HostguardError(f"Cannot reach the Docker engine: {e}", host=host.name) from e
        return LocalHost(host.name, engine, root=root)
    if host.connection == SIMULATED:
        return MemoryHost(host.name)
    raise HostguardError(f"Unsupported connection '{host.connection}'", host=host.name)


def simulated_backend(host: Host) -> HostBackend:
    """A fresh, empty simulated host, used to preview a full provisioning plan."""
    return MemoryHost(host.name)
