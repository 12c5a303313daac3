"""Container engine boundary.

hostguard never implements a runtime. It hands a complete service
specification to an engine adapter and asks it about volumes and services.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from enum import Enum

from hostguard.services.spec import ServiceSpec

MANAGED_LABEL = "hostguard.managed"
ROLE_LABEL = "hostguard.role"
HASH_LABEL = "hostguard.config-hash"


class ServiceStatus(Enum):
    ABSENT = "absent"
    STOPPED = "stopped"
    RUNNING = "running"


class ContainerEngine(ABC):
    """What the reconciler and migration orchestrator need from an engine."""

    @abstractmethod
    def volume_mountpoint(self, name: str) -> str | None:
        """Host path backing a named volume, or None if the volume does not exist."""

    @abstractmethod
    def create_volume(self, name: str, role: str) -> str:
        """Create an empty named volume and return its mountpoint."""

    @abstractmethod
    def service_status(self, name: str) -> ServiceStatus:
        ...

    @abstractmethod
    def apply_service(self, spec: ServiceSpec) -> None:
        """Start a service, replacing any existing instance with the same name."""

    @abstractmethod
    def stop_service(self, name: str) -> None:
        ...
