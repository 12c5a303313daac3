"""Host backend interface.

A backend is the only way reconciliation reads or changes a host. Paths are
always absolute host paths; ownership is always numeric.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from dataclasses import dataclass

from hostguard.engine.base import ContainerEngine


@dataclass(frozen=True)
class PathStat:
    uid: int
    gid: int
    mode: int  # Permission bits only
    kind: str  # dir | file | socket | other

    @property
    def is_dir(self) -> bool:
        return self.kind == "dir"


@dataclass(frozen=True)
class Account:
    name: str
    uid: int
    gid: int


class HostBackend(ABC):
    """Observed-state access and mutation primitives for one host."""

    name: str
    engine: ContainerEngine

    # Accounts ------------------------------------------------------------

    @abstractmethod
    def get_account(self, name: str) -> Account | None:
        ...

    @abstractmethod
    def create_account(self, name: str) -> Account:
        """Create a system account with a same-named primary group and no login."""

    # Filesystem ----------------------------------------------------------

    @abstractmethod
    def stat(self, path: str) -> PathStat | None:
        """Stat without following symlinks; None when the path does not exist."""

    @abstractmethod
    def mkdir(self, path: str, mode: int) -> None:
        """Create a single directory. The parent must exist."""

    @abstractmethod
    def chown(self, path: str, uid: int, gid: int) -> None:
        ...

    @abstractmethod
    def chmod(self, path: str, mode: int) -> None:
        ...

    @abstractmethod
    def read_file(self, path: str) -> bytes | None:
        ...

    @abstractmethod
    def write_file_atomic(self, path: str, data: bytes, uid: int, gid: int, mode: int) -> None:
        """Write to a temporary file beside ``path``, set ownership, then rename over it."""

    @abstractmethod
    def list_dir(self, path: str) -> list[str]:
        ...

    # Archives ------------------------------------------------------------

    @abstractmethod
    def archive_tree(self, path: str) -> bytes:
        """Tar the contents of ``path`` keeping numeric ownership and no symbolic names."""

    @abstractmethod
    def extract_tree(self, path: str, data: bytes) -> None:
        """Extract an archive into ``path`` keeping the numeric ownership it carries."""
