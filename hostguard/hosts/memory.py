"""A simulated host held entirely in memory.

``hostguard preview`` plans against a fresh one of these to show the full
change-set a new host would receive. Every mutation is appended to
``mutations`` so callers can tell a converged pass from a busy one.
"""

from __future__ import annotations

import io
import posixpath
import stat as stat_mod
import tarfile
from dataclasses import dataclass, field

from hostguard.engine.base import ContainerEngine, ServiceStatus
from hostguard.hosts.base import Account, HostBackend, PathStat
from hostguard.services.spec import ServiceSpec

DEFAULT_ENGINE_ROOT = "/var/lib/docker"


@dataclass
class _Node:
    kind: str
    uid: int = 0
    gid: int = 0
    mode: int = 0o755
    data: bytes = b""


@dataclass
class _Service:
    spec: ServiceSpec
    status: ServiceStatus = ServiceStatus.RUNNING


class MemoryEngine(ContainerEngine):
    """Engine double that records volumes and services on a :class:`MemoryHost`."""

    def __init__(self, host: "MemoryHost", storage_root: str = DEFAULT_ENGINE_ROOT, volume_owner: tuple[int, int] = (0, 0)):
        self.host = host
        self.storage_root = storage_root
        self.volume_owner = volume_owner
        self.volumes: dict[str, str] = {}
        self.services: dict[str, _Service] = {}

    def volume_mountpoint(self, name: str) -> str | None:
        return self.volumes.get(name)

    def create_volume(self, name: str, role: str) -> str:
        if name in self.volumes:
            return self.volumes[name]
        mountpoint = f"{self.storage_root}/volumes/{name}/_data"
        self.host._makedirs(mountpoint, 0o755, *self.volume_owner)
        self.volumes[name] = mountpoint
        self.host.mutations.append(("create_volume", name))
        return mountpoint

    def service_status(self, name: str) -> ServiceStatus:
        service = self.services.get(name)
        return service.status if service else ServiceStatus.ABSENT

    def apply_service(self, spec: ServiceSpec) -> None:
        for volume in spec.volume_names:
            if volume not in self.volumes:
                self.create_volume(volume, spec.name)
        self.services[spec.name] = _Service(spec=spec)
        self.host.mutations.append(("apply_service", spec.name))

    def stop_service(self, name: str) -> None:
        service = self.services.get(name)
        if service and service.status == ServiceStatus.RUNNING:
            service.status = ServiceStatus.STOPPED
            self.host.mutations.append(("stop_service", name))


class MemoryHost(HostBackend):
    """In-memory filesystem, account database and engine for one host."""

    def __init__(self, name: str = "simulated", engine_installed: bool = True):
        self.name = name
        self.mutations: list[tuple[str, str]] = []
        self.accounts: dict[str, Account] = {"root": Account("root", 0, 0)}
        self._nodes: dict[str, _Node] = {"/": _Node("dir")}
        self._makedirs("/etc", 0o755, 0, 0)
        self.engine = MemoryEngine(self)
        if engine_installed:
            self._makedirs(self.engine.storage_root, 0o710, 0, 0)

    # Accounts ------------------------------------------------------------

    def get_account(self, name: str) -> Account | None:
        return self.accounts.get(name)

    def create_account(self, name: str) -> Account:
        if name in self.accounts:
            return self.accounts[name]
        uid = max([a.uid for a in self.accounts.values() if a.uid < 1000] + [100]) + 1
        account = Account(name, uid, uid)
        self.accounts[name] = account
        self.mutations.append(("create_account", name))
        return account

    # Filesystem ----------------------------------------------------------

    def stat(self, path: str) -> PathStat | None:
        node = self._nodes.get(_norm(path))
        if node is None:
            return None
        return PathStat(uid=node.uid, gid=node.gid, mode=node.mode, kind=node.kind)

    def mkdir(self, path: str, mode: int) -> None:
        path = _norm(path)
        if path in self._nodes:
            raise FileExistsError(path)
        parent = self._nodes.get(posixpath.dirname(path))
        if parent is None or parent.kind != "dir":
            raise FileNotFoundError(posixpath.dirname(path))
        self._nodes[path] = _Node("dir", mode=mode)
        self.mutations.append(("mkdir", path))

    def chown(self, path: str, uid: int, gid: int) -> None:
        node = self._node(path)
        node.uid, node.gid = uid, gid
        self.mutations.append(("chown", _norm(path)))

    def chmod(self, path: str, mode: int) -> None:
        node = self._node(path)
        node.mode = mode
        self.mutations.append(("chmod", _norm(path)))

    def read_file(self, path: str) -> bytes | None:
        node = self._nodes.get(_norm(path))
        if node is None or node.kind != "file":
            return None
        return node.data

    def write_file_atomic(self, path: str, data: bytes, uid: int, gid: int, mode: int) -> None:
        path = _norm(path)
        parent = self._nodes.get(posixpath.dirname(path))
        if parent is None or parent.kind != "dir":
            raise FileNotFoundError(posixpath.dirname(path))
        self._nodes[path] = _Node("file", uid=uid, gid=gid, mode=mode, data=bytes(data))
        self.mutations.append(("write_file", path))

    def list_dir(self, path: str) -> list[str]:
        prefix = _norm(path).rstrip("/") + "/"
        return sorted(
            p[len(prefix):]
            for p in self._nodes
            if p.startswith(prefix) and "/" not in p[len(prefix):]
        )

    # Archives ------------------------------------------------------------

    def archive_tree(self, path: str) -> bytes:
        root = _norm(path).rstrip("/")
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for node_path in sorted(self._nodes):
                if not node_path.startswith(root + "/"):
                    continue
                node = self._nodes[node_path]
                info = tarfile.TarInfo(name=node_path[len(root) + 1:])
                info.uid, info.gid, info.mode = node.uid, node.gid, node.mode
                info.uname = info.gname = ""
                if node.kind == "dir":
                    info.type = tarfile.DIRTYPE
                    tar.addfile(info)
                else:
                    info.size = len(node.data)
                    tar.addfile(info, io.BytesIO(node.data))
        return buffer.getvalue()

    def extract_tree(self, path: str, data: bytes) -> None:
        root = _norm(path).rstrip("/")
        self._node(root)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            for member in tar.getmembers():
                name = posixpath.normpath(member.name)
                if name.startswith(("/", "..")):
                    raise ValueError(f"Refusing archive member outside target: {member.name}")
                target = f"{root}/{name}"
                if member.isdir():
                    self._nodes[target] = _Node("dir", member.uid, member.gid, stat_mod.S_IMODE(member.mode))
                elif member.isfile():
                    content = tar.extractfile(member).read()
                    self._nodes[target] = _Node("file", member.uid, member.gid, stat_mod.S_IMODE(member.mode), content)
        self.mutations.append(("extract", root))

    # Helpers -------------------------------------------------------------

    def _node(self, path: str) -> _Node:
        node = self._nodes.get(_norm(path))
        if node is None:
            raise FileNotFoundError(path)
        return node

    def _makedirs(self, path: str, mode: int, uid: int, gid: int) -> None:
        """Create a directory and its parents without recording mutations."""
        path = _norm(path)
        parts = path.strip("/").split("/")
        current = ""
        for part in parts:
            current = f"{current}/{part}"
            if current not in self._nodes:
                self._nodes[current] = _Node("dir", 0, 0, 0o755)
        self._nodes[path] = _Node("dir", uid, gid, mode)

    def put_file(self, path: str, data: bytes, uid: int = 0, gid: int = 0, mode: int = 0o644) -> None:
        """Seed a file (and its parent directories) without recording a mutation."""
        path = _norm(path)
        parent = posixpath.dirname(path)
        if parent not in self._nodes:
            self._makedirs(parent, 0o755, 0, 0)
        self._nodes[path] = _Node("file", uid, gid, mode, data)


def _norm(path: str) -> str:
    return posixpath.normpath(path) if path != "/" else "/"
