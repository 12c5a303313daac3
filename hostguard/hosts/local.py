"""The machine hostguard runs on.

All paths are interpreted under ``root`` (``/`` by default) so a mounted
image or chroot can be converged the same way as the live system.
"""

from __future__ import annotations

import io
import logging
import os
import stat as stat_mod
import subprocess
import tarfile
import tempfile
from pathlib import Path

from hostguard.engine.base import ContainerEngine
from hostguard.hosts.base import Account, HostBackend, PathStat

logger = logging.getLogger(__name__)

NOLOGIN_SHELL = "/usr/sbin/nologin"


class LocalHost(HostBackend):
    def __init__(self, name: str, engine: ContainerEngine, root: str | Path = "/"):
        self.name = name
        self.engine = engine
        self.root = Path(root)

    def _path(self, path: str) -> Path:
        return self.root / path.lstrip("/")

    # Accounts ------------------------------------------------------------

    def get_account(self, name: str) -> Account | None:
        passwd = self._path("/etc/passwd")
        if not passwd.exists():
            return None
        for line in passwd.read_text().splitlines():
            fields = line.split(":")
            if len(fields) >= 4 and fields[0] == name:
                return Account(name=name, uid=int(fields[2]), gid=int(fields[3]))
        return None

    def create_account(self, name: str) -> Account:
        cmd = [
            "useradd",
            "--system",
            "--user-group",
            "--no-create-home",
            "--shell",
            NOLOGIN_SHELL,
        ]
        if self.root != Path("/"):
            cmd += ["--root", str(self.root)]
        cmd.append(name)
        logger.info("[%s] Creating account %s", self.name, name)
        subprocess.run(cmd, check=True, capture_output=True, text=True, timeout=30)

        account = self.get_account(name)
        if account is None:
            raise RuntimeError(f"useradd reported success but account '{name}' is missing")
        return account

    # Filesystem ----------------------------------------------------------

    def stat(self, path: str) -> PathStat | None:
        try:
            st = os.lstat(self._path(path))
        except FileNotFoundError:
            return None
        if stat_mod.S_ISDIR(st.st_mode):
            kind = "dir"
        elif stat_mod.S_ISREG(st.st_mode):
            kind = "file"
        elif stat_mod.S_ISSOCK(st.st_mode):
            kind = "socket"
        else:
            kind = "other"
        return PathStat(uid=st.st_uid, gid=st.st_gid, mode=stat_mod.S_IMODE(st.st_mode), kind=kind)

    def mkdir(self, path: str, mode: int) -> None:
        target = self._path(path)
        target.mkdir(mode=mode)
        # mkdir is subject to the umask
        os.chmod(target, mode)

    def chown(self, path: str, uid: int, gid: int) -> None:
        os.chown(self._path(path), uid, gid, follow_symlinks=False)

    def chmod(self, path: str, mode: int) -> None:
        os.chmod(self._path(path), mode)

    def read_file(self, path: str) -> bytes | None:
        target = self._path(path)
        if not target.is_file():
            return None
        return target.read_bytes()

    def write_file_atomic(self, path: str, data: bytes, uid: int, gid: int, mode: int) -> None:
        target = self._path(path)
        fd, tmp_name = tempfile.mkstemp(dir=target.parent, prefix=f".{target.name}.")
        try:
            with os.fdopen(fd, "wb") as fh:
                os.fchmod(fh.fileno(), mode)
                if (uid, gid) != _current_ids():
                    os.fchown(fh.fileno(), uid, gid)
                fh.write(data)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def list_dir(self, path: str) -> list[str]:
        target = self._path(path)
        if not target.is_dir():
            return []
        return sorted(p.name for p in target.iterdir())

    # Archives ------------------------------------------------------------

    def archive_tree(self, path: str) -> bytes:
        source = self._path(path)
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for child in sorted(source.iterdir()):
                tar.add(child, arcname=child.name, filter=_numeric_only)
        return buffer.getvalue()

    def extract_tree(self, path: str, data: bytes) -> None:
        target = self._path(path)
        with tarfile.open(fileobj=io.BytesIO(data), mode="r") as tar:
            # numeric_owner ignores any names in the archive
            tar.extractall(target, numeric_owner=True, filter=_keep_permissions)


def _numeric_only(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.uname = ""
    info.gname = ""
    return info


def _keep_permissions(member: tarfile.TarInfo, dest_path: str) -> tarfile.TarInfo:
    """The "tar" extraction filter, keeping group and other write bits as archived."""
    safe = tarfile.tar_filter(member, dest_path)
    if safe.mode is None:
        return safe
    return safe.replace(mode=member.mode & 0o777, deep=False)


def _current_ids() -> tuple[int, int]:
    return os.geteuid(), os.getegid()
