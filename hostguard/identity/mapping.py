"""The two kinds of identity: container-internal ids and their host-side remaps.

A mapping is a small immutable value with one derivation function. Nothing
else in hostguard computes a host id from a container id.
"""

from __future__ import annotations

from dataclasses import dataclass

from hostguard.errors import HostguardError, RangeConflict


@dataclass(frozen=True)
class IdentityMapping:
    host: str
    account: str
    range_start: int
    range_size: int

    @property
    def range_end(self) -> int:
        """First id past the range."""
        return self.range_start + self.range_size

    def remap(self, container_id: int) -> int:
        """Host id for a container-internal uid or gid."""
        if not 0 <= container_id < self.range_size:
            raise RangeConflict(
                f"Container id {container_id} is outside the subordinate range "
                f"{self.range_start}:{self.range_size}",
                host=self.host,
                declaration=f"{self.account}:{self.range_start}:{self.range_size}",
            )
        return self.range_start + container_id

    def host_ids(self, uid: int, gid: int) -> tuple[int, int]:
        return self.remap(uid), self.remap(gid)

    def contains(self, host_id: int) -> bool:
        return self.range_start <= host_id < self.range_end

    def overlaps(self, start: int, size: int) -> bool:
        return start < self.range_end and self.range_start < start + size

    def record(self) -> str:
        return f"{self.account}:{self.range_start}:{self.range_size}"


@dataclass(frozen=True)
class SubIdEntry:
    """One line of /etc/subuid or /etc/subgid."""

    account: str
    start: int
    size: int

    def format(self) -> str:
        return f"{self.account}:{self.start}:{self.size}"


def parse_subids(text: str, source: str = "subid file") -> list[SubIdEntry]:
    entries = []
    for number, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = line.split(":")
        if len(parts) != 3:
            raise HostguardError(f"{source} line {number} is malformed: {line!r}")
        try:
            entries.append(SubIdEntry(parts[0], int(parts[1]), int(parts[2])))
        except ValueError as e:
            raise HostguardError(f"{source} line {number} is malformed: {line!r}") from e
    return entries


def format_subids(entries: list[SubIdEntry]) -> str:
    return "".join(f"{e.format()}\n" for e in entries)
