"""State store: one JSON snapshot per host and an append-only pass history.

Layout under the state directory::

    hosts/<host>.json   latest snapshot, replaced atomically
    history.jsonl       one line per pass, migration or operator action
"""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from hostguard.state.snapshot import HostSnapshot, snapshot_from_dict, snapshot_to_dict


class EventKind:
    RECONCILE = "reconcile"
    VALIDATE = "validate"
    MIGRATION = "migration"
    ROTATE = "secret_rotate"
    ACCEPT = "secret_accept"
    RELEASE = "release"


@dataclass
class HistoryRecord:
    """One entry in the pass history."""

    host: str
    kind: str
    status: str
    recorded_at: str = ""
    role: str = ""
    revision: str = ""
    changes: int = 0
    failed_step: str = ""
    error: str = ""
    details: dict = field(default_factory=dict)


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


class StateStore:
    HOSTS_DIR = "hosts"
    HISTORY_FILE = "history.jsonl"

    def __init__(self, state_dir: str | Path):
        self.state_dir = Path(state_dir)
        self.hosts_dir = self.state_dir / self.HOSTS_DIR
        self.history_file = self.state_dir / self.HISTORY_FILE

    # Snapshots -----------------------------------------------------------

    def _snapshot_path(self, host: str) -> Path:
        return self.hosts_dir / f"{host}.json"

    def load(self, host: str) -> HostSnapshot:
        """The host's latest snapshot, or an empty one if it was never reconciled."""
        path = self._snapshot_path(host)
        if not path.exists():
            return HostSnapshot(host=host)
        with open(path) as f:
            return snapshot_from_dict(json.load(f))

    def save(self, snapshot: HostSnapshot) -> None:
        self.hosts_dir.mkdir(parents=True, exist_ok=True)
        snapshot.updated_at = utc_now()
        path = self._snapshot_path(snapshot.host)
        fd, tmp_name = tempfile.mkstemp(dir=self.hosts_dir, prefix=f".{snapshot.host}.")
        with os.fdopen(fd, "w") as f:
            json.dump(snapshot_to_dict(snapshot), f, indent=2, sort_keys=True)
        os.replace(tmp_name, path)

    def known_hosts(self) -> list[str]:
        if not self.hosts_dir.exists():
            return []
        return sorted(p.stem for p in self.hosts_dir.glob("*.json"))

    # History -------------------------------------------------------------

    def record(self, record: HistoryRecord) -> None:
        """Append a history record."""
        self.state_dir.mkdir(parents=True, exist_ok=True)
        if not record.recorded_at:
            record.recorded_at = utc_now()
        with open(self.history_file, "a") as f:
            f.write(json.dumps(asdict(record)) + "\n")

    def get_history(self, host: str | None = None, kind: str | None = None) -> list[HistoryRecord]:
        if not self.history_file.exists():
            return []

        records = []
        with open(self.history_file) as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                data = json.loads(line)
                if host and data.get("host") != host:
                    continue
                if kind and data.get("kind") != kind:
                    continue
                records.append(HistoryRecord(**data))
        return records

    def get_latest(self, host: str, kind: str | None = None) -> HistoryRecord | None:
        history = self.get_history(host, kind)
        return history[-1] if history else None
