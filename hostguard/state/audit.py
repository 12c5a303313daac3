"""Audit journal of every mutation hostguard makes.

Events are newline-delimited JSON in daily files. Details describe targets,
ownership and modes; they never carry secret content.
"""

from __future__ import annotations

import json
import uuid
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional


@dataclass
class AuditEntry:
    """A single audit log entry."""

    id: str
    timestamp: str
    actor: str
    action: str
    host: str
    resource: str
    details: dict[str, Any] = field(default_factory=dict)
    success: bool = True


class AuditLogger:
    """File-based JSON audit logger."""

    def __init__(self, base_dir: Path, actor: str = "hostguard") -> None:
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)
        self.actor = actor

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _log_file_for_date(self, dt: datetime) -> Path:
        return self._base_dir / f"{dt.strftime('%Y-%m-%d')}.jsonl"

    def _read_all_entries(self) -> list[AuditEntry]:
        entries: list[AuditEntry] = []
        for path in sorted(self._base_dir.glob("*.jsonl")):
            for line in path.read_text(encoding="utf-8").splitlines():
                if line.strip():
                    entries.append(AuditEntry(**json.loads(line)))
        return entries

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def log_event(
        self,
        action: str,
        host: str,
        resource: str,
        details: Optional[dict[str, Any]] = None,
        success: bool = True,
    ) -> AuditEntry:
        """Record an audit event and return the created entry."""
        now = datetime.now(timezone.utc)
        entry = AuditEntry(
            id=uuid.uuid4().hex[:16],
            timestamp=now.isoformat(),
            actor=self.actor,
            action=action,
            host=host,
            resource=resource,
            details=details or {},
            success=success,
        )
        with self._log_file_for_date(now).open("a", encoding="utf-8") as fh:
            fh.write(json.dumps(asdict(entry)) + "\n")
        return entry

    def get_events(
        self,
        *,
        host: Optional[str] = None,
        action: Optional[str] = None,
        start_date: Optional[str] = None,
        limit: int = 200,
    ) -> list[AuditEntry]:
        """Return filtered audit events, newest first."""
        entries = self._read_all_entries()

        if host:
            entries = [e for e in entries if e.host == host]
        if action:
            entries = [e for e in entries if e.action == action]
        if start_date:
            entries = [e for e in entries if e.timestamp >= start_date]

        entries.sort(key=lambda e: e.timestamp, reverse=True)
        return entries[:limit]

    def export_events(self, fmt: str = "json", **filters: Any) -> str:
        """Export audit events as ``json`` or ``csv``."""
        entries = self.get_events(**filters)

        if fmt == "csv":
            lines = ["id,timestamp,actor,action,host,resource,success"]
            for e in entries:
                lines.append(f"{e.id},{e.timestamp},{e.actor},{e.action},{e.host},{e.resource},{e.success}")
            return "\n".join(lines)

        return json.dumps([asdict(e) for e in entries], indent=2)
