"""Change-sets: the plan of a pass, expressed as data before anything is touched."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class Step(Enum):
    """Apply steps, in the order they must run."""

    IDENTITY = "identity"
    FILESYSTEM = "filesystem"
    SECRETS = "secrets"
    SERVICES = "services"


STEP_ORDER = [Step.IDENTITY, Step.FILESYSTEM, Step.SECRETS, Step.SERVICES]


@dataclass
class Change:
    """One mutation a pass would make."""

    step: Step
    action: str
    target: str
    role: str = ""
    detail: str = ""
    params: dict[str, Any] = field(default_factory=dict)

    def describe(self) -> str:
        text = f"{self.step.value}: {self.action} {self.target}"
        if self.role:
            text += f" (role {self.role})"
        if self.detail:
            text += f" - {self.detail}"
        return text

    def to_dict(self) -> dict:
        # params may carry expected ownership but never secret content
        return {
            "step": self.step.value,
            "action": self.action,
            "target": self.target,
            "role": self.role,
            "detail": self.detail,
        }


class FindingKind:
    WARNING = "warning"
    SECRET_DRIFT = "secret_drift"
    HELD = "held"


@dataclass
class Finding:
    """Something a pass noticed but will not change."""

    kind: str
    message: str
    target: str = ""
    role: str = ""

    @property
    def is_failure(self) -> bool:
        return self.kind == FindingKind.SECRET_DRIFT

    def describe(self) -> str:
        where = f" (role {self.role})" if self.role else ""
        return f"[{self.kind}] {self.target}{where}: {self.message}"

    def to_dict(self) -> dict:
        return {"kind": self.kind, "message": self.message, "target": self.target, "role": self.role}


@dataclass
class ChangeSet:
    host: str
    changes: list[Change] = field(default_factory=list)
    findings: list[Finding] = field(default_factory=list)

    def for_step(self, step: Step) -> list[Change]:
        return [c for c in self.changes if c.step == step]

    def extend(self, changes: list[Change], findings: list[Finding] | None = None) -> None:
        self.changes.extend(changes)
        self.findings.extend(findings or [])

    @property
    def is_empty(self) -> bool:
        return not self.changes

    def summary(self) -> str:
        counts = {step: len(self.for_step(step)) for step in STEP_ORDER}
        parts = [f"{step.value}={n}" for step, n in counts.items() if n]
        if not parts:
            return f"{self.host}: converged, no changes"
        return f"{self.host}: {len(self.changes)} change(s) [{', '.join(parts)}]"
