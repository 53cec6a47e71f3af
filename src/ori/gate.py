from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from ori.packet import Finding, Severity

BLOCKING_SEVERITIES = frozenset({Severity.CRITICAL, Severity.HIGH})


class GateAction(StrEnum):
    PROCEED = "proceed"
    PAUSE = "pause"
    ABORT = "abort"


@dataclass(frozen=True, slots=True)
class FlaggedFinding:
    sme: str
    finding: Finding

    def to_dict(self) -> dict[str, Any]:
        return {"sme": self.sme, **self.finding.to_dict()}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> FlaggedFinding:
        payload = dict(data)
        sme = str(payload.pop("sme", ""))
        return cls(sme=sme, finding=Finding.from_dict(payload))


@dataclass(frozen=True, slots=True)
class GateDecision:
    action: GateAction
    critical: tuple[FlaggedFinding, ...] = field(default_factory=tuple)
    high: tuple[FlaggedFinding, ...] = field(default_factory=tuple)

    @property
    def blocking(self) -> tuple[FlaggedFinding, ...]:
        return self.critical + self.high

    def to_dict(self) -> dict[str, Any]:
        return {
            "action": self.action.value,
            "critical": [item.to_dict() for item in self.critical],
            "high": [item.to_dict() for item in self.high],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> GateDecision:
        return cls(
            action=GateAction(data.get("action", GateAction.PROCEED.value)),
            critical=tuple(FlaggedFinding.from_dict(item) for item in data.get("critical", [])),
            high=tuple(FlaggedFinding.from_dict(item) for item in data.get("high", [])),
        )


class QualityGateEngine:
    """Turns SME findings into a control decision.

    ``decide`` only ever yields ``PROCEED`` or ``PAUSE``; ``ABORT`` is the
    orchestrator's translation of an external abort choice after a pause.
    """

    def decide(self, findings: Mapping[str, Sequence[Finding]]) -> GateDecision:
        critical: list[FlaggedFinding] = []
        high: list[FlaggedFinding] = []
        for sme, items in findings.items():
            for finding in items:
                if finding.severity is Severity.CRITICAL:
                    critical.append(FlaggedFinding(sme=sme, finding=finding))
                elif finding.severity is Severity.HIGH:
                    high.append(FlaggedFinding(sme=sme, finding=finding))
        if critical or high:
            return GateDecision(GateAction.PAUSE, critical=tuple(critical), high=tuple(high))
        return GateDecision(GateAction.PROCEED)

    @staticmethod
    def abort() -> GateDecision:
        return GateDecision(GateAction.ABORT)
