"""Handoff packet: the versioned context record threaded through every phase.

The packet is serialized with camelCase keys (the wire format) while the
Python attributes stay snake_case. ``HandoffPacket.from_dict`` rejects any
schema version outside ``SUPPORTED_SCHEMA_VERSIONS`` instead of upgrading.
"""

from __future__ import annotations

import copy
import re
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import StrEnum
from typing import Any

from ori.errors import InvalidInputError, PhaseError, SchemaVersionMismatchError

SCHEMA_VERSION = "1.0.0"
SUPPORTED_SCHEMA_VERSIONS = frozenset({SCHEMA_VERSION})
UUID_V4_PATTERN = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-4[0-9a-f]{3}-[89ab][0-9a-f]{3}-[0-9a-f]{12}$",
    re.IGNORECASE,
)
RISK_FLAGS = ("security", "privacy", "compliance", "policy", "performance")
CONTEXT_KEYS = frozenset(
    {
        "hints",
        "strategy",
        "findings",
        "verification",
        "gate",
        "implementation",
        "documentation",
    }
)


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def generate_trace_id() -> str:
    return str(uuid.uuid4())


def is_valid_trace_id(value: str) -> bool:
    return bool(UUID_V4_PATTERN.match(value))


class PhaseId(StrEnum):
    STRATEGY = "strategy"
    RESEARCH = "research"
    VERIFY = "verify"
    SME_GATE = "sme_gate"
    IMPLEMENT = "implement"
    DOCUMENT = "document"

    @property
    def ordinal(self) -> str:
        return PHASE_ORDINALS[self]


PHASE_SEQUENCE: tuple[PhaseId, ...] = (
    PhaseId.STRATEGY,
    PhaseId.RESEARCH,
    PhaseId.VERIFY,
    PhaseId.SME_GATE,
    PhaseId.IMPLEMENT,
    PhaseId.DOCUMENT,
)
PHASE_ORDINALS = {
    PhaseId.STRATEGY: "0",
    PhaseId.RESEARCH: "1",
    PhaseId.VERIFY: "2",
    PhaseId.SME_GATE: "2.5",
    PhaseId.IMPLEMENT: "3",
    PhaseId.DOCUMENT: "4",
}


class Severity(StrEnum):
    CRITICAL = "Critical"
    HIGH = "High"
    MEDIUM = "Medium"
    LOW = "Low"
    INFO = "Info"

    @property
    def rank(self) -> int:
        return SEVERITY_RANK[self]

    @classmethod
    def parse(cls, value: Any) -> Severity:
        normalized = str(value).strip().lower()
        for member in cls:
            if member.value.lower() == normalized:
                return member
        raise InvalidInputError(f"Unknown finding severity: {value!r}")


SEVERITY_RANK = {
    Severity.CRITICAL: 4,
    Severity.HIGH: 3,
    Severity.MEDIUM: 2,
    Severity.LOW: 1,
    Severity.INFO: 0,
}


class WorkflowStatus(StrEnum):
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    ABORTED = "aborted"


@dataclass(slots=True)
class Finding:
    severity: Severity
    category: str
    description: str
    location: str = ""
    recommendation: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "severity": self.severity.value,
            "category": self.category,
            "description": self.description,
            "location": self.location,
            "recommendation": self.recommendation,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Finding:
        if not isinstance(data, dict):
            raise InvalidInputError("Finding must be an object.")
        return cls(
            severity=Severity.parse(data.get("severity", "")),
            category=str(data.get("category", "")),
            description=str(data.get("description", "")),
            location=str(data.get("location", "")),
            recommendation=str(data.get("recommendation", "")),
        )


@dataclass(slots=True)
class SmeReview:
    executed: bool
    overall_risk: str = "unknown"
    findings: list[Finding] = field(default_factory=list)
    recommendation: str = "Proceed"
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "executed": self.executed,
            "overallRisk": self.overall_risk,
            "findings": [finding.to_dict() for finding in self.findings],
            "recommendation": self.recommendation,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SmeReview:
        return cls(
            executed=bool(data.get("executed", False)),
            overall_risk=str(data.get("overallRisk", "unknown")),
            findings=[Finding.from_dict(item) for item in data.get("findings", [])],
            recommendation=str(data.get("recommendation", "Proceed")),
            error=data.get("error"),
        )


@dataclass(slots=True)
class PhaseState:
    current: PhaseId = PhaseId.STRATEGY
    completed: list[PhaseId] = field(default_factory=list)
    remaining: list[PhaseId] = field(default_factory=lambda: list(PHASE_SEQUENCE[1:]))

    @property
    def next(self) -> PhaseId | None:
        return self.remaining[0] if self.remaining else None

    def advance(self) -> PhaseId:
        if not self.remaining:
            raise PhaseError(f"No phase follows '{self.current}'.", phase=self.current)
        self.completed.append(self.current)
        self.current = self.remaining.pop(0)
        return self.current

    def rewind(self, target: PhaseId) -> None:
        """Move ``current`` back to an earlier phase of the sequence."""
        if target not in self.completed:
            raise PhaseError(
                f"Cannot rewind to '{target}': it has not completed yet.",
                phase=self.current,
            )
        index = PHASE_SEQUENCE.index(target)
        self.completed = list(PHASE_SEQUENCE[:index])
        self.current = target
        self.remaining = list(PHASE_SEQUENCE[index + 1 :])

    def check_invariant(self) -> None:
        index = PHASE_SEQUENCE.index(self.current)
        if (
            self.completed != list(PHASE_SEQUENCE[:index])
            or self.remaining != list(PHASE_SEQUENCE[index + 1 :])
        ):
            raise InvalidInputError(
                "Phase state is inconsistent with the fixed phase sequence: "
                f"completed={[p.value for p in self.completed]} current={self.current.value} "
                f"remaining={[p.value for p in self.remaining]}"
            )

    def to_dict(self) -> dict[str, Any]:
        return {
            "current": self.current.value,
            "next": self.next.value if self.next else None,
            "completed": [phase.value for phase in self.completed],
            "remaining": [phase.value for phase in self.remaining],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PhaseState:
        try:
            state = cls(
                current=PhaseId(data["current"]),
                completed=[PhaseId(item) for item in data.get("completed", [])],
                remaining=[PhaseId(item) for item in data.get("remaining", [])],
            )
        except (KeyError, ValueError, TypeError) as exc:
            raise InvalidInputError(f"Malformed phase state: {exc}") from exc
        state.check_invariant()
        return state


@dataclass(slots=True)
class UserRequest:
    original: str
    parsed_intent: str = ""
    domain: str = ""
    clarity_score: float = 0.0
    risk_flags: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "original": self.original,
            "parsedIntent": self.parsed_intent,
            "domain": self.domain,
            "clarityScore": self.clarity_score,
            "riskFlags": list(self.risk_flags),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> UserRequest:
        flags = [str(flag) for flag in data.get("riskFlags", [])]
        unknown = [flag for flag in flags if flag not in RISK_FLAGS]
        if unknown:
            raise InvalidInputError(f"Unknown risk flags: {', '.join(unknown)}")
        try:
            clarity_score = float(data.get("clarityScore", 0.0))
        except (TypeError, ValueError) as exc:
            raise InvalidInputError(f"Malformed clarityScore: {exc}") from exc
        return cls(
            original=str(data.get("original", "")),
            parsed_intent=str(data.get("parsedIntent", "")),
            domain=str(data.get("domain", "")),
            clarity_score=clarity_score,
            risk_flags=flags,
        )


@dataclass(slots=True)
class PacketMetadata:
    started_at: str = field(default_factory=_utcnow_iso)
    models_used: dict[str, str] = field(default_factory=dict)
    phase_durations: dict[str, float] = field(default_factory=dict)
    skipped_phases: list[str] = field(default_factory=list)
    loop_backs: int = 0
    remediations: list[str] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "startedAt": self.started_at,
            "modelsUsed": dict(self.models_used),
            "phaseDurations": dict(self.phase_durations),
            "skippedPhases": list(self.skipped_phases),
            "loopBacks": self.loop_backs,
            "remediations": list(self.remediations),
            "warnings": list(self.warnings),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> PacketMetadata:
        return cls(
            started_at=str(data.get("startedAt") or _utcnow_iso()),
            models_used={str(k): str(v) for k, v in data.get("modelsUsed", {}).items()},
            phase_durations={
                str(k): float(v) for k, v in data.get("phaseDurations", {}).items()
            },
            skipped_phases=[str(item) for item in data.get("skippedPhases", [])],
            loop_backs=int(data.get("loopBacks", 0)),
            remediations=[str(item) for item in data.get("remediations", [])],
            warnings=[str(item) for item in data.get("warnings", [])],
        )


@dataclass(slots=True)
class HandoffPacket:
    trace_id: str
    user_request: UserRequest
    schema_version: str = SCHEMA_VERSION
    status: WorkflowStatus = WorkflowStatus.RUNNING
    phase: PhaseState = field(default_factory=PhaseState)
    constraints: list[str] = field(default_factory=list)
    acceptance_criteria: list[str] = field(default_factory=list)
    safety_invariants: list[str] = field(default_factory=list)
    sme_reviews: dict[str, SmeReview] = field(default_factory=dict)
    context: dict[str, Any] = field(default_factory=dict)
    metadata: PacketMetadata = field(default_factory=PacketMetadata)

    @classmethod
    def create(
        cls,
        task: str,
        *,
        trace_id: str | None = None,
        hints: dict[str, Any] | None = None,
    ) -> HandoffPacket:
        if trace_id is None or not is_valid_trace_id(trace_id):
            trace_id = generate_trace_id()
        return cls(
            trace_id=trace_id,
            user_request=UserRequest(original=task),
            context={"hints": copy.deepcopy(hints or {})},
        )

    def clone(self) -> HandoffPacket:
        return copy.deepcopy(self)

    @property
    def last_completed_phase(self) -> PhaseId | None:
        if self.status is WorkflowStatus.COMPLETED:
            return self.phase.current
        return self.phase.completed[-1] if self.phase.completed else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "schemaVersion": self.schema_version,
            "traceId": self.trace_id,
            "status": self.status.value,
            "phase": self.phase.to_dict(),
            "userRequest": self.user_request.to_dict(),
            "constraints": list(self.constraints),
            "acceptanceCriteria": list(self.acceptance_criteria),
            "safetyInvariants": list(self.safety_invariants),
            "smeReviews": {name: review.to_dict() for name, review in self.sme_reviews.items()},
            "context": copy.deepcopy(self.context),
            "metadata": self.metadata.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Any) -> HandoffPacket:
        if not isinstance(data, dict):
            raise InvalidInputError("Handoff packet must be a JSON object.")
        version = data.get("schemaVersion")
        if version not in SUPPORTED_SCHEMA_VERSIONS:
            raise SchemaVersionMismatchError(
                f"Unsupported handoff packet schemaVersion {version!r}; "
                f"supported: {', '.join(sorted(SUPPORTED_SCHEMA_VERSIONS))}"
            )
        trace_id = data.get("traceId")
        if not isinstance(trace_id, str) or not trace_id:
            raise InvalidInputError("Handoff packet is missing traceId.")
        try:
            status = WorkflowStatus(data.get("status", WorkflowStatus.RUNNING.value))
        except ValueError as exc:
            raise InvalidInputError(f"Unknown workflow status: {data.get('status')!r}") from exc
        context = data.get("context", {})
        if not isinstance(context, dict) or not set(context) <= CONTEXT_KEYS:
            raise InvalidInputError("Handoff packet context has unexpected keys.")
        try:
            return cls(
                trace_id=trace_id,
                user_request=UserRequest.from_dict(data.get("userRequest", {})),
                schema_version=version,
                status=status,
                phase=PhaseState.from_dict(data.get("phase", {})),
                constraints=[str(item) for item in data.get("constraints", [])],
                acceptance_criteria=[str(item) for item in data.get("acceptanceCriteria", [])],
                safety_invariants=[str(item) for item in data.get("safetyInvariants", [])],
                sme_reviews={
                    str(name): SmeReview.from_dict(review)
                    for name, review in data.get("smeReviews", {}).items()
                },
                context=copy.deepcopy(context),
                metadata=PacketMetadata.from_dict(data.get("metadata", {})),
            )
        except (AttributeError, TypeError, ValueError) as exc:
            raise InvalidInputError(f"Malformed handoff packet: {exc}") from exc


# None marks fields no phase may write after the packet is created.
FIELD_OWNERS: dict[str, PhaseId | None] = {
    "schemaVersion": None,
    "traceId": None,
    "userRequest.original": None,
    "context.hints": None,
    "userRequest.parsedIntent": PhaseId.STRATEGY,
    "userRequest.domain": PhaseId.STRATEGY,
    "userRequest.clarityScore": PhaseId.STRATEGY,
    "userRequest.riskFlags": PhaseId.STRATEGY,
    "context.strategy": PhaseId.STRATEGY,
    "context.findings": PhaseId.RESEARCH,
    "context.verification": PhaseId.VERIFY,
    "context.gate": PhaseId.SME_GATE,
    "smeReviews": PhaseId.SME_GATE,
    "context.implementation": PhaseId.IMPLEMENT,
    "context.documentation": PhaseId.DOCUMENT,
}
APPEND_ONLY_FIELDS = ("constraints", "acceptanceCriteria", "safetyInvariants")


def _lookup(payload: dict[str, Any], path: str) -> Any:
    value: Any = payload
    for part in path.split("."):
        if not isinstance(value, dict):
            return None
        value = value.get(part)
    return value


def check_phase_writes(before: HandoffPacket, after: HandoffPacket, phase: PhaseId) -> None:
    """Reject a phase result that touched fields owned by someone else."""
    old = before.to_dict()
    new = after.to_dict()
    for path, owner in FIELD_OWNERS.items():
        if owner == phase:
            continue
        if _lookup(old, path) != _lookup(new, path):
            raise PhaseError(f"Phase '{phase}' may not write '{path}'.", phase=phase)
    for name in APPEND_ONLY_FIELDS:
        previous = old[name]
        if new[name][: len(previous)] != previous:
            raise PhaseError(
                f"Phase '{phase}' removed or reordered entries of append-only '{name}'.",
                phase=phase,
            )
    unexpected = set(new["context"]) - CONTEXT_KEYS
    if unexpected:
        raise PhaseError(
            f"Phase '{phase}' wrote unknown context keys: {', '.join(sorted(unexpected))}",
            phase=phase,
        )
