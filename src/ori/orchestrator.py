from __future__ import annotations

import logging
import time
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any, Literal

from ori.analyzer import TaskAnalysis, analyze_task
from ori.capabilities import (
    FileMutationCapability,
    FileOperation,
    InMemoryLogStore,
    ModelExecutionCapability,
    PersistenceCapability,
    ResilientCapability,
    RetryPolicy,
)
from ori.config import OriConfig
from ori.errors import (
    ErrorKind,
    FileOpError,
    GateAbortError,
    InvalidInputError,
    MaxRetriesExceededError,
    OriError,
    PhaseError,
)
from ori.gate import GateAction, QualityGateEngine
from ori.packet import HandoffPacket, PhaseId, WorkflowStatus
from ori.phases import (
    DocumentPhase,
    ImplementPhase,
    PhaseExecutor,
    ResearchPhase,
    SmeGatePhase,
    StrategyPhase,
    VerifyPhase,
    applicable_smes,
)

logger = logging.getLogger(__name__)

ResumeDecision = Literal["proceed", "fix", "abort"]
RESUME_DECISIONS = ("proceed", "fix", "abort")
SafetyHook = Callable[[PhaseId, HandoffPacket], None]


@dataclass(slots=True)
class WorkflowFailure:
    kind: ErrorKind
    trace_id: str
    last_completed_phase: PhaseId | None
    message: str
    cause_kind: ErrorKind | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind.value,
            "traceId": self.trace_id,
            "lastCompletedPhase": (
                self.last_completed_phase.value if self.last_completed_phase else None
            ),
            "message": self.message,
            "causeKind": self.cause_kind.value if self.cause_kind else None,
        }


@dataclass(slots=True)
class WorkflowResult:
    status: WorkflowStatus
    packet: HandoffPacket
    failure: WorkflowFailure | None = None
    pause: dict[str, Any] | None = None

    @property
    def trace_id(self) -> str:
        return self.packet.trace_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "traceId": self.packet.trace_id,
            "packet": self.packet.to_dict(),
            "failure": self.failure.to_dict() if self.failure else None,
            "pause": self.pause,
        }


class WorkflowOrchestrator:
    """Drives a handoff packet through the phase sequence.

    Phases run one at a time. Each phase works on a copy of the packet and the
    copy is committed only when the phase succeeds, so a failed, paused or
    cancelled workflow always reports the last committed packet. A Critical or
    High SME finding pauses the workflow until ``resume`` is called with
    ``proceed``, ``fix`` (loop back to Verify) or ``abort``.
    """

    def __init__(
        self,
        config: OriConfig,
        model: ModelExecutionCapability,
        *,
        files: FileMutationCapability | None = None,
        store: PersistenceCapability | None = None,
        fallback: ModelExecutionCapability | None = None,
        analyzer: Callable[[str], TaskAnalysis] = analyze_task,
        gate: QualityGateEngine | None = None,
        hooks: Mapping[str, SafetyHook] | None = None,
        executors: Mapping[PhaseId, PhaseExecutor] | None = None,
    ) -> None:
        self.config = config
        self.files = files
        if store is None and config.logging.enabled:
            store = InMemoryLogStore()
        self.store = store if config.logging.enabled else None
        self.hooks = dict(hooks or {})
        policy = RetryPolicy(
            max_retries=max(0, int(config.workflow.model_retries)),
            backoff_seconds=max(0.0, float(config.workflow.retry_backoff_seconds)),
            timeout_seconds=float(config.workflow.capability_timeout_seconds),
        )
        self.model = ResilientCapability(
            primary_name="primary",
            primary=model,
            retry_policy=policy,
            fallback_name="fallback" if fallback is not None else None,
            fallback=fallback,
            event_hook=self._capability_event,
        )
        default_executors: dict[PhaseId, PhaseExecutor] = {
            PhaseId.STRATEGY: StrategyPhase(config, analyzer),
            PhaseId.RESEARCH: ResearchPhase(config),
            PhaseId.VERIFY: VerifyPhase(config),
            PhaseId.SME_GATE: SmeGatePhase(config, gate),
            PhaseId.IMPLEMENT: ImplementPhase(config, files),
            PhaseId.DOCUMENT: DocumentPhase(config, files),
        }
        default_executors.update(executors or {})
        self.executors = default_executors
        self._cancelled = False
        self._trace_id: str | None = None

    def cancel(self) -> None:
        """Request an abort; observed at the next phase boundary."""
        self._cancelled = True

    async def execute(
        self,
        task: str,
        *,
        context_hints: dict[str, Any] | None = None,
        trace_id: str | None = None,
    ) -> WorkflowResult:
        self._cancelled = False
        packet = HandoffPacket.create(task, trace_id=trace_id, hints=context_hints)
        self._trace_id = packet.trace_id
        logger.info(
            "Workflow started",
            extra={"trace_id": packet.trace_id, "phase": packet.phase.current.value},
        )
        self._log(packet, "workflow_started", {"task": task, "hints": context_hints or {}})
        return await self._drive(packet)

    async def resume(
        self,
        packet: HandoffPacket,
        decision: ResumeDecision,
        notes: str | None = None,
    ) -> WorkflowResult:
        if decision not in RESUME_DECISIONS:
            raise InvalidInputError(
                f"Unknown resume decision {decision!r}; "
                f"expected one of {', '.join(RESUME_DECISIONS)}."
            )
        if packet.status is not WorkflowStatus.PAUSED:
            raise InvalidInputError(
                f"Workflow {packet.trace_id} is {packet.status.value}, not paused."
            )
        self._cancelled = False
        self._trace_id = packet.trace_id
        packet = packet.clone()
        packet.status = WorkflowStatus.RUNNING
        self._log(packet, "workflow_resumed", {"decision": decision, "notes": notes})
        logger.info(
            "Workflow resumed",
            extra={
                "trace_id": packet.trace_id,
                "phase": packet.phase.current.value,
                "decision": decision,
            },
        )

        if decision == "abort":
            return self._abort(packet, "Workflow aborted after review.")
        if decision == "proceed":
            packet.phase.advance()
            return await self._drive(packet)

        packet.metadata.loop_backs += 1
        if notes:
            packet.metadata.remediations.append(notes)
        if packet.metadata.loop_backs > self.config.workflow.max_loop_backs:
            return self._fail(
                packet,
                MaxRetriesExceededError(
                    f"Exceeded {self.config.workflow.max_loop_backs} loop-backs to verification."
                ),
            )
        if packet.phase.current is not PhaseId.VERIFY:
            packet.phase.rewind(PhaseId.VERIFY)
        return await self._drive(packet)

    async def resume_from_log(
        self,
        trace_id: str,
        decision: ResumeDecision,
        notes: str | None = None,
    ) -> WorkflowResult:
        return await self.resume(self.load_packet(trace_id), decision, notes)

    def load_packet(self, trace_id: str) -> HandoffPacket:
        """Return the most recent packet snapshot recorded for ``trace_id``."""
        if self.store is None:
            raise OriError("Logging is disabled; no packet history is available.")
        for entry in reversed(self.store.read_log(trace_id)):
            if isinstance(entry.get("packet"), dict):
                return HandoffPacket.from_dict(entry["packet"])
        raise OriError(f"No packet recorded for trace {trace_id}.", kind=ErrorKind.NOT_FOUND)

    async def _drive(self, packet: HandoffPacket) -> WorkflowResult:
        while True:
            if self._cancelled:
                return self._abort(packet, "Workflow cancelled.")
            phase = packet.phase.current
            if phase is PhaseId.SME_GATE and not applicable_smes(self.config, packet):
                if phase.value not in packet.metadata.skipped_phases:
                    packet.metadata.skipped_phases.append(phase.value)
                self._log(packet, "phase_skipped", {})
                logger.info(
                    "Phase skipped", extra={"trace_id": packet.trace_id, "phase": phase.value}
                )
                packet.phase.advance()
                continue

            executor = self.executors[phase]
            try:
                self._run_hooks("pre_phase", phase, packet)
                started = time.monotonic()
                updated = await executor.run(packet, self.model)
                updated.metadata.phase_durations[phase.value] = round(
                    time.monotonic() - started, 3
                )
                self._run_hooks("post_phase", phase, updated)
            except OriError as exc:
                if executor.fatal:
                    return self._fail(packet, exc)
                packet.metadata.warnings.append(f"{phase.value} failed: {exc}")
                logger.warning(
                    "Non-fatal phase failure",
                    extra={"trace_id": packet.trace_id, "phase": phase.value, "error": str(exc)},
                )
                return self._complete(packet)

            packet = updated
            self._log(packet, "phase_completed", self._phase_summary(packet, phase))
            logger.info(
                "Phase completed",
                extra={
                    "trace_id": packet.trace_id,
                    "phase": phase.value,
                    "duration_seconds": packet.metadata.phase_durations[phase.value],
                },
            )

            if phase is PhaseId.VERIFY:
                decision = packet.context["verification"]["decision"]
                if decision != "auto_proceed":
                    if self.config.workflow.pause_on_verify_review:
                        return self._pause(packet, "verification", {"decision": decision})
                    packet.metadata.warnings.append(
                        f"Verification recommended {decision}; continuing because "
                        "workflow.pause_on_verify_review is off."
                    )
                    logger.warning(
                        "Verification review skipped",
                        extra={
                            "trace_id": packet.trace_id,
                            "phase": phase.value,
                            "decision": decision,
                        },
                    )
            elif phase is PhaseId.SME_GATE:
                if packet.context["gate"]["action"] == GateAction.PAUSE.value:
                    return self._pause(packet, "gate", dict(packet.context["gate"]))
            elif phase is PhaseId.IMPLEMENT:
                implementation = packet.context["implementation"]
                if implementation["rollback_requested"]:
                    return await self._rollback(packet, implementation)

            if packet.phase.next is None:
                return self._complete(packet)
            packet.phase.advance()

    def _phase_summary(self, packet: HandoffPacket, phase: PhaseId) -> dict[str, Any]:
        summary: dict[str, Any] = {
            "duration_seconds": packet.metadata.phase_durations.get(phase.value),
            "model": packet.metadata.models_used.get(phase.value),
        }
        if phase is PhaseId.VERIFY:
            summary["decision"] = packet.context["verification"]["decision"]
        elif phase is PhaseId.SME_GATE:
            summary["gate"] = packet.context["gate"]
            if self.config.logging.log_sme_reviews:
                summary["sme_reviews"] = {
                    name: review.to_dict() for name, review in packet.sme_reviews.items()
                }
        elif phase is PhaseId.IMPLEMENT:
            summary["operations"] = packet.context["implementation"]["operations"]
        if self.config.logging.log_handoff_packets:
            summary["packet"] = packet.to_dict()
        return summary

    async def _rollback(
        self,
        packet: HandoffPacket,
        implementation: dict[str, Any],
    ) -> WorkflowResult:
        applied = [FileOperation.from_dict(item) for item in implementation["applied"]]
        failed = [item for item in implementation["operations"] if item["status"] == "failed"]
        message = "; ".join(f"{item['path']}: {item.get('error', '')}" for item in failed)
        if self.files is not None and applied:
            try:
                await self.files.rollback(applied)
            except FileOpError as exc:
                packet.metadata.warnings.append(f"Rollback incomplete: {exc}")
                logger.error(
                    "Rollback failed",
                    extra={"trace_id": packet.trace_id, "phase": PhaseId.IMPLEMENT.value},
                )
        self._log(
            packet,
            "rollback",
            {"paths": [operation.path for operation in applied]},
        )
        return self._fail(packet, FileOpError(f"File operations failed: {message}"))

    def _run_hooks(self, stage: str, phase: PhaseId, packet: HandoffPacket) -> None:
        settings = self.config.safety_hooks
        if not settings.enabled:
            return
        for name in getattr(settings, stage).get(phase.value, []):
            hook = self.hooks.get(name)
            if hook is None:
                packet.metadata.warnings.append(f"Safety hook '{name}' is not registered.")
                continue
            try:
                hook(phase, packet)
            except OriError as exc:
                raise PhaseError(
                    f"Safety hook '{name}' rejected {stage} of {phase.value}: {exc}",
                    phase=phase.value,
                    cause_kind=exc.kind,
                ) from exc

    def _run_emergency_hooks(self, packet: HandoffPacket) -> None:
        settings = self.config.safety_hooks
        if not settings.enabled:
            return
        for name in settings.emergency:
            hook = self.hooks.get(name)
            if hook is None:
                packet.metadata.warnings.append(f"Safety hook '{name}' is not registered.")
                continue
            try:
                hook(packet.phase.current, packet)
            except OriError as exc:
                packet.metadata.warnings.append(f"Emergency hook '{name}' failed: {exc}")
                logger.error(
                    "Emergency hook failed",
                    extra={"trace_id": packet.trace_id, "hook": name, "error": str(exc)},
                )

    def _pause(
        self,
        packet: HandoffPacket,
        reason: str,
        details: dict[str, Any],
    ) -> WorkflowResult:
        packet.status = WorkflowStatus.PAUSED
        pause = {"reason": reason, "phase": packet.phase.current.value, **details}
        # Resuming needs the packet even when packet logging is switched off.
        self._log(packet, "workflow_paused", {"pause": pause, "packet": packet.to_dict()})
        logger.info(
            "Workflow paused",
            extra={
                "trace_id": packet.trace_id,
                "phase": packet.phase.current.value,
                "reason": reason,
            },
        )
        return WorkflowResult(WorkflowStatus.PAUSED, packet, pause=pause)

    def _complete(self, packet: HandoffPacket) -> WorkflowResult:
        packet.status = WorkflowStatus.COMPLETED
        self._log(packet, "workflow_completed", {"packet": packet.to_dict()})
        logger.info(
            "Workflow completed",
            extra={"trace_id": packet.trace_id, "phase": packet.phase.current.value},
        )
        return WorkflowResult(WorkflowStatus.COMPLETED, packet)

    def _fail(self, packet: HandoffPacket, error: OriError) -> WorkflowResult:
        packet.status = WorkflowStatus.FAILED
        failure = WorkflowFailure(
            kind=error.kind,
            trace_id=packet.trace_id,
            last_completed_phase=packet.last_completed_phase,
            message=str(error),
            cause_kind=getattr(error, "cause_kind", None),
        )
        self._run_emergency_hooks(packet)
        self._log(
            packet,
            "workflow_failed",
            {"failure": failure.to_dict(), "packet": packet.to_dict()},
        )
        logger.error(
            "Workflow failed",
            extra={
                "trace_id": packet.trace_id,
                "phase": packet.phase.current.value,
                "kind": error.kind.value,
                "error": str(error),
            },
        )
        return WorkflowResult(WorkflowStatus.FAILED, packet, failure=failure)

    def _abort(self, packet: HandoffPacket, message: str) -> WorkflowResult:
        packet.status = WorkflowStatus.ABORTED
        error = GateAbortError(message)
        failure = WorkflowFailure(
            kind=error.kind,
            trace_id=packet.trace_id,
            last_completed_phase=packet.last_completed_phase,
            message=message,
        )
        self._run_emergency_hooks(packet)
        self._log(
            packet,
            "workflow_aborted",
            {"failure": failure.to_dict(), "packet": packet.to_dict()},
        )
        logger.warning(
            "Workflow aborted",
            extra={"trace_id": packet.trace_id, "phase": packet.phase.current.value},
        )
        return WorkflowResult(WorkflowStatus.ABORTED, packet, failure=failure)

    def _log(self, packet: HandoffPacket, event: str, payload: dict[str, Any]) -> None:
        if self.store is None:
            return
        self.store.append_log(
            packet.trace_id,
            packet.phase.current.value,
            {"event": event, "seq": packet.metadata.loop_backs, **payload},
        )

    def _capability_event(self, event: dict[str, Any]) -> None:
        logger.info(
            "Capability event",
            extra={"trace_id": self._trace_id, **event},
        )
