import asyncio
from pathlib import Path
from typing import Any

import pytest

from ori.capabilities import InMemoryLogStore, LocalFileMutation
from ori.capabilities.base import ModelExecutionCapability
from ori.config import SME_ORDER, OriConfig
from ori.errors import CapabilityUnavailableError, ErrorKind, InvalidInputError, OriError
from ori.orchestrator import WorkflowOrchestrator
from ori.packet import HandoffPacket, PhaseId, WorkflowStatus

JWT_TASK = "Add JWT authentication to the UserService API using bcrypt"

CRITICAL_FINDING = {
    "severity": "Critical",
    "category": "secret-management",
    "description": "JWT signing secret is hardcoded",
    "location": "src/auth/jwt.py:12",
    "recommendation": "Load the secret from the environment",
}


class ScriptedModel(ModelExecutionCapability):
    def __init__(
        self,
        *,
        sme_rounds: list[list[dict[str, Any]]] | None = None,
        operations: list[dict[str, Any]] | None = None,
        confidence: str = "high",
        risk: str = "low",
        fail_roles: tuple[PhaseId, ...] = (),
        hang_roles: tuple[PhaseId, ...] = (),
    ) -> None:
        self.sme_rounds = list(sme_rounds or [])
        self.operations = operations or []
        self.confidence = confidence
        self.risk = risk
        self.fail_roles = fail_roles
        self.hang_roles = hang_roles
        self.calls: list[tuple[PhaseId, dict[str, Any]]] = []

    async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((role, request))
        if role in self.fail_roles:
            raise CapabilityUnavailableError("backend offline", retriable=False)
        if role in self.hang_roles:
            await asyncio.sleep(5)
        if role is PhaseId.STRATEGY:
            return {
                "parsed_intent": "Add JWT auth",
                "primary_questions": ["Which JWT library fits?"],
                "sources": ["docs"],
                "acceptance_criteria": ["Tokens expire after 15 minutes"],
                "safety_invariants": ["Secrets never logged"],
            }
        if role is PhaseId.RESEARCH:
            return {"findings": ["Use PyJWT"], "sources": ["pyjwt docs"], "confidence": "high"}
        if role is PhaseId.VERIFY:
            return {"confidence": self.confidence, "risk": self.risk, "issues": []}
        if role is PhaseId.SME_GATE:
            findings = self.sme_rounds.pop(0) if self.sme_rounds else []
            return {"overall_risk": "high" if findings else "low", "findings": findings}
        if role is PhaseId.IMPLEMENT:
            return {"operations": self.operations, "summary": "auth module"}
        return {"operations": [], "summary": "docs updated", "changelog": ["Added JWT auth"]}


def _security_config() -> OriConfig:
    config = OriConfig.default()
    config.sme_agents.enabled = True
    config.sme_agents.security.enabled = True
    return config


def test_workflow_without_sme_skips_gate_and_completes() -> None:
    model = ScriptedModel()
    orchestrator = WorkflowOrchestrator(OriConfig.default(), model)

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.COMPLETED
    packet = result.packet
    assert packet.status is WorkflowStatus.COMPLETED
    assert packet.phase.current is PhaseId.DOCUMENT
    assert packet.phase.remaining == []
    assert PhaseId.SME_GATE in packet.phase.completed
    assert packet.metadata.skipped_phases == ["sme_gate"]
    assert [role for role, _ in model.calls] == [
        PhaseId.STRATEGY,
        PhaseId.RESEARCH,
        PhaseId.VERIFY,
        PhaseId.IMPLEMENT,
        PhaseId.DOCUMENT,
    ]
    assert packet.user_request.risk_flags == ["security"]
    assert packet.context["verification"]["decision"] == "auto_proceed"
    assert packet.metadata.models_used["research"] == "opus"
    assert set(packet.metadata.phase_durations) == {
        "strategy",
        "research",
        "verify",
        "implement",
        "document",
    }


def test_critical_finding_pauses_then_proceed_completes(tmp_path: Path) -> None:
    model = ScriptedModel(
        sme_rounds=[[CRITICAL_FINDING]],
        operations=[{"kind": "create", "path": "src/auth/jwt.py", "content": "SECRET = env\n"}],
    )
    orchestrator = WorkflowOrchestrator(
        _security_config(), model, files=LocalFileMutation(tmp_path)
    )

    paused = asyncio.run(orchestrator.execute(JWT_TASK))

    assert paused.status is WorkflowStatus.PAUSED
    assert paused.packet.phase.current is PhaseId.SME_GATE
    assert paused.packet.phase.remaining == [PhaseId.IMPLEMENT, PhaseId.DOCUMENT]
    assert paused.pause is not None
    assert paused.pause["reason"] == "gate"
    assert len(paused.pause["critical"]) == 1
    assert paused.pause["high"] == []
    assert paused.pause["critical"][0]["sme"] == "security"
    assert paused.packet.sme_reviews["security"].recommendation == "Block"
    assert not (tmp_path / "src/auth/jwt.py").exists()

    resumed = asyncio.run(orchestrator.resume(paused.packet, "proceed"))

    assert resumed.status is WorkflowStatus.COMPLETED
    assert (tmp_path / "src/auth/jwt.py").read_text(encoding="utf-8") == "SECRET = env\n"
    assert resumed.packet.context["implementation"]["succeeded"] == 1
    assert paused.packet.status is WorkflowStatus.PAUSED


def test_abort_after_pause_reports_gate_abort() -> None:
    orchestrator = WorkflowOrchestrator(
        _security_config(), ScriptedModel(sme_rounds=[[CRITICAL_FINDING]])
    )
    paused = asyncio.run(orchestrator.execute(JWT_TASK))

    aborted = asyncio.run(orchestrator.resume(paused.packet, "abort"))

    assert aborted.status is WorkflowStatus.ABORTED
    assert aborted.failure is not None
    assert aborted.failure.kind is ErrorKind.GATE_ABORT
    assert aborted.failure.last_completed_phase is PhaseId.VERIFY
    assert aborted.packet.trace_id == paused.packet.trace_id


def test_fix_loops_back_to_verify_with_remediation_notes() -> None:
    model = ScriptedModel(sme_rounds=[[CRITICAL_FINDING], []])
    orchestrator = WorkflowOrchestrator(_security_config(), model)
    paused = asyncio.run(orchestrator.execute(JWT_TASK))

    result = asyncio.run(
        orchestrator.resume(paused.packet, "fix", notes="Move the secret to the environment")
    )

    assert result.status is WorkflowStatus.COMPLETED
    assert result.packet.metadata.loop_backs == 1
    assert result.packet.metadata.remediations == ["Move the secret to the environment"]
    verify_calls = [request for role, request in model.calls if role is PhaseId.VERIFY]
    assert len(verify_calls) == 2
    assert verify_calls[1]["remediations"] == ["Move the secret to the environment"]
    assert result.packet.context["gate"]["iteration"] == 1


def test_fix_beyond_loop_back_bound_fails() -> None:
    config = _security_config()
    config.workflow.max_loop_backs = 1
    model = ScriptedModel(sme_rounds=[[CRITICAL_FINDING], [CRITICAL_FINDING]])
    orchestrator = WorkflowOrchestrator(config, model)

    first = asyncio.run(orchestrator.execute(JWT_TASK))
    second = asyncio.run(orchestrator.resume(first.packet, "fix"))
    assert second.status is WorkflowStatus.PAUSED

    third = asyncio.run(orchestrator.resume(second.packet, "fix"))

    assert third.status is WorkflowStatus.FAILED
    assert third.failure is not None
    assert third.failure.kind is ErrorKind.MAX_RETRIES_EXCEEDED


def test_resume_rejects_packets_that_are_not_paused() -> None:
    orchestrator = WorkflowOrchestrator(OriConfig.default(), ScriptedModel())
    completed = asyncio.run(orchestrator.execute(JWT_TASK))

    with pytest.raises(InvalidInputError):
        asyncio.run(orchestrator.resume(completed.packet, "proceed"))


def test_capability_failure_escalates_to_phase_error() -> None:
    orchestrator = WorkflowOrchestrator(
        OriConfig.default(), ScriptedModel(fail_roles=(PhaseId.RESEARCH,))
    )

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.FAILED
    assert result.failure is not None
    assert result.failure.kind is ErrorKind.PHASE_ERROR
    assert result.failure.cause_kind is ErrorKind.CAPABILITY_UNAVAILABLE
    assert result.failure.last_completed_phase is PhaseId.STRATEGY
    assert result.failure.trace_id == result.packet.trace_id
    assert "strategy" in result.packet.context
    assert "findings" not in result.packet.context


def test_capability_timeout_is_reported_as_cause() -> None:
    config = OriConfig.default()
    config.workflow.capability_timeout_seconds = 0.05
    orchestrator = WorkflowOrchestrator(config, ScriptedModel(hang_roles=(PhaseId.VERIFY,)))

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.FAILED
    assert result.failure is not None
    assert result.failure.cause_kind is ErrorKind.TIMEOUT
    assert result.failure.last_completed_phase is PhaseId.RESEARCH


def test_short_task_fails_with_insufficient_input() -> None:
    orchestrator = WorkflowOrchestrator(OriConfig.default(), ScriptedModel())

    result = asyncio.run(orchestrator.execute("fix"))

    assert result.status is WorkflowStatus.FAILED
    assert result.failure is not None
    assert result.failure.kind is ErrorKind.INSUFFICIENT_INPUT
    assert result.failure.last_completed_phase is None


def test_document_failure_is_not_fatal() -> None:
    orchestrator = WorkflowOrchestrator(
        OriConfig.default(), ScriptedModel(fail_roles=(PhaseId.DOCUMENT,))
    )

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.COMPLETED
    assert any("document failed" in warning for warning in result.packet.metadata.warnings)
    assert "documentation" not in result.packet.context


def test_failed_file_operation_rolls_back_applied_changes(tmp_path: Path) -> None:
    model = ScriptedModel(
        operations=[
            {"kind": "create", "path": "new.txt", "content": "new\n"},
            {"kind": "edit", "path": "missing.txt", "content": "x\n"},
            {"kind": "create", "path": "later.txt", "content": "later\n"},
        ]
    )
    orchestrator = WorkflowOrchestrator(
        OriConfig.default(), model, files=LocalFileMutation(tmp_path)
    )

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.FAILED
    assert result.failure is not None
    assert result.failure.kind is ErrorKind.FILE_OP_ERROR
    assert "missing.txt" in result.failure.message
    assert not (tmp_path / "new.txt").exists()
    assert not (tmp_path / "later.txt").exists()
    statuses = [item["status"] for item in result.packet.context["implementation"]["operations"]]
    assert statuses == ["applied", "failed", "applied"]
    assert result.packet.context["implementation"]["operations"][1]["attempts"] == 3


def test_cancel_is_observed_at_next_phase_boundary() -> None:
    class CancellingModel(ScriptedModel):
        orchestrator: WorkflowOrchestrator

        async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
            if role is PhaseId.RESEARCH:
                self.orchestrator.cancel()
            return await super().invoke(role, request)

    model = CancellingModel()
    orchestrator = WorkflowOrchestrator(OriConfig.default(), model)
    model.orchestrator = orchestrator

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.ABORTED
    assert result.failure is not None
    assert result.failure.kind is ErrorKind.GATE_ABORT
    assert result.failure.last_completed_phase is PhaseId.RESEARCH
    assert "findings" in result.packet.context
    assert "verification" not in result.packet.context
    result.packet.phase.check_invariant()


def test_verify_review_pauses_when_configured() -> None:
    config = OriConfig.default()
    config.workflow.pause_on_verify_review = True
    orchestrator = WorkflowOrchestrator(config, ScriptedModel(confidence="medium"))

    paused = asyncio.run(orchestrator.execute(JWT_TASK))

    assert paused.status is WorkflowStatus.PAUSED
    assert paused.pause == {"reason": "verification", "phase": "verify", "decision": "full_review"}

    resumed = asyncio.run(orchestrator.resume(paused.packet, "proceed"))
    assert resumed.status is WorkflowStatus.COMPLETED


def test_resume_from_log_uses_recorded_packet() -> None:
    store = InMemoryLogStore()
    config = _security_config()
    first = WorkflowOrchestrator(
        config, ScriptedModel(sme_rounds=[[CRITICAL_FINDING]]), store=store
    )
    paused = asyncio.run(first.execute(JWT_TASK))

    second = WorkflowOrchestrator(config, ScriptedModel(), store=store)
    result = asyncio.run(second.resume_from_log(paused.trace_id, "proceed"))

    assert result.status is WorkflowStatus.COMPLETED
    assert result.trace_id == paused.trace_id
    events = [entry["event"] for entry in store.read_log(paused.trace_id)]
    assert events[0] == "workflow_started"
    assert "workflow_paused" in events
    assert "workflow_resumed" in events
    assert events[-1] == "workflow_completed"
    keys = [
        (entry["phase"], entry["event"], entry["seq"])
        for entry in store.read_log(paused.trace_id)
    ]
    assert len(keys) == len(set(keys))


def test_resume_from_log_without_history_raises() -> None:
    orchestrator = WorkflowOrchestrator(OriConfig.default(), ScriptedModel())

    with pytest.raises(OriError) as excinfo:
        asyncio.run(
            orchestrator.resume_from_log("5b0b8c1e-3f5a-4c1d-9e2b-1d2c3b4a5f60", "proceed")
        )

    assert excinfo.value.kind is ErrorKind.NOT_FOUND


def test_caller_trace_id_is_kept_when_valid() -> None:
    trace_id = "5b0b8c1e-3f5a-4c1d-9e2b-1d2c3b4a5f60"
    orchestrator = WorkflowOrchestrator(OriConfig.default(), ScriptedModel())

    result = asyncio.run(orchestrator.execute(JWT_TASK, trace_id=trace_id))

    assert result.trace_id == trace_id


def test_safety_hooks_run_and_can_reject_a_phase() -> None:
    config = OriConfig.default()
    config.safety_hooks.enabled = True
    config.safety_hooks.pre_phase = {"research": ["audit"], "implement": ["freeze"]}
    config.safety_hooks.emergency = ["notify"]
    seen: list[str] = []

    def audit(phase: PhaseId, packet: HandoffPacket) -> None:
        seen.append(f"audit:{phase.value}")

    def freeze(phase: PhaseId, packet: HandoffPacket) -> None:
        raise OriError("change freeze in effect")

    def notify(phase: PhaseId, packet: HandoffPacket) -> None:
        seen.append(f"notify:{phase.value}")

    orchestrator = WorkflowOrchestrator(
        config,
        ScriptedModel(),
        hooks={"audit": audit, "freeze": freeze, "notify": notify},
    )

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.FAILED
    assert result.failure is not None
    assert "change freeze" in result.failure.message
    assert result.failure.last_completed_phase is PhaseId.SME_GATE
    assert seen == ["audit:research", "notify:implement"]


def test_unresponsive_sme_is_recorded_and_gate_proceeds() -> None:
    config = _security_config()
    config.workflow.sme_timeout_seconds = 0.05
    orchestrator = WorkflowOrchestrator(config, ScriptedModel(hang_roles=(PhaseId.SME_GATE,)))

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.COMPLETED
    review = result.packet.sme_reviews["security"]
    assert review.executed is False
    assert review.error is not None and "timed out" in review.error
    assert result.packet.context["gate"]["action"] == "proceed"


class StaggeredSmeModel(ScriptedModel):
    """SMEs finish in reverse aggregation order; compliance fails."""

    DELAYS = {"security": 0.06, "compliance": 0.04, "code_quality": 0.02, "performance": 0.0}

    def __init__(self) -> None:
        super().__init__()
        self.finished: list[str] = []

    async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
        if role is not PhaseId.SME_GATE:
            return await super().invoke(role, request)
        sme = request["sme"]
        await asyncio.sleep(self.DELAYS[sme])
        self.finished.append(sme)
        if sme == "compliance":
            raise CapabilityUnavailableError("compliance scanner offline", retriable=False)
        findings = [CRITICAL_FINDING] if sme == "performance" else []
        return {"overall_risk": "high" if findings else "low", "findings": findings}


def test_sme_fan_out_aggregates_in_fixed_order() -> None:
    config = OriConfig.default()
    config.sme_agents.enabled = True
    for name in SME_ORDER:
        getattr(config.sme_agents, name).enabled = True
    model = StaggeredSmeModel()
    orchestrator = WorkflowOrchestrator(config, model)

    result = asyncio.run(
        orchestrator.execute(JWT_TASK, context_hints={"smes": list(SME_ORDER)})
    )

    assert model.finished == ["performance", "code_quality", "compliance", "security"]
    assert result.status is WorkflowStatus.PAUSED
    reviews = result.packet.sme_reviews
    assert list(reviews) == ["security", "compliance", "code_quality", "performance"]
    assert [name for name, review in reviews.items() if not review.executed] == ["compliance"]
    assert reviews["compliance"].error is not None
    assert "compliance scanner offline" in reviews["compliance"].error
    assert reviews["performance"].recommendation == "Block"
    assert result.pause is not None
    assert len(result.pause["critical"]) == 1
    assert result.pause["high"] == []
    assert result.pause["critical"][0]["sme"] == "performance"
    assert result.packet.context["gate"]["smes"] == list(SME_ORDER)


def test_rollback_keeps_changes_committed_by_earlier_runs(tmp_path: Path) -> None:
    (tmp_path / "a.txt").write_text("v0", encoding="utf-8")
    files = LocalFileMutation(tmp_path)
    first = WorkflowOrchestrator(
        OriConfig.default(),
        ScriptedModel(operations=[{"kind": "edit", "path": "a.txt", "content": "v1"}]),
        files=files,
    )

    assert asyncio.run(first.execute(JWT_TASK)).status is WorkflowStatus.COMPLETED

    second = WorkflowOrchestrator(
        OriConfig.default(),
        ScriptedModel(
            operations=[
                {"kind": "edit", "path": "a.txt", "content": "v2"},
                {"kind": "edit", "path": "missing.txt", "content": "x"},
            ]
        ),
        files=files,
    )

    result = asyncio.run(second.execute(JWT_TASK))

    assert result.status is WorkflowStatus.FAILED
    assert (tmp_path / "a.txt").read_text(encoding="utf-8") == "v1"


def test_unreviewed_verification_is_recorded_as_a_warning() -> None:
    orchestrator = WorkflowOrchestrator(OriConfig.default(), ScriptedModel(confidence="medium"))

    result = asyncio.run(orchestrator.execute(JWT_TASK))

    assert result.status is WorkflowStatus.COMPLETED
    assert result.packet.context["verification"]["decision"] == "full_review"
    assert result.packet.metadata.warnings == [
        "Verification recommended full_review; continuing because "
        "workflow.pause_on_verify_review is off."
    ]
