from __future__ import annotations

from typing import Literal

from ori.capabilities.base import ModelExecutionCapability
from ori.packet import HandoffPacket, PhaseId
from ori.phases.base import CONFIDENCE_LEVELS, RISK_LEVELS, PhaseExecutor, level, string_list

VerificationDecision = Literal["auto_proceed", "single_confirmation", "full_review"]


def verification_decision(confidence: str, risk: str) -> VerificationDecision:
    if confidence == "high" and risk == "low":
        return "auto_proceed"
    if confidence == "high" and risk == "medium":
        return "single_confirmation"
    return "full_review"


class VerifyPhase(PhaseExecutor):
    phase = PhaseId.VERIFY
    instruction = """
Cross-validate the research findings, assess security implications, evaluate
performance impact, confirm backward compatibility, and rate the residual risk.
""".strip()

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        findings = self.require_context(packet, "findings", PhaseId.RESEARCH)
        response = await self.invoke(
            capability,
            packet,
            {
                "task": packet.user_request.original,
                "findings": findings,
                "risk_flags": list(packet.user_request.risk_flags),
                "constraints": list(packet.constraints),
                "safety_invariants": list(packet.safety_invariants),
                "remediations": list(packet.metadata.remediations),
            },
        )
        confidence = level(
            response, "confidence", CONFIDENCE_LEVELS, default=findings.get("confidence")
        )
        risk = level(response, "risk", RISK_LEVELS)
        packet.context["verification"] = {
            "confidence": confidence,
            "risk": risk,
            "issues": string_list(response, "issues"),
            "decision": verification_decision(confidence, risk),
            "iteration": packet.metadata.loop_backs,
        }
