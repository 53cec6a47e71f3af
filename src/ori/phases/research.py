from __future__ import annotations

from ori.capabilities.base import ModelExecutionCapability
from ori.packet import HandoffPacket, PhaseId
from ori.phases.base import CONFIDENCE_LEVELS, PhaseExecutor, level, string_list


class ResearchPhase(PhaseExecutor):
    phase = PhaseId.RESEARCH
    instruction = """
Execute the research strategy, answer every primary question, gather patterns and
documentation, and map findings to an implementation approach.
""".strip()

    def model_for(self, packet: HandoffPacket) -> str | None:
        strategy = packet.context.get("strategy") or {}
        return strategy.get("recommended_model") or super().model_for(packet)

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        strategy = self.require_context(packet, "strategy", PhaseId.STRATEGY)
        response = await self.invoke(
            capability,
            packet,
            {
                "task": packet.user_request.original,
                "strategy": strategy,
                "constraints": list(packet.constraints),
            },
        )
        packet.context["findings"] = {
            "findings": string_list(response, "findings"),
            "sources": string_list(response, "sources"),
            "confidence": level(response, "confidence", CONFIDENCE_LEVELS),
            "risks": string_list(response, "risks"),
        }
