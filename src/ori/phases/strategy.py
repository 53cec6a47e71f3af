from __future__ import annotations

from collections.abc import Callable

from ori.analyzer import TaskAnalysis, analyze_task
from ori.capabilities.base import ModelExecutionCapability
from ori.config import OriConfig
from ori.errors import ErrorKind, InvalidInputError, PhaseError
from ori.packet import HandoffPacket, PhaseId
from ori.phases.base import PhaseExecutor, append_new, string_list


class StrategyPhase(PhaseExecutor):
    phase = PhaseId.STRATEGY
    instruction = """
Parse the query components, classify the domain, and design a research strategy
with specific primary questions, sources, search queries, and validation criteria.
""".strip()

    def __init__(
        self,
        config: OriConfig,
        analyzer: Callable[[str], TaskAnalysis] = analyze_task,
    ) -> None:
        super().__init__(config)
        self.analyzer = analyzer

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        task = packet.user_request.original.strip()
        if not task:
            raise PhaseError(
                "Strategy requires a non-empty task description.",
                phase=self.phase.value,
                kind=ErrorKind.INSUFFICIENT_INPUT,
            )
        try:
            analysis = self.analyzer(task)
        except InvalidInputError as exc:
            raise PhaseError(
                str(exc), phase=self.phase.value, kind=ErrorKind.INSUFFICIENT_INPUT
            ) from exc

        hints = packet.context.get("hints", {})
        response = await self.invoke(
            capability,
            packet,
            {"task": task, "analysis": analysis.to_dict(), "hints": hints},
        )
        questions = string_list(response, "primary_questions")
        if not questions:
            raise PhaseError(
                "Strategy response contains no primary research questions.",
                phase=self.phase.value,
            )

        request = packet.user_request
        request.parsed_intent = str(response.get("parsed_intent") or task).strip()
        request.domain = analysis.domain
        request.clarity_score = analysis.clarity_score
        request.risk_flags = list(analysis.risk_flags)

        append_new(packet.constraints, [str(item) for item in hints.get("constraints", [])])
        append_new(packet.constraints, string_list(response, "constraints"))
        append_new(packet.acceptance_criteria, string_list(response, "acceptance_criteria"))
        append_new(packet.safety_invariants, string_list(response, "safety_invariants"))

        packet.context["strategy"] = {
            "primary_questions": questions,
            "sources": string_list(response, "sources"),
            "search_queries": string_list(response, "search_queries"),
            "validation_criteria": string_list(response, "validation_criteria"),
            "complexity": analysis.complexity,
            "recommended_model": self.config.models.research or analysis.recommended_model,
            "estimated_duration_minutes": analysis.estimated_duration_minutes,
        }
