from __future__ import annotations

from typing import Any

from ori.capabilities.base import ModelExecutionCapability
from ori.packet import PhaseId


class TemplateModelCapability(ModelExecutionCapability):
    """Reference capability that answers with templated instructions.

    It never contacts a reasoning backend: responses carry the instructions an
    operator (or an outer agent) should follow for each phase, shaped like the
    structured responses a real backend returns.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[PhaseId, dict[str, Any]]] = []

    async def invoke(self, role: PhaseId, request: dict[str, Any]) -> dict[str, Any]:
        self.calls.append((role, request))
        instruction = str(request.get("instruction", ""))
        task = str(request.get("task", ""))
        if role is PhaseId.STRATEGY:
            analysis = request.get("analysis", {})
            return {
                "parsed_intent": task.strip(),
                "primary_questions": [
                    f"What is required to accomplish: {task.strip()}?",
                    f"Which {analysis.get('domain', 'General')} conventions apply?",
                ],
                "sources": ["repository source", "project documentation"],
                "search_queries": [task.strip()],
                "validation_criteria": ["All acceptance criteria are met."],
                "constraints": [],
                "acceptance_criteria": [f"Task completed: {task.strip()}"],
                "safety_invariants": [
                    f"Address {flag} risk before implementation."
                    for flag in analysis.get("risk_flags", [])
                ],
                "instructions": instruction,
            }
        if role is PhaseId.RESEARCH:
            questions = request.get("strategy", {}).get("primary_questions", [])
            return {
                "findings": [f"Pending answer: {question}" for question in questions],
                "sources": list(request.get("strategy", {}).get("sources", [])),
                "confidence": "medium",
                "risks": [],
                "instructions": instruction,
            }
        if role is PhaseId.VERIFY:
            return {
                "confidence": request.get("findings", {}).get("confidence", "medium"),
                "risk": "medium" if request.get("risk_flags") else "low",
                "issues": [],
                "instructions": instruction,
            }
        if role is PhaseId.SME_GATE:
            return {
                "overall_risk": "unknown",
                "findings": [],
                "instructions": f"{request.get('sme', 'sme')}: {instruction}",
            }
        if role is PhaseId.IMPLEMENT:
            return {"operations": [], "summary": instruction, "instructions": instruction}
        return {
            "operations": [],
            "changelog": [f"Document: {task.strip()}"],
            "summary": instruction,
            "instructions": instruction,
        }
