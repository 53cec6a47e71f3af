from __future__ import annotations

import asyncio
import logging
from typing import Any

from ori.capabilities.base import ModelExecutionCapability
from ori.config import SME_ORDER, OriConfig
from ori.errors import OriError, PhaseError
from ori.gate import BLOCKING_SEVERITIES, QualityGateEngine
from ori.packet import Finding, HandoffPacket, PhaseId, SmeReview
from ori.phases.base import PhaseExecutor

logger = logging.getLogger(__name__)


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _triggers(config: OriConfig, name: str, packet: HandoffPacket) -> bool:
    hints = packet.context.get("hints", {})
    if name in hints.get("smes", []):
        return True
    if name == "code_quality":
        settings = config.sme_agents.code_quality
        return (
            _number(hints.get("files_changed")) > settings.complexity_threshold
            or _number(hints.get("lines_changed")) > settings.line_count_threshold
        )
    settings = getattr(config.sme_agents, name)
    if set(settings.auto_invoke_on_risk_flags) & set(packet.user_request.risk_flags):
        return True
    text = packet.user_request.original.lower()
    return any(keyword.lower() in text for keyword in settings.auto_invoke_on_keywords)


def applicable_smes(config: OriConfig, packet: HandoffPacket) -> list[str]:
    """Names of the enabled SMEs this task triggers, in aggregation order."""
    if not config.sme_agents.enabled:
        return []
    enabled = set(config.sme_agents.enabled_smes())
    return [name for name in SME_ORDER if name in enabled and _triggers(config, name, packet)]


class SmeGatePhase(PhaseExecutor):
    phase = PhaseId.SME_GATE
    instruction = """
Review the planned change strictly within your area of expertise. Report each
problem as a finding with a severity of Critical, High, Medium, Low, or Info,
a category, a description, a location, and a recommendation.
""".strip()

    def __init__(self, config: OriConfig, gate: QualityGateEngine | None = None) -> None:
        super().__init__(config)
        self.gate = gate or QualityGateEngine()

    async def _review(
        self,
        name: str,
        packet: HandoffPacket,
        capability: ModelExecutionCapability,
        request: dict[str, Any],
    ) -> SmeReview:
        try:
            response = await asyncio.wait_for(
                self.invoke(capability, packet, {**request, "sme": name}),
                timeout=self.config.workflow.sme_timeout_seconds,
            )
            raw = response.get("findings", [])
            if not isinstance(raw, list):
                raise PhaseError(
                    f"SME {name} returned 'findings' that is not a list.", phase=self.phase.value
                )
            findings = [Finding.from_dict(item) for item in raw]
        except TimeoutError:
            error = f"SME review timed out after {self.config.workflow.sme_timeout_seconds:.1f}s"
        except OriError as exc:
            error = str(exc)
        except Exception as exc:
            # One malformed review must not cancel the sibling SMEs.
            error = f"{type(exc).__name__}: {exc}"
        else:
            blocking = any(finding.severity in BLOCKING_SEVERITIES for finding in findings)
            return SmeReview(
                executed=True,
                overall_risk=str(response.get("overall_risk", "unknown")),
                findings=findings,
                recommendation="Block" if blocking else "Proceed",
            )
        logger.warning(
            "SME review failed",
            extra={
                "trace_id": packet.trace_id,
                "phase": self.phase.value,
                "sme": name,
                "error": error,
            },
        )
        return SmeReview(executed=False, error=error)

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        verification = self.require_context(packet, "verification", PhaseId.VERIFY)
        names = applicable_smes(self.config, packet)
        request = {
            "task": packet.user_request.original,
            "findings": packet.context.get("findings", {}),
            "verification": verification,
            "risk_flags": list(packet.user_request.risk_flags),
            "remediations": list(packet.metadata.remediations),
        }
        reviews = await asyncio.gather(
            *(self._review(name, packet, capability, request) for name in names)
        )
        # Re-entering the gate after a fix replaces the previous iteration's reviews.
        packet.sme_reviews = dict(zip(names, reviews, strict=True))
        decision = self.gate.decide(
            {name: review.findings for name, review in packet.sme_reviews.items()}
        )
        packet.context["gate"] = {
            **decision.to_dict(),
            "smes": names,
            "iteration": packet.metadata.loop_backs,
        }
