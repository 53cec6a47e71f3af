from __future__ import annotations

import logging
from typing import Any

from ori.capabilities.base import ModelExecutionCapability
from ori.config import OriConfig
from ori.errors import CapabilityError, PhaseError
from ori.packet import HandoffPacket, PhaseId, check_phase_writes

logger = logging.getLogger(__name__)

CONFIDENCE_LEVELS = ("high", "medium", "low")
RISK_LEVELS = ("low", "medium", "high")


def string_list(response: dict[str, Any], key: str) -> list[str]:
    value = response.get(key, [])
    if value is None:
        return []
    if not isinstance(value, list):
        raise PhaseError(f"Response field '{key}' must be a list.")
    return [str(item).strip() for item in value if str(item).strip()]


def append_new(target: list[str], items: list[str]) -> None:
    for item in items:
        if item not in target:
            target.append(item)


def level(
    response: dict[str, Any],
    key: str,
    allowed: tuple[str, ...],
    default: str | None = None,
) -> str:
    raw = response.get(key, default)
    value = str(raw).strip().lower() if raw is not None else ""
    if value not in allowed:
        raise PhaseError(
            f"Response field '{key}' must be one of {', '.join(allowed)}; got {raw!r}."
        )
    return value


class PhaseExecutor:
    phase: PhaseId = PhaseId.STRATEGY
    fatal: bool = True
    instruction: str = "You are one phase of an ORI workflow."

    def __init__(self, config: OriConfig) -> None:
        self.config = config

    def model_for(self, packet: HandoffPacket) -> str | None:
        return self.config.models.for_phase(self.phase.value)

    async def run(
        self,
        packet: HandoffPacket,
        capability: ModelExecutionCapability,
    ) -> HandoffPacket:
        """Run the phase on a copy of ``packet`` and return the updated copy.

        The input packet is never modified, so a failure leaves the caller
        holding the last committed state.
        """
        working = packet.clone()
        await self.execute(working, capability)
        check_phase_writes(packet, working, self.phase)
        return working

    async def execute(
        self,
        packet: HandoffPacket,
        capability: ModelExecutionCapability,
    ) -> None:
        raise NotImplementedError

    async def invoke(
        self,
        capability: ModelExecutionCapability,
        packet: HandoffPacket,
        request: dict[str, Any],
    ) -> dict[str, Any]:
        model = self.model_for(packet)
        payload = {
            "trace_id": packet.trace_id,
            "phase": self.phase.value,
            "model": model,
            "instruction": self.instruction,
            **request,
        }
        try:
            response = await capability.invoke(self.phase, payload)
        except CapabilityError as exc:
            logger.warning(
                "Capability call failed",
                extra={"trace_id": packet.trace_id, "phase": self.phase.value, "error": str(exc)},
            )
            raise PhaseError(
                f"{self.phase.value} capability failed: {exc}",
                phase=self.phase.value,
                cause_kind=exc.kind,
            ) from exc
        if not isinstance(response, dict):
            raise PhaseError(
                f"{self.phase.value} capability returned a non-object response.",
                phase=self.phase.value,
            )
        if model:
            packet.metadata.models_used[self.phase.value] = model
        return response

    def require_context(self, packet: HandoffPacket, key: str, producer: PhaseId) -> dict[str, Any]:
        value = packet.context.get(key)
        if not isinstance(value, dict):
            raise PhaseError(
                f"{self.phase.value} requires '{key}' from the {producer.value} phase.",
                phase=self.phase.value,
            )
        return value
