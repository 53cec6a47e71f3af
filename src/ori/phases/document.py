from __future__ import annotations

import logging
from typing import Any

from ori.capabilities.base import FileMutationCapability, ModelExecutionCapability
from ori.config import OriConfig
from ori.errors import PhaseError
from ori.packet import HandoffPacket, PhaseId
from ori.phases.base import PhaseExecutor, string_list
from ori.phases.implement import apply_with_retries, parse_operations

logger = logging.getLogger(__name__)


class DocumentPhase(PhaseExecutor):
    phase = PhaseId.DOCUMENT
    fatal = False
    instruction = """
Update the relevant documentation and the changelog, add examples where they
help, and summarize what changed. Return documentation files as create or edit
operations under 'operations'.
""".strip()

    def __init__(self, config: OriConfig, files: FileMutationCapability | None = None) -> None:
        super().__init__(config)
        self.files = files

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        implementation = packet.context.get("implementation") or {}
        response = await self.invoke(
            capability,
            packet,
            {
                "task": packet.user_request.original,
                "implementation": implementation,
                "acceptance_criteria": list(packet.acceptance_criteria),
            },
        )
        try:
            artifacts = parse_operations(response, self.phase)
        except PhaseError as exc:
            packet.metadata.warnings.append(str(exc))
            artifacts = []

        written: list[str] = []
        failures: list[dict[str, Any]] = []
        for artifact in artifacts:
            if self.files is None:
                failures.append({"path": artifact.path, "error": "no file capability configured"})
                continue
            _, error = await apply_with_retries(
                self.files, artifact, self.config.workflow.file_op_retries
            )
            if error is None:
                written.append(artifact.path)
            else:
                failures.append({"path": artifact.path, "error": str(error)})

        for failure in failures:
            message = f"Documentation artifact {failure['path']} not written: {failure['error']}"
            packet.metadata.warnings.append(message)
            logger.warning(message, extra={"trace_id": packet.trace_id, "phase": self.phase.value})

        packet.context["documentation"] = {
            "summary": str(response.get("summary", "")),
            "changelog": string_list(response, "changelog"),
            "written": written,
            "failures": failures,
        }

