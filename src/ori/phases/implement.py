from __future__ import annotations

import logging
from typing import Any

from ori.capabilities.base import FileMutationCapability, FileOperation, ModelExecutionCapability
from ori.config import OriConfig
from ori.errors import FileOpError, PathEscapeError, PhaseError
from ori.packet import HandoffPacket, PhaseId
from ori.phases.base import PhaseExecutor

logger = logging.getLogger(__name__)


def parse_operations(response: dict[str, Any], phase: PhaseId) -> list[FileOperation]:
    raw = response.get("operations") or []
    if not isinstance(raw, list):
        raise PhaseError("Response field 'operations' must be a list.", phase=phase.value)
    try:
        return [FileOperation.from_dict(item) for item in raw]
    except FileOpError as exc:
        raise PhaseError(f"Malformed file operation: {exc}", phase=phase.value) from exc


async def apply_with_retries(
    files: FileMutationCapability,
    operation: FileOperation,
    retries: int,
) -> tuple[int, FileOpError | None]:
    """Apply ``operation`` with up to ``retries`` retries. Returns (attempts, last error).

    Every FileOpError is retried except a PathEscapeError, which no retry can fix.
    """
    error: FileOpError | None = None
    for attempt in range(1, retries + 2):
        try:
            await files.apply(operation)
        except PathEscapeError as exc:
            return attempt, exc
        except FileOpError as exc:
            error = exc
        else:
            return attempt, None
    return retries + 1, error


class ImplementPhase(PhaseExecutor):
    phase = PhaseId.IMPLEMENT
    instruction = """
Implement the solution based on verified research. Apply every SME
recommendation, respect the constraints and safety invariants, and return the
change as a list of file operations (create, edit, delete).
""".strip()

    def __init__(self, config: OriConfig, files: FileMutationCapability | None = None) -> None:
        super().__init__(config)
        self.files = files

    async def execute(self, packet: HandoffPacket, capability: ModelExecutionCapability) -> None:
        verification = self.require_context(packet, "verification", PhaseId.VERIFY)
        response = await self.invoke(
            capability,
            packet,
            {
                "task": packet.user_request.original,
                "findings": packet.context.get("findings", {}),
                "verification": verification,
                "gate": packet.context.get("gate"),
                "sme_reviews": {
                    name: review.to_dict() for name, review in packet.sme_reviews.items()
                },
                "remediations": list(packet.metadata.remediations),
                "constraints": list(packet.constraints),
                "acceptance_criteria": list(packet.acceptance_criteria),
                "safety_invariants": list(packet.safety_invariants),
            },
        )
        operations = parse_operations(response, self.phase)
        if operations and self.files is None:
            raise PhaseError(
                "Implementation produced file operations but no file capability is configured.",
                phase=self.phase.value,
            )

        if self.files is not None:
            self.files.begin_batch()

        records: list[dict[str, Any]] = []
        applied: list[dict[str, Any]] = []
        for operation in operations:
            record: dict[str, Any] = {"kind": operation.kind, "path": operation.path}
            attempts, error = await apply_with_retries(
                self.files, operation, self.config.workflow.file_op_retries
            )
            record["attempts"] = attempts
            extra = {
                "trace_id": packet.trace_id,
                "phase": self.phase.value,
                "path": operation.path,
                "kind": operation.kind,
                "attempts": attempts,
            }
            if error is None:
                record["status"] = "applied"
                applied.append(operation.to_dict())
                logger.info("File operation applied", extra=extra)
            else:
                record.update(status="failed", error=str(error))
                logger.error("File operation failed", extra={**extra, "error": str(error)})
            records.append(record)

        packet.context["implementation"] = {
            "summary": str(response.get("summary", "")),
            "operations": records,
            "applied": applied,
            "succeeded": sum(1 for record in records if record["status"] == "applied"),
            "failed": sum(1 for record in records if record["status"] == "failed"),
            "rollback_requested": any(record["status"] == "failed" for record in records),
        }
