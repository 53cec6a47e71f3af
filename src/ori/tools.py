"""Structured tool surface over the engine.

Every tool returns a ``ToolResult`` with human-readable markdown in
``content`` and machine-readable data in ``meta``. Errors are reported with
``is_error=True`` instead of being raised.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ori.analyzer import analyze_task, recommendations
from ori.capabilities import (
    FileMutationCapability,
    JsonlLogStore,
    ModelExecutionCapability,
    PersistenceCapability,
    TemplateModelCapability,
)
from ori.config import (
    OriConfig,
    apply_overrides,
    load_config,
    load_config_document,
)
from ori.errors import InvalidInputError, OriError
from ori.orchestrator import WorkflowOrchestrator, WorkflowResult
from ori.packet import PHASE_SEQUENCE, WorkflowStatus
from ori.validation import validate_config_document

logger = logging.getLogger(__name__)

TASK_PREVIEW_LENGTH = 200


@dataclass(slots=True)
class ToolResult:
    content: str
    is_error: bool = False
    meta: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "content": [{"type": "text", "text": self.content}],
            "isError": self.is_error,
            "_meta": self.meta,
        }


def _error(message: str, error: OriError | None = None) -> ToolResult:
    meta = {"kind": error.kind.value} if error is not None else {}
    return ToolResult(content=message, is_error=True, meta=meta)


def analyze_task_tool(task: str) -> ToolResult:
    logger.info("Analyze task tool invoked", extra={"task_length": len(task or "")})
    try:
        analysis = analyze_task(task)
    except OriError as exc:
        logger.error("Analyze task tool failed", extra={"error": str(exc)})
        return _error(f"Error analyzing task: {exc}", exc)

    preview = task[:TASK_PREVIEW_LENGTH] + ("..." if len(task) > TASK_PREVIEW_LENGTH else "")
    advice = "\n".join(f"- {item}" for item in recommendations(analysis))
    flags = ", ".join(analysis.risk_flags) if analysis.risk_flags else "None"
    content = f"""# Task Analysis

**Task:** {preview}

## Results

- **Complexity:** {analysis.complexity}
- **Domain:** {analysis.domain}
- **Clarity Score:** {analysis.clarity_score:.2f} / 1.00
- **Risk Flags:** {flags}
- **Recommended Model:** {analysis.recommended_model}
- **Estimated Duration:** {analysis.estimated_duration_minutes} minutes

## Recommendations

{advice}
"""
    return ToolResult(content=content, meta=analysis.to_dict())


def validate_config_tool(
    config_path: str | None = None,
    config_content: str | None = None,
) -> ToolResult:
    logger.info(
        "Validate config tool invoked",
        extra={"config_path": config_path, "has_content": bool(config_content)},
    )
    if config_path:
        try:
            document = load_config_document(Path(config_path))
        except OriError as exc:
            return _error(str(exc), exc)
    elif config_content:
        try:
            document = json.loads(config_content)
        except json.JSONDecodeError as exc:
            return _error(f"Invalid JSON: {exc}")
    else:
        return _error("Error: Either config_path or config_content must be provided")

    result = validate_config_document(document)
    if result.valid:
        content = "✓ Configuration is valid\n"
        if result.warnings:
            content += "\nWarnings:\n" + "\n".join(f"- {item}" for item in result.warnings)
        return ToolResult(content=content, meta=result.to_dict())
    errors = "\n".join(f"- {issue.path}: {issue.message}" for issue in result.errors)
    return ToolResult(
        content=f"✗ Configuration is invalid\n\nErrors:\n{errors}",
        is_error=True,
        meta=result.to_dict(),
    )


def _hints(context: str | dict[str, Any] | None) -> dict[str, Any]:
    if context is None:
        return {}
    if isinstance(context, dict):
        return dict(context)
    if isinstance(context, str):
        return {"context": context} if context.strip() else {}
    raise InvalidInputError("context must be a string or an object.")


def render_result(result: WorkflowResult) -> str:
    packet = result.packet
    lines = [
        "# ORI Workflow",
        "",
        f"**Trace ID:** `{packet.trace_id}`",
        f"**Task:** {packet.user_request.original}",
        f"**Status:** {result.status.value}",
        "",
        "## Phases",
        "",
    ]
    finished = set(packet.phase.completed)
    if result.status is WorkflowStatus.COMPLETED:
        finished.add(packet.phase.current)
    for phase in PHASE_SEQUENCE:
        if phase.value in packet.metadata.skipped_phases:
            mark = "skipped"
        elif phase in finished:
            mark = "done"
        elif phase is packet.phase.current:
            mark = result.status.value
        else:
            mark = "pending"
        duration = packet.metadata.phase_durations.get(phase.value)
        suffix = f" ({duration:.2f}s)" if duration is not None else ""
        lines.append(f"- Phase {phase.ordinal} {phase.value}: {mark}{suffix}")

    if result.pause is not None:
        lines += ["", "## Paused", "", f"Reason: {result.pause['reason']}"]
        for key in ("critical", "high"):
            for item in result.pause.get(key, []):
                lines.append(
                    f"- [{item['severity']}] {item['sme']}: {item['description']}"
                    + (f" ({item['location']})" if item.get("location") else "")
                )
        lines += ["", "Resume with one of: proceed, fix, abort."]
    if result.failure is not None:
        lines += [
            "",
            "## Failure",
            "",
            f"- Kind: {result.failure.kind.value}",
            f"- Message: {result.failure.message}",
        ]
    if packet.metadata.warnings:
        lines += ["", "## Warnings", ""]
        lines += [f"- {item}" for item in packet.metadata.warnings]
    return "\n".join(lines) + "\n"


def _resolve_config(
    config: dict[str, Any] | None,
    config_path: str | None,
) -> tuple[OriConfig, str | None]:
    base = load_config(Path(config_path)) if config_path else OriConfig.default()
    overrides = dict(config or {})
    trace_id = overrides.pop("trace_id", None)
    return apply_overrides(base, overrides), trace_id


def build_orchestrator(
    config: OriConfig,
    *,
    capability: ModelExecutionCapability | None = None,
    files: FileMutationCapability | None = None,
    store: PersistenceCapability | None = None,
) -> WorkflowOrchestrator:
    if store is None and config.logging.enabled:
        store = JsonlLogStore(
            Path(config.logging.resolved_log_directory),
            retention_days=config.logging.retention_days,
        )
    return WorkflowOrchestrator(
        config,
        capability or TemplateModelCapability(),
        files=files,
        store=store,
    )


async def execute_workflow_tool(
    task: str,
    context: str | dict[str, Any] | None = None,
    config: dict[str, Any] | None = None,
    *,
    config_path: str | None = None,
    capability: ModelExecutionCapability | None = None,
    files: FileMutationCapability | None = None,
    store: PersistenceCapability | None = None,
) -> ToolResult:
    try:
        resolved, trace_id = _resolve_config(config, config_path)
        hints = _hints(context)
        orchestrator = build_orchestrator(
            resolved, capability=capability, files=files, store=store
        )
        result = await orchestrator.execute(task, context_hints=hints, trace_id=trace_id)
    except OriError as exc:
        logger.error("Execute workflow tool failed", extra={"error": str(exc)})
        return _error(f"Error executing ORI workflow: {exc}", exc)
    except Exception as exc:
        logger.exception("Execute workflow tool crashed")
        return _error(f"Error executing ORI workflow: {type(exc).__name__}: {exc}")
    return ToolResult(
        content=render_result(result),
        is_error=result.status in {WorkflowStatus.FAILED, WorkflowStatus.ABORTED},
        meta=result.to_dict(),
    )
