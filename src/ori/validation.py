"""Structural and semantic validation of ORI configuration documents."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from ori.packet import PHASE_SEQUENCE

VERSION_PATTERN = r"^\d+\.\d+\.\d+$"


class _StrictModel(BaseModel):
    # Never coerce: "true" is not a bool and 1 is not a string.
    model_config = ConfigDict(strict=True, extra="ignore")


class SecuritySmeSchema(_StrictModel):
    enabled: bool
    auto_invoke_on_keywords: list[str] | None = None
    auto_invoke_on_risk_flags: list[str] | None = None
    block_on_critical: bool | None = None


class ComplianceSmeSchema(_StrictModel):
    enabled: bool
    auto_invoke_on_keywords: list[str] | None = None
    auto_invoke_on_risk_flags: list[str] | None = None


class CodeQualitySmeSchema(_StrictModel):
    enabled: bool
    complexity_threshold: float | None = None
    line_count_threshold: float | None = None


class PerformanceSmeSchema(_StrictModel):
    enabled: bool
    auto_invoke_on_keywords: list[str] | None = None
    auto_invoke_on_risk_flags: list[str] | None = None


class SmeAgentsSchema(_StrictModel):
    enabled: bool
    security: SecuritySmeSchema | None = None
    compliance: ComplianceSmeSchema | None = None
    code_quality: CodeQualitySmeSchema | None = None
    performance: PerformanceSmeSchema | None = None


class SafetyHooksSchema(_StrictModel):
    enabled: bool
    pre_phase: dict[str, list[str]] | None = None
    post_phase: dict[str, list[str]] | None = None
    emergency: list[str] | None = None


class LoggingSchema(_StrictModel):
    enabled: bool
    log_directory: str | None = None
    retention_days: float | None = Field(default=None, ge=0)
    log_handoff_packets: bool | None = None
    log_sme_reviews: bool | None = None
    level: str | None = None


class WorkflowSchema(_StrictModel):
    max_loop_backs: int | None = Field(default=None, ge=0)
    model_retries: int | None = Field(default=None, ge=0)
    file_op_retries: int | None = Field(default=None, ge=0)
    capability_timeout_seconds: float | None = Field(default=None, gt=0)
    sme_timeout_seconds: float | None = Field(default=None, gt=0)
    retry_backoff_seconds: float | None = Field(default=None, ge=0)
    pause_on_verify_review: bool | None = None


class ModelsSchema(_StrictModel):
    strategy: str | None = None
    research: str | None = None
    verify: str | None = None
    sme_gate: str | None = None
    implement: str | None = None
    document: str | None = None


class OriConfigSchema(_StrictModel):
    version: str = Field(pattern=VERSION_PATTERN)
    sme_agents: SmeAgentsSchema
    safety_hooks: SafetyHooksSchema | None = None
    logging: LoggingSchema | None = None
    workflow: WorkflowSchema | None = None
    models: ModelsSchema | None = None


@dataclass(frozen=True, slots=True)
class ValidationIssue:
    path: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"path": self.path, "message": self.message}


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    errors: list[ValidationIssue] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "valid": self.valid,
            "errors": [issue.to_dict() for issue in self.errors],
            "warnings": list(self.warnings),
        }


def _semantic_warnings(config: OriConfigSchema) -> list[str]:
    warnings: list[str] = []
    sme = config.sme_agents
    if sme.enabled:
        subagents = (sme.security, sme.compliance, sme.code_quality, sme.performance)
        if not any(agent is not None and agent.enabled for agent in subagents):
            warnings.append("sme_agents.enabled is true but no specific SME agents are enabled")
    if config.logging is not None and config.logging.enabled and not config.logging.log_directory:
        warnings.append("Logging enabled but log_directory not specified (will use default)")
    hooks = config.safety_hooks
    if hooks is not None:
        known = {phase.value for phase in PHASE_SEQUENCE}
        for section, mapping in (("pre_phase", hooks.pre_phase), ("post_phase", hooks.post_phase)):
            for phase in sorted(set(mapping or {}) - known):
                warnings.append(f"safety_hooks.{section} references unknown phase '{phase}'")
    return warnings


def validate_config_document(document: Any) -> ValidationResult:
    try:
        config = OriConfigSchema.model_validate(document)
    except ValidationError as exc:
        errors = [
            ValidationIssue(
                path=".".join(str(part) for part in error["loc"]),
                message=error["msg"],
            )
            for error in exc.errors()
        ]
        return ValidationResult(valid=False, errors=errors)
    return ValidationResult(valid=True, warnings=_semantic_warnings(config))
