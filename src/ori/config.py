from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

from ori.errors import ConfigSourceError, ErrorKind, InvalidInputError

DEFAULT_CONFIG_FILE = "ori-config.json"
DEFAULT_LOG_DIRECTORY = ".ori/logs"
SME_ORDER = ("security", "compliance", "code_quality", "performance")


def _section(section_cls: type, data: dict | None) -> Any:
    # Unknown keys and explicit nulls fall back to the dataclass defaults.
    known = {item.name for item in fields(section_cls)}
    values = {
        key: value for key, value in (data or {}).items() if key in known and value is not None
    }
    return section_cls(**values)


@dataclass(slots=True)
class SecuritySmeConfig:
    enabled: bool = False
    auto_invoke_on_keywords: list[str] = field(
        default_factory=lambda: [
            "auth",
            "authentication",
            "password",
            "jwt",
            "oauth",
            "token",
            "encryption",
            "secret",
        ]
    )
    auto_invoke_on_risk_flags: list[str] = field(default_factory=lambda: ["security"])


@dataclass(slots=True)
class ComplianceSmeConfig:
    enabled: bool = False
    auto_invoke_on_keywords: list[str] = field(
        default_factory=lambda: ["gdpr", "ccpa", "hipaa", "license", "consent", "retention"]
    )
    auto_invoke_on_risk_flags: list[str] = field(
        default_factory=lambda: ["privacy", "compliance", "policy"]
    )


@dataclass(slots=True)
class CodeQualitySmeConfig:
    enabled: bool = False
    complexity_threshold: float = 5
    line_count_threshold: float = 300


@dataclass(slots=True)
class PerformanceSmeConfig:
    enabled: bool = False
    auto_invoke_on_keywords: list[str] = field(
        default_factory=lambda: ["performance", "latency", "throughput", "optimize", "scale"]
    )
    auto_invoke_on_risk_flags: list[str] = field(default_factory=lambda: ["performance"])


@dataclass(slots=True)
class SmeAgentsConfig:
    enabled: bool = False
    security: SecuritySmeConfig = field(default_factory=SecuritySmeConfig)
    compliance: ComplianceSmeConfig = field(default_factory=ComplianceSmeConfig)
    code_quality: CodeQualitySmeConfig = field(default_factory=CodeQualitySmeConfig)
    performance: PerformanceSmeConfig = field(default_factory=PerformanceSmeConfig)

    def enabled_smes(self) -> list[str]:
        return [name for name in SME_ORDER if getattr(self, name).enabled]


@dataclass(slots=True)
class SafetyHooksConfig:
    enabled: bool = False
    pre_phase: dict[str, list[str]] = field(default_factory=dict)
    post_phase: dict[str, list[str]] = field(default_factory=dict)
    emergency: list[str] = field(default_factory=list)


@dataclass(slots=True)
class LoggingConfig:
    enabled: bool = True
    log_directory: str | None = None
    retention_days: float = 30
    log_handoff_packets: bool = True
    log_sme_reviews: bool = True
    level: str = "WARNING"

    @property
    def resolved_log_directory(self) -> str:
        return self.log_directory or DEFAULT_LOG_DIRECTORY


@dataclass(slots=True)
class WorkflowConfig:
    max_loop_backs: int = 3
    model_retries: int = 0
    file_op_retries: int = 2
    capability_timeout_seconds: float = 90.0
    sme_timeout_seconds: float = 60.0
    retry_backoff_seconds: float = 0.5
    pause_on_verify_review: bool = False


@dataclass(slots=True)
class ModelsConfig:
    strategy: str = "opus"
    research: str | None = None
    verify: str = "sonnet"
    sme_gate: str = "sonnet"
    implement: str = "sonnet"
    document: str = "haiku"

    def for_phase(self, phase: str) -> str | None:
        return getattr(self, phase, None)


@dataclass(slots=True)
class OriConfig:
    version: str = "1.0.0"
    sme_agents: SmeAgentsConfig = field(default_factory=SmeAgentsConfig)
    safety_hooks: SafetyHooksConfig = field(default_factory=SafetyHooksConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    models: ModelsConfig = field(default_factory=ModelsConfig)

    @classmethod
    def default(cls) -> OriConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> OriConfig:
        sme = data.get("sme_agents") or {}
        return cls(
            version=str(data.get("version", "1.0.0")),
            sme_agents=SmeAgentsConfig(
                enabled=bool(sme.get("enabled", False)),
                security=_section(SecuritySmeConfig, sme.get("security")),
                compliance=_section(ComplianceSmeConfig, sme.get("compliance")),
                code_quality=_section(CodeQualitySmeConfig, sme.get("code_quality")),
                performance=_section(PerformanceSmeConfig, sme.get("performance")),
            ),
            safety_hooks=_section(SafetyHooksConfig, data.get("safety_hooks")),
            logging=_section(LoggingConfig, data.get("logging")),
            workflow=_section(WorkflowConfig, data.get("workflow")),
            models=_section(ModelsConfig, data.get("models")),
        )

    def to_dict(self) -> dict:
        sme = self.sme_agents
        return {
            "version": self.version,
            "sme_agents": {
                "enabled": sme.enabled,
                "security": {
                    "enabled": sme.security.enabled,
                    "auto_invoke_on_keywords": list(sme.security.auto_invoke_on_keywords),
                    "auto_invoke_on_risk_flags": list(sme.security.auto_invoke_on_risk_flags),
                },
                "compliance": {
                    "enabled": sme.compliance.enabled,
                    "auto_invoke_on_keywords": list(sme.compliance.auto_invoke_on_keywords),
                    "auto_invoke_on_risk_flags": list(sme.compliance.auto_invoke_on_risk_flags),
                },
                "code_quality": {
                    "enabled": sme.code_quality.enabled,
                    "complexity_threshold": sme.code_quality.complexity_threshold,
                    "line_count_threshold": sme.code_quality.line_count_threshold,
                },
                "performance": {
                    "enabled": sme.performance.enabled,
                    "auto_invoke_on_keywords": list(sme.performance.auto_invoke_on_keywords),
                    "auto_invoke_on_risk_flags": list(sme.performance.auto_invoke_on_risk_flags),
                },
            },
            "safety_hooks": {
                "enabled": self.safety_hooks.enabled,
                "pre_phase": {k: list(v) for k, v in self.safety_hooks.pre_phase.items()},
                "post_phase": {k: list(v) for k, v in self.safety_hooks.post_phase.items()},
                "emergency": list(self.safety_hooks.emergency),
            },
            "logging": {
                "enabled": self.logging.enabled,
                "log_directory": self.logging.log_directory,
                "retention_days": self.logging.retention_days,
                "log_handoff_packets": self.logging.log_handoff_packets,
                "log_sme_reviews": self.logging.log_sme_reviews,
                "level": self.logging.level,
            },
            "workflow": {
                "max_loop_backs": self.workflow.max_loop_backs,
                "model_retries": self.workflow.model_retries,
                "file_op_retries": self.workflow.file_op_retries,
                "capability_timeout_seconds": self.workflow.capability_timeout_seconds,
                "sme_timeout_seconds": self.workflow.sme_timeout_seconds,
                "retry_backoff_seconds": self.workflow.retry_backoff_seconds,
                "pause_on_verify_review": self.workflow.pause_on_verify_review,
            },
            "models": {
                "strategy": self.models.strategy,
                "research": self.models.research,
                "verify": self.models.verify,
                "sme_gate": self.models.sme_gate,
                "implement": self.models.implement,
                "document": self.models.document,
            },
        }


def _strip_nulls(payload: Any) -> Any:
    if isinstance(payload, dict):
        return {key: _strip_nulls(value) for key, value in payload.items() if value is not None}
    return payload


def dumps_json(config: OriConfig) -> str:
    return json.dumps(_strip_nulls(config.to_dict()), ensure_ascii=False, indent=2) + "\n"


def load_config_document(path: Path) -> Any:
    """Read and parse a JSON configuration document without validating it."""
    if not path.exists():
        raise ConfigSourceError(f"Configuration file not found: {path}", kind=ErrorKind.NOT_FOUND)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ConfigSourceError(
            f"Invalid JSON in {path}: {exc}", kind=ErrorKind.PARSE_ERROR
        ) from exc


def config_from_document(document: Any) -> OriConfig:
    from ori.validation import validate_config_document

    result = validate_config_document(document)
    if not result.valid:
        details = "; ".join(f"{issue.path or '<root>'}: {issue.message}" for issue in result.errors)
        raise InvalidInputError(f"Invalid configuration: {details}")
    return OriConfig.from_dict(document)


def load_config(path: Path) -> OriConfig:
    return config_from_document(load_config_document(path))


def save_config(path: Path, config: OriConfig) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(dumps_json(config), encoding="utf-8")


def apply_overrides(config: OriConfig, overrides: dict[str, Any] | None) -> OriConfig:
    """Apply tool-level overrides (``sme_enabled``, ``security_sme``, ``logging``)."""
    if not overrides:
        return config
    updated = OriConfig.from_dict(config.to_dict())
    if "sme_enabled" in overrides:
        updated.sme_agents.enabled = bool(overrides["sme_enabled"])
    if "security_sme" in overrides:
        updated.sme_agents.security.enabled = bool(overrides["security_sme"])
    if "logging" in overrides:
        updated.logging.enabled = bool(overrides["logging"])
    return updated
