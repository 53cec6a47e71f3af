"""Rule-based pre-flight task analysis.

Every rule table below is evaluated in declaration order. Complexity and
domain use first-match-wins; clarity adjustments and risk flags are
independent and combine.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Literal

from ori.errors import InvalidInputError

Complexity = Literal["LOW", "MEDIUM", "HIGH"]
ModelTier = Literal["opus", "sonnet", "haiku"]

MIN_TASK_LENGTH = 10

COMPLEXITY_RULES: tuple[tuple[Complexity, tuple[str, ...]], ...] = (
    ("HIGH", ("refactor", "architecture", "migrate", "complex", "multiple", "entire", "redesign")),
    ("LOW", ("fix", "update", "change", "modify", "small", "simple")),
)

DOMAIN_RULES: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("Security/Auth", ("auth", "security", "jwt", "oauth", "password", "encryption", "crypto")),
    ("API/Backend", ("api", "endpoint", "backend", "server", "database", "query")),
    ("Frontend/UI", ("ui", "frontend", "component", "react", "vue", "angular", "css")),
    (
        "DevOps/Infrastructure",
        ("deploy", "docker", "kubernetes", "ci/cd", "pipeline", "infrastructure"),
    ),
    ("Data/Analytics", ("data", "analytics", "chart", "graph", "visualization", "report")),
    ("Testing", ("test", "testing", "unit test", "integration test", "e2e")),
)
DEFAULT_DOMAIN = "General"

ACTION_VERB_PATTERN = re.compile(r"\b(add|create|implement|fix|remove|update)\b")
IDENTIFIER_PATTERN = re.compile(r"\b(?:[A-Z][a-z0-9]+){2,}\b")
VAGUE_TERM_PATTERN = re.compile(r"\b(improve|enhance|optimize|better)\b")
QUALIFIER_PATTERN = re.compile(r"\b(using|with)\b")

RISK_RULES: tuple[tuple[str, re.Pattern[str]], ...] = (
    (
        "security",
        re.compile(
            r"\b(auth|authentication|authorization|password|jwt|oauth|crypto|encryption"
            r"|bcrypt|security)\b"
        ),
    ),
    ("privacy", re.compile(r"\b(gdpr|ccpa|privacy|pii|personal data)\b")),
    ("compliance", re.compile(r"\b(license|compliance|legal|gdpr|ccpa|hipaa|sox|pci)\b")),
    ("policy", re.compile(r"\b(user data|sensitive|confidential)\b")),
)

BASE_DURATION_MINUTES: dict[Complexity, int] = {"LOW": 3, "MEDIUM": 5, "HIGH": 8}
RISK_DURATION_MINUTES = 2


@dataclass(frozen=True, slots=True)
class TaskAnalysis:
    complexity: Complexity
    domain: str
    clarity_score: float
    risk_flags: tuple[str, ...] = field(default_factory=tuple)
    recommended_model: ModelTier = "sonnet"
    estimated_duration_minutes: int = 5

    def to_dict(self) -> dict[str, Any]:
        return {
            "complexity": self.complexity,
            "domain": self.domain,
            "clarity_score": self.clarity_score,
            "risk_flags": list(self.risk_flags),
            "recommended_model": self.recommended_model,
            "estimated_duration_minutes": self.estimated_duration_minutes,
        }


def classify_complexity(text: str) -> Complexity:
    lowered = text.lower()
    for level, keywords in COMPLEXITY_RULES:
        if any(keyword in lowered for keyword in keywords):
            return level
    return "MEDIUM"


def classify_domain(text: str) -> str:
    lowered = text.lower()
    for domain, keywords in DOMAIN_RULES:
        if any(keyword in lowered for keyword in keywords):
            return domain
    return DEFAULT_DOMAIN


def score_clarity(text: str) -> float:
    lowered = text.lower()
    score = 0.5
    if ACTION_VERB_PATTERN.search(lowered):
        score += 0.2
    # Identifiers are case-sensitive, so match against the original text.
    if IDENTIFIER_PATTERN.search(text):
        score += 0.1
    if VAGUE_TERM_PATTERN.search(lowered):
        score -= 0.1
    if QUALIFIER_PATTERN.search(lowered):
        score += 0.1
    return round(min(1.0, max(0.0, score)), 2)


def detect_risk_flags(text: str) -> tuple[str, ...]:
    lowered = text.lower()
    return tuple(flag for flag, pattern in RISK_RULES if pattern.search(lowered))


def recommend_model(complexity: Complexity, risk_flags: tuple[str, ...]) -> ModelTier:
    if complexity == "HIGH" or risk_flags:
        return "opus"
    if complexity == "MEDIUM":
        return "sonnet"
    return "haiku"


def analyze_task(task: str) -> TaskAnalysis:
    if not isinstance(task, str) or len(task.strip()) < MIN_TASK_LENGTH:
        raise InvalidInputError(
            f"Task text must be at least {MIN_TASK_LENGTH} characters long."
        )
    complexity = classify_complexity(task)
    risk_flags = detect_risk_flags(task)
    duration = BASE_DURATION_MINUTES[complexity]
    if risk_flags:
        duration += RISK_DURATION_MINUTES
    return TaskAnalysis(
        complexity=complexity,
        domain=classify_domain(task),
        clarity_score=score_clarity(task),
        risk_flags=risk_flags,
        recommended_model=recommend_model(complexity, risk_flags),
        estimated_duration_minutes=duration,
    )


def recommendations(analysis: TaskAnalysis) -> list[str]:
    advice: list[str] = []
    if analysis.clarity_score < 0.6:
        advice.append("Low clarity score. Consider asking clarifying questions before proceeding.")
    if analysis.risk_flags:
        advice.append(
            f"Risk flags detected: {', '.join(analysis.risk_flags)}. "
            "Enable SME quality gates for this workflow."
        )
    if analysis.complexity == "HIGH":
        advice.append("High complexity. Consider breaking this into multiple smaller tasks.")
    if analysis.recommended_model == "opus":
        advice.append("Recommended model: opus. This task requires deep reasoning and planning.")
    if not advice:
        advice.append("Task appears well-defined and ready for execution.")
    return advice
