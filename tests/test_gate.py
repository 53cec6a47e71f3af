from ori.gate import FlaggedFinding, GateAction, GateDecision, QualityGateEngine
from ori.packet import Finding, Severity


def _finding(severity: Severity, description: str) -> Finding:
    return Finding(severity=severity, category="test", description=description)


def test_no_blocking_findings_proceeds() -> None:
    decision = QualityGateEngine().decide(
        {
            "security": [_finding(Severity.MEDIUM, "weak default")],
            "performance": [_finding(Severity.INFO, "note")],
        }
    )

    assert decision.action is GateAction.PROCEED
    assert decision.blocking == ()


def test_empty_input_proceeds() -> None:
    assert QualityGateEngine().decide({}).action is GateAction.PROCEED


def test_critical_and_high_findings_pause_in_original_order() -> None:
    decision = QualityGateEngine().decide(
        {
            "security": [
                _finding(Severity.HIGH, "missing rate limit"),
                _finding(Severity.CRITICAL, "hardcoded secret"),
            ],
            "compliance": [_finding(Severity.LOW, "wording")],
            "code_quality": [_finding(Severity.CRITICAL, "unbounded recursion")],
        }
    )

    assert decision.action is GateAction.PAUSE
    assert [(item.sme, item.finding.description) for item in decision.critical] == [
        ("security", "hardcoded secret"),
        ("code_quality", "unbounded recursion"),
    ]
    assert [(item.sme, item.finding.description) for item in decision.high] == [
        ("security", "missing rate limit"),
    ]


def test_decide_never_aborts() -> None:
    findings = {"security": [_finding(severity, "x") for severity in Severity]}

    assert QualityGateEngine().decide(findings).action is not GateAction.ABORT
    assert QualityGateEngine.abort().action is GateAction.ABORT


def test_decision_wire_format() -> None:
    decision = GateDecision(
        GateAction.PAUSE,
        critical=(FlaggedFinding("security", _finding(Severity.CRITICAL, "secret")),),
    )

    payload = decision.to_dict()

    assert payload["action"] == "pause"
    assert payload["critical"][0]["sme"] == "security"
    assert payload["critical"][0]["severity"] == "Critical"
    assert GateDecision.from_dict(payload) == decision
