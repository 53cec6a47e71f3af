import json

import pytest

from ori.errors import ErrorKind, InvalidInputError, PhaseError, SchemaVersionMismatchError
from ori.packet import (
    PHASE_SEQUENCE,
    Finding,
    HandoffPacket,
    PhaseId,
    PhaseState,
    Severity,
    SmeReview,
    check_phase_writes,
    is_valid_trace_id,
)


def test_create_assigns_trace_id_and_initial_phase() -> None:
    packet = HandoffPacket.create("Add rate limiting to the API", hints={"files_changed": 3})

    assert is_valid_trace_id(packet.trace_id)
    assert packet.schema_version == "1.0.0"
    assert packet.phase.current is PhaseId.STRATEGY
    assert packet.phase.next is PhaseId.RESEARCH
    assert packet.phase.completed == []
    assert packet.context == {"hints": {"files_changed": 3}}


def test_invalid_caller_trace_id_is_replaced() -> None:
    packet = HandoffPacket.create("Add rate limiting to the API", trace_id="not-a-uuid")

    assert packet.trace_id != "not-a-uuid"
    assert is_valid_trace_id(packet.trace_id)


def test_wire_format_uses_camel_case_and_round_trips() -> None:
    packet = HandoffPacket.create("Add rate limiting to the API")
    packet.user_request.risk_flags = ["security"]
    packet.sme_reviews["security"] = SmeReview(
        executed=True,
        overall_risk="high",
        findings=[Finding(Severity.HIGH, "dos", "No rate limit", "api.py:10", "Add one")],
        recommendation="Block",
    )

    payload = json.loads(json.dumps(packet.to_dict()))

    assert payload["schemaVersion"] == "1.0.0"
    assert payload["phase"]["next"] == "research"
    assert payload["userRequest"]["riskFlags"] == ["security"]
    assert payload["smeReviews"]["security"]["findings"][0]["severity"] == "High"
    assert HandoffPacket.from_dict(payload) == packet


def test_unsupported_schema_version_is_rejected() -> None:
    payload = HandoffPacket.create("Add rate limiting to the API").to_dict()
    payload["schemaVersion"] = "2.0.0"

    with pytest.raises(SchemaVersionMismatchError) as excinfo:
        HandoffPacket.from_dict(payload)

    assert excinfo.value.kind is ErrorKind.SCHEMA_VERSION_MISMATCH


def test_inconsistent_phase_state_is_rejected() -> None:
    payload = HandoffPacket.create("Add rate limiting to the API").to_dict()
    payload["phase"]["completed"] = ["research"]

    with pytest.raises(InvalidInputError):
        HandoffPacket.from_dict(payload)


def test_unknown_risk_flag_is_rejected() -> None:
    payload = HandoffPacket.create("Add rate limiting to the API").to_dict()
    payload["userRequest"]["riskFlags"] = ["finance"]

    with pytest.raises(InvalidInputError):
        HandoffPacket.from_dict(payload)


@pytest.mark.parametrize(
    ("path", "value"),
    [
        (("smeReviews",), ["security"]),
        (("userRequest", "clarityScore"), "high"),
        (("metadata", "loopBacks"), "twice"),
        (("userRequest",), "Add rate limiting"),
    ],
    ids=["sme-reviews-list", "clarity-text", "loop-backs-text", "user-request-text"],
)
def test_malformed_packet_fields_are_invalid_input(path: tuple[str, ...], value: object) -> None:
    payload = HandoffPacket.create("Add rate limiting to the API").to_dict()
    target = payload
    for key in path[:-1]:
        target = target[key]
    target[path[-1]] = value

    with pytest.raises(InvalidInputError) as excinfo:
        HandoffPacket.from_dict(payload)

    assert excinfo.value.kind is ErrorKind.INVALID_INPUT


def test_severity_parse_is_case_insensitive() -> None:
    assert Severity.parse("critical") is Severity.CRITICAL
    assert Severity.CRITICAL.rank > Severity.HIGH.rank > Severity.INFO.rank
    with pytest.raises(InvalidInputError):
        Severity.parse("Severe")


def test_phase_state_advance_and_rewind_keep_invariant() -> None:
    state = PhaseState()
    for _ in range(4):
        state.advance()
        state.check_invariant()

    assert state.current is PhaseId.IMPLEMENT
    assert state.completed == list(PHASE_SEQUENCE[:4])

    state.rewind(PhaseId.VERIFY)

    assert state.current is PhaseId.VERIFY
    assert state.completed == [PhaseId.STRATEGY, PhaseId.RESEARCH]
    assert state.remaining == [PhaseId.SME_GATE, PhaseId.IMPLEMENT, PhaseId.DOCUMENT]
    state.check_invariant()


def test_phase_state_cannot_move_past_the_end() -> None:
    state = PhaseState()
    while state.next is not None:
        state.advance()

    assert state.current is PhaseId.DOCUMENT
    with pytest.raises(PhaseError):
        state.advance()


def test_phase_ordinals() -> None:
    assert [phase.ordinal for phase in PHASE_SEQUENCE] == ["0", "1", "2", "2.5", "3", "4"]


def test_field_ownership_rejects_foreign_writes() -> None:
    before = HandoffPacket.create("Add rate limiting to the API")
    after = before.clone()
    after.context["findings"] = {"findings": []}

    with pytest.raises(PhaseError, match="context.findings"):
        check_phase_writes(before, after, PhaseId.STRATEGY)

    check_phase_writes(before, after, PhaseId.RESEARCH)


def test_field_ownership_protects_original_request() -> None:
    before = HandoffPacket.create("Add rate limiting to the API")
    after = before.clone()
    after.user_request.original = "something else"

    with pytest.raises(PhaseError, match="userRequest.original"):
        check_phase_writes(before, after, PhaseId.STRATEGY)


def test_append_only_lists_cannot_be_rewritten() -> None:
    before = HandoffPacket.create("Add rate limiting to the API")
    before.constraints.extend(["keep API stable", "no new deps"])
    after = before.clone()
    after.constraints = ["no new deps", "keep API stable", "extra"]

    with pytest.raises(PhaseError, match="append-only"):
        check_phase_writes(before, after, PhaseId.STRATEGY)

    after.constraints = ["keep API stable", "no new deps", "extra"]
    check_phase_writes(before, after, PhaseId.STRATEGY)


def test_unknown_context_keys_are_rejected() -> None:
    before = HandoffPacket.create("Add rate limiting to the API")
    after = before.clone()
    after.context["scratch"] = {}

    with pytest.raises(PhaseError, match="unknown context keys"):
        check_phase_writes(before, after, PhaseId.STRATEGY)


def test_last_completed_phase() -> None:
    packet = HandoffPacket.create("Add rate limiting to the API")
    assert packet.last_completed_phase is None

    packet.phase.advance()
    packet.phase.advance()

    assert packet.last_completed_phase is PhaseId.RESEARCH
