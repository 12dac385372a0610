"""Tests for Block Kit payload builders."""

from datetime import UTC, datetime

from approval_relay.actions import parse_action_context
from approval_relay.workflow.arbiter import DecisionRecord
from approval_relay.workflow.catalog import reason_page
from approval_relay.workflow.messages import (
    already_decided_text,
    build_alert_message,
    build_decided_alert,
    build_locked_alert,
    build_notification_preview,
    build_reason_menu,
    describe_state,
)
from approval_relay.workflow.requests import ApprovalRequestRecord
from approval_relay.workflow.states import CollectingReference, ComposingNotification

REQUEST = ApprovalRequestRecord(
    request_id="req-1",
    track_id="T1",
    kind="auth",
    message="Verify user T1",
    priority="high",
    candidate_values=("approved", "rejected"),
    supplements={"rejected": "reason"},
)
DECISION = DecisionRecord(
    request_id="req-1",
    track_id="T1",
    value="rejected",
    decided_by="+989121234567",
    decided_at=datetime(2026, 1, 5, 9, 30, tzinfo=UTC),
    payload={"reason": "invalid document"},
)


def _actions(payload):
    return [block for block in payload["blocks"] if block["type"] == "actions"]


def test_alert_buttons_carry_request_and_value():
    payload = build_alert_message(REQUEST)

    buttons = _actions(payload)[0]["elements"]
    assert [button["action_id"] for button in buttons] == ["relay_decide_approved", "relay_decide_rejected"]
    context = parse_action_context(buttons[1]["value"])
    assert context.request_id == "req-1"
    assert context.value == "rejected"
    assert buttons[1]["style"] == "danger"


def test_locked_and_decided_alerts_have_no_controls():
    assert _actions(build_locked_alert(REQUEST, "rejected")) == []

    decided = build_decided_alert(REQUEST, DECISION)
    assert _actions(decided) == []
    assert "by `+989121234567` at 2026-01-05 09:30:00 UTC" in decided["text"]
    assert "reason: invalid document" in decided["text"]


def test_reason_menu_navigation():
    first = build_reason_menu("req-1", "T1", reason_page(0, 4))
    navigation = [button["action_id"] for button in _actions(first)[1]["elements"]]

    assert navigation == ["relay_reason_next", "relay_reason_other", "relay_cancel"]
    assert parse_action_context(_actions(first)[1]["elements"][0]["value"]).page == 1
    assert len(_actions(first)[0]["elements"]) == 4


def test_already_decided_text_names_the_winner():
    text = already_decided_text(DECISION)

    assert "already processed" in text
    assert "+989121234567" in text
    assert "`T1`" in text


def test_describe_state():
    assert describe_state(None) == "No pending action."
    state = CollectingReference(request_id="req-9", track_id="T9", value="approved")
    assert "`T9`" in describe_state(state)


def test_notification_preview_lists_optional_fields():
    state = ComposingNotification(
        step="await_confirm",
        target_user_id="+989121234567",
        title="Payout sent",
        body="On its way.",
        image="https://cdn.example.com/payout.png",
    )

    text = build_notification_preview(state)["text"]

    assert "to user `+989121234567`" in text
    assert "Image: https://cdn.example.com/payout.png" in text
    assert "Link:" not in text
