"""Block Kit builders for alerts, dialogue prompts and decision summaries."""

from __future__ import annotations

from typing import Any, Dict, List

from approval_relay.actions import (
    CANCEL_ACTION_ID,
    CONFIRM_ACTION_ID,
    DECIDE_ACTION_PREFIX,
    NOTIFY_SEND_ACTION_ID,
    REASON_NEXT_ACTION_ID,
    REASON_OTHER_ACTION_ID,
    REASON_PICK_ACTION_PREFIX,
    REASON_PREV_ACTION_ID,
    encode_action_value,
)

from .arbiter import DecisionRecord
from .catalog import ReasonPage
from .requests import ApprovalRequestRecord
from .states import ComposingNotification, ConversationState
from .validation import REFERENCE_PROMPT

_VALUE_LABELS = {
    "approved": (":white_check_mark:", "Approve"),
    "validating": (":large_yellow_circle:", "Validating"),
    "pending": (":hourglass_flowing_sand:", "Pending"),
    "rejected": (":no_entry_sign:", "Reject"),
}

_KIND_TITLES = {
    "crypto": "Crypto transaction awaiting review",
    "cashout": "Cash-out transaction awaiting review",
    "auth": "Identity verification awaiting review",
    "generic": "Transaction alert",
}

_PRIORITY_EMOJI = {"high": ":red_circle:", "normal": ":large_blue_circle:", "low": ":white_circle:"}

_NOTIFICATION_PROMPTS = {
    "await_user_id": "Which user should receive the notification? Send their phone number.",
    "await_title": "Send the notification title.",
    "await_body": "Send the notification body.",
    "await_url": "Send a link to open when the notification is tapped, or `-` to skip.",
    "await_tag": "Send a tag for the notification, or `-` to skip.",
    "await_image": "Send an image link for the notification, or `-` to skip.",
}

GUIDANCE_TEXT = (
    ":bulb: There is nothing pending for you right now. Available commands:\n"
    "• `/relay status` - show your session and any pending action\n"
    "• `/relay pending` - re-send alerts that are still open\n"
    "• `/relay notify <userId>` or `/relay broadcast` - compose a push notification\n"
    "• `/relay cancel` - abandon the current action\n"
    "• `/relay logout` - end your session\n"
    "• `/relay help` - show this help"
)

NOTICE_TEXT = {
    "guidance": GUIDANCE_TEXT,
    "cancelled": ":wastebasket: The pending action was cancelled.",
    "view_only": ":eyes: You have view-only access. The outcome will be shown here once a reviewer decides.",
    "stale_control": ":information_source: That button is no longer active. Nothing is pending for it.",
    "invalid_value": ":warning: That option is not available for this request.",
}


def value_label(value: str) -> str:
    emoji, label = _VALUE_LABELS.get(value, (":information_source:", value.capitalize()))
    return f"{emoji} {label}"


def _section(text: str) -> Dict[str, Any]:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}


def _context(text: str) -> Dict[str, Any]:
    return {"type": "context", "elements": [{"type": "mrkdwn", "text": text}]}


def _button(text: str, action_id: str, value: str, style: str | None = None) -> Dict[str, Any]:
    button: Dict[str, Any] = {
        "type": "button",
        "text": {"type": "plain_text", "text": text[:75], "emoji": True},
        "action_id": action_id,
        "value": value,
    }
    if style:
        button["style"] = style
    return button


def _cancel_button() -> Dict[str, Any]:
    return _button("Cancel", CANCEL_ACTION_ID, encode_action_value())


def _format_payload(payload) -> str:
    parts = []
    if payload.get("reference"):
        parts.append(f"ref `{payload['reference']}`")
    if payload.get("reason"):
        parts.append(f"reason: {payload['reason']}")
    return " · ".join(parts)


def _decision_buttons(request: ApprovalRequestRecord) -> Dict[str, Any]:
    styles = {"approved": "primary", "rejected": "danger"}
    return {
        "type": "actions",
        "block_id": "relay_decision_buttons",
        "elements": [
            _button(
                value_label(value),
                f"{DECIDE_ACTION_PREFIX}{value}",
                encode_action_value(request_id=request.request_id, value=value),
                styles.get(value),
            )
            for value in request.candidate_values
        ],
    }


def _alert_blocks(request: ApprovalRequestRecord) -> List[Dict[str, Any]]:
    priority = _PRIORITY_EMOJI.get(request.priority, "")
    blocks: List[Dict[str, Any]] = [
        {
            "type": "header",
            "text": {"type": "plain_text", "text": _KIND_TITLES.get(request.kind, "Alert"), "emoji": True},
        },
        _section(request.message),
    ]
    if request.track_id:
        blocks.append(_context(f"{priority} Track ID: `{request.track_id}` - Request: `{request.request_id}`".strip()))
    return blocks


def build_alert_message(request: ApprovalRequestRecord, *, include_actions: bool = True) -> Dict[str, Any]:
    """Build the alert delivered to every reviewer."""

    blocks = _alert_blocks(request)
    if include_actions and request.actionable:
        blocks.append(_decision_buttons(request))
    return {"text": f"{_KIND_TITLES.get(request.kind, 'Alert')}: {request.track_id}".rstrip(": "), "blocks": blocks}


def build_locked_alert(request: ApprovalRequestRecord, value: str) -> Dict[str, Any]:
    """The alert as seen by a reviewer who is mid-dialogue on it."""

    blocks = _alert_blocks(request)
    blocks.append(_context(f"{value_label(value)} selected - finish the steps below, or press Cancel."))
    return {"text": f"{value_label(value)} selected for {request.track_id}.", "blocks": blocks}


def build_decided_alert(request: ApprovalRequestRecord, decision: DecisionRecord) -> Dict[str, Any]:
    """The alert once a decision has been recorded; no controls remain."""

    blocks = _alert_blocks(request)
    blocks.append(_context(decision_summary(decision)))
    return {"text": decision_summary(decision), "blocks": blocks}


def decision_summary(decision: DecisionRecord) -> str:
    details = _format_payload(decision.payload)
    when = decision.decided_at.strftime("%Y-%m-%d %H:%M:%S UTC")
    summary = f"{value_label(decision.value)} by `{decision.decided_by}` at {when}"
    return f"{summary} ({details})" if details else summary


def already_decided_text(decision: DecisionRecord) -> str:
    return (
        ":lock: This request was already processed.\n"
        f"• Track ID: `{decision.track_id}`\n"
        f"• Request: `{decision.request_id}`\n"
        f"• Outcome: {decision_summary(decision)}"
    )


def build_confirm_prompt(request_id: str, track_id: str, value: str) -> Dict[str, Any]:
    text = f"Set `{track_id}` to *{value_label(value)}*?"
    return {
        "text": text,
        "blocks": [
            _section(text),
            {
                "type": "actions",
                "block_id": "relay_confirm_buttons",
                "elements": [
                    _button("Confirm", CONFIRM_ACTION_ID, encode_action_value(request_id=request_id), "primary"),
                    _cancel_button(),
                ],
            },
        ],
    }


def build_reference_prompt(track_id: str, value: str) -> Dict[str, Any]:
    text = f":mag: {value_label(value)} selected for `{track_id}`.\n{REFERENCE_PROMPT}"
    return {
        "text": text,
        "blocks": [_section(text), {"type": "actions", "elements": [_cancel_button()]}],
    }


def build_reason_menu(request_id: str, track_id: str, page: ReasonPage) -> Dict[str, Any]:
    """One page of canned rejection reasons with navigation and an Other escape."""

    reasons = [
        _button(
            reason.label.capitalize(),
            f"{REASON_PICK_ACTION_PREFIX}{reason.code}",
            encode_action_value(request_id=request_id, code=reason.code),
        )
        for reason in page.items
    ]
    navigation: List[Dict[str, Any]] = []
    if page.has_previous:
        navigation.append(
            _button("Previous", REASON_PREV_ACTION_ID, encode_action_value(request_id=request_id, page=page.page - 1))
        )
    if page.has_more:
        navigation.append(
            _button("Next", REASON_NEXT_ACTION_ID, encode_action_value(request_id=request_id, page=page.page + 1))
        )
    navigation.append(_button("Other...", REASON_OTHER_ACTION_ID, encode_action_value(request_id=request_id)))
    navigation.append(_cancel_button())

    text = f":memo: Why is `{track_id}` being rejected?"
    return {
        "text": text,
        "blocks": [
            _section(text),
            {"type": "actions", "block_id": "relay_reason_options", "elements": reasons},
            _context(f"Page {page.page + 1} of {page.total_pages}"),
            {"type": "actions", "block_id": "relay_reason_navigation", "elements": navigation},
        ],
    }


def build_custom_reason_prompt(max_words: int) -> Dict[str, Any]:
    text = f":pencil2: Type the rejection reason (at most {max_words} words)."
    return {"text": text, "blocks": [_section(text), {"type": "actions", "elements": [_cancel_button()]}]}


def build_notification_prompt(step: str) -> Dict[str, Any]:
    text = _NOTIFICATION_PROMPTS.get(step, "Send the next value.")
    return {"text": text, "blocks": [_section(text), {"type": "actions", "elements": [_cancel_button()]}]}


def build_notification_preview(state: ComposingNotification) -> Dict[str, Any]:
    audience = "all users" if state.broadcast else f"user `{state.target_user_id}`"
    lines = [f"*Preview* (to {audience})", f"*{state.title}*", state.body or ""]
    extras = (("Link", state.url), ("Tag", state.tag), ("Image", state.image))
    lines.extend(f"{label}: {item}" for label, item in extras if item)
    text = "\n".join(lines)
    return {
        "text": text,
        "blocks": [
            _section(text),
            {
                "type": "actions",
                "elements": [
                    _button("Send", NOTIFY_SEND_ACTION_ID, encode_action_value(), "primary"),
                    _cancel_button(),
                ],
            },
        ],
    }


def success_text(decision: DecisionRecord) -> str:
    details = _format_payload(decision.payload)
    lines = [
        ":white_check_mark: Decision recorded and sent to the backend.",
        f"• Track ID: `{decision.track_id}`",
        f"• Outcome: *{value_label(decision.value)}*",
    ]
    if details:
        lines.append(f"• {details}")
    return "\n".join(lines)


def backend_failure_text(decision: DecisionRecord, *, retryable: bool) -> str:
    outcome = (
        "The backend did not confirm the update in time, so its state is unknown."
        if retryable
        else "The backend rejected the update."
    )
    return (
        f":x: Your decision for `{decision.track_id}` ({value_label(decision.value)}) was recorded, "
        f"but the backend update failed. {outcome}\n"
        "The request stays closed; an operator has to replay the update."
    )


def describe_state(state: ConversationState | None) -> str:
    if state is None:
        return "No pending action."
    if isinstance(state, ComposingNotification):
        return f"Composing a notification (step: {state.step.replace('_', ' ')})."
    return f"Working on `{state.track_id}` ({value_label(state.value)}), step: {state.kind.replace('_', ' ')}."
