"""Codec for the opaque callback tokens carried by Slack buttons."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

DECIDE_ACTION_PREFIX = "relay_decide_"
CONFIRM_ACTION_ID = "relay_confirm"
CANCEL_ACTION_ID = "relay_cancel"
REASON_PICK_ACTION_PREFIX = "relay_reason_pick_"
REASON_PREV_ACTION_ID = "relay_reason_prev"
REASON_NEXT_ACTION_ID = "relay_reason_next"
REASON_OTHER_ACTION_ID = "relay_reason_other"
NOTIFY_SEND_ACTION_ID = "relay_notify_send"

DECIDE_ACTION_PATTERN = re.compile(rf"^{DECIDE_ACTION_PREFIX}\w+$")
REASON_PICK_ACTION_PATTERN = re.compile(rf"^{REASON_PICK_ACTION_PREFIX}\w+$")
REASON_PAGE_ACTION_PATTERN = re.compile(rf"^({REASON_PREV_ACTION_ID}|{REASON_NEXT_ACTION_ID})$")
RELAY_ACTION_PATTERN = re.compile(r"^relay_\w+$")


@dataclass(frozen=True)
class ActionContext:
    """Parsed callback token of a pressed control."""

    request_id: str | None = None
    value: str | None = None
    code: str | None = None
    page: int | None = None


def encode_action_value(
    *,
    request_id: str | None = None,
    value: str | None = None,
    code: str | None = None,
    page: int | None = None,
) -> str:
    """Return the compact JSON token stored in a button's ``value``."""

    payload: dict[str, Any] = {}
    if request_id is not None:
        payload["r"] = request_id
    if value is not None:
        payload["v"] = value
    if code is not None:
        payload["c"] = code
    if page is not None:
        payload["p"] = page
    return json.dumps(payload, separators=(",", ":"))


def parse_action_context(raw_value: str) -> ActionContext:
    """Parse a button ``value`` into an :class:`ActionContext`."""

    try:
        payload = json.loads(raw_value or "{}")
    except json.JSONDecodeError as exc:
        raise ValueError("Invalid action payload.") from exc

    if not isinstance(payload, dict):
        raise ValueError("Invalid action payload.")

    request_id = payload.get("r")
    value = payload.get("v")
    code = payload.get("c")
    page = payload.get("p")

    if request_id is not None and (not isinstance(request_id, str) or not request_id):
        raise ValueError("Invalid action payload.")
    for item in (value, code):
        if item is not None and (not isinstance(item, str) or not item):
            raise ValueError("Invalid action payload.")
    if page is not None and (not isinstance(page, int) or isinstance(page, bool)):
        raise ValueError("Invalid action payload.")

    return ActionContext(request_id=request_id, value=value, code=code, page=page)
