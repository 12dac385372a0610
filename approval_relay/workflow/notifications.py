"""Fan an approval request out to reviewers and close out their copies."""

from __future__ import annotations

from typing import Iterable

import structlog

from approval_relay.errors import TransportError
from approval_relay.sessions import SessionRecord
from approval_relay.slack_client import MessageRef, SlackTransport

from .arbiter import DecisionRecord
from .messages import build_alert_message, build_decided_alert
from .requests import ApprovalRequestRecord, RequestRepository


def publish_request_message(
    *,
    transport: SlackTransport,
    requests: RequestRepository,
    request: ApprovalRequestRecord,
    address: str,
) -> MessageRef | None:
    """Send the alert to one reviewer and store where it landed."""

    log = structlog.get_logger().bind(request_id=request.request_id, track_id=request.track_id, channel=address)
    payload = build_alert_message(request)
    try:
        ref = transport.deliver(address, payload["text"], payload["blocks"])
    except TransportError as exc:
        log.error("broadcast_delivery_failed", error=exc.error_code)
        return None

    if not ref.ts:
        log.warning("broadcast_reference_missing")
        return ref

    requests.save_message_reference(
        request_id=request.request_id,
        address=address,
        channel_id=ref.channel,
        ts=ref.ts,
    )
    return ref


def broadcast_request(
    *,
    transport: SlackTransport,
    requests: RequestRepository,
    request: ApprovalRequestRecord,
    recipients: Iterable[SessionRecord],
) -> int:
    """Deliver *request* to every recipient; return how many copies were sent."""

    delivered = 0
    failed = 0
    for session in recipients:
        ref = publish_request_message(
            transport=transport,
            requests=requests,
            request=request,
            address=session.channel_address,
        )
        if ref is None:
            failed += 1
        else:
            delivered += 1

    structlog.get_logger().info(
        "broadcast_completed",
        request_id=request.request_id,
        track_id=request.track_id,
        delivered=delivered,
        failed=failed,
    )
    return delivered


def close_out_request(
    *,
    transport: SlackTransport,
    requests: RequestRepository,
    request: ApprovalRequestRecord,
    decision: DecisionRecord,
) -> int:
    """Strip the controls from every stored copy of the alert; return how many were updated."""

    payload = build_decided_alert(request, decision)
    updated = 0
    for _address, channel_id, ts in requests.message_references(request.request_id):
        if transport.update_controls(MessageRef(channel=channel_id, ts=ts), payload["text"], payload["blocks"]):
            updated += 1

    structlog.get_logger().info(
        "close_out_completed",
        request_id=request.request_id,
        updated=updated,
    )
    return updated
