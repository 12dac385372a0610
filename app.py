"""Application entry point for the Slack approval relay."""

from __future__ import annotations

from datetime import UTC, datetime, timedelta
from functools import lru_cache
from uuid import uuid4

import structlog
from flask import Flask, copy_current_request_context, jsonify, request
from pydantic import ValidationError
from slack_bolt import App as SlackApp
from slack_bolt.adapter.flask import SlackRequestHandler
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from structlog.contextvars import bind_contextvars, unbind_contextvars

from approval_relay.actions import RELAY_ACTION_PATTERN
from approval_relay.background import run_async
from approval_relay.backend import AllowListVerifier, BackendClient
from approval_relay.config import AppSettings, get_settings
from approval_relay.db import create_schema, session_scope
from approval_relay.errors import RelayError
from approval_relay.logging_config import configure_logging
from approval_relay.security import (
    SLACK_SIGNATURE_HEADER,
    SLACK_TIMESTAMP_HEADER,
    extract_bearer_token,
    is_valid_bearer_token,
    is_valid_slack_request,
)
from approval_relay.sessions import SessionStore
from approval_relay.slack_client import MessageRef, SlackTransport
from approval_relay.workflow import (
    ApprovalWorkflow,
    ConversationStore,
    DecisionArbiter,
    IngressPayload,
    MachineSettings,
    RequestRepository,
)

RELAY_COMMAND = "/relay"
GENERIC_ERROR_TEXT = ":warning: Something went wrong while handling that. Please try again."


@lru_cache()
def get_workflow() -> ApprovalWorkflow:
    """Build the workflow and its collaborators once per process."""

    settings = get_settings()
    return ApprovalWorkflow(
        sessions=SessionStore(
            verify_identity=AllowListVerifier(settings.reviewer_identities),
            can_decide=settings.can_decide,
            ttl=timedelta(hours=settings.session_ttl_hours),
        ),
        conversations=ConversationStore(ttl=timedelta(minutes=settings.conversation_ttl_minutes)),
        arbiter=DecisionArbiter(),
        backend=BackendClient.from_settings(settings),
        transport=SlackTransport(token=settings.bot_token, max_attempts=settings.transport_max_attempts),
        requests=RequestRepository(),
        machine_settings=MachineSettings(
            reason_page_size=settings.reason_page_size,
            custom_reason_max_words=settings.custom_reason_max_words,
        ),
    )


def _create_bolt_app(settings: AppSettings) -> SlackApp:
    """Initialise the Slack Bolt application using validated settings."""

    return SlackApp(
        token=settings.bot_token,
        signing_secret=settings.signing_secret,
        token_verification_enabled=False,
    )


def _register_error_handlers(flask_app: Flask) -> None:
    """Register a JSON error handler that attaches a trace identifier."""

    @flask_app.errorhandler(Exception)
    def handle_unexpected_error(error: Exception):  # type: ignore[override]
        trace_id = str(uuid4())
        flask_app.logger.exception("Unhandled application error", extra={"trace_id": trace_id}, exc_info=error)
        response = jsonify({"success": False, "error": "internal_server_error", "trace_id": trace_id})
        response.status_code = 500
        return response


def _handle_relay_command(ack, command, respond, logger):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)
    try:
        ack()
        user_id = command.get("user_id")
        name, _, argument = (command.get("text") or "").strip().partition(" ")
        log = log.bind(user_id=user_id, command=name or "help")
        log.info("slash_command_received")
        if not user_id:
            respond({"response_type": "ephemeral", "text": "We could not identify the acting user."})
            return
        try:
            reply = get_workflow().handle_command(user_id, name, argument)
        except RelayError:
            logger.exception("Relay command failed", extra={"command": name})
            reply = GENERIC_ERROR_TEXT
        if reply:
            respond({"response_type": "ephemeral", "text": reply})
    finally:
        unbind_contextvars("trace_id")


def _message_ref_from(body: dict) -> MessageRef | None:
    container = body.get("container") or {}
    channel_id = container.get("channel_id") or (body.get("channel") or {}).get("id")
    ts = container.get("message_ts") or (body.get("message") or {}).get("ts")
    if not channel_id or not ts:
        return None
    return MessageRef(channel=channel_id, ts=ts)


def _handle_relay_action(ack, body, logger):
    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)
    try:
        ack()
        actions = body.get("actions") or []
        if not actions:
            log.warning("action_payload_empty")
            return
        action = actions[0]
        user_id = (body.get("user") or {}).get("id")
        if not user_id:
            log.warning("missing_user_id")
            return
        log = log.bind(user_id=user_id, action_id=action.get("action_id"))
        log.info("action_received")
        try:
            get_workflow().handle_control(
                user_id,
                action.get("action_id", ""),
                action.get("value", ""),
                _message_ref_from(body),
            )
        except RelayError:
            logger.exception("Relay action failed", extra={"action_id": action.get("action_id")})
    finally:
        unbind_contextvars("trace_id")


def _handle_direct_message(event, logger):
    if event.get("bot_id") or event.get("subtype") or event.get("channel_type") != "im":
        return

    trace_id = str(uuid4())
    bind_contextvars(trace_id=trace_id)
    log = structlog.get_logger().bind(trace_id=trace_id)
    try:
        user_id = event.get("user")
        if not user_id:
            return
        log.info("direct_message_received", user_id=user_id)
        try:
            get_workflow().handle_text(user_id, event.get("text") or "")
        except RelayError:
            logger.exception("Relay message handling failed", extra={"user_id": user_id})
    finally:
        unbind_contextvars("trace_id")


def _register_handlers(bolt_app: SlackApp) -> None:
    @bolt_app.command(RELAY_COMMAND)
    def handle_relay(ack, command, respond, logger):
        _handle_relay_command(ack=ack, command=command, respond=respond, logger=logger)

    @bolt_app.action(RELAY_ACTION_PATTERN)
    def handle_action(ack, body, logger):
        _handle_relay_action(ack=ack, body=body, logger=logger)

    @bolt_app.event("message")
    def handle_message(event, logger):
        _handle_direct_message(event=event, logger=logger)


def _json_error(status: int, message: str, **extra):
    response = jsonify({"success": False, "error": message, **extra})
    response.status_code = status
    return response


def _health_report(*, deep: bool = False) -> dict[str, object]:
    """Probe configuration and the store; with *deep*, also the backend.

    Backend reachability is informational only: decisions are still
    recorded while it is down.
    """

    report: dict[str, object] = {"ok": True, "checks": {}}
    checks = report["checks"]
    try:
        get_settings()
        checks["config"] = "valid"
    except RuntimeError as exc:
        checks["config"] = f"invalid: {exc}"
        report["ok"] = False
        return report

    try:
        with session_scope() as session:
            session.execute(text("SELECT 1"))
        checks["store"] = "up"
    except SQLAlchemyError as exc:
        checks["store"] = f"down: {exc}"
        report["ok"] = False

    if deep:
        checks["backend"] = "up" if get_workflow().backend.check_health() else "unreachable"
    return report


def create_app() -> Flask:
    """Create and configure the Flask application."""

    configure_logging()

    settings = get_settings()
    create_schema()
    bolt_app = _create_bolt_app(settings)
    handler = SlackRequestHandler(bolt_app)

    flask_app = Flask(__name__)
    flask_app.config["STARTED_AT"] = datetime.now(UTC)
    flask_app.logger.setLevel("INFO")
    _register_error_handlers(flask_app)
    _register_handlers(bolt_app)

    @flask_app.route("/slack/events", methods=["POST"])
    def slack_events():
        raw_body = request.get_data(as_text=True)
        timestamp = request.headers.get(SLACK_TIMESTAMP_HEADER, "")
        signature = request.headers.get(SLACK_SIGNATURE_HEADER, "")
        if not is_valid_slack_request(
            signing_secret=settings.signing_secret,
            timestamp=timestamp,
            body=raw_body,
            signature=signature,
        ):
            response = jsonify({"error": "invalid_signature"})
            response.status_code = 401
            return response

        trace_id = str(uuid4())

        @copy_current_request_context
        def process_request():
            handler.handle(request)

        run_async(process_request, trace_id=trace_id)
        return "", 200

    @flask_app.route("/notify", methods=["POST"])
    def notify():
        log = structlog.get_logger().bind(route="notify")
        token = extract_bearer_token(request.headers.get("Authorization"))
        if token is None:
            log.warning("ingress_unauthenticated")
            return _json_error(401, "Missing or invalid authorization header")
        if not is_valid_bearer_token(token, settings.ingress_api_key):
            log.warning("ingress_forbidden")
            return _json_error(403, "Invalid API key - Access denied")

        body = request.get_json(silent=True)
        if not isinstance(body, dict):
            return _json_error(400, "Request body must be a JSON object")
        try:
            payload = IngressPayload.model_validate(body)
        except ValidationError as exc:
            details = [error["msg"] for error in exc.errors()]
            log.info("ingress_rejected", errors=details)
            return _json_error(400, "Invalid notification payload", details=details)

        workflow = get_workflow()
        approval_request = workflow.submit_payload(payload)
        recipients = len(workflow.sessions.list_active())
        trace_id = str(uuid4())
        run_async(workflow.broadcast, approval_request.request_id, trace_id=trace_id)
        log.info(
            "ingress_accepted",
            request_id=approval_request.request_id,
            track_id=approval_request.track_id,
            kind=approval_request.kind,
            recipients=recipients,
            trace_id=trace_id,
        )
        return jsonify(
            {
                "success": True,
                "data": {
                    "message": "Notification accepted",
                    "requestId": approval_request.request_id,
                    "trackId": approval_request.track_id or None,
                    "type": approval_request.kind,
                    "priority": approval_request.priority,
                    "actionable": approval_request.actionable,
                    "recipients": recipients,
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            }
        )

    @flask_app.route("/bot-status", methods=["GET"])
    def bot_status():
        active = get_workflow().sessions.list_active()
        uptime = datetime.now(UTC) - flask_app.config["STARTED_AT"]
        return jsonify(
            {
                "success": True,
                "data": {
                    "status": "OK",
                    "uptime": int(uptime.total_seconds()),
                    "activeReviewers": len(active),
                    "timestamp": datetime.now(UTC).isoformat(),
                },
            }
        )

    @flask_app.route("/healthz", methods=["GET"])
    def healthz():
        deep = request.args.get("deep", "").lower() in {"1", "true", "yes"}
        report = _health_report(deep=deep)
        return jsonify(report), 200 if report["ok"] else 503

    return flask_app


if __name__ == "__main__":  # pragma: no cover - manual execution helper
    application = create_app()
    application.run(host="0.0.0.0", port=3000, debug=True)
