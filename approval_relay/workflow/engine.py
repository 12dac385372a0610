"""Approval workflow orchestrator.

Resolves the acting reviewer, feeds inbound events through the pure
state machine, applies the resulting store operation and then carries
out the effects: Slack replies, control swaps, arbitration and the
backend commit.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import structlog

from approval_relay.actions import (
    CANCEL_ACTION_ID,
    CONFIRM_ACTION_ID,
    DECIDE_ACTION_PATTERN,
    DECIDE_ACTION_PREFIX,
    NOTIFY_SEND_ACTION_ID,
    REASON_OTHER_ACTION_ID,
    REASON_PAGE_ACTION_PATTERN,
    REASON_PICK_ACTION_PATTERN,
    ActionContext,
    parse_action_context,
)
from approval_relay.background import run_async
from approval_relay.backend import BackendClient
from approval_relay.errors import (
    AlreadyDecidedError,
    AuthError,
    BackendCommitError,
    NotFoundError,
    TransportError,
    UnknownRequestError,
)
from approval_relay.sessions import SessionRecord, SessionStore
from approval_relay.slack_client import MessageRef, SlackTransport

from .arbiter import DecisionArbiter, DecisionRecord
from .conversation import ConversationStore
from .machine import (
    AskCustomReason,
    AskNotificationField,
    AskReference,
    CancelPressed,
    CommandIssued,
    ConfirmPressed,
    Event,
    Finalize,
    LockAlert,
    MachineSettings,
    Notice,
    NotificationSendPressed,
    NotificationStarted,
    OtherReasonRequested,
    ReasonPageRequested,
    ReasonPicked,
    RestoreAlert,
    SendNotification,
    ShowConfirm,
    ShowNotificationPreview,
    ShowReasonMenu,
    TextReceived,
    Transition,
    ValueChosen,
    transition,
)
from .messages import (
    GUIDANCE_TEXT,
    NOTICE_TEXT,
    already_decided_text,
    backend_failure_text,
    build_alert_message,
    build_confirm_prompt,
    build_custom_reason_prompt,
    build_decided_alert,
    build_locked_alert,
    build_notification_preview,
    build_notification_prompt,
    build_reason_menu,
    build_reference_prompt,
    describe_state,
    success_text,
)
from .notifications import broadcast_request, close_out_request, publish_request_message
from .requests import ApprovalRequestRecord, IngressPayload, RequestRepository
from .states import dump_state, is_decision_state

LOGIN_REQUIRED_TEXT = ":closed_lock_with_key: You are not logged in. Use `/relay login <phone>` first."


class ApprovalWorkflow:
    """Drive approval dialogues from Slack events to a committed decision."""

    def __init__(
        self,
        *,
        sessions: SessionStore,
        conversations: ConversationStore,
        arbiter: DecisionArbiter,
        backend: BackendClient,
        transport: SlackTransport,
        requests: RequestRepository,
        machine_settings: MachineSettings | None = None,
    ) -> None:
        self.sessions = sessions
        self.conversations = conversations
        self.arbiter = arbiter
        self.backend = backend
        self.transport = transport
        self.requests = requests
        self.machine_settings = machine_settings or MachineSettings()
        self._log = structlog.get_logger().bind(component="workflow")

    # ------------------------------------------------------------ ingress

    def submit_approval_request(
        self,
        track_id: str,
        candidate_values: Sequence[str] | None = None,
        required_supplements: Mapping[str, str] | None = None,
        *,
        kind: str = "crypto",
        message: str = "",
        priority: str = "normal",
    ) -> str:
        """Store a new approval request and return its request id."""

        request = self.requests.submit(
            track_id=track_id,
            candidate_values=candidate_values,
            required_supplements=required_supplements,
            kind=kind,
            message=message or f"Approval needed for {track_id}",
            priority=priority,
        )
        self._log.info("approval_request_submitted", request_id=request.request_id, track_id=track_id, kind=kind)
        return request.request_id

    def submit_payload(self, payload: IngressPayload) -> ApprovalRequestRecord:
        request = self.requests.submit_payload(payload)
        self._log.info(
            "approval_request_submitted",
            request_id=request.request_id,
            track_id=request.track_id,
            kind=request.kind,
        )
        return request

    def broadcast(self, request_id: str) -> int:
        """Deliver the stored request to every active reviewer session."""

        request = self.requests.get(request_id)
        if request is None:
            raise UnknownRequestError(f"Unknown request {request_id}.")
        return broadcast_request(
            transport=self.transport,
            requests=self.requests,
            request=request,
            recipients=self.sessions.list_active(),
        )

    # ------------------------------------------------------------ inbound events

    def handle_control(
        self,
        channel_address: str,
        action_id: str,
        raw_value: str,
        message_ref: MessageRef | None = None,
    ) -> None:
        """Handle a button press from *channel_address*."""

        log = self._log.bind(channel=channel_address, action_id=action_id)
        session = self.sessions.lookup(channel_address)
        if session is None:
            log.info("control_without_session")
            self._reply(channel_address, LOGIN_REQUIRED_TEXT)
            return

        try:
            context = parse_action_context(raw_value)
        except ValueError:
            log.warning("invalid_action_payload")
            self._reply(channel_address, NOTICE_TEXT["stale_control"])
            return

        request = None
        if context.request_id:
            decision = self.arbiter.get_decision(context.request_id)
            if decision is not None:
                self._report_already_decided(session, decision, message_ref)
                return
            request = self.requests.get(context.request_id)
            if request is None:
                log.warning("unknown_request", request_id=context.request_id)
                self._reply(channel_address, NOTICE_TEXT["stale_control"])
                return

        event = self._event_for_action(action_id, context, request)
        if event is None:
            log.warning("unrecognised_action")
            self._reply(channel_address, NOTICE_TEXT["stale_control"])
            return

        state = self.conversations.get(session.identity)
        self._dispatch(session, state, event, message_ref)

    def handle_text(self, channel_address: str, text: str) -> None:
        """Handle a free-text reply from *channel_address*."""

        session = self.sessions.lookup(channel_address)
        if session is None:
            self._reply(channel_address, LOGIN_REQUIRED_TEXT)
            return

        state = self.conversations.get(session.identity)
        if is_decision_state(state):
            decision = self.arbiter.get_decision(state.request_id)
            if decision is not None:
                self._report_already_decided(session, decision)
                return

        self._dispatch(session, state, TextReceived(text))

    def handle_command(self, channel_address: str, name: str, argument: str = "") -> str | None:
        """Run a ``/relay`` sub-command; return the text of the ephemeral reply."""

        name = (name or "help").lower()
        argument = (argument or "").strip()
        log = self._log.bind(channel=channel_address, command=name)
        log.info("command_received")

        if name == "login":
            return self._login(channel_address, argument)
        if name == "help":
            return GUIDANCE_TEXT

        session = self.sessions.lookup(channel_address)
        if session is None:
            return LOGIN_REQUIRED_TEXT

        state = self.conversations.get(session.identity)

        if name == "status":
            return (
                f"Logged in as `{session.identity}` ({session.tier}), "
                f"session valid until {session.expires_at:%Y-%m-%d %H:%M UTC}.\n{describe_state(state)}"
            )
        if name == "cancel":
            self._dispatch(session, state, CancelPressed())
            return None
        if name in ("notify", "broadcast"):
            started = NotificationStarted(broadcast=name == "broadcast", target_user_id=argument or None)
            self._dispatch(session, state, started)
            return None

        # Any other command abandons the current dialogue first.
        if state is not None:
            self._dispatch(session, state, CommandIssued(name))

        if name == "logout":
            self.sessions.revoke(channel_address)
            return ":wave: You have been logged out."
        if name == "pending":
            return self._resend_open_alerts(session)

        log.info("unknown_command")
        return f"Unknown command `{name}`.\n{GUIDANCE_TEXT}"

    # ------------------------------------------------------------ operator repair

    def replay_commit(self, request_id: str, operator: str) -> DecisionRecord:
        """Re-send a stored decision to the backend and log the attempt.

        The decision row is left untouched; raises :class:`BackendCommitError`
        when the backend still refuses the update.
        """

        decision = self.arbiter.get_decision(request_id)
        request = self.requests.get(request_id)
        if decision is None or request is None:
            raise UnknownRequestError(f"No decision recorded for request {request_id}.")

        log = self._log.bind(request_id=request_id, track_id=decision.track_id, operator=operator)
        try:
            self.backend.commit_final_decision(
                kind=request.kind,
                track_id=decision.track_id,
                value=decision.value,
                payload=decision.payload,
            )
        except BackendCommitError as exc:
            self.arbiter.record_backend_attempt(request_id, succeeded=False, error=str(exc), operator=operator)
            log.error("backend_commit_replay_failed", error=str(exc), retryable=exc.retryable)
            raise

        self.arbiter.record_backend_attempt(request_id, succeeded=True, operator=operator)
        log.info("backend_commit_replayed")
        return decision

    # ------------------------------------------------------------ internals

    def _login(self, channel_address: str, phone: str) -> str:
        if not phone:
            return "Usage: `/relay login <phone>`"

        previous = self.sessions.lookup(channel_address, touch=False)
        if previous is not None:
            state = self.conversations.get(previous.identity)
            if state is not None:
                self._dispatch(previous, state, CommandIssued("login"))

        try:
            session = self.sessions.authenticate(phone, channel_address)
        except AuthError:
            return ":no_entry: That number is not on the reviewer list. Access denied."

        access = "can approve and reject" if session.can_decide else "view-only"
        return f":white_check_mark: Logged in as `{session.identity}` ({access}). New alerts will arrive here."

    def _resend_open_alerts(self, session: SessionRecord) -> str:
        open_requests = self.requests.list_open_for(session.channel_address)
        sent = 0
        for request in open_requests:
            if publish_request_message(
                transport=self.transport,
                requests=self.requests,
                request=request,
                address=session.channel_address,
            ):
                sent += 1
        if not open_requests:
            return "There are no open alerts for you."
        return f"Re-sent {sent} open alert(s)."

    def _event_for_action(
        self,
        action_id: str,
        context: ActionContext,
        request: ApprovalRequestRecord | None,
    ) -> Event | None:
        if DECIDE_ACTION_PATTERN.match(action_id):
            if request is None:
                return None
            return ValueChosen(request.context(), context.value or action_id[len(DECIDE_ACTION_PREFIX):])
        if action_id == CANCEL_ACTION_ID:
            return CancelPressed()
        if action_id == NOTIFY_SEND_ACTION_ID:
            return NotificationSendPressed()
        if not context.request_id:
            return None
        if action_id == CONFIRM_ACTION_ID:
            return ConfirmPressed(context.request_id)
        if action_id == REASON_OTHER_ACTION_ID:
            return OtherReasonRequested(context.request_id)
        if REASON_PAGE_ACTION_PATTERN.match(action_id):
            return ReasonPageRequested(context.request_id, context.page or 0)
        if REASON_PICK_ACTION_PATTERN.match(action_id) and context.code:
            return ReasonPicked(context.request_id, context.code)
        return None

    def _dispatch(self, session: SessionRecord, state, event: Event, message_ref: MessageRef | None = None) -> None:
        result = transition(state, event, can_decide=session.can_decide, settings=self.machine_settings)
        self._apply(session, result, message_ref)

    def _apply(self, session: SessionRecord, result: Transition, message_ref: MessageRef | None) -> None:
        identity = session.identity
        try:
            if result.op == "begin":
                self.conversations.begin(identity, result.state)
            elif result.op == "advance":
                self.conversations.advance(identity, dump_state(result.state))
            elif result.op == "end":
                self.conversations.end(identity)
        except NotFoundError:
            # The dialogue expired between the read and the write.
            self._reply(session.channel_address, GUIDANCE_TEXT)
            return

        for effect in result.effects:
            self._run_effect(session, result, effect, message_ref)

    def _run_effect(self, session: SessionRecord, result: Transition, effect, message_ref: MessageRef | None) -> None:
        address = session.channel_address

        if isinstance(effect, Notice):
            if effect.kind == "view_only":
                self._log.info("authorization_denied", identity=session.identity, channel=address)
            text = effect.detail if effect.kind == "invalid_input" and effect.detail else NOTICE_TEXT.get(effect.kind)
            self._reply(address, text or GUIDANCE_TEXT)
        elif isinstance(effect, LockAlert):
            self._lock_alert(address, effect, message_ref)
        elif isinstance(effect, RestoreAlert):
            self._restore_alert(address, effect.request_id)
        elif isinstance(effect, ShowConfirm):
            self._send(address, build_confirm_prompt(effect.request_id, effect.track_id, effect.value))
        elif isinstance(effect, AskReference):
            self._send(address, build_reference_prompt(effect.track_id, effect.value))
        elif isinstance(effect, ShowReasonMenu):
            payload = build_reason_menu(effect.request_id, effect.track_id, effect.page)
            if result.op == "advance" and message_ref is not None:
                self.transport.update_controls(message_ref, payload["text"], payload["blocks"])
            else:
                self._send(address, payload)
        elif isinstance(effect, AskCustomReason):
            self._send(address, build_custom_reason_prompt(effect.max_words))
        elif isinstance(effect, AskNotificationField):
            self._send(address, build_notification_prompt(effect.step))
        elif isinstance(effect, ShowNotificationPreview):
            self._send(address, build_notification_preview(effect.state))
        elif isinstance(effect, SendNotification):
            self._send_notification(session, effect)
        elif isinstance(effect, Finalize):
            self._finalize(session, effect)

    def _finalize(self, session: SessionRecord, effect: Finalize) -> None:
        log = self._log.bind(
            request_id=effect.request_id,
            track_id=effect.track_id,
            identity=session.identity,
            value=effect.value,
        )
        request = self.requests.get(effect.request_id)
        if request is None:
            log.warning("unknown_request")
            self._reply(session.channel_address, NOTICE_TEXT["stale_control"])
            return

        try:
            decision = self.arbiter.commit_decision(
                effect.request_id,
                effect.track_id,
                effect.value,
                session.identity,
                effect.payload,
            )
        except AlreadyDecidedError as exc:
            self._report_already_decided(session, exc.decision)
            return

        try:
            self.backend.commit_final_decision(
                kind=request.kind,
                track_id=decision.track_id,
                value=decision.value,
                payload=decision.payload,
            )
        except BackendCommitError as exc:
            self.arbiter.record_backend_attempt(decision.request_id, succeeded=False, error=str(exc))
            log.error("backend_commit_failed", error=str(exc), retryable=exc.retryable, status_code=exc.status_code)
            self._reply(session.channel_address, backend_failure_text(decision, retryable=exc.retryable))
        else:
            self.arbiter.record_backend_attempt(decision.request_id, succeeded=True)
            log.info("backend_commit_succeeded")
            self._reply(session.channel_address, success_text(decision))

        run_async(
            close_out_request,
            transport=self.transport,
            requests=self.requests,
            request=request,
            decision=decision,
        )

    def _send_notification(self, session: SessionRecord, effect: SendNotification) -> None:
        log = self._log.bind(identity=session.identity, target_user_id=effect.target_user_id)
        try:
            self.backend.send_notification(
                title=effect.title,
                body=effect.body,
                user_id=effect.target_user_id,
                url=effect.url,
                tag=effect.tag,
                image=effect.image,
            )
        except BackendCommitError as exc:
            log.error("notification_send_failed", error=str(exc))
            self._reply(session.channel_address, f":x: The notification could not be sent: {exc}")
            return
        log.info("notification_sent")
        audience = "all users" if effect.target_user_id is None else f"user `{effect.target_user_id}`"
        self._reply(session.channel_address, f":outbox_tray: Notification sent to {audience}.")

    def _report_already_decided(
        self,
        session: SessionRecord,
        decision: DecisionRecord,
        message_ref: MessageRef | None = None,
    ) -> None:
        # Only the dialogue for the decided request ends; any other one stays live.
        state = self.conversations.get(session.identity)
        other_dialogue = state
        if is_decision_state(state) and state.request_id == decision.request_id:
            self.conversations.end(session.identity)
            other_dialogue = None
        self._log.info(
            "already_decided",
            request_id=decision.request_id,
            identity=session.identity,
            decided_by=decision.decided_by,
            value=decision.value,
            other_dialogue_kept=other_dialogue is not None,
        )

        alert_ref = self._alert_ref(decision.request_id, session.channel_address)
        request = self.requests.get(decision.request_id)
        if alert_ref is not None and request is not None:
            payload = build_decided_alert(request, decision)
            self.transport.update_controls(alert_ref, payload["text"], payload["blocks"])

        text = already_decided_text(decision)
        if message_ref is not None and message_ref != alert_ref:
            self.transport.update_controls(message_ref, text, [_plain_section(text)])
        if other_dialogue is not None:
            text = f"{text}\nStill waiting on you: {describe_state(other_dialogue)}"
        self._reply(session.channel_address, text)

    def _lock_alert(self, address: str, effect: LockAlert, message_ref: MessageRef | None) -> None:
        request = self.requests.get(effect.request_id)
        ref = message_ref or self._alert_ref(effect.request_id, address)
        if request is None or ref is None:
            return
        payload = build_locked_alert(request, effect.value)
        self.transport.update_controls(ref, payload["text"], payload["blocks"])

    def _restore_alert(self, address: str, request_id: str) -> None:
        request = self.requests.get(request_id)
        ref = self._alert_ref(request_id, address)
        if request is None or ref is None:
            return
        decision = self.arbiter.get_decision(request_id)
        payload = build_decided_alert(request, decision) if decision else build_alert_message(request)
        self.transport.update_controls(ref, payload["text"], payload["blocks"])

    def _alert_ref(self, request_id: str, address: str) -> MessageRef | None:
        stored = self.requests.message_reference_for(request_id, address)
        if stored is None:
            return None
        channel_id, ts = stored
        return MessageRef(channel=channel_id, ts=ts)

    def _send(self, address: str, payload: Mapping[str, Any]) -> None:
        try:
            self.transport.deliver(address, payload["text"], payload.get("blocks"))
        except TransportError as exc:
            self._log.error("reply_failed", channel=address, error=exc.error_code)

    def _reply(self, address: str, text: str) -> None:
        self._send(address, {"text": text, "blocks": [_plain_section(text)]})


def _plain_section(text: str) -> dict:
    return {"type": "section", "text": {"type": "mrkdwn", "text": text}}
