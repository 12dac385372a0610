"""Event-driven dialogue state machine.

:func:`transition` is pure: given the reviewer's current conversation
state and one inbound event it returns the next state, what to do with
the stored state, and the effects the orchestrator must carry out. It
never touches the store, the arbiter or Slack.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Literal, Mapping, Sequence, Union

from approval_relay.errors import ValidationError

from .catalog import REJECTION_REASONS, Reason, ReasonPage, find_reason, reason_page
from .states import (
    CollectingReasonCatalog,
    CollectingReasonCustom,
    CollectingReference,
    ComposingNotification,
    Confirming,
    ConversationState,
    is_decision_state,
)
from .validation import parse_custom_reason, parse_notification_field, parse_reference

SUPPLEMENT_NONE = "none"
SUPPLEMENT_REFERENCE = "reference"
SUPPLEMENT_REASON = "reason"


# ---------------------------------------------------------------- events


@dataclass(frozen=True)
class RequestContext:
    request_id: str
    track_id: str
    candidate_values: tuple[str, ...]
    supplements: Mapping[str, str] = field(default_factory=dict)

    def supplement_for(self, value: str) -> str:
        return self.supplements.get(value, SUPPLEMENT_NONE)


@dataclass(frozen=True)
class ValueChosen:
    request: RequestContext
    value: str


@dataclass(frozen=True)
class ConfirmPressed:
    request_id: str


@dataclass(frozen=True)
class CancelPressed:
    pass


@dataclass(frozen=True)
class ReasonPageRequested:
    request_id: str
    page: int


@dataclass(frozen=True)
class ReasonPicked:
    request_id: str
    code: str


@dataclass(frozen=True)
class OtherReasonRequested:
    request_id: str


@dataclass(frozen=True)
class TextReceived:
    text: str


@dataclass(frozen=True)
class CommandIssued:
    name: str


@dataclass(frozen=True)
class NotificationStarted:
    broadcast: bool
    target_user_id: str | None = None


@dataclass(frozen=True)
class NotificationSendPressed:
    pass


Event = Union[
    ValueChosen,
    ConfirmPressed,
    CancelPressed,
    ReasonPageRequested,
    ReasonPicked,
    OtherReasonRequested,
    TextReceived,
    CommandIssued,
    NotificationStarted,
    NotificationSendPressed,
]


# ---------------------------------------------------------------- effects


@dataclass(frozen=True)
class LockAlert:
    """Strip the controls from the alert the reviewer just pressed."""

    request_id: str
    value: str


@dataclass(frozen=True)
class RestoreAlert:
    """Offer the alert's controls to the reviewer again."""

    request_id: str


@dataclass(frozen=True)
class ShowConfirm:
    request_id: str
    track_id: str
    value: str


@dataclass(frozen=True)
class AskReference:
    track_id: str
    value: str


@dataclass(frozen=True)
class ShowReasonMenu:
    request_id: str
    track_id: str
    page: ReasonPage


@dataclass(frozen=True)
class AskCustomReason:
    max_words: int


@dataclass(frozen=True)
class Finalize:
    request_id: str
    track_id: str
    value: str
    payload: Mapping[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class AskNotificationField:
    step: str


@dataclass(frozen=True)
class ShowNotificationPreview:
    state: ComposingNotification


@dataclass(frozen=True)
class SendNotification:
    title: str
    body: str
    target_user_id: str | None
    url: str | None = None
    tag: str | None = None
    image: str | None = None


NoticeKind = Literal["guidance", "cancelled", "invalid_input", "view_only", "stale_control", "invalid_value"]


@dataclass(frozen=True)
class Notice:
    kind: NoticeKind
    detail: str | None = None


Effect = Union[
    LockAlert,
    RestoreAlert,
    ShowConfirm,
    AskReference,
    ShowReasonMenu,
    AskCustomReason,
    Finalize,
    AskNotificationField,
    ShowNotificationPreview,
    SendNotification,
    Notice,
]

StoreOp = Literal["begin", "advance", "end", "keep"]


@dataclass(frozen=True)
class Transition:
    op: StoreOp
    state: ConversationState | None
    effects: tuple[Effect, ...] = ()


@dataclass(frozen=True)
class MachineSettings:
    reason_page_size: int = 4
    custom_reason_max_words: int = 20
    reasons: Sequence[Reason] = REJECTION_REASONS


def _keep(state: ConversationState | None, *effects: Effect) -> Transition:
    return Transition(op="keep", state=state, effects=effects)


def _end(*effects: Effect) -> Transition:
    return Transition(op="end", state=None, effects=effects)


# ---------------------------------------------------------------- transitions


def transition(
    state: ConversationState | None,
    event: Event,
    *,
    can_decide: bool,
    settings: MachineSettings | None = None,
) -> Transition:
    """Return the :class:`Transition` for *event* applied to *state*."""

    settings = settings or MachineSettings()

    if isinstance(event, ValueChosen):
        return _start_decision(state, event, can_decide=can_decide, settings=settings)

    if isinstance(event, NotificationStarted):
        if not can_decide:
            return _keep(state, Notice("view_only"))
        target_user_id = None
        rejected: tuple[Effect, ...] = ()
        if event.target_user_id and not event.broadcast:
            try:
                target_user_id = parse_notification_field("await_user_id", event.target_user_id)
            except ValidationError as exc:
                rejected = (Notice("invalid_input", exc.prompt),)
        step = "await_title" if event.broadcast or target_user_id else "await_user_id"
        composing = ComposingNotification(
            step=step,
            broadcast=event.broadcast,
            target_user_id=target_user_id,
        )
        restore: tuple[Effect, ...] = (RestoreAlert(state.request_id),) if is_decision_state(state) else ()
        return Transition(op="begin", state=composing, effects=(*restore, *rejected, AskNotificationField(step)))

    if isinstance(event, (CancelPressed, CommandIssued)):
        if state is None:
            return _keep(None, Notice("cancelled")) if isinstance(event, CancelPressed) else _keep(None)
        effects: list[Effect] = []
        if is_decision_state(state):
            effects.append(RestoreAlert(state.request_id))
        effects.append(Notice("cancelled"))
        return _end(*effects)

    if state is None:
        if isinstance(event, TextReceived):
            return _keep(None, Notice("guidance"))
        return _keep(None, Notice("stale_control"))

    if isinstance(state, ComposingNotification):
        return _advance_notification(state, event)

    if not can_decide:
        return _keep(state, Notice("view_only"))

    request_id = getattr(event, "request_id", None)
    if request_id is not None and request_id != state.request_id:
        return _keep(state, Notice("stale_control"))

    if isinstance(state, Confirming):
        if isinstance(event, ConfirmPressed):
            return _end(Finalize(state.request_id, state.track_id, state.value))
        if isinstance(event, TextReceived):
            return _keep(
                state,
                Notice("invalid_input", "Use the Confirm or Cancel buttons."),
                ShowConfirm(state.request_id, state.track_id, state.value),
            )
        return _keep(state, Notice("stale_control"))

    if isinstance(state, CollectingReference):
        if not isinstance(event, TextReceived):
            return _keep(state, Notice("stale_control"))
        try:
            reference = parse_reference(event.text)
        except ValidationError as exc:
            return _keep(state, Notice("invalid_input", exc.prompt))
        payload = {"reference": reference} if reference else {}
        return _end(Finalize(state.request_id, state.track_id, state.value, payload))

    if isinstance(state, CollectingReasonCatalog):
        return _advance_catalog(state, event, settings)

    if isinstance(state, CollectingReasonCustom):
        if not isinstance(event, TextReceived):
            return _keep(state, Notice("stale_control"))
        try:
            reason = parse_custom_reason(event.text, max_words=settings.custom_reason_max_words)
        except ValidationError as exc:
            return _keep(state, Notice("invalid_input", exc.prompt))
        return _end(Finalize(state.request_id, state.track_id, state.value, {"reason": reason}))

    return _keep(state, Notice("stale_control"))  # pragma: no cover - exhaustive above


def _start_decision(
    state: ConversationState | None,
    event: ValueChosen,
    *,
    can_decide: bool,
    settings: MachineSettings,
) -> Transition:
    request = event.request
    if event.value not in request.candidate_values:
        return _keep(state, Notice("invalid_value", event.value))
    if not can_decide:
        return _keep(state, Notice("view_only"))

    common = {"request_id": request.request_id, "track_id": request.track_id, "value": event.value}
    lock: tuple[Effect, ...] = (LockAlert(request.request_id, event.value),)
    if is_decision_state(state) and state.request_id != request.request_id:
        # Starting a new decision abandons the old one; give its alert back.
        lock = (RestoreAlert(state.request_id),) + lock
    supplement = request.supplement_for(event.value)

    if supplement == SUPPLEMENT_REFERENCE:
        return Transition(
            op="begin",
            state=CollectingReference(**common),
            effects=(*lock, AskReference(request.track_id, event.value)),
        )
    if supplement == SUPPLEMENT_REASON:
        page = reason_page(0, settings.reason_page_size, settings.reasons)
        return Transition(
            op="begin",
            state=CollectingReasonCatalog(page=0, **common),
            effects=(*lock, ShowReasonMenu(request.request_id, request.track_id, page)),
        )
    return Transition(
        op="begin",
        state=Confirming(**common),
        effects=(*lock, ShowConfirm(request.request_id, request.track_id, event.value)),
    )


def _advance_catalog(state: CollectingReasonCatalog, event: Event, settings: MachineSettings) -> Transition:
    if isinstance(event, ReasonPageRequested):
        page = reason_page(event.page, settings.reason_page_size, settings.reasons)
        next_state = state.model_copy(update={"page": page.page})
        return Transition(
            op="advance",
            state=next_state,
            effects=(ShowReasonMenu(state.request_id, state.track_id, page),),
        )

    if isinstance(event, ReasonPicked):
        reason = find_reason(event.code, settings.reasons)
        if reason is None:
            return _keep(state, Notice("invalid_input", "That reason is not in the list."))
        payload = {"reason": reason.label, "reason_code": reason.code}
        return _end(Finalize(state.request_id, state.track_id, state.value, payload))

    if isinstance(event, OtherReasonRequested):
        custom = CollectingReasonCustom(request_id=state.request_id, track_id=state.track_id, value=state.value)
        return Transition(
            op="advance",
            state=custom,
            effects=(AskCustomReason(settings.custom_reason_max_words),),
        )

    if isinstance(event, TextReceived):
        page = reason_page(state.page, settings.reason_page_size, settings.reasons)
        return _keep(
            state,
            Notice("invalid_input", "Pick a reason from the list, or press Other to type one."),
            ShowReasonMenu(state.request_id, state.track_id, page),
        )

    return _keep(state, Notice("stale_control"))


_NEXT_NOTIFICATION_STEP = {
    "await_user_id": "await_title",
    "await_title": "await_body",
    "await_body": "await_url",
    "await_url": "await_tag",
    "await_tag": "await_image",
    "await_image": "await_confirm",
}

_NOTIFICATION_FIELD = {
    "await_user_id": "target_user_id",
    "await_title": "title",
    "await_body": "body",
    "await_url": "url",
    "await_tag": "tag",
    "await_image": "image",
}


def _advance_notification(state: ComposingNotification, event: Event) -> Transition:
    if isinstance(event, NotificationSendPressed):
        if state.step != "await_confirm" or not state.title or not state.body:
            return _keep(state, Notice("stale_control"))
        return _end(
            SendNotification(
                state.title,
                state.body,
                None if state.broadcast else state.target_user_id,
                url=state.url,
                tag=state.tag,
                image=state.image,
            )
        )

    if not isinstance(event, TextReceived):
        return _keep(state, Notice("stale_control"))

    if state.step == "await_confirm":
        return _keep(state, Notice("invalid_input", "Use the Send or Cancel buttons."), ShowNotificationPreview(state))

    try:
        value = parse_notification_field(state.step, event.text)
    except ValidationError as exc:
        return _keep(state, Notice("invalid_input", exc.prompt))

    next_step = _NEXT_NOTIFICATION_STEP[state.step]
    next_state = state.model_copy(update={_NOTIFICATION_FIELD[state.step]: value, "step": next_step})
    if next_step == "await_confirm":
        return Transition(op="advance", state=next_state, effects=(ShowNotificationPreview(next_state),))
    return Transition(op="advance", state=next_state, effects=(AskNotificationField(next_step),))
