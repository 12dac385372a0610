"""Tests for the pure dialogue state machine."""

from approval_relay.workflow.catalog import REJECTION_REASONS
from approval_relay.workflow.machine import (
    AskCustomReason,
    AskNotificationField,
    AskReference,
    CancelPressed,
    CommandIssued,
    ConfirmPressed,
    Finalize,
    LockAlert,
    MachineSettings,
    Notice,
    NotificationSendPressed,
    NotificationStarted,
    OtherReasonRequested,
    ReasonPageRequested,
    ReasonPicked,
    RequestContext,
    RestoreAlert,
    SendNotification,
    ShowConfirm,
    ShowNotificationPreview,
    ShowReasonMenu,
    TextReceived,
    ValueChosen,
    transition,
)
from approval_relay.workflow.states import (
    CollectingReasonCatalog,
    CollectingReasonCustom,
    CollectingReference,
    ComposingNotification,
    Confirming,
)

CRYPTO = RequestContext(
    request_id="R1",
    track_id="T1",
    candidate_values=("approved", "validating", "pending", "rejected"),
    supplements={"approved": "reference"},
)
AUTH = RequestContext(
    request_id="R2",
    track_id="U-42",
    candidate_values=("approved", "rejected"),
    supplements={"rejected": "reason"},
)


def test_plain_value_begins_confirmation_and_locks_alert():
    result = transition(None, ValueChosen(CRYPTO, "pending"), can_decide=True)

    assert result.op == "begin"
    assert result.state == Confirming(request_id="R1", track_id="T1", value="pending")
    assert result.effects == (LockAlert("R1", "pending"), ShowConfirm("R1", "T1", "pending"))


def test_confirm_finalizes_and_ends_dialogue():
    state = Confirming(request_id="R1", track_id="T1", value="pending")

    result = transition(state, ConfirmPressed("R1"), can_decide=True)

    assert result.op == "end"
    assert result.effects == (Finalize("R1", "T1", "pending", {}),)


def test_reference_value_collects_numeric_reference():
    begin = transition(None, ValueChosen(CRYPTO, "approved"), can_decide=True)
    assert isinstance(begin.state, CollectingReference)
    assert begin.effects[-1] == AskReference("T1", "approved")

    invalid = transition(begin.state, TextReceived("abc-12"), can_decide=True)
    assert invalid.op == "keep"
    assert invalid.state == begin.state
    assert isinstance(invalid.effects[0], Notice)
    assert invalid.effects[0].kind == "invalid_input"

    valid = transition(begin.state, TextReceived(" 99812 "), can_decide=True)
    assert valid.op == "end"
    assert valid.effects == (Finalize("R1", "T1", "approved", {"reference": "99812"}),)


def test_no_reference_sentinel_finalizes_without_payload():
    state = CollectingReference(request_id="R1", track_id="T1", value="approved")

    result = transition(state, TextReceived("-"), can_decide=True)

    assert result.effects == (Finalize("R1", "T1", "approved", {}),)


def test_reason_menu_paginates_and_picks_canned_reason():
    settings = MachineSettings(reason_page_size=4)
    begin = transition(None, ValueChosen(AUTH, "rejected"), can_decide=True, settings=settings)
    assert isinstance(begin.state, CollectingReasonCatalog)
    menu = begin.effects[-1]
    assert isinstance(menu, ShowReasonMenu)
    assert [reason.code for reason in menu.page.items] == [reason.code for reason in REJECTION_REASONS[:4]]
    assert menu.page.has_previous is False
    assert menu.page.has_more is True

    paged = transition(begin.state, ReasonPageRequested("R2", 2), can_decide=True, settings=settings)
    assert paged.op == "advance"
    assert paged.state.page == 2
    assert paged.effects[0].page.has_more is False

    picked = transition(paged.state, ReasonPicked("R2", "invalid_document"), can_decide=True, settings=settings)
    assert picked.op == "end"
    assert picked.effects == (
        Finalize("R2", "U-42", "rejected", {"reason": "invalid document", "reason_code": "invalid_document"}),
    )


def test_page_requests_are_clamped():
    state = CollectingReasonCatalog(request_id="R2", track_id="U-42", value="rejected", page=0)

    result = transition(state, ReasonPageRequested("R2", 99), can_decide=True, settings=MachineSettings(reason_page_size=4))

    assert result.state.page == 2


def test_other_reason_switches_to_free_text_capture():
    state = CollectingReasonCatalog(request_id="R2", track_id="U-42", value="rejected", page=1)

    other = transition(state, OtherReasonRequested("R2"), can_decide=True)
    assert other.op == "advance"
    assert isinstance(other.state, CollectingReasonCustom)
    assert other.effects == (AskCustomReason(20),)

    too_long = transition(other.state, TextReceived(" ".join(["word"] * 21)), can_decide=True)
    assert too_long.op == "keep"
    assert too_long.effects[0].kind == "invalid_input"

    done = transition(other.state, TextReceived("  selfie   does not match  "), can_decide=True)
    assert done.effects == (Finalize("R2", "U-42", "rejected", {"reason": "selfie does not match"}),)


def test_text_while_choosing_reason_reshows_menu():
    state = CollectingReasonCatalog(request_id="R2", track_id="U-42", value="rejected", page=1)

    result = transition(state, TextReceived("because"), can_decide=True)

    assert result.op == "keep"
    assert isinstance(result.effects[-1], ShowReasonMenu)
    assert result.effects[-1].page.page == 1


def test_view_only_reviewer_cannot_start_or_advance():
    start = transition(None, ValueChosen(CRYPTO, "approved"), can_decide=False)
    assert start.op == "keep"
    assert start.state is None
    assert start.effects == (Notice("view_only"),)

    state = Confirming(request_id="R1", track_id="T1", value="pending")
    confirm = transition(state, ConfirmPressed("R1"), can_decide=False)
    assert confirm.op == "keep"
    assert confirm.state == state
    assert not any(isinstance(effect, Finalize) for effect in confirm.effects)


def test_value_outside_candidates_is_refused():
    result = transition(None, ValueChosen(AUTH, "pending"), can_decide=True)

    assert result.op == "keep"
    assert result.effects == (Notice("invalid_value", "pending"),)


def test_command_mid_dialogue_cancels_and_restores_alert():
    state = CollectingReference(request_id="R1", track_id="T1", value="approved")

    result = transition(state, CommandIssued("logout"), can_decide=True)

    assert result.op == "end"
    assert result.effects == (RestoreAlert("R1"), Notice("cancelled"))


def test_cancel_without_dialogue_is_harmless():
    assert transition(None, CancelPressed(), can_decide=True).effects == (Notice("cancelled"),)
    assert transition(None, CommandIssued("help"), can_decide=True).effects == ()


def test_text_without_dialogue_gets_guidance():
    result = transition(None, TextReceived("12345"), can_decide=True)

    assert result.op == "keep"
    assert result.effects == (Notice("guidance"),)


def test_new_decision_abandons_previous_one():
    previous = CollectingReference(request_id="R9", track_id="T9", value="approved")

    result = transition(previous, ValueChosen(CRYPTO, "pending"), can_decide=True)

    assert result.op == "begin"
    assert result.effects[:2] == (RestoreAlert("R9"), LockAlert("R1", "pending"))


def test_controls_for_another_request_are_stale():
    state = Confirming(request_id="R1", track_id="T1", value="pending")

    result = transition(state, ConfirmPressed("R7"), can_decide=True)

    assert result.op == "keep"
    assert result.effects == (Notice("stale_control"),)


def test_notification_composition_walks_every_step():
    start = transition(None, NotificationStarted(broadcast=False), can_decide=True)
    assert start.state.step == "await_user_id"
    assert start.effects == (AskNotificationField("await_user_id"),)

    user = transition(start.state, TextReceived("0098 912 123 4567"), can_decide=True)
    assert user.state.target_user_id == "+989121234567"
    title = transition(user.state, TextReceived("Maintenance"), can_decide=True)
    body = transition(title.state, TextReceived("Back at 10:00."), can_decide=True)
    assert body.effects == (AskNotificationField("await_url"),)
    url = transition(body.state, TextReceived("https://status.example.com"), can_decide=True)
    tag = transition(url.state, TextReceived("-"), can_decide=True)
    image = transition(tag.state, TextReceived("-"), can_decide=True)
    assert image.state.step == "await_confirm"
    assert isinstance(image.effects[0], ShowNotificationPreview)

    sent = transition(image.state, NotificationSendPressed(), can_decide=True)
    assert sent.op == "end"
    assert sent.effects == (
        SendNotification("Maintenance", "Back at 10:00.", "+989121234567", url="https://status.example.com"),
    )


def test_notification_target_must_be_a_phone_number():
    start = transition(None, NotificationStarted(broadcast=False), can_decide=True)

    result = transition(start.state, TextReceived("user-77"), can_decide=True)

    assert result.op == "keep"
    assert result.state.step == "await_user_id"
    assert result.effects[0].kind == "invalid_input"


def test_notify_command_argument_is_validated_as_target():
    valid = transition(None, NotificationStarted(broadcast=False, target_user_id="+98 912 123 4567"), can_decide=True)
    invalid = transition(None, NotificationStarted(broadcast=False, target_user_id="bob"), can_decide=True)

    assert valid.state == ComposingNotification(step="await_title", target_user_id="+989121234567")
    assert invalid.state == ComposingNotification(step="await_user_id")
    assert invalid.effects[0].kind == "invalid_input"
    assert invalid.effects[-1] == AskNotificationField("await_user_id")



def test_broadcast_composition_skips_user_step():
    start = transition(None, NotificationStarted(broadcast=True), can_decide=True)

    assert start.state == ComposingNotification(step="await_title", broadcast=True)


def test_view_only_reviewer_cannot_compose_notifications():
    result = transition(None, NotificationStarted(broadcast=True), can_decide=False)

    assert result.effects == (Notice("view_only"),)
