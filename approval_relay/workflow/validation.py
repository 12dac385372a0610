"""Validators for free-text supplements typed by reviewers."""

from __future__ import annotations

import re

from approval_relay.config import normalise_identity
from approval_relay.errors import ValidationError

NO_REFERENCE_SENTINEL = "-"

_DIGITS = re.compile(r"^[0-9]+$")

REFERENCE_PROMPT = (
    "Please send the reference number (digits only). "
    f"If there is no reference, send a single `{NO_REFERENCE_SENTINEL}`."
)


def parse_reference(text: str | None) -> str | None:
    """Return the reference number, or None for the no-reference sentinel."""

    value = (text or "").strip()
    if value == NO_REFERENCE_SENTINEL:
        return None
    if not _DIGITS.match(value):
        raise ValidationError("Reference numbers must contain digits only.", prompt=REFERENCE_PROMPT)
    return value


def parse_custom_reason(text: str | None, *, max_words: int) -> str:
    """Return the collapsed reason text when it has between 1 and *max_words* words."""

    words = (text or "").split()
    prompt = f"Please describe the rejection reason in at most {max_words} words."
    if not words:
        raise ValidationError("The rejection reason cannot be empty.", prompt=prompt)
    if len(words) > max_words:
        raise ValidationError(
            f"The rejection reason is too long ({len(words)} words).",
            prompt=prompt,
        )
    return " ".join(words)


OPTIONAL_NOTIFICATION_STEPS = ("await_url", "await_tag", "await_image")

_PHONE_ID = re.compile(r"^\+[0-9]{8,15}$")
_LINK = re.compile(r"^https?://\S+$")


def parse_notification_field(step: str, text: str | None) -> str | None:
    """Validate a composing-notification step's answer.

    Target user ids are phone numbers and come back normalised. The
    optional steps return None when skipped with the sentinel.
    """

    value = (text or "").strip()
    skip_prompt = f"send `{NO_REFERENCE_SENTINEL}` to skip"
    if step in OPTIONAL_NOTIFICATION_STEPS and value == NO_REFERENCE_SENTINEL:
        return None
    if not value:
        raise ValidationError("This field cannot be empty.", prompt="Please send a non-empty value.")
    if step == "await_user_id":
        phone = normalise_identity(value)
        if not _PHONE_ID.match(phone):
            raise ValidationError(
                "User ids are phone numbers.",
                prompt="Please send the user's phone number, e.g. `+989121234567`.",
            )
        return phone
    if step == "await_title" and len(value) > 120:
        raise ValidationError("Titles are limited to 120 characters.", prompt="Please send a shorter title.")
    if step in ("await_url", "await_image") and not _LINK.match(value):
        raise ValidationError(
            "Links must start with http:// or https://.",
            prompt=f"Please send a full link, or {skip_prompt}.",
        )
    if step == "await_tag" and len(value.split()) != 1:
        raise ValidationError("Tags cannot contain spaces.", prompt=f"Please send a single-word tag, or {skip_prompt}.")
    return value
