"""Pydantic-based configuration helpers for the approval relay."""

from __future__ import annotations

import os
import re
from functools import lru_cache
from typing import Iterable, List

from pydantic import BaseModel, Field, ValidationError, field_validator

_PHONE_PATTERN = re.compile(r"^[+(\d][\d\s()\-]*$")


def normalise_identity(value: str) -> str:
    """Normalise a reviewer identity, turning phone numbers into ``+<digits>``.

    Identities that do not look like phone numbers are returned stripped
    but otherwise untouched.
    """

    raw = (value or "").strip()
    if not _PHONE_PATTERN.match(raw):
        return raw
    digits = re.sub(r"\D", "", raw)
    if digits.startswith("00"):
        digits = digits[2:]
    return f"+{digits}" if digits else raw


class AppSettings(BaseModel):
    """Settings required to run the Slack relay and reach the backend."""

    bot_token: str = Field(..., alias="SLACK_BOT_TOKEN")
    signing_secret: str = Field(..., alias="SLACK_SIGNING_SECRET")
    database_url: str = Field(..., alias="DATABASE_URL")
    reviewer_identities: List[str] = Field(..., alias="REVIEWER_IDENTITIES")
    decider_identities: List[str] = Field(default_factory=list, alias="DECIDER_IDENTITIES")
    ingress_api_key: str = Field(..., alias="INGRESS_API_KEY")
    backend_base_url: str = Field(..., alias="BACKEND_BASE_URL")
    backend_api_key: str = Field(..., alias="BACKEND_API_KEY")
    backend_timeout_seconds: float = Field(10.0, alias="BACKEND_TIMEOUT_SECONDS")
    session_ttl_hours: int = Field(24, alias="SESSION_TTL_HOURS")
    conversation_ttl_minutes: int = Field(10, alias="CONVERSATION_TTL_MINUTES")
    reason_page_size: int = Field(4, alias="REASON_PAGE_SIZE")
    custom_reason_max_words: int = Field(20, alias="CUSTOM_REASON_MAX_WORDS")
    decision_retention_days: int = Field(30, alias="DECISION_RETENTION_DAYS")
    transport_max_attempts: int = Field(3, alias="TRANSPORT_MAX_ATTEMPTS")

    @field_validator("reviewer_identities", "decider_identities", mode="before")
    @classmethod
    def _split_identities(cls, value: str | list[str]) -> list[str]:
        items = value if isinstance(value, list) else value.split(",")
        return [normalise_identity(item) for item in items if item.strip()]

    @field_validator("reviewer_identities")
    @classmethod
    def _ensure_reviewers(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("At least one reviewer identity is required")
        return value

    @field_validator("backend_base_url")
    @classmethod
    def _strip_trailing_slash(cls, value: str) -> str:
        return value.rstrip("/")

    @field_validator(
        "backend_timeout_seconds",
        "session_ttl_hours",
        "conversation_ttl_minutes",
        "reason_page_size",
        "custom_reason_max_words",
        "decision_retention_days",
        "transport_max_attempts",
    )
    @classmethod
    def _ensure_positive(cls, value):
        if value <= 0:
            raise ValueError("Value must be greater than zero")
        return value

    def can_decide(self, identity: str) -> bool:
        """Return True when *identity* carries the decision tier."""

        if not self.decider_identities:
            return True
        return normalise_identity(identity) in self.decider_identities


def _format_missing(fields: Iterable[str]) -> str:
    """Return a human-friendly comma-separated list of missing env vars."""

    unique: List[str] = []
    for field in fields:
        if field not in unique:
            unique.append(field)
    return ", ".join(unique)


@lru_cache()
def get_settings() -> AppSettings:
    """Fetch and cache settings from environment variables."""

    try:
        return AppSettings.model_validate(os.environ)
    except ValidationError as exc:  # pragma: no cover - exercised via tests
        missing = [str(error["loc"][0]) for error in exc.errors() if error["type"] == "missing"]
        if missing:
            message = (
                "Missing required environment variables: "
                f"{_format_missing(missing)}"
            )
        else:
            message = f"Invalid configuration: {exc}"
        raise RuntimeError(message) from exc
