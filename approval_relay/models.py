"""SQLAlchemy models backing sessions, conversations, requests and decisions."""

from __future__ import annotations

from datetime import UTC, datetime

from sqlalchemy import Boolean, DateTime, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from approval_relay.db import Base


def utcnow() -> datetime:
    return datetime.now(UTC)


class ReviewerSession(Base):
    """An authenticated reviewer reachable at a Slack channel address."""

    __tablename__ = "reviewer_sessions"

    channel_address: Mapped[str] = mapped_column(String(64), primary_key=True)
    identity: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    tier: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_activity: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)


class ApprovalRequest(Base):
    """One broadcast instance of a pending transaction."""

    __tablename__ = "approval_requests"

    request_id: Mapped[str] = mapped_column(String(96), primary_key=True)
    track_id: Mapped[str] = mapped_column(String(128), nullable=False, index=True)
    kind: Mapped[str] = mapped_column(String(32), nullable=False, default="generic")
    message: Mapped[str] = mapped_column(Text, nullable=False)
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="normal")
    candidate_values_json: Mapped[str] = mapped_column(Text, nullable=False, default="[]")
    supplements_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    messages: Mapped[list["BroadcastMessage"]] = relationship(
        "BroadcastMessage",
        back_populates="request",
        cascade="all, delete-orphan",
    )


class BroadcastMessage(Base):
    """Slack message reference for one reviewer's copy of a broadcast."""

    __tablename__ = "broadcast_messages"
    __table_args__ = (
        UniqueConstraint("request_id", "address", name="uq_broadcast_request_address"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("approval_requests.request_id", ondelete="CASCADE"), nullable=False, index=True
    )
    address: Mapped[str] = mapped_column(String(64), nullable=False)
    channel_id: Mapped[str] = mapped_column(String(64), nullable=False)
    ts: Mapped[str] = mapped_column(String(32), nullable=False)

    request: Mapped[ApprovalRequest] = relationship("ApprovalRequest", back_populates="messages")


class ConversationRecord(Base):
    """Serialised conversation state; at most one row per identity."""

    __tablename__ = "conversation_states"

    identity: Mapped[str] = mapped_column(String(64), primary_key=True)
    kind: Mapped[str] = mapped_column(String(48), nullable=False)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, index=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)


class Decision(Base):
    """Write-once outcome for a request; the primary key is the arbitration key."""

    __tablename__ = "decisions"

    request_id: Mapped[str] = mapped_column(String(96), primary_key=True)
    track_id: Mapped[str] = mapped_column(String(128), nullable=False)
    value: Mapped[str] = mapped_column(String(32), nullable=False)
    decided_by: Mapped[str] = mapped_column(String(64), nullable=False)
    decided_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    payload_json: Mapped[str] = mapped_column(Text, nullable=False, default="{}")

    attempts: Mapped[list["BackendCommitAttempt"]] = relationship(
        "BackendCommitAttempt",
        back_populates="decision",
        cascade="all, delete-orphan",
        order_by="BackendCommitAttempt.attempted_at",
    )


class BackendCommitAttempt(Base):
    """Append-only log of attempts to write a decision to the system of record."""

    __tablename__ = "backend_commit_attempts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    request_id: Mapped[str] = mapped_column(
        ForeignKey("decisions.request_id", ondelete="CASCADE"), nullable=False, index=True
    )
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)
    succeeded: Mapped[bool] = mapped_column(Boolean, nullable=False)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    operator: Mapped[str | None] = mapped_column(String(64), nullable=True)

    decision: Mapped[Decision] = relationship("Decision", back_populates="attempts")


def ensure_utc(value: datetime) -> datetime:
    """Return *value* as an aware UTC datetime (SQLite drops tzinfo on read)."""

    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value.astimezone(UTC)
