"""Reviewer session tracking: who is authenticated and where to reach them."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Callable

import structlog
from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError

from approval_relay.config import normalise_identity
from approval_relay.db import session_scope
from approval_relay.errors import AuthError
from approval_relay.models import ReviewerSession, ensure_utc

TIER_VIEW_ONLY = "view-only"
TIER_CAN_DECIDE = "can-decide"

DEFAULT_SESSION_TTL = timedelta(hours=24)


@dataclass(frozen=True)
class SessionRecord:
    identity: str
    channel_address: str
    tier: str
    last_activity: datetime
    expires_at: datetime

    @property
    def can_decide(self) -> bool:
        return self.tier == TIER_CAN_DECIDE


def _to_record(row: ReviewerSession) -> SessionRecord:
    return SessionRecord(
        identity=row.identity,
        channel_address=row.channel_address,
        tier=row.tier,
        last_activity=ensure_utc(row.last_activity),
        expires_at=ensure_utc(row.expires_at),
    )


class SessionStore:
    """Create, refresh and expire reviewer sessions keyed by channel address.

    Expiry is stored explicitly on each row so :meth:`list_active` never
    reports a session whose inactivity window has passed.
    """

    def __init__(
        self,
        *,
        verify_identity: Callable[[str], bool],
        can_decide: Callable[[str], bool],
        ttl: timedelta = DEFAULT_SESSION_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("Session TTL must be greater than zero seconds.")

        self._verify_identity = verify_identity
        self._can_decide = can_decide
        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = structlog.get_logger().bind(component="sessions")

    def authenticate(self, identity: str, channel_address: str) -> SessionRecord:
        """Verify *identity* and bind it to *channel_address*.

        Raises :class:`AuthError` when the identity is not recognised; no
        session is created in that case.
        """

        normalised = normalise_identity(identity)
        if not normalised or not self._verify_identity(normalised):
            self._log.warning("authentication_denied", identity=normalised, channel=channel_address)
            raise AuthError(f"Identity {normalised or '<empty>'} is not an authorised reviewer.")

        tier = TIER_CAN_DECIDE if self._can_decide(normalised) else TIER_VIEW_ONLY
        now = self._clock()
        try:
            record = self._upsert(normalised, channel_address, tier, now)
        except IntegrityError:
            # A concurrent login for the same channel won the insert; refresh it instead.
            record = self._upsert(normalised, channel_address, tier, now)

        self._log.info("session_authenticated", identity=normalised, channel=channel_address, tier=tier)
        return record

    def _upsert(self, identity: str, channel_address: str, tier: str, now: datetime) -> SessionRecord:
        with session_scope() as session:
            row = session.get(ReviewerSession, channel_address)
            if row is None:
                row = ReviewerSession(channel_address=channel_address, created_at=now)
                session.add(row)
            row.identity = identity
            row.tier = tier
            row.last_activity = now
            row.expires_at = now + self._ttl
            session.flush()
            return _to_record(row)

    def lookup(self, channel_address: str, *, touch: bool = True) -> SessionRecord | None:
        """Resolve the session for *channel_address*, refreshing its activity."""

        if not channel_address:
            return None

        now = self._clock()
        with session_scope() as session:
            row = session.get(ReviewerSession, channel_address)
            if row is None:
                return None
            if ensure_utc(row.expires_at) <= now:
                session.delete(row)
                self._log.info("session_expired", identity=row.identity, channel=channel_address)
                return None
            if touch:
                row.last_activity = now
                row.expires_at = now + self._ttl
                session.flush()
            return _to_record(row)

    def revoke(self, channel_address: str) -> bool:
        """Delete the session for *channel_address*; return whether one existed."""

        with session_scope() as session:
            result = session.execute(
                delete(ReviewerSession).where(ReviewerSession.channel_address == channel_address)
            )
            removed = bool(result.rowcount)

        if removed:
            self._log.info("session_revoked", channel=channel_address)
        return removed

    def list_active(self) -> list[SessionRecord]:
        """Return every session whose expiry lies in the future."""

        now = self._clock()
        with session_scope() as session:
            rows = session.execute(
                select(ReviewerSession)
                .where(ReviewerSession.expires_at > now)
                .order_by(ReviewerSession.created_at)
            ).scalars()
            return [_to_record(row) for row in rows]

    def cleanup_expired(self) -> int:
        """Delete expired sessions and return how many were removed."""

        now = self._clock()
        with session_scope() as session:
            result = session.execute(delete(ReviewerSession).where(ReviewerSession.expires_at <= now))
            removed = result.rowcount or 0

        if removed:
            self._log.info("sessions_cleaned", removed=removed)
        return removed
