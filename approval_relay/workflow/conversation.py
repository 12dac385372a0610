"""Per-reviewer conversation state with lazy expiry."""

from __future__ import annotations

import json
from datetime import UTC, datetime, timedelta
from typing import Any, Callable, Mapping

import structlog
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import delete, update
from sqlalchemy.exc import IntegrityError

from approval_relay.db import session_scope
from approval_relay.errors import NotFoundError
from approval_relay.models import ConversationRecord, ensure_utc

from .states import ConversationState, dump_state, parse_state, project_fields

DEFAULT_CONVERSATION_TTL = timedelta(minutes=10)


class ConversationStore:
    """Store at most one in-flight dialogue per reviewer identity.

    Expiry is checked when a state is read; :meth:`sweep_expired` only
    reclaims rows and is not needed for correctness.
    """

    def __init__(
        self,
        *,
        ttl: timedelta = DEFAULT_CONVERSATION_TTL,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        if ttl.total_seconds() <= 0:
            raise ValueError("Conversation TTL must be greater than zero seconds.")

        self._ttl = ttl
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = structlog.get_logger().bind(component="conversations")

    @property
    def ttl(self) -> timedelta:
        return self._ttl

    def begin(self, identity: str, state: ConversationState) -> ConversationState:
        """Replace whatever *identity* was doing with *state*."""

        now = self._clock()
        values = {
            "kind": state.kind,
            "payload_json": json.dumps(dump_state(state), sort_keys=True),
            "expires_at": now + self._ttl,
            "updated_at": now,
        }
        try:
            with session_scope() as session:
                session.execute(delete(ConversationRecord).where(ConversationRecord.identity == identity))
                session.add(ConversationRecord(identity=identity, **values))
        except IntegrityError:
            # A double-tap from the same reviewer inserted first; overwrite it.
            with session_scope() as session:
                session.execute(
                    update(ConversationRecord).where(ConversationRecord.identity == identity).values(**values)
                )

        self._log.info("conversation_started", identity=identity, kind=state.kind)
        return state

    def get(self, identity: str) -> ConversationState | None:
        """Return the live state for *identity*, or None when absent or expired."""

        now = self._clock()
        with session_scope() as session:
            row = session.get(ConversationRecord, identity)
            if row is None:
                return None
            if ensure_utc(row.expires_at) <= now:
                session.delete(row)
                self._log.info("conversation_expired", identity=identity, kind=row.kind)
                return None
            payload = row.payload_json

        try:
            return parse_state(json.loads(payload))
        except (json.JSONDecodeError, PydanticValidationError):
            self._log.warning("conversation_corrupt", identity=identity)
            self.end(identity)
            return None

    def advance(self, identity: str, mutation: Mapping[str, Any]) -> ConversationState:
        """Merge *mutation* into the live state and reset its expiry.

        ``mutation`` may change ``kind``, in which case the merged payload
        is validated against the new variant. Raises :class:`NotFoundError`
        when there is nothing to advance.
        """

        current = self.get(identity)
        if current is None:
            raise NotFoundError(f"No pending conversation for {identity}.")

        merged = {**dump_state(current), **dict(mutation)}
        # Fields that the target variant does not declare are dropped, so a
        # kind change never drags stale fields along.
        next_state = parse_state(project_fields(merged))

        now = self._clock()
        with session_scope() as session:
            result = session.execute(
                update(ConversationRecord)
                .where(ConversationRecord.identity == identity)
                .values(
                    kind=next_state.kind,
                    payload_json=json.dumps(dump_state(next_state), sort_keys=True),
                    expires_at=now + self._ttl,
                    updated_at=now,
                )
            )
            if not result.rowcount:
                raise NotFoundError(f"No pending conversation for {identity}.")

        self._log.info("conversation_advanced", identity=identity, kind=next_state.kind)
        return next_state

    def end(self, identity: str) -> bool:
        """Delete any state for *identity*; return whether one existed."""

        with session_scope() as session:
            result = session.execute(delete(ConversationRecord).where(ConversationRecord.identity == identity))
            removed = bool(result.rowcount)

        if removed:
            self._log.info("conversation_ended", identity=identity)
        return removed

    def sweep_expired(self) -> int:
        """Delete expired rows and return how many were removed."""

        now = self._clock()
        with session_scope() as session:
            result = session.execute(delete(ConversationRecord).where(ConversationRecord.expires_at <= now))
            return result.rowcount or 0
