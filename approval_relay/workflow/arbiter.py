"""Write-once arbitration of decisions, keyed by request id.

The ``decisions`` table uses ``request_id`` as its primary key, so the
INSERT in :meth:`DecisionArbiter.commit_decision` is the atomic
set-if-absent: of any number of concurrent commits for one request,
the database accepts exactly one and rejects the rest with an
integrity error.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Callable, Mapping

import structlog
from sqlalchemy import delete, func, select
from sqlalchemy.exc import IntegrityError

from approval_relay.db import session_scope
from approval_relay.errors import AlreadyDecidedError
from approval_relay.models import ApprovalRequest, BackendCommitAttempt, BroadcastMessage, Decision, ensure_utc


@dataclass(frozen=True)
class DecisionRecord:
    request_id: str
    track_id: str
    value: str
    decided_by: str
    decided_at: datetime
    payload: Mapping[str, Any] = field(default_factory=dict)


def _to_record(row: Decision) -> DecisionRecord:
    try:
        payload = json.loads(row.payload_json or "{}")
    except json.JSONDecodeError:
        payload = {}
    return DecisionRecord(
        request_id=row.request_id,
        track_id=row.track_id,
        value=row.value,
        decided_by=row.decided_by,
        decided_at=ensure_utc(row.decided_at),
        payload=payload,
    )


class DecisionArbiter:
    """Accept the first decision for each request and report it to every later caller."""

    def __init__(self, *, clock: Callable[[], datetime] | None = None) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._log = structlog.get_logger().bind(component="arbiter")

    def get_decision(self, request_id: str) -> DecisionRecord | None:
        with session_scope() as session:
            row = session.get(Decision, request_id)
            return _to_record(row) if row is not None else None

    def commit_decision(
        self,
        request_id: str,
        track_id: str,
        value: str,
        decided_by: str,
        payload: Mapping[str, Any] | None = None,
    ) -> DecisionRecord:
        """Record the decision for *request_id* unless one already exists.

        Raises :class:`AlreadyDecidedError` carrying the stored decision
        when another caller got there first.
        """

        cleaned = {key: item for key, item in (payload or {}).items() if item not in (None, "")}
        row = Decision(
            request_id=request_id,
            track_id=track_id,
            value=value,
            decided_by=decided_by,
            decided_at=self._clock(),
            payload_json=json.dumps(cleaned, sort_keys=True),
        )
        try:
            with session_scope() as session:
                session.add(row)
                session.flush()
                record = _to_record(row)
        except IntegrityError:
            winner = self.get_decision(request_id)
            if winner is None:  # pragma: no cover - row vanished between insert and read
                raise
            self._log.info(
                "decision_race_lost",
                request_id=request_id,
                attempted_by=decided_by,
                attempted_value=value,
                decided_by=winner.decided_by,
                decided_value=winner.value,
            )
            raise AlreadyDecidedError(winner) from None

        self._log.info(
            "decision_committed",
            request_id=request_id,
            track_id=track_id,
            value=value,
            decided_by=decided_by,
        )
        return record

    def record_backend_attempt(
        self,
        request_id: str,
        *,
        succeeded: bool,
        error: str | None = None,
        operator: str | None = None,
    ) -> None:
        """Append an attempt row; the decision row itself is never touched."""

        with session_scope() as session:
            session.add(
                BackendCommitAttempt(
                    request_id=request_id,
                    attempted_at=self._clock(),
                    succeeded=succeeded,
                    error=error,
                    operator=operator,
                )
            )

    def list_unsynced(self) -> list[DecisionRecord]:
        """Return decisions with no successful backend attempt on record.

        A decision whose process died before the first backend call has no
        attempt rows at all and is listed too.
        """

        synced = select(BackendCommitAttempt.request_id).where(BackendCommitAttempt.succeeded.is_(True))
        with session_scope() as session:
            rows = session.execute(
                select(Decision).where(Decision.request_id.not_in(synced)).order_by(Decision.decided_at)
            ).scalars()
            return [_to_record(row) for row in rows]

    def attempt_count(self, request_id: str) -> int:
        with session_scope() as session:
            return session.execute(
                select(func.count()).select_from(BackendCommitAttempt).where(BackendCommitAttempt.request_id == request_id)
            ).scalar_one()

    def prune(self, *, older_than: datetime) -> int:
        """Delete synced decisions decided before *older_than*; return how many were removed.

        The decided request and its alert references go with it, so a late
        press on an old alert is answered as a stale control rather than
        opening the request for a second decision. Decisions the backend
        never accepted are kept for :meth:`list_unsynced` whatever their age.
        """

        synced = select(BackendCommitAttempt.request_id).where(BackendCommitAttempt.succeeded.is_(True))
        with session_scope() as session:
            stale = list(
                session.execute(
                    select(Decision.request_id).where(Decision.decided_at < older_than, Decision.request_id.in_(synced))
                ).scalars()
            )
            if not stale:
                return 0
            session.execute(delete(BackendCommitAttempt).where(BackendCommitAttempt.request_id.in_(stale)))
            session.execute(delete(BroadcastMessage).where(BroadcastMessage.request_id.in_(stale)))
            session.execute(delete(ApprovalRequest).where(ApprovalRequest.request_id.in_(stale)))
            session.execute(delete(Decision).where(Decision.request_id.in_(stale)))

        self._log.info("decisions_pruned", removed=len(stale))
        return len(stale)

