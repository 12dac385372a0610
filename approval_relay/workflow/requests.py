"""Approval request intake: validation, defaults per workflow kind, storage."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Sequence
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from approval_relay.backend import accepted_values
from approval_relay.db import session_scope
from approval_relay.models import ApprovalRequest, BroadcastMessage, Decision, ensure_utc

from .machine import SUPPLEMENT_NONE, SUPPLEMENT_REASON, SUPPLEMENT_REFERENCE, RequestContext

DECISION_VALUES = ("approved", "validating", "pending", "rejected")
SUPPLEMENT_KINDS = (SUPPLEMENT_NONE, SUPPLEMENT_REFERENCE, SUPPLEMENT_REASON)

WORKFLOW_VARIANTS: Dict[str, tuple[tuple[str, ...], Dict[str, str]]] = {
    "crypto": (("approved", "validating", "pending", "rejected"), {"approved": SUPPLEMENT_REFERENCE}),
    "cashout": (("approved", "validating", "pending", "rejected"), {"approved": SUPPLEMENT_REFERENCE}),
    "auth": (("approved", "rejected"), {"rejected": SUPPLEMENT_REASON}),
    "generic": ((), {}),
}

# Supplements the backend refuses to commit without.
MANDATORY_SUPPLEMENTS: Dict[str, Dict[str, str]] = {
    "auth": {"rejected": SUPPLEMENT_REASON},
}

# Ingress "type" aliases accepted from the backend.
_KIND_ALIASES = {
    "cryptocurrency": "crypto",
    "crypto": "crypto",
    "cashout": "cashout",
    "skenas_wallet": "cashout",
    "wallet": "cashout",
    "auth": "auth",
    "authentication": "auth",
}


class IngressMeta(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    track_id: str | None = Field(None, alias="trackId")

    @field_validator("track_id", mode="before")
    @classmethod
    def _stringify(cls, value: Any) -> str | None:
        if value is None:
            return None
        text = str(value).strip()
        return text or None


class IngressPayload(BaseModel):
    """Body accepted by the ``/notify`` ingress endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    message: str
    priority: Literal["low", "normal", "high"] = "normal"
    type: str | None = None
    meta: IngressMeta = Field(default_factory=IngressMeta)
    candidate_values: List[str] | None = Field(None, alias="candidateValues")
    required_supplements: Dict[str, str] | None = Field(None, alias="requiredSupplements")

    @field_validator("message")
    @classmethod
    def _require_message(cls, value: str) -> str:
        if not value.strip():
            raise ValueError("Message is required and must be a non-empty string")
        return value

    @field_validator("candidate_values")
    @classmethod
    def _known_values(cls, value: List[str] | None) -> List[str] | None:
        if value is None:
            return None
        unknown = [item for item in value if item not in DECISION_VALUES]
        if unknown:
            raise ValueError(f"Unknown decision values: {', '.join(unknown)}")
        return list(dict.fromkeys(value))

    @field_validator("required_supplements")
    @classmethod
    def _known_supplements(cls, value: Dict[str, str] | None) -> Dict[str, str] | None:
        if value is None:
            return None
        for key, supplement in value.items():
            if key not in DECISION_VALUES or supplement not in SUPPLEMENT_KINDS:
                raise ValueError(f"Invalid supplement requirement {key}={supplement}")
        return value

    @model_validator(mode="after")
    def _track_id_for_actionable(self):
        if self.kind == "generic":
            if self.candidate_values:
                raise ValueError("candidateValues require an actionable alert type")
            return self
        if not self.meta.track_id:
            raise ValueError("meta.trackId is required for actionable alerts")
        resolve_variant(self.kind, self.candidate_values, self.required_supplements)
        return self

    @property
    def kind(self) -> str:
        return _KIND_ALIASES.get((self.type or "").lower(), "generic")


@dataclass(frozen=True)
class ApprovalRequestRecord:
    request_id: str
    track_id: str
    kind: str
    message: str
    priority: str
    candidate_values: tuple[str, ...]
    supplements: Mapping[str, str] = field(default_factory=dict)
    created_at: datetime | None = None

    @property
    def actionable(self) -> bool:
        return bool(self.candidate_values)

    def context(self) -> RequestContext:
        return RequestContext(
            request_id=self.request_id,
            track_id=self.track_id,
            candidate_values=self.candidate_values,
            supplements=dict(self.supplements),
        )


def _to_record(row: ApprovalRequest) -> ApprovalRequestRecord:
    return ApprovalRequestRecord(
        request_id=row.request_id,
        track_id=row.track_id,
        kind=row.kind,
        message=row.message,
        priority=row.priority,
        candidate_values=tuple(json.loads(row.candidate_values_json or "[]")),
        supplements=json.loads(row.supplements_json or "{}"),
        created_at=ensure_utc(row.created_at) if row.created_at else None,
    )


def generate_request_id() -> str:
    return f"req-{uuid4().hex}"


def check_variant(kind: str, values: Sequence[str], supplements: Mapping[str, str]) -> None:
    """Raise ``ValueError`` unless the backend can commit every value of *kind*."""

    allowed = accepted_values(kind)
    unsupported = [item for item in values if item not in allowed]
    if unsupported:
        raise ValueError(f"Decision values not accepted for {kind} requests: {', '.join(unsupported)}")
    for value, supplement in MANDATORY_SUPPLEMENTS.get(kind, {}).items():
        if value in values and supplements.get(value) != supplement:
            raise ValueError(f"{kind} requests must collect a {supplement} when {value}")


def resolve_variant(
    kind: str,
    candidate_values: Sequence[str] | None = None,
    required_supplements: Mapping[str, str] | None = None,
) -> tuple[tuple[str, ...], Dict[str, str]]:
    """Merge explicit overrides over the defaults for *kind*.

    Raises ``ValueError`` when the merged variant could never be committed.
    """

    default_values, default_supplements = WORKFLOW_VARIANTS.get(kind, WORKFLOW_VARIANTS["generic"])
    values = tuple(candidate_values) if candidate_values is not None else default_values
    supplements = dict(default_supplements)
    if required_supplements is not None:
        supplements.update(required_supplements)
    supplements = {key: item for key, item in supplements.items() if key in values and item != SUPPLEMENT_NONE}
    check_variant(kind, values, supplements)
    return values, supplements


class RequestRepository:
    """Persist approval requests and the Slack messages that carry them."""

    def submit(
        self,
        *,
        track_id: str,
        candidate_values: Sequence[str] | None = None,
        required_supplements: Mapping[str, str] | None = None,
        kind: str = "crypto",
        message: str = "",
        priority: str = "normal",
    ) -> ApprovalRequestRecord:
        """Create an immutable request with a fresh request id."""

        values, supplements = resolve_variant(kind, candidate_values, required_supplements)
        row = ApprovalRequest(
            request_id=generate_request_id(),
            track_id=track_id or "",
            kind=kind,
            message=message,
            priority=priority,
            candidate_values_json=json.dumps(list(values)),
            supplements_json=json.dumps(supplements, sort_keys=True),
        )
        with session_scope() as session:
            session.add(row)
            session.flush()
            return _to_record(row)

    def submit_payload(self, payload: IngressPayload) -> ApprovalRequestRecord:
        return self.submit(
            track_id=payload.meta.track_id or "",
            candidate_values=payload.candidate_values,
            required_supplements=payload.required_supplements,
            kind=payload.kind,
            message=payload.message,
            priority=payload.priority,
        )

    def get(self, request_id: str) -> ApprovalRequestRecord | None:
        with session_scope() as session:
            row = session.get(ApprovalRequest, request_id)
            return _to_record(row) if row is not None else None

    def save_message_reference(self, *, request_id: str, address: str, channel_id: str, ts: str) -> None:
        """Remember where *address*'s copy of the alert lives; later sends replace it."""

        try:
            with session_scope() as session:
                session.add(BroadcastMessage(request_id=request_id, address=address, channel_id=channel_id, ts=ts))
        except IntegrityError:
            with session_scope() as session:
                row = session.execute(
                    select(BroadcastMessage).where(
                        BroadcastMessage.request_id == request_id,
                        BroadcastMessage.address == address,
                    )
                ).scalar_one()
                row.channel_id = channel_id
                row.ts = ts

    def message_references(self, request_id: str) -> list[tuple[str, str, str]]:
        """Return ``(address, channel_id, ts)`` for every copy of the alert."""

        with session_scope() as session:
            rows = session.execute(
                select(BroadcastMessage).where(BroadcastMessage.request_id == request_id).order_by(BroadcastMessage.id)
            ).scalars()
            return [(row.address, row.channel_id, row.ts) for row in rows]

    def message_reference_for(self, request_id: str, address: str) -> tuple[str, str] | None:
        with session_scope() as session:
            row = session.execute(
                select(BroadcastMessage).where(
                    BroadcastMessage.request_id == request_id,
                    BroadcastMessage.address == address,
                )
            ).scalar_one_or_none()
            return (row.channel_id, row.ts) if row is not None else None

    def list_open_for(self, address: str, *, limit: int = 10) -> list[ApprovalRequestRecord]:
        """Return undecided actionable requests that were broadcast to *address*."""

        decided = select(Decision.request_id)
        with session_scope() as session:
            rows = session.execute(
                select(ApprovalRequest)
                .join(BroadcastMessage, BroadcastMessage.request_id == ApprovalRequest.request_id)
                .where(
                    BroadcastMessage.address == address,
                    ApprovalRequest.request_id.not_in(decided),
                    ApprovalRequest.candidate_values_json != "[]",
                )
                .order_by(ApprovalRequest.created_at.desc())
                .limit(limit)
            ).scalars()
            return [_to_record(row) for row in rows]
