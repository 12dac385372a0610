"""Tagged conversation-state variants.

Each variant carries only the fields its step needs; ``kind`` is the
discriminator used when a state is read back from the store.
"""

from __future__ import annotations

from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

KIND_CONFIRMING = "confirming"
KIND_COLLECTING_REFERENCE = "collecting_reference"
KIND_COLLECTING_REASON_CATALOG = "collecting_reason_catalog"
KIND_COLLECTING_REASON_CUSTOM = "collecting_reason_custom"
KIND_COMPOSING_NOTIFICATION = "composing_notification"

COLLECTING_KINDS = frozenset(
    {KIND_COLLECTING_REFERENCE, KIND_COLLECTING_REASON_CATALOG, KIND_COLLECTING_REASON_CUSTOM}
)


class _State(BaseModel):
    model_config = ConfigDict(frozen=True, extra="forbid")


class _DecisionState(_State):
    request_id: str
    track_id: str
    value: str


class Confirming(_DecisionState):
    kind: Literal["confirming"] = KIND_CONFIRMING


class CollectingReference(_DecisionState):
    kind: Literal["collecting_reference"] = KIND_COLLECTING_REFERENCE


class CollectingReasonCatalog(_DecisionState):
    kind: Literal["collecting_reason_catalog"] = KIND_COLLECTING_REASON_CATALOG
    page: int = 0


class CollectingReasonCustom(_DecisionState):
    kind: Literal["collecting_reason_custom"] = KIND_COLLECTING_REASON_CUSTOM


class ComposingNotification(_State):
    kind: Literal["composing_notification"] = KIND_COMPOSING_NOTIFICATION
    step: Literal[
        "await_user_id",
        "await_title",
        "await_body",
        "await_url",
        "await_tag",
        "await_image",
        "await_confirm",
    ]
    broadcast: bool = False
    target_user_id: str | None = None
    title: str | None = None
    body: str | None = None
    url: str | None = None
    tag: str | None = None
    image: str | None = None


DecisionState = Union[Confirming, CollectingReference, CollectingReasonCatalog, CollectingReasonCustom]

ConversationState = Annotated[
    Union[
        Confirming,
        CollectingReference,
        CollectingReasonCatalog,
        CollectingReasonCustom,
        ComposingNotification,
    ],
    Field(discriminator="kind"),
]

_ADAPTER: TypeAdapter[ConversationState] = TypeAdapter(ConversationState)


def parse_state(data: dict) -> ConversationState:
    """Validate *data* into the matching variant."""

    return _ADAPTER.validate_python(data)


def dump_state(state: ConversationState) -> dict:
    return state.model_dump(mode="json")


def is_decision_state(state: object) -> bool:
    return isinstance(state, (Confirming, CollectingReference, CollectingReasonCatalog, CollectingReasonCustom))


VARIANTS_BY_KIND: dict[str, type[_State]] = {
    KIND_CONFIRMING: Confirming,
    KIND_COLLECTING_REFERENCE: CollectingReference,
    KIND_COLLECTING_REASON_CATALOG: CollectingReasonCatalog,
    KIND_COLLECTING_REASON_CUSTOM: CollectingReasonCustom,
    KIND_COMPOSING_NOTIFICATION: ComposingNotification,
}


def project_fields(data: dict) -> dict:
    """Drop keys that the variant named by ``data["kind"]`` does not declare."""

    variant = VARIANTS_BY_KIND.get(data.get("kind"))
    if variant is None:
        return data
    return {key: value for key, value in data.items() if key in variant.model_fields}
