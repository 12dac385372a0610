"""Approval dialogue: conversation variants, arbitration, rendering and orchestration."""

from .arbiter import DecisionArbiter, DecisionRecord
from .catalog import REJECTION_REASONS, Reason, reason_page
from .conversation import ConversationStore
from .engine import ApprovalWorkflow
from .machine import MachineSettings, transition
from .requests import ApprovalRequestRecord, IngressPayload, RequestRepository
from .states import ConversationState

__all__ = [
    "ApprovalRequestRecord",
    "ApprovalWorkflow",
    "ConversationState",
    "ConversationStore",
    "DecisionArbiter",
    "DecisionRecord",
    "IngressPayload",
    "MachineSettings",
    "REJECTION_REASONS",
    "Reason",
    "RequestRepository",
    "reason_page",
    "transition",
]
