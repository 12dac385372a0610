"""Error taxonomy shared by the session, conversation and arbitration layers."""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:  # pragma: no cover
    from approval_relay.workflow.arbiter import DecisionRecord


class RelayError(Exception):
    """Base class for every error raised by the relay core."""


class AuthError(RelayError):
    """Raised when an identity is not on the reviewer allow-list."""


class NotFoundError(RelayError):
    """Raised when no live conversation state exists for an identity."""


class UnknownRequestError(RelayError):
    """Raised when a callback refers to an approval request we never stored."""


class ValidationError(RelayError):
    """Raised when free-text supplement input is malformed.

    ``prompt`` is the text shown to the reviewer when asking again.
    """

    def __init__(self, message: str, *, prompt: str | None = None) -> None:
        super().__init__(message)
        self.prompt = prompt or message


class AlreadyDecidedError(RelayError):
    """Raised when a commit loses the race; carries the winning decision."""

    def __init__(self, decision: "DecisionRecord") -> None:
        super().__init__(f"Request {decision.request_id} was already decided by {decision.decided_by}")
        self.decision = decision


class BackendCommitError(RelayError):
    """Raised when the system of record rejects or cannot receive a commit.

    ``retryable`` is True when the outcome of the write is unknown, e.g.
    on a timeout.
    """

    def __init__(self, message: str, *, retryable: bool = False, status_code: int | None = None) -> None:
        super().__init__(message)
        self.retryable = retryable
        self.status_code = status_code


class TransportError(RelayError):
    """Raised when a Slack call still fails after the bounded retries."""

    def __init__(self, message: str, *, error_code: str | None = None) -> None:
        super().__init__(message)
        self.error_code = error_code
