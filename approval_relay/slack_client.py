"""Slack transport: deliver messages, swap controls, with bounded retries."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Mapping, Sequence

import structlog
from slack_sdk import WebClient
from slack_sdk.errors import SlackApiError

from approval_relay.errors import TransportError


@dataclass(frozen=True)
class MessageRef:
    channel: str
    ts: str


def _error_code(exc: SlackApiError) -> str:
    response = getattr(exc, "response", None)
    if response is not None:
        try:
            return response.get("error") or str(exc)
        except AttributeError:
            pass
    return str(exc)


class SlackTransport:
    """Encapsulate WebClient calls used by the relay for easier testing.

    Sending a fresh message is retried up to ``max_attempts`` times;
    edits are attempted once and failures are logged and dropped.
    """

    def __init__(
        self,
        *,
        token: str | None = None,
        client: WebClient | None = None,
        max_attempts: int = 3,
        backoff_seconds: float = 0.5,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if client is None and token is None:
            raise ValueError("Either an instantiated client or a bot token must be provided.")
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1.")

        self._client = client or WebClient(token=token)
        self._max_attempts = max_attempts
        self._backoff = backoff_seconds
        self._sleep = sleep
        self._log = structlog.get_logger().bind(component="transport")

    @property
    def client(self) -> WebClient:
        """Expose the underlying WebClient for advanced use cases."""

        return self._client

    def deliver(
        self,
        channel: str,
        text: str,
        blocks: Sequence[Mapping[str, Any]] | None = None,
    ) -> MessageRef:
        """Post a message, retrying transient failures; raise TransportError when exhausted."""

        kwargs: dict[str, Any] = {"channel": channel, "text": text}
        if blocks:
            kwargs["blocks"] = list(blocks)

        last_error = "unknown"
        for attempt in range(1, self._max_attempts + 1):
            try:
                response = self._client.chat_postMessage(**kwargs)
            except SlackApiError as exc:
                last_error = _error_code(exc)
                self._log.warning(
                    "transport_failed",
                    operation="deliver",
                    channel=channel,
                    attempt=attempt,
                    error=last_error,
                )
                if attempt < self._max_attempts:
                    self._sleep(self._backoff * attempt)
                continue
            return MessageRef(channel=response.get("channel") or channel, ts=response.get("ts") or "")

        raise TransportError(f"Could not deliver message to {channel}", error_code=last_error)

    def update_controls(
        self,
        ref: MessageRef,
        text: str,
        blocks: Sequence[Mapping[str, Any]],
    ) -> bool:
        """Replace the blocks of a sent message; return False on failure."""

        try:
            self._client.chat_update(channel=ref.channel, ts=ref.ts, text=text, blocks=list(blocks))
        except SlackApiError as exc:
            self._log.warning(
                "transport_failed",
                operation="update_controls",
                channel=ref.channel,
                ts=ref.ts,
                error=_error_code(exc),
            )
            return False
        return True
