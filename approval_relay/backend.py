"""Client for the backend system of record."""

from __future__ import annotations

from typing import Any, Iterable, Mapping

import httpx
import structlog

from approval_relay.config import AppSettings, normalise_identity
from approval_relay.errors import BackendCommitError

# Backend status vocabularies differ per workflow kind.
_INVOICE_STATUS = {
    "approved": "paid",
    "rejected": "rejected",
    "pending": "pending",
    "validating": "validating",
}
_AUTH_STATUS = {
    "approved": "verified",
    "rejected": "registering",
}
STATUS_MAPS = {
    "crypto": _INVOICE_STATUS,
    "cashout": _INVOICE_STATUS,
    "auth": _AUTH_STATUS,
}

COMMIT_ENDPOINTS = {
    "crypto": ("PATCH", "/api/review/cryptocurrency/update-invoice"),
    "cashout": ("PATCH", "/api/review/cash-out/update-invoice"),
    "auth": ("POST", "/api/review/auth/update-status"),
}
SEND_TO_USER_PATH = "/api/push-notification/send-to-user"
BROADCAST_PATH = "/api/push-notification/broadcast"
HEALTH_PATH = "/health"


def accepted_values(kind: str) -> tuple[str, ...]:
    """Decision values the backend can commit for *kind*."""

    return tuple(STATUS_MAPS.get(kind, {}))


def is_user_authorized(identity: str, allowed_identities: Iterable[str]) -> bool:
    """Return True when *identity* is on the configured allow-list."""

    normalized = {item.strip() for item in allowed_identities if item}
    return identity in normalized


class AllowListVerifier:
    """Identity check against the configured reviewer allow-list."""

    def __init__(self, identities: Iterable[str]) -> None:
        self._identities = [normalise_identity(item) for item in identities]

    def __call__(self, identity: str) -> bool:
        return is_user_authorized(normalise_identity(identity), self._identities)


class BackendClient:
    """Thin httpx wrapper around the backend endpoints the relay writes to.

    Every call is bounded by the client's timeout. A timeout or transport
    failure raises :class:`BackendCommitError` with ``retryable=True``
    since the write may or may not have landed.
    """

    def __init__(
        self,
        *,
        base_url: str,
        api_key: str,
        timeout: float = 10.0,
        client: httpx.Client | None = None,
    ) -> None:
        if not api_key:
            raise ValueError("A backend API key is required.")

        self._client = client or httpx.Client(
            base_url=base_url,
            timeout=timeout,
            headers={"Authorization": f"Bearer {api_key}", "Content-Type": "application/json"},
        )
        self._log = structlog.get_logger().bind(component="backend")

    @classmethod
    def from_settings(cls, settings: AppSettings) -> "BackendClient":
        return cls(
            base_url=settings.backend_base_url,
            api_key=settings.backend_api_key,
            timeout=settings.backend_timeout_seconds,
        )

    def close(self) -> None:
        self._client.close()

    def commit_final_decision(
        self,
        *,
        kind: str,
        track_id: str,
        value: str,
        payload: Mapping[str, Any] | None = None,
    ) -> None:
        """Write the accepted decision for *track_id* to the system of record."""

        payload = payload or {}
        endpoint = COMMIT_ENDPOINTS.get(kind)
        if endpoint is None:
            raise BackendCommitError(f"No backend endpoint for workflow kind '{kind}'.")

        method, path = endpoint
        if kind == "auth":
            status = _AUTH_STATUS.get(value)
            body: dict[str, Any] = {"userId": track_id, "status": status}
            if payload.get("reason"):
                body["reason"] = payload["reason"]
            elif status == "registering":
                raise BackendCommitError("A reason is required when rejecting an authentication request.")
        else:
            status = STATUS_MAPS[kind].get(value)
            body = {"trackId": track_id, "newStatus": status}
            if payload.get("reference"):
                body["referenceId"] = payload["reference"]
            if payload.get("reason"):
                body["reason"] = payload["reason"]

        if status is None:
            raise BackendCommitError(f"Value '{value}' is not valid for workflow kind '{kind}'.")

        self._send(method, path, body, operation="commit_final_decision", track_id=track_id)

    def send_notification(
        self,
        *,
        title: str,
        body: str,
        user_id: str | None = None,
        url: str | None = None,
        tag: str | None = None,
        image: str | None = None,
    ) -> None:
        """Push a notification to one user, or to everyone when *user_id* is None.

        ``url``, ``tag`` and ``image`` are only sent when given.
        """

        notification = {"title": title, "body": body}
        for key, item in (("url", url), ("tag", tag), ("image", image)):
            if item:
                notification[key] = item
        if user_id:
            self._send(
                "POST",
                SEND_TO_USER_PATH,
                {"notificationData": notification, "userId": user_id},
                operation="send_notification",
            )
        else:
            self._send("POST", BROADCAST_PATH, {"notificationData": notification}, operation="broadcast_notification")

    def check_health(self) -> bool:
        try:
            response = self._client.get(HEALTH_PATH)
        except httpx.HTTPError:
            return False
        return response.status_code == 200

    def _send(self, method: str, path: str, body: Mapping[str, Any], *, operation: str, **context: Any) -> None:
        log = self._log.bind(operation=operation, path=path, **context)
        try:
            response = self._client.request(method, path, json=dict(body))
        except httpx.TimeoutException as exc:
            log.error("backend_timeout")
            raise BackendCommitError("The backend did not respond in time; outcome unknown.", retryable=True) from exc
        except httpx.HTTPError as exc:
            log.error("backend_unreachable", error=str(exc))
            raise BackendCommitError(f"The backend could not be reached: {exc}", retryable=True) from exc

        if response.status_code >= 400:
            log.error("backend_http_error", status_code=response.status_code)
            raise BackendCommitError(
                f"The backend responded with HTTP {response.status_code}.",
                status_code=response.status_code,
            )

        try:
            data = response.json()
        except ValueError as exc:
            log.error("backend_invalid_response", status_code=response.status_code)
            raise BackendCommitError("The backend returned a malformed response.") from exc

        status = data.get("status") if isinstance(data, dict) else None
        if status == "DONE":
            log.info("backend_call_succeeded")
            return

        error = (data.get("error") or {}) if isinstance(data, dict) else {}
        log.error("backend_call_failed", status=status, error_code=error.get("code"), error_message=error.get("message"))
        message = error.get("message") or f"Unexpected backend status: {status}"
        raise BackendCommitError(message, status_code=response.status_code)
