"""Tests for the backend system-of-record client."""

import json

import httpx
import pytest

from approval_relay.backend import AllowListVerifier, BackendClient, accepted_values, is_user_authorized
from approval_relay.errors import BackendCommitError


def _client(handler) -> tuple[BackendClient, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def _record(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return handler(request)

    http = httpx.Client(
        base_url="https://backend.test",
        transport=httpx.MockTransport(_record),
        headers={"Authorization": "Bearer backend-key"},
    )
    return BackendClient(base_url="https://backend.test", api_key="backend-key", client=http), seen


def _done(_request):
    return httpx.Response(200, json={"status": "DONE"})


def test_crypto_approval_maps_to_paid_with_reference():
    client, seen = _client(_done)

    client.commit_final_decision(kind="crypto", track_id="T1", value="approved", payload={"reference": "9981"})

    request = seen[0]
    assert request.method == "PATCH"
    assert request.url.path == "/api/review/cryptocurrency/update-invoice"
    assert json.loads(request.content) == {"trackId": "T1", "newStatus": "paid", "referenceId": "9981"}
    assert request.headers["Authorization"] == "Bearer backend-key"


def test_cashout_uses_its_own_endpoint():
    client, seen = _client(_done)

    client.commit_final_decision(kind="cashout", track_id="T2", value="validating")

    assert seen[0].url.path == "/api/review/cash-out/update-invoice"
    assert json.loads(seen[0].content) == {"trackId": "T2", "newStatus": "validating"}


def test_auth_rejection_requires_reason():
    client, seen = _client(_done)

    with pytest.raises(BackendCommitError):
        client.commit_final_decision(kind="auth", track_id="U-1", value="rejected")
    assert seen == []

    client.commit_final_decision(kind="auth", track_id="U-1", value="rejected", payload={"reason": "invalid document"})
    assert seen[0].method == "POST"
    assert json.loads(seen[0].content) == {"userId": "U-1", "status": "registering", "reason": "invalid document"}


def test_generic_kind_has_no_endpoint():
    client, _ = _client(_done)

    with pytest.raises(BackendCommitError):
        client.commit_final_decision(kind="generic", track_id="T", value="approved")


def test_failed_status_surfaces_backend_message():
    client, _ = _client(
        lambda _request: httpx.Response(200, json={"status": "FAILED", "error": {"code": "E1", "message": "invoice locked"}})
    )

    with pytest.raises(BackendCommitError) as err:
        client.commit_final_decision(kind="crypto", track_id="T1", value="pending")

    assert str(err.value) == "invoice locked"
    assert err.value.retryable is False


def test_http_error_carries_status_code():
    client, _ = _client(lambda _request: httpx.Response(502, text="bad gateway"))

    with pytest.raises(BackendCommitError) as err:
        client.commit_final_decision(kind="crypto", track_id="T1", value="pending")

    assert err.value.status_code == 502


def test_timeout_is_retryable():
    def _timeout(request):
        raise httpx.ReadTimeout("slow", request=request)

    client, _ = _client(_timeout)

    with pytest.raises(BackendCommitError) as err:
        client.commit_final_decision(kind="crypto", track_id="T1", value="pending")

    assert err.value.retryable is True


def test_malformed_response_is_an_error():
    client, _ = _client(lambda _request: httpx.Response(200, text="<html>"))

    with pytest.raises(BackendCommitError):
        client.commit_final_decision(kind="crypto", track_id="T1", value="pending")


def test_send_notification_targets_user_or_everyone():
    client, seen = _client(_done)

    client.send_notification(title="Hi", body="There", user_id="+989121234567")
    client.send_notification(title="All", body="Hands", url="https://app.test/news", tag="news", image=None)

    assert seen[0].url.path == "/api/push-notification/send-to-user"
    assert json.loads(seen[0].content) == {
        "notificationData": {"title": "Hi", "body": "There"},
        "userId": "+989121234567",
    }
    assert seen[1].url.path == "/api/push-notification/broadcast"
    assert json.loads(seen[1].content) == {
        "notificationData": {"title": "All", "body": "Hands", "url": "https://app.test/news", "tag": "news"},
    }


def test_check_health():
    healthy, _ = _client(lambda _request: httpx.Response(200, json={"status": "OK"}))
    broken, _ = _client(lambda _request: httpx.Response(503))

    assert healthy.check_health() is True
    assert broken.check_health() is False


def test_allow_list_verifier_normalises_phone_numbers():
    verify = AllowListVerifier(["+98 912 123 4567"])

    assert verify("00989121234567") is True
    assert verify("+14155550100") is False


def test_is_user_authorized_strips_configured_entries():
    allowed = ["+989121234567", " +14155550100 ", ""]

    assert is_user_authorized("+14155550100", allowed) is True
    assert is_user_authorized("+10000000000", allowed) is False


def test_accepted_values_follow_the_status_map():
    assert accepted_values("crypto") == ("approved", "rejected", "pending", "validating")
    assert accepted_values("auth") == ("approved", "rejected")
    assert accepted_values("generic") == ()
