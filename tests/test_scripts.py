"""Tests for the operator scripts."""

from datetime import UTC, datetime, timedelta
from pathlib import Path
import sys
from types import SimpleNamespace

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:  # pragma: no cover
    sys.path.insert(0, str(ROOT))

from approval_relay import config  # noqa: E402
from approval_relay.backend import AllowListVerifier  # noqa: E402
from approval_relay.db import Base, create_schema, get_engine, get_session_factory  # noqa: E402
from approval_relay.errors import BackendCommitError, UnknownRequestError  # noqa: E402
from approval_relay.sessions import SessionStore  # noqa: E402
from approval_relay.workflow import ConversationStore, DecisionArbiter, RequestRepository  # noqa: E402
from approval_relay.workflow.states import Confirming  # noqa: E402
from scripts import housekeeping, replay_commits  # noqa: E402

NOW = datetime(2026, 4, 1, 12, 0, tzinfo=UTC)


@pytest.fixture(autouse=True)
def configure_environment(monkeypatch, tmp_path):
    monkeypatch.setenv("SLACK_BOT_TOKEN", "token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'scripts.db'}")
    monkeypatch.setenv("REVIEWER_IDENTITIES", "+989121234567")
    monkeypatch.setenv("INGRESS_API_KEY", "ingress")
    monkeypatch.setenv("BACKEND_BASE_URL", "https://backend.test")
    monkeypatch.setenv("BACKEND_API_KEY", "backend")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()

    create_schema()
    yield

    Base.metadata.drop_all(get_engine())
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


def test_housekeeping_reclaims_expired_rows():
    settings = config.get_settings()
    long_ago = NOW - timedelta(days=45)
    SessionStore(
        verify_identity=AllowListVerifier(settings.reviewer_identities),
        can_decide=settings.can_decide,
        clock=lambda: long_ago,
    ).authenticate("+989121234567", "U1")
    ConversationStore(clock=lambda: long_ago).begin("+989121234567", Confirming(request_id="R", track_id="T", value="pending"))
    requests = RequestRepository()
    request = requests.submit(track_id="T1", kind="crypto", message="m")
    requests.save_message_reference(request_id=request.request_id, address="U1", channel_id="D1", ts="1.0")
    arbiter = DecisionArbiter(clock=lambda: long_ago)
    arbiter.commit_decision(request.request_id, "T1", "pending", "+989121234567")
    arbiter.record_backend_attempt(request.request_id, succeeded=True)

    summary = housekeeping.run_housekeeping(now=NOW)

    assert summary == {"sessions": 1, "conversations": 1, "decisions": 1}
    assert requests.get(request.request_id) is None
    assert requests.message_references(request.request_id) == []


def test_housekeeping_keeps_recent_decisions():
    requests = RequestRepository()
    request = requests.submit(track_id="T1", kind="crypto", message="m")
    arbiter = DecisionArbiter(clock=lambda: NOW - timedelta(days=2))
    arbiter.commit_decision(request.request_id, "T1", "pending", "a")
    arbiter.record_backend_attempt(request.request_id, succeeded=True)

    summary = housekeeping.run_housekeeping(now=NOW)

    assert summary["decisions"] == 0
    assert requests.get(request.request_id) is not None


def test_housekeeping_keeps_old_decisions_awaiting_replay():
    requests = RequestRepository()
    request = requests.submit(track_id="T1", kind="crypto", message="m")
    DecisionArbiter(clock=lambda: NOW - timedelta(days=45)).commit_decision(request.request_id, "T1", "approved", "a")

    summary = housekeeping.run_housekeeping(now=NOW)

    assert summary["decisions"] == 0
    assert [decision.request_id for decision in DecisionArbiter().list_unsynced()] == [request.request_id]
    assert requests.get(request.request_id) is not None


class FakeWorkflow:
    def __init__(self, unsynced, failing=()):
        self.replayed = []
        self.failing = set(failing)
        self.arbiter = SimpleNamespace(list_unsynced=lambda: unsynced)

    def replay_commit(self, request_id, operator):
        self.replayed.append((request_id, operator))
        if request_id == "missing":
            raise UnknownRequestError("No decision recorded for request missing.")
        if request_id in self.failing:
            raise BackendCommitError("invoice locked")
        return SimpleNamespace(track_id=f"T-{request_id}", value="approved")


def test_replay_defaults_to_every_unsynced_decision(capsys):
    unsynced = [SimpleNamespace(request_id="req-1"), SimpleNamespace(request_id="req-2")]
    workflow = FakeWorkflow(unsynced, failing={"req-2"})

    failures = replay_commits.replay(workflow, [], "ops")

    assert failures == 1
    assert workflow.replayed == [("req-1", "ops"), ("req-2", "ops")]
    output = capsys.readouterr().out
    assert "req-1: synced T-req-1 -> approved" in output
    assert "req-2: FAILED (invoice locked)" in output


def test_replay_explicit_ids_report_unknown_requests():
    workflow = FakeWorkflow([SimpleNamespace(request_id="req-1")])

    failures = replay_commits.replay(workflow, ["missing"], "ops")

    assert failures == 1
    assert workflow.replayed == [("missing", "ops")]


def test_main_requires_operator_for_replay(monkeypatch):
    monkeypatch.setattr(replay_commits, "configure_logging", lambda: None)
    monkeypatch.setattr(replay_commits, "get_workflow", lambda: FakeWorkflow([]))

    with pytest.raises(SystemExit) as err:
        replay_commits.main(["req-1"])

    assert err.value.code == 2
