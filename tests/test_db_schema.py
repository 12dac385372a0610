"""Tests for database schema creation."""

from concurrent.futures import ThreadPoolExecutor
from datetime import UTC, datetime
from pathlib import Path
import sys

import pytest
from sqlalchemy import func, inspect, select
from sqlalchemy.exc import IntegrityError

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from approval_relay import Base, config, create_schema  # noqa: E402
from approval_relay.db import get_engine, get_session_factory, session_scope  # noqa: E402
from approval_relay.models import ApprovalRequest, BroadcastMessage, Decision  # noqa: E402


@pytest.fixture(autouse=True)
def override_database(monkeypatch, tmp_path):
    test_db = tmp_path / "test.db"
    monkeypatch.setenv("SLACK_BOT_TOKEN", "test-token")
    monkeypatch.setenv("SLACK_SIGNING_SECRET", "test-secret")
    monkeypatch.setenv("DATABASE_URL", f"sqlite:///{test_db}")
    monkeypatch.setenv("REVIEWER_IDENTITIES", "+989121234567")
    monkeypatch.setenv("INGRESS_API_KEY", "ingress")
    monkeypatch.setenv("BACKEND_BASE_URL", "https://backend.test")
    monkeypatch.setenv("BACKEND_API_KEY", "backend")
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()
    yield
    Base.metadata.drop_all(get_engine())
    config.get_settings.cache_clear()
    get_engine.cache_clear()
    get_session_factory.cache_clear()


def test_create_schema_creates_expected_tables():
    create_schema()

    inspector = inspect(get_engine())
    tables = set(inspector.get_table_names())
    assert tables.issuperset(
        {
            "reviewer_sessions",
            "approval_requests",
            "broadcast_messages",
            "conversation_states",
            "decisions",
            "backend_commit_attempts",
        }
    )

    decision_columns = {column["name"] for column in inspector.get_columns("decisions")}
    assert decision_columns.issuperset({"request_id", "track_id", "value", "decided_by", "decided_at", "payload_json"})
    assert inspector.get_pk_constraint("decisions")["constrained_columns"] == ["request_id"]

    attempt_columns = {column["name"] for column in inspector.get_columns("backend_commit_attempts")}
    assert attempt_columns.issuperset({"request_id", "succeeded", "error", "operator"})


def test_decisions_table_rejects_a_second_row_per_request():
    create_schema()
    engine = get_engine()
    now = datetime.now(UTC)

    with engine.begin() as connection:
        connection.execute(
            Decision.__table__.insert(),
            {"request_id": "req-1", "track_id": "T1", "value": "approved", "decided_by": "a", "decided_at": now, "payload_json": "{}"},
        )

    with pytest.raises(IntegrityError):
        with engine.begin() as connection:
            connection.execute(
                Decision.__table__.insert(),
                {"request_id": "req-1", "track_id": "T1", "value": "rejected", "decided_by": "b", "decided_at": now, "payload_json": "{}"},
            )


def test_broadcast_messages_are_unique_per_address():
    create_schema()
    engine = get_engine()

    with engine.begin() as connection:
        connection.execute(
            ApprovalRequest.__table__.insert(),
            {
                "request_id": "req-1",
                "track_id": "T1",
                "kind": "crypto",
                "message": "m",
                "priority": "normal",
                "candidate_values_json": "[]",
                "supplements_json": "{}",
                "created_at": datetime.now(UTC),
            },
        )
        connection.execute(
            BroadcastMessage.__table__.insert(),
            {"request_id": "req-1", "address": "U1", "channel_id": "D1", "ts": "1.0"},
        )

    with pytest.raises(IntegrityError):
        with engine.begin() as connection:
            connection.execute(
                BroadcastMessage.__table__.insert(),
                {"request_id": "req-1", "address": "U1", "channel_id": "D1", "ts": "2.0"},
            )


def test_session_scope_rolls_back_a_duplicate_decision():
    create_schema()
    now = datetime.now(UTC)
    with session_scope() as session:
        session.add(Decision(request_id="req-1", track_id="T1", value="approved", decided_by="a", decided_at=now))

    with pytest.raises(IntegrityError):
        with session_scope() as session:
            session.add(Decision(request_id="req-1", track_id="T1", value="rejected", decided_by="b", decided_at=now))

    with session_scope() as session:
        assert session.get(Decision, "req-1").value == "approved"


def test_store_connections_can_move_to_background_threads():
    create_schema()
    with session_scope() as session:
        session.execute(select(Decision)).all()

    def count_decisions():
        with session_scope() as session:
            return session.execute(select(func.count()).select_from(Decision)).scalar_one()

    with ThreadPoolExecutor(max_workers=1) as pool:
        assert pool.submit(count_decisions).result(timeout=5) == 0
