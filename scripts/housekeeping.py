"""Reclaim expired sessions, expired dialogues and old decisions.

Usage:
    python scripts/housekeeping.py

Expiry is enforced on read, so this only frees rows; it is safe to run
at any time, e.g. from cron.
"""

from __future__ import annotations

from datetime import UTC, datetime, timedelta

import structlog

from approval_relay.config import get_settings
from approval_relay.db import create_schema
from approval_relay.logging_config import configure_logging
from approval_relay.backend import AllowListVerifier
from approval_relay.sessions import SessionStore
from approval_relay.workflow import ConversationStore, DecisionArbiter


def run_housekeeping(now: datetime | None = None) -> dict[str, int]:
    settings = get_settings()
    now = now or datetime.now(UTC)
    clock = lambda: now  # noqa: E731

    sessions = SessionStore(
        verify_identity=AllowListVerifier(settings.reviewer_identities),
        can_decide=settings.can_decide,
        ttl=timedelta(hours=settings.session_ttl_hours),
        clock=clock,
    )
    conversations = ConversationStore(ttl=timedelta(minutes=settings.conversation_ttl_minutes), clock=clock)
    arbiter = DecisionArbiter(clock=clock)

    summary = {
        "sessions": sessions.cleanup_expired(),
        "conversations": conversations.sweep_expired(),
        "decisions": arbiter.prune(older_than=now - timedelta(days=settings.decision_retention_days)),
    }
    structlog.get_logger().info("housekeeping_completed", **summary)
    return summary


if __name__ == "__main__":
    configure_logging()
    create_schema()
    result = run_housekeeping()
    print(", ".join(f"{name}: {count} removed" for name, count in result.items()))
