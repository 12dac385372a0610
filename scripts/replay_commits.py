"""Re-send decisions whose backend update never succeeded.

Usage:
    python scripts/replay_commits.py --operator alice            # list and replay all
    python scripts/replay_commits.py --operator alice req-1234   # replay one request
    python scripts/replay_commits.py --list

Each replay appends an attempt row; the recorded decision itself is
never changed.
"""

from __future__ import annotations

import argparse
import sys

from app import get_workflow
from approval_relay.errors import BackendCommitError, UnknownRequestError
from approval_relay.logging_config import configure_logging


def replay(workflow, request_ids: list[str], operator: str) -> int:
    """Replay *request_ids* (or every unsynced decision); return the failure count."""

    targets = request_ids or [decision.request_id for decision in workflow.arbiter.list_unsynced()]
    failures = 0
    for request_id in targets:
        try:
            decision = workflow.replay_commit(request_id, operator)
        except (BackendCommitError, UnknownRequestError) as exc:
            failures += 1
            print(f"{request_id}: FAILED ({exc})")
            continue
        print(f"{request_id}: synced {decision.track_id} -> {decision.value}")
    return failures


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("request_ids", nargs="*", help="Request ids to replay; defaults to every unsynced decision.")
    parser.add_argument("--operator", help="Who is running the replay; stored on each attempt.")
    parser.add_argument("--list", action="store_true", help="Only list unsynced decisions.")
    args = parser.parse_args(argv)

    configure_logging()
    workflow = get_workflow()

    if args.list:
        for decision in workflow.arbiter.list_unsynced():
            attempts = workflow.arbiter.attempt_count(decision.request_id)
            print(f"{decision.request_id}\t{decision.track_id}\t{decision.value}\t{decision.decided_by}\t{attempts} attempt(s)")
        return 0

    if not args.operator:
        parser.error("--operator is required when replaying")
    return 1 if replay(workflow, args.request_ids, args.operator) else 0


if __name__ == "__main__":
    sys.exit(main())
