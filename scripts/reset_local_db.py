"""Drop and recreate every relay table in the configured database.

Run from the repository root with the relay environment loaded::

    python scripts/reset_local_db.py

All sessions, dialogues, requests and recorded decisions are lost.
"""

from __future__ import annotations

from approval_relay import models  # noqa: F401
from approval_relay.db import Base, get_engine


def reset_database() -> None:
    engine = get_engine()
    Base.metadata.drop_all(engine)
    Base.metadata.create_all(engine)
    print(f"Recreated {len(Base.metadata.tables)} relay tables.")


if __name__ == "__main__":
    reset_database()
