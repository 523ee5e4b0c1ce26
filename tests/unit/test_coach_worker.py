from datetime import datetime

from fitcoach.core.action_ledger import record_action
from fitcoach.core.action_parser import ActionKind, CoachAction
from fitcoach.db.models import CoachAction as CoachActionRecord
from fitcoach.workers.coach_worker import claim_next_action


def _drain(db_session) -> None:
    db_session.query(CoachActionRecord).filter(CoachActionRecord.status == "queued").update(
        {"status": "cancelled"}, synchronize_session=False
    )
    db_session.commit()


def test_claim_takes_oldest_unlocked_row(create_user, db_session) -> None:
    _drain(db_session)
    user = create_user()
    action = CoachAction(kind=ActionKind.LOG_MOOD, parameters={"mood": 5})
    locked = record_action(db_session, user.id, None, action, status="queued")
    locked.locked_at = datetime.utcnow()
    locked.locked_by = "someone-else"
    db_session.commit()
    record_action(db_session, user.id, None, action, status="pending")
    wanted = record_action(db_session, user.id, None, action, status="queued")
    record_action(db_session, user.id, None, action, status="queued")

    claimed = claim_next_action(db_session, "worker-a")
    assert claimed is not None
    assert claimed.id == wanted.id
    assert claimed.status == "processing"
    assert claimed.locked_by == "worker-a"
    assert claimed.attempts == 1


def test_claim_skips_exhausted_rows(create_user, db_session) -> None:
    _drain(db_session)
    user = create_user()
    row = record_action(db_session, user.id, None, CoachAction(kind=ActionKind.LOG_MOOD), status="queued")
    row.attempts = 3
    db_session.commit()
    assert claim_next_action(db_session, "worker-a", max_attempts=3) is None
