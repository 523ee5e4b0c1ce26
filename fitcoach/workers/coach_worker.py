import argparse
import logging
import os
import socket
import time
from contextlib import contextmanager
from datetime import datetime
from typing import Callable, ContextManager, Iterator, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitcoach.core.action_executor import ActionContext, run_action_handler
from fitcoach.core.action_ledger import action_from_record
from fitcoach.core.context_snapshot import refresh_context_snapshot
from fitcoach.core.security import create_worker_token
from fitcoach.db.models import CoachAction as CoachActionRecord
from fitcoach.db.models import dump_json_field, load_json_field
from fitcoach.db.session import SessionLocal, create_tables
from fitcoach.services.endpoints import EndpointClient, open_endpoint_client

logger = logging.getLogger("uvicorn.error")

POLL_INTERVAL_SECONDS = float(os.getenv("WORKER_POLL_INTERVAL_SECONDS", "1.5"))
MAX_ATTEMPTS = int(os.getenv("WORKER_MAX_ATTEMPTS", "3"))

EndpointsFactory = Callable[[int], ContextManager[EndpointClient]]


@contextmanager
def default_endpoints(user_id: int) -> Iterator[EndpointClient]:
    client = open_endpoint_client(create_worker_token(user_id))
    try:
        yield client
    finally:
        client.http.close()


def default_worker_id() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


def claim_next_action(db: Session, worker_id: str, max_attempts: int = MAX_ATTEMPTS) -> Optional[CoachActionRecord]:
    """Move the oldest claimable queued row to processing.

    The claim is a conditional UPDATE on the row's status and lock, so two
    workers racing for the same row cannot both win it.
    """
    candidates = (
        db.query(CoachActionRecord.id)
        .filter(
            CoachActionRecord.status == "queued",
            CoachActionRecord.attempts < max_attempts,
            CoachActionRecord.locked_at.is_(None),
        )
        .order_by(CoachActionRecord.created_at.asc(), CoachActionRecord.id.asc())
        .limit(5)
        .all()
    )
    for (candidate_id,) in candidates:
        result = db.execute(
            update(CoachActionRecord)
            .where(
                CoachActionRecord.id == candidate_id,
                CoachActionRecord.status == "queued",
                CoachActionRecord.locked_at.is_(None),
            )
            .values(
                status="processing",
                locked_at=datetime.utcnow(),
                locked_by=worker_id,
                attempts=CoachActionRecord.attempts + 1,
            )
        )
        db.commit()
        if result.rowcount == 1:
            record = db.get(CoachActionRecord, candidate_id)
            if record is not None:
                db.refresh(record)
                logger.info(
                    "worker_action_claimed action_id=%s worker=%s attempt=%s",
                    record.id,
                    worker_id,
                    record.attempts,
                )
                return record
    return None


def _finish(db: Session, record: CoachActionRecord, result: Optional[dict], error: Optional[str], max_attempts: int) -> str:
    payload = load_json_field(record.payload_json, {})
    if not isinstance(payload, dict):
        payload = {}
    payload["result"] = result
    payload["error"] = error
    record.payload_json = dump_json_field(payload)
    record.locked_at = None
    record.locked_by = None
    record.error_message = error
    if error is None:
        record.status = "completed"
        record.completed_at = datetime.utcnow()
    elif record.attempts < max_attempts:
        record.status = "queued"
    else:
        record.status = "failed"
    db.commit()
    return record.status


def process_action(
    db: Session,
    record: CoachActionRecord,
    endpoints_factory: EndpointsFactory = default_endpoints,
    max_attempts: int = MAX_ATTEMPTS,
) -> str:
    """Run one claimed row and return the status it ends in."""
    action = action_from_record(record)
    if action is None:
        return _finish(db, record, None, f"Unknown action type: {record.action_type}", max_attempts=0)

    payload = load_json_field(record.payload_json, {})
    message = str(payload.get("original_message") or "") if isinstance(payload, dict) else ""
    result = None
    error = None
    try:
        with endpoints_factory(record.user_id) as endpoints:
            ctx = ActionContext(user_id=record.user_id, db=db, endpoints=endpoints, message=message)
            result = run_action_handler(action.kind, action.parameters, ctx)
    except Exception as exc:
        db.rollback()
        error = str(exc) or type(exc).__name__
        logger.exception(
            "worker_action_failed action_id=%s type=%s attempt=%s", record.id, record.action_type, record.attempts
        )

    status = _finish(db, record, result, error, max_attempts)
    logger.info("worker_action_finished action_id=%s status=%s", record.id, status)
    if status == "completed":
        try:
            refresh_context_snapshot(db, record.user_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("worker_snapshot_refresh_failed user_id=%s", record.user_id)
    return status


def run_once(
    db: Session,
    worker_id: str,
    endpoints_factory: EndpointsFactory = default_endpoints,
    max_attempts: int = MAX_ATTEMPTS,
) -> Optional[str]:
    record = claim_next_action(db, worker_id, max_attempts=max_attempts)
    if record is None:
        return None
    return process_action(db, record, endpoints_factory, max_attempts=max_attempts)


def run_forever(worker_id: str, poll_interval: float = POLL_INTERVAL_SECONDS) -> None:
    logger.info("worker_started worker=%s poll_interval=%s", worker_id, poll_interval)
    while True:
        db = SessionLocal()
        try:
            processed = run_once(db, worker_id)
        except SQLAlchemyError:
            db.rollback()
            logger.exception("worker_poll_failed worker=%s", worker_id)
            processed = None
        finally:
            db.close()
        if processed is None:
            time.sleep(poll_interval)


def main() -> int:
    parser = argparse.ArgumentParser(description="Execute queued coach actions.")
    parser.add_argument(
        "--once",
        action="store_true",
        help="Process at most one queued action and exit.",
    )
    parser.add_argument(
        "--poll-interval",
        type=float,
        default=POLL_INTERVAL_SECONDS,
        help="Seconds to sleep when the queue is empty.",
    )
    parser.add_argument(
        "--worker-id",
        default=None,
        help="Identifier written to locked_by. Defaults to host:pid.",
    )
    args = parser.parse_args()
    logging.basicConfig(level=logging.INFO)

    create_tables()
    worker_id = args.worker_id or default_worker_id()
    if args.once:
        db = SessionLocal()
        try:
            status = run_once(db, worker_id)
        finally:
            db.close()
        print(f"Processed: {status or 'nothing queued'}")
        return 0

    try:
        run_forever(worker_id, poll_interval=args.poll_interval)
    except KeyboardInterrupt:
        logger.info("worker_stopped worker=%s", worker_id)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
