import logging
from datetime import datetime
from typing import Any, Optional

from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitcoach.core.action_executor import TARGET_TABLES
from fitcoach.core.action_parser import ActionKind, CoachAction, action_from_payload
from fitcoach.db.models import CoachAction as CoachActionRecord
from fitcoach.db.models import dump_json_field, load_json_field

logger = logging.getLogger("uvicorn.error")

OPEN_STATUSES = {"pending", "queued"}


def _target(action: CoachAction) -> tuple[Optional[str], Optional[str]]:
    params = action.parameters or {}
    table = params.get("targetTable") or TARGET_TABLES.get(action.kind)
    target_id = params.get("targetId") or params.get("plan_id")
    return (str(table) if table else None, str(target_id) if target_id is not None else None)


def build_payload(
    action: CoachAction,
    result: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
    include_outcome: bool = True,
) -> dict[str, Any]:
    payload: dict[str, Any] = {"parameters": action.parameters, "reasoning": action.reasoning}
    if include_outcome:
        payload["result"] = result
        payload["error"] = error
    return payload


def record_action(
    db: Session,
    user_id: int,
    conversation_id: Optional[int],
    action: CoachAction,
    status: str,
    result: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
    idempotency_key: Optional[str] = None,
    extra_payload: Optional[dict[str, Any]] = None,
) -> Optional[CoachActionRecord]:
    """Append one ledger row. Failures are logged and swallowed; returns None then."""
    target_table, target_id = _target(action)
    payload = build_payload(action, result, error, include_outcome=status not in OPEN_STATUSES)
    payload.update(extra_payload or {})
    row = CoachActionRecord(
        user_id=user_id,
        conversation_id=conversation_id,
        action_type=action.kind.value,
        target_table=target_table,
        target_id=target_id,
        payload_json=dump_json_field(payload),
        status=status,
        error_message=error,
        idempotency_key=idempotency_key,
        completed_at=datetime.utcnow() if status == "completed" else None,
    )
    try:
        db.add(row)
        db.commit()
        db.refresh(row)
    except SQLAlchemyError:
        db.rollback()
        logger.exception(
            "coach_ledger_write_failed user_id=%s type=%s status=%s", user_id, action.kind.value, status
        )
        return None
    return row


def _move_pending(db: Session, record: CoachActionRecord, **values: Any) -> bool:
    record_id = record.id
    result = db.execute(
        update(CoachActionRecord)
        .where(CoachActionRecord.id == record_id, CoachActionRecord.status == "pending")
        .values(**values)
    )
    db.commit()
    if result.rowcount != 1:
        logger.info("coach_pending_claim_lost action_id=%s target=%s", record_id, values.get("status"))
        return False
    db.refresh(record)
    return True


def claim_pending_action(db: Session, record: CoachActionRecord, claimed_by: str) -> bool:
    """Move a pending row to processing. False when another turn already took it."""
    return _move_pending(db, record, status="processing", locked_at=datetime.utcnow(), locked_by=claimed_by)


def queue_pending_action(db: Session, record: CoachActionRecord) -> bool:
    return _move_pending(db, record, status="queued", completed_at=None)


def resolve_pending_action(
    db: Session,
    record: CoachActionRecord,
    result: Optional[dict[str, Any]],
    error: Optional[str],
    conversation_id: Optional[int] = None,
) -> bool:
    """Finish a row claimed by claim_pending_action."""
    payload = load_json_field(record.payload_json, {})
    if not isinstance(payload, dict):
        payload = {}
    payload["result"] = result
    payload["error"] = error
    try:
        record.payload_json = dump_json_field(payload)
        record.status = "failed" if error else "completed"
        record.error_message = error
        record.completed_at = None if error else datetime.utcnow()
        record.locked_at = None
        record.locked_by = None
        if record.conversation_id is None and conversation_id is not None:
            record.conversation_id = conversation_id
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.exception("coach_ledger_resolve_failed action_id=%s", record.id)
        return False
    return True


def serialize_action_record(record: CoachActionRecord) -> dict[str, Any]:
    return {
        "id": record.id,
        "action_type": record.action_type,
        "status": record.status,
        "conversation_id": record.conversation_id,
        "target_table": record.target_table,
        "target_id": record.target_id,
        "payload": load_json_field(record.payload_json, {}),
        "error_message": record.error_message,
        "attempts": record.attempts,
        "created_at": record.created_at.isoformat() if record.created_at else None,
        "completed_at": record.completed_at.isoformat() if record.completed_at else None,
    }


def action_from_record(record: CoachActionRecord) -> Optional[CoachAction]:
    """Rebuild the executable action stored on a ledger row."""
    payload = load_json_field(record.payload_json, {})
    if not isinstance(payload, dict):
        payload = {}
    action = action_from_payload(
        {
            "type": record.action_type,
            "parameters": payload.get("parameters"),
            "reasoning": payload.get("reasoning"),
        }
    )
    if action is None or action.kind is ActionKind.NONE:
        return None
    return action
