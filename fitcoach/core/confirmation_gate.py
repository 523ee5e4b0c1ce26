from enum import Enum
from typing import Optional

from sqlalchemy.orm import Session

from fitcoach.core.action_parser import ActionKind, CoachAction
from fitcoach.db.models import CoachAction as CoachActionRecord

CONFIRMATION_WORDS = {"yes", "confirm"}


class GateRoute(str, Enum):
    NONE = "none"
    EXECUTE = "execute"
    DEFER = "defer"


def is_confirmation_turn(message: Optional[str], confirm_flag: Optional[bool] = False) -> bool:
    if confirm_flag:
        return True
    return (message or "").strip().lower() in CONFIRMATION_WORDS


def route_action(action: CoachAction, confirmation_turn: bool) -> GateRoute:
    if action.kind == ActionKind.NONE:
        return GateRoute.NONE
    if not action.requires_confirmation or confirmation_turn:
        return GateRoute.EXECUTE
    return GateRoute.DEFER


def find_latest_pending_action(db: Session, user_id: int) -> Optional[CoachActionRecord]:
    # Last pending wins across all of the user's conversations; pending rows never expire.
    return (
        db.query(CoachActionRecord)
        .filter(CoachActionRecord.user_id == user_id, CoachActionRecord.status == "pending")
        .order_by(CoachActionRecord.created_at.desc(), CoachActionRecord.id.desc())
        .first()
    )
