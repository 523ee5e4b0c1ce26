import logging
import re
from dataclasses import replace
from datetime import date
from typing import Any, Optional, Union

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from fitcoach.api.auth import get_current_user
from fitcoach.api.conversations import (
    ConversationNotFoundError,
    find_conversation,
    get_or_create_conversation,
    persist_coach_turn,
)
from fitcoach.core.action_executor import ActionContext, ExecutionOutcome, execute_action
from fitcoach.core.action_ledger import (
    action_from_record,
    claim_pending_action,
    queue_pending_action,
    record_action,
    resolve_pending_action,
    serialize_action_record,
)
from fitcoach.core.action_parser import (
    NO_ACTION,
    ActionKind,
    CoachAction,
    action_from_payload,
    parse_coach_reply,
)
from fitcoach.core.confirmation_gate import (
    GateRoute,
    find_latest_pending_action,
    is_confirmation_turn,
    route_action,
)
from fitcoach.core.context_builder import build_coaching_context
from fitcoach.core.context_snapshot import get_context_snapshot
from fitcoach.core.prompt_builder import build_chat_messages, build_fast_path_prompt, render_profile_line
from fitcoach.core.response_composer import compose_reply
from fitcoach.db.models import CoachAction as CoachActionRecord
from fitcoach.db.models import Message, User, UserProfile
from fitcoach.db.session import get_db
from fitcoach.services.endpoints import EndpointClient, get_endpoint_client
from fitcoach.services.llm import (
    LLMClient,
    LLMConfigError,
    LLMRequestError,
    LLMResponseFormatError,
    get_llm_client,
)

router = APIRouter(prefix="/coach", tags=["coach"])
logger = logging.getLogger("uvicorn.error")

TECHNICAL_DIFFICULTIES = (
    "I'm having some technical difficulties right now. But remember: consistency beats perfection. "
    "Keep logging and stay active!"
)
REPHRASE_REPLY = "I'm having trouble processing that. Could you rephrase?"
FAST_PATH_CONFIRMATION_RE = re.compile(r"^(yes|confirm|ok|do it|go ahead|proceed)$", re.IGNORECASE)
ALWAYS_CONFIRM = {ActionKind.GENERATE_PLANS, ActionKind.UPDATE_PLAN}
FAST_PATH_HISTORY_FETCH = 8


class CoachChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    user_id: Optional[Union[int, str]] = Field(default=None, alias="userId")
    conversation_id: Optional[Union[int, str]] = Field(default=None, alias="conversationId")
    confirm_action: Optional[bool] = Field(default=False, alias="confirmAction")


class CoachChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    action: Optional[dict[str, Any]] = None
    action_result: Optional[dict[str, Any]] = Field(default=None, alias="actionResult")
    action_error: Optional[str] = Field(default=None, alias="actionError")
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")


class NewChatRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: Optional[str] = None
    conversation_id: Optional[Union[int, str]] = Field(default=None, alias="conversationId")


class NewChatResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    message: str
    intent: str
    requires_confirmation: bool = Field(default=False, alias="requiresConfirmation")
    conversation_id: Optional[int] = Field(default=None, alias="conversationId")
    pending_action_id: Optional[int] = Field(default=None, alias="pendingActionId")
    action_status: str = Field(default="none", alias="actionStatus")


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _upstream_failure(status_code: int, error: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"message": TECHNICAL_DIFFICULTIES, "error": error})


def _same_user(claimed: Union[int, str], user: User) -> bool:
    return str(claimed).strip() == str(user.id)


def _pending_as_action(record: CoachActionRecord) -> Optional[CoachAction]:
    action = action_from_record(record)
    if action is None:
        return None
    return replace(action, requires_confirmation=True)


def run_coach_turn(
    db: Session,
    user: User,
    message: str,
    conversation_id: Optional[Union[int, str]],
    confirm_flag: bool,
    llm_client: LLMClient,
    endpoints: EndpointClient,
) -> CoachChatResponse:
    conversation = None
    if conversation_id is not None:
        conversation = find_conversation(db, user.id, conversation_id)

    context = build_coaching_context(db, user, conversation.id if conversation else None)
    confirmation_turn = is_confirmation_turn(message, confirm_flag)
    pending = find_latest_pending_action(db, user.id) if confirmation_turn else None

    raw_reply = llm_client.complete_chat(build_chat_messages(context, message))
    parsed = parse_coach_reply(raw_reply)

    action = parsed.action
    pending_action = _pending_as_action(pending) if pending is not None else None
    if pending_action is not None and claim_pending_action(db, pending, claimed_by=f"coach-chat:{user.id}"):
        if action.kind is not ActionKind.NONE:
            logger.info(
                "coach_fresh_action_dropped user_id=%s fresh=%s pending_id=%s",
                user.id,
                action.kind.value,
                pending.id,
            )
        action = pending_action
    else:
        pending = None

    route = route_action(action, confirmation_turn)
    outcome = ExecutionOutcome()
    if route is GateRoute.EXECUTE:
        ctx = ActionContext(user_id=user.id, db=db, endpoints=endpoints, message=message)
        outcome = execute_action(action, ctx)

    if conversation is None:
        conversation = get_or_create_conversation(db, user_id=user.id, conversation_id=None)
    conv_id = conversation.id if conversation else None

    if route is GateRoute.EXECUTE:
        if pending is not None:
            resolve_pending_action(db, pending, outcome.result, outcome.error, conversation_id=conv_id)
        else:
            record_action(
                db,
                user.id,
                conv_id,
                action,
                status="failed" if outcome.error else "completed",
                result=outcome.result,
                error=outcome.error,
            )
    elif route is GateRoute.DEFER:
        record_action(db, user.id, conv_id, action, status="pending")

    deferred = route is GateRoute.DEFER
    reply = compose_reply(parsed.text, outcome.result, outcome.error, deferred=deferred)
    action_payload = action.to_payload() if action.kind is not ActionKind.NONE else None

    if conversation is not None:
        persist_coach_turn(
            db,
            user_id=user.id,
            conversation=conversation,
            user_text=message,
            assistant_text=reply,
            metadata={"action": action_payload, "actionResult": outcome.result, "actionError": outcome.error},
        )

    return CoachChatResponse(
        message=reply,
        action=action_payload,
        action_result=outcome.result,
        action_error=outcome.error,
        conversation_id=conv_id,
        requires_confirmation=deferred,
    )


@router.post("/chat", response_model=CoachChatResponse, status_code=status.HTTP_200_OK)
def coach_chat(
    payload: CoachChatRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
    endpoints: EndpointClient = Depends(get_endpoint_client),
):
    message = payload.message if isinstance(payload.message, str) else ""
    if not message.strip() or payload.user_id is None or not str(payload.user_id).strip():
        return _error(400, "Message and userId are required")
    if not _same_user(payload.user_id, user):
        logger.warning("coach_user_mismatch provided=%s authenticated=%s", payload.user_id, user.id)
        return _error(401, "Unauthorized")

    try:
        return run_coach_turn(
            db,
            user,
            message,
            payload.conversation_id,
            bool(payload.confirm_action),
            llm_client,
            endpoints,
        )
    except ConversationNotFoundError:
        return _error(404, "Conversation not found")
    except LLMConfigError as exc:
        logger.error("coach_llm_not_configured user_id=%s detail=%s", user.id, str(exc))
        return _upstream_failure(503, "Coach is not configured")
    except LLMRequestError as exc:
        logger.exception(
            "coach_llm_request_error user_id=%s status=%s detail=%s", user.id, exc.status_code, str(exc)
        )
        return _upstream_failure(502, "Upstream completion service error")
    except Exception as exc:
        logger.exception("coach_unhandled_error user_id=%s detail=%s", user.id, str(exc))
        db.rollback()
        return _upstream_failure(500, "Internal server error")


def _fast_path_summary(db: Session, user: User) -> str:
    snapshot = get_context_snapshot(db, user.id)
    if snapshot and snapshot.get("summary"):
        return snapshot["summary"]
    profile = db.query(UserProfile).filter(UserProfile.user_id == user.id).first()
    if profile is None:
        return render_profile_line(None)
    return render_profile_line(
        {
            "name": profile.name or user.name,
            "current_weight": profile.current_weight,
            "goal_weight": profile.goal_weight,
        }
    )


def _recent_history(db: Session, conversation_id: int) -> list[dict[str, str]]:
    rows = (
        db.query(Message)
        .filter(Message.conversation_id == conversation_id)
        .order_by(Message.created_at.desc(), Message.id.desc())
        .limit(FAST_PATH_HISTORY_FETCH)
        .all()
    )
    return [{"role": row.role, "content": row.content} for row in reversed(rows)]


def _fast_path_decision(raw: dict[str, Any]) -> tuple[CoachAction, str]:
    text = raw.get("message")
    text = text.strip() if isinstance(text, str) and text.strip() else REPHRASE_REPLY
    action = action_from_payload(
        {
            "type": raw.get("intent"),
            "requiresConfirmation": raw.get("requires_confirmation") is True,
            "parameters": raw.get("parameters"),
        }
    )
    if action is None:
        return NO_ACTION, text
    if action.kind in ALWAYS_CONFIRM and not action.requires_confirmation:
        action = replace(action, requires_confirmation=True)
    return action, text


def _queue_fast_path_action(
    db: Session, user: User, conversation_id: Optional[int], action: CoachAction, message: str
) -> tuple[Optional[int], str]:
    idempotency_key = f"{user.id}:{action.kind.value}:{date.today().isoformat()}:{message[:50]}"
    existing = db.query(CoachActionRecord).filter(CoachActionRecord.idempotency_key == idempotency_key).first()
    if existing is not None:
        logger.info("coach_fast_path_reuse action_id=%s", existing.id)
        return existing.id, existing.status

    status_value = "pending" if action.requires_confirmation else "queued"
    row = record_action(
        db,
        user.id,
        conversation_id,
        action,
        status=status_value,
        idempotency_key=idempotency_key,
        extra_payload={"original_message": message},
    )
    if row is None:
        # A concurrent request may have inserted the same key.
        existing = (
            db.query(CoachActionRecord).filter(CoachActionRecord.idempotency_key == idempotency_key).first()
        )
        if existing is None:
            return None, "none"
        return existing.id, existing.status
    return row.id, status_value


@router.post("/new-chat", response_model=NewChatResponse, status_code=status.HTTP_200_OK)
def coach_new_chat(
    payload: NewChatRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    message = payload.message if isinstance(payload.message, str) else ""
    if not message.strip():
        return _error(400, "Message is required")

    try:
        conversation = get_or_create_conversation(
            db, user_id=user.id, conversation_id=payload.conversation_id
        )
    except ConversationNotFoundError:
        return _error(404, "Conversation not found")
    conv_id = conversation.id if conversation else None

    try:
        pending = find_latest_pending_action(db, user.id)
        if (
            pending is not None
            and FAST_PATH_CONFIRMATION_RE.match(message.strip())
            and queue_pending_action(db, pending)
        ):
            label = pending.action_type.replace("_", " ").lower()
            reply = f"✅ Got it! I've queued {label} for execution. This will be processed shortly."
            if conversation is not None:
                persist_coach_turn(
                    db,
                    user_id=user.id,
                    conversation=conversation,
                    user_text=message,
                    assistant_text=reply,
                    metadata={"actionId": pending.id, "status": "queued"},
                )
            return NewChatResponse(
                message=reply,
                intent=pending.action_type,
                requires_confirmation=False,
                conversation_id=conv_id,
                pending_action_id=pending.id,
                action_status="queued",
            )

        history = _recent_history(db, conv_id) if conv_id is not None else []
        system_prompt = build_fast_path_prompt(_fast_path_summary(db, user), history)
        try:
            raw = llm_client.generate_json(system_prompt, message)
        except LLMResponseFormatError:
            logger.warning("coach_fast_path_invalid_json user_id=%s", user.id)
            raw = {}
        action, text = _fast_path_decision(raw)

        action_id: Optional[int] = None
        action_status = "none"
        if action.kind is not ActionKind.NONE:
            action_id, action_status = _queue_fast_path_action(db, user, conv_id, action, message)

        deferred = action.requires_confirmation and action.kind is not ActionKind.NONE
        reply = compose_reply(text, deferred=deferred)
        if conversation is not None:
            persist_coach_turn(
                db,
                user_id=user.id,
                conversation=conversation,
                user_text=message,
                assistant_text=reply,
                metadata={"intent": action.kind.value, "actionId": action_id, "status": action_status},
            )
        return NewChatResponse(
            message=reply,
            intent=action.kind.value,
            requires_confirmation=deferred,
            conversation_id=conv_id,
            pending_action_id=action_id,
            action_status=action_status,
        )
    except LLMConfigError as exc:
        logger.error("coach_llm_not_configured user_id=%s detail=%s", user.id, str(exc))
        return _upstream_failure(503, "Coach is not configured")
    except LLMRequestError as exc:
        logger.exception("coach_fast_path_llm_error user_id=%s detail=%s", user.id, str(exc))
        return _upstream_failure(502, "Upstream completion service error")
    except Exception as exc:
        logger.exception("coach_fast_path_unhandled_error user_id=%s detail=%s", user.id, str(exc))
        db.rollback()
        return _upstream_failure(500, "Internal server error")


@router.get("/action-status")
def coach_action_status(
    action_id: Optional[str] = Query(default=None, alias="actionId"),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not action_id or not action_id.strip():
        return _error(400, "actionId is required")
    try:
        record_id = int(action_id.strip())
    except ValueError:
        return _error(404, "Action not found")
    record = (
        db.query(CoachActionRecord)
        .filter(CoachActionRecord.id == record_id, CoachActionRecord.user_id == user.id)
        .first()
    )
    if record is None:
        return _error(404, "Action not found")
    return serialize_action_record(record)
