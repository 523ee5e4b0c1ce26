import json
import logging
import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.orm import Session

from fitcoach.api.auth import get_current_user
from fitcoach.core.context_builder import serialize_fitness_profile, serialize_plan
from fitcoach.db.models import FitnessProfile, PersonalizedPlan, User, dump_json_field
from fitcoach.db.session import get_db, upsert_row
from fitcoach.services.llm import LLMClient, LLMConfigError, LLMRequestError, get_llm_client

router = APIRouter(prefix="/personalized-plans", tags=["plans"])
logger = logging.getLogger("uvicorn.error")

WEEKDAYS = ["Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday"]
REST = "Rest"
DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")

PLAN_SYSTEM_PROMPT = """You are an expert strength and conditioning coach writing one week of workouts.
Return strict JSON: {"days": [ ... ]} with one entry per scheduled training day, each shaped as:
{
  "date": "YYYY-MM-DD",
  "dayName": "Monday",
  "focus": "Upper Body",
  "style": "Strength",
  "duration": 45,
  "warmup": "5 min easy bike, band pull-aparts",
  "cooldown": "Stretching",
  "exercises": [{"name": "Bench Press", "sets": 3, "reps": "8", "rest": "90s", "weight": "60kg"}],
  "cardio": "Optional 10 min incline walk"
}
Respect the user's equipment, injuries, disliked exercises and workout duration. Use their benchmarks to pick working weights."""


class ScheduleDay(BaseModel):
    day: Optional[str] = None
    focus: Optional[str] = None


class GeneratePlansRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start_date: Optional[str] = Field(default=None, alias="startDate")
    schedule: Optional[list[ScheduleDay]] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def iso_week_number(day: date) -> int:
    return day.isocalendar()[1]


def _weekday_name(raw: Any) -> Optional[str]:
    text = str(raw or "").strip().capitalize()
    return text if text in WEEKDAYS else None


def build_week_schedule(
    start: date, schedule: Optional[list[ScheduleDay]], fitness: dict[str, Any]
) -> list[dict[str, str]]:
    """Seven consecutive days from ``start``; unscheduled days are rest days."""
    focus_by_day: dict[str, str] = {}
    if schedule:
        for item in schedule:
            name = _weekday_name(item.day)
            if name and item.focus and item.focus.strip():
                focus_by_day[name] = item.focus.strip()
    else:
        goals = fitness.get("primary_goals") or []
        default_focus = str(goals[0]) if goals else "Full Body"
        for raw_day in fitness.get("workout_days") or []:
            name = _weekday_name(raw_day)
            if name:
                focus_by_day[name] = default_focus

    week = []
    for offset in range(7):
        current = start + timedelta(days=offset)
        name = WEEKDAYS[current.weekday()]
        week.append({"date": current.isoformat(), "dayName": name, "focus": focus_by_day.get(name, REST)})
    return week


def _rest_day(slot: dict[str, str]) -> dict[str, Any]:
    return {**slot, "focus": REST, "style": REST, "duration": 0, "exercises": []}


def merge_generated_days(week: list[dict[str, str]], generated: dict[str, Any]) -> list[dict[str, Any]]:
    by_name: dict[str, dict[str, Any]] = {}
    for item in generated.get("days") or []:
        if isinstance(item, dict):
            name = _weekday_name(item.get("dayName"))
            if name:
                by_name[name] = item

    days: list[dict[str, Any]] = []
    for slot in week:
        if slot["focus"] == REST:
            days.append(_rest_day(slot))
            continue
        produced = by_name.get(slot["dayName"], {})
        exercises = produced.get("exercises")
        days.append(
            {
                **produced,
                "date": slot["date"],
                "dayName": slot["dayName"],
                "focus": produced.get("focus") or slot["focus"],
                "exercises": exercises if isinstance(exercises, list) else [],
            }
        )
    return days


def _plan_user_prompt(fitness: dict[str, Any], week: list[dict[str, str]]) -> str:
    training = [slot for slot in week if slot["focus"] != REST]
    return (
        "FITNESS PROFILE:\n"
        f"{json.dumps(fitness, default=str)}\n\n"
        "SCHEDULE (generate only these days):\n"
        f"{json.dumps(training)}"
    )


@router.get("")
def list_plans(
    plan_type: Optional[str] = Query(default=None),
    week_number: Optional[int] = Query(default=None),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    query = db.query(PersonalizedPlan).filter(
        PersonalizedPlan.user_id == user.id, PersonalizedPlan.is_active.is_(True)
    )
    if plan_type:
        query = query.filter(PersonalizedPlan.plan_type == plan_type)
    if week_number is not None:
        query = query.filter(PersonalizedPlan.week_number == week_number)
    rows = query.order_by(PersonalizedPlan.week_number.asc(), PersonalizedPlan.id.asc()).all()
    return {"plans": [serialize_plan(row) for row in rows]}


@router.post("/generate-from-data", status_code=status.HTTP_200_OK)
def generate_plans_from_data(
    payload: GeneratePlansRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
    llm_client: LLMClient = Depends(get_llm_client),
):
    if payload.start_date is not None and not DATE_RE.match(payload.start_date):
        return _error(400, "Invalid body: startDate must be YYYY-MM-DD")
    if payload.schedule is not None and not 1 <= len(payload.schedule) <= 7:
        return _error(400, "Invalid body: schedule must have 1 to 7 days")
    try:
        start = date.fromisoformat(payload.start_date) if payload.start_date else date.today()
    except ValueError:
        return _error(400, "Invalid body: startDate must be a real date")

    profile_row = db.query(FitnessProfile).filter(FitnessProfile.user_id == user.id).first()
    if profile_row is None:
        return _error(404, "Fitness profile not found. Complete your profile first.")
    fitness = serialize_fitness_profile(profile_row)

    week = build_week_schedule(start, payload.schedule, fitness)
    try:
        generated = llm_client.generate_json(PLAN_SYSTEM_PROMPT, _plan_user_prompt(fitness, week))
    except LLMConfigError as exc:
        logger.error("plan_llm_not_configured user_id=%s detail=%s", user.id, str(exc))
        return _error(503, "Plan generation is not configured")
    except LLMRequestError as exc:
        logger.exception("plan_llm_request_error user_id=%s detail=%s", user.id, str(exc))
        return _error(502, "Plan generation failed")

    week_number = iso_week_number(start)
    content = {"startDate": start.isoformat(), "weekNumber": week_number, "days": merge_generated_days(week, generated)}
    now = datetime.utcnow()
    upsert_row(
        db,
        PersonalizedPlan,
        {
            "user_id": user.id,
            "plan_type": "workout",
            "week_number": week_number,
            "start_date": start,
            "content_json": dump_json_field(content),
            "is_active": True,
            "is_completed": False,
            "created_at": now,
            "updated_at": now,
        },
        conflict_columns=["user_id", "plan_type", "week_number"],
        update_columns=["start_date", "content_json", "is_active", "is_completed", "updated_at"],
    )
    db.commit()
    row = (
        db.query(PersonalizedPlan)
        .filter(
            PersonalizedPlan.user_id == user.id,
            PersonalizedPlan.plan_type == "workout",
            PersonalizedPlan.week_number == week_number,
        )
        .first()
    )
    logger.info("plan_generated user_id=%s week=%s", user.id, week_number)
    return {"plans": [serialize_plan(row)] if row else []}
