import re
from datetime import date, datetime, timedelta
from typing import Any, Optional

from fastapi import APIRouter, Depends, Query, status
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from fitcoach.api.auth import get_current_user
from fitcoach.core.context_builder import (
    fetch_recent_logs,
    serialize_activity_log,
    serialize_meal_log,
    serialize_mood_log,
    serialize_weight_log,
    serialize_workout_session,
)
from fitcoach.db.models import ActivityLog, MealLog, MoodLog, User, WeightLog, WorkoutSession, dump_json_field
from fitcoach.db.session import get_db

router = APIRouter(prefix="/logs", tags=["logs"])

DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


class ActivityLogRequest(BaseModel):
    workout_type: Optional[str] = None
    description: Optional[str] = None
    duration: Optional[int] = None
    workout_time: Optional[str] = None
    exercises: Optional[list[Any]] = None
    steps: Optional[int] = None
    notes: Optional[str] = None
    date: Optional[str] = None


class MealLogRequest(BaseModel):
    meal_type: Optional[str] = None
    description: Optional[str] = None
    date: Optional[str] = None
    meal_time: Optional[str] = None
    calories: Optional[float] = None
    protein: Optional[float] = None
    carbs: Optional[float] = None
    fat: Optional[float] = None
    foods: Optional[Any] = None


class WeightLogRequest(BaseModel):
    weight: Optional[float] = None
    date: Optional[str] = None
    notes: Optional[str] = None


class MoodLogRequest(BaseModel):
    mood: Optional[int] = None
    date: Optional[str] = None
    notes: Optional[str] = None


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def _parse_date(raw: Optional[str]) -> Optional[date]:
    if not raw:
        return None
    try:
        return date.fromisoformat(str(raw).strip()[:10])
    except ValueError:
        return None


def _normalize_meal_time(raw: Optional[str]) -> Optional[str]:
    if not raw or not raw.strip():
        return None
    parts = raw.strip().split(":")
    if len(parts) < 2:
        return None
    return f"{parts[0].zfill(2)[:2]}:{parts[1].zfill(2)[:2]}"


def _since(days: int) -> date:
    return date.today() - timedelta(days=days)


@router.post("/activity", status_code=status.HTTP_201_CREATED)
def create_activity_log(
    payload: ActivityLogRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not payload.date:
        return _error(400, "Date is required")
    log_date = _parse_date(payload.date)
    if log_date is None:
        return _error(400, "Invalid date")
    row = ActivityLog(
        user_id=user.id,
        date=log_date,
        workout_type=payload.workout_type,
        description=payload.description,
        duration=payload.duration,
        workout_time=payload.workout_time,
        exercises_json=dump_json_field(payload.exercises),
        steps=payload.steps,
        notes=payload.notes,
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return serialize_activity_log(row)


@router.get("/activity")
def list_activity_logs(
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = (
        db.query(ActivityLog)
        .filter(ActivityLog.user_id == user.id, ActivityLog.date >= _since(days))
        .order_by(ActivityLog.date.desc(), ActivityLog.id.desc())
        .all()
    )
    return [serialize_activity_log(row) for row in rows]


@router.post("/meals", status_code=status.HTTP_201_CREATED)
def create_meal_log(
    payload: MealLogRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    meal_type = (payload.meal_type or "").strip().lower()
    description = (payload.description or "").strip()
    if not meal_type or not description:
        return _error(400, "meal_type and description are required")

    log_date = date.today()
    if payload.date and DATE_RE.match(payload.date):
        log_date = _parse_date(payload.date) or log_date

    foods = payload.foods
    row = MealLog(
        user_id=user.id,
        date=log_date,
        meal_type=meal_type,
        description=description,
        meal_time=_normalize_meal_time(payload.meal_time),
        calories=payload.calories,
        protein=payload.protein,
        carbs=payload.carbs,
        fat=payload.fat,
        foods_json=foods if isinstance(foods, str) else dump_json_field(foods),
    )
    db.add(row)
    db.commit()
    db.refresh(row)
    return serialize_meal_log(row)


@router.get("/meals")
def list_meal_logs(
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = (
        db.query(MealLog)
        .filter(MealLog.user_id == user.id, MealLog.date >= _since(days))
        .order_by(MealLog.date.desc(), MealLog.id.desc())
        .all()
    )
    return [serialize_meal_log(row) for row in rows]


@router.post("/weight", status_code=status.HTTP_201_CREATED)
def create_weight_log(
    payload: WeightLogRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if not payload.weight or not payload.date:
        return _error(400, "Weight and date are required")
    log_date = _parse_date(payload.date)
    if log_date is None:
        return _error(400, "Invalid date")
    if payload.weight <= 0:
        return _error(400, "Weight must be positive")
    row = WeightLog(user_id=user.id, date=log_date, weight=payload.weight, notes=payload.notes)
    db.add(row)
    db.commit()
    db.refresh(row)
    return serialize_weight_log(row)


@router.get("/weight")
def list_weight_logs(
    days: int = Query(default=365, ge=1, le=3650),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = (
        db.query(WeightLog)
        .filter(WeightLog.user_id == user.id, WeightLog.date >= _since(days))
        .order_by(WeightLog.date.desc(), WeightLog.id.desc())
        .all()
    )
    return [serialize_weight_log(row) for row in rows]


@router.post("/mood", status_code=status.HTTP_201_CREATED)
def create_mood_log(
    payload: MoodLogRequest,
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
):
    if payload.mood is None:
        return _error(400, "Mood is required")
    if payload.mood < 1 or payload.mood > 10:
        return _error(400, "Mood must be between 1 and 10")
    log_date = _parse_date(payload.date) or date.today()
    row = MoodLog(user_id=user.id, date=log_date, mood=payload.mood, notes=payload.notes)
    db.add(row)
    db.commit()
    db.refresh(row)
    return serialize_mood_log(row)


@router.get("/mood")
def list_mood_logs(
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    rows = (
        db.query(MoodLog)
        .filter(MoodLog.user_id == user.id, MoodLog.date >= _since(days))
        .order_by(MoodLog.date.desc(), MoodLog.id.desc())
        .all()
    )
    return [serialize_mood_log(row) for row in rows]


@router.get("/all")
def list_all_logs(
    days: int = Query(default=30, ge=1, le=365),
    user: User = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    logs = fetch_recent_logs(db, user.id, days=days)
    since = datetime.combine(_since(days), datetime.min.time())
    sessions = (
        db.query(WorkoutSession)
        .filter(WorkoutSession.user_id == user.id, WorkoutSession.created_at >= since)
        .order_by(WorkoutSession.created_at.desc(), WorkoutSession.id.desc())
        .all()
    )
    return {**logs, "workouts": [serialize_workout_session(row) for row in sessions]}
