import logging
from datetime import date, datetime, timedelta
from typing import Any, Callable, Optional, TypeVar

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from fitcoach.db.models import (
    ActivityLog,
    FitnessProfile,
    MealLog,
    Message,
    MoodLog,
    PersonalizedPlan,
    User,
    UserGoals,
    UserProfile,
    WeightLog,
    WorkoutSession,
    load_json_field,
)

logger = logging.getLogger("uvicorn.error")

LOG_WINDOW_DAYS = 30
TREND_WINDOW_DAYS = 7
MAX_WORKOUT_SESSIONS = 20
MAX_RECENT_MESSAGES = 10
MAX_RECENT_COMPLETED_WORKOUTS = 7

T = TypeVar("T")


def _iso(value: Any) -> Optional[str]:
    if value is None:
        return None
    if isinstance(value, (date, datetime)):
        return value.isoformat()
    return str(value)


def serialize_weight_log(row: WeightLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "date": _iso(row.date),
        "weight": row.weight,
        "notes": row.notes,
        "created_at": _iso(row.created_at),
    }


def serialize_meal_log(row: MealLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "date": _iso(row.date),
        "meal_type": row.meal_type,
        "description": row.description,
        "meal_time": row.meal_time,
        "calories": row.calories,
        "protein": row.protein,
        "carbs": row.carbs,
        "fat": row.fat,
        "foods": load_json_field(row.foods_json, []),
        "created_at": _iso(row.created_at),
    }


def serialize_activity_log(row: ActivityLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "date": _iso(row.date),
        "workout_type": row.workout_type,
        "description": row.description,
        "duration": row.duration,
        "workout_time": row.workout_time,
        "exercises": load_json_field(row.exercises_json, []),
        "steps": row.steps,
        "notes": row.notes,
        "created_at": _iso(row.created_at),
    }


def serialize_mood_log(row: MoodLog) -> dict[str, Any]:
    return {
        "id": row.id,
        "date": _iso(row.date),
        "mood": row.mood,
        "notes": row.notes,
        "created_at": _iso(row.created_at),
    }


def serialize_plan(row: PersonalizedPlan) -> dict[str, Any]:
    return {
        "id": row.id,
        "plan_type": row.plan_type,
        "week_number": row.week_number,
        "start_date": _iso(row.start_date),
        "content": load_json_field(row.content_json, {}),
        "is_active": row.is_active,
        "is_completed": row.is_completed,
        "created_at": _iso(row.created_at),
        "updated_at": _iso(row.updated_at),
    }


def serialize_workout_session(row: WorkoutSession) -> dict[str, Any]:
    return {
        "id": row.id,
        "workout_name": row.workout_name,
        "status": row.status,
        "exercises": load_json_field(row.exercises_json, []),
        "completed_at": _iso(row.completed_at),
    }


def serialize_fitness_profile(row: FitnessProfile) -> dict[str, Any]:
    return {
        "fitness_level": row.fitness_level,
        "primary_goals": load_json_field(row.primary_goals_json, []),
        "workout_days": load_json_field(row.workout_days_json, []),
        "available_equipment": load_json_field(row.available_equipment_json, []),
        "workout_duration": row.workout_duration,
        "injuries_limitations": row.injuries_limitations,
        "preferred_activities": load_json_field(row.preferred_activities_json, []),
        "disliked_exercises": load_json_field(row.disliked_exercises_json, []),
        "exercise_benchmarks": load_json_field(row.exercise_benchmarks_json, []),
        "body_metrics": load_json_field(row.body_metrics_json, {}),
        "strength_levels": load_json_field(row.strength_levels_json, {}),
        "dietary_restrictions": load_json_field(row.dietary_restrictions_json, []),
        "food_allergies": load_json_field(row.food_allergies_json, []),
        "disliked_foods": load_json_field(row.disliked_foods_json, []),
        "preferred_foods": load_json_field(row.preferred_foods_json, []),
        "accessible_foods": load_json_field(row.accessible_foods_json, []),
    }


def serialize_goals(row: UserGoals) -> dict[str, Any]:
    return {
        "daily_calorie_goal": row.daily_calorie_goal,
        "daily_protein_goal": row.daily_protein_goal,
        "daily_carbs_goal": row.daily_carbs_goal,
        "daily_fat_goal": row.daily_fat_goal,
        "calculated_bmr": row.calculated_bmr,
        "calculated_tdee": row.calculated_tdee,
        "weekly_weight_goal": row.weekly_weight_goal,
    }


def _safe_fetch(label: str, user_id: int, fetch: Callable[[], T], default: T) -> T:
    try:
        return fetch()
    except SQLAlchemyError:
        logger.exception("coach_context_fetch_failed user_id=%s part=%s", user_id, label)
        return default


def fallback_profile(user: User) -> dict[str, Any]:
    email = user.email or ""
    name = user.name or (email.split("@")[0] if email else "") or "User"
    return {
        "id": user.id,
        "email": email,
        "name": name,
        "height": 0,
        "starting_weight": 0,
        "current_weight": 0,
        "goal_weight": 0,
    }


def _profile_dict(user: User, row: Optional[UserProfile]) -> dict[str, Any]:
    if row is None:
        return fallback_profile(user)
    return {
        "id": user.id,
        "email": user.email,
        "name": row.name or user.name or (user.email or "").split("@")[0] or "User",
        "height": row.height or 0,
        "starting_weight": row.starting_weight or 0,
        "current_weight": row.current_weight or 0,
        "goal_weight": row.goal_weight or 0,
    }


def progress_percentage(starting_weight: float, current_weight: float, goal_weight: float) -> int:
    if not starting_weight or not goal_weight:
        return 0
    span = starting_weight - goal_weight
    if span == 0:
        return 0
    return round((starting_weight - current_weight) / span * 100)


def _parse_day(raw: Any) -> Optional[date]:
    if isinstance(raw, date):
        return raw
    try:
        return date.fromisoformat(str(raw)[:10])
    except (TypeError, ValueError):
        return None


def compute_metrics(
    profile: dict[str, Any],
    logs: dict[str, list[dict[str, Any]]],
    plans: list[dict[str, Any]],
    workout_sessions: list[dict[str, Any]],
    today: Optional[date] = None,
) -> dict[str, Any]:
    today = today or date.today()
    starting = profile.get("starting_weight") or 0
    current = profile.get("current_weight") or starting or 0
    goal = profile.get("goal_weight") or 0

    recent_weights = logs.get("weight", [])[:7]
    weight_trend = 0.0
    if len(recent_weights) > 1:
        weight_trend = float(recent_weights[0]["weight"]) - float(recent_weights[-1]["weight"])

    cutoff = today - timedelta(days=TREND_WINDOW_DAYS)
    recent_meals = [m for m in logs.get("meals", []) if (_parse_day(m.get("date")) or date.min) > cutoff]
    total_calories = sum(float(m.get("calories") or 0) for m in recent_meals)
    avg_daily_calories = round(total_calories / TREND_WINDOW_DAYS) if recent_meals else 0

    completed = [w for w in workout_sessions if w.get("status") == "completed"]
    completion_rate = round(len(completed) / (len(plans) * 7) * 100) if plans else 0

    return {
        "current_weight": current,
        "weight_lost": starting - current,
        "progress_percentage": progress_percentage(starting, current, goal),
        "weight_trend_7d": weight_trend,
        "avg_daily_calories_7d": avg_daily_calories,
        "completed_workouts": len(completed),
        "recent_completed_workouts": len(completed[:MAX_RECENT_COMPLETED_WORKOUTS]),
        "workout_completion_rate": completion_rate,
    }


def fetch_recent_logs(db: Session, user_id: int, days: int = LOG_WINDOW_DAYS) -> dict[str, list[dict[str, Any]]]:
    since = date.today() - timedelta(days=days)

    def _rows(model, serializer):
        rows = (
            db.query(model)
            .filter(model.user_id == user_id, model.date >= since)
            .order_by(model.date.desc(), model.id.desc())
            .all()
        )
        return [serializer(row) for row in rows]

    return {
        "weight": _safe_fetch("weight_logs", user_id, lambda: _rows(WeightLog, serialize_weight_log), []),
        "meals": _safe_fetch("meal_logs", user_id, lambda: _rows(MealLog, serialize_meal_log), []),
        "activities": _safe_fetch(
            "activity_logs", user_id, lambda: _rows(ActivityLog, serialize_activity_log), []
        ),
        "moods": _safe_fetch("mood_logs", user_id, lambda: _rows(MoodLog, serialize_mood_log), []),
    }


def fetch_active_plans(db: Session, user_id: int) -> list[dict[str, Any]]:
    rows = (
        db.query(PersonalizedPlan)
        .filter(PersonalizedPlan.user_id == user_id, PersonalizedPlan.is_active.is_(True))
        .order_by(PersonalizedPlan.week_number.asc(), PersonalizedPlan.plan_type.asc())
        .all()
    )
    return [serialize_plan(row) for row in rows]


def build_coaching_context(
    db: Session, user: User, conversation_id: Optional[int] = None
) -> dict[str, Any]:
    user_id = user.id

    profile_row = _safe_fetch(
        "profile",
        user_id,
        lambda: db.query(UserProfile).filter(UserProfile.user_id == user_id).first(),
        None,
    )
    fitness_row = _safe_fetch(
        "fitness_profile",
        user_id,
        lambda: db.query(FitnessProfile).filter(FitnessProfile.user_id == user_id).first(),
        None,
    )
    goals_row = _safe_fetch(
        "goals",
        user_id,
        lambda: db.query(UserGoals).filter(UserGoals.user_id == user_id).first(),
        None,
    )
    logs = fetch_recent_logs(db, user_id)
    plans = _safe_fetch("plans", user_id, lambda: fetch_active_plans(db, user_id), [])
    sessions = _safe_fetch(
        "workout_sessions",
        user_id,
        lambda: [
            serialize_workout_session(row)
            for row in db.query(WorkoutSession)
            .filter(WorkoutSession.user_id == user_id)
            .order_by(WorkoutSession.completed_at.desc(), WorkoutSession.id.desc())
            .limit(MAX_WORKOUT_SESSIONS)
            .all()
        ],
        [],
    )

    recent_messages: list[dict[str, str]] = []
    if conversation_id is not None:
        rows = _safe_fetch(
            "recent_messages",
            user_id,
            lambda: db.query(Message)
            .filter(Message.conversation_id == conversation_id, Message.user_id == user_id)
            .order_by(Message.created_at.desc(), Message.id.desc())
            .limit(MAX_RECENT_MESSAGES)
            .all(),
            [],
        )
        recent_messages = [{"role": row.role, "content": row.content} for row in reversed(rows)]

    profile = _profile_dict(user, profile_row)
    return {
        "profile": profile,
        "fitness_profile": serialize_fitness_profile(fitness_row) if fitness_row else None,
        "goals": serialize_goals(goals_row) if goals_row else None,
        "logs": logs,
        "plans": plans,
        "workout_sessions": sessions,
        "recent_messages": recent_messages,
        "metrics": compute_metrics(profile, logs, plans, sessions),
    }
