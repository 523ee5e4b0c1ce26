"""Cached per-user coaching summary, refreshed after worker mutations."""

import logging
from datetime import date, datetime, timedelta
from typing import Any, Optional

from sqlalchemy import func
from sqlalchemy.orm import Session

from fitcoach.db.models import (
    ActivityLog,
    ContextSnapshot,
    FitnessProfile,
    PersonalizedPlan,
    UserGoals,
    dump_json_field,
    load_json_field,
)
from fitcoach.db.session import upsert_row

logger = logging.getLogger("uvicorn.error")

TOP_BENCHMARKS = 3


def build_snapshot_data(db: Session, user_id: int) -> dict[str, Any]:
    fitness = db.query(FitnessProfile).filter(FitnessProfile.user_id == user_id).first()
    goals = db.query(UserGoals).filter(UserGoals.user_id == user_id).first()
    plans = (
        db.query(PersonalizedPlan.plan_type, PersonalizedPlan.week_number)
        .filter(PersonalizedPlan.user_id == user_id, PersonalizedPlan.is_active.is_(True))
        .all()
    )
    since = date.today() - timedelta(days=7)
    recent_workouts = (
        db.query(func.count(ActivityLog.id))
        .filter(ActivityLog.user_id == user_id, ActivityLog.date >= since)
        .scalar()
    ) or 0

    profile = None
    if fitness:
        profile = {
            "fitness_level": fitness.fitness_level,
            "primary_goals": load_json_field(fitness.primary_goals_json, []),
            "workout_days": load_json_field(fitness.workout_days_json, []),
            "exercise_benchmarks": load_json_field(fitness.exercise_benchmarks_json, []),
        }
    goal_data = None
    if goals:
        goal_data = {
            "daily_calorie_goal": goals.daily_calorie_goal,
            "weekly_weight_goal": goals.weekly_weight_goal,
            "calculated_tdee": goals.calculated_tdee,
        }
    return {
        "profile": profile,
        "goals": goal_data,
        "plans": [{"plan_type": p.plan_type, "week_number": p.week_number} for p in plans],
        "activePlans": len(plans),
        "recentWorkouts": int(recent_workouts),
    }


def build_summary(data: dict[str, Any]) -> str:
    lines: list[str] = []
    profile = data.get("profile") or {}
    if profile.get("fitness_level"):
        lines.append(f"Fitness level: {profile['fitness_level']}")
    if profile.get("primary_goals"):
        lines.append(f"Goals: {', '.join(str(g) for g in profile['primary_goals'])}")
    if profile.get("workout_days"):
        lines.append(f"Workout days: {', '.join(str(d) for d in profile['workout_days'])}")
    benchmarks = [b for b in profile.get("exercise_benchmarks") or [] if isinstance(b, dict)]
    if benchmarks:
        top = ", ".join(f"{b.get('exercise')}: {b.get('current_weight')}kg" for b in benchmarks[:TOP_BENCHMARKS])
        lines.append(f"Top lifts: {top}")

    goals = data.get("goals") or {}
    if goals.get("daily_calorie_goal"):
        lines.append(f"Daily calories: {goals['daily_calorie_goal']} kcal")
    if goals.get("weekly_weight_goal"):
        lines.append(f"Weekly weight goal: {goals['weekly_weight_goal']} kg")

    plans = data.get("plans") or []
    if plans:
        workout = sum(1 for p in plans if p.get("plan_type") == "workout")
        meal = sum(1 for p in plans if p.get("plan_type") == "meal")
        lines.append(f"Active plans: {workout} workout, {meal} meal")
    else:
        lines.append("No active plans")

    lines.append(f"Workouts this week: {data.get('recentWorkouts', 0)}")
    return "\n".join(lines)


def refresh_context_snapshot(db: Session, user_id: int) -> dict[str, Any]:
    data = build_snapshot_data(db, user_id)
    summary = build_summary(data)
    upsert_row(
        db,
        ContextSnapshot,
        {
            "user_id": user_id,
            "summary": summary,
            "data_json": dump_json_field(data),
            "updated_at": datetime.utcnow(),
        },
        conflict_columns=["user_id"],
        update_columns=["summary", "data_json", "updated_at"],
    )
    db.commit()
    logger.info("coach_snapshot_refreshed user_id=%s", user_id)
    return {"summary": summary, "data": data}


def get_context_snapshot(db: Session, user_id: int) -> Optional[dict[str, Any]]:
    row = db.query(ContextSnapshot).filter(ContextSnapshot.user_id == user_id).first()
    if row is None:
        return None
    return {
        "summary": row.summary,
        "data": load_json_field(row.data_json, {}),
        "updated_at": row.updated_at.isoformat() if row.updated_at else None,
    }
