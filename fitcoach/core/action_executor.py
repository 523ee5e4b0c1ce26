from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Any, Callable, Optional

from sqlalchemy.orm import Session

from fitcoach.core.action_parser import ActionKind, CoachAction
from fitcoach.core.context_builder import serialize_goals, serialize_mood_log
from fitcoach.db.models import (
    FitnessProfile,
    MoodLog,
    PersonalizedPlan,
    UserGoals,
    dump_json_field,
    load_json_field,
)
from fitcoach.db.session import upsert_row
from fitcoach.services.endpoints import EndpointClient

logger = logging.getLogger("uvicorn.error")

GOAL_INT_FIELDS = (
    "daily_calorie_goal",
    "daily_protein_goal",
    "daily_carbs_goal",
    "daily_fat_goal",
    "calculated_bmr",
    "calculated_tdee",
)
GOAL_FLOAT_FIELDS = ("weekly_weight_goal",)


class ActionExecutionError(RuntimeError):
    pass


@dataclass(frozen=True)
class ActionContext:
    """Per-request values a handler may use; passed explicitly to every handler."""

    user_id: int
    db: Session
    endpoints: EndpointClient
    message: str = ""


@dataclass(frozen=True)
class ExecutionOutcome:
    result: Optional[dict[str, Any]] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and bool(self.result and self.result.get("success"))


def _today() -> str:
    return date.today().isoformat()


def _parse_date(raw: Any) -> date:
    if not raw:
        return date.today()
    try:
        return date.fromisoformat(str(raw)[:10])
    except ValueError as exc:
        raise ActionExecutionError(f"Invalid date: {raw}") from exc


def _number(name: str, raw: Any, cast: Callable[[float], Any]) -> Any:
    try:
        return cast(float(raw))
    except (TypeError, ValueError) as exc:
        raise ActionExecutionError(f"Invalid value for {name}: {raw}") from exc


def generate_plans(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    data = ctx.endpoints.post("/personalized-plans/generate-from-data", dict(params))
    plans = data.get("plans") or []
    return {"success": True, "message": f"Generated {len(plans)} new plans", "plans": plans}


def log_workout(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    body = {
        "workout_type": params.get("workout_type") or params.get("type") or "Other",
        "description": params.get("description") or ctx.message,
        "duration": params.get("duration"),
        "workout_time": params.get("workout_time") or datetime.now(timezone.utc).isoformat(),
        "exercises": params.get("exercises"),
        "notes": params.get("notes"),
        "date": params.get("date") or _today(),
    }
    data = ctx.endpoints.post("/logs/activity", body)
    return {"success": True, "message": "Workout logged successfully", "workout": data}


def log_meal(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    body = {
        "meal_type": params.get("meal_type") or "Other",
        "description": params.get("description") or ctx.message,
        "date": params.get("date") or _today(),
        "meal_time": params.get("meal_time"),
        "calories": params.get("calories"),
        "protein": params.get("protein"),
        "carbs": params.get("carbs"),
        "fat": params.get("fat"),
        "foods": params.get("foods"),
    }
    data = ctx.endpoints.post("/logs/meals", body)
    return {"success": True, "message": "Meal logged successfully", "meal": data}


def log_weight(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    body = {
        "weight": params.get("weight"),
        "date": params.get("date") or _today(),
        "notes": params.get("notes"),
    }
    data = ctx.endpoints.post("/logs/weight", body)
    return {"success": True, "message": "Weight logged successfully", "weight": data}


def log_mood(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    raw_mood = params.get("mood", params.get("rating"))
    if raw_mood is None:
        raise ActionExecutionError("Mood value is required")
    row = MoodLog(
        user_id=ctx.user_id,
        mood=_number("mood", raw_mood, lambda v: int(round(v))),
        notes=params.get("notes"),
        date=_parse_date(params.get("date")),
    )
    ctx.db.add(row)
    ctx.db.commit()
    ctx.db.refresh(row)
    return {"success": True, "message": "Mood logged successfully", "mood": serialize_mood_log(row)}


def adjust_goals(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    values: dict[str, Any] = {}
    for name in GOAL_INT_FIELDS:
        if params.get(name) is not None:
            values[name] = _number(name, params[name], lambda v: int(round(v)))
    for name in GOAL_FLOAT_FIELDS:
        if params.get(name) is not None:
            values[name] = _number(name, params[name], float)
    if not values:
        raise ActionExecutionError("No goal fields supplied")

    updated = list(values) + ["updated_at"]
    values["user_id"] = ctx.user_id
    values["updated_at"] = datetime.utcnow()
    upsert_row(ctx.db, UserGoals, values, conflict_columns=["user_id"], update_columns=updated)
    ctx.db.commit()

    goals = ctx.db.query(UserGoals).filter(UserGoals.user_id == ctx.user_id).first()
    return {
        "success": True,
        "message": "Goals updated successfully",
        "goals": serialize_goals(goals) if goals else values,
    }


def update_benchmark(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    exercise = str(params.get("exercise") or params.get("exercise_name") or "").strip()
    if not exercise:
        raise ActionExecutionError("Exercise name is required")

    profile = ctx.db.query(FitnessProfile).filter(FitnessProfile.user_id == ctx.user_id).first()
    if profile is None:
        profile = FitnessProfile(user_id=ctx.user_id)
        ctx.db.add(profile)

    benchmarks = load_json_field(profile.exercise_benchmarks_json, [])
    if not isinstance(benchmarks, list):
        benchmarks = []

    entry = {
        "exercise": exercise,
        "current_weight": params.get("weight", params.get("current_weight")),
        "current_reps": params.get("reps", params.get("current_reps")),
        "target_weight": params.get("target_weight"),
        "target_date": params.get("target_date"),
    }
    key = exercise.lower()
    for index, existing in enumerate(benchmarks):
        if isinstance(existing, dict) and str(existing.get("exercise") or "").lower() == key:
            benchmarks[index] = {**existing, **entry}
            break
    else:
        benchmarks.append(entry)

    profile.exercise_benchmarks_json = dump_json_field(benchmarks)
    profile.updated_at = datetime.utcnow()
    ctx.db.commit()
    return {
        "success": True,
        "message": (
            f"Updated {exercise} benchmark: {entry['current_weight']}kg x {entry['current_reps']} reps"
        ),
        "benchmark": entry,
    }


def update_plan(params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    plan_id = params.get("plan_id", params.get("planId"))
    completed = params.get("completed")
    if plan_id is None or not isinstance(completed, bool):
        # Plan content edits are not applied automatically.
        return {
            "success": True,
            "message": "Plan change recorded for manual review",
            "requested_changes": params,
        }

    plan = (
        ctx.db.query(PersonalizedPlan)
        .filter(PersonalizedPlan.id == _number("plan_id", plan_id, int), PersonalizedPlan.user_id == ctx.user_id)
        .first()
    )
    if plan is None:
        raise ActionExecutionError("Plan not found")
    plan.is_completed = completed
    ctx.db.commit()
    state = "completed" if completed else "not completed"
    return {
        "success": True,
        "message": f"Marked week {plan.week_number} {plan.plan_type} plan as {state}",
        "plan_id": plan.id,
        "is_completed": plan.is_completed,
    }


ActionHandler = Callable[[dict[str, Any], ActionContext], dict[str, Any]]

ACTION_HANDLERS: dict[ActionKind, ActionHandler] = {
    ActionKind.GENERATE_PLANS: generate_plans,
    ActionKind.UPDATE_PLAN: update_plan,
    ActionKind.LOG_WORKOUT: log_workout,
    ActionKind.LOG_MEAL: log_meal,
    ActionKind.LOG_WEIGHT: log_weight,
    ActionKind.LOG_MOOD: log_mood,
    ActionKind.ADJUST_GOALS: adjust_goals,
    ActionKind.UPDATE_BENCHMARK: update_benchmark,
}

# Maps each kind to the table its effect lands in, recorded on the ledger row.
TARGET_TABLES: dict[ActionKind, str] = {
    ActionKind.GENERATE_PLANS: "personalized_plans",
    ActionKind.UPDATE_PLAN: "personalized_plans",
    ActionKind.LOG_WORKOUT: "activity_logs",
    ActionKind.LOG_MEAL: "meal_logs",
    ActionKind.LOG_WEIGHT: "weight_logs",
    ActionKind.LOG_MOOD: "mood_logs",
    ActionKind.ADJUST_GOALS: "user_goals",
    ActionKind.UPDATE_BENCHMARK: "user_fitness_profiles",
}


def assert_handlers_exhaustive(handlers: dict[ActionKind, ActionHandler]) -> None:
    missing = [kind.value for kind in ActionKind if kind is not ActionKind.NONE and kind not in handlers]
    if missing:
        raise RuntimeError(f"No handler registered for action kinds: {', '.join(missing)}")


assert_handlers_exhaustive(ACTION_HANDLERS)


def run_action_handler(kind: ActionKind, params: dict[str, Any], ctx: ActionContext) -> dict[str, Any]:
    if kind is ActionKind.NONE:
        raise ActionExecutionError("NONE is not executable")
    return ACTION_HANDLERS[kind](params or {}, ctx)


def execute_action(action: CoachAction, ctx: ActionContext) -> ExecutionOutcome:
    logger.info("coach_action_execute user_id=%s type=%s", ctx.user_id, action.kind.value)
    try:
        result = run_action_handler(action.kind, action.parameters, ctx)
    except Exception as exc:
        logger.exception("coach_action_failed user_id=%s type=%s", ctx.user_id, action.kind.value)
        ctx.db.rollback()
        error = str(exc) or type(exc).__name__
        return ExecutionOutcome(result={"success": False, "message": error}, error=error)
    return ExecutionOutcome(result=result, error=None)
