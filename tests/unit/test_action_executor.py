import json

import httpx
import pytest

from fitcoach.core.action_executor import (
    ACTION_HANDLERS,
    ActionContext,
    ActionExecutionError,
    assert_handlers_exhaustive,
    execute_action,
    run_action_handler,
)
from fitcoach.core.action_parser import ActionKind, CoachAction
from fitcoach.db.models import FitnessProfile, MoodLog, PersonalizedPlan, UserGoals, dump_json_field, load_json_field
from fitcoach.services.endpoints import EndpointClient


def _endpoints(handler=None) -> EndpointClient:
    def _default(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "unexpected call"})

    http = httpx.Client(base_url="http://fitcoach.test", transport=httpx.MockTransport(handler or _default))
    return EndpointClient(http=http, token="test-token")


def _ctx(db_session, user_id: int, handler=None, message: str = "") -> ActionContext:
    return ActionContext(user_id=user_id, db=db_session, endpoints=_endpoints(handler), message=message)


def test_every_kind_has_a_handler() -> None:
    assert_handlers_exhaustive(ACTION_HANDLERS)
    partial = {k: v for k, v in ACTION_HANDLERS.items() if k is not ActionKind.LOG_MEAL}
    with pytest.raises(RuntimeError, match="LOG_MEAL"):
        assert_handlers_exhaustive(partial)


def test_none_is_not_executable(create_user, db_session) -> None:
    with pytest.raises(ActionExecutionError):
        run_action_handler(ActionKind.NONE, {}, _ctx(db_session, create_user().id))


def test_log_workout_defaults_and_auth(create_user, db_session) -> None:
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers["Authorization"]
        seen["body"] = json.loads(request.content)
        return httpx.Response(201, json={"id": 1, **seen["body"]})

    user = create_user()
    result = run_action_handler(
        ActionKind.LOG_WORKOUT, {"duration": 20}, _ctx(db_session, user.id, handler, message="20 min of yoga")
    )
    assert result["success"] is True
    assert seen["path"] == "/logs/activity"
    assert seen["auth"] == "Bearer test-token"
    assert seen["body"]["workout_type"] == "Other"
    assert seen["body"]["description"] == "20 min of yoga"
    assert seen["body"]["date"]


def test_generate_plans_counts_plans(create_user, db_session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/personalized-plans/generate-from-data"
        return httpx.Response(200, json={"plans": [{"id": 1}, {"id": 2}]})

    result = run_action_handler(ActionKind.GENERATE_PLANS, {}, _ctx(db_session, create_user().id, handler))
    assert result["message"] == "Generated 2 new plans"


def test_endpoint_error_becomes_outcome_error(create_user, db_session) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "Weight and date are required"})

    outcome = execute_action(
        CoachAction(kind=ActionKind.LOG_WEIGHT, parameters={}), _ctx(db_session, create_user().id, handler)
    )
    assert outcome.result == {"success": False, "message": "Weight and date are required"}
    assert outcome.error == "Weight and date are required"
    assert outcome.succeeded is False


def test_log_mood_accepts_rating(create_user, db_session) -> None:
    user = create_user()
    result = run_action_handler(ActionKind.LOG_MOOD, {"rating": 7.6, "notes": "good day"}, _ctx(db_session, user.id))
    assert result["mood"]["mood"] == 8
    assert db_session.query(MoodLog).filter(MoodLog.user_id == user.id).count() == 1


def test_adjust_goals_upserts(create_user, db_session) -> None:
    user = create_user()
    ctx = _ctx(db_session, user.id)
    run_action_handler(ActionKind.ADJUST_GOALS, {"daily_calorie_goal": 2400, "daily_protein_goal": 160}, ctx)
    result = run_action_handler(ActionKind.ADJUST_GOALS, {"daily_calorie_goal": "2200.4"}, ctx)
    assert result["goals"]["daily_calorie_goal"] == 2200
    assert result["goals"]["daily_protein_goal"] == 160
    assert db_session.query(UserGoals).filter(UserGoals.user_id == user.id).count() == 1

    with pytest.raises(ActionExecutionError, match="No goal fields supplied"):
        run_action_handler(ActionKind.ADJUST_GOALS, {"unrelated": 1}, ctx)


def test_update_benchmark_merges_case_insensitively(create_user, db_session) -> None:
    user = create_user()
    ctx = _ctx(db_session, user.id)
    db_session.add(
        FitnessProfile(
            user_id=user.id,
            exercise_benchmarks_json=dump_json_field(
                [{"exercise": "Squat", "current_weight": 100, "current_reps": 5, "target_weight": 140}]
            ),
        )
    )
    db_session.commit()

    run_action_handler(ActionKind.UPDATE_BENCHMARK, {"exercise": "squat", "weight": 110, "reps": 3}, ctx)
    run_action_handler(ActionKind.UPDATE_BENCHMARK, {"exercise": "SQUAT", "weight": 115, "reps": 2}, ctx)
    run_action_handler(ActionKind.UPDATE_BENCHMARK, {"exercise": "Deadlift", "weight": 150, "reps": 1}, ctx)

    db_session.expire_all()
    profile = db_session.query(FitnessProfile).filter(FitnessProfile.user_id == user.id).one()
    benchmarks = load_json_field(profile.exercise_benchmarks_json, [])
    assert len(benchmarks) == 2
    assert benchmarks[0]["exercise"] == "SQUAT"
    assert benchmarks[0]["current_weight"] == 115
    assert benchmarks[0]["current_reps"] == 2
    assert benchmarks[1]["exercise"] == "Deadlift"

    with pytest.raises(ActionExecutionError):
        run_action_handler(ActionKind.UPDATE_BENCHMARK, {"weight": 10}, ctx)


def test_update_plan_marks_completion_or_records_request(create_user, db_session) -> None:
    user = create_user()
    other = create_user()
    plan = PersonalizedPlan(user_id=user.id, plan_type="workout", week_number=3, content_json="{}")
    foreign = PersonalizedPlan(user_id=other.id, plan_type="workout", week_number=3, content_json="{}")
    db_session.add_all([plan, foreign])
    db_session.commit()
    ctx = _ctx(db_session, user.id)

    result = run_action_handler(ActionKind.UPDATE_PLAN, {"planId": plan.id, "completed": True}, ctx)
    assert result["is_completed"] is True
    assert result["message"] == "Marked week 3 workout plan as completed"

    review = run_action_handler(ActionKind.UPDATE_PLAN, {"changes": "swap squats for lunges"}, ctx)
    assert review["message"] == "Plan change recorded for manual review"
    assert review["requested_changes"] == {"changes": "swap squats for lunges"}

    with pytest.raises(ActionExecutionError, match="Plan not found"):
        run_action_handler(ActionKind.UPDATE_PLAN, {"plan_id": foreign.id, "completed": True}, ctx)
