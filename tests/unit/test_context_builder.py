from datetime import date, timedelta

from fitcoach.core.context_builder import build_coaching_context, compute_metrics, progress_percentage
from fitcoach.db.models import Conversation, MealLog, Message, PersonalizedPlan, WeightLog, WorkoutSession


def test_progress_percentage_edges() -> None:
    assert progress_percentage(90, 85, 80) == 50
    assert progress_percentage(80, 80, 80) == 0
    assert progress_percentage(0, 85, 80) == 0
    assert progress_percentage(90, 85, 0) == 0


def test_compute_metrics_trends() -> None:
    today = date(2026, 10, 19)
    logs = {
        "weight": [{"weight": 84.0}, {"weight": 85.0}, {"weight": 86.0}],
        "meals": [
            {"date": "2026-10-18", "calories": 1400},
            {"date": "2026-10-17", "calories": 700},
            {"date": "2026-10-01", "calories": 5000},
        ],
    }
    sessions = [{"status": "completed"}, {"status": "completed"}, {"status": "skipped"}]
    metrics = compute_metrics(
        {"starting_weight": 90, "current_weight": 84, "goal_weight": 80},
        logs,
        [{"plan_type": "workout"}],
        sessions,
        today=today,
    )
    assert metrics["weight_trend_7d"] == -2.0
    assert metrics["avg_daily_calories_7d"] == 300
    assert metrics["completed_workouts"] == 2
    assert metrics["workout_completion_rate"] == 29
    assert metrics["progress_percentage"] == 60
    assert metrics["weight_lost"] == 6


def test_context_without_profile_uses_fallback(create_user, db_session) -> None:
    user = create_user(name=None, with_profile=False)
    context = build_coaching_context(db_session, user)
    assert context["profile"]["name"] == user.email.split("@")[0]
    assert context["profile"]["starting_weight"] == 0
    assert context["fitness_profile"] is None
    assert context["goals"] is None
    assert context["recent_messages"] == []
    assert context["metrics"]["progress_percentage"] == 0


def test_context_collects_recent_rows(create_user, db_session) -> None:
    user = create_user()
    today = date.today()
    db_session.add_all(
        [
            WeightLog(user_id=user.id, date=today - timedelta(days=1), weight=85.5),
            WeightLog(user_id=user.id, date=today - timedelta(days=45), weight=91.0),
            MealLog(user_id=user.id, date=today, meal_type="lunch", description="Bowl", calories=600),
            PersonalizedPlan(user_id=user.id, plan_type="workout", week_number=2, content_json="{}"),
            PersonalizedPlan(user_id=user.id, plan_type="meal", week_number=2, content_json="{}", is_active=False),
            WorkoutSession(user_id=user.id, workout_name="Push", status="completed", exercises_json="[]"),
        ]
    )
    conversation = Conversation(user_id=user.id)
    db_session.add(conversation)
    db_session.commit()
    for index in range(12):
        db_session.add(
            Message(
                conversation_id=conversation.id,
                user_id=user.id,
                role="user" if index % 2 == 0 else "assistant",
                content=f"message {index}",
            )
        )
    db_session.commit()

    context = build_coaching_context(db_session, user, conversation.id)
    assert [w["weight"] for w in context["logs"]["weight"]] == [85.5]
    assert len(context["logs"]["meals"]) == 1
    assert [p["plan_type"] for p in context["plans"]] == ["workout"]
    assert context["workout_sessions"][0]["workout_name"] == "Push"
    assert len(context["recent_messages"]) == 10
    assert context["recent_messages"][-1]["content"] == "message 11"
    assert context["metrics"]["current_weight"] == 85.0
