from datetime import date

from conftest import FakeLLMClient, FakeScenario
from fitcoach.api.coach import TECHNICAL_DIFFICULTIES, run_coach_turn
from fitcoach.core.action_ledger import record_action
from fitcoach.core.action_parser import ActionKind
from fitcoach.core.action_parser import CoachAction as ProposedAction
from fitcoach.core.response_composer import CONFIRMATION_PROMPT
from fitcoach.db.models import CoachAction, Conversation, FitnessProfile, Message, MoodLog, User, load_json_field
from fitcoach.db.session import SessionLocal
from fitcoach.services.endpoints import EndpointClient
from fitcoach.services.llm import RealLLMClient, get_llm_client


def _chat(client, signed_in, message: str, **extra):
    body = {"message": message, "userId": signed_in["user_id"], **extra}
    return client.post("/coach/chat", headers=signed_in["headers"], json=body)


def _ledger(db_session, user_id: int) -> list[CoachAction]:
    db_session.expire_all()
    return db_session.query(CoachAction).filter(CoachAction.user_id == user_id).order_by(CoachAction.id).all()


def test_coach_chat_unauthorized(client) -> None:
    response = client.post("/coach/chat", json={"message": "hi", "userId": 1})
    assert response.status_code == 401


def test_coach_chat_requires_message_and_user_id(client, signed_in, override_llm) -> None:
    override_llm(FakeScenario.PLAIN_REPLY)
    response = client.post("/coach/chat", headers=signed_in["headers"], json={"message": "   ", "userId": 1})
    assert response.status_code == 400
    assert response.json() == {"error": "Message and userId are required"}

    response = client.post("/coach/chat", headers=signed_in["headers"], json={"message": "hello"})
    assert response.status_code == 400


def test_coach_chat_rejects_other_user_id(client, signed_in, override_llm) -> None:
    fake = override_llm(FakeScenario.PLAIN_REPLY)
    response = client.post(
        "/coach/chat",
        headers=signed_in["headers"],
        json={"message": "hello", "userId": signed_in["user_id"] + 1000},
    )
    assert response.status_code == 401
    assert response.json() == {"error": "Unauthorized"}
    assert fake.chat_calls == []


def test_coach_chat_unknown_conversation_is_404(client, signed_in, override_llm, create_user, db_session) -> None:
    override_llm(FakeScenario.PLAIN_REPLY)
    other = create_user()
    foreign = Conversation(user_id=other.id)
    db_session.add(foreign)
    db_session.commit()

    response = _chat(client, signed_in, "hello", conversationId=foreign.id)
    assert response.status_code == 404
    assert response.json() == {"error": "Conversation not found"}


def test_coach_chat_plain_reply_stores_two_messages(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.PLAIN_REPLY)
    response = _chat(client, signed_in, "How do I get stronger?")
    assert response.status_code == 200
    body = response.json()
    assert body["action"] is None
    assert body["actionResult"] is None
    assert body["requiresConfirmation"] is False
    assert body["message"].startswith("Great question!")
    assert "✅" not in body["message"]

    conv_id = body["conversationId"]
    history = client.get(f"/coach/conversations/{conv_id}/messages", headers=signed_in["headers"])
    assert history.status_code == 200
    messages = history.json()["messages"]
    assert [m["role"] for m in messages] == ["user", "assistant"]
    assert messages[0]["content"] == "How do I get stronger?"
    assert messages[1]["content"] == body["message"]
    assert _ledger(db_session, signed_in["user_id"]) == []


def test_coach_chat_logs_workout_immediately(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.LOG_WORKOUT)
    response = _chat(client, signed_in, "I just ran 5k in 30 minutes")
    assert response.status_code == 200
    body = response.json()
    assert body["action"]["type"] == "LOG_WORKOUT"
    assert body["actionResult"]["success"] is True
    assert body["actionError"] is None
    assert body["message"].endswith("✅ Workout logged successfully")
    assert "```json" not in body["message"]

    activities = client.get("/logs/activity", headers=signed_in["headers"]).json()
    assert len(activities) == 1
    assert activities[0]["workout_type"] == "Running"
    assert activities[0]["duration"] == 30

    rows = _ledger(db_session, signed_in["user_id"])
    assert len(rows) == 1
    assert rows[0].status == "completed"
    assert rows[0].target_table == "activity_logs"
    assert rows[0].conversation_id == body["conversationId"]
    assert rows[0].completed_at is not None

    db_session.expire_all()
    assistant = (
        db_session.query(Message)
        .filter(Message.conversation_id == body["conversationId"], Message.role == "assistant")
        .one()
    )
    metadata = load_json_field(assistant.metadata_json, {})
    assert metadata["action"]["type"] == "LOG_WORKOUT"
    assert metadata["actionResult"]["success"] is True


def test_coach_chat_defers_then_executes_on_yes(
    client, signed_in, override_llm, seed_fitness_profile, db_session
) -> None:
    seed_fitness_profile(signed_in["user_id"])
    fake = override_llm(FakeScenario.GENERATE_PLANS_CONFIRM, FakeScenario.PLAIN_REPLY)

    first = _chat(client, signed_in, "Can you make me a new plan?")
    assert first.status_code == 200
    body = first.json()
    assert body["requiresConfirmation"] is True
    assert body["actionResult"] is None
    assert body["message"].endswith(CONFIRMATION_PROMPT)

    rows = _ledger(db_session, signed_in["user_id"])
    assert [r.status for r in rows] == ["pending"]
    assert client.get("/personalized-plans", headers=signed_in["headers"]).json()["plans"] == []

    second = _chat(client, signed_in, "yes", conversationId=body["conversationId"])
    assert second.status_code == 200
    confirmed = second.json()
    assert confirmed["action"]["type"] == "GENERATE_PLANS"
    assert confirmed["actionResult"]["message"] == "Generated 1 new plans"
    assert confirmed["requiresConfirmation"] is False

    rows = _ledger(db_session, signed_in["user_id"])
    assert len(rows) == 1
    assert rows[0].status == "completed"

    plans = client.get("/personalized-plans", headers=signed_in["headers"]).json()["plans"]
    assert len(plans) == 1
    assert plans[0]["week_number"] == date(2026, 10, 19).isocalendar()[1]

    # The confirmation turn sees the earlier exchange in its history.
    history_roles = [m["role"] for m in fake.chat_calls[1][1:-1]]
    assert history_roles == ["user", "assistant"]


class InterleavingLLM(FakeLLMClient):
    """Runs another turn while the first one is waiting on the model."""

    def __init__(self, fixture_dir, other_turn) -> None:
        super().__init__([FakeScenario.PLAIN_REPLY], fixture_dir)
        self.other_turn = other_turn
        self.other_response = None

    def complete_chat(self, messages):
        if self.other_response is None:
            self.other_response = self.other_turn()
        return super().complete_chat(messages)


def test_coach_chat_overlapping_yes_runs_pending_action_once(
    client, signed_in, fake_llm_factory, fixture_dir, db_session
) -> None:
    user_id = signed_in["user_id"]
    pending = record_action(
        db_session, user_id, None, ProposedAction(kind=ActionKind.LOG_MOOD, parameters={"mood": 6}), status="pending"
    )
    endpoints = EndpointClient(http=client, token=signed_in["token"])

    def second_yes():
        other_db = SessionLocal()
        try:
            other_user = other_db.get(User, user_id)
            return run_coach_turn(
                other_db, other_user, "yes", None, False, fake_llm_factory(FakeScenario.PLAIN_REPLY), endpoints
            )
        finally:
            other_db.close()

    llm = InterleavingLLM(fixture_dir, second_yes)
    first = run_coach_turn(db_session, db_session.get(User, user_id), "yes", None, False, llm, endpoints)

    assert llm.other_response.action_result["success"] is True
    assert first.action is None
    assert first.action_result is None

    db_session.expire_all()
    assert db_session.query(MoodLog).filter(MoodLog.user_id == user_id).count() == 1
    rows = _ledger(db_session, user_id)
    assert [r.id for r in rows] == [pending.id]
    assert rows[0].status == "completed"
    assert rows[0].locked_by is None


def test_coach_chat_confirm_flag_skips_deferral(client, signed_in, override_llm, seed_fitness_profile, db_session) -> None:
    seed_fitness_profile(signed_in["user_id"])
    override_llm(FakeScenario.GENERATE_PLANS_CONFIRM)
    response = _chat(client, signed_in, "Build it", confirmAction=True)
    assert response.status_code == 200
    body = response.json()
    assert body["requiresConfirmation"] is False
    assert body["actionResult"]["success"] is True
    assert [r.status for r in _ledger(db_session, signed_in["user_id"])] == ["completed"]


def test_coach_chat_handler_failure_is_reported(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.LOG_WEIGHT_MISSING_VALUE)
    response = _chat(client, signed_in, "Log my weight please")
    assert response.status_code == 200
    body = response.json()
    assert body["actionResult"] == {"success": False, "message": "Weight and date are required"}
    assert body["actionError"] == "Weight and date are required"
    assert "⚠️ I tried to complete that action but encountered an error: Weight and date are required" in body["message"]

    history = client.get(f"/coach/conversations/{body['conversationId']}/messages", headers=signed_in["headers"])
    assert [m["role"] for m in history.json()["messages"]] == ["user", "assistant"]

    rows = _ledger(db_session, signed_in["user_id"])
    assert len(rows) == 1
    assert rows[0].status == "failed"
    assert rows[0].error_message == "Weight and date are required"
    assert load_json_field(rows[0].payload_json, {})["result"]["success"] is False


def test_coach_chat_lowercase_benchmark_action(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.UPDATE_BENCHMARK)
    response = _chat(client, signed_in, "Hit 85kg for 5 on bench")
    assert response.status_code == 200
    assert response.json()["actionResult"]["message"] == "Updated bench press benchmark: 85kg x 5 reps"

    db_session.expire_all()
    profile = db_session.query(FitnessProfile).filter(FitnessProfile.user_id == signed_in["user_id"]).one()
    benchmarks = load_json_field(profile.exercise_benchmarks_json, [])
    assert benchmarks[0]["exercise"] == "bench press"
    assert benchmarks[0]["current_weight"] == 85


def test_coach_chat_malformed_block_keeps_text(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.MALFORMED_BLOCK)
    response = _chat(client, signed_in, "What should I eat?")
    assert response.status_code == 200
    body = response.json()
    assert body["action"] is None
    assert "```json" in body["message"]
    assert _ledger(db_session, signed_in["user_id"]) == []


def test_coach_chat_unknown_action_type_is_ignored(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.UNKNOWN_ACTION)
    response = _chat(client, signed_in, "Book me a massage")
    assert response.status_code == 200
    assert response.json()["action"] is None
    assert _ledger(db_session, signed_in["user_id"]) == []


def test_coach_chat_upstream_failure_writes_nothing(client, signed_in, override_llm, db_session) -> None:
    override_llm(FakeScenario.UPSTREAM_ERROR)
    response = _chat(client, signed_in, "hello")
    assert response.status_code == 502
    body = response.json()
    assert body["message"] == TECHNICAL_DIFFICULTIES
    assert "error" in body

    db_session.expire_all()
    assert db_session.query(Conversation).filter(Conversation.user_id == signed_in["user_id"]).count() == 0
    assert db_session.query(Message).filter(Message.user_id == signed_in["user_id"]).count() == 0


def test_coach_chat_without_completion_key_is_503(client, app, signed_in) -> None:
    app.dependency_overrides[get_llm_client] = lambda: RealLLMClient(api_key="")
    response = _chat(client, signed_in, "hello")
    assert response.status_code == 503
    assert response.json()["message"] == TECHNICAL_DIFFICULTIES
