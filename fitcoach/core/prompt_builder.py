from datetime import date, datetime, timedelta
from typing import Any, Optional

HISTORY_WINDOW = 8
DETAIL_WINDOW_DAYS = 7
MAX_WEIGHT_LINES = 5
MAX_MEAL_LINES = 5
MAX_ACTIVITY_LINES = 3
MAX_MOOD_LINES = 3
MAX_SESSION_LINES = 3
MAX_SESSION_EXERCISES = 4

COACH_SYSTEM_PROMPT = """You are FitCoach AI, an agentic fitness coach. You don't just give advice - you ACT on behalf of the user when appropriate. You have access to the user's profile, exercise benchmarks, body metrics, strength levels, food preferences, goals, logs and workout history.

YOUR CAPABILITIES (TOOLS YOU CAN USE):
1. GENERATE_PLANS - Regenerate the personalized weekly workout plan based on updated preferences
2. UPDATE_PLAN - Modify or complete a specific plan (parameters: plan_id, completed, changes)
3. LOG_WORKOUT - Log a workout from a natural language description (workout_type, description, duration, exercises, date)
4. LOG_MEAL - Log a meal (meal_type, description, calories, protein, carbs, fat, date)
5. LOG_WEIGHT - Log a weight entry in kg (weight, date, notes)
6. LOG_MOOD - Log a mood entry on a 1-10 scale (mood, notes, date)
7. ADJUST_GOALS - Update goals (daily_calorie_goal, daily_protein_goal, daily_carbs_goal, daily_fat_goal, weekly_weight_goal)
8. UPDATE_BENCHMARK - Update an exercise benchmark (exercise, current_weight, current_reps, target_weight, target_date)

WHEN TO ACT:
- User mentions pain or injury -> UPDATE_PLAN to replace problematic exercises (consider injuries_limitations)
- User mentions an equipment change -> GENERATE_PLANS or UPDATE_PLAN
- User describes a workout they did -> LOG_WORKOUT with exercise details
- User describes a meal they ate -> LOG_MEAL (respect dietary restrictions and food allergies)
- User mentions a weight change -> LOG_WEIGHT
- User describes how they feel today -> LOG_MOOD
- User mentions missing workouts -> UPDATE_PLAN to reschedule
- User wants to change schedule or preferences -> GENERATE_PLANS
- User reports a new PR or improved lift -> UPDATE_BENCHMARK

WHEN TO ASK FOR CONFIRMATION (set requiresConfirmation to true):
- Modifying or regenerating plans
- Significant changes to goals
- Actions that affect multiple weeks of plans
- Updating exercise benchmarks

RESPONSE FORMAT:
When you decide to act, start your message with this JSON block:
```json
{
  "action": {
    "type": "ACTION_TYPE",
    "requiresConfirmation": true,
    "parameters": {},
    "reasoning": "Why you're doing this"
  }
}
```

Then follow with your natural language explanation.

If no action is needed, use:
```json
{"action": {"type": "NONE"}}
```

COACHING STYLE:
- Be direct, honest, supportive and encouraging
- Reference specific data from the user's profile, benchmarks, equipment and goals
- Respect injury limitations, dietary restrictions and allergies
- When you act, explain what you changed and why
- Keep responses concise but helpful"""


def _join(values: Any, empty: str) -> str:
    if isinstance(values, list) and values:
        return ", ".join(str(item) for item in values)
    return empty


def _or(value: Any, empty: str) -> Any:
    return value if value not in (None, "", 0) else empty


def _day(raw: Any) -> Optional[date]:
    try:
        return date.fromisoformat(str(raw)[:10])
    except (TypeError, ValueError):
        return None


def _recent(entries: list[dict[str, Any]], since: date, limit: int) -> list[dict[str, Any]]:
    return [e for e in entries if (_day(e.get("date")) or date.min) >= since][:limit]


def _lines(items: list[str]) -> str:
    return "\n".join(items) if items else "  None"


def _render_fitness_profile(fitness: Optional[dict[str, Any]]) -> str:
    if not fitness:
        return "- No fitness profile created yet"
    return "\n".join(
        [
            f"- Primary Goals: {_join(fitness.get('primary_goals'), 'Not set')}",
            f"- Fitness Level: {fitness.get('fitness_level') or 'Not set'}",
            f"- Workout Days: {_join(fitness.get('workout_days'), 'Not set')}",
            f"- Available Equipment: {_join(fitness.get('available_equipment'), 'None')}",
            f"- Workout Duration Preference: {fitness.get('workout_duration') or 'Not set'} minutes",
            f"- Injuries/Limitations: {fitness.get('injuries_limitations') or 'None'}",
            f"- Preferred Activities: {_join(fitness.get('preferred_activities'), 'Not specified')}",
            f"- Disliked Exercises: {_join(fitness.get('disliked_exercises'), 'None')}",
        ]
    )


def _render_benchmarks(fitness: Optional[dict[str, Any]]) -> str:
    benchmarks = (fitness or {}).get("exercise_benchmarks") or []
    if not benchmarks:
        return "  - No benchmarks recorded"
    rows = []
    for item in benchmarks:
        if not isinstance(item, dict):
            continue
        line = f"  - {item.get('exercise')}: {item.get('current_weight')}kg x {item.get('current_reps')} reps"
        if item.get("target_weight"):
            line += f" (Target: {item['target_weight']}kg by {item.get('target_date') or 'N/A'})"
        rows.append(line)
    return "\n".join(rows) or "  - No benchmarks recorded"


def _render_body_and_strength(fitness: Optional[dict[str, Any]]) -> tuple[str, str]:
    body = (fitness or {}).get("body_metrics") or {}
    strength = (fitness or {}).get("strength_levels") or {}
    body_text = (
        f"  - Waist: {body.get('waist_size_cm') or 'N/A'}cm\n"
        f"  - Body Fat: {body.get('body_fat_percentage') or 'N/A'}%"
        if body
        else "  - No body metrics recorded"
    )
    strength_text = (
        "\n".join(f"  - {category}: {level}" for category, level in strength.items())
        if strength
        else "  - No strength levels assessed"
    )
    return body_text, strength_text


def _render_food(fitness: Optional[dict[str, Any]]) -> str:
    if not fitness:
        return "  - No food preferences set"
    return "\n".join(
        [
            f"  - Dietary Restrictions: {_join(fitness.get('dietary_restrictions'), 'None')}",
            f"  - Food Allergies: {_join(fitness.get('food_allergies'), 'None')}",
            f"  - Disliked Foods: {_join(fitness.get('disliked_foods'), 'None')}",
            f"  - Preferred Foods: {_join(fitness.get('preferred_foods'), 'Not specified')}",
            f"  - Accessible Foods: {_join(fitness.get('accessible_foods'), 'Not specified')}",
        ]
    )


def _render_goals(goals: Optional[dict[str, Any]]) -> str:
    if not goals:
        return "- No goals set yet"
    return "\n".join(
        [
            f"- Daily Calorie Target: {_or(goals.get('daily_calorie_goal'), 'Not set')} kcal",
            f"- Daily Protein Target: {_or(goals.get('daily_protein_goal'), 'Not set')}g",
            f"- Daily Carbs Target: {_or(goals.get('daily_carbs_goal'), 'Not set')}g",
            f"- Daily Fat Target: {_or(goals.get('daily_fat_goal'), 'Not set')}g",
            f"- BMR: {_or(goals.get('calculated_bmr'), 'Not calculated')} kcal",
            f"- TDEE: {_or(goals.get('calculated_tdee'), 'Not calculated')} kcal",
            f"- Weekly Weight Goal: {_or(goals.get('weekly_weight_goal'), 'Not set')}kg/week",
        ]
    )


def _render_detail_logs(logs: dict[str, list[dict[str, Any]]], today: date) -> str:
    since = today - timedelta(days=DETAIL_WINDOW_DAYS)
    weight = [f"  {w['date']}: {w.get('weight')}kg" for w in _recent(logs.get("weight", []), since, MAX_WEIGHT_LINES)]
    meals = [
        f"  {m['date']}: {m.get('calories') or '?'}kcal, {m.get('protein') or '?'}g protein"
        for m in _recent(logs.get("meals", []), since, MAX_MEAL_LINES)
    ]
    activities = [
        f"  {a['date']}: {a.get('workout_type') or 'Activity'}"
        for a in _recent(logs.get("activities", []), since, MAX_ACTIVITY_LINES)
    ]
    moods = [f"  {m['date']}: {m.get('mood')}/10" for m in _recent(logs.get("moods", []), since, MAX_MOOD_LINES)]
    return (
        f"Weight:\n{_lines(weight)}\nMeals:\n{_lines(meals)}\n"
        f"Activities:\n{_lines(activities)}\nMood:\n{_lines(moods)}"
    )


def _render_sessions(sessions: list[dict[str, Any]]) -> str:
    rows = []
    for session in sessions[:MAX_SESSION_LINES]:
        exercises = [e for e in (session.get("exercises") or []) if isinstance(e, dict)][:MAX_SESSION_EXERCISES]
        if exercises:
            detail = ", ".join(
                f"{e.get('name') or e.get('exercise_name')}: {e.get('sets')}x{e.get('reps')}" for e in exercises
            )
        else:
            detail = session.get("workout_name") or "General"
        when = "?"
        if session.get("completed_at"):
            try:
                when = datetime.fromisoformat(session["completed_at"]).date().isoformat()
            except ValueError:
                when = str(session["completed_at"])[:10]
        rows.append(f"  - {when}: {detail}")
    return "\n".join(rows) or "  - No recent workouts"


def render_context_summary(context: dict[str, Any], today: Optional[date] = None) -> str:
    today = today or date.today()
    profile = context.get("profile") or {}
    fitness = context.get("fitness_profile")
    logs = context.get("logs") or {}
    plans = context.get("plans") or []
    metrics = context.get("metrics") or {}
    body_text, strength_text = _render_body_and_strength(fitness)

    workout_plans = [p for p in plans if p.get("plan_type") == "workout"]
    meal_plans = [p for p in plans if p.get("plan_type") == "meal"]
    current_week = min(p["week_number"] for p in plans) if plans else "No plans"
    trend = round(float(metrics.get("weight_trend_7d") or 0), 1)
    trend_text = f"+{trend}" if trend > 0 else f"{trend}"

    return f"""USER PROFILE:
- Name: {profile.get('name') or 'User'}
- Height: {profile.get('height') or 0}cm
- Starting Weight: {profile.get('starting_weight') or 0}kg
- Current Weight: {metrics.get('current_weight', 0)}kg
- Goal Weight: {profile.get('goal_weight') or 0}kg
- Weight Lost: {float(metrics.get('weight_lost') or 0):.1f}kg
- Progress Toward Goal: {metrics.get('progress_percentage', 0)}%

FITNESS PROFILE:
{_render_fitness_profile(fitness)}

EXERCISE BENCHMARKS (Current PRs/Working Weights):
{_render_benchmarks(fitness)}

BODY METRICS:
{body_text}

STRENGTH LEVELS BY CATEGORY:
{strength_text}

FOOD PREFERENCES:
{_render_food(fitness)}

GOALS:
{_render_goals(context.get('goals'))}

RECENT ACTIVITY SUMMARY (Last 30 days):
- Weight Logs: {len(logs.get('weight', []))} entries
- Meal Logs: {len(logs.get('meals', []))} entries
- Activity Logs: {len(logs.get('activities', []))} entries
- Mood Logs: {len(logs.get('moods', []))} entries
- Completed Workouts: {metrics.get('completed_workouts', 0)} sessions
- Workout Completion Rate: {metrics.get('workout_completion_rate', 0)}%

DETAILED LOG ENTRIES (Last 7 days):
{_render_detail_logs(logs, today)}

RECENT WORKOUT SESSIONS (with exercises):
{_render_sessions(context.get('workout_sessions') or [])}

CURRENT PLANS:
- Active Workout Plans: {len(workout_plans)} weeks
- Active Meal Plans: {len(meal_plans)} weeks
- Current Week Number: {current_week}

RECENT TRENDS:
- 7-Day Weight Trend: {trend_text}kg
- Average Daily Calories (Last 7 Days): {metrics.get('avg_daily_calories_7d', 0)} kcal
- Recent Workouts Completed: {metrics.get('recent_completed_workouts', 0)} in last 7 days"""


def build_chat_messages(context: dict[str, Any], message: str) -> list[dict[str, str]]:
    history = (context.get("recent_messages") or [])[-HISTORY_WINDOW:]
    messages = [{"role": "system", "content": COACH_SYSTEM_PROMPT + "\n\n" + render_context_summary(context)}]
    messages.extend({"role": item["role"], "content": item["content"]} for item in history)
    messages.append({"role": "user", "content": message})
    return messages


FAST_PATH_HISTORY_WINDOW = 5

FAST_PATH_SYSTEM_PROMPT = """You are FitCoach AI, an expert personal fitness coach. You are not a generic chatbot: you ask smart follow-up questions, give specific actionable guidance, and offer to take action on behalf of the user.

USER CONTEXT:
{context_summary}

ACTIONS YOU CAN TAKE:
- GENERATE_PLANS: Create a new weekly workout plan
- UPDATE_PLAN: Modify a plan or mark it completed (plan_id, completed)
- LOG_WORKOUT: Log a workout from a description
- LOG_MEAL: Log a meal
- LOG_WEIGHT: Log weight
- LOG_MOOD: Log mood or energy (1-10)
- ADJUST_GOALS: Update calorie, macro or weekly weight goals
- UPDATE_BENCHMARK: Update a PR or working weight
- NONE: Just conversation

When the user mentions pain, injury or fatigue, ask 2-4 diagnostic questions, give an immediate modification, and offer a concrete action.

OUTPUT FORMAT (strict JSON):
{{
  "intent": "ACTION_TYPE",
  "requires_confirmation": true,
  "parameters": {{}},
  "message": "Your coach response here"
}}

RULES:
- GENERATE_PLANS and UPDATE_PLAN always require confirmation
- LOG_* actions do not need confirmation unless the values are a guess
- Keep responses conversational but efficient{history_block}"""


def render_profile_line(profile: Optional[dict[str, Any]]) -> str:
    if not profile:
        return "No profile data available yet."
    return (
        f"User: {profile.get('name') or 'User'}, "
        f"Current: {profile.get('current_weight') or '?'}kg, "
        f"Goal: {profile.get('goal_weight') or '?'}kg"
    )


def build_fast_path_prompt(context_summary: str, history: list[dict[str, str]]) -> str:
    recent = history[-FAST_PATH_HISTORY_WINDOW:]
    history_block = ""
    if recent:
        turns = "\n".join(f"{item['role']}: {item['content']}" for item in recent)
        history_block = f"\n\nRECENT CONVERSATION:\n{turns}"
    return FAST_PATH_SYSTEM_PROMPT.format(context_summary=context_summary, history_block=history_block)
