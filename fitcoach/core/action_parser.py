from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Optional

logger = logging.getLogger("uvicorn.error")

ACTION_BLOCK_RE = re.compile(r"```json\s*([\s\S]*?)\s*```")


class ActionKind(str, Enum):
    GENERATE_PLANS = "GENERATE_PLANS"
    UPDATE_PLAN = "UPDATE_PLAN"
    LOG_WORKOUT = "LOG_WORKOUT"
    LOG_MEAL = "LOG_MEAL"
    LOG_WEIGHT = "LOG_WEIGHT"
    LOG_MOOD = "LOG_MOOD"
    ADJUST_GOALS = "ADJUST_GOALS"
    UPDATE_BENCHMARK = "UPDATE_BENCHMARK"
    NONE = "NONE"


@dataclass(frozen=True)
class CoachAction:
    kind: ActionKind
    requires_confirmation: bool = False
    parameters: dict[str, Any] = field(default_factory=dict)
    reasoning: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "type": self.kind.value,
            "requiresConfirmation": self.requires_confirmation,
            "parameters": self.parameters,
        }
        if self.reasoning:
            payload["reasoning"] = self.reasoning
        return payload


NO_ACTION = CoachAction(kind=ActionKind.NONE)


@dataclass(frozen=True)
class ParsedReply:
    text: str
    action: CoachAction


def action_from_payload(raw: Any) -> Optional[CoachAction]:
    """Build an action from a decoded ``{"type": ..., ...}`` object; None when unusable."""
    if not isinstance(raw, dict):
        return None
    try:
        kind = ActionKind(str(raw.get("type", "")).strip().upper())
    except ValueError:
        return None
    parameters = raw.get("parameters")
    reasoning = raw.get("reasoning")
    return CoachAction(
        kind=kind,
        requires_confirmation=raw.get("requiresConfirmation") is True,
        parameters=parameters if isinstance(parameters, dict) else {},
        reasoning=str(reasoning) if reasoning else None,
    )


def parse_coach_reply(text: str) -> ParsedReply:
    match = ACTION_BLOCK_RE.search(text or "")
    if not match:
        return ParsedReply(text=text, action=NO_ACTION)

    try:
        decoded = json.loads(match.group(1))
    except json.JSONDecodeError as exc:
        logger.warning("coach_action_parse_failed error=%s", exc)
        return ParsedReply(text=text, action=NO_ACTION)

    if not isinstance(decoded, dict) or not isinstance(decoded.get("action"), dict):
        return ParsedReply(text=text, action=NO_ACTION)

    action = action_from_payload(decoded["action"])
    if action is None:
        logger.warning("coach_action_unknown_type type=%s", decoded["action"].get("type"))
        return ParsedReply(text=text, action=NO_ACTION)

    cleaned = ACTION_BLOCK_RE.sub("", text).strip()
    return ParsedReply(text=cleaned, action=action)
