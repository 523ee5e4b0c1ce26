from typing import Any, Optional

CONFIRMATION_PROMPT = 'Should I proceed with this change? Reply "yes" to confirm or "no" to cancel.'
FAILURE_PREFIX = "I tried to complete that action but encountered an error: "
DEFAULT_SUCCESS = "Action completed successfully."


def compose_reply(
    text: str,
    result: Optional[dict[str, Any]] = None,
    error: Optional[str] = None,
    deferred: bool = False,
) -> str:
    """Append at most one annotation: success, failure, or a confirmation prompt."""
    if error:
        return f"{text}\n\n⚠️ {FAILURE_PREFIX}{error}"
    if result and result.get("success"):
        return f"{text}\n\n✅ {result.get('message') or DEFAULT_SUCCESS}"
    if deferred:
        return f"{text}\n\n❓ {CONFIRMATION_PROMPT}"
    return text
