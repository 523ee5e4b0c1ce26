from fitcoach.core.response_composer import CONFIRMATION_PROMPT, compose_reply


def test_compose_success() -> None:
    assert compose_reply("Done.", {"success": True, "message": "Weight logged successfully"}) == (
        "Done.\n\n✅ Weight logged successfully"
    )


def test_compose_error_wins_over_everything() -> None:
    reply = compose_reply("Hmm.", {"success": True, "message": "x"}, "boom", deferred=True)
    assert reply == "Hmm.\n\n⚠️ I tried to complete that action but encountered an error: boom"


def test_compose_deferred_and_plain() -> None:
    assert compose_reply("Plan?", deferred=True) == f"Plan?\n\n❓ {CONFIRMATION_PROMPT}"
    assert compose_reply("Just chatting.") == "Just chatting."
    assert compose_reply("No flag.", {"success": False}) == "No flag."
