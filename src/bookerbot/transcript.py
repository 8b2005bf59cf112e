from bookerbot.states import Direction

MAX_PROMPT_MESSAGES = 20


def _chronological(messages: list) -> list:
    return sorted(messages, key=lambda msg: msg.created_at)


def to_plain_text(messages: list, latest_message: str = "") -> str:
    """Render message history as a transcript for the assessor.

    Contact lines prefixed with "Contact:", our replies with "Assistant:".
    The just-received message, if given, is appended last.
    """
    lines = []
    for msg in _chronological(messages):
        speaker = "Contact" if msg.direction == Direction.INBOUND else "Assistant"
        lines.append(f"{speaker}: {msg.content}")
    if latest_message:
        lines.append(f"Contact: {latest_message}")
    return "\n".join(lines)


def to_prompt_messages(messages: list, current_message: str, limit: int = MAX_PROMPT_MESSAGES) -> list[dict]:
    """Convert history to a strictly alternating user/assistant list.

    Keeps the most recent ``limit`` records, merges consecutive messages from
    the same side, and ends with the current user message (merged into a
    trailing unanswered user turn if there is one).
    """
    recent = _chronological(messages)[-limit:] if limit > 0 else []

    result: list[dict] = []
    for msg in recent:
        if not msg.content:
            continue
        role = "user" if msg.direction == Direction.INBOUND else "assistant"
        if result and result[-1]["role"] == role:
            result[-1]["content"] += "\n" + msg.content
        else:
            result.append({"role": role, "content": msg.content})

    if result and result[-1]["role"] == "user":
        result[-1]["content"] += "\n" + current_message
    else:
        result.append({"role": "user", "content": current_message})
    return result
