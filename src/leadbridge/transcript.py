from leadbridge.session import TranscriptEntry
from leadbridge.states import Speaker

_LABELS = {Speaker.LEAD: "Lead", Speaker.AI: "Agent"}


def to_plain_text(transcripts: list[TranscriptEntry]) -> str:
    """Convert the transcript log to plain text.

    Lead lines prefixed with "Lead:", AI lines with "Agent:".
    """
    if not transcripts:
        return ""
    return "\n".join(f"{_LABELS[t.speaker]}: {t.text}" for t in transcripts)


def to_json_array(transcripts: list[TranscriptEntry]) -> list[dict]:
    """Structured transcript for the webhook payload: {role, message, timestamp}."""
    if not transcripts:
        return []
    return [
        {
            "role": "user" if t.speaker == Speaker.LEAD else "agent",
            "message": t.text,
            "timestamp": t.timestamp,
        }
        for t in transcripts
    ]


def from_remote(entries: list[dict] | None) -> list[dict]:
    """Normalize a transcript fetched from the conversation API.

    Entries without a message (tool calls, empty turns) are skipped.
    """
    if not entries:
        return []
    result = []
    for entry in entries:
        if not isinstance(entry, dict):
            continue
        message = entry.get("message") or entry.get("text")
        if not message:
            continue
        result.append({
            "role": entry.get("role", "agent"),
            "message": message,
            "timestamp": entry.get("time_in_call_secs", entry.get("timestamp")),
        })
    return result


def last_human_texts(transcripts: list[TranscriptEntry], n: int = 3) -> list[str]:
    """Text of the last ``n`` lead utterances, oldest first."""
    human = [t.text for t in transcripts if t.speaker == Speaker.LEAD]
    return human[-n:] if n > 0 else []
