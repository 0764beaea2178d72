from frontdesk.context import TranscriptEntry

ROLE_LABELS = {"agent": "Agent", "caller": "Caller"}


def to_plain_text(entries: list[TranscriptEntry]) -> str:
    """Render the transcript as "Caller: ..." / "Agent: ..." lines."""
    if not entries:
        return ""
    return "\n".join(
        f"{ROLE_LABELS.get(e.role, e.role.title())}: {e.text}"
        for e in entries
    )


def to_json_array(entries: list[TranscriptEntry]) -> list[dict]:
    return [{"role": e.role, "content": e.text} for e in entries]


def to_timestamped_dump(
    entries: list[TranscriptEntry],
    start_time: float,
    call_id: str,
    company_id: str,
    final_intent: str,
) -> dict:
    """Build a transcript dump dict for structured logging.

    Timestamps become seconds relative to call start. If start_time is 0,
    the first entry's timestamp is used as the base.
    """
    base_time = start_time
    if base_time <= 0 and entries:
        base_time = entries[0].timestamp

    return {
        "call_id": call_id,
        "company_id": company_id,
        "final_intent": final_intent,
        "entries": [
            {"t": round(e.timestamp - base_time, 1), "role": e.role, "content": e.text}
            for e in entries
        ],
    }
