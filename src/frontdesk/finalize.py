import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime, timezone

from frontdesk.context import CallContext
from frontdesk.context_store import ContextStore
from frontdesk.trace import TraceRecorder
from frontdesk.transcript import to_json_array, to_plain_text, to_timestamped_dump

logger = logging.getLogger(__name__)


@dataclass
class FinalizeResult:
    call_id: str
    found: bool
    archived: bool = False
    deleted: bool = False


def _iso(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).isoformat()


def summarize_tier_costs(ctx: CallContext) -> dict:
    """Per-tier lookup counts and estimated cost from the tier trace."""
    summary = {}
    for entry in ctx.tier_trace:
        if entry.action != "knowledge_search":
            continue
        bucket = summary.setdefault(f"tier{entry.tier}", {"lookups": 0, "cost": 0.0})
        bucket["lookups"] += 1
        bucket["cost"] = round(bucket["cost"] + entry.cost, 6)
    summary["total_cost"] = round(sum(v["cost"] for v in summary.values()), 6)
    return summary


def build_archive_payload(ctx: CallContext, started_at: float, ended_at: float, usage: dict | None = None) -> dict:
    started_at = started_at if started_at > 0 else ctx.created_at
    ended_at = ended_at if ended_at > 0 else time.time()
    return {
        "call_id": ctx.call_id,
        "company_id": ctx.company_id,
        "trade": ctx.trade,
        "started_at": _iso(started_at),
        "ended_at": _iso(ended_at),
        "duration_seconds": max(0, int(ended_at - started_at)),
        "final_intent": ctx.current_intent,
        "ready_to_book": ctx.ready_to_book,
        "appointment_id": ctx.appointment_id or None,
        "booking_status": "booked" if ctx.appointment_id else "not_booked",
        "config_version": ctx.config_version,
        "transcript": to_plain_text(ctx.transcript),
        "transcript_object": to_json_array(ctx.transcript),
        "tier_costs": summarize_tier_costs(ctx),
        "usage": usage or {},
        "context": ctx.to_dict(),
    }


def chunk_transcript_dump(dump: dict, max_bytes: int = 3500) -> list[str]:
    """Split a transcript dump into log-line-sized chunks.

    Each chunk is ``TRANSCRIPT_DUMP|N/M|{json}``. The first chunk carries
    the header fields plus as many entries as fit; later chunks carry
    entries only.
    """
    header = {k: v for k, v in dump.items() if k != "entries"}
    entries = dump.get("entries", [])

    if not entries:
        return [f"TRANSCRIPT_DUMP|1/1|{json.dumps({**header, 'entries': []})}"]

    chunks: list[list[dict]] = []
    current: list[dict] = []
    size = len(json.dumps({**header, "entries": []}).encode("utf-8"))

    for entry in entries:
        entry_size = len(json.dumps(entry).encode("utf-8")) + 2  # separator + bracket
        if current and size + entry_size > max_bytes:
            chunks.append(current)
            current = []
            size = len(json.dumps({"entries": []}).encode("utf-8"))
        current.append(entry)
        size += entry_size
    if current:
        chunks.append(current)

    total = len(chunks)
    lines = []
    for i, chunk in enumerate(chunks):
        body = {**header, "entries": chunk} if i == 0 else {"entries": chunk}
        lines.append(f"TRANSCRIPT_DUMP|{i + 1}/{total}|{json.dumps(body)}")
    return lines


async def finalize_call(
    store: ContextStore,
    recorder: TraceRecorder,
    call_id: str,
    started_at: float,
    ended_at: float,
    usage: dict | None = None,
) -> FinalizeResult:
    """Archive a finished call, dump its transcript to the log, then delete its context.

    The context is deleted only after the archive succeeded; otherwise it
    is left for the store TTL to expire.
    """
    ctx = await store.load(call_id)
    if ctx is None:
        logger.warning("finalize_call: no context for %s, nothing to archive", call_id)
        return FinalizeResult(call_id=call_id, found=False)

    payload = build_archive_payload(ctx, started_at, ended_at, usage)
    archived = await recorder.archive_call(payload)

    dump = to_timestamped_dump(
        ctx.transcript,
        start_time=started_at,
        call_id=ctx.call_id,
        company_id=ctx.company_id,
        final_intent=ctx.current_intent,
    )
    dump["duration_s"] = payload["duration_seconds"]
    for line in chunk_transcript_dump(dump):
        logger.info(line)

    deleted = False
    if archived:
        deleted = await store.delete(call_id)
    else:
        logger.warning("Call %s not archived, keeping context until TTL expiry", call_id)

    logger.info(
        "Call %s finalized: intent=%s appointment=%s archived=%s",
        call_id, ctx.current_intent, ctx.appointment_id or None, archived,
    )
    return FinalizeResult(call_id=call_id, found=True, archived=archived, deleted=deleted)
