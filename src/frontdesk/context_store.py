import json
import logging
import time

from frontdesk.context import CallContext, Extracted, TierTraceEntry, merge_extracted
from frontdesk.errors import ContextUnavailable

logger = logging.getLogger(__name__)

KEY_PREFIX = "frontdesk:ctx:"
DEFAULT_TTL_SECONDS = 3600


class ContextStore:
    """Per-call context persisted in Redis between turns.

    Every method is fail-soft: a Redis error is logged and swallowed.
    ``load`` returns None on failure so the caller re-initializes instead
    of dropping the call. There is no locking on the key; turns for one
    call are assumed to arrive one at a time.
    """

    def __init__(self, redis, ttl_seconds: int = DEFAULT_TTL_SECONDS):
        self._redis = redis
        self.ttl_seconds = ttl_seconds

    @staticmethod
    def key(call_id: str) -> str:
        return f"{KEY_PREFIX}{call_id}"

    async def init_context(
        self,
        call_id: str,
        company_id: str,
        trade: str = "",
        config_version: int = 1,
    ) -> CallContext:
        ctx = CallContext(
            call_id=call_id,
            company_id=company_id,
            trade=trade or "",
            config_version=config_version,
        )
        await self.save(ctx)
        logger.info("Context initialized for call %s (company %s)", call_id, company_id)
        return ctx

    async def _read(self, call_id: str):
        try:
            return await self._redis.get(self.key(call_id))
        except Exception as e:
            raise ContextUnavailable(f"context read failed for {call_id}: {e}") from e

    async def load(self, call_id: str) -> CallContext | None:
        try:
            raw = await self._read(call_id)
        except ContextUnavailable as e:
            logger.error("%s", e)
            return None
        if raw is None:
            return None
        try:
            if isinstance(raw, bytes):
                raw = raw.decode("utf-8")
            data = json.loads(raw)
            if not isinstance(data, dict):
                raise ValueError(f"expected a JSON object, got {type(data).__name__}")
            return CallContext.from_dict(data)
        except (ValueError, KeyError, TypeError, AttributeError) as e:
            logger.error("Context for %s could not be decoded, treating as missing: %s", call_id, e)
            return None

    async def save(self, ctx: CallContext) -> bool:
        ctx.updated_at = time.time()
        try:
            payload = json.dumps(ctx.to_dict())
            await self._redis.set(self.key(ctx.call_id), payload, ex=self.ttl_seconds)
            return True
        except Exception as e:
            logger.error("Context save failed for %s: %s", ctx.call_id, e)
            return False

    async def delete(self, call_id: str) -> bool:
        try:
            await self._redis.delete(self.key(call_id))
            return True
        except Exception as e:
            logger.error("Context delete failed for %s: %s", call_id, e)
            return False

    # ── Single-field updates (load, mutate, save) ──

    async def append_transcript(self, call_id: str, role: str, text: str) -> CallContext | None:
        ctx = await self.load(call_id)
        if ctx is None:
            logger.warning("append_transcript: no context for %s", call_id)
            return None
        ctx.append_transcript(role, text)
        await self.save(ctx)
        return ctx

    async def update_extracted(self, call_id: str, updates: Extracted | dict) -> CallContext | None:
        ctx = await self.load(call_id)
        if ctx is None:
            logger.warning("update_extracted: no context for %s", call_id)
            return None
        ctx.extracted = merge_extracted(ctx.extracted, updates)
        await self.save(ctx)
        return ctx

    async def add_tier_resolution(self, call_id: str, entry: TierTraceEntry) -> CallContext | None:
        ctx = await self.load(call_id)
        if ctx is None:
            logger.warning("add_tier_resolution: no context for %s", call_id)
            return None
        ctx.add_tier_resolution(entry)
        await self.save(ctx)
        return ctx

    async def set_ready_to_book(self, call_id: str, ready: bool) -> CallContext | None:
        ctx = await self.load(call_id)
        if ctx is None:
            logger.warning("set_ready_to_book: no context for %s", call_id)
            return None
        ctx.ready_to_book = ready
        await self.save(ctx)
        return ctx

    async def set_appointment_id(self, call_id: str, appointment_id: str) -> CallContext | None:
        ctx = await self.load(call_id)
        if ctx is None:
            logger.warning("set_appointment_id: no context for %s", call_id)
            return None
        ctx.appointment_id = appointment_id
        await self.save(ctx)
        return ctx
