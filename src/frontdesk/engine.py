"""Per-turn call orchestration.

``FrontdeskEngine`` is the handle other layers (telephony adapters, the
test console) hold. Build it once at startup with ``create_engine`` and
call ``process_caller_turn`` for every utterance.
"""

import logging
import time
from dataclasses import dataclass, field
from datetime import date

import redis.asyncio as aioredis

from frontdesk.actions import NON_CUSTOMER_INTENTS, Action
from frontdesk.booking import AppointmentMaterializer, BookingOutcome
from frontdesk.config import Settings
from frontdesk.context import CallContext, TierTraceEntry, merge_extracted, missing_booking_fields
from frontdesk.context_store import ContextStore
from frontdesk.decision import OrchestratorDecision, disabled_decision, enforce_readiness
from frontdesk.errors import BookingFailed, TraceLoggingFailed
from frontdesk.finalize import FinalizeResult, finalize_call
from frontdesk.frontline import FrontlineIntel, classify_frontline_intent, should_update_intent
from frontdesk.knowledge import KnowledgeBridge, KnowledgeOutcome, KnowledgeResolver
from frontdesk.llm import ChatClient
from frontdesk.orchestrator import TurnOrchestrator
from frontdesk.prompts import build_booking_confirmation
from frontdesk.repository import BackendRepository, InMemoryRepository
from frontdesk.runtime_config import RuntimeConfig, RuntimeConfigLoader, StaticConfigLoader
from frontdesk.trace import TraceRecorder
from frontdesk.validation import clean_utterance

logger = logging.getLogger(__name__)

FATAL_PROMPT = "I'm here to help. Could you please tell me your name and what you need assistance with?"
BOOKING_FAILURE_PROMPT = (
    "I'm having trouble completing your booking right now. "
    "Let me connect you with someone who can help you directly."
)


@dataclass
class TurnResult:
    next_prompt: str | None
    decision: OrchestratorDecision
    appointment_id: str = ""

    def to_dict(self) -> dict:
        return {
            "next_prompt": self.next_prompt,
            "decision": self.decision.to_dict(),
            "appointment_id": self.appointment_id or None,
        }


@dataclass
class _TurnTimer:
    started: float = field(default_factory=time.monotonic)
    marks: dict = field(default_factory=dict)

    def mark(self, name: str, since: float) -> None:
        self.marks[f"{name}_ms"] = int((time.monotonic() - since) * 1000)

    def total(self) -> dict:
        return {**self.marks, "total_ms": int((time.monotonic() - self.started) * 1000)}


def _spoken_date(iso: str) -> str:
    try:
        d = date.fromisoformat(iso)
    except ValueError:
        return iso
    return f"{d:%A, %B} {d.day}"


class FrontdeskEngine:
    def __init__(
        self,
        store: ContextStore,
        config_loader,
        orchestrator: TurnOrchestrator,
        bridge: KnowledgeBridge,
        materializer: AppointmentMaterializer,
        recorder: TraceRecorder,
        resources: list | None = None,
        redis_client=None,
    ):
        self.store = store
        self.config_loader = config_loader
        self.orchestrator = orchestrator
        self.bridge = bridge
        self.materializer = materializer
        self.recorder = recorder
        self._resources = resources or []
        self._redis = redis_client

    async def close(self):
        await self.recorder.close()
        for resource in self._resources:
            await resource.close()
        if self._redis is not None:
            await self._redis.aclose()

    async def init_call_context(
        self,
        call_id: str,
        company_id: str,
        trade: str = "",
        config_version: int = 1,
    ) -> CallContext:
        return await self.store.init_context(call_id, company_id, trade, config_version)

    async def finalize_call(
        self,
        call_id: str,
        started_at: float,
        ended_at: float,
        usage: dict | None = None,
    ) -> FinalizeResult:
        return await finalize_call(self.store, self.recorder, call_id, started_at, ended_at, usage)

    async def process_caller_turn(self, company_id: str, call_id: str, speaker: str, text: str) -> TurnResult:
        """Handle one utterance. Always returns; never raises."""
        try:
            return await self._process_turn(company_id, call_id, speaker, text)
        except Exception:
            logger.exception("Turn failed for call %s, returning safe prompt", call_id)
            decision = OrchestratorDecision(
                action=Action.ASK_QUESTION.value,
                next_prompt=FATAL_PROMPT,
                source="error",
            )
            return TurnResult(next_prompt=FATAL_PROMPT, decision=decision)

    async def _load_context(self, call_id: str, company_id: str, config: RuntimeConfig) -> CallContext:
        ctx = await self.store.load(call_id)
        if ctx is None:
            logger.info("No context for call %s, initializing", call_id)
            ctx = await self.store.init_context(call_id, company_id, config.trade, config.config_version)
        return ctx

    async def _process_turn(self, company_id: str, call_id: str, speaker: str, text: str) -> TurnResult:
        timer = _TurnTimer()
        config = await self.config_loader.load(company_id)
        if not config.orchestrator_enabled:
            return TurnResult(next_prompt=None, decision=disabled_decision())

        ctx = await self._load_context(call_id, company_id, config)

        if speaker != "caller":
            # Agent-side utterances from the transport are recorded, not answered.
            ctx.append_transcript(speaker, text)
            await self.store.save(ctx)
            decision = OrchestratorDecision(action=Action.NO_OP.value, next_prompt=None, source="transcript")
            return TurnResult(next_prompt=None, decision=decision)

        cleaned = clean_utterance(text, config.filler_words, config.synonyms)
        ctx.append_transcript("caller", text)

        intel = classify_frontline_intent(cleaned, config, ctx)
        if should_update_intent(intel):
            ctx.current_intent = intel.intent

        step = time.monotonic()
        decision = await self.orchestrator.decide(cleaned, intel, ctx, config)
        timer.mark("orchestrator", step)
        ctx.add_tier_resolution(TierTraceEntry(
            tier=0,
            action=decision.action,
            intent=intel.intent,
            confidence=intel.confidence,
            source_id="orchestrator",
            reasoning=decision.debug_notes[:500],
        ))

        knowledge = None
        if self.bridge.should_search(decision):
            step = time.monotonic()
            knowledge = await self.bridge.apply(decision, ctx, config)
            timer.mark("knowledge", step)

        self._apply_decision(ctx, decision)
        await self.store.save(ctx)

        booking = None
        if decision.action == Action.INITIATE_BOOKING.value and ctx.ready_to_book:
            step = time.monotonic()
            booking = await self._book(ctx, config, decision)
            timer.mark("booking", step)

        if decision.next_prompt:
            ctx.append_transcript("agent", decision.next_prompt)
        await self.store.save(ctx)

        self._record_trace(ctx, config, speaker, text, cleaned, intel, decision, knowledge, booking, timer)
        return TurnResult(next_prompt=decision.next_prompt, decision=decision, appointment_id=ctx.appointment_id)

    def _apply_decision(self, ctx: CallContext, decision: OrchestratorDecision) -> None:
        ctx.extracted = merge_extracted(ctx.extracted, decision.extracted)
        if decision.updated_intent and decision.updated_intent not in NON_CUSTOMER_INTENTS:
            ctx.current_intent = decision.updated_intent

        enforce_readiness(decision, ctx.extracted)
        still_complete = not missing_booking_fields(ctx.extracted)
        ctx.ready_to_book = decision.ready_to_book or (ctx.ready_to_book and still_complete)

    async def _book(self, ctx: CallContext, config: RuntimeConfig, decision: OrchestratorDecision) -> BookingOutcome | None:
        try:
            outcome = await self.materializer.materialize(ctx, config)
        except BookingFailed as e:
            logger.error("Booking failed for call %s, escalating: %s", ctx.call_id, e)
            decision.action = Action.ESCALATE_TO_HUMAN.value
            decision.next_prompt = BOOKING_FAILURE_PROMPT
            ctx.add_tier_resolution(TierTraceEntry(
                tier=0,
                action="booking_failed",
                intent=ctx.current_intent,
                source_id="booking_error",
                reasoning=str(e)[:500],
            ))
            return None

        appt = outcome.appointment
        ctx.appointment_id = appt.id
        decision.next_prompt = build_booking_confirmation(
            company=config.name,
            date=_spoken_date(appt.scheduled_date),
            window=appt.time_window,
            address=outcome.address,
        )
        return outcome

    def _record_trace(
        self,
        ctx: CallContext,
        config: RuntimeConfig,
        speaker: str,
        text: str,
        cleaned: str,
        intel: FrontlineIntel,
        decision: OrchestratorDecision,
        knowledge: KnowledgeOutcome | None,
        booking: BookingOutcome | None,
        timer: _TurnTimer,
    ) -> None:
        payload = {
            "call_id": ctx.call_id,
            "company_id": ctx.company_id,
            "config_version": config.config_version,
            "turn": sum(1 for t in ctx.transcript if t.role == "caller"),
            "input": {"speaker": speaker, "text": text, "cleaned": cleaned},
            "intel": intel.to_dict(),
            "decision": decision.to_dict(),
            "knowledge": knowledge.to_dict() if knowledge else None,
            "booking": {
                "appointment_id": booking.appointment.id,
                "created": booking.created,
                "rule": booking.rule.id if booking.rule else None,
            } if booking else None,
            "output": {"next_prompt": decision.next_prompt},
            "performance": timer.total(),
            "cost": {"knowledge": knowledge.cost if knowledge else 0.0},
            "context": {
                "current_intent": ctx.current_intent,
                "ready_to_book": ctx.ready_to_book,
                "missing": missing_booking_fields(ctx.extracted),
                "appointment_id": ctx.appointment_id or None,
            },
        }
        if config.debug_orchestrator:
            logger.info("Turn %d for %s: %s", payload["turn"], ctx.call_id, payload["performance"])
        try:
            self.recorder.record_turn(payload)
        except TraceLoggingFailed as e:
            logger.error("%s", e)


def create_engine(settings: Settings, redis_client=None) -> FrontdeskEngine:
    """Build every collaborator once and hand back the engine."""
    if redis_client is None:
        redis_client = aioredis.Redis.from_url(settings.redis_url, decode_responses=True)
    store = ContextStore(redis_client, ttl_seconds=settings.context_ttl_seconds)

    llm = ChatClient(settings.openai_api_key, model=settings.llm_model, timeout=settings.llm_timeout_s)

    if settings.backend_url:
        repository = BackendRepository(settings.backend_url, settings.backend_api_key)
        config_loader = RuntimeConfigLoader(settings.backend_url, settings.backend_api_key)
    else:
        logger.warning("BACKEND_URL not set, using in-memory repository and static company config")
        repository = InMemoryRepository()
        if settings.company_config_path:
            config_loader = StaticConfigLoader.from_file(settings.company_config_path)
        else:
            config_loader = StaticConfigLoader({})

    resolver = KnowledgeResolver.default(llm, tier_timeout=settings.knowledge_timeout_s)
    return FrontdeskEngine(
        store=store,
        config_loader=config_loader,
        orchestrator=TurnOrchestrator(llm, timeout=settings.llm_timeout_s),
        bridge=KnowledgeBridge(resolver, llm, reshape_timeout=settings.knowledge_timeout_s),
        materializer=AppointmentMaterializer(repository),
        recorder=TraceRecorder(settings.trace_url, settings.trace_secret),
        resources=[llm, repository, config_loader],
        redis_client=redis_client,
    )
