import asyncio
import logging

from frontdesk.context import CallContext
from frontdesk.decision import (
    OrchestratorDecision,
    build_fallback_decision,
    enforce_guardrails,
    parse_decision,
)
from frontdesk.errors import LLMError, MalformedDecision
from frontdesk.frontline import FrontlineIntel
from frontdesk.llm import ChatClient
from frontdesk.prompts import build_orchestrator_system, build_orchestrator_user
from frontdesk.runtime_config import RuntimeConfig

logger = logging.getLogger(__name__)

DECISION_TEMPERATURE = 0.2
DECISION_MAX_TOKENS = 800


class TurnOrchestrator:
    """One model call per turn, validated and guardrailed.

    Any failure to get a usable decision (timeout, provider error, bad
    JSON, unknown action) falls back to a deterministic decision keyed off
    the frontline classifier, so ``decide`` always returns.
    """

    def __init__(self, llm: ChatClient, timeout: float = 8.0):
        self._llm = llm
        self.timeout = timeout

    async def decide(
        self,
        text: str,
        intel: FrontlineIntel,
        ctx: CallContext,
        config: RuntimeConfig,
    ) -> OrchestratorDecision:
        system = build_orchestrator_system(config)
        user = build_orchestrator_user(text, intel, ctx, config)

        try:
            raw = await asyncio.wait_for(
                self._llm.complete(
                    system,
                    user,
                    temperature=DECISION_TEMPERATURE,
                    max_tokens=DECISION_MAX_TOKENS,
                    json_mode=True,
                ),
                timeout=self.timeout,
            )
            decision = parse_decision(raw)
        except asyncio.TimeoutError:
            logger.warning("Orchestrator timed out after %.1fs for call %s, using fallback", self.timeout, ctx.call_id)
            decision = build_fallback_decision(intel)
        except LLMError as e:
            logger.warning("Orchestrator LLM unavailable for call %s, using fallback: %s", ctx.call_id, e)
            decision = build_fallback_decision(intel)
        except MalformedDecision as e:
            logger.warning("Malformed decision for call %s, using fallback: %s", ctx.call_id, e)
            if config.debug_orchestrator:
                logger.info("Raw model output: %s", e.raw[:1000])
            decision = build_fallback_decision(intel)

        decision = enforce_guardrails(decision, config)

        if config.debug_orchestrator:
            logger.info(
                "Decision for %s: action=%s source=%s guardrails=%s notes=%s",
                ctx.call_id, decision.action, decision.source, decision.guardrails, decision.debug_notes,
            )
        return decision
