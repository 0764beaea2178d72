"""Tiered knowledge resolution.

Three strategies, cheapest first:

1. Scenario catalog: keyword triggers over the company's scenarios.
2. Q&A corpus: fuzzy question/tag/word-overlap similarity.
3. LLM synthesis over the company's knowledge base text.

The waterfall stops at the first tier whose confidence clears that tier's
threshold. ``KnowledgeBridge`` sits between the orchestrator decision and
the resolver: it decides whether to search, gates on confidence, reshapes
the verified fact for speech, and records every lookup in the tier trace.
"""

import asyncio
import json
import logging
import re
from dataclasses import asdict, dataclass, field
from difflib import SequenceMatcher

from frontdesk.actions import Action
from frontdesk.context import CallContext, TierTraceEntry
from frontdesk.decision import OrchestratorDecision, extract_json_object
from frontdesk.errors import KnowledgeLookupFailed
from frontdesk.llm import ChatClient
from frontdesk.prompts import RESHAPE_SYSTEM, RESHAPE_USER, TIER3_SYSTEM
from frontdesk.runtime_config import QnAEntry, RuntimeConfig
from frontdesk.validation import matched_keywords

logger = logging.getLogger(__name__)

AUTHORITATIVE_CONFIDENCE = 0.5

# Estimated USD per lookup.
TIER_COSTS = {1: 0.0, 2: 0.0, 3: 0.002}
RESHAPE_COST = 0.0005

CLARIFY_PROMPT = (
    "I want to make sure I give you accurate information. "
    "Could you tell me a bit more about what's happening?"
)
KNOWLEDGE_FAILURE_PROMPT = "Let me connect you with someone from the office who can help you with that right away."

STOPWORDS = {
    "the", "and", "for", "you", "your", "are", "can", "does", "did", "what",
    "when", "where", "how", "who", "why", "with", "this", "that", "have", "has",
    "our", "any", "about", "there", "is", "do", "a", "an", "of", "to", "in",
}
PRIORITY_BOOST = {"high": 0.05, "low": -0.05}
FUZZY_RATIO = 0.8


@dataclass
class TierResult:
    tier: int
    confidence: float
    factual_text: str = ""
    cost: float = 0.0
    source_id: str = ""
    error: str = ""

    @property
    def authoritative(self) -> bool:
        return self.confidence >= AUTHORITATIVE_CONFIDENCE

    def to_dict(self) -> dict:
        return asdict(self)


@dataclass
class Resolution:
    best: TierResult | None
    attempts: list[TierResult] = field(default_factory=list)

    @property
    def total_cost(self) -> float:
        return round(sum(a.cost for a in self.attempts), 6)


def _normalize(text: str) -> str:
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9' ]", " ", text.lower())).strip()


def _content_words(text: str) -> set[str]:
    return {w for w in _normalize(text).split() if len(w) > 2 and w not in STOPWORDS}


class ScenarioMatcher:
    """Tier 1."""

    tier = 1

    async def lookup(self, query: str, config: RuntimeConfig) -> TierResult | None:
        best = None
        for scenario in config.active_scenarios:
            if not scenario.response_text or not scenario.triggers:
                continue
            hits = matched_keywords(query, scenario.triggers)
            if not hits:
                continue
            # Multi-word triggers are more specific than single words.
            specific = any(" " in h for h in hits)
            confidence = min(0.95, 0.7 + 0.1 * len(hits) + (0.1 if specific else 0.0))
            if best is None or confidence > best.confidence:
                best = TierResult(
                    tier=self.tier,
                    confidence=round(confidence, 2),
                    factual_text=scenario.response_text,
                    cost=TIER_COSTS[self.tier],
                    source_id=scenario.id,
                )
        return best


def _tag_matches(tag: str, phrase: str, words: set[str]) -> bool:
    tag = _normalize(tag)
    if not tag:
        return False
    if re.search(rf"(?<!\w){re.escape(tag)}(?!\w)", phrase):
        return True
    if " " in tag:
        return False
    return any(SequenceMatcher(None, tag, w).ratio() >= FUZZY_RATIO for w in words)


def score_qna(query: str, entry: QnAEntry) -> float:
    q = _normalize(query)
    question = _normalize(entry.question)
    if not q or not question:
        return 0.0
    if q == question:
        return 0.95

    if len(q) >= 8 and (q in question or question in q):
        score = 0.80
    else:
        words = _content_words(q)
        tag_score = 0.0
        if entry.tags:
            hits = sum(1 for t in entry.tags if _tag_matches(t, q, words))
            if hits:
                tag_score = min(0.7, 0.5 + 0.1 * hits)
        overlap_score = 0.0
        question_words = _content_words(question)
        if words and question_words:
            overlap_score = 0.6 * len(words & question_words) / len(words)
        score = max(tag_score, overlap_score)

    if score <= 0:
        return 0.0
    return round(max(0.0, min(0.95, score + PRIORITY_BOOST.get(entry.priority, 0.0))), 2)


class QnAMatcher:
    """Tier 2."""

    tier = 2

    async def lookup(self, query: str, config: RuntimeConfig) -> TierResult | None:
        best = None
        for entry in config.qna:
            if not entry.answer:
                continue
            score = score_qna(query, entry)
            if score > 0 and (best is None or score > best.confidence):
                best = TierResult(
                    tier=self.tier,
                    confidence=score,
                    factual_text=entry.answer,
                    cost=TIER_COSTS[self.tier],
                    source_id=entry.id,
                )
        return best


class KnowledgeBaseSynthesizer:
    """Tier 3. The model answers from the knowledge base text and rates itself."""

    tier = 3

    def __init__(self, llm: ChatClient):
        self._llm = llm

    async def lookup(self, query: str, config: RuntimeConfig) -> TierResult | None:
        if not config.knowledge_base.strip():
            return None
        raw = await self._llm.complete(
            TIER3_SYSTEM.format(knowledge_base=config.knowledge_base),
            query,
            temperature=0.1,
            max_tokens=300,
            json_mode=True,
        )
        data = json.loads(extract_json_object(raw))
        answer = str(data.get("answer") or "").strip()
        try:
            confidence = float(data.get("confidence") or 0.0)
        except (TypeError, ValueError):
            confidence = 0.0
        if not answer:
            confidence = 0.0
        return TierResult(
            tier=self.tier,
            confidence=round(max(0.0, min(1.0, confidence)), 2),
            factual_text=answer,
            cost=TIER_COSTS[self.tier],
            source_id="knowledge_base",
        )


class KnowledgeResolver:
    """Runs the tiers in order, each bounded by ``tier_timeout``.

    A tier that errors or times out counts as a miss and the waterfall
    moves on. Raises KnowledgeLookupFailed only when every tier errored.
    """

    def __init__(self, tiers: list, tier_timeout: float = 4.0):
        self.tiers = tiers
        self.tier_timeout = tier_timeout

    @classmethod
    def default(cls, llm: ChatClient, tier_timeout: float = 4.0) -> "KnowledgeResolver":
        return cls([ScenarioMatcher(), QnAMatcher(), KnowledgeBaseSynthesizer(llm)], tier_timeout=tier_timeout)

    async def resolve(self, query: str, config: RuntimeConfig) -> Resolution:
        attempts: list[TierResult] = []
        best = None
        errors = 0

        for tier in self.tiers:
            try:
                result = await asyncio.wait_for(tier.lookup(query, config), timeout=self.tier_timeout)
            except asyncio.TimeoutError:
                errors += 1
                logger.warning("Knowledge tier %d timed out after %.1fs", tier.tier, self.tier_timeout)
                result = TierResult(tier=tier.tier, confidence=0.0, cost=TIER_COSTS.get(tier.tier, 0.0), error="timeout")
            except Exception as e:
                errors += 1
                logger.warning("Knowledge tier %d failed: %s", tier.tier, e)
                result = TierResult(tier=tier.tier, confidence=0.0, error=str(e)[:200])
            if result is None:
                result = TierResult(tier=tier.tier, confidence=0.0)
            attempts.append(result)

            if result.factual_text and (best is None or result.confidence > best.confidence):
                best = result
            if result.factual_text and result.confidence >= config.thresholds.for_tier(tier.tier):
                logger.info("Knowledge hit at tier %d (confidence %.2f, source %s)", tier.tier, result.confidence, result.source_id)
                best = result
                break

        if self.tiers and errors == len(self.tiers):
            raise KnowledgeLookupFailed(f"all {errors} knowledge tiers failed")
        return Resolution(best=best, attempts=attempts)


@dataclass
class KnowledgeOutcome:
    """What the bridge did, for the turn trace."""

    query: str
    tier: int | None = None
    confidence: float = 0.0
    source_id: str = ""
    authoritative: bool = False
    reshaped: bool = False
    cost: float = 0.0
    attempts: list[dict] = field(default_factory=list)
    error: str = ""

    def to_dict(self) -> dict:
        return asdict(self)


class KnowledgeBridge:
    def __init__(self, resolver: KnowledgeResolver, llm: ChatClient, reshape_timeout: float = 4.0):
        self._resolver = resolver
        self._llm = llm
        self.reshape_timeout = reshape_timeout

    @staticmethod
    def should_search(decision: OrchestratorDecision) -> bool:
        wants = decision.needs_knowledge_search or decision.action == Action.ANSWER_WITH_KNOWLEDGE.value
        return wants and decision.knowledge_query is not None and bool(decision.knowledge_query.query_text)

    async def apply(
        self,
        decision: OrchestratorDecision,
        ctx: CallContext,
        config: RuntimeConfig,
    ) -> KnowledgeOutcome:
        """Resolve the decision's knowledge query and fold the answer into *decision*.

        Mutates *decision* and appends to ``ctx.tier_trace``.
        """
        query = decision.knowledge_query.query_text
        outcome = KnowledgeOutcome(query=query)

        try:
            resolution = await self._resolver.resolve(query, config)
        except Exception as e:
            logger.error("Knowledge lookup failed for call %s: %s", ctx.call_id, e)
            outcome.error = str(e)[:200]
            decision.action = Action.ESCALATE_TO_HUMAN.value
            decision.next_prompt = KNOWLEDGE_FAILURE_PROMPT
            ctx.add_tier_resolution(TierTraceEntry(
                tier=0,
                action="knowledge_failed",
                intent=ctx.current_intent,
                source_id="knowledge_error",
                reasoning=json.dumps({"query": query, "error": outcome.error})[:500],
            ))
            return outcome

        best = resolution.best
        outcome.attempts = [a.to_dict() for a in resolution.attempts]
        outcome.cost = resolution.total_cost
        if best is not None:
            outcome.tier = best.tier
            outcome.confidence = best.confidence
            outcome.source_id = best.source_id
            outcome.authoritative = best.authoritative

        if not outcome.authoritative:
            if decision.action == Action.ANSWER_WITH_KNOWLEDGE.value:
                decision.action = Action.CLARIFY_INTENT.value
                decision.next_prompt = CLARIFY_PROMPT
        elif best.factual_text.strip():
            decision.next_prompt, outcome.reshaped = await self.reshape(best.factual_text, query)
            if outcome.reshaped:
                outcome.cost = round(outcome.cost + RESHAPE_COST, 6)
            decision.action = Action.ANSWER_WITH_KNOWLEDGE.value
            decision.knowledge_tier = best.tier
            decision.knowledge_confidence = best.confidence

        ctx.add_tier_resolution(TierTraceEntry(
            tier=outcome.tier or 0,
            action="knowledge_search",
            intent=ctx.current_intent,
            confidence=outcome.confidence,
            source_id=outcome.source_id,
            cost=outcome.cost,
            reasoning=json.dumps({
                "query": query,
                "authoritative": outcome.authoritative,
                "tiers": [(a.tier, a.confidence) for a in resolution.attempts],
            })[:500],
        ))
        return outcome

    async def reshape(self, fact: str, question: str) -> tuple[str, bool]:
        """Phrase *fact* for speech. Falls back to the fact verbatim.

        Returns (text, reshaped).
        """
        try:
            text = await asyncio.wait_for(
                self._llm.complete(
                    RESHAPE_SYSTEM,
                    RESHAPE_USER.format(question=question, fact=fact),
                    temperature=0.7,
                    max_tokens=300,
                ),
                timeout=self.reshape_timeout,
            )
        except Exception as e:
            logger.warning("Reshape failed, using verified fact verbatim: %s", e)
            return fact, False
        text = (text or "").strip()
        if not text:
            logger.warning("Reshape returned nothing, using verified fact verbatim")
            return fact, False
        return text, True
