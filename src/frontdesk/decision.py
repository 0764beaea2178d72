"""Orchestrator decisions: parsing model output, deterministic fallbacks,
and the guardrail post-filter.

Nothing the model returns reaches the caller without passing through
``parse_decision`` and ``enforce_guardrails``.
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field

from frontdesk.actions import SAFE_ACTIONS, Action, Intent
from frontdesk.context import Extracted, missing_booking_fields
from frontdesk.errors import MalformedDecision
from frontdesk.frontline import FrontlineIntel
from frontdesk.runtime_config import RuntimeConfig

logger = logging.getLogger(__name__)

CLOSE_CALL_PROMPT = "Thank you for your call. Have a great day!"
EMERGENCY_PROMPT = (
    "I understand this is urgent. I need your name, address, and a brief description "
    "of the emergency so I can get someone to you right away."
)
GENERIC_PROMPT = "I'm here to help. Can you please tell me your name and what you need assistance with?"
PRICE_ESCALATION_PROMPT = (
    "For exact pricing and service details, let me connect you with someone from the office "
    "who can go over all the options with you."
)

# One question per readiness item, asked in checklist order.
MISSING_FIELD_PROMPTS = {
    "contact name": "Can I get your name, please?",
    "contact phone": "What's the best phone number to reach you?",
    "service address": "What's the full address where you need service?",
    "problem summary": "Can you briefly describe the problem you're having?",
    "time preference": "What day and time would work best for you?",
}

PRICE_PATTERN = re.compile(
    r"\$|\b(?:dollars?|costs?|prices?|pricing|fees?|charges?|estimates?|quotes?)\b",
    re.IGNORECASE,
)

# (pattern, replacement) applied in order. "dispatch" is only rewritten as a verb
# promise; "our dispatch team" is left alone.
TIME_PROMISE_REWRITES = [
    (re.compile(r"\bwe(?:'ll| will) be there\b", re.IGNORECASE), "we can schedule"),
    (re.compile(r"\b(?:we're|we are) on (?:our|the) way\b", re.IGNORECASE), "we can schedule a visit"),
    (re.compile(r"\bon (?:our|the) way\b", re.IGNORECASE), "available to schedule"),
    (re.compile(r"\btechnician will come\b", re.IGNORECASE), "technician can come"),
    (re.compile(r"\bwill arrive\b", re.IGNORECASE), "can arrive"),
    (re.compile(r"\b(we|i)(?:'ll| will| can|'re going to| are going to|'m going to| am going to) dispatch\b", re.IGNORECASE), r"\1 can schedule"),
    (re.compile(r"\b(?:we're|we are|i'm|i am) dispatching\b", re.IGNORECASE), "we can schedule"),
    (re.compile(r"\bdispatching (?=(?:a|an|the|our|someone)\b)", re.IGNORECASE), "scheduling "),
]

CAPABILITY_REWRITES = [
    (re.compile(r"(?<!\w)24/7(?!\w)", re.IGNORECASE), "during business hours"),
    (re.compile(r"\btwenty[- ]four seven\b", re.IGNORECASE), "during business hours"),
    (re.compile(r"\balways available\b", re.IGNORECASE), "available during business hours"),
    (re.compile(r"\bemergency service\b", re.IGNORECASE), "service"),
]


@dataclass
class KnowledgeQuery:
    type: str = "faq"
    query_text: str = ""


@dataclass
class OrchestratorDecision:
    action: str
    next_prompt: str | None
    updated_intent: str | None = None
    extracted: dict = field(default_factory=dict)
    ready_to_book: bool = False
    needs_knowledge_search: bool = False
    wants_human: bool = False
    knowledge_query: KnowledgeQuery | None = None
    debug_notes: str = ""
    knowledge_tier: int | None = None
    knowledge_confidence: float | None = None
    source: str = "llm"  # llm | fallback | disabled | error
    guardrails: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def extract_json_object(raw: str) -> str:
    """Pull the JSON object out of a reply that may be fenced or wrapped in prose."""
    fenced = re.search(r"```(?:json)?\s*(.*?)```", raw, re.DOTALL | re.IGNORECASE)
    if fenced:
        raw = fenced.group(1)
    start = raw.find("{")
    end = raw.rfind("}")
    if start == -1 or end <= start:
        raise MalformedDecision("no JSON object in model output", raw=raw)
    return raw[start:end + 1]


def _flag(flags: dict, snake: str, camel: str) -> bool:
    return flags.get(snake, flags.get(camel, False)) is True


def _knowledge_query(value) -> KnowledgeQuery | None:
    if isinstance(value, str):
        return KnowledgeQuery(query_text=value.strip()) if value.strip() else None
    if not isinstance(value, dict):
        return None
    text = value.get("query_text", value.get("queryText")) or ""
    if not str(text).strip():
        return None
    return KnowledgeQuery(type=str(value.get("type") or "faq"), query_text=str(text).strip())


def parse_decision(raw: str) -> OrchestratorDecision:
    """Parse and validate a model response. Raises MalformedDecision."""
    if not raw or not raw.strip():
        raise MalformedDecision("empty model output", raw=raw or "")

    try:
        data = json.loads(extract_json_object(raw))
    except json.JSONDecodeError as e:
        raise MalformedDecision(f"invalid JSON: {e}", raw=raw) from e
    if not isinstance(data, dict):
        raise MalformedDecision("model output is not a JSON object", raw=raw)

    try:
        return _decision_from_dict(data, raw)
    except (TypeError, AttributeError) as e:
        raise MalformedDecision(f"unexpected field shape: {e}", raw=raw) from e


def _decision_from_dict(data: dict, raw: str) -> OrchestratorDecision:
    action = Action.parse(data.get("action")) if data.get("action") else None
    if action is None:
        raise MalformedDecision(f"missing or unknown action: {data.get('action')!r}", raw=raw)

    next_prompt = data.get("next_prompt", data.get("nextPrompt"))
    if not isinstance(next_prompt, str) or not next_prompt.strip():
        raise MalformedDecision("missing next_prompt", raw=raw)

    updates = data.get("updates") if isinstance(data.get("updates"), dict) else {}
    extracted = updates.get("extracted") if isinstance(updates.get("extracted"), dict) else {}
    flags = updates.get("flags") if isinstance(updates.get("flags"), dict) else {}

    updated_intent = data.get("updated_intent", data.get("updatedIntent"))
    if not isinstance(updated_intent, str) or updated_intent not in {i.value for i in Intent}:
        updated_intent = None

    return OrchestratorDecision(
        action=action.value,
        next_prompt=next_prompt.strip(),
        updated_intent=updated_intent,
        extracted=extracted,
        ready_to_book=_flag(flags, "ready_to_book", "readyToBook"),
        needs_knowledge_search=_flag(flags, "needs_knowledge_search", "needsKnowledgeSearch"),
        wants_human=_flag(flags, "wants_human", "wantsHuman"),
        knowledge_query=_knowledge_query(data.get("knowledge_query", data.get("knowledgeQuery"))),
        debug_notes=str(data.get("debug_notes", data.get("debugNotes")) or ""),
    )


def build_fallback_decision(intel: FrontlineIntel) -> OrchestratorDecision:
    """Deterministic decision used whenever the model can't be trusted or reached.

    An emergency signal outranks wrong-number and spam: never hang up on one.
    """
    if intel.intent == Intent.EMERGENCY.value or intel.signals.maybe_emergency:
        return OrchestratorDecision(
            action=Action.ASK_QUESTION.value,
            next_prompt=EMERGENCY_PROMPT,
            updated_intent=Intent.EMERGENCY.value,
            extracted={"problem": {"urgency": "emergency"}},
            source="fallback",
            debug_notes="fallback: emergency",
        )
    if intel.intent in (Intent.WRONG_NUMBER.value, Intent.SPAM.value):
        return OrchestratorDecision(
            action=Action.CLOSE_CALL.value,
            next_prompt=CLOSE_CALL_PROMPT,
            updated_intent=intel.intent,
            source="fallback",
            debug_notes=f"fallback: {intel.intent}",
        )
    return OrchestratorDecision(
        action=Action.ASK_QUESTION.value,
        next_prompt=GENERIC_PROMPT,
        source="fallback",
        debug_notes="fallback: generic",
    )


def disabled_decision() -> OrchestratorDecision:
    """Signals the transport to use its legacy path for this company."""
    return OrchestratorDecision(action=Action.NO_OP.value, next_prompt=None, source="disabled")


def _rewrite(text: str, rewrites) -> str:
    for pattern, replacement in rewrites:
        text = pattern.sub(replacement, text)
    return text


def enforce_guardrails(decision: OrchestratorDecision, config: RuntimeConfig) -> OrchestratorDecision:
    """Neutralize price, arrival-time and capability hazards in ``next_prompt``.

    Terminal and safe actions are left alone. Mutates and returns *decision*.
    """
    if decision.action in SAFE_ACTIONS or not decision.next_prompt:
        return decision

    if (
        decision.action == Action.ANSWER_WITH_KNOWLEDGE.value
        and not config.has_price_variables
        and PRICE_PATTERN.search(decision.next_prompt)
    ):
        logger.warning("Guardrail: price language with no price variables, escalating")
        decision.action = Action.ESCALATE_TO_HUMAN.value
        decision.next_prompt = PRICE_ESCALATION_PROMPT
        decision.guardrails.append("price")
        return decision

    if decision.action != Action.INITIATE_BOOKING.value:
        softened = _rewrite(decision.next_prompt, TIME_PROMISE_REWRITES)
        if softened != decision.next_prompt:
            logger.info("Guardrail: softened arrival promise")
            decision.next_prompt = softened
            decision.guardrails.append("time_promise")

    if not config.emergency_service_enabled:
        stripped = _rewrite(decision.next_prompt, CAPABILITY_REWRITES)
        if stripped != decision.next_prompt:
            logger.info("Guardrail: stripped unconfigured capability claim")
            decision.next_prompt = stripped
            decision.guardrails.append("capability")

    return decision


def enforce_readiness(decision: OrchestratorDecision, extracted: Extracted) -> OrchestratorDecision:
    """Only allow ready_to_book once every readiness item has been captured.

    *extracted* is the state after this turn's updates were merged. An
    ``initiate_booking`` with gaps becomes a question for the first gap.
    """
    missing = missing_booking_fields(extracted)
    if not missing:
        if decision.action == Action.INITIATE_BOOKING.value:
            decision.ready_to_book = True
        return decision

    if decision.ready_to_book:
        logger.info("Readiness: model claimed ready_to_book with %s missing", ", ".join(missing))
        decision.ready_to_book = False
    if decision.action == Action.INITIATE_BOOKING.value:
        decision.action = Action.ASK_QUESTION.value
        decision.next_prompt = MISSING_FIELD_PROMPTS[missing[0]]
        decision.guardrails.append("readiness")
    return decision
