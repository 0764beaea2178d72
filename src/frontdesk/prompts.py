import json

from frontdesk.actions import Action
from frontdesk.context import READINESS_CHECKLIST, CallContext, missing_booking_fields
from frontdesk.frontline import FrontlineIntel
from frontdesk.runtime_config import RuntimeConfig

ORCHESTRATOR_SYSTEM = """You are the call orchestrator for {company}, a {trade} service company.
You do not talk to the caller directly. You decide what the receptionist does next and write the exact words it says.

VOICE
- Friendly, brisk, confident. ONE question at a time. Max 2 sentences.
- NEVER re-ask something already captured.
- NEVER invent prices, arrival times, or services. If you don't know, say someone from the office will follow up.
- NEVER say the appointment is booked or confirmed. The system confirms bookings.

ACTIONS (pick exactly one)
{actions}

BOOKING READINESS
All five are required before ready_to_book may be true:
{checklist}

KNOWLEDGE
If the caller asks a factual question about the company (hours, service area, warranties, policies),
set needs_knowledge_search to true and fill knowledge_query. Do not answer from memory.

RESPONSE FORMAT
Return ONLY a JSON object:
{{
  "action": "<one of the actions above>",
  "next_prompt": "<exact words to say>",
  "updated_intent": "<booking|emergency|troubleshooting|info|billing|update_appointment|wrong_number|spam|other or null>",
  "updates": {{
    "extracted": {{
      "contact": {{"name": "", "phone": "", "email": ""}},
      "location": {{"address_line1": "", "address_line2": "", "city": "", "state": "", "postal_code": ""}},
      "problem": {{"summary": "", "category": "", "urgency": ""}},
      "scheduling": {{"preferred_date": "YYYY-MM-DD", "preferred_window": ""}},
      "access": {{"notes": "", "gate_code": ""}}
    }},
    "flags": {{"ready_to_book": false, "needs_knowledge_search": false, "wants_human": false}}
  }},
  "knowledge_query": {{"type": "faq|policy|service", "query_text": ""}} or null,
  "debug_notes": "<short reasoning>"
}}
Only include extracted fields the CALLER said this turn or earlier. Leave the rest out."""

ORCHESTRATOR_USER = """CALLER SAID: "{utterance}"

FRONTLINE CLASSIFIER: intent={intent} confidence={confidence:.2f}
SIGNALS: emergency={maybe_emergency} wrong_number={maybe_wrong_number} spam={maybe_spam}
CURRENT INTENT: {current_intent}

KNOWN SO FAR:
{extracted}

STILL MISSING FOR BOOKING: {missing}

COMPANY VARIABLES:
{variables}

RECENT CONVERSATION:
{recent}"""

RESHAPE_SYSTEM = """You rephrase verified company information for a phone receptionist.
Rewrite the SOURCE so it sounds natural when spoken, in at most 2 sentences.
NEVER add facts not in the source material. No new numbers, times, prices, or promises.
If the source does not answer the question, repeat the source as-is.
Return only the words to speak."""

RESHAPE_USER = """CALLER ASKED: {question}

SOURCE:
{fact}"""

TIER3_SYSTEM = """Answer the caller's question using ONLY the knowledge base below.
Return ONLY JSON: {{"answer": "<short factual answer>", "confidence": <0.0-1.0>}}
If the knowledge base does not cover the question, return {{"answer": "", "confidence": 0.0}}.

KNOWLEDGE BASE:
{knowledge_base}"""

BOOKING_CONFIRMATION = (
    "Perfect! {company} has you scheduled for {when}. "
    "A technician will come to {address}. You'll receive a confirmation shortly. "
    "Is there anything else I can help you with?"
)


def _action_list() -> str:
    return "\n".join(f"- {a.value}" for a in Action)


def build_orchestrator_system(config: RuntimeConfig) -> str:
    return ORCHESTRATOR_SYSTEM.format(
        company=config.name or "the company",
        trade=config.trade or "home",
        actions=_action_list(),
        checklist="\n".join(f"{i}. {item}" for i, item in enumerate(READINESS_CHECKLIST, 1)),
    )


def build_orchestrator_user(text: str, intel: FrontlineIntel, ctx: CallContext, config: RuntimeConfig) -> str:
    missing = missing_booking_fields(ctx.extracted)
    variables = "\n".join(f"- {k}: {v}" for k, v in sorted(config.variables.items())) or "(none)"
    return ORCHESTRATOR_USER.format(
        utterance=text,
        intent=intel.intent,
        confidence=intel.confidence,
        maybe_emergency=intel.signals.maybe_emergency,
        maybe_wrong_number=intel.signals.maybe_wrong_number,
        maybe_spam=intel.signals.maybe_spam,
        current_intent=ctx.current_intent or "unknown",
        extracted=json.dumps(ctx.extracted.to_dict(), indent=2),
        missing=", ".join(missing) if missing else "nothing, ready to book",
        variables=variables,
        recent=ctx.recent_transcript(6) or "(start of call)",
    )


def build_booking_confirmation(company: str, date: str, window: str, address: str) -> str:
    return BOOKING_CONFIRMATION.format(
        company=company or "Our office",
        when=f"{date} {window}".strip(),
        address=address or "your address",
    )
