"""Frontline intent classifier.

Cheap, synchronous keyword pass run on every caller turn before the model
is consulted. No I/O. Its job is to surface emergency / spam / wrong-number
situations early and give the orchestrator prompt a first guess at intent.
"""

import logging
from dataclasses import asdict, dataclass, field

from frontdesk.actions import NON_CUSTOMER_INTENTS, Intent
from frontdesk.context import CallContext
from frontdesk.runtime_config import RuntimeConfig
from frontdesk.validation import (
    BILLING_KEYWORDS,
    BOOKING_KEYWORDS,
    EMERGENCY_KEYWORDS,
    INFO_KEYWORDS,
    SPAM_KEYWORDS,
    TROUBLESHOOTING_KEYWORDS,
    UPDATE_APPOINTMENT_KEYWORDS,
    WRONG_NUMBER_KEYWORDS,
    detect_emergency,
    detect_spam,
    detect_wrong_number,
    match_any_keyword,
    matched_keywords,
)

logger = logging.getLogger(__name__)

INTENT_OVERWRITE_THRESHOLD = 0.7
MAX_CONFIDENCE = 0.95

# (intent, keyword table, base confidence), checked in order.
INTENT_RULES = [
    (Intent.UPDATE_APPOINTMENT, UPDATE_APPOINTMENT_KEYWORDS, 0.85),
    (Intent.BOOKING, BOOKING_KEYWORDS, 0.75),
    (Intent.TROUBLESHOOTING, TROUBLESHOOTING_KEYWORDS, 0.72),
    (Intent.BILLING, BILLING_KEYWORDS, 0.72),
    (Intent.INFO, INFO_KEYWORDS, 0.7),
]


@dataclass
class Signals:
    maybe_emergency: bool = False
    maybe_wrong_number: bool = False
    maybe_spam: bool = False


@dataclass
class FrontlineIntel:
    intent: str
    confidence: float
    signals: Signals = field(default_factory=Signals)
    matched: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return asdict(self)


def _score(base: float, hits: int) -> float:
    return round(min(MAX_CONFIDENCE, base + 0.05 * max(hits - 1, 0)), 2)


def classify_frontline_intent(text: str, config: RuntimeConfig, context: CallContext | None = None) -> FrontlineIntel:
    if not text or not text.strip():
        return FrontlineIntel(intent=Intent.OTHER.value, confidence=0.0)

    signals = Signals(
        maybe_emergency=detect_emergency(text),
        maybe_wrong_number=detect_wrong_number(text),
        maybe_spam=detect_spam(text),
    )

    # Emergency outranks wrong-number and spam ("who is this? I smell gas").
    if signals.maybe_emergency:
        hits = matched_keywords(text, EMERGENCY_KEYWORDS)
        return FrontlineIntel(Intent.EMERGENCY.value, _score(0.85, len(hits)), signals, hits)

    if signals.maybe_wrong_number:
        hits = matched_keywords(text, WRONG_NUMBER_KEYWORDS)
        return FrontlineIntel(Intent.WRONG_NUMBER.value, _score(0.9, len(hits)), signals, hits)

    if signals.maybe_spam:
        hits = matched_keywords(text, SPAM_KEYWORDS)
        return FrontlineIntel(Intent.SPAM.value, _score(0.9, len(hits)), signals, hits)

    for intent, keywords, base in INTENT_RULES:
        hits = matched_keywords(text, keywords)
        if hits:
            return FrontlineIntel(intent.value, _score(base, len(hits)), signals, hits)

    # A question that hits the company's own scenario catalog is informational.
    for scenario in config.active_scenarios:
        if scenario.triggers and match_any_keyword(text, scenario.triggers):
            return FrontlineIntel(Intent.INFO.value, 0.72, signals, [scenario.id])

    # Short replies ("yes", "tomorrow at 3") continue whatever the call is about,
    # at a confidence too low to overwrite it.
    if context is not None and context.current_intent:
        return FrontlineIntel(context.current_intent, 0.5, signals)

    return FrontlineIntel(Intent.OTHER.value, 0.3, signals)


def should_update_intent(intel: FrontlineIntel) -> bool:
    """Only confident, customer-facing classifications may overwrite the call intent."""
    return intel.confidence > INTENT_OVERWRITE_THRESHOLD and intel.intent not in NON_CUSTOMER_INTENTS
