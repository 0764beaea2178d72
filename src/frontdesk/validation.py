import re


def match_any_keyword(text: str, keywords) -> bool:
    """Check if any keyword appears in text as a whole word (not substring)."""
    lower = text.lower()
    return any(re.search(rf"(?<!\w){re.escape(kw)}(?!\w)", lower) for kw in keywords)


def matched_keywords(text: str, keywords) -> list[str]:
    lower = text.lower()
    return [kw for kw in keywords if re.search(rf"(?<!\w){re.escape(kw)}(?!\w)", lower)]


SENTINEL_VALUES = {
    "not provided", "n/a", "na", "unknown", "none", "tbd", "...",
    "{{customer_name}}", "{{caller_name}}", "caller_name", "customer_name",
}

# Tuples so matched keywords come back in table order.
EMERGENCY_KEYWORDS = (
    "emergency", "gas leak", "smell gas", "carbon monoxide", "co detector",
    "co alarm", "smoke", "sparks", "fire", "burning smell", "flooding",
    "burst pipe", "water everywhere", "sewage backup", "no heat", "no power",
    "exposed wires", "electrical fire",
)

EMERGENCY_RETRACTION_KEYWORDS = (
    "never mind", "but don't worry", "actually no", "not an emergency",
    "no emergency", "forget i said", "i'm fine", "we're okay", "not urgent",
)

WRONG_NUMBER_KEYWORDS = (
    "wrong number", "dialed the wrong", "didn't mean to call",
    "who is this", "called by mistake", "is this pizza",
)

SPAM_KEYWORDS = (
    "extended warranty", "car warranty", "google listing", "seo services",
    "business loan", "merchant services", "you've been selected",
    "press one", "telemarketing", "final notice", "lower your rate",
)

BOOKING_KEYWORDS = (
    "appointment", "schedule", "book", "booking", "come out", "send someone",
    "technician", "tech out", "service call", "get someone out", "available",
)

UPDATE_APPOINTMENT_KEYWORDS = (
    "reschedule", "cancel my", "cancel the", "change my appointment",
    "move my appointment", "my appointment", "running late",
)

TROUBLESHOOTING_KEYWORDS = (
    "not working", "broken", "won't turn on", "stopped working", "leaking",
    "leak", "noise", "not cooling", "not heating", "tripped", "clogged",
    "no hot water", "flickering", "dripping", "smell",
)

INFO_KEYWORDS = (
    "hours", "open", "do you service", "service area", "where are you",
    "how long", "do you offer", "do you do", "what brands", "licensed",
    "insured", "warranty",
)

BILLING_KEYWORDS = (
    "bill", "billing", "invoice", "charge", "charged", "payment", "refund",
    "how much", "price", "cost", "quote",
)

WORD_TO_DIGIT = {
    "zero": "0", "oh": "0", "o": "0",
    "one": "1", "two": "2", "three": "3", "four": "4",
    "five": "5", "six": "6", "seven": "7", "eight": "8", "nine": "9",
}


def words_to_digits(text: str) -> str:
    """Convert number words and single digits to a digit string.

    Example: "five one two five five five" -> "512555"
    """
    tokens = re.findall(r"[a-zA-Z]+|\d", text.lower())
    digits = []
    for tok in tokens:
        if tok in WORD_TO_DIGIT:
            digits.append(WORD_TO_DIGIT[tok])
        elif tok.isdigit():
            digits.append(tok)
    return "".join(digits)


def normalize_phone(value: str | None) -> str:
    """Reduce a phone number to its digits, dropping a leading US country code.

    "+1 (512) 555-1234", "512.555.1234" and "five one two ..." all map to
    "5125551234". Returns "" when fewer than 7 digits survive.
    """
    if not value:
        return ""
    digits = re.sub(r"\D", "", value)
    if not digits:
        digits = words_to_digits(value)
    if len(digits) == 11 and digits.startswith("1"):
        digits = digits[1:]
    if len(digits) < 7:
        return ""
    return digits


def validate_name(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if cleaned.lower() in SENTINEL_VALUES:
        return ""
    # Reject phone numbers used as names
    if re.match(r"^[\d+\-(). ]{7,}$", cleaned):
        return ""
    if "{{" in cleaned or "}}" in cleaned:
        return ""
    return cleaned


def validate_postal_code(value: str | None) -> str:
    if not value:
        return ""
    cleaned = value.strip()
    if re.match(r"^\d{5}(-\d{4})?$", cleaned):
        return cleaned[:5]
    digits = words_to_digits(cleaned)
    if len(digits) == 5:
        return digits
    return ""


def strip_filler_words(text: str, filler_words) -> str:
    """Remove filler words/phrases as whole words, longest phrases first."""
    cleaned = text
    for filler in sorted(filler_words, key=len, reverse=True):
        cleaned = re.sub(rf"(?<!\w){re.escape(filler)}(?!\w),?", " ", cleaned, flags=re.IGNORECASE)
    return re.sub(r"\s+", " ", cleaned).strip()


def apply_synonyms(text: str, synonyms: dict[str, str]) -> str:
    """Replace colloquial terms with the company's canonical terms."""
    result = text
    for term in sorted(synonyms, key=len, reverse=True):
        result = re.sub(rf"(?<!\w){re.escape(term)}(?!\w)", synonyms[term], result, flags=re.IGNORECASE)
    return result


def clean_utterance(text: str, filler_words, synonyms: dict[str, str]) -> str:
    if not text or not text.strip():
        return ""
    cleaned = strip_filler_words(text, filler_words)
    # Don't let filler stripping erase a whole utterance like "uh huh".
    if not cleaned:
        cleaned = re.sub(r"\s+", " ", text).strip()
    return apply_synonyms(cleaned, synonyms)


def detect_emergency(text: str) -> bool:
    if not match_any_keyword(text, EMERGENCY_KEYWORDS):
        return False
    return not match_any_keyword(text, EMERGENCY_RETRACTION_KEYWORDS)


def detect_wrong_number(text: str) -> bool:
    return match_any_keyword(text, WRONG_NUMBER_KEYWORDS)


def detect_spam(text: str) -> bool:
    return match_any_keyword(text, SPAM_KEYWORDS)
