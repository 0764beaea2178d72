from enum import Enum

# Actions the guardrail post-filter leaves alone.
SAFE_ACTIONS = {
    "close_call", "escalate_to_human", "no_op",
    "small_talk", "clarify_intent",
}


class Action(Enum):
    ASK_QUESTION = "ask_question"
    CONFIRM_INFO = "confirm_info"
    ANSWER_WITH_KNOWLEDGE = "answer_with_knowledge"
    INITIATE_BOOKING = "initiate_booking"
    UPDATE_BOOKING = "update_booking"
    ESCALATE_TO_HUMAN = "escalate_to_human"
    SMALL_TALK = "small_talk"
    CLOSE_CALL = "close_call"
    CLARIFY_INTENT = "clarify_intent"
    NO_OP = "no_op"

    @classmethod
    def parse(cls, value) -> "Action | None":
        """Return the Action for *value*, or None if it is not in the vocabulary."""
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            return None


class Intent(Enum):
    BOOKING = "booking"
    EMERGENCY = "emergency"
    TROUBLESHOOTING = "troubleshooting"
    INFO = "info"
    BILLING = "billing"
    UPDATE_APPOINTMENT = "update_appointment"
    WRONG_NUMBER = "wrong_number"
    SPAM = "spam"
    OTHER = "other"


# Intents that must never overwrite the accumulated call intent.
NON_CUSTOMER_INTENTS = {Intent.WRONG_NUMBER.value, Intent.SPAM.value}
