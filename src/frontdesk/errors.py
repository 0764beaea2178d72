"""Error taxonomy for the turn engine.

Only BookingFailed and a failed knowledge bridge change what the caller
hears; every other error is absorbed where it happens and the turn
continues with a safe reply.
"""


class FrontdeskError(Exception):
    """Base class for engine errors."""


class ContextUnavailable(FrontdeskError):
    """The context store could not be read or written."""


class MalformedDecision(FrontdeskError):
    """The model returned something that is not a usable decision."""

    def __init__(self, message: str, raw: str = ""):
        super().__init__(message)
        self.raw = raw


class LLMError(FrontdeskError):
    """A chat completion failed, timed out, or was skipped by the circuit breaker."""


class KnowledgeLookupFailed(FrontdeskError):
    """The tiered knowledge resolver could not produce a result."""


class BookingFailed(FrontdeskError):
    """Persisting the contact, location or appointment failed."""


class TraceLoggingFailed(FrontdeskError):
    """Recording a turn trace failed. Logged, never surfaced."""
