"""Per-call state carried between turns.

The context is serialized to JSON for the context store. The layout is
versioned by SCHEMA_VERSION; a payload written by a newer schema is
rejected rather than half-read.
"""

import re
import time
from dataclasses import asdict, dataclass, field, fields

SCHEMA_VERSION = 1

# Values the model uses for "I don't know" that must not overwrite real data.
PLACEHOLDER_VALUES = {"", "...", "null", "none", "n/a", "unknown"}


def _snake(key: str) -> str:
    return re.sub(r"(?<=[a-z0-9])([A-Z])", r"_\1", key).lower()


# Keys the model sometimes uses instead of ours.
_KEY_ALIASES = {
    "zip": "postal_code",
    "zip_code": "postal_code",
    "address": "address_line1",
    "gatecode": "gate_code",
}


def _is_blank(value) -> bool:
    if value is None:
        return True
    return str(value).strip().lower() in PLACEHOLDER_VALUES


@dataclass
class Contact:
    name: str = ""
    phone: str = ""
    email: str = ""


@dataclass
class Location:
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""


@dataclass
class Problem:
    summary: str = ""
    category: str = ""
    urgency: str = ""


@dataclass
class Scheduling:
    preferred_date: str = ""
    preferred_window: str = ""


@dataclass
class Access:
    notes: str = ""
    gate_code: str = ""


SECTIONS = {
    "contact": Contact,
    "location": Location,
    "problem": Problem,
    "scheduling": Scheduling,
    "access": Access,
}


def _section_from_dict(section_cls, data) -> object:
    if not isinstance(data, dict):
        return section_cls()
    names = {f.name for f in fields(section_cls)}
    values = {}
    for raw_key, value in data.items():
        key = _KEY_ALIASES.get(_snake(str(raw_key)), _snake(str(raw_key)))
        if key in names and value is not None:
            values[key] = str(value)
    return section_cls(**values)


@dataclass
class Extracted:
    contact: Contact = field(default_factory=Contact)
    location: Location = field(default_factory=Location)
    problem: Problem = field(default_factory=Problem)
    scheduling: Scheduling = field(default_factory=Scheduling)
    access: Access = field(default_factory=Access)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict | None) -> "Extracted":
        data = data or {}
        return cls(**{
            name: _section_from_dict(section_cls, data.get(name))
            for name, section_cls in SECTIONS.items()
        })


def merge_extracted(existing: Extracted, updates: "Extracted | dict | None") -> Extracted:
    """Deep-merge *updates* into *existing*, one sub-object at a time.

    A non-blank value in *updates* wins. A field that is absent or blank in
    *updates* keeps whatever *existing* had, so a merge can never clear data
    that was captured on an earlier turn.
    """
    if isinstance(updates, Extracted):
        updates = updates.to_dict()
    updates = updates or {}

    merged = {}
    for name, section_cls in SECTIONS.items():
        current = asdict(getattr(existing, name))
        incoming = asdict(_section_from_dict(section_cls, updates.get(name)))
        for key, value in incoming.items():
            if not _is_blank(value):
                current[key] = value.strip()
        merged[name] = section_cls(**current)
    return Extracted(**merged)


READINESS_CHECKLIST = (
    "contact name",
    "contact phone",
    "service address",
    "problem summary",
    "time preference",
)


def missing_booking_fields(extracted: Extracted) -> list[str]:
    """Return the readiness checklist items that are still missing."""
    missing = []
    if _is_blank(extracted.contact.name):
        missing.append("contact name")
    if _is_blank(extracted.contact.phone):
        missing.append("contact phone")
    loc = extracted.location
    has_area = not (_is_blank(loc.city) and _is_blank(loc.state) and _is_blank(loc.postal_code))
    if _is_blank(loc.address_line1) or not has_area:
        missing.append("service address")
    if _is_blank(extracted.problem.summary):
        missing.append("problem summary")
    sched = extracted.scheduling
    if _is_blank(sched.preferred_date) and _is_blank(sched.preferred_window):
        missing.append("time preference")
    return missing


@dataclass
class TranscriptEntry:
    role: str  # "caller" | "agent"
    text: str
    timestamp: float = field(default_factory=time.time)


@dataclass
class TierTraceEntry:
    tier: int
    action: str
    timestamp: float = field(default_factory=time.time)
    intent: str = ""
    confidence: float = 0.0
    source_id: str = ""
    reasoning: str = ""
    cost: float = 0.0


@dataclass
class CallContext:
    call_id: str
    company_id: str
    trade: str = ""
    current_intent: str = ""
    extracted: Extracted = field(default_factory=Extracted)
    transcript: list[TranscriptEntry] = field(default_factory=list)
    tier_trace: list[TierTraceEntry] = field(default_factory=list)
    ready_to_book: bool = False
    appointment_id: str = ""
    config_version: int = 1
    created_at: float = field(default_factory=time.time)
    updated_at: float = 0.0

    def append_transcript(self, role: str, text: str, timestamp: float | None = None) -> None:
        entry = TranscriptEntry(role=role, text=text)
        if timestamp is not None:
            entry.timestamp = timestamp
        self.transcript.append(entry)

    def add_tier_resolution(self, entry: TierTraceEntry) -> None:
        self.tier_trace.append(entry)

    def recent_transcript(self, turns: int = 3) -> str:
        return "\n".join(f"{t.role}: {t.text}" for t in self.transcript[-turns:])

    def to_dict(self) -> dict:
        data = asdict(self)
        data["schema_version"] = SCHEMA_VERSION
        return data

    @classmethod
    def from_dict(cls, data: dict) -> "CallContext":
        version = data.get("schema_version", SCHEMA_VERSION)
        if version > SCHEMA_VERSION:
            raise ValueError(f"context schema v{version} is newer than supported v{SCHEMA_VERSION}")

        return cls(
            call_id=data["call_id"],
            company_id=data["company_id"],
            trade=data.get("trade") or "",
            current_intent=data.get("current_intent") or "",
            extracted=Extracted.from_dict(data.get("extracted")),
            transcript=[TranscriptEntry(**t) for t in data.get("transcript", [])],
            tier_trace=[TierTraceEntry(**t) for t in data.get("tier_trace", [])],
            ready_to_book=bool(data.get("ready_to_book", False)),
            appointment_id=data.get("appointment_id") or "",
            config_version=int(data.get("config_version", 1)),
            created_at=float(data.get("created_at", 0.0)),
            updated_at=float(data.get("updated_at", 0.0)),
        )
