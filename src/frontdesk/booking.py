"""Appointment materialization.

Turns a ready-to-book call context into Contact, Location and Appointment
records, exactly once per call.
"""

import logging
from dataclasses import dataclass
from datetime import date

from frontdesk.booking_rules import BookingContext, BookingRule, parse_requested_date, select_booking_rule
from frontdesk.context import Access, CallContext, Contact, Location
from frontdesk.errors import BookingFailed
from frontdesk.repository import Appointment, ContactRecord, LocationRecord
from frontdesk.runtime_config import RuntimeConfig
from frontdesk.validation import normalize_phone, validate_name, validate_postal_code

logger = logging.getLogger(__name__)

UNKNOWN_CALLER = "Unknown Caller"
PLACEHOLDER_ADDRESS = "Address TBD"

PRIORITY_KEYWORDS = [
    "emergency", "urgent", "flooding", "leak", "burst", "fire",
    "electrical", "gas", "dangerous", "immediately",
]
URGENCY_KEYWORDS = ["emergency", "urgent", "immediately"]

# Appointment priority -> booking rule priority.
RULE_PRIORITY = {"emergency": "emergency", "high": "high", "routine": "normal"}


def determine_priority(problem_text: str, service_type: str) -> str:
    """Return "emergency", "high" or "routine"."""
    lower = (problem_text or "").lower()
    if any(kw in lower for kw in PRIORITY_KEYWORDS) or service_type == "emergency":
        return "emergency"
    if service_type == "repair":
        return "high"
    return "routine"


def calculate_urgency_score(
    problem_text: str,
    service_type: str,
    requested_date: date | None,
    today: date | None = None,
) -> int:
    """Heuristic 0-100 score: keywords, service type, and how soon."""
    score = 50
    lower = (problem_text or "").lower()
    score += 15 * sum(1 for kw in URGENCY_KEYWORDS if kw in lower)

    if service_type == "emergency":
        score += 30
    elif service_type == "repair":
        score += 10

    if requested_date is not None:
        days_out = (requested_date - (today or date.today())).days
        if days_out <= 0:
            score += 20
        elif days_out == 1:
            score += 15
        elif days_out <= 3:
            score += 10

    return max(0, min(100, score))


@dataclass
class BookingOutcome:
    appointment: Appointment
    created: bool
    rule: BookingRule | None = None
    address: str = ""


def _address_text(loc: LocationRecord) -> str:
    if loc.address_line1 == PLACEHOLDER_ADDRESS:
        return ""
    parts = [loc.address_line1, loc.city, loc.state]
    text = ", ".join(p for p in parts if p)
    if loc.postal_code:
        text = f"{text} {loc.postal_code}".strip()
    return text


class AppointmentMaterializer:
    def __init__(self, repository):
        self._repo = repository

    async def materialize(
        self,
        ctx: CallContext,
        config: RuntimeConfig,
        today: date | None = None,
    ) -> BookingOutcome:
        """Create the call's appointment, or return the one it already has.

        Raises BookingFailed on any persistence error.
        """
        try:
            return await self._materialize(ctx, config, today or date.today())
        except BookingFailed:
            raise
        except Exception as e:
            logger.error("Booking failed for call %s: %s", ctx.call_id, e)
            raise BookingFailed(str(e)) from e

    async def _materialize(self, ctx: CallContext, config: RuntimeConfig, today: date) -> BookingOutcome:
        existing = None
        if ctx.appointment_id:
            existing = await self._repo.find_appointment(ctx.appointment_id)
        if existing is None:
            existing = await self._repo.find_appointment_by_call(ctx.company_id, ctx.call_id)
        if existing is not None:
            logger.info("Call %s already has appointment %s", ctx.call_id, existing.id)
            return BookingOutcome(appointment=existing, created=False)

        extracted = ctx.extracted
        contact = await self.resolve_contact(ctx.company_id, extracted.contact)
        location = await self.resolve_location(ctx.company_id, contact.id, extracted.location, extracted.access)

        problem = extracted.problem
        is_emergency = problem.urgency.lower() == "emergency"
        service_type = problem.category or ("emergency" if is_emergency else "repair")
        requested = parse_requested_date(extracted.scheduling.preferred_date) or today

        if is_emergency:
            priority, urgency_score = "emergency", 100
        else:
            priority = determine_priority(problem.summary, service_type)
            urgency_score = calculate_urgency_score(problem.summary, service_type, requested, today)

        rule = select_booking_rule(
            config.booking_rules,
            BookingContext(
                trade=ctx.trade or config.trade,
                service_type=service_type,
                priority=RULE_PRIORITY[priority],
                requested_date=requested,
                is_emergency=is_emergency,
            ),
            today=today,
        )

        window = extracted.scheduling.preferred_window
        if not window and rule is not None and rule.time_window:
            start, end = rule.time_window.get("start", ""), rule.time_window.get("end", "")
            window = f"{start}-{end}" if start and end else ""

        appointment = Appointment(
            company_id=ctx.company_id,
            contact_id=contact.id,
            location_id=location.id,
            call_id=ctx.call_id,
            trade=ctx.trade or config.trade,
            service_type=service_type,
            scheduled_date=requested.isoformat(),
            time_window=window,
            priority=priority,
            urgency_score=urgency_score,
            booking_rule_applied=rule.metadata() if rule is not None else None,
            notes_for_tech=problem.summary,
            access_notes=location.access_notes,
        )
        saved = await self._repo.create_appointment(appointment)
        created = saved.id == appointment.id
        logger.info(
            "Appointment %s for call %s: %s on %s (priority=%s, score=%d, rule=%s)",
            "created" if created else "already existed", ctx.call_id, service_type,
            saved.scheduled_date, saved.priority, saved.urgency_score, rule.label if rule else None,
        )
        return BookingOutcome(appointment=saved, created=created, rule=rule, address=_address_text(location))

    async def resolve_contact(self, company_id: str, contact: Contact) -> ContactRecord:
        name = validate_name(contact.name)
        phone = normalize_phone(contact.phone)

        if not phone:
            record = ContactRecord(company_id=company_id, full_name=name or UNKNOWN_CALLER, email=contact.email)
            return await self._repo.save_contact(record)

        record = await self._repo.find_contact_by_phone(company_id, phone)
        if record is None:
            record = ContactRecord(
                company_id=company_id,
                full_name=name or UNKNOWN_CALLER,
                phone=phone,
                email=contact.email,
            )
            logger.info("New lead contact for phone ending %s", phone[-4:])
            return await self._repo.save_contact(record)

        # Returning caller: fill gaps, never overwrite.
        if name and record.full_name in ("", UNKNOWN_CALLER):
            record.full_name = name
        if contact.email and not record.email:
            record.email = contact.email
        if record.status == "new_lead":
            record.status = "customer"
        return await self._repo.save_contact(record)

    async def resolve_location(
        self,
        company_id: str,
        contact_id: str,
        location: Location,
        access: Access,
    ) -> LocationRecord:
        notes = access.notes
        if access.gate_code:
            notes = f"{notes} Gate code: {access.gate_code}".strip()

        line1 = location.address_line1.strip()
        postal = validate_postal_code(location.postal_code)
        if not line1:
            logger.info("No street address, using placeholder location")
            record = LocationRecord(
                company_id=company_id,
                contact_id=contact_id,
                address_line1=PLACEHOLDER_ADDRESS,
                city=location.city,
                state=location.state,
                access_notes=notes,
            )
            return await self._repo.save_location(record)

        # Without a postal code there is no reliable key to match on.
        record = await self._repo.find_location(company_id, line1, postal) if postal else None
        if record is None:
            record = LocationRecord(
                company_id=company_id,
                contact_id=contact_id,
                address_line1=line1,
                address_line2=location.address_line2,
                city=location.city,
                state=location.state,
                postal_code=postal,
                access_notes=notes,
            )
            return await self._repo.save_location(record)

        if notes and not record.access_notes:
            record.access_notes = notes
            record = await self._repo.save_location(record)
        return record
