"""Booking rule selection.

Rules come from company configuration and are advisory: when no rule
applies the booking still goes ahead, just without rule metadata.
"""

import logging
from dataclasses import dataclass, field
from datetime import date, datetime

logger = logging.getLogger(__name__)

PRIORITY_RANK = {"emergency": 0, "high": 1, "normal": 2}
DAY_NAMES = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]  # date.weekday() order


@dataclass
class BookingRule:
    id: str = ""
    trade: str = ""
    service_type: str = ""
    priority: str = "normal"
    days_of_week: list[str] = field(default_factory=list)
    weekend_allowed: bool = True
    same_day_allowed: bool = True
    time_window: dict = field(default_factory=dict)
    label: str = ""
    notes: str = ""

    @classmethod
    def from_dict(cls, data: dict) -> "BookingRule":
        priority = (data.get("priority") or "normal").lower()
        if priority not in PRIORITY_RANK:
            priority = "normal"
        return cls(
            id=str(data.get("id", "")),
            trade=data.get("trade") or "",
            service_type=data.get("serviceType", data.get("service_type")) or "",
            priority=priority,
            days_of_week=[d[:3].title() for d in data.get("daysOfWeek", data.get("days_of_week")) or []],
            weekend_allowed=data.get("weekendAllowed", data.get("weekend_allowed", True)) is not False,
            same_day_allowed=data.get("sameDayAllowed", data.get("same_day_allowed", True)) is not False,
            time_window=data.get("timeWindow", data.get("time_window")) or {},
            label=data.get("label") or "",
            notes=data.get("notes") or "",
        )

    def metadata(self) -> dict:
        """Snapshot stored on the appointment as ``booking_rule_applied``."""
        return {
            "rule_id": self.id,
            "label": self.label,
            "trade": self.trade or "any",
            "service_type": self.service_type or "any",
            "priority": self.priority,
            "notes": self.notes,
        }


@dataclass
class BookingContext:
    trade: str = ""
    service_type: str = ""
    priority: str = "normal"
    requested_date: date | None = None
    is_emergency: bool = False


def parse_requested_date(value) -> date | None:
    """Accept a date, datetime, or ISO date string. Anything else is None."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value).strip()[:10])
    except ValueError:
        return None


def validate_booking_rule(rule: BookingRule, ctx: BookingContext, today: date | None = None) -> tuple[bool, list[str]]:
    """Check a rule's hard constraints. Returns (is_valid, reasons)."""
    reasons = []
    requested = ctx.requested_date
    if requested is None:
        return True, reasons

    day = DAY_NAMES[requested.weekday()]
    if rule.days_of_week and day not in rule.days_of_week:
        reasons.append(f"Requested day {day} not in allowed days: {','.join(rule.days_of_week)}")

    if not rule.weekend_allowed and requested.weekday() >= 5:
        reasons.append("Weekend booking not allowed by this rule")

    today = today or date.today()
    if not rule.same_day_allowed and requested == today:
        reasons.append("Same-day booking not allowed by this rule")

    return not reasons, reasons


def select_booking_rule(
    rules: list[BookingRule],
    ctx: BookingContext,
    today: date | None = None,
) -> BookingRule | None:
    if not rules:
        logger.info("No booking rules configured")
        return None

    candidates = [
        r for r in rules
        if (not r.trade or r.trade == ctx.trade)
        and (not r.service_type or r.service_type == ctx.service_type)
    ]
    logger.info(
        "Booking rules: %d configured, %d match trade=%r service_type=%r",
        len(rules), len(candidates), ctx.trade, ctx.service_type,
    )

    # sorted() is stable, so config order breaks ties within a priority.
    for rule in sorted(candidates, key=lambda r: PRIORITY_RANK.get(r.priority, 2)):
        ok, reasons = validate_booking_rule(rule, ctx, today=today)
        if ok:
            logger.info("Selected booking rule %r (priority=%s)", rule.label, rule.priority)
            return rule
        logger.info("Booking rule %r rejected: %s", rule.label, "; ".join(reasons))

    logger.info("No booking rule passed validation, booking without rule")
    return None
