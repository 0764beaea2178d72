"""Contact / Location / Appointment persistence.

Two backends with the same async surface: ``BackendRepository`` talks to
the platform backend over HTTP, ``InMemoryRepository`` keeps everything in
dicts for the local console and tests. Both raise BookingFailed on any
persistence error.
"""

import logging
import uuid
from dataclasses import asdict, dataclass, field, fields

import httpx

from frontdesk.circuit_breaker import CircuitBreaker
from frontdesk.errors import BookingFailed

logger = logging.getLogger(__name__)


def _new_id() -> str:
    return uuid.uuid4().hex


def _from_record(cls, data: dict):
    names = {f.name for f in fields(cls)}
    # Missing or null fields fall back to the dataclass defaults.
    return cls(**{k: v for k, v in data.items() if k in names and v is not None})


@dataclass
class ContactRecord:
    company_id: str = ""
    full_name: str = ""
    phone: str = ""
    email: str = ""
    status: str = "new_lead"  # new_lead | customer
    lead_source: str = "phone_call"
    id: str = field(default_factory=_new_id)


@dataclass
class LocationRecord:
    company_id: str = ""
    contact_id: str = ""
    address_line1: str = ""
    address_line2: str = ""
    city: str = ""
    state: str = ""
    postal_code: str = ""
    access_notes: str = ""
    location_type: str = "residential"
    id: str = field(default_factory=_new_id)


@dataclass
class Appointment:
    company_id: str = ""
    contact_id: str = ""
    location_id: str = ""
    call_id: str = ""
    trade: str = ""
    service_type: str = ""
    status: str = "scheduled"
    scheduled_date: str = ""
    time_window: str = ""
    priority: str = "routine"
    urgency_score: int = 50
    booking_rule_applied: dict | None = None
    notes_for_tech: str = ""
    access_notes: str = ""
    id: str = field(default_factory=_new_id)

    def to_dict(self) -> dict:
        return asdict(self)


class InMemoryRepository:
    def __init__(self):
        self.contacts: dict[str, ContactRecord] = {}
        self.locations: dict[str, LocationRecord] = {}
        self.appointments: dict[str, Appointment] = {}

    async def close(self):
        pass

    async def find_appointment(self, appointment_id: str) -> Appointment | None:
        return self.appointments.get(appointment_id)

    async def find_appointment_by_call(self, company_id: str, call_id: str) -> Appointment | None:
        for appt in self.appointments.values():
            if appt.company_id == company_id and appt.call_id == call_id:
                return appt
        return None

    async def find_contact_by_phone(self, company_id: str, phone: str) -> ContactRecord | None:
        for contact in self.contacts.values():
            if contact.company_id == company_id and contact.phone == phone:
                return contact
        return None

    async def save_contact(self, contact: ContactRecord) -> ContactRecord:
        self.contacts[contact.id] = contact
        return contact

    async def find_location(self, company_id: str, address_line1: str, postal_code: str) -> LocationRecord | None:
        key = address_line1.strip().lower()
        for loc in self.locations.values():
            if loc.company_id == company_id and loc.address_line1.strip().lower() == key and loc.postal_code == postal_code:
                return loc
        return None

    async def save_location(self, location: LocationRecord) -> LocationRecord:
        self.locations[location.id] = location
        return location

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        # (company_id, call_id) is unique: a second insert returns the first.
        existing = await self.find_appointment_by_call(appointment.company_id, appointment.call_id)
        if existing is not None:
            return existing
        self.appointments[appointment.id] = appointment
        return appointment


class BackendRepository:
    """HTTP repository against the platform backend.

    Wrapped in a circuit breaker like the other outbound clients: while it
    is open every call raises BookingFailed immediately.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 10.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._circuit = CircuitBreaker(failure_threshold=3, cooldown_seconds=60.0, label="backend repository")
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def _request(self, method: str, path: str, label: str, **kwargs) -> dict | list | None:
        if not self._circuit.should_try():
            raise BookingFailed(f"{label}: backend circuit breaker open")
        try:
            resp = await self._client.request(method, path, **kwargs)
            if resp.status_code == 404:
                self._circuit.record_success()
                return None
            resp.raise_for_status()
            self._circuit.record_success()
            return resp.json()
        except httpx.HTTPError as e:
            self._circuit.record_failure()
            logger.error("%s failed: %s", label, e)
            raise BookingFailed(f"{label} failed: {e}") from e
        except ValueError as e:
            self._circuit.record_failure()
            logger.error("%s returned invalid JSON: %s", label, e)
            raise BookingFailed(f"{label} returned invalid JSON") from e

    @staticmethod
    def _first(body) -> dict | None:
        """List endpoints return ``{"items": [...]}`` or a bare list."""
        if isinstance(body, dict):
            body = body.get("items", [body] if body.get("id") else [])
        if isinstance(body, list) and body:
            return body[0]
        return None

    async def find_appointment(self, appointment_id: str) -> Appointment | None:
        body = await self._request("GET", f"/appointments/{appointment_id}", "find_appointment")
        return _from_record(Appointment, body) if isinstance(body, dict) and body else None

    async def find_appointment_by_call(self, company_id: str, call_id: str) -> Appointment | None:
        body = await self._request(
            "GET", "/appointments", "find_appointment_by_call",
            params={"company_id": company_id, "call_id": call_id},
        )
        record = self._first(body)
        return _from_record(Appointment, record) if record else None

    async def find_contact_by_phone(self, company_id: str, phone: str) -> ContactRecord | None:
        body = await self._request(
            "GET", "/contacts", "find_contact_by_phone",
            params={"company_id": company_id, "phone": phone},
        )
        record = self._first(body)
        return _from_record(ContactRecord, record) if record else None

    async def save_contact(self, contact: ContactRecord) -> ContactRecord:
        body = await self._request("PUT", f"/contacts/{contact.id}", "save_contact", json=asdict(contact))
        return _from_record(ContactRecord, body) if isinstance(body, dict) and body else contact

    async def find_location(self, company_id: str, address_line1: str, postal_code: str) -> LocationRecord | None:
        body = await self._request(
            "GET", "/locations", "find_location",
            params={"company_id": company_id, "address_line1": address_line1, "postal_code": postal_code},
        )
        record = self._first(body)
        return _from_record(LocationRecord, record) if record else None

    async def save_location(self, location: LocationRecord) -> LocationRecord:
        body = await self._request("PUT", f"/locations/{location.id}", "save_location", json=asdict(location))
        return _from_record(LocationRecord, body) if isinstance(body, dict) and body else location

    async def create_appointment(self, appointment: Appointment) -> Appointment:
        # The backend enforces (company_id, call_id) uniqueness and answers
        # with the existing appointment on conflict.
        body = await self._request("POST", "/appointments", "create_appointment", json=appointment.to_dict())
        return _from_record(Appointment, body) if isinstance(body, dict) and body else appointment
