import json

import httpx
import pytest
import respx

from frontdesk.errors import BookingFailed
from frontdesk.repository import Appointment, BackendRepository, ContactRecord

BACKEND = "https://backend.example.com/api"


@pytest.fixture
def backend():
    return BackendRepository(BACKEND, api_key="key-123")


class TestBackendRepository:
    @respx.mock
    @pytest.mark.asyncio
    async def test_find_appointment_by_call(self, backend):
        route = respx.get(f"{BACKEND}/appointments").mock(return_value=httpx.Response(200, json={
            "items": [{"id": "a1", "company_id": "acme", "call_id": "call_1", "status": "scheduled", "extra": "ignored"}],
        }))
        appt = await backend.find_appointment_by_call("acme", "call_1")
        assert appt.id == "a1"
        assert appt.call_id == "call_1"
        request = route.calls[0].request
        assert request.url.params["call_id"] == "call_1"
        assert request.headers["X-API-Key"] == "key-123"

    @respx.mock
    @pytest.mark.asyncio
    async def test_partial_record_uses_defaults(self, backend):
        respx.get(f"{BACKEND}/appointments").mock(return_value=httpx.Response(200, json=[
            {"id": "a1", "call_id": "call_1", "contact_id": None, "urgency_score": None},
        ]))
        appt = await backend.find_appointment_by_call("acme", "call_1")
        assert appt.id == "a1"
        assert appt.contact_id == ""
        assert appt.location_id == ""
        assert appt.urgency_score == 50

    @respx.mock
    @pytest.mark.asyncio
    async def test_contact_with_only_a_phone(self, backend):
        respx.get(f"{BACKEND}/contacts").mock(return_value=httpx.Response(200, json={
            "items": [{"id": "c1", "phone": "5125551234"}],
        }))
        contact = await backend.find_contact_by_phone("acme", "5125551234")
        assert contact.id == "c1"
        assert contact.company_id == ""
        assert contact.status == "new_lead"

    @respx.mock
    @pytest.mark.asyncio
    async def test_empty_list_is_none(self, backend):
        respx.get(f"{BACKEND}/contacts").mock(return_value=httpx.Response(200, json=[]))
        assert await backend.find_contact_by_phone("acme", "5125551234") is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_404_is_none(self, backend):
        respx.get(f"{BACKEND}/appointments/missing").mock(return_value=httpx.Response(404))
        assert await backend.find_appointment("missing") is None

    @respx.mock
    @pytest.mark.asyncio
    async def test_server_error_raises_booking_failed(self, backend):
        respx.get(f"{BACKEND}/appointments/a1").mock(return_value=httpx.Response(500))
        with pytest.raises(BookingFailed):
            await backend.find_appointment("a1")

    @respx.mock
    @pytest.mark.asyncio
    async def test_invalid_json_raises_booking_failed(self, backend):
        respx.get(f"{BACKEND}/appointments/a1").mock(return_value=httpx.Response(200, text="<html>"))
        with pytest.raises(BookingFailed):
            await backend.find_appointment("a1")

    @respx.mock
    @pytest.mark.asyncio
    async def test_save_contact_puts_record(self, backend):
        contact = ContactRecord(company_id="acme", full_name="John", phone="5125551234")
        route = respx.put(f"{BACKEND}/contacts/{contact.id}").mock(return_value=httpx.Response(200, json={}))
        saved = await backend.save_contact(contact)
        assert saved is contact
        assert json.loads(route.calls[0].request.content)["full_name"] == "John"

    @respx.mock
    @pytest.mark.asyncio
    async def test_create_appointment_returns_backend_record(self, backend):
        appt = Appointment(company_id="acme", contact_id="c1", location_id="l1", call_id="call_1")
        respx.post(f"{BACKEND}/appointments").mock(return_value=httpx.Response(200, json={
            **appt.to_dict(), "id": "existing",
        }))
        saved = await backend.create_appointment(appt)
        assert saved.id == "existing"

    @respx.mock
    @pytest.mark.asyncio
    async def test_circuit_opens_after_failures(self, backend):
        route = respx.get(f"{BACKEND}/appointments/a1").mock(return_value=httpx.Response(502))
        for _ in range(3):
            with pytest.raises(BookingFailed):
                await backend.find_appointment("a1")
        with pytest.raises(BookingFailed, match="circuit breaker open"):
            await backend.find_appointment("a1")
        assert route.call_count == 3
