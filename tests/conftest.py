import json
from unittest.mock import AsyncMock

import pytest

from frontdesk.booking import AppointmentMaterializer
from frontdesk.context import CallContext
from frontdesk.context_store import ContextStore
from frontdesk.engine import FrontdeskEngine
from frontdesk.knowledge import KnowledgeBridge, KnowledgeResolver
from frontdesk.orchestrator import TurnOrchestrator
from frontdesk.repository import InMemoryRepository
from frontdesk.runtime_config import RuntimeConfig, StaticConfigLoader
from frontdesk.trace import TraceRecorder


class FakeRedis:
    """Dict-backed stand-in for redis.asyncio.Redis (get/set/delete only)."""

    def __init__(self):
        self.data: dict[str, str] = {}
        self.ttls: dict[str, int] = {}
        self.fail = False

    def _check(self):
        if self.fail:
            raise ConnectionError("redis down")

    async def get(self, key):
        self._check()
        return self.data.get(key)

    async def set(self, key, value, ex=None):
        self._check()
        self.data[key] = value
        self.ttls[key] = ex
        return True

    async def delete(self, key):
        self._check()
        return 1 if self.data.pop(key, None) is not None else 0

    async def aclose(self):
        pass


COMPANY_DOC = {
    "companyId": "acme",
    "name": "ACME Heating & Air",
    "trade": "HVAC",
    "configVersion": 3,
    "variables": {"serviceArea": "Phoenix metro"},
    "synonyms": [{"term": "ac", "canonical": "air conditioner"}],
    "scenarios": [
        {
            "scenarioId": "hours",
            "name": "Business hours",
            "triggers": ["hours", "what time do you open", "are you open"],
            "responseText": "We're open Monday through Friday, 8am to 5pm.",
        },
        {
            "scenarioId": "disabled",
            "triggers": ["financing"],
            "responseText": "We offer financing.",
            "isEnabled": False,
        },
    ],
    "qna": [
        {
            "id": "q-area",
            "question": "What areas do you service?",
            "answer": "We service the Phoenix metro area, including Mesa and Tempe.",
            "tags": ["service area", "mesa", "tempe"],
        },
        {
            "id": "q-warranty",
            "question": "Do you warranty your repairs?",
            "answer": "All repairs come with a 1-year parts and labor warranty.",
            "tags": ["warranty", "guarantee"],
            "priority": "high",
        },
    ],
    "knowledgeBase": "ACME has been in business since 1998. Technicians are NATE certified.",
    "bookingRules": [
        {
            "id": "r-weekday",
            "trade": "HVAC",
            "priority": "normal",
            "daysOfWeek": ["Mon", "Tue", "Wed", "Thu", "Fri"],
            "weekendAllowed": False,
            "timeWindow": {"start": "08:00", "end": "12:00"},
            "label": "Weekday mornings",
        },
    ],
    "flags": {"orchestratorEnabled": True},
}


@pytest.fixture
def company_doc():
    return json.loads(json.dumps(COMPANY_DOC))


@pytest.fixture
def config(company_doc):
    return RuntimeConfig.from_dict(company_doc)


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def store(fake_redis):
    return ContextStore(fake_redis, ttl_seconds=600)


@pytest.fixture
def ctx():
    return CallContext(call_id="call_1", company_id="acme", trade="HVAC")


@pytest.fixture
def llm():
    """Chat client double. Tests set ``llm.complete.side_effect`` / ``return_value``."""
    client = AsyncMock()
    client.complete.return_value = ""
    return client


@pytest.fixture
def repository():
    return InMemoryRepository()


@pytest.fixture
def recorder():
    return TraceRecorder(url="")


@pytest.fixture
def make_engine(store, llm, repository, recorder, config):
    def _make(company_config: RuntimeConfig | None = None) -> FrontdeskEngine:
        cfg = company_config or config
        resolver = KnowledgeResolver.default(llm, tier_timeout=1.0)
        return FrontdeskEngine(
            store=store,
            config_loader=StaticConfigLoader({cfg.company_id: cfg}),
            orchestrator=TurnOrchestrator(llm, timeout=1.0),
            bridge=KnowledgeBridge(resolver, llm, reshape_timeout=1.0),
            materializer=AppointmentMaterializer(repository),
            recorder=recorder,
        )
    return _make


def decision_json(action: str, next_prompt: str, **extra) -> str:
    return json.dumps({"action": action, "next_prompt": next_prompt, **extra})
