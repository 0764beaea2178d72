"""Company runtime configuration.

The backend's config document is loosely shaped and mostly optional.
``RuntimeConfig.from_dict`` is the single place where that shape is
resolved and every default applied, so the rest of the engine reads plain
attributes and never checks whether a field exists.
"""

import json
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path

import httpx

from frontdesk.booking_rules import BookingRule

logger = logging.getLogger(__name__)

PRICE_VARIABLE_MARKERS = ("price", "cost", "fee", "rate")

DEFAULT_FILLER_WORDS = ["um", "uh", "uhh", "umm", "er", "ah", "hmm", "you know", "i mean"]


@dataclass
class Scenario:
    id: str
    name: str = ""
    category: str = ""
    triggers: list[str] = field(default_factory=list)
    response_text: str = ""
    enabled: bool = True


@dataclass
class QnAEntry:
    id: str
    question: str
    answer: str
    tags: list[str] = field(default_factory=list)
    category: str = ""
    priority: str = "normal"


@dataclass
class TierThresholds:
    tier1: float = 0.8
    tier2: float = 0.6
    tier3: float = 0.5

    def for_tier(self, tier: int) -> float:
        return {1: self.tier1, 2: self.tier2, 3: self.tier3}.get(tier, 0.5)


@dataclass
class RuntimeConfig:
    company_id: str
    name: str = ""
    trade: str = ""
    config_version: int = 1
    variables: dict[str, str] = field(default_factory=dict)
    filler_words: list[str] = field(default_factory=lambda: list(DEFAULT_FILLER_WORDS))
    synonyms: dict[str, str] = field(default_factory=dict)
    scenarios: list[Scenario] = field(default_factory=list)
    qna: list[QnAEntry] = field(default_factory=list)
    knowledge_base: str = ""
    booking_rules: list[BookingRule] = field(default_factory=list)
    thresholds: TierThresholds = field(default_factory=TierThresholds)
    orchestrator_enabled: bool = True
    debug_orchestrator: bool = False
    emergency_service_enabled: bool = False

    @property
    def has_price_variables(self) -> bool:
        return any(
            marker in key.lower()
            for key in self.variables
            for marker in PRICE_VARIABLE_MARKERS
        )

    @property
    def active_scenarios(self) -> list[Scenario]:
        return [s for s in self.scenarios if s.enabled]

    @classmethod
    def from_dict(cls, data: dict, company_id: str = "") -> "RuntimeConfig":
        flags = data.get("flags") or data.get("intelligence") or {}
        thresholds = data.get("thresholds") or {}

        variables = data.get("variables") or {}
        if isinstance(variables, dict) and "values" in variables:
            variables = variables["values"] or {}

        fillers = data.get("fillerWords", data.get("filler_words"))
        if isinstance(fillers, dict):
            fillers = fillers.get("active") or []
        if fillers is None:
            fillers = list(DEFAULT_FILLER_WORDS)

        synonyms = data.get("synonyms") or {}
        if isinstance(synonyms, list):
            synonyms = {
                s.get("term", s.get("from", "")): s.get("canonical", s.get("to", ""))
                for s in synonyms if isinstance(s, dict)
            }

        return cls(
            company_id=str(data.get("companyId", data.get("company_id", company_id))),
            name=data.get("name") or "",
            trade=data.get("trade") or "",
            config_version=int(data.get("configVersion", data.get("config_version", 1)) or 1),
            variables={str(k): str(v) for k, v in variables.items() if v not in (None, "")},
            filler_words=[str(w).lower() for w in fillers if w],
            synonyms={str(k).lower(): str(v).lower() for k, v in synonyms.items() if k and v},
            scenarios=[_scenario(s) for s in data.get("scenarios") or []],
            qna=[_qna(q) for q in data.get("qna") or data.get("companyQnA") or []],
            knowledge_base=data.get("knowledgeBase", data.get("knowledge_base")) or "",
            booking_rules=[BookingRule.from_dict(r) for r in data.get("bookingRules", data.get("booking_rules")) or []],
            thresholds=TierThresholds(
                tier1=float(thresholds.get("tier1", 0.8)),
                tier2=float(thresholds.get("tier2", 0.6)),
                tier3=float(thresholds.get("tier3", 0.5)),
            ),
            orchestrator_enabled=flags.get("orchestratorEnabled", flags.get("orchestrator_enabled", True)) is not False,
            debug_orchestrator=flags.get("debugOrchestrator", flags.get("debug_orchestrator", False)) is True,
            emergency_service_enabled=flags.get(
                "emergencyServiceEnabled", flags.get("emergency_service_enabled", False)
            ) is True,
        )


def _scenario(data: dict) -> Scenario:
    return Scenario(
        id=str(data.get("scenarioId", data.get("id", ""))),
        name=data.get("name") or "",
        category=data.get("category") or "",
        triggers=[str(t).lower() for t in data.get("triggers") or []],
        response_text=data.get("responseText", data.get("response_text")) or "",
        enabled=data.get("isEnabled", data.get("enabled", True)) is not False,
    )


def _qna(data: dict) -> QnAEntry:
    return QnAEntry(
        id=str(data.get("id", "")),
        question=data.get("question") or "",
        answer=data.get("answer") or "",
        tags=[str(t) for t in data.get("tags") or data.get("keywords") or []],
        category=data.get("category") or "",
        priority=data.get("priority") or "normal",
    )


class RuntimeConfigLoader:
    """Fetches company runtime config from the platform backend.

    Configs are cached for ``cache_seconds``. A failed fetch falls back to
    the last cached copy, then to an all-defaults config, so a config
    outage never takes the call down.
    """

    def __init__(
        self,
        base_url: str,
        api_key: str = "",
        timeout: float = 5.0,
        cache_seconds: float = 60.0,
        client: httpx.AsyncClient | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.cache_seconds = cache_seconds
        self._cache: dict[str, tuple[float, RuntimeConfig]] = {}
        if client is not None:
            self._client = client
        else:
            headers = {"Content-Type": "application/json"}
            if api_key:
                headers["X-API-Key"] = api_key
            self._client = httpx.AsyncClient(base_url=self.base_url, headers=headers, timeout=timeout)

    async def close(self):
        await self._client.aclose()

    async def load(self, company_id: str) -> RuntimeConfig:
        cached = self._cache.get(company_id)
        if cached and (time.monotonic() - cached[0]) < self.cache_seconds:
            return cached[1]
        try:
            resp = await self._client.get(f"/companies/{company_id}/runtime-config")
            resp.raise_for_status()
            config = RuntimeConfig.from_dict(resp.json(), company_id=company_id)
        except Exception as e:
            if cached:
                logger.warning("Runtime config fetch failed for %s, using cached copy: %s", company_id, e)
                return cached[1]
            logger.error("Runtime config fetch failed for %s, using defaults: %s", company_id, e)
            return RuntimeConfig(company_id=company_id)
        self._cache[company_id] = (time.monotonic(), config)
        return config


class StaticConfigLoader:
    """Serves configs from memory. Used by the local console and tests."""

    def __init__(self, configs: dict[str, RuntimeConfig]):
        self._configs = configs

    @classmethod
    def from_file(cls, path: str | Path) -> "StaticConfigLoader":
        raw = json.loads(Path(path).read_text())
        return cls({cid: RuntimeConfig.from_dict(doc, company_id=cid) for cid, doc in raw.items()})

    async def load(self, company_id: str) -> RuntimeConfig:
        config = self._configs.get(company_id)
        if config is None:
            logger.warning("No static config for company %s, using defaults", company_id)
            return RuntimeConfig(company_id=company_id)
        return config

    async def close(self):
        pass
