"""Process settings.

Read from the environment (``.env`` is loaded by the server entry point).
``validate_config`` is called at startup so a missing key fails loudly
before the first call instead of in the middle of one.
"""

import logging
import os
import sys
from dataclasses import dataclass

logger = logging.getLogger(__name__)

REQUIRED_VARS = [
    "OPENAI_API_KEY",
    "REDIS_URL",
]

OPTIONAL_VARS = [
    "BACKEND_URL",
    "BACKEND_API_KEY",
    "TRACE_URL",
    "TRACE_SECRET",
    "COMPANY_CONFIG_PATH",
    "LLM_MODEL",
    "LLM_TIMEOUT_S",
    "KNOWLEDGE_TIMEOUT_S",
    "CONTEXT_TTL_SECONDS",
    "LOG_LEVEL",
]


def validate_config() -> None:
    """Exit with a clear error if a required variable is missing or empty.

    Logs a warning for each missing optional variable.
    """
    missing = [var for var in REQUIRED_VARS if not os.getenv(var)]

    if missing:
        print(
            f"\nFATAL: Missing required environment variables:\n"
            f"  {', '.join(missing)}\n"
            f"\nSet them in .env (local) or in the deployment's secrets.\n",
            file=sys.stderr,
        )
        sys.exit(1)

    for var in OPTIONAL_VARS:
        if not os.getenv(var):
            logger.warning("Optional env var %s is not set", var)


def _float(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    try:
        return float(raw) if raw else default
    except ValueError:
        logger.warning("Invalid %s=%r, using %s", name, raw, default)
        return default


@dataclass
class Settings:
    openai_api_key: str = ""
    redis_url: str = "redis://localhost:6379/0"
    backend_url: str = ""
    backend_api_key: str = ""
    trace_url: str = ""
    trace_secret: str = ""
    company_config_path: str = ""
    llm_model: str = "gpt-4o-mini"
    llm_timeout_s: float = 8.0
    knowledge_timeout_s: float = 4.0
    context_ttl_seconds: int = 3600
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            openai_api_key=os.getenv("OPENAI_API_KEY", ""),
            redis_url=os.getenv("REDIS_URL", "redis://localhost:6379/0"),
            backend_url=os.getenv("BACKEND_URL", ""),
            backend_api_key=os.getenv("BACKEND_API_KEY", ""),
            trace_url=os.getenv("TRACE_URL", ""),
            trace_secret=os.getenv("TRACE_SECRET", ""),
            company_config_path=os.getenv("COMPANY_CONFIG_PATH", ""),
            llm_model=os.getenv("LLM_MODEL", "gpt-4o-mini"),
            llm_timeout_s=_float("LLM_TIMEOUT_S", 8.0),
            knowledge_timeout_s=_float("KNOWLEDGE_TIMEOUT_S", 4.0),
            context_ttl_seconds=int(_float("CONTEXT_TTL_SECONDS", 3600)),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )
