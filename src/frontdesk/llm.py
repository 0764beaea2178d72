import logging

import httpx

from frontdesk.circuit_breaker import CircuitBreaker
from frontdesk.errors import LLMError

logger = logging.getLogger(__name__)

OPENAI_CHAT_URL = "https://api.openai.com/v1/chat/completions"
DEFAULT_MODEL = "gpt-4o-mini"


class ChatClient:
    """Minimal chat-completion client: ``{system, user} -> text``.

    Every failure (timeout, HTTP error, malformed body, open circuit) is
    raised as LLMError so callers have a single thing to catch.
    """

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        timeout: float = 8.0,
        url: str = OPENAI_CHAT_URL,
        client: httpx.AsyncClient | None = None,
    ):
        self.model = model
        self.url = url
        self._circuit = CircuitBreaker(failure_threshold=3, cooldown_seconds=30.0, label="LLM")
        if client is not None:
            self._client = client
        else:
            self._client = httpx.AsyncClient(
                headers={"Authorization": f"Bearer {api_key}"},
                timeout=timeout,
            )

    async def close(self):
        await self._client.aclose()

    async def complete(
        self,
        system: str,
        user: str,
        temperature: float = 0.2,
        max_tokens: int = 800,
        json_mode: bool = False,
    ) -> str:
        if not self._circuit.should_try():
            raise LLMError("LLM circuit breaker open")

        body = {
            "model": self.model,
            "temperature": temperature,
            "max_tokens": max_tokens,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
        }
        if json_mode:
            body["response_format"] = {"type": "json_object"}

        try:
            resp = await self._client.post(self.url, json=body)
            resp.raise_for_status()
            content = resp.json()["choices"][0]["message"]["content"]
        except httpx.TimeoutException as e:
            self._circuit.record_failure()
            raise LLMError(f"LLM request timed out: {e}") from e
        except (httpx.HTTPError, KeyError, IndexError, TypeError, ValueError) as e:
            self._circuit.record_failure()
            raise LLMError(f"LLM request failed: {e}") from e

        self._circuit.record_success()
        return content or ""
