import json

import httpx
import pytest
import respx

from frontdesk.errors import LLMError
from frontdesk.llm import OPENAI_CHAT_URL, ChatClient


def _completion(content: str) -> dict:
    return {"choices": [{"message": {"role": "assistant", "content": content}}]}


@pytest.fixture
def chat():
    return ChatClient(api_key="sk-test", model="gpt-4o-mini")


class TestChatClient:
    @respx.mock
    @pytest.mark.asyncio
    async def test_returns_message_content(self, chat):
        route = respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(200, json=_completion("Hello!")))
        text = await chat.complete("system prompt", "user prompt", temperature=0.7, max_tokens=300)
        assert text == "Hello!"

        request = route.calls[0].request
        assert request.headers["Authorization"] == "Bearer sk-test"
        body = json.loads(request.content)
        assert body["model"] == "gpt-4o-mini"
        assert body["temperature"] == 0.7
        assert body["max_tokens"] == 300
        assert body["messages"][0] == {"role": "system", "content": "system prompt"}
        assert "response_format" not in body

    @respx.mock
    @pytest.mark.asyncio
    async def test_json_mode(self, chat):
        route = respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(200, json=_completion("{}")))
        await chat.complete("s", "u", json_mode=True)
        assert json.loads(route.calls[0].request.content)["response_format"] == {"type": "json_object"}

    @respx.mock
    @pytest.mark.asyncio
    async def test_http_error_raises_llm_error(self, chat):
        respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(500))
        with pytest.raises(LLMError):
            await chat.complete("s", "u")

    @respx.mock
    @pytest.mark.asyncio
    async def test_timeout_raises_llm_error(self, chat):
        respx.post(OPENAI_CHAT_URL).mock(side_effect=httpx.ReadTimeout("slow"))
        with pytest.raises(LLMError, match="timed out"):
            await chat.complete("s", "u")

    @respx.mock
    @pytest.mark.asyncio
    async def test_malformed_body_raises_llm_error(self, chat):
        respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(200, json={"choices": []}))
        with pytest.raises(LLMError):
            await chat.complete("s", "u")

    @respx.mock
    @pytest.mark.asyncio
    async def test_null_content_is_empty_string(self, chat):
        respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(200, json=_completion(None)))
        assert await chat.complete("s", "u") == ""

    @respx.mock
    @pytest.mark.asyncio
    async def test_circuit_opens_after_three_failures(self, chat):
        route = respx.post(OPENAI_CHAT_URL).mock(return_value=httpx.Response(503))
        for _ in range(3):
            with pytest.raises(LLMError):
                await chat.complete("s", "u")
        with pytest.raises(LLMError, match="circuit breaker open"):
            await chat.complete("s", "u")
        assert route.call_count == 3
