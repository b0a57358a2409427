import asyncio
import json
from datetime import datetime, timezone

import httpx
import pytest

from tutorbridge.service.generation import (
    FALLBACK_MESSAGE,
    CallerIdentity,
    HttpGenerationAdapter,
    detect_format,
)
from tutorbridge.storage.models import Message

SERVICE_URL = "http://generation.test/chat"
CALLER = CallerIdentity(account_id="acct-1", display_name="Demo User", email="demo@example.com")


def _turn(seq, role, content):
    return Message(
        id=f"m{seq}",
        conversation_id="c1",
        role=role,
        content=content,
        seq=seq,
        created_at=datetime.now(timezone.utc),
    )


def _adapter(handler, **kwargs):
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return HttpGenerationAdapter(SERVICE_URL, client=client, **kwargs)


class TestHttpGenerationAdapter:
    async def test_success_builds_request_and_metadata(self):
        """History, the new message and caller headers reach the service."""
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["body"] = json.loads(request.content)
            seen["headers"] = request.headers
            return httpx.Response(
                200,
                json={"response": "Here is **bold** advice", "tool_calls_made": 2, "iterations": 3},
            )

        adapter = _adapter(handler, model_name="llm-backend-v1")
        history = [_turn(1, "user", "Hi"), _turn(2, "assistant", "Hello!")]
        result = await adapter.generate(history, "Help me", caller=CALLER)
        await adapter.aclose()

        assert seen["body"] == {
            "messages": [
                {"role": "user", "content": "Hi"},
                {"role": "assistant", "content": "Hello!"},
                {"role": "user", "content": "Help me"},
            ]
        }
        assert seen["headers"]["X-User-Id"] == "acct-1"
        assert seen["headers"]["X-User-Name"] == "Demo User"
        assert seen["headers"]["X-User-Email"] == "demo@example.com"
        assert result.fallback is False
        assert result.content == "Here is **bold** advice"
        assert result.format == "markdown"
        assert result.metadata == {
            "model": "llm-backend-v1",
            "tokens": len("Here is **bold** advice") // 4,
            "processing_time_ms": 300,
            "tool_calls": 2,
            "iterations": 3,
        }

    async def test_optional_counters_default_to_zero(self):
        adapter = _adapter(lambda request: httpx.Response(200, json={"response": "plain reply"}))
        result = await adapter.generate([], "hi", caller=CALLER)
        assert result.format == "text"
        assert result.metadata["iterations"] == 0
        assert result.metadata["processing_time_ms"] == 0

    @pytest.mark.parametrize(
        "response",
        [
            httpx.Response(500, json={"error": "boom"}),
            httpx.Response(404),
            httpx.Response(302, json={"response": "cached reply", "iterations": 1}),
            httpx.Response(200, json={"unexpected": "shape"}),
            httpx.Response(200, json={"response": 42}),
            httpx.Response(200, content=b"<html>not json</html>"),
        ],
    )
    async def test_bad_responses_fall_back(self, response):
        """Non-2xx and malformed bodies become the fallback reply."""
        adapter = _adapter(lambda request: response, model_name="m1")
        result = await adapter.generate([], "hi", caller=CALLER)
        assert result.fallback is True
        assert result.content == FALLBACK_MESSAGE
        assert result.format == "text"
        assert result.metadata == {"model": "m1", "tokens": 0, "processing_time_ms": 0, "fallback": True}

    async def test_network_error_falls_back(self):
        def handler(request):
            raise httpx.ConnectError("connection refused", request=request)

        result = await _adapter(handler).generate([], "hi", caller=CALLER)
        assert result.fallback is True

    async def test_timeout_falls_back(self):
        """A service slower than the deadline yields the fallback."""

        async def handler(request):
            await asyncio.sleep(1)
            return httpx.Response(200, json={"response": "too late"})

        result = await _adapter(handler, timeout_seconds=0.05).generate([], "hi", caller=CALLER)
        assert result.fallback is True

    async def test_cancellation_propagates(self):
        """Cancelling the caller aborts the call instead of falling back."""

        async def handler(request):
            await asyncio.sleep(5)
            return httpx.Response(200, json={"response": "never"})

        adapter = _adapter(handler, timeout_seconds=10)
        task = asyncio.create_task(adapter.generate([], "hi", caller=CALLER))
        await asyncio.sleep(0.01)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task

    async def test_aclose_releases_lazy_client(self):
        adapter = HttpGenerationAdapter(SERVICE_URL)
        client = await adapter._get_client()
        assert await adapter._get_client() is client
        await adapter.aclose()
        assert client.is_closed
        assert adapter._client is None


class TestDetectFormat:
    @pytest.mark.parametrize(
        "text",
        [
            "```python\nprint('x')\n```",
            "use `pip install`",
            "# Heading",
            "### Smaller heading",
            "this is **important**",
            "this is __important__",
            "- first\n- second",
            "1. first\n2. second",
            "see [docs](https://example.com)",
            "> quoted",
            "| a | b |",
            "above\n---\nbelow",
            "~~struck~~",
        ],
    )
    def test_markdown_constructs(self, text):
        assert detect_format(text) == "markdown"

    @pytest.mark.parametrize(
        "text",
        [
            "Hello! How can I help you today?",
            "The answer is 42.",
            "Photosynthesis turns light into chemical energy.",
        ],
    )
    def test_plain_text(self, text):
        assert detect_format(text) == "text"
