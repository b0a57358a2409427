from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol, Sequence

import httpx
from pydantic import BaseModel, ConfigDict
from pydantic import ValidationError as PydanticValidationError

from tutorbridge.logging import get_logger
from tutorbridge.service.errors import UpstreamUnavailableError
from tutorbridge.storage.models import FORMAT_MARKDOWN, FORMAT_TEXT, Message

logger = get_logger(__name__)

FALLBACK_MESSAGE = (
    "I'm having trouble processing your message right now. Please try again."
)
DEFAULT_MODEL_NAME = "llm-backend-v1"

_MARKDOWN_PATTERNS = [
    re.compile(r"```[\s\S]*?```"),
    re.compile(r"`[^`]+`"),
    re.compile(r"^#{1,6}\s", re.MULTILINE),
    re.compile(r"\*\*.*?\*\*", re.DOTALL),
    re.compile(r"__.*?__", re.DOTALL),
    re.compile(r"\*.*?\*", re.DOTALL),
    re.compile(r"_.*?_", re.DOTALL),
    re.compile(r"^\s*[-*+]\s", re.MULTILINE),
    re.compile(r"^\s*\d+\.\s", re.MULTILINE),
    re.compile(r"\[.*?\]\(.*?\)"),
    re.compile(r"^\s*>\s", re.MULTILINE),
    re.compile(r"\|.*\|.*\|"),
    re.compile(r"^---+$", re.MULTILINE),
    re.compile(r"~~.*?~~", re.DOTALL),
]


def detect_format(text: str) -> str:
    """Classify generated text as ``markdown`` if any markdown construct appears."""
    if any(pattern.search(text) for pattern in _MARKDOWN_PATTERNS):
        return FORMAT_MARKDOWN
    return FORMAT_TEXT


@dataclass(frozen=True)
class CallerIdentity:
    account_id: str
    display_name: str
    email: str


@dataclass
class GenerationResult:
    content: str
    format: str = FORMAT_TEXT
    metadata: Dict[str, Any] = field(default_factory=dict)
    fallback: bool = False


class GenerationAdapter(Protocol):
    async def generate(
        self,
        history: Sequence[Message],
        message: str,
        *,
        caller: CallerIdentity,
    ) -> GenerationResult: ...

    async def aclose(self) -> None: ...


class GenerationReply(BaseModel):
    """Body returned by the generation service."""

    model_config = ConfigDict(extra="ignore")

    response: str
    tool_calls_made: int = 0
    iterations: int = 0


def fallback_result(model_name: str = DEFAULT_MODEL_NAME) -> GenerationResult:
    return GenerationResult(
        content=FALLBACK_MESSAGE,
        format=FORMAT_TEXT,
        metadata={
            "model": model_name,
            "tokens": 0,
            "processing_time_ms": 0,
            "fallback": True,
        },
        fallback=True,
    )


class HttpGenerationAdapter:
    """Calls the external generation service over HTTP.

    One POST per turn carrying the full prior history plus the new message.
    Any failure (network, timeout, non-2xx, or a body that does not match
    ``GenerationReply``) is logged and turned into the fallback reply, so
    callers never see an exception from here. Cancellation is not a failure
    and propagates.
    """

    def __init__(
        self,
        service_url: str,
        *,
        timeout_seconds: float = 30.0,
        model_name: str = DEFAULT_MODEL_NAME,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.service_url = service_url
        self.timeout_seconds = timeout_seconds
        self.model_name = model_name
        self._client = client

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(self.timeout_seconds, connect=min(10.0, self.timeout_seconds)),
            )
        return self._client

    async def aclose(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    @staticmethod
    def build_messages(history: Sequence[Message], message: str) -> List[Dict[str, str]]:
        messages = [{"role": turn.role, "content": turn.content} for turn in history]
        messages.append({"role": "user", "content": message})
        return messages

    async def _call(self, payload: dict, caller: CallerIdentity) -> GenerationReply:
        client = await self._get_client()
        headers = {
            "X-User-Id": caller.account_id,
            "X-User-Name": caller.display_name,
            "X-User-Email": caller.email,
        }
        try:
            response = await asyncio.wait_for(
                client.post(self.service_url, json=payload, headers=headers),
                timeout=self.timeout_seconds,
            )
        except (httpx.HTTPError, asyncio.TimeoutError) as exc:
            raise UpstreamUnavailableError(
                "generation service unreachable", detail={"reason": type(exc).__name__}
            ) from exc
        if not response.is_success:
            raise UpstreamUnavailableError(
                "generation service returned an error",
                detail={"status": response.status_code},
            )
        try:
            return GenerationReply.model_validate(response.json())
        except (ValueError, PydanticValidationError) as exc:
            raise UpstreamUnavailableError(
                "generation service returned an invalid body",
                detail={"reason": type(exc).__name__},
            ) from exc

    async def generate(
        self,
        history: Sequence[Message],
        message: str,
        *,
        caller: CallerIdentity,
    ) -> GenerationResult:
        payload = {"messages": self.build_messages(history, message)}
        logger.info(
            "generation_request",
            account_id=caller.account_id,
            message_length=len(message),
            history_length=len(history),
        )
        try:
            reply = await self._call(payload, caller)
        except UpstreamUnavailableError as exc:
            logger.error(
                "generation_failed",
                account_id=caller.account_id,
                error=exc.message,
                **exc.detail,
            )
            return fallback_result(self.model_name)
        except Exception as exc:
            # CancelledError is a BaseException and still propagates
            logger.exception(
                "generation_failed",
                account_id=caller.account_id,
                error=str(exc),
                reason=type(exc).__name__,
            )
            return fallback_result(self.model_name)

        content = reply.response
        content_format = detect_format(content)
        logger.info(
            "generation_response",
            account_id=caller.account_id,
            response_length=len(content),
            format=content_format,
            tool_calls=reply.tool_calls_made,
            iterations=reply.iterations,
        )
        return GenerationResult(
            content=content,
            format=content_format,
            metadata={
                "model": self.model_name,
                "tokens": len(content) // 4,
                "processing_time_ms": reply.iterations * 100,
                "tool_calls": reply.tool_calls_made,
                "iterations": reply.iterations,
            },
        )
