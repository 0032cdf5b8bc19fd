# =============================================================================
# ai/anthropic_client.py - Claude Messages API Client
# =============================================================================
# Thin client for Anthropic's Messages REST API, using httpx.
#
# Responsibilities:
# - Build request bodies (text or text + base64 images, tools, history)
# - Parse responses into ClaudeResponse (text, tool calls, usage, cost)
# - Parse server-sent events for streaming responses
# - Compute per-call cost from token usage
#
# Usage:
#   from ai.anthropic_client import ClaudeClient
#   client = ClaudeClient()
#   response = client.create_message(model=model, prompt="Hello")
#   print(response.content, response.cost)
# =============================================================================

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Iterator

import httpx

from app.config import settings
from ai.model_selector import ClaudeModel
from ai.prompts import DASH_SYSTEM_PROMPT
from lib.utils import ApplicationError

logger = logging.getLogger(__name__)


# =============================================================================
# Pricing
# =============================================================================

# USD per token
MODEL_PRICING: dict[str, dict[str, float]] = {
    ClaudeModel.HAIKU.value: {"input": 0.00000025, "output": 0.00000125},
    ClaudeModel.SONNET.value: {"input": 0.000003, "output": 0.000015},
}


def calculate_cost(model: str, tokens_in: int, tokens_out: int) -> float:
    """Cost in USD for one call; unknown models are priced as Haiku."""
    pricing = MODEL_PRICING.get(model, MODEL_PRICING[ClaudeModel.HAIKU.value])
    return tokens_in * pricing["input"] + tokens_out * pricing["output"]


def validate_api_key(api_key: str | None) -> bool:
    """Anthropic keys start with sk-ant-."""
    return bool(api_key) and api_key.startswith("sk-ant-")


# =============================================================================
# Exceptions
# =============================================================================

class ClaudeAPIError(ApplicationError):
    """Error returned by (or while reaching) the Anthropic API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(
            message,
            code="CLAUDE_API_ERROR",
            suggestion="Check ANTHROPIC_API_KEY and Anthropic service status",
            details={"status_code": status_code} if status_code else None,
        )
        self.status_code = status_code


# =============================================================================
# Response Types
# =============================================================================

@dataclass
class ToolCall:
    """A tool_use block requested by Claude."""
    id: str
    name: str
    input: dict[str, Any]


@dataclass
class ClaudeResponse:
    """Parsed non-streaming response."""
    content: str
    tokens_in: int
    tokens_out: int
    cost: float
    model: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    raw_content: list[dict[str, Any]] = field(default_factory=list)

    def assistant_blocks(self) -> list[dict[str, Any]]:
        """
        Content blocks to echo back as the assistant turn in a continuation.

        Text first (if any), then tool_use blocks.
        """
        blocks: list[dict[str, Any]] = []
        if self.content:
            blocks.append({"type": "text", "text": self.content})
        for call in self.tool_calls:
            blocks.append({"type": "tool_use", "id": call.id, "name": call.name, "input": call.input})
        return blocks


@dataclass
class StreamEvent:
    """
    One parsed SSE event.

    kind is one of: "text", "usage_in", "usage_out", "done".
    """
    kind: str
    text: str = ""
    tokens: int = 0


# =============================================================================
# Request Building
# =============================================================================

def build_message_content(prompt: str, images: list[dict[str, str]] | None = None) -> str | list[dict[str, Any]]:
    """
    Build the user message content.

    Args:
        prompt: User text
        images: Optional list of {"data": base64, "media_type": "image/png"}

    Returns:
        Plain string for text-only, or image blocks followed by a text block
    """
    if not images:
        return prompt

    blocks: list[dict[str, Any]] = []
    for image in images:
        blocks.append({
            "type": "image",
            "source": {
                "type": "base64",
                "media_type": image.get("media_type", "image/jpeg"),
                "data": image["data"],
            },
        })
    blocks.append({"type": "text", "text": prompt})
    return blocks


def parse_sse_line(line: str) -> StreamEvent | None:
    """
    Parse one line of the Anthropic SSE stream.

    Only "data: " lines are meaningful. Malformed JSON and event types we
    don't track return None.
    """
    if not line or not line.startswith("data: "):
        return None

    payload = line[len("data: "):].strip()
    if payload == "[DONE]":
        return StreamEvent(kind="done")

    try:
        event = json.loads(payload)
    except json.JSONDecodeError:
        logger.debug(f"Skipping malformed SSE payload: {payload[:80]}")
        return None

    event_type = event.get("type")
    if event_type == "message_start":
        usage = (event.get("message") or {}).get("usage") or {}
        return StreamEvent(kind="usage_in", tokens=usage.get("input_tokens", 0))
    if event_type == "message_delta":
        usage = event.get("usage") or {}
        return StreamEvent(kind="usage_out", tokens=usage.get("output_tokens", 0))
    if event_type == "content_block_delta":
        text = (event.get("delta") or {}).get("text")
        if text:
            return StreamEvent(kind="text", text=text)
    if event_type == "message_stop":
        return StreamEvent(kind="done")
    return None


def parse_response(data: dict[str, Any], model: str) -> ClaudeResponse:
    """Turn a Messages API JSON body into a ClaudeResponse."""
    usage = data.get("usage") or {}
    tokens_in = usage.get("input_tokens", 0)
    tokens_out = usage.get("output_tokens", 0)
    blocks = data.get("content") or []

    text = next((b.get("text", "") for b in blocks if b.get("type") == "text"), "")
    tool_calls = [
        ToolCall(id=b["id"], name=b["name"], input=b.get("input") or {})
        for b in blocks
        if b.get("type") == "tool_use"
    ]

    return ClaudeResponse(
        content=text,
        tokens_in=tokens_in,
        tokens_out=tokens_out,
        cost=calculate_cost(model, tokens_in, tokens_out),
        model=model,
        tool_calls=tool_calls,
        raw_content=blocks,
    )


# =============================================================================
# Client
# =============================================================================

class ClaudeClient:
    """
    Anthropic Messages API client.

    Attributes:
        api_key: Anthropic API key (default from settings)
        max_tokens: Default max_tokens per request
        temperature: Sampling temperature
    """

    def __init__(
        self,
        api_key: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
        http_client: httpx.Client | None = None,
    ):
        self.api_key = api_key if api_key is not None else settings.ANTHROPIC_API_KEY
        self.max_tokens = max_tokens or settings.CLAUDE_MAX_TOKENS
        self.temperature = temperature if temperature is not None else settings.CLAUDE_TEMPERATURE
        self.http = http_client or httpx.Client(timeout=settings.CLAUDE_TIMEOUT_SECONDS)

        if not self.api_key:
            logger.warning("ANTHROPIC_API_KEY is not set; Claude calls will fail")

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": settings.ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_request(
        self,
        model: str,
        prompt: str = "",
        images: list[dict[str, str]] | None = None,
        messages: list[dict[str, Any]] | None = None,
        tools: list[dict[str, Any]] | None = None,
        system: str | None = None,
        max_tokens: int | None = None,
        stream: bool = False,
    ) -> dict[str, Any]:
        """
        Build the JSON body for POST /v1/messages.

        An explicit message history wins over prompt/images.
        """
        body: dict[str, Any] = {
            "model": model,
            "max_tokens": max_tokens or self.max_tokens,
            "temperature": self.temperature,
            "stream": stream,
            "system": system or DASH_SYSTEM_PROMPT,
            "messages": messages or [
                {"role": "user", "content": build_message_content(prompt, images)}
            ],
        }
        if tools:
            body["tools"] = tools
        return body

    def create_message(self, model: str, **kwargs: Any) -> ClaudeResponse:
        """
        Send a non-streaming request.

        Raises:
            ClaudeAPIError: On network failure or non-2xx response
        """
        body = self.build_request(model, stream=False, **kwargs)

        try:
            response = self.http.post(settings.ANTHROPIC_API_URL, headers=self._headers(), json=body)
        except httpx.HTTPError as e:
            raise ClaudeAPIError(f"Claude API request failed: {e}")

        if response.status_code >= 400:
            raise ClaudeAPIError(
                f"Claude API error: {response.status_code} {response.text}",
                status_code=response.status_code,
            )

        result = parse_response(response.json(), model)
        logger.info(
            f"Claude call model={model} tokens_in={result.tokens_in} "
            f"tokens_out={result.tokens_out} tools={len(result.tool_calls)}"
        )
        return result

    def stream_message(self, model: str, **kwargs: Any) -> Iterator[StreamEvent]:
        """
        Send a streaming request and yield parsed events.

        Stops at the first "done" event or when the connection closes.

        Raises:
            ClaudeAPIError: On network failure or non-2xx response
        """
        body = self.build_request(model, stream=True, **kwargs)

        try:
            with self.http.stream("POST", settings.ANTHROPIC_API_URL, headers=self._headers(), json=body) as response:
                if response.status_code >= 400:
                    error_text = response.read().decode("utf-8", errors="replace")
                    raise ClaudeAPIError(
                        f"Claude API error: {response.status_code} {error_text}",
                        status_code=response.status_code,
                    )

                for line in response.iter_lines():
                    event = parse_sse_line(line)
                    if event is None:
                        continue
                    yield event
                    if event.kind == "done":
                        return

        except httpx.HTTPError as e:
            raise ClaudeAPIError(f"Claude API stream failed: {e}")
