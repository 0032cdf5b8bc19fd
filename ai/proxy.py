# =============================================================================
# ai/proxy.py - AI Proxy Orchestration
# =============================================================================
# Server-side gateway between the EduDash clients and Claude.
#
# Request flow:
#   1. Normalize the service type
#   2. Check the caller's monthly quota (429 when used up)
#   3. Redact PII from the prompt
#   4. Pick the model from the school's tier (vision needs Basic+)
#   5. Load role-scoped tools when enable_tools is set
#   6. Call Claude:
#      - streaming: relay text deltas as SSE frames, then log usage
#      - non-streaming: run tool calls, continue the conversation with the
#        tool results, and auto-heal once when a tool reports "Error:"
#   7. Log usage (success or error) to ai_usage_logs
#
# Usage:
#   from ai.proxy import AIProxyService
#   service = AIProxyService()
#   call = service.prepare(request, user)
#   response = service.complete(call)
# =============================================================================

from __future__ import annotations

import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Iterator

from ai.anthropic_client import ClaudeAPIError, ClaudeClient, ClaudeResponse, calculate_cost
from ai.model_selector import (
    exceeds_max_tokens,
    estimate_token_count,
    fallback_model,
    get_capabilities,
    recommended_model_for_service,
    select_model_for_tier,
)
from ai.pii_redactor import redact_pii
from ai.prompts import RETRY_FAILED_MESSAGE, RETRY_NO_TOOL_MESSAGE, build_retry_instruction
from ai.tools import ToolContext, ToolResult, execute_tool_calls, get_tools_for_role
from app.auth.models import UserContext
from app.config import settings
from app.exceptions import AIServiceError, QuotaExceededError
from core.models.ai import ProxyRequest, ProxyResponse, UsageInfo, normalize_service_type
from core.models.usage import UsageLogEntry
from core.services.quota_service import QuotaService
from lib.supabase_client import SupabaseClient

logger = logging.getLogger(__name__)

# HTTP statuses worth retrying on the cheaper model
RETRYABLE_STATUSES = {429, 500, 502, 503, 529}


@dataclass
class ProxyCall:
    """Everything resolved before Claude is called."""
    request: ProxyRequest
    user_id: str
    organization_id: str | None
    role: str
    tier: str
    service_type: str
    model: str
    redacted_prompt: str
    redaction_count: int
    images: list[dict[str, str]] | None
    tools: list[dict[str, Any]] | None
    tool_context: ToolContext
    started_at: float = field(default_factory=time.monotonic)

    @property
    def elapsed_ms(self) -> int:
        return int((time.monotonic() - self.started_at) * 1000)


@dataclass
class _Totals:
    """Token and cost totals across every Claude call made for one request."""
    tokens_in: int = 0
    tokens_out: int = 0
    cost: float = 0.0

    def add(self, response: ClaudeResponse) -> None:
        self.tokens_in += response.tokens_in
        self.tokens_out += response.tokens_out
        self.cost += response.cost


def _has_error(results: list[ToolResult]) -> bool:
    return any(r.content.startswith("Error:") for r in results)


def _sse(payload: dict[str, Any] | str) -> str:
    body = payload if isinstance(payload, str) else json.dumps(payload)
    return f"data: {body}\n\n"


class AIProxyService:
    """
    Orchestrates one proxied AI request.

    The Claude client is injectable for tests.
    """

    def __init__(self, client: ClaudeClient | None = None):
        self.client = client or ClaudeClient()

    # -------------------------------------------------------------------------
    # Preparation
    # -------------------------------------------------------------------------

    def prepare(self, request: ProxyRequest, user: UserContext) -> ProxyCall:
        """
        Resolve quota, tier, model and tools for a request.

        Raises:
            QuotaExceededError: Monthly quota used up
            TierRestrictionError: Images sent on a tier without vision
        """
        user_id = str(user.id)
        organization_id = user.effective_org_id
        role = user.role or request.metadata.get("role") or request.scope
        service_type = normalize_service_type(request.service_type)

        quota = QuotaService.check_quota(user_id, organization_id, service_type)
        if not quota.allowed:
            quota_info = quota.quota_info.model_dump() if quota.quota_info else {}
            raise QuotaExceededError(quota.error or "AI quota exceeded for this service", quota_info=quota_info)

        try:
            tier = SupabaseClient.fetch_organization_tier(organization_id).lower()
        except Exception as e:
            logger.warning(f"Tier lookup failed for org {organization_id}, using free: {e}")
            tier = "free"

        redaction = redact_pii(request.payload.prompt)
        images = [img.model_dump() for img in request.payload.images] if request.payload.images else None

        if images:
            model = select_model_for_tier(tier, has_images=True)
        else:
            model = recommended_model_for_service(service_type, tier)

        tools = get_tools_for_role(role, tier) if request.enable_tools else None
        if tools is not None:
            logger.info(f"Loaded {len(tools)} tools for role={role}, tier={tier}")

        if exceeds_max_tokens(redaction.redacted_text, model):
            logger.warning(
                f"Prompt of ~{estimate_token_count(redaction.redacted_text)} tokens is long for {model}"
            )

        return ProxyCall(
            request=request,
            user_id=user_id,
            organization_id=organization_id,
            role=role,
            tier=tier,
            service_type=service_type,
            model=model,
            redacted_prompt=redaction.redacted_text,
            redaction_count=redaction.redaction_count,
            images=images,
            tools=tools,
            tool_context=ToolContext(
                user_id=user_id,
                organization_id=organization_id,
                role=role,
                tier=tier,
                is_guest=user.is_guest,
            ),
        )

    def _max_tokens(self, model: str) -> int:
        return min(settings.CLAUDE_MAX_TOKENS, get_capabilities(model).max_tokens)

    def _metadata(self, call: ProxyCall, **extra: Any) -> dict[str, Any]:
        return {
            **call.request.metadata,
            "scope": call.request.scope,
            "tier": call.tier,
            "has_images": bool(call.images),
            "image_count": len(call.images or []),
            "redaction_count": call.redaction_count,
            **extra,
        }

    def _log_error(self, call: ProxyCall, error: Exception) -> None:
        QuotaService.log_usage(UsageLogEntry(
            user_id=call.user_id,
            organization_id=call.organization_id,
            service_type=call.service_type,
            model=call.model,
            status="error",
            processing_time_ms=call.elapsed_ms,
            input_text=call.redacted_prompt,
            error_message=str(error),
            metadata=self._metadata(call, error=str(error)),
        ))

    # -------------------------------------------------------------------------
    # Non-streaming
    # -------------------------------------------------------------------------

    def _call(self, call: ProxyCall, model: str | None = None, messages: list[dict[str, Any]] | None = None) -> ClaudeResponse:
        model = model or call.model
        return self.client.create_message(
            model,
            prompt=call.redacted_prompt,
            images=call.images,
            messages=messages,
            tools=call.tools,
            max_tokens=self._max_tokens(model),
        )

    def _first_call(self, call: ProxyCall) -> ClaudeResponse:
        """Initial call, retried once on the cheaper model when Claude is overloaded."""
        try:
            return self._call(call)
        except ClaudeAPIError as e:
            fallback = fallback_model(call.model)
            if call.images or fallback is None or e.status_code not in RETRYABLE_STATUSES:
                raise
            logger.warning(f"{call.model} failed with {e.status_code}, retrying on {fallback}")
            call.model = fallback
            return self._call(call)

    def _tool_turn(self, call: ProxyCall, response: ClaudeResponse, results: list[ToolResult]) -> list[dict[str, Any]]:
        """Messages for a continuation: prompt, assistant tool_use, tool results."""
        return [
            {"role": "user", "content": call.redacted_prompt},
            {"role": "assistant", "content": response.assistant_blocks()},
            {"role": "user", "content": [r.to_block() for r in results]},
        ]

    def _run_tools(self, call: ProxyCall, first: ClaudeResponse, totals: _Totals) -> tuple[str, list[ToolResult]]:
        """
        Execute tool calls and get Claude's final answer.

        Returns:
            (final text, tool results of the last round)
        """
        logger.info(f"Claude requested {len(first.tool_calls)} tool calls")
        results = execute_tool_calls(first.tool_calls, call.tool_context)

        if not _has_error(results):
            continuation = self._call(call, messages=self._tool_turn(call, first, results))
            totals.add(continuation)
            return continuation.content, results

        # Auto-heal: ask Claude to fix its tool input once
        error_summary = " | ".join(r.content for r in results if r.content.startswith("Error:"))
        logger.warning(f"Tool returned errors, asking Claude to retry: {error_summary}")

        retry_messages = self._tool_turn(call, first, results) + [
            {"role": "user", "content": [{"type": "text", "text": build_retry_instruction(error_summary)}]},
        ]
        retry = self._call(call, messages=retry_messages)
        totals.add(retry)

        if not retry.tool_calls:
            logger.info("Retry produced no tool call")
            return retry.content or RETRY_NO_TOOL_MESSAGE, results

        retry_results = execute_tool_calls(retry.tool_calls, call.tool_context)
        if _has_error(retry_results):
            logger.warning("Retry still failed validation")
            return RETRY_FAILED_MESSAGE, retry_results

        continuation = self._call(call, messages=self._tool_turn(call, retry, retry_results))
        totals.add(continuation)
        return continuation.content, retry_results

    def complete(self, call: ProxyCall) -> ProxyResponse:
        """
        Run a non-streaming request to completion.

        Raises:
            AIServiceError: If any Claude call fails
        """
        totals = _Totals()
        tool_results: list[ToolResult] | None = None

        try:
            first = self._first_call(call)
            totals.add(first)

            if first.tool_calls:
                content, tool_results = self._run_tools(call, first, totals)
            else:
                content = first.content

        except ClaudeAPIError as e:
            logger.error(f"Claude call failed for user {call.user_id}: {e.message}")
            self._log_error(call, e)
            raise AIServiceError(e.message)

        QuotaService.log_usage(UsageLogEntry(
            user_id=call.user_id,
            organization_id=call.organization_id,
            service_type=call.service_type,
            model=call.model,
            status="success",
            tokens_in=totals.tokens_in,
            tokens_out=totals.tokens_out,
            cost=totals.cost,
            processing_time_ms=call.elapsed_ms,
            input_text=call.redacted_prompt,
            output_text=content,
            metadata=self._metadata(call, tool_count=len(tool_results or [])),
        ))

        return ProxyResponse(
            content=content,
            usage=UsageInfo(tokens_in=totals.tokens_in, tokens_out=totals.tokens_out, cost=totals.cost),
            model=call.model,
            tool_results=[r.to_block() for r in tool_results] if tool_results is not None else None,
        )

    # -------------------------------------------------------------------------
    # Streaming
    # -------------------------------------------------------------------------

    def stream(self, call: ProxyCall) -> Iterator[str]:
        """
        Relay Claude's text deltas as SSE frames.

        Usage is logged once the stream ends. Tools are not offered on the
        streaming path. A mid-stream failure is logged and ends the stream
        with an error frame.
        """
        tokens_in = 0
        tokens_out = 0
        parts: list[str] = []

        try:
            for event in self.client.stream_message(
                call.model,
                prompt=call.redacted_prompt,
                images=call.images,
                max_tokens=self._max_tokens(call.model),
            ):
                if event.kind == "usage_in":
                    tokens_in = event.tokens
                elif event.kind == "usage_out":
                    tokens_out = event.tokens
                elif event.kind == "text":
                    parts.append(event.text)
                    yield _sse({"type": "content_block_delta", "delta": {"text": event.text}})
                elif event.kind == "done":
                    break

        except ClaudeAPIError as e:
            logger.error(f"Claude stream failed for user {call.user_id}: {e.message}")
            self._log_error(call, e)
            yield _sse({"type": "error", "error": {"code": "ai_service_error", "message": "AI service temporarily unavailable"}})
            return

        yield _sse("[DONE]")

        QuotaService.log_usage(UsageLogEntry(
            user_id=call.user_id,
            organization_id=call.organization_id,
            service_type=call.service_type,
            model=call.model,
            status="success",
            tokens_in=tokens_in,
            tokens_out=tokens_out,
            cost=calculate_cost(call.model, tokens_in, tokens_out),
            processing_time_ms=call.elapsed_ms,
            input_text=call.redacted_prompt,
            output_text="".join(parts),
            metadata=self._metadata(call, streaming=True),
        ))

    def handle(self, request: ProxyRequest, user: UserContext) -> ProxyResponse | Iterator[str]:
        """Prepare and run a request; returns an SSE iterator when request.stream is set."""
        call = self.prepare(request, user)
        if request.stream:
            return self.stream(call)
        return self.complete(call)
