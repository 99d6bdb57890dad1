"""LLM client and message helpers for agent execution.

This module provides:
- LLMClient: Wrapper around LiteLLM with retry logic, fallback model
  support, and metrics events
- MockLLMClient: Scripted client for tests and offline runs
- Helpers that format assistant/tool messages for the chat history
"""

import asyncio
import json
import time
from dataclasses import dataclass, field
from typing import Any

import structlog
from litellm import ModelResponse, acompletion
from litellm.exceptions import (
    AuthenticationError,
    BadRequestError,
    RateLimitError,
    ServiceUnavailableError,
    Timeout,
)

from config import settings
from events.bus import EventBus
from events.types import AgentEvent, EventType, LLMMetrics

logger = structlog.get_logger()


def normalize_tool_args(raw_args: Any) -> dict[str, Any]:
    """Normalize raw tool-call arguments into a dictionary.

    Models occasionally emit malformed tool arguments (JSON arrays, primitives,
    or partially valid strings). Downstream tool handlers always receive a dict.
    """
    if isinstance(raw_args, dict):
        return raw_args

    if isinstance(raw_args, str):
        try:
            parsed = json.loads(raw_args)
        except json.JSONDecodeError:
            return {"raw": raw_args}
        return parsed if isinstance(parsed, dict) else {"value": parsed}

    if raw_args is None:
        return {}

    return {"value": raw_args}


@dataclass
class ToolCallData:
    """Parsed tool call from an LLM response.

    Attributes:
        id: Unique identifier for this tool call
        name: Name of the tool to call
        args: Arguments to pass to the tool
    """

    id: str
    name: str
    args: dict[str, Any]


@dataclass
class LLMResponse:
    """Structured response from an LLM call.

    Attributes:
        content: The text content of the response
        tool_calls: List of tool calls if the model requested tools
        finish_reason: Why the model stopped (stop, tool_calls, length, etc.)
        metrics: Token usage and latency metrics
        raw_response: The original ModelResponse from LiteLLM
    """

    content: str
    tool_calls: list[ToolCallData]
    finish_reason: str
    metrics: LLMMetrics
    raw_response: ModelResponse | None = field(default=None, repr=False)


class LLMClient:
    """Wrapper around LiteLLM with retry logic, fallback, and metrics.

    Retries on: RateLimitError (429), ServiceUnavailableError (5xx) and
    Timeout. AuthenticationError and BadRequestError are raised immediately.
    When every retry fails and a fallback model is configured, the fallback
    is tried once before the original error is raised.

    Attributes:
        event_bus: Optional EventBus for emitting LLM call metrics
        default_model: Default model to use if not specified
        fallback_model: Optional fallback model if primary fails after retries
        retry_attempts: Number of retry attempts for failed calls
        retry_delay: Base delay between retry attempts in seconds
    """

    def __init__(
        self,
        event_bus: EventBus | None = None,
        default_model: str | None = None,
        fallback_model: str | None = None,
        retry_attempts: int | None = None,
        retry_delay: float = 1.0,
    ) -> None:
        self.event_bus = event_bus
        self.default_model = default_model or settings.code_agent_model
        self.fallback_model = fallback_model or settings.llm_fallback_model
        self.retry_attempts = (
            retry_attempts if retry_attempts is not None
            else settings.llm_max_retries
        )
        self.retry_delay = retry_delay

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Make an LLM call with retry logic, fallback, and metrics.

        Args:
            messages: List of message dicts with 'role' and 'content'
            tools: Optional list of tool definitions
            model: Model to use (defaults to self.default_model)
            temperature: Sampling temperature (0.0-2.0)
            max_tokens: Maximum tokens in response
            run_id: Optional run ID for event emission
            agent_id: Optional agent ID for event emission

        Returns:
            LLMResponse with content, tool calls, and metrics

        Raises:
            AuthenticationError: If API key is invalid
            BadRequestError: If request is malformed
            Exception: After all retries and fallback exhausted
        """
        model = model or self.default_model
        start_time = time.time()
        last_exception: Exception | None = None
        retry_count = 0

        for attempt in range(self.retry_attempts + 1):
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                llm_response = self._parse_response(
                    response, model, int((time.time() - start_time) * 1000)
                )
                await self._emit_metrics_event(llm_response.metrics, run_id, agent_id)
                logger.info(
                    "llm_call_complete",
                    model=model,
                    input_tokens=llm_response.metrics.input_tokens,
                    output_tokens=llm_response.metrics.output_tokens,
                    latency_ms=llm_response.metrics.latency_ms,
                    tool_calls=len(llm_response.tool_calls),
                    attempt=attempt + 1,
                )
                return llm_response

            except (RateLimitError, ServiceUnavailableError, Timeout) as e:
                last_exception = e
                retry_count = attempt + 1
                if attempt < self.retry_attempts:
                    delay = min(self.retry_delay * (2 ** attempt), 4.0)
                    logger.warning(
                        "llm_call_retry",
                        model=model,
                        attempt=attempt + 1,
                        max_retries=self.retry_attempts,
                        error_type=type(e).__name__,
                        retry_delay=delay,
                    )
                    await asyncio.sleep(delay)
                else:
                    logger.error(
                        "llm_call_failed_all_retries",
                        model=model,
                        attempts=self.retry_attempts + 1,
                        error=str(e),
                    )

            except (AuthenticationError, BadRequestError) as e:
                logger.error(
                    "llm_call_failed_no_retry",
                    model=model,
                    error_type=type(e).__name__,
                    error=str(e),
                )
                await self._emit_error_event(run_id, agent_id, e, model, 0)
                raise

        if self.fallback_model and self.fallback_model != model:
            logger.warning(
                "llm_fallback_attempt",
                primary_model=model,
                fallback_model=self.fallback_model,
                primary_retries=retry_count,
            )
            try:
                response = await self._make_request(
                    messages=messages,
                    tools=tools,
                    model=self.fallback_model,
                    temperature=temperature,
                    max_tokens=max_tokens,
                )
                llm_response = self._parse_response(
                    response,
                    self.fallback_model,
                    int((time.time() - start_time) * 1000),
                )
                await self._emit_metrics_event(llm_response.metrics, run_id, agent_id)
                logger.info("llm_fallback_success", fallback_model=self.fallback_model)
                return llm_response
            except Exception as fallback_error:
                logger.error(
                    "llm_fallback_failed",
                    fallback_model=self.fallback_model,
                    error=str(fallback_error),
                )
                last_exception = last_exception or fallback_error

        if last_exception is not None:
            await self._emit_error_event(run_id, agent_id, last_exception, model, retry_count)
        raise last_exception or RuntimeError("LLM call failed after all retries")

    async def _make_request(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None,
        model: str,
        temperature: float,
        max_tokens: int | None,
    ) -> ModelResponse:
        """Make the actual LiteLLM request."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": messages,
            "temperature": temperature,
            "timeout": settings.llm_request_timeout_seconds,
        }
        if tools:
            kwargs["tools"] = tools
            kwargs["tool_choice"] = "auto"
        if max_tokens:
            kwargs["max_tokens"] = max_tokens

        return await acompletion(**kwargs)

    def _parse_response(
        self,
        response: ModelResponse,
        model: str,
        latency_ms: int,
    ) -> LLMResponse:
        """Parse the LiteLLM response into our structured format."""
        choice = response.choices[0]
        message = choice.message

        tool_calls = [
            ToolCallData(
                id=tc.id,
                name=tc.function.name,
                args=normalize_tool_args(tc.function.arguments),
            )
            for tc in (message.tool_calls or [])
        ]

        usage = getattr(response, "usage", None)
        metrics = LLMMetrics(
            model=model,
            input_tokens=usage.prompt_tokens if usage else 0,
            output_tokens=usage.completion_tokens if usage else 0,
            latency_ms=latency_ms,
        )

        return LLMResponse(
            content=message.content or "",
            tool_calls=tool_calls,
            finish_reason=choice.finish_reason or "unknown",
            metrics=metrics,
            raw_response=response,
        )

    async def _emit_metrics_event(
        self,
        metrics: LLMMetrics,
        run_id: str | None,
        agent_id: str | None,
    ) -> None:
        if self.event_bus is None or not run_id:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.LLM_CALL_COMPLETE,
                run_id=run_id,
                agent_id=agent_id,
                data=metrics.model_dump(),
            )
        )

    async def _emit_error_event(
        self,
        run_id: str | None,
        agent_id: str | None,
        error: Exception,
        model: str,
        retry_count: int,
    ) -> None:
        if self.event_bus is None or not run_id:
            return
        await self.event_bus.publish(
            AgentEvent(
                type=EventType.AGENT_ERROR,
                run_id=run_id,
                agent_id=agent_id,
                data={
                    "error": str(error),
                    "error_type": type(error).__name__,
                    "model": model,
                    "retry_count": retry_count,
                    "fallback_model": self.fallback_model,
                    "phase": "llm_call",
                },
            )
        )


def format_tool_result_for_llm(tool_call_id: str, result: str) -> dict[str, Any]:
    """Format a tool result as a ``tool`` role message."""
    return {
        "role": "tool",
        "tool_call_id": tool_call_id,
        "content": result,
    }


def format_assistant_message_with_tools(
    content: str,
    tool_calls: list[ToolCallData],
) -> dict[str, Any]:
    """Format an assistant message that may include tool calls.

    Args:
        content: The assistant's text response
        tool_calls: List of ToolCallData the assistant made

    Returns:
        A message dict in the format expected by LLMs
    """
    message: dict[str, Any] = {
        "role": "assistant",
        "content": content,
    }

    if tool_calls:
        message["tool_calls"] = [
            {
                "id": tc.id,
                "type": "function",
                "function": {
                    "name": tc.name,
                    "arguments": json.dumps(tc.args),
                },
            }
            for tc in tool_calls
        ]

    return message


def make_text_response(content: str, model: str = "mock") -> LLMResponse:
    """Build a text-only LLMResponse (used by scripted clients)."""
    return LLMResponse(
        content=content,
        tool_calls=[],
        finish_reason="stop",
        metrics=LLMMetrics(model=model, input_tokens=0, output_tokens=0, latency_ms=0),
    )


class MockLLMClient(LLMClient):
    """Mock LLM client for testing without API calls.

    Returns predefined responses in order and records every call.

    Usage:
        >>> client = MockLLMClient(responses=[make_text_response("<task_summary>ok</task_summary>")])
        >>> response = await client.call(messages=[...])
    """

    def __init__(
        self,
        responses: list[LLMResponse] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(**kwargs)
        self.responses = list(responses) if responses else []
        self.call_history: list[dict[str, Any]] = []
        self._response_index = 0

    async def call(
        self,
        messages: list[dict[str, Any]],
        tools: list[dict[str, Any]] | None = None,
        model: str | None = None,
        temperature: float = 0.7,
        max_tokens: int | None = None,
        run_id: str | None = None,
        agent_id: str | None = None,
    ) -> LLMResponse:
        """Return the next predefined response.

        Raises:
            IndexError: If no more responses are available
        """
        self.call_history.append({
            "messages": list(messages),
            "tools": tools,
            "model": model or self.default_model,
            "temperature": temperature,
            "agent_id": agent_id,
        })

        if self._response_index >= len(self.responses):
            raise IndexError("No more mock responses available")

        response = self.responses[self._response_index]
        self._response_index += 1

        logger.debug(
            "mock_llm_call",
            response_index=self._response_index - 1,
            tool_calls=len(response.tool_calls),
        )
        return response

    def reset(self) -> None:
        """Reset the mock to start returning responses from the beginning."""
        self._response_index = 0
        self.call_history.clear()
