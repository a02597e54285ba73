"""Model runners: the only place the engine talks to an LLM.

``ModelRunner.generate`` takes a ``GenerationRequest`` and returns an object
with ``steps``, ``text``, ``finish_reason`` and ``output`` (any of which may
be awaitable; the orchestrator materializes them). ``OpenAIModelRunner`` is
the concrete implementation over ``openai.AsyncOpenAI``:

- without ``output_schema`` it runs the chat-completions tool loop, executing
  tool calls through ``relay.tool_executor.execute_tool_calls`` until the model
  answers without tools, ``stop_when`` matches a step, or ``max_steps`` is hit;
- with ``output_schema`` it makes a single tool-less call constrained by
  ``response_format={"type": "json_schema", ...}`` and parses the JSON.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Protocol

from openai import AsyncOpenAI

from relay.config import ModelSettings
from relay.tool_executor import RuntimeTool, ToolExecConfig, ToolSession, execute_tool_calls
from relay_constants import DEFAULT_MAX_GENERATION_STEPS, MAX_GENERATION_DURATION_SECONDS

logger = logging.getLogger(__name__)

StepPredicate = Callable[[Dict[str, Any]], bool]


@dataclass
class GenerationRequest:
    model: ModelSettings
    messages: List[Dict[str, Any]]
    tools: List[RuntimeTool] = field(default_factory=list)
    tool_config: Optional[ToolExecConfig] = None
    session: Optional[ToolSession] = None
    max_steps: int = DEFAULT_MAX_GENERATION_STEPS
    stop_when: Optional[StepPredicate] = None
    output_schema: Optional[Dict[str, Any]] = None
    schema_name: str = "structured_output"
    timeout: float = MAX_GENERATION_DURATION_SECONDS
    compressor: Any = None


@dataclass
class GenerationResponse:
    text: Optional[str] = None
    steps: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    output: Any = None
    # Full trace (system, history, user, assistant and tool messages)
    messages: List[Dict[str, Any]] = field(default_factory=list)


class ModelRunner(Protocol):
    async def generate(self, request: GenerationRequest) -> Any:
        ...


def request_timeout(settings: ModelSettings) -> float:
    """``max_duration`` from provider options, capped at the generation limit."""
    raw = settings.provider_options.get("max_duration")
    if raw is None:
        return MAX_GENERATION_DURATION_SECONDS
    try:
        return min(float(raw), MAX_GENERATION_DURATION_SECONDS)
    except (TypeError, ValueError):
        logger.warning("Invalid max_duration %r, using %ss", raw, MAX_GENERATION_DURATION_SECONDS)
        return MAX_GENERATION_DURATION_SECONDS


def _assistant_message(message: Any) -> Dict[str, Any]:
    msg: Dict[str, Any] = {"role": "assistant", "content": message.content or ""}
    if message.tool_calls:
        msg["tool_calls"] = [
            {
                "id": tool_call.id,
                "type": "function",
                "function": {"name": tool_call.function.name, "arguments": tool_call.function.arguments or "{}"},
            }
            for tool_call in message.tool_calls
        ]
    return msg


class OpenAIModelRunner:
    """Chat-completions runner for any OpenAI-compatible endpoint.

    Args:
        client: A pre-built ``AsyncOpenAI``; built from *base_url* / *api_key*
            when omitted.
    """

    def __init__(
        self,
        client: Optional[AsyncOpenAI] = None,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
    ):
        if client is None:
            client_kwargs: Dict[str, Any] = {"api_key": api_key}
            if base_url:
                client_kwargs["base_url"] = base_url
            client = AsyncOpenAI(**client_kwargs)
        self.client = client

    def _api_kwargs(self, request: GenerationRequest, messages: List[Dict[str, Any]]) -> Dict[str, Any]:
        options = {k: v for k, v in request.model.provider_options.items() if k != "max_duration"}
        api_kwargs: Dict[str, Any] = {
            "model": request.model.model,
            "messages": messages,
            "timeout": min(request.timeout, request_timeout(request.model)),
            **options,
        }
        if request.tools and request.output_schema is None:
            api_kwargs["tools"] = [t.openai_schema() for t in request.tools]
        return api_kwargs

    async def generate(self, request: GenerationRequest) -> GenerationResponse:
        timeout = min(request.timeout, request_timeout(request.model))
        runner = self._structured(request) if request.output_schema is not None else self._tool_loop(request)
        try:
            return await asyncio.wait_for(runner, timeout=timeout)
        except asyncio.TimeoutError as e:
            raise TimeoutError(f"Generation timed out after {timeout:.0f}s") from e

    async def _structured(self, request: GenerationRequest) -> GenerationResponse:
        messages = list(request.messages)
        api_kwargs = self._api_kwargs(request, messages)
        api_kwargs["response_format"] = {
            "type": "json_schema",
            "json_schema": {"name": request.schema_name, "schema": request.output_schema},
        }
        response = await self.client.chat.completions.create(**api_kwargs)
        choice = response.choices[0]
        content = choice.message.content or ""
        try:
            output = json.loads(content) if content.strip() else None
        except json.JSONDecodeError as e:
            raise ValueError(f"Structured output is not valid JSON: {e}") from e

        messages.append({"role": "assistant", "content": content})
        step = {"text": content, "tool_calls": [], "tool_results": [], "finish_reason": choice.finish_reason}
        return GenerationResponse(
            text=content,
            steps=[step],
            finish_reason=choice.finish_reason,
            output=output,
            messages=messages,
        )

    async def _tool_loop(self, request: GenerationRequest) -> GenerationResponse:
        messages = list(request.messages)
        steps: List[Dict[str, Any]] = []
        tool_config = request.tool_config or ToolExecConfig(tools={t.name: t for t in request.tools})
        session = request.session or ToolSession()
        finish_reason = None

        for step_number in range(request.max_steps):
            if request.compressor is not None and step_number > 0 and request.compressor.should_compress(messages):
                messages = await request.compressor.compress(messages)

            response = await self.client.chat.completions.create(**self._api_kwargs(request, messages))
            choice = response.choices[0]
            message = choice.message
            finish_reason = choice.finish_reason
            step: Dict[str, Any] = {
                "text": message.content or "",
                "tool_calls": [],
                "tool_results": [],
                "finish_reason": finish_reason,
            }
            messages.append(_assistant_message(message))

            if not message.tool_calls:
                steps.append(step)
                break

            logger.debug("Step %d: %d tool call(s)", step_number + 1, len(message.tool_calls))
            records = await execute_tool_calls(tool_config, session, message.tool_calls, messages)
            step["tool_calls"] = [
                {"tool_call_id": r["tool_call_id"], "tool_name": r["tool_name"], "args": r["args"]} for r in records
            ]
            step["tool_results"] = records
            steps.append(step)
            if request.stop_when is not None and request.stop_when(step):
                break
        else:
            logger.info("Stopped after reaching the maximum of %d steps", request.max_steps)
            finish_reason = "max-steps"

        return GenerationResponse(
            text=steps[-1]["text"] if steps else "",
            steps=steps,
            finish_reason=finish_reason,
            messages=messages,
        )
