"""Tool call execution with frozen configuration.

Every tool the model can call (MCP, function, relation and built-in tools)
runs through ``run_tool``: sentinel arguments are resolved in one place by
``ToolSession.resolve_arguments``, the raw result is recorded in the turn's
tool session, and an annotated copy is returned for the model.

Sentinels:
    {"$tool": "<tool_call_id>"}                     -> raw output of that call
    {"$artifact": "<id>", "$tool": "<tool_call_id>"} -> the artifact's full fields
"""

import asyncio
import inspect
import json
import logging
import time
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional

from relay.artifacts import ArtifactError, annotate_tool_result
from relay_constants import SENTINEL_ARTIFACT_KEY, SENTINEL_TOOL_KEY

logger = logging.getLogger(__name__)

MAX_TOOL_RESULT_CHARS = 100_000


class ToolReferenceError(ArtifactError):
    """A ``{"$tool": id}`` argument named a tool call with no recorded result."""
    pass


ToolHandler = Callable[[Dict[str, Any], str], Awaitable[Any]]


@dataclass(frozen=True)
class RuntimeTool:
    """A callable tool as exposed to the model runner.

    ``execute(args, tool_call_id)`` receives arguments with sentinels
    already resolved.
    """

    name: str
    description: str
    parameters: Dict[str, Any]
    execute: ToolHandler
    kind: str = "function"  # "mcp" | "function" | "relation" | "builtin"
    usage_guidelines: Optional[str] = None
    server_name: Optional[str] = None
    # Id of the agent-to-tool link this tool was configured through
    relationship_id: Optional[str] = None

    def openai_schema(self) -> Dict[str, Any]:
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.parameters or {"type": "object", "properties": {}},
            },
        }


def wrap_callable(func: Callable[..., Any]) -> ToolHandler:
    """Adapt a sync or async ``func(**args)`` into a ToolHandler."""

    async def _handler(args: Dict[str, Any], tool_call_id: str) -> Any:
        if inspect.iscoroutinefunction(func):
            return await func(**args)
        result = await asyncio.to_thread(func, **args)
        if inspect.isawaitable(result):
            result = await result
        return result

    return _handler


@dataclass
class ToolResultEntry:
    tool_call_id: str
    tool_name: str
    args: Dict[str, Any]
    result: Any
    timestamp: float = field(default_factory=time.time)


class ToolSession:
    """Turn-scoped record of tool results, and the single sentinel resolver.

    Args:
        artifact_store: Resolves ``$artifact`` sentinels. Optional for agents
            without artifact components.
    """

    def __init__(self, artifact_store: Any = None):
        self.artifact_store = artifact_store
        self._results: Dict[str, ToolResultEntry] = {}

    def record(self, tool_call_id: str, tool_name: str, args: Dict[str, Any], result: Any) -> ToolResultEntry:
        entry = ToolResultEntry(tool_call_id, tool_name, args, result)
        self._results[tool_call_id] = entry
        return entry

    def get_result(self, tool_call_id: str) -> Optional[ToolResultEntry]:
        return self._results.get(tool_call_id)

    @property
    def results(self) -> List[ToolResultEntry]:
        return list(self._results.values())

    def _resolve_sentinel(self, value: Mapping[str, Any]) -> Any:
        tool_call_id = value[SENTINEL_TOOL_KEY]
        if SENTINEL_ARTIFACT_KEY in value:
            if self.artifact_store is None:
                raise ArtifactError(
                    f"Artifact {value[SENTINEL_ARTIFACT_KEY]} cannot be resolved: no artifact store for this turn"
                )
            return self.artifact_store.get_full(value[SENTINEL_ARTIFACT_KEY], tool_call_id)

        entry = self._results.get(tool_call_id)
        if entry is None:
            raise ToolReferenceError(f"Tool call {tool_call_id} has no recorded result in this turn")
        return entry.result

    def resolve_arguments(self, value: Any) -> Any:
        """Recursively replace sentinel objects inside *value*.

        A dict is a sentinel only when its keys are exactly ``{"$tool"}`` or
        ``{"$artifact", "$tool"}``; anything else is walked as data.

        Raises:
            ArtifactNotFound: an ``$artifact`` pair that was never created.
            ToolReferenceError: a ``$tool`` id with no recorded result.
        """
        if isinstance(value, dict):
            keys = set(value)
            if keys == {SENTINEL_TOOL_KEY} or keys == {SENTINEL_ARTIFACT_KEY, SENTINEL_TOOL_KEY}:
                return self._resolve_sentinel(value)
            return {k: self.resolve_arguments(v) for k, v in value.items()}
        if isinstance(value, list):
            return [self.resolve_arguments(v) for v in value]
        return value

    def release(self) -> None:
        self._results.clear()


@dataclass(frozen=True)
class ToolExecConfig:
    """Immutable configuration for tool execution within one turn."""

    tools: Mapping[str, RuntimeTool]
    with_structure_hints: bool = False
    max_result_chars: int = MAX_TOOL_RESULT_CHARS


async def run_tool(
    config: ToolExecConfig,
    session: ToolSession,
    name: str,
    args: Dict[str, Any],
    tool_call_id: str,
) -> Any:
    """Resolve, execute and record one tool call; return the model-facing result."""
    tool = config.tools.get(name)
    if tool is None:
        raise KeyError(f"Unknown tool: {name}")

    resolved = session.resolve_arguments(args)
    start = time.time()
    result = await tool.execute(resolved, tool_call_id)
    logger.debug("Tool %s (%s) completed in %.2fs", name, tool_call_id, time.time() - start)

    session.record(tool_call_id, name, args, result)
    return annotate_tool_result(result, tool_call_id, config.with_structure_hints)


def serialize_tool_result(result: Any, max_chars: int = MAX_TOOL_RESULT_CHARS) -> str:
    content = result if isinstance(result, str) else json.dumps(result, ensure_ascii=False, default=str)
    # 100K chars ~ 25K tokens
    if len(content) > max_chars:
        original_len = len(content)
        content = (
            content[:max_chars]
            + f"\n\n[Truncated: tool response was {original_len:,} chars, "
            f"exceeding the {max_chars:,} char limit]"
        )
    return content


async def execute_tool_calls(
    config: ToolExecConfig,
    session: ToolSession,
    tool_calls: List[Any],
    messages: List[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """Execute all tool calls from an OpenAI-style assistant message.

    Appends one ``role: tool`` message per call to *messages* and returns
    step records ``{tool_call_id, tool_name, args, result}``. A failing tool
    is reported back to the model as ``{"error": ...}``; the turn goes on.
    """
    records = []
    for i, tool_call in enumerate(tool_calls, 1):
        function_name = tool_call.function.name
        try:
            function_args = json.loads(tool_call.function.arguments or "{}")
        except json.JSONDecodeError as e:
            logger.warning("Invalid JSON arguments for tool %s: %s", function_name, e)
            function_args = {}
        if not isinstance(function_args, dict):
            function_args = {}

        logger.info("Tool %d: %s(%s)", i, function_name, list(function_args.keys()))
        try:
            result = await run_tool(config, session, function_name, function_args, tool_call.id)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.warning("Tool %s failed: %s", function_name, e)
            result = {"error": str(e)}

        messages.append({
            "role": "tool",
            "content": serialize_tool_result(result, config.max_result_chars),
            "tool_call_id": tool_call.id,
        })
        record = {
            "tool_call_id": tool_call.id,
            "tool_name": function_name,
            "args": function_args,
            "result": result,
        }
        tool = config.tools.get(function_name)
        if tool is not None and tool.relationship_id:
            record["relationship_id"] = tool.relationship_id
        records.append(record)
    return records
