"""
Tool Resolver -- turns declared tool references into callable runtime tools.

Responsibilities:
  - Build MCP server connection settings (credentials, Nango detection,
    forwarded headers)
  - Cache one MCP client per turn and server, sharing concurrent connects
  - Apply tool selection and per-tool overrides
  - Wrap function tools (sync or async callables)
  - Degrade a broken MCP server to an empty tool set with a warning
  - Sanitize runtime tool names and map connection errors to readable messages

Usage:
    from tools.tool_resolver import ToolResolver

    resolver = ToolResolver(agent_config, execution_context, credential_stuffer)
    tools, groups = await resolver.resolve_all()
    ...
    await resolver.cleanup()
"""

import asyncio
import copy
import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

from relay.config import AgentConfig, ExecutionContext, McpServerGroupData, McpToolConfig, ToolData
from relay.credentials import CredentialResolutionError, CredentialStuffer, ResolvedMcpServer
from relay.tool_executor import RuntimeTool, wrap_callable
from tools.mcp_client import (
    HttpTransport,
    MCPClient,
    MCPProtocolError,
    MCPTransportError,
    sanitize_error,
    tool_result_text,
)

logger = logging.getLogger(__name__)

FUNCTION_TOOL_USAGE = "Use this tool when appropriate for the task at hand."
UNNAMED_TOOL = "unnamed_tool"
MAX_TOOL_NAME_LENGTH = 100

ClientFactory = Callable[[str, Dict[str, str]], MCPClient]


def _default_client_factory(url: str, headers: Dict[str, str]) -> MCPClient:
    return MCPClient(HttpTransport(url, headers=headers))


# ---------------------------------------------------------------------------
# Tool name helpers
# ---------------------------------------------------------------------------

def sanitize_tool_name(name: str) -> str:
    """Coerce *name* to ``^[a-zA-Z0-9_-]{1,100}$``."""
    name = re.sub(r"[^a-zA-Z0-9_-]", "_", name or "")
    name = re.sub(r"_+", "_", name).strip("_")
    return name[:MAX_TOOL_NAME_LENGTH] or UNNAMED_TOOL


# ---------------------------------------------------------------------------
# Schema conversion
# ---------------------------------------------------------------------------

def _dereference_schema(schema: dict) -> dict:
    """Recursively inline JSON Schema ``$ref`` definitions.

    Many LLMs handle inlined schemas better than ``$ref`` pointers.
    """
    defs = schema.get("$defs", schema.get("definitions", {}))
    if not defs:
        return copy.deepcopy(schema)

    def _resolve(obj):
        if isinstance(obj, dict):
            ref = obj.get("$ref")
            if isinstance(ref, str):
                for prefix in ("#/$defs/", "#/definitions/"):
                    if ref.startswith(prefix) and ref[len(prefix):] in defs:
                        return _resolve(copy.deepcopy(defs[ref[len(prefix):]]))
                return obj
            return {k: _resolve(v) for k, v in obj.items()}
        if isinstance(obj, list):
            return [_resolve(item) for item in obj]
        return obj

    result = _resolve(copy.deepcopy(schema))
    result.pop("$defs", None)
    result.pop("definitions", None)
    return result


def normalize_input_schema(schema: Optional[dict]) -> dict:
    schema = _dereference_schema(schema) if isinstance(schema, dict) else {}
    if not schema.get("type"):
        schema["type"] = "object"
    schema.setdefault("properties", {})
    return schema


def _unwrap_call_result(result: dict) -> Any:
    """Reduce a ``tools/call`` result to the value the model and selectors see."""
    if result.get("structuredContent") is not None:
        return result["structuredContent"]
    blocks = result.get("content") or []
    if blocks and all(isinstance(b, dict) and b.get("type") == "text" for b in blocks):
        text = tool_result_text(result)
        try:
            return json.loads(text)
        except json.JSONDecodeError:
            return text
    return {k: v for k, v in result.items() if k != "isError"}


def describe_connection_error(error: Exception) -> str:
    """Map a connect failure onto the message shown to operators."""
    message = sanitize_error(str(error))
    lowered = message.lower()
    if "refused" in lowered or "connection failed" in lowered:
        return "Connection refused. Please check if the MCP server is running."
    if "404" in message:
        return "Error accessing endpoint (HTTP 404)"
    return f"MCP server connection failed: {message}"


# ---------------------------------------------------------------------------
# Resolver
# ---------------------------------------------------------------------------

@dataclass
class McpToolSet:
    server_id: str
    server_name: str
    tools: List[RuntimeTool] = field(default_factory=list)
    server_instructions: Optional[str] = None


class ToolResolver:
    """Resolves one agent's tools for one turn.

    Args:
        config: The agent being run.
        execution_context: Supplies the project's credential references.
        credential_stuffer: Builds authenticated connection headers. Optional;
            without it tools with a credential reference cannot connect.
        client_factory: ``(url, headers) -> MCPClient``; tests inject fakes.
    """

    def __init__(
        self,
        config: AgentConfig,
        execution_context: ExecutionContext,
        credential_stuffer: Optional[CredentialStuffer] = None,
        client_factory: Optional[ClientFactory] = None,
    ):
        self.config = config
        self.execution_context = execution_context
        self.credential_stuffer = credential_stuffer
        self.client_factory = client_factory or _default_client_factory
        self._clients: Dict[str, MCPClient] = {}
        self._locks: Dict[str, asyncio.Lock] = {}

    def cache_key(self, tool: McpToolConfig) -> str:
        forwarded = self.config.forwarded_headers
        if forwarded:
            digest = hashlib.sha256(json.dumps(sorted(forwarded.items())).encode("utf-8")).hexdigest()[:16]
        else:
            digest = "no-fwd"
        return (
            f"{self.config.tenant_id}-{self.config.project_id}-{tool.id}-"
            f"{tool.credential_reference_id or 'no-cred'}-{digest}"
        )

    async def _server_config(self, tool: McpToolConfig) -> ResolvedMcpServer:
        reference = None
        if tool.credential_reference_id:
            reference = self.execution_context.project.credential_references.get(tool.credential_reference_id)
            if reference is None:
                raise CredentialResolutionError(f"Credential reference not found: {tool.credential_reference_id}")
            if self.credential_stuffer is None:
                raise CredentialResolutionError(
                    f"No credential store configured for credential reference {tool.credential_reference_id}"
                )

        if self.credential_stuffer is not None:
            return await self.credential_stuffer.build_mcp_server_config(
                tool, reference, self.config.forwarded_headers
            )
        headers = {**tool.server.headers, **tool.headers, **self.config.forwarded_headers}
        return ResolvedMcpServer(url=tool.server.url, headers=headers, server_type="generic")

    async def _connect(self, tool: McpToolConfig, server: ResolvedMcpServer) -> MCPClient:
        client = self.client_factory(server.url, server.headers)
        try:
            await client.connect()
        except (MCPTransportError, MCPProtocolError) as e:
            await client.disconnect()
            raise MCPTransportError(describe_connection_error(e)) from e
        except Exception:
            await client.disconnect()
            raise
        logger.info("Connected MCP server '%s' (%s) for sub-agent %s", tool.name, server.server_type, self.config.id)
        return client

    async def get_client(self, tool: McpToolConfig) -> MCPClient:
        key = self.cache_key(tool)
        lock = self._locks.setdefault(key, asyncio.Lock())
        async with lock:
            client = self._clients.get(key)
            if client is not None and not client.is_connected:
                del self._clients[key]
                client = None
            if client is None:
                server = await self._server_config(tool)
                client = await self._connect(tool, server)
                self._clients[key] = client
            return client

    def _make_mcp_tool(self, client: MCPClient, tool: McpToolConfig, remote: dict) -> RuntimeTool:
        remote_name = remote["name"]
        override = tool.tool_overrides.get(remote_name)
        name = sanitize_tool_name((override and override.display_name) or remote_name)
        description = (
            (override and override.description)
            or remote.get("description")
            or f"Tool {name}"
        )
        schema = override.schema_ if override and override.schema_ else remote.get("inputSchema")

        async def _execute(args: Dict[str, Any], tool_call_id: str) -> Any:
            result = await client.call_tool(remote_name, args)
            return _unwrap_call_result(result)

        return RuntimeTool(
            name=name,
            description=description,
            parameters=normalize_input_schema(schema),
            execute=_execute,
            kind="mcp",
            usage_guidelines=f"Use this tool from {tool.name} server when appropriate.",
            server_name=tool.name,
            relationship_id=tool.relationship_id,
        )

    async def resolve_mcp_tools(self, tool: McpToolConfig) -> McpToolSet:
        """Connect to *tool*'s server and wrap its (selected) tools.

        Raises:
            MCPTransportError: with a readable message when the connect fails.
        """
        client = await self.get_client(tool)
        remote_tools = await client.list_tools()
        available = {t.get("name") for t in remote_tools}

        unknown = [name for name in tool.tool_overrides if name not in available]
        if unknown:
            logger.warning("Tool override configured for non-existent tools on '%s': %s", tool.name, unknown)

        for allowed in (tool.selected_tools, tool.active_tools):
            if allowed is not None:
                remote_tools = [t for t in remote_tools if t.get("name") in set(allowed)]

        runtime_tools = [self._make_mcp_tool(client, tool, t) for t in remote_tools if t.get("name")]
        if not runtime_tools:
            logger.warning(
                "MCP server '%s' has 0 effective tools. Double check the selected tools "
                "and the active tools in the MCP server configuration.", tool.name,
            )
        return McpToolSet(
            server_id=tool.id,
            server_name=tool.name,
            tools=runtime_tools,
            server_instructions=tool.server.instructions or client.instructions,
        )

    def resolve_function_tools(self) -> List[RuntimeTool]:
        return [
            RuntimeTool(
                name=sanitize_tool_name(ft.name),
                description=ft.description or f"Tool {ft.name}",
                parameters=normalize_input_schema(ft.parameters),
                execute=wrap_callable(ft.execute),
                kind="function",
                usage_guidelines=FUNCTION_TOOL_USAGE,
            )
            for ft in self.config.function_tools
        ]

    async def resolve_all(self) -> Tuple[List[RuntimeTool], List[McpToolSet]]:
        """Resolve every MCP and function tool. Broken MCP servers contribute nothing."""
        tool_sets: List[McpToolSet] = []
        for tool in self.config.tools:
            try:
                tool_sets.append(await self.resolve_mcp_tools(tool))
            except (MCPTransportError, MCPProtocolError, CredentialResolutionError) as e:
                logger.warning(
                    "Skipping tools from MCP server '%s' for sub-agent %s: %s",
                    tool.name, self.config.id, sanitize_error(str(e)),
                )
                tool_sets.append(McpToolSet(server_id=tool.id, server_name=tool.name))

        runtime_tools = [t for ts in tool_sets for t in ts.tools]
        runtime_tools.extend(self.resolve_function_tools())
        logger.info("Resolved %d tools for sub-agent %s", len(runtime_tools), self.config.id)
        return runtime_tools, tool_sets

    async def cleanup(self) -> None:
        """Disconnect every cached client. Failures are logged, never raised."""
        clients, self._clients = list(self._clients.items()), {}
        self._locks.clear()
        for key, client in clients:
            try:
                await client.disconnect()
            except Exception as e:
                logger.warning("Failed to disconnect MCP client %s: %s", key, sanitize_error(str(e)))


def to_tool_data(tool: RuntimeTool) -> ToolData:
    return ToolData(
        name=tool.name,
        description=tool.description,
        input_schema=tool.parameters,
        usage_guidelines=tool.usage_guidelines,
    )


def to_server_groups(tool_sets: List[McpToolSet]) -> List[McpServerGroupData]:
    """Prompt-facing view of the MCP tool sets that produced at least one tool."""
    return [
        McpServerGroupData(
            server_name=ts.server_name,
            server_instructions=ts.server_instructions,
            tools=[to_tool_data(t) for t in ts.tools],
        )
        for ts in tool_sets
        if ts.tools
    ]


def index_tools(tools: List[RuntimeTool]) -> Mapping[str, RuntimeTool]:
    """Name -> tool, later entries losing to earlier ones on a name clash."""
    indexed: Dict[str, RuntimeTool] = {}
    for tool in tools:
        if tool.name in indexed:
            logger.warning("Duplicate tool name '%s' (%s); keeping the first", tool.name, tool.kind)
            continue
        indexed[tool.name] = tool
    return indexed
