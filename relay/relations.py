"""Transfer and delegate tools.

A *transfer* hands the conversation to a sibling sub-agent: the tool only
returns a marker and the orchestrator switches agents. A *delegate* calls
another agent as a sub-routine and returns its answer as the tool result.

Delegate targets come in three flavours:

- ``internal``: a sibling sub-agent, run in-process through ``internal_runner``
- ``external``: a remote A2A agent, with static and/or credential headers
- ``team``: another agent of the project behind the A2A gateway, called
  with templated routing headers and a fresh service token
"""

import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Dict, List, Optional

from relay.a2a_client import A2AClient, RetryConfig, build_message, extract_text
from relay.config import (
    AgentConfig,
    AgentDefinition,
    ExecutionContext,
    ExternalAgentRelationConfig,
    ExternalDelegate,
    InternalDelegate,
    Models,
    ModelSettings,
    TeamAgentRelationConfig,
    TeamDelegate,
)
from relay.credentials import CredentialStuffer, ServiceTokenMinter, render_header_template
from relay.tool_executor import RuntimeTool
from relay_constants import (
    AGENT_ID_HEADER,
    DELEGATE_TOOL_PREFIX,
    PROJECT_ID_HEADER,
    SUB_AGENT_ID_HEADER,
    TENANT_ID_HEADER,
    TRANSFER_TOOL_PREFIX,
)

logger = logging.getLogger(__name__)

NO_DESCRIPTION = "No description available"

InternalRunner = Callable[[AgentConfig, ExecutionContext, str, str], Awaitable[Any]]
A2AClientFactory = Callable[[str, Dict[str, str]], A2AClient]


class RelationResolutionError(Exception):
    """An unknown sub-agent or an unusable delegate target."""
    pass


class DelegationError(Exception):
    """The delegated agent answered with an error object."""

    def __init__(self, message: str, code: Any = None):
        self.code = code
        super().__init__(message)


def relation_tool_name(prefix: str, target_id: str) -> str:
    slug = re.sub(r"\s+", "_", target_id.lower())
    return f"{prefix}_to_{slug}"


def is_transfer_tool(name: str) -> bool:
    return name.startswith(f"{TRANSFER_TOOL_PREFIX}_to_")


# ---------------------------------------------------------------------------
# Descriptions
# ---------------------------------------------------------------------------

def _tools_section(config: AgentConfig) -> str:
    if not config.tools:
        return ""
    servers = []
    for tool in config.tools:
        listing = "\n".join(
            f"  - {t.name}: {t.description or NO_DESCRIPTION}" for t in tool.available_tools
        )
        servers.append(f"MCP Server: {tool.name}\n{listing}")
    return "\n\nAvailable Tools & Capabilities:\n" + "\n\n".join(servers)


def _transfer_list_section(config: AgentConfig) -> str:
    if not config.transfer_relations:
        return ""
    listing = "\n".join(
        f"  - {t.name or t.id}: {t.description or NO_DESCRIPTION}" for t in config.transfer_relations
    )
    return f"\n\nCan Transfer To:\n{listing}"


def _delegate_list_section(config: AgentConfig) -> str:
    if not config.delegate_relations:
        return ""
    listing = "\n".join(
        f"  - {d.config.name or d.config.id}: {d.config.description or NO_DESCRIPTION} ({d.type})"
        for d in config.delegate_relations
    )
    return f"\n\nCan Delegate To:\n{listing}"


def transfer_tool_description(target: AgentConfig) -> str:
    return (
        "CRITICAL TRANSFER PROTOCOL\n\n"
        f"This tool immediately transfers conversation control to agent {target.id}.\n\n"
        "MANDATORY BEHAVIOR:\n"
        "1. DO NOT write any response to the user\n"
        "2. DO NOT explain what you're doing\n"
        "3. DO NOT provide partial answers\n"
        "4. ONLY call this tool and STOP\n\n"
        "Agent Information:\n"
        f"- ID: {target.id}\n"
        f"- Name: {target.name or 'No name provided'}\n"
        f"- Description: {target.description or 'No description provided'}"
        f"{_tools_section(target)}{_transfer_list_section(target)}{_delegate_list_section(target)}\n\n"
        "Use when: The user's request is better handled by this specialized agent.\n\n"
        "VIOLATION WARNING: Any text generation before/after this tool call will create a disjointed "
        "user experience. The receiving agent will provide the complete response."
    )


def delegate_tool_description(relation) -> str:
    config = relation.config
    extra = ""
    if isinstance(relation, InternalDelegate):
        extra = _tools_section(config) + _transfer_list_section(config) + _delegate_list_section(config)
    return (
        "Delegate a specific task to another agent and wait for their response.\n\n"
        "Agent Information:\n"
        f"- ID: {config.id}\n"
        f"- Name: {config.name}\n"
        f"- Description: {config.description or 'No description provided'}\n"
        f"- Type: {relation.type}{extra}\n\n"
        f"Delegate a specific task to agent {config.id} when it can do relevant work. The delegated "
        "agent will return results that you can incorporate into your response to the user.\n\n"
        "NOTE: Unlike transfers, delegation returns control back to you with the delegated agent's results."
    )


# ---------------------------------------------------------------------------
# Transfer
# ---------------------------------------------------------------------------

def create_transfer_tool(target: AgentConfig, calling_agent_id: str) -> RuntimeTool:
    async def _execute(args: Dict[str, Any], tool_call_id: str) -> Dict[str, Any]:
        logger.info("Transfer requested: %s -> %s", calling_agent_id, target.id)
        return {
            "type": "transfer",
            "target_sub_agent_id": target.id,
            "from_sub_agent_id": calling_agent_id,
        }

    return RuntimeTool(
        name=relation_tool_name(TRANSFER_TOOL_PREFIX, target.id),
        description=transfer_tool_description(target),
        parameters={"type": "object", "properties": {}},
        execute=_execute,
        kind="relation",
        usage_guidelines="Use this tool to transfer to another agent when appropriate.",
    )


# ---------------------------------------------------------------------------
# Delegate
# ---------------------------------------------------------------------------

@dataclass
class DelegationContext:
    """Everything a delegate tool needs beyond its target.

    Args:
        internal_runner: ``(config, execution_context, message, context_id)``
            runs a sibling sub-agent in-process and returns its result.
        api_key: The caller's key, inherited by internal delegates.
    """

    execution_context: ExecutionContext
    calling_agent_id: str
    context_id: str
    internal_runner: Optional[InternalRunner] = None
    history_store: Any = None
    credential_stuffer: Optional[CredentialStuffer] = None
    token_minter: Optional[ServiceTokenMinter] = None
    api_key: Optional[str] = None
    forwarded_headers: Dict[str, str] = field(default_factory=dict)
    metadata: Dict[str, Any] = field(default_factory=dict)
    a2a_client_factory: Optional[A2AClientFactory] = None
    retry: Optional[RetryConfig] = RetryConfig()

    def make_client(self, base_url: str, headers: Dict[str, str]) -> A2AClient:
        if self.a2a_client_factory is not None:
            return self.a2a_client_factory(base_url, headers)
        return A2AClient(base_url, headers=headers, retry=self.retry)


def _mint(ctx: DelegationContext, target_id: str) -> str:
    if ctx.token_minter is None:
        raise RelationResolutionError(
            f"Cannot delegate to {target_id}: no service token secret is configured"
        )
    ec = ctx.execution_context
    return ctx.token_minter.mint(ec.tenant_id, ec.project_id, ec.agent_id, target_id)


def internal_delegate_token(ctx: DelegationContext, target_id: str) -> Optional[str]:
    """The key an in-process delegate runs with, or None without one.

    Under a team delegation the inherited key is scoped to the parent agent,
    so a fresh service token is minted for this hop.
    """
    token = ctx.api_key
    if ctx.execution_context.metadata.get("team_delegation") and token:
        token = _mint(ctx, target_id)
    return token


def internal_delegate_headers(ctx: DelegationContext, target_id: str, token: Optional[str]) -> Dict[str, str]:
    ec = ctx.execution_context
    headers = {
        TENANT_ID_HEADER: ec.tenant_id,
        PROJECT_ID_HEADER: ec.project_id,
        AGENT_ID_HEADER: ec.agent_id,
        SUB_AGENT_ID_HEADER: target_id,
    }
    if token:
        headers["Authorization"] = f"Bearer {token}"
    return headers


async def external_delegate_headers(ctx: DelegationContext, config: ExternalAgentRelationConfig) -> Dict[str, str]:
    if not (config.credential_reference_id or config.headers):
        return {}
    if ctx.credential_stuffer is None:
        return dict(config.headers or {})
    reference = None
    if config.credential_reference_id:
        reference = ctx.execution_context.project.credential_references.get(config.credential_reference_id)
        if reference is None:
            logger.warning(
                "Credential reference %s for external agent %s not found",
                config.credential_reference_id, config.id,
            )
    return await ctx.credential_stuffer.get_credential_headers(reference, config.headers)


def team_delegate_headers(ctx: DelegationContext, config: TeamAgentRelationConfig) -> Dict[str, str]:
    template_context = {"headers": ctx.forwarded_headers, "metadata": ctx.metadata}
    headers = {key: render_header_template(value, template_context) for key, value in config.headers.items()}
    headers["Authorization"] = f"Bearer {_mint(ctx, config.id)}"
    return headers


def _result_message(result: Any) -> Dict[str, Any]:
    """Wrap an in-process generation result the way a remote agent answers."""
    parts: List[Dict[str, Any]] = [{"kind": "text", "text": getattr(result, "text", None) or ""}]
    obj = getattr(result, "object", None)
    if obj is not None:
        parts.append({"kind": "data", "data": obj})
    return {"kind": "message", "role": "agent", "parts": parts, "messageId": uuid.uuid4().hex}


def create_delegate_tool(relation, ctx: DelegationContext) -> RuntimeTool:
    target = relation.config
    is_internal = isinstance(relation, InternalDelegate)

    async def _record(**fields: Any) -> None:
        if ctx.history_store is not None:
            await ctx.history_store.create_message(ctx.context_id, **fields)

    async def _execute(args: Dict[str, Any], tool_call_id: str) -> Dict[str, Any]:
        message = args.get("message", "")
        delegation_id = f"del_{uuid.uuid4().hex}"
        visibility = "internal" if is_internal else "external"
        target_key = "to_sub_agent_id" if is_internal else "to_external_agent_id"
        source_key = "from_sub_agent_id" if is_internal else "from_external_agent_id"
        logger.info(
            "Delegating %s -> %s (%s, %s)", ctx.calling_agent_id, target.id, relation.type, delegation_id,
        )

        await _record(
            role="agent", text=message, visibility=visibility, message_type="a2a-request",
            from_sub_agent_id=ctx.calling_agent_id, delegation_id=delegation_id, **{target_key: target.id},
        )

        if is_internal:
            result = await _run_internal(message, delegation_id)
        else:
            result = await _run_remote(message, delegation_id)

        await _record(
            role="agent", text=extract_text(result), visibility=visibility, message_type="a2a-response",
            to_sub_agent_id=ctx.calling_agent_id, delegation_id=delegation_id, **{source_key: target.id},
        )
        logger.info("Delegation %s returned from %s", delegation_id, target.id)
        return {"tool_call_id": tool_call_id, "result": result}

    async def _run_internal(message: str, delegation_id: str) -> Dict[str, Any]:
        if ctx.internal_runner is None:
            raise RelationResolutionError(f"No in-process runner available to delegate to {target.id}")
        token = internal_delegate_token(ctx, target.id)
        headers = internal_delegate_headers(ctx, target.id, token)
        ec = ctx.execution_context
        derived = ec.model_copy(update={
            "api_key": token,
            "metadata": {
                **ec.metadata,
                "is_delegation": True,
                "delegation_id": delegation_id,
                "from_sub_agent_id": ctx.calling_agent_id,
                "headers": headers,
            },
        })
        result = await ctx.internal_runner(target, derived, message, ctx.context_id)
        return _result_message(result)

    async def _run_remote(message: str, delegation_id: str) -> Any:
        if isinstance(relation, TeamDelegate):
            headers = team_delegate_headers(ctx, target)
        else:
            headers = await external_delegate_headers(ctx, target)

        envelope = build_message(
            message,
            ctx.context_id,
            metadata={
                **ctx.metadata,
                "is_delegation": True,
                "delegation_id": delegation_id,
                "from_external_agent_id": ctx.calling_agent_id,
            },
        )
        response = await ctx.make_client(target.base_url, headers).send_message(envelope)
        if response.error is not None:
            raise DelegationError(response.error.get("message") or "Unknown delegation error", response.error.get("code"))
        return response.result

    return RuntimeTool(
        name=relation_tool_name(DELEGATE_TOOL_PREFIX, target.id),
        description=delegate_tool_description(relation),
        parameters={
            "type": "object",
            "properties": {"message": {"type": "string", "description": "The task for the delegated agent."}},
            "required": ["message"],
        },
        execute=_execute,
        kind="relation",
        usage_guidelines="Use this tool to delegate to another agent when appropriate.",
    )


def create_relation_tools(config: AgentConfig, ctx: DelegationContext) -> List[RuntimeTool]:
    tools = [create_transfer_tool(target, config.id) for target in config.transfer_relations]
    tools.extend(create_delegate_tool(relation, ctx) for relation in config.delegate_relations)
    return tools


# ---------------------------------------------------------------------------
# Resolving sub-agents from the project snapshot
# ---------------------------------------------------------------------------

def _merge_models(*layers: Optional[Models]) -> Optional[Models]:
    """Per-role merge, earlier layers winning."""
    merged: Dict[str, ModelSettings] = {}
    for layer in layers:
        if layer is None:
            continue
        for role in ("base", "structured_output", "summarizer"):
            settings = getattr(layer, role)
            if settings is not None and role not in merged:
                merged[role] = settings
    return Models(**merged) if merged else None


def _agent_definition(ec: ExecutionContext) -> AgentDefinition:
    agent = ec.project.agents.get(ec.agent_id)
    if agent is None:
        raise RelationResolutionError(f"Agent not found: {ec.agent_id}")
    return agent


def _sibling_identity(ec: ExecutionContext, sub_agent_id: str) -> AgentConfig:
    definition = _agent_definition(ec).sub_agents.get(sub_agent_id)
    if definition is None:
        raise RelationResolutionError(f"Target sub-agent not found: {sub_agent_id}")
    return AgentConfig(
        tenant_id=ec.tenant_id,
        project_id=ec.project_id,
        agent_id=ec.agent_id,
        id=sub_agent_id,
        name=definition.name or sub_agent_id,
        description=definition.description,
    )


def resolve_sub_agent_config(
    ec: ExecutionContext,
    sub_agent_id: str,
    forwarded_headers: Optional[Dict[str, str]] = None,
    depth: int = 2,
) -> AgentConfig:
    """Build the AgentConfig of *sub_agent_id* from the project snapshot.

    Relation targets are resolved one level shallower; at ``depth == 0`` a
    config carries no relations (enough for tool descriptions).

    Raises:
        RelationResolutionError: unknown agent, sub-agent, component or target.
    """
    agent = _agent_definition(ec)
    definition = agent.sub_agents.get(sub_agent_id)
    if definition is None:
        raise RelationResolutionError(f"Target sub-agent not found: {sub_agent_id}")
    project = ec.project

    def _pick(components, names, kind):
        by_name = {c.id or c.name: c for c in components}
        by_name.update({c.name: c for c in components})
        missing = [n for n in names if n not in by_name]
        if missing:
            raise RelationResolutionError(f"Unknown {kind} for sub-agent {sub_agent_id}: {missing}")
        return [by_name[n] for n in names]

    transfer_relations: List[AgentConfig] = []
    delegate_relations: List[Any] = []
    sub_agent_relations: List[AgentConfig] = []
    if depth > 0:
        for target_id in dict.fromkeys([*definition.can_transfer_to, *definition.can_delegate_to]):
            sub_agent_relations.append(_sibling_identity(ec, target_id))
        for target_id in definition.can_transfer_to:
            transfer_relations.append(resolve_sub_agent_config(ec, target_id, forwarded_headers, depth - 1))
        for target_id in definition.can_delegate_to:
            delegate_relations.append(
                InternalDelegate(config=resolve_sub_agent_config(ec, target_id, forwarded_headers, depth - 1))
            )
        for external_id in definition.external_delegates:
            external = project.external_agents.get(external_id)
            if external is None:
                raise RelationResolutionError(f"External agent not found: {external_id}")
            delegate_relations.append(ExternalDelegate(config=external))
        for team_id in definition.team_delegates:
            team = project.team_agents.get(team_id)
            if team is None:
                raise RelationResolutionError(f"Team agent not found: {team_id}")
            delegate_relations.append(TeamDelegate(config=team))

    return AgentConfig(
        tenant_id=ec.tenant_id,
        project_id=ec.project_id,
        agent_id=ec.agent_id,
        id=sub_agent_id,
        name=definition.name or sub_agent_id,
        description=definition.description,
        base_url=ec.base_url or project.base_url,
        prompt=definition.prompt,
        models=_merge_models(definition.models, agent.models, project.models),
        tools=definition.tools,
        data_components=_pick(project.data_components, definition.data_components, "data component"),
        artifact_components=_pick(project.artifact_components, definition.artifact_components, "artifact component"),
        sub_agent_relations=sub_agent_relations,
        transfer_relations=transfer_relations,
        delegate_relations=delegate_relations,
        conversation_history_config=definition.conversation_history_config,
        skills=definition.skills,
        stop_when=definition.stop_when,
        forwarded_headers=dict(forwarded_headers or {}),
    )


def default_sub_agent_id(ec: ExecutionContext) -> str:
    agent = _agent_definition(ec)
    if agent.default_sub_agent_id:
        return agent.default_sub_agent_id
    if not agent.sub_agents:
        raise RelationResolutionError(f"Agent {ec.agent_id} has no sub-agents")
    return next(iter(agent.sub_agents))
