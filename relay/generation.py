"""Two-pass generation: one reasoning turn of one sub-agent.

Per turn::

    Idle -> BuildingPrompt -> ResolvingTools -> Generating -> (StructuredPass?) -> Done | Failed

- BuildingPrompt gathers conversation history and assembles the system prompt.
- ResolvingTools merges MCP, function, relation and built-in tools; every one
  runs through the turn's ``ToolSession`` (sentinel resolution + recording).
- Generating makes one tool-loop call with the ``base`` model and stops early
  on a ``transfer_to_*`` call.
- StructuredPass (only with data components) replays the same trace, without
  tools, constrained to ``{"dataComponents": [...]}``.

Turn-scoped resources (MCP clients, tool session, artifact store, compressor)
are released in ``finally``.
"""

import inspect
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Mapping, Optional
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from relay.artifacts import (
    ArtifactParser,
    ArtifactStore,
    artifact_create_components,
    artifact_reference_component,
)
from relay.config import (
    AgentConfig,
    ConfigValidationError,
    DataComponent,
    ExecutionContext,
    ModelSettings,
)
from relay.credentials import CredentialStuffer, ServiceTokenMinter
from relay.history import ConversationScope, Summarizer, TurnCompressor
from relay.model_metadata import estimate_tokens, get_compression_config_for_model
from relay.model_runner import GenerationRequest, ModelRunner, StepPredicate
from relay.prompt_assembler import PromptAssembler, PromptBreakdown, SystemPromptConfig
from relay.relations import (
    DelegationContext,
    RelationResolutionError,
    create_relation_tools,
    default_sub_agent_id,
    resolve_sub_agent_config,
)
from relay.schema_projector import make_all_properties_required
from relay.tool_executor import ToolExecConfig, ToolSession
from relay_constants import (
    CLIENT_TIMESTAMP_HEADER,
    CLIENT_TIMEZONE_HEADER,
    DEFAULT_MAX_GENERATION_STEPS,
    MAX_GENERATION_DURATION_SECONDS,
    TRANSFER_TOOL_PREFIX,
)
from tools.builtin_tools import default_tools
from tools.tool_resolver import ToolResolver, index_tools, to_server_groups, to_tool_data

logger = logging.getLogger(__name__)

TEXT_COMPONENT = DataComponent(
    id="text-content",
    name="Text",
    description="Natural conversational text for the user. Use it for explanations and any prose.",
    props={
        "type": "object",
        "properties": {
            "text": {"type": "string", "description": "Natural conversational text to show the user"},
        },
        "required": ["text"],
    },
)

STRUCTURED_PASS_INSTRUCTION = (
    "Now produce your final response to the user as structured output. Use only the data "
    "components described in the system prompt, and do not call any tools."
)

MAX_TRANSFERS = 10


class GenerationError(Exception):
    """Raised when a generation result cannot be resolved."""
    pass


@dataclass
class GenerationResult:
    text: Optional[str] = None
    object: Any = None
    steps: List[Dict[str, Any]] = field(default_factory=list)
    finish_reason: Optional[str] = None
    formatted_content: Optional[List[Dict[str, Any]]] = None
    transfer: Optional[Dict[str, Any]] = None
    artifacts: List[Any] = field(default_factory=list)
    prompt_breakdown: Optional[PromptBreakdown] = None
    messages: List[Dict[str, Any]] = field(default_factory=list, repr=False)
    sub_agent_id: Optional[str] = None


# ---------------------------------------------------------------------------
# Result resolution
# ---------------------------------------------------------------------------

def _field(response: Any, name: str) -> Any:
    if isinstance(response, Mapping):
        return response.get(name)
    return getattr(response, name, None)


async def _materialize(value: Any) -> Any:
    if inspect.isawaitable(value):
        return await value
    return value


def _has_steps(response: Any) -> bool:
    if isinstance(response, Mapping):
        return "steps" in response
    return hasattr(response, "steps")


async def resolve_generation_response(response: Any) -> Any:
    """Materialize a runner response into a ``GenerationResult``.

    Responses without ``steps`` are returned as-is. ``text=''`` stays ``''``.

    Raises:
        GenerationError: reading (or awaiting) one of the fields failed.
    """
    if not _has_steps(response):
        return response
    try:
        steps = await _materialize(_field(response, "steps"))
        text = await _materialize(_field(response, "text"))
        finish_reason = await _materialize(_field(response, "finish_reason"))
        output = await _materialize(_field(response, "output"))
        messages = await _materialize(_field(response, "messages"))
    except Exception as e:
        raise GenerationError(f"Failed to resolve generation response: {e}") from e
    return GenerationResult(
        text=text,
        object=output,
        steps=list(steps or []),
        finish_reason=finish_reason,
        messages=list(messages or []),
    )


def has_tool_call_with_prefix(prefix: str) -> StepPredicate:
    def _predicate(step: Dict[str, Any]) -> bool:
        return any(call.get("tool_name", "").startswith(prefix) for call in step.get("tool_calls") or [])

    return _predicate


def find_transfer(steps: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    for step in reversed(steps):
        for record in step.get("tool_results") or []:
            result = record.get("result")
            if isinstance(result, dict) and result.get("type") == "transfer":
                return {k: v for k, v in result.items() if not k.startswith("_")}
    return None


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

def validate_model(settings: Optional[ModelSettings], role: str) -> ModelSettings:
    if settings is None:
        if role == "Base":
            raise ConfigValidationError(
                "Base model configuration is required. Please configure models at the project level."
            )
        raise ConfigValidationError(f"{role} model configuration is required.")
    if not settings.model or not settings.model.strip():
        raise ConfigValidationError(f"{role} model is required. Please configure models at the project level.")
    return settings


def format_client_time(timezone: Optional[str], timestamp: Optional[str]) -> Optional[str]:
    """``Thursday, January 16, 2026 at 3:45 PM EST`` or None for missing/invalid headers."""
    if not timezone or not timestamp:
        return None
    try:
        moment = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
        if moment.tzinfo is None:
            moment = moment.replace(tzinfo=ZoneInfo("UTC"))
        local = moment.astimezone(ZoneInfo(timezone))
    except (ValueError, ZoneInfoNotFoundError) as e:
        logger.debug("Ignoring invalid client time headers (%s, %s): %s", timezone, timestamp, e)
        return None
    hour = local.hour % 12 or 12
    return f"{local:%A, %B} {local.day}, {local.year} at {hour}:{local:%M %p} {local.tzname()}"


def build_user_content(message: str, parts: Optional[List[Dict[str, Any]]] = None) -> Any:
    """User message content: text plus ``data`` blocks, and image parts as multimodal blocks."""
    text = message
    images = []
    for part in parts or []:
        kind = part.get("kind")
        if kind == "data":
            source = (part.get("metadata") or {}).get("source", "unknown")
            payload = json.dumps(part.get("data"), indent=2, ensure_ascii=False)
            text += f"\n\n<structured_data (source: {source})>\n{payload}\n</structured_data>"
        elif kind == "file":
            file = part.get("file") or {}
            mime = file.get("mimeType") or file.get("mime_type") or ""
            if not mime.startswith("image/"):
                logger.warning("Skipping non-image file part (%s)", mime or "unknown type")
                continue
            url = file.get("uri") or (f"data:{mime};base64,{file['bytes']}" if file.get("bytes") else None)
            if url:
                images.append({"type": "image_url", "image_url": {"url": url}})
    if not images:
        return text
    return [{"type": "text", "text": text}] + images


def build_structured_schema(components: List[DataComponent]) -> Dict[str, Any]:
    variants = []
    for component in components:
        props = make_all_properties_required(component.props or {"type": "object", "properties": {}})
        variants.append({
            "type": "object",
            "description": component.description,
            "properties": {
                "id": {"type": "string"},
                "name": {"type": "string", "enum": [component.name]},
                "props": props,
            },
            "required": ["id", "name", "props"],
        })
    return {
        "type": "object",
        "properties": {"dataComponents": {"type": "array", "items": {"anyOf": variants}}},
        "required": ["dataComponents"],
    }


# ---------------------------------------------------------------------------
# Agent
# ---------------------------------------------------------------------------

class Agent:
    """One sub-agent, ready to generate.

    Args:
        config: Caller-owned configuration; never mutated.
        execution_context: Per-request scope (project snapshot, auth, metadata).
        model_runner: The LLM boundary.
        history_store: Conversation history; history is skipped without one.
        credential_stuffer: Credentials for MCP servers and external agents.
        token_minter: Service tokens for team delegation.
        client_factory: MCP client factory (tests inject fakes).
        a2a_client_factory: A2A client factory (tests inject fakes).
        summarizer: Summarizes compressed history; a notice is used without one.
    """

    def __init__(
        self,
        config: AgentConfig,
        execution_context: ExecutionContext,
        model_runner: ModelRunner,
        *,
        history_store: Any = None,
        credential_stuffer: Optional[CredentialStuffer] = None,
        token_minter: Optional[ServiceTokenMinter] = None,
        client_factory: Optional[Callable] = None,
        a2a_client_factory: Optional[Callable] = None,
        summarizer: Optional[Summarizer] = None,
        assembler: Optional[PromptAssembler] = None,
        max_steps: int = DEFAULT_MAX_GENERATION_STEPS,
    ):
        self.config = config
        self.execution_context = execution_context
        self.model_runner = model_runner
        self.history_store = history_store
        self.credential_stuffer = credential_stuffer
        self.token_minter = token_minter
        self.client_factory = client_factory
        self.a2a_client_factory = a2a_client_factory
        self.summarizer = summarizer
        self.assembler = assembler or PromptAssembler()
        self.max_steps = (config.stop_when and config.stop_when.step_count_is) or max_steps

        # Processed copy of the data components; the caller's config is left alone
        data_components = list(config.data_components)
        if data_components:
            data_components.append(TEXT_COMPONENT)
            if config.artifact_components:
                data_components.insert(0, artifact_reference_component())
        self.data_components = data_components

    # -- helpers -----------------------------------------------------------

    def _spawn(self, config: AgentConfig, execution_context: ExecutionContext) -> "Agent":
        return Agent(
            config,
            execution_context,
            self.model_runner,
            history_store=self.history_store,
            credential_stuffer=self.credential_stuffer,
            token_minter=self.token_minter,
            client_factory=self.client_factory,
            a2a_client_factory=self.a2a_client_factory,
            summarizer=self.summarizer,
            assembler=self.assembler,
        )

    async def _run_internal(
        self, target: AgentConfig, execution_context: ExecutionContext, message: str, context_id: str,
    ) -> GenerationResult:
        """Run a sibling sub-agent in-process for a delegation."""
        config = target
        try:
            config = resolve_sub_agent_config(execution_context, target.id, self.config.forwarded_headers)
        except RelationResolutionError as e:
            logger.debug("Using the relation's own config for %s: %s", target.id, e)
        return await self._spawn(config, execution_context).generate(message, context_id=context_id)

    def _any_artifact_components(self) -> bool:
        if self.config.artifact_components:
            return True
        agent = self.execution_context.project.agents.get(self.config.agent_id)
        return bool(agent and any(sub.artifact_components for sub in agent.sub_agents.values()))

    def _agent_prompt(self) -> Optional[str]:
        agent = self.execution_context.project.agents.get(self.config.agent_id)
        return agent.prompt if agent else None

    async def _history(self, message: str, context_id: Optional[str], task_id: Optional[str], compression) -> str:
        options = self.config.conversation_history_config
        if self.history_store is None or not context_id or options.mode == "none":
            return ""
        if options.mode == "scoped":
            return await self.history_store.get_formatted_conversation_history(
                context_id,
                current_message=message,
                options=options,
                scope=ConversationScope(sub_agent_id=self.config.id, task_id=task_id),
            )
        return await self.history_store.get_conversation_history_with_compression(
            context_id,
            current_message=message,
            options=options,
            compression_config=compression,
            summarizer=self.summarizer,
        )

    def _prompt_config(self, tools, tool_sets, include_data_components: bool) -> SystemPromptConfig:
        forwarded = self.config.forwarded_headers
        mcp_names = {t.name for ts in tool_sets for t in ts.tools}
        return SystemPromptConfig(
            core_prompt=self.config.prompt,
            prompt=self._agent_prompt(),
            client_current_time=format_client_time(
                forwarded.get(CLIENT_TIMEZONE_HEADER), forwarded.get(CLIENT_TIMESTAMP_HEADER),
            ),
            skills=self.config.skills,
            tools=[to_tool_data(t) for t in tools if t.name not in mcp_names],
            mcp_server_groups=to_server_groups(tool_sets),
            data_components=self.data_components,
            include_data_components=include_data_components,
            artifacts=self.config.artifacts,
            artifact_components=self.config.artifact_components,
            all_project_artifact_components=self.execution_context.project.artifact_components or None,
            has_agent_artifact_components=bool(self.config.artifact_components),
            has_transfer_relations=bool(self.config.transfer_relations),
            has_delegate_relations=bool(self.config.delegate_relations),
        )

    # -- turn --------------------------------------------------------------

    async def generate(
        self,
        message: str,
        *,
        parts: Optional[List[Dict[str, Any]]] = None,
        context_id: Optional[str] = None,
        task_id: Optional[str] = None,
    ) -> GenerationResult:
        """Run one turn for *message*.

        Raises:
            ConfigValidationError: missing or blank model configuration.
            GenerationError: the runner's response could not be resolved.
            Exception: runner failures propagate with their original message.
        """
        models = self.config.models
        base = validate_model(models.base if models else None, "Base")
        structured = None
        if self.data_components:
            structured = validate_model((models.structured_output if models else None) or base, "Structured output")

        session = ToolSession()
        store = ArtifactStore(
            self.config.artifact_components, session, prior_artifacts=self.config.artifacts, task_id=task_id,
        )
        session.artifact_store = store
        compression = get_compression_config_for_model(base.model)
        compressor = TurnCompressor(compression, self.summarizer)
        resolver = ToolResolver(self.config, self.execution_context, self.credential_stuffer, self.client_factory)
        context_id = context_id or self.execution_context.metadata.get("conversation_id")

        logger.info("Generating for sub-agent %s (model %s)", self.config.id, base.model)
        try:
            # BuildingPrompt
            history = await self._history(message, context_id, task_id, compression)

            # ResolvingTools
            runtime_tools, tool_sets = await resolver.resolve_all()
            delegation = DelegationContext(
                execution_context=self.execution_context,
                calling_agent_id=self.config.id,
                context_id=context_id or "",
                internal_runner=self._run_internal,
                history_store=self.history_store,
                credential_stuffer=self.credential_stuffer,
                token_minter=self.token_minter,
                api_key=self.execution_context.api_key,
                forwarded_headers=self.config.forwarded_headers,
                metadata={"conversation_id": context_id, "task_id": task_id},
                a2a_client_factory=self.a2a_client_factory,
            )
            runtime_tools.extend(create_relation_tools(self.config, delegation))
            runtime_tools.extend(default_tools(
                artifact_store=store,
                any_artifact_components=self._any_artifact_components(),
                skills=self.config.skills,
                compressor=compressor,
                context_window=compression.model_context_info.context_window,
                agent_id=self.config.id,
            ))
            indexed = index_tools(runtime_tools)

            assembled = self.assembler.assemble(self._prompt_config(list(indexed.values()), tool_sets, False))
            breakdown = assembled.breakdown
            breakdown.conversation_history = estimate_tokens(history)
            system_prompt = f"{assembled.prompt}\n\n{history}" if history else assembled.prompt
            messages = [
                {"role": "system", "content": system_prompt},
                {"role": "user", "content": build_user_content(message, parts)},
            ]

            # Generating
            request = GenerationRequest(
                model=base,
                messages=messages,
                tools=list(indexed.values()),
                tool_config=ToolExecConfig(tools=indexed, with_structure_hints=bool(self.config.artifact_components)),
                session=session,
                max_steps=self.max_steps,
                stop_when=has_tool_call_with_prefix(f"{TRANSFER_TOOL_PREFIX}_to_"),
                timeout=MAX_GENERATION_DURATION_SECONDS,
                compressor=compressor,
            )
            raw = await self.model_runner.generate(request)
            result = await resolve_generation_response(raw)
            if not isinstance(result, GenerationResult):
                result = GenerationResult(
                    text=await _materialize(_field(result, "text")),
                    object=await _materialize(_field(result, "object")),
                    finish_reason=_field(result, "finish_reason"),
                )
            result.transfer = find_transfer(result.steps)
            if result.transfer and result.steps:
                result.text = result.steps[-1].get("text")

            # StructuredPass
            if self.data_components and result.transfer is None:
                await self._structured_pass(result, structured, tool_sets, indexed, messages, history)

            parser = ArtifactParser(store)
            if result.object is not None:
                result.formatted_content = parser.parse_object(result.object)
            elif result.text is not None:
                result.formatted_content = parser.parse_text(result.text)

            result.artifacts = [record.to_artifact() for record in store.created]
            result.prompt_breakdown = breakdown
            result.sub_agent_id = self.config.id
            logger.info(
                "Generation finished for sub-agent %s (%d steps, finish=%s%s)",
                self.config.id, len(result.steps), result.finish_reason,
                f", transfer to {result.transfer['target_sub_agent_id']}" if result.transfer else "",
            )
            return result
        finally:
            await resolver.cleanup()
            compressor.reset()
            session.release()
            store.clear()

    async def _structured_pass(
        self, result: GenerationResult, model: ModelSettings, tool_sets, indexed, messages, history: str,
    ):
        structured_prompt = self.assembler.assemble(
            self._prompt_config(list(indexed.values()), tool_sets, True)
        ).prompt
        if history:
            structured_prompt = f"{structured_prompt}\n\n{history}"
        trace = list(result.messages or messages)
        if trace and trace[0].get("role") == "system":
            trace[0] = {"role": "system", "content": structured_prompt}
        else:
            trace.insert(0, {"role": "system", "content": structured_prompt})
        trace.append({"role": "user", "content": STRUCTURED_PASS_INSTRUCTION})

        components = self.data_components + artifact_create_components(self.config.artifact_components)
        request = GenerationRequest(
            model=model,
            messages=trace,
            output_schema=build_structured_schema(components),
            schema_name="data_components",
            timeout=MAX_GENERATION_DURATION_SECONDS,
        )
        structured = await resolve_generation_response(await self.model_runner.generate(request))
        output = _field(structured, "object")
        result.object = output if output is not None else _field(structured, "output")
        result.finish_reason = _field(structured, "finish_reason") or result.finish_reason
        if isinstance(structured, GenerationResult):
            result.steps = result.steps + structured.steps


# ---------------------------------------------------------------------------
# Turn runner (enacts transfers)
# ---------------------------------------------------------------------------

async def run_turn(
    execution_context: ExecutionContext,
    message: str,
    model_runner: ModelRunner,
    *,
    sub_agent_id: Optional[str] = None,
    forwarded_headers: Optional[Dict[str, str]] = None,
    context_id: Optional[str] = None,
    max_transfers: int = MAX_TRANSFERS,
    **agent_kwargs: Any,
) -> GenerationResult:
    """Generate with the (default) sub-agent, following transfers to their target.

    Raises:
        RelationResolutionError: unknown sub-agent or too many transfers.
    """
    current = sub_agent_id or default_sub_agent_id(execution_context)
    history_store = agent_kwargs.get("history_store")
    if history_store is not None and context_id:
        await history_store.create_message(context_id, role="user", text=message)

    for _ in range(max_transfers + 1):
        config = resolve_sub_agent_config(execution_context, current, forwarded_headers)
        agent = Agent(config, execution_context, model_runner, **agent_kwargs)
        result = await agent.generate(message, context_id=context_id)
        if result.transfer is None:
            if history_store is not None and context_id:
                await history_store.create_message(
                    context_id, role="agent", text=result.text or "", from_sub_agent_id=current,
                )
            return result
        target = result.transfer["target_sub_agent_id"]
        if target not in {related.id for related in config.sub_agent_relations}:
            raise RelationResolutionError(f"Sub-agent {current} has no relation to {target}")
        logger.info("Transferring conversation %s -> %s", current, target)
        current = target
    raise RelationResolutionError(f"Exceeded {max_transfers} transfers in one turn")
