"""Typed configuration for agents, projects and per-request execution.

Everything the engine consumes is validated once here, at the boundary,
and carried as pydantic models afterwards. Declarative project files are
YAML (see ``load_project_config``); runtime settings come from the
environment (see ``RelaySettings``).
"""

import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Annotated, Any, Callable, Dict, List, Literal, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relay_constants import (
    CALLER_API_KEY_ENV,
    DEFAULT_MAX_GENERATION_STEPS,
    RELAY_HOME_ENV,
    SERVICE_TOKEN_SECRET_ENV,
)

logger = logging.getLogger(__name__)


class ConfigValidationError(Exception):
    """Raised when configuration is invalid."""
    pass


class _Frozen(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class ModelSettings(_Frozen):
    model: Optional[str] = None
    provider_options: Dict[str, Any] = Field(default_factory=dict)


class Models(_Frozen):
    base: Optional[ModelSettings] = None
    structured_output: Optional[ModelSettings] = None
    summarizer: Optional[ModelSettings] = None


# ---------------------------------------------------------------------------
# Components, skills, artifacts
# ---------------------------------------------------------------------------

class ArtifactComponent(_Frozen):
    """A citation type. ``props`` is a JSON-Schema object whose properties carry ``inPreview``."""

    id: Optional[str] = None
    name: str
    description: str = ""
    props: Optional[Dict[str, Any]] = None


class DataComponent(_Frozen):
    """A named structured-output shape for the second generation pass."""

    id: Optional[str] = None
    name: str
    description: str = ""
    props: Optional[Dict[str, Any]] = None


class SkillData(_Frozen):
    id: Optional[str] = None
    name: str
    description: str = ""
    content: str = ""
    always_loaded: bool = False
    index: int = 0


class Artifact(_Frozen):
    artifact_id: str
    tool_call_id: Optional[str] = None
    task_id: Optional[str] = None
    type: Optional[str] = None
    name: Optional[str] = None
    description: Optional[str] = None
    parts: List[Dict[str, Any]] = Field(default_factory=list)
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------

class ToolData(_Frozen):
    """A resolved tool as shown to the prompt assembler."""

    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None
    usage_guidelines: Optional[str] = None


class McpServerGroupData(_Frozen):
    server_name: str
    server_instructions: Optional[str] = None
    tools: List[ToolData] = Field(default_factory=list)


class ToolOverride(_Frozen):
    display_name: Optional[str] = None
    description: Optional[str] = None
    schema_: Optional[Dict[str, Any]] = Field(default=None, alias="schema")


class McpServerConfig(_Frozen):
    url: str
    headers: Dict[str, str] = Field(default_factory=dict)
    instructions: Optional[str] = None


class AvailableTool(_Frozen):
    name: str
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = None


class McpToolConfig(_Frozen):
    """A declared reference to an MCP server and the tools to take from it."""

    id: str
    name: str
    server: McpServerConfig
    credential_reference_id: Optional[str] = None
    headers: Dict[str, str] = Field(default_factory=dict)
    selected_tools: Optional[List[str]] = None
    # Tools enabled on the server side; None means all
    active_tools: Optional[List[str]] = None
    tool_overrides: Dict[str, ToolOverride] = Field(default_factory=dict)
    # Last known catalogue, used only for relation tool descriptions
    available_tools: List[AvailableTool] = Field(default_factory=list)
    relationship_id: Optional[str] = None


class FunctionTool(_Frozen):
    """A local Python callable exposed as a tool. ``execute`` may be sync or async."""

    name: str
    description: Optional[str] = None
    parameters: Dict[str, Any] = Field(default_factory=lambda: {"type": "object", "properties": {}})
    execute: Callable[..., Any]


class CredentialReference(_Frozen):
    id: str
    credential_store_id: str
    retrieval_params: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Relations
# ---------------------------------------------------------------------------

class ExternalAgentRelationConfig(_Frozen):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: str
    headers: Optional[Dict[str, str]] = None
    credential_reference_id: Optional[str] = None


class TeamAgentRelationConfig(_Frozen):
    """Another agent of the same project, reached through the A2A gateway."""

    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: str
    headers: Dict[str, str] = Field(default_factory=dict)


class ConversationHistoryConfig(_Frozen):
    mode: Literal["none", "full", "scoped"] = "full"
    limit: int = 50
    include_internal: bool = True
    message_types: List[str] = Field(default_factory=lambda: ["chat", "tool-result"])
    max_output_tokens: int = 4000


class StopWhen(_Frozen):
    step_count_is: Optional[int] = None


class AgentConfig(_Frozen):
    """Configuration of one sub-agent for one generation call. Never mutated by the engine."""

    tenant_id: str
    project_id: str
    agent_id: str
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    base_url: str = ""
    prompt: str = ""
    models: Optional[Models] = None
    tools: List[McpToolConfig] = Field(default_factory=list)
    function_tools: List[FunctionTool] = Field(default_factory=list)
    data_components: List[DataComponent] = Field(default_factory=list)
    artifact_components: List[ArtifactComponent] = Field(default_factory=list)
    sub_agent_relations: List["AgentConfig"] = Field(default_factory=list)
    transfer_relations: List["AgentConfig"] = Field(default_factory=list)
    delegate_relations: List["DelegateRelation"] = Field(default_factory=list)
    conversation_history_config: ConversationHistoryConfig = Field(default_factory=ConversationHistoryConfig)
    skills: List[SkillData] = Field(default_factory=list)
    # Artifacts created in earlier turns of the conversation
    artifacts: List[Artifact] = Field(default_factory=list)
    stop_when: Optional[StopWhen] = None
    forwarded_headers: Dict[str, str] = Field(default_factory=dict)
    context_config_id: Optional[str] = None


class InternalDelegate(_Frozen):
    type: Literal["internal"] = "internal"
    config: AgentConfig


class ExternalDelegate(_Frozen):
    type: Literal["external"] = "external"
    config: ExternalAgentRelationConfig


class TeamDelegate(_Frozen):
    type: Literal["team"] = "team"
    config: TeamAgentRelationConfig


DelegateRelation = Annotated[
    Union[InternalDelegate, ExternalDelegate, TeamDelegate],
    Field(discriminator="type"),
]

AgentConfig.model_rebuild()


# ---------------------------------------------------------------------------
# Project snapshot (declarative definitions)
# ---------------------------------------------------------------------------

class SubAgentDefinition(_Frozen):
    name: Optional[str] = None
    description: Optional[str] = None
    prompt: str = ""
    models: Optional[Models] = None
    tools: List[McpToolConfig] = Field(default_factory=list)
    data_components: List[str] = Field(default_factory=list)
    artifact_components: List[str] = Field(default_factory=list)
    can_transfer_to: List[str] = Field(default_factory=list)
    can_delegate_to: List[str] = Field(default_factory=list)
    external_delegates: List[str] = Field(default_factory=list)
    team_delegates: List[str] = Field(default_factory=list)
    skills: List[SkillData] = Field(default_factory=list)
    conversation_history_config: ConversationHistoryConfig = Field(default_factory=ConversationHistoryConfig)
    stop_when: Optional[StopWhen] = None


class AgentDefinition(_Frozen):
    id: str
    name: Optional[str] = None
    description: Optional[str] = None
    prompt: str = ""
    models: Optional[Models] = None
    default_sub_agent_id: Optional[str] = None
    sub_agents: Dict[str, SubAgentDefinition] = Field(default_factory=dict)


class ProjectSnapshot(_Frozen):
    """Read-only, resolved view of a project shared across turns."""

    tenant_id: str
    project_id: str
    base_url: str = ""
    models: Optional[Models] = None
    agents: Dict[str, AgentDefinition] = Field(default_factory=dict)
    artifact_components: List[ArtifactComponent] = Field(default_factory=list)
    data_components: List[DataComponent] = Field(default_factory=list)
    external_agents: Dict[str, ExternalAgentRelationConfig] = Field(default_factory=dict)
    team_agents: Dict[str, TeamAgentRelationConfig] = Field(default_factory=dict)
    credential_references: Dict[str, CredentialReference] = Field(default_factory=dict)


class ExecutionContext(BaseModel):
    """Per-request scope. Lives for one user turn, possibly across a delegation chain."""

    model_config = ConfigDict(frozen=True)

    tenant_id: str
    project_id: str
    agent_id: str
    project: ProjectSnapshot
    api_key: Optional[str] = None
    base_url: str = ""
    resolved_ref: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Runtime settings and loaders
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RelaySettings:
    """Process-wide settings read from the environment once."""

    relay_home: Path
    service_token_secret: Optional[str]
    max_generation_steps: int
    model_base_url: Optional[str]
    model_api_key: Optional[str]
    caller_api_key: Optional[str]

    @classmethod
    def from_env(cls) -> "RelaySettings":
        raw_steps = os.getenv("RELAY_MAX_GENERATION_STEPS")
        max_steps = DEFAULT_MAX_GENERATION_STEPS
        if raw_steps:
            try:
                max_steps = int(raw_steps)
            except ValueError:
                logger.warning("Invalid RELAY_MAX_GENERATION_STEPS value: %s, using default", raw_steps)
        return cls(
            relay_home=Path(os.getenv(RELAY_HOME_ENV, Path.home() / ".relay")),
            service_token_secret=os.getenv(SERVICE_TOKEN_SECRET_ENV),
            max_generation_steps=max_steps,
            model_base_url=os.getenv("RELAY_MODEL_BASE_URL"),
            model_api_key=os.getenv("OPENAI_API_KEY"),
            caller_api_key=os.getenv(CALLER_API_KEY_ENV),
        )


def _format_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        location = ".".join(str(p) for p in err.get("loc", ()))
        parts.append(f"{location}: {err.get('msg')}")
    return "; ".join(parts)


def parse_project_config(data: Any) -> ProjectSnapshot:
    """Validate a raw mapping into a ProjectSnapshot."""
    if not isinstance(data, dict):
        raise ConfigValidationError("Project configuration must be a mapping")
    try:
        return ProjectSnapshot.model_validate(data)
    except ValidationError as e:
        raise ConfigValidationError(f"Invalid project configuration: {_format_validation_error(e)}") from e


def load_project_config(path: Union[str, Path]) -> ProjectSnapshot:
    """Load and validate a YAML project file."""
    path = Path(path)
    if not path.exists():
        raise ConfigValidationError(f"Project file not found: {path}")
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f) or {}
    project = parse_project_config(data)
    logger.info(
        "Loaded project %s/%s from %s (%d agents)",
        project.tenant_id, project.project_id, path, len(project.agents),
    )
    return project
