"""System prompt assembly with a per-section token breakdown.

The system prompt template is immutable. Assembly walks an explicit, ordered
list of (placeholder, builder) pairs; each builder is a pure function of the
validated ``SystemPromptConfig`` and returns the text for its placeholder
plus the token estimates it contributes. A builder with nothing to say
returns an empty string, so the whole section disappears rather than leaving
empty tags behind.

Usage:
    from relay.prompt_assembler import PromptAssembler

    result = PromptAssembler().assemble({"core_prompt": "Be terse.", "tools": []})
    result.prompt          # final system prompt
    result.breakdown.total # estimated tokens
"""

import json
import logging
import re
from dataclasses import asdict, dataclass, field
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from relay import prompt_templates as T
from relay.artifacts import artifact_create_components
from relay.config import (
    Artifact,
    ArtifactComponent,
    ConfigValidationError,
    DataComponent,
    McpServerGroupData,
    SkillData,
    ToolData,
)
from relay.model_metadata import estimate_tokens
from relay.schema_projector import build_schema_shape, extract_full_fields, extract_preview_fields

logger = logging.getLogger(__name__)


class PromptConfigError(ConfigValidationError):
    """Raised when the assembler is handed an unusable configuration or template set."""


class SystemPromptConfig(BaseModel):
    """Everything one system prompt is built from."""

    model_config = ConfigDict(frozen=True)

    core_prompt: str = ""
    prompt: Optional[str] = None
    client_current_time: Optional[str] = None
    skills: List[SkillData] = Field(default_factory=list)
    tools: List[ToolData] = Field(default_factory=list)
    mcp_server_groups: List[McpServerGroupData] = Field(default_factory=list)
    data_components: List[DataComponent] = Field(default_factory=list)
    include_data_components: bool = False
    artifacts: List[Artifact] = Field(default_factory=list)
    artifact_components: List[ArtifactComponent] = Field(default_factory=list)
    all_project_artifact_components: Optional[List[ArtifactComponent]] = None
    has_agent_artifact_components: bool = False
    has_transfer_relations: bool = False
    has_delegate_relations: bool = False


@dataclass
class PromptBreakdown:
    """Estimated tokens per prompt section. Reported, never enforced."""

    system_prompt_template: int = 0
    core_instructions: int = 0
    current_time: int = 0
    agent_prompt: int = 0
    artifacts_section: int = 0
    artifact_components: int = 0
    tools_section: int = 0
    data_components_section: int = 0
    transfer_instructions: int = 0
    delegation_instructions: int = 0
    conversation_history: int = 0

    @property
    def total(self) -> int:
        return sum(asdict(self).values())

    def as_dict(self) -> Dict[str, int]:
        data = asdict(self)
        data["total"] = self.total
        return data


@dataclass(frozen=True)
class AssembleResult:
    prompt: str
    breakdown: PromptBreakdown = field(default_factory=PromptBreakdown)


_Section = Tuple[str, Dict[str, int]]
_TypeSchemaMap = Dict[str, Tuple[Dict[str, Any], Dict[str, Any]]]

_CORE_WRAPPER = re.compile(r"<core_instructions>\s*\{\{CORE_INSTRUCTIONS\}\}\s*</core_instructions>")


# ---------------------------------------------------------------------------
# XML helpers
# ---------------------------------------------------------------------------

def escape_xml(value: str) -> str:
    return (
        value.replace("&", "&amp;")
        .replace("<", "&lt;")
        .replace(">", "&gt;")
        .replace('"', "&quot;")
    )


def _render_property_xml(name: str, prop: Any, required: List[str], indent: str) -> str:
    prop = prop if isinstance(prop, dict) else {}
    prop_type = prop.get("type") or "string"
    desc = (prop.get("description") or "").strip()
    required_attr = ' required="true"' if name in required else ""
    desc_attr = f' description="{escape_xml(desc)}"' if desc else ""
    return f'{indent}<property name="{name}" type="{prop_type}"{required_attr}{desc_attr} />'


def _schema_parts(schema: Optional[Dict[str, Any]]) -> Tuple[Dict[str, Any], List[str]]:
    if not isinstance(schema, dict):
        return {}, []
    properties = schema.get("properties") or {}
    required = schema.get("required")
    return properties, required if isinstance(required, list) else []


def _parameters_xml(schema: Optional[Dict[str, Any]]) -> str:
    properties, required = _schema_parts(schema)
    if not properties:
        return ""
    props = "\n".join(_render_property_xml(n, p, required, "    ") for n, p in properties.items())
    return f"<parameters>\n{props}\n  </parameters>"


def _mcp_tool_xml(tool: ToolData) -> str:
    properties, required = _schema_parts(tool.input_schema)
    description = (tool.description or "").strip()
    description_xml = f"\n    <description>{description}</description>" if description else ""
    parameters_xml = ""
    if properties:
        props = "\n".join(_render_property_xml(n, p, required, "      ") for n, p in properties.items())
        parameters_xml = f"\n    <parameters>\n{props}\n    </parameters>"
    return f'<tool name="{tool.name}">{description_xml}{parameters_xml}\n  </tool>'


def _mcp_group_xml(group: McpServerGroupData) -> str:
    tools_xml = "\n  ".join(_mcp_tool_xml(t) for t in group.tools)
    instructions = ""
    if group.server_instructions:
        instructions = f"\n  <instructions>{escape_xml(group.server_instructions)}</instructions>"
    return f'<mcp_server name="{group.server_name}">{instructions}\n  {tools_xml}\n</mcp_server>'


def _data_component_props_xml(schema: Optional[Dict[str, Any]]) -> str:
    if not isinstance(schema, dict):
        return "<type>object</type>\n      <properties>\n      </properties>\n      <required>[]</required>"

    schema_type = schema.get("type") or "object"
    properties = schema.get("properties") or {}
    required = schema.get("required") or []
    lines = []
    for key, value in properties.items():
        value = value if isinstance(value, dict) else {}
        lines.append(
            f"        {key}: {{\n"
            f'          "type": "{value.get("type") or "string"}",\n'
            f'          "description": "{value.get("description") or "No description"}",\n'
            f'          "required": {json.dumps(key in required)}\n'
            f"        }}"
        )
    return (
        f"<type>{schema_type}</type>\n      <properties>\n"
        + "\n".join(lines)
        + f"\n      </properties>\n      <required>{json.dumps(required)}</required>"
    )


def _type_schema_map(components: List[ArtifactComponent]) -> _TypeSchemaMap:
    result: _TypeSchemaMap = {}
    for component in components:
        if not component.name or not (component.props or {}).get("properties"):
            continue
        preview = extract_preview_fields(component.props)
        full = extract_full_fields(component.props)
        result[component.name] = (
            build_schema_shape(preview.get("properties") or {}),
            build_schema_shape(full.get("properties") or {}),
        )
    return result


# ---------------------------------------------------------------------------
# Section builders
# ---------------------------------------------------------------------------

def _current_time_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    current = (config.client_current_time or "").strip()
    text = T.CURRENT_TIME_SECTION.replace("{current_time}", current) if current else ""
    return text, {"current_time": estimate_tokens(text)}


def _agent_context_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    prompt = config.prompt or ""
    text = T.AGENT_CONTEXT_SECTION.replace("{prompt}", prompt) if prompt.strip() else ""
    return text, {"agent_prompt": estimate_tokens(text)}


def _skill_entries(skills: List[SkillData]) -> str:
    entries = []
    # sorted() is stable: equal indexes keep their declaration order
    for skill in sorted(skills, key=lambda s: s.index):
        attrs = (
            f"name={json.dumps(skill.name, ensure_ascii=False)} "
            f"description={json.dumps(skill.description, ensure_ascii=False)}"
        )
        if skill.always_loaded:
            entries.append(f'<skill mode="always" {attrs}>{skill.content}</skill>')
        else:
            entries.append(f'<skill mode="on_demand" {attrs} />')
    return "\n    ".join(entries)


def _skills_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    entries = _skill_entries(config.skills)
    if not entries:
        return "", {}
    return T.SKILLS_SECTION.replace("{entries}", entries), {}


def _skills_guidelines(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    return (T.SKILLS_GUIDELINES if config.skills else ""), {}


def _referencing_rules(config: SystemPromptConfig, templates: T.PromptTemplates) -> str:
    if not (config.has_agent_artifact_components or config.artifacts):
        return ""
    guidance = templates.artifact_retrieval_guidance or ""
    if config.artifact_components:
        return (
            T.ARTIFACT_RULES_WITH_CREATION
            .replace("{retrieval_guidance}", guidance)
            .replace("{creation_guidance}", T.ARTIFACT_CREATION_GUIDANCE)
        )
    return T.ARTIFACT_RULES_REFERENCE_ONLY.replace("{retrieval_guidance}", guidance)


def artifact_creation_instructions(components: List[ArtifactComponent]) -> str:
    """The AVAILABLE ARTIFACT TYPES block listing every type's preview and full shapes."""
    if not components:
        return ""

    descriptions = []
    for component in components:
        schema_description = "No schema defined"
        if (component.props or {}).get("properties"):
            preview = extract_preview_fields(component.props)
            full = extract_full_fields(component.props)
            preview_shape = json.dumps(build_schema_shape(preview.get("properties") or {}), indent=2)
            full_shape = json.dumps(build_schema_shape(full.get("properties") or {}), indent=2)
            schema_description = (
                T.ARTIFACT_TYPE_SHAPES
                .replace("{full_shape}", full_shape)
                .replace("{preview_shape}", preview_shape)
            )
        descriptions.append(
            f'  - "{component.name}": {component.description or "No description available"}\n'
            f"    {schema_description}"
        )
    return T.ARTIFACT_CREATION_INSTRUCTIONS.replace("{type_descriptions}", "\n\n".join(descriptions))


def _artifact_xml(artifact: Artifact, templates: T.PromptTemplates, type_schemas: _TypeSchemaMap) -> str:
    if not templates.artifact:
        raise PromptConfigError("Artifact template not loaded")

    summaries = [
        part["data"]["summary"]
        for part in artifact.parts
        if isinstance(part, dict) and isinstance(part.get("data"), dict) and part["data"].get("summary")
    ]
    summary = json.dumps(summaries, indent=2, ensure_ascii=False) if summaries else T.NO_SUMMARY_DATA

    artifact_type = artifact.type or "unknown"
    shapes = type_schemas.get(artifact_type)
    if shapes:
        type_schema = (
            T.ARTIFACT_TYPE_SCHEMA
            .replace("{preview_shape}", json.dumps(shapes[0]))
            .replace("{full_shape}", json.dumps(shapes[1]))
        )
    else:
        type_schema = T.SCHEMA_NOT_AVAILABLE

    return (
        templates.artifact
        .replace("{{ARTIFACT_NAME}}", artifact.name or "")
        .replace("{{ARTIFACT_DESCRIPTION}}", artifact.description or "")
        .replace("{{TASK_ID}}", artifact.task_id or "")
        .replace("{{ARTIFACT_ID}}", artifact.artifact_id or "")
        .replace("{{TOOL_CALL_ID}}", artifact.tool_call_id or "unknown")
        .replace("{{ARTIFACT_TYPE}}", artifact_type)
        .replace("{{ARTIFACT_TYPE_SCHEMA}}", type_schema)
        .replace("{{ARTIFACT_SUMMARY}}", summary)
    )


def _artifacts_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    rules = _referencing_rules(config, templates)
    creation = artifact_creation_instructions(config.artifact_components)
    schema_source = (
        config.all_project_artifact_components
        if config.all_project_artifact_components is not None
        else config.artifact_components
    )
    type_schemas = _type_schema_map(schema_source)

    description = T.ARTIFACTS_DESCRIPTION if config.artifacts else T.NO_ARTIFACTS_DESCRIPTION
    wrapper_open = f'<available_artifacts description="{description}\n\n{rules}\n\n{creation}\n\n">'
    tokens = {
        "system_prompt_template": estimate_tokens(
            f'<available_artifacts description="{description}\n\n{rules}\n\n"></available_artifacts>'
        ),
        "artifact_components": estimate_tokens(creation),
    }

    if not config.artifacts:
        return f"{wrapper_open}</available_artifacts>", tokens

    artifacts_xml = "\n  ".join(_artifact_xml(a, templates, type_schemas) for a in config.artifacts)
    tokens["artifacts_section"] = estimate_tokens(artifacts_xml)
    return f"{wrapper_open}\n  {artifacts_xml}\n</available_artifacts>", tokens


def _tool_xml(tool: ToolData, templates: T.PromptTemplates) -> str:
    if not templates.tool:
        raise PromptConfigError("Tool template not loaded")
    return (
        templates.tool
        .replace("{{TOOL_NAME}}", tool.name)
        .replace("{{TOOL_DESCRIPTION}}", tool.description or "No description available")
        .replace("{{TOOL_USAGE_GUIDELINES}}", tool.usage_guidelines or "Use this tool when appropriate.")
        .replace("{{TOOL_PARAMETERS_SCHEMA}}", _parameters_xml(tool.input_schema))
    )


def _tools_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    if not config.tools and not config.mcp_server_groups:
        text = T.NO_TOOLS_SECTION
    else:
        regular = "\n  ".join(_tool_xml(t, templates) for t in config.tools)
        groups = "\n  ".join(_mcp_group_xml(g) for g in config.mcp_server_groups)
        parts = "\n  ".join(p for p in (regular, groups) if p)
        text = (
            '<available_tools description="These are the tools available for you to use to accomplish tasks.\n\n'
            f'{T.TOOL_CHAINING_GUIDANCE}">\n  {parts}\n</available_tools>'
        )
    return text, {"tools_section": estimate_tokens(text)}


def _data_components_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    if not config.include_data_components or not config.data_components:
        return "", {}

    components = list(config.data_components)
    if config.artifact_components:
        components.extend(artifact_create_components(config.artifact_components))

    listing = ", ".join(f"{c.name}: {c.description}" for c in components)
    components_xml = "\n  ".join(
        templates.data_component
        .replace("{{COMPONENT_NAME}}", c.name)
        .replace("{{COMPONENT_DESCRIPTION}}", c.description or "")
        .replace("{{COMPONENT_PROPS_SCHEMA}}", _data_component_props_xml(c.props))
        for c in components
    )
    text = (
        templates.data_components
        .replace("{{DATA_COMPONENTS_LIST}}", listing)
        .replace("{{DATA_COMPONENTS_XML}}", components_xml)
    )
    return text, {"data_components_section": estimate_tokens(text)}


def _transfer_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    text = T.TRANSFER_INSTRUCTIONS if config.has_transfer_relations else ""
    return text, {"transfer_instructions": estimate_tokens(text)}


def _delegation_section(config: SystemPromptConfig, templates: T.PromptTemplates) -> _Section:
    text = T.DELEGATION_INSTRUCTIONS if config.has_delegate_relations else ""
    return text, {"delegation_instructions": estimate_tokens(text)}


SectionBuilder = Callable[[SystemPromptConfig, T.PromptTemplates], _Section]

# Order matters only for the breakdown; placeholders are disjoint.
SECTIONS: Tuple[Tuple[str, SectionBuilder], ...] = (
    ("{{CURRENT_TIME_SECTION}}", _current_time_section),
    ("{{AGENT_CONTEXT_SECTION}}", _agent_context_section),
    ("{{SKILLS_SECTION}}", _skills_section),
    ("{{SKILLS_GUIDELINES}}", _skills_guidelines),
    ("{{ARTIFACTS_SECTION}}", _artifacts_section),
    ("{{TOOLS_SECTION}}", _tools_section),
    ("{{DATA_COMPONENTS_SECTION}}", _data_components_section),
    ("{{TRANSFER_INSTRUCTIONS}}", _transfer_section),
    ("{{DELEGATION_INSTRUCTIONS}}", _delegation_section),
)


class PromptAssembler:
    """Fills the system prompt template from a ``SystemPromptConfig``.

    Args:
        templates: Template set to assemble from. Defaults to the built-in set.
    """

    def __init__(self, templates: Optional[T.PromptTemplates] = None):
        self._templates = templates or T.DEFAULT_TEMPLATES

    @staticmethod
    def _validate(config: Union[SystemPromptConfig, Mapping[str, Any], None]) -> SystemPromptConfig:
        if isinstance(config, SystemPromptConfig):
            return config
        if config is None or not isinstance(config, Mapping):
            raise PromptConfigError(
                f"System prompt configuration must be an object, got {type(config).__name__}"
            )
        try:
            return SystemPromptConfig.model_validate(dict(config))
        except ValidationError as e:
            raise PromptConfigError(f"Invalid system prompt configuration: {e}") from e

    def assemble(self, config: Union[SystemPromptConfig, Mapping[str, Any], None]) -> AssembleResult:
        """Build the system prompt and its token breakdown.

        Raises:
            PromptConfigError: *config* is missing, not an object, or the
                template set lacks the system prompt template.
        """
        config = self._validate(config)
        template = self._templates.system_prompt
        if not template:
            raise PromptConfigError("System prompt template not loaded")

        breakdown = PromptBreakdown()
        overhead = template
        for placeholder, _ in SECTIONS:
            overhead = overhead.replace(placeholder, "")
        breakdown.system_prompt_template = estimate_tokens(overhead.replace("{{CORE_INSTRUCTIONS}}", ""))

        prompt = template
        if config.core_prompt.strip():
            breakdown.core_instructions = estimate_tokens(config.core_prompt)
            prompt = prompt.replace("{{CORE_INSTRUCTIONS}}", config.core_prompt)
        else:
            prompt = _CORE_WRAPPER.sub("", prompt)

        for placeholder, builder in SECTIONS:
            text, tokens = builder(config, self._templates)
            for key, value in tokens.items():
                setattr(breakdown, key, getattr(breakdown, key) + value)
            prompt = prompt.replace(placeholder, text)

        logger.debug("Assembled system prompt (~%d tokens)", breakdown.total)
        return AssembleResult(prompt=prompt, breakdown=breakdown)
