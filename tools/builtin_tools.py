"""
Built-in tools available to every agent turn.

- get_reference_artifact: full data of an artifact created earlier
- load_skill: content of an on-demand skill
- compress_context: ask the turn compressor to summarize older context

``default_tools`` decides which of them an agent actually sees.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from relay.config import SkillData
from relay.model_metadata import estimate_tokens
from relay.tool_executor import RuntimeTool
from relay_constants import COMPRESS_CONTEXT_TOOL, GET_REFERENCE_ARTIFACT_TOOL, LOAD_SKILL_TOOL

logger = logging.getLogger(__name__)

# Artifacts above this share of the context window are never returned in full
MAX_ARTIFACT_CONTEXT_SHARE = 0.3

LOAD_SKILL_USAGE = "Use this tool to load the full content of an on-demand skill by name."
DEFAULT_USAGE = "Use this tool when appropriate for the task at hand."

GET_REFERENCE_ARTIFACT_SCHEMA = {
    "name": GET_REFERENCE_ARTIFACT_TOOL,
    "description": (
        "Call this tool to retrieve EXISTING artifacts that were previously created and saved. "
        "This tool is for accessing artifacts that already exist, NOT for extracting tool results. "
        "Only use this when you need the complete artifact data and the summary shown in your "
        "context is insufficient."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "artifactId": {"type": "string", "description": "The unique identifier of the artifact to get."},
            "toolCallId": {"type": "string", "description": "The tool call ID associated with this artifact."},
        },
        "required": ["artifactId", "toolCallId"],
    },
}

LOAD_SKILL_SCHEMA = {
    "name": LOAD_SKILL_TOOL,
    "description": (
        "Load an on-demand skill by name and return its full content so you can apply it "
        "in this conversation."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "name": {"type": "string", "description": "The skill name from the on-demand skills list."},
        },
        "required": ["name"],
    },
}

COMPRESS_CONTEXT_SCHEMA = {
    "name": COMPRESS_CONTEXT_TOOL,
    "description": (
        "Manually compress the current conversation context to save space. Use when shifting "
        "topics, completing major tasks, or when context feels cluttered."
    ),
    "parameters": {
        "type": "object",
        "properties": {
            "reason": {
                "type": "string",
                "description": (
                    'Why you are requesting compression (e.g., "shifting from research to coding", '
                    '"completed analysis phase")'
                ),
            },
        },
        "required": ["reason"],
    },
}


def _runtime_tool(schema: Dict[str, Any], handler, usage: str = DEFAULT_USAGE) -> RuntimeTool:
    return RuntimeTool(
        name=schema["name"],
        description=schema["description"],
        parameters=schema["parameters"],
        execute=handler,
        kind="builtin",
        usage_guidelines=usage,
    )


# ---------------------------------------------------------------------------
# get_reference_artifact
# ---------------------------------------------------------------------------

def oversized_retrieval_reason(token_size: int, context_window: int) -> str:
    share = (token_size / context_window * 100) if context_window else 100.0
    return (
        f"Artifact data is ~{token_size:,} tokens, {share:.0f}% of the {context_window:,}-token "
        f"context window (limit {MAX_ARTIFACT_CONTEXT_SHARE:.0%})."
    )


def get_reference_artifact_tool(artifact_store, context_window: int) -> RuntimeTool:
    """Build the artifact retrieval tool over *artifact_store*.

    Raises ``ArtifactNotFound`` for an unknown pair, which the executor
    reports back to the model.
    """

    async def _handler(args: Dict[str, Any], tool_call_id: str) -> Dict[str, Any]:
        artifact_id = args.get("artifactId", "")
        source_call_id = args.get("toolCallId", "")
        logger.info("get_reference_artifact executed for %s / %s", artifact_id, source_call_id)

        record = artifact_store.get(artifact_id, source_call_id)
        data = artifact_store.get_full(artifact_id, source_call_id)
        token_size = estimate_tokens(json.dumps(data, ensure_ascii=False, default=str))
        if token_size > context_window * MAX_ARTIFACT_CONTEXT_SHARE:
            logger.info(
                "Blocked retrieval of oversized artifact %s (%d tokens, window %d)",
                artifact_id, token_size, context_window,
            )
            return {
                "artifactId": record.artifact_id,
                "name": record.name,
                "description": record.description,
                "type": record.type,
                "status": "retrieval_blocked",
                "warning": (
                    "This artifact contains an oversized tool result that cannot be retrieved "
                    "to prevent context overflow."
                ),
                "reason": oversized_retrieval_reason(token_size, context_window),
                "recommendation": (
                    "Consider: 1) Using more specific filters/queries with the original tool, "
                    "2) Asking the user to break down the request, 3) Processing the data differently."
                ),
            }

        return {
            "artifactId": record.artifact_id,
            "name": record.name,
            "description": record.description,
            "type": record.type,
            "data": data,
        }

    return _runtime_tool(GET_REFERENCE_ARTIFACT_SCHEMA, _handler)


# ---------------------------------------------------------------------------
# load_skill
# ---------------------------------------------------------------------------

def load_skill_tool(skills: List[SkillData]) -> RuntimeTool:
    by_name = {}
    for skill in skills:
        by_name.setdefault(skill.name, skill)

    async def _handler(args: Dict[str, Any], tool_call_id: str) -> Dict[str, Any]:
        name = args.get("name", "")
        skill = by_name.get(name)
        if skill is None:
            raise ValueError(f"Skill {name} not found")
        return {"id": skill.id, "name": skill.name, "description": skill.description, "content": skill.content}

    return _runtime_tool(LOAD_SKILL_SCHEMA, _handler, LOAD_SKILL_USAGE)


# ---------------------------------------------------------------------------
# compress_context
# ---------------------------------------------------------------------------

def compress_context_tool(compressor: Any = None, agent_id: str = "") -> RuntimeTool:
    async def _handler(args: Dict[str, Any], tool_call_id: str) -> Dict[str, Any]:
        reason = args.get("reason", "")
        logger.info("Manual compression requested by sub-agent %s: %s", agent_id, reason)
        if compressor is not None:
            compressor.request_manual_compression(reason)
        return {
            "status": "compression_requested",
            "reason": reason,
            "message": (
                "Context compression will be applied on the next generation step. "
                "Previous work has been summarized and saved as artifacts."
            ),
        }

    return _runtime_tool(COMPRESS_CONTEXT_SCHEMA, _handler)


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------

def default_tools(
    *,
    artifact_store: Any = None,
    any_artifact_components: bool = False,
    skills: Optional[List[SkillData]] = None,
    compressor: Any = None,
    context_window: int = 0,
    agent_id: str = "",
) -> List[RuntimeTool]:
    """The built-ins whose preconditions hold for this turn.

    Args:
        any_artifact_components: True when this agent or any sibling sub-agent
            declares an artifact component.
    """
    tools = []
    if any_artifact_components and artifact_store is not None:
        tools.append(get_reference_artifact_tool(artifact_store, context_window))
    if any(not s.always_loaded for s in skills or []):
        tools.append(load_skill_tool(skills))
    tools.append(compress_context_tool(compressor, agent_id))
    return tools
