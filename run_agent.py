#!/usr/bin/env python3
"""
Agent Relay Runner

Runs one user turn against a sub-agent of a declarative project file,
following transfers and delegations, and prints the final answer.

Usage:
    python run_agent.py --config project.yaml --agent support --message "Where is my order?"

    # Pick a sub-agent and print structured output as JSON
    python run_agent.py --config project.yaml --agent support --sub_agent billing \\
        --message "Refund order 42" --verbose
"""

import asyncio
import json
import logging
import os
import uuid
from pathlib import Path
from typing import Any, Dict, Optional

import fire
from dotenv import load_dotenv

from relay.config import ExecutionContext, RelaySettings, load_project_config
from relay.credentials import CredentialStuffer, ServiceTokenMinter, default_registry
from relay.generation import GenerationResult, run_turn
from relay.history import InMemoryConversationStore
from relay.model_runner import OpenAIModelRunner
from relay_constants import RELAY_HOME_ENV

logger = logging.getLogger(__name__)

# Load .env from ~/.relay/.env first, then project root as dev fallback
_relay_home = Path(os.getenv(RELAY_HOME_ENV, Path.home() / ".relay"))
_user_env = _relay_home / ".env"
_project_env = Path(__file__).parent / ".env"
if _user_env.exists():
    try:
        load_dotenv(dotenv_path=_user_env, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=_user_env, encoding="latin-1")
    logger.info("Loaded environment variables from %s", _user_env)
elif _project_env.exists():
    try:
        load_dotenv(dotenv_path=_project_env, encoding="utf-8")
    except UnicodeDecodeError:
        load_dotenv(dotenv_path=_project_env, encoding="latin-1")
    logger.info("Loaded environment variables from %s", _project_env)
else:
    logger.info("No .env file found. Using system environment variables.")


def make_summarizer(runner: OpenAIModelRunner, model: Optional[str]):
    """History summarizer over the same endpoint, or None without a summarizer model."""
    if not model:
        return None

    async def _summarize(transcript: str) -> str:
        response = await runner.client.chat.completions.create(
            model=model,
            messages=[
                {
                    "role": "system",
                    "content": "Summarize this conversation for an assistant that will continue it. "
                               "Keep decisions, facts, open tasks and artifact ids.",
                },
                {"role": "user", "content": transcript},
            ],
        )
        return response.choices[0].message.content or ""

    return _summarize


def render_result(result: GenerationResult) -> str:
    if result.object is not None:
        return json.dumps(result.object, indent=2, ensure_ascii=False)
    return result.text or ""


async def run(
    config: str,
    agent: str,
    message: str,
    sub_agent: Optional[str] = None,
    conversation_id: Optional[str] = None,
    headers: Optional[Dict[str, str]] = None,
) -> GenerationResult:
    settings = RelaySettings.from_env()
    project = load_project_config(config)
    execution_context = ExecutionContext(
        tenant_id=project.tenant_id,
        project_id=project.project_id,
        agent_id=agent,
        project=project,
        api_key=settings.caller_api_key,
        base_url=project.base_url,
        metadata={"conversation_id": conversation_id or f"conv_{uuid.uuid4().hex}"},
    )
    runner = OpenAIModelRunner(base_url=settings.model_base_url, api_key=settings.model_api_key)
    summarizer_settings = project.models.summarizer if project.models else None
    kwargs: Dict[str, Any] = {
        "history_store": InMemoryConversationStore(),
        "credential_stuffer": CredentialStuffer(default_registry()),
        "summarizer": make_summarizer(runner, summarizer_settings.model if summarizer_settings else None),
        "max_steps": settings.max_generation_steps,
    }
    if settings.service_token_secret:
        kwargs["token_minter"] = ServiceTokenMinter(settings.service_token_secret)

    return await run_turn(
        execution_context,
        message,
        runner,
        sub_agent_id=sub_agent,
        forwarded_headers=headers,
        context_id=execution_context.metadata["conversation_id"],
        **kwargs,
    )


def main(
    config: str,
    agent: str,
    message: str,
    sub_agent: str = None,
    conversation_id: str = None,
    verbose: bool = False,
):
    """
    Run one turn of an agent from a project file.

    Args:
        config (str): Path to the YAML project file.
        agent (str): Agent id within the project.
        message (str): The user message.
        sub_agent (str): Sub-agent to start with. Defaults to the agent's default sub-agent.
        conversation_id (str): Conversation id for history. A fresh one is generated when omitted.
        verbose (bool): Enable debug logging.
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    result = asyncio.run(run(config, agent, message, sub_agent=sub_agent, conversation_id=conversation_id))
    if verbose and result.prompt_breakdown is not None:
        logger.debug("Prompt breakdown: %s", result.prompt_breakdown.as_dict())
    print(render_result(result))
    return None


if __name__ == "__main__":
    fire.Fire(main)
