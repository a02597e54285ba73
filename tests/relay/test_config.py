"""Tests for relay/config.py

Covers:
- YAML project files -> ProjectSnapshot (sub-agents, components, relations)
- validation errors reported with field locations
- RelaySettings.from_env defaults and overrides
- configuration objects are immutable
"""

import pydantic
import pytest

from relay.config import (
    AgentConfig,
    ConfigValidationError,
    McpToolConfig,
    RelaySettings,
    ToolOverride,
    load_project_config,
    parse_project_config,
)
from relay_constants import DEFAULT_MAX_GENERATION_STEPS


PROJECT_YAML = """
tenant_id: acme
project_id: support-desk
models:
  base:
    model: gpt-4o
data_components:
  - id: weather
    name: Weather
    props:
      type: object
      properties:
        temp: {type: number}
agents:
  support:
    id: support
    default_sub_agent_id: router
    sub_agents:
      router:
        name: Router
        can_transfer_to: [billing]
        data_components: [Weather]
      billing:
        name: Billing
        prompt: Be precise.
"""


class TestLoadProjectConfig:
    def test_loads_yaml(self, tmp_path):
        path = tmp_path / "project.yaml"
        path.write_text(PROJECT_YAML, encoding="utf-8")

        project = load_project_config(path)

        assert project.tenant_id == "acme"
        assert project.models.base.model == "gpt-4o"
        agent = project.agents["support"]
        assert agent.default_sub_agent_id == "router"
        assert agent.sub_agents["router"].can_transfer_to == ["billing"]
        assert agent.sub_agents["billing"].prompt == "Be precise."
        assert project.data_components[0].name == "Weather"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigValidationError, match="Project file not found"):
            load_project_config(tmp_path / "nope.yaml")

    def test_not_a_mapping(self):
        with pytest.raises(ConfigValidationError, match="must be a mapping"):
            parse_project_config(["a", "b"])

    def test_validation_error_location(self):
        with pytest.raises(ConfigValidationError, match="project_id"):
            parse_project_config({"tenant_id": "acme"})


class TestRelaySettings:
    def test_defaults(self, monkeypatch):
        for name in ("RELAY_MAX_GENERATION_STEPS", "RELAY_MODEL_BASE_URL", "OPENAI_API_KEY"):
            monkeypatch.delenv(name, raising=False)
        settings = RelaySettings.from_env()
        assert settings.max_generation_steps == DEFAULT_MAX_GENERATION_STEPS
        assert settings.model_base_url is None

    def test_overrides(self, monkeypatch):
        monkeypatch.setenv("RELAY_MAX_GENERATION_STEPS", "3")
        monkeypatch.setenv("RELAY_MODEL_BASE_URL", "http://localhost:8000/v1")
        settings = RelaySettings.from_env()
        assert settings.max_generation_steps == 3
        assert settings.model_base_url == "http://localhost:8000/v1"

    def test_caller_key_separate_from_model_key(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "sk-provider")
        monkeypatch.delenv("RELAY_API_KEY", raising=False)
        settings = RelaySettings.from_env()
        assert settings.model_api_key == "sk-provider"
        assert settings.caller_api_key is None

        monkeypatch.setenv("RELAY_API_KEY", "caller-key")
        assert RelaySettings.from_env().caller_api_key == "caller-key"

    def test_invalid_steps_ignored(self, monkeypatch):
        monkeypatch.setenv("RELAY_MAX_GENERATION_STEPS", "many")
        assert RelaySettings.from_env().max_generation_steps == DEFAULT_MAX_GENERATION_STEPS


class TestImmutability:
    def test_agent_config_frozen(self):
        config = AgentConfig(tenant_id="t", project_id="p", agent_id="a", id="router")
        with pytest.raises(pydantic.ValidationError):
            config.prompt = "changed"

    def test_tool_override_schema_alias(self):
        tool = McpToolConfig.model_validate({
            "id": "tool-1",
            "name": "docs",
            "server": {"url": "https://mcp.acme.test/mcp"},
            "tool_overrides": {"search": {"schema": {"type": "object"}}},
        })
        assert isinstance(tool.tool_overrides["search"], ToolOverride)
        assert tool.tool_overrides["search"].schema_ == {"type": "object"}
