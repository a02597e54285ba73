"""Tests for relay/relations.py

Covers:
- tool naming (lowercase, whitespace -> underscore)
- transfer tool result shape and description
- internal delegation: runner called with derived context, inherited key vs
  minted token under team delegation, a2a-request/response history
- external delegation: envelope metadata, credential headers, error -> DelegationError
- team delegation: templated headers plus a minted bearer token
- resolve_sub_agent_config from a project snapshot, including sub_agent_relations
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay.a2a_client import A2AResponse
from relay.config import (
    AgentConfig,
    AgentDefinition,
    CredentialReference,
    ExecutionContext,
    ExternalAgentRelationConfig,
    ExternalDelegate,
    InternalDelegate,
    Models,
    ModelSettings,
    ProjectSnapshot,
    SubAgentDefinition,
    TeamAgentRelationConfig,
    TeamDelegate,
)
from relay.credentials import CredentialStoreRegistry, CredentialStuffer, MemoryCredentialStore, ServiceTokenMinter
from relay.history import InMemoryConversationStore
from relay.relations import (
    DelegationContext,
    DelegationError,
    RelationResolutionError,
    create_delegate_tool,
    create_relation_tools,
    create_transfer_tool,
    default_sub_agent_id,
    is_transfer_tool,
    relation_tool_name,
    resolve_sub_agent_config,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_project(**kwargs):
    agent = AgentDefinition(
        id="support",
        models=Models(base=ModelSettings(model="gpt-4o")),
        default_sub_agent_id="router",
        sub_agents={
            "router": SubAgentDefinition(
                name="Router",
                can_transfer_to=["billing"],
                can_delegate_to=["billing"],
                external_delegates=["weather"],
            ),
            "billing": SubAgentDefinition(name="Billing", description="Handles invoices", prompt="Be precise."),
        },
    )
    fields = dict(
        tenant_id="tenant",
        project_id="project",
        agents={"support": agent},
        external_agents={
            "weather": ExternalAgentRelationConfig(id="weather", name="Weather", base_url="https://weather.test/a2a"),
        },
    )
    fields.update(kwargs)
    return ProjectSnapshot(**fields)


def _make_ec(metadata=None, api_key="caller-key", **project_kwargs):
    return ExecutionContext(
        tenant_id="tenant",
        project_id="project",
        agent_id="support",
        project=_make_project(**project_kwargs),
        api_key=api_key,
        metadata=metadata or {},
    )


def _make_target(sub_agent_id="billing"):
    return AgentConfig(tenant_id="tenant", project_id="project", agent_id="support", id=sub_agent_id, name="Billing")


def _make_ctx(ec=None, **kwargs):
    fields = dict(
        execution_context=ec or _make_ec(),
        calling_agent_id="router",
        context_id="conv-1",
        api_key="caller-key",
    )
    fields.update(kwargs)
    return DelegationContext(**fields)


def _fake_a2a(response):
    client = MagicMock()
    client.send_message = AsyncMock(return_value=response)
    factory = MagicMock(return_value=client)
    return factory, client


# ---------------------------------------------------------------------------
# Naming and transfers
# ---------------------------------------------------------------------------

class TestNaming:
    def test_lowercase_and_underscores(self):
        assert relation_tool_name("transfer", "Billing Agent") == "transfer_to_billing_agent"
        assert relation_tool_name("delegate", "qa\tteam") == "delegate_to_qa_team"
        assert relation_tool_name("transfer", "Tier  2\nSupport") == "transfer_to_tier_2_support"

    def test_is_transfer_tool(self):
        assert is_transfer_tool("transfer_to_billing")
        assert not is_transfer_tool("delegate_to_billing")


class TestTransferTool:
    @pytest.mark.asyncio
    async def test_result_shape(self):
        tool = create_transfer_tool(_make_target(), "router")
        result = await tool.execute({}, "call-1")
        assert result == {"type": "transfer", "target_sub_agent_id": "billing", "from_sub_agent_id": "router"}
        assert tool.name == "transfer_to_billing"
        assert tool.kind == "relation"

    def test_description(self):
        description = create_transfer_tool(_make_target(), "router").description
        assert "transfers conversation control to agent billing" in description
        assert "- Name: Billing" in description


# ---------------------------------------------------------------------------
# Delegation
# ---------------------------------------------------------------------------

class TestInternalDelegation:
    @pytest.mark.asyncio
    async def test_runs_in_process_with_inherited_key(self):
        runner = AsyncMock(return_value=SimpleNamespace(text="invoice sent", object=None))
        ctx = _make_ctx(internal_runner=runner)
        tool = create_delegate_tool(InternalDelegate(config=_make_target()), ctx)

        result = await tool.execute({"message": "send the invoice"}, "call-1")

        target, derived_ec, message, context_id = runner.await_args.args
        assert target.id == "billing"
        assert message == "send the invoice"
        assert context_id == "conv-1"
        assert derived_ec.api_key == "caller-key"
        assert derived_ec.metadata["is_delegation"] is True
        assert derived_ec.metadata["headers"]["x-inkeep-sub-agent-id"] == "billing"
        assert result["tool_call_id"] == "call-1"
        assert result["result"]["parts"][0] == {"kind": "text", "text": "invoice sent"}

    @pytest.mark.asyncio
    async def test_team_delegation_mints_token(self):
        runner = AsyncMock(return_value=SimpleNamespace(text="ok", object=None))
        minter = ServiceTokenMinter("secret")
        ctx = _make_ctx(ec=_make_ec(metadata={"team_delegation": True}), internal_runner=runner, token_minter=minter)
        tool = create_delegate_tool(InternalDelegate(config=_make_target()), ctx)

        await tool.execute({"message": "x"}, "call-1")

        derived_ec = runner.await_args.args[1]
        assert derived_ec.api_key != "caller-key"
        claims = minter.verify(derived_ec.api_key, "billing")
        assert claims["sub"] == "support"
        assert derived_ec.metadata["headers"]["Authorization"] == f"Bearer {derived_ec.api_key}"

    @pytest.mark.asyncio
    async def test_without_inherited_key(self):
        runner = AsyncMock(return_value=SimpleNamespace(text="ok", object=None))
        ctx = _make_ctx(
            ec=_make_ec(metadata={"team_delegation": True}, api_key=None),
            api_key=None,
            internal_runner=runner,
            token_minter=ServiceTokenMinter("secret"),
        )
        tool = create_delegate_tool(InternalDelegate(config=_make_target()), ctx)

        await tool.execute({"message": "x"}, "call-1")

        derived_ec = runner.await_args.args[1]
        assert derived_ec.api_key is None
        assert "Authorization" not in derived_ec.metadata["headers"]
        assert derived_ec.metadata["headers"]["x-inkeep-sub-agent-id"] == "billing"

    @pytest.mark.asyncio
    async def test_records_history(self):
        store = InMemoryConversationStore()
        runner = AsyncMock(return_value=SimpleNamespace(text="answer", object={"k": 1}))
        ctx = _make_ctx(internal_runner=runner, history_store=store)
        tool = create_delegate_tool(InternalDelegate(config=_make_target()), ctx)

        await tool.execute({"message": "question"}, "call-1")

        messages = await store.list_messages("conv-1")
        assert [m.message_type for m in messages] == ["a2a-request", "a2a-response"]
        assert messages[0].from_sub_agent_id == "router"
        assert messages[0].to_sub_agent_id == "billing"
        assert messages[1].from_sub_agent_id == "billing"
        assert messages[1].text == "answer"
        assert messages[0].delegation_id == messages[1].delegation_id
        assert all(m.visibility == "internal" for m in messages)

    @pytest.mark.asyncio
    async def test_no_runner(self):
        tool = create_delegate_tool(InternalDelegate(config=_make_target()), _make_ctx())
        with pytest.raises(RelationResolutionError):
            await tool.execute({"message": "x"}, "call-1")


class TestExternalDelegation:
    @pytest.mark.asyncio
    async def test_envelope_and_result(self):
        factory, client = _fake_a2a(A2AResponse(result={"kind": "message", "parts": [{"kind": "text", "text": "sunny"}]}))
        ctx = _make_ctx(a2a_client_factory=factory, metadata={"conversation_id": "conv-1"})
        config = ExternalAgentRelationConfig(id="weather", base_url="https://weather.test/a2a", headers={"X-Key": "k"})
        tool = create_delegate_tool(ExternalDelegate(config=config), ctx)

        result = await tool.execute({"message": "forecast?"}, "call-1")

        factory.assert_called_once_with("https://weather.test/a2a", {"X-Key": "k"})
        envelope = client.send_message.await_args.args[0]
        assert envelope["parts"] == [{"kind": "text", "text": "forecast?"}]
        assert envelope["contextId"] == "conv-1"
        assert envelope["metadata"]["is_delegation"] is True
        assert envelope["metadata"]["from_external_agent_id"] == "router"
        assert envelope["metadata"]["delegation_id"].startswith("del_")
        assert result["result"]["parts"][0]["text"] == "sunny"

    @pytest.mark.asyncio
    async def test_error_raises(self):
        factory, _ = _fake_a2a(A2AResponse(error={"code": -1, "message": "X"}))
        config = ExternalAgentRelationConfig(id="weather", base_url="https://weather.test/a2a")
        tool = create_delegate_tool(ExternalDelegate(config=config), _make_ctx(a2a_client_factory=factory))
        with pytest.raises(DelegationError, match="^X$"):
            await tool.execute({"message": "x"}, "call-1")

    @pytest.mark.asyncio
    async def test_credential_headers(self):
        factory, _ = _fake_a2a(A2AResponse(result="ok"))
        reference = CredentialReference(id="weather-cred", credential_store_id="vault")
        ec = _make_ec(credential_references={"weather-cred": reference})
        stuffer = CredentialStuffer(CredentialStoreRegistry(MemoryCredentialStore("vault", {"weather-cred": "tok"})))
        config = ExternalAgentRelationConfig(
            id="weather", base_url="https://weather.test/a2a", credential_reference_id="weather-cred",
        )
        tool = create_delegate_tool(
            ExternalDelegate(config=config),
            _make_ctx(ec=ec, a2a_client_factory=factory, credential_stuffer=stuffer),
        )
        await tool.execute({"message": "x"}, "call-1")
        assert factory.call_args.args[1] == {"Authorization": "Bearer tok"}


class TestTeamDelegation:
    @pytest.mark.asyncio
    async def test_templated_headers_and_token(self):
        factory, _ = _fake_a2a(A2AResponse(result="ok"))
        minter = ServiceTokenMinter("secret")
        config = TeamAgentRelationConfig(
            id="research",
            base_url="https://gateway.test/a2a",
            headers={"x-user-id": "{{headers.x-user-id}}"},
        )
        ctx = _make_ctx(a2a_client_factory=factory, token_minter=minter, forwarded_headers={"x-user-id": "u-42"})
        tool = create_delegate_tool(TeamDelegate(config=config), ctx)

        await tool.execute({"message": "x"}, "call-1")

        headers = factory.call_args.args[1]
        assert headers["x-user-id"] == "u-42"
        token = headers["Authorization"].removeprefix("Bearer ")
        assert minter.verify(token, "research")["tenantId"] == "tenant"

    @pytest.mark.asyncio
    async def test_requires_minter(self):
        factory, _ = _fake_a2a(A2AResponse(result="ok"))
        config = TeamAgentRelationConfig(id="research", base_url="https://gateway.test/a2a")
        tool = create_delegate_tool(TeamDelegate(config=config), _make_ctx(a2a_client_factory=factory))
        with pytest.raises(RelationResolutionError):
            await tool.execute({"message": "x"}, "call-1")


# ---------------------------------------------------------------------------
# Resolution
# ---------------------------------------------------------------------------

class TestResolveSubAgentConfig:
    def test_relations_resolved(self):
        config = resolve_sub_agent_config(_make_ec(), "router", {"x-a": "1"})
        assert [t.id for t in config.transfer_relations] == ["billing"]
        assert [d.type for d in config.delegate_relations] == ["internal", "external"]
        # Transfer and delegate targets share one identity entry
        assert [r.id for r in config.sub_agent_relations] == ["billing"]
        assert config.sub_agent_relations[0].description == "Handles invoices"
        assert config.transfer_relations[0].sub_agent_relations == []
        assert config.models.base.model == "gpt-4o"
        assert config.forwarded_headers == {"x-a": "1"}

    def test_tools_from_relations(self):
        config = resolve_sub_agent_config(_make_ec(), "router")
        names = [t.name for t in create_relation_tools(config, _make_ctx())]
        assert names == ["transfer_to_billing", "delegate_to_billing", "delegate_to_weather"]

    def test_unknown_sub_agent(self):
        with pytest.raises(RelationResolutionError, match="Target sub-agent not found: ghost"):
            resolve_sub_agent_config(_make_ec(), "ghost")

    def test_unknown_data_component(self):
        project = _make_project()
        agent = project.agents["support"]
        broken = agent.model_copy(update={"sub_agents": {"solo": SubAgentDefinition(data_components=["Missing"])}})
        ec = _make_ec(agents={"support": broken})
        with pytest.raises(RelationResolutionError, match="Unknown data component"):
            resolve_sub_agent_config(ec, "solo")

    def test_default_sub_agent(self):
        assert default_sub_agent_id(_make_ec()) == "router"
