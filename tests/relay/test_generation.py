"""Tests for relay/generation.py

Covers:
- resolve_generation_response: pass-through without steps, '' vs None,
  failing awaitables -> GenerationError
- model validation (missing / blank base model)
- single pass without data components
- two-pass flow: structured request shape, parsed formatted_content, the
  caller's data components left untouched
- transfers: early stop, no structured pass, stripped annotations
- run_turn: follows transfers, records history, transfer limit
- input helpers: client time, user content parts, structured schema
"""

import pytest

from relay.config import (
    AgentConfig,
    AgentDefinition,
    ArtifactComponent,
    ConfigValidationError,
    DataComponent,
    ExecutionContext,
    Models,
    ModelSettings,
    ProjectSnapshot,
    SubAgentDefinition,
)
from relay.generation import (
    STRUCTURED_PASS_INSTRUCTION,
    Agent,
    GenerationError,
    GenerationResult,
    build_structured_schema,
    build_user_content,
    find_transfer,
    format_client_time,
    has_tool_call_with_prefix,
    resolve_generation_response,
    run_turn,
)
from relay.history import InMemoryConversationStore
from relay.model_runner import GenerationResponse
from relay.relations import RelationResolutionError, resolve_sub_agent_config


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

WEATHER = DataComponent(
    id="weather",
    name="Weather",
    description="Current weather",
    props={"type": "object", "properties": {"temp": {"type": "number"}}},
)


@pytest.fixture(autouse=True)
def _no_metadata_endpoint(monkeypatch):
    monkeypatch.delenv("RELAY_MODEL_METADATA_URL", raising=False)


class FakeRunner:
    """Returns queued responses in order; the last one repeats."""

    def __init__(self, *responses):
        self.responses = list(responses)
        self.requests = []

    async def generate(self, request):
        self.requests.append(request)
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


def _make_project(billing_kwargs=None, **router_kwargs):
    agent = AgentDefinition(
        id="support",
        prompt="You work for Acme.",
        models=Models(base=ModelSettings(model="gpt-4o")),
        default_sub_agent_id="router",
        sub_agents={
            "router": SubAgentDefinition(name="Router", can_transfer_to=["billing"], **router_kwargs),
            "billing": SubAgentDefinition(name="Billing", prompt="Be precise.", **(billing_kwargs or {})),
        },
    )
    return ProjectSnapshot(
        tenant_id="tenant",
        project_id="project",
        agents={"support": agent},
        data_components=[WEATHER],
    )


def _make_ec(billing_kwargs=None, **router_kwargs):
    return ExecutionContext(
        tenant_id="tenant",
        project_id="project",
        agent_id="support",
        project=_make_project(billing_kwargs, **router_kwargs),
        metadata={"conversation_id": "conv-1"},
    )


def _make_config(**kwargs):
    fields = dict(
        tenant_id="tenant",
        project_id="project",
        agent_id="support",
        id="router",
        prompt="Answer briefly.",
        models=Models(base=ModelSettings(model="gpt-4o")),
    )
    fields.update(kwargs)
    return AgentConfig(**fields)


def _transfer_response(target="billing", source="router"):
    result = {"type": "transfer", "target_sub_agent_id": target, "from_sub_agent_id": source, "_toolCallId": "c1"}
    call = {"tool_call_id": "c1", "tool_name": f"transfer_to_{target}", "args": {}}
    step = {"text": "Handing off", "tool_calls": [call], "tool_results": [dict(call, result=result)]}
    return GenerationResponse(text="Handing off", steps=[step], finish_reason="tool_calls")


# ---------------------------------------------------------------------------
# Response resolution
# ---------------------------------------------------------------------------

class TestResolveGenerationResponse:
    @pytest.mark.asyncio
    async def test_without_steps_passes_through(self):
        response = {"text": "Mocked response"}
        assert await resolve_generation_response(response) is response

    @pytest.mark.asyncio
    async def test_empty_text_kept(self):
        result = await resolve_generation_response(GenerationResponse(text="", steps=[]))
        assert isinstance(result, GenerationResult)
        assert result.text == ""
        assert result.object is None

    @pytest.mark.asyncio
    async def test_awaitable_fields(self):
        async def _text():
            return "later"

        result = await resolve_generation_response({"steps": [], "text": _text(), "output": None})
        assert result.text == "later"

    @pytest.mark.asyncio
    async def test_failing_field(self):
        async def _boom():
            raise RuntimeError("stream aborted")

        with pytest.raises(GenerationError, match="^Failed to resolve generation response: stream aborted$"):
            await resolve_generation_response({"steps": [], "text": _boom()})


class TestTransferDetection:
    def test_find_transfer_strips_annotations(self):
        transfer = find_transfer(_transfer_response().steps)
        assert transfer == {"type": "transfer", "target_sub_agent_id": "billing", "from_sub_agent_id": "router"}

    def test_no_transfer(self):
        assert find_transfer([{"tool_results": [{"result": {"ok": True}}]}]) is None

    def test_prefix_predicate(self):
        predicate = has_tool_call_with_prefix("transfer_to_")
        assert predicate(_transfer_response().steps[0])
        assert not predicate({"tool_calls": [{"tool_name": "delegate_to_billing"}]})


# ---------------------------------------------------------------------------
# Agent.generate
# ---------------------------------------------------------------------------

class TestModelValidation:
    @pytest.mark.asyncio
    async def test_missing_base(self):
        agent = Agent(_make_config(models=None), _make_ec(), FakeRunner({"text": "x"}))
        with pytest.raises(ConfigValidationError, match="Base model configuration is required"):
            await agent.generate("hi")

    @pytest.mark.asyncio
    async def test_blank_base(self):
        config = _make_config(models=Models(base=ModelSettings(model="  ")))
        runner = FakeRunner({"text": "x"})
        with pytest.raises(ConfigValidationError, match="Base model is required"):
            await Agent(config, _make_ec(), runner).generate("hi")
        assert runner.requests == []


class TestSinglePass:
    @pytest.mark.asyncio
    async def test_mocked_response(self):
        runner = FakeRunner({"text": "Mocked response"})
        result = await Agent(_make_config(), _make_ec(), runner).generate("hi")

        assert result.text == "Mocked response"
        assert result.object is None
        assert result.formatted_content == [{"kind": "text", "text": "Mocked response"}]
        assert result.sub_agent_id == "router"
        assert len(runner.requests) == 1

    @pytest.mark.asyncio
    async def test_request_shape(self):
        runner = FakeRunner(GenerationResponse(text="ok", steps=[{"text": "ok"}], finish_reason="stop"))
        result = await Agent(_make_config(), _make_ec(), runner).generate("What's new?")

        request = runner.requests[0]
        assert request.model.model == "gpt-4o"
        assert request.output_schema is None
        assert request.messages[0]["role"] == "system"
        assert "Answer briefly." in request.messages[0]["content"]
        assert request.messages[1] == {"role": "user", "content": "What's new?"}
        assert "compress_context" in [t.name for t in request.tools]
        assert result.finish_reason == "stop"
        assert result.prompt_breakdown.total > 0

    @pytest.mark.asyncio
    async def test_runner_error_propagates(self):
        class _Broken:
            async def generate(self, request):
                raise RuntimeError("provider down")

        with pytest.raises(RuntimeError, match="provider down"):
            await Agent(_make_config(), _make_ec(), _Broken()).generate("hi")


class TestTwoPass:
    @pytest.mark.asyncio
    async def test_structured_pass(self):
        structured = GenerationResponse(
            text="{}",
            steps=[{"text": "{}"}],
            finish_reason="stop",
            output={"dataComponents": [{"id": "weather", "name": "Weather", "props": {"temp": 21}}]},
        )
        runner = FakeRunner(
            GenerationResponse(text="It is 21 degrees", steps=[{"text": "It is 21 degrees"}], finish_reason="stop"),
            structured,
        )
        config = _make_config(data_components=[WEATHER])

        result = await Agent(config, _make_ec(), runner).generate("weather?")

        assert len(runner.requests) == 2
        first, second = runner.requests
        assert first.output_schema is None
        assert second.output_schema is not None
        assert second.schema_name == "data_components"
        assert second.tools == []
        assert second.messages[-1] == {"role": "user", "content": STRUCTURED_PASS_INSTRUCTION}
        variants = second.output_schema["properties"]["dataComponents"]["items"]["anyOf"]
        assert [v["properties"]["name"]["enum"] for v in variants] == [["Weather"], ["Text"]]
        # The prompt describes every component the schema offers
        structured_prompt = second.messages[0]["content"]
        assert "<name>Weather</name>" in structured_prompt
        assert "<name>Text</name>" in structured_prompt
        assert "<name>Text</name>" not in first.messages[0]["content"]

        assert len(result.object["dataComponents"]) == 1
        assert result.formatted_content == [
            {"kind": "data", "data": {"id": "weather", "name": "Weather", "props": {"temp": 21}}}
        ]
        assert len(result.steps) == 2
        # The caller's config keeps its single component
        assert [c.name for c in config.data_components] == ["Weather"]

    @pytest.mark.asyncio
    async def test_artifact_reference_component_in_prompt(self):
        runner = FakeRunner(
            GenerationResponse(text="done", steps=[{"text": "done"}], finish_reason="stop"),
            GenerationResponse(text="{}", steps=[], output={"dataComponents": []}),
        )
        doc = ArtifactComponent(
            name="Doc",
            description="A cited document",
            props={"type": "object", "properties": {"title": {"type": "string", "inPreview": True}}},
        )
        config = _make_config(data_components=[WEATHER], artifact_components=[doc])

        await Agent(config, _make_ec(), runner).generate("sources?")

        structured_prompt = runner.requests[1].messages[0]["content"]
        assert "<name>Artifact</name>" in structured_prompt
        assert "<name>Text</name>" in structured_prompt

    @pytest.mark.asyncio
    async def test_no_data_components_single_call(self):
        runner = FakeRunner(GenerationResponse(text="plain", steps=[{"text": "plain"}]))
        await Agent(_make_config(), _make_ec(), runner).generate("hi")
        assert len(runner.requests) == 1


class TestTransfer:
    @pytest.mark.asyncio
    async def test_transfer_skips_structured_pass(self):
        ec = _make_ec(data_components=["Weather"])
        config = resolve_sub_agent_config(ec, "router")
        runner = FakeRunner(_transfer_response())

        result = await Agent(config, ec, runner).generate("I need my invoice")

        assert len(runner.requests) == 1
        assert "transfer_to_billing" in [t.name for t in runner.requests[0].tools]
        assert runner.requests[0].stop_when(_transfer_response().steps[0])
        assert result.transfer == {"type": "transfer", "target_sub_agent_id": "billing", "from_sub_agent_id": "router"}
        assert result.text == "Handing off"
        assert result.object is None


# ---------------------------------------------------------------------------
# run_turn
# ---------------------------------------------------------------------------

class TestRunTurn:
    @pytest.mark.asyncio
    async def test_follows_transfer(self):
        ec = _make_ec()
        store = InMemoryConversationStore()
        runner = FakeRunner(_transfer_response(), {"text": "Your invoice is on its way."})

        result = await run_turn(ec, "invoice please", runner, context_id="conv-1", history_store=store)

        assert result.sub_agent_id == "billing"
        assert result.text == "Your invoice is on its way."
        assert "Be precise." in runner.requests[1].messages[0]["content"]

        messages = await store.list_messages("conv-1")
        assert [(m.role, m.text) for m in messages] == [
            ("user", "invoice please"),
            ("agent", "Your invoice is on its way."),
        ]
        assert messages[1].from_sub_agent_id == "billing"

    @pytest.mark.asyncio
    async def test_transfer_limit(self):
        ec = _make_ec(billing_kwargs={"can_transfer_to": ["router"]})
        runner = FakeRunner(_transfer_response(), _transfer_response("router", "billing"))
        with pytest.raises(RelationResolutionError, match="Exceeded 1 transfers"):
            await run_turn(ec, "loop", runner, max_transfers=1)
        assert len(runner.requests) == 2

    @pytest.mark.asyncio
    async def test_transfer_to_unrelated_sub_agent(self):
        runner = FakeRunner(_transfer_response("router", "billing"))
        with pytest.raises(RelationResolutionError, match="Sub-agent billing has no relation to router"):
            await run_turn(_make_ec(), "hi", runner, sub_agent_id="billing")
        assert len(runner.requests) == 1

    @pytest.mark.asyncio
    async def test_unknown_sub_agent(self):
        with pytest.raises(RelationResolutionError):
            await run_turn(_make_ec(), "hi", FakeRunner({"text": "x"}), sub_agent_id="ghost")


# ---------------------------------------------------------------------------
# Input helpers
# ---------------------------------------------------------------------------

class TestClientTime:
    def test_formats_local_time(self):
        formatted = format_client_time("America/New_York", "2026-01-16T20:45:00Z")
        assert formatted == "Friday, January 16, 2026 at 3:45 PM EST"

    def test_missing_or_invalid(self):
        assert format_client_time(None, "2026-01-16T20:45:00Z") is None
        assert format_client_time("America/New_York", None) is None
        assert format_client_time("Not/AZone", "2026-01-16T20:45:00Z") is None
        assert format_client_time("America/New_York", "yesterday") is None


class TestUserContent:
    def test_plain(self):
        assert build_user_content("hello") == "hello"

    def test_data_part(self):
        content = build_user_content("look", [{"kind": "data", "data": {"a": 1}, "metadata": {"source": "crm"}}])
        assert content.startswith("look\n\n<structured_data (source: crm)>")
        assert '"a": 1' in content

    def test_image_part(self):
        parts = [
            {"kind": "file", "file": {"mimeType": "image/png", "uri": "https://img.test/a.png"}},
            {"kind": "file", "file": {"mimeType": "application/pdf", "uri": "https://img.test/a.pdf"}},
        ]
        content = build_user_content("see image", parts)
        assert content == [
            {"type": "text", "text": "see image"},
            {"type": "image_url", "image_url": {"url": "https://img.test/a.png"}},
        ]


class TestStructuredSchema:
    def test_all_props_required(self):
        schema = build_structured_schema([WEATHER])
        variant = schema["properties"]["dataComponents"]["items"]["anyOf"][0]
        assert variant["required"] == ["id", "name", "props"]
        assert variant["properties"]["props"]["required"] == ["temp"]
        assert schema["required"] == ["dataComponents"]
