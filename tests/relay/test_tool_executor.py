"""Tests for relay/tool_executor.py

Covers:
- ToolSession sentinel resolution ($tool, $artifact + $tool, nested, non-sentinels)
- run_tool: resolution before execution, raw result recorded, annotated copy returned
- execute_tool_calls: tool messages appended, failures fed back as {"error": ...},
  invalid JSON arguments, unknown tools, relationship ids on records
- wrap_callable for sync and async callables
- result truncation
"""

import dataclasses
import json
from types import SimpleNamespace

import pytest

from relay.artifacts import ArtifactCreateRequest, ArtifactNotFound, ArtifactStore
from relay.config import ArtifactComponent
from relay.tool_executor import (
    RuntimeTool,
    ToolExecConfig,
    ToolReferenceError,
    ToolSession,
    execute_tool_calls,
    run_tool,
    serialize_tool_result,
    wrap_callable,
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _make_tool(name="echo", handler=None):
    async def _echo(args, tool_call_id):
        return {"echo": args}

    return RuntimeTool(
        name=name,
        description="Echo arguments",
        parameters={"type": "object", "properties": {}},
        execute=handler or _echo,
    )


def _make_call(call_id, name, arguments):
    return SimpleNamespace(
        id=call_id,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def _make_session_with_artifact():
    session = ToolSession()
    session.record("call-1", "search", {}, {"items": [{"title": "T", "body": "B"}]})
    component = ArtifactComponent(
        name="Doc",
        props={"type": "object", "properties": {"title": {"type": "string", "inPreview": True}, "body": {"type": "string"}}},
    )
    store = ArtifactStore([component], session)
    session.artifact_store = store
    store.create_artifact(ArtifactCreateRequest("art-1", "call-1", "Doc", "result.items[0]"))
    return session


# ---------------------------------------------------------------------------
# Sentinel resolution
# ---------------------------------------------------------------------------

class TestResolveArguments:
    def test_tool_sentinel(self):
        session = ToolSession()
        session.record("call-1", "search", {}, {"hits": [1, 2]})
        assert session.resolve_arguments({"data": {"$tool": "call-1"}}) == {"data": {"hits": [1, 2]}}

    def test_artifact_sentinel_gives_full_fields(self):
        session = _make_session_with_artifact()
        resolved = session.resolve_arguments({"doc": {"$artifact": "art-1", "$tool": "call-1"}})
        assert resolved == {"doc": {"title": "T", "body": "B"}}

    def test_nested_in_lists(self):
        session = ToolSession()
        session.record("c", "t", {}, "raw")
        assert session.resolve_arguments({"xs": [{"$tool": "c"}, 1]}) == {"xs": ["raw", 1]}

    def test_extra_keys_are_not_sentinels(self):
        session = ToolSession()
        value = {"$tool": "c", "other": 1}
        assert session.resolve_arguments(value) == value

    def test_unknown_tool_call(self):
        with pytest.raises(ToolReferenceError):
            ToolSession().resolve_arguments({"$tool": "missing"})

    def test_unknown_artifact(self):
        session = _make_session_with_artifact()
        with pytest.raises(ArtifactNotFound):
            session.resolve_arguments({"$artifact": "nope", "$tool": "call-1"})

    def test_release(self):
        session = ToolSession()
        session.record("c", "t", {}, 1)
        session.release()
        assert session.results == []


# ---------------------------------------------------------------------------
# Execution
# ---------------------------------------------------------------------------

class TestRunTool:
    @pytest.mark.asyncio
    async def test_resolves_then_records_raw(self):
        session = ToolSession()
        session.record("call-1", "search", {}, {"hits": 3})
        config = ToolExecConfig(tools={"echo": _make_tool()})

        result = await run_tool(config, session, "echo", {"input": {"$tool": "call-1"}}, "call-2")

        assert result == {"echo": {"input": {"hits": 3}}, "_toolCallId": "call-2"}
        entry = session.get_result("call-2")
        assert entry.result == {"echo": {"input": {"hits": 3}}}
        assert entry.args == {"input": {"$tool": "call-1"}}

    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        with pytest.raises(KeyError):
            await run_tool(ToolExecConfig(tools={}), ToolSession(), "nope", {}, "c")


class TestExecuteToolCalls:
    @pytest.mark.asyncio
    async def test_appends_tool_messages(self):
        config = ToolExecConfig(tools={"echo": _make_tool()})
        messages = []
        records = await execute_tool_calls(config, ToolSession(), [_make_call("c1", "echo", '{"a": 1}')], messages)

        assert messages[0]["role"] == "tool"
        assert messages[0]["tool_call_id"] == "c1"
        assert json.loads(messages[0]["content"])["echo"] == {"a": 1}
        assert records[0]["tool_name"] == "echo"
        assert records[0]["args"] == {"a": 1}
        assert "relationship_id" not in records[0]

    @pytest.mark.asyncio
    async def test_relationship_id_recorded(self):
        tool = dataclasses.replace(_make_tool(), relationship_id="rel-7")
        records = await execute_tool_calls(
            ToolExecConfig(tools={"echo": tool}), ToolSession(), [_make_call("c1", "echo", "{}")], [],
        )
        assert records[0]["relationship_id"] == "rel-7"

    @pytest.mark.asyncio
    async def test_failure_fed_back(self):
        async def _boom(args, tool_call_id):
            raise RuntimeError("backend down")

        config = ToolExecConfig(tools={"boom": _make_tool("boom", _boom)})
        messages = []
        records = await execute_tool_calls(config, ToolSession(), [_make_call("c1", "boom", "{}")], messages)
        assert records[0]["result"] == {"error": "backend down"}
        assert json.loads(messages[0]["content"]) == {"error": "backend down"}

    @pytest.mark.asyncio
    async def test_bad_reference_fed_back(self):
        config = ToolExecConfig(tools={"echo": _make_tool()})
        records = await execute_tool_calls(
            config, ToolSession(), [_make_call("c1", "echo", '{"x": {"$tool": "ghost"}}')], [],
        )
        assert "ghost" in records[0]["result"]["error"]

    @pytest.mark.asyncio
    async def test_invalid_json_arguments(self):
        config = ToolExecConfig(tools={"echo": _make_tool()})
        records = await execute_tool_calls(config, ToolSession(), [_make_call("c1", "echo", "{not json")], [])
        assert records[0]["args"] == {}


class TestWrapCallable:
    @pytest.mark.asyncio
    async def test_sync(self):
        handler = wrap_callable(lambda a, b: a + b)
        assert await handler({"a": 1, "b": 2}, "c") == 3

    @pytest.mark.asyncio
    async def test_async(self):
        async def add(a, b):
            return a + b

        assert await wrap_callable(add)({"a": 2, "b": 2}, "c") == 4


def test_serialize_truncates():
    content = serialize_tool_result("x" * 50, max_chars=10)
    assert content.startswith("x" * 10)
    assert "[Truncated: tool response was 50 chars" in content


def test_openai_schema():
    schema = _make_tool().openai_schema()
    assert schema["type"] == "function"
    assert schema["function"]["name"] == "echo"
