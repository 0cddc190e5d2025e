"""
Tests for the request dispatcher.
"""

import asyncio
import json
import logging
from unittest.mock import AsyncMock, MagicMock

import pytest

from toolhost.mcp.dispatcher import CallState, RequestDispatcher
from toolhost.mcp.errors import ErrorKind
from toolhost.mcp.messages import RequestEnvelope, ResourceContent, ResourceInfo
from toolhost.mcp.resources import ResourceLocator
from toolhost.mcp.tools.models import Tool, ToolParameter
from toolhost.mcp.tools.registry import ToolRegistry
from toolhost.mcp.tools.supervisor import ExecutionSupervisor


def _request(request_id, method, params=None):
    message = {"jsonrpc": "2.0", "id": request_id, "method": method}
    if params is not None:
        message["params"] = params
    return json.dumps(message)


def _call(request_id, name, arguments=None):
    params = {"name": name}
    if arguments is not None:
        params["arguments"] = arguments
    return _request(request_id, "tools/call", params)


def _dispatcher(*tools, **kwargs):
    registry = ToolRegistry()
    registry.register_all(list(tools))
    return RequestDispatcher(registry, **kwargs)


@pytest.mark.asyncio
async def test_echo_round_trip(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    response = await dispatcher.handle(_call(1, "echo", {"text": "hi"}))

    assert response.id == 1
    assert response.error is None
    assert response.result["structuredContent"] == {"text": "hi"}
    assert response.result["isError"] is False


@pytest.mark.asyncio
async def test_echo_missing_text_is_invalid_params(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    response = await dispatcher.handle(_call(2, "echo", {}))

    assert response.id == 2
    assert response.error.kind == ErrorKind.INVALID_PARAMS
    assert response.error.data["field"] == "text"


@pytest.mark.asyncio
async def test_out_of_range_argument_never_reaches_handler(crawl_spy, crawl_tool_factory):
    dispatcher = _dispatcher(crawl_tool_factory(crawl_spy))

    response = await dispatcher.handle(_call(3, "crawl", {"url": "https://example.com", "max_pages": 500}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS
    assert response.error.data["field"] == "max_pages"
    assert crawl_spy.calls == 0


@pytest.mark.asyncio
async def test_unknown_tool_is_method_not_found(crawl_spy, crawl_tool_factory):
    dispatcher = _dispatcher(crawl_tool_factory(crawl_spy))

    response = await dispatcher.handle(_call(4, "foo", {}))

    assert response.id == 4
    assert response.error.kind == ErrorKind.METHOD_NOT_FOUND
    assert response.error.code == -32601
    assert crawl_spy.calls == 0


@pytest.mark.asyncio
async def test_defaults_reach_the_handler(crawl_spy, crawl_tool_factory):
    dispatcher = _dispatcher(crawl_tool_factory(crawl_spy))

    response = await dispatcher.handle(_call(5, "crawl", {"url": "https://example.com"}))

    assert response.result["structuredContent"] == {"url": "https://example.com", "max_pages": 10}


@pytest.mark.asyncio
async def test_limit_of_one_serializes_tool_calls(slow_handler, slow_tool_factory):
    dispatcher = _dispatcher(slow_tool_factory(slow_handler), supervisor=ExecutionSupervisor(max_concurrency=1))

    first, second = await asyncio.gather(
        dispatcher.handle(_call("a", "slow", {"label": "a"})),
        dispatcher.handle(_call("b", "slow", {"label": "b"})),
    )

    assert first.id == "a" and second.id == "b"
    finished = dict(slow_handler.finished)
    started = dict(slow_handler.started)
    later, earlier = ("b", "a") if started["b"] > started["a"] else ("a", "b")
    assert started[later] >= finished[earlier]


@pytest.mark.asyncio
async def test_handler_fault_then_success():
    calls = []

    async def flaky(n: int):
        calls.append(n)
        if n == 1:
            raise ZeroDivisionError("division by zero")
        return {"n": n}

    tool = Tool(
        name="flaky",
        description="Fails once",
        parameters=[ToolParameter(name="n", description="N", type="integer", required=True)],
        handler=flaky,
    )
    dispatcher = _dispatcher(tool)

    failed = await dispatcher.handle(_call(1, "flaky", {"n": 1}))
    succeeded = await dispatcher.handle(_call(2, "flaky", {"n": 2}))

    assert failed.error.kind == ErrorKind.INTERNAL
    assert failed.error.retryable is False
    assert succeeded.result["structuredContent"] == {"n": 2}
    assert calls == [1, 2]


@pytest.mark.asyncio
async def test_cancel_notification_produces_cancelled_response(slow_tool_factory):
    started = asyncio.Event()

    async def hang(label: str):
        started.set()
        await asyncio.sleep(10)

    dispatcher = _dispatcher(slow_tool_factory(hang))
    call = asyncio.ensure_future(dispatcher.handle(_call("r1", "slow", {"label": "x"})))
    await started.wait()

    ack = await dispatcher.handle(
        json.dumps({"jsonrpc": "2.0", "method": "notifications/cancelled", "params": {"requestId": "r1"}})
    )
    response = await asyncio.wait_for(call, timeout=1)

    assert ack is None
    assert response.id == "r1"
    assert response.error.kind == ErrorKind.CANCELLED
    assert response.result is None
    assert dispatcher.supervisor.running == 0


@pytest.mark.asyncio
async def test_shutdown_cancels_in_flight(slow_tool_factory):
    started = asyncio.Event()

    async def hang(label: str):
        started.set()
        await asyncio.sleep(10)

    dispatcher = _dispatcher(slow_tool_factory(hang))
    call = asyncio.ensure_future(dispatcher.handle(_call(9, "slow", {"label": "x"})))
    await started.wait()

    await dispatcher.shutdown()
    response = await asyncio.wait_for(call, timeout=1)

    assert response.error.kind == ErrorKind.CANCELLED
    assert "connection closed" in response.error.message


@pytest.mark.asyncio
async def test_duplicate_open_id_is_rejected(slow_tool_factory):
    release = asyncio.Event()

    async def blocker(label: str):
        await release.wait()
        return {"label": label}

    dispatcher = _dispatcher(slow_tool_factory(blocker))
    first = asyncio.ensure_future(dispatcher.handle(_call(1, "slow", {"label": "first"})))
    await asyncio.sleep(0.01)

    duplicate = await dispatcher.handle(_call(1, "slow", {"label": "second"}))
    release.set()
    original = await first

    assert duplicate.id is None
    assert duplicate.error.kind == ErrorKind.INVALID_REQUEST
    assert original.result["structuredContent"] == {"label": "first"}


@pytest.mark.asyncio
async def test_id_can_be_reused_after_completion(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    await dispatcher.handle(_call(1, "echo", {"text": "a"}))
    response = await dispatcher.handle(_call(1, "echo", {"text": "b"}))

    assert response.result["structuredContent"] == {"text": "b"}


@pytest.mark.asyncio
async def test_parse_error():
    dispatcher = _dispatcher()

    response = await dispatcher.handle("{not json")

    assert response.id is None
    assert response.error.kind == ErrorKind.PARSE_ERROR
    assert response.error.code == -32700


@pytest.mark.asyncio
async def test_batch_is_rejected():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(json.dumps([{"jsonrpc": "2.0", "id": 1, "method": "ping"}]))

    assert response.error.kind == ErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_invalid_envelope():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(json.dumps({"jsonrpc": "2.0", "id": 1}))

    assert response.error.kind == ErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_null_id_is_invalid_request():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(_request(None, "ping"))

    assert response.id is None
    assert response.error.kind == ErrorKind.INVALID_REQUEST


@pytest.mark.asyncio
async def test_unknown_method():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(_request(1, "sampling/createMessage"))

    assert response.error.kind == ErrorKind.METHOD_NOT_FOUND


@pytest.mark.asyncio
async def test_tools_call_without_name_is_invalid_params():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(_request(1, "tools/call", {"arguments": {}}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS
    assert response.error.data["field"] == "name"


@pytest.mark.asyncio
async def test_unknown_notification_is_ignored():
    dispatcher = _dispatcher()

    assert await dispatcher.handle(json.dumps({"jsonrpc": "2.0", "method": "notifications/progress"})) is None


@pytest.mark.asyncio
async def test_initialize_and_initialized(echo_tool):
    dispatcher = _dispatcher(echo_tool, instructions="Say something")

    response = await dispatcher.handle(
        _request(0, "initialize", {"protocolVersion": "2024-11-05", "clientInfo": {"name": "tester", "version": "1"}})
    )
    await dispatcher.handle(json.dumps({"jsonrpc": "2.0", "method": "notifications/initialized"}))

    assert response.result["serverInfo"]["name"] == "toolhost"
    assert response.result["instructions"] == "Say something"
    assert "tools" in response.result["capabilities"]
    assert dispatcher.initialized


@pytest.mark.asyncio
async def test_ping_and_prompts():
    dispatcher = _dispatcher()

    assert (await dispatcher.handle(_request(1, "ping"))).result == {}
    assert (await dispatcher.handle(_request(2, "prompts/list"))).result == {"prompts": []}


@pytest.mark.asyncio
async def test_tools_list(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    response = await dispatcher.handle(_request(1, "tools/list"))

    tools = response.result["tools"]
    assert [tool["name"] for tool in tools] == ["echo"]
    assert tools[0]["inputSchema"]["required"] == ["text"]


@pytest.mark.asyncio
async def test_registry_is_frozen(echo_tool):
    registry = ToolRegistry()
    registry.register(echo_tool)

    RequestDispatcher(registry)

    assert registry.frozen


@pytest.mark.asyncio
async def test_resources_list_and_read():
    provider = MagicMock()
    provider.list_resources.return_value = [ResourceInfo(uri="page://example.com/", name="Example")]
    provider.read = AsyncMock(return_value=ResourceContent(uri="page://example.com/", mime_type="text/plain", text="hi"))
    resources = ResourceLocator()
    resources.register("page", provider)
    dispatcher = _dispatcher(resources=resources)

    listed = await dispatcher.handle(_request(1, "resources/list"))
    read = await dispatcher.handle(_request(2, "resources/read", {"uri": "page://example.com/"}))

    assert listed.result == {"resources": [{"uri": "page://example.com/", "name": "Example"}]}
    assert read.result == {"contents": [{"uri": "page://example.com/", "mimeType": "text/plain", "text": "hi"}]}


@pytest.mark.asyncio
async def test_resources_read_unknown_scheme():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(_request(1, "resources/read", {"uri": "ftp://example.com/x"}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS


@pytest.mark.asyncio
async def test_set_level():
    dispatcher = _dispatcher()
    logger = logging.getLogger("toolhost")
    previous = logger.level
    try:
        response = await dispatcher.handle(_request(1, "logging/setLevel", {"level": "error"}))

        assert response.result == {}
        assert logger.level == logging.ERROR
    finally:
        logger.setLevel(previous)


@pytest.mark.asyncio
async def test_set_level_rejects_unknown_level():
    dispatcher = _dispatcher()

    response = await dispatcher.handle(_request(1, "logging/setLevel", {"level": "loud"}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS


@pytest.mark.asyncio
async def test_state_transitions(echo_tool):
    dispatcher = _dispatcher(echo_tool)
    seen = []
    dispatcher.on_transition = lambda request_id, state: seen.append(state)

    await dispatcher.handle(_call(1, "echo", {"text": "hi"}))

    assert seen == [
        CallState.RECEIVED,
        CallState.VALIDATING,
        CallState.DISPATCHING,
        CallState.EXECUTING,
        CallState.SUCCEEDED,
        CallState.RESPONDING,
        CallState.CLOSED,
    ]


@pytest.mark.asyncio
async def test_rejected_transitions(echo_tool):
    dispatcher = _dispatcher(echo_tool)
    seen = []
    dispatcher.on_transition = lambda request_id, state: seen.append(state)

    await dispatcher.handle(_call(1, "echo", {}))

    assert seen == [
        CallState.RECEIVED,
        CallState.VALIDATING,
        CallState.REJECTED,
        CallState.ERROR_RESPONDING,
        CallState.CLOSED,
    ]


@pytest.mark.asyncio
async def test_call_tool_envelope(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    result = await dispatcher.call_tool(RequestEnvelope(id=1, tool="echo", arguments={"text": "hi"}))

    assert result["structuredContent"] == {"text": "hi"}


@pytest.mark.asyncio
async def test_unexpected_method_failure_becomes_internal_error(echo_tool):
    dispatcher = _dispatcher(echo_tool)
    dispatcher._methods["ping"] = AsyncMock(side_effect=RuntimeError("boom"))

    failed = await dispatcher.handle(_request(1, "ping"))
    listed = await dispatcher.handle(_request(2, "tools/list"))

    assert failed.error.kind == ErrorKind.INTERNAL
    assert "boom" in failed.error.message
    assert [tool["name"] for tool in listed.result["tools"]] == ["echo"]


@pytest.mark.asyncio
async def test_initialize_rejects_malformed_client_info(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    response = await dispatcher.handle(_request(1, "initialize", {"clientInfo": "oops"}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS
    assert response.error.data["field"] == "clientInfo"


@pytest.mark.asyncio
async def test_read_malformed_resource_uri(echo_tool):
    dispatcher = _dispatcher(echo_tool)

    response = await dispatcher.handle(_request(1, "resources/read", {"uri": "page://[broken"}))

    assert response.error.kind == ErrorKind.INVALID_PARAMS
    assert response.error.data["field"] == "uri"
