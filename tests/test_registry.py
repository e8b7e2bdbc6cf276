"""Tests for the tool registry."""

import asyncio
import json

import httpx

from chatagent.mcp.builtin import builtin_tools, calculator_tool
from chatagent.mcp.registry import ToolRegistry
from chatagent.mcp.schema import HttpTool, LocalTool, SseTool, ToolCallStatus

SERVER_URL = "http://tools.local/mcp"


def _recorder(registry):
    """Collect completed/failed notifications in order."""
    log = []
    registry.add_completed_listener(lambda call_id, name, result: log.append(("completed", call_id, name, result)))
    registry.add_failed_listener(lambda call_id, name, error: log.append(("failed", call_id, name, error)))
    return log


def _jsonrpc_server(tools, call_handler=None, wrap_sse=False):
    """Mock MCP server answering initialize, tools/list and tools/call."""
    seen = []

    def handler(request):
        body = json.loads(request.content)
        seen.append(body)
        if body["method"] == "initialize":
            payload = {"jsonrpc": "2.0", "id": body["id"], "result": {"protocolVersion": "2024-11-05"}}
        elif body["method"] == "tools/list":
            payload = {"jsonrpc": "2.0", "id": body["id"], "result": {"tools": tools}}
        else:
            payload = call_handler(body)
        text = json.dumps(payload)
        if wrap_sse:
            text = f"event: message\ndata: {text}\n\n"
        return httpx.Response(200, text=text)

    return handler, seen


class TestRegistration:
    """Tests for registering and listing tools."""

    def test_register_builtins(self):
        """Test registering the built-in tools."""
        registry = ToolRegistry()
        for tool in builtin_tools():
            assert registry.register(tool)

        assert registry.registered_tools == ["calculator", "datetime"]
        assert registry.has_tool("calculator")
        assert isinstance(registry.get_tool("datetime"), LocalTool)

    def test_invalid_tools_rejected(self):
        """Test that incomplete definitions are refused."""
        registry = ToolRegistry()

        assert not registry.register(LocalTool(name="", description="x", function=lambda p: {}))
        assert not registry.register(LocalTool(name="noop", description="", function=lambda p: {}))
        assert not registry.register(LocalTool(name="nofunc", description="x"))
        assert not registry.register(HttpTool(name="remote", description="x"))
        assert registry.registered_tools == []

    def test_reregister_replaces(self):
        """Test that a second registration under the same name wins."""
        registry = ToolRegistry()
        registry.register(LocalTool(name="echo", description="first", function=lambda p: {}))
        registry.register(LocalTool(name="echo", description="second", function=lambda p: {}))

        assert registry.registered_tools == ["echo"]
        assert registry.get_tool("echo").description == "second"

    def test_unregister_and_clear_networked(self):
        """Test removal of single tools and of all networked tools."""
        registry = ToolRegistry()
        registry.register(calculator_tool())
        registry.register_networked("weather", "Weather lookup", {}, SERVER_URL)
        registry.register(SseTool(name="logs", description="Tail logs", url="http://tools.local/logs"))

        assert registry.unregister("weather")
        assert not registry.unregister("weather")
        assert registry.clear_networked() == 1
        assert registry.registered_tools == ["calculator"]

    def test_tools_for_llm(self):
        """Test the prompt-based catalogue."""
        registry = ToolRegistry()
        registry.register(calculator_tool())

        entry = registry.tools_for_llm()[0]

        assert entry["name"] == "calculator"
        assert entry["parameters"]["a"] == "number: first operand"

    def test_tools_for_llm_native(self):
        """Test that shorthand parameters become a JSON schema."""
        registry = ToolRegistry()
        registry.register(calculator_tool())

        registry.register_networked("weather", "Weather lookup", {"city": "string: city name"}, SERVER_URL)

        entries = registry.tools_for_llm_native()
        entry = entries[0]

        assert [e["function"]["name"] for e in entries] == ["calculator", "weather"]
        assert entry["type"] == "function"
        params = entry["function"]["parameters"]
        assert params["type"] == "object"
        assert params["properties"]["a"] == {"type": "number", "description": "first operand"}
        assert params["properties"]["operation"]["type"] == "string"
        assert params["required"] == []

    def test_native_keeps_existing_schema(self):
        """Test that a discovered JSON schema is passed through."""
        schema = {"type": "object", "properties": {"city": {"type": "string"}}, "required": ["city"]}
        registry = ToolRegistry()
        registry.register_networked("weather", "Weather lookup", schema, SERVER_URL)

        assert registry.tools_for_llm_native()[0]["function"]["parameters"] == schema

    def test_build_message(self):
        """Test building a message that names tools."""
        message = ToolRegistry.build_message("user", "Calculate 5 + 3", ["calculator"])

        assert message.to_json() == {
            "role": "user",
            "content": "Calculate 5 + 3",
            "context": {"tools": ["calculator"]},
        }
        assert ToolRegistry.extract_tool_calls(message) == ["calculator"]
        assert ToolRegistry.build_message("user", "hi").to_json() == {"role": "user", "content": "hi"}


class TestLocalDispatch:
    """Tests for dispatching local tools."""

    def test_calculator_add(self):
        """Test that a local call settles before dispatch returns."""
        registry = ToolRegistry()
        registry.register(calculator_tool())
        log = _recorder(registry)

        call_id = registry.dispatch("calculator", {"operation": "add", "a": 5, "b": 3})

        assert log == [("completed", call_id, "calculator",
                        {"result": 8.0, "operation": "add", "a": 5.0, "b": 3.0})]

    def test_custom_local_tool(self):
        """Test a user-supplied callback."""
        registry = ToolRegistry()
        registry.register(LocalTool(name="add", description="Add two numbers",
                                    parameters={"a": "number", "b": "number"},
                                    function=lambda p: {"sum": p["a"] + p["b"]}))
        log = _recorder(registry)

        call_id = registry.dispatch("add", {"a": 2, "b": 3})

        assert log == [("completed", call_id, "add", {"sum": 5})]

    def test_call_ids_are_unique(self):
        """Test that every dispatch gets a fresh id."""
        registry = ToolRegistry()
        registry.register(calculator_tool())

        ids = {registry.dispatch("calculator", {"operation": "add", "a": 1, "b": 1}) for _ in range(20)}

        assert len(ids) == 20

    def test_missing_tool(self):
        """Test that an unknown tool fails with a clear message."""
        registry = ToolRegistry()
        log = _recorder(registry)

        call_id = registry.dispatch("nope", {})

        assert log == [("failed", call_id, "nope", "Tool not found: nope")]

    def test_raising_function(self):
        """Test that an exception in a local tool becomes a failure."""
        def broken(params):
            raise ValueError("bad input")

        registry = ToolRegistry()
        registry.register(LocalTool(name="broken", description="Always fails", function=broken))
        log = _recorder(registry)

        registry.dispatch("broken")

        assert log[0][0] == "failed"
        assert log[0][3] == "Tool execution error: bad input"

    def test_listener_errors_do_not_break_dispatch(self):
        """Test that a failing listener does not stop the others."""
        registry = ToolRegistry()
        registry.register(calculator_tool())
        registry.add_completed_listener(lambda *args: 1 / 0)
        log = _recorder(registry)

        registry.dispatch("calculator", {"operation": "add", "a": 1, "b": 1})

        assert len(log) == 1

    def test_invoke(self):
        """Test awaiting a local call."""
        registry = ToolRegistry()
        registry.register(calculator_tool())

        call = asyncio.run(registry.invoke("calculator", {"operation": "multiply", "a": 6, "b": 7}))

        assert call.status is ToolCallStatus.COMPLETED
        assert call.result["result"] == 42.0
        assert call.to_result().success


class TestDiscovery:
    """Tests for MCP server discovery."""

    TOOLS = [
        {"name": "weather", "description": "Weather lookup",
         "inputSchema": {"type": "object", "properties": {"city": {"type": "string"}}}},
        {"name": "echo"},
        {"description": "nameless"},
    ]

    def _discover(self, handler, url=SERVER_URL):
        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = ToolRegistry(client=http, discovery_timeout=1.0)
            count = await registry.discover_server_tools("demo", url)
            await http.aclose()
            return registry, count

        return asyncio.run(run())

    def test_discover_registers_tools(self):
        """Test the handshake and registration of listed tools."""
        handler, seen = _jsonrpc_server(self.TOOLS)

        registry, count = self._discover(handler)

        assert count == 2
        assert [body["method"] for body in seen] == ["initialize", "tools/list"]
        assert seen[0]["params"]["clientInfo"]["name"] == "chatagent"
        assert registry.get_tool("echo").description == "Tool from demo"
        weather = registry.get_tool("weather")
        assert isinstance(weather, HttpTool)
        assert weather.url == SERVER_URL
        assert weather.parameters["properties"]["city"]["type"] == "string"

    def test_discover_sse_wrapped_responses(self):
        """Test servers that answer with a single SSE event."""
        handler, _ = _jsonrpc_server(self.TOOLS, wrap_sse=True)

        _, count = self._discover(handler)

        assert count == 2

    def test_discover_empty_server(self):
        """Test a server without tools."""
        handler, _ = _jsonrpc_server([])

        _, count = self._discover(handler)

        assert count == 0

    def test_discover_unreachable(self):
        """Test that a connection failure reports -1."""
        def handler(request):
            raise httpx.ConnectError("Connection refused", request=request)

        registry, count = self._discover(handler)

        assert count == -1
        assert registry.registered_tools == []

    def test_discover_jsonrpc_error(self):
        """Test that a handshake error reports -1."""
        def handler(request):
            body = json.loads(request.content)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "error": {"code": -32601, "message": "nope"}})

        _, count = self._discover(handler)

        assert count == -1

    def test_discover_invalid_url(self):
        """Test that a URL without a host is rejected up front."""
        handler, seen = _jsonrpc_server(self.TOOLS)

        _, count = self._discover(handler, url="not a url")

        assert count == -1
        assert seen == []


class TestHttpDispatch:
    """Tests for JSON-RPC tool calls."""

    def _invoke(self, call_handler, name="weather", params=None):
        handler, seen = _jsonrpc_server([], call_handler=call_handler)

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = ToolRegistry(client=http)
            registry.register_networked("weather", "Weather lookup", {}, SERVER_URL)
            log = _recorder(registry)
            call = await registry.invoke(name, params or {"city": "Oslo"})
            await registry.aclose()
            await http.aclose()
            return call, log

        call, log = asyncio.run(run())
        return call, log, seen

    def test_result(self):
        """Test a successful call."""
        call, log, seen = self._invoke(
            lambda body: {"jsonrpc": "2.0", "id": body["id"], "result": {"temp": 4}}
        )

        assert call.status is ToolCallStatus.COMPLETED
        assert call.result == {"temp": 4}
        assert seen[0]["method"] == "tools/call"
        assert seen[0]["params"] == {"name": "weather", "arguments": {"city": "Oslo"}}
        assert log == [("completed", call.call_id, "weather", {"temp": 4})]

    def test_scalar_result_wrapped(self):
        """Test that a non-object result is wrapped."""
        call, _, _ = self._invoke(lambda body: {"jsonrpc": "2.0", "id": body["id"], "result": "sunny"})

        assert call.result == {"result": "sunny"}

    def test_legacy_body(self):
        """Test a server that answers with a bare object."""
        call, _, _ = self._invoke(lambda body: {"temp": 4, "unit": "C"})

        assert call.result == {"temp": 4, "unit": "C"}

    def test_error_envelope(self):
        """Test that a JSON-RPC error fails the call."""
        call, log, _ = self._invoke(
            lambda body: {"jsonrpc": "2.0", "id": body["id"], "error": {"code": 1, "message": "city unknown"}}
        )

        assert call.status is ToolCallStatus.FAILED
        assert call.error == "city unknown"
        assert log[0][0] == "failed"

    def test_request_ids_increase(self):
        """Test that each call on a server uses a fresh request id."""
        handler, seen = _jsonrpc_server(
            [], call_handler=lambda body: {"jsonrpc": "2.0", "id": body["id"], "result": {}}
        )

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = ToolRegistry(client=http)
            registry.register_networked("weather", "Weather lookup", {}, SERVER_URL)
            await asyncio.gather(registry.invoke("weather", {}), registry.invoke("weather", {}))
            await http.aclose()

        asyncio.run(run())

        assert sorted(body["id"] for body in seen) == [1, 2]

    def test_concurrent_calls_to_two_servers(self):
        """Test that equal request ids on different servers reach their own calls."""
        seen = []

        async def handler(request):
            body = json.loads(request.content)
            seen.append((request.url.host, body["id"]))
            if request.url.host == "slow.local":
                await asyncio.sleep(0.05)
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": body["id"],
                                             "result": {"server": request.url.host}})

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = ToolRegistry(client=http)
            registry.register_networked("slow_tool", "Slow server tool", {}, "http://slow.local/mcp")
            registry.register_networked("fast_tool", "Fast server tool", {}, "http://fast.local/mcp")
            log = _recorder(registry)
            calls = await asyncio.wait_for(
                asyncio.gather(registry.invoke("slow_tool", {}), registry.invoke("fast_tool", {})), 1.0
            )
            await registry.aclose()
            await http.aclose()
            return calls, log

        (slow, fast), log = asyncio.run(run())

        assert sorted(seen) == [("fast.local", 1), ("slow.local", 1)]
        assert slow.status is ToolCallStatus.COMPLETED
        assert slow.result == {"server": "slow.local"}
        assert fast.result == {"server": "fast.local"}
        assert [(entry[0], entry[2]) for entry in log] == [("completed", "fast_tool"), ("completed", "slow_tool")]

    def test_unexpected_transport_failure_fails_call(self):
        """Test that an error outside httpx's hierarchy still settles the call."""
        def handler(request):
            raise RuntimeError("connection pool corrupted")

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = ToolRegistry(client=http)
            registry.register_networked("weather", "Weather lookup", {}, SERVER_URL)
            log = _recorder(registry)
            call = await asyncio.wait_for(registry.invoke("weather", {}), 1.0)
            await registry.aclose()
            await http.aclose()
            return call, log

        call, log = asyncio.run(run())

        assert call.status is ToolCallStatus.FAILED
        assert call.error == "Tool execution error: connection pool corrupted"
        assert [entry[0] for entry in log] == ["failed"]


class TestSseDispatch:
    """Tests for streaming tools."""

    def _registry(self, http):
        registry = ToolRegistry(client=http)
        registry.register(SseTool(name="progress", description="Streams progress",
                                  url="http://tools.local/progress"))
        return registry

    def test_events_until_done(self):
        """Test that every event completes and the call resolves on the first."""
        stream = (
            b"event: progress\ndata: {\"pct\": 50}\n\n"
            b"event: progress\ndata: plain text\nid: 2\n\n"
            b"event: done\ndata: {\"pct\": 100}\n\n"
        )
        seen_urls = []

        def handler(request):
            seen_urls.append(str(request.url))
            return httpx.Response(200, content=stream)

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = self._registry(http)
            log = _recorder(registry)
            call = await registry.invoke("progress", {"job": "build 1", "verbose": True})
            await registry._sse_clients["progress"].wait_closed()
            await registry.aclose()
            await http.aclose()
            return call, log

        call, log = asyncio.run(run())

        assert seen_urls == ["http://tools.local/progress?job=build+1&verbose=true"]
        assert call.result == {"pct": 50}
        assert [entry[0] for entry in log] == ["completed", "completed", "completed"]
        assert log[1][3] == {"data": "plain text", "eventType": "progress", "id": "2"}
        assert log[2][3] == {"pct": 100}

    def test_stream_closed_before_any_event(self):
        """Test that an empty stream fails the call."""
        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(200, content=b"")))
            registry = self._registry(http)
            call = await registry.invoke("progress", {})
            await registry.aclose()
            await http.aclose()
            return call

        call = asyncio.run(run())

        assert call.status is ToolCallStatus.FAILED
        assert call.error == "SSE connection closed unexpectedly"

    def test_stream_http_error(self):
        """Test that an error status fails the call with the SSE error."""
        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(lambda r: httpx.Response(500)))
            registry = self._registry(http)
            call = await registry.invoke("progress", {})
            await registry.aclose()
            await http.aclose()
            return call

        call = asyncio.run(run())

        assert call.status is ToolCallStatus.FAILED
        assert call.error.startswith("SSE error:")

    def test_stream_unexpected_failure(self):
        """Test that a non-HTTP error while streaming fails the call."""
        def handler(request):
            raise RuntimeError("stream exploded")

        async def run():
            http = httpx.AsyncClient(transport=httpx.MockTransport(handler))
            registry = self._registry(http)
            call = await asyncio.wait_for(registry.invoke("progress", {}), 1.0)
            await registry.aclose()
            await http.aclose()
            return call

        call = asyncio.run(run())

        assert call.status is ToolCallStatus.FAILED
        assert call.error == "SSE error: stream exploded"
