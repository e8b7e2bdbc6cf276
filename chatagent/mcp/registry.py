"""Tool registry: holds tool definitions, discovers MCP servers, dispatches calls."""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

import httpx

from chatagent.core.errors import ProtocolParseError, ToolNotFoundError
from chatagent.mcp.schema import (
    HttpTool,
    LocalTool,
    MCPMessage,
    SseTool,
    ToolCall,
    ToolCallStatus,
    ToolDefinition,
    ToolType,
)
from chatagent.mcp.sse import SSEClient, SSEEvent
from chatagent.mcp.transport import MCPTransport, MCPTransportError, error_message

logger = logging.getLogger(__name__)

DEFAULT_DISCOVERY_TIMEOUT = 5.0

# SSE event types that end a streaming tool call.
TERMINAL_EVENT_TYPES = frozenset({"done", "complete", "end"})

CompletedListener = Callable[[str, str, Dict[str, Any]], None]
FailedListener = Callable[[str, str, str], None]


def _compact(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"))


class ToolRegistry:
    """
    Registry of local and networked tools.

    Every dispatched call reports exactly one outcome through the
    ``completed(call_id, tool_name, result)`` or ``failed(call_id,
    tool_name, error)`` listeners. SSE tools are the exception to
    "exactly one": each non-terminal event is also reported as completed.
    Callers that prefer awaiting can use :meth:`invoke`, which resolves on
    the first outcome.
    """

    def __init__(self, client: Optional[httpx.AsyncClient] = None,
                 discovery_timeout: float = DEFAULT_DISCOVERY_TIMEOUT):
        self._tools: Dict[str, ToolDefinition] = {}
        self._client = client
        self._owns_client = client is None
        self.discovery_timeout = discovery_timeout

        self._transports: Dict[str, MCPTransport] = {}
        self._pending_http: Dict[Tuple[str, int], ToolCall] = {}
        self._sse_clients: Dict[str, SSEClient] = {}
        self._sse_calls: Dict[str, ToolCall] = {}
        self._futures: Dict[str, asyncio.Future] = {}
        self._tasks: Set[asyncio.Task] = set()

        self._completed_listeners: List[CompletedListener] = []
        self._failed_listeners: List[FailedListener] = []
        logger.info("ToolRegistry initialized")

    # ── Listeners ─────────────────────────────────────────────────────────

    def add_completed_listener(self, listener: CompletedListener) -> None:
        self._completed_listeners.append(listener)

    def add_failed_listener(self, listener: FailedListener) -> None:
        self._failed_listeners.append(listener)

    # ── Registration ──────────────────────────────────────────────────────

    def register(self, tool: ToolDefinition) -> bool:
        """Add or replace a tool. Returns False if the definition is invalid."""
        if not tool.is_valid():
            logger.error("Cannot register invalid tool: %s", tool.name)
            return False
        if tool.name in self._tools:
            logger.warning("Tool '%s' already registered, replacing", tool.name)
        self._tools[tool.name] = tool
        logger.info("Registered %s tool: %s - %s", tool.tool_type.value, tool.name, tool.description)
        return True

    def register_networked(self, name: str, description: str,
                           parameters: Optional[Dict[str, Any]], url: str) -> bool:
        """Register a JSON-RPC tool served at ``url``."""
        return self.register(HttpTool(name=name, description=description,
                                      parameters=parameters or {}, url=url))

    def unregister(self, name: str) -> bool:
        if self._tools.pop(name, None) is None:
            return False
        logger.info("Unregistered tool: %s", name)
        return True

    def clear_networked(self) -> int:
        """Remove every HTTP and SSE tool, keeping local ones."""
        names = [name for name, tool in self._tools.items() if tool.is_networked]
        for name in names:
            del self._tools[name]
        logger.info("Cleared %d networked tools", len(names))
        return len(names)

    def get_tool(self, name: str) -> Optional[ToolDefinition]:
        return self._tools.get(name)

    def has_tool(self, name: str) -> bool:
        return name in self._tools

    @property
    def registered_tools(self) -> List[str]:
        return list(self._tools)

    # ── LLM-facing catalogues ─────────────────────────────────────────────

    def tools_for_llm(self) -> List[Dict[str, Any]]:
        """``{name, description, parameters}`` entries for prompt-based models."""
        return [tool.catalogue_entry() for tool in self._tools.values()]

    def tools_for_llm_native(self) -> List[Dict[str, Any]]:
        """``{type: "function", function: {...}}`` entries for native tool calling."""
        return [tool.native_entry() for tool in self._tools.values()]

    # ── Messages ──────────────────────────────────────────────────────────

    @staticmethod
    def build_message(role: str, content: str, tool_names: Optional[List[str]] = None) -> MCPMessage:
        context: Dict[str, Any] = {"tools": list(tool_names)} if tool_names else {}
        return MCPMessage(role=role, content=content, context=context)

    @staticmethod
    def extract_tool_calls(message: MCPMessage) -> List[str]:
        return message.tool_names

    # ── Discovery ─────────────────────────────────────────────────────────

    def _http(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=httpx.Timeout(30.0))
        return self._client

    def _transport(self, url: str) -> MCPTransport:
        transport = self._transports.get(url)
        if transport is None:
            transport = MCPTransport(url, self._http())
            self._transports[url] = transport
        return transport

    async def discover_server_tools(self, server_name: str, server_url: str,
                                    server_type: str = "http") -> int:
        """
        Handshake with an MCP server and register the tools it lists.

        Each tool is registered as an HTTP tool at ``server_url``. Returns
        the number registered, or -1 if the handshake failed.
        """
        logger.info("Discovering tools from MCP server: %s (%s) at %s",
                    server_name, server_type.upper(), server_url)

        try:
            url = httpx.URL(server_url)
        except httpx.InvalidURL:
            url = None
        if url is None or not url.scheme or not url.host:
            logger.error("Invalid server URL: %s", server_url)
            return -1

        transport = MCPTransport(server_url, self._http(), timeout=self.discovery_timeout)
        try:
            await asyncio.wait_for(transport.initialize(), self.discovery_timeout)
            logger.debug("MCP server %s initialized successfully", server_name)
            raw_tools = await asyncio.wait_for(transport.list_tools(), self.discovery_timeout)
        except asyncio.TimeoutError:
            logger.error("MCP server %s did not answer within %gs", server_name, self.discovery_timeout)
            return -1
        except (MCPTransportError, ProtocolParseError) as exc:
            logger.error("Failed to discover tools from MCP server %s: %s", server_name, exc)
            return -1

        if not raw_tools:
            logger.warning("MCP server %s has no tools", server_name)
            return 0
        logger.info("Discovered %d tools from MCP server: %s", len(raw_tools), server_name)

        registered = 0
        for raw in raw_tools:
            name = raw.get("name")
            if not isinstance(name, str) or not name:
                logger.warning("Skipping tool with empty name from server: %s", server_name)
                continue
            description = raw.get("description") or f"Tool from {server_name}"
            schema = raw.get("inputSchema")
            if self.register_networked(name, str(description),
                                       schema if isinstance(schema, dict) else {}, server_url):
                registered += 1
                logger.debug("Registered tool '%s' from MCP server: %s", name, server_name)
            else:
                logger.warning("Failed to register tool '%s' from MCP server: %s", name, server_name)

        logger.info("Successfully registered %d/%d tools from MCP server: %s",
                    registered, len(raw_tools), server_name)
        return registered

    # ── Dispatch ──────────────────────────────────────────────────────────

    def dispatch(self, tool_name: str, parameters: Optional[Dict[str, Any]] = None) -> str:
        """
        Start a tool call and return its id.

        Local tools and unknown names settle before this returns. Networked
        tools need a running event loop and settle later.
        """
        call = ToolCall(tool_name=tool_name, arguments=parameters or {})
        self._execute(call)
        return call.call_id

    async def invoke(self, tool_name: str, parameters: Optional[Dict[str, Any]] = None) -> ToolCall:
        """Dispatch a call and wait for its first outcome."""
        call = ToolCall(tool_name=tool_name, arguments=parameters or {})
        future = asyncio.get_running_loop().create_future()
        self._futures[call.call_id] = future
        try:
            self._execute(call)
            return await future
        finally:
            self._futures.pop(call.call_id, None)

    def _execute(self, call: ToolCall) -> None:
        logger.info("Executing tool: %s (call id %s)", call.tool_name, call.call_id)
        tool = self._tools.get(call.tool_name)
        if tool is None:
            error = str(ToolNotFoundError(call.tool_name))
            logger.error(error)
            self._fail(call, error)
            return

        if tool.tool_type is ToolType.LOCAL:
            self._run_local(call, tool)
        elif tool.tool_type is ToolType.HTTP:
            self._spawn(self._run_http(call, tool))
        elif tool.tool_type is ToolType.SSE:
            self._spawn(self._run_sse(call, tool))
        else:
            raise AssertionError(f"Unhandled tool type: {tool.tool_type}")

    def _spawn(self, coro) -> None:
        task = asyncio.get_running_loop().create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # ── Local ─────────────────────────────────────────────────────────────

    def _run_local(self, call: ToolCall, tool: LocalTool) -> None:
        try:
            result = tool.invoke(call.arguments)
        except Exception as exc:
            error = f"Tool execution error: {exc}"
            logger.error("Local tool '%s' failed: %s", call.tool_name, error)
            self._fail(call, error)
            return
        logger.info("Local tool '%s' completed successfully", call.tool_name)
        logger.debug("Tool result: %s", _compact(result))
        self._complete(call, result if isinstance(result, dict) else {"result": result})

    # ── HTTP (JSON-RPC tools/call) ────────────────────────────────────────

    async def _run_http(self, call: ToolCall, tool: HttpTool) -> None:
        transport = self._transport(tool.url)
        # Ids are only unique per server.
        key = (tool.url, transport.next_id())
        self._pending_http[key] = call
        logger.info("Sending networked tool request: %s to %s", call.tool_name, tool.url)
        logger.debug("   Call ID: %s, request id: %d", call.call_id, key[1])

        try:
            response = await transport.call_tool(call.tool_name, call.arguments, key[1])
        except (MCPTransportError, ProtocolParseError) as exc:
            self._settle_http(key, error=str(exc))
            return
        except Exception as exc:
            logger.exception("Unexpected error calling networked tool '%s'", call.tool_name)
            self._settle_http(key, error=f"Tool execution error: {exc}")
            return
        self._settle_http(key, response=response)

    def _settle_http(self, key: Tuple[str, int], response: Optional[Dict[str, Any]] = None,
                     error: Optional[str] = None) -> None:
        call = self._pending_http.pop(key, None)
        if call is None:
            logger.error("Response for unknown request id %s from %s", key[1], key[0])
            return

        if error is None and response is not None and "error" in response:
            error = error_message(response["error"])
        if error is not None:
            logger.error("Networked tool '%s' failed: %s", call.tool_name, error)
            self._fail(call, error)
            return

        response = response or {}
        if "result" in response:
            result = response["result"]
            result = result if isinstance(result, dict) else {"result": result}
        else:
            result = response
        logger.info("Networked tool '%s' completed successfully", call.tool_name)
        logger.debug("Tool result: %s", _compact(result))
        self._complete(call, result)

    # ── SSE ───────────────────────────────────────────────────────────────

    def _sse_client(self, tool_name: str) -> SSEClient:
        client = self._sse_clients.get(tool_name)
        if client is not None:
            logger.debug("Reusing existing SSE client for tool: %s", tool_name)
            return client

        client = SSEClient(self._http())
        client.add_event_listener(lambda event: self._on_sse_event(tool_name, event))
        client.add_connected_listener(lambda url: logger.info("SSE connected to: %s", url))
        client.add_disconnected_listener(lambda: self._on_sse_closed(tool_name, None))
        client.add_error_listener(lambda error: self._on_sse_closed(tool_name, error))
        self._sse_clients[tool_name] = client
        logger.info("Created new SSE client for tool: %s", tool_name)
        return client

    async def _run_sse(self, call: ToolCall, tool: SseTool) -> None:
        client = self._sse_client(call.tool_name)
        url = tool.stream_url(call.arguments)
        # Close the previous stream before tracking the new call so its
        # disconnection fails the old call, not this one.
        if client.is_connected:
            await client.disconnect()
        self._sse_calls[call.tool_name] = call
        logger.info("Connecting SSE stream for tool: %s to %s", call.tool_name, url)
        await client.connect(url)

    def _on_sse_event(self, tool_name: str, event: SSEEvent) -> None:
        call = self._sse_calls.get(tool_name)
        if call is None:
            logger.warning("SSE event received for unknown tool call")
            return

        try:
            decoded = json.loads(event.data)
        except json.JSONDecodeError:
            decoded = None
        if isinstance(decoded, dict):
            result = decoded
        else:
            result = {"data": event.data, "eventType": event.event_type}
            if event.id:
                result["id"] = event.id

        if event.event_type in TERMINAL_EVENT_TYPES:
            logger.info("SSE tool '%s' completed", tool_name)
            del self._sse_calls[tool_name]
        else:
            logger.debug("SSE streaming data for %s", tool_name)
        self._complete(call, result)

    def _on_sse_closed(self, tool_name: str, error: Optional[str]) -> None:
        call = self._sse_calls.pop(tool_name, None)
        if call is None:
            return
        if not call.is_pending:
            # Already reported through a streaming event.
            return
        self._fail(call, error or "SSE connection closed unexpectedly")

    # ── Outcomes ──────────────────────────────────────────────────────────

    def _complete(self, call: ToolCall, result: Dict[str, Any]) -> None:
        call.status = ToolCallStatus.COMPLETED
        call.result = result
        self._notify(self._completed_listeners, call.call_id, call.tool_name, result)
        self._resolve(call)

    def _fail(self, call: ToolCall, error: str) -> None:
        call.status = ToolCallStatus.FAILED
        call.error = error
        self._notify(self._failed_listeners, call.call_id, call.tool_name, error)
        self._resolve(call)

    def _resolve(self, call: ToolCall) -> None:
        future = self._futures.get(call.call_id)
        if future is not None and not future.done():
            future.set_result(call.model_copy())

    @staticmethod
    def _notify(listeners: list, *args) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Tool listener %r failed", listener)

    # ── Lifecycle ─────────────────────────────────────────────────────────

    async def aclose(self) -> None:
        """Close SSE streams, cancel in-flight calls and the owned HTTP client."""
        for client in list(self._sse_clients.values()):
            await client.disconnect()
        self._sse_clients.clear()
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        for call in list(self._pending_http.values()):
            self._fail(call, "Tool registry closed")
        self._pending_http.clear()
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None
