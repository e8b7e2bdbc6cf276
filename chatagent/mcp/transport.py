"""MCP server communication via JSON-RPC 2.0 over HTTP."""

from __future__ import annotations

import itertools
import json
import logging
from typing import Any, Dict, List, Optional

import httpx

from chatagent import __version__
from chatagent.core.errors import ChatAgentError, ProtocolParseError

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
CLIENT_NAME = "chatagent"


class MCPTransportError(ChatAgentError):
    """Raised when MCP transport communication fails."""


def unwrap_sse_body(body: str) -> str:
    """
    Strip a single-event SSE envelope from a JSON-RPC response body.

    Streamable-HTTP MCP servers may answer ``event: message\\ndata: {...}``
    instead of plain JSON. The payload after the first ``data:`` field is
    returned; bodies that are not SSE-wrapped pass through unchanged.
    """
    stripped = body.lstrip()
    if not stripped.startswith(("event:", "data:", "id:")):
        return body

    data_lines: List[str] = []
    for line in stripped.splitlines():
        if line.startswith("data:"):
            value = line[5:]
            data_lines.append(value[1:] if value.startswith(" ") else value)
        elif not line.strip() and data_lines:
            break
    return "\n".join(data_lines).strip() if data_lines else body


def decode_jsonrpc(body: str) -> Dict[str, Any]:
    """Decode a (possibly SSE-wrapped) JSON-RPC response body."""
    try:
        decoded = json.loads(unwrap_sse_body(body))
    except json.JSONDecodeError as exc:
        raise ProtocolParseError(f"JSON parse error: {exc}") from exc
    if not isinstance(decoded, dict):
        raise ProtocolParseError("Invalid response format: expected a JSON object")
    return decoded


def error_message(error: Any) -> str:
    """Human-readable text for a JSON-RPC ``error`` member."""
    if isinstance(error, dict):
        message = error.get("message")
        if message:
            return str(message)
        return json.dumps(error, separators=(",", ":"))
    return str(error)


class MCPTransport:
    """
    Talk to one MCP server over HTTP POST (JSON-RPC 2.0).

    The ``httpx.AsyncClient`` is shared with the owner and never closed here.
    Request ids increase monotonically per transport.
    """

    def __init__(self, url: str, client: httpx.AsyncClient, timeout: Optional[float] = None):
        self.url = url
        self._client = client
        self._timeout = timeout
        self._ids = itertools.count(1)

    def next_id(self) -> int:
        return next(self._ids)

    # ── JSON-RPC ──────────────────────────────────────────────────────────

    async def post(self, method: str, params: Optional[Dict[str, Any]] = None,
                   request_id: Optional[int] = None) -> Dict[str, Any]:
        """Send a request and return the decoded response envelope."""
        request = {
            "jsonrpc": "2.0",
            "id": request_id if request_id is not None else self.next_id(),
            "method": method,
            "params": params or {},
        }
        logger.debug("MCP %s -> %s (id=%s)", method, self.url, request["id"])

        try:
            response = await self._client.post(
                self.url,
                json=request,
                headers={"Accept": "application/json, text/event-stream"},
                timeout=self._timeout,
            )
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise MCPTransportError(f"Network error: {exc}") from exc

        return decode_jsonrpc(response.text)

    async def send(self, method: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Send a request and return its ``result``; JSON-RPC errors raise."""
        response = await self.post(method, params)
        if "error" in response:
            raise MCPTransportError(f"MCP error: {error_message(response['error'])}")
        result = response.get("result", {})
        return result if isinstance(result, dict) else {"result": result}

    # ── MCP Protocol ──────────────────────────────────────────────────────

    async def initialize(self) -> Dict[str, Any]:
        """Perform MCP initialize handshake."""
        return await self.send("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": {"name": CLIENT_NAME, "version": __version__},
        })

    async def list_tools(self) -> List[Dict[str, Any]]:
        """Fetch the tool list from the MCP server."""
        result = await self.send("tools/list")
        tools = result.get("tools", [])
        return [tool for tool in tools if isinstance(tool, dict)] if isinstance(tools, list) else []

    async def call_tool(self, name: str, arguments: Optional[Dict[str, Any]] = None,
                        request_id: Optional[int] = None) -> Dict[str, Any]:
        """Call a tool; returns the raw envelope so callers can read legacy bodies."""
        return await self.post("tools/call", {"name": name, "arguments": arguments or {}}, request_id)
