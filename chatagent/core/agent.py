"""
ChatAgent Agent - Wires the protocol client to the tool registry.

Every run():
1. Register built-in tools and discover configured tool servers (once)
2. Send the prompt with the tool catalogue
3. Invoke each tool call the model requests
4. Hand the results back until the model answers in plain text
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import httpx

from chatagent.core.errors import RequestTimeoutError
from chatagent.core.tool_calls import DetectedToolCall
from chatagent.mcp.builtin import builtin_tools
from chatagent.mcp.registry import ToolRegistry
from chatagent.mcp.schema import ToolResult
from chatagent.providers.ollama import ProtocolClient
from chatagent.validation.config import Config

logger = logging.getLogger(__name__)

MAX_TOOL_ROUNDS = 5


@dataclass
class TaskResult:
    """Result from one prompt."""
    output: str
    model: str
    tool_rounds: int = 0
    tool_results: List[ToolResult] = field(default_factory=list)
    completed: bool = True
    error: Optional[str] = None


class Agent:
    """
    Orchestrates one conversation.

    The client and registry are public so callers can attach listeners
    (token streaming, tool progress) before calling :meth:`run`.
    """

    def __init__(
        self,
        config: Optional[Config] = None,
        client: Optional[ProtocolClient] = None,
        registry: Optional[ToolRegistry] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.config = config or Config()
        settings = self.config.merged
        self.client = client or ProtocolClient(settings.llm, client=http_client)
        self.registry = registry or ToolRegistry(
            client=http_client, discovery_timeout=settings.mcp.discovery_timeout,
        )
        self.tool_timeout = settings.llm.request_timeout
        self._ready = False

    async def setup(self, discover: bool = True) -> Dict[str, int]:
        """
        Register built-in tools and discover enabled servers.

        Returns the number of tools registered per server (-1 for servers
        whose handshake failed). Runs once per agent.
        """
        counts: Dict[str, int] = {}
        if self._ready:
            return counts

        for tool in builtin_tools():
            self.registry.register(tool)
        logger.debug("Registered %d built-in local tools", len(self.registry.registered_tools))

        if discover:
            for server in self.config.merged.mcp.enabled_servers:
                counts[server.name] = await self.registry.discover_server_tools(
                    server.name, server.url, server.type,
                )
                if counts[server.name] < 0:
                    logger.warning("Tool server '%s' is unavailable", server.name)

        self._ready = True
        return counts

    async def run(self, prompt: str, context: str = "", use_tools: bool = True,
                  max_tool_rounds: int = MAX_TOOL_ROUNDS) -> TaskResult:
        """Send ``prompt`` and follow tool calls until a final answer arrives."""
        await self.setup()

        if not use_tools:
            turn = await self.client.send_prompt(prompt, context)
            return TaskResult(
                output=turn.text if turn.ok else "",
                model=self.client.model,
                completed=turn.ok,
                error=turn.error,
            )

        turn = await self.client.send_prompt_with_tools(prompt, self.registry.tools_for_llm(), context)
        rounds = 0
        all_results: List[ToolResult] = []

        while turn.ok and turn.has_tool_calls:
            if rounds >= max_tool_rounds:
                error = f"Stopped after {max_tool_rounds} tool rounds"
                logger.warning(error)
                return TaskResult(
                    output="", model=self.client.model, tool_rounds=rounds,
                    tool_results=all_results, completed=False, error=error,
                )
            rounds += 1
            results = [await self._invoke(call) for call in turn.tool_calls]
            all_results.extend(results)
            turn = await self.client.send_tool_results(prompt, results)

        return TaskResult(
            output=turn.text if turn.ok else "",
            model=self.client.model,
            tool_rounds=rounds,
            tool_results=all_results,
            completed=turn.ok,
            error=turn.error,
        )

    async def _invoke(self, call: DetectedToolCall) -> ToolResult:
        try:
            outcome = await asyncio.wait_for(
                self.registry.invoke(call.name, call.parameters), self.tool_timeout,
            )
        except asyncio.TimeoutError:
            logger.error("Tool '%s' did not finish within %gs", call.name, self.tool_timeout)
            return ToolResult(
                call_id=call.call_id, tool_name=call.name, success=False,
                error=str(RequestTimeoutError(self.tool_timeout)),
            )
        result = outcome.to_result()
        result.call_id = call.call_id
        return result

    async def aclose(self) -> None:
        await self.registry.aclose()
        await self.client.aclose()
