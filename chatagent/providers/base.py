"""
ChatAgent Provider Base - Request shapes for Ollama-compatible backends.

This module holds everything about a backend request that does not need a
network connection: tool-calling format detection from model metadata,
endpoint derivation, request body builders for both tool-calling formats,
and the text used to hand tool results back to the model.
"""

import asyncio
import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

import httpx

from chatagent.mcp.schema import ToolResult, normalize_parameters
from chatagent.validation.config import LLMConfig

GENERATE_PATH = "/api/generate"
CHAT_PATH = "/api/chat"
SHOW_PATH = "/api/show"

# Tools whose results are turned into a sentence locally instead of being
# sent back to the model.
SIMPLE_TOOLS = frozenset({"datetime", "calculator"})

TOOL_RESULTS_HEADER = (
    "Here are the tool call results. Please provide a clear, natural language "
    "summary of this information:\n\n"
)


class ToolCallFormat(str, Enum):
    """How a model expects to be told about tools."""

    UNDETERMINED = "unknown"
    NATIVE = "native"
    PROMPT_BASED = "prompt"


@dataclass
class ModelCapabilities:
    """Detected tool-calling format plus the raw ``/api/show`` payload."""

    format: ToolCallFormat = ToolCallFormat.UNDETERMINED
    model_info: Dict[str, Any] = field(default_factory=dict)

    @property
    def is_native(self) -> bool:
        return self.format is ToolCallFormat.NATIVE

    @classmethod
    def from_model_info(cls, info: Dict[str, Any]) -> "ModelCapabilities":
        """
        Classify a model from its metadata.

        Tool vocabulary in the modelfile, template or details means the
        backend accepts structured tool definitions.
        """
        modelfile = str(info.get("modelfile", "")).lower()
        template = str(info.get("template", "")).lower()
        details = info.get("details")
        details_text = json.dumps(details if isinstance(details, dict) else {}, indent=4)

        native = (
            "tool" in modelfile
            or "function_call" in modelfile
            or "tool" in template
            or "function" in template
            or "tool" in details_text
            or "function" in details_text
        )
        return cls(
            format=ToolCallFormat.NATIVE if native else ToolCallFormat.PROMPT_BASED,
            model_info=info,
        )


@dataclass
class PendingRequest:
    """A send deferred until capabilities are known."""

    prompt: str
    context: str = ""
    tools: Optional[List[Dict[str, Any]]] = None
    future: Optional[asyncio.Future] = None

    @property
    def with_tools(self) -> bool:
        return self.tools is not None


# ── Endpoints ─────────────────────────────────────────────────────────────


def derive_endpoint(api_url: str, path: str) -> str:
    """``scheme://host[:port]`` of ``api_url`` followed by ``path``."""
    url = httpx.URL(api_url)
    base = f"{url.scheme}://{url.host}"
    if url.port:
        base += f":{url.port}"
    return base + path


# ── Request bodies ────────────────────────────────────────────────────────


def apply_options(body: Dict[str, Any], llm: LLMConfig) -> Dict[str, Any]:
    """Add the overridden generation parameters to ``body``."""
    options: Dict[str, Any] = {}
    if llm.override_temperature:
        options["temperature"] = llm.temperature
    if llm.override_top_p:
        options["top_p"] = llm.top_p
    if llm.override_top_k:
        options["top_k"] = llm.top_k
    if llm.override_context_window_size:
        options["num_ctx"] = llm.context_window_size
    if options:
        body["options"] = options
    if llm.override_max_tokens:
        body["num_predict"] = llm.max_tokens
    return body


def build_generate_request(model: str, prompt: str, system_prompt: str, llm: LLMConfig) -> Dict[str, Any]:
    """Plain ``/api/generate`` body."""
    body: Dict[str, Any] = {"model": model, "prompt": prompt, "stream": True}
    if system_prompt:
        body["system"] = system_prompt
    return apply_options(body, llm)


def build_tool_instructions(tools: Sequence[Dict[str, Any]]) -> str:
    """System prompt suffix describing the tools and the call envelope."""
    lines = [
        "\n\nAVAILABLE TOOLS:\n",
        "You have access to the following tools to help answer questions:\n\n",
    ]
    for tool in tools:
        params = tool.get("parameters")
        lines.append(f"Tool: {tool.get('name', '')}\n")
        lines.append(f"Description: {tool.get('description', '')}\n")
        lines.append(
            f"Parameters: {json.dumps(params if isinstance(params, dict) else {}, separators=(',', ':'))}\n\n"
        )
    lines.append("\nTo use a tool, respond with JSON in this format:\n")
    lines.append('{"tool_call": {"name": "tool_name", "parameters": {}}}\n\n')
    lines.append('Or just: {"name": "tool_name", "parameters": {}}\n\n')
    lines.append("If you don't need a tool, respond normally.\n\n")
    return "".join(lines)


def build_prompt_tools_request(model: str, prompt: str, system_prompt: str,
                               tools: Sequence[Dict[str, Any]], llm: LLMConfig) -> Dict[str, Any]:
    """``/api/generate`` body with the tool catalogue injected into the system prompt."""
    body: Dict[str, Any] = {
        "model": model,
        "prompt": prompt,
        "system": system_prompt + build_tool_instructions(tools),
        "stream": True,
    }
    return apply_options(body, llm)


def normalize_tool_schema(tool: Dict[str, Any]) -> Dict[str, Any]:
    """Convert an MCP-style catalogue entry into a native function entry."""
    if "type" in tool and "function" in tool:
        return tool
    params = tool.get("parameters")
    return {
        "type": "function",
        "function": {
            "name": tool.get("name", ""),
            "description": tool.get("description", ""),
            "parameters": normalize_parameters(params if isinstance(params, dict) else {}),
        },
    }


def build_chat_request(model: str, messages: List[Dict[str, Any]], llm: LLMConfig,
                       tools: Optional[Sequence[Dict[str, Any]]] = None) -> Dict[str, Any]:
    """``/api/chat`` body; ``tools`` may be MCP-style or already native."""
    body: Dict[str, Any] = {"model": model, "stream": True, "messages": messages}
    if tools:
        body["tools"] = [normalize_tool_schema(tool) for tool in tools]
    return apply_options(body, llm)


def chat_messages(system_prompt: str, history: Sequence[Dict[str, Any]], content: str) -> List[Dict[str, Any]]:
    """System message, then ``history``, then a user message with ``content``."""
    messages: List[Dict[str, Any]] = []
    if system_prompt:
        messages.append({"role": "system", "content": system_prompt})
    messages.extend(history)
    messages.append({"role": "user", "content": content})
    return messages


# ── Tool results ──────────────────────────────────────────────────────────


def _result_payload(result: ToolResult) -> Dict[str, Any]:
    if result.success:
        return result.result
    return {"error": result.error or "Tool call failed"}


def format_tool_results(results: Sequence[ToolResult]) -> str:
    """User message asking the model to summarise ``results``."""
    parts = [TOOL_RESULTS_HEADER]
    for result in results:
        parts.append(f"Tool: {result.tool_name}\n")
        parts.append(f"Result: {json.dumps(_result_payload(result), separators=(',', ':'))}\n\n")
    return "".join(parts)


def _format_number(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def describe_tool_result(result: ToolResult) -> str:
    """One natural-language sentence for a tool result."""
    if not result.success:
        return f"The {result.tool_name} tool failed: {result.error}"

    data = result.result
    if result.tool_name == "datetime":
        if "datetime" in data:
            return f"The current date and time is {data['datetime']}."
        if "timestamp" in data:
            return f"The current timestamp is {data['timestamp']}."
        date, time, tz = data.get("date", ""), data.get("time", ""), data.get("timezone", "")
        if tz:
            return f"It's currently {time} on {date} ({tz})."
        return f"It's currently {time} on {date}."

    if result.tool_name == "calculator":
        if "error" in data and "result" not in data:
            return f"The calculation failed: {data['error']}."
        return f"The answer is {_format_number(data.get('result', 0))}."

    return "Tool result:\n" + json.dumps(data, indent=4)
