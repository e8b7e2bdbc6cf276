"""
Streaming protocol client for Ollama-compatible backends.

The client detects once whether the model accepts native tool definitions,
queues sends until it knows, streams newline-delimited JSON responses,
detects tool calls, retries transient network failures and hands tool
results back to the model.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence

import httpx
from tenacity import RetryCallState

from chatagent.core.context import ConversationHistory, ConversationMessage, MessageRole
from chatagent.core.retry import RetryPolicy, classify_error
from chatagent.core.tool_calls import DetectedToolCall, find_prompt_tool_call, parse_native_tool_calls
from chatagent.mcp.schema import ToolResult
from chatagent.providers.base import (
    CHAT_PATH,
    SHOW_PATH,
    SIMPLE_TOOLS,
    ModelCapabilities,
    PendingRequest,
    ToolCallFormat,
    build_chat_request,
    build_generate_request,
    build_prompt_tools_request,
    chat_messages,
    derive_endpoint,
    describe_tool_result,
    format_tool_results,
)
from chatagent.validation.config import LLMConfig

logger = logging.getLogger(__name__)

TokenListener = Callable[[str], None]
ResponseListener = Callable[[str], None]
ErrorListener = Callable[[str], None]
RetryListener = Callable[[int, int], None]
ToolCallListener = Callable[[str, Dict[str, Any], str], None]
CapabilitiesListener = Callable[[str, Dict[str, Any]], None]


class ClientState(str, Enum):
    UNINITIALIZED = "uninitialized"
    DETECTING_CAPABILITIES = "detecting_capabilities"
    READY = "ready"


@dataclass
class TurnResult:
    """Outcome of one request: final text, requested tool calls, or an error."""

    text: str = ""
    tool_calls: List[DetectedToolCall] = field(default_factory=list)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_tool_calls(self) -> bool:
        return bool(self.tool_calls)


class _StreamTurn:
    """Per-attempt stream state: line buffer, text so far, native tool calls."""

    def __init__(self, client: "ProtocolClient", tools_enabled: bool,
                 tools: Sequence[Dict[str, Any]] = ()):
        self._client = client
        self.tools_enabled = tools_enabled
        self.tools = list(tools)
        self.buffer = ""
        self.text = ""
        self.tool_calls: List[DetectedToolCall] = []
        self.native_tool_call_seen = False
        self.error: Optional[str] = None

    def feed(self, data: str) -> None:
        self.buffer += data
        *lines, self.buffer = self.buffer.split("\n")
        for line in lines:
            if line.strip():
                self.process_line(line.strip())

    def finish(self) -> None:
        remainder, self.buffer = self.buffer.strip(), ""
        if remainder:
            self.process_line(remainder)

    def process_line(self, line: str) -> None:
        try:
            chunk = json.loads(line)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse streaming chunk: %s - Line: %s", exc, line[:100])
            return
        if not isinstance(chunk, dict):
            return

        if "error" in chunk:
            self.error = str(chunk["error"])
            logger.error("Streaming error: %s", self.error)
            self._client._emit_error(self.error)
            return

        if not self.text:
            logger.debug("Chunk received: %s", line[:200])

        message = chunk.get("message")
        if isinstance(message, dict):
            if self.tools_enabled and self._handle_native_tool_calls(message):
                return
            self._append(message.get("content"))
        elif "response" in chunk:
            self._append(chunk.get("response"))
        else:
            logger.debug("Chunk has no 'response' or 'message' field. Keys: %s", ", ".join(chunk))

        if chunk.get("done"):
            logger.info("Streaming complete. Total response length: %d chars", len(self.text))
            if "total_duration" in chunk:
                logger.debug("Total duration: %.1f ms", chunk["total_duration"] / 1_000_000)
            if "prompt_eval_count" in chunk:
                logger.debug("Prompt tokens: %s", chunk["prompt_eval_count"])
            if "eval_count" in chunk:
                logger.debug("Response tokens: %s", chunk["eval_count"])

    def _append(self, token: Any) -> None:
        if isinstance(token, str) and token:
            self.text += token
            self._client._notify(self._client._token_listeners, token)

    def _handle_native_tool_calls(self, message: Dict[str, Any]) -> bool:
        raw_calls = message.get("tool_calls")
        if not isinstance(raw_calls, list) or not raw_calls:
            return False

        calls = parse_native_tool_calls(message)
        if not calls:
            logger.warning("Ignoring %d malformed native tool calls", len(raw_calls))
            return False

        logger.info("Processing %d native tool calls", len(calls))
        content = message.get("content")
        self._client._history.add(
            MessageRole.ASSISTANT,
            content if isinstance(content, str) else "",
            tool_calls=raw_calls,
        )
        for call in calls:
            logger.info("Native tool call: %s (ID: %s)", call.name, call.call_id)
            logger.debug("Tool arguments: %s", json.dumps(call.parameters, separators=(",", ":")))
            self.tool_calls.append(call)
            self._client._emit_tool_call(call)
        self.native_tool_call_seen = True
        return True


class ProtocolClient:
    """
    Conversation with one model on an Ollama-compatible backend.

    Lifecycle: ``UNINITIALIZED -> DETECTING_CAPABILITIES -> READY``. Sends
    made before ``READY`` are queued and replayed in order once detection
    finishes, whether it succeeded or not. Every send returns a
    :class:`TurnResult` and also reports through the listeners; network
    failures never raise out of a send.
    """

    def __init__(
        self,
        llm: Optional[LLMConfig] = None,
        client: Optional[httpx.AsyncClient] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.llm = llm or LLMConfig()
        self._api_url = self.llm.api_url
        self._model = self.llm.model
        self.retry_policy = RetryPolicy(self.llm.max_retries, self.llm.retry_delay_ms)
        self.request_timeout = self.llm.request_timeout

        self._client = client or httpx.AsyncClient(timeout=httpx.Timeout(30.0, read=None))
        self._owns_client = client is None
        self._sleep = sleep

        self._state = ClientState.UNINITIALIZED
        self._capabilities = ModelCapabilities()
        self._detection: Optional[asyncio.Task] = None
        self._pending: List[PendingRequest] = []
        self._history = ConversationHistory()
        self._last_request: Optional[bytes] = None

        self._token_listeners: List[TokenListener] = []
        self._response_listeners: List[ResponseListener] = []
        self._error_listeners: List[ErrorListener] = []
        self._retry_listeners: List[RetryListener] = []
        self._tool_call_listeners: List[ToolCallListener] = []
        self._capabilities_listeners: List[CapabilitiesListener] = []

        logger.info(
            "ProtocolClient initialized with model: %s, API: %s (max retries: %d)",
            self._model, self._api_url, self.retry_policy.max_retries,
        )

    # ── Listeners ─────────────────────────────────────────────────────────

    def add_token_listener(self, listener: TokenListener) -> None:
        self._token_listeners.append(listener)

    def add_response_listener(self, listener: ResponseListener) -> None:
        self._response_listeners.append(listener)

    def add_error_listener(self, listener: ErrorListener) -> None:
        self._error_listeners.append(listener)

    def add_retry_listener(self, listener: RetryListener) -> None:
        self._retry_listeners.append(listener)

    def add_tool_call_listener(self, listener: ToolCallListener) -> None:
        self._tool_call_listeners.append(listener)

    def add_capabilities_listener(self, listener: CapabilitiesListener) -> None:
        self._capabilities_listeners.append(listener)

    @staticmethod
    def _notify(listeners: list, *args) -> None:
        for listener in list(listeners):
            try:
                listener(*args)
            except Exception:
                logger.exception("Client listener %r failed", listener)

    def _emit_error(self, message: str) -> None:
        self._notify(self._error_listeners, message)

    def _emit_tool_call(self, call: DetectedToolCall) -> None:
        self._notify(self._tool_call_listeners, call.name, call.parameters, call.call_id)

    # ── Settings ──────────────────────────────────────────────────────────

    @property
    def api_url(self) -> str:
        return self._api_url

    def set_api_url(self, url: str) -> None:
        self._api_url = url
        logger.debug("API URL set to: %s", url)

    @property
    def model(self) -> str:
        return self._model

    def set_model(self, model: str) -> None:
        self._model = model
        logger.debug("Model set to: %s", model)

    @property
    def max_retries(self) -> int:
        return self.retry_policy.max_retries

    @max_retries.setter
    def max_retries(self, value: int) -> None:
        self.retry_policy.max_retries = max(0, value)

    @property
    def retry_delay_ms(self) -> int:
        return self.retry_policy.base_delay_ms

    @retry_delay_ms.setter
    def retry_delay_ms(self, value: int) -> None:
        self.retry_policy.base_delay_ms = max(0, value)

    @property
    def state(self) -> ClientState:
        return self._state

    @property
    def capabilities(self) -> ModelCapabilities:
        return self._capabilities

    @property
    def tool_call_format(self) -> ToolCallFormat:
        return self._capabilities.format

    @property
    def history(self) -> List[ConversationMessage]:
        return self._history.messages

    @property
    def last_request(self) -> Optional[bytes]:
        """Serialized body of the most recent backend request."""
        return self._last_request

    def clear_conversation_history(self) -> None:
        self._history.clear()
        logger.info("Conversation history cleared")

    async def aclose(self) -> None:
        if self._detection is not None and not self._detection.done():
            self._detection.cancel()
        if self._owns_client:
            await self._client.aclose()

    # ── Capability detection ──────────────────────────────────────────────

    async def detect_capabilities(self) -> ModelCapabilities:
        """Query the model once; later calls return the cached result."""
        if self._state is ClientState.READY:
            return self._capabilities
        if self._detection is None:
            self._state = ClientState.DETECTING_CAPABILITIES
            self._detection = asyncio.get_running_loop().create_task(self._run_detection())
        await asyncio.shield(self._detection)
        return self._capabilities

    async def _run_detection(self) -> None:
        try:
            self._capabilities = await self._query_capabilities()
        finally:
            self._state = ClientState.READY
            self._notify(
                self._capabilities_listeners,
                self._capabilities.format.value,
                self._capabilities.model_info,
            )
        await self._flush_pending()

    async def _query_capabilities(self) -> ModelCapabilities:
        try:
            show_url = derive_endpoint(self._api_url, SHOW_PATH)
        except httpx.InvalidURL:
            logger.error("Invalid API URL for model capabilities query: %s", self._api_url)
            return ModelCapabilities()

        logger.info("Querying model capabilities from: %s for model: %s", show_url, self._model)
        try:
            response = await self._client.post(
                show_url, json={"name": self._model}, timeout=self.request_timeout,
            )
            response.raise_for_status()
            info = response.json()
        except httpx.HTTPError as exc:
            logger.warning("Failed to query model capabilities: %s", exc)
            return ModelCapabilities()
        except ValueError as exc:
            logger.error("Failed to parse model info: %s", exc)
            return ModelCapabilities()

        if not isinstance(info, dict):
            logger.error("Model info response is not a JSON object")
            return ModelCapabilities()

        logger.debug("Modelfile: %s", str(info.get("modelfile", ""))[:200])
        logger.debug("Template: %s", str(info.get("template", ""))[:200])
        capabilities = ModelCapabilities.from_model_info(info)
        if capabilities.is_native:
            logger.info("Model supports NATIVE tool calling format")
        else:
            logger.info("Model uses PROMPT-BASED tool calling format (system prompt injection)")
        return capabilities

    async def _flush_pending(self) -> None:
        if not self._pending:
            logger.debug("No pending requests to process")
            return

        requests, self._pending = self._pending, []
        logger.info("Processing %d pending requests after capability detection", len(requests))
        for request in requests:
            try:
                if request.with_tools:
                    result = await self._send_with_tools(request.prompt, request.tools or [], request.context)
                else:
                    result = await self._send_plain(request.prompt, request.context)
            except Exception as exc:
                if request.future is not None and not request.future.done():
                    request.future.set_exception(exc)
                continue
            if request.future is not None and not request.future.done():
                request.future.set_result(result)

    async def _enqueue(self, request: PendingRequest) -> TurnResult:
        request.future = asyncio.get_running_loop().create_future()
        self._pending.append(request)
        if self._detection is None:
            self._state = ClientState.DETECTING_CAPABILITIES
            self._detection = asyncio.get_running_loop().create_task(self._run_detection())
        return await request.future

    # ── Sending ───────────────────────────────────────────────────────────

    def _reject_empty(self, prompt: str) -> Optional[TurnResult]:
        if prompt:
            return None
        logger.warning("Attempted to send empty prompt")
        error = "Prompt cannot be empty"
        self._emit_error(error)
        return TurnResult(error=error)

    @staticmethod
    def _full_prompt(prompt: str, context: str) -> str:
        if not context:
            return prompt
        logger.debug("Added context (length: %d chars)", len(context))
        return f"Context: {context}\n\nPrompt: {prompt}"

    async def send_prompt(self, prompt: str, context: str = "") -> TurnResult:
        """Send a prompt without tools."""
        rejected = self._reject_empty(prompt)
        if rejected is not None:
            return rejected
        if self._state is not ClientState.READY:
            logger.info("Queueing prompt until model capabilities are detected")
            return await self._enqueue(PendingRequest(prompt=prompt, context=context))
        return await self._send_plain(prompt, context)

    async def send_prompt_with_tools(self, prompt: str, tools: Sequence[Dict[str, Any]],
                                     context: str = "") -> TurnResult:
        """Send a prompt together with a tool catalogue."""
        rejected = self._reject_empty(prompt)
        if rejected is not None:
            return rejected
        if self._state is not ClientState.READY:
            logger.info("Queueing prompt with tools until model capabilities are detected")
            return await self._enqueue(PendingRequest(prompt=prompt, context=context, tools=list(tools)))
        return await self._send_with_tools(prompt, list(tools), context)

    async def _send_plain(self, prompt: str, context: str) -> TurnResult:
        logger.info("Sending prompt to LLM (length: %d chars)", len(prompt))
        logger.debug("Prompt: %s", prompt[:100])
        body = build_generate_request(
            self._model, self._full_prompt(prompt, context), self.llm.system_prompt, self.llm,
        )
        return await self._run_turn(self._api_url, body, tools_enabled=False, chat=False)

    async def _send_with_tools(self, prompt: str, tools: List[Dict[str, Any]], context: str) -> TurnResult:
        logger.info("Sending prompt with %d tools to LLM (length: %d chars)", len(tools), len(prompt))
        logger.debug("Prompt: %s", prompt[:100])
        full_prompt = self._full_prompt(prompt, context)
        system_prompt = self.llm.system_prompt

        if not self._capabilities.is_native:
            logger.info("Using PROMPT-BASED tool calling format (/api/generate)")
            body = build_prompt_tools_request(self._model, full_prompt, system_prompt, tools, self.llm)
            return await self._run_turn(self._api_url, body, tools_enabled=True, chat=False, tools=tools)

        logger.info("Using NATIVE tool calling format (/api/chat)")
        history = self._pruned_history(system_prompt, full_prompt)
        body = build_chat_request(
            self._model, chat_messages(system_prompt, history, full_prompt), self.llm, tools,
        )
        # Recorded after building so the current message is not sent twice.
        self._history.add(MessageRole.USER, full_prompt)
        return await self._run_turn(self._chat_url(), body, tools_enabled=True, chat=True, tools=tools)

    def _chat_url(self) -> str:
        return derive_endpoint(self._api_url, CHAT_PATH)

    def _pruned_history(self, system_prompt: str, current_message: str) -> List[Dict[str, Any]]:
        kept = self._history.prune(self.llm.context_window_size, system_prompt, current_message)
        return [message.to_wire() for message in kept]

    # ── Tool results ──────────────────────────────────────────────────────

    async def send_tool_results(self, original_prompt: str, results: Sequence[ToolResult]) -> TurnResult:
        """
        Turn tool results into a final answer.

        Results from the built-in simple tools are described locally. Any
        other result is sent back to the model: through ``/api/chat`` with
        the conversation history for native models, or as a fresh generate
        request carrying the original prompt for prompt-based ones.
        """
        logger.info("Processing tool results (%d results)", len(results))
        if not results:
            error = "No tool results to process"
            self._emit_error(error)
            return TurnResult(error=error)

        needs_model = any(result.tool_name not in SIMPLE_TOOLS for result in results)
        if not needs_model:
            text = "\n".join(describe_tool_result(result) for result in results)
            logger.info("Formatted natural response: %s", text[:100])
            self._notify(self._response_listeners, text)
            return TurnResult(text=text)

        content = format_tool_results(results)
        system_prompt = self.llm.system_prompt

        if self._capabilities.is_native:
            logger.info("Complex tool results detected, sending back to LLM for processing")
            history = self._pruned_history(system_prompt, content)
            body = build_chat_request(self._model, chat_messages(system_prompt, history, content), self.llm)
            self._history.add(MessageRole.TOOL_RESULT, content)
            return await self._run_turn(self._chat_url(), body, tools_enabled=True, chat=True)

        logger.info("Complex tool results detected, asking LLM to summarise them")
        prompt = f"{original_prompt}\n\n{content}" if original_prompt else content
        body = build_generate_request(self._model, prompt, system_prompt, self.llm)
        return await self._run_turn(self._api_url, body, tools_enabled=False, chat=False)

    # ── Transport ─────────────────────────────────────────────────────────

    async def _run_turn(self, url: str, body: Dict[str, Any], tools_enabled: bool, chat: bool,
                        tools: Sequence[Dict[str, Any]] = ()) -> TurnResult:
        """POST ``body``, retrying transient failures, and interpret the stream."""
        try:
            httpx.URL(url)
        except httpx.InvalidURL:
            error = f"Invalid API URL: {url}"
            logger.error(error)
            self._emit_error(error)
            return TurnResult(error=error)

        payload = json.dumps(body, separators=(",", ":")).encode("utf-8")
        self._last_request = payload

        try:
            async for attempt in self.retry_policy.retrying(self._sleep, self._before_retry):
                with attempt:
                    turn = _StreamTurn(self, tools_enabled, tools)
                    logger.debug("Sending POST request to: %s (attempt %d/%d)",
                                 url, attempt.retry_state.attempt_number, self.max_retries + 1)
                    await asyncio.wait_for(self._stream(url, payload, turn), self.request_timeout)
        except asyncio.TimeoutError:
            logger.error("Request timed out after %g seconds", self.request_timeout)
            error = "Request timed out"
            self._emit_error(error)
            return TurnResult(error=error)
        except httpx.HTTPError as exc:
            classified = classify_error(exc)
            logger.error("%s - Max retries reached or non-retryable error", classified)
            self._emit_error(str(classified))
            return TurnResult(error=str(classified))

        return self._finish_turn(turn, chat)

    def _before_retry(self, retry_state: RetryCallState) -> None:
        retries = retry_state.attempt_number
        delay = retry_state.next_action.sleep if retry_state.next_action else 0.0
        logger.warning(
            "%s - Retrying in %dms (attempt %d/%d)",
            classify_error(retry_state.outcome.exception()), delay * 1000, retries, self.max_retries,
        )
        self._notify(self._retry_listeners, retries, self.max_retries)

    async def _stream(self, url: str, payload: bytes, turn: _StreamTurn) -> None:
        headers = {"Content-Type": "application/json"}
        async with self._client.stream("POST", url, content=payload, headers=headers) as response:
            response.raise_for_status()
            async for text in response.aiter_text():
                turn.feed(text)
        turn.finish()

    def _finish_turn(self, turn: _StreamTurn, chat: bool) -> TurnResult:
        if turn.error is not None:
            return TurnResult(text=turn.text, error=turn.error)

        if turn.native_tool_call_seen:
            logger.debug("Native tool call already handled, skipping prompt-based processing")
            return TurnResult(text=turn.text, tool_calls=turn.tool_calls)

        if not turn.text:
            logger.warning("Streaming finished but no response received")
            error = "No response received from LLM"
            self._emit_error(error)
            return TurnResult(error=error)

        logger.info("Streaming finished. Full response: %d chars", len(turn.text))
        if turn.tools_enabled:
            call = find_prompt_tool_call(turn.text, turn.tools)
            if call is not None:
                logger.info("Tool call detected: %s (ID: %s)", call.name, call.call_id)
                self._emit_tool_call(call)
                return TurnResult(text=turn.text, tool_calls=[call])

        if chat:
            self._history.add(MessageRole.ASSISTANT, turn.text)
            logger.debug("Saved assistant response to message history")
        self._notify(self._response_listeners, turn.text)
        return TurnResult(text=turn.text)
