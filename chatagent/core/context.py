"""
Conversation context management.

Manages:
- The ordered conversation history sent with native chat requests
- Token estimation (character heuristic, no tokenizer dependency)
- Pruning the history to fit the model's context window
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, List, Optional

logger = logging.getLogger(__name__)

# Share of the context window reserved for input; the rest is left for the reply.
INPUT_WINDOW_RATIO = 0.8
# Estimated cost of the tool definitions sent alongside the messages.
TOOLS_OVERHEAD_TOKENS = 200
# Estimated cost of the role and JSON framing around each message.
MESSAGE_OVERHEAD_TOKENS = 20


def estimate_tokens(text: str) -> int:
    """
    Rough token estimate for English text and code.

    Roughly 4 characters per token, plus one token per ten spaces/newlines
    to account for word boundaries.
    """
    if not text:
        return 0
    boundaries = text.count(" ") + text.count("\n")
    return len(text) // 4 + boundaries // 10


class MessageRole(str, Enum):
    """Roles a conversation message can take."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    # Tool output fed back to the model; sent with the "user" wire role
    # because Ollama does not reliably accept a "tool" role.
    TOOL_RESULT = "tool_result"

    @property
    def wire_role(self) -> str:
        return "user" if self is MessageRole.TOOL_RESULT else self.value


@dataclass(frozen=True)
class ConversationMessage:
    """One immutable entry of the conversation."""

    role: MessageRole
    content: str = ""
    tool_calls: Optional[List[Dict[str, Any]]] = None

    def to_wire(self) -> Dict[str, Any]:
        """Message as sent in an ``/api/chat`` ``messages`` array."""
        data: Dict[str, Any] = {"role": self.role.wire_role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = list(self.tool_calls)
        return data

    @property
    def tokens(self) -> int:
        return estimate_tokens(self.content) + MESSAGE_OVERHEAD_TOKENS


@dataclass
class ConversationHistory:
    """
    Append-only, oldest-first conversation history.

    The only ways to shrink it are ``clear()`` (explicit reset) and
    ``prune()``, which returns a trimmed copy without touching the original.
    """

    _messages: List[ConversationMessage] = field(default_factory=list)

    def append(self, message: ConversationMessage) -> None:
        self._messages.append(message)

    def add(self, role: MessageRole, content: str, tool_calls: Optional[List[Dict[str, Any]]] = None) -> ConversationMessage:
        message = ConversationMessage(role=role, content=content, tool_calls=tool_calls)
        self.append(message)
        return message

    def clear(self) -> None:
        self._messages.clear()

    @property
    def messages(self) -> List[ConversationMessage]:
        return list(self._messages)

    def __len__(self) -> int:
        return len(self._messages)

    def __iter__(self) -> Iterator[ConversationMessage]:
        return iter(list(self._messages))

    # ── Pruning ───────────────────────────────────────────────────────────

    @staticmethod
    def token_budget(context_window: int, system_prompt: str, current_message: str) -> int:
        """Tokens left for history once the fixed parts of a request are counted."""
        max_input = int(context_window * INPUT_WINDOW_RATIO)
        return (
            max_input
            - estimate_tokens(system_prompt)
            - estimate_tokens(current_message)
            - TOOLS_OVERHEAD_TOKENS
        )

    def prune(self, context_window: int, system_prompt: str, current_message: str) -> List[ConversationMessage]:
        """
        Return the newest messages that fit the token budget, oldest-first.

        Walks the history from newest to oldest and stops at the first
        message that would overflow the budget; everything older is dropped.
        """
        budget = self.token_budget(context_window, system_prompt, current_message)
        logger.debug(
            "Context budget: window=%d, remaining=%d tokens for %d messages",
            context_window, budget, len(self._messages),
        )
        if budget <= 0:
            logger.warning(
                "Current message exceeds context budget (message tokens: %d, window: %d)",
                estimate_tokens(current_message), context_window,
            )
            return []

        kept: List[ConversationMessage] = []
        used = 0
        for message in reversed(self._messages):
            cost = message.tokens
            if used + cost > budget:
                logger.debug("Stopping history pruning: %d + %d > %d", used, cost, budget)
                break
            kept.append(message)
            used += cost
        kept.reverse()

        dropped = len(self._messages) - len(kept)
        if dropped:
            logger.info(
                "Pruned message history: kept %d/%d messages (%d tokens), dropped %d oldest",
                len(kept), len(self._messages), used, dropped,
            )
        return kept
