"""
ChatAgent core module.

Conversation history, tool-call detection, retry policy and the agent loop.
"""

from chatagent.core.agent import Agent, TaskResult
from chatagent.core.context import ConversationHistory, ConversationMessage, MessageRole, estimate_tokens
from chatagent.core.errors import ChatAgentError
from chatagent.core.retry import RetryPolicy

__all__ = [
    "Agent",
    "TaskResult",
    "ConversationHistory",
    "ConversationMessage",
    "MessageRole",
    "estimate_tokens",
    "ChatAgentError",
    "RetryPolicy",
]
