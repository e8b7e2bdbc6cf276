"""Exception hierarchy shared by the protocol client and the tool registry."""


class ChatAgentError(Exception):
    """Base class for all chatagent errors."""


class NetworkTransientError(ChatAgentError):
    """Retryable transport failure (timeout, refused, unreachable, transient)."""


class NetworkFatalError(ChatAgentError):
    """Non-retryable transport failure (bad URL, protocol or status error)."""


class ProtocolParseError(ChatAgentError):
    """A JSON or SSE payload could not be parsed."""


class ToolNotFoundError(ChatAgentError):
    """Raised when a tool name is not registered."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class ToolExecutionError(ChatAgentError):
    """A tool raised locally or its server reported an error."""


class RequestTimeoutError(ChatAgentError):
    """The absolute deadline of an outbound request was exceeded."""

    def __init__(self, seconds: float):
        super().__init__(f"Request timed out after {seconds:g} seconds")
        self.seconds = seconds
