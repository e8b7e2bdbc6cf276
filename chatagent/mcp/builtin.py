"""Built-in local tools: a calculator and a date/time reporter."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Callable, Dict, List, Optional

from chatagent.mcp.schema import LocalTool


def _number(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def calculate(params: Dict[str, Any]) -> Dict[str, Any]:
    """Apply ``operation`` to ``a`` and ``b``. Unknown operations yield 0."""
    operation = str(params.get("operation", ""))
    a = _number(params.get("a"))
    b = _number(params.get("b"))

    if operation == "add":
        result = a + b
    elif operation == "subtract":
        result = a - b
    elif operation == "multiply":
        result = a * b
    elif operation == "divide":
        if b == 0:
            return {"error": "Division by zero"}
        result = a / b
    else:
        result = 0.0

    return {"result": result, "operation": operation, "a": a, "b": b}


def current_datetime(params: Dict[str, Any], now: Optional[Callable[[], datetime]] = None) -> Dict[str, Any]:
    """
    Report the local date and time.

    ``format`` is one of ``short``, ``iso``, ``timestamp`` or ``long``
    (the default, also used for unknown values).
    """
    fmt = params.get("format") or "long"
    moment = (now or datetime.now)().astimezone()

    if fmt == "short":
        return {"date": moment.strftime("%Y-%m-%d"), "time": moment.strftime("%H:%M:%S")}
    if fmt == "iso":
        return {"datetime": moment.replace(microsecond=0).isoformat()}
    if fmt == "timestamp":
        return {"timestamp": int(moment.timestamp() * 1000)}

    hour = moment.hour % 12 or 12
    return {
        "date": f"{moment:%A}, {moment:%B} {moment.day}, {moment.year}",
        "time": f"{hour}:{moment:%M:%S} {'AM' if moment.hour < 12 else 'PM'}",
        "timezone": moment.tzname() or "",
    }


def calculator_tool() -> LocalTool:
    return LocalTool(
        name="calculator",
        description="Performs basic arithmetic operations (add, subtract, multiply, divide)",
        parameters={
            "operation": "string: add, subtract, multiply, or divide",
            "a": "number: first operand",
            "b": "number: second operand",
        },
        function=calculate,
    )


def datetime_tool() -> LocalTool:
    return LocalTool(
        name="datetime",
        description="Get current date and time in various formats",
        parameters={
            "format": "string: 'short', 'long', 'iso', or 'timestamp' (default: long)",
        },
        function=current_datetime,
    )


def builtin_tools() -> List[LocalTool]:
    """Every built-in tool, in registration order."""
    return [calculator_tool(), datetime_tool()]
