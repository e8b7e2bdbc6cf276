"""Tests for the built-in local tools."""

import re
from datetime import datetime, timezone

import pytest

from chatagent.mcp.builtin import builtin_tools, calculate, calculator_tool, current_datetime

FIXED = datetime(2024, 3, 5, 14, 7, 9, 123456, tzinfo=timezone.utc)


class TestCalculator:
    """Tests for the calculator tool."""

    @pytest.mark.parametrize("operation,expected", [
        ("add", 8.0),
        ("subtract", 2.0),
        ("multiply", 15.0),
        ("divide", 5 / 3),
    ])
    def test_operations(self, operation, expected):
        """Test each supported operation."""
        result = calculate({"operation": operation, "a": 5, "b": 3})

        assert result == {"result": expected, "operation": operation, "a": 5.0, "b": 3.0}

    def test_division_by_zero(self):
        """Test that dividing by zero reports an error instead of a result."""
        assert calculate({"operation": "divide", "a": 10, "b": 0}) == {"error": "Division by zero"}

    def test_unknown_operation(self):
        """Test that an unknown operation yields zero."""
        assert calculate({"operation": "pow", "a": 2, "b": 8})["result"] == 0.0

    def test_numeric_strings(self):
        """Test that operands given as strings are converted."""
        assert calculate({"operation": "add", "a": "1.5", "b": "2"})["result"] == 3.5

    def test_tool_definition(self):
        """Test the registered calculator definition."""
        tool = calculator_tool()

        assert tool.is_valid()
        assert set(tool.parameters) == {"operation", "a", "b"}
        assert tool.invoke({"operation": "add", "a": 1, "b": 1})["result"] == 2.0


class TestDatetime:
    """Tests for the datetime tool."""

    def test_timestamp(self):
        """Test that timestamps are epoch milliseconds."""
        result = current_datetime({"format": "timestamp"}, now=lambda: FIXED)

        assert result == {"timestamp": int(FIXED.timestamp() * 1000)}

    def test_short(self):
        """Test the short date and time format."""
        result = current_datetime({"format": "short"}, now=lambda: FIXED)

        assert re.fullmatch(r"\d{4}-\d{2}-\d{2}", result["date"])
        assert re.fullmatch(r"\d{2}:\d{2}:\d{2}", result["time"])

    def test_iso_has_no_microseconds(self):
        """Test that ISO output is truncated to seconds."""
        result = current_datetime({"format": "iso"}, now=lambda: FIXED)

        assert "." not in result["datetime"]
        assert datetime.fromisoformat(result["datetime"]).timestamp() == int(FIXED.timestamp())

    def test_long_is_default(self):
        """Test that missing and unknown formats produce the long form."""
        default = current_datetime({}, now=lambda: FIXED)
        unknown = current_datetime({"format": "weird"}, now=lambda: FIXED)

        assert default == unknown
        assert re.fullmatch(r"\w+, \w+ \d{1,2}, \d{4}", default["date"])
        assert re.fullmatch(r"\d{1,2}:\d{2}:\d{2} (AM|PM)", default["time"])
        assert "timezone" in default

    def test_builtin_order(self):
        """Test that built-ins are registered calculator first."""
        assert [tool.name for tool in builtin_tools()] == ["calculator", "datetime"]
