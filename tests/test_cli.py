"""Tests for the command-line interface."""

import json

import httpx
import pytest
from click.testing import CliRunner

from chatagent import __version__
from chatagent.cli import main
from chatagent.core.agent import Agent
from chatagent.validation.config import Config


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def isolated(monkeypatch, tmp_path):
    """Run without any user or project configuration."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.setattr(Config, "GLOBAL_CONFIG_DIR", tmp_path / "global")
    return tmp_path


def _patch_backend(monkeypatch, replies):
    """Make the CLI's agent talk to a mock backend."""
    replies = list(replies)

    def handler(request):
        if request.url.path == "/api/show":
            return httpx.Response(200, json={"template": "{{ .Prompt }}"})
        return replies.pop(0)

    def make_agent(config):
        return Agent(config, http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    monkeypatch.setattr(main, "Agent", make_agent)


class TestCli:
    """Tests for the chatagent command."""

    def test_version(self, runner):
        """Test --version."""
        result = runner.invoke(main.cli, ["--version"])

        assert result.exit_code == 0
        assert f"ChatAgent v{__version__}" in result.output

    def test_mcp_test(self, runner):
        """Test the registry diagnostic."""
        result = runner.invoke(main.cli, ["--mcp-test"])

        assert result.exit_code == 0
        assert "Registered tools: calculator" in result.output
        assert '"result":8.0' in result.output
        assert '{"error":"Division by zero"}' in result.output
        assert '"tools":["calculator"]' in result.output
        assert "All MCP tests completed successfully!" in result.output

    def test_missing_config_file(self, runner, tmp_path):
        """Test that an explicit but missing config file exits with 1."""
        result = runner.invoke(main.cli, ["--config", str(tmp_path / "missing.yaml"), "-p", "hi"])

        assert result.exit_code == 1

    def test_single_prompt(self, runner, monkeypatch, isolated):
        """Test streaming a single answer."""
        reply = httpx.Response(200, text=json.dumps({"response": "Hello there!", "done": True}) + "\n")
        _patch_backend(monkeypatch, [reply])

        result = runner.invoke(main.cli, ["-p", "hi", "--no-tools"])

        assert result.exit_code == 0
        assert "Hello there!" in result.output

    def test_single_prompt_with_tool(self, runner, monkeypatch, isolated):
        """Test that a tool-backed answer is printed."""
        envelope = '{"tool_call": {"name": "calculator", "parameters": {"operation": "multiply", "a": 6, "b": 7}}}'
        reply = httpx.Response(200, text=json.dumps({"response": envelope, "done": True}) + "\n")
        _patch_backend(monkeypatch, [reply])

        result = runner.invoke(main.cli, ["-p", "What is 6 times 7?"])

        assert result.exit_code == 0
        assert "The answer is 42." in result.output

    def test_backend_failure_exits_nonzero(self, runner, monkeypatch, isolated):
        """Test that a failed request exits with 1."""
        _patch_backend(monkeypatch, [httpx.Response(500)])

        result = runner.invoke(main.cli, ["-p", "hi"])

        assert result.exit_code == 1
