"""
ChatAgent CLI - Chat with a local model that can call tools.

Run `chatagent -p "..."` for a single prompt, or `chatagent` for an
interactive session. Configuration lives in ~/.chatagent/ and .chatagent/.
"""

import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any, Dict, Optional

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.prompt import Prompt

from chatagent import __version__
from chatagent.core.agent import Agent, TaskResult
from chatagent.mcp.builtin import calculate, calculator_tool
from chatagent.mcp.registry import ToolRegistry
from chatagent.providers.base import SIMPLE_TOOLS
from chatagent.validation.config import Config, ConfigError

console = Console()
err_console = Console(stderr=True)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR"]
EXIT_COMMANDS = {"/exit", "/quit", "exit", "quit"}


def configure_logging(level: str) -> None:
    """Send library logs to stderr through rich."""
    logging.basicConfig(
        level=level.upper(),
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


def _compact(data: Any) -> str:
    return json.dumps(data, separators=(",", ":"))


def run_mcp_test(out: Console) -> int:
    """Exercise the tool registry without a backend. Returns the exit code."""
    out.print(Panel("MCP Diagnostic Test", border_style="blue"))
    registry = ToolRegistry()

    out.print("[bold][Test 1][/bold] Registering local tools...")
    ok = registry.register(calculator_tool())
    out.print(f"   Calculator tool registered: {'[green]✓[/green]' if ok else '[red]✗[/red]'}")

    out.print("\n[bold][Test 2][/bold] Listing registered tools...")
    out.print(f"   Registered tools: {', '.join(registry.registered_tools)}")

    out.print("\n[bold][Test 3][/bold] Testing calculator tool (5 + 3)...")
    outcomes: Dict[str, Any] = {}
    registry.add_completed_listener(lambda call_id, name, result: outcomes.update(result=result))
    registry.add_failed_listener(lambda call_id, name, error: outcomes.update(result={"error": error}))
    registry.dispatch("calculator", {"operation": "add", "a": 5, "b": 3})
    out.print(f"   Result: {_compact(outcomes.get('result'))}", markup=False)

    out.print("\n[bold][Test 4][/bold] Testing calculator error handling (10 / 0)...")
    out.print(f"   Result: {_compact(calculate({'operation': 'divide', 'a': 10, 'b': 0}))}", markup=False)

    out.print("\n[bold][Test 5][/bold] Building MCP message with tool context...")
    message = registry.build_message("user", "Calculate 5 + 3", ["calculator"])
    out.print(f"   Message: {_compact(message.to_json())}", markup=False)

    out.print("\n[bold][Test 6][/bold] Getting tools list for LLM...")
    out.print(f"   Tools: {json.dumps(registry.tools_for_llm(), indent=4)}", markup=False)

    out.print("\n[green]All MCP tests completed successfully![/green]")
    return 0


def _attach_printers(agent: Agent) -> None:
    """Stream tokens and tool progress to the console."""
    agent.client.add_token_listener(lambda token: console.print(token, end="", markup=False, highlight=False))
    agent.client.add_retry_listener(
        lambda attempt, limit: err_console.print(f"[yellow]Retrying ({attempt}/{limit})...[/yellow]")
    )
    agent.client.add_tool_call_listener(
        lambda name, params, call_id: console.print(
            f"\n[cyan]→ {name}[/cyan] [dim]{escape(_compact(params))}[/dim]", highlight=False
        )
    )
    agent.registry.add_completed_listener(
        lambda call_id, name, result: console.print(f"[green]✓ {name}[/green] [dim]{escape(_compact(result))}[/dim]")
    )
    agent.registry.add_failed_listener(
        lambda call_id, name, error: console.print(f"[red]✗ {name}: {escape(error)}[/red]")
    )


def _print_result(result: TaskResult) -> None:
    console.print()
    if result.completed:
        # Answers built from simple tool results never stream as tokens.
        if result.tool_results and all(r.tool_name in SIMPLE_TOOLS for r in result.tool_results):
            console.print(Panel(Markdown(result.output), title="Answer", border_style="green"))
    else:
        err_console.print(f"[red]Error: {escape(str(result.error))}[/red]")


async def _run_prompt(agent: Agent, prompt: str, context: str, use_tools: bool) -> int:
    try:
        result = await agent.run(prompt, context=context, use_tools=use_tools)
    finally:
        await agent.aclose()
    _print_result(result)
    return 0 if result.completed else 1


async def _repl(agent: Agent, context: str, use_tools: bool) -> int:
    console.print(f"[bold blue]ChatAgent v{__version__}[/bold blue] [dim]model: {agent.client.model}[/dim]")
    console.print("[dim]/clear resets the conversation, /exit quits[/dim]\n")
    try:
        while True:
            try:
                line = await asyncio.to_thread(Prompt.ask, "[bold green]>[/bold green]")
            except (EOFError, KeyboardInterrupt):
                break
            line = line.strip()
            if not line:
                continue
            if line in EXIT_COMMANDS:
                break
            if line == "/clear":
                agent.client.clear_conversation_history()
                console.print("[dim]Conversation cleared[/dim]")
                continue
            _print_result(await agent.run(line, context=context, use_tools=use_tools))
    finally:
        await agent.aclose()
    return 0


def _load_config(config_path: Optional[Path], model: Optional[str], api_url: Optional[str]) -> Config:
    config = Config.load(config_path)
    if model:
        config.set_model(model)
    if api_url:
        config.set_api_url(api_url)
    config.merged
    return config


@click.command()
@click.option("--version", "-v", is_flag=True, help="Show version")
@click.option("--prompt", "-p", help="Send a single prompt and exit")
@click.option("--context", default="", help="Extra context prepended to the prompt")
@click.option("--model", "-m", help="Override the configured model")
@click.option("--api-url", help="Override the backend generate endpoint")
@click.option("--config", "config_path", type=click.Path(path_type=Path), help="Project config file")
@click.option("--log-level", type=click.Choice(LOG_LEVELS, case_sensitive=False), default="WARNING",
              show_default=True, help="Logging verbosity")
@click.option("--no-tools", is_flag=True, help="Do not offer tools to the model")
@click.option("--mcp-test", is_flag=True, help="Run the MCP diagnostic and exit")
def cli(version: bool, prompt: Optional[str], context: str, model: Optional[str], api_url: Optional[str],
        config_path: Optional[Path], log_level: str, no_tools: bool, mcp_test: bool) -> None:
    """
    ChatAgent - chat with a local model that can call tools.

    \b
    Examples:
        chatagent                          # Interactive chat
        chatagent -p "What time is it?"    # Single prompt
        chatagent --mcp-test               # Tool registry self-test
    """
    if version:
        console.print(f"ChatAgent v{__version__}")
        return

    configure_logging(log_level)

    if mcp_test:
        sys.exit(run_mcp_test(console))

    try:
        config = _load_config(config_path, model, api_url)
    except ConfigError as e:
        err_console.print(f"[red]Error: {escape(str(e))}[/red]")
        sys.exit(1)

    agent = Agent(config)
    _attach_printers(agent)

    if prompt is not None:
        sys.exit(asyncio.run(_run_prompt(agent, prompt, context, not no_tools)))

    sys.exit(asyncio.run(_repl(agent, context, not no_tools)))


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
