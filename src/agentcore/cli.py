"""Terminal host: runs one task in a workspace and talks to the user via rich."""

import argparse
import asyncio
import signal
import sys
from pathlib import Path
from typing import Optional

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.history import FileHistory
from prompt_toolkit.key_binding import KeyBindings
from prompt_toolkit.keys import Keys
from rich.console import Console
from rich.markdown import Markdown
from rich.panel import Panel
from rich.prompt import Confirm, Prompt

from .config import EngineConfig
from .errors import ConfigError
from .host import AskResponse, TaskHost
from .logger import get_logger, init_logging
from .task import TaskController, TaskState

log = get_logger("cli")

_SAY_STYLES = {
    "error": "bold red",
    "tool": "cyan",
    "user_feedback": "magenta",
    "checkpoint_saved": "dim",
    "condense": "yellow",
    "api_req_started": "dim",
}


def create_prompt_session(history_file: Path) -> PromptSession:
    """Prompt with history. Enter submits; Ctrl+J or Escape+Enter inserts a newline."""
    bindings = KeyBindings()

    @bindings.add(Keys.Escape, Keys.Enter)
    def _(event):
        event.current_buffer.insert_text('\n')

    @bindings.add('c-j')
    def _(event):
        event.current_buffer.insert_text('\n')

    history_file.parent.mkdir(parents=True, exist_ok=True)
    return PromptSession(
        history=FileHistory(str(history_file)),
        auto_suggest=AutoSuggestFromHistory(),
        key_bindings=bindings,
        multiline=False,
    )


class ConsoleHost(TaskHost):
    """Renders says to the console and answers asks with prompts."""

    def __init__(self, console: Optional[Console] = None, auto_approve: bool = False,
                 session: Optional[PromptSession] = None):
        self.console = console or Console()
        self.auto_approve = auto_approve
        self.session = session

    async def say(self, kind: str, text: str = "", partial: bool = False) -> None:
        if partial or not text:
            return
        if kind == "text":
            self.console.print(Markdown(text))
        elif kind == "completion_result":
            self.console.print(Panel(Markdown(text), title="Result", border_style="green"))
        elif kind == "api_req_started":
            self.console.print(f"[dim]… {text}[/dim]")
        else:
            style = _SAY_STYLES.get(kind, "")
            self.console.print(f"[{style}]{text}[/{style}]" if style else text, highlight=False)

    async def _prompt(self, fn, *args, **kwargs):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, lambda: fn(*args, console=self.console, **kwargs))

    async def ask(self, kind: str, text: str = "") -> AskResponse:
        if kind in ("tool", "command", "checkpoint_restore"):
            self.console.print(Panel(text, title=f"Approve {kind}?", border_style="yellow"))
            if self.auto_approve and kind != "checkpoint_restore":
                return AskResponse(response="yes")
            answer = (await self._prompt(Prompt.ask, "y = yes, n = no, anything else = deny with feedback",
                                         default="y")).strip()
            if answer.lower() in ("y", "yes"):
                return AskResponse(response="yes")
            if answer.lower() in ("n", "no", ""):
                return AskResponse(response="no")
            return AskResponse(response="message", text=answer)

        if kind == "api_req_failed":
            retry = await self._prompt(Confirm.ask, f"[red]{text}[/red]", default=True)
            return AskResponse(response="yes" if retry else "no")

        # followup, mistake_limit_reached
        self.console.print(f"[bold]{text}[/bold]")
        if self.session is not None:
            answer = (await self.session.prompt_async("reply (empty to finish)> ")).strip()
        else:
            answer = (await self._prompt(Prompt.ask, "Reply (empty to finish)", default="")).strip()
        if not answer:
            return AskResponse(response="no")
        return AskResponse(response="message", text=answer)


async def run_task(controller: TaskController, message: str) -> TaskState:
    loop = asyncio.get_running_loop()
    try:
        loop.add_signal_handler(signal.SIGINT, controller.abort)
    except (NotImplementedError, RuntimeError):
        pass  # Windows: Ctrl+C arrives as KeyboardInterrupt instead
    return await controller.start(message)


def main():
    """Main CLI entry point."""
    parser = argparse.ArgumentParser(
        description="Run a coding-agent task in a workspace",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  agentcore . -m "Fix the failing test in tests/test_api.py"
  agentcore /path/to/project --provider qwen --model qwen-max -m "Add type hints"
  echo "Explain main.py" | agentcore .
        """,
    )
    parser.add_argument("workspace", nargs="?", default=".",
                        help="Workspace directory (default: current directory)")
    parser.add_argument("-m", "--message", type=str, help="Task to run")
    parser.add_argument("-e", "--env", type=str, default=".env", help="Path to .env file (default: .env)")
    parser.add_argument("--provider", choices=["openai", "qwen", "aiproxy", "dify"], help="Backend provider")
    parser.add_argument("--model", type=str, help="Model name")
    parser.add_argument("--auto-approve", action="store_true",
                        help="Approve edits and commands without asking")
    args = parser.parse_args()

    console = Console()
    config = EngineConfig.from_env(Path(args.env))
    config.workspace_path = Path(args.workspace).resolve()
    interactive = sys.stdin.isatty()
    session = create_prompt_session(config.workspace_path / ".agentcore" / "history") if interactive else None
    if args.provider:
        config.provider = args.provider
    if args.model:
        config.model = args.model
    if args.auto_approve:
        config.auto_approve = ["edit", "command"]

    try:
        config.validate()
    except ConfigError as e:
        console.print(f"[red]Configuration error: {e}[/red]")
        sys.exit(1)

    if args.message:
        message = args.message
    elif not interactive:
        message = sys.stdin.read().strip()
    else:
        message = session.prompt("task> ").strip()
    if not message:
        console.print("[red]Error: no task given. Use -m or pipe input.[/red]")
        sys.exit(1)

    init_logging(config.workspace_path)
    log.info("cli start: workspace=%s provider=%s model=%s", config.workspace_path, config.provider, config.model)

    host = ConsoleHost(console, auto_approve=args.auto_approve, session=session)
    controller = TaskController(config, host=host)
    try:
        state = asyncio.run(run_task(controller, message))
    except KeyboardInterrupt:
        state = TaskState.ABORTED

    summary = controller.cost_tracker.get_summary()
    console.print(Panel(summary.format_human(), title="Cost", border_style="cyan"))
    console.print(f"[dim]Task {controller.task_id}: {state.value}[/dim]")
    sys.exit(0 if state == TaskState.COMPLETED else 1)


if __name__ == "__main__":
    main()
