"""System prompt with XML tool formatting, built from the tool registry."""

import os
import platform
from pathlib import Path
from typing import Iterable, Optional

from .logger import get_logger
from .tool_registry import TOOL_DEFS, ToolDef

_log = get_logger("prompts")

RULES_FILE = "agent.md"


def load_agent_rules(workspace_path: str) -> str:
    """Project rules from ``agent.md`` at the workspace root, or ''."""
    path = Path(workspace_path) / RULES_FILE
    if not path.exists():
        return ""
    try:
        content = path.read_text(encoding="utf-8").strip()
    except OSError as e:
        _log.warning("Failed to read %s: %s", RULES_FILE, e)
        return ""
    if content:
        _log.debug("Loaded %s (%d chars) from %s", RULES_FILE, len(content), workspace_path)
    return content


def format_tool(tool: ToolDef) -> str:
    lines = [f"## {tool.name.value}", tool.description, "Parameters:"]
    for p in tool.params:
        flag = "required" if p.required else "optional"
        lines.append(f"- {p.name}: ({flag}) {p.description}")
    lines.append("Usage:")
    lines.append(f"<{tool.name.value}>")
    for p in tool.params:
        if p.required:
            lines.append(f"<{p.name}>...</{p.name}>")
    lines.append(f"</{tool.name.value}>")
    return "\n".join(lines)


def get_system_prompt(workspace_path: str, shell: Optional[str] = None,
                      groups: Optional[Iterable[str]] = None) -> str:
    """Build the system prompt. ``groups`` limits which tool groups are described."""
    if platform.system() == "Windows":
        shell = shell or "PowerShell"
    else:
        shell = shell or os.path.basename(os.environ.get("SHELL", "bash"))

    wanted = None if groups is None else set(groups) | {"always"}
    tools = "\n\n".join(format_tool(t) for t in TOOL_DEFS if wanted is None or t.group in wanted)
    rules = load_agent_rules(workspace_path)

    prompt = f'''You are a highly skilled software engineer working inside the user's workspace.

====

TOOL USE

Tools use XML tags. Use exactly one tool per message and place it at the end of the message. \
You receive the result in the next message; never assume the outcome of a tool call.

<tool_name>
<parameter_name>value</parameter_name>
</tool_name>

# Tools

{tools}

====

RULES

- The workspace root is {workspace_path}. Paths are relative to it.
- Read a file before editing it. Prefer apply_diff or edit_file over rewriting whole files.
- write_to_file must contain the COMPLETE file content.
- Ask with ask_followup_question only when the information cannot be found with the tools.
- When the task is done, call attempt_completion with a summary of the result. Do not end the result with a question.

====

SYSTEM INFORMATION

Operating System: {platform.system()} {platform.release()}
Default Shell: {shell}
Workspace: {workspace_path}'''

    if rules:
        prompt += f"\n\n====\n\nPROJECT RULES ({RULES_FILE})\n\n{rules}"
    return prompt
