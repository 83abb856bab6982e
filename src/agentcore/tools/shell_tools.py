"""Shell command execution with cancellation support."""

import asyncio
import re
from dataclasses import dataclass
from typing import Optional

import psutil

from ..interrupt import CancellationToken
from ..logger import get_logger, truncate

log = get_logger("shell")

TERMINATE_GRACE = 3.0
MAX_OUTPUT_LINES = 200

_ANSI_ESCAPE_RE = re.compile(r"\x1b(?:[@-Z\\-_]|\[[0-?]*[ -/]*[@-~]|\][^\x07]*(?:\x07|\x1b\\))")


@dataclass
class ShellResult:
    stdout: str
    return_code: int
    timed_out: bool = False
    cancelled: bool = False

    def to_message(self, command: str) -> str:
        out = truncate_output(self.stdout.strip())
        if self.cancelled:
            status = "Command was cancelled"
        elif self.timed_out:
            status = "Command timed out"
        else:
            status = f"Exit code: {self.return_code}"
        body = out if out else "(no output)"
        return f"$ {command}\n{body}\n{status}"


def sanitize_terminal_output(text: str) -> str:
    return _ANSI_ESCAPE_RE.sub("", text)


def truncate_output(text: str, max_lines: int = MAX_OUTPUT_LINES, keep_start: int = 50, keep_end: int = 100) -> str:
    """Keep the head and tail of long output."""
    lines = text.splitlines()
    if len(lines) <= max_lines:
        return text
    removed = len(lines) - keep_start - keep_end
    return "\n".join(lines[:keep_start]) + f"\n\n... ({removed} lines truncated) ...\n\n" + "\n".join(lines[-keep_end:])


def terminate_process_tree(pid: int, grace: float = TERMINATE_GRACE) -> None:
    """Terminate a process and its descendants; kill whatever outlives ``grace``."""
    try:
        parent = psutil.Process(pid)
    except psutil.NoSuchProcess:
        return

    children = []
    try:
        children = parent.children(recursive=True)
    except (psutil.NoSuchProcess, psutil.AccessDenied):
        pass

    procs = list(reversed(children)) + [parent]
    for p in procs:
        try:
            p.terminate()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass

    _, alive = psutil.wait_procs(procs, timeout=grace)
    for p in alive:
        try:
            p.kill()
        except (psutil.NoSuchProcess, psutil.AccessDenied):
            pass
    log.info("terminated process tree pid=%d (%d forced)", pid, len(alive))


async def run_shell_command(
    command: str,
    cwd: Optional[str] = None,
    timeout: float = 600.0,
    cancel: Optional[CancellationToken] = None,
) -> ShellResult:
    """Run ``command`` in a shell, stderr folded into stdout."""
    log.info("run_shell_command: cwd=%s cmd=%s", cwd, truncate(command, 200))
    process = await asyncio.create_subprocess_shell(
        command,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
        cwd=cwd,
    )

    comm = asyncio.ensure_future(process.communicate())
    waiters = {comm}
    cancel_wait = None
    if cancel is not None:
        cancel_wait = asyncio.ensure_future(cancel.wait())
        waiters.add(cancel_wait)

    try:
        done, _ = await asyncio.wait(waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED)
    finally:
        if cancel_wait is not None and not cancel_wait.done():
            cancel_wait.cancel()

    if comm in done:
        stdout, _ = comm.result()
        return ShellResult(
            stdout=sanitize_terminal_output(stdout.decode("utf-8", errors="replace")),
            return_code=process.returncode or 0,
        )

    cancelled = cancel_wait is not None and cancel_wait in done
    log.warning("command %s: %s", "cancelled" if cancelled else "timed out", truncate(command, 100))
    await asyncio.get_running_loop().run_in_executor(None, terminate_process_tree, process.pid)
    try:
        stdout, _ = await asyncio.wait_for(comm, timeout=TERMINATE_GRACE)
    except asyncio.TimeoutError:
        stdout = b""
    return ShellResult(
        stdout=sanitize_terminal_output(stdout.decode("utf-8", errors="replace")),
        return_code=process.returncode if process.returncode is not None else -1,
        timed_out=not cancelled,
        cancelled=cancelled,
    )
