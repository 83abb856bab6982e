"""Git snapshots of the workspace, taken around mutating tool calls.

Checkpoints are a safety net: every failure is logged and reported to the
host as a soft error, nothing here ever raises into the task loop.
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

from .errors import CheckpointError
from .host import TaskHost
from .logger import get_logger, truncate

log = get_logger("checkpoints")

MAX_DIFF_CHARS = 5000


@dataclass(frozen=True)
class Checkpoint:
    commit_hash: str
    created_at: datetime
    summary: str


@dataclass
class GitOutput:
    stdout: str
    stderr: str
    returncode: int


class CheckpointCoordinator:
    """Per-task wrapper around the ``git`` binary."""

    def __init__(self, workspace: Path, task_id: str, host: Optional[TaskHost] = None, timeout: float = 30.0):
        self.workspace = Path(workspace)
        self.task_id = task_id
        self.host = host or TaskHost()
        self.timeout = timeout
        self.chain: List[Checkpoint] = []
        self._initialized = False

    # ── git runner ──

    async def _git(self, *args: str, check: bool = True) -> GitOutput:
        try:
            proc = await asyncio.create_subprocess_exec(
                "git", *args,
                cwd=str(self.workspace),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise CheckpointError(f"cannot run git: {e}") from e

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=self.timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            raise CheckpointError(f"git {args[0]} timed out after {self.timeout}s")

        out = GitOutput(
            stdout=stdout.decode("utf-8", errors="replace"),
            stderr=stderr.decode("utf-8", errors="replace"),
            returncode=proc.returncode or 0,
        )
        log.debug("git %s -> %d", " ".join(args), out.returncode)
        if check and out.returncode != 0:
            raise CheckpointError(f"git {' '.join(args)} failed ({out.returncode}): {out.stderr.strip()}")
        return out

    async def _ensure_repo(self) -> None:
        if self._initialized:
            return
        probe = await self._git("rev-parse", "--git-dir", check=False)
        if probe.returncode != 0:
            log.info("initialising checkpoint repository in %s", self.workspace)
            await self._git("init")
            await self._git("config", "user.name", "agentcore")
            await self._git("config", "user.email", "agentcore@localhost")
        self._initialized = True

    async def _fail(self, op: str, e: Exception) -> None:
        log.warning("checkpoint %s failed: %s", op, e)
        await self.host.say("error", f"Checkpoint {op} failed: {e}")

    # ── operations ──

    async def save(self, force: bool = False, suppress: bool = False) -> Optional[Checkpoint]:
        try:
            await self._ensure_repo()
            status = await self._git("status", "--porcelain")
            if not status.stdout.strip() and not force:
                log.debug("checkpoint save: nothing to commit")
                return None

            await self._git("add", "-A")
            now = datetime.now(timezone.utc)
            message = f"Checkpoint: Task {self.task_id} - {now.isoformat()}"
            commit_args = ["commit", "-m", message]
            if force:
                commit_args.append("--allow-empty")
            await self._git(*commit_args)
            head = await self._git("rev-parse", "HEAD")
        except CheckpointError as e:
            await self._fail("save", e)
            return None

        checkpoint = Checkpoint(commit_hash=head.stdout.strip(), created_at=now, summary=message)
        self.chain.append(checkpoint)
        log.info("checkpoint saved: %s", checkpoint.commit_hash[:12])
        if not suppress:
            await self.host.say("checkpoint_saved", f"Created checkpoint: {message}")
        return checkpoint

    async def restore(self, commit_hash: str = "HEAD~1") -> bool:
        answer = await self.host.ask(
            "checkpoint_restore",
            f"Restore the workspace to checkpoint {commit_hash}? Uncommitted changes will be lost.",
        )
        if not answer.approved:
            await self.host.say("text", "Checkpoint restore cancelled")
            return False
        try:
            await self._ensure_repo()
            await self._git("reset", "--hard", commit_hash)
        except CheckpointError as e:
            await self._fail("restore", e)
            return False
        log.info("restored checkpoint %s", commit_hash)
        await self.host.say("text", f"Restored to checkpoint: {commit_hash}")
        return True

    async def diff(self, commit_hash: str = "HEAD") -> Optional[str]:
        try:
            await self._ensure_repo()
            out = await self._git("diff", commit_hash)
        except CheckpointError as e:
            await self._fail("diff", e)
            return None

        text = out.stdout
        if not text.strip():
            await self.host.say("text", "No differences found")
            return ""
        if len(text) > MAX_DIFF_CHARS:
            text = text[:MAX_DIFF_CHARS] + "\n\n... (diff truncated) ..."
        log.debug("checkpoint diff %s: %s", commit_hash, truncate(text))
        await self.host.say("text", f"```diff\n{text}\n```")
        return text

    async def list(self) -> List[str]:
        try:
            await self._ensure_repo()
            out = await self._git("log", "--oneline", "--max-count=10")
        except CheckpointError as e:
            await self._fail("list", e)
            return []
        return [line for line in out.stdout.splitlines() if line.strip()]
