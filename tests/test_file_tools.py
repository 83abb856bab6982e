"""Tests for the workspace tool surface: files, edits, search, shell, todos."""

import asyncio
import os
import sys
import textwrap

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from agentcore.interrupt import CancellationToken
from agentcore.tools import (
    TodoStatus,
    WorkspaceTools,
    apply_blocks,
    parse_search_replace_blocks,
    run_shell_command,
)
from agentcore.tools.file_tools import MAX_FULL_READ_LINES
from agentcore.tools.shell_tools import sanitize_terminal_output, truncate_output
from agentcore.tools.todo_tools import parse_todos


def run(coro):
    return asyncio.run(coro)


@pytest.fixture
def tools(tmp_path):
    (tmp_path / "src").mkdir()
    (tmp_path / "src" / "app.py").write_text(textwrap.dedent("""\
        import os


        class App:
            def run(self):
                return os.getcwd()


        async def main():
            App().run()
    """))
    (tmp_path / "README.md").write_text("# Demo\nAuthentication handled by token module.\n")
    (tmp_path / "node_modules").mkdir()
    (tmp_path / "node_modules" / "dep.js").write_text("function dep() {}\n")
    return WorkspaceTools(tmp_path)


# ============================================================
# read_file / write_to_file
# ============================================================

class TestReadWrite:

    def test_read_numbered(self, tools):
        out = run(tools.read_file({"path": "src/app.py"}))
        assert out.splitlines()[0] == "   1 | import os"
        assert "   4 | class App:" in out

    def test_read_range(self, tools):
        out = run(tools.read_file({"path": "src/app.py", "start_line": "4", "end_line": "5"}))
        assert out.splitlines() == ["   4 | class App:", "   5 |     def run(self):"]

    def test_read_missing(self, tools):
        assert run(tools.read_file({"path": "nope.py"})) == "Error: File not found: nope.py"

    def test_read_bad_line_number(self, tools):
        out = run(tools.read_file({"path": "src/app.py", "start_line": "abc"}))
        assert out.startswith("Error: start_line must be an integer")

    def test_large_file_needs_range(self, tools, tmp_path):
        (tmp_path / "big.txt").write_text("\n".join(f"line {i}" for i in range(MAX_FULL_READ_LINES + 5)))
        out = run(tools.read_file({"path": "big.txt"}))
        assert out.startswith("Error: File is too large")
        ranged = run(tools.read_file({"path": "big.txt", "start_line": "2001", "end_line": "2002"}))
        assert ranged.splitlines()[0] == "2001 | line 2000"

    def test_write_creates_and_overwrites(self, tools, tmp_path):
        assert run(tools.write_to_file({"path": "pkg/new.py", "content": "x = 1\n"})).startswith(
            "Successfully created pkg/new.py")
        assert run(tools.write_to_file({"path": "pkg/new.py", "content": "x = 2\n"})).startswith(
            "Successfully overwrote pkg/new.py")
        assert (tmp_path / "pkg" / "new.py").read_text() == "x = 2\n"

    def test_write_strips_code_fence(self, tools, tmp_path):
        run(tools.write_to_file({"path": "f.py", "content": "```python\nprint(1)\n```"}))
        assert (tmp_path / "f.py").read_text() == "print(1)"


# ============================================================
# SEARCH/REPLACE edits
# ============================================================

class TestEdits:

    def test_parse_blocks_with_start_line(self):
        diff = "<<<<<<< SEARCH\n:start_line:3\n-------\nold\n=======\nnew\n>>>>>>> REPLACE"
        assert parse_search_replace_blocks(diff) == [(3, "old", "new")]

    def test_apply_multiple_blocks(self):
        content = "a = 1\nb = 2\nc = 3\n"
        blocks = [(None, "a = 1", "a = 10"), (None, "c = 3", "c = 30")]
        out, err = apply_blocks(content, blocks)
        assert err is None
        assert out == "a = 10\nb = 2\nc = 30\n"

    def test_trailing_whitespace_tolerated(self):
        out, err = apply_blocks("x = 1   \ny = 2\n", [(None, "x = 1\ny = 2", "x = 3\ny = 4")])
        assert err is None
        assert out.startswith("x = 3\ny = 4")

    def test_start_line_picks_nearest_duplicate(self):
        content = "pass\nfoo\npass\nbar\npass\n"
        out, err = apply_blocks(content, [(5, "pass", "done")])
        assert err is None
        assert out == "pass\nfoo\npass\nbar\ndone\n"

    def test_missing_search_reports_block(self):
        _, err = apply_blocks("abc\n", [(None, "abc", "x"), (None, "zzz", "y")])
        assert err.startswith("Error: SEARCH block 2 not found")

    def test_apply_diff_tool(self, tools, tmp_path):
        diff = "<<<<<<< SEARCH\n        return os.getcwd()\n=======\n        return '/'\n>>>>>>> REPLACE"
        out = run(tools.apply_diff({"path": "src/app.py", "diff": diff}))
        assert out == "Successfully applied 1 change(s) to src/app.py"
        assert "return '/'" in (tmp_path / "src" / "app.py").read_text()

    def test_apply_diff_without_blocks(self, tools):
        assert run(tools.apply_diff({"path": "src/app.py", "diff": "nothing"})) == \
            "Error: No valid SEARCH/REPLACE blocks found"

    def test_edit_file_unique_match(self, tools, tmp_path):
        out = run(tools.edit_file({"path": "src/app.py", "search": "class App:", "replace": "class Application:"}))
        assert out == "Successfully edited src/app.py"
        assert "class Application:" in (tmp_path / "src" / "app.py").read_text()

    def test_edit_file_ambiguous(self, tools):
        out = run(tools.edit_file({"path": "src/app.py", "search": "\n\n", "replace": "\n"}))
        assert "found 2 times" in out

    def test_insert_content(self, tools, tmp_path):
        out = run(tools.insert_content({"path": "README.md", "line": "2", "content": "Intro line"}))
        assert out == "Inserted 1 line(s) into README.md at line 2"
        assert (tmp_path / "README.md").read_text().splitlines()[1] == "Intro line"

        run(tools.insert_content({"path": "README.md", "line": "0", "content": "Footer"}))
        lines = (tmp_path / "README.md").read_text().splitlines()
        assert lines[-1] == "Footer"


# ============================================================
# Listing and search
# ============================================================

class TestSearch:

    def test_list_files_skips_vendor_dirs(self, tools):
        out = run(tools.list_files({"path": ".", "recursive": "true"}))
        assert "src/app.py" in out
        assert "node_modules" not in out

    def test_glob(self, tools):
        assert run(tools.glob({"file_pattern": "*.py"})) == "src/app.py"
        assert run(tools.glob({"file_pattern": "*.rs"})) == "No files match '*.rs'"

    def test_search_files(self, tools):
        out = run(tools.search_files({"path": ".", "regex": "getcwd"}))
        assert out == "src/app.py:6: return os.getcwd()"
        assert run(tools.search_files({"path": ".", "regex": "zzz_nothing"})) == "(no matches)"
        assert run(tools.search_files({"path": ".", "regex": "("})).startswith("Error: Invalid regex")

    def test_codebase_search_ranks_by_terms(self, tools):
        out = run(tools.codebase_search({"query": "authentication token"}))
        assert out.splitlines()[0].startswith("README.md (terms 2/2")

    def test_code_definitions(self, tools):
        out = run(tools.list_code_definition_names({"path": "src/app.py"}))
        assert "4: class App" in out
        assert "5:     def run" in out
        assert "9: async def main" in out
        assert run(tools.list_code_definition_names({"path": "README.md"})) == "No source code definitions found."


# ============================================================
# Shell
# ============================================================

class TestShell:

    def test_exit_code_and_output(self, tools):
        out = run(tools.execute_command({"command": "echo out; echo err 1>&2; exit 3"}))
        assert out.startswith("$ echo out")
        assert "out" in out and "err" in out
        assert out.endswith("Exit code: 3")

    def test_cwd_must_exist(self, tools):
        out = run(tools.execute_command({"command": "ls", "cwd": "nope"}))
        assert out.startswith("Error: Working directory not found")

    def test_timeout(self, tmp_path):
        result = run(run_shell_command("sleep 5", cwd=str(tmp_path), timeout=0.5))
        assert result.timed_out
        assert "Command timed out" in result.to_message("sleep 5")

    def test_cancel_terminates_process(self, tmp_path):
        async def scenario():
            token = CancellationToken()
            loop = asyncio.get_running_loop()
            loop.call_later(0.3, token.cancel)
            return await run_shell_command("sleep 10", cwd=str(tmp_path), timeout=30, cancel=token)

        result = run(scenario())
        assert result.cancelled
        assert not result.timed_out

    def test_output_helpers(self):
        assert sanitize_terminal_output("\x1b[31mred\x1b[0m") == "red"
        long = "\n".join(str(i) for i in range(500))
        out = truncate_output(long)
        assert "lines truncated" in out
        assert out.splitlines()[0] == "0"
        assert out.splitlines()[-1] == "499"


# ============================================================
# Todos
# ============================================================

class TestTodos:

    def test_markdown_checklist(self):
        items = parse_todos("[x] read code\n[-] write fix\n[ ] run tests\nnot a todo")
        assert [i.status for i in items] == [TodoStatus.COMPLETED, TodoStatus.IN_PROGRESS, TodoStatus.PENDING]
        assert items[1].content == "write fix"

    def test_json_list(self):
        items = parse_todos('[{"content": "a", "status": "done"}, {"content": "b"}]')
        assert [(i.content, i.status) for i in items] == [("a", TodoStatus.COMPLETED), ("b", TodoStatus.PENDING)]

    def test_update_todo_list_tool(self, tools):
        out = run(tools.update_todo_list({"todos": "[x] one\n[ ] two"}))
        assert out.startswith("Todo list updated (1/2 completed)")
        assert "[ ] two" in out
        assert run(tools.update_todo_list({"todos": "nothing here"})).startswith("Error:")
