"""File reading and editing tools."""

import re
from pathlib import Path
from typing import List, Optional, Tuple

import aiofiles

MAX_FULL_READ_LINES = 2000
MAX_READ_BYTES = 400_000  # ~100k tokens


async def read_text(path: Path) -> str:
    async with aiofiles.open(path, "r", encoding="utf-8", errors="replace") as f:
        return await f.read()


async def write_text(path: Path, content: str) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    async with aiofiles.open(path, "w", encoding="utf-8") as f:
        await f.write(content)


def truncate_file_content(content: str, max_bytes: int = MAX_READ_BYTES) -> str:
    if len(content) <= max_bytes:
        return content
    remaining = len(content) - max_bytes
    return content[:max_bytes] + f"\n\n... ({remaining:,} bytes truncated) ..."


def _parse_line_number(value: Optional[str], name: str) -> Tuple[Optional[int], Optional[str]]:
    if value is None or str(value).strip() == "":
        return None, None
    try:
        return int(str(value).strip()), None
    except ValueError:
        return None, f"Error: {name} must be an integer, got '{value}'"


async def read_file(path: Path, rel_path: str, start_line: Optional[str] = None,
                    end_line: Optional[str] = None) -> str:
    """Return the file with ``{n:4d} | `` line numbers.

    Files longer than MAX_FULL_READ_LINES need an explicit range.
    """
    if not path.exists():
        return f"Error: File not found: {rel_path}"
    if path.is_dir():
        return f"Error: {rel_path} is a directory, use list_files"

    start, err = _parse_line_number(start_line, "start_line")
    if err:
        return err
    end, err = _parse_line_number(end_line, "end_line")
    if err:
        return err
    has_range = start is not None or end is not None

    content = await read_text(path)
    all_lines = content.splitlines()
    total = len(all_lines)

    if not has_range and total > MAX_FULL_READ_LINES:
        return (
            f"Error: File is too large to read in full ({total:,} lines, "
            f"~{len(content) // 4:,} tokens). Use start_line and end_line to read specific sections.\n"
            f"Example: <read_file><path>{rel_path}</path>"
            f"<start_line>1</start_line><end_line>100</end_line></read_file>\n"
            f"Total lines in file: {total}"
        )

    start_idx = max(0, start - 1) if start else 0
    end_idx = min(total, end) if end else total
    if total and start_idx >= total:
        return f"Error: start_line {start} is beyond end of file ({total} lines)"

    numbered = [f"{start_idx + i + 1:4d} | {line}" for i, line in enumerate(all_lines[start_idx:end_idx])]
    return truncate_file_content("\n".join(numbered))


async def write_to_file(path: Path, rel_path: str, content: str) -> str:
    # models often wrap file bodies in a code fence
    if content.startswith("```"):
        lines = content.split("\n")
        if lines[-1].strip() == "```":
            content = "\n".join(lines[1:-1])
    existed = path.exists()
    await write_text(path, content)
    n = len(content.splitlines())
    if existed:
        return f"Successfully overwrote {rel_path} ({n} lines)"
    return f"Successfully created {rel_path} ({n} lines)"


# ── SEARCH/REPLACE blocks ────────────────────────────────────────

_BLOCK_RE = re.compile(
    r"<{7}\s*SEARCH\s*\n"
    r"(?::start_line:\s*(\d+)\s*\n)?"
    r"(?:-{7}\s*\n)?"
    r"(.*?)\n?={7}\s*\n"
    r"(.*?)\n?>{7}\s*REPLACE",
    re.DOTALL,
)


def parse_search_replace_blocks(diff: str) -> List[Tuple[Optional[int], str, str]]:
    """Parse ``(start_line, search, replace)`` triples out of a diff string."""
    diff = diff.replace("\r\n", "\n").replace("\r", "\n")
    blocks = []
    for m in _BLOCK_RE.finditer(diff):
        start = int(m.group(1)) if m.group(1) else None
        blocks.append((start, m.group(2), m.group(3)))
    return blocks


def _replace_trailing_ws(content: str, search: str, replace: str, start_line: Optional[int]) -> Optional[str]:
    """Line-wise match ignoring trailing whitespace; nearest to start_line wins."""
    content_lines = content.split("\n")
    search_lines = [l.rstrip() for l in search.split("\n")]
    hits = [
        i for i in range(len(content_lines) - len(search_lines) + 1)
        if all(content_lines[i + j].rstrip() == s for j, s in enumerate(search_lines))
    ]
    if not hits:
        return None
    if start_line is not None:
        hits.sort(key=lambda i: abs(i + 1 - start_line))
    i = hits[0]
    return "\n".join(content_lines[:i] + replace.split("\n") + content_lines[i + len(search_lines):])


def apply_blocks(content: str, blocks: List[Tuple[Optional[int], str, str]]) -> Tuple[str, Optional[str]]:
    """Apply blocks in order. Returns (new_content, error)."""
    content = content.replace("\r\n", "\n")
    for n, (start_line, search, replace) in enumerate(blocks, 1):
        if search == "":
            return content, f"Error: SEARCH block {n} is empty"
        if search in content:
            if start_line is not None and content.count(search) > 1:
                # several exact hits: prefer the one nearest start_line
                updated = _replace_trailing_ws(content, search, replace, start_line)
                if updated is not None:
                    content = updated
                    continue
            content = content.replace(search, replace, 1)
            continue
        updated = _replace_trailing_ws(content, search, replace, start_line)
        if updated is None:
            first = search.strip().split("\n")[0][:80]
            return content, (
                f"Error: SEARCH block {n} not found in file (starting with: '{first}'). "
                f"Use read_file to see the exact content, then retry."
            )
        content = updated
    return content, None


async def apply_diff(path: Path, rel_path: str, diff: str) -> str:
    if not path.exists():
        return f"Error: File not found: {rel_path}"
    blocks = parse_search_replace_blocks(diff)
    if not blocks:
        return "Error: No valid SEARCH/REPLACE blocks found"
    content, error = apply_blocks(await read_text(path), blocks)
    if error:
        return error
    await write_text(path, content)
    return f"Successfully applied {len(blocks)} change(s) to {rel_path}"


async def edit_file(path: Path, rel_path: str, search: str, replace: str) -> str:
    if not path.exists():
        return f"Error: File not found: {rel_path}"
    content = await read_text(path)
    count = content.count(search)
    if count == 0:
        return f"Error: String not found in {rel_path}: '{search[:100]}'"
    if count > 1:
        return f"Error: String found {count} times in {rel_path}. Provide more context for a unique match."
    await write_text(path, content.replace(search, replace, 1))
    return f"Successfully edited {rel_path}"


async def insert_content(path: Path, rel_path: str, line: str, content: str) -> str:
    line_no, err = _parse_line_number(line, "line")
    if err:
        return err
    if line_no is None or line_no < 0:
        return "Error: line must be 0 (append) or a 1-based line number"

    existing = await read_text(path) if path.exists() else ""
    lines = existing.split("\n") if existing else []
    trailing_newline = existing.endswith("\n")
    if trailing_newline:
        lines = lines[:-1]

    new_lines = content.split("\n")
    if line_no == 0 or line_no > len(lines):
        idx = len(lines)
    else:
        idx = line_no - 1
    lines[idx:idx] = new_lines

    out = "\n".join(lines)
    if trailing_newline or not existing:
        out += "\n"
    await write_text(path, out)
    where = "end of file" if line_no == 0 else f"line {idx + 1}"
    return f"Inserted {len(new_lines)} line(s) into {rel_path} at {where}"
