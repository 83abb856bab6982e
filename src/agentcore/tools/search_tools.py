"""Listing and search tools: list_files, glob, search_files, codebase_search,
list_code_definition_names."""

import ast
import re
from collections import Counter
from pathlib import Path
from typing import Dict, List, Optional

SKIP_DIRS = {"node_modules", "__pycache__", "venv", "dist", "build", "target", "vendor", "obj", "bin"}
MAX_SEARCH_RESULTS = 100
MAX_FILES_SCANNED = 2000
MAX_FILE_BYTES = 1024 * 1024

_WORD_RE = re.compile(r"[A-Za-z_][A-Za-z0-9_]{2,}")

# Top-level definitions for non-Python sources.
_DEFINITION_PATTERNS: Dict[str, re.Pattern] = {
    ".js": re.compile(r"^(?:export\s+)?(?:default\s+)?(?:async\s+)?(?:function\*?|class)\s+([A-Za-z_$][\w$]*)"),
    ".ts": re.compile(r"^(?:export\s+)?(?:default\s+)?(?:abstract\s+)?(?:async\s+)?"
                      r"(?:function\*?|class|interface|type|enum)\s+([A-Za-z_$][\w$]*)"),
    ".go": re.compile(r"^(?:func(?:\s+\([^)]*\))?|type)\s+([A-Za-z_]\w*)"),
    ".rs": re.compile(r"^(?:pub(?:\([^)]*\))?\s+)?(?:async\s+)?(?:fn|struct|enum|trait|impl)\s+([A-Za-z_]\w*)"),
    ".java": re.compile(r"^\s{0,4}(?:public|private|protected)?\s*(?:static\s+)?(?:final\s+)?"
                        r"(?:class|interface|enum|record)\s+([A-Za-z_]\w*)"),
    ".rb": re.compile(r"^\s*(?:def|class|module)\s+([A-Za-z_][\w.?!]*)"),
}
_DEFINITION_PATTERNS[".jsx"] = _DEFINITION_PATTERNS[".js"]
_DEFINITION_PATTERNS[".mjs"] = _DEFINITION_PATTERNS[".js"]
_DEFINITION_PATTERNS[".tsx"] = _DEFINITION_PATTERNS[".ts"]


def should_skip(root: Path, p: Path, include_hidden: bool = False) -> bool:
    if include_hidden:
        return False
    for part in p.relative_to(root).parts:
        if part.startswith(".") and part != ".":
            return True
        if part in SKIP_DIRS:
            return True
    return False


def _iter_files(root: Path, pattern: str = "*", include_hidden: bool = False):
    for p in sorted(root.rglob(pattern)):
        if p.is_file() and not should_skip(root, p, include_hidden):
            yield p


async def list_files(path: Path, rel_path: str, recursive: bool = False) -> str:
    if not path.exists():
        return f"Error: Directory not found: {rel_path}"
    if not path.is_dir():
        return f"Error: Not a directory: {rel_path}"

    include_hidden = rel_path.startswith(".") and rel_path not in (".", "./")
    max_items = 200 if recursive else 100
    items: List[str] = []
    truncated = False
    try:
        entries = sorted(path.rglob("*")) if recursive else sorted(path.iterdir())
        for p in entries:
            if should_skip(path, p, include_hidden):
                continue
            if len(items) >= max_items:
                truncated = True
                break
            rel = p.relative_to(path)
            items.append(f"{rel}/" if p.is_dir() else str(rel))
    except PermissionError:
        return f"Error: Permission denied: {rel_path}"

    result = "\n".join(items) or "(empty directory)"
    if truncated:
        result += f"\n\n... (truncated at {max_items} items, use a more specific path)"
    return result


async def glob_files(root: Path, file_pattern: str, workspace: Path) -> str:
    if not root.exists():
        return "Error: Directory not found"
    matches = []
    for p in _iter_files(root, file_pattern):
        matches.append(str(p.relative_to(workspace)))
        if len(matches) >= MAX_SEARCH_RESULTS:
            break
    if not matches:
        return f"No files match '{file_pattern}'"
    return "\n".join(matches)


async def search_files(root: Path, regex: str, file_pattern: Optional[str], workspace: Path) -> str:
    if not root.exists():
        return "Error: Directory not found"
    try:
        pattern = re.compile(regex, re.IGNORECASE)
    except re.error as e:
        return f"Error: Invalid regex: {e}"

    results: List[str] = []
    scanned = 0
    for file in _iter_files(root, file_pattern or "*"):
        scanned += 1
        if scanned > MAX_FILES_SCANNED:
            break
        try:
            if file.stat().st_size > MAX_FILE_BYTES:
                continue
            content = file.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        rel = file.relative_to(workspace)
        for i, line in enumerate(content.splitlines(), 1):
            if pattern.search(line):
                results.append(f"{rel}:{i}: {line.strip()[:150]}")
                if len(results) >= MAX_SEARCH_RESULTS:
                    return "\n".join(results) + f"\n\n... (stopped at {MAX_SEARCH_RESULTS} matches)"
    return "\n".join(results) if results else "(no matches)"


async def codebase_search(root: Path, query: str, workspace: Path, limit: int = 10) -> str:
    """Rank files by how often the query's terms occur in them."""
    terms = {t.lower() for t in _WORD_RE.findall(query)}
    if not terms:
        return "Error: query has no searchable terms"

    scored = []
    for i, file in enumerate(_iter_files(root)):
        if i >= MAX_FILES_SCANNED:
            break
        try:
            if file.stat().st_size > MAX_FILE_BYTES:
                continue
            text = file.read_text(encoding="utf-8", errors="ignore")
        except OSError:
            continue
        words = Counter(w.lower() for w in _WORD_RE.findall(text))
        path_words = {w.lower() for w in _WORD_RE.findall(str(file.relative_to(root)))}
        hits = sum(words[t] for t in terms)
        covered = sum(1 for t in terms if words[t] or t in path_words)
        if covered:
            # breadth of terms first, then raw frequency
            scored.append((covered, hits, file))

    if not scored:
        return f"No results for '{query}'"
    scored.sort(key=lambda s: (-s[0], -s[1], str(s[2])))
    lines = []
    for covered, hits, file in scored[:limit]:
        lines.append(f"{file.relative_to(workspace)} (terms {covered}/{len(terms)}, hits {hits})")
    return "\n".join(lines)


def _python_definitions(source: str) -> List[str]:
    try:
        tree = ast.parse(source)
    except SyntaxError as e:
        return [f"(could not parse: {e.msg} at line {e.lineno})"]
    out = []
    for node in tree.body:
        if isinstance(node, ast.ClassDef):
            out.append(f"{node.lineno}: class {node.name}")
            for child in node.body:
                if isinstance(child, (ast.FunctionDef, ast.AsyncFunctionDef)):
                    out.append(f"{child.lineno}:     def {child.name}")
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef)):
            prefix = "async def" if isinstance(node, ast.AsyncFunctionDef) else "def"
            out.append(f"{node.lineno}: {prefix} {node.name}")
    return out


def file_definitions(file: Path) -> Optional[List[str]]:
    suffix = file.suffix.lower()
    if suffix != ".py" and suffix not in _DEFINITION_PATTERNS:
        return None
    try:
        source = file.read_text(encoding="utf-8", errors="ignore")
    except OSError:
        return None
    if suffix == ".py":
        return _python_definitions(source)
    pattern = _DEFINITION_PATTERNS[suffix]
    out = []
    for i, line in enumerate(source.splitlines(), 1):
        m = pattern.match(line)
        if m:
            out.append(f"{i}: {line.strip()[:120]}")
    return out


async def list_code_definition_names(path: Path, rel_path: str) -> str:
    if not path.exists():
        return f"Error: Path not found: {rel_path}"
    files = [path] if path.is_file() else [p for p in _iter_files(path) if p.parent == path]
    sections = []
    for file in files:
        defs = file_definitions(file)
        if defs:
            sections.append(f"# {file.name}\n" + "\n".join(defs))
    if not sections:
        return "No source code definitions found."
    return "\n\n".join(sections)
