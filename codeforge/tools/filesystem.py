"""
Filesystem tools: read, write, edit, list, search and delete files.
Every path is resolved against the session root and must stay inside it.
"""
from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

from codeforge.tools.base import BaseTool, ToolError

MAX_MATCHES = 100
SKIP_DIRS = {".git", "node_modules", "__pycache__", ".venv", "venv"}


def _is_under(child: Path, parent: Path) -> bool:
    """Check if child is under parent, case-insensitively (Windows-safe)."""
    child_str = os.path.normcase(str(child)).rstrip(os.sep + "/") + os.sep
    parent_str = os.path.normcase(str(parent)).rstrip(os.sep + "/") + os.sep
    return child_str.startswith(parent_str)


class _FileTool(BaseTool):
    def resolve(self, path: str) -> Path:
        """Resolve a path (relative paths against the root) and verify it's inside the root."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute():
            candidate = self.root / candidate
        resolved = candidate.resolve()
        if not _is_under(resolved, self.root):
            raise PermissionError(f"Access denied: '{resolved}' is outside the project root {self.root}")
        return resolved

    def display(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root))
        except ValueError:
            return str(path)

    def _walk(self, base: Path):
        for dirpath, dirnames, filenames in os.walk(base):
            dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
            for filename in sorted(filenames):
                yield Path(dirpath) / filename


class ReadFileTool(_FileTool):
    name = "read_file"
    description = "Read the contents of a file. Returns numbered lines."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file, relative to the project root"},
            "offset": {"type": "integer", "description": "First line to read (1-based, default: 1)"},
            "limit": {"type": "integer", "description": "Maximum number of lines to return"},
        },
        "required": ["file_path"],
    }

    async def run(self, file_path: str, offset: int = 1, limit: int | None = None, **_: Any) -> str:
        resolved = self.resolve(file_path)
        max_bytes = self.config.filesystem.max_file_size_mb * 1024 * 1024

        if not resolved.exists():
            raise ToolError(f"file not found: {file_path}")
        if not resolved.is_file():
            raise ToolError(f"not a file: {file_path}")
        if resolved.stat().st_size > max_bytes:
            raise ToolError(f"file too large (max {self.config.filesystem.max_file_size_mb} MB)")

        try:
            lines = resolved.read_text(encoding="utf-8").splitlines()
        except UnicodeDecodeError:
            raise ToolError(f"cannot decode {file_path} as utf-8. It may be a binary file.")

        start = max(offset, 1) - 1
        end = start + limit if limit else len(lines)
        if not lines:
            return f"{file_path} is empty"
        return "\n".join(f"{i + 1:6}\t{line}" for i, line in enumerate(lines[start:end], start))


class WriteFileTool(_FileTool):
    name = "write_file"
    description = "Write content to a file. Creates the file and parent directories if needed."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file, relative to the project root"},
            "content": {"type": "string", "description": "Content to write"},
        },
        "required": ["file_path", "content"],
    }

    async def run(self, file_path: str, content: str, **_: Any) -> str:
        resolved = self.resolve(file_path)
        resolved.parent.mkdir(parents=True, exist_ok=True)
        resolved.write_text(content, encoding="utf-8")
        return f"✅ Wrote {len(content)} characters to {self.display(resolved)}"


class EditFileTool(_FileTool):
    name = "edit_file"
    description = (
        "Replace an exact string in a file. old_string must match exactly once "
        "unless replace_all is true."
    )
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file, relative to the project root"},
            "old_string": {"type": "string", "description": "Exact text to replace"},
            "new_string": {"type": "string", "description": "Replacement text"},
            "replace_all": {"type": "boolean", "description": "Replace every occurrence", "default": False},
        },
        "required": ["file_path", "old_string", "new_string"],
    }

    async def run(
        self,
        file_path: str,
        old_string: str,
        new_string: str,
        replace_all: bool = False,
        **_: Any,
    ) -> str:
        resolved = self.resolve(file_path)
        if not resolved.is_file():
            raise ToolError(f"file not found: {file_path}")
        if old_string == new_string:
            raise ToolError("old_string and new_string are identical")

        text = resolved.read_text(encoding="utf-8")
        count = text.count(old_string) if old_string else 0
        if count == 0:
            raise ToolError(f"old_string not found in {file_path}")
        if count > 1 and not replace_all:
            raise ToolError(f"old_string appears {count} times in {file_path}; pass replace_all or add context")

        updated = text.replace(old_string, new_string) if replace_all else text.replace(old_string, new_string, 1)
        resolved.write_text(updated, encoding="utf-8")
        replaced = count if replace_all else 1
        return f"✅ Edited {self.display(resolved)} ({replaced} replacement{'s' if replaced != 1 else ''})"


class ListFilesTool(_FileTool):
    name = "list_files"
    description = "List the contents of a directory with file sizes and types."
    parameters = {
        "type": "object",
        "properties": {
            "path": {"type": "string", "description": "Directory, relative to the project root (default: root)"},
            "show_hidden": {"type": "boolean", "description": "Show hidden files (default: false)", "default": False},
        },
    }

    async def run(self, path: str = ".", show_hidden: bool = False, **_: Any) -> str:
        resolved = self.resolve(path)

        if not resolved.exists():
            raise ToolError(f"directory not found: {path}")
        if not resolved.is_dir():
            raise ToolError(f"not a directory: {path}")

        entries = []
        for entry in sorted(resolved.iterdir()):
            if not show_hidden and entry.name.startswith("."):
                continue
            if entry.is_dir():
                entries.append(f"[DIR]  {entry.name}/")
            else:
                size = entry.stat().st_size
                size_str = f"{size:,} bytes" if size < 1024 else f"{size/1024:.1f} KB"
                entries.append(f"[FILE] {entry.name} ({size_str})")

        if not entries:
            return f"Empty directory: {self.display(resolved)}"
        return f"Contents of {self.display(resolved)}:\n" + "\n".join(entries)


class FindTool(_FileTool):
    name = "find"
    description = "Find files whose path matches a glob pattern (e.g. '**/*.py')."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Glob pattern"},
            "path": {"type": "string", "description": "Directory to search in (default: root)"},
            "max_results": {"type": "integer", "description": "Maximum number of results (default: 100)"},
        },
        "required": ["pattern"],
    }

    async def run(self, pattern: str, path: str = ".", max_results: int = MAX_MATCHES, **_: Any) -> str:
        base = self.resolve(path)
        matches = []
        for match in sorted(base.glob(pattern)):
            if any(part in SKIP_DIRS for part in match.relative_to(base).parts):
                continue
            matches.append(self.display(match))
            if len(matches) >= max_results:
                break
        if not matches:
            return f"No files found matching '{pattern}'"
        return f"Found {len(matches)} file(s):\n" + "\n".join(matches)


class GrepTool(_FileTool):
    name = "grep"
    description = "Search file contents for a regular expression. Returns path:line: text matches."
    parameters = {
        "type": "object",
        "properties": {
            "pattern": {"type": "string", "description": "Regular expression"},
            "path": {"type": "string", "description": "File or directory to search (default: root)"},
            "glob": {"type": "string", "description": "Only search files matching this glob (e.g. '*.py')"},
            "ignore_case": {"type": "boolean", "description": "Case-insensitive match", "default": False},
            "max_results": {"type": "integer", "description": "Maximum number of matches (default: 100)"},
        },
        "required": ["pattern"],
    }

    async def run(
        self,
        pattern: str,
        path: str = ".",
        glob: str | None = None,
        ignore_case: bool = False,
        max_results: int = MAX_MATCHES,
        **_: Any,
    ) -> str:
        try:
            regex = re.compile(pattern, re.IGNORECASE if ignore_case else 0)
        except re.error as e:
            raise ToolError(f"invalid pattern: {e}")

        base = self.resolve(path)
        files = [base] if base.is_file() else self._walk(base)
        results = []
        for filepath in files:
            if glob and not filepath.match(glob):
                continue
            try:
                text = filepath.read_text(encoding="utf-8")
            except (UnicodeDecodeError, OSError):
                continue
            for i, line in enumerate(text.splitlines(), 1):
                if regex.search(line):
                    results.append(f"{self.display(filepath)}:{i}: {line.strip()}")
                    if len(results) >= max_results:
                        break
            if len(results) >= max_results:
                break

        if not results:
            return f"No matches for '{pattern}'"
        return "\n".join(results)


class DeleteFileTool(_FileTool):
    name = "delete_file"
    description = "Delete a file. This cannot be undone."
    parameters = {
        "type": "object",
        "properties": {
            "file_path": {"type": "string", "description": "Path to the file, relative to the project root"},
        },
        "required": ["file_path"],
    }

    async def run(self, file_path: str, **_: Any) -> str:
        resolved = self.resolve(file_path)
        if not resolved.exists():
            raise ToolError(f"file not found: {file_path}")
        if resolved.is_dir():
            raise ToolError(f"'{file_path}' is a directory")
        resolved.unlink()
        return f"✅ Deleted {self.display(resolved)}"


FILESYSTEM_TOOLS: list[type[BaseTool]] = [
    ReadFileTool,
    WriteFileTool,
    EditFileTool,
    ListFilesTool,
    FindTool,
    GrepTool,
    DeleteFileTool,
]
