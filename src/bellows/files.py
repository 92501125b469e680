from pathlib import Path
from typing import List, Optional, Set


IGNORED_DIRS: Set[str] = {
    ".venv",
    "venv",
    ".git",
    ".bellows",
    "node_modules",
    "__pycache__",
    ".pytest_cache",
    ".mypy_cache",
    ".ruff_cache",
    "dist",
    "build",
    ".eggs",
}

MAX_FILES = 500


class FileError(Exception):
    pass


class FileManager:
    def __init__(self, root_path: str | Path):
        self.root_path = Path(root_path).resolve()

    def resolve(self, filepath: str) -> Path:
        path = Path(filepath)
        if not path.is_absolute():
            path = self.root_path / path
        return path.resolve()

    def relative(self, path: Path) -> str:
        try:
            return str(path.relative_to(self.root_path))
        except ValueError:
            return str(path)

    def read_file(self, filepath: str) -> str:
        full_path = self.resolve(filepath)
        if not full_path.exists():
            raise FileError(f"file not found: {filepath}")
        if full_path.is_dir():
            raise FileError(f"{filepath} is a directory")
        try:
            return full_path.read_text(encoding="utf-8")
        except UnicodeDecodeError as e:
            raise FileError(f"{filepath} is not a text file") from e
        except OSError as e:
            raise FileError(f"Error reading {filepath}: {e}") from e

    def write_file(self, filepath: str, content: str) -> Path:
        full_path = self.resolve(filepath)
        try:
            full_path.parent.mkdir(parents=True, exist_ok=True)
            full_path.write_text(content, encoding="utf-8")
        except OSError as e:
            raise FileError(f"Error writing {filepath}: {e}") from e
        return full_path

    def list_files(self, pattern: str = "*", path: str | None = None) -> List[str]:
        base = self.resolve(path) if path else self.root_path
        files = []
        for found in base.rglob(pattern):
            if not found.is_file():
                continue
            rel_path = found.relative_to(base)
            if self._should_ignore(rel_path):
                continue
            files.append(self.relative(found))
            if len(files) >= MAX_FILES:
                break
        return sorted(files)

    def _should_ignore(self, rel_path: Path) -> bool:
        for part in rel_path.parts[:-1]:
            if part in IGNORED_DIRS or part.endswith(".egg-info"):
                return True
            if part.startswith("."):
                return True
        return False

    def apply_edit(
        self, filepath: str, search: str, replace: str, replace_all: bool = False
    ) -> int:
        """Replace ``search`` with ``replace``; returns the number of replacements.

        Falls back to a whitespace-insensitive line match when the exact text is
        not present. Raises FileError when nothing matches or the match is ambiguous.
        """
        if search == replace:
            raise FileError("search and replace text are identical")
        content = self.read_file(filepath)

        count = content.count(search) if search else 0
        if count:
            if count > 1 and not replace_all:
                raise FileError(
                    f"Found {count} matches in {filepath}; provide more context or set replace_all"
                )
            new_content = content.replace(search, replace, -1 if replace_all else 1)
            self.write_file(filepath, new_content)
            return count if replace_all else 1

        new_content = self._fuzzy_replace(content, search, replace)
        if new_content is None:
            raise FileError(f"Could not find the text to replace in {filepath}")
        self.write_file(filepath, new_content)
        return 1

    def _fuzzy_replace(self, content: str, search: str, replace: str) -> Optional[str]:
        search_lines = [line.strip() for line in search.strip("\n").splitlines()]
        if not search_lines:
            return None
        lines = content.splitlines(keepends=True)
        width = len(search_lines)
        matches = [
            i
            for i in range(len(lines) - width + 1)
            if [line.strip() for line in lines[i : i + width]] == search_lines
        ]
        if len(matches) != 1:
            return None
        start = matches[0]
        tail = "\n" if lines[start + width - 1].endswith("\n") and not replace.endswith("\n") else ""
        return "".join(lines[:start]) + replace + tail + "".join(lines[start + width :])
