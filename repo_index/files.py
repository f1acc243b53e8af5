import os
from dataclasses import dataclass, field
from pathlib import Path

from .config import MAX_FILE_BYTES
from .models import SkippedFile

SKIP_DIRS = {
    "node_modules",
    ".git",
    "dist",
    "build",
    ".next",
    ".cache",
    "coverage",
    ".vscode",
    ".idea",
    "__pycache__",
    ".pytest_cache",
    "venv",
    ".venv",
    "env",
    ".env",
}
SKIP_FILES = {"package.json", "package-lock.json"}

CODE_EXTENSIONS = {
    ".js", ".jsx", ".ts", ".tsx", ".py", ".ipynb", ".java", ".cpp", ".c",
    ".go", ".rs", ".rb", ".php", ".swift", ".kt", ".scala", ".clj", ".sh",
    ".sql", ".html", ".css", ".scss", ".json", ".yaml", ".yml", ".xml", ".md",
}


@dataclass
class SourceFile:
    path: str                         # relative to the snapshot root, "/"-separated
    content: str


@dataclass
class WalkResult:
    files: list[SourceFile] = field(default_factory=list)
    skipped: list[SkippedFile] = field(default_factory=list)


def read_file_text(path: Path) -> str:
    """Read a file as strict UTF-8. Raises UnicodeDecodeError or OSError."""
    with open(path, encoding="utf-8", errors="strict") as f:
        return f.read()


def walk_files(root: Path, max_file_bytes: int = MAX_FILE_BYTES) -> WalkResult:
    """Depth-first walk of a snapshot collecting readable source files.

    Ignored directories and non-code extensions are skipped silently; oversized
    or undecodable files are recorded in `skipped` with a reason.
    """
    result = WalkResult()
    for dirpath, dirnames, filenames in os.walk(root):
        # Prune skip dirs in-place; sorted for a stable depth-first order
        dirnames[:] = sorted(d for d in dirnames if d not in SKIP_DIRS)
        for filename in sorted(filenames):
            fpath = Path(dirpath) / filename
            rel = fpath.relative_to(root).as_posix()

            if filename in SKIP_FILES or fpath.is_symlink():
                continue
            if fpath.suffix.lower() not in CODE_EXTENSIONS:
                continue

            try:
                size = fpath.stat().st_size
            except OSError as e:
                result.skipped.append(SkippedFile(path=rel, reason=f"Error accessing file: {e}"))
                continue
            if size > max_file_bytes:
                result.skipped.append(SkippedFile(
                    path=rel,
                    reason=(
                        f"File too large ({size / 1024 / 1024:.2f}MB > "
                        f"{max_file_bytes / 1024 / 1024:.2f}MB)"
                    ),
                ))
                continue

            try:
                text = read_file_text(fpath)
            except (UnicodeDecodeError, OSError) as e:
                result.skipped.append(SkippedFile(path=rel, reason=f"Failed to read: {e}"))
                continue
            result.files.append(SourceFile(path=rel, content=text))
    return result
