from dataclasses import dataclass, field
from pathlib import Path

from .config import ChunkingConfig
from .files import walk_files
from .models import Chunk, SkippedFile

UNKNOWN_LANGUAGE = "unknown"

EXTENSION_TO_LANGUAGE: dict[str, str] = {
    ".py": "python",
    ".ipynb": "jupyter",
    ".js": "javascript",
    ".jsx": "javascript",
    ".ts": "typescript",
    ".tsx": "typescript",
    ".go": "go",
    ".rs": "rust",
    ".java": "java",
    ".c": "c",
    ".cpp": "cpp",
    ".rb": "ruby",
    ".php": "php",
    ".swift": "swift",
    ".kt": "kotlin",
    ".scala": "scala",
    ".clj": "clojure",
    ".sh": "shell",
    ".sql": "sql",
    ".html": "html",
    ".css": "css",
    ".scss": "scss",
    ".json": "json",
    ".yaml": "yaml",
    ".yml": "yaml",
    ".xml": "xml",
    ".md": "markdown",
}


@dataclass
class LineWindow:
    start: int                        # 1-indexed, inclusive
    end: int                          # 1-indexed, inclusive
    lines: list[str]

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


@dataclass
class ChunkingOutcome:
    chunks: list[Chunk] = field(default_factory=list)
    file_count: int = 0
    skipped: list[SkippedFile] = field(default_factory=list)

    @property
    def total_chars(self) -> int:
        return sum(len(c.content) for c in self.chunks)


def infer_language(file_path: str) -> str:
    return EXTENSION_TO_LANGUAGE.get(Path(file_path).suffix.lower(), UNKNOWN_LANGUAGE)


def split_lines(text: str) -> list[str]:
    lines = text.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    return lines


def chunk_lines(lines: list[str], chunk_size: int = 200, overlap: int = 40) -> list[LineWindow]:
    """Sliding windows of chunk_size lines, each starting chunk_size - overlap after the last.

    Whitespace-only windows are dropped. The walk stops once a window reaches
    the last line, so no window is fully contained in its predecessor.
    """
    if chunk_size <= 0 or not 0 <= overlap < chunk_size:
        raise ValueError(f"invalid window: chunk_size={chunk_size}, overlap={overlap}")

    windows = []
    step = chunk_size - overlap
    for i in range(0, len(lines), step):
        end = min(i + chunk_size, len(lines))
        window = LineWindow(start=i + 1, end=end, lines=lines[i:end])
        if window.text.strip():
            windows.append(window)
        if end == len(lines):
            # any later window would lie inside this one
            break
    return windows


def split_oversized(
    lines: list[str],
    start_line: int,
    max_chars: int,
    overlap_lines: int = 5,
) -> list[LineWindow]:
    """Re-split one window so every piece joins to at most max_chars characters.

    Lines accumulate until the next one would overflow; the next piece is then
    seeded with up to overlap_lines trailing lines of the closed one (fewer if
    the seed would not leave room for the next line). A single line longer
    than max_chars is cut into max_chars slices that share its line number.
    """
    pieces: list[LineWindow] = []
    current: list[str] = []
    current_start = start_line
    size = 0                          # len("\n".join(current))

    def close() -> None:
        if current:
            pieces.append(LineWindow(current_start, current_start + len(current) - 1, list(current)))

    for offset, line in enumerate(lines):
        line_no = start_line + offset

        if len(line) > max_chars:
            close()
            for i in range(0, len(line), max_chars):
                pieces.append(LineWindow(line_no, line_no, [line[i:i + max_chars]]))
            current, current_start, size = [], line_no + 1, 0
            continue

        if current and size + 1 + len(line) > max_chars:
            close()
            seed = current[-overlap_lines:] if overlap_lines > 0 else []
            while seed and len("\n".join(seed)) + 1 + len(line) > max_chars:
                seed = seed[1:]
            current = list(seed)
            current_start = line_no - len(current)
            size = len("\n".join(current))

        if not current:
            current_start = line_no
            size = len(line)
        else:
            size += 1 + len(line)
        current.append(line)

    close()
    return [p for p in pieces if p.text.strip()]


def split_file(file_path: str, text: str, config: ChunkingConfig | None = None) -> list[Chunk]:
    config = config or ChunkingConfig()
    language = infer_language(file_path)

    chunks = []
    for window in chunk_lines(split_lines(text), config.chunk_lines, config.chunk_overlap):
        if len(window.text) > config.max_chunk_chars:
            pieces = split_oversized(
                window.lines, window.start, config.max_chunk_chars, config.split_overlap_lines
            )
        else:
            pieces = [window]
        for piece in pieces:
            chunks.append(Chunk(
                file_path=file_path,
                start_line=piece.start,
                end_line=piece.end,
                content=piece.text,
                language=language,
            ))
    return chunks


def chunk_repository(root: Path, config: ChunkingConfig | None = None) -> ChunkingOutcome:
    """Walk a snapshot and chunk every allowed file. No per-repository chunk limit."""
    config = config or ChunkingConfig()
    walked = walk_files(root, config.max_file_bytes)

    outcome = ChunkingOutcome(skipped=list(walked.skipped))
    for source in walked.files:
        outcome.chunks.extend(split_file(source.path, source.content, config))
        outcome.file_count += 1
    return outcome
