"""Virtual path rules for the content store and the index."""

from typing import Iterable

from mempack.errors import PathError

MEMORY_FILE = "MEMORY.md"
MEMORY_DIR = "memory/"
SESSIONS_DIR = "sessions/"


def normalize_path(raw: str) -> str:
    """Normalize a virtual path.

    Strips ``file://``, leading ``./`` and ``/``, converts backslashes and
    drops ``.`` segments.

    Raises:
        PathError: If the path is empty or escapes the root with ``..``.
    """
    path = (raw or "").strip()
    if path.startswith("file://"):
        path = path[len("file://"):]
    path = path.replace("\\", "/")
    parts = []
    for part in path.split("/"):
        if part in ("", "."):
            continue
        if part == "..":
            raise PathError(f"path escapes root: {raw!r}")
        parts.append(part)
    if not parts:
        raise PathError("path is required")
    return "/".join(parts)


def normalize_dir(raw: str) -> str:
    """Normalize a directory prefix; the result ends with '/' or is empty."""
    if not raw or not raw.strip().strip("/."):
        return ""
    return normalize_path(raw) + "/"


def is_memory_path(path: str) -> bool:
    """True for MEMORY.md and anything under memory/."""
    lowered = path.lower()
    return lowered == MEMORY_FILE.lower() or lowered.startswith(MEMORY_DIR)


def is_markdown(path: str) -> bool:
    return path.lower().endswith((".md", ".markdown"))


def is_session_path(path: str) -> bool:
    return path.startswith(SESSIONS_DIR) and path.endswith(".jsonl")


def is_indexable_note(path: str, extra_paths: Iterable[str] = ()) -> bool:
    """Whether a note path belongs in the index.

    Markdown under memory/ (plus MEMORY.md) is always indexed; other
    markdown only when it sits under one of ``extra_paths``.
    """
    if not is_markdown(path):
        return False
    if is_memory_path(path):
        return True
    for extra in extra_paths:
        try:
            prefix = normalize_path(extra)
        except PathError:
            continue
        if path == prefix or path.startswith(prefix.rstrip("/") + "/"):
            return True
    return False


def session_path_for_key(session_key: str) -> str:
    """Virtual transcript path for a session key."""
    cleaned = (session_key or "").strip() or "main"
    cleaned = cleaned.replace("/", "_").replace("\\", "_")
    return f"{SESSIONS_DIR}{cleaned}.jsonl"
