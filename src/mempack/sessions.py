"""Session transcripts as indexable documents.

A session's messages live in the content store's message log. For the
index each session is flattened into a plain-text transcript, one line per
message, stored under ``sessions/<key>.jsonl``.
"""

import re
from dataclasses import dataclass
from typing import Optional

from mempack.models import SOURCE_SESSIONS, Document, SessionMessage, SessionRecord, hash_text
from mempack.paths import session_path_for_key

_WHITESPACE_RE = re.compile(r"\s+")

ROLE_LABELS = {"user": "User", "assistant": "Assistant"}


def normalize_session_text(text: str) -> str:
    """Collapse all whitespace runs to single spaces."""
    return _WHITESPACE_RE.sub(" ", text or "").strip()


def format_message(message: SessionMessage) -> Optional[str]:
    """Render one transcript line, or None for messages with no text."""
    body = normalize_session_text(message.body)
    if not body:
        return None
    label = ROLE_LABELS.get(message.role.lower(), message.role.strip().title() or "User")
    return f"{label}: {body}"


def build_transcript(messages: list[SessionMessage]) -> str:
    lines = [line for line in (format_message(m) for m in messages) if line]
    return "\n".join(lines)


def session_document(session_key: str, messages: list[SessionMessage]) -> Document:
    """Build the index document for a full session transcript."""
    content = build_transcript(messages)
    return Document(
        path=session_path_for_key(session_key),
        content=content,
        source=SOURCE_SESSIONS,
        updated_at=max((m.created_at for m in messages), default=0),
    )


@dataclass
class SessionDelta:
    """Messages appended since the session was last indexed."""

    session_key: str
    max_rowid: int
    delta_bytes: int
    delta_messages: int
    rewound: bool = False


def compute_delta(session_key: str, messages: list[SessionMessage], last_rowid: int) -> SessionDelta:
    """Measure the transcript growth past ``last_rowid``.

    ``messages`` is the full log. Bytes count the rendered transcript
    lines. ``rewound`` is set when the log no longer reaches
    ``last_rowid``, meaning messages were removed and the transcript has
    to be rebuilt from scratch.
    """
    max_rowid = messages[-1].rowid if messages else 0
    if max_rowid < last_rowid:
        fresh = messages
        rewound = True
    else:
        fresh = [m for m in messages if m.rowid > last_rowid]
        rewound = False
    delta_bytes = 0
    delta_messages = 0
    for message in fresh:
        line = format_message(message)
        if line is None:
            continue
        delta_bytes += len(line.encode("utf-8")) + 1
        delta_messages += 1
    return SessionDelta(session_key, max_rowid, delta_bytes, delta_messages, rewound)


def exceeds_threshold(pending_bytes: int, pending_messages: int, delta_bytes: int, delta_messages: int) -> bool:
    """Whether accumulated deltas justify reindexing a session.

    Each threshold is checked on its own; a threshold of 0 or less fires
    on any pending amount of that kind.
    """
    if delta_bytes <= 0:
        bytes_hit = pending_bytes > 0
    else:
        bytes_hit = pending_bytes >= delta_bytes
    if delta_messages <= 0:
        messages_hit = pending_messages > 0
    else:
        messages_hit = pending_messages >= delta_messages
    return bytes_hit or messages_hit


def record_for(document: Document, session_key: str, last_rowid: int) -> SessionRecord:
    """Fresh record for a session that was just indexed in full."""
    return SessionRecord(
        session_key=session_key,
        path=document.path,
        last_rowid=last_rowid,
        hash=hash_text(document.content),
        updated_at=document.updated_at,
    )
