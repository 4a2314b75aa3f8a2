"""Heading-aware chunking of rendered messages."""

import hashlib
import re
from dataclasses import dataclass, field

from code_session_memory.models import Passage

# Word-count limits per passage
MAX_TOKENS = 1000
MIN_TOKENS = 150
OVERLAP_PERCENT = 0.1

HEADING_RE = re.compile(r"^(#{1,6})\s+(.*)")


@dataclass
class ChunkOptions:
    """Metadata attached to every passage of one message."""

    session_id: str
    session_title: str
    project: str
    base_url: str  # session://<session_id>#<message_id>


@dataclass
class _Pending:
    lines: list[str]
    hierarchy: list[str] = field(default_factory=list)

    @property
    def text(self) -> str:
        return "\n".join(self.lines)


def hash_content(content: str) -> str:
    """SHA-256 hex digest of a string."""
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


def count_tokens(text: str) -> int:
    """Count whitespace-separated words."""
    return len(text.split())


def build_breadcrumb(heading_hierarchy: list[str]) -> str:
    return " > ".join(h for h in heading_hierarchy if h)


def split_with_overlap(lines: list[str]) -> list[list[str]]:
    """Split oversized text into MAX_TOKENS word windows.

    Consecutive windows share OVERLAP_PERCENT of MAX_TOKENS words; the last
    window may be shorter.
    """
    words = "\n".join(lines).split()
    overlap = int(MAX_TOKENS * OVERLAP_PERCENT)
    windows: list[list[str]] = []
    start = 0

    while start < len(words):
        end = min(start + MAX_TOKENS, len(words))
        windows.append(words[start:end])
        if end >= len(words):
            break
        start = end - overlap

    return windows


def create_passage(
    content: str,
    heading_hierarchy: list[str],
    chunk_index: int,
    total_chunks: int,
    options: ChunkOptions,
) -> Passage:
    """Prefix content with its breadcrumb and fingerprint it."""
    breadcrumb = build_breadcrumb(heading_hierarchy)
    prefixed = f"[Session: {breadcrumb}]\n\n{content}" if breadcrumb else content

    return Passage(
        content=prefixed,
        session_id=options.session_id,
        session_title=options.session_title,
        project=options.project,
        heading_hierarchy=list(heading_hierarchy),
        section=heading_hierarchy[-1] if heading_hierarchy else "",
        chunk_id=hash_content(f"{options.base_url}::{chunk_index}::{prefixed}"),
        url=options.base_url,
        hash=hash_content(prefixed),
        chunk_index=chunk_index,
        total_chunks=total_chunks,
    )


def chunk_markdown(markdown: str, options: ChunkOptions) -> list[Passage]:
    """Split markdown into heading-bounded passages.

    Buffers below MIN_TOKENS are carried over into the next section instead
    of being flushed at a heading. Buffers above MAX_TOKENS are split into
    overlapping word windows. Undersized passages are finally merged into
    their predecessor.
    """
    hierarchy: list[str] = []
    buffer: list[str] = []
    pending: list[_Pending] = []

    def flush(active: list[str]) -> None:
        nonlocal buffer
        if not buffer:
            return
        if count_tokens("\n".join(buffer)) > MAX_TOKENS:
            for window in split_with_overlap(buffer):
                pending.append(_Pending([" ".join(window)], list(active)))
        else:
            pending.append(_Pending(list(buffer), list(active)))
        buffer = []

    for line in markdown.split("\n"):
        match = HEADING_RE.match(line)
        if not match:
            buffer.append(line)
            continue

        if count_tokens("\n".join(buffer)) >= MIN_TOKENS:
            flush(hierarchy)

        level = len(match.group(1))
        # Skipped levels stay as empty placeholders
        while len(hierarchy) < level:
            hierarchy.append("")
        hierarchy[level - 1] = match.group(2).strip()
        del hierarchy[level:]

    flush(hierarchy)

    merged: list[_Pending] = []
    for item in pending:
        if count_tokens(item.text) < MIN_TOKENS and merged:
            merged[-1].lines.extend(["", *item.lines])
        else:
            merged.append(item)

    survivors = [item for item in merged if item.text.strip()]
    total = len(survivors)
    return [
        create_passage(item.text, item.hierarchy, idx, total, options)
        for idx, item in enumerate(survivors)
    ]
