"""Data models for code-session-memory."""

import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, ClassVar

SESSION_SOURCES = ("opencode", "claude-code", "cursor", "vscode", "codex", "gemini")
MESSAGE_ROLES = ("user", "assistant", "tool")


@dataclass(frozen=True)
class TextPart:
    """Plain text written by the user or the assistant."""

    type: ClassVar[str] = "text"

    text: str


@dataclass(frozen=True)
class ToolInvocationPart:
    """A tool call, optionally carrying its result."""

    type: ClassVar[str] = "tool-invocation"

    tool_name: str
    tool_call_id: str = ""
    state: str = "call"  # "call" | "result" | "error"
    args: Any = None
    result: Any = None
    error: str | None = None


@dataclass(frozen=True)
class FilePart:
    """A file attached to the message."""

    type: ClassVar[str] = "file"

    filename: str | None = None
    media_type: str | None = None


@dataclass(frozen=True)
class StepMarkerPart:
    """Bookkeeping marker emitted between agent steps."""

    type: ClassVar[str] = "step-marker"

    kind: str = "step-start"


@dataclass(frozen=True)
class ReasoningPart:
    """Internal model reasoning; never indexed."""

    type: ClassVar[str] = "reasoning"

    text: str = ""


Part = TextPart | ToolInvocationPart | FilePart | StepMarkerPart | ReasoningPart


@dataclass(frozen=True)
class Message:
    """One normalized conversation turn."""

    id: str
    role: str  # "user" | "assistant" | "tool"
    parts: tuple[Part, ...] = ()
    created_at: int | None = None  # unix ms
    completed_at: int | None = None  # unix ms
    agent: str | None = None
    model_id: str | None = None


@dataclass
class SessionInfo:
    """Session metadata supplied by the adapter."""

    id: str
    title: str | None = None
    directory: str | None = None


@dataclass
class Passage:
    """A retrieval unit derived from one message's rendered text."""

    content: str
    session_id: str
    session_title: str
    project: str
    heading_hierarchy: list[str]
    section: str
    chunk_id: str
    url: str
    hash: str
    chunk_index: int
    total_chunks: int
    message_order: int | None = None
    created_at: int | None = None  # unix ms
    source: str = ""


@dataclass
class SessionMeta:
    """Ledger row tracking how far a session has been indexed."""

    session_id: str
    session_title: str
    project: str
    source: str
    last_indexed_message_id: str | None
    updated_at: int  # unix ms


@dataclass
class IndexResult:
    """Outcome of one indexing run."""

    indexed: int = 0
    skipped: int = 0


@dataclass
class SearchResult:
    """A passage returned by similarity search."""

    passage: Passage
    distance: float


@dataclass
class SessionSummary:
    """A ledger row joined with its stored passage count."""

    meta: SessionMeta
    chunk_count: int = 0


# ---------------------------------------------------------------------------
# Normalized JSON loading
# ---------------------------------------------------------------------------

_STEP_TYPES = {"step-start", "step-finish", "step-marker"}
_TOOL_STATUS = {"complete": "result", "completed": "result", "error": "error"}


def part_from_dict(data: dict[str, Any]) -> Part | None:
    """Build a part from its JSON form, or None for unknown non-text parts."""
    part_type = data.get("type")

    if part_type == "text":
        return TextPart(text=data.get("text") or "")

    if part_type == "tool-invocation":
        return ToolInvocationPart(
            tool_name=data.get("toolName") or data.get("tool_name") or "unknown",
            tool_call_id=data.get("toolCallId") or data.get("tool_call_id") or "",
            state=data.get("state") or "call",
            args=data.get("args"),
            result=data.get("result"),
            error=data.get("error"),
        )

    if part_type == "tool":
        # OpenCode shape: state is an object with a status
        state = data.get("state") or {}
        if not isinstance(state, dict):
            state = {"status": str(state)}
        # Output present on any non-error status counts as a result
        fallback = "result" if state.get("output") is not None else "call"
        return ToolInvocationPart(
            tool_name=data.get("tool") or "unknown",
            tool_call_id=data.get("callID") or "",
            state=_TOOL_STATUS.get(state.get("status", ""), fallback),
            args=state.get("input"),
            result=state.get("output"),
            error=state.get("error"),
        )

    if part_type == "file":
        return FilePart(
            filename=data.get("filename"),
            media_type=data.get("mediaType") or data.get("media_type"),
        )

    if part_type in _STEP_TYPES:
        return StepMarkerPart(kind=part_type)

    if part_type == "reasoning":
        return ReasoningPart(text=data.get("text") or "")

    if data.get("text"):
        return TextPart(text=data["text"])
    return None


def message_from_dict(data: dict[str, Any]) -> Message:
    """Build a Message from either a flat dict or an ``{info, parts}`` dict."""
    info = data.get("info", data)
    time = info.get("time") or {}

    role = info.get("role")
    if role not in MESSAGE_ROLES:
        raise ValueError(f"Invalid message role: {role!r}")
    if not info.get("id"):
        raise ValueError("Message is missing an id")

    parts = []
    for raw in data.get("parts", []):
        if not isinstance(raw, dict):
            continue
        part = part_from_dict(raw)
        if part is not None:
            parts.append(part)

    return Message(
        id=str(info["id"]),
        role=role,
        parts=tuple(parts),
        created_at=info.get("created_at", time.get("created")),
        completed_at=info.get("completed_at", time.get("completed")),
        agent=info.get("agent"),
        model_id=info.get("model_id", info.get("modelID")),
    )


def load_messages(path: Path) -> list[Message]:
    """Load a JSON list of normalized messages from disk."""
    with open(path, encoding="utf-8") as f:
        records = json.load(f)

    if not isinstance(records, list):
        raise ValueError(f"Expected a JSON list of messages in {path}")
    return [message_from_dict(record) for record in records]


def derive_session_title(messages: list[Message]) -> str:
    """Use the first user text as the session title."""
    for msg in messages:
        if msg.role != "user":
            continue
        for part in msg.parts:
            if isinstance(part, TextPart):
                title = " ".join(part.text.split())[:60]
                if title:
                    return title
    return "Untitled session"
