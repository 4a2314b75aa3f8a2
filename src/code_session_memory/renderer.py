"""Render normalized messages to markdown for chunking."""

import json
from typing import Any

from code_session_memory.models import (
    FilePart,
    Message,
    Part,
    TextPart,
    ToolInvocationPart,
)

# Keep huge tool outputs from dominating embeddings
TOOL_OUTPUT_MAX_CHARS = 500


def truncate_output(output: str) -> str:
    """Truncate tool output beyond TOOL_OUTPUT_MAX_CHARS."""
    if len(output) <= TOOL_OUTPUT_MAX_CHARS:
        return output
    return output[:TOOL_OUTPUT_MAX_CHARS] + "\n… [truncated]"


def _to_json(value: Any) -> str:
    return json.dumps(value, indent=2, ensure_ascii=False, default=str)


def render_tool_part(part: ToolInvocationPart) -> str:
    """Render a tool invocation as a labeled input/output block."""
    lines = [f"**Tool: {part.tool_name}**", ""]

    if part.args is not None:
        lines.extend(["**Input:**", "```json", _to_json(part.args), "```", ""])

    if part.state == "result" and part.result is not None:
        result = part.result
        result_str = truncate_output(result if isinstance(result, str) else _to_json(result))
        lines.append("**Output:**")
        # Already-fenced output is left as is
        if isinstance(result, str) and not result.startswith("```"):
            lines.extend(["```", result_str, "```"])
        else:
            lines.append(result_str)
        lines.append("")
    elif part.state == "error" and part.error:
        lines.extend([f"**Error:** {part.error}", ""])

    return "\n".join(lines)


def render_part(part: Part) -> str:
    """Render one part; bookkeeping and reasoning parts render empty."""
    if part.type == TextPart.type:
        return part.text.strip()
    if part.type == ToolInvocationPart.type:
        return render_tool_part(part)
    if part.type == FilePart.type:
        return f"**File:** `{part.filename}`\n" if part.filename else ""
    return ""


def _format_duration(msg: Message) -> str:
    if msg.created_at and msg.completed_at:
        return f"{(msg.completed_at - msg.created_at) / 1000:.1f}s"
    return ""


def render_heading(msg: Message) -> str:
    """Build the level-2 heading that opens a rendered message."""
    if msg.role == "user":
        return "## User"
    if msg.role == "tool":
        return "## Tool Result"

    details = [d for d in (msg.agent, msg.model_id, _format_duration(msg)) if d]
    suffix = f" ({' · '.join(details)})" if details else ""
    return f"## Assistant{suffix}"


def render_message(msg: Message) -> str:
    """Render a message to markdown.

    Returns an empty string when no part produces output; callers must skip
    such messages entirely.
    """
    body = [rendered for rendered in map(render_part, msg.parts) if rendered.strip()]
    if not body:
        return ""
    return "\n".join([render_heading(msg), "", "\n\n".join(body), ""])
