"""Tests for loading normalized messages."""

import json

import pytest

from code_session_memory.models import (
    Message,
    StepMarkerPart,
    TextPart,
    ToolInvocationPart,
    derive_session_title,
    load_messages,
    message_from_dict,
    part_from_dict,
)
from code_session_memory.renderer import render_tool_part


def test_load_messages(sample_messages_json):
    """Test loading adapter output from a JSON file."""
    messages = load_messages(sample_messages_json)

    assert [m.id for m in messages] == ["msg_001", "msg_002"]
    user, assistant = messages
    assert user.role == "user"
    assert user.created_at == 1700000000000
    assert user.parts == (TextPart(text="How do I add JWT authentication?"),)

    assert assistant.agent == "build"
    assert assistant.model_id == "gpt-4o"
    assert assistant.completed_at == 1700000003500
    assert isinstance(assistant.parts[0], StepMarkerPart)
    tool = assistant.parts[2]
    assert isinstance(tool, ToolInvocationPart)
    assert tool.tool_name == "read"
    assert tool.tool_call_id == "call_1"
    assert tool.state == "result"
    assert tool.args == {"path": "app.py"}
    assert tool.result == "ok"


def test_load_messages_rejects_non_list(temp_dir):
    """Test that a JSON object instead of a list is rejected."""
    path = temp_dir / "bad.json"
    path.write_text(json.dumps({"id": "m1"}))

    with pytest.raises(ValueError):
        load_messages(path)


def test_flat_message_dict():
    """Test building a message from a flat dict."""
    msg = message_from_dict(
        {
            "id": "m1",
            "role": "assistant",
            "created_at": 5,
            "parts": [
                {"type": "tool-invocation", "toolName": "grep", "toolCallId": "c1", "state": "error", "error": "boom"},
                "not a part",
            ],
        }
    )

    assert msg.created_at == 5
    assert msg.parts == (
        ToolInvocationPart(tool_name="grep", tool_call_id="c1", state="error", error="boom"),
    )


def test_invalid_role_raises():
    """Test that an unknown role is rejected."""
    with pytest.raises(ValueError, match="role"):
        message_from_dict({"id": "m1", "role": "system", "parts": []})


def test_missing_id_raises():
    """Test that a message without an id is rejected."""
    with pytest.raises(ValueError, match="id"):
        message_from_dict({"role": "user", "parts": []})


def test_opencode_tool_status_mapping():
    """Test mapping of OpenCode tool statuses."""
    pending = part_from_dict({"type": "tool", "tool": "bash", "state": {"status": "running"}})
    failed = part_from_dict({"type": "tool", "tool": "bash", "state": {"status": "error", "error": "x"}})

    assert pending.state == "call"
    assert failed.state == "error"
    assert failed.error == "x"


def test_opencode_tool_output_without_final_status():
    """Test that tool output is kept whatever the reported status."""
    running = part_from_dict(
        {"type": "tool", "tool": "bash", "state": {"status": "running", "output": "partial"}}
    )

    assert running.state == "result"
    assert running.result == "partial"
    assert "**Output:**" in render_tool_part(running)


def test_unknown_parts():
    """Test handling of unknown part types."""
    assert part_from_dict({"type": "snapshot"}) is None
    assert part_from_dict({"type": "patch", "text": "diff"}) == TextPart(text="diff")


def test_derive_session_title():
    """Test deriving a title from the first user message."""
    messages = [
        Message(id="m0", role="assistant", parts=(TextPart(text="Hello"),)),
        Message(id="m1", role="user", parts=(TextPart(text="  Fix   the\nlogin bug " + "x" * 80),)),
    ]

    title = derive_session_title(messages)
    assert title.startswith("Fix the login bug ")
    assert len(title) == 60
    assert derive_session_title([]) == "Untitled session"
