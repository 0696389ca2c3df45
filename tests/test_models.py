"""Tests for the shared data models and the wire codec."""

from __future__ import annotations

from localchat.api.models import (
    ChatChunk,
    ChatRequest,
    ConversationTurn,
    ErrorEvent,
    Message,
    ModelInfo,
    RetryAttempt,
    TextBlock,
    TextDelta,
    ThinkingStart,
    TimeoutWarning,
    TokenCountUpdate,
    ToolUse,
    ToolUseBlock,
    parse_wire_event,
)

# ---------------------------------------------------------------------------
# Requests and backend records
# ---------------------------------------------------------------------------


class TestChatRequest:
    def test_from_wire(self):
        request = ChatRequest.from_wire({"type": "chat", "content": "Hi", "sessionId": "abc", "model": "phi3"})
        assert request == ChatRequest(content="Hi", session_id="abc", model="phi3")

    def test_defaults(self):
        request = ChatRequest.from_wire({"type": "chat"})
        assert request.content == ""
        assert request.session_id == "default"
        assert request.model is None

    def test_http_field_names(self):
        request = ChatRequest.from_wire({"message": "Hi", "session_id": "abc"})
        assert request.text == "Hi"
        assert request.session_id == "abc"

    def test_text_from_blocks(self):
        request = ChatRequest(content=[{"type": "document", "data": "x"}])
        assert request.text == ""


class TestChatChunk:
    def test_content_record(self):
        chunk = ChatChunk.from_record({"message": {"role": "assistant", "content": "Hel"}, "done": False})
        assert chunk.content == "Hel"
        assert chunk.thinking == ""
        assert chunk.tool_calls == []
        assert chunk.done is False

    def test_done_record(self):
        chunk = ChatChunk.from_record({"done": True, "eval_count": 42})
        assert chunk.done
        assert chunk.content == ""
        assert chunk.eval_count == 42

    def test_non_dict_message_ignored(self):
        assert ChatChunk.from_record({"message": "oops"}).content == ""


def test_conversation_turn_to_backend():
    assert ConversationTurn(role="user", content="Hi").to_backend() == {"role": "user", "content": "Hi"}


def test_model_info_from_record():
    info = ModelInfo.from_record({"model": "llama3.2:3b", "size": 5})
    assert info.name == "llama3.2:3b"
    assert info.to_dict()["size"] == 5


# ---------------------------------------------------------------------------
# Wire codec
# ---------------------------------------------------------------------------


class TestWireEvents:
    def test_to_wire_carries_session(self):
        assert TextDelta(text="Hi").to_wire("s1") == {
            "type": "assistant_message", "content": "Hi", "sessionId": "s1",
        }
        assert ToolUse(tool_id="t", tool_name="Read", tool_input={"a": 1}).to_wire("s1") == {
            "type": "tool_use", "toolId": "t", "toolName": "Read", "toolInput": {"a": 1}, "sessionId": "s1",
        }
        assert TokenCountUpdate(count=3).to_wire("s1")["outputTokens"] == 3
        assert ErrorEvent(message="x", kind="empty_message").to_wire("s1")["errorType"] == "empty_message"

    def test_parse(self):
        assert parse_wire_event({"type": "thinking_start"}) == ThinkingStart()
        assert parse_wire_event({"type": "tool_use", "toolId": "t", "toolName": "Task"}) == ToolUse(
            tool_id="t", tool_name="Task", tool_input={},
        )
        assert parse_wire_event(
            {"type": "retry_attempt", "attempt": 2, "maxAttempts": 3, "errorType": "network"}
        ) == RetryAttempt(attempt=2, max_attempts=3, kind="network")
        assert parse_wire_event({"type": "timeout_warning", "elapsedSeconds": 30}) == TimeoutWarning(30)

    def test_parse_error_defaults(self):
        assert parse_wire_event({"type": "error"}) == ErrorEvent(message="An error occurred")

    def test_parse_unknown(self):
        assert parse_wire_event({"type": "mystery"}) is None
        assert parse_wire_event({}) is None

    def test_parse_non_numeric_fields_dropped(self):
        assert parse_wire_event({"type": "token_update", "outputTokens": "n/a"}) is None
        assert parse_wire_event({"type": "retry_attempt", "attempt": "two", "maxAttempts": 3}) is None
        assert parse_wire_event({"type": "retry_attempt", "attempt": 1, "maxAttempts": [3]}) is None
        assert parse_wire_event({"type": "timeout_warning", "elapsedSeconds": "soon"}) is None


# ---------------------------------------------------------------------------
# Message tree
# ---------------------------------------------------------------------------


class TestMessageTree:
    def test_only_task_gets_nested_list(self):
        assert ToolUseBlock.create("a", "Task", {}).nested_tools == []
        assert ToolUseBlock.create("b", "Read", {}).nested_tools is None

    def test_to_dict(self):
        task = ToolUseBlock.create("t", "Task", {"goal": "x"})
        task.nested_tools.append(ToolUseBlock.create("r", "Read", {}))
        message = Message(type="assistant", content=[TextBlock(text="Hi"), task])

        data = message.to_dict()
        assert data["type"] == "assistant"
        assert data["content"][0] == {"type": "text", "text": "Hi"}
        assert data["content"][1]["nestedTools"] == [{"type": "tool_use", "id": "r", "name": "Read", "input": {}}]

    def test_string_content_has_no_blocks(self):
        assert Message(type="user", content="Hi").blocks == []
