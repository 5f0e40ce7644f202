"""
Pipeline event types and the tool-event observer channel.

The harness reports everything that happens inside an agent turn as a
single tagged ToolEvent delivered to each observer in emission order.
PipelineEventObserver turns those into persisted pipeline events.
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, Any, List

logger = logging.getLogger(__name__)


class EventType(Enum):
    QA_STARTED = "qa_started"
    EXPLORING_STARTED = "exploring_started"
    EXPLORING_COMPLETED = "exploring_completed"
    PLANNING_STARTED = "planning_started"
    PLANNING_COMPLETED = "planning_completed"
    EXECUTING_STARTED = "executing_started"
    EXECUTING_COMPLETED = "executing_completed"
    TESTING_STARTED = "testing_started"
    TESTING_COMPLETED = "testing_completed"
    AGENT_MESSAGE = "agent_message"
    REQUIREMENT_STARTED = "requirement_started"
    REQUIREMENT_COMPLETED = "requirement_completed"
    REQUIREMENT_FAILED = "requirement_failed"
    TEST_PASSED = "test_passed"
    TEST_FAILED = "test_failed"
    RETRY_STARTED = "retry_started"
    PAUSED = "paused"
    RESUMED = "resumed"
    ABORTED = "aborted"
    PIPELINE_COMPLETED = "pipeline_completed"
    PIPELINE_FAILED = "pipeline_failed"
    TOOL_STARTED = "tool_started"
    TOOL_COMPLETED = "tool_completed"
    TOOL_ERROR = "tool_error"
    STATUS_UPDATE = "status_update"
    TODO_UPDATE = "todo_update"
    USER_INPUT_REQUESTED = "user_input_requested"
    RATE_LIMIT_BACKOFF = "rate_limit_backoff"
    PARALLEL_EXPLORATION_STARTED = "parallel_exploration_started"
    PARALLEL_EXPLORATION_COMPLETED = "parallel_exploration_completed"
    EXPLORER_STARTED = "explorer_started"
    EXPLORER_COMPLETED = "explorer_completed"
    EXPLORER_ERROR = "explorer_error"
    MODEL_SELECTED = "model_selected"


class ToolEventKind(Enum):
    STARTED = "started"
    COMPLETED = "completed"
    ERROR = "error"
    STATUS = "status"
    TODO = "todo"
    BACKOFF = "backoff"


@dataclass
class ToolEvent:
    kind: ToolEventKind
    tool_name: str = ""
    tool_id: str = ""
    input: Dict[str, Any] = field(default_factory=dict)
    result: Optional[str] = None
    error: Optional[str] = None
    duration_ms: Optional[int] = None
    status_text: Optional[str] = None
    todos: List[Dict[str, Any]] = field(default_factory=list)
    attempt: Optional[int] = None


class ToolObserver:
    """Receives every ToolEvent of a session, awaited in order."""

    async def on_event(self, event: ToolEvent):
        pass


_WARNING_RESULT_RE = re.compile(r"error|failed|exception|denied|not found", re.IGNORECASE)


def truncate_path(path: str) -> str:
    parts = [p for p in str(path).split("/") if p]
    if len(parts) <= 2:
        return str(path)
    return ".../" + "/".join(parts[-2:])


def format_status_action(tool_name: str, tool_input: Dict[str, Any]) -> str:
    """One human-readable status line for a tool call."""
    tool_input = tool_input or {}
    if tool_name == "Read":
        return f"Reading {truncate_path(tool_input.get('file_path', ''))}"
    if tool_name == "Edit":
        return f"Editing {truncate_path(tool_input.get('file_path', ''))}"
    if tool_name == "Write":
        return f"Writing {truncate_path(tool_input.get('file_path', ''))}"
    if tool_name == "Bash":
        if tool_input.get("description"):
            return tool_input["description"]
        return f"Running: {str(tool_input.get('command', ''))[:60]}"
    if tool_name == "Glob":
        return f"Finding files: {tool_input.get('pattern', '')}"
    if tool_name == "Grep":
        return f"Searching for: {tool_input.get('pattern', '')}"
    if tool_name == "LS":
        return f"Listing {truncate_path(tool_input.get('path', ''))}"
    if tool_name == "TodoWrite":
        return "Updating task list"
    if tool_name == "AskUserQuestion":
        questions = tool_input.get("questions") or []
        header = questions[0].get("header", "question") if questions else "question"
        return f"Asking: {header}"
    if tool_name == "AskUserInput":
        return f"Requesting input: {tool_input.get('header', 'Input Required')}"
    if tool_name == "web_navigate":
        return f"Navigating to {tool_input.get('url', '')}"
    if tool_name == "web_click":
        return f"Clicking {tool_input.get('selector', '')}"
    if tool_name in ("web_type", "web_fill"):
        return f"Typing into {tool_input.get('selector', '')}"
    if tool_name == "web_screenshot":
        return "Taking screenshot"
    if tool_name == "web_assert_visible":
        return f"Checking {tool_input.get('selector', '')} is visible"
    if tool_name == "web_assert_text":
        return f"Checking text: {str(tool_input.get('text', ''))[:40]}"
    if tool_name == "web_wait":
        return "Waiting for page"
    if tool_name == "web_http_request":
        return f"HTTP {tool_input.get('method', 'GET')} {tool_input.get('url', '')}"
    return f"{tool_name}..."


class PipelineEventObserver(ToolObserver):
    """Persists tool events as pipeline events for one pipeline."""

    def __init__(self, store, pipeline_id: str, phase: str = ""):
        self.store = store
        self.pipeline_id = pipeline_id
        self.phase = phase

    async def on_event(self, event: ToolEvent):
        base = {"phase": self.phase, "toolId": event.tool_id, "tool": event.tool_name}
        if event.kind is ToolEventKind.STARTED:
            self.store.append_event(self.pipeline_id, EventType.TOOL_STARTED,
                                    {**base, "input": event.input})
        elif event.kind is ToolEventKind.COMPLETED:
            outcome = "warning" if _WARNING_RESULT_RE.search(event.result or "") else "success"
            self.store.append_event(self.pipeline_id, EventType.TOOL_COMPLETED, {
                **base, "durationMs": event.duration_ms, "outcome": outcome,
                "result": (event.result or "")[:500],
            })
        elif event.kind is ToolEventKind.ERROR:
            self.store.append_event(self.pipeline_id, EventType.TOOL_ERROR, {
                **base, "durationMs": event.duration_ms, "error": event.error,
            })
        elif event.kind is ToolEventKind.STATUS:
            self.store.append_event(self.pipeline_id, EventType.STATUS_UPDATE,
                                    {"phase": self.phase, "action": event.status_text})
        elif event.kind is ToolEventKind.TODO:
            self.store.append_event(self.pipeline_id, EventType.TODO_UPDATE,
                                    {"phase": self.phase, "todos": event.todos})
        elif event.kind is ToolEventKind.BACKOFF:
            self.store.append_event(self.pipeline_id, EventType.RATE_LIMIT_BACKOFF, {
                "phase": self.phase, "attempt": event.attempt, "error": event.error,
            })
