"""
Agent session harness.

One AgentSession owns one resumable conversation with the remote agent and
exposes a single operation, send(message) -> TurnResult. Inside a send:

  - the role prompt is prefixed to the very first message of a fresh session
  - every tool call passes through the pre-hook (path rewriting, status
    lines, ask-the-user interception, browser tools) and the post/failure
    hooks (durations, tool-call records)
  - transient provider failures are retried after a long backoff, slept in
    short slices so an operator abort or pause is seen mid-sleep

The retry logic is a small state machine (SendState) with one transition
function, next_send_state(), so it can be tested without a transport.
"""

import asyncio
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from flightpath_errors import (
    AgentError, FlightpathError, PipelineAborted, TurnLimitExceeded, classify_error,
)
from flightpath_events import ToolEvent, ToolEventKind, ToolObserver, format_status_action
from flightpath_models import ToolCallRecord, TurnResult, UserInputRequest, UserQuestion
from flightpath_paths import resolve_tool_input
from flightpath_tools import BROWSER_TOOL_PREFIX, BrowserProvider, ToolRegistry, run_browser_tool
from flightpath_transport import AgentTransport, AssistantEvent, HookDecision, HookSet, ResultEvent, ToolUse

import logging
logger = logging.getLogger(__name__)

QUESTIONS_SENT = "Questions sent to user."
AWAIT_USER_REASON = "Questions have been sent to the user. Please wait for their response."

ROLE_PROMPTS = {
    "explorer-pattern": (
        "You are a codebase explorer focused on conventions. Find existing patterns, "
        "components and templates similar to the requested feature. You are read-only: "
        "never modify files."
    ),
    "explorer-api": (
        "You are a codebase explorer focused on contracts. Find API endpoints, types, "
        "schemas and interfaces the requested feature will touch. You are read-only: "
        "never modify files."
    ),
    "explorer-test": (
        "You are a codebase explorer focused on testing. Find how similar features are "
        "tested: frameworks, fixtures, file locations and naming. You are read-only: "
        "never modify files."
    ),
    "planner": (
        "You are a senior engineer planning one requirement. Produce a concrete, ordered "
        "implementation plan: files to create or change, and how each acceptance "
        "criterion will be verified. Do not write code yet."
    ),
    "executor": (
        "You are a senior engineer implementing one requirement. Follow the plan, keep "
        "changes minimal and consistent with existing conventions, and run the relevant "
        "checks before finishing."
    ),
    "tester": (
        "You are a QA engineer verifying one requirement. Check every acceptance "
        "criterion by running tests or inspecting behavior. End your reply with exactly "
        "one line: 'VERDICT: PASS' or 'VERDICT: FAIL'."
    ),
}


class SendState(Enum):
    SENDING = "sending"
    DRAINING = "draining"
    BACKOFF = "backoff"
    DONE = "done"
    FAILED = "failed"


class SendOutcome(Enum):
    SENT = "sent"
    RESULT = "result"
    ERROR = "error"
    SLEPT = "slept"
    ABORTED = "aborted"


def next_send_state(state: SendState, outcome: SendOutcome, *, retryable: bool = False,
                    attempts: int = 0, max_retries: int = 0) -> SendState:
    """
    Transition function for one send.

        SENDING  --sent-->                        DRAINING
        DRAINING --result-->                      DONE
        DRAINING --error (retryable, budget)-->   BACKOFF
        DRAINING --error (otherwise)-->           FAILED
        BACKOFF  --slept-->                       SENDING
        BACKOFF  --aborted-->                     FAILED
    """
    if state is SendState.SENDING and outcome is SendOutcome.SENT:
        return SendState.DRAINING
    if state is SendState.DRAINING:
        if outcome is SendOutcome.RESULT:
            return SendState.DONE
        if outcome is SendOutcome.ERROR:
            return SendState.BACKOFF if retryable and attempts < max_retries else SendState.FAILED
    if state is SendState.BACKOFF:
        if outcome is SendOutcome.SLEPT:
            return SendState.SENDING
        if outcome is SendOutcome.ABORTED:
            return SendState.FAILED
    raise ValueError(f"Invalid send transition: {state.value} --{outcome.value}-->")


@dataclass
class SessionOptions:
    """Per-session settings. Services (transport, observers, notifier) are passed separately."""
    cwd: str
    model: str
    storage_root: str
    storage_id: str
    pipeline_id: Optional[str] = None
    max_turns: int = 100
    max_rate_limit_retries: int = 20
    backoff_seconds: float = 1800.0
    poll_seconds: float = 5.0
    tools: Sequence[str] = ()


@dataclass
class _TurnState:
    tool_calls: List[ToolCallRecord] = field(default_factory=list)
    user_questions: List[UserQuestion] = field(default_factory=list)
    input_requests: List[UserInputRequest] = field(default_factory=list)
    seen_questions: set = field(default_factory=set)
    awaiting_user_input: bool = False
    started: Dict[str, float] = field(default_factory=dict)


class AgentSession:
    """Handle for one conversation with the remote agent."""

    def __init__(self, transport: AgentTransport, role: str, options: SessionOptions, *,
                 session_id: Optional[str] = None, resumed: bool = False,
                 observers: Optional[List[ToolObserver]] = None, notifier=None,
                 browser: Optional[BrowserProvider] = None,
                 artifact_sink: Optional[Callable[[bytes, str], Optional[str]]] = None,
                 should_stop: Optional[Callable[[], bool]] = None,
                 sleep: Callable[[float], Any] = asyncio.sleep):
        self.transport = transport
        self.role = role
        self.options = options
        self.session_id = session_id
        self.observers = list(observers or [])
        self.notifier = notifier
        self.browser = browser or BrowserProvider()
        self.artifact_sink = artifact_sink
        self.should_stop = should_stop or (lambda: False)
        self.sleep = sleep
        self.closed = False
        self.backoff_history: List[Dict[str, Any]] = []
        self._prefix_pending = not resumed
        self._turn = _TurnState()

        self._pre_handlers = ToolRegistry(default=self._passthrough)
        self._pre_handlers.register("AskUserQuestion", self._ask_user_question)
        self._pre_handlers.register("AskUserInput", self._ask_user_input)
        self._pre_handlers.register("TodoWrite", self._todo_write)
        self._pre_handlers.register_prefix(BROWSER_TOOL_PREFIX, self._browser_tool)

    # ------------------------------------------------------------
    # Turn
    # ------------------------------------------------------------

    def _compose(self, message: str) -> str:
        if self._prefix_pending and self.role in ROLE_PROMPTS:
            return f"{ROLE_PROMPTS[self.role]}\n\n---\n\n{message}"
        return message

    async def send(self, message: str) -> TurnResult:
        if self.closed:
            raise FlightpathError(f"Session {self.session_id or self.role} is closed")

        state = SendState.SENDING
        attempts = 0
        prompt = message
        while True:
            if state is SendState.SENDING:
                prompt = self._compose(message)
                self._turn = _TurnState()
                state = next_send_state(state, SendOutcome.SENT)

            elif state is SendState.DRAINING:
                try:
                    result = await self._drain(prompt)
                except (TurnLimitExceeded, PipelineAborted):
                    raise
                except Exception as e:
                    classification = classify_error(e)
                    state = next_send_state(state, SendOutcome.ERROR, retryable=classification.retryable,
                                            attempts=attempts, max_retries=self.options.max_rate_limit_retries)
                    if state is SendState.FAILED:
                        raise
                    attempts += 1
                    logger.warning(f"⚠️ {self.role}: {classification.type.value} error "
                                   f"(attempt {attempts}/{self.options.max_rate_limit_retries}): {e}")
                    self.backoff_history.append({
                        "attempt": attempts, "error": str(e), "errorType": classification.type.value,
                    })
                    await self._emit(ToolEvent(kind=ToolEventKind.BACKOFF, error=str(e), attempt=attempts))
                    continue
                self._prefix_pending = False
                state = next_send_state(state, SendOutcome.RESULT)
                return result

            elif state is SendState.BACKOFF:
                stopped = await self._backoff_sleep()
                state = next_send_state(state, SendOutcome.ABORTED if stopped else SendOutcome.SLEPT)
                if state is SendState.FAILED:
                    raise PipelineAborted(self.options.pipeline_id or "")

    async def _backoff_sleep(self) -> bool:
        """Sleep the backoff window in slices. Returns True if an abort or pause was sampled."""
        remaining = self.options.backoff_seconds
        logger.info(f"⏳ {self.role}: backing off {remaining:g}s before retrying")
        while remaining > 0:
            if self.should_stop():
                return True
            step = min(self.options.poll_seconds, remaining)
            await self.sleep(step)
            remaining -= step
        return self.should_stop()

    async def _drain(self, prompt: str) -> TurnResult:
        hooks = HookSet(self._pre_tool_use, self._post_tool_use, self._post_tool_use_failure)
        texts: List[str] = []
        turns = 0
        result: Optional[ResultEvent] = None

        stream = self.transport.stream(
            prompt, session_id=self.session_id, model=self.options.model, cwd=self.options.cwd,
            hooks=hooks, max_turns=self.options.max_turns, tools=self.options.tools,
        )
        try:
            async for event in stream:
                if isinstance(event, AssistantEvent):
                    turns += 1
                    if event.text:
                        texts.append(event.text)
                    if turns > self.options.max_turns:
                        raise TurnLimitExceeded(self.options.max_turns, turns)
                elif isinstance(event, ResultEvent):
                    result = event
                    break
        finally:
            if hasattr(stream, "aclose"):
                await stream.aclose()

        if result is None:
            raise AgentError("no_result", ["Stream ended without a result event"])
        if result.session_id:
            self.session_id = result.session_id
        if result.subtype == "error_max_turns":
            raise TurnLimitExceeded(self.options.max_turns, result.num_turns)
        if result.is_error:
            raise AgentError(result.subtype, result.errors)

        return TurnResult(
            reply=result.result or "\n".join(texts) or "No response from agent",
            session_id=self.session_id,
            tool_calls=self._turn.tool_calls,
            awaiting_user_input=self._turn.awaiting_user_input,
            user_questions=self._turn.user_questions,
            input_requests=self._turn.input_requests,
            structured_output=result.structured_output,
            usage=dict(result.usage),
            total_cost_usd=result.total_cost_usd,
            total_turns=result.num_turns or turns,
        )

    async def close(self):
        if self.closed:
            return
        self.closed = True
        await self.transport.close_session(self.session_id)

    # ------------------------------------------------------------
    # Hooks
    # ------------------------------------------------------------

    async def _emit(self, event: ToolEvent):
        for observer in self.observers:
            try:
                await observer.on_event(event)
            except Exception as e:
                logger.warning(f"Observer failed on {event.kind.value} event: {e}")

    def _elapsed_ms(self, call_id: str) -> Optional[int]:
        started = self._turn.started.pop(call_id, None)
        if started is None:
            return None
        return int((time.monotonic() - started) * 1000)

    async def _pre_tool_use(self, call: ToolUse) -> HookDecision:
        self._turn.started[call.id] = time.monotonic()
        resolved, changed = resolve_tool_input(call.name, call.input, self.options.cwd,
                                               self.options.storage_id, self.options.storage_root)
        if changed:
            logger.debug(f"  Rewrote {call.name} input: {call.input} → {resolved}")
        await self._emit(ToolEvent(kind=ToolEventKind.STARTED, tool_name=call.name,
                                   tool_id=call.id, input=resolved))
        await self._emit(ToolEvent(kind=ToolEventKind.STATUS, tool_name=call.name, tool_id=call.id,
                                   status_text=format_status_action(call.name, resolved)))
        handler = self._pre_handlers.resolve(call.name)
        return await handler(call, resolved, changed)

    async def _post_tool_use(self, call: ToolUse, result: str):
        duration = self._elapsed_ms(call.id)
        await self._emit(ToolEvent(kind=ToolEventKind.COMPLETED, tool_name=call.name,
                                   tool_id=call.id, result=result, duration_ms=duration))
        self._turn.tool_calls.append(ToolCallRecord(id=call.id, name=call.name, input=call.input,
                                                    result=result, duration_ms=duration))

    async def _post_tool_use_failure(self, call: ToolUse, error: str):
        duration = self._elapsed_ms(call.id)
        await self._emit(ToolEvent(kind=ToolEventKind.ERROR, tool_name=call.name,
                                   tool_id=call.id, error=error, duration_ms=duration))
        self._turn.tool_calls.append(ToolCallRecord(id=call.id, name=call.name, input=call.input,
                                                    result=f"Error: {error}", duration_ms=duration,
                                                    error=True))

    # Pre-hook handlers, one per intercepted tool

    async def _passthrough(self, call: ToolUse, resolved: dict, changed: bool) -> HookDecision:
        return HookDecision.allow(updated_input=resolved if changed else None)

    async def _ask_user_question(self, call: ToolUse, resolved: dict, changed: bool) -> HookDecision:
        new_questions = []
        for raw in resolved.get("questions") or []:
            options = [o.get("label", str(o)) if isinstance(o, dict) else str(o)
                       for o in raw.get("options") or []]
            question = UserQuestion(header=raw.get("header", "Question"),
                                    question=raw.get("question", ""), options=options,
                                    multi_select=bool(raw.get("multiSelect", False)))
            if question.key in self._turn.seen_questions:
                continue
            self._turn.seen_questions.add(question.key)
            self._turn.user_questions.append(question)
            new_questions.append(question)

        self._turn.awaiting_user_input = True
        if new_questions and self.notifier is not None:
            await self.notifier.send_questions(new_questions, self.options.pipeline_id)
        logger.info(f"❓ {self.role} asked {len(new_questions)} new question(s), awaiting user input")
        self._turn.tool_calls.append(ToolCallRecord(id=call.id, name=call.name, input=call.input,
                                                    result=QUESTIONS_SENT,
                                                    duration_ms=self._elapsed_ms(call.id)))
        return HookDecision.deny(AWAIT_USER_REASON)

    async def _ask_user_input(self, call: ToolUse, resolved: dict, changed: bool) -> HookDecision:
        request = UserInputRequest(
            id=resolved.get("id") or str(uuid.uuid4()),
            header=resolved.get("header") or "Input Required",
            description=resolved.get("description", ""),
            fields=list(resolved.get("fields") or []),
        )
        self._turn.input_requests.append(request)
        self._turn.awaiting_user_input = True
        if self.notifier is not None:
            await self.notifier.send_input_request(request, self.options.pipeline_id)
        logger.info(f"📝 {self.role} requested user input: {request.header}")
        self._turn.tool_calls.append(ToolCallRecord(id=call.id, name=call.name, input=call.input,
                                                    result=QUESTIONS_SENT,
                                                    duration_ms=self._elapsed_ms(call.id)))
        return HookDecision.deny(AWAIT_USER_REASON)

    async def _todo_write(self, call: ToolUse, resolved: dict, changed: bool) -> HookDecision:
        await self._emit(ToolEvent(kind=ToolEventKind.TODO, tool_name=call.name, tool_id=call.id,
                                   todos=list(resolved.get("todos") or [])))
        return HookDecision.allow(tool_result="Todos updated.")

    async def _browser_tool(self, call: ToolUse, resolved: dict, changed: bool) -> HookDecision:
        result = await run_browser_tool(self.browser, call.name, resolved, self.artifact_sink)
        return HookDecision.allow(tool_result=result)


# ============================================================
# Session lifecycle
# ============================================================

def create_session(transport: AgentTransport, role: str, options: SessionOptions, **services) -> AgentSession:
    """Fresh conversation; the role prompt goes out with the first send."""
    return AgentSession(transport, role, options, **services)


def resume_session(transport: AgentTransport, session_id: str, role: str,
                   options: SessionOptions, **services) -> AgentSession:
    """Reconnect an existing conversation. Nothing is replayed and no role prefix is sent."""
    return AgentSession(transport, role, options, session_id=session_id, resumed=True, **services)


class SessionManager:
    """
    Tracks the one active session per pipeline id.

    Opening a session for a pipeline closes the previous one. Explorer
    lanes use create_session() directly and are not tracked here.
    """

    def __init__(self, transport: AgentTransport):
        self.transport = transport
        self._sessions: Dict[str, AgentSession] = {}

    async def create(self, pipeline_id: str, role: str, options: SessionOptions, **services) -> AgentSession:
        await self.close(pipeline_id)
        session = create_session(self.transport, role, options, **services)
        self._sessions[pipeline_id] = session
        return session

    async def resume(self, pipeline_id: str, session_id: str, role: str,
                     options: SessionOptions, **services) -> AgentSession:
        await self.close(pipeline_id)
        session = resume_session(self.transport, session_id, role, options, **services)
        self._sessions[pipeline_id] = session
        logger.info(f"🔄 Resumed session {session_id} for pipeline {pipeline_id}")
        return session

    def get(self, pipeline_id: str) -> Optional[AgentSession]:
        return self._sessions.get(pipeline_id)

    async def close(self, pipeline_id: str):
        session = self._sessions.pop(pipeline_id, None)
        if session is not None:
            await session.close()

    async def close_all(self):
        for pipeline_id in list(self._sessions):
            await self.close(pipeline_id)
