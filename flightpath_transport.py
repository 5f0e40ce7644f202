"""
Remote coding-agent transport.

A transport turns one prompt into a stream of turn events: zero or more
AssistantEvents followed by exactly one ResultEvent. Around every tool use
it awaits the caller's hooks, strictly in order:

    pre_tool_use -> (execute unless denied) -> post_tool_use | post_tool_use_failure

AnthropicTransport runs that loop itself against the Messages API over
httpx, executing tools locally with ToolExecutor. Conversation history is
kept per session id, so resuming a session continues the same conversation
without replaying it.
"""

import json
import os
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable, Dict, Iterable, List, Optional, Sequence

import httpx

from flightpath_config import ModelConfig
from flightpath_tools import ToolExecutor, is_error_result, tool_definitions

import logging
logger = logging.getLogger(__name__)

ANTHROPIC_VERSION = "2023-06-01"


@dataclass
class ToolUse:
    id: str
    name: str
    input: Dict[str, Any]


@dataclass
class HookDecision:
    action: str = "continue"  # "continue" or "deny"
    updated_input: Optional[Dict[str, Any]] = None
    reason: Optional[str] = None
    tool_result: Optional[str] = None  # set when the hook already produced the result

    @classmethod
    def allow(cls, updated_input: Optional[Dict[str, Any]] = None,
              tool_result: Optional[str] = None) -> "HookDecision":
        return cls(action="continue", updated_input=updated_input, tool_result=tool_result)

    @classmethod
    def deny(cls, reason: str) -> "HookDecision":
        return cls(action="deny", reason=reason)

    @property
    def denied(self) -> bool:
        return self.action == "deny"


PreHook = Callable[[ToolUse], Awaitable[HookDecision]]
PostHook = Callable[[ToolUse, str], Awaitable[None]]


class HookSet:
    def __init__(self, pre_tool_use: Optional[PreHook] = None,
                 post_tool_use: Optional[PostHook] = None,
                 post_tool_use_failure: Optional[PostHook] = None):
        self.pre_tool_use = pre_tool_use
        self.post_tool_use = post_tool_use
        self.post_tool_use_failure = post_tool_use_failure

    async def before(self, call: ToolUse) -> HookDecision:
        if self.pre_tool_use is None:
            return HookDecision.allow()
        return await self.pre_tool_use(call)

    async def after(self, call: ToolUse, result: str):
        if self.post_tool_use is not None:
            await self.post_tool_use(call, result)

    async def failed(self, call: ToolUse, error: str):
        if self.post_tool_use_failure is not None:
            await self.post_tool_use_failure(call, error)


@dataclass
class AssistantEvent:
    text: str = ""
    tool_uses: List[ToolUse] = field(default_factory=list)


@dataclass
class ResultEvent:
    subtype: str = "success"  # success, error_max_turns, error_during_execution
    result: str = ""
    session_id: Optional[str] = None
    structured_output: Optional[Any] = None
    usage: Dict[str, int] = field(default_factory=dict)
    num_turns: int = 0
    total_cost_usd: Optional[float] = None
    errors: List[str] = field(default_factory=list)

    @property
    def is_error(self) -> bool:
        return self.subtype != "success"


class AgentTransport:
    """Interface every transport implements."""

    def stream(self, prompt: str, *, session_id: Optional[str], model: str, cwd: str,
               hooks: HookSet, max_turns: int,
               tools: Sequence[str] = ()) -> AsyncIterator[Any]:
        raise NotImplementedError

    async def close_session(self, session_id: Optional[str]):
        pass

    async def aclose(self):
        pass


def _add_usage(total: Dict[str, int], usage: Dict[str, Any]):
    for key in ("input_tokens", "output_tokens", "cache_read_input_tokens", "cache_creation_input_tokens"):
        value = usage.get(key)
        if isinstance(value, int):
            total[key] = total.get(key, 0) + value


class AnthropicTransport(AgentTransport):
    """
    Direct HTTP transport for the Anthropic Messages API.

    Requests for a model id listed in `models` use that model's endpoint,
    key, max_tokens and temperature; any other id falls back to the
    constructor defaults.

    Usage:
        transport = AnthropicTransport(history_dir=paths.root / "sessions",
                                       models=config.models.values(),
                                       allowed_roots=[paths.root])
        async for event in transport.stream(prompt, session_id=None, model=model_id,
                                            cwd=working_dir, hooks=hooks, max_turns=50,
                                            tools=BUILD_TOOLS):
            ...
    """

    def __init__(self, history_dir: Path, endpoint: str = "https://api.anthropic.com",
                 api_key_env: str = "ANTHROPIC_API_KEY", max_tokens: int = 8192,
                 timeout: float = 600.0, allowed_roots: Sequence[Path] = (),
                 client: Optional[httpx.AsyncClient] = None,
                 models: Iterable[ModelConfig] = ()):
        self.history_dir = Path(history_dir)
        self.default_model = ModelConfig(name="default", model_id="", endpoint=endpoint,
                                         api_key_env=api_key_env, max_tokens=max_tokens)
        self.models = {m.model_id: m for m in models}
        self.allowed_roots = list(allowed_roots)
        self.client = client or httpx.AsyncClient(timeout=timeout)
        self.client.headers.update({"Content-Type": "application/json"})

    # ------------------------------------------------------------
    # History
    # ------------------------------------------------------------

    def _history_file(self, session_id: str) -> Path:
        return self.history_dir / f"{session_id}.json"

    def load_history(self, session_id: str) -> List[Dict[str, Any]]:
        history_file = self._history_file(session_id)
        if not history_file.exists():
            return []
        return json.loads(history_file.read_text())

    def _save_history(self, session_id: str, messages: List[Dict[str, Any]]):
        self.history_dir.mkdir(parents=True, exist_ok=True)
        self._history_file(session_id).write_text(json.dumps(messages, indent=2))

    # ------------------------------------------------------------
    # HTTP
    # ------------------------------------------------------------

    def model_settings(self, model: str) -> ModelConfig:
        return self.models.get(model, self.default_model)

    async def _create_message(self, model: str, messages: List[Dict[str, Any]],
                              tools: List[dict]) -> Dict[str, Any]:
        """Call /v1/messages. Errors are raised with messages the classifier understands."""
        settings = self.model_settings(model)
        api_key = os.environ.get(settings.api_key_env, "")
        if not api_key:
            raise RuntimeError(f"API key not found in env var: {settings.api_key_env}")

        payload: Dict[str, Any] = {"model": model, "max_tokens": settings.max_tokens,
                                   "temperature": settings.temperature, "messages": messages}
        if tools:
            payload["tools"] = tools
        headers = {"x-api-key": api_key, "anthropic-version": ANTHROPIC_VERSION}

        try:
            resp = await self.client.post(f"{settings.endpoint.rstrip('/')}/v1/messages", json=payload, headers=headers)
        except httpx.TimeoutException as e:
            raise RuntimeError(f"Anthropic API timeout: {e}") from e
        except httpx.TransportError as e:
            raise RuntimeError(f"Anthropic API connection error (econnreset): {e}") from e

        if resp.status_code >= 400:
            body = resp.text[:300]
            if resp.status_code == 401:
                raise RuntimeError(f"Anthropic API unauthorized (401): {body}")
            if resp.status_code == 404 and "model" in body.lower():
                raise RuntimeError(f"Anthropic API model not found ({model}): {body}")
            if resp.status_code == 429:
                raise RuntimeError(f"Anthropic API rate limit (429): {body}")
            if resp.status_code == 529:
                raise RuntimeError(f"Anthropic API overloaded (529): {body}")
            raise RuntimeError(f"Anthropic API error {resp.status_code}: {body}")
        return resp.json()

    # ------------------------------------------------------------
    # Tool loop
    # ------------------------------------------------------------

    async def _run_tool(self, executor: ToolExecutor, call: ToolUse, hooks: HookSet) -> Dict[str, Any]:
        decision = await hooks.before(call)
        if decision.denied:
            return {"type": "tool_result", "tool_use_id": call.id,
                    "content": decision.reason or "Tool call denied.", "is_error": True}

        if decision.tool_result is not None:
            result = decision.tool_result
        else:
            result = await executor.execute(call.name, decision.updated_input or call.input)

        if is_error_result(result):
            await hooks.failed(call, result)
            return {"type": "tool_result", "tool_use_id": call.id, "content": result, "is_error": True}
        await hooks.after(call, result)
        return {"type": "tool_result", "tool_use_id": call.id, "content": result}

    async def stream(self, prompt: str, *, session_id: Optional[str], model: str, cwd: str,
                     hooks: HookSet, max_turns: int,
                     tools: Sequence[str] = ()) -> AsyncIterator[Any]:
        session_id = session_id or str(uuid.uuid4())
        messages = self.load_history(session_id)
        messages.append({"role": "user", "content": prompt})
        executor = ToolExecutor([Path(cwd), *self.allowed_roots])
        definitions = tool_definitions(tools)
        usage: Dict[str, int] = {}
        texts: List[str] = []

        for turn in range(1, max_turns + 1):
            data = await self._create_message(model, messages, definitions)
            _add_usage(usage, data.get("usage", {}))
            messages.append({"role": "assistant", "content": data.get("content", [])})

            text = ""
            calls = []
            for block in data.get("content", []):
                if block.get("type") == "text":
                    text += block.get("text", "")
                elif block.get("type") == "tool_use":
                    calls.append(ToolUse(id=block["id"], name=block["name"], input=block.get("input") or {}))
            if text:
                texts.append(text)
            yield AssistantEvent(text=text, tool_uses=calls)

            if data.get("stop_reason") != "tool_use" or not calls:
                self._save_history(session_id, messages)
                yield ResultEvent(subtype="success", result=text or "\n".join(texts),
                                  session_id=session_id, usage=usage, num_turns=turn)
                return

            results = [await self._run_tool(executor, call, hooks) for call in calls]
            messages.append({"role": "user", "content": results})

        self._save_history(session_id, messages)
        yield ResultEvent(subtype="error_max_turns", result="\n".join(texts), session_id=session_id,
                          usage=usage, num_turns=max_turns,
                          errors=[f"Reached maximum turns ({max_turns})"])

    async def aclose(self):
        await self.client.aclose()
